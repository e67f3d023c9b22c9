# RRP protocol constants (numeric keys and message types)

RRP_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_BODY = 4

# Message types
T_JOIN = 1
T_ROSTER = 2
T_JOIN_ANNOUNCE = 3
T_LEAVE_ANNOUNCE = 4

T_CHAT = 10
T_REQUEST_ROSTER = 11
T_HISTORY = 12
T_HISTORY_REPLY = 13

T_ADMIN = 20
T_ADMIN_REPLY = 21

# Identity body keys (JOIN, JOIN_ANNOUNCE, LEAVE_ANNOUNCE, ROSTER items)
B_NAME = 0
B_EMAIL = 1
B_AVATAR = 2

# CHAT body keys (also HISTORY_REPLY items)
B_FROM = 0
B_TO = 1
B_TEXT = 2
B_MSG_TS = 3

# ADMIN body keys
B_ADMIN_CMD = 0
B_ADMIN_SECRET = 1
B_ADMIN_ARG = 2

# ADMIN_REPLY body keys
B_ADMIN_OK = 0
B_ADMIN_DATA = 1

# Admin commands
ADMIN_VERIFY = "verify"
ADMIN_USERS = "users"
ADMIN_MESSAGES = "messages"
ADMIN_STATS = "stats"
ADMIN_REMOVE_USER = "remove_user"

# Identity field limits used when no config is at hand.
NAME_MAX_CHARS = 64
EMAIL_MAX_CHARS = 254
AVATAR_MAX_CHARS = 256
