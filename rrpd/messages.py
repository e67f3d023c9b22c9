"""Body parsing and envelope construction for RRP presence messages."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .constants import (
    AVATAR_MAX_CHARS,
    B_ADMIN_ARG,
    B_ADMIN_CMD,
    B_ADMIN_DATA,
    B_ADMIN_OK,
    B_ADMIN_SECRET,
    B_AVATAR,
    B_EMAIL,
    B_FROM,
    B_MSG_TS,
    B_NAME,
    B_TEXT,
    B_TO,
    EMAIL_MAX_CHARS,
    K_BODY,
    K_ID,
    K_TS,
    NAME_MAX_CHARS,
    T_ADMIN_REPLY,
    T_CHAT,
    T_HISTORY_REPLY,
    T_JOIN_ANNOUNCE,
    T_LEAVE_ANNOUNCE,
    T_ROSTER,
)
from .envelope import make_envelope
from .errors import MalformedPayload
from .registry import UserIdentity
from .util import normalize_email, normalize_name


@dataclass(frozen=True)
class RoutedMessage:
    sender: str
    recipient: str
    body: str
    timestamp: datetime
    msg_id: bytes


@dataclass(frozen=True)
class AdminRequest:
    command: str
    secret: str
    argument: Any = None


def ts_to_datetime(ts_ms: int) -> datetime:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)


def datetime_to_ts(dt: datetime) -> int:
    return round(dt.timestamp() * 1000)


def parse_identity(
    body: Any,
    *,
    max_name_chars: int = NAME_MAX_CHARS,
    max_email_chars: int = EMAIL_MAX_CHARS,
    max_avatar_chars: int = AVATAR_MAX_CHARS,
) -> UserIdentity:
    if not isinstance(body, dict):
        raise MalformedPayload("join body must be a map")

    name = normalize_name(body.get(B_NAME), max_name_chars)
    if name is None:
        raise MalformedPayload("join requires a display name")

    email = normalize_email(body.get(B_EMAIL), max_email_chars)
    if email is None:
        raise MalformedPayload("join requires an email")

    avatar = body.get(B_AVATAR, "")
    if avatar is None:
        avatar = ""
    if not isinstance(avatar, str):
        raise MalformedPayload("avatar reference must be a string")
    if max_avatar_chars > 0 and len(avatar) > max_avatar_chars:
        raise MalformedPayload("avatar reference too long")

    return UserIdentity(name=name, email=email, avatar=avatar)


def parse_chat(
    env: dict, *, max_body_bytes: int = 0, max_email_chars: int = EMAIL_MAX_CHARS
) -> RoutedMessage:
    """Extract a chat from a validated envelope.

    The sender is taken as given and the recipient is trimmed the way join
    emails are; the text is not stripped or rewritten because delivery is
    verbatim.
    """
    body = env.get(K_BODY)
    if not isinstance(body, dict):
        raise MalformedPayload("chat body must be a map")

    sender = body.get(B_FROM)
    recipient = body.get(B_TO)
    text = body.get(B_TEXT)

    if not isinstance(sender, str):
        raise MalformedPayload("chat sender must be a string")
    if max_email_chars > 0 and len(sender) > max_email_chars:
        raise MalformedPayload("chat sender too long")
    if not isinstance(recipient, str) or not recipient.strip():
        raise MalformedPayload("chat requires a recipient")
    recipient = recipient.strip()
    if max_email_chars > 0 and len(recipient) > max_email_chars:
        raise MalformedPayload("chat recipient too long")
    if not isinstance(text, str):
        raise MalformedPayload("chat text must be a string")
    if max_body_bytes > 0 and len(text.encode("utf-8", "surrogatepass")) > max_body_bytes:
        raise MalformedPayload("chat text too large")

    try:
        timestamp = ts_to_datetime(int(env[K_TS]))
    except (OverflowError, OSError, ValueError) as e:
        raise MalformedPayload(f"bad chat timestamp: {e}") from e

    return RoutedMessage(
        sender=sender,
        recipient=recipient,
        body=text,
        timestamp=timestamp,
        msg_id=bytes(env[K_ID]),
    )


def parse_admin(body: Any) -> AdminRequest:
    if not isinstance(body, dict):
        raise MalformedPayload("admin body must be a map")
    cmd = body.get(B_ADMIN_CMD)
    secret = body.get(B_ADMIN_SECRET)
    if not isinstance(cmd, str) or not cmd.strip():
        raise MalformedPayload("admin request requires a command")
    if not isinstance(secret, str):
        raise MalformedPayload("admin secret must be a string")
    return AdminRequest(command=cmd.strip().lower(), secret=secret, argument=body.get(B_ADMIN_ARG))


def identity_body(identity: UserIdentity) -> dict[int, str]:
    return {
        B_NAME: identity.name,
        B_EMAIL: identity.email,
        B_AVATAR: identity.avatar,
    }


def roster_envelope(identities: list[UserIdentity]) -> dict:
    return make_envelope(T_ROSTER, body=[identity_body(i) for i in identities])


def join_announce_envelope(identity: UserIdentity) -> dict:
    return make_envelope(T_JOIN_ANNOUNCE, body=identity_body(identity))


def leave_announce_envelope(identity: UserIdentity) -> dict:
    return make_envelope(
        T_LEAVE_ANNOUNCE, body={B_NAME: identity.name, B_EMAIL: identity.email}
    )


def chat_envelope(message: RoutedMessage) -> dict:
    return make_envelope(
        T_CHAT,
        body={B_FROM: message.sender, B_TO: message.recipient, B_TEXT: message.body},
        mid=message.msg_id,
        ts=datetime_to_ts(message.timestamp),
    )


def history_envelope(messages) -> dict:
    return make_envelope(
        T_HISTORY_REPLY,
        body=[
            {
                B_FROM: m.sender,
                B_TO: m.recipient,
                B_TEXT: m.body,
                B_MSG_TS: datetime_to_ts(m.timestamp),
            }
            for m in messages
        ],
    )


def admin_reply_envelope(ok: bool, data: Any = None) -> dict:
    body: dict[int, Any] = {B_ADMIN_OK: bool(ok)}
    if data is not None:
        body[B_ADMIN_DATA] = data
    return make_envelope(T_ADMIN_REPLY, body=body)
