from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .codec import decode, encode
from .constants import (
    K_BODY,
    K_T,
    T_ADMIN,
    T_CHAT,
    T_HISTORY,
    T_JOIN,
    T_REQUEST_ROSTER,
)
from .envelope import validate_envelope
from .errors import DuplicateHandle, MalformedPayload
from .messages import (
    RoutedMessage,
    chat_envelope,
    history_envelope,
    join_announce_envelope,
    leave_announce_envelope,
    parse_chat,
    parse_identity,
    roster_envelope,
)
from .registry import PresenceEntry, UserIdentity
from .session import Connection, ConnectionState

if TYPE_CHECKING:
    from .service import HubService

Outgoing = list[tuple[Connection, bytes]]
# Emails whose sessions are closed once the sender's lock is released.
Evictions = list[str]


class MessageRouter:
    """
    Presence and routing engine for the RRP hub.

    This class is responsible for:
    - Decoding and validating incoming packets
    - Driving the per-connection PENDING -> ACTIVE -> CLOSED transitions
    - Roster replies, join/leave broadcasts and direct chat delivery
    - Forced disconnects by email

    Replies are queued on an ``outgoing`` list while the handler runs and
    sent in order afterwards, so the roster always reaches a joiner before
    the join announcement reaches anyone else.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rrpd.router")

    def route_packet(self, handle: Connection, data: bytes) -> Evictions:
        """
        Main entry point for one inbound packet.

        The caller holds ``handle.lock``. Malformed input is dropped without
        a reply and leaves the connection state unchanged. Returns the emails
        whose sessions the caller must close after releasing the lock.
        """
        self.hub._inc("pkts_in")
        self.hub._inc("bytes_in", len(data))

        outgoing: Outgoing = []
        evictions: Evictions = []
        try:
            env = decode(data)
            validate_envelope(env)
            self._dispatch(handle, env, outgoing, evictions)
        except MalformedPayload as e:
            self.hub._inc("pkts_bad")
            self.log.debug(
                "Bad packet conn=%s state=%s bytes=%s err=%s",
                handle.conn_id,
                handle.state.value,
                len(data),
                e,
            )
            return []

        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug(
                "Sending %d payload(s) for conn=%s", len(outgoing), handle.conn_id
            )
        self.flush(outgoing)
        return evictions

    def _dispatch(
        self, handle: Connection, env: dict, outgoing: Outgoing, evictions: Evictions
    ) -> None:
        t = env.get(K_T)
        body = env.get(K_BODY)

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX conn=%s state=%s t=%s body_type=%s",
                handle.conn_id,
                handle.state.value,
                t,
                type(body).__name__,
            )

        # Admin requests carry their own secret and are accepted before join.
        if t == T_ADMIN:
            self.hub.admin.handle_request(handle, body, outgoing, evictions)
            return

        if handle.state is ConnectionState.PENDING:
            if t != T_JOIN:
                raise MalformedPayload(f"message type {t} before join")
            cfg = self.hub.config
            identity = parse_identity(
                body,
                max_name_chars=cfg.max_name_chars,
                max_email_chars=cfg.max_email_chars,
                max_avatar_chars=cfg.max_avatar_chars,
            )
            self.handle_join(handle, identity, outgoing)
        elif handle.state is ConnectionState.ACTIVE:
            if t == T_CHAT:
                message = parse_chat(
                    env,
                    max_body_bytes=self.hub.config.max_msg_body_bytes,
                    max_email_chars=self.hub.config.max_email_chars,
                )
                self.handle_chat(handle, message, outgoing)
            elif t == T_REQUEST_ROSTER:
                self.handle_request_roster(handle, outgoing)
            elif t == T_HISTORY:
                self.handle_history(handle, outgoing)
            elif t == T_JOIN:
                raise MalformedPayload("join on an already joined connection")
            else:
                raise MalformedPayload(f"unknown message type {t}")

    def handle_join(
        self,
        handle: Connection,
        identity: UserIdentity,
        outgoing: Outgoing | None = None,
    ) -> bool:
        """PENDING -> ACTIVE: register, reply with the roster, announce."""
        own_queue = outgoing is None
        queue: Outgoing = [] if outgoing is None else outgoing

        try:
            self.hub.registry.insert(handle, identity)
        except DuplicateHandle:
            self.log.exception(
                "Registry already holds conn=%s; join ignored", handle.conn_id
            )
            return False

        handle.state = ConnectionState.ACTIVE
        self.hub._inc("joins")
        self.log.info(
            "JOIN conn=%s name=%r email=%s", handle.conn_id, identity.name, identity.email
        )

        self.queue_env(queue, handle, roster_envelope(self.hub.registry.snapshot_others(handle)))
        self.hub._inc("rosters_sent")
        self.queue_broadcast(queue, join_announce_envelope(identity), exclude=handle)

        self.hub._record_join(identity)

        if own_queue:
            self.flush(queue)
        return True

    def handle_chat(
        self,
        handle: Connection,
        message: RoutedMessage,
        outgoing: Outgoing | None = None,
    ) -> bool:
        """Deliver to the first session of the recipient. Returns False on drop."""
        own_queue = outgoing is None
        queue: Outgoing = [] if outgoing is None else outgoing

        self.hub._record_chat(message)

        matches = self.hub.registry.find_by_email(message.recipient)
        if not matches:
            self.hub._inc("chats_dropped")
            self.log.debug(
                "Chat dropped conn=%s from=%s to=%s (recipient offline)",
                handle.conn_id,
                message.sender,
                message.recipient,
            )
            return False

        target, _ = matches[0]
        self.queue_env(queue, target, chat_envelope(message))
        self.hub._inc("chats_delivered")
        self.log.debug(
            "Chat routed conn=%s -> conn=%s from=%s to=%s sessions=%d",
            handle.conn_id,
            target.conn_id,
            message.sender,
            message.recipient,
            len(matches),
        )

        if own_queue:
            self.flush(queue)
        return True

    def handle_request_roster(
        self, handle: Connection, outgoing: Outgoing | None = None
    ) -> None:
        own_queue = outgoing is None
        queue: Outgoing = [] if outgoing is None else outgoing

        self.queue_env(queue, handle, roster_envelope(self.hub.registry.snapshot_others(handle)))
        self.hub._inc("rosters_sent")

        if own_queue:
            self.flush(queue)

    def handle_history(self, handle: Connection, outgoing: Outgoing | None = None) -> None:
        own_queue = outgoing is None
        queue: Outgoing = [] if outgoing is None else outgoing

        identity = self.hub.registry.lookup(handle)
        if identity is None:
            return
        history = self.hub._history_for(identity.email)
        self.queue_env(queue, handle, history_envelope(history))

        if own_queue:
            self.flush(queue)

    def handle_close(self, handle: Connection) -> PresenceEntry | None:
        """Remove ``handle`` from the registry and announce the leave.

        Nothing is announced for a connection that never joined.
        """
        entry = self.hub.registry.remove(handle)
        if entry is None:
            return None

        self.hub._inc("leaves")
        self.log.info(
            "LEAVE conn=%s name=%r email=%s",
            handle.conn_id,
            entry.identity.name,
            entry.identity.email,
        )

        outgoing: Outgoing = []
        self.queue_broadcast(outgoing, leave_announce_envelope(entry.identity), exclude=handle)
        self.flush(outgoing)

        self.hub._record_leave(entry.identity)
        return entry

    def disconnect(self, email: str) -> int:
        """Close every live session registered under ``email``.

        The transport close feeds back into the normal close path, which
        removes the registry entry and announces the leave.
        """
        matches = self.hub.registry.find_by_email(email)
        for handle, _ in matches:
            self.hub._inc("forced_closes")
            self.log.info("Forcing disconnect conn=%s email=%s", handle.conn_id, email)
            try:
                self.hub.transport.close(handle)
            except Exception:
                self.log.warning(
                    "Forced close failed conn=%s email=%s", handle.conn_id, email, exc_info=True
                )
        return len(matches)

    def broadcast(self, env: dict, *, exclude: Connection | None = None) -> int:
        outgoing: Outgoing = []
        self.queue_broadcast(outgoing, env, exclude=exclude)
        return self.flush(outgoing)

    def queue_broadcast(
        self, outgoing: Outgoing, env: dict, *, exclude: Connection | None = None
    ) -> None:
        payload = encode(env)
        for entry in self.hub.registry.entries():
            if entry.handle is exclude:
                continue
            outgoing.append((entry.handle, payload))

    def queue_env(self, outgoing: Outgoing, handle: Connection, env: dict) -> None:
        outgoing.append((handle, encode(env)))

    def flush(self, outgoing: Outgoing) -> int:
        """Send queued payloads in order. Returns the number sent.

        Closed or closing recipients are skipped and a failed send never
        stops the remaining ones. Payloads larger than the link MDU go out
        as a resource transfer.
        """
        sent = 0
        transport = self.hub.transport
        for target, payload in outgoing:
            try:
                if not transport.is_open(target):
                    self.hub._inc("broadcast_skipped")
                    continue
                if not self._send_one(target, payload):
                    self.hub._inc("send_failures")
                    continue
            except OSError as e:
                self.hub._inc("send_failures")
                self.log.warning(
                    "Send failed conn=%s bytes=%s err=%s", target.conn_id, len(payload), e
                )
                continue
            except Exception:
                self.hub._inc("send_failures")
                self.log.debug(
                    "Send failed conn=%s bytes=%s",
                    target.conn_id,
                    len(payload),
                    exc_info=True,
                )
                continue
            self.hub._inc("bytes_out", len(payload))
            sent += 1
        return sent

    def _send_one(self, target: Connection, payload: bytes) -> bool:
        """Send as a packet when it fits the link MDU, else as a resource."""
        transport = self.hub.transport
        mdu = transport.mdu(target)
        if mdu is None or len(payload) <= mdu:
            transport.send(target, payload)
            return True

        cfg = self.hub.config
        if not cfg.enable_resource_transfer or len(payload) > cfg.max_resource_bytes:
            self.log.warning(
                "Payload too large for link conn=%s bytes=%s mdu=%s resource_limit=%s",
                target.conn_id,
                len(payload),
                mdu,
                cfg.max_resource_bytes if cfg.enable_resource_transfer else 0,
            )
            return False

        transport.send_resource(target, payload)
        self.hub._inc("resources_sent")
        self.hub._inc("resource_bytes_sent", len(payload))
        self.log.debug(
            "Sent via resource conn=%s bytes=%s mdu=%s", target.conn_id, len(payload), mdu
        )
        return True
