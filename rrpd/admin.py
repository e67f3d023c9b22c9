"""Admin commands for the RRP hub.

Admin requests travel over an ordinary link as ADMIN envelopes and carry the
shared secret each time, so an operator does not need to join first.
"""

from __future__ import annotations

import hmac
import logging
from typing import TYPE_CHECKING, Any

from .constants import (
    ADMIN_MESSAGES,
    ADMIN_REMOVE_USER,
    ADMIN_STATS,
    ADMIN_USERS,
    ADMIN_VERIFY,
)
from .errors import MalformedPayload
from .messages import admin_reply_envelope, parse_admin

if TYPE_CHECKING:
    from .router import Evictions, Outgoing
    from .service import HubService
    from .session import Connection


class AdminHandler:
    """Handles shared-secret admin commands for the hub."""

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rrpd.admin")

    def verify_secret(self, secret: str) -> bool:
        """Compare against the stored secret. An empty stored secret never matches."""
        with self.hub._state_lock:
            expected = self.hub.snapshot.admin_secret
        if not expected or not isinstance(secret, str):
            return False
        return hmac.compare_digest(secret.encode("utf-8"), expected.encode("utf-8"))

    def list_users(self) -> dict[str, dict[str, str]]:
        with self.hub._state_lock:
            records = list(self.hub.snapshot.users.values())
        return {
            rec.email: {
                "name": rec.name,
                "avatar": rec.avatar,
                "first_joined": rec.first_joined.isoformat(),
                "last_seen": rec.last_seen.isoformat(),
            }
            for rec in records
        }

    def list_messages(self) -> list[dict[str, str]]:
        with self.hub._state_lock:
            messages = list(self.hub.snapshot.messages)
        return [
            {
                "from": m.sender,
                "to": m.recipient,
                "body": m.body,
                "timestamp": m.timestamp.isoformat(),
                "id": m.msg_id,
            }
            for m in messages
        ]

    def remove_user(self, email: str, *, evictions: Evictions | None = None) -> bool:
        """Delete a user record and evict any live session for that email.

        Returns False when no record exists; live sessions are left alone in
        that case, matching the record-first semantics of the removal. With
        ``evictions`` the email is queued for the caller to disconnect.
        """
        with self.hub._state_lock:
            if email not in self.hub.snapshot.users:
                return False
            del self.hub.snapshot.users[email]
        self.hub.mark_dirty()

        if evictions is not None:
            evictions.append(email)
            self.log.info("User removed email=%s (eviction queued)", email)
            return True

        evicted = self.hub.router.disconnect(email)
        self.log.info("User removed email=%s sessions_evicted=%d", email, evicted)
        return True

    def handle_request(
        self,
        handle: Connection,
        body: Any,
        outgoing: Outgoing,
        evictions: Evictions | None = None,
    ) -> None:
        req = parse_admin(body)
        self.hub._inc("admin_commands")

        if not self.verify_secret(req.secret):
            self.hub._inc("admin_denied")
            self.log.warning(
                "Admin command denied conn=%s cmd=%s", handle.conn_id, req.command
            )
            self.hub.router.queue_env(
                outgoing, handle, admin_reply_envelope(False, "not authorized")
            )
            return

        self.log.info("Admin command conn=%s cmd=%s", handle.conn_id, req.command)

        if req.command == ADMIN_VERIFY:
            reply = admin_reply_envelope(True)
        elif req.command == ADMIN_USERS:
            reply = admin_reply_envelope(True, self.list_users())
        elif req.command == ADMIN_MESSAGES:
            reply = admin_reply_envelope(True, self.list_messages())
        elif req.command == ADMIN_STATS:
            reply = admin_reply_envelope(True, self.hub.stats_manager.format_stats())
        elif req.command == ADMIN_REMOVE_USER:
            email = req.argument
            if not isinstance(email, str) or not email.strip():
                raise MalformedPayload("remove_user requires an email")
            removed = self.remove_user(email.strip(), evictions=evictions)
            reply = admin_reply_envelope(removed, None if removed else "no such user")
        else:
            reply = admin_reply_envelope(False, f"unknown command {req.command!r}")

        self.hub.router.queue_env(outgoing, handle, reply)
