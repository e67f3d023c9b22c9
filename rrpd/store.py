"""Snapshot persistence for users, message history and the admin secret.

The snapshot lives in a TOML file maintained with tomlkit, so comments an
operator adds at the top of the file survive rewrites.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

STORE_HEADER = """# rrpd store (TOML)
#
# Known users, message history and the admin secret.
# It is maintained by rrpd and rewritten while rrpd is running.
#
# Schema
# ------
#
# admin_secret = "..."            shared secret for admin commands ("" disables them)
#
# [users."alice@example.org"]     one table per user, keyed by email
# name = "Alice"
# avatar = "https://..."
# first_joined = 2024-01-01T00:00:00+00:00
# last_seen = 2024-01-02T00:00:00+00:00
#
# [[messages]]                    one entry per routed chat, oldest first
# from = "alice@example.org"
# to = "bob@example.org"
# body = "hi"
# timestamp = 2024-01-02T00:00:00+00:00
# id = "0011223344556677"
"""


@dataclass(frozen=True)
class UserRecord:
    name: str
    email: str
    avatar: str
    first_joined: datetime
    last_seen: datetime


@dataclass(frozen=True)
class StoredMessage:
    sender: str
    recipient: str
    body: str
    timestamp: datetime
    msg_id: str = ""


@dataclass
class Snapshot:
    users: dict[str, UserRecord] = field(default_factory=dict)
    messages: list[StoredMessage] = field(default_factory=list)
    admin_secret: str = ""

    def copy(self) -> Snapshot:
        return Snapshot(dict(self.users), list(self.messages), self.admin_secret)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = datetime.fromisoformat(value.isoformat())
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _as_str(value: Any, default: str = "") -> str:
    return str(value) if isinstance(value, str) else default


class SnapshotStore:
    """Load/save gateway for the hub's durable snapshot."""

    def __init__(self, path: str | None) -> None:
        self.path = path
        self.log = logging.getLogger("rrpd.store")
        self._write_lock = threading.Lock()

    def load(self) -> Snapshot:
        """Read the snapshot; a missing or unreadable file yields an empty one."""
        if not self.path or not os.path.exists(self.path):
            return Snapshot()

        from tomlkit import parse

        try:
            with open(self.path, encoding="utf-8") as f:
                doc = parse(f.read())
        except Exception as e:
            self.log.error("Store parse error path=%s err=%s", self.path, e)
            return Snapshot()

        snapshot = Snapshot(admin_secret=_as_str(doc.get("admin_secret")))

        users = doc.get("users")
        if isinstance(users, dict):
            for email, data in users.items():
                if not isinstance(data, dict):
                    continue
                email = str(email)
                first = _as_datetime(data.get("first_joined"))
                last = _as_datetime(data.get("last_seen"))
                now = utcnow()
                snapshot.users[email] = UserRecord(
                    name=_as_str(data.get("name"), email),
                    email=email,
                    avatar=_as_str(data.get("avatar")),
                    first_joined=first or last or now,
                    last_seen=last or first or now,
                )

        messages = doc.get("messages")
        if isinstance(messages, list):
            for data in messages:
                if not isinstance(data, dict):
                    continue
                sender = data.get("from")
                recipient = data.get("to")
                body = data.get("body")
                ts = _as_datetime(data.get("timestamp"))
                if not isinstance(sender, str) or not isinstance(recipient, str):
                    continue
                if not isinstance(body, str) or ts is None:
                    continue
                snapshot.messages.append(
                    StoredMessage(
                        sender=str(sender),
                        recipient=str(recipient),
                        body=str(body),
                        timestamp=ts,
                        msg_id=_as_str(data.get("id")),
                    )
                )

        self.log.info(
            "Store loaded path=%s users=%d messages=%d",
            self.path,
            len(snapshot.users),
            len(snapshot.messages),
        )
        return snapshot

    def save(self, snapshot: Snapshot) -> str | None:
        """Write the snapshot. Returns None on success, else the error text."""
        if not self.path:
            return None

        from tomlkit import aot, dumps, parse, table

        try:
            with self._write_lock:
                file_stat = None
                doc = None
                if os.path.exists(self.path):
                    file_stat = os.stat(self.path)
                    try:
                        with open(self.path, encoding="utf-8") as f:
                            doc = parse(f.read())
                    except Exception:
                        doc = None
                if doc is None:
                    doc = parse(STORE_HEADER)

                # Re-add in a fixed order so the plain key stays above the tables.
                for key in ("admin_secret", "users", "messages"):
                    if key in doc:
                        del doc[key]

                doc["admin_secret"] = snapshot.admin_secret

                users = table()
                for email, rec in snapshot.users.items():
                    t = table()
                    t["name"] = rec.name
                    t["avatar"] = rec.avatar
                    t["first_joined"] = rec.first_joined
                    t["last_seen"] = rec.last_seen
                    users[email] = t
                doc["users"] = users

                messages = aot()
                for msg in snapshot.messages:
                    t = table()
                    t["from"] = msg.sender
                    t["to"] = msg.recipient
                    t["body"] = msg.body
                    t["timestamp"] = msg.timestamp
                    t["id"] = msg.msg_id
                    messages.append(t)
                if messages:
                    doc["messages"] = messages

                p = Path(self.path)
                p.parent.mkdir(parents=True, exist_ok=True)
                with open(p, "w", encoding="utf-8") as f:
                    f.write(dumps(doc))

                if file_stat is not None:
                    try:
                        os.chmod(p, file_stat.st_mode)
                    except Exception:
                        pass
        except Exception as e:
            self.log.error("Store save failed path=%s err=%s", self.path, e)
            return str(e)

        return None
