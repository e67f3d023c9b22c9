"""Statistics tracking and reporting for the RRP hub."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import HubService


COUNTERS = (
    "bytes_in",
    "bytes_out",
    "pkts_in",
    "pkts_bad",
    "joins",
    "leaves",
    "chats_delivered",
    "chats_dropped",
    "rosters_sent",
    "broadcast_skipped",
    "send_failures",
    "forced_closes",
    "admin_commands",
    "admin_denied",
    "announces",
    "resources_sent",
    "resource_bytes_sent",
    "snapshots_saved",
)


class StatsManager:
    """
    Lifetime counters and the text report behind the admin ``stats`` command.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {k: 0 for k in COUNTERS}

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self.hub._state_lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self.hub._state_lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self.hub._state_lock:
            return dict(self._counters)

    def format_stats(self) -> str:
        from . import __version__

        started = self.started_monotonic
        uptime_s = (time.monotonic() - started) if started is not None else 0.0

        sessions = self.hub.session_manager.get_stats()
        presence = self.hub.registry.get_stats()
        with self.hub._state_lock:
            users_known = len(self.hub.snapshot.users)
            messages_stored = len(self.hub.snapshot.messages)
        c = self.snapshot()

        lines: list[str] = []
        lines.append(f"rrpd {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"connections_total={sessions['total']} "
            f"connections_pending={sessions['pending']} "
            f"connections_active={sessions['active']}"
        )
        lines.append(
            f"present={presence['present']} unique_users={presence['unique_users']}"
        )
        lines.append(f"store: users={users_known} messages={messages_stored}")
        lines.append(
            "io: pkts_in={} pkts_bad={} bytes_in={} bytes_out={} send_failures={}".format(
                c["pkts_in"], c["pkts_bad"], c["bytes_in"], c["bytes_out"], c["send_failures"]
            )
        )
        lines.append(
            "events: joins={} leaves={} chats_delivered={} chats_dropped={} rosters_sent={}".format(
                c["joins"], c["leaves"], c["chats_delivered"], c["chats_dropped"], c["rosters_sent"]
            )
        )
        lines.append(
            "transfer: resources_sent={} resource_bytes_sent={} snapshots_saved={}".format(
                c["resources_sent"], c["resource_bytes_sent"], c["snapshots_saved"]
            )
        )
        lines.append(
            "admin: commands={} denied={} forced_closes={} announces={}".format(
                c["admin_commands"], c["admin_denied"], c["forced_closes"], c["announces"]
            )
        )

        return "\n".join(lines)
