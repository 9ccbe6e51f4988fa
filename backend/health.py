"""
Connection Health Bookkeeping

One entry per named Deriv socket: "platform", "mirror" and "trader:<masked
token>". Each entry remembers which account it logged into, when it last
heard from the server and how often it dropped or errored. Read by the
/api/health endpoint; reconnection itself is the copy-trading controller's
job.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def connection_role(name: str) -> str:
    """platform / mirror / trader, from the connection name"""
    if name.startswith("trader:"):
        return "trader"
    if name in ("platform", "mirror"):
        return name
    return "other"


@dataclass
class ConnectionHealth:
    name: str
    loginid: Optional[str] = None
    connected: bool = False
    last_message_at: float = 0.0
    error_count: int = 0
    connects: int = 0

    @property
    def role(self) -> str:
        return connection_role(self.name)

    @property
    def reconnects(self) -> int:
        return max(0, self.connects - 1)

    def to_dict(self, now: float, stale_after: float) -> dict:
        age = now - self.last_message_at if self.last_message_at else None
        return {
            "role": self.role,
            "loginid": self.loginid,
            "connected": self.connected,
            "last_message_age_sec": round(age, 1) if age is not None else None,
            "is_healthy": self.connected and age is not None and age < stale_after,
            "error_count": self.error_count,
            "reconnects": self.reconnects,
        }


class ConnectionHealthMonitor:
    """Per-socket health for the platform, mirror and trader connections."""

    def __init__(self, stale_threshold_sec: float = 60.0, clock: Callable[[], float] = time.time):
        """
        Args:
            stale_threshold_sec: A connected socket silent for longer than this
                                 is reported unhealthy (Deriv sends heartbeats
                                 and subscription updates well inside it)
            clock: Time source
        """
        self.stale_threshold = stale_threshold_sec
        self._clock = clock
        self._entries: dict[str, ConnectionHealth] = {}

    def _entry(self, name: str) -> ConnectionHealth:
        if name not in self._entries:
            self._entries[name] = ConnectionHealth(name=name)
        return self._entries[name]

    def mark_connected(self, name: str):
        entry = self._entry(name)
        entry.connected = True
        entry.connects += 1
        entry.error_count = 0
        entry.last_message_at = self._clock()
        if entry.reconnects:
            logger.info(f"[Health] {name} reconnected ({entry.reconnects} so far)")

    def mark_message(self, name: str):
        entry = self._entry(name)
        entry.last_message_at = self._clock()
        entry.error_count = 0

    def mark_authorized(self, name: str, loginid: str):
        self._entry(name).loginid = loginid

    def mark_error(self, name: str):
        self._entry(name).error_count += 1

    def mark_disconnected(self, name: str):
        self._entry(name).connected = False

    def forget(self, name: str):
        """Drop a connection that will not come back (session stopped)."""
        self._entries.pop(name, None)

    def is_healthy(self, name: str) -> bool:
        entry = self._entries.get(name)
        if entry is None:
            return False
        return entry.to_dict(self._clock(), self.stale_threshold)["is_healthy"]

    def get_status(self) -> dict:
        """Connections keyed by name, plus per-role counts of live sockets."""
        now = self._clock()
        connections = {
            name: entry.to_dict(now, self.stale_threshold)
            for name, entry in self._entries.items()
        }
        summary: dict[str, int] = {}
        for entry in self._entries.values():
            if entry.connected:
                summary[entry.role] = summary.get(entry.role, 0) + 1
        return {"connections": connections, "connected_by_role": summary}


# Global health monitor instance
connection_monitor = ConnectionHealthMonitor(stale_threshold_sec=120.0)
