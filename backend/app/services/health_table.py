"""
Device Health Table
In-memory reachability facts keyed by host:port
"""

from datetime import datetime
from typing import Dict, Optional


class DeviceHealthTable:
    """
    Reachability state written by the reachability monitor and read when
    projecting devices.

    A key never has both a reachable-since and a failed-since entry.
    """

    def __init__(self):
        self._reachable: Dict[str, datetime] = {}
        self._failed: Dict[str, datetime] = {}
        self._reasons: Dict[str, str] = {}

    def mark_reachable(self, key: str, when: datetime) -> None:
        self._failed.pop(key, None)
        self._reasons.pop(key, None)
        self._reachable[key] = when

    def clear_reachable(self, key: str) -> None:
        self._reachable.pop(key, None)

    def mark_failed(self, key: str, when: datetime) -> None:
        self._reachable.pop(key, None)
        self._failed[key] = when

    def record_failure_reason(self, key: str, reason: str) -> None:
        self._reasons[key] = reason

    def forget(self, key: str) -> None:
        """Drop every entry for a removed device"""
        self._reachable.pop(key, None)
        self._failed.pop(key, None)
        self._reasons.pop(key, None)

    def reachable_since(self, key: str) -> Optional[datetime]:
        return self._reachable.get(key)

    def failed_since(self, key: str) -> Optional[datetime]:
        return self._failed.get(key)

    def failure_reason(self, key: str) -> Optional[str]:
        return self._reasons.get(key)

    def clear(self) -> None:
        self._reachable.clear()
        self._failed.clear()
        self._reasons.clear()
