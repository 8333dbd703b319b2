"""
Counters for the discovery responder.

All updates happen on the event loop thread, so no locking is needed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("huebeacon.stats")

_COUNTERS = (
    "datagrams_received",
    "queries_accepted",
    "queries_rejected",
    "replies_sent",
    "send_errors",
    "fetch_attempts",
    "fetch_failures",
)


@dataclass
class ResponderStats:
    """Running totals since start (or since the last reset).

    Example use:
        >>> stats = ResponderStats()
        >>> stats.record_datagram()
        >>> stats.snapshot()["datagrams_received"]
        1
    """

    datagrams_received: int = 0
    queries_accepted: int = 0
    queries_rejected: int = 0
    replies_sent: int = 0
    send_errors: int = 0
    fetch_attempts: int = 0
    fetch_failures: int = 0
    started_at: float = field(default_factory=time.time)
    pending_gauge: Optional[Callable[[], int]] = field(default=None, repr=False)

    def record_datagram(self) -> None:
        self.datagrams_received += 1

    def record_accepted(self) -> None:
        self.queries_accepted += 1

    def record_rejected(self) -> None:
        self.queries_rejected += 1

    def record_reply(self) -> None:
        self.replies_sent += 1

    def record_send_error(self) -> None:
        self.send_errors += 1

    def record_fetch_attempt(self) -> None:
        self.fetch_attempts += 1

    def record_fetch_failure(self) -> None:
        self.fetch_failures += 1

    def snapshot(self, reset: bool = False) -> Dict[str, Any]:
        """Brief: Return counters as a plain dict.

        Inputs:
          - reset: When True, zero the counters after reading them.

        Outputs:
          - dict of counter name -> value, plus uptime_seconds and
            pending_responses (0 when no gauge is attached).
        """

        data: Dict[str, Any] = {name: getattr(self, name) for name in _COUNTERS}
        data["uptime_seconds"] = max(0.0, time.time() - self.started_at)
        data["pending_responses"] = (
            int(self.pending_gauge()) if self.pending_gauge is not None else 0
        )
        if reset:
            self.reset()
        return data

    def reset(self) -> None:
        for name in _COUNTERS:
            setattr(self, name, 0)
        self.started_at = time.time()

    def log_snapshot(self, level: int = logging.INFO) -> None:
        snap = self.snapshot()
        logger.log(
            level,
            "datagrams=%d accepted=%d rejected=%d replies=%d send_errors=%d "
            "fetches=%d fetch_failures=%d pending=%d",
            snap["datagrams_received"],
            snap["queries_accepted"],
            snap["queries_rejected"],
            snap["replies_sent"],
            snap["send_errors"],
            snap["fetch_attempts"],
            snap["fetch_failures"],
            snap["pending_responses"],
        )
