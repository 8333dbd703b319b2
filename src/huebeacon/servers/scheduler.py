"""Jittered scheduling of SSDP reply bursts."""

from __future__ import annotations

import asyncio
import itertools
import logging
import random
from typing import Callable, Dict, Optional, Tuple

from ..identity import BridgeTarget, IdentityCache
from ..ssdp.protocol import build_replies

logger = logging.getLogger("huebeacon.scheduler")

Sender = Callable[[bytes, Tuple[str, int]], None]


class ResponseScheduler:
    """
    Schedules one reply burst per accepted query after a random delay.

    Pending responses are kept in an arena keyed by a monotonic request id.
    An entry holds None while the request waits for an identity fetch to
    settle, then the timer handle until the burst is sent. Duplicate
    requests from the same sender are scheduled independently.

    Example use:
        >>> # scheduler = ResponseScheduler(target, cache, transport.sendto)
        >>> # scheduler.request("10.0.0.5", 51000, 2)
    """

    def __init__(
        self,
        target: BridgeTarget,
        cache: IdentityCache,
        sender: Sender,
        *,
        rng: Callable[[], float] = random.random,
        stats=None,
    ) -> None:
        self.target = target
        self.cache = cache
        self.sender = sender
        self.rng = rng
        self.stats = stats
        self._ids = itertools.count(1)
        self._pending: Dict[int, Optional[asyncio.TimerHandle]] = {}
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._pending)

    def request(self, addr: str, port: int, max_delay: int) -> int:
        """Brief: Schedule a reply burst to (addr, port).

        Inputs:
          - addr: Requester IP address.
          - port: Requester UDP port.
          - max_delay: MX seconds; the delay is drawn from [0, max_delay).

        Outputs:
          - int request id of the pending response.
        """

        if self._closed:
            raise RuntimeError("scheduler is closed")

        fetch = self.cache.ensure_fresh()
        delay = max_delay * self.rng()
        rid = next(self._ids)
        self._pending[rid] = None

        if fetch is None:
            self._arm(rid, delay, addr, port)
        else:
            fetch.add_done_callback(lambda _f: self._arm(rid, delay, addr, port))
        logger.debug(
            "Scheduled response #%d to %s:%d in %.3fs", rid, addr, port, delay
        )
        return rid

    def _arm(self, rid: int, delay: float, addr: str, port: int) -> None:
        if rid not in self._pending:
            return
        loop = asyncio.get_running_loop()
        self._pending[rid] = loop.call_later(delay, self._fire, rid, addr, port)

    def _fire(self, rid: int, addr: str, port: int) -> None:
        if self._pending.pop(rid, None) is None:
            return
        self.respond(addr, port)

    def respond(self, addr: str, port: int) -> int:
        """Brief: Send the three reply datagrams to (addr, port).

        Inputs:
          - addr: Requester IP address.
          - port: Requester UDP port.

        Outputs:
          - int number of datagrams handed to the socket.

        The identifier is read now, not when the request was scheduled.
        """

        replies = build_replies(
            self.target.host, self.target.service, self.cache.identifier
        )
        sent = 0
        for datagram in replies:
            try:
                self.sender(datagram, (addr, port))
            except OSError as e:
                logger.warning("Failed to send reply to %s:%d: %s", addr, port, e)
                if self.stats is not None:
                    self.stats.record_send_error()
                continue
            sent += 1
            if self.stats is not None:
                self.stats.record_reply()
        logger.debug("Sent %d replies to %s:%d", sent, addr, port)
        return sent

    def cancel(self, rid: int) -> bool:
        """Cancel one pending response; returns False if it already fired."""
        if rid not in self._pending:
            return False
        handle = self._pending.pop(rid)
        if handle is not None:
            handle.cancel()
        return True

    def close(self) -> None:
        """Cancel every pending response and refuse new requests."""
        self._closed = True
        for rid in list(self._pending):
            self.cancel(rid)
