"""Wires the listener, scheduler and identity cache onto one event loop.

BeaconApp owns every runtime object of one responder instance. Everything
it creates runs on the loop that calls start(); the only other thread is the
identity cache's fetch worker.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable, Optional

from .config.config_parser import ResponderConfig
from .identity import BridgeTarget, DescriptionFetcher, IdentityCache
from .servers.listener import open_reply_socket, start_listener
from .servers.scheduler import ResponseScheduler
from .ssdp.protocol import DiscoveryQuery
from .stats import ResponderStats

logger = logging.getLogger("huebeacon.app")


class BeaconApp:
    """One SSDP responder representing exactly one bridge.

    Example use:
        >>> # asyncio.run(BeaconApp(target, ResponderConfig()).run())
    """

    def __init__(
        self,
        target: BridgeTarget,
        config: ResponderConfig,
        *,
        fetch: Optional[Callable[[], str]] = None,
    ) -> None:
        self.target = target
        self.config = config
        self.stats = ResponderStats()
        if fetch is None:
            fetch = DescriptionFetcher(
                target,
                timeout=config.fetch_timeout,
                path=config.description_path,
            ).fetch_identifier
        self.cache = IdentityCache(
            fetch, config.refresh_interval, stats=self.stats
        )
        self.scheduler: Optional[ResponseScheduler] = None
        self._listen_transport: Optional[asyncio.DatagramTransport] = None
        self._reply_transport: Optional[asyncio.DatagramTransport] = None
        self._shutdown: Optional[asyncio.Event] = None
        self._closed = False
        self.exit_code = 0

    def on_query(self, query: DiscoveryQuery) -> None:
        if self.scheduler is None:
            return
        self.scheduler.request(
            query.sender_address, query.sender_port, query.max_delay
        )

    def _pending_responses(self) -> int:
        return self.scheduler.pending if self.scheduler is not None else 0

    async def start(self) -> None:
        """Brief: Open both sockets and start receiving.

        Raises:
          - OSError when the reply socket cannot be opened, the multicast port
            cannot be bound or the group cannot be joined. Nothing is left
            open in that case.
        """

        self._shutdown = asyncio.Event()
        reply_transport, reply_protocol = await open_reply_socket(stats=self.stats)
        self._reply_transport = reply_transport
        self.scheduler = ResponseScheduler(
            self.target, self.cache, reply_protocol.sendto, stats=self.stats
        )
        self.stats.pending_gauge = self._pending_responses

        listen = self.config.listen
        try:
            self._listen_transport, _ = await start_listener(
                listen.host,
                listen.multicast_group,
                self.on_query,
                port=listen.port,
                stats=self.stats,
            )
        except OSError:
            self.close()
            raise
        logger.info(
            "Answering M-SEARCH on %s:%d (group %s) for bridge %s",
            listen.host,
            listen.port,
            listen.multicast_group,
            self.target,
        )

    def request_shutdown(self, reason: str, code: int) -> None:
        if self._shutdown is None or self._shutdown.is_set():
            return
        logger.info("Received %s, initiating shutdown (exit code=%d)", reason, code)
        self.exit_code = code
        self._shutdown.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        handlers = (
            ("SIGHUP", 0),
            ("SIGTERM", 2),
            ("SIGINT", 2),
        )
        for name, code in handlers:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            try:
                loop.add_signal_handler(signum, self.request_shutdown, name, code)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.warning("Could not install %s handler on this platform", name)

        sigusr1 = getattr(signal, "SIGUSR1", None)
        if sigusr1 is not None:
            try:
                loop.add_signal_handler(sigusr1, self.stats.log_snapshot)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.warning("Could not install SIGUSR1 handler on this platform")

    async def run(self) -> int:
        """Brief: Start, serve until a shutdown signal, then clean up.

        Outputs:
          - int exit code chosen by the signal that stopped the loop.
        """

        await self.start()
        self.install_signal_handlers()
        try:
            assert self._shutdown is not None
            await self._shutdown.wait()
        finally:
            self.close()
        return self.exit_code

    def close(self) -> None:
        """Cancel pending work and close sockets; safe to call twice."""
        if self._closed:
            return
        self._closed = True
        if self.scheduler is not None:
            self.scheduler.close()
        self.cache.close()
        if self._listen_transport is not None:
            self._listen_transport.close()
            self._listen_transport = None
        if self._reply_transport is not None:
            self._reply_transport.close()
            self._reply_transport = None
        self.stats.log_snapshot()
