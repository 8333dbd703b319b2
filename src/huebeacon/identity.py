"""Bridge identity lookup and the rate-limited identity cache.

Brief:
  The responder advertises the real bridge's unique identifier. That value
  comes from the bridge's device description document and is fetched over
  plain HTTP at most once per refresh window.

Inputs:
  - BridgeTarget (host, service) configured at startup.

Outputs:
  - IdentityCache exposing the last successfully fetched identifier.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import time
import xml.etree.ElementTree as ET
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

import requests
from cachetools import TTLCache  # type: ignore[import]

logger = logging.getLogger("huebeacon.identity")

DEFAULT_REFRESH_INTERVAL = 300.0
DEFAULT_FETCH_TIMEOUT = 5.0
DEFAULT_DESCRIPTION_PATH = "/description.xml"

_UUID_PREFIX = "uuid:"
_UDN_PATH = ("root", "device", "UDN")
_WINDOW_KEY = "refresh-window"


class FetchError(Exception):
    """
    Brief: Upstream identity fetch failure.

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


@dataclass(frozen=True)
class BridgeTarget:
    """The real bridge being represented.

    Inputs:
      - host: Hostname or address of the bridge.
      - service: Port number or service name, kept verbatim for LOCATION.
    """

    host: str
    service: str

    def resolve_port(self) -> int:
        """Brief: Map service to a TCP port number.

        Outputs:
          - int port; numeric services are used as-is, names go through the
            system services database.

        Raises:
          - FetchError when a service name is unknown.
        """

        if self.service.isdigit():
            return int(self.service)
        try:
            return socket.getservbyname(self.service, "tcp")
        except OSError as e:
            raise FetchError(f"unknown service {self.service!r}: {e}") from e

    def __str__(self) -> str:
        return f"{self.host}:{self.service}"


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_description(document: bytes) -> str:
    """Brief: Extract the bridge identifier from a description document.

    Inputs:
      - document: XML bytes of the bridge's description.xml.

    Outputs:
      - str: text of root/device/UDN with surrounding whitespace and a
        leading ``uuid:`` removed.

    Raises:
      - FetchError when the XML is malformed or the UDN element is missing.

    Example:
      >>> parse_description(b"<root><device><UDN>uuid:ABC</UDN></device></root>")
      'ABC'
    """

    try:
        element = ET.fromstring(document)
    except ET.ParseError as e:
        raise FetchError(f"malformed description document: {e}") from e

    if _local_name(element.tag) != _UDN_PATH[0]:
        raise FetchError(f"unexpected document element {element.tag!r}")
    for name in _UDN_PATH[1:]:
        child = next((c for c in element if _local_name(c.tag) == name), None)
        if child is None:
            raise FetchError(f"description document has no {'.'.join(_UDN_PATH)}")
        element = child

    udn = (element.text or "").strip()
    if udn.startswith(_UUID_PREFIX):
        udn = udn[len(_UUID_PREFIX) :]
    return udn


class DescriptionFetcher:
    """Fetches the bridge's description document and returns its identifier.

    Every failure mode is reported as FetchError so callers have a single
    exception to handle.
    """

    def __init__(
        self,
        target: BridgeTarget,
        *,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        path: str = DEFAULT_DESCRIPTION_PATH,
    ) -> None:
        self.target = target
        self.timeout = float(timeout)
        self.path = path

    def url(self) -> str:
        return f"http://{self.target.host}:{self.target.resolve_port()}{self.path}"

    def fetch_identifier(self) -> str:
        """Brief: GET the description document and parse out the identifier.

        Outputs:
          - str identifier.

        Raises:
          - FetchError on transport errors, non-200 status or a bad document.
        """

        url = self.url()
        headers = {
            "Host": self.target.host,
            "Accept": "*/*",
            "Connection": "close",
        }
        try:
            r = requests.get(url, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise FetchError(f"GET {url} failed: {e}") from e

        if r.status_code != 200:
            raise FetchError(f"GET {url} returned HTTP {r.status_code}")
        return parse_description(r.content)

    __call__ = fetch_identifier


class IdentityCache:
    """Holds the bridge identifier and gates refreshes to one per window.

    The refresh window is a single marker entry in a TTLCache. While the
    marker is present a refresh is not permitted; it expires after
    refresh_interval seconds regardless of whether the fetch that opened the
    window succeeded. A failed fetch leaves the previous identifier in place.

    All methods must be called from the event loop thread. The fetch itself
    runs on a dedicated single-worker executor and its result is applied from
    the future's done-callback, which asyncio runs on the loop thread.
    """

    def __init__(
        self,
        fetch: Callable[[], str],
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        *,
        timer: Callable[[], float] = time.monotonic,
        stats=None,
    ) -> None:
        self._fetch = fetch
        self.refresh_interval = float(refresh_interval)
        self._window: TTLCache = TTLCache(
            maxsize=1, ttl=self.refresh_interval, timer=timer
        )
        self._identifier = ""
        self._inflight: Optional[asyncio.Future] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self.stats = stats
        self.fetch_attempts = 0

    @property
    def identifier(self) -> str:
        return self._identifier

    @property
    def fresh(self) -> bool:
        """True when a new fetch attempt is permitted right now."""
        return _WINDOW_KEY not in self._window

    @property
    def inflight(self) -> Optional[asyncio.Future]:
        return self._inflight

    def ensure_fresh(self) -> Optional[asyncio.Future]:
        """Brief: Start a fetch if the refresh window allows it.

        Outputs:
          - The future of the fetch started by this call, or of a fetch that
            is still running; None when no fetch is pending.

        Notes:
          - The window is opened before the fetch starts, so repeated calls
            within refresh_interval are no-ops even when the fetch fails.
        """

        if not self.fresh:
            return self._inflight
        if self._inflight is not None and not self._inflight.done():
            return self._inflight

        self._window[_WINDOW_KEY] = True
        self.fetch_attempts += 1
        if self.stats is not None:
            self.stats.record_fetch_attempt()

        loop = asyncio.get_running_loop()
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="huebeacon-fetch"
            )
        future = loop.run_in_executor(self._executor, self._fetch)
        future.add_done_callback(self._on_fetch_done)
        self._inflight = future
        logger.debug("Started identity fetch #%d", self.fetch_attempts)
        return future

    def _on_fetch_done(self, future: asyncio.Future) -> None:
        if self._inflight is future:
            self._inflight = None
        if future.cancelled():
            return

        exc = future.exception()
        if exc is not None:
            if self.stats is not None:
                self.stats.record_fetch_failure()
            if isinstance(exc, FetchError):
                logger.warning(
                    "Identity fetch failed, keeping %r: %s", self._identifier, exc
                )
            else:
                logger.error(
                    "Identity fetch raised unexpectedly, keeping %r",
                    self._identifier,
                    exc_info=exc,
                )
            return

        identifier = future.result()
        if identifier != self._identifier:
            logger.info("Bridge identifier is now %r", identifier)
        self._identifier = identifier

    def close(self) -> None:
        """Abandon an in-flight fetch and release the worker thread."""
        if self._inflight is not None:
            self._inflight.cancel()
            self._inflight = None
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
