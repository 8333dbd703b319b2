import asyncio
import logging
import socket
from typing import Callable, Optional, Tuple

from ..ssdp.protocol import SSDP_PORT, DiscoveryQuery, parse_msearch

logger = logging.getLogger("huebeacon.listener")


def open_multicast_socket(
    listen_address: str, multicast_group: str, port: int = SSDP_PORT
) -> socket.socket:
    """
    Brief: Bind a UDP socket for SSDP and join the multicast group.

    Inputs:
    - listen_address: local IPv4 address to bind (usually 0.0.0.0)
    - multicast_group: IPv4 multicast group to join
    - port: UDP port (1900 for SSDP)

    Outputs:
    - socket.socket: non-blocking, address-reuse enabled, group joined

    Raises:
    - OSError when binding or joining fails; the socket is closed first.

    Example:
        >>> # sock = open_multicast_socket('0.0.0.0', '239.255.255.250')
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((listen_address, port))
        mreq = socket.inet_aton(multicast_group) + socket.inet_aton(listen_address)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class SSDPListener(asyncio.DatagramProtocol):
    """
    Brief: Datagram protocol that turns M-SEARCH requests into queries.

    Inputs:
    - on_query: callable invoked with each accepted DiscoveryQuery
    - stats: optional ResponderStats

    Outputs:
    - None

    Example:
        See BeaconApp.start.
    """

    def __init__(self, on_query: Callable[[DiscoveryQuery], None], stats=None):
        self.on_query = on_query
        self.stats = stats
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        if self.stats is not None:
            self.stats.record_datagram()

        query = parse_msearch(data, addr)
        if query is None:
            if self.stats is not None:
                self.stats.record_rejected()
            return

        if self.stats is not None:
            self.stats.record_accepted()
        logger.debug(
            "M-SEARCH from %s:%d ST=%s MX=%d",
            query.sender_address,
            query.sender_port,
            query.service_type,
            query.max_delay,
        )
        try:
            self.on_query(query)
        except Exception:
            logger.exception(
                "Failed to schedule response to %s:%d",
                query.sender_address,
                query.sender_port,
            )

    def error_received(self, exc: Exception) -> None:
        logger.warning("Multicast socket error: %s", exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None:
            logger.warning("Multicast socket closed with error: %s", exc)
        self.transport = None


class ReplyProtocol(asyncio.DatagramProtocol):
    """Unicast socket used only for sending replies."""

    def __init__(self, stats=None):
        self.stats = stats
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport) -> None:
        self.transport = transport

    def error_received(self, exc: Exception) -> None:
        logger.warning("Reply socket error: %s", exc)
        if self.stats is not None:
            self.stats.record_send_error()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.transport = None

    def sendto(self, data: bytes, addr: Tuple[str, int]) -> None:
        if self.transport is None:
            raise ConnectionError("reply socket is closed")
        self.transport.sendto(data, addr)


async def start_listener(
    listen_address: str,
    multicast_group: str,
    on_query: Callable[[DiscoveryQuery], None],
    *,
    port: int = SSDP_PORT,
    stats=None,
) -> Tuple[asyncio.DatagramTransport, SSDPListener]:
    """
    Brief: Open the multicast socket and attach an SSDPListener to it.

    Inputs:
    - listen_address, multicast_group, port: see open_multicast_socket
    - on_query: callable receiving accepted DiscoveryQuery objects
    - stats: optional ResponderStats

    Outputs:
    - (transport, protocol)
    """
    sock = open_multicast_socket(listen_address, multicast_group, port)
    loop = asyncio.get_running_loop()
    try:
        return await loop.create_datagram_endpoint(
            lambda: SSDPListener(on_query, stats=stats), sock=sock
        )
    except Exception:
        sock.close()
        raise


async def open_reply_socket(stats=None) -> Tuple[asyncio.DatagramTransport, ReplyProtocol]:
    """Open an unbound IPv4 UDP endpoint for unicast replies."""
    loop = asyncio.get_running_loop()
    return await loop.create_datagram_endpoint(
        lambda: ReplyProtocol(stats=stats), family=socket.AF_INET
    )
