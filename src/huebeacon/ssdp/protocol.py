"""SSDP M-SEARCH parsing and Hue bridge reply construction.

Brief:
  This module holds the wire-level pieces of the responder:
    - recognising an M-SEARCH request line
    - tokenising the header block into a mapping
    - filtering on the supported service types and parsing MX
    - rendering the three reply datagrams sent for every accepted query

Inputs:
  - Raw datagram bytes and the sender address.

Outputs:
  - DiscoveryQuery instances and reply datagram bytes.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger("huebeacon.ssdp")

SSDP_PORT = 1900
SSDP_MULTICAST_GROUP = "239.255.255.250"

MSEARCH_REQUEST_LINE = b"M-SEARCH * HTTP/1.1"

# Service types a Hue bridge answers for; compared exactly and case-sensitively.
SUPPORTED_SERVICE_TYPES = frozenset(
    {
        "urn:schemas-upnp-org:device:Basic:1",
        "upnp:rootdevice",
        "ssdpsearch:all",
        "ssdp:all",
    }
)

MX_MAX = 0xFFFF
_MX_MAX_DIGITS = len(str(MX_MAX))

# ASCII whitespace only; the payload is decoded as latin-1.
_HEADER_RE = re.compile(r"(\S+):\s(\S+)", re.ASCII)
_DIGITS_RE = re.compile(r"[0-9]+")

_REPLY_HEADER = (
    "HTTP/1.1 200 OK\r\n"
    "HOST: 239.255.255.250:1900\r\n"
    "CACHE-CONTROL: max-age=100\r\n"
    "EXT:\r\n"
    "LOCATION: http://{host}:{service}/description.xml\r\n"
    "SERVER: Linux/3.14.0 UPnP/1.0 IpBridge/1.24.0\r\n"
    "hue-bridgeid: {identifier}\r\n"
)

# (ST, USN) pairs, in send order.
_REPLY_VARIANTS = (
    ("upnp:rootdevice", "uuid:{identifier}::upnp:rootdevice"),
    ("uuid:{identifier}", "uuid:{identifier}"),
    ("urn:schemas-upnp-org:device:basic:1", "uuid:{identifier}"),
)


@dataclass(frozen=True)
class DiscoveryQuery:
    """One accepted M-SEARCH request.

    Inputs:
      - service_type: ST header value (member of SUPPORTED_SERVICE_TYPES).
      - max_delay: MX header value in seconds (0..65535).
      - sender_address: Source IP of the datagram.
      - sender_port: Source UDP port of the datagram.
    """

    service_type: str
    max_delay: int
    sender_address: str
    sender_port: int

    @property
    def sender(self) -> Tuple[str, int]:
        return (self.sender_address, self.sender_port)


def is_msearch(data: bytes) -> bool:
    """Return True when data starts with the exact M-SEARCH request line."""
    return bytes(data).startswith(MSEARCH_REQUEST_LINE)


def parse_headers(text: str) -> Dict[str, str]:
    """Brief: Tokenise ``Name: value`` pairs out of a header block.

    Inputs:
      - text: Header block following the request line.

    Outputs:
      - dict: header name -> value. Names and values are runs of
        non-whitespace separated by a colon and one whitespace character.
        A repeated header keeps its last value; names keep their case.

    Example:
      >>> parse_headers("\\r\\nST: ssdp:all\\r\\nMX: 2\\r\\n")
      {'ST': 'ssdp:all', 'MX': '2'}
    """

    headers: Dict[str, str] = {}
    for match in _HEADER_RE.finditer(text):
        headers[match.group(1)] = match.group(2)
    return headers


def parse_mx(value: Optional[str]) -> Optional[int]:
    """Brief: Parse an MX header value as an unsigned 16-bit integer.

    Inputs:
      - value: Raw header value or None when the header is absent.

    Outputs:
      - int in 0..65535, or None when missing, not all decimal digits, or
        out of range.
    """

    if value is None or not _DIGITS_RE.fullmatch(value):
        return None
    digits = value.lstrip("0") or "0"
    if len(digits) > _MX_MAX_DIGITS:
        return None
    mx = int(digits)
    if mx > MX_MAX:
        return None
    return mx


def parse_msearch(data: bytes, sender: Tuple[str, int]) -> Optional[DiscoveryQuery]:
    """Brief: Validate one datagram and build a DiscoveryQuery from it.

    Inputs:
      - data: Raw datagram payload.
      - sender: (address, port) the datagram came from.

    Outputs:
      - DiscoveryQuery when the datagram is an M-SEARCH for a supported
        service type with a valid MX; otherwise None.
    """

    if not is_msearch(data):
        logger.debug("Ignoring non M-SEARCH datagram from %s:%s", *sender[:2])
        return None

    text = bytes(data)[len(MSEARCH_REQUEST_LINE) :].decode("latin-1")
    headers = parse_headers(text)

    service_type = headers.get("ST", "")
    if service_type not in SUPPORTED_SERVICE_TYPES:
        logger.debug(
            "Ignoring M-SEARCH from %s:%s for unsupported ST %r",
            sender[0],
            sender[1],
            service_type,
        )
        return None

    mx = parse_mx(headers.get("MX"))
    if mx is None:
        logger.debug(
            "Ignoring M-SEARCH from %s:%s with invalid MX %r",
            sender[0],
            sender[1],
            headers.get("MX"),
        )
        return None

    return DiscoveryQuery(
        service_type=service_type,
        max_delay=mx,
        sender_address=str(sender[0]),
        sender_port=int(sender[1]),
    )


def build_replies(host: str, service: str, identifier: str) -> List[bytes]:
    """Brief: Render the three reply datagrams for one accepted query.

    Inputs:
      - host: Bridge host, used verbatim in LOCATION.
      - service: Bridge service or port, used verbatim in LOCATION.
      - identifier: Cached bridge identifier (may be empty).

    Outputs:
      - list of three bytes objects: root device, uuid and basic device
        variants, each terminated by an empty line.
    """

    head = _REPLY_HEADER.format(host=host, service=service, identifier=identifier)
    replies: List[bytes] = []
    for st, usn in _REPLY_VARIANTS:
        body = (
            f"ST: {st.format(identifier=identifier)}\r\n"
            f"USN: {usn.format(identifier=identifier)}\r\n"
            "\r\n"
        )
        replies.append((head + body).encode("utf-8"))
    return replies
