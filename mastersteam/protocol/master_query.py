"""
Master server (directory) protocol utilities

Handles the request/response frames of the Steam master server query
protocol and the backslash separated filter strings it accepts:
\\appid\\440\\name_match\\*2fort*

Request:
    '1' <region byte> "<seed ip>:<seed port>\\0" "<filter>\\0"

Response:
    FF FF FF FF 66 0A followed by 6 byte entries (4 address bytes,
    big endian port). The entry 0.0.0.0:0 ends the result set.
"""

import logging
import socket
import struct
from enum import IntEnum
from typing import List, Optional

from mastersteam.errors import MalformedFrameError
from mastersteam.models import ServerAddress

logger = logging.getLogger(__name__)

MASTER_SERVER = ServerAddress('hl2master.steampowered.com', 27011)

QUERY_OPCODE = b'1'
REPLY_HEADER = b'\xFF\xFF\xFF\xFF\x66\x0A'
ENTRY_SIZE = 6

# "No more results" marker, also the seed of the first request
SENTINEL = ServerAddress('0.0.0.0', 0)


class Region(IntEnum):
    US_EAST = 0x00
    US_WEST = 0x01
    SOUTH_AMERICA = 0x02
    EUROPE = 0x03
    ASIA = 0x04
    AUSTRALIA = 0x05
    MIDDLE_EAST = 0x06
    AFRICA = 0x07
    ALL = 0xFF


def parse_filter_text(text: str) -> dict:
    """
    Parse backslash separated key/value pairs.

    Args:
        text: Filter text, e.g. "\\appid\\440\\name_match\\foo*"

    Returns:
        Dictionary of key-value pairs

    Example:
        >>> parse_filter_text('\\\\appid\\\\440\\\\gameaddr\\\\1.2.3.4')
        {'appid': '440', 'gameaddr': '1.2.3.4'}
    """
    parts = text.split('\\')

    # Leading backslash leaves an empty first element
    if parts and parts[0] == '':
        parts = parts[1:]

    result = {}
    for i in range(0, len(parts) - 1, 2):
        result[parts[i]] = parts[i + 1]
    return result


def build_filter_text(params: dict) -> str:
    """Build a backslash separated filter string, skipping empty values."""
    return ''.join(f'\\{key}\\{value}' for key, value in params.items() if value not in (None, ''))


class DirectoryFilter:
    """
    Constraints sent with every master server request.

    Recognized keys: appid, name_match (glob on the server name),
    gameaddr (raw address match) and region. An empty filter matches
    every server in every region.
    """

    KEYS = ('appid', 'name_match', 'gameaddr', 'region')

    def __init__(self, app_id: Optional[int] = None, name_match: Optional[str] = None,
                 gameaddr: Optional[str] = None, region: int = Region.ALL):
        self.app_id = app_id
        self.name_match = name_match
        self.gameaddr = gameaddr
        self.region = Region(region)

    @classmethod
    def from_text(cls, text: str) -> 'DirectoryFilter':
        """
        Build a filter from caller supplied "\\key\\value" text.

        Raises:
            ValueError: Unknown key or non-numeric appid/region
        """
        params = parse_filter_text(text.strip())

        unknown = set(params) - set(cls.KEYS)
        if unknown:
            raise ValueError(f"Unsupported filter key(s): {', '.join(sorted(unknown))}")

        app_id = params.get('appid') or None
        region = params.get('region') or Region.ALL

        return cls(
            app_id=int(app_id) if app_id is not None else None,
            name_match=params.get('name_match') or None,
            gameaddr=params.get('gameaddr') or None,
            region=int(region),
        )

    def to_filter_string(self) -> str:
        """Wire filter string; the region travels in its own byte."""
        return build_filter_text({
            'appid': self.app_id,
            'name_match': self.name_match,
            'gameaddr': self.gameaddr,
        })

    def is_empty(self) -> bool:
        return not self.to_filter_string() and self.region == Region.ALL

    def __eq__(self, other):
        if not isinstance(other, DirectoryFilter):
            return NotImplemented
        return (self.to_filter_string(), self.region) == (other.to_filter_string(), other.region)

    def __repr__(self):
        return f"<DirectoryFilter {self.to_filter_string() or '(any)'} region={self.region.name}>"


def encode_directory_request(directory_filter: DirectoryFilter,
                             cursor: Optional[ServerAddress] = None) -> bytes:
    """
    Build one page request.

    Args:
        directory_filter: Filter to apply
        cursor: Last address of the previous page (sentinel on the first request)

    Returns:
        Request datagram
    """
    cursor = cursor or SENTINEL
    packet = bytearray(QUERY_OPCODE)
    packet.append(int(directory_filter.region))
    packet.extend(f'{cursor.host}:{cursor.port}'.encode('ascii'))
    packet.append(0x00)
    packet.extend(directory_filter.to_filter_string().encode('utf-8'))
    packet.append(0x00)
    return bytes(packet)


def pack_address(address: ServerAddress) -> bytes:
    """Pack an IPv4 address into its 6 byte directory entry."""
    return socket.inet_aton(address.host) + struct.pack('>H', address.port)


def decode_directory_response(data: bytes) -> List[ServerAddress]:
    """
    Decode one page of addresses.

    Returns:
        Addresses in wire order, including a trailing sentinel if present

    Raises:
        MalformedFrameError: Wrong reply header or a partial entry
    """
    if data[:len(REPLY_HEADER)] != REPLY_HEADER:
        raise MalformedFrameError(f"unexpected master reply header: {bytes(data[:6]).hex()}")

    body = data[len(REPLY_HEADER):]
    if len(body) % ENTRY_SIZE:
        raise MalformedFrameError(
            f"master reply carries a partial entry: {len(body)} bytes"
        )

    addresses = []
    for offset in range(0, len(body), ENTRY_SIZE):
        host = socket.inet_ntoa(body[offset:offset + 4])
        port = struct.unpack_from('>H', body, offset + 4)[0]
        addresses.append(ServerAddress(host, port))
    return addresses
