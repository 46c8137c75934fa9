"""
A2S (Source/GoldSource server query) wire codec

Pure encode/decode functions for the UDP server query protocol:
- A2S_INFO / A2S_PLAYER requests
- Challenge, info and player responses
- Split (multi-packet) responses, including bz2 compressed ones

Every datagram starts with a 4 byte marker:
    FF FF FF FF  single packet, opcode byte follows
    FE FF FF FF  split packet fragment

Old Source builds (app ids 215, 240, 17550 and 17700 at protocol 7) send
split headers without the max packet size field. Which layout applies can
only be told from an earlier info response, see split_has_packet_size().

Nothing here touches the network; decoding errors are raised as
MalformedFrameError.
"""

import bz2
import logging
import struct
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, NamedTuple, Optional

from mastersteam.errors import MalformedFrameError
from mastersteam.models import (
    ExtendedInfo,
    InfoRecord,
    PlayerRecord,
    ServerOS,
    ServerType,
    Visibility,
)
from mastersteam.protocol.packet_reader import PacketReader

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

SIMPLE_HEADER = b'\xFF\xFF\xFF\xFF'
SPLIT_HEADER = b'\xFE\xFF\xFF\xFF'

# Request opcodes (client -> server)
A2S_INFO = 0x54          # 'T'
A2S_PLAYER = 0x55        # 'U'

INFO_QUERY_STRING = b'Source Engine Query\x00'
LEGACY_INFO_QUERY = b'details\x00'

# Response opcodes (server -> client)
S2C_CHALLENGE = 0x41         # 'A'
S2A_INFO_SOURCE = 0x49       # 'I'
S2A_INFO_GOLDSOURCE = 0x6D   # 'm'
S2A_PLAYER = 0x44            # 'D'

# Challenge placeholder sent on the first player request
CHALLENGE_PLACEHOLDER = 0xFFFFFFFF

# FE FF FF FF + id(4) + total(1) + index(1) + size(2)
MIN_SIMPLE_SIZE = 5
MIN_SPLIT_SIZE = 12

SPLIT_COMPRESSED_FLAG = 0x80000000

# Protocol 7 builds of these apps leave the max packet size out of the
# split header
NO_PACKET_SIZE_APP_IDS = frozenset({215, 240, 17550, 17700})
NO_PACKET_SIZE_PROTOCOL = 7

# Extra data flags (EDF) of the Source info response
EDF_PORT = 0x80
EDF_STEAM_ID = 0x10
EDF_SPECTATOR = 0x40
EDF_KEYWORDS = 0x20
EDF_GAME_ID = 0x01

# The Ship inserts mode/witnesses/duration after the VAC byte
THE_SHIP_APP_ID = 2400

_SERVER_TYPES = {
    'd': ServerType.DEDICATED,
    'l': ServerType.LISTEN,
    'p': ServerType.PROXY,
}

_SERVER_OS = {
    'l': ServerOS.LINUX,
    'w': ServerOS.WINDOWS,
    'm': ServerOS.MAC,
    'o': ServerOS.MAC,
}

_VISIBILITY = {
    0: Visibility.PUBLIC,
    1: Visibility.PRIVATE,
}


class ResponseKind(Enum):
    CHALLENGE = 'challenge'
    INFO = 'info'
    PLAYER = 'player'
    SPLIT = 'split'


_RESPONSE_KINDS = {
    S2C_CHALLENGE: ResponseKind.CHALLENGE,
    S2A_INFO_SOURCE: ResponseKind.INFO,
    S2A_INFO_GOLDSOURCE: ResponseKind.INFO,
    S2A_PLAYER: ResponseKind.PLAYER,
}


class ResponseHeader(NamedTuple):
    """Discriminated datagram: kind, opcode (None for splits) and body."""

    kind: ResponseKind
    opcode: Optional[int]
    body: bytes


@dataclass
class Fragment:
    """One datagram of a split response."""

    frame_id: int
    index: int
    total: int
    payload: bytes
    compressed: bool = False
    decompressed_size: Optional[int] = None
    crc: Optional[int] = None


# =============================================================================
# Requests
# =============================================================================

def encode_info_request(challenge: Optional[int] = None, legacy: bool = False) -> bytes:
    """
    Build an A2S_INFO request.

    Args:
        challenge: Challenge returned by the server, echoed on the retry
        legacy: Use the GoldSource "details" query string instead

    Returns:
        Request datagram
    """
    if legacy:
        return SIMPLE_HEADER + LEGACY_INFO_QUERY

    packet = SIMPLE_HEADER + bytes([A2S_INFO]) + INFO_QUERY_STRING
    if challenge is not None:
        packet += struct.pack('<I', challenge)
    return packet


def encode_player_request(challenge: Optional[int] = None) -> bytes:
    """Build an A2S_PLAYER request; without a challenge the placeholder is sent."""
    if challenge is None:
        challenge = CHALLENGE_PLACEHOLDER
    return SIMPLE_HEADER + bytes([A2S_PLAYER]) + struct.pack('<I', challenge)


# =============================================================================
# Response headers
# =============================================================================

def decode_response_header(data: bytes) -> ResponseHeader:
    """
    Classify a datagram by its marker and opcode.

    Args:
        data: Raw datagram

    Returns:
        ResponseHeader; for split packets the body starts at the frame id

    Raises:
        MalformedFrameError: Short buffer, unknown marker or unknown opcode
    """
    marker = bytes(data[:4])

    if marker == SPLIT_HEADER:
        if len(data) < MIN_SPLIT_SIZE:
            raise MalformedFrameError(f"split packet too short: {len(data)} bytes")
        return ResponseHeader(ResponseKind.SPLIT, None, bytes(data[4:]))

    if marker == SIMPLE_HEADER:
        if len(data) < MIN_SIMPLE_SIZE:
            raise MalformedFrameError(f"packet too short: {len(data)} bytes")
        opcode = data[4]
        kind = _RESPONSE_KINDS.get(opcode)
        if kind is None:
            raise MalformedFrameError(f"unknown response type 0x{opcode:02x}")
        return ResponseHeader(kind, opcode, bytes(data[5:]))

    if len(data) < 4:
        raise MalformedFrameError(f"packet too short: {len(data)} bytes")
    raise MalformedFrameError(f"unknown packet marker {marker.hex()}")


def decode_challenge(body: bytes) -> int:
    """Extract the 32-bit challenge from an S2C_CHALLENGE body."""
    return PacketReader(body).read_uint32('challenge')


# =============================================================================
# Info responses
# =============================================================================

def _lookup(table: dict, key, what: str):
    try:
        return table[key]
    except KeyError:
        raise MalformedFrameError(f"unknown {what} {key!r}") from None


def _read_server_type(reader: PacketReader) -> ServerType:
    return _lookup(_SERVER_TYPES, chr(reader.read_uint8('server type')).lower(), 'server type')


def _read_server_os(reader: PacketReader) -> ServerOS:
    return _lookup(_SERVER_OS, chr(reader.read_uint8('server os')).lower(), 'server os')


def _read_visibility(reader: PacketReader) -> Visibility:
    return _lookup(_VISIBILITY, reader.read_uint8('visibility'), 'visibility')


def decode_info_body(opcode: int, body: bytes) -> InfoRecord:
    """
    Decode an info response body (everything after the opcode).

    Args:
        opcode: S2A_INFO_SOURCE or S2A_INFO_GOLDSOURCE
        body: Response body

    Returns:
        InfoRecord; only Source responses carry the extended block

    Raises:
        MalformedFrameError: Truncated body or out-of-range enum value
    """
    if opcode == S2A_INFO_SOURCE:
        return _decode_source_info(PacketReader(body))
    if opcode == S2A_INFO_GOLDSOURCE:
        return _decode_goldsource_info(PacketReader(body))
    raise MalformedFrameError(f"not an info response: 0x{opcode:02x}")


def _decode_source_info(reader: PacketReader) -> InfoRecord:
    protocol = reader.read_uint8('protocol')
    name = reader.read_cstring('name')
    map_name = reader.read_cstring('map')
    folder = reader.read_cstring('folder')
    game = reader.read_cstring('game')
    app_id = reader.read_uint16('app id')
    players = reader.read_uint8('players')
    max_players = reader.read_uint8('max players')
    bots = reader.read_uint8('bots')
    server_type = _read_server_type(reader)
    server_os = _read_server_os(reader)
    visibility = _read_visibility(reader)
    vac = reader.read_uint8('vac') == 1

    if app_id == THE_SHIP_APP_ID:
        reader.read_bytes(3, 'The Ship fields')

    ext = ExtendedInfo(app_id=app_id, game_version=reader.read_cstring('version'))

    if reader.remaining:
        edf = reader.read_uint8('extra data flags')
        if edf & EDF_PORT:
            ext.port = reader.read_uint16('game port')
        if edf & EDF_STEAM_ID:
            ext.steam_id = reader.read_uint64('steam id')
        if edf & EDF_SPECTATOR:
            reader.read_uint16('spectator port')
            reader.read_cstring('spectator name')
        if edf & EDF_KEYWORDS:
            ext.game_mode = reader.read_cstring('keywords')
        if edf & EDF_GAME_ID:
            ext.game_id = reader.read_uint64('game id')

    return InfoRecord(
        protocol=protocol,
        name=name,
        map_name=map_name,
        folder=folder,
        game=game,
        players=players,
        max_players=max_players,
        bots=bots,
        server_type=server_type,
        os=server_os,
        visibility=visibility,
        vac=vac,
        ext=ext,
    )


def _decode_goldsource_info(reader: PacketReader) -> InfoRecord:
    reader.read_cstring('address')
    name = reader.read_cstring('name')
    map_name = reader.read_cstring('map')
    folder = reader.read_cstring('folder')
    game = reader.read_cstring('game')
    players = reader.read_uint8('players')
    max_players = reader.read_uint8('max players')
    protocol = reader.read_uint8('protocol')
    server_type = _read_server_type(reader)
    server_os = _read_server_os(reader)
    visibility = _read_visibility(reader)

    if reader.read_uint8('mod flag') == 1:
        reader.read_cstring('mod link')
        reader.read_cstring('mod download link')
        reader.read_uint8('mod padding')
        reader.read_uint32('mod version')
        reader.read_uint32('mod size')
        reader.read_uint8('mod type')
        reader.read_uint8('mod dll')

    vac = reader.read_uint8('vac') == 1
    bots = reader.read_uint8('bots')

    return InfoRecord(
        protocol=protocol,
        name=name,
        map_name=map_name,
        folder=folder,
        game=game,
        players=players,
        max_players=max_players,
        bots=bots,
        server_type=server_type,
        os=server_os,
        visibility=visibility,
        vac=vac,
    )


# =============================================================================
# Player responses
# =============================================================================

def decode_player_body(body: bytes) -> List[PlayerRecord]:
    """
    Decode an S2A_PLAYER body: a count byte followed by that many entries
    of index, name, score and connected duration.
    """
    reader = PacketReader(body)
    count = reader.read_uint8('player count')

    players = []
    for _ in range(count):
        players.append(PlayerRecord(
            index=reader.read_uint8('player index'),
            name=reader.read_cstring('player name'),
            score=reader.read_int32('player score'),
            duration=reader.read_float32('player duration'),
        ))
    return players


# =============================================================================
# Split responses
# =============================================================================

def split_has_packet_size(info: Optional[InfoRecord]) -> bool:
    """Whether split headers from the server that sent info carry the max packet size."""
    if info is None or info.ext is None:
        return True
    return not (info.protocol == NO_PACKET_SIZE_PROTOCOL
                and info.ext.app_id in NO_PACKET_SIZE_APP_IDS)


def decode_fragment(body: bytes, with_packet_size: bool = True) -> Fragment:
    """
    Decode the split header of one fragment.

    Args:
        body: Datagram without the FE FF FF FF marker
        with_packet_size: False for old Source builds that omit the field

    Returns:
        Fragment with its payload
    """
    reader = PacketReader(body)
    raw_id = reader.read_uint32('frame id')
    total = reader.read_uint8('fragment total')
    index = reader.read_uint8('fragment index')
    if with_packet_size:
        reader.read_uint16('max packet size')

    compressed = bool(raw_id & SPLIT_COMPRESSED_FLAG)
    fragment = Fragment(
        frame_id=raw_id & ~SPLIT_COMPRESSED_FLAG,
        index=index,
        total=total,
        payload=b'',
        compressed=compressed,
    )

    if compressed and index == 0:
        fragment.decompressed_size = reader.read_uint32('decompressed size')
        fragment.crc = reader.read_uint32('crc32')

    fragment.payload = reader.read_rest()
    return fragment


def reassemble_fragments(fragments: Iterable[Fragment]) -> Optional[bytes]:
    """
    Join the fragments of one split frame.

    Fragments may arrive in any order. Returns None while fragments are
    missing, otherwise the assembled (and, if flagged, decompressed) payload,
    which starts with its own FF FF FF FF marker.

    Raises:
        MalformedFrameError: Fragments disagree on id, total or compression,
            an index is out of range, or the decompressed payload fails its
            size/CRC check
    """
    fragments = list(fragments)
    if not fragments:
        return None

    first = fragments[0]
    if first.total == 0:
        raise MalformedFrameError("split frame declares zero fragments")

    by_index = {}
    for fragment in fragments:
        if fragment.frame_id != first.frame_id:
            raise MalformedFrameError(
                f"fragment of frame {fragment.frame_id} mixed into frame {first.frame_id}"
            )
        if fragment.total != first.total:
            raise MalformedFrameError(
                f"inconsistent fragment total in frame {first.frame_id}: "
                f"{fragment.total} != {first.total}"
            )
        if fragment.compressed != first.compressed:
            raise MalformedFrameError(
                f"inconsistent compression flag in frame {first.frame_id}"
            )
        if fragment.index >= fragment.total:
            raise MalformedFrameError(
                f"fragment index {fragment.index} out of range for total {fragment.total}"
            )
        by_index[fragment.index] = fragment

    if len(by_index) < first.total:
        return None

    ordered = [by_index[i] for i in range(first.total)]
    payload = b''.join(fragment.payload for fragment in ordered)

    if first.compressed:
        payload = _decompress(ordered[0], payload)

    return payload


def _decompress(head: Fragment, payload: bytes) -> bytes:
    try:
        data = bz2.decompress(payload)
    except (OSError, ValueError) as e:
        raise MalformedFrameError(f"bz2 decompression failed: {e}") from e

    if head.decompressed_size is not None and len(data) != head.decompressed_size:
        raise MalformedFrameError(
            f"decompressed size {len(data)} != declared {head.decompressed_size}"
        )
    if head.crc is not None and zlib.crc32(data) != head.crc:
        raise MalformedFrameError("decompressed payload failed its CRC32 check")

    logger.debug(f"[A2S] Decompressed split frame {head.frame_id}: {len(payload)} -> {len(data)} bytes")
    return data


class FragmentBuffer:
    """
    In-flight split frames keyed by (source address, frame id).

    A frame leaves the buffer once it is complete or found malformed.
    """

    def __init__(self):
        self._frames = {}

    def __len__(self):
        return len(self._frames)

    def add(self, source, fragment: Fragment) -> Optional[bytes]:
        """Store a fragment; return the assembled payload once complete."""
        key = (source, fragment.frame_id)
        frame = self._frames.setdefault(key, [])
        frame.append(fragment)

        try:
            payload = reassemble_fragments(frame)
        except MalformedFrameError:
            del self._frames[key]
            raise

        if payload is not None:
            del self._frames[key]
        return payload

    def clear(self):
        self._frames.clear()
