"""
Frame builders and in-process fake UDP servers for the test suite.
"""

import asyncio
import bz2
import contextlib
import socket
import struct
import zlib
from types import SimpleNamespace

from mastersteam.models import ServerAddress

SIMPLE = b'\xFF\xFF\xFF\xFF'
SPLIT = b'\xFE\xFF\xFF\xFF'
MASTER_REPLY = b'\xFF\xFF\xFF\xFF\x66\x0A'


def make_config(**overrides):
    values = dict(
        API_HOST='127.0.0.1',
        API_PORT=0,
        MASTER_HOST='127.0.0.1',
        MASTER_PORT=27011,
        MASTER_TIMEOUT=1.0,
        MASTER_MAX_PAGES=100,
        MASTER_PAGE_DELAY=0.0,
        QUERY_TIMEOUT=1.0,
        QUERY_WORKERS=4,
        QUERY_QUEUE_SIZE=10,
        FAULT_POLICY='contain',
        LOG_LEVEL='DEBUG',
    )
    values.update(overrides)
    return SimpleNamespace(**values)


# =============================================================================
# Frame builders
# =============================================================================

def cstr(text: str) -> bytes:
    return text.encode('utf-8') + b'\x00'


def info_body(name='Test Server', map_name='de_dust2', folder='cstrike',
              game='Counter-Strike: Source', app_id=240, players=0, max_players=24,
              bots=0, server_type=b'd', os=b'l', visibility=0, vac=1,
              version='1.0.0.0', protocol=17, edf=None, port=27015, steam_id=0,
              keywords='', game_id=0, ship=b''):
    body = bytes([protocol]) + cstr(name) + cstr(map_name) + cstr(folder) + cstr(game)
    body += struct.pack('<H', app_id)
    body += bytes([players, max_players, bots]) + server_type + os + bytes([visibility, vac])
    body += ship
    body += cstr(version)

    if edf is not None:
        body += bytes([edf])
        if edf & 0x80:
            body += struct.pack('<H', port)
        if edf & 0x10:
            body += struct.pack('<Q', steam_id)
        if edf & 0x40:
            body += struct.pack('<H', 27020) + cstr('SourceTV')
        if edf & 0x20:
            body += cstr(keywords)
        if edf & 0x01:
            body += struct.pack('<Q', game_id)
    return body


def info_response(**fields) -> bytes:
    return SIMPLE + b'I' + info_body(**fields)


def goldsource_info_response(name='Half-Life Server', map_name='crossfire', players=2,
                             max_players=16, bots=1, protocol=47) -> bytes:
    return (
        SIMPLE + b'm' + cstr('203.0.113.7:27015') + cstr(name) + cstr(map_name)
        + cstr('valve') + cstr('Half-Life') + bytes([players, max_players, protocol])
        + b'D' + b'W' + bytes([1, 0, 1, bots])
    )


def challenge_response(challenge: int) -> bytes:
    return SIMPLE + b'A' + struct.pack('<I', challenge)


def player_response(players) -> bytes:
    """players: iterable of (index, name, score, duration)."""
    players = list(players)
    packet = SIMPLE + b'D' + bytes([len(players)])
    for index, name, score, duration in players:
        packet += bytes([index]) + cstr(name) + struct.pack('<if', score, duration)
    return packet


def split_packets(payload: bytes, frame_id=7, chunk=64, compress=False, packet_size=True):
    """Cut a single-packet response into split datagrams."""
    data = bz2.compress(payload) if compress else payload
    parts = [data[i:i + chunk] for i in range(0, len(data), chunk)]
    raw_id = frame_id | 0x80000000 if compress else frame_id

    packets = []
    for index, part in enumerate(parts):
        header = SPLIT + struct.pack('<IBB', raw_id, len(parts), index)
        if packet_size:
            header += struct.pack('<H', 1248)
        if compress and index == 0:
            header += struct.pack('<II', len(payload), zlib.crc32(payload))
        packets.append(header + part)
    return packets


def master_response(addresses) -> bytes:
    return MASTER_REPLY + b''.join(
        socket.inet_aton(host) + struct.pack('>H', port) for host, port in addresses
    )


# =============================================================================
# Fake servers
# =============================================================================

class FakeUdpServer(asyncio.DatagramProtocol):
    """Answers each datagram with whatever handler(data) returns."""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []
        self.transport = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.requests.append(data)
        for reply in self.handler(data) or ():
            self.transport.sendto(reply, addr)

    @property
    def address(self) -> ServerAddress:
        host, port = self.transport.get_extra_info('sockname')[:2]
        return ServerAddress(host, port)


@contextlib.asynccontextmanager
async def udp_server(handler):
    loop = asyncio.get_running_loop()
    transport, server = await loop.create_datagram_endpoint(
        lambda: FakeUdpServer(handler),
        local_addr=('127.0.0.1', 0)
    )
    try:
        yield server
    finally:
        transport.close()


def silent(data):
    return []


class A2SHandler:
    """
    Behaves like a game server: challenge first, then the answer.

    Counts requests per kind so tests can assert what was asked.
    """

    def __init__(self, info=None, players=(), challenge=0x1A2B3C4D,
                 info_challenge=True, repeat_challenge=False, split=False,
                 compress=False, answer_players=True):
        self.info = info if info is not None else info_response()
        self.players = list(players)
        self.challenge = challenge
        self.info_challenge = info_challenge
        self.repeat_challenge = repeat_challenge
        self.split = split
        self.compress = compress
        self.answer_players = answer_players
        self.info_requests = []
        self.player_requests = []

    def _reply(self, payload):
        if self.split:
            return split_packets(payload, compress=self.compress)
        return [payload]

    def __call__(self, data):
        token = struct.pack('<I', self.challenge)

        if data[4] == 0x54:
            self.info_requests.append(data)
            if self.repeat_challenge or (self.info_challenge and data[-4:] != token):
                return [challenge_response(self.challenge)]
            return self._reply(self.info)

        if data[4] == 0x55:
            self.player_requests.append(data)
            if not self.answer_players:
                return []
            if self.repeat_challenge or data[5:9] != token:
                return [challenge_response(self.challenge)]
            return self._reply(player_response(self.players))

        return []


class MasterHandler:
    """Serves one page per request from a list of pages."""

    def __init__(self, pages):
        self.pages = [list(page) for page in pages]
        self.requests = []

    def __call__(self, data):
        page = len(self.requests)
        self.requests.append(data)
        if page >= len(self.pages):
            return []
        return [master_response(self.pages[page])]


def run(coro):
    return asyncio.run(coro)
