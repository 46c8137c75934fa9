"""
A2S Server Query Client

Queries a single game server over UDP for its info record and player
roster.

Communication Flow (per query kind):
1. Client sends the request (A2S_INFO, or A2S_PLAYER with the placeholder)
2. Server answers directly, or with a challenge (0x41)
3. Client resends the request once with that challenge
4. Server answers with a single packet or a split (multi-packet) frame

A second challenge in a row is a protocol error; there is no retry loop.
Datagrams left over from an earlier exchange are dropped before each
request, and complete replies of the wrong kind are skipped, so GoldSource
servers answering A2S_INFO twice (m and I) do not poison the roster query.
"""

import asyncio
import logging
from typing import List, Optional

from mastersteam.clients.datagram import DatagramQueueProtocol
from mastersteam.errors import NetworkError, ProtocolError, QueryError, QueryTimeoutError
from mastersteam.models import InfoRecord, PlayerRecord, ServerAddress
from mastersteam.protocol.source_query import (
    FragmentBuffer,
    ResponseHeader,
    ResponseKind,
    decode_challenge,
    decode_fragment,
    decode_info_body,
    decode_player_body,
    decode_response_header,
    encode_info_request,
    encode_player_request,
    split_has_packet_size,
)
from mastersteam.utils.fault_policy import DEFAULT_FAULT_POLICY

DEFAULT_TIMEOUT = 3.0

logger = logging.getLogger(__name__)


class ServerQuerier:
    """
    Query client bound to one server address.

    Owns a connected UDP endpoint for its whole life; close() releases it.
    Every failure is raised as a QueryError subclass carrying the address.
    """

    def __init__(self, address: ServerAddress, timeout: float = DEFAULT_TIMEOUT, policy=None):
        """
        Args:
            address: Server to query
            timeout: Seconds allowed for each query, handshake included
            policy: Fault policy wrapped around every decode step
        """
        self.address = ServerAddress(*address)
        self.timeout = timeout
        self.policy = policy or DEFAULT_FAULT_POLICY
        self.transport = None
        self.protocol = None
        self.fragments = FragmentBuffer()
        self.split_with_packet_size = True

    # =========================================================================
    # Endpoint Lifecycle
    # =========================================================================

    @classmethod
    async def open(cls, address: ServerAddress, timeout: float = DEFAULT_TIMEOUT,
                   policy=None) -> 'ServerQuerier':
        """Create a querier and its UDP endpoint."""
        querier = cls(address, timeout, policy)
        await querier.connect()
        return querier

    async def connect(self):
        """
        Create the connected UDP endpoint.

        Raises:
            NetworkError: Socket creation or name resolution failed
            QueryTimeoutError: Name resolution took longer than the timeout
        """
        loop = asyncio.get_running_loop()
        try:
            self.transport, self.protocol = await asyncio.wait_for(
                loop.create_datagram_endpoint(
                    DatagramQueueProtocol,
                    remote_addr=(self.address.host, self.address.port)
                ),
                self.timeout
            )
        except asyncio.TimeoutError:
            raise QueryTimeoutError(self.address, self.timeout) from None
        except OSError as e:
            raise NetworkError(f"cannot open UDP endpoint: {e}", self.address) from e

    def close(self):
        """Release the endpoint. Safe to call more than once."""
        if self.transport is not None:
            self.transport.close()
            self.transport = None
        self.fragments.clear()

    async def __aenter__(self):
        if self.transport is None:
            await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
        return False

    # =========================================================================
    # Queries
    # =========================================================================

    async def query_info(self) -> InfoRecord:
        """
        Fetch the server's A2S_INFO record.

        Raises:
            QueryTimeoutError: No complete answer within the timeout
            ProtocolError: Repeated challenge
            MalformedFrameError: Response could not be decoded
            NetworkError: Socket error
        """
        header = await self._challenge_exchange(encode_info_request, ResponseKind.INFO, 'info')
        info = self._decode(decode_info_body, header.opcode, header.body)
        self.split_with_packet_size = split_has_packet_size(info)
        logger.debug(f"[A2S] {self.address} info: {info.name!r} on {info.map_name} ({info.players}/{info.max_players})")
        return info

    async def query_players(self) -> List[PlayerRecord]:
        """
        Fetch the server's player roster (A2S_PLAYER).

        Callers skip this when the info record reports no players.
        """
        header = await self._challenge_exchange(encode_player_request, ResponseKind.PLAYER, 'player')
        players = self._decode(decode_player_body, header.body)
        logger.debug(f"[A2S] {self.address} returned {len(players)} player(s)")
        return players

    async def _challenge_exchange(self, build_request, expected: ResponseKind, what: str) -> ResponseHeader:
        deadline = asyncio.get_running_loop().time() + self.timeout

        header = await self._request(build_request(None), deadline, expected)

        if header.kind is ResponseKind.CHALLENGE:
            challenge = self._decode(decode_challenge, header.body)
            logger.debug(f"[A2S] {self.address} {what} challenge: 0x{challenge:08x}")

            header = await self._request(build_request(challenge), deadline, expected)
            if header.kind is ResponseKind.CHALLENGE:
                raise ProtocolError(f"server repeated the {what} challenge", self.address)

        return header

    # =========================================================================
    # Datagram I/O
    # =========================================================================

    async def _request(self, packet: bytes, deadline: float, expected: ResponseKind) -> ResponseHeader:
        if self.transport is None:
            raise NetworkError("endpoint is closed", self.address)

        self._discard_stale()
        try:
            self.transport.sendto(packet)
        except OSError as e:
            raise NetworkError(f"send failed: {e}", self.address) from e

        return await self._receive(deadline, expected)

    def _discard_stale(self):
        """Drop datagrams that arrived before the next request goes out."""
        stale = 0
        while True:
            try:
                self.protocol.datagrams.get_nowait()
            except asyncio.QueueEmpty:
                break
            stale += 1

        if stale:
            logger.debug(f"[A2S] {self.address} discarded {stale} stale datagram(s)")

    async def _receive(self, deadline: float, expected: ResponseKind) -> ResponseHeader:
        """
        Read datagrams until a complete challenge or expected response is
        available. Complete responses of any other kind are skipped.
        """
        loop = asyncio.get_running_loop()

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise QueryTimeoutError(self.address, self.timeout)

            try:
                data, source = await asyncio.wait_for(self.protocol.datagrams.get(), remaining)
            except asyncio.TimeoutError:
                raise QueryTimeoutError(self.address, self.timeout) from None

            if isinstance(data, Exception):
                raise NetworkError(f"receive failed: {data}", self.address) from data

            header = self._decode(decode_response_header, data)
            if header.kind is ResponseKind.SPLIT:
                fragment = self._decode(decode_fragment, header.body, self.split_with_packet_size)
                logger.debug(
                    f"[A2S] {self.address} fragment {fragment.index + 1}/{fragment.total} "
                    f"of frame {fragment.frame_id}"
                )

                payload = self._decode(self.fragments.add, source, fragment)
                if payload is None:
                    continue

                header = self._decode(decode_response_header, payload)
                if header.kind is ResponseKind.SPLIT:
                    raise ProtocolError("split frame nested inside a split frame", self.address)

            if header.kind is ResponseKind.CHALLENGE or header.kind is expected:
                return header

            logger.debug(
                f"[A2S] {self.address} ignoring {header.kind.value} reply "
                f"while waiting for {expected.value}"
            )

    def _decode(self, fn, *args):
        """Run a decoder under the fault policy and tag errors with our address."""
        try:
            return self.policy(fn, *args)
        except QueryError as e:
            if e.address is None:
                e.address = self.address
            raise

    def __repr__(self):
        state = 'open' if self.transport is not None else 'closed'
        return f"<ServerQuerier {self.address} {state}>"


async def query_server(address: ServerAddress, timeout: float = DEFAULT_TIMEOUT,
                       policy=None, with_players: bool = True):
    """
    Query info and, when anybody is playing, the roster of one server.

    A roster failure after a good info record keeps the info record and
    returns None for the players.

    Returns:
        Tuple of (InfoRecord, list of PlayerRecord or None)
    """
    async with ServerQuerier(address, timeout, policy) as querier:
        info = await querier.query_info()

        players: Optional[List[PlayerRecord]] = None
        if with_players and info.players > 0:
            try:
                players = await querier.query_players()
            except QueryError as e:
                logger.info(f"[A2S] Player query failed for {address}: {e}")

        return info, players
