"""Tests for ServerQuerier against in-process fake game servers."""

import asyncio
import struct

import pytest

from mastersteam.clients import server_querier
from mastersteam.clients.server_querier import ServerQuerier, query_server
from mastersteam.errors import (
    MalformedFrameError,
    NetworkError,
    ProtocolError,
    QueryTimeoutError,
)
from mastersteam.utils.fault_policy import propagate_faults
from tests.helpers import (
    SIMPLE,
    A2SHandler,
    goldsource_info_response,
    info_response,
    player_response,
    run,
    silent,
    split_packets,
    udp_server,
)

ROSTER = [(0, 'alpha', 10, 100.0), (1, 'bravo', 4, 42.5)]


async def query_info(handler, **kwargs):
    async with udp_server(handler) as server:
        async with ServerQuerier(server.address, **kwargs) as querier:
            return await querier.query_info()


async def query_players(handler, **kwargs):
    async with udp_server(handler) as server:
        async with ServerQuerier(server.address, **kwargs) as querier:
            return await querier.query_players()


class TestQueryInfo:

    def test_direct_answer(self):
        handler = A2SHandler(info=info_response(name='No Challenge'), info_challenge=False)
        info = run(query_info(handler))

        assert info.name == 'No Challenge'
        assert len(handler.info_requests) == 1

    def test_challenge_is_echoed_once(self):
        handler = A2SHandler(challenge=0x0BADF00D)
        info = run(query_info(handler))

        assert info.name == 'Test Server'
        assert len(handler.info_requests) == 2
        assert handler.info_requests[1].endswith(struct.pack('<I', 0x0BADF00D))

    def test_repeated_challenge_is_a_protocol_error(self):
        handler = A2SHandler(repeat_challenge=True)

        with pytest.raises(ProtocolError, match="repeated the info challenge"):
            run(query_info(handler))
        assert len(handler.info_requests) == 2

    def test_split_response(self):
        payload = info_response(name='Split ' * 40, edf=0x20, keywords='k' * 100)
        handler = A2SHandler(info=payload, split=True)
        info = run(query_info(handler))

        assert info.name == 'Split ' * 40
        assert info.ext.game_mode == 'k' * 100

    def test_compressed_split_response(self):
        handler = A2SHandler(info=info_response(name='Packed ' * 40), split=True, compress=True)
        info = run(query_info(handler))

        assert info.name == 'Packed ' * 40

    def test_silent_server_times_out(self):
        loop_time = {}

        async def scenario():
            loop = asyncio.get_running_loop()
            start = loop.time()
            try:
                await query_info(silent, timeout=0.2)
            finally:
                loop_time['elapsed'] = loop.time() - start

        with pytest.raises(QueryTimeoutError) as exc_info:
            run(scenario())

        assert exc_info.value.address is not None
        assert loop_time['elapsed'] < 2.0

    def test_malformed_response_carries_address(self):
        async def scenario():
            async with udp_server(lambda data: [SIMPLE + b'I\x11broken']) as server:
                async with ServerQuerier(server.address) as querier:
                    try:
                        await querier.query_info()
                    except MalformedFrameError as e:
                        return e, server.address

        error, address = run(scenario())
        assert isinstance(error, ProtocolError)
        assert error.address == address

    def test_reply_of_the_wrong_kind_is_ignored(self):
        handler = A2SHandler(info=SIMPLE + b'D\x00', info_challenge=False)

        with pytest.raises(QueryTimeoutError):
            run(query_info(handler, timeout=0.3))
        assert len(handler.info_requests) == 1


class TestFaultPolicy:

    def boom(self, *args):
        raise KeyError('decoder bug')

    def test_contained_by_default(self, monkeypatch):
        monkeypatch.setattr(server_querier, 'decode_info_body', self.boom)

        with pytest.raises(MalformedFrameError, match="KeyError"):
            run(query_info(A2SHandler()))

    def test_propagate_for_debugging(self, monkeypatch):
        monkeypatch.setattr(server_querier, 'decode_info_body', self.boom)

        with pytest.raises(KeyError):
            run(query_info(A2SHandler(), policy=propagate_faults))


class TestQueryPlayers:

    def test_placeholder_then_challenge(self):
        handler = A2SHandler(players=ROSTER, challenge=0x11223344)
        players = run(query_players(handler))

        assert [p.name for p in players] == ['alpha', 'bravo']
        assert handler.player_requests[0][5:9] == b'\xFF\xFF\xFF\xFF'
        assert handler.player_requests[1][5:9] == struct.pack('<I', 0x11223344)

    def test_direct_roster_is_accepted(self):
        players = run(query_players(lambda data: [player_response(ROSTER)]))
        assert [p.score for p in players] == [10, 4]

    def test_repeated_challenge_is_a_protocol_error(self):
        handler = A2SHandler(players=ROSTER, repeat_challenge=True)

        with pytest.raises(ProtocolError, match="repeated the player challenge"):
            run(query_players(handler))
        assert len(handler.player_requests) == 2

    def test_split_roster(self):
        roster = [(i, f'player-{i:02d}-' + 'x' * 20, i, float(i)) for i in range(20)]
        handler = A2SHandler(players=roster, split=True)
        players = run(query_players(handler))

        assert len(players) == 20
        assert players[19].score == 19


class TestLifecycle:

    def test_close_is_idempotent(self):
        async def scenario():
            async with udp_server(silent) as server:
                querier = await ServerQuerier.open(server.address, timeout=0.2)
                querier.close()
                querier.close()
                with pytest.raises(NetworkError, match="closed"):
                    await querier.query_info()

        run(scenario())

    def test_unresolvable_host_is_a_network_error(self):
        async def scenario():
            await ServerQuerier.open(('name.invalid', 27015), timeout=2.0)

        with pytest.raises((NetworkError, QueryTimeoutError)):
            run(scenario())


class TestQueryServer:

    def test_skips_roster_when_nobody_plays(self):
        handler = A2SHandler(info=info_response(players=0), players=ROSTER)

        async def scenario():
            async with udp_server(handler) as server:
                return await query_server(server.address, timeout=1.0)

        info, players = run(scenario())
        assert info.players == 0
        assert players is None
        assert handler.player_requests == []

    def test_fetches_roster_when_players_present(self):
        handler = A2SHandler(info=info_response(players=2), players=ROSTER)

        async def scenario():
            async with udp_server(handler) as server:
                return await query_server(server.address, timeout=1.0)

        info, players = run(scenario())
        assert len(players) == 2
        assert len(handler.player_requests) == 2

    def test_roster_failure_keeps_info(self):
        handler = A2SHandler(info=info_response(players=5), answer_players=False)

        async def scenario():
            async with udp_server(handler) as server:
                return await query_server(server.address, timeout=0.3)

        info, players = run(scenario())
        assert info.players == 5
        assert players is None

    def test_second_info_packet_does_not_replace_the_roster(self):
        handler = DoubleInfoHandler(info=info_response(players=2), players=ROSTER)

        async def scenario():
            async with udp_server(handler) as server:
                return await query_server(server.address, timeout=1.0)

        info, players = run(scenario())
        assert info.ext is None
        assert [p.name for p in players] == ['alpha', 'bravo']
        assert len(handler.player_requests) == 2

    def test_stray_reply_during_roster_exchange_is_skipped(self):
        def handler(data):
            if data[4] == 0x55:
                return [info_response(), player_response(ROSTER)]
            return [info_response(players=2)]

        async def scenario():
            async with udp_server(handler) as server:
                return await query_server(server.address, timeout=1.0)

        _, players = run(scenario())
        assert len(players) == 2

    def test_old_source_split_layout(self):
        roster = [(i, f'veteran-{i:02d}-' + 'x' * 20, i, float(i)) for i in range(12)]
        handler = OldSourceHandler(
            info=info_response(app_id=240, protocol=7, players=12), players=roster,
        )

        async def scenario():
            async with udp_server(handler) as server:
                return await query_server(server.address, timeout=1.0)

        info, players = run(scenario())
        assert info.protocol == 7
        assert [p.name for p in players] == [name for _, name, _, _ in roster]


class DoubleInfoHandler(A2SHandler):
    """GoldSource style: every info answer is an 'm' packet followed by an 'I' packet."""

    def __call__(self, data):
        replies = super().__call__(data)
        if data[4] == 0x54 and replies and replies[0][4] == 0x49:
            return [goldsource_info_response(players=2)] + replies
        return replies


class OldSourceHandler(A2SHandler):
    """Splits rosters without the max packet size field."""

    def _reply(self, payload):
        if payload[4] == 0x44:
            return split_packets(payload, packet_size=False)
        return [payload]
