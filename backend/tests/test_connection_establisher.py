"""Tests for connection negotiation between two nodes on localhost."""

import asyncio

import pytest
import pytest_asyncio

from connection.establisher import ConnectionEstablisher, NegotiationFailed
from connection.models import ChannelState, FailureReason, LocalRole
from signaling.models import Envelope, EnvelopeType
from signaling.relay import SignalingRelay


class Pair:
    """Two linked relays with an establisher on each."""

    def __init__(self, relay_a, relay_b, est_a, est_b):
        self.relay_a = relay_a
        self.relay_b = relay_b
        self.a = est_a
        self.b = est_b
        self.opened_a = []
        self.opened_b = []
        self.events_a = []
        est_a.on_channel_open(self._opened(self.opened_a))
        est_b.on_channel_open(self._opened(self.opened_b))
        est_a.on_state_change(self._record)

    @staticmethod
    def _opened(store):
        async def callback(peer_id, channel):
            store.append((peer_id, channel))
        return callback

    async def _record(self, event):
        self.events_a.append(event)


@pytest_asyncio.fixture
async def make_pair():
    created = []

    async def make(hosts_a=("127.0.0.1",), hosts_b=("127.0.0.1",), timeout=10.0, check_timeout=0.5) -> Pair:
        relay_a = SignalingRelay(host="127.0.0.1", port=0)
        relay_b = SignalingRelay(host="127.0.0.1", port=0)
        await relay_a.start("node-a", "Alpha")
        await relay_b.start("node-b", "Bravo")
        est_a = ConnectionEstablisher(
            relay_a, "node-a", timeout=timeout, check_timeout=check_timeout,
            candidate_hosts=list(hosts_a), bind_host="127.0.0.1",
        )
        est_b = ConnectionEstablisher(
            relay_b, "node-b", timeout=timeout, check_timeout=check_timeout,
            candidate_hosts=list(hosts_b), bind_host="127.0.0.1",
        )
        pair = Pair(relay_a, relay_b, est_a, est_b)
        created.append(pair)

        await relay_a.connect("node-b", "127.0.0.1", relay_b.port)
        for _ in range(100):
            if relay_b.is_linked("node-a"):
                break
            await asyncio.sleep(0.01)
        return pair

    yield make

    for pair in created:
        await pair.a.stop()
        await pair.b.stop()
        await pair.relay_a.stop()
        await pair.relay_b.stop()


class TestConnectionEstablisher:
    """Tests for ConnectionEstablisher"""

    @pytest.mark.asyncio
    async def test_both_sides_connect(self, make_pair, wait_until):
        """An offer from one node opens a channel on both"""
        pair = await make_pair()

        channel = await asyncio.wait_for(pair.a.connect("node-b"), 10.0)

        assert pair.a.get_state("node-b") == ChannelState.CONNECTED
        await wait_until(lambda: pair.b.get_state("node-a") == ChannelState.CONNECTED)
        await wait_until(lambda: pair.opened_a and pair.opened_b)

        peer_channel = pair.b.get_channel("node-a")
        await channel.send_json({"hello": "bravo"})
        assert await asyncio.wait_for(peer_channel.receive(), 2.0) == '{"hello": "bravo"}'
        await peer_channel.send_binary(b"back")
        assert await asyncio.wait_for(channel.receive(), 2.0) == b"back"

        roles = {s.peer_id: s.local_role for s in pair.b.get_sessions()}
        assert roles == {"node-a": LocalRole.RESPONDER}

    @pytest.mark.asyncio
    async def test_connect_reuses_open_channel(self, make_pair):
        pair = await make_pair()
        first = await asyncio.wait_for(pair.a.connect("node-b"), 10.0)
        second = await pair.a.connect("node-b")
        assert first is second

    @pytest.mark.asyncio
    async def test_state_events(self, make_pair, wait_until):
        pair = await make_pair()
        await asyncio.wait_for(pair.a.connect("node-b"), 10.0)
        await wait_until(lambda: len(pair.events_a) >= 2)
        assert [e.state for e in pair.events_a[:2]] == [
            ChannelState.CONNECTING,
            ChannelState.CONNECTED,
        ]

    @pytest.mark.asyncio
    async def test_all_pairs_fail(self, make_pair, wait_until):
        """Unreachable candidates on both sides end in an ICE failure"""
        pair = await make_pair(hosts_a=["192.0.2.1"], hosts_b=["192.0.2.2"], check_timeout=0.3)

        with pytest.raises(NegotiationFailed) as exc:
            await asyncio.wait_for(pair.a.connect("node-b"), 8.0)

        assert exc.value.reason == FailureReason.ICE
        assert pair.a.get_state("node-b") == ChannelState.FAILED
        await wait_until(lambda: pair.b.get_state("node-a") == ChannelState.FAILED)

    @pytest.mark.asyncio
    async def test_silent_peer_times_out(self):
        """A peer that never answers the offer ends in a timeout"""
        relay_a = SignalingRelay(host="127.0.0.1", port=0)
        await relay_a.start("node-c", "Charlie")
        relay_d = SignalingRelay(host="127.0.0.1", port=0)
        await relay_d.start("node-d", "Delta")
        try:
            est = ConnectionEstablisher(
                relay_a, "node-c", timeout=0.5, candidate_hosts=["127.0.0.1"], bind_host="127.0.0.1"
            )
            await relay_a.connect("node-d", "127.0.0.1", relay_d.port)

            with pytest.raises(NegotiationFailed) as exc:
                await asyncio.wait_for(est.connect("node-d"), 5.0)

            assert exc.value.reason == FailureReason.TIMEOUT
            assert est.get_state("node-d") == ChannelState.FAILED
            assert est.get_sessions() == []
            await est.stop()
        finally:
            await relay_a.stop()
            await relay_d.stop()

    @pytest.mark.asyncio
    async def test_no_signaling_link(self):
        relay = SignalingRelay(host="127.0.0.1", port=0)
        await relay.start("node-a", "Alpha")
        try:
            est = ConnectionEstablisher(relay, "node-a", candidate_hosts=["127.0.0.1"])
            with pytest.raises(NegotiationFailed) as exc:
                await est.connect("ghost")
            assert exc.value.reason == FailureReason.ICE
        finally:
            await relay.stop()

    @pytest.mark.asyncio
    async def test_peer_abort_fails_negotiation(self, make_pair):
        """A disconnect envelope for the session ends it on our side"""
        pair = await make_pair(hosts_a=["192.0.2.1"], hosts_b=["192.0.2.2"], check_timeout=5.0)
        task = asyncio.ensure_future(pair.a.connect("node-b"))
        for _ in range(100):
            if pair.a.get_sessions():
                break
            await asyncio.sleep(0.01)
        session_id = pair.a.get_sessions()[0].session_id

        await pair.a.handle_envelope(
            Envelope(
                type=EnvelopeType.DISCONNECT,
                sender="node-b",
                to="node-a",
                data={"session_id": session_id, "reason": "aborted"},
            )
        )

        with pytest.raises(NegotiationFailed) as exc:
            await asyncio.wait_for(task, 2.0)
        assert exc.value.reason == FailureReason.ICE

    @pytest.mark.asyncio
    async def test_close_channel(self, make_pair, wait_until):
        pair = await make_pair()
        channel = await asyncio.wait_for(pair.a.connect("node-b"), 10.0)

        await pair.a.close("node-b")

        assert channel.closed
        assert pair.a.get_state("node-b") == ChannelState.CLOSED
        assert pair.a.get_channel("node-b") is None

    @pytest.mark.asyncio
    async def test_simultaneous_offers(self, make_pair, wait_until):
        """Both sides calling connect at once still yields one channel each"""
        pair = await make_pair()

        chan_a, chan_b = await asyncio.wait_for(
            asyncio.gather(pair.a.connect("node-b"), pair.b.connect("node-a")), 10.0
        )

        await chan_a.send_json({"from": "a"})
        assert await asyncio.wait_for(chan_b.receive(), 2.0) == '{"from": "a"}'
        # Exactly one offer survives
        roles = {pair.a.get_sessions()[0].local_role, pair.b.get_sessions()[0].local_role}
        assert roles == {LocalRole.INITIATOR, LocalRole.RESPONDER}
