# Tests for the delivery channel state machine

import eventlet
import pytest

from qchat.authenticator import check_announce
from qchat.channel import ConnectionState, DeliveryChannel
from qchat.config import Settings
from qchat.envelope import Envelope, decode_frame, encode_announce, encode_envelope, Announce
from tests.conftest import FakeTransport


def make_frame(n: int) -> bytes:
    return encode_envelope(Envelope(
        iv=bytes(12),
        ciphertext=n.to_bytes(4, "big") * 5,
        encapsulated_key=b"k" * 48,
        sender="did:tetracrypt:alice",
        recipient="did:tetracrypt:bob",
        timestamp=n,
    ))


@pytest.fixture
def delivered():
    return []


@pytest.fixture
def channel(transport, delivered):
    channel = DeliveryChannel(
        transport, delivered.append,
        announce_did="did:tetracrypt:bob",
        backoff_base_ms=1, backoff_max_ms=5, jitter=False,
    )
    yield channel
    channel.close()


@pytest.fixture
def connected(channel):
    channel.open()
    assert channel.wait_until_connected(timeout=2)
    return channel


class TestConnect:
    def test_starts_disconnected(self, channel):
        assert channel.connection_state == ConnectionState.DISCONNECTED

    def test_open_connects_and_announces(self, connected, transport):
        assert connected.connection_state == ConnectionState.CONNECTED
        assert transport.connects == 1
        assert decode_frame(transport.sent[0]) == Announce("did:tetracrypt:bob")

    def test_open_twice_is_noop(self, connected, transport):
        connected.open()
        eventlet.sleep(0.01)
        assert transport.connects == 1

    def test_retries_failed_connects(self, delivered):
        transport = FakeTransport(fail_connects=3)
        channel = DeliveryChannel(transport, delivered.append, backoff_base_ms=1, backoff_max_ms=2, jitter=False)
        channel.open()
        try:
            assert channel.wait_until_connected(timeout=2)
            assert transport.connects == 4
        finally:
            channel.close()

    def test_identity_sends_signed_announce(self, transport, delivered, bob):
        channel = DeliveryChannel(transport, delivered.append, identity=bob, backoff_base_ms=1, jitter=False)
        channel.open()
        try:
            assert channel.wait_until_connected(timeout=2)
            announce = decode_frame(transport.sent[0])
            assert announce.did == bob.id
            assert check_announce(announce)
        finally:
            channel.close()

    def test_from_settings(self, transport, delivered):
        settings = Settings(backoff_base_ms=7, backoff_max_ms=70, backoff_jitter=False, outbox_limit=3)
        channel = DeliveryChannel.from_settings(transport, delivered.append, settings, announce_did="did:x:y")
        assert channel.backoff_base_ms == 7
        assert channel.next_backoff_ms(1) == 7
        assert channel._outbox.maxlen == 3


class TestBackoff:
    def test_exponential_and_capped(self, transport, delivered):
        channel = DeliveryChannel(transport, delivered.append, backoff_base_ms=100, backoff_max_ms=1000, jitter=False)
        assert [channel.next_backoff_ms(n) for n in range(1, 7)] == [100, 200, 400, 800, 1000, 1000]

    def test_jitter_stays_bounded(self, transport, delivered):
        channel = DeliveryChannel(transport, delivered.append, backoff_base_ms=100, backoff_max_ms=1000, jitter=True)
        for _ in range(50):
            assert 100 <= channel.next_backoff_ms(1) <= 110
            assert channel.next_backoff_ms(10) == 1000


class TestInbound:
    def test_delivers_in_arrival_order(self, connected, transport, delivered):
        for n in (3, 1, 2):
            transport.inject(make_frame(n))
        assert [e.timestamp for e in delivered] == [3, 1, 2]

    def test_duplicate_dropped(self, connected, transport, delivered):
        transport.inject(make_frame(1))
        transport.inject(make_frame(1))
        assert len(delivered) == 1
        assert len(connected.state.seen_envelope_ids) == 1

    def test_malformed_frame_dropped(self, connected, transport, delivered, caplog):
        transport.inject(b"PQM\x01\x01garbage")
        transport.inject(b"not a frame at all")
        transport.inject(make_frame(5))
        assert [e.timestamp for e in delivered] == [5]
        assert connected.is_connected
        assert "malformed" in caplog.text

    def test_announce_not_delivered(self, connected, transport, delivered):
        transport.inject(encode_announce("did:tetracrypt:alice"))
        assert delivered == []

    def test_sink_error_does_not_break_channel(self, transport):
        calls = []

        def sink(envelope):
            calls.append(envelope)
            raise RuntimeError("store unavailable")

        channel = DeliveryChannel(transport, sink, backoff_base_ms=1, jitter=False)
        channel.open()
        try:
            assert channel.wait_until_connected(timeout=2)
            transport.inject(make_frame(1))
            transport.inject(make_frame(2))
            assert len(calls) == 2
            assert channel.is_connected
        finally:
            channel.close()


class TestReconnect:
    def test_reconnects_after_each_drop(self, connected, transport, delivered):
        for n in range(5):
            transport.drop()
            assert connected.connection_state == ConnectionState.DISCONNECTED
            assert connected.wait_until_connected(timeout=2)
            assert transport.connects == n + 2
            transport.inject(make_frame(n))
        assert [e.timestamp for e in delivered] == [0, 1, 2, 3, 4]

    def test_dedup_survives_reconnect(self, connected, transport, delivered):
        transport.inject(make_frame(1))
        transport.drop()
        assert connected.wait_until_connected(timeout=2)
        transport.inject(make_frame(1))
        assert len(delivered) == 1

    def test_backoff_reset_after_connect(self, connected, transport):
        transport.drop()
        assert connected.state.backoff_ms == 1
        assert connected.wait_until_connected(timeout=2)
        assert connected.state.backoff_ms == 0
        assert connected.state.attempts == 0

    def test_frames_while_disconnected_discarded(self, connected, transport, delivered):
        transport.drop()
        transport.inject(make_frame(9))
        assert delivered == []


class TestOutbound:
    def test_send_while_connected(self, connected, transport):
        connected.send(make_frame(1))
        assert transport.sent[-1] == make_frame(1)

    def test_send_accepts_envelopes(self, connected, transport):
        envelope = decode_frame(make_frame(2))
        connected.send(envelope)
        assert transport.sent[-1] == make_frame(2)

    def test_queued_until_connected(self, channel, transport):
        channel.send(make_frame(1))
        channel.send(make_frame(2))
        assert channel.pending == 2
        channel.open()
        assert channel.wait_until_connected(timeout=2)
        assert transport.sent[1:] == [make_frame(1), make_frame(2)]
        assert channel.pending == 0

    def test_send_failure_reconnects_and_flushes(self, connected, transport):
        transport.connected = False
        connected.send(make_frame(3))
        assert connected.connection_state == ConnectionState.DISCONNECTED
        assert connected.pending == 1

        assert connected.wait_until_connected(timeout=2)
        assert transport.connects == 2
        assert connected.pending == 0
        assert transport.sent[-2:] == [encode_announce("did:tetracrypt:bob"), make_frame(3)]

    def test_flush_after_reconnect(self, connected, transport):
        transport.drop()
        connected.send(make_frame(4))
        assert connected.wait_until_connected(timeout=2)
        assert transport.sent[-2:] == [encode_announce("did:tetracrypt:bob"), make_frame(4)]

    def test_outbox_is_bounded(self, transport, delivered):
        channel = DeliveryChannel(transport, delivered.append, outbox_limit=2)
        for n in range(3):
            channel.send(make_frame(n))
        assert list(channel._outbox) == [make_frame(1), make_frame(2)]


class TestClose:
    def test_close_cancels_pending_reconnect(self, transport, delivered):
        channel = DeliveryChannel(transport, delivered.append, backoff_base_ms=10000, jitter=False)
        channel.open()
        assert channel.wait_until_connected(timeout=2)
        transport.drop()
        channel.close()
        eventlet.sleep(0.05)
        assert transport.connects == 1
        assert channel.connection_state == ConnectionState.DISCONNECTED
        assert not channel.wait_until_connected(timeout=0.05)

    def test_close_resets_state_and_discards_frames(self, connected, transport, delivered):
        transport.inject(make_frame(1))
        connected.close()
        assert transport.closed
        assert connected.state.seen_envelope_ids == set()
        transport.inject(make_frame(2))
        assert [e.timestamp for e in delivered] == [1]

    def test_close_before_open(self, channel, transport):
        channel.close()
        assert channel.connection_state == ConnectionState.DISCONNECTED
        assert transport.connects == 0
