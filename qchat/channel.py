"""
Delivery channel: a persistent duplex connection with reconnect-with-backoff,
inbound dedup and in-order hand-off to a sink.

State machine::

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED (error/close)
                                                   |
                         CONNECTING <- (backoff) --+

close() is terminal: the pending reconnect timer is cancelled and frames
arriving afterwards are discarded.

Connect attempts and reconnect timers run as eventlet green threads, so a
backoff only ever suspends the channel's own task. Transports whose client
library reports events from its own OS threads, such as SocketIOTransport,
need `eventlet.monkey_patch()` so those events reach the same hub.
"""
import enum
import random
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional, Set, Union

import eventlet

from qchat.authenticator import sign_announce
from qchat.config import Settings
from qchat.envelope import Announce, Envelope, decode_frame, encode_announce, encode_envelope, fingerprint
from qchat.errors import ProtocolError, TransportError
from qchat.keygen import Identity
from qchat.transport import Transport

logger = logging.getLogger(__name__)


class ConnectionState(enum.Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'


@dataclass
class ChannelState:
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    seen_envelope_ids: Set[str] = field(default_factory=set)
    backoff_ms: int = 0
    attempts: int = 0


class DeliveryChannel:
    """Owns one transport and keeps it connected until close()."""

    def __init__(self, transport: Transport, sink: Callable[[Envelope], None],
                 announce_did: Optional[str] = None, identity: Optional[Identity] = None,
                 backoff_base_ms: int = 500, backoff_max_ms: int = 30000,
                 jitter: bool = True, outbox_limit: int = 256):
        self.transport = transport
        self.sink = sink
        self.identity = identity
        self.announce_did = announce_did or (identity.id if identity else None)
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self.jitter = jitter
        self.state = ChannelState()
        self._outbox = deque(maxlen=outbox_limit)
        self._lock = threading.RLock()
        self._delivery_lock = threading.Lock()
        self._timer = None
        self._closed = True

        transport.on_message = self._on_frame
        transport.on_close = self._on_transport_close

    @classmethod
    def from_settings(cls, transport: Transport, sink: Callable[[Envelope], None],
                      settings: Settings, announce_did: Optional[str] = None,
                      identity: Optional[Identity] = None) -> 'DeliveryChannel':
        return cls(
            transport, sink,
            announce_did=announce_did,
            identity=identity,
            backoff_base_ms=settings.backoff_base_ms,
            backoff_max_ms=settings.backoff_max_ms,
            jitter=settings.backoff_jitter,
            outbox_limit=settings.outbox_limit,
        )

    @property
    def connection_state(self) -> ConnectionState:
        return self.state.connection_state

    @property
    def is_connected(self) -> bool:
        return self.state.connection_state == ConnectionState.CONNECTED

    @property
    def pending(self) -> int:
        """Outbound frames waiting for a connection."""
        return len(self._outbox)

    def open(self) -> None:
        """Start connecting. Does nothing if the channel is already open."""
        with self._lock:
            if not self._closed:
                return
            self._closed = False
            self._timer = eventlet.spawn_after(0, self._connect)

    def close(self) -> None:
        """Tear down for good: no further reconnect attempts, state reset."""
        with self._lock:
            self._closed = True
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        try:
            self.transport.close()
        except TransportError as e:
            logger.debug(f"Transport close reported: {e}")
        with self._delivery_lock:
            self.state = ChannelState()
            self._outbox.clear()
        logger.info("Delivery channel closed")

    def send(self, frame: Union[bytes, Envelope]) -> None:
        """Transmit a frame, or queue it until the next connection.

        Transport failures are never raised here; they feed the reconnect loop.
        """
        if isinstance(frame, Envelope):
            frame = encode_envelope(frame)
        if self.is_connected:
            try:
                self.transport.send(frame)
                return
            except TransportError as e:
                logger.warning(f"Send failed, queueing frame: {e}")
                self._enqueue(frame)
                self._on_transport_close()
                return
        self._enqueue(frame)

    def _enqueue(self, frame: bytes) -> None:
        if len(self._outbox) == self._outbox.maxlen:
            logger.warning("Outbox full, dropping oldest queued frame")
        self._outbox.append(frame)

    def wait_until_connected(self, timeout: float = 5.0, poll: float = 0.01) -> bool:
        """Yield to the hub until the channel is connected or `timeout` passes."""
        waited = 0.0
        while not self.is_connected:
            if waited >= timeout or self._closed:
                return False
            eventlet.sleep(poll)
            waited += poll
        return True

    def next_backoff_ms(self, attempts: int) -> int:
        """Exponential delay for the given attempt number, capped, with optional jitter."""
        delay = min(self.backoff_max_ms, self.backoff_base_ms * (2 ** max(attempts - 1, 0)))
        if self.jitter and delay > 0:
            delay += random.randint(0, delay // 10)
        return min(delay, self.backoff_max_ms)

    def _connect(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._timer = None
            self.state.connection_state = ConnectionState.CONNECTING
        logger.info(f"Delivery channel connecting (attempt {self.state.attempts + 1})")

        try:
            self.transport.connect()
        except TransportError as e:
            logger.warning(f"Connect failed: {e}")
            self._on_transport_close()
            return

        with self._lock:
            if self._closed:
                self.transport.close()
                return
            self.state.connection_state = ConnectionState.CONNECTED
            self.state.attempts = 0
            self.state.backoff_ms = 0
        logger.info("Delivery channel connected")

        try:
            announce = self._announce_frame()
            if announce:
                self.transport.send(announce)
            self._flush()
        except TransportError as e:
            logger.warning(f"Handshake failed: {e}")
            self._on_transport_close()

    def _announce_frame(self) -> Optional[bytes]:
        if self.identity is not None:
            return encode_announce(sign_announce(self.identity))
        if self.announce_did:
            return encode_announce(self.announce_did)
        return None

    def _flush(self) -> None:
        while self._outbox and self.is_connected:
            frame = self._outbox.popleft()
            try:
                self.transport.send(frame)
            except TransportError:
                self._outbox.appendleft(frame)
                raise

    def _on_transport_close(self) -> None:
        with self._lock:
            if self._closed or self._timer is not None:
                return
            self.state.connection_state = ConnectionState.DISCONNECTED
            self.state.attempts += 1
            delay_ms = self.next_backoff_ms(self.state.attempts)
            self.state.backoff_ms = delay_ms
            self._timer = eventlet.spawn_after(delay_ms / 1000.0, self._connect)
        logger.warning(f"Delivery channel disconnected; reconnecting in {delay_ms} ms")

    def _on_frame(self, raw: bytes) -> None:
        with self._delivery_lock:
            if self._closed or not self.is_connected:
                logger.debug("Discarding frame received while not connected")
                return

            envelope_id = fingerprint(raw)
            if envelope_id in self.state.seen_envelope_ids:
                logger.debug(f"Dropping duplicate frame {envelope_id[:16]}")
                return
            self.state.seen_envelope_ids.add(envelope_id)

            try:
                frame = decode_frame(raw)
            except ProtocolError as e:
                logger.warning(f"Dropping malformed frame {envelope_id[:16]}: {e}")
                return

            if isinstance(frame, Announce):
                logger.debug(f"Ignoring announce from {frame.did}")
                return

            try:
                self.sink(frame)
            except Exception as e:
                logger.error(f"Sink failed for envelope {envelope_id[:16]}: {e}", exc_info=True)
