"""
Byte-oriented duplex transports for the delivery channel.
"""
import logging
from typing import Callable, List, Optional

import socketio
from eventlet.patcher import is_monkey_patched
from socketio.exceptions import ConnectionError as SocketIOConnectionError, SocketIOError

from qchat.errors import TransportError

logger = logging.getLogger(__name__)

FRAME_EVENT = 'frame'


class Transport:
    """Duplex byte stream consumed by DeliveryChannel.

    Subclasses implement connect/send/close and call ``_deliver`` for every
    inbound frame and ``_lost`` when the connection drops.
    """

    def __init__(self):
        self.on_message: Optional[Callable[[bytes], None]] = None
        self.on_close: Optional[Callable[[], None]] = None

    def connect(self) -> None:
        raise NotImplementedError

    def send(self, data: bytes) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def _deliver(self, data: bytes) -> None:
        if self.on_message:
            self.on_message(data)

    def _lost(self) -> None:
        if self.on_close:
            self.on_close()


class SocketIOTransport(Transport):
    """Frames carried hex-encoded on a Socket.IO ``frame`` event.

    The client's built-in reconnection is disabled; DeliveryChannel owns retries.

    python-socketio reports disconnects from its own reader thread while the
    channel schedules reconnects on the eventlet hub, so the process must call
    ``eventlet.monkey_patch()`` before this transport is created.
    """

    def __init__(self, url: str, transports: Optional[List[str]] = None,
                 headers: Optional[dict] = None, wait_timeout: int = 10):
        if not is_monkey_patched('thread'):
            raise TransportError(
                "SocketIOTransport requires eventlet.monkey_patch() to be called at startup"
            )
        super().__init__()
        self.url = url
        self.transports = transports or ['websocket', 'polling']
        self.headers = headers or {}
        self.wait_timeout = wait_timeout
        self.client: Optional[socketio.Client] = None
        self._closing = False

    def _new_client(self) -> socketio.Client:
        client = socketio.Client(reconnection=False, logger=False)
        client.on(FRAME_EVENT, self._handle_frame)
        client.on('disconnect', lambda *args: self._handle_disconnect(client))
        return client

    def connect(self) -> None:
        if self.client is not None:
            self.close()
        self._closing = False
        self.client = self._new_client()
        try:
            self.client.connect(self.url, headers=self.headers, transports=self.transports,
                                wait_timeout=self.wait_timeout)
        except SocketIOConnectionError as e:
            self.client = None
            raise TransportError(f"Could not connect to {self.url}: {e}") from e
        logger.info(f"Socket.IO transport connected to {self.url} (sid {self.client.sid})")

    def send(self, data: bytes) -> None:
        if self.client is None or not self.client.connected:
            raise TransportError("Transport is not connected")
        try:
            self.client.emit(FRAME_EVENT, {'data': data.hex()})
        except SocketIOError as e:
            raise TransportError(f"Send failed: {e}") from e

    def close(self) -> None:
        self._closing = True
        client, self.client = self.client, None
        if client is not None and client.connected:
            client.disconnect()

    def _handle_frame(self, payload) -> None:
        data = payload.get('data') if isinstance(payload, dict) else payload
        if isinstance(data, str):
            try:
                data = bytes.fromhex(data)
            except ValueError:
                logger.warning("Discarding frame with invalid hex payload")
                return
        if not isinstance(data, (bytes, bytearray)):
            logger.warning(f"Discarding frame of unexpected type {type(data).__name__}")
            return
        self._deliver(bytes(data))

    def _handle_disconnect(self, client: socketio.Client) -> None:
        if self._closing or client is not self.client:
            return
        logger.warning(f"Socket.IO transport lost connection to {self.url}")
        self._lost()
