import os
from typing import Dict, Optional, Set

from flask import Flask, request
from flask_socketio import SocketIO, emit, join_room, leave_room

from qchat.authenticator import ANNOUNCE_MAX_SKEW_MS, check_announce
from qchat.envelope import Announce, decode_frame, fingerprint
from qchat.errors import ProtocolError
from .database import PendingFrameStore

FRAME_EVENT = 'frame'


class RelayState:
    """Which socket serves which DID. One instance per relay app."""

    def __init__(self):
        self.sid_to_did: Dict[str, str] = {}  # Maps socket ID to subscribed DID
        self.did_to_sids: Dict[str, Set[str]] = {}  # Maps DID to its live socket IDs

    def subscribe(self, sid: str, did: str) -> Optional[str]:
        """Bind `sid` to `did`. Returns the DID the socket was bound to before, if different."""
        previous = self.sid_to_did.get(sid)
        if previous and previous != did:
            self.unsubscribe(sid)
        self.sid_to_did[sid] = did
        self.did_to_sids.setdefault(did, set()).add(sid)
        return previous if previous != did else None

    def unsubscribe(self, sid: str) -> Optional[str]:
        did = self.sid_to_did.pop(sid, None)
        if did and did in self.did_to_sids:
            self.did_to_sids[did].discard(sid)
            if not self.did_to_sids[did]:
                del self.did_to_sids[did]
        return did

    def is_online(self, did: str) -> bool:
        return bool(self.did_to_sids.get(did))


def init_socketio(app: Flask, pending_store: PendingFrameStore, app_logger_ref,
                  async_mode: Optional[str] = None) -> SocketIO:
    """Initialize and configure the Socket.IO relay"""
    environment = os.environ.get('FLASK_ENV', 'development')
    allowed_origins_val = app.config.get('ALLOWED_ORIGINS', '*')

    # Define Socket.IO ping parameters with default values
    sio_ping_timeout = app.config.get('SOCKETIO_PING_TIMEOUT', 20)
    sio_ping_interval = app.config.get('SOCKETIO_PING_INTERVAL', 25)

    socketio_instance = SocketIO(
        app,
        async_mode=async_mode,
        cors_allowed_origins=allowed_origins_val,
        ping_timeout=sio_ping_timeout,
        ping_interval=sio_ping_interval,
        cookie=False,
    )

    app_logger_ref.info(f"Socket.IO CORS configuration: Allowed origins: {allowed_origins_val}")
    app_logger_ref.info(f"Socket.IO initialized: Async mode: {socketio_instance.async_mode}, Ping: {sio_ping_timeout}s/{sio_ping_interval}s, Env: {environment}")

    state = RelayState()
    app.extensions['qchat_relay_state'] = state
    max_skew_ms = app.config.get('ANNOUNCE_MAX_SKEW_MS', ANNOUNCE_MAX_SKEW_MS)
    register_event_handlers(socketio_instance, state, pending_store, app_logger_ref, max_skew_ms)

    return socketio_instance


# Top-level function to register all event handlers
def register_event_handlers(socketio: SocketIO, state: RelayState, pending_store: PendingFrameStore,
                            app_logger_ref, max_skew_ms: int = ANNOUNCE_MAX_SKEW_MS) -> None:
    """Register all Socket.IO event handlers."""
    app_logger_ref.info("Registering Socket.IO event handlers...")

    @socketio.on('connect')
    def handle_connect(auth=None):
        app_logger_ref.info(f"Client connected: {request.sid}")
        emit('connection_established', {'sid': request.sid, 'status': 'connected'}, room=request.sid)

    @socketio.on('disconnect')
    def handle_disconnect(*args):
        did = state.unsubscribe(request.sid)
        if did:
            app_logger_ref.info(f"{did} (SID: {request.sid}) disconnected.")
        else:
            app_logger_ref.info(f"SID {request.sid} disconnected without subscribing.")

    def _subscribe(did: str) -> None:
        sid = request.sid
        previous = state.subscribe(sid, did)
        if previous:
            leave_room(previous)
        join_room(did)
        app_logger_ref.info(f"SID {sid} subscribed as {did}")
        emit('subscribed', {'did': did}, room=sid)

        queued = pending_store.take_frames(did)
        for frame_hex in queued:
            emit(FRAME_EVENT, {'data': frame_hex}, room=sid)
        if queued:
            app_logger_ref.info(f"Flushed {len(queued)} queued frames to {did}")

    @socketio.on(FRAME_EVENT)
    def handle_frame(data):
        sid = request.sid
        frame_hex = data.get('data') if isinstance(data, dict) else None
        if not isinstance(frame_hex, str):
            emit('frame_error', {'error': 'Missing frame data.'}, room=sid)
            return
        try:
            raw = bytes.fromhex(frame_hex)
            frame = decode_frame(raw)
        except (ValueError, ProtocolError) as e:
            app_logger_ref.warning(f"Malformed frame from SID {sid}: {e}")
            emit('frame_error', {'error': 'Malformed frame.'}, room=sid)
            return

        if isinstance(frame, Announce):
            # Queued frames are handed out only to the holder of the DID's signing key
            if not check_announce(frame, max_skew_ms=max_skew_ms):
                emit('frame_error', {'error': 'Announce not authenticated.'}, room=sid)
                return
            _subscribe(frame.did)
            return

        sender_did = state.sid_to_did.get(sid)
        if not sender_did:
            app_logger_ref.warning(f"Envelope from unsubscribed SID {sid} refused")
            emit('frame_error', {'error': 'Announce before sending envelopes.'}, room=sid)
            return
        if frame.sender != sender_did:
            app_logger_ref.warning(f"SID {sid} subscribed as {sender_did} tried to send as {frame.sender}")
            emit('frame_error', {'error': 'Sender does not match subscription.'}, room=sid)
            return

        frame_id = fingerprint(raw)
        if state.is_online(frame.recipient):
            socketio.emit(FRAME_EVENT, {'data': frame_hex}, to=frame.recipient)
            delivered = True
            app_logger_ref.info(f"Forwarded frame {frame_id[:16]} {sender_did} -> {frame.recipient}")
        else:
            pending_store.queue_frame(frame.recipient, sender_did, frame_id, frame_hex)
            delivered = False
            app_logger_ref.info(f"Recipient {frame.recipient} is offline. Frame {frame_id[:16]} queued.")

        emit('frame_accepted', {'fingerprint': frame_id, 'delivered': delivered}, room=sid)
