"""
Frame relay: forwards envelope frames between subscribed DIDs over Socket.IO
and holds frames for recipients that are offline.
"""
import os
import logging
from typing import Optional, Tuple

from flask import Flask, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

from .database import PendingFrameStore
from .socket_server import init_socketio


def create_app(db_file: Optional[str] = None, async_mode: Optional[str] = None,
               config: Optional[dict] = None) -> Tuple[Flask, SocketIO]:
    """Build the relay's Flask app and its Socket.IO server."""
    app = Flask(__name__)
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev_secret_key_change_in_production')
    app.config['ALLOWED_ORIGINS'] = os.environ.get('ALLOWED_ORIGINS', '*')
    if config:
        app.config.update(config)

    CORS(app, origins=app.config['ALLOWED_ORIGINS'])

    app_logger = logging.getLogger('relay')
    pending_store = PendingFrameStore(db_file)
    socketio = init_socketio(app, pending_store, app_logger, async_mode=async_mode)

    @app.route('/api/health', methods=['GET'])
    def health_check():
        state = app.extensions['qchat_relay_state']
        return jsonify({
            'status': 'healthy',
            'subscribed': len(state.did_to_sids),
            'pending_frames': pending_store.pending_count(),
        }), 200

    return app, socketio


__all__ = ['create_app', 'PendingFrameStore']
