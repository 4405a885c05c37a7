#!/usr/bin/env python
# server.py - Dedicated server script for the Flask-SocketIO frame relay with eventlet
#
# Under gunicorn use a single eventlet worker:
#   gunicorn -k eventlet -w 1 -b 0.0.0.0:$PORT app:app

# Monkey patch at the very beginning before any other imports
import eventlet
eventlet.monkey_patch()

import os
import logging

from qchat.config import configure_logging

configure_logging(os.environ.get('LOG_LEVEL', 'INFO'))

logger = logging.getLogger(__name__)
logger.info("Starting QuantumChat relay with eventlet")

# Import the Flask app and SocketIO instance
from app import app, socketio

if __name__ == '__main__':
    # Get port from environment variable or use default
    port = int(os.environ.get('PORT', 10000))

    # Log important configuration
    logger.info(f"Environment: {os.environ.get('FLASK_ENV', 'development')}")
    logger.info(f"Starting relay on port: {port}")

    socketio.run(
        app,
        host='0.0.0.0',
        port=port,
        debug=False,
        use_reloader=False,
        log_output=True
    )
