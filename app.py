# Monkey patch eventlet at the beginning to avoid runtime errors
import eventlet
eventlet.monkey_patch()

import os

from qchat.config import Settings
from relay import create_app

# Set environment
ENVIRONMENT = os.environ.get('FLASK_ENV', 'development')

settings = Settings.from_env('.env.production' if ENVIRONMENT == 'production' else None)

app, socketio = create_app(db_file=settings.database_path, async_mode='eventlet')

if ENVIRONMENT == 'production':
    app.logger.info(f"Production mode: Allowed origins: {app.config['ALLOWED_ORIGINS']}")
else:
    app.logger.info("Development mode: Allowing all origins with wildcard (*)")

# Export socketio instance for server.py
__all__ = ['app', 'socketio']
