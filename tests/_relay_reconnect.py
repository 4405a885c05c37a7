# Drives a real DeliveryChannel against a real relay, drops the client from
# the server side, and checks that the channel reconnects and still delivers.
# Run in its own interpreter because it has to monkey patch at startup.

import eventlet
eventlet.monkey_patch()

import sys
import logging

import eventlet.wsgi

from qchat.channel import DeliveryChannel
from qchat.config import configure_logging
from qchat.envelope import Envelope
from qchat.keygen import create_identity
from qchat.transport import SocketIOTransport
from relay import create_app

logger = logging.getLogger('relay_reconnect')


def wait_for(predicate, timeout=10.0, poll=0.05):
    waited = 0.0
    while not predicate():
        if waited >= timeout:
            return False
        eventlet.sleep(poll)
        waited += poll
    return True


def fail(reason):
    logger.error(reason)
    print(f"FAILED: {reason}")
    sys.exit(1)


def main(db_file):
    configure_logging('INFO')
    app, socketio = create_app(db_file=db_file, async_mode='eventlet')
    state = app.extensions['qchat_relay_state']

    listener = eventlet.listen(('127.0.0.1', 0))
    port = listener.getsockname()[1]
    eventlet.spawn(eventlet.wsgi.server, listener, app, log_output=False)

    identity = create_identity()
    received = []
    channel = DeliveryChannel(
        SocketIOTransport(f"http://127.0.0.1:{port}", transports=['websocket']),
        received.append,
        identity=identity,
        backoff_base_ms=50,
        jitter=False,
    )
    channel.open()

    if not channel.wait_until_connected(timeout=10):
        fail("channel never connected")
    if not wait_for(lambda: state.is_online(identity.id)):
        fail("relay never saw the announce")
    first_sid = next(iter(state.did_to_sids[identity.id]))

    first_client = channel.transport.client
    socketio.server.disconnect(first_sid)
    if not wait_for(lambda: channel.transport.client is not first_client):
        fail("server-side drop went unnoticed")
    if not wait_for(lambda: state.is_online(identity.id) and first_sid not in state.did_to_sids[identity.id]):
        fail("channel did not reconnect and re-announce")
    if not channel.wait_until_connected(timeout=10):
        fail("channel not connected after reconnect")

    channel.send(Envelope(
        iv=bytes(12),
        ciphertext=b"after the drop",
        encapsulated_key=b"k" * 48,
        sender=identity.id,
        recipient=identity.id,
        timestamp=1,
    ))
    if not wait_for(lambda: received):
        fail("frame sent after reconnect never arrived")
    if received[0].ciphertext != b"after the drop":
        fail("unexpected frame delivered")

    channel.close()
    print("reconnected")


if __name__ == '__main__':
    main(sys.argv[1])
