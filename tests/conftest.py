import pytest

from qchat.errors import TransportError
from qchat.keygen import create_identity
from qchat.store import MemoryStore
from qchat.transport import Transport


@pytest.fixture(scope="session")
def alice():
    return create_identity()


@pytest.fixture(scope="session")
def bob():
    return create_identity()


@pytest.fixture(scope="session")
def mallory():
    return create_identity()


class FakeTransport(Transport):
    """In-memory transport. Tests drive inbound frames and drops by hand."""

    def __init__(self, fail_connects=0):
        super().__init__()
        self.fail_connects = fail_connects
        self.connects = 0
        self.connected = False
        self.closed = False
        self.sent = []
        self.peer = None

    def connect(self):
        self.connects += 1
        if self.fail_connects:
            self.fail_connects -= 1
            raise TransportError("connection refused")
        self.connected = True
        self.closed = False

    def send(self, data):
        if not self.connected:
            raise TransportError("not connected")
        self.sent.append(data)
        if self.peer is not None and self.peer.connected:
            self.peer.inject(data)

    def close(self):
        self.connected = False
        self.closed = True

    def inject(self, data):
        self._deliver(data)

    def drop(self):
        self.connected = False
        self._lost()


@pytest.fixture
def transport():
    return FakeTransport()


def make_store(identity, *contacts):
    store = MemoryStore()
    store.save_identity(identity)
    for contact in contacts:
        store.save_contact(contact.public())
    return store
