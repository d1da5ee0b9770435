import pytest

from fakes import FakeMediaDevices, TransportFactory
from roomsync.core import RealtimeClient


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "club.db")


@pytest.fixture
def make_client(db_path):
    clients = []

    def make(**kwargs):
        client = RealtimeClient(db_path, poll_interval=0.01, **kwargs)
        clients.append(client)
        return client

    yield make
    for client in clients:
        client.dispose()


@pytest.fixture
def client(make_client):
    return make_client()


@pytest.fixture
def transports():
    return TransportFactory()


@pytest.fixture
def media():
    return FakeMediaDevices()
