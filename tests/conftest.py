"""Test fixtures for the Orvibo plug server."""

import pytest

from dispatcher import Dispatcher
from events import EventBus
from server import ConnectionRegistry
from sessions import SessionStore

from .plug_simulator import PLUG_NAME, PLUG_UID, SHARED_KEY, FakeConnection, PlugSimulator


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def events(bus):
    """List that collects every published event."""
    received = []
    bus.subscribe(received.append)
    return received


@pytest.fixture
def dispatcher(store, bus):
    return Dispatcher(store, bus, SHARED_KEY, plug_names={PLUG_UID: PLUG_NAME})


@pytest.fixture
def connection():
    return FakeConnection()


@pytest.fixture
def registry(store):
    return ConnectionRegistry(store.lock)


@pytest.fixture
def plug():
    return PlugSimulator(SHARED_KEY, PLUG_UID)


@pytest.fixture
def identified_plug(dispatcher, connection, plug, events):
    """A plug that has completed HELLO and HANDSHAKE on `connection`."""
    dispatcher.handle_frame(connection, plug.hello())
    plug.accept_hello_reply(connection.sent[-1])
    dispatcher.handle_frame(connection, plug.handshake())
    connection.sent.clear()
    return plug
