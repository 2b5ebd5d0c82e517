"""End-to-end tests against a real listening server on loopback."""

import socket
import threading
import time

import pytest

from devices import orvibo_packet
from events import (
    GOT_HEARTBEAT,
    PLUG_CONNECTED,
    PLUG_DISCONNECTED,
    PLUG_DISCONNECTED_WITH_ERROR,
    PLUG_STATE_UPDATED,
)
from server import PlugServer

from .plug_simulator import PLUG_NAME, PLUG_UID, SHARED_KEY, SocketPlug, wait_for_event

SECOND_UID = "accf2379c3d4"


@pytest.fixture
def server(bus):
    server = PlugServer(
        SHARED_KEY,
        plug_names={PLUG_UID: PLUG_NAME, SECOND_UID: "Heater"},
        host="127.0.0.1",
        port=0,
        bus=bus,
    )
    server.start()
    yield server
    server.stop()


@pytest.fixture
def channel(bus):
    return bus.channel()


@pytest.fixture
def socket_plug(server):
    plug = SocketPlug(SHARED_KEY, PLUG_UID, server.address)
    yield plug
    plug.close()


def _wait_until(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return False


def test_handshake_connects_plug(server, channel, socket_plug):
    reply = socket_plug.connect_and_identify()
    assert reply["cmd"] == orvibo_packet.HANDSHAKE

    event = wait_for_event(channel, PLUG_CONNECTED)
    assert event.payload() == {"uid": PLUG_UID, "name": PLUG_NAME}
    assert [d["uid"] for d in server.list_connected_devices()] == [PLUG_UID]


def test_state_update_and_heartbeat(server, channel, socket_plug):
    socket_plug.connect_and_identify()

    socket_plug.send(socket_plug.state_update(1, serial=7))
    assert socket_plug.read(socket_plug.recv_frame())["serial"] == 7
    assert wait_for_event(channel, PLUG_STATE_UPDATED).state == 1

    socket_plug.send(socket_plug.heartbeat(serial=8))
    assert socket_plug.read(socket_plug.recv_frame())["cmd"] == orvibo_packet.HEARTBEAT
    wait_for_event(channel, GOT_HEARTBEAT)
    assert server.list_connected_devices()[0]["state"] == 1


def test_toggle_reaches_the_plug(server, socket_plug):
    socket_plug.connect_and_identify()
    socket_plug.send(socket_plug.state_update(0))
    socket_plug.recv_frame()

    assert server.toggle(PLUG_UID) is True
    request = socket_plug.read(socket_plug.recv_frame())
    assert request["cmd"] == orvibo_packet.STATE_UPDATE_CONFIRM
    assert request["value1"] == 1

    # The plug acknowledges; no reply is expected
    socket_plug.send(socket_plug.state_confirm(serial=request["serial"]))
    socket_plug.send(socket_plug.heartbeat(serial=9))
    assert socket_plug.read(socket_plug.recv_frame())["serial"] == 9


def test_toggle_unknown_uid(server):
    assert server.toggle("nobody") is False


def test_invalid_frame_keeps_connection_open(server, channel, socket_plug):
    socket_plug.connect_and_identify()

    corrupted = bytearray(socket_plug.heartbeat(serial=10))
    corrupted[6] ^= 0xFF
    socket_plug.send(bytes(corrupted))
    socket_plug.send(socket_plug.heartbeat(serial=11))

    assert socket_plug.read(socket_plug.recv_frame())["serial"] == 11
    assert len(server.list_connected_devices()) == 1


def test_command_before_hello_is_dropped(server, socket_plug):
    socket_plug.key = "0000000000000000"
    socket_plug.send(socket_plug.heartbeat())
    socket_plug.send(socket_plug.hello(serial=12))

    assert socket_plug.accept_hello_reply(socket_plug.recv_frame())["serial"] == 12


def test_concurrent_plugs_get_their_own_replies(server):
    plugs = [SocketPlug(SHARED_KEY, uid, server.address) for uid in (PLUG_UID, SECOND_UID)]
    failures = []

    def run(plug, base):
        try:
            plug.connect_and_identify()
            for serial in range(base, base + 20):
                plug.send(plug.heartbeat(serial=serial))
                reply = plug.read(plug.recv_frame())
                if reply["serial"] != serial or reply["uid"] != plug.uid:
                    failures.append((plug.uid, serial, reply))
        except Exception as e:
            failures.append((plug.uid, e))

    threads = [threading.Thread(target=run, args=(p, 1000 * (i + 1))) for i, p in enumerate(plugs)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    try:
        assert failures == []
        names = sorted(d["name"] for d in server.list_connected_devices())
        assert names == ["Desk Lamp", "Heater"]
    finally:
        for plug in plugs:
            plug.close()


def test_clean_close_removes_session(server, channel):
    plug = SocketPlug(SHARED_KEY, PLUG_UID, server.address)
    plug.connect_and_identify()
    wait_for_event(channel, PLUG_CONNECTED)
    plug.close()

    event = wait_for_event(channel, PLUG_DISCONNECTED)
    assert event.payload() == {"uid": PLUG_UID, "name": PLUG_NAME}
    assert server.list_connected_devices() == []
    assert server.toggle(PLUG_UID) is False


def test_reset_reports_disconnect_with_error(server, channel):
    plug = SocketPlug(SHARED_KEY, PLUG_UID, server.address)
    plug.connect_and_identify()
    wait_for_event(channel, PLUG_CONNECTED)
    plug.reset()

    event = wait_for_event(channel, PLUG_DISCONNECTED_WITH_ERROR)
    assert event.uid == PLUG_UID
    assert _wait_until(lambda: len(server.connections) == 0)


def test_unidentified_disconnect_is_silent(server, bus):
    seen = []
    bus.subscribe(seen.append)
    plug = SocketPlug(SHARED_KEY, PLUG_UID, server.address)
    plug.send(plug.hello())
    plug.accept_hello_reply(plug.recv_frame())
    plug.close()

    assert _wait_until(lambda: len(server.store) == 0)
    assert seen == []


def test_stop_closes_plug_connections(bus):
    server = PlugServer(SHARED_KEY, host="127.0.0.1", port=0, bus=bus)
    server.start()
    plug = SocketPlug(SHARED_KEY, PLUG_UID, server.address)
    plug.connect_and_identify()
    server.stop()

    with pytest.raises((ConnectionError, OSError)):
        plug.recv_frame()
    plug.close()


def test_handler_error_drops_only_the_frame(server, channel, socket_plug, monkeypatch, caplog):
    def broken(packet, connection):
        raise RuntimeError("handler bug")

    socket_plug.connect_and_identify()
    monkeypatch.setitem(server.dispatcher._handlers, orvibo_packet.HEARTBEAT, broken)

    socket_plug.send(socket_plug.heartbeat(serial=20))
    socket_plug.send(socket_plug.state_update(1, serial=21))

    assert socket_plug.read(socket_plug.recv_frame())["serial"] == 21
    assert wait_for_event(channel, PLUG_STATE_UPDATED).state == 1
    assert len(server.connections) == 1
    assert "handler bug" in caplog.text


def test_stalled_plug_does_not_block_other_connections(bus, channel):
    server = PlugServer(
        SHARED_KEY,
        plug_names={PLUG_UID: PLUG_NAME, SECOND_UID: "Heater"},
        host="127.0.0.1",
        port=0,
        bus=bus,
        send_timeout=0.5,
    )
    server.start()
    stalled = SocketPlug(SHARED_KEY, PLUG_UID, server.address)
    other = None
    stop_flooding = threading.Event()
    try:
        stalled.sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 1024)
        stalled.connect_and_identify()
        wait_for_event(channel, PLUG_CONNECTED)
        for connection in server.connections.all():
            connection.sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, 4096)

        # The stalled plug never reads again; keep writing to it until its buffers fill
        def flood():
            while not stop_flooding.is_set() and server.toggle(PLUG_UID):
                pass

        threading.Thread(target=flood, daemon=True).start()
        time.sleep(0.2)

        other = SocketPlug(SHARED_KEY, SECOND_UID, server.address, timeout=2.0)
        assert other.connect_and_identify()["cmd"] == orvibo_packet.HANDSHAKE
        other.send(other.heartbeat(serial=30))
        assert other.read(other.recv_frame())["serial"] == 30

        event = wait_for_event(channel, PLUG_DISCONNECTED_WITH_ERROR)
        assert event.uid == PLUG_UID
        assert [d["uid"] for d in server.list_connected_devices()] == [SECOND_UID]
    finally:
        stop_flooding.set()
        stalled.close()
        if other is not None:
            other.close()
        server.stop()
