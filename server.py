"""Orvibo plug TCP server.

One accept thread, one thread per plug connection. A connection's frames are
handled strictly in the order received; the session store lock serializes
everything that touches shared state across connections and the action API.
"""

import logging
import socket
import threading

import config
from actions import PlugActions
from devices.orvibo_packet import FrameBuffer, InvalidFrame
from dispatcher import Dispatcher, MissingSession
from events import (
    PLUG_DISCONNECTED,
    PLUG_DISCONNECTED_WITH_ERROR,
    EventBus,
    PlugEvent,
)
from sessions import SessionStore, random_text

log = logging.getLogger(__name__)


def enable_keepalive(sock, idle_seconds, probes=3):
    """Turn on TCP keep-alive; a dead plug then surfaces as a socket error."""
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
    for name, value in (("TCP_KEEPIDLE", idle_seconds),
                        ("TCP_KEEPINTVL", idle_seconds),
                        ("TCP_KEEPCNT", probes)):
        option = getattr(socket, name, None)
        if option is None:
            continue
        try:
            sock.setsockopt(socket.IPPROTO_TCP, option, value)
        except OSError as e:
            log.debug("Could not set %s: %s", name, e)


class Connection:
    """A live plug socket. send() is safe to call from any thread."""

    def __init__(self, sock, address, connection_id):
        self.sock = sock
        self.address = address
        self.id = connection_id
        self.failure = None           # write error that killed the connection
        self._send_lock = threading.Lock()

    def send(self, data):
        with self._send_lock:
            try:
                self.sock.sendall(data)
            except socket.timeout as e:
                # The plug stopped reading; wake the reader so it tears down
                self.failure = e
                self._shutdown()
                raise

    def _shutdown(self):
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected

    def close(self):
        self._shutdown()
        self.sock.close()

    def __repr__(self):
        return f"Connection({self.id!r}, {self.address!r})"


class ConnectionRegistry:
    """Live connections by id, guarded by the session store's lock."""

    def __init__(self, lock):
        self.lock = lock
        self._connections = {}

    def add(self, connection):
        with self.lock:
            self._connections[connection.id] = connection

    def get(self, connection_id):
        with self.lock:
            return self._connections.get(connection_id)

    def remove(self, connection_id):
        with self.lock:
            return self._connections.pop(connection_id, None)

    def all(self):
        with self.lock:
            return list(self._connections.values())

    def __len__(self):
        with self.lock:
            return len(self._connections)


class PlugServer:
    """Accepts plug connections and exposes toggle / device listing."""

    def __init__(self, shared_key, plug_names=None, host=None, port=None,
                 log_packets=False, bus=None, keepalive_seconds=None, send_timeout=None):
        self.host = host if host is not None else config.BIND_HOST
        self.port = port if port is not None else config.PORT
        self.keepalive_seconds = keepalive_seconds or config.KEEPALIVE_SECONDS
        self.send_timeout = send_timeout or config.SEND_TIMEOUT_SECONDS

        self.bus = bus or EventBus()
        self.store = SessionStore()
        self.connections = ConnectionRegistry(self.store.lock)
        self.dispatcher = Dispatcher(self.store, self.bus, shared_key,
                                     plug_names=plug_names, log_packets=log_packets)
        self.actions = PlugActions(self.store, self.connections)

        self._listener = None
        self._accept_thread = None
        self._running = threading.Event()

    @property
    def address(self):
        """(host, port) actually bound; useful when started on port 0."""
        if self._listener is None:
            return None
        return self._listener.getsockname()[:2]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Bind and start accepting in a background thread."""
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        listener.bind((self.host, self.port))
        listener.listen()
        # Wake up periodically so stop() is noticed even if close() does not interrupt accept()
        listener.settimeout(0.5)
        self._listener = listener
        self._running.set()

        self._accept_thread = threading.Thread(
            target=self._accept_loop, name="plug-accept", daemon=True
        )
        self._accept_thread.start()
        log.info("Starting Orvibo socket server on %s:%d", *self.address)

    def serve_forever(self):
        if self._accept_thread is None:
            self.start()
        while self._accept_thread.is_alive():
            self._accept_thread.join(timeout=0.5)

    def stop(self):
        self._running.clear()
        if self._listener is not None:
            self._listener.close()
        for connection in self.connections.all():
            connection.close()
        if self._accept_thread is not None:
            self._accept_thread.join(timeout=2)
        log.info("Orvibo socket server stopped")

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _accept_loop(self):
        while self._running.is_set():
            try:
                sock, address = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                if not self._running.is_set():
                    break
                log.exception("Accept failed")
                continue
            threading.Thread(
                target=self._serve_connection, args=(sock, address),
                name=f"plug-{address[0]}:{address[1]}", daemon=True,
            ).start()

    def _serve_connection(self, sock, address):
        connection = Connection(sock, address, random_text(16))
        error = None
        try:
            # Bounds sendall; recv timeouts below just mean the plug is idle
            sock.settimeout(self.send_timeout)
            enable_keepalive(sock, self.keepalive_seconds)
            self.connections.add(connection)
            log.info("Plug connected from %s:%d (connection %s)",
                     address[0], address[1], connection.id)

            framer = FrameBuffer()
            while True:
                try:
                    data = sock.recv(config.RECV_BUFFER_SIZE)
                except socket.timeout:
                    continue
                if not data:
                    break
                for frame in framer.feed(data):
                    self._process(connection, frame)
        except OSError as e:
            if self._running.is_set():
                error = e
        finally:
            self._teardown(connection, error or connection.failure)

    def _process(self, connection, frame):
        try:
            self.dispatcher.handle_frame(connection, frame)
        except InvalidFrame as e:
            log.warning("Connection %s: dropping invalid frame: %s", connection.id, e)
        except MissingSession as e:
            log.warning("Connection %s: dropping frame: %s", connection.id, e)
        except OSError:
            raise
        except Exception:
            log.exception("Connection %s: error handling frame, dropping it", connection.id)

    def _teardown(self, connection, error):
        with self.store.lock:
            session = self.store.remove(connection.id)
            self.connections.remove(connection.id)
        connection.close()

        if error is not None:
            log.warning("Error with socket %s: %s", connection.id, error)
            kind = PLUG_DISCONNECTED_WITH_ERROR
        else:
            kind = PLUG_DISCONNECTED
        log.info("Connection %s closed", connection.id)

        if session is not None and session.identified:
            self.bus.publish(PlugEvent(kind, session.uid, session.name, session.state))

    # ------------------------------------------------------------------
    # Action API
    # ------------------------------------------------------------------

    def toggle(self, uid) -> bool:
        return self.actions.toggle(uid)

    def set_state(self, uid, state) -> bool:
        return self.actions.set_state(uid, state)

    def list_connected_devices(self):
        return self.actions.list_connected_devices()
