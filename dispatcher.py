"""Orvibo command state machine.

Routes each decoded frame to the handler for its command code. Every handler
merges what the plug sent into the connection's session, stores it, writes the
reply, and then publishes at most one domain event. Only HANDSHAKE assigns
the uid; frames that arrive before it are answered but publish nothing.

    HELLO                 new session key             -> hello reply
    HANDSHAKE             learn uid, resolve name     -> handshake reply, plugConnected
    HEARTBEAT             refresh serial              -> heartbeat reply, gotHeartbeat
    STATE_UPDATE          record on/off state         -> confirm reply, plugStateUpdated
    STATE_UPDATE_CONFIRM  plug acknowledged a toggle  -> nothing
    anything else                                     -> default reply
"""

import dataclasses
import logging

from devices import orvibo_packet
from devices.orvibo_packet import (
    HANDSHAKE,
    HEARTBEAT,
    HELLO,
    STATE_UPDATE,
    STATE_UPDATE_CONFIRM,
)
from events import (
    GOT_HEARTBEAT,
    PLUG_CONNECTED,
    PLUG_STATE_UPDATED,
    PlugEvent,
)
from sessions import random_hex, random_text
from state import PlugSession

log = logging.getLogger(__name__)

UNKNOWN_NAME = "unknown"


class MissingSession(LookupError):
    """A non-HELLO frame arrived on a connection that never completed HELLO."""


def _merge(session, **fields):
    """Copy of session with the given fields, skipping values the plug did not send."""
    return dataclasses.replace(session, **{k: v for k, v in fields.items() if v is not None})


class Dispatcher:
    def __init__(self, store, bus, shared_key, plug_names=None, log_packets=False):
        self.store = store
        self.bus = bus
        self.shared_key = shared_key
        self.plug_names = dict(plug_names or {})
        self.log_packets = log_packets
        self._handlers = {
            HELLO: self._handle_hello,
            HANDSHAKE: self._handle_handshake,
            HEARTBEAT: self._handle_heartbeat,
            STATE_UPDATE: self._handle_state_update,
            STATE_UPDATE_CONFIRM: self._handle_state_confirm,
        }

    def name_for_uid(self, uid):
        return self.plug_names.get(uid, UNKNOWN_NAME)

    def handle_frame(self, connection, raw):
        """Decode, decrypt and dispatch one frame received on connection.

        Raises InvalidFrame or MissingSession; in both cases nothing has been
        written and the session is untouched.
        """
        packet = orvibo_packet.decode(raw)

        if packet.is_hello:
            packet.decrypt(self.shared_key)
        else:
            session = self.store.get(connection.id)
            if session is None or not session.encryption_key:
                raise MissingSession(f"No session key for connection {connection.id}")
            packet.decrypt(session.encryption_key)

        if self.log_packets:
            log.info(packet.describe("Socket -> "))

        handler = self._handlers.get(packet.command, self._handle_unknown)
        handler(packet, connection)
        return packet

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _session_for(self, connection, packet):
        session = self.store.get(connection.id)
        if session is None:
            raise MissingSession(
                f"{orvibo_packet.COMMAND_NAMES.get(packet.command, packet.command)} "
                f"before HELLO on connection {connection.id}"
            )
        return session

    def _check_uid(self, session, packet):
        """Only HANDSHAKE assigns the uid; later frames cannot change it."""
        if session.identified and packet.uid is not None and packet.uid != session.uid:
            log.warning("Connection %s: plug %s now reports uid %s, keeping original",
                        session.connection_id, session.uid, packet.uid)

    def _store(self, connection, session):
        # Caller holds store.lock; the reply is sent after it is released
        self.store.set(connection.id, session)
        return session

    def _emit(self, kind, session):
        if not session.identified:
            log.debug("Connection %s: %s before HANDSHAKE, not publishing",
                      session.connection_id, kind)
            return
        self.bus.publish(PlugEvent(kind, session.uid, session.name, session.state))

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _handle_hello(self, packet, connection):
        session = PlugSession(
            connection_id=connection.id,
            encryption_key=random_text(16),
            session_id=random_hex(32),
            model_id=packet.model_id,
            serial=packet.serial,
            last_command=HELLO,
        )
        with self.store.lock:
            if connection.id in self.store:
                log.info("Connection %s: repeated HELLO, issuing a new key", connection.id)
            self._store(connection, session)
        connection.send(orvibo_packet.hello_reply(session, self.shared_key))
        log.debug("Connection %s: HELLO from model %s", connection.id, session.model_id)

    def _handle_handshake(self, packet, connection):
        with self.store.lock:
            previous = self._session_for(connection, packet)
            self._check_uid(previous, packet)
            session = previous
            if not previous.identified and packet.uid is not None:
                session = dataclasses.replace(session, uid=packet.uid,
                                              name=self.name_for_uid(packet.uid))
            session = self._store(connection, _merge(session, serial=packet.serial,
                                                     last_command=HANDSHAKE))
        connection.send(orvibo_packet.handshake_reply(session))

        if not previous.identified and session.identified:
            self._emit(PLUG_CONNECTED, session)
        elif not session.identified:
            log.warning("Connection %s: HANDSHAKE without uid", connection.id)

    def _handle_heartbeat(self, packet, connection):
        with self.store.lock:
            session = self._session_for(connection, packet)
            self._check_uid(session, packet)
            session = self._store(connection, _merge(session, serial=packet.serial,
                                                     last_command=HEARTBEAT))
        connection.send(orvibo_packet.heartbeat_reply(_addressed(session, packet)))
        self._emit(GOT_HEARTBEAT, session)

    def _handle_state_update(self, packet, connection):
        with self.store.lock:
            session = self._session_for(connection, packet)
            self._check_uid(session, packet)
            session = self._store(connection, _merge(session, serial=packet.serial,
                                                     state=packet.value1,
                                                     last_command=STATE_UPDATE))
        connection.send(orvibo_packet.confirm_state_reply(_addressed(session, packet)))
        self._emit(PLUG_STATE_UPDATED, session)

    def _handle_state_confirm(self, packet, connection):
        # Acknowledgement of a server-issued state update; the plug follows up
        # with its own STATE_UPDATE, which is what we record.
        session = self._session_for(connection, packet)
        log.debug("Plug %s confirmed state update (serial %s)", session.uid, packet.serial)

    def _handle_unknown(self, packet, connection):
        raw_command = packet.fields.get("cmd")
        if raw_command is None:
            log.warning("Connection %s: frame without cmd, not replying", connection.id)
            return
        with self.store.lock:
            session = self._session_for(connection, packet)
            self._check_uid(session, packet)
            session = self._store(connection, _merge(session, serial=packet.serial,
                                                     last_command=raw_command))
        connection.send(orvibo_packet.default_reply(_addressed(session, packet)))
        log.debug("Connection %s: default reply to cmd %r", connection.id, raw_command)


def _addressed(session, packet):
    """Session to build a reply from; falls back to the uid the plug sent
    when it has not completed HANDSHAKE yet. Never stored."""
    if session.identified or packet.uid is None:
        return session
    return dataclasses.replace(session, uid=packet.uid)
