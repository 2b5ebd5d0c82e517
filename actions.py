"""Externally triggered plug commands.

Lookups go through the session store by uid, then the live connection
registry by connection id. Both steps and the session update run under the
store lock so a concurrent disconnect cannot remove the session between them.
The write to the plug happens after the lock is released; a connection closed
in the meantime makes it fail with OSError, reported as False.
"""

import dataclasses
import logging

from devices import orvibo_packet
from sessions import random_hex, random_number

log = logging.getLogger(__name__)


class DeviceNotFound(LookupError):
    """No identified session with a live connection for this uid."""


class PlugActions:
    def __init__(self, store, connections):
        self.store = store
        self.connections = connections

    def locate(self, uid):
        """Return (session, connection) for uid. Raises DeviceNotFound.

        Callers must hold store.lock if they go on to update the session.
        """
        with self.store.lock:
            connection_id, session = self.store.find_by_uid(uid)
            if session is None:
                raise DeviceNotFound(f"Could not find plug {uid}")
            connection = self.connections.get(connection_id)
            if connection is None:
                raise DeviceNotFound(f"Plug {uid} has no live connection")
            return session, connection

    def toggle(self, uid) -> bool:
        """Flip the plug's on/off state. Returns False if the plug is not connected."""
        return self._send_state(uid, None)

    def set_state(self, uid, state) -> bool:
        """Switch the plug on (1) or off (0)."""
        if state not in (0, 1):
            raise ValueError(f"state must be 0 or 1, got {state!r}")
        return self._send_state(uid, state)

    def _send_state(self, uid, state):
        with self.store.lock:
            try:
                session, connection = self.locate(uid)
            except DeviceNotFound as e:
                log.warning("%s", e)
                return False

            if state is None:
                state = 0 if session.state == 1 else 1
            session = dataclasses.replace(
                session,
                state=state,
                serial=random_number(8),
                client_session_id=session.client_session_id or random_hex(32),
                device_id=session.device_id or random_hex(32),
            )
            self.store.set(connection.id, session)

        try:
            connection.send(orvibo_packet.state_update_request(session))
        except OSError as e:
            # The connection's own thread sees the same failure and tears down
            log.warning("Plug %s: state update write failed: %s", uid, e)
            return False

        log.info("Plug %s (%s): requested state %s", session.name, uid, state)
        return True

    def list_connected_devices(self):
        return [s.as_device() for s in self.store.snapshot()]
