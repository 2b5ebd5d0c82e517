"""Connection-keyed plug session store and random value helpers.

The store is the single source of truth for each connection's encryption
state. One re-entrant lock guards it and is shared with the server's live
connection registry, so callers that must look something up and then write to
a socket (toggle, teardown) can hold it across both steps.
"""

import copy
import logging
import secrets
import string
import threading

log = logging.getLogger(__name__)

_TEXT_ALPHABET = string.ascii_letters + string.digits
_HEX_ALPHABET = "0123456789abcdef"


def random_text(length):
    """Random alphanumeric string, used for session keys and connection ids."""
    return "".join(secrets.choice(_TEXT_ALPHABET) for _ in range(length))


def random_hex(length):
    return "".join(secrets.choice(_HEX_ALPHABET) for _ in range(length))


def random_number(digits):
    """Random integer with exactly `digits` decimal digits."""
    low = 10 ** (digits - 1)
    return low + secrets.randbelow(9 * low)


class SessionStore:
    """Maps connection id to PlugSession. Values are copied in and out."""

    def __init__(self):
        self.lock = threading.RLock()
        self._sessions = {}

    def get(self, connection_id):
        with self.lock:
            session = self._sessions.get(connection_id)
            return copy.copy(session) if session is not None else None

    def set(self, connection_id, session):
        with self.lock:
            self._sessions[connection_id] = copy.copy(session)

    def remove(self, connection_id):
        """Drop and return the session, or None if it was never created."""
        with self.lock:
            return self._sessions.pop(connection_id, None)

    def find_by_uid(self, uid):
        """Linear scan; device counts per server are in the tens."""
        with self.lock:
            for connection_id, session in self._sessions.items():
                if session.uid == uid:
                    return connection_id, copy.copy(session)
            return None, None

    def snapshot(self):
        with self.lock:
            return [copy.copy(s) for s in self._sessions.values()]

    def __contains__(self, connection_id):
        with self.lock:
            return connection_id in self._sessions

    def __len__(self):
        with self.lock:
            return len(self._sessions)
