"""Domain events raised by the plug protocol engine.

Collaborators either register a callback with subscribe() or take a
queue.Queue from channel() and poll it. Each protocol transition publishes at
most one event.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

log = logging.getLogger(__name__)

PLUG_CONNECTED = "plugConnected"
GOT_HEARTBEAT = "gotHeartbeat"
PLUG_STATE_UPDATED = "plugStateUpdated"
PLUG_DISCONNECTED = "plugDisconnected"
PLUG_DISCONNECTED_WITH_ERROR = "plugDisconnectedWithError"

EVENT_KINDS = (
    PLUG_CONNECTED,
    GOT_HEARTBEAT,
    PLUG_STATE_UPDATED,
    PLUG_DISCONNECTED,
    PLUG_DISCONNECTED_WITH_ERROR,
)


@dataclass(frozen=True)
class PlugEvent:
    kind: str
    uid: str
    name: str
    state: int = None                 # only set for plugStateUpdated
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def payload(self):
        """The {uid, name[, state]} mapping collaborators receive."""
        data = {"uid": self.uid, "name": self.name}
        if self.kind == PLUG_STATE_UPDATED:
            data["state"] = self.state
        return data


class EventBus:
    def __init__(self):
        self._lock = threading.Lock()
        self._callbacks = []
        self._channels = []

    def subscribe(self, callback, kinds=None):
        """Call callback(event) for each event (optionally only some kinds).

        Returns a function that removes the subscription.
        """
        unknown = set(kinds or ()) - set(EVENT_KINDS)
        if unknown:
            raise ValueError(f"Unknown event kind(s): {', '.join(sorted(unknown))}")
        entry = (callback, frozenset(kinds) if kinds else None)
        with self._lock:
            self._callbacks.append(entry)

        def unsubscribe():
            with self._lock:
                if entry in self._callbacks:
                    self._callbacks.remove(entry)

        return unsubscribe

    def channel(self, maxsize=0):
        """Return a queue that receives every event published from now on."""
        q = queue.Queue(maxsize=maxsize)
        with self._lock:
            self._channels.append(q)
        return q

    def close_channel(self, q):
        with self._lock:
            if q in self._channels:
                self._channels.remove(q)

    def publish(self, event):
        with self._lock:
            callbacks = list(self._callbacks)
            channels = list(self._channels)

        for q in channels:
            try:
                q.put_nowait(event)
            except queue.Full:
                log.warning("Event channel full, dropping %s for %s", event.kind, event.uid)

        for callback, kinds in callbacks:
            if kinds is not None and event.kind not in kinds:
                continue
            try:
                callback(event)
            except Exception:
                log.exception("Event subscriber %r failed on %s", callback, event.kind)
