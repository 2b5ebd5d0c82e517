"""Per-connection plug session data container."""

from dataclasses import dataclass


@dataclass
class PlugSession:
    connection_id: str
    encryption_key: str = None        # 16 chars, handed out in the hello reply
    session_id: str = None            # 32 hex chars, written into every reply frame
    model_id: str = None              # from HELLO
    uid: str = None                   # from HANDSHAKE, fixed afterwards
    name: str = "unknown"             # plug registry lookup by uid
    serial: object = None             # last request serial, echoed back
    state: int = None                 # 0 = off, 1 = on, None = not reported yet
    last_command: object = None       # raw "cmd" of the last frame, echoed in default replies
    client_session_id: str = None     # created on first toggle, then reused
    device_id: str = None             # controller device id, same lifetime

    @property
    def identified(self):
        return self.uid is not None

    def as_device(self):
        """Public view used by the device list and the dashboard."""
        return {
            "name": self.name,
            "state": self.state,
            "uid": self.uid,
            "modelId": self.model_id,
        }
