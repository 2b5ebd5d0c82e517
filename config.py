"""Configuration for the Orvibo plug server.

Network settings and tuning values live here. Secrets (the Orvibo PK key) and
the plug name list live in .env, not here; main.py loads .env before this
module is imported.
"""

import logging
import os

log = logging.getLogger(__name__)


class ConfigurationMissing(RuntimeError):
    """A required setting is absent or unusable; the server must not start."""


def _env_flag(name, default):
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Plug TCP server
# ---------------------------------------------------------------------------
BIND_HOST = os.getenv("PLUG_SERVER_HOST", "0.0.0.0")
PORT = int(os.getenv("PLUG_SERVER_PORT", "10001"))
KEEPALIVE_SECONDS = 10       # TCP keep-alive idle time and probe interval
SEND_TIMEOUT_SECONDS = 10    # a plug that stops reading is dropped after this
RECV_BUFFER_SIZE = 4096

# Log every decoded inbound packet ("Socket -> ...")
LOG_PACKET = _env_flag("LOG_PACKET", True)

# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------
WEB_HOST = os.getenv("WEB_HOST", "0.0.0.0")
WEB_PORT = int(os.getenv("WEB_PORT", "3000"))

# ---------------------------------------------------------------------------
# SQLite event history
# ---------------------------------------------------------------------------
DB_PATH = os.getenv("DB_PATH", "orvibo.db")
RECENT_EVENTS_LIMIT = 100

# ---------------------------------------------------------------------------
# MQTT (optional; skipped when MQTT_BROKER_IP is unset)
# ---------------------------------------------------------------------------
MQTT_PORT = 1883
MQTT_KEEPALIVE = 60
MQTT_TOPIC_PREFIX = os.getenv("MQTT_TOPIC_PREFIX", "orvibo")


# ---------------------------------------------------------------------------
# Secrets and plug registry
# ---------------------------------------------------------------------------

def require_shared_key(value=None):
    """Return the 16-character Orvibo PK key. Raises ConfigurationMissing.

    Read from ORVIBO_KEY, or orviboPK as used by older deployments.
    """
    if value is None:
        value = os.getenv("ORVIBO_KEY") or os.getenv("orviboPK") or ""
    value = value.strip()
    if not value:
        raise ConfigurationMissing("Please set ORVIBO_KEY to the Orvibo PK key in your .env file")
    if len(value.encode("utf-8")) != 16:
        raise ConfigurationMissing(f"ORVIBO_KEY must be 16 bytes, got {len(value.encode('utf-8'))}")
    return value


def parse_plug_array(text):
    """Parse "uid:<uid>,name:<name>,uid:<uid>,name:<name>" into {uid: name}.

    Incomplete or malformed pairs are skipped with a warning.
    """
    names = {}
    if not text:
        return names
    parts = [p.strip() for p in text.split(",")]
    for i in range(0, len(parts), 2):
        pair = parts[i:i + 2]
        if len(pair) < 2:
            log.warning("Ignoring incomplete plug entry %r", pair[0])
            continue
        uid_key, _, uid = pair[0].partition(":")
        name_key, _, name = pair[1].partition(":")
        if uid_key.strip() != "uid" or name_key.strip() != "name" or not uid.strip():
            log.warning("Ignoring malformed plug entry %r", ",".join(pair))
            continue
        names[uid.strip()] = name.strip()
    return names


def load_plug_names():
    """Plug uid -> display name, from PLUG_ARRAY (or plugArray)."""
    return parse_plug_array(os.getenv("PLUG_ARRAY") or os.getenv("plugArray") or "")
