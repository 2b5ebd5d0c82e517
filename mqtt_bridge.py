"""Mirror plug events to MQTT and accept on/off commands from it.

Topics, with <prefix> = config.MQTT_TOPIC_PREFIX:
  <prefix>/<uid>/event          every domain event as JSON
  <prefix>/<uid>/state          "ON" / "OFF" (retained)
  <prefix>/<uid>/availability   "online" / "offline" (retained)
  <prefix>/<uid>/set            ON, OFF or TOGGLE, consumed by the server
"""

import json
import logging
import os

import paho.mqtt.client as mqtt

import config
from events import (
    PLUG_CONNECTED,
    PLUG_DISCONNECTED,
    PLUG_DISCONNECTED_WITH_ERROR,
    PLUG_STATE_UPDATED,
)

log = logging.getLogger(__name__)

_COMMANDS = {"ON": 1, "1": 1, "OFF": 0, "0": 0, "TOGGLE": None}


class MqttBridge:
    def __init__(self, client, plug_server, prefix=None):
        self.client = client
        self.plug_server = plug_server
        self.prefix = (prefix or config.MQTT_TOPIC_PREFIX).rstrip("/")

    @property
    def command_topic(self):
        return f"{self.prefix}/+/set"

    def on_connect(self, client, userdata, flags, reason_code, properties):
        log.info("MQTT connected (reason: %s)", reason_code)
        client.subscribe(self.command_topic)
        log.info("MQTT subscribed to %s", self.command_topic)

    def on_disconnect(self, client, userdata, flags, reason_code, properties):
        log.warning("MQTT disconnected (reason: %s)", reason_code)

    def on_message(self, client, userdata, msg):
        parts = msg.topic.split("/")
        if len(parts) < 3 or parts[-1] != "set":
            return
        uid = parts[-2]
        command = msg.payload.decode("utf-8", errors="replace").strip().upper()
        if command not in _COMMANDS:
            log.warning("MQTT: ignoring unknown command %r for plug %s", command, uid)
            return

        state = _COMMANDS[command]
        if state is None:
            ok = self.plug_server.toggle(uid)
        else:
            ok = self.plug_server.set_state(uid, state)
        if not ok:
            log.warning("MQTT: %s for plug %s not delivered", command, uid)

    def handle_event(self, event):
        """EventBus subscriber."""
        base = f"{self.prefix}/{event.uid}"
        body = dict(event.payload(), event=event.kind, timestamp=event.timestamp.isoformat())
        self.client.publish(f"{base}/event", json.dumps(body))

        if event.kind == PLUG_STATE_UPDATED and event.state is not None:
            self.client.publish(f"{base}/state", "ON" if event.state else "OFF", retain=True)
        elif event.kind == PLUG_CONNECTED:
            self.client.publish(f"{base}/availability", "online", retain=True)
        elif event.kind in (PLUG_DISCONNECTED, PLUG_DISCONNECTED_WITH_ERROR):
            self.client.publish(f"{base}/availability", "offline", retain=True)


def setup_mqtt(plug_server, bus):
    """Start the MQTT bridge in paho's background thread. Returns the client or None."""
    broker_ip = os.getenv("MQTT_BROKER_IP")
    username = os.getenv("MQTT_USERNAME")
    password = os.getenv("MQTT_PASSWORD")

    if not broker_ip:
        log.warning("MQTT broker not configured, skipping MQTT setup")
        return None

    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
    if username:
        client.username_pw_set(username, password)

    bridge = MqttBridge(client, plug_server)
    client.on_connect = bridge.on_connect
    client.on_message = bridge.on_message
    client.on_disconnect = bridge.on_disconnect
    client.reconnect_delay_set(min_delay=5, max_delay=300)

    try:
        client.connect(broker_ip, config.MQTT_PORT, keepalive=config.MQTT_KEEPALIVE)
        client.loop_start()  # runs in background thread
        log.info("MQTT client started, broker: %s", broker_ip)
    except OSError as e:
        log.error("MQTT connection failed: %s", e)
        return None

    bus.subscribe(bridge.handle_event)
    return client
