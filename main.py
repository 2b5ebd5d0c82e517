"""Orvibo plug server: entry point.

Startup:
  1. Load .env and validate the Orvibo PK key (refuse to start without it)
  2. Start the plug TCP server (background threads)
  3. Wire event subscribers: console log, SQLite history, MQTT bridge
  4. Serve the Flask dashboard in the main thread
"""

import logging
import sys

from dotenv import load_dotenv

load_dotenv()

import config
import logger
import mqtt_bridge
from events import (
    GOT_HEARTBEAT,
    PLUG_CONNECTED,
    PLUG_DISCONNECTED,
    PLUG_DISCONNECTED_WITH_ERROR,
    PLUG_STATE_UPDATED,
    EventBus,
)
from server import PlugServer
from web.app import create_app

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
log = logging.getLogger(__name__)

_MESSAGES = {
    PLUG_CONNECTED: "Connected {uid} name = {name}",
    PLUG_STATE_UPDATED: "Plug {name} {uid} updated state {state}",
    GOT_HEARTBEAT: "Plug {name} {uid} sent heartbeat",
    PLUG_DISCONNECTED: "Plug {uid} - {name} disconnected",
    PLUG_DISCONNECTED_WITH_ERROR: "Plug {uid} - {name} disconnected with error",
}


def log_event(event):
    log.info(_MESSAGES[event.kind].format(uid=event.uid, name=event.name, state=event.state))


def build_server(bus):
    """Create the plug server from configuration. Raises ConfigurationMissing."""
    shared_key = config.require_shared_key()
    plug_names = config.load_plug_names()
    log.info("Loaded %d plug name(s)", len(plug_names))
    return PlugServer(
        shared_key,
        plug_names=plug_names,
        host=config.BIND_HOST,
        port=config.PORT,
        log_packets=config.LOG_PACKET,
        bus=bus,
    )


def main():
    bus = EventBus()
    try:
        plug_server = build_server(bus)
    except config.ConfigurationMissing as e:
        log.error("%s", e)
        return 1

    bus.subscribe(log_event)
    bus.subscribe(logger.handle_event)

    mqtt_client = None
    try:
        plug_server.start()
        mqtt_client = mqtt_bridge.setup_mqtt(plug_server, bus)

        app = create_app(plug_server)
        log.info("Dashboard on http://%s:%d", config.WEB_HOST, config.WEB_PORT)
        app.run(host=config.WEB_HOST, port=config.WEB_PORT, use_reloader=False)
    except KeyboardInterrupt:
        log.info("Shutting down")
    finally:
        if mqtt_client:
            mqtt_client.loop_stop()
        plug_server.stop()
        logger.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
