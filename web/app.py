"""Flask dashboard for the Orvibo plug server.

Runs in the same process as the plug server (main.py), since the device list
lives in the server's in-memory session store.
"""

import os

from flask import Flask, jsonify, render_template, request

import config
import logger


def create_app(plug_server):
    app = Flask(__name__)
    app.secret_key = os.getenv("FLASK_SECRET_KEY", "dev-key-change-in-production")
    app.config["SEND_FILE_MAX_AGE_DEFAULT"] = 0

    # -----------------------------------------------------------------------
    # Page routes
    # -----------------------------------------------------------------------

    @app.route("/")
    def index():
        return render_template(
            "index.html",
            title="Orvibo b25 Server",
            sockets=plug_server.list_connected_devices(),
        )

    # -----------------------------------------------------------------------
    # API: plugs
    # -----------------------------------------------------------------------

    @app.route("/api/plugs")
    def api_plugs():
        return jsonify(plug_server.list_connected_devices())

    @app.route("/api/plugs/<uid>/toggle", methods=["POST"])
    def api_toggle(uid):
        if not plug_server.toggle(uid):
            return jsonify({"error": f"plug {uid} not connected"}), 404
        return jsonify({"uid": uid, "requested": True})

    # -----------------------------------------------------------------------
    # API: event history
    # -----------------------------------------------------------------------

    @app.route("/api/events")
    def api_events():
        try:
            limit = int(request.args.get("limit", config.RECENT_EVENTS_LIMIT))
        except ValueError:
            return jsonify({"error": "limit must be an integer"}), 400
        uid = request.args.get("uid")
        try:
            return jsonify(logger.recent_events(limit=max(1, limit), uid=uid))
        except Exception as e:
            return jsonify({"error": str(e)}), 500

    return app
