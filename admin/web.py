# mqtt_test_server/admin/web.py
import logging
import threading

from flask import Flask, jsonify
from werkzeug.serving import make_server

import config.settings as settings

log = logging.getLogger(__name__)


def create_app(broker) -> Flask:
    """
    Read-only diagnostics for a running BrokerServer.
    """
    app = Flask(__name__)
    app.config["BROKER"] = broker

    @app.route("/")
    def index():
        return jsonify(name="mqtt-test-server", version=settings.VERSION,
                       routes=["/status", "/sessions"])

    @app.route("/status")
    def status():
        b = app.config["BROKER"]
        return jsonify(
            version=settings.VERSION,
            listen=f"{b.host}:{b.port}",
            tls=b.tls_mode.value,
            filters=b.filter.describe(),
            sinks=b.audit.enabled_sinks(),
            sessions=len(b.sessions.sessions),
            counters=b.hooks.stats(),
        )

    @app.route("/sessions")
    def sessions():
        b = app.config["BROKER"]
        active = []
        # snapshot; the broker loop mutates the dict concurrently
        for cid, sess in list(b.sessions.sessions.items()):
            active.append({
                "client_id":     cid,
                "username":      sess.client.username,
                "remote":        sess.client.remote,
                "tls":           sess.client.tls,
                "connected_at":  sess.client.connected_at,
                "subscriptions": dict(sess.subscriptions),
            })
        return jsonify(sessions=active)

    return app


class DiagnosticsServer:
    """Serves the diagnostics app from a background thread."""
    def __init__(self, app: Flask, host: str, port: int):
        self._server = make_server(host, port, app, threaded=True)
        self.port = self._server.server_port
        self._thread = threading.Thread(target=self._server.serve_forever,
                                        name="diagnostics", daemon=True)

    def start(self):
        self._thread.start()
        log.info(f"🩺 Diagnostics on http://{self._server.host}:{self.port}/status")

    def stop(self):
        self._server.shutdown()
        self._thread.join(timeout=5)
