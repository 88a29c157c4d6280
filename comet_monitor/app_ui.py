import logging
import threading

from flask import Flask, jsonify, request

logger = logging.getLogger(__name__)


def create_app(monitor, start_monitor: bool = True) -> Flask:
    """JSON surface over a NodeMonitor: snapshot, verdict, history and manual refresh."""
    app = Flask(__name__)
    monitor_started = {"value": False}
    monitor_start_lock = threading.Lock()

    @app.before_request
    def before_request_hook():
        if not start_monitor:
            return
        with monitor_start_lock:
            if not monitor_started["value"]:
                monitor.start()
                monitor_started["value"] = True
                logger.info("Monitor threads initiated.")

    @app.route("/status")
    def status():
        return jsonify(monitor.snapshot_dict())

    @app.route("/health")
    def health():
        snapshot = monitor.snapshot()
        node_health = snapshot.health
        body = {
            "online": node_health.is_online,
            "synced": node_health.is_synced,
            "healthy": node_health.is_online and not node_health.has_errors,
            "consensus_healthy": node_health.consensus.healthy,
            "issues": node_health.error_messages,
            "warnings": node_health.warnings,
            "divergence": node_health.divergence is not None,
            "last_updated": node_health.last_updated,
        }
        return jsonify(body), 200 if body["healthy"] else 503

    @app.route("/history")
    def history():
        return jsonify(monitor.history_dict())

    @app.route("/refresh", methods=["POST"])
    def refresh():
        applied = monitor.refresh()
        return jsonify({"status": "success" if applied else "superseded"}), 200

    @app.route("/reference", methods=["POST"])
    def reference():
        payload = request.get_json(silent=True) or {}
        address = payload.get("address")
        if not isinstance(address, str) or not address.strip():
            return jsonify({"status": "error", "message": "address is required"}), 400
        monitor.set_reference_node(address)
        return jsonify({"status": "success", "reference_node": monitor.reference.rpc_url}), 200

    return app
