import json
import logging

from flask import Blueprint, Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from bauflex_diagnostics.config import Config
from bauflex_diagnostics.models import utc_now_iso
from bauflex_diagnostics.monitoring import Monitoring

logger = logging.getLogger(__name__)


def create_app(config=None, monitoring=None):
    """Flask application factory for the diagnostic collector."""
    app = Flask(__name__)

    if monitoring is None:
        monitoring = Monitoring(config or Config.from_env())
    collector = monitoring.collector
    validator = monitoring.event_validator

    # Store components on app for access in tests
    app.config["components"] = {
        "config": monitoring.config,
        "monitoring": monitoring,
        "collector": collector,
        "validator": validator,
    }

    bp = Blueprint("diagnostic", __name__, url_prefix="/diagnostic")

    @bp.route("/log", methods=["POST"])
    def receive_log():
        entry = request.get_json(silent=True)
        is_valid, errors = validator.validate(entry)
        if not is_valid:
            return jsonify({"success": False, "errors": errors}), 400

        stored = collector.add(entry, ip=request.remote_addr,
                               user_agent=request.headers.get("User-Agent"))
        return jsonify({"success": True, "id": stored.get("id")})

    @bp.route("/logs")
    def list_logs():
        logs = collector.get_logs(
            level=request.args.get("level"),
            category=request.args.get("category"),
            session_id=request.args.get("sessionId"),
            limit=request.args.get("limit", type=int),
        )
        return jsonify({"total": len(logs), "logs": logs})

    @bp.route("/stats")
    def stats():
        return jsonify(collector.get_stats())

    @bp.route("/health")
    def health():
        document, status = monitoring.health.server_health(collector)
        return jsonify(document), status

    @bp.route("/database/stats")
    def database_stats():
        return jsonify(monitoring.queries.get_statistics())

    @bp.route("/database/queries")
    def database_queries():
        queries = monitoring.queries.get_queries(
            model=request.args.get("model"),
            min_duration=request.args.get("minDuration", type=float),
            with_errors=request.args.get("withErrors") == "true",
            limit=request.args.get("limit", type=int),
        )
        return jsonify({"total": len(queries), "queries": [q.to_dict() for q in queries]})

    @bp.route("/database/integrity")
    def database_integrity():
        issues = monitoring.queries.analyze_data_integrity(monitoring.db)
        return jsonify({
            "healthy": not issues,
            "issuesCount": len(issues),
            "issues": [issue.to_dict() for issue in issues],
        })

    @bp.route("/clear-logs", methods=["POST"])
    def clear_logs():
        cleared = collector.clear()
        logger.info("Cleared %d received diagnostic logs", cleared)
        return jsonify({"success": True, "clearedCount": cleared})

    @bp.route("/export")
    def export():
        logs = collector.get_all()
        body = json.dumps({
            "exportedAt": utc_now_iso(),
            "totalLogs": len(logs),
            "logs": logs,
            "databaseStats": monitoring.queries.get_statistics(),
        }, indent=2, default=str, ensure_ascii=False)
        filename = f"diagnostic-logs-{utc_now_iso()[:19].replace(':', '-')}.json"
        return Response(body, mimetype="application/json",
                        headers={"Content-Disposition": f"attachment; filename={filename}"})

    @bp.route("/client/stats")
    def client_stats():
        return jsonify(monitoring.client_statistics())

    app.register_blueprint(bp)

    @app.errorhandler(Exception)
    def handle_error(exc):
        if isinstance(exc, HTTPException):
            return exc
        logger.exception("Diagnostic endpoint %s failed", request.path)
        return jsonify({"error": str(exc)}), 500

    return app
