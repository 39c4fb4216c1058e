from flask import Blueprint, current_app, jsonify

from newsflow.extensions import limiter
from newsflow.services import health as health_service

bp = Blueprint("utility", __name__)


@bp.route("/health")
@limiter.exempt
def health():
    """Return structured health status for Firestore and each strategy."""
    results, overall_healthy = health_service.check_all_services(current_app.fetcher)
    status_code = 200 if overall_healthy else 503
    return jsonify({"healthy": overall_healthy, **results}), status_code


@bp.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight liveness probe."""
    return "ok", 200
