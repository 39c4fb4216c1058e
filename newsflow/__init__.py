import logging
import os
from typing import Any, Optional

import flask_limiter
from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from limits.storage import storage_from_string
from werkzeug.exceptions import HTTPException

from newsflow.config import settings
from newsflow.extensions import limiter
from newsflow.utils.correlation import (
    CORRELATION_HEADER,
    bind_http_request,
    clear_correlation_context,
)
from newsflow.utils.logging_config import setup_logging

from newsflow.services import firestore_client
from newsflow.services.exceptions import ExtractionError, InvalidUrl
from newsflow.services.firestore_client import FirestoreError


def init_extensions(app) -> None:
    """Configure the request rate limiter."""
    limiter_version = getattr(flask_limiter, "__version__", "0")
    app.logger.info("Flask-Limiter version: %s", limiter_version)

    storage_uri = (os.getenv("RATELIMIT_STORAGE_URI") or "").strip() or "memory://"
    try:
        storage_from_string(storage_uri)
    except Exception as exc:  # pragma: no cover
        app.logger.error(
            "Failed to initialize rate limiter storage '%s': %s. Falling back to memory://",
            storage_uri,
            exc,
        )
        storage_uri = "memory://"

    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    limiter.init_app(app)
    app.logger.info("Rate limiter storage: %s", storage_uri)


def _init_services(app, overrides: dict[str, Any]) -> None:
    """Attach the fetcher, job store, article sink and config repository."""
    from newsflow.services.articles import FirestoreArticleSink
    from newsflow.services.circuit_breaker import circuit_breaker
    from newsflow.services.rate_limiter import domain_rate_limiter
    from newsflow.services.fetch_config import (
        FirestoreConfigRepository,
        config_store,
        reload_from_repository,
    )
    from newsflow.services.jobs import get_job_store
    from newsflow.services.orchestrator import get_fetcher

    logger = logging.getLogger(__name__)

    app.fetcher = overrides.get("fetcher") or get_fetcher()
    app.job_store = overrides.get("job_store") or get_job_store()
    app.article_sink = overrides.get("article_sink") or FirestoreArticleSink()
    app.config_store = overrides.get("config_store") or config_store
    app.circuit_breaker = overrides.get("circuit_breaker") or circuit_breaker
    app.rate_limiter = overrides.get("rate_limiter") or domain_rate_limiter

    repository: Optional[FirestoreConfigRepository] = overrides.get("config_repository")
    if repository is None and firestore_client.get_client() is not None:
        repository = FirestoreConfigRepository()
    app.config_repository = repository

    if repository is not None and overrides.get("load_config", True):
        try:
            reload_from_repository(app.config_store, repository)
        except FirestoreError as exc:
            logger.error("Failed to load fetch configuration, using defaults: %s", exc)


def _register_error_handlers(app) -> None:
    logger = logging.getLogger(__name__)

    @app.errorhandler(InvalidUrl)
    def invalid_url(e):
        return jsonify({"error": str(e), "code": e.code}), 400

    @app.errorhandler(ExtractionError)
    def extraction_error(e):
        return jsonify({"error": str(e), "code": e.code}), 502

    @app.errorhandler(FirestoreError)
    def firestore_error(e):
        logger.error("Firestore operation failed: %s", e)
        return jsonify({"error": str(e), "code": "FIRESTORE_ERROR"}), 503

    @app.errorhandler(HTTPException)
    def http_error(e):
        code = (e.name or "error").upper().replace(" ", "_")
        return jsonify({"error": e.description, "code": code}), e.code

    @app.errorhandler(500)
    def internal_server_error(e):
        logger.error("An internal server error occurred: %s", e, exc_info=True)
        return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR"}), 500


def _register_request_hooks(app) -> None:
    @app.before_request
    def bind_correlation():
        g.correlation_id = bind_http_request(request)

    @app.after_request
    def echo_correlation(response):
        correlation_id = getattr(g, "correlation_id", None)
        if correlation_id:
            response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @app.teardown_request
    def clear_correlation(_exc):
        clear_correlation_context()


def create_app(overrides: Optional[dict[str, Any]] = None):
    """Create and configure an instance of the Flask application.

    ``overrides`` replaces the default collaborators (``fetcher``,
    ``job_store``, ``article_sink``, ``config_store``, ``config_repository``)
    and may carry extra Flask config under ``config``.
    """
    load_dotenv()

    setup_logging()
    logger = logging.getLogger(__name__)
    overrides = overrides or {}

    project_id = os.getenv("GOOGLE_CLOUD_PROJECT")
    alias_project_id = os.getenv("GCP_PROJECT_ID") or os.getenv("GCLOUD_PROJECT")
    if not project_id and alias_project_id:
        os.environ["GOOGLE_CLOUD_PROJECT"] = alias_project_id

    logger.info(
        "Starting newsflow (env=%s, project=%s, job store=%s, limiter storage=%s)",
        settings.ENV,
        os.getenv("GOOGLE_CLOUD_PROJECT"),
        settings.JOB_STORE,
        os.getenv("RATELIMIT_STORAGE_URI") or "memory://",
    )

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.getenv("FLASK_SECRET_KEY") or os.getenv("SECRET_KEY") or "dev",
        JSON_SORT_KEYS=False,
    )
    app.config.update(overrides.get("config") or {})

    init_extensions(app)
    _init_services(app, overrides)

    from .routes import admin, api, utility

    if "utility" not in app.blueprints:
        app.register_blueprint(utility.bp)
    if "api" not in app.blueprints:
        app.register_blueprint(api.bp)
    if "admin_api" not in app.blueprints:
        app.register_blueprint(admin.bp)

    _register_error_handlers(app)
    _register_request_hooks(app)
    return app
