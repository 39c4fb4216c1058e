"""Admin JSON API for fetch configuration and job inspection.

Every write is applied to the in-process configuration store, persisted to
Firestore when a repository is available and announced to other processes
through the reload marker document.
"""

import hmac
import logging
from typing import Optional

from flask import Blueprint, abort, current_app, jsonify, request
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from newsflow.config import settings
from newsflow.models.policy import CircuitBreakerPolicy, DomainPolicy, WILDCARD_DOMAIN
from newsflow.services.fetch_config import (
    RELOAD_ALL,
    RELOAD_CIRCUIT_BREAKER,
    RELOAD_RATE_LIMITS,
    reload_from_repository,
)
from newsflow.services.jobs import FAILED

bp = Blueprint("admin_api", __name__, url_prefix="/admin/api")
logger = logging.getLogger(__name__)


class DomainPolicyPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    domain: str = Field(min_length=1, max_length=253)
    maxConcurrent: int = Field(
        ge=1, le=1000, validation_alias=AliasChoices("maxConcurrent", "max_concurrent")
    )
    requestsPerSecond: float = Field(
        gt=0,
        le=1000,
        validation_alias=AliasChoices("requestsPerSecond", "rps", "requests_per_second"),
    )
    description: str = Field(default="", max_length=500)

    def to_policy(self) -> DomainPolicy:
        return DomainPolicy(
            domain=self.domain.strip().lower(),
            maxConcurrent=self.maxConcurrent,
            requestsPerSecond=self.requestsPerSecond,
            description=self.description,
        )


class CircuitBreakerPayload(BaseModel):
    failThreshold: int = Field(ge=1, le=100)
    openDurationSeconds: float = Field(
        ge=10,
        le=3600,
        validation_alias=AliasChoices("openDurationSeconds", "openDuration"),
    )
    initialBackoffSeconds: float = Field(
        ge=1,
        le=60,
        validation_alias=AliasChoices("initialBackoffSeconds", "initialBackoff"),
    )
    maxBackoffSeconds: float = Field(
        ge=1,
        le=300,
        validation_alias=AliasChoices("maxBackoffSeconds", "maxBackoff"),
    )

    def to_policy(self) -> CircuitBreakerPolicy:
        return CircuitBreakerPolicy(**self.model_dump())


@bp.before_request
def require_admin_token():
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        return None
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(
        token.strip().encode("utf-8"), expected.encode("utf-8")
    ):
        abort(401, description="Missing or invalid admin token.")
    return None


def _validation_error(exc: ValidationError):
    details = [
        {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]
    return (
        jsonify({"error": "Invalid payload", "code": "VALIDATION_ERROR", "details": details}),
        400,
    )


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        abort(400, description="Expected a JSON object body.")
    return payload


def _publish(kind: str) -> None:
    repository = current_app.config_repository
    if repository is not None:
        repository.publish_reload(kind)


@bp.route("/rate-limits", methods=["GET"])
def list_rate_limits():
    snapshot = current_app.config_store.current()
    policies = sorted(snapshot.domain_policies.values(), key=lambda p: p.domain)
    return jsonify(
        {
            "version": snapshot.version,
            "policies": [policy.to_dict() for policy in policies],
            "stats": current_app.rate_limiter.stats(),
        }
    )


def _save_domain_policy(payload: dict, status_code: int):
    try:
        policy = DomainPolicyPayload.model_validate(payload).to_policy()
    except ValidationError as exc:
        return _validation_error(exc)

    repository = current_app.config_repository
    if repository is not None:
        repository.save_domain_policy(policy)
    snapshot = current_app.config_store.upsert_domain_policy(policy)
    _publish(RELOAD_RATE_LIMITS)
    logger.info("Saved rate limit for %s (version %s)", policy.domain, snapshot.version)
    return jsonify(policy.to_dict()), status_code


@bp.route("/rate-limits", methods=["POST"])
def create_rate_limit():
    return _save_domain_policy(_json_body(), 201)


@bp.route("/rate-limits/<path:domain>", methods=["PUT"])
def update_rate_limit(domain: str):
    payload = _json_body()
    payload["domain"] = domain
    return _save_domain_policy(payload, 200)


@bp.route("/rate-limits/<path:domain>", methods=["DELETE"])
def delete_rate_limit(domain: str):
    domain = domain.strip().lower()
    if domain == WILDCARD_DOMAIN:
        return (
            jsonify({"error": "The default policy cannot be deleted.", "code": "WILDCARD_PROTECTED"}),
            400,
        )
    if domain not in current_app.config_store.current().domain_policies:
        return jsonify({"error": f"No rate limit for {domain}.", "code": "NOT_FOUND"}), 404

    repository = current_app.config_repository
    if repository is not None:
        repository.delete_domain_policy(domain)
    try:
        current_app.config_store.delete_domain_policy(domain)
    except KeyError:
        # Removed concurrently by another request.
        pass
    _publish(RELOAD_RATE_LIMITS)
    return jsonify({"deleted": domain})


@bp.route("/circuit-breaker", methods=["GET"])
def get_circuit_breaker():
    policy = current_app.config_store.current().breaker_policy
    return jsonify(policy.to_dict())


@bp.route("/circuit-breaker", methods=["PUT"])
def update_circuit_breaker():
    try:
        policy = CircuitBreakerPayload.model_validate(_json_body()).to_policy()
    except ValidationError as exc:
        return _validation_error(exc)

    repository = current_app.config_repository
    if repository is not None:
        repository.save_breaker_policy(policy)
    current_app.config_store.set_breaker_policy(policy)
    _publish(RELOAD_CIRCUIT_BREAKER)
    return jsonify(policy.to_dict())


@bp.route("/circuit-breaker/state", methods=["GET"])
def circuit_state():
    return jsonify({"domains": current_app.circuit_breaker.snapshot()})


@bp.route("/circuit-breaker/reset", methods=["POST"])
def reset_circuit():
    payload = request.get_json(silent=True) or {}
    domain: Optional[str] = payload.get("domain") if isinstance(payload, dict) else None
    breaker = current_app.circuit_breaker
    if domain:
        if not breaker.reset(domain):
            return (
                jsonify({"error": f"No circuit state for {domain}.", "code": "NOT_FOUND"}),
                404,
            )
        return jsonify({"reset": [domain.lower()]})
    return jsonify({"resetCount": breaker.reset_all()})


@bp.route("/jobs/stats", methods=["GET"])
def job_stats():
    return jsonify(current_app.job_store.stats())


@bp.route("/jobs/failed", methods=["GET"])
def failed_jobs():
    try:
        limit = int(request.args.get("limit", 50))
    except ValueError:
        abort(400, description="limit must be an integer.")
    limit = min(max(limit, 1), 500)
    jobs = current_app.job_store.list_jobs(FAILED, limit=limit)
    return jsonify({"jobs": [job.to_dict() for job in jobs]})


@bp.route("/jobs/<job_id>/retry", methods=["POST"])
def retry_job(job_id: str):
    if not current_app.job_store.retry(job_id):
        return (
            jsonify({"error": f"Job {job_id} is not in a failed state.", "code": "NOT_RETRYABLE"}),
            409,
        )
    return jsonify({"requeued": job_id})


@bp.route("/jobs/retry-failed", methods=["POST"])
def retry_failed_jobs():
    return jsonify({"requeued": current_app.job_store.retry_all_failed()})


@bp.route("/jobs/<job_id>", methods=["DELETE"])
def remove_job(job_id: str):
    if not current_app.job_store.remove(job_id):
        return jsonify({"error": f"Job {job_id} not found.", "code": "NOT_FOUND"}), 404
    return jsonify({"deleted": job_id})


@bp.route("/config/reload", methods=["POST"])
def reload_config():
    payload = request.get_json(silent=True) or {}
    kind = payload.get("kind", RELOAD_ALL) if isinstance(payload, dict) else RELOAD_ALL
    if kind not in {RELOAD_ALL, RELOAD_RATE_LIMITS, RELOAD_CIRCUIT_BREAKER}:
        abort(400, description=f"Unknown reload kind {kind!r}.")
    repository = current_app.config_repository
    if repository is None:
        return (
            jsonify({"error": "No configuration repository available.", "code": "NOT_CONFIGURED"}),
            503,
        )
    snapshot = reload_from_repository(current_app.config_store, repository, kind)
    repository.publish_reload(kind)
    return jsonify({"kind": kind, "version": snapshot.version})
