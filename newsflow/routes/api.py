import logging
from typing import Optional

from flask import Blueprint, abort, current_app, jsonify, request
from pydantic import BaseModel, Field, ValidationError

from newsflow.extensions import limiter
from newsflow.services.dispatch import enqueue_fetch
from newsflow.services.exceptions import CircuitOpen, InvalidUrl, RateLimited
from newsflow.services.extraction.readable import ENHANCED, STANDARD

bp = Blueprint("api", __name__, url_prefix="/api")
logger = logging.getLogger(__name__)

_FAILURE_STATUS = {
    InvalidUrl.code: 400,
    RateLimited.code: 429,
    CircuitOpen.code: 503,
}


class FetchPayload(BaseModel):
    url: str = Field(min_length=1, max_length=4096)
    sourceId: Optional[str] = None
    strategy: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0, le=300)
    extractContent: bool = True
    mode: str = Field(default=STANDARD, pattern=f"^({STANDARD}|{ENHANCED})$")


class JobPayload(BaseModel):
    articleId: str = Field(min_length=1, max_length=200)
    url: str = Field(min_length=1, max_length=4096)
    sourceId: Optional[str] = None
    strategy: Optional[str] = None
    timeout: Optional[float] = Field(default=None, gt=0, le=300)
    priority: Optional[int] = Field(default=None, ge=0, le=100)


def _payload(model):
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        abort(400, description="Expected a JSON object body.")
    try:
        return model.model_validate(body), None
    except ValidationError as exc:
        details = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        response = jsonify(
            {"error": "Invalid payload", "code": "VALIDATION_ERROR", "details": details}
        )
        return None, (response, 400)


@bp.route("/fetch", methods=["POST"])
@limiter.limit("30 per minute")
def fetch():
    """Fetch one URL synchronously through the strategy chain."""
    payload, error = _payload(FetchPayload)
    if error:
        return error

    result = current_app.fetcher.fetch(
        payload.url,
        source_id=payload.sourceId,
        strategy=payload.strategy,
        timeout=payload.timeout,
        extract_content=payload.extractContent,
        mode=payload.mode,
    )
    if result.success:
        return jsonify(result.to_dict()), 200

    code = result.errorType or ""
    last_code = result.metadata.get("lastErrorType") or ""
    status = _FAILURE_STATUS.get(code) or _FAILURE_STATUS.get(last_code) or 502
    logger.info("Fetch of %s failed with %s (%s)", payload.url, code, status)
    return jsonify(result.to_dict()), status


@bp.route("/jobs", methods=["POST"])
@limiter.limit("120 per minute")
def create_job():
    payload, error = _payload(JobPayload)
    if error:
        return error

    job_id, created = enqueue_fetch(
        current_app.job_store,
        current_app.article_sink,
        payload.articleId,
        payload.url,
        source_id=payload.sourceId,
        strategy=payload.strategy,
        timeout=payload.timeout,
        priority=payload.priority,
    )
    return jsonify({"jobId": job_id, "created": created}), 202 if created else 200


@bp.route("/jobs/<job_id>", methods=["GET"])
def get_job(job_id: str):
    job = current_app.job_store.get(job_id)
    if job is None:
        return jsonify({"error": f"Job {job_id} not found.", "code": "NOT_FOUND"}), 404
    return jsonify(job.to_dict())
