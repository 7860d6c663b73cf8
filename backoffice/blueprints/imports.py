"""Import and undo JSON API, plus server-sent progress streams."""

from __future__ import annotations

import json
import time
from typing import Any, Callable, Iterator
from uuid import UUID

from flask import Blueprint, Response, abort, current_app, jsonify, request, stream_with_context
from flask_login import login_required
from kombu.exceptions import OperationalError as BrokerError
from sqlalchemy import select
from werkzeug.exceptions import HTTPException

from backoffice.audit import log_audit
from backoffice.authorization import run_imports_required, undo_imports_required, view_imports_required
from backoffice.celery_app import PROCESS_IMPORT_TASK, UNDO_IMPORT_TASK, enqueue
from backoffice.errors import UndoAlreadyRunning, UndoIneligibleError
from backoffice.extensions import db, progress_channel
from backoffice.models import ImportJob, ImportJobStatus, ImportType, UndoStatus
from backoffice.progress import TERMINAL_EVENTS, import_topic, undo_topic
from backoffice.tasks import build_processor, build_undo_engine, stale_after
from backoffice.tenant import current_user_id, require_active_tenant_id, tenant_required


bp = Blueprint("imports", __name__, url_prefix="/api/imports")

DISPATCH_ERROR = "The job queue is unavailable; try again shortly."
IMPORT_EVENT_BY_STATUS = {
    ImportJobStatus.PROCESSING: "importProgress",
    ImportJobStatus.COMPLETED: "importComplete",
    ImportJobStatus.FAILED: "importFailed",
}
UNDO_EVENT_BY_STATUS = {
    UndoStatus.IDLE: "undoProgress",
    UndoStatus.RUNNING: "undoProgress",
    UndoStatus.DONE: "undoDone",
    UndoStatus.FAILED: "undoFailed",
}


@bp.errorhandler(HTTPException)
def json_http_error(exc: HTTPException):
    return jsonify({"error": exc.description}), exc.code


def _tenant_job(tenant_id: UUID, job_id: UUID) -> ImportJob:
    job = db.session.execute(
        select(ImportJob).where(ImportJob.id == job_id, ImportJob.tenant_id == tenant_id)
    ).scalar_one_or_none()
    if job is None:
        abort(404, description="Import not found.")
    return job


def _job_summary(job: ImportJob, include_records: bool = False) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "id": str(job.id),
        "import_type": job.import_type.value,
        "filename": job.filename,
        "status": job.status.value,
        "total_records": job.total_rows,
        "created": job.created_count,
        "updated": job.updated_count,
        "failed": job.failed_count,
        "duplicate": job.duplicate_count,
        "error": job.error,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "finished_at": job.finished_at.isoformat() if job.finished_at else None,
        "undo": job.undo_snapshot(),
    }
    if include_records:
        latest = job.summary_json or {}
        for kind in ("created", "updated", "failed", "duplicate"):
            summary[f"{kind}_records"] = latest.get(f"{kind}_records", [])
    return summary


def _import_state(job: ImportJob) -> tuple[str, dict[str, Any]]:
    payload = dict(job.summary_json or {})
    if not payload:
        payload = {
            "status": job.status.value,
            "total_records": job.total_rows,
            "processed": 0,
            "percentage": 0,
            "estimated_time": "Calculating...",
        }
    payload.setdefault("import_job_id", str(job.id))
    return IMPORT_EVENT_BY_STATUS[job.status], payload


def _undo_state(job: ImportJob) -> tuple[str, dict[str, Any]]:
    return UNDO_EVENT_BY_STATUS[job.undo_status], job.undo_snapshot()


def _sse(name: str, payload: dict[str, Any]) -> str:
    return f"event: {name}\ndata: {json.dumps(payload, default=str)}\n\n"


def _stream(job_id: UUID, topic: str, read_state: Callable[[ImportJob], tuple[str, dict[str, Any]]]) -> Response:
    """Seed from the stored job, then forward channel events until a terminal one.

    The stored job is re-read every poll interval, so progress written by a
    worker in another process still reaches the client.
    """
    poll_seconds = current_app.config["PROGRESS_STREAM_POLL_SECONDS"]
    max_seconds = current_app.config["PROGRESS_STREAM_MAX_SECONDS"]

    def reload_state() -> tuple[str, dict[str, Any]] | None:
        db.session.expire_all()
        job = db.session.get(ImportJob, job_id)
        state = read_state(job) if job is not None else None
        # Release the pooled connection between polls.
        db.session.rollback()
        return state

    def generate() -> Iterator[str]:
        deadline = time.monotonic() + max_seconds
        with progress_channel.subscribe(topic, replay_last=False) as subscription:
            state = reload_state()
            if state is None:
                return
            name, payload = state
            yield _sse(name, payload)
            last_sent = state
            if name in TERMINAL_EVENTS:
                return

            while time.monotonic() < deadline:
                progress_event = subscription.get(timeout=poll_seconds)
                if progress_event is not None:
                    state = (progress_event.name, progress_event.payload)
                else:
                    state = reload_state()
                    if state is None:
                        return
                if state == last_sent:
                    yield ": keepalive\n\n"
                    continue
                yield _sse(*state)
                last_sent = state
                if state[0] in TERMINAL_EVENTS:
                    return

    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    return Response(stream_with_context(generate()), mimetype="text/event-stream", headers=headers)


@bp.post("")
@login_required
@tenant_required
@run_imports_required
def create_import():
    tenant_id = require_active_tenant_id()
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        abort(400, description="Expected a JSON object.")

    try:
        import_type = ImportType(str(body.get("import_type", "")).strip().lower())
    except ValueError:
        abort(400, description="Unknown import_type.")
    rows = body.get("rows")
    mapping = body.get("mapping")
    if not isinstance(rows, list):
        abort(400, description="rows must be a list.")
    if not isinstance(mapping, dict):
        abort(400, description="mapping must be an object.")
    filename = body.get("filename")

    actor_user_id = current_user_id()
    job = ImportJob(
        tenant_id=tenant_id,
        created_by_user_id=actor_user_id,
        import_type=import_type,
        filename=str(filename)[:255] if filename else None,
        mapping_json=mapping,
        rows_json=rows,
        total_rows=len(rows),
    )
    db.session.add(job)
    db.session.flush()
    job_id = job.id
    log_audit(
        action="IMPORT_STARTED",
        entity_type="import_jobs",
        entity_id=job.id,
        payload={"import_type": import_type.value, "rows": len(rows), "filename": job.filename},
    )
    db.session.commit()

    try:
        enqueue(
            PROCESS_IMPORT_TASK,
            job_id=str(job_id),
            tenant_id=str(tenant_id),
            actor_user_id=str(actor_user_id) if actor_user_id else None,
        )
    except BrokerError as exc:
        current_app.logger.error("Import %s could not be queued: %s", job_id, exc)
        build_processor().fail_unstarted(job_id, DISPATCH_ERROR)
        return jsonify({"error": DISPATCH_ERROR}), 503
    current_app.logger.info("Import %s queued: %s rows of type %s.", job_id, len(rows), import_type.value)
    return jsonify({"import_job_id": str(job_id)}), 202


@bp.get("")
@login_required
@tenant_required
@view_imports_required
def list_imports():
    tenant_id = require_active_tenant_id()
    jobs = (
        db.session.execute(
            select(ImportJob).where(ImportJob.tenant_id == tenant_id).order_by(ImportJob.created_at.desc())
        )
        .scalars()
        .all()
    )
    return jsonify({"imports": [_job_summary(job) for job in jobs]})


@bp.get("/<uuid:job_id>")
@login_required
@tenant_required
@view_imports_required
def get_import(job_id: UUID):
    job = _tenant_job(require_active_tenant_id(), job_id)
    return jsonify(_job_summary(job, include_records=True))


@bp.get("/<uuid:job_id>/stream")
@login_required
@tenant_required
@view_imports_required
def stream_import(job_id: UUID):
    _tenant_job(require_active_tenant_id(), job_id)
    return _stream(job_id, import_topic(job_id), _import_state)


@bp.post("/<uuid:job_id>/undo")
@login_required
@tenant_required
@undo_imports_required
def start_undo(job_id: UUID):
    tenant_id = require_active_tenant_id()
    actor_user_id = current_user_id()
    engine = build_undo_engine()
    try:
        engine.claim(tenant_id, job_id, actor_user_id)
    except UndoAlreadyRunning as exc:
        return jsonify({"message": exc.message, "status": UndoStatus.RUNNING.value}), exc.status_code
    except UndoIneligibleError as exc:
        return jsonify({"error": exc.message}), exc.status_code

    try:
        enqueue(
            UNDO_IMPORT_TASK,
            job_id=str(job_id),
            tenant_id=str(tenant_id),
            actor_user_id=str(actor_user_id) if actor_user_id else None,
        )
    except BrokerError as exc:
        engine.release_claim(job_id, str(exc))
        return jsonify({"error": DISPATCH_ERROR}), 503
    current_app.logger.info("Undo of import %s claimed by %s.", job_id, actor_user_id)
    return jsonify({"message": "Undo started.", "status": UndoStatus.RUNNING.value}), 202


@bp.get("/<uuid:job_id>/undo/status")
@login_required
@tenant_required
@view_imports_required
def undo_status(job_id: UUID):
    try:
        snapshot = build_undo_engine().status(require_active_tenant_id(), job_id, stale_after=stale_after())
    except UndoIneligibleError as exc:
        return jsonify({"error": exc.message}), exc.status_code
    return jsonify(snapshot)


@bp.get("/<uuid:job_id>/undo/stream")
@login_required
@tenant_required
@view_imports_required
def stream_undo(job_id: UUID):
    _tenant_job(require_active_tenant_id(), job_id)
    return _stream(job_id, undo_topic(job_id), _undo_state)
