"""Background tasks: import processing and undo replay."""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any

from celery import shared_task
from flask import current_app

from backoffice.celery_app import PROCESS_IMPORT_TASK, UNDO_IMPORT_TASK
from backoffice.extensions import bind_session_context, progress_channel
from backoffice.import_processor import ImportProcessor
from backoffice.models import RECORD_MODELS
from backoffice.undo_engine import UndoEngine


def build_processor() -> ImportProcessor:
    return ImportProcessor(channel=progress_channel, chunk_size=current_app.config["IMPORT_CHUNK_SIZE"])


def build_undo_engine() -> UndoEngine:
    return UndoEngine(
        models=RECORD_MODELS,
        channel=progress_channel,
        chunk_size=current_app.config["UNDO_CHUNK_SIZE"],
    )


def stale_after() -> timedelta:
    return timedelta(seconds=current_app.config["UNDO_STALE_AFTER_SECONDS"])


@shared_task(name=PROCESS_IMPORT_TASK)
def process_import_job(*, job_id: str, tenant_id: str, actor_user_id: str | None = None) -> dict[str, Any]:
    bind_session_context(tenant_id, actor_user_id)
    return build_processor().run(uuid.UUID(job_id))


@shared_task(name=UNDO_IMPORT_TASK)
def undo_import_job(*, job_id: str, tenant_id: str, actor_user_id: str | None = None) -> dict[str, Any]:
    bind_session_context(tenant_id, actor_user_id)
    engine = build_undo_engine()
    tenant_uuid = uuid.UUID(tenant_id)
    job_uuid = uuid.UUID(job_id)
    engine.run(tenant_uuid, job_uuid)
    return engine.status(tenant_uuid, job_uuid)
