"""Reverse replay of an import's change log.

An undo request is checked and claimed synchronously; the replay itself runs
in a worker. Operations are visited in strictly descending ``op_index`` order
and grouped into chunks, each chunk being one database transaction that also
carries the progress and heartbeat write. Every write to the job is
conditional on it still being ``running``: once the reaper has marked a run
failed, the worker stops at its next chunk and leaves that state alone.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Mapping

from flask import current_app
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from backoffice.audit import log_audit
from backoffice.errors import (
    ImportNotFound,
    ImportNotReplayable,
    MissingSnapshot,
    NotLatestImport,
    TenantGuardViolation,
    UndoAlreadyDone,
    UndoAlreadyRunning,
    UndoPreviouslyFailed,
    UndoRunAbandoned,
    UnknownCollection,
)
from backoffice.extensions import db
from backoffice.models import ImportJob, ImportOperation, OperationKind, UndoStatus, now_utc
from backoffice.progress import ProgressChannel, percent_complete, undo_topic
from backoffice.snapshots import snapshot_to_row
from backoffice.tenant_guard import belongs_to_tenant_deep


STALLED_ERROR = "Undo worker stopped responding; the run was abandoned."


@dataclass(frozen=True)
class ReplayStep:
    op_index: int
    target_collection: str
    doc_id: uuid.UUID
    kind: OperationKind
    before: dict[str, Any] | None
    after: dict[str, Any] | None


class UndoEngine:
    def __init__(
        self,
        *,
        models: Mapping[str, type],
        channel: ProgressChannel,
        chunk_size: int = 100,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.models = dict(models)
        self.channel = channel
        self.chunk_size = chunk_size

    # --- eligibility and claim -------------------------------------------------

    def check_eligibility(self, tenant_id: uuid.UUID, job_id: uuid.UUID) -> ImportJob:
        job = db.session.execute(
            select(ImportJob).where(ImportJob.id == job_id, ImportJob.tenant_id == tenant_id)
        ).scalar_one_or_none()
        if job is None:
            raise ImportNotFound("Import not found for this tenant.")
        self._raise_for_undo_status(job.undo_status)
        if not job.is_replayable:
            raise ImportNotReplayable("This import is still processing.")

        latest_id = db.session.execute(
            select(ImportJob.id)
            .where(ImportJob.tenant_id == tenant_id)
            .order_by(ImportJob.created_at.desc())
            .limit(1)
        ).scalar_one()
        if latest_id != job_id:
            raise NotLatestImport("Only the most recent import for this tenant can be undone.")
        return job

    @staticmethod
    def _raise_for_undo_status(status: UndoStatus) -> None:
        if status == UndoStatus.RUNNING:
            raise UndoAlreadyRunning("Undo already in progress.")
        if status == UndoStatus.DONE:
            raise UndoAlreadyDone("This import has already been undone.")
        if status == UndoStatus.FAILED:
            raise UndoPreviouslyFailed("A previous undo of this import failed; it cannot be retried.")

    def claim(self, tenant_id: uuid.UUID, job_id: uuid.UUID, user_id: uuid.UUID | None) -> None:
        """Check eligibility and flip the job to ``running``.

        The conditional UPDATE is the single-flight gate: of two concurrent
        callers only one can match ``undo_status = idle``.
        """
        self.check_eligibility(tenant_id, job_id)
        started_at = now_utc()
        result = db.session.execute(
            update(ImportJob)
            .where(
                ImportJob.id == job_id,
                ImportJob.tenant_id == tenant_id,
                ImportJob.undo_status == UndoStatus.IDLE,
            )
            .values(
                undo_status=UndoStatus.RUNNING,
                undo_progress=0,
                undo_started_at=started_at,
                undo_heartbeat_at=started_at,
                undo_finished_at=None,
                undo_error=None,
                undo_by_user_id=user_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            current = db.session.execute(
                select(ImportJob.undo_status).where(ImportJob.id == job_id)
            ).scalar_one_or_none()
            if current is None:
                raise ImportNotFound("Import not found for this tenant.")
            self._raise_for_undo_status(current)
            raise UndoAlreadyRunning("Undo already in progress.")
        db.session.commit()
        self._publish(job_id, "undoProgress", UndoStatus.RUNNING, 0)

    # --- replay ---------------------------------------------------------------

    def load_steps(self, job_id: uuid.UUID) -> list[ReplayStep]:
        operations = db.session.execute(
            select(ImportOperation)
            .where(ImportOperation.import_job_id == job_id)
            .order_by(ImportOperation.op_index.desc())
        ).scalars()
        return [
            ReplayStep(
                op_index=operation.op_index,
                target_collection=operation.target_collection,
                doc_id=operation.doc_id,
                kind=operation.kind,
                before=operation.before_json,
                after=operation.after_json,
            )
            for operation in operations
        ]

    def run(self, tenant_id: uuid.UUID, job_id: uuid.UUID) -> None:
        """Replay a claimed job in reverse; marks it ``done`` or ``failed``."""
        try:
            steps = self.load_steps(job_id)
            db.session.rollback()
            total = len(steps)
            current_app.logger.info("Undo of import %s started: %s operations.", job_id, total)

            for done in range(0, total, self.chunk_size):
                chunk = steps[done : done + self.chunk_size]
                progress = percent_complete(done + len(chunk), total)
                try:
                    for step in chunk:
                        self._invert(tenant_id, step)
                    self._record_progress(job_id, progress)
                    db.session.commit()
                except Exception:
                    db.session.rollback()
                    raise
                self._publish(job_id, "undoProgress", UndoStatus.RUNNING, progress)
        except UndoRunAbandoned:
            current_app.logger.warning("Undo of import %s stopped: the run is no longer active.", job_id)
            return
        except Exception as exc:
            current_app.logger.exception("Undo of import %s failed.", job_id)
            self._finish(job_id, UndoStatus.FAILED, error=str(exc))
            raise

        if not self._finish(job_id, UndoStatus.DONE):
            current_app.logger.warning("Undo of import %s replayed but was no longer active; not marked done.", job_id)
            return
        self._write_audit(tenant_id, job_id, total)
        current_app.logger.info("Undo of import %s finished.", job_id)

    def _invert(self, tenant_id: uuid.UUID, step: ReplayStep) -> None:
        model = self.models.get(step.target_collection)
        if model is None:
            raise UnknownCollection(f"Unknown collection in undo: {step.target_collection}")
        table = model.__table__
        label = f"{step.target_collection} {step.doc_id}"

        if step.kind == OperationKind.CREATE:
            current = db.session.execute(select(table).where(table.c.id == step.doc_id)).mappings().one_or_none()
            if current is None:
                return
            if not belongs_to_tenant_deep(db.session, current, tenant_id):
                raise TenantGuardViolation(f"Tenant guard failed for {label}.")
            db.session.execute(delete(table).where(table.c.id == step.doc_id))
            return

        if not step.before:
            raise MissingSnapshot(f"Missing before snapshot for {step.kind.value} on {label}.")
        if not belongs_to_tenant_deep(db.session, step.before, tenant_id):
            raise TenantGuardViolation(f"Cross-tenant safety check failed for {label}.")
        values = snapshot_to_row(table, step.before)

        if step.kind == OperationKind.UPDATE:
            stmt = update(table).where(table.c.id == step.doc_id)
            token = (step.after or {}).get("version")
            if token is not None and "version" in table.c:
                stmt = stmt.where(table.c.version == token)
            result = db.session.execute(stmt.values(**values))
            if result.rowcount == 0:
                current_app.logger.warning(
                    "Undo skipped %s: record changed or removed after the import (op %s).", label, step.op_index
                )
            return

        if step.kind == OperationKind.DELETE:
            db.session.execute(insert(table).values(**values))
            return

        raise ValueError(f"Unsupported operation kind: {step.kind}")

    # --- bookkeeping ------------------------------------------------------------

    @staticmethod
    def _update_running(job_id: uuid.UUID, **values: Any) -> bool:
        result = db.session.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id, ImportJob.undo_status == UndoStatus.RUNNING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _record_progress(self, job_id: uuid.UUID, progress: int) -> None:
        """Stage progress and heartbeat inside the chunk's transaction."""
        if not self._update_running(job_id, undo_progress=progress, undo_heartbeat_at=now_utc()):
            raise UndoRunAbandoned(f"Undo of import {job_id} is no longer running.")

    def _finish(self, job_id: uuid.UUID, status: UndoStatus, error: str | None = None) -> bool:
        db.session.rollback()
        finished_at = now_utc()
        values: dict[str, Any] = {
            "undo_status": status,
            "undo_finished_at": finished_at,
            "undo_heartbeat_at": finished_at,
            "undo_error": error,
        }
        if status == UndoStatus.DONE:
            values["undo_progress"] = 100
        if not self._update_running(job_id, **values):
            db.session.rollback()
            return False
        db.session.commit()
        progress = db.session.execute(select(ImportJob.undo_progress).where(ImportJob.id == job_id)).scalar_one()
        name = "undoDone" if status == UndoStatus.DONE else "undoFailed"
        self._publish(job_id, name, status, progress, error)
        return True

    def release_claim(self, job_id: uuid.UUID, error: str) -> bool:
        """Hand a claimed but never dispatched run back to ``idle``."""
        if not self._update_running(
            job_id,
            undo_status=UndoStatus.IDLE,
            undo_progress=0,
            undo_started_at=None,
            undo_heartbeat_at=None,
            undo_by_user_id=None,
            undo_error=None,
        ):
            db.session.rollback()
            return False
        db.session.commit()
        current_app.logger.warning("Undo claim on import %s released: %s", job_id, error)
        self._publish(job_id, "undoProgress", UndoStatus.IDLE, 0)
        return True

    def _write_audit(self, tenant_id: uuid.UUID, job_id: uuid.UUID, total: int) -> None:
        try:
            job = db.session.get(ImportJob, job_id)
            log_audit(
                action="IMPORT_UNDONE",
                entity_type="import_jobs",
                entity_id=job_id,
                payload={
                    "import_type": job.import_type.value,
                    "filename": job.filename,
                    "operations": total,
                    "outcome": job.undo_status.value,
                },
                tenant_id=tenant_id,
                actor_user_id=job.undo_by_user_id,
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.warning("Audit entry for undo of import %s could not be written.", job_id, exc_info=True)

    def _publish(
        self,
        job_id: uuid.UUID,
        name: str,
        status: UndoStatus,
        progress: int,
        error: str | None = None,
    ) -> None:
        self.channel.publish(
            undo_topic(job_id),
            name,
            {"status": status.value, "progress": progress, "error": error},
        )

    # --- status and recovery --------------------------------------------------

    def status(self, tenant_id: uuid.UUID, job_id: uuid.UUID, stale_after: timedelta | None = None) -> dict[str, Any]:
        job = db.session.execute(
            select(ImportJob).where(ImportJob.id == job_id, ImportJob.tenant_id == tenant_id)
        ).scalar_one_or_none()
        if job is None:
            raise ImportNotFound("Import not found for this tenant.")
        if stale_after is not None and self._is_stalled(job, stale_after):
            self.reap_stalled(stale_after, job_id=job_id)
            db.session.refresh(job)
        return job.undo_snapshot()

    @staticmethod
    def _is_stalled(job: ImportJob, stale_after: timedelta) -> bool:
        if job.undo_status != UndoStatus.RUNNING:
            return False
        heartbeat = job.undo_heartbeat_at or job.undo_started_at
        if heartbeat is None:
            return True
        if heartbeat.tzinfo is None:
            heartbeat = heartbeat.replace(tzinfo=now_utc().tzinfo)
        return now_utc() - heartbeat > stale_after

    def reap_stalled(self, stale_after: timedelta, job_id: uuid.UUID | None = None) -> list[uuid.UUID]:
        """Move ``running`` undos with no recent heartbeat to ``failed``."""
        stmt = select(ImportJob).where(ImportJob.undo_status == UndoStatus.RUNNING)
        if job_id is not None:
            stmt = stmt.where(ImportJob.id == job_id)
        reaped: list[uuid.UUID] = []
        for job in db.session.execute(stmt).scalars().all():
            if not self._is_stalled(job, stale_after):
                continue
            result = db.session.execute(
                update(ImportJob)
                .where(
                    ImportJob.id == job.id,
                    ImportJob.undo_status == UndoStatus.RUNNING,
                    ImportJob.undo_heartbeat_at == job.undo_heartbeat_at,
                )
                .values(undo_status=UndoStatus.FAILED, undo_error=STALLED_ERROR, undo_finished_at=now_utc())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                reaped.append(job.id)
        db.session.commit()
        for reaped_id in reaped:
            current_app.logger.warning("Undo of import %s marked failed: no heartbeat.", reaped_id)
            db.session.expire_all()
            job = db.session.get(ImportJob, reaped_id)
            self._publish(reaped_id, "undoFailed", UndoStatus.FAILED, job.undo_progress, STALLED_ERROR)
        return reaped
