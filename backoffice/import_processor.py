"""Chunked import runner: classifies rows, writes records, streams progress."""

from __future__ import annotations

import time
import uuid
from typing import Any, Callable, Mapping, Sequence

from flask import current_app

from backoffice.audit import log_audit
from backoffice.change_log import ChangeRecorder
from backoffice.extensions import db
from backoffice.import_types import (
    CREATED,
    DUPLICATE,
    FAILED,
    IMPORT_HANDLERS,
    UPDATED,
    ImportHandler,
    RowContext,
    RowOutcome,
    extract_fields,
)
from backoffice.models import ImportJob, ImportJobStatus, ImportType, now_utc
from backoffice.progress import ProgressChannel, ThroughputEstimator, import_topic, percent_complete


OUTCOME_KINDS = (CREATED, UPDATED, FAILED, DUPLICATE)
RECORD_LIST_KEYS = frozenset(f"{kind}_records" for kind in OUTCOME_KINDS)


def _without_record_lists(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Chunk snapshot stored on the job; the row lists are written once, at the end."""
    return {key: value for key, value in payload.items() if key not in RECORD_LIST_KEYS}


class ImportProcessor:
    """Runs one import job to completion.

    Rows are handled strictly in order, one at a time, because a later row may
    reference a key an earlier row created. Each row's record writes and change
    log entries commit together; a row that cannot do both is rolled back and
    reported as failed.
    """

    def __init__(
        self,
        *,
        channel: ProgressChannel,
        chunk_size: int = 50,
        handlers: Mapping[ImportType, ImportHandler] = IMPORT_HANDLERS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.channel = channel
        self.chunk_size = chunk_size
        self.handlers = handlers
        self.clock = clock

    def run(self, job_id: uuid.UUID) -> dict[str, Any]:
        job = db.session.get(ImportJob, job_id)
        if job is None:
            raise LookupError(f"Import job {job_id} not found.")

        handler = self.handlers[job.import_type]
        rows: Sequence[Any] = list(job.rows_json or [])
        mapping: dict[str, Any] = dict(job.mapping_json or {})
        tenant_id = job.tenant_id
        actor_user_id = job.created_by_user_id
        total = len(rows)
        topic = import_topic(job_id)

        ctx = RowContext(tenant_id=tenant_id, recorder=ChangeRecorder(job))
        records: dict[str, list[dict[str, Any]]] = {kind: [] for kind in OUTCOME_KINDS}
        seen_keys: set[str] = set()
        estimator = ThroughputEstimator()
        processed = 0

        current_app.logger.info(
            "Import %s started: %s rows of type %s.", job_id, total, job.import_type.value
        )
        try:
            for chunk_start in range(0, total, self.chunk_size):
                chunk = rows[chunk_start : chunk_start + self.chunk_size]
                started = self.clock()
                for offset, row in enumerate(chunk):
                    entry_kind, entry = self._process_row(ctx, handler, row, chunk_start + offset, mapping, seen_keys)
                    records[entry_kind].append(entry)
                    processed += 1
                estimator.add_chunk(self.clock() - started, len(chunk))

                payload = self._progress_payload(total, processed, records, estimator)
                self._persist(job_id, records, _without_record_lists(payload))
                self.channel.publish(topic, "importProgress", payload)
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception("Import %s failed after %s of %s rows.", job_id, processed, total)
            payload = self._summary_payload(job_id, total, records, status="failed")
            payload["error"] = str(exc)
            self._persist(job_id, records, payload, status=ImportJobStatus.FAILED, error=str(exc))
            self.channel.publish(topic, "importFailed", payload)
            raise

        payload = self._summary_payload(job_id, total, records, status="completed")
        log_audit(
            action="IMPORT_COMPLETED",
            entity_type="import_jobs",
            entity_id=job_id,
            payload={kind: len(entries) for kind, entries in records.items()} | {"total": total},
            tenant_id=tenant_id,
            actor_user_id=actor_user_id,
        )
        self._persist(job_id, records, payload, status=ImportJobStatus.COMPLETED)
        self.channel.publish(topic, "importComplete", payload)
        current_app.logger.info(
            "Import %s completed: %s created, %s updated, %s failed, %s duplicate.",
            job_id,
            len(records[CREATED]),
            len(records[UPDATED]),
            len(records[FAILED]),
            len(records[DUPLICATE]),
        )
        return payload

    def fail_unstarted(self, job_id: uuid.UUID, error: str) -> None:
        """Close a job that never reached a worker."""
        job = db.session.get(ImportJob, job_id)
        records: dict[str, list[dict[str, Any]]] = {kind: [] for kind in OUTCOME_KINDS}
        payload = self._summary_payload(job_id, job.total_rows, records, status="failed")
        payload["error"] = error
        self._persist(job_id, records, payload, status=ImportJobStatus.FAILED, error=error)
        self.channel.publish(import_topic(job_id), "importFailed", payload)

    def _process_row(
        self,
        ctx: RowContext,
        handler: ImportHandler,
        row: Any,
        row_index: int,
        mapping: Mapping[str, Any],
        seen_keys: set[str],
    ) -> tuple[str, dict[str, Any]]:
        mark = ctx.recorder.mark()
        key: str | None = None
        try:
            values = extract_fields(row, mapping, handler.fields)
            key = handler.natural_key(values)
            if key is None:
                outcome = RowOutcome.failed("MISSING_KEY", handler.missing_key_reason)
            elif key in seen_keys:
                return DUPLICATE, {
                    "row_index": row_index,
                    "key": key,
                    "code": "DUPLICATE_ROW",
                    "reason": f"Duplicate {' / '.join(handler.key_fields)} in the same spreadsheet: {key}",
                }
            else:
                seen_keys.add(key)
                outcome = handler.apply(ctx, values)

            if outcome.kind == FAILED:
                db.session.rollback()
                ctx.recorder.release(mark)
            else:
                db.session.commit()
        except Exception as exc:
            db.session.rollback()
            ctx.recorder.release(mark)
            outcome = RowOutcome.failed(getattr(exc, "code", "ROW_ERROR"), str(exc))

        entry: dict[str, Any] = {"row_index": row_index, "key": key}
        if outcome.kind == FAILED:
            entry.update(code=outcome.code, reason=outcome.reason)
        elif outcome.kind == UPDATED:
            entry["updated_fields"] = outcome.updated_fields
        return outcome.kind, entry

    @staticmethod
    def _counts(records: Mapping[str, list[dict[str, Any]]]) -> dict[str, int]:
        return {kind: len(records[kind]) for kind in OUTCOME_KINDS}

    def _progress_payload(
        self,
        total: int,
        processed: int,
        records: Mapping[str, list[dict[str, Any]]],
        estimator: ThroughputEstimator,
    ) -> dict[str, Any]:
        return {
            "status": "processing",
            "total_records": total,
            "processed": processed,
            **self._counts(records),
            "percentage": percent_complete(processed, total),
            "estimated_time": estimator.eta_label(total - processed),
            **{f"{kind}_records": list(records[kind]) for kind in OUTCOME_KINDS},
        }

    def _summary_payload(
        self,
        job_id: uuid.UUID,
        total: int,
        records: Mapping[str, list[dict[str, Any]]],
        status: str,
    ) -> dict[str, Any]:
        return {
            "status": status,
            "import_job_id": str(job_id),
            "total_records": total,
            "processed": sum(len(entries) for entries in records.values()),
            **self._counts(records),
            **{f"{kind}_records": list(records[kind]) for kind in OUTCOME_KINDS},
        }

    def _persist(
        self,
        job_id: uuid.UUID,
        records: Mapping[str, list[dict[str, Any]]],
        payload: dict[str, Any],
        status: ImportJobStatus | None = None,
        error: str | None = None,
    ) -> None:
        job = db.session.get(ImportJob, job_id)
        counts = self._counts(records)
        job.created_count = counts[CREATED]
        job.updated_count = counts[UPDATED]
        job.failed_count = counts[FAILED]
        job.duplicate_count = counts[DUPLICATE]
        job.summary_json = payload
        if status is not None:
            job.status = status
            job.finished_at = now_utc()
        if error is not None:
            job.error = error
        db.session.commit()
