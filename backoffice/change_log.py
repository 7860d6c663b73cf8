"""Append-only change log written while an import runs."""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import func, select

from backoffice.extensions import db
from backoffice.models import ImportJob, ImportJobStatus, ImportOperation, OperationKind
from backoffice.snapshots import take_snapshot


class ChangeRecorder:
    """Assigns op indexes and stages one ``ImportOperation`` per write.

    Entries are added to the current session so they commit (or roll back)
    together with the write they describe.
    """

    def __init__(self, job: ImportJob) -> None:
        self.job_id: uuid.UUID = job.id
        if job.status != ImportJobStatus.PROCESSING:
            raise ValueError(f"Import job {job.id} is {job.status.value}; its change log is closed.")
        last_index = db.session.execute(
            select(func.max(ImportOperation.op_index)).where(ImportOperation.import_job_id == job.id)
        ).scalar_one()
        self._op_index = last_index or 0

    @property
    def last_index(self) -> int:
        return self._op_index

    def mark(self) -> int:
        return self._op_index

    def release(self, mark: int) -> None:
        """Give back indexes reserved by a unit of work that was rolled back."""
        self._op_index = mark

    def _append(
        self,
        kind: OperationKind,
        record: object,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> ImportOperation:
        self._op_index += 1
        operation = ImportOperation(
            import_job_id=self.job_id,
            op_index=self._op_index,
            target_collection=record.__table__.name,
            doc_id=record.id,
            kind=kind,
            before_json=before,
            after_json=after,
        )
        db.session.add(operation)
        return operation

    def record_create(self, record: object) -> ImportOperation:
        db.session.flush()
        return self._append(OperationKind.CREATE, record, None, take_snapshot(record))

    def record_update(self, record: object, before: dict[str, Any]) -> ImportOperation:
        db.session.flush()
        return self._append(OperationKind.UPDATE, record, before, take_snapshot(record))

    def record_delete(self, record: object, before: dict[str, Any]) -> ImportOperation:
        db.session.delete(record)
        db.session.flush()
        return self._append(OperationKind.DELETE, record, before, None)
