from __future__ import annotations

import itertools
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from backoffice.extensions import db
from backoffice.import_processor import ImportProcessor
from backoffice.models import (
    Account,
    AuditLog,
    Client,
    Household,
    ImportJob,
    ImportJobStatus,
    ImportOperation,
    ImportType,
    OperationKind,
)
from backoffice.progress import ProgressChannel, import_topic


CONTACT_MAPPING = {
    "client_number": 0,
    "household_number": 1,
    "household_name": 2,
    "first_name": 3,
    "last_name": 4,
    "email": 5,
    "marginal_tax_bracket": 6,
}
ACCOUNT_MAPPING = {"account_number": 0, "client_number": 1, "account_type": 2, "custodian": 3, "account_value": 4}


def _contact_row(number: int, household: int, email: str | None = None, bracket: str | None = None) -> list:
    return [
        f"C{number:03d}",
        f"H{household:03d}",
        f"Household {household}",
        "Pat",
        f"Client{number}",
        email or f"client{number}@example.com",
        bracket,
    ]


def test_chunked_run_publishes_progress_per_chunk(app, create_job):
    rows = [_contact_row(number, (number - 1) // 3 + 1) for number in range(1, 121)]
    job_id = create_job(ImportType.CONTACT, rows, CONTACT_MAPPING)
    channel = ProgressChannel()
    ticks = itertools.chain([0.0, 5.0, 5.0, 10.0, 10.0, 11.0], itertools.repeat(11.0))
    processor = ImportProcessor(channel=channel, chunk_size=50, clock=lambda: next(ticks))

    with channel.subscribe(import_topic(job_id)) as subscription:
        summary = processor.run(job_id)
        events = subscription.drain()

    assert [event.name for event in events] == ["importProgress", "importProgress", "importProgress", "importComplete"]
    assert [event.payload["percentage"] for event in events[:3]] == [42, 83, 100]
    assert [event.payload["processed"] for event in events[:3]] == [50, 100, 120]
    assert events[0].payload["estimated_time"] == "7s left"
    assert events[1].payload["estimated_time"] == "2s left"
    assert events[-1].payload["import_job_id"] == str(job_id)

    assert summary["total_records"] == 120
    assert summary["created"] == 120
    assert len(summary["created_records"]) == 120

    job = db.session.get(ImportJob, job_id)
    assert job.status == ImportJobStatus.COMPLETED
    assert job.created_count == 120
    assert job.summary_json["status"] == "completed"
    assert db.session.execute(select(func.count()).select_from(Household)).scalar_one() == 40
    op_count = db.session.execute(
        select(func.count()).select_from(ImportOperation).where(ImportOperation.import_job_id == job_id)
    ).scalar_one()
    assert op_count == 160


class StoredSummaryChannel(ProgressChannel):
    """Captures the job's stored summary each time a chunk is announced."""

    def __init__(self, job_id) -> None:
        super().__init__()
        self.job_id = job_id
        self.stored: list[dict] = []

    def publish(self, topic, name, payload):
        if name == "importProgress":
            self.stored.append(dict(db.session.get(ImportJob, self.job_id).summary_json))
        return super().publish(topic, name, payload)


def test_chunk_summaries_store_counts_and_final_summary_stores_rows(app, create_job):
    rows = [_contact_row(number, 1) for number in range(1, 6)]
    job_id = create_job(ImportType.CONTACT, rows, CONTACT_MAPPING)
    channel = StoredSummaryChannel(job_id)

    ImportProcessor(channel=channel, chunk_size=2).run(job_id)

    assert [summary["processed"] for summary in channel.stored] == [2, 4, 5]
    assert [summary["created"] for summary in channel.stored] == [2, 4, 5]
    assert all("created_records" not in summary for summary in channel.stored)
    final = db.session.get(ImportJob, job_id).summary_json
    assert len(final["created_records"]) == 5


def test_rows_are_classified_exactly_once(app, run_import):
    rows = [
        _contact_row(1, 1),
        _contact_row(2, 1),
        _contact_row(1, 1, email="again@example.com"),
        ["", "H001", None, "No", "Key", None, None],
        ["C009", None, None, "No", "Household", None, None],
    ]
    job_id = run_import(ImportType.CONTACT, rows, CONTACT_MAPPING)

    job = db.session.get(ImportJob, job_id)
    summary = job.summary_json
    assert (job.created_count, job.updated_count, job.failed_count, job.duplicate_count) == (2, 0, 2, 1)
    assert summary["duplicate_records"][0]["row_index"] == 2
    assert summary["duplicate_records"][0]["code"] == "DUPLICATE_ROW"
    assert {entry["code"] for entry in summary["failed_records"]} == {"MISSING_KEY", "MISSING_FIELD"}

    first = db.session.execute(select(Client).where(Client.client_number == "C001")).scalar_one()
    assert first.email == "client1@example.com"


def test_contact_update_reports_changed_fields_and_keeps_highest_bracket(app, run_import):
    run_import(ImportType.CONTACT, [_contact_row(1, 1, bracket="24")], CONTACT_MAPPING)
    job_id = run_import(
        ImportType.CONTACT,
        [_contact_row(1, 1, email="NEW@example.com", bracket="22"), _contact_row(2, 1, bracket="32")],
        CONTACT_MAPPING,
    )

    summary = db.session.get(ImportJob, job_id).summary_json
    assert summary["updated_records"][0]["updated_fields"] == ["email"]
    household = db.session.execute(select(Household).where(Household.household_number == "H001")).scalar_one()
    assert household.marginal_tax_bracket == Decimal("32")


def test_moving_last_client_removes_empty_household(app, run_import):
    run_import(ImportType.CONTACT, [_contact_row(1, 1)], CONTACT_MAPPING)
    job_id = run_import(ImportType.CONTACT, [_contact_row(1, 2)], CONTACT_MAPPING)

    households = db.session.execute(select(Household.household_number)).scalars().all()
    assert households == ["H002"]
    kinds = db.session.execute(
        select(ImportOperation.target_collection, ImportOperation.kind)
        .where(ImportOperation.import_job_id == job_id)
        .order_by(ImportOperation.op_index)
    ).all()
    assert kinds == [
        ("households", OperationKind.CREATE),
        ("clients", OperationKind.UPDATE),
        ("households", OperationKind.DELETE),
    ]


def test_account_requires_owner_and_refreshes_household_total(app, run_import):
    run_import(ImportType.CONTACT, [_contact_row(1, 1)], CONTACT_MAPPING)
    job_id = run_import(
        ImportType.ACCOUNT,
        [
            ["A-1", "C001", "IRA", "Schwab", "$1,000.00"],
            ["A-2", "C001", "Brokerage", "Schwab", "2500"],
            ["A-3", "C404", "IRA", "Schwab", "10"],
            ["A-4", None, "IRA", "Schwab", "10"],
        ],
        ACCOUNT_MAPPING,
    )

    job = db.session.get(ImportJob, job_id)
    codes = [entry["code"] for entry in job.summary_json["failed_records"]]
    assert codes == ["OWNER_NOT_FOUND", "OWNER_REQUIRED"]
    household = db.session.execute(select(Household)).scalar_one()
    assert household.total_account_value == Decimal("3500.00")
    assert db.session.execute(select(func.count()).select_from(Account)).scalar_one() == 2


def test_failed_row_leaves_no_operations_behind(app, run_import):
    job_id = run_import(ImportType.CONTACT, [["C001", "H001", None, "Pat", "Doe", None, "abc"]], CONTACT_MAPPING)

    job = db.session.get(ImportJob, job_id)
    assert job.failed_count == 1
    assert job.summary_json["failed_records"][0]["code"] == "VALUE_INVALID"
    assert db.session.execute(select(func.count()).select_from(ImportOperation)).scalar_one() == 0
    assert db.session.execute(select(func.count()).select_from(Household)).scalar_one() == 0


def test_completed_import_writes_summary_audit(app, run_import):
    job_id = run_import(ImportType.CONTACT, [_contact_row(1, 1)], CONTACT_MAPPING)

    entry = db.session.execute(select(AuditLog).where(AuditLog.action == "IMPORT_COMPLETED")).scalar_one()
    assert entry.entity_id == job_id
    assert entry.payload_json["created"] == 1


def test_catastrophic_failure_marks_job_failed_and_keeps_committed_rows(app, create_job, monkeypatch):
    rows = [_contact_row(number, 1) for number in range(1, 4)]
    job_id = create_job(ImportType.CONTACT, rows, CONTACT_MAPPING)
    channel = ProgressChannel()
    processor = ImportProcessor(channel=channel, chunk_size=2)

    original_persist = processor._persist
    calls = {"count": 0}

    def flaky_persist(*args, **kwargs):
        calls["count"] += 1
        if calls["count"] == 2:
            raise RuntimeError("progress store unavailable")
        return original_persist(*args, **kwargs)

    monkeypatch.setattr(processor, "_persist", flaky_persist)

    with channel.subscribe(import_topic(job_id)) as subscription:
        with pytest.raises(RuntimeError):
            processor.run(job_id)
        names = [event.name for event in subscription.drain()]

    assert names[-1] == "importFailed"
    job = db.session.get(ImportJob, job_id)
    assert job.status == ImportJobStatus.FAILED
    assert job.error == "progress store unavailable"
    assert db.session.execute(select(func.count()).select_from(Client)).scalar_one() == 3
