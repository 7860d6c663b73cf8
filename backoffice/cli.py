"""Maintenance commands for imports (``flask imports ...``)."""

from __future__ import annotations

import json
import uuid
from datetime import timedelta

import click
from flask import current_app
from flask.cli import with_appcontext
from sqlalchemy import select

from backoffice.extensions import db
from backoffice.models import ImportJob
from backoffice.tasks import build_undo_engine, stale_after


@click.group(name="imports")
def imports_cli():
    """Import job maintenance."""


@imports_cli.command("reap-stalled")
@click.option("--stale-seconds", type=int, default=None, help="Override UNDO_STALE_AFTER_SECONDS.")
@with_appcontext
def reap_stalled_command(stale_seconds: int | None):
    """Mark undo runs with no recent heartbeat as failed."""
    threshold = stale_after()
    if stale_seconds is not None:
        threshold = timedelta(seconds=stale_seconds)
    reaped = build_undo_engine().reap_stalled(threshold)
    current_app.logger.info("Reaped %s stalled undo run(s).", len(reaped))
    click.echo(json.dumps({"reaped": [str(job_id) for job_id in reaped]}))


@imports_cli.command("show")
@click.argument("job_id")
@with_appcontext
def show_command(job_id: str):
    """Print a job's processing and undo state as JSON."""
    job = db.session.execute(select(ImportJob).where(ImportJob.id == _parse_uuid(job_id))).scalar_one_or_none()
    if job is None:
        raise click.ClickException(f"Import job {job_id} not found.")
    click.echo(
        json.dumps(
            {
                "id": str(job.id),
                "tenant_id": str(job.tenant_id),
                "import_type": job.import_type.value,
                "status": job.status.value,
                "created": job.created_count,
                "updated": job.updated_count,
                "failed": job.failed_count,
                "duplicate": job.duplicate_count,
                "undo": job.undo_snapshot(),
            },
            indent=2,
        )
    )


def _parse_uuid(value: str):
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise click.BadParameter(f"Not a valid id: {value}") from exc
