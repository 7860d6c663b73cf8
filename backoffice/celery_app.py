"""Celery wiring for the import and undo workers.

The Celery instance is bound to the Flask app and kept in ``app.extensions``;
every task body runs inside an application context so models, config and
``current_app.logger`` behave exactly as they do in a request.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from celery import Celery
from celery.result import AsyncResult
from flask import Flask, current_app
from kombu import Queue

CELERY_EXTENSION_KEY = "celery"
DEFAULT_QUEUE_NAME = "imports"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"

PROCESS_IMPORT_TASK = "backoffice.imports.process"
UNDO_IMPORT_TASK = "backoffice.imports.undo"


def _determine_connection_urls(app: Flask) -> tuple[str, str]:
    """Resolve broker/result backend URLs, defaulting to a local SQLite transport."""
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if broker_url and result_backend:
        return broker_url, result_backend

    sqlite_path = Path(app.instance_path) / DEFAULT_SQLITE_FILENAME
    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    normalized = sqlite_path.as_posix()
    return broker_url or f"sqla+sqlite:///{normalized}", result_backend or f"db+sqlite:///{normalized}"


def create_celery_app(app: Flask) -> Celery:
    broker_url, result_backend = _determine_connection_urls(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("backoffice.tasks",),
    )
    celery_app.conf.update(
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_default_exchange=DEFAULT_QUEUE_NAME,
        task_default_routing_key=DEFAULT_QUEUE_NAME,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_track_started=True,
        broker_connection_retry_on_startup=True,
        task_time_limit=app.config.get("IMPORT_TASK_TIME_LIMIT", 60 * 60),
        worker_hijack_root_logger=False,
        task_always_eager=app.config.get("CELERY_TASK_ALWAYS_EAGER", False),
        task_eager_propagates=app.config.get("CELERY_TASK_EAGER_PROPAGATES", False),
    )

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    app.logger.info("Celery configured: broker=%s eager=%s", broker_url, celery_app.conf.task_always_eager)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        """Run Celery tasks inside a Flask application context automatically."""

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def init_celery(app: Flask) -> Celery:
    celery_app = create_celery_app(app)
    app.extensions[CELERY_EXTENSION_KEY] = celery_app
    return celery_app


def get_celery_app(app: Flask | None = None) -> Celery:
    app = app or current_app
    celery_app: Celery | None = app.extensions.get(CELERY_EXTENSION_KEY)
    if celery_app is None:
        celery_app = init_celery(app)
    return celery_app


def enqueue(task_name: str, **kwargs: Any) -> AsyncResult:
    """Dispatch a registered task by name on the app's Celery instance."""
    task = get_celery_app().tasks[task_name]
    return task.apply_async(kwargs=kwargs)
