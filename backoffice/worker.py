"""Celery worker entry point: ``celery -A backoffice.worker:celery worker -Q imports``."""

from __future__ import annotations

from backoffice import create_app
from backoffice.celery_app import get_celery_app

flask_app = create_app()
celery = get_celery_app(flask_app)
