from __future__ import annotations

from typing import Iterator
import uuid

import pytest
from sqlalchemy.pool import StaticPool

from backoffice import create_app
from backoffice.config import Config
from backoffice.extensions import db, progress_channel
from backoffice.import_processor import ImportProcessor
from backoffice.models import ImportJob, ImportType, Membership, MembershipRole, Tenant, User


class TestConfig(Config):
    TESTING = True
    WTF_CSRF_ENABLED = False
    SQLALCHEMY_DATABASE_URI = "sqlite+pysqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {"check_same_thread": False},
        "poolclass": StaticPool,
    }
    CELERY_BROKER_URL = "memory://"
    CELERY_RESULT_BACKEND = "cache+memory://"
    CELERY_TASK_ALWAYS_EAGER = True
    IMPORT_CHUNK_SIZE = 50
    UNDO_CHUNK_SIZE = 100
    PROGRESS_STREAM_POLL_SECONDS = 0.01
    PROGRESS_STREAM_MAX_SECONDS = 0.2


@pytest.fixture()
def app() -> Iterator:
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()

        tenant_a = Tenant(id=uuid.uuid4(), name="Tenant A", slug="tenant-a")
        tenant_b = Tenant(id=uuid.uuid4(), name="Tenant B", slug="tenant-b")
        owner = User(id=uuid.uuid4(), email="owner@example.com", first_name="Olivia", last_name="Owner")
        assistant = User(id=uuid.uuid4(), email="assistant@example.com")

        db.session.add_all([tenant_a, tenant_b, owner, assistant])
        db.session.flush()
        db.session.add_all(
            [
                Membership(tenant_id=tenant_a.id, user_id=owner.id, role=MembershipRole.OWNER),
                Membership(tenant_id=tenant_b.id, user_id=owner.id, role=MembershipRole.OWNER),
                Membership(tenant_id=tenant_a.id, user_id=assistant.id, role=MembershipRole.ASSISTANT),
            ]
        )
        db.session.commit()

        app.config["TEST_TENANT_A_ID"] = tenant_a.id
        app.config["TEST_TENANT_B_ID"] = tenant_b.id
        app.config["TEST_OWNER_ID"] = owner.id
        app.config["TEST_ASSISTANT_ID"] = assistant.id
        yield app
        db.session.remove()
        db.drop_all()
    progress_channel._last.clear()


@pytest.fixture()
def tenant_a_id(app) -> uuid.UUID:
    return app.config["TEST_TENANT_A_ID"]


@pytest.fixture()
def tenant_b_id(app) -> uuid.UUID:
    return app.config["TEST_TENANT_B_ID"]


@pytest.fixture()
def owner_id(app) -> uuid.UUID:
    return app.config["TEST_OWNER_ID"]


@pytest.fixture()
def client(app):
    return app.test_client()


def login_as(client, user_id: uuid.UUID, tenant_id: uuid.UUID | None) -> None:
    with client.session_transaction() as sess:
        sess["_user_id"] = str(user_id)
        sess["_fresh"] = True
        if tenant_id is not None:
            sess["active_tenant_id"] = str(tenant_id)


@pytest.fixture()
def owner_client(app, client, owner_id, tenant_a_id):
    login_as(client, owner_id, tenant_a_id)
    return client


@pytest.fixture()
def assistant_client(app, tenant_a_id):
    client = app.test_client()
    login_as(client, app.config["TEST_ASSISTANT_ID"], tenant_a_id)
    return client


@pytest.fixture()
def create_job(app, tenant_a_id, owner_id):
    def _create(import_type: ImportType, rows: list, mapping: dict, tenant_id: uuid.UUID | None = None, **extra):
        job = ImportJob(
            tenant_id=tenant_id or tenant_a_id,
            created_by_user_id=owner_id,
            import_type=import_type,
            filename="upload.xlsx",
            mapping_json=mapping,
            rows_json=rows,
            total_rows=len(rows),
            **extra,
        )
        db.session.add(job)
        db.session.commit()
        return job.id

    return _create


@pytest.fixture()
def run_import(app, create_job):
    def _run(import_type, rows: list, mapping: dict, tenant_id: uuid.UUID | None = None, chunk_size: int = 50):
        job_id = create_job(import_type, rows, mapping, tenant_id=tenant_id)
        ImportProcessor(channel=progress_channel, chunk_size=chunk_size).run(job_id)
        return job_id

    return _run
