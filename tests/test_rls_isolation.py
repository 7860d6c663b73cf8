from __future__ import annotations

import os
from pathlib import Path
import uuid

import pytest
from alembic import command
from alembic.config import Config


def _psycopg_url(url: str) -> str:
    return url.replace("postgresql+psycopg://", "postgresql://")


@pytest.mark.integration
def test_rls_blocks_cross_tenant_reads():
    import psycopg

    test_database_url = os.getenv("TEST_DATABASE_URL")
    if not test_database_url:
        pytest.skip("TEST_DATABASE_URL is not set.")

    alembic_config = Config("alembic.ini")
    alembic_config.set_main_option("sqlalchemy.url", test_database_url)
    command.upgrade(alembic_config, "head")

    dsn = _psycopg_url(test_database_url)
    with psycopg.connect(dsn) as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT rolsuper FROM pg_roles WHERE rolname = current_user")
            if cur.fetchone()[0]:
                pytest.skip("RLS is bypassed for PostgreSQL superusers; use a non-superuser app role.")

            cur.execute(
                """
                TRUNCATE TABLE
                    audit_log,
                    import_operations,
                    import_jobs,
                    beneficiaries,
                    billing_entries,
                    assets,
                    liabilities,
                    accounts,
                    clients,
                    households,
                    memberships,
                    users,
                    tenants
                RESTART IDENTITY CASCADE
                """
            )
            conn.commit()

            cur.execute(Path("scripts/rls.sql").read_text(encoding="utf-8"))
            conn.commit()

            tenant_a = uuid.uuid4()
            tenant_b = uuid.uuid4()
            client_a = uuid.uuid4()
            client_b = uuid.uuid4()

            cur.execute(
                """
                INSERT INTO tenants (id, name, slug)
                VALUES (%s, %s, %s), (%s, %s, %s)
                """,
                (tenant_a, "Tenant A", "tenant-a-it", tenant_b, "Tenant B", "tenant-b-it"),
            )
            conn.commit()
            for tenant_id, client_id, number in ((tenant_a, client_a, "C-A"), (tenant_b, client_b, "C-B")):
                with conn.transaction():
                    cur.execute(f"SET LOCAL app.tenant_id = '{tenant_id}'")
                    cur.execute(
                        "INSERT INTO clients (id, tenant_id, client_number, version) VALUES (%s, %s, %s, 1)",
                        (client_id, tenant_id, number),
                    )
                    cur.execute(
                        "INSERT INTO assets (id, owner_client_id, asset_number, version) VALUES (%s, %s, %s, 1)",
                        (uuid.uuid4(), client_id, f"AS-{number}"),
                    )
            conn.commit()

            with conn.transaction():
                cur.execute(f"SET LOCAL app.tenant_id = '{tenant_a}'")
                cur.execute("SELECT COUNT(*) FROM clients")
                assert cur.fetchone()[0] == 1

                cur.execute("SELECT COUNT(*) FROM clients WHERE tenant_id = %s", (tenant_b,))
                assert cur.fetchone()[0] == 0

                # Assets carry no tenant column; visibility follows the owning client.
                cur.execute("SELECT COUNT(*) FROM assets")
                assert cur.fetchone()[0] == 1
