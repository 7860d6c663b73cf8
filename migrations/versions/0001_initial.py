"""Initial schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


membership_role = sa.Enum("OWNER", "ADMIN", "ADVISOR", "ASSISTANT", name="membership_role")
billing_period_type = sa.Enum("MONTH", "QUARTER", "YEAR", name="billing_period_type")
import_type = sa.Enum("CONTACT", "ACCOUNT", "LIABILITY", "ASSET", "BENEFICIARY", "BILLING", name="import_type")
import_job_status = sa.Enum("PROCESSING", "COMPLETED", "FAILED", name="import_job_status")
undo_status = sa.Enum("IDLE", "RUNNING", "DONE", "FAILED", name="undo_status")
operation_kind = sa.Enum("CREATE", "UPDATE", "DELETE", name="operation_kind")


def _version_column() -> sa.Column:
    return sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1"))


def upgrade() -> None:
    bind = op.get_bind()
    empty_list = sa.text("'[]'::json" if bind.dialect.name == "postgresql" else "'[]'")
    empty_object = sa.text("'{}'::json" if bind.dialect.name == "postgresql" else "'{}'")

    op.create_table(
        "tenants",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug"),
    )
    op.create_index("ix_tenants_slug", "tenants", ["slug"], unique=True)

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=128), nullable=True),
        sa.Column("last_name", sa.String(length=128), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "memberships",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("role", membership_role, nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_memberships_tenant_user"),
    )
    op.create_index("ix_memberships_tenant_user", "memberships", ["tenant_id", "user_id"], unique=False)

    op.create_table(
        "households",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("household_number", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("marginal_tax_bracket", sa.Numeric(5, 2), nullable=True),
        sa.Column("lead_advisor_first_name", sa.String(length=128), nullable=True),
        sa.Column("lead_advisor_last_name", sa.String(length=128), nullable=True),
        sa.Column("total_account_value", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        _version_column(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "household_number", name="uq_households_tenant_number"),
    )

    op.create_table(
        "clients",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("household_id", sa.Uuid(), nullable=True),
        sa.Column("client_number", sa.String(length=64), nullable=False),
        sa.Column("first_name", sa.String(length=128), nullable=True),
        sa.Column("last_name", sa.String(length=128), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("mobile_number", sa.String(length=32), nullable=True),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        _version_column(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["household_id"], ["households.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "client_number", name="uq_clients_tenant_number"),
    )
    op.create_index("ix_clients_household", "clients", ["household_id"], unique=False)

    op.create_table(
        "accounts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("household_id", sa.Uuid(), nullable=True),
        sa.Column("owner_client_id", sa.Uuid(), nullable=True),
        sa.Column("account_number", sa.String(length=64), nullable=False),
        sa.Column("account_type", sa.String(length=64), nullable=True),
        sa.Column("custodian", sa.String(length=128), nullable=True),
        sa.Column("account_value", sa.Numeric(14, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("as_of_date", sa.Date(), nullable=True),
        _version_column(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["household_id"], ["households.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["owner_client_id"], ["clients.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "account_number", name="uq_accounts_tenant_number"),
    )
    op.create_index("ix_accounts_household", "accounts", ["household_id"], unique=False)

    op.create_table(
        "liabilities",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("household_id", sa.Uuid(), nullable=True),
        sa.Column("owner_client_id", sa.Uuid(), nullable=False),
        sa.Column("loan_number", sa.String(length=64), nullable=False),
        sa.Column("liability_type", sa.String(length=64), nullable=True),
        sa.Column("creditor_name", sa.String(length=128), nullable=True),
        sa.Column("outstanding_balance", sa.Numeric(14, 2), nullable=True),
        sa.Column("interest_rate", sa.Numeric(6, 3), nullable=True),
        sa.Column("monthly_payment", sa.Numeric(14, 2), nullable=True),
        sa.Column("estimated_payoff_date", sa.Date(), nullable=True),
        _version_column(),
        sa.ForeignKeyConstraint(["household_id"], ["households.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["owner_client_id"], ["clients.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_liabilities_owner_loan", "liabilities", ["owner_client_id", "loan_number"], unique=False)

    op.create_table(
        "assets",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_client_id", sa.Uuid(), nullable=False),
        sa.Column("asset_number", sa.String(length=64), nullable=False),
        sa.Column("asset_type", sa.String(length=64), nullable=True),
        sa.Column("asset_value", sa.Numeric(14, 2), nullable=True),
        _version_column(),
        sa.ForeignKeyConstraint(["owner_client_id"], ["clients.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_assets_owner_number", "assets", ["owner_client_id", "asset_number"], unique=False)

    op.create_table(
        "beneficiaries",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("account_id", sa.Uuid(), nullable=False),
        sa.Column("owner_client_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("relationship", sa.String(length=64), nullable=True),
        sa.Column("share_percentage", sa.Numeric(5, 2), nullable=True),
        _version_column(),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["owner_client_id"], ["clients.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_beneficiaries_account", "beneficiaries", ["account_id"], unique=False)

    op.create_table(
        "billing_entries",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("household_id", sa.Uuid(), nullable=False),
        sa.Column("period_type", billing_period_type, nullable=False),
        sa.Column("period_key", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        _version_column(),
        sa.ForeignKeyConstraint(["household_id"], ["households.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("household_id", "period_key", name="uq_billing_entries_household_period"),
    )

    op.create_table(
        "import_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("created_by_user_id", sa.Uuid(), nullable=True),
        sa.Column("import_type", import_type, nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=True),
        sa.Column("status", import_job_status, nullable=False, server_default=sa.text("'PROCESSING'")),
        sa.Column("mapping_json", sa.JSON(), nullable=False, server_default=empty_object),
        sa.Column("rows_json", sa.JSON(), nullable=False, server_default=empty_list),
        sa.Column("summary_json", sa.JSON(), nullable=False, server_default=empty_object),
        sa.Column("total_rows", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("duplicate_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("undo_status", undo_status, nullable=False, server_default=sa.text("'IDLE'")),
        sa.Column("undo_progress", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("undo_by_user_id", sa.Uuid(), nullable=True),
        sa.Column("undo_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("undo_finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("undo_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("undo_error", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["undo_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_import_jobs_tenant_created", "import_jobs", ["tenant_id", "created_at"], unique=False)
    op.create_index("ix_import_jobs_tenant_undo_status", "import_jobs", ["tenant_id", "undo_status"], unique=False)

    op.create_table(
        "import_operations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("import_job_id", sa.Uuid(), nullable=False),
        sa.Column("op_index", sa.Integer(), nullable=False),
        sa.Column("target_collection", sa.String(length=64), nullable=False),
        sa.Column("doc_id", sa.Uuid(), nullable=False),
        sa.Column("kind", operation_kind, nullable=False),
        sa.Column("before_json", sa.JSON(), nullable=True),
        sa.Column("after_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["import_job_id"], ["import_jobs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("import_job_id", "op_index", name="uq_import_operations_job_index"),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("actor_user_id", sa.Uuid(), nullable=True),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=True),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_log_tenant_ts", "audit_log", ["tenant_id", "ts"], unique=False)

    for table_name, column_name in (
        ("import_jobs", "status"),
        ("import_jobs", "undo_status"),
        ("import_jobs", "mapping_json"),
        ("import_jobs", "rows_json"),
        ("import_jobs", "summary_json"),
    ):
        op.alter_column(table_name, column_name, server_default=None)


def downgrade() -> None:
    op.drop_index("ix_audit_log_tenant_ts", table_name="audit_log")
    op.drop_table("audit_log")
    op.drop_table("import_operations")
    op.drop_index("ix_import_jobs_tenant_undo_status", table_name="import_jobs")
    op.drop_index("ix_import_jobs_tenant_created", table_name="import_jobs")
    op.drop_table("import_jobs")
    op.drop_table("billing_entries")
    op.drop_index("ix_beneficiaries_account", table_name="beneficiaries")
    op.drop_table("beneficiaries")
    op.drop_index("ix_assets_owner_number", table_name="assets")
    op.drop_table("assets")
    op.drop_index("ix_liabilities_owner_loan", table_name="liabilities")
    op.drop_table("liabilities")
    op.drop_index("ix_accounts_household", table_name="accounts")
    op.drop_table("accounts")
    op.drop_index("ix_clients_household", table_name="clients")
    op.drop_table("clients")
    op.drop_table("households")
    op.drop_index("ix_memberships_tenant_user", table_name="memberships")
    op.drop_table("memberships")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")
    op.drop_index("ix_tenants_slug", table_name="tenants")
    op.drop_table("tenants")

    bind = op.get_bind()
    for enum_type in (operation_kind, undo_status, import_job_status, import_type, billing_period_type, membership_role):
        enum_type.drop(bind, checkfirst=True)
