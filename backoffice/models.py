"""Database models."""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from flask_login import UserMixin
from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backoffice.extensions import db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class MembershipRole(str, enum.Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    ADVISOR = "ADVISOR"
    ASSISTANT = "ASSISTANT"


class ImportType(str, enum.Enum):
    CONTACT = "contact"
    ACCOUNT = "account"
    LIABILITY = "liability"
    ASSET = "asset"
    BENEFICIARY = "beneficiary"
    BILLING = "billing"


class ImportJobStatus(str, enum.Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class UndoStatus(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class OperationKind(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class BillingPeriodType(str, enum.Enum):
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


class Tenant(db.Model):
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)

    memberships: Mapped[list["Membership"]] = relationship(back_populates="tenant")


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)

    memberships: Mapped[list["Membership"]] = relationship(back_populates="user")

    def get_id(self) -> str:
        return str(self.id)


class Membership(db.Model):
    __tablename__ = "memberships"
    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_memberships_tenant_user"),
        Index("ix_memberships_tenant_user", "tenant_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[MembershipRole] = mapped_column(Enum(MembershipRole, name="membership_role"), nullable=False)

    tenant: Mapped[Tenant] = relationship(back_populates="memberships")
    user: Mapped[User] = relationship(back_populates="memberships")


# Importable records. Each one carries an optimistic-concurrency ``version``
# bumped by the ORM on every UPDATE; undo matches on it.


class Household(db.Model):
    __tablename__ = "households"
    __table_args__ = (UniqueConstraint("tenant_id", "household_number", name="uq_households_tenant_number"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    household_number: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    marginal_tax_bracket: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    lead_advisor_first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    lead_advisor_last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    total_account_value: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class Client(db.Model):
    __tablename__ = "clients"
    __table_args__ = (
        UniqueConstraint("tenant_id", "client_number", name="uq_clients_tenant_number"),
        Index("ix_clients_household", "household_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    household_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("households.id", ondelete="SET NULL"), nullable=True
    )
    client_number: Mapped[str] = mapped_column(String(64), nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    mobile_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class Account(db.Model):
    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "account_number", name="uq_accounts_tenant_number"),
        Index("ix_accounts_household", "household_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    household_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("households.id", ondelete="SET NULL"), nullable=True
    )
    owner_client_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("clients.id", ondelete="SET NULL"), nullable=True
    )
    account_number: Mapped[str] = mapped_column(String(64), nullable=False)
    account_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    custodian: Mapped[str | None] = mapped_column(String(128), nullable=True)
    account_value: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    as_of_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class Liability(db.Model):
    __tablename__ = "liabilities"
    __table_args__ = (Index("ix_liabilities_owner_loan", "owner_client_id", "loan_number"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    household_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("households.id", ondelete="SET NULL"), nullable=True
    )
    owner_client_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    loan_number: Mapped[str] = mapped_column(String(64), nullable=False)
    liability_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    creditor_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    outstanding_balance: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    interest_rate: Mapped[Decimal | None] = mapped_column(Numeric(6, 3), nullable=True)
    monthly_payment: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    estimated_payoff_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class Asset(db.Model):
    __tablename__ = "assets"
    __table_args__ = (Index("ix_assets_owner_number", "owner_client_id", "asset_number"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_client_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    asset_number: Mapped[str] = mapped_column(String(64), nullable=False)
    asset_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    asset_value: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class Beneficiary(db.Model):
    __tablename__ = "beneficiaries"
    __table_args__ = (Index("ix_beneficiaries_account", "account_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    owner_client_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    relationship_label: Mapped[str | None] = mapped_column("relationship", String(64), nullable=True)
    share_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class BillingEntry(db.Model):
    __tablename__ = "billing_entries"
    __table_args__ = (UniqueConstraint("household_id", "period_key", name="uq_billing_entries_household_period"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    household_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("households.id", ondelete="CASCADE"), nullable=False)
    period_type: Mapped[BillingPeriodType] = mapped_column(
        Enum(BillingPeriodType, name="billing_period_type"), nullable=False
    )
    period_key: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


# Replay resolves an operation's ``target_collection`` through this table only.
RECORD_MODELS: dict[str, type[db.Model]] = {
    model.__tablename__: model
    for model in (Household, Client, Account, Liability, Asset, Beneficiary, BillingEntry)
}


class ImportJob(db.Model):
    __tablename__ = "import_jobs"
    __table_args__ = (
        Index("ix_import_jobs_tenant_created", "tenant_id", "created_at"),
        Index("ix_import_jobs_tenant_undo_status", "tenant_id", "undo_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    created_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    import_type: Mapped[ImportType] = mapped_column(Enum(ImportType, name="import_type"), nullable=False)
    filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[ImportJobStatus] = mapped_column(
        Enum(ImportJobStatus, name="import_job_status"),
        nullable=False,
        default=ImportJobStatus.PROCESSING,
    )
    mapping_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    rows_json: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    summary_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    total_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicate_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    undo_status: Mapped[UndoStatus] = mapped_column(
        Enum(UndoStatus, name="undo_status"),
        nullable=False,
        default=UndoStatus.IDLE,
    )
    undo_progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    undo_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    undo_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    undo_finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    undo_heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    undo_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    operations: Mapped[list["ImportOperation"]] = relationship(
        order_by="ImportOperation.op_index",
        viewonly=True,
    )

    @property
    def is_replayable(self) -> bool:
        return self.status in {ImportJobStatus.COMPLETED, ImportJobStatus.FAILED}

    def undo_snapshot(self) -> dict[str, Any]:
        return {
            "status": self.undo_status.value,
            "progress": self.undo_progress,
            "error": self.undo_error,
        }


class ImportOperation(db.Model):
    __tablename__ = "import_operations"
    __table_args__ = (UniqueConstraint("import_job_id", "op_index", name="uq_import_operations_job_index"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    import_job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False
    )
    op_index: Mapped[int] = mapped_column(Integer, nullable=False)
    target_collection: Mapped[str] = mapped_column(String(64), nullable=False)
    doc_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    kind: Mapped[OperationKind] = mapped_column(Enum(OperationKind, name="operation_kind"), nullable=False)
    before_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    after_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)


@event.listens_for(ImportOperation, "before_update")
def prevent_import_operation_update(_mapper: object, _connection: object, _target: object) -> None:
    raise ValueError("import_operations are append-only")


@event.listens_for(ImportOperation, "before_delete")
def prevent_import_operation_delete(_mapper: object, _connection: object, _target: object) -> None:
    raise ValueError("import_operations are append-only")


class AuditLog(db.Model):
    __tablename__ = "audit_log"
    __table_args__ = (Index("ix_audit_log_tenant_ts", "tenant_id", "ts"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)
