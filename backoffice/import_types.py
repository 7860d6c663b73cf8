"""Row mapping and upsert rules for each import type.

Every handler turns one mapped row into at most one primary record write plus
the side-effect writes that record implies (households, cached totals). All
writes go through the ``ChangeRecorder`` so undo can replay them.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Sequence

from sqlalchemy import func, select

from backoffice.change_log import ChangeRecorder
from backoffice.errors import RowError
from backoffice.extensions import db
from backoffice.models import (
    Account,
    Beneficiary,
    BillingEntry,
    BillingPeriodType,
    Client,
    Household,
    ImportType,
    Liability,
    Asset,
)
from backoffice.snapshots import take_snapshot


CREATED = "created"
UPDATED = "updated"
FAILED = "failed"
DUPLICATE = "duplicate"

SPREADSHEET_EPOCH = date(1899, 12, 30)
DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%m-%d-%Y", "%d.%m.%Y")
CENTS = Decimal("0.01")


@dataclass
class RowOutcome:
    kind: str
    code: str | None = None
    reason: str | None = None
    updated_fields: list[str] = field(default_factory=list)

    @classmethod
    def created(cls) -> "RowOutcome":
        return cls(CREATED)

    @classmethod
    def updated(cls, updated_fields: list[str]) -> "RowOutcome":
        return cls(UPDATED, updated_fields=sorted(updated_fields))

    @classmethod
    def failed(cls, code: str, reason: str) -> "RowOutcome":
        return cls(FAILED, code=code, reason=reason)


# --- value parsing -----------------------------------------------------------


def clean_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def parse_decimal(value: Any, field_name: str) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, (int, Decimal)):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    text = str(value).strip().replace("$", "").replace(",", "").replace("%", "")
    if not text:
        return None
    if text.startswith("(") and text.endswith(")"):
        text = f"-{text[1:-1]}"
    try:
        return Decimal(text)
    except InvalidOperation as exc:
        raise RowError(f"Invalid number for {field_name}: {value}", code="VALUE_INVALID") from exc


def parse_date(value: Any, field_name: str) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return SPREADSHEET_EPOCH + timedelta(days=int(value))
    text = str(value).strip()
    if not text:
        return None
    if re.fullmatch(r"\d{4,5}(\.\d+)?", text):
        return SPREADSHEET_EPOCH + timedelta(days=int(float(text)))
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date()
    except ValueError as exc:
        raise RowError(f"Invalid date for {field_name}: {value}", code="DATE_INVALID") from exc


def normalize_billing_period(value: Any, period_type: str | None) -> tuple[BillingPeriodType, str]:
    """Return the period granularity and its key: ``YYYY-MM``, ``YYYY-Q#`` or ``YYYY``."""
    text = (clean_text(value) or "").upper().replace(" ", "")
    hint = (clean_text(period_type) or "").lower()

    quarter = re.fullmatch(r"(\d{4})-?Q([1-4])", text) or re.fullmatch(r"Q([1-4])-?(\d{4})", text)
    if quarter and hint in {"", "quarter"}:
        groups = quarter.groups()
        year, number = (groups[0], groups[1]) if len(groups[0]) == 4 else (groups[1], groups[0])
        return BillingPeriodType.QUARTER, f"{year}-Q{number}"

    month = re.fullmatch(r"(\d{4})-(\d{1,2})", text) or re.fullmatch(r"(\d{1,2})/(\d{4})", text)
    if month and hint in {"", "month"}:
        first, second = month.groups()
        year, number = (first, second) if len(first) == 4 else (second, first)
        if 1 <= int(number) <= 12:
            return BillingPeriodType.MONTH, f"{year}-{int(number):02d}"

    if re.fullmatch(r"\d{4}", text) and hint in {"", "year"}:
        return BillingPeriodType.YEAR, text

    raise RowError(f"Invalid billing period: {value}", code="PERIOD_INVALID")


def extract_fields(row: Sequence[Any] | Mapping[str, Any], mapping: Mapping[str, Any], fields: Sequence[str]) -> dict[str, Any]:
    """Pull mapped fields out of a row; list rows use column indexes, dict rows use headers."""
    values: dict[str, Any] = {}
    for field_name in fields:
        column = mapping.get(field_name)
        raw: Any = None
        if column is not None and column != "":
            if isinstance(row, Mapping):
                raw = row.get(column)
            else:
                index = int(column)
                raw = row[index] if 0 <= index < len(row) else None
        if isinstance(raw, str) and not raw.strip():
            raw = None
        values[field_name] = raw
    return values


def assign(record: object, values: Mapping[str, Any], changed: list[str]) -> None:
    """Set non-empty values that differ from the record, collecting changed names."""
    for attr_name, value in values.items():
        if value is None:
            continue
        if getattr(record, attr_name) != value:
            setattr(record, attr_name, value)
            changed.append(attr_name)


# --- row context -------------------------------------------------------------


@dataclass
class RowContext:
    tenant_id: uuid.UUID
    recorder: ChangeRecorder

    def find_household(self, household_number: str) -> Household | None:
        return db.session.execute(
            select(Household).where(
                Household.tenant_id == self.tenant_id,
                Household.household_number == household_number,
            )
        ).scalar_one_or_none()

    def find_client(self, client_number: str | None) -> Client | None:
        if not client_number:
            return None
        return db.session.execute(
            select(Client).where(Client.tenant_id == self.tenant_id, Client.client_number == client_number)
        ).scalar_one_or_none()

    def find_account(self, account_number: str | None) -> Account | None:
        if not account_number:
            return None
        return db.session.execute(
            select(Account).where(Account.tenant_id == self.tenant_id, Account.account_number == account_number)
        ).scalar_one_or_none()

    def create(self, record: object) -> None:
        db.session.add(record)
        self.recorder.record_create(record)

    def save(self, record: object, before: dict[str, Any], changed: list[str]) -> None:
        if changed:
            self.recorder.record_update(record, before)

    def refresh_household_total(self, household_id: uuid.UUID | None) -> None:
        if household_id is None:
            return
        household = db.session.get(Household, household_id)
        if household is None:
            return
        db.session.flush()
        total = db.session.execute(
            select(func.coalesce(func.sum(Account.account_value), 0)).where(Account.household_id == household_id)
        ).scalar_one()
        total = Decimal(str(total)).quantize(CENTS)
        if household.total_account_value is None or Decimal(household.total_account_value).quantize(CENTS) != total:
            before = take_snapshot(household)
            household.total_account_value = total
            self.recorder.record_update(household, before)

    def remove_household_if_empty(self, household_id: uuid.UUID | None) -> None:
        if household_id is None:
            return
        household = db.session.get(Household, household_id)
        if household is None:
            return
        db.session.flush()
        for model in (Client, Account, Liability, BillingEntry):
            in_use = db.session.execute(
                select(func.count()).select_from(model).where(model.household_id == household_id)
            ).scalar_one()
            if in_use:
                return
        self.recorder.record_delete(household, take_snapshot(household))


# --- handlers ----------------------------------------------------------------


class ImportHandler:
    import_type: ImportType
    fields: tuple[str, ...] = ()
    key_fields: tuple[str, ...] = ()

    def natural_key(self, values: Mapping[str, Any]) -> str | None:
        parts = [clean_text(values.get(name)) for name in self.key_fields]
        if any(part is None for part in parts):
            return None
        return ":".join(parts)

    @property
    def missing_key_reason(self) -> str:
        return f"Missing required {' / '.join(self.key_fields)}"

    def apply(self, ctx: RowContext, values: Mapping[str, Any]) -> RowOutcome:
        raise NotImplementedError


class ContactHandler(ImportHandler):
    import_type = ImportType.CONTACT
    fields = (
        "client_number",
        "household_number",
        "household_name",
        "first_name",
        "last_name",
        "email",
        "mobile_number",
        "date_of_birth",
        "marginal_tax_bracket",
        "lead_advisor_first_name",
        "lead_advisor_last_name",
    )
    key_fields = ("client_number",)

    def apply(self, ctx: RowContext, values: Mapping[str, Any]) -> RowOutcome:
        client_number = clean_text(values["client_number"])
        household_number = clean_text(values["household_number"])
        if household_number is None:
            return RowOutcome.failed("MISSING_FIELD", "Missing required household_number")

        date_of_birth = parse_date(values["date_of_birth"], "date_of_birth")
        tax_bracket = parse_decimal(values["marginal_tax_bracket"], "marginal_tax_bracket")
        if tax_bracket is not None and tax_bracket < 0:
            tax_bracket = None

        household = ctx.find_household(household_number)
        if household is None:
            household = Household(
                tenant_id=ctx.tenant_id,
                household_number=household_number,
                name=clean_text(values["household_name"]),
                marginal_tax_bracket=tax_bracket,
                lead_advisor_first_name=clean_text(values["lead_advisor_first_name"]),
                lead_advisor_last_name=clean_text(values["lead_advisor_last_name"]),
                total_account_value=Decimal("0.00"),
            )
            ctx.create(household)
        else:
            before = take_snapshot(household)
            changed: list[str] = []
            assign(household, {"name": clean_text(values["household_name"])}, changed)
            if tax_bracket is not None and (
                household.marginal_tax_bracket is None or tax_bracket > household.marginal_tax_bracket
            ):
                household.marginal_tax_bracket = tax_bracket
                changed.append("marginal_tax_bracket")
            for attr_name in ("lead_advisor_first_name", "lead_advisor_last_name"):
                if not getattr(household, attr_name):
                    assign(household, {attr_name: clean_text(values[attr_name])}, changed)
            ctx.save(household, before, changed)

        client_values = {
            "household_id": household.id,
            "first_name": clean_text(values["first_name"]),
            "last_name": clean_text(values["last_name"]),
            "email": (clean_text(values["email"]) or "").lower() or None,
            "mobile_number": clean_text(values["mobile_number"]),
            "date_of_birth": date_of_birth,
        }

        client = ctx.find_client(client_number)
        if client is None:
            ctx.create(Client(tenant_id=ctx.tenant_id, client_number=client_number, **client_values))
            return RowOutcome.created()

        before = take_snapshot(client)
        previous_household_id = client.household_id
        changed = []
        assign(client, client_values, changed)
        ctx.save(client, before, changed)
        if previous_household_id is not None and previous_household_id != household.id:
            ctx.remove_household_if_empty(previous_household_id)
        return RowOutcome.updated(changed)


class AccountHandler(ImportHandler):
    import_type = ImportType.ACCOUNT
    fields = ("account_number", "client_number", "account_type", "custodian", "account_value", "as_of_date")
    key_fields = ("account_number",)

    def apply(self, ctx: RowContext, values: Mapping[str, Any]) -> RowOutcome:
        account_number = clean_text(values["account_number"])
        client_number = clean_text(values["client_number"])
        account_value = parse_decimal(values["account_value"], "account_value")
        as_of_date = parse_date(values["as_of_date"], "as_of_date")
        owner = ctx.find_client(client_number)

        account = ctx.find_account(account_number)
        if account is None:
            if owner is None:
                return _owner_not_found(client_number)
            account = Account(
                tenant_id=ctx.tenant_id,
                household_id=owner.household_id,
                owner_client_id=owner.id,
                account_number=account_number,
                account_type=clean_text(values["account_type"]),
                custodian=clean_text(values["custodian"]),
                account_value=(account_value or Decimal("0")).quantize(CENTS),
                as_of_date=as_of_date,
            )
            ctx.create(account)
            ctx.refresh_household_total(account.household_id)
            return RowOutcome.created()

        before = take_snapshot(account)
        previous_household_id = account.household_id
        changed: list[str] = []
        if owner is not None:
            assign(account, {"owner_client_id": owner.id, "household_id": owner.household_id}, changed)
        assign(
            account,
            {
                "account_type": clean_text(values["account_type"]),
                "custodian": clean_text(values["custodian"]),
                "account_value": account_value.quantize(CENTS) if account_value is not None else None,
                "as_of_date": as_of_date,
            },
            changed,
        )
        ctx.save(account, before, changed)
        ctx.refresh_household_total(account.household_id)
        if previous_household_id != account.household_id:
            ctx.refresh_household_total(previous_household_id)
        return RowOutcome.updated(changed)


class LiabilityHandler(ImportHandler):
    import_type = ImportType.LIABILITY
    fields = (
        "loan_number",
        "client_number",
        "liability_type",
        "creditor_name",
        "outstanding_balance",
        "interest_rate",
        "monthly_payment",
        "estimated_payoff_date",
    )
    key_fields = ("loan_number",)

    def apply(self, ctx: RowContext, values: Mapping[str, Any]) -> RowOutcome:
        loan_number = clean_text(values["loan_number"])
        client_number = clean_text(values["client_number"])
        record_values = {
            "liability_type": clean_text(values["liability_type"]),
            "creditor_name": clean_text(values["creditor_name"]),
            "outstanding_balance": parse_decimal(values["outstanding_balance"], "outstanding_balance"),
            "interest_rate": parse_decimal(values["interest_rate"], "interest_rate"),
            "monthly_payment": parse_decimal(values["monthly_payment"], "monthly_payment"),
            "estimated_payoff_date": parse_date(values["estimated_payoff_date"], "estimated_payoff_date"),
        }
        owner = ctx.find_client(client_number)

        liability = db.session.execute(
            select(Liability)
            .join(Client, Client.id == Liability.owner_client_id)
            .where(Client.tenant_id == ctx.tenant_id, Liability.loan_number == loan_number)
        ).scalar_one_or_none()
        if liability is None:
            if owner is None:
                return _owner_not_found(client_number)
            ctx.create(
                Liability(
                    owner_client_id=owner.id,
                    household_id=owner.household_id,
                    loan_number=loan_number,
                    **record_values,
                )
            )
            return RowOutcome.created()

        before = take_snapshot(liability)
        changed: list[str] = []
        if owner is not None:
            assign(liability, {"owner_client_id": owner.id, "household_id": owner.household_id}, changed)
        assign(liability, record_values, changed)
        ctx.save(liability, before, changed)
        return RowOutcome.updated(changed)


class AssetHandler(ImportHandler):
    import_type = ImportType.ASSET
    fields = ("asset_number", "client_number", "asset_type", "asset_value")
    key_fields = ("asset_number",)

    def apply(self, ctx: RowContext, values: Mapping[str, Any]) -> RowOutcome:
        asset_number = clean_text(values["asset_number"])
        client_number = clean_text(values["client_number"])
        record_values = {
            "asset_type": clean_text(values["asset_type"]),
            "asset_value": parse_decimal(values["asset_value"], "asset_value"),
        }
        owner = ctx.find_client(client_number)

        asset = db.session.execute(
            select(Asset)
            .join(Client, Client.id == Asset.owner_client_id)
            .where(Client.tenant_id == ctx.tenant_id, Asset.asset_number == asset_number)
        ).scalar_one_or_none()
        if asset is None:
            if owner is None:
                return _owner_not_found(client_number)
            ctx.create(Asset(owner_client_id=owner.id, asset_number=asset_number, **record_values))
            return RowOutcome.created()

        before = take_snapshot(asset)
        changed: list[str] = []
        if owner is not None:
            assign(asset, {"owner_client_id": owner.id}, changed)
        assign(asset, record_values, changed)
        ctx.save(asset, before, changed)
        return RowOutcome.updated(changed)


class BeneficiaryHandler(ImportHandler):
    import_type = ImportType.BENEFICIARY
    fields = ("account_number", "name", "relationship", "share_percentage")
    key_fields = ("account_number", "name")

    def natural_key(self, values: Mapping[str, Any]) -> str | None:
        key = super().natural_key(values)
        return key.upper() if key else None

    def apply(self, ctx: RowContext, values: Mapping[str, Any]) -> RowOutcome:
        account_number = clean_text(values["account_number"])
        name = clean_text(values["name"])
        share = parse_decimal(values["share_percentage"], "share_percentage")
        if share is not None and not Decimal("0") <= share <= Decimal("100"):
            raise RowError(f"Invalid share_percentage: {share}", code="VALUE_INVALID")

        account = ctx.find_account(account_number)
        if account is None:
            return RowOutcome.failed("ACCOUNT_NOT_FOUND", f"No account found for account_number={account_number}")
        if account.owner_client_id is None:
            return RowOutcome.failed("ACCOUNT_UNLINKED", f"Account {account_number} has no owning client")

        beneficiary = db.session.execute(
            select(Beneficiary).where(Beneficiary.account_id == account.id, func.upper(Beneficiary.name) == name.upper())
        ).scalar_one_or_none()
        record_values = {"relationship_label": clean_text(values["relationship"]), "share_percentage": share}
        if beneficiary is None:
            ctx.create(
                Beneficiary(account_id=account.id, owner_client_id=account.owner_client_id, name=name, **record_values)
            )
            return RowOutcome.created()

        before = take_snapshot(beneficiary)
        changed: list[str] = []
        assign(beneficiary, record_values, changed)
        ctx.save(beneficiary, before, changed)
        return RowOutcome.updated(changed)


class BillingHandler(ImportHandler):
    import_type = ImportType.BILLING
    fields = ("household_number", "billing_period", "period_type", "amount")
    key_fields = ("household_number", "billing_period")

    def natural_key(self, values: Mapping[str, Any]) -> str | None:
        household_number = clean_text(values.get("household_number"))
        if household_number is None or clean_text(values.get("billing_period")) is None:
            return None
        _period_type, period_key = normalize_billing_period(values["billing_period"], values.get("period_type"))
        return f"{household_number}:{period_key}"

    def apply(self, ctx: RowContext, values: Mapping[str, Any]) -> RowOutcome:
        household_number = clean_text(values["household_number"])
        period_type, period_key = normalize_billing_period(values["billing_period"], values.get("period_type"))
        amount = parse_decimal(values["amount"], "amount")
        if amount is None:
            return RowOutcome.failed("MISSING_FIELD", "Missing required amount")
        amount = amount.quantize(CENTS)

        household = ctx.find_household(household_number)
        if household is None:
            return RowOutcome.failed(
                "HOUSEHOLD_NOT_FOUND", f"No household found for household_number={household_number}"
            )

        entry = db.session.execute(
            select(BillingEntry).where(BillingEntry.household_id == household.id, BillingEntry.period_key == period_key)
        ).scalar_one_or_none()
        if entry is None:
            ctx.create(
                BillingEntry(household_id=household.id, period_type=period_type, period_key=period_key, amount=amount)
            )
            return RowOutcome.created()

        before = take_snapshot(entry)
        changed: list[str] = []
        assign(entry, {"amount": amount}, changed)
        ctx.save(entry, before, changed)
        return RowOutcome.updated(changed)


def _owner_not_found(client_number: str | None) -> RowOutcome:
    if not client_number:
        return RowOutcome.failed("OWNER_REQUIRED", "Missing client_number for a new record")
    return RowOutcome.failed("OWNER_NOT_FOUND", f"No client found for client_number={client_number}")


IMPORT_HANDLERS: dict[ImportType, ImportHandler] = {
    handler.import_type: handler
    for handler in (
        ContactHandler(),
        AccountHandler(),
        LiabilityHandler(),
        AssetHandler(),
        BeneficiaryHandler(),
        BillingHandler(),
    )
}
