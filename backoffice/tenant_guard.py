"""Ownership resolution for records replayed by undo.

Several record types carry no tenant column of their own. Ownership is walked
through at most two references: the record's household, or its owning client
and then that client's household. Deeper chains are not followed.
"""

from __future__ import annotations

import uuid
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from backoffice.models import Client, Household


def _as_uuid(value: Any) -> uuid.UUID | None:
    if value is None or value == "":
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _household_tenant(session: Session, household_id: uuid.UUID) -> uuid.UUID | None:
    return session.execute(select(Household.tenant_id).where(Household.id == household_id)).scalar_one_or_none()


def belongs_to_tenant(record: Mapping[str, Any], tenant_id: uuid.UUID) -> bool | None:
    """Direct check on the record's own tenant column; ``None`` when it has none."""
    own_tenant = _as_uuid(record.get("tenant_id"))
    if own_tenant is None:
        return None
    return own_tenant == tenant_id


def belongs_to_tenant_deep(session: Session, record: Mapping[str, Any], tenant_id: uuid.UUID) -> bool:
    direct = belongs_to_tenant(record, tenant_id)
    if direct is not None:
        return direct

    household_id = _as_uuid(record.get("household_id"))
    if household_id is not None and _household_tenant(session, household_id) == tenant_id:
        return True

    owner_id = _as_uuid(record.get("owner_client_id"))
    if owner_id is not None:
        owner = session.execute(
            select(Client.tenant_id, Client.household_id).where(Client.id == owner_id)
        ).one_or_none()
        if owner is not None:
            if owner.tenant_id == tenant_id:
                return True
            if owner.household_id is not None and _household_tenant(session, owner.household_id) == tenant_id:
                return True

    return False
