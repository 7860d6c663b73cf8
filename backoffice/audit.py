"""Audit logging helper."""

from __future__ import annotations

import uuid
from typing import Any

from flask import has_request_context, session
from flask_login import current_user

from backoffice.extensions import db
from backoffice.models import AuditLog


def _coerce_uuid(value: object) -> uuid.UUID | None:
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def log_audit(
    action: str,
    entity_type: str,
    entity_id: uuid.UUID | None,
    payload: dict[str, Any] | None = None,
    *,
    tenant_id: uuid.UUID | None = None,
    actor_user_id: uuid.UUID | None = None,
) -> None:
    """Stage an audit row; workers pass tenant and actor since they have no request."""
    if tenant_id is None and has_request_context():
        tenant_id = _coerce_uuid(session.get("active_tenant_id"))
    if tenant_id is None:
        return

    if actor_user_id is None and has_request_context() and current_user.is_authenticated:
        actor_user_id = _coerce_uuid(current_user.get_id())

    db.session.add(
        AuditLog(
            tenant_id=tenant_id,
            actor_user_id=actor_user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            payload_json=payload or {},
        )
    )
