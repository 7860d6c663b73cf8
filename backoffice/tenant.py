"""Active tenant and membership lookups for request handlers."""

from __future__ import annotations

import functools
import uuid
from typing import Callable

from flask import abort, g, session
from flask_login import current_user
from sqlalchemy import select

from backoffice.extensions import db
from backoffice.models import Membership


def get_active_tenant_id() -> uuid.UUID | None:
    tenant_id = session.get("active_tenant_id")
    if not tenant_id:
        return None
    try:
        return uuid.UUID(str(tenant_id))
    except ValueError:
        session.pop("active_tenant_id", None)
        return None


def require_active_tenant_id() -> uuid.UUID:
    tenant_id = get_active_tenant_id()
    if tenant_id is None:
        abort(403, description="Tenant not selected.")
    return tenant_id


def tenant_required(view: Callable):
    @functools.wraps(view)
    def wrapped(*args, **kwargs):
        if not g.get("tenant_id"):
            abort(403, description="Tenant not selected.")
        return view(*args, **kwargs)

    return wrapped


def current_user_id() -> uuid.UUID | None:
    if not current_user.is_authenticated:
        return None
    try:
        return uuid.UUID(current_user.get_id())
    except ValueError:
        return None


def current_membership() -> Membership | None:
    """Membership of the signed-in user in the active tenant, cached per request."""
    if "membership" in g:
        return g.membership

    user_id = current_user_id()
    tenant_id = get_active_tenant_id()
    membership = None
    if user_id is not None and tenant_id is not None:
        membership = db.session.execute(
            select(Membership).where(Membership.user_id == user_id, Membership.tenant_id == tenant_id)
        ).scalar_one_or_none()
    g.membership = membership
    return membership
