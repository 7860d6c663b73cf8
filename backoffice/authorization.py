"""Authorization capabilities and semantic permission decorators."""

from __future__ import annotations

import functools
from typing import Callable

from flask import abort

from backoffice.models import Membership, MembershipRole
from backoffice.tenant import current_membership

IMPORT_ROLES = {MembershipRole.OWNER, MembershipRole.ADMIN, MembershipRole.ADVISOR}
UNDO_ROLES = {MembershipRole.OWNER, MembershipRole.ADMIN}


def can_run_imports(role: MembershipRole) -> bool:
    return role in IMPORT_ROLES


def can_view_imports(role: MembershipRole) -> bool:
    return role in IMPORT_ROLES | {MembershipRole.ASSISTANT}


def can_undo_imports(role: MembershipRole) -> bool:
    return role in UNDO_ROLES


def _membership_role_predicate(check: Callable[[MembershipRole], bool]) -> Callable[[Membership], bool]:
    def predicate(membership: Membership) -> bool:
        return check(membership.role)

    return predicate


def permission_required(permission_name: str, check: Callable[[Membership], bool]):
    def decorator(view: Callable):
        @functools.wraps(view)
        def wrapped(*args, **kwargs):
            membership = current_membership()
            if membership is None or not check(membership):
                abort(403, description=f"Insufficient permissions: {permission_name}.")
            return view(*args, **kwargs)

        return wrapped

    return decorator


run_imports_required = permission_required("run_imports", _membership_role_predicate(can_run_imports))
view_imports_required = permission_required("view_imports", _membership_role_predicate(can_view_imports))
undo_imports_required = permission_required("undo_imports", _membership_role_predicate(can_undo_imports))
