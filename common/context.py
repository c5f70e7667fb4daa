from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from rest_framework.exceptions import NotAuthenticated, PermissionDenied

from core.models import User


@dataclass(frozen=True)
class StaffCaller:
    user_id: UUID
    username: str
    role: User.StaffRole


@dataclass(frozen=True)
class BusinessCaller:
    user_id: UUID
    username: str
    role: User.BusinessRole
    business_id: UUID


Caller = StaffCaller | BusinessCaller


def caller_from_user(user) -> Caller:
    """Resolve the authenticated user into a staff or business caller.

    Superusers without an explicit staff role act as the staff owner.
    """
    if user is None or not user.is_authenticated:
        raise NotAuthenticated()

    if user.kind == User.Kind.BUSINESS:
        if not user.business_role or not user.business_id:
            raise PermissionDenied("Business account has no role assigned.")
        return BusinessCaller(
            user_id=user.id,
            username=user.username,
            role=User.BusinessRole(user.business_role),
            business_id=user.business_id,
        )

    if user.staff_role:
        return StaffCaller(user_id=user.id, username=user.username, role=User.StaffRole(user.staff_role))
    if user.is_superuser:
        return StaffCaller(user_id=user.id, username=user.username, role=User.StaffRole.OWNER)
    raise PermissionDenied("Staff account has no role assigned.")
