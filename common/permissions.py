import itertools
import logging
from dataclasses import dataclass
from enum import Enum

from django.core.exceptions import ImproperlyConfigured
from rest_framework.exceptions import NotFound, PermissionDenied
from rest_framework.permissions import BasePermission

from common.context import BusinessCaller, StaffCaller, caller_from_user
from core.models import User

logger = logging.getLogger("security.authorization")

Staff = User.StaffRole
Biz = User.BusinessRole


class Resource(str, Enum):
    PRODUCTS = "products"
    BUSINESSES = "businesses"
    USERS = "users"
    ORDERS = "orders"
    SETTINGS = "settings"
    APPLICATIONS = "applications"
    PREORDERS = "preorders"


class Action(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


@dataclass(frozen=True)
class Grant:
    staff: frozenset = frozenset()
    business: frozenset = frozenset()


ALL_STAFF = frozenset(Staff)
ALL_BUSINESS = frozenset(Biz)
NOBODY = Grant()

PERMISSION_MATRIX = {
    (Resource.PRODUCTS, Action.READ): Grant(staff=ALL_STAFF, business=ALL_BUSINESS),
    (Resource.PRODUCTS, Action.WRITE): Grant(staff=frozenset({Staff.OWNER, Staff.INVENTORY})),
    (Resource.PRODUCTS, Action.DELETE): Grant(staff=frozenset({Staff.OWNER, Staff.INVENTORY})),
    (Resource.BUSINESSES, Action.READ): Grant(staff=frozenset({Staff.OWNER, Staff.MANAGER, Staff.VIEWER})),
    (Resource.BUSINESSES, Action.WRITE): Grant(staff=frozenset({Staff.OWNER, Staff.MANAGER})),
    (Resource.BUSINESSES, Action.DELETE): Grant(staff=frozenset({Staff.OWNER})),
    (Resource.USERS, Action.READ): Grant(staff=frozenset({Staff.OWNER, Staff.HR})),
    (Resource.USERS, Action.WRITE): Grant(staff=frozenset({Staff.OWNER, Staff.HR})),
    (Resource.USERS, Action.DELETE): Grant(staff=frozenset({Staff.OWNER, Staff.HR})),
    (Resource.ORDERS, Action.READ): Grant(
        staff=frozenset({Staff.OWNER, Staff.MANAGER, Staff.ORDERS, Staff.VIEWER}),
        business=ALL_BUSINESS,
    ),
    (Resource.ORDERS, Action.WRITE): Grant(staff=frozenset({Staff.OWNER, Staff.ORDERS}), business=ALL_BUSINESS),
    (Resource.ORDERS, Action.DELETE): NOBODY,
    (Resource.SETTINGS, Action.READ): Grant(staff=frozenset({Staff.OWNER})),
    (Resource.SETTINGS, Action.WRITE): Grant(staff=frozenset({Staff.OWNER})),
    (Resource.SETTINGS, Action.DELETE): NOBODY,
    (Resource.APPLICATIONS, Action.READ): Grant(staff=frozenset({Staff.OWNER, Staff.HR})),
    (Resource.APPLICATIONS, Action.WRITE): Grant(staff=frozenset({Staff.OWNER, Staff.HR})),
    (Resource.APPLICATIONS, Action.DELETE): Grant(staff=frozenset({Staff.OWNER, Staff.HR})),
    (Resource.PREORDERS, Action.READ): Grant(
        staff=frozenset({Staff.OWNER, Staff.MANAGER, Staff.INVENTORY, Staff.ORDERS, Staff.VIEWER}),
        business=ALL_BUSINESS,
    ),
    (Resource.PREORDERS, Action.WRITE): Grant(staff=frozenset({Staff.OWNER, Staff.INVENTORY}), business=ALL_BUSINESS),
    (Resource.PREORDERS, Action.DELETE): NOBODY,
}

_missing_grants = [key for key in itertools.product(Resource, Action) if key not in PERMISSION_MATRIX]
if _missing_grants:
    raise ImproperlyConfigured(f"PERMISSION_MATRIX has no grant for: {_missing_grants}")

METHOD_ACTIONS = {
    "GET": Action.READ,
    "HEAD": Action.READ,
    "OPTIONS": Action.READ,
    "POST": Action.WRITE,
    "PUT": Action.WRITE,
    "PATCH": Action.WRITE,
    "DELETE": Action.DELETE,
}


def resolve_grant_key(resource, action):
    try:
        key = (Resource(resource), Action(action))
    except ValueError as exc:
        raise NotFound(f"Unknown resource or action: {resource}/{action}.") from exc
    if key not in PERMISSION_MATRIX:
        raise NotFound(f"Unknown resource or action: {resource}/{action}.")
    return key


def is_allowed(resource, action, role) -> bool:
    """Staff and business roles are matched only against their own side of the grant."""
    grant = PERMISSION_MATRIX[resolve_grant_key(resource, action)]
    if role is None:
        return False
    if isinstance(role, User.StaffRole):
        return role in grant.staff
    if isinstance(role, User.BusinessRole):
        return role in grant.business
    return False


def log_denial(caller, resource, action, request=None, view=None, reason="role"):
    logger.warning(
        "permission_denied resource=%s action=%s user=%s role=%s reason=%s method=%s path=%s view=%s",
        getattr(resource, "value", resource),
        getattr(action, "value", action),
        getattr(caller, "username", "anonymous"),
        getattr(getattr(caller, "role", None), "value", None),
        reason,
        getattr(request, "method", None),
        getattr(request, "path", None),
        view.__class__.__name__ if view is not None else None,
    )


def require_permission(caller, resource, action, *, request=None):
    if not is_allowed(resource, action, getattr(caller, "role", None)):
        log_denial(caller, resource, action, request=request)
        raise PermissionDenied()


def require_staff(caller, resource, action, *, request=None) -> StaffCaller:
    """Staff-only operations refuse business callers before the matrix is consulted."""
    if isinstance(caller, BusinessCaller):
        log_denial(caller, resource, action, request=request, reason="staff_only")
        raise PermissionDenied("Only staff can perform this action.")
    require_permission(caller, resource, action, request=request)
    return caller


class ResourcePermission(BasePermission):
    """Gate a view on the permission matrix using its `permission_resource`.

    `permission_action_map` maps view actions to matrix actions; anything not listed
    falls back to the HTTP method.
    """

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        resource = getattr(view, "permission_resource", None)
        if resource is None:
            return False

        view_action = getattr(view, "action", None)
        action = getattr(view, "permission_action_map", {}).get(view_action) or METHOD_ACTIONS.get(request.method)
        if action is None:
            return False

        caller = caller_from_user(request.user)
        request.caller = caller
        allowed = is_allowed(resource, action, caller.role)
        if not allowed:
            log_denial(caller, resource, action, request=request, view=view)
        return allowed
