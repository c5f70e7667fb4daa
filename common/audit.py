import json

from django.core.serializers.json import DjangoJSONEncoder

from common.context import BusinessCaller
from core.models import AuditLog


def get_request_id(request):
    return getattr(request, "request_id", None) or request.headers.get("X-Request-ID")


def snapshot(value):
    """Make a payload storable in a JSONField (UUIDs, Decimals and datetimes become strings)."""
    if value is None:
        return None
    return json.loads(json.dumps(value, cls=DjangoJSONEncoder))


def create_audit_log(*, actor=None, business=None, action, entity, entity_id=None, before=None, after=None, request_id=None):
    business_field = "business_id" if business is None or not hasattr(business, "pk") else "business"
    return AuditLog.objects.create(
        actor=actor,
        action=action,
        entity=entity,
        entity_id=None if entity_id is None else str(entity_id),
        before_snapshot=snapshot(before),
        after_snapshot=snapshot(after),
        request_id=request_id,
        **{business_field: business},
    )


def create_audit_log_from_request(request, *, action, entity, entity_id=None, before_snapshot=None, after_snapshot=None, business=None):
    """Record a mutation made through the API.

    When no tenant is given, rows written by business callers are attributed to
    the caller's own business so tenant audit trails stay complete.
    """
    caller = getattr(request, "caller", None)
    if business is None and isinstance(caller, BusinessCaller):
        business = caller.business_id

    user = getattr(request, "user", None)
    return create_audit_log(
        actor=user if user is not None and user.is_authenticated else None,
        business=business,
        action=action,
        entity=entity,
        entity_id=entity_id,
        before=before_snapshot,
        after=after_snapshot,
        request_id=get_request_id(request),
    )
