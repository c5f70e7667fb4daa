import logging

from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone
from rest_framework.exceptions import NotFound

from common.exceptions import AlreadyDecided
from common.permissions import Action, Resource, require_permission, require_staff
from common.transactions import run_atomic
from inventory.models import Product
from orders.models import Order, Preorder, PreorderItem
from orders.services import commit_order, normalize_lines, resolve_tenant

User = get_user_model()
logger = logging.getLogger(__name__)


def create_preorder(caller, *, business_id=None, items, note="", requested_by=None, request=None):
    require_permission(caller, Resource.PREORDERS, Action.WRITE, request=request)
    business, member = resolve_tenant(
        caller,
        business_id,
        requested_by,
        resource=Resource.PREORDERS,
        member_field="requested_by",
        request=request,
    )
    lines = normalize_lines(items)

    known = set(Product.objects.filter(id__in=[product_id for product_id, _ in lines]).values_list("id", flat=True))
    unknown = [str(product_id) for product_id, _ in lines if product_id not in known]
    if unknown:
        raise NotFound(f"Unknown product(s): {', '.join(unknown)}.")

    with transaction.atomic():
        preorder = Preorder.objects.create(business=business, requested_by=member, note=note or "")
        PreorderItem.objects.bulk_create(
            [
                PreorderItem(preorder=preorder, position=position, product_id=product_id, quantity=quantity)
                for position, (product_id, quantity) in enumerate(lines)
            ]
        )

    logger.info(
        "preorder_created",
        extra={"preorder_id": str(preorder.id), "business_id": str(business.id), "caller": caller.username},
    )
    return preorder


def _lock_pending(preorder_id):
    preorder = Preorder.objects.select_for_update().filter(id=preorder_id).first()
    if preorder is None:
        raise NotFound("Preorder not found.")
    if preorder.status != Preorder.Status.PENDING:
        raise AlreadyDecided(f"Preorder is already {preorder.status}.")
    return preorder


def approve_preorder(caller, preorder_id, *, pickup_codes=None, request=None):
    """Convert a pending preorder into a pickup order in a single transaction.

    On insufficient stock nothing is written and the preorder stays pending.
    """
    require_staff(caller, Resource.PREORDERS, Action.WRITE, request=request)
    decider = User.objects.get(id=caller.user_id)

    def _approve():
        preorder = _lock_pending(preorder_id)
        lines = [(item.product_id, item.quantity) for item in preorder.items.all()]
        order = commit_order(preorder.business, preorder.requested_by, lines, Order.Delivery.PICKUP, pickup_codes)
        preorder.status = Preorder.Status.APPROVED
        preorder.order = order
        preorder.decided_by = decider
        preorder.decided_at = timezone.now()
        preorder.save(update_fields=["status", "order", "decided_by", "decided_at", "updated_at"])
        return preorder, order

    preorder, order = run_atomic(_approve)
    logger.info(
        "preorder_approved",
        extra={
            "preorder_id": str(preorder.id),
            "order_id": str(order.id),
            "business_id": str(preorder.business_id),
            "caller": caller.username,
        },
    )
    return preorder, order


def deny_preorder(caller, preorder_id, *, request=None):
    require_staff(caller, Resource.PREORDERS, Action.WRITE, request=request)
    decider = User.objects.get(id=caller.user_id)

    def _deny():
        preorder = _lock_pending(preorder_id)
        preorder.status = Preorder.Status.DENIED
        preorder.decided_by = decider
        preorder.decided_at = timezone.now()
        preorder.save(update_fields=["status", "decided_by", "decided_at", "updated_at"])
        return preorder

    preorder = run_atomic(_deny)
    logger.info(
        "preorder_denied",
        extra={"preorder_id": str(preorder.id), "business_id": str(preorder.business_id), "caller": caller.username},
    )
    return preorder
