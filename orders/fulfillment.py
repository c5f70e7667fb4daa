import logging

from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from common.exceptions import InvalidTransition
from common.permissions import Action, Resource, require_staff
from common.transactions import run_atomic
from inventory.ledger import return_stock
from orders.models import CANCELLABLE_STATUSES, TERMINAL_STATUSES, Order
from orders.services import PickupCodeGenerator

logger = logging.getLogger(__name__)


def check_transition(current, target):
    if target not in Order.Status.values:
        raise ValidationError({"status": f"Unknown status: {target}."})
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(f"Order is {current}; no further status changes are accepted.")
    if target == Order.Status.CANCELLED and current not in CANCELLABLE_STATUSES:
        raise InvalidTransition(f"An order cannot be cancelled once it is {current}.")


def _snapshot(order):
    return {
        "status": order.status,
        "delivery": order.delivery,
        "pickup_code": order.pickup_code,
        "invoice_paid": order.invoice.paid,
    }


def _restock(order):
    for item in sorted(order.items.all(), key=lambda item: item.product_id):
        return_stock(item.product_id, item.quantity)
    logger.info("order_restocked", extra={"order_id": str(order.id), "business_id": str(order.business_id)})


def update_order(caller, order_id, *, status=None, invoice_paid=None, delivery=None, pickup_codes=None, request=None):
    """Apply staff changes to an order in one transaction.

    Returns the updated order and a snapshot of the fields as they were before.
    """
    require_staff(caller, Resource.ORDERS, Action.WRITE, request=request)
    if status is None and invoice_paid is None and delivery is None:
        raise ValidationError({"non_field_errors": ["Provide status, invoice_paid or delivery."]})
    if delivery is not None and delivery not in Order.Delivery.values:
        raise ValidationError({"delivery": f"Must be one of: {', '.join(Order.Delivery.values)}."})

    def _apply():
        order = Order.objects.select_for_update().filter(id=order_id).first()
        if order is None:
            raise NotFound("Order not found.")
        previous = _snapshot(order)
        update_fields = []

        if status is not None:
            if status == order.status:
                if order.status in TERMINAL_STATUSES:
                    raise InvalidTransition(f"Order is {order.status}; no further status changes are accepted.")
            else:
                check_transition(order.status, status)
                if status == Order.Status.CANCELLED:
                    _restock(order)
                order.status = status
                update_fields.append("status")

        if delivery is not None and delivery != order.delivery:
            if order.status in TERMINAL_STATUSES:
                raise InvalidTransition(f"Delivery cannot change once the order is {order.status}.")
            order.delivery = delivery
            if delivery == Order.Delivery.PICKUP:
                order.pickup_code = (pickup_codes or PickupCodeGenerator()).issue()
            else:
                order.pickup_code = None
            update_fields += ["delivery", "pickup_code"]

        if update_fields:
            order.save(update_fields=update_fields + ["updated_at"])

        if invoice_paid is not None and invoice_paid != order.invoice.paid:
            invoice = order.invoice
            invoice.paid = invoice_paid
            invoice.paid_at = timezone.now() if invoice_paid else None
            invoice.save(update_fields=["paid", "paid_at", "updated_at"])

        return order, previous

    order, previous = run_atomic(_apply)

    if order.status != previous["status"]:
        logger.info(
            "order_status_changed",
            extra={
                "order_id": str(order.id),
                "status": order.status,
                "previous_status": previous["status"],
                "caller": caller.username,
            },
        )
    if order.invoice.paid != previous["invoice_paid"]:
        logger.info(
            "invoice_paid_changed",
            extra={"order_id": str(order.id), "paid": order.invoice.paid, "caller": caller.username},
        )
    return order, previous
