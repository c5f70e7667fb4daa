import logging
import secrets
import uuid

from django.conf import settings
from django.contrib.auth import get_user_model
from rest_framework.exceptions import NotFound, PermissionDenied, ValidationError

from common.context import BusinessCaller, StaffCaller
from common.exceptions import InsufficientStock, PickupCodeUnavailable
from common.permissions import Action, Resource, log_denial, require_permission
from common.transactions import run_atomic
from core.models import Business
from inventory.ledger import find_shortages, lock_products, take_stock
from inventory.pricing import line_total, order_total, resolve_unit_price
from orders.models import TERMINAL_STATUSES, Invoice, Order, OrderItem

User = get_user_model()
logger = logging.getLogger(__name__)

PICKUP_CODE_SPACE = 1000000


class PickupCodeGenerator:
    """Issues 6-digit pickup codes not held by any active order."""

    def __init__(self, rng=None, max_attempts=None):
        self.rng = rng or secrets.SystemRandom()
        self.max_attempts = max_attempts or settings.PICKUP_CODE_MAX_ATTEMPTS

    def draw(self):
        return f"{self.rng.randint(0, PICKUP_CODE_SPACE - 1):06d}"

    def issue(self):
        for _ in range(self.max_attempts):
            code = self.draw()
            if not Order.objects.filter(pickup_code=code).exclude(status__in=TERMINAL_STATUSES).exists():
                return code
        raise PickupCodeUnavailable()


def normalize_lines(items):
    """Merge repeated products (summing quantities, keeping first position)."""
    if not items:
        raise ValidationError({"items": "At least one item is required."})

    merged = {}
    for index, item in enumerate(items):
        quantity = item["quantity"]
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError({"items": {index: {"quantity": "Quantity must be a positive integer."}}})
        product_id = _as_uuid(item["product_id"], "items")
        merged[product_id] = merged.get(product_id, 0) + quantity
    return list(merged.items())


def _as_uuid(value, field):
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise ValidationError({field: "Must be a valid UUID."}) from exc


def resolve_tenant(caller, business_id, member_id, *, resource, member_field="placed_by", request=None):
    """Return (business, acting member) for a placement or preorder request.

    Business callers act for their own business only. Staff must name the
    business and may name a member of it; otherwise the staff user is recorded.
    """
    business_id = _as_uuid(business_id, "business_id")
    member_id = _as_uuid(member_id, member_field)
    if isinstance(caller, BusinessCaller):
        if business_id and business_id != caller.business_id:
            log_denial(caller, resource, Action.WRITE, request=request, reason="other_business")
            raise PermissionDenied("You can only act for your own business.")
        business = Business.objects.get(id=caller.business_id)
        member = User.objects.get(id=caller.user_id)
    elif isinstance(caller, StaffCaller):
        if not business_id:
            raise ValidationError({"business_id": "This field is required."})
        business = Business.objects.filter(id=business_id).first()
        if business is None:
            raise NotFound("Business not found.")
        if member_id:
            member = User.objects.filter(id=member_id, business=business).first()
            if member is None:
                raise ValidationError({member_field: "User is not a member of this business."})
        else:
            member = User.objects.get(id=caller.user_id)
    else:
        raise PermissionDenied()

    if not business.is_active:
        raise ValidationError({"business_id": "Business is inactive."})
    return business, member


def commit_order(business, placed_by, lines, delivery, pickup_codes=None):
    """Check stock, price, decrement and persist the order; caller owns the transaction."""
    products = lock_products(product_id for product_id, _ in lines)
    shortages = find_shortages(products, lines)
    if shortages:
        raise InsufficientStock(shortages)

    priced = [(products[product_id], quantity, resolve_unit_price(products[product_id], business)) for product_id, quantity in lines]
    total = order_total((unit_price, quantity) for _, quantity, unit_price in priced)

    for product, quantity, _ in priced:
        take_stock(product.id, quantity)

    pickup_code = None
    if delivery == Order.Delivery.PICKUP:
        pickup_code = (pickup_codes or PickupCodeGenerator()).issue()

    invoice = Invoice.objects.create(total=total)
    order = Order.objects.create(
        business=business,
        placed_by=placed_by,
        status=Order.Status.PLACED,
        delivery=delivery,
        pickup_code=pickup_code,
        total=total,
        invoice=invoice,
    )
    OrderItem.objects.bulk_create(
        [
            OrderItem(
                order=order,
                position=position,
                product=product,
                quantity=quantity,
                unit_price=unit_price,
                line_total=line_total(unit_price, quantity),
            )
            for position, (product, quantity, unit_price) in enumerate(priced)
        ]
    )
    return order


def place_order(caller, *, business_id=None, items, delivery, placed_by=None, pickup_codes=None, request=None):
    require_permission(caller, Resource.ORDERS, Action.WRITE, request=request)
    if delivery not in Order.Delivery.values:
        raise ValidationError({"delivery": f"Must be one of: {', '.join(Order.Delivery.values)}."})
    business, member = resolve_tenant(caller, business_id, placed_by, resource=Resource.ORDERS, request=request)
    lines = normalize_lines(items)

    order = run_atomic(lambda: commit_order(business, member, lines, delivery, pickup_codes))
    logger.info(
        "order_placed",
        extra={
            "order_id": str(order.id),
            "business_id": str(business.id),
            "total": str(order.total),
            "caller": caller.username,
        },
    )
    return order
