"""
Stock ledger for products.

Every function here mutates or locks `Product.stock` and must run inside an
open `transaction.atomic()` block. Decrements are conditional updates, so
stock can never be written below zero even if a caller skipped the lock.
"""

import logging

from django.db import transaction
from django.db.models import F
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from common.exceptions import InsufficientStock
from inventory.models import Product

logger = logging.getLogger(__name__)


def _require_atomic():
    if not transaction.get_connection().in_atomic_block:
        raise RuntimeError("Stock changes must run inside transaction.atomic().")


def lock_products(product_ids):
    """Lock the given product rows in primary-key order and return them by id."""
    _require_atomic()
    queryset = Product.objects.select_for_update().filter(id__in=set(product_ids)).order_by("id")
    return {product.id: product for product in queryset}


def find_shortages(products, lines):
    shortages = []
    for product_id, quantity in lines:
        product = products.get(product_id)
        if product is None:
            shortages.append({"product_id": str(product_id), "requested": quantity, "available": None})
        elif quantity <= 0 or quantity > product.stock:
            shortages.append({"product_id": str(product_id), "requested": quantity, "available": product.stock})
    return shortages


def take_stock(product_id, quantity):
    _require_atomic()
    updated = Product.objects.filter(id=product_id, stock__gte=quantity).update(
        stock=F("stock") - quantity,
        updated_at=timezone.now(),
    )
    if updated != 1:
        available = Product.objects.filter(id=product_id).values_list("stock", flat=True).first()
        raise InsufficientStock([{"product_id": str(product_id), "requested": quantity, "available": available}])


def return_stock(product_id, quantity):
    _require_atomic()
    updated = Product.objects.filter(id=product_id).update(
        stock=F("stock") + quantity,
        updated_at=timezone.now(),
    )
    if updated != 1:
        raise NotFound(f"Product {product_id} not found.")


def adjust_stock(product_id, delta):
    """Apply a staff receiving (positive) or write-off (negative) delta."""
    products = lock_products([product_id])
    product = products.get(product_id)
    if product is None:
        raise NotFound("Product not found.")
    if delta == 0:
        raise ValidationError({"delta": "Adjustment must be non-zero."})
    if product.stock + delta < 0:
        raise ValidationError({"delta": f"Adjustment would leave stock below zero (current stock {product.stock})."})

    if delta > 0:
        return_stock(product_id, delta)
    else:
        take_stock(product_id, -delta)
    product.refresh_from_db(fields=["stock", "updated_at"])
    logger.info(
        "stock_adjusted",
        extra={"product_id": str(product_id), "delta": delta},
    )
    return product
