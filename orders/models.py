import uuid

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone

from core.models import Business
from inventory.models import Product


class Invoice(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    total = models.DecimalField(max_digits=12, decimal_places=2, editable=False)
    paid = models.BooleanField(default=False)
    paid_at = models.DateTimeField(null=True, blank=True)
    issued_at = models.DateTimeField(default=timezone.now, editable=False)
    updated_at = models.DateTimeField(auto_now=True)


class Order(models.Model):
    class Status(models.TextChoices):
        PLACED = "placed", "Placed"
        ACCEPTED = "accepted", "Accepted"
        PROCESSING = "processing", "Processing"
        OUT_FOR_DELIVERY = "out_for_delivery", "Out for delivery"
        READY_FOR_PICKUP = "ready_for_pickup", "Ready for pickup"
        FULFILLED = "fulfilled", "Fulfilled"
        CANCELLED = "cancelled", "Cancelled"

    class Delivery(models.TextChoices):
        PICKUP = "pickup", "Pickup"
        DELIVERY = "delivery", "Delivery"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    business = models.ForeignKey(Business, on_delete=models.PROTECT, related_name="orders")
    placed_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="orders_placed")
    status = models.CharField(max_length=32, choices=Status, default=Status.PLACED)
    delivery = models.CharField(max_length=16, choices=Delivery)
    pickup_code = models.CharField(max_length=6, null=True, blank=True)
    total = models.DecimalField(max_digits=12, decimal_places=2, editable=False)
    invoice = models.OneToOneField(Invoice, on_delete=models.PROTECT, related_name="order")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(delivery="pickup", pickup_code__isnull=False)
                    | Q(delivery="delivery", pickup_code__isnull=True)
                ),
                name="order_pickup_code_iff_pickup",
            ),
            models.UniqueConstraint(
                fields=["pickup_code"],
                condition=Q(pickup_code__isnull=False) & ~Q(status__in=["fulfilled", "cancelled"]),
                name="order_active_pickup_code_unique",
            ),
        ]
        indexes = [
            models.Index(fields=["business", "created_at"], name="order_business_created_idx"),
            models.Index(fields=["status", "created_at"], name="order_status_created_idx"),
        ]

    def __str__(self):
        return f"Order {self.id} ({self.status})"


class OrderItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    position = models.PositiveIntegerField()
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="order_items")
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    line_total = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        ordering = ["position"]
        constraints = [
            models.UniqueConstraint(fields=["order", "position"], name="order_item_position_unique"),
            models.CheckConstraint(condition=Q(quantity__gte=1), name="order_item_quantity_positive"),
        ]


class Preorder(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        APPROVED = "approved", "Approved"
        DENIED = "denied", "Denied"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    business = models.ForeignKey(Business, on_delete=models.PROTECT, related_name="preorders")
    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="preorders_requested",
    )
    note = models.TextField(blank=True)
    status = models.CharField(max_length=16, choices=Status, default=Status.PENDING)
    order = models.OneToOneField(Order, on_delete=models.PROTECT, null=True, blank=True, related_name="preorder")
    decided_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="preorders_decided",
    )
    decided_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(status="approved", order__isnull=False) | (~Q(status="approved") & Q(order__isnull=True)),
                name="preorder_approved_iff_order",
            ),
        ]
        indexes = [
            models.Index(fields=["business", "created_at"], name="preorder_business_created_idx"),
            models.Index(fields=["status", "created_at"], name="preorder_status_created_idx"),
        ]


class PreorderItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    preorder = models.ForeignKey(Preorder, on_delete=models.CASCADE, related_name="items")
    position = models.PositiveIntegerField()
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="preorder_items")
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])

    class Meta:
        ordering = ["position"]
        constraints = [
            models.UniqueConstraint(fields=["preorder", "position"], name="preorder_item_position_unique"),
            models.CheckConstraint(condition=Q(quantity__gte=1), name="preorder_item_quantity_positive"),
        ]


TERMINAL_STATUSES = frozenset({Order.Status.FULFILLED, Order.Status.CANCELLED})
CANCELLABLE_STATUSES = frozenset({Order.Status.PLACED, Order.Status.ACCEPTED, Order.Status.PROCESSING})
