import uuid

from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q


class Product(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    image_url = models.URLField(max_length=500, blank=True)
    public_price = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(0)])
    business_price = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(0)])
    stock = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(condition=Q(stock__gte=0), name="product_stock_non_negative"),
            models.CheckConstraint(
                condition=Q(public_price__gte=0) & Q(business_price__gte=0),
                name="product_prices_non_negative",
            ),
        ]
        indexes = [
            models.Index(fields=["is_active", "name"], name="product_active_name_idx"),
        ]

    def __str__(self):
        return self.name
