import uuid

from django.contrib.auth.models import AbstractUser
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q

PERCENT_VALIDATORS = [MinValueValidator(0), MaxValueValidator(100)]


class Business(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255, unique=True)
    discount_pct = models.DecimalField(max_digits=5, decimal_places=2, default=0, validators=PERCENT_VALIDATORS)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(discount_pct__gte=0) & Q(discount_pct__lte=100),
                name="business_discount_pct_range",
            ),
        ]

    def __str__(self):
        return self.name


class User(AbstractUser):
    class Kind(models.TextChoices):
        STAFF = "staff", "Staff"
        BUSINESS = "business", "Business"

    class StaffRole(models.TextChoices):
        OWNER = "owner", "Owner"
        MANAGER = "manager", "Manager"
        INVENTORY = "inventory", "Inventory"
        ORDERS = "orders", "Orders"
        HR = "hr", "HR"
        VIEWER = "viewer", "Viewer"

    class BusinessRole(models.TextChoices):
        OWNER = "owner", "Owner"
        MANAGER = "manager", "Manager"
        EMPLOYEE = "employee", "Employee"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    display_name = models.CharField(max_length=255, blank=True)
    kind = models.CharField(max_length=16, choices=Kind, default=Kind.STAFF)
    staff_role = models.CharField(max_length=32, choices=StaffRole, null=True, blank=True)
    business_role = models.CharField(max_length=32, choices=BusinessRole, null=True, blank=True)
    business = models.ForeignKey(Business, on_delete=models.PROTECT, null=True, blank=True, related_name="members")

    class Meta(AbstractUser.Meta):
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(kind="staff", business__isnull=True, business_role__isnull=True)
                    | Q(kind="business", business__isnull=False, staff_role__isnull=True)
                ),
                name="core_user_kind_scope",
            ),
        ]


class ShopSettings(models.Model):
    """Singleton row (id=1) with the purchase-calculator policy."""

    SINGLETON_ID = 1

    id = models.PositiveSmallIntegerField(primary_key=True, default=SINGLETON_ID, editable=False)
    payout_pct = models.DecimalField(max_digits=5, decimal_places=2, default=60, validators=PERCENT_VALIDATORS)
    fee_pct = models.DecimalField(max_digits=5, decimal_places=2, default=0, validators=PERCENT_VALIDATORS)
    fee_flat = models.DecimalField(max_digits=12, decimal_places=2, default=0, validators=[MinValueValidator(0)])
    do_not_buy = models.JSONField(default=list, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    @classmethod
    def load(cls):
        settings_row, _ = cls.objects.get_or_create(id=cls.SINGLETON_ID)
        return settings_row


class Application(models.Model):
    class Region(models.TextChoices):
        AU = "AU", "Australia"
        EU = "EU", "Europe"
        NA = "NA", "North America"
        OTHER = "Other", "Other"

    class Status(models.TextChoices):
        NEW = "new", "New"
        REVIEWED = "reviewed", "Reviewed"
        ACCEPTED = "accepted", "Accepted"
        REJECTED = "rejected", "Rejected"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    full_name = models.CharField(max_length=255)
    city = models.CharField(max_length=255, blank=True)
    contact = models.CharField(max_length=255)
    ingame_name = models.CharField(max_length=255, blank=True)
    phone = models.CharField(max_length=64, blank=True)
    state_id = models.CharField(max_length=64, blank=True)
    region = models.CharField(max_length=8, choices=Region, default=Region.OTHER)
    about = models.TextField(blank=True)
    status = models.CharField(max_length=16, choices=Status, default=Status.NEW)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status", "created_at"], name="application_status_idx"),
        ]


class AuditLog(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    actor = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    business = models.ForeignKey(Business, on_delete=models.SET_NULL, null=True, blank=True)
    action = models.CharField(max_length=64)
    entity = models.CharField(max_length=64)
    entity_id = models.CharField(max_length=64, null=True, blank=True)
    before_snapshot = models.JSONField(null=True, blank=True)
    after_snapshot = models.JSONField(null=True, blank=True)
    request_id = models.CharField(max_length=255, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["created_at"], name="auditlog_created_idx"),
            models.Index(fields=["action", "created_at"], name="auditlog_action_idx"),
            models.Index(fields=["entity", "created_at"], name="auditlog_entity_idx"),
            models.Index(fields=["actor", "created_at"], name="auditlog_actor_idx"),
        ]
