from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction

from core.models import Business, ShopSettings
from inventory.models import Product

DEMO_PRODUCTS = [
    ("Iron Ore Crate", Decimal("140.00"), Decimal("120.00"), 40),
    ("Oak Planks", Decimal("35.00"), Decimal("28.00"), 200),
    ("Lantern", Decimal("12.50"), Decimal("10.00"), 15),
    ("Rope Coil", Decimal("8.00"), Decimal("6.50"), 0),
]


class Command(BaseCommand):
    help = "Seed the default admin, shop settings and demo tenant data for local development."

    def add_arguments(self, parser):
        parser.add_argument(
            "--admin-only",
            action="store_true",
            help="Only ensure the admin account and the settings row exist.",
        )

    @transaction.atomic
    def handle(self, *args, **options):
        User = get_user_model()

        admin_user, admin_created = User.objects.get_or_create(
            username="admin",
            defaults={
                "kind": User.Kind.STAFF,
                "staff_role": User.StaffRole.OWNER,
                "is_staff": True,
                "is_superuser": True,
                "is_active": True,
            },
        )
        if admin_created:
            admin_user.set_password("1234")
            admin_user.save(update_fields=["password"])

        ShopSettings.load()

        if options["admin_only"]:
            self.stdout.write(self.style.SUCCESS("Admin account ready."))
            return

        business, _ = Business.objects.get_or_create(
            name="Demo Trading Co",
            defaults={"discount_pct": Decimal("10.00"), "is_active": True},
        )

        for username, role in [("demo-owner", User.BusinessRole.OWNER), ("demo-employee", User.BusinessRole.EMPLOYEE)]:
            member, created = User.objects.get_or_create(
                username=username,
                defaults={
                    "kind": User.Kind.BUSINESS,
                    "business": business,
                    "business_role": role,
                    "is_active": True,
                },
            )
            if created:
                member.set_password(f"{username}1234")
                member.save(update_fields=["password"])

        for staff_username, staff_role in [("orders-desk", User.StaffRole.ORDERS), ("stockroom", User.StaffRole.INVENTORY)]:
            staff_user, created = User.objects.get_or_create(
                username=staff_username,
                defaults={"kind": User.Kind.STAFF, "staff_role": staff_role, "is_active": True},
            )
            if created:
                staff_user.set_password(f"{staff_username}1234")
                staff_user.save(update_fields=["password"])

        for name, public, business_price, stock in DEMO_PRODUCTS:
            Product.objects.get_or_create(
                name=name,
                defaults={
                    "public_price": public,
                    "business_price": business_price,
                    "stock": stock,
                    "is_active": True,
                },
            )

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write(
            "Credentials: admin/1234, demo-owner/demo-owner1234, demo-employee/demo-employee1234, "
            "orders-desk/orders-desk1234, stockroom/stockroom1234"
        )
        self.stdout.write(f"Business: {business.name} ({business.id})")
