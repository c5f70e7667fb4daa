from decimal import Decimal
from types import SimpleNamespace
from unittest import mock

from django.contrib.auth import get_user_model
from django.db import transaction
from django.test import SimpleTestCase, TestCase, TransactionTestCase
from rest_framework.exceptions import ValidationError
from rest_framework.test import APIClient

from common.exceptions import InsufficientStock
from core.models import AuditLog, Business
from inventory.ledger import adjust_stock, find_shortages, lock_products, return_stock, take_stock
from inventory.models import Product
from inventory.pricing import line_total, order_total, public_price, resolve_unit_price
from inventory.serializers import ProductSerializer
from inventory.views import ProductViewSet


class PricingTests(SimpleTestCase):
    def test_discount_applies_to_business_price(self):
        product = SimpleNamespace(business_price=Decimal("100.00"), public_price=Decimal("140.00"))
        business = SimpleNamespace(discount_pct=Decimal("15"))

        self.assertEqual(resolve_unit_price(product, business), Decimal("85.00"))
        self.assertEqual(public_price(product), Decimal("140.00"))

    def test_unit_price_rounds_half_up_per_unit(self):
        product = SimpleNamespace(business_price=Decimal("0.99"))
        business = SimpleNamespace(discount_pct=Decimal("50"))

        self.assertEqual(resolve_unit_price(product, business), Decimal("0.50"))

    def test_total_sums_rounded_lines(self):
        product = SimpleNamespace(business_price=Decimal("0.05"))
        business = SimpleNamespace(discount_pct=Decimal("10"))
        unit = resolve_unit_price(product, business)

        self.assertEqual(unit, Decimal("0.05"))
        self.assertEqual(order_total([(unit, 3), (Decimal("1.10"), 2)]), Decimal("2.35"))
        self.assertEqual(line_total(Decimal("100.00"), 2), Decimal("200.00"))


class LedgerTests(TestCase):
    def setUp(self):
        self.product = Product.objects.create(
            name="Widget",
            public_price=Decimal("12.00"),
            business_price=Decimal("10.00"),
            stock=5,
        )

    def test_take_stock_refuses_to_go_negative(self):
        with transaction.atomic():
            with self.assertRaises(InsufficientStock) as ctx:
                take_stock(self.product.id, 6)

        self.assertEqual(ctx.exception.shortages[0]["available"], 5)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 5)

    def test_take_and_return_stock(self):
        with transaction.atomic():
            take_stock(self.product.id, 5)
            return_stock(self.product.id, 2)

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 2)

    def test_find_shortages_reports_missing_and_short_lines(self):
        other = Product.objects.create(name="Gadget", public_price=1, business_price=1, stock=0)
        missing_id = other.id
        other.delete()

        with transaction.atomic():
            products = lock_products([self.product.id, missing_id])
            shortages = find_shortages(products, [(self.product.id, 7), (missing_id, 1)])

        self.assertEqual(
            shortages,
            [
                {"product_id": str(self.product.id), "requested": 7, "available": 5},
                {"product_id": str(missing_id), "requested": 1, "available": None},
            ],
        )

    def test_adjust_stock_rejects_negative_result(self):
        with transaction.atomic():
            with self.assertRaises(ValidationError):
                adjust_stock(self.product.id, -6)
            product = adjust_stock(self.product.id, 3)

        self.assertEqual(product.stock, 8)


class LedgerOutsideTransactionTests(TransactionTestCase):
    def test_mutators_require_open_transaction(self):
        product = Product.objects.create(name="Loose", public_price=1, business_price=1, stock=3)

        with self.assertRaises(RuntimeError):
            take_stock(product.id, 1)

        product.refresh_from_db()
        self.assertEqual(product.stock, 3)


class ProductApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.inventory_staff = self.user_model.objects.create_user(username="inv", password="pass1234", staff_role="inventory")
        self.viewer = self.user_model.objects.create_user(username="inv-viewer", password="pass1234", staff_role="viewer")
        self.business = Business.objects.create(name="Shop", discount_pct=Decimal("20"))
        self.business_user = self.user_model.objects.create_user(
            username="shop-emp",
            password="pass1234",
            kind="business",
            business=self.business,
            business_role="employee",
        )
        self.product = Product.objects.create(
            name="Lamp",
            public_price=Decimal("30.00"),
            business_price=Decimal("25.00"),
            stock=4,
        )
        self.hidden = Product.objects.create(
            name="Retired",
            public_price=Decimal("5.00"),
            business_price=Decimal("4.00"),
            stock=1,
            is_active=False,
        )

    def test_inventory_staff_creates_product(self):
        self.client.force_authenticate(user=self.inventory_staff)

        response = self.client.post(
            "/api/v1/products/",
            {"name": "Desk", "public_price": "120.00", "business_price": "100.00", "stock": 3},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(Product.objects.get(name="Desk").stock, 3)
        self.assertTrue(AuditLog.objects.filter(action="product.create").exists())

    def test_viewer_cannot_edit_product(self):
        self.client.force_authenticate(user=self.viewer)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.patch(f"/api/v1/products/{self.product.id}/", {"name": "X"}, format="json")

        self.assertEqual(response.status_code, 403)

    def test_stock_is_not_editable_through_crud(self):
        self.client.force_authenticate(user=self.inventory_staff)

        response = self.client.patch(f"/api/v1/products/{self.product.id}/", {"stock": 99}, format="json")

        self.assertEqual(response.status_code, 400)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 4)

    def test_edit_of_stale_product_keeps_committed_stock(self):
        stale = Product.objects.get(id=self.product.id)
        with transaction.atomic():
            take_stock(self.product.id, 3)

        serializer = ProductSerializer(stale, data={"name": "Desk Lamp"}, partial=True)
        serializer.is_valid(raise_exception=True)
        saved = serializer.save()

        self.product.refresh_from_db()
        self.assertEqual(self.product.name, "Desk Lamp")
        self.assertEqual(self.product.stock, 1)
        self.assertEqual(saved.stock, 1)

    def test_full_update_with_stale_stock_keeps_committed_stock(self):
        stale = Product.objects.get(id=self.product.id)
        with transaction.atomic():
            take_stock(self.product.id, 2)
        self.client.force_authenticate(user=self.inventory_staff)
        body = {
            "name": "Lamp",
            "public_price": "31.00",
            "business_price": "25.00",
            "stock": stale.stock,
            "is_active": True,
        }

        with mock.patch.object(ProductViewSet, "get_object", return_value=stale):
            response = self.client.put(f"/api/v1/products/{self.product.id}/", body, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["stock"], 2)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 2)
        self.assertEqual(self.product.public_price, Decimal("31.00"))

    def test_adjust_stock_endpoint(self):
        self.client.force_authenticate(user=self.inventory_staff)

        response = self.client.post(
            f"/api/v1/products/{self.product.id}/adjust-stock/",
            {"delta": -3, "reason": "damaged"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["stock"], 1)
        log = AuditLog.objects.get(action="product.adjust_stock")
        self.assertEqual(log.after_snapshot["reason"], "damaged")

        too_much = self.client.post(
            f"/api/v1/products/{self.product.id}/adjust-stock/",
            {"delta": -2},
            format="json",
        )
        self.assertEqual(too_much.status_code, 400)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 1)

    def test_business_user_reads_only_active_products(self):
        self.client.force_authenticate(user=self.business_user)

        response = self.client.get("/api/v1/products/")

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["results"]}
        self.assertIn(str(self.product.id), ids)
        self.assertNotIn(str(self.hidden.id), ids)

    def test_referenced_product_cannot_be_deleted(self):
        from orders.models import Preorder, PreorderItem

        preorder = Preorder.objects.create(business=self.business, requested_by=self.business_user)
        PreorderItem.objects.create(preorder=preorder, position=0, product=self.product, quantity=1)
        self.client.force_authenticate(user=self.inventory_staff)

        response = self.client.delete(f"/api/v1/products/{self.product.id}/")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "product_in_use")
        self.assertTrue(Product.objects.filter(id=self.product.id).exists())

    def test_unreferenced_product_can_be_deleted(self):
        self.client.force_authenticate(user=self.inventory_staff)

        response = self.client.delete(f"/api/v1/products/{self.hidden.id}/")

        self.assertEqual(response.status_code, 204)
        self.assertFalse(Product.objects.filter(id=self.hidden.id).exists())


class CatalogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.business = Business.objects.create(name="Catalog Co", discount_pct=Decimal("10"))
        self.business_user = get_user_model().objects.create_user(
            username="catalog-emp",
            password="pass1234",
            kind="business",
            business=self.business,
            business_role="manager",
        )
        self.product = Product.objects.create(
            name="Chair",
            public_price=Decimal("60.00"),
            business_price=Decimal("50.00"),
            stock=2,
        )
        Product.objects.create(name="Ghost", public_price=1, business_price=1, is_active=False)

    def test_anonymous_sees_public_price_only(self):
        response = self.client.get("/api/v1/catalog/")

        self.assertEqual(response.status_code, 200)
        results = response.json()["results"]
        self.assertEqual([item["name"] for item in results], ["Chair"])
        self.assertEqual(results[0]["public_price"], "60.00")
        self.assertIsNone(results[0]["unit_price"])

    def test_business_user_sees_discounted_unit_price(self):
        self.client.force_authenticate(user=self.business_user)

        response = self.client.get("/api/v1/catalog/")

        item = response.json()["results"][0]
        self.assertEqual(item["public_price"], "60.00")
        self.assertEqual(item["unit_price"], "45.00")
