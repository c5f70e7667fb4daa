import threading
import unittest
from unittest import mock
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.db import connection, connections
from django.test import TestCase, TransactionTestCase
from rest_framework.test import APIClient

from common.context import caller_from_user
from common.exceptions import InsufficientStock, PickupCodeUnavailable
from core.models import AuditLog, Business
from inventory.models import Product
from orders.models import Invoice, Order, Preorder
from orders.services import PickupCodeGenerator, place_order


class ScriptedRandom:
    def __init__(self, values):
        self.values = list(values)

    def randint(self, low, high):
        return self.values.pop(0)


class OrderFixtureMixin:
    def create_fixtures(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.owner = self.user_model.objects.create_user(username="owner", password="pass1234", staff_role="owner")
        self.orders_staff = self.user_model.objects.create_user(username="orders", password="pass1234", staff_role="orders")
        self.inventory_staff = self.user_model.objects.create_user(username="stock", password="pass1234", staff_role="inventory")
        self.viewer = self.user_model.objects.create_user(username="viewer", password="pass1234", staff_role="viewer")

        self.business = Business.objects.create(name="Northwind")
        self.other_business = Business.objects.create(name="Contoso", discount_pct=Decimal("10"))
        self.business_user = self.user_model.objects.create_user(
            username="northwind-emp",
            password="pass1234",
            kind="business",
            business=self.business,
            business_role="employee",
        )
        self.other_business_user = self.user_model.objects.create_user(
            username="contoso-owner",
            password="pass1234",
            kind="business",
            business=self.other_business,
            business_role="owner",
        )

        self.product_a = Product.objects.create(
            name="Product A",
            public_price=Decimal("120.00"),
            business_price=Decimal("100.00"),
            stock=10,
        )
        self.product_b = Product.objects.create(
            name="Product B",
            public_price=Decimal("60.00"),
            business_price=Decimal("50.00"),
            stock=10,
        )

    def place(self, user, items, delivery="delivery", **extra):
        self.client.force_authenticate(user=user)
        return self.client.post(
            "/api/v1/orders/",
            {"delivery": delivery, "items": items, **extra},
            format="json",
        )

    def lines(self, *pairs):
        return [{"product_id": str(product.id), "quantity": quantity} for product, quantity in pairs]


class OrderPlacementTests(OrderFixtureMixin, TestCase):
    def setUp(self):
        self.create_fixtures()

    def test_order_total_and_invoice_mirror_line_prices(self):
        response = self.place(self.business_user, self.lines((self.product_a, 2), (self.product_b, 1)))

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["total"], "250.00")
        self.assertEqual(payload["invoice"]["total"], "250.00")
        self.assertFalse(payload["invoice"]["paid"])
        self.assertEqual(payload["status"], "placed")
        self.assertIsNone(payload["pickup_code"])
        self.assertEqual([item["unit_price"] for item in payload["items"]], ["100.00", "50.00"])
        self.assertEqual(payload["placed_by"], "northwind-emp")

        self.product_a.refresh_from_db()
        self.product_b.refresh_from_db()
        self.assertEqual(self.product_a.stock, 8)
        self.assertEqual(self.product_b.stock, 9)
        self.assertTrue(AuditLog.objects.filter(action="order.create", entity_id=payload["id"]).exists())

    def test_toggling_invoice_paid_keeps_total(self):
        order_id = self.place(self.business_user, self.lines((self.product_a, 2), (self.product_b, 1))).json()["id"]
        self.client.force_authenticate(user=self.orders_staff)

        response = self.client.patch(f"/api/v1/orders/{order_id}/", {"invoice_paid": True}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["invoice"]["paid"])
        self.assertEqual(response.json()["total"], "250.00")
        invoice = Invoice.objects.get(order__id=order_id)
        self.assertEqual(invoice.total, Decimal("250.00"))
        self.assertIsNotNone(invoice.paid_at)

    def test_discount_is_applied_per_unit(self):
        response = self.place(self.other_business_user, self.lines((self.product_a, 3)))

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["items"][0]["unit_price"], "90.00")
        self.assertEqual(response.json()["total"], "270.00")

    def test_pickup_order_gets_six_digit_code(self):
        response = self.place(self.business_user, self.lines((self.product_a, 1)), delivery="pickup")

        self.assertEqual(response.status_code, 201)
        code = response.json()["pickup_code"]
        self.assertEqual(len(code), 6)
        self.assertTrue(code.isdigit())

    def test_insufficient_stock_aborts_whole_order(self):
        response = self.place(self.business_user, self.lines((self.product_a, 1), (self.product_b, 11)))

        self.assertEqual(response.status_code, 409)
        payload = response.json()
        self.assertEqual(payload["code"], "insufficient_stock")
        self.assertEqual(
            payload["errors"]["shortages"],
            [{"product_id": str(self.product_b.id), "requested": 11, "available": 10}],
        )
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 10)
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(Invoice.objects.count(), 0)

    def test_unknown_product_is_reported_as_shortage(self):
        ghost = Product.objects.create(name="Ghost", public_price=1, business_price=1, stock=1)
        ghost_id = str(ghost.id)
        ghost.delete()

        response = self.place(self.business_user, [{"product_id": ghost_id, "quantity": 1}])

        self.assertEqual(response.status_code, 409)
        self.assertIsNone(response.json()["errors"]["shortages"][0]["available"])

    def test_malformed_requests_are_validation_errors(self):
        bad_bodies = [
            {"delivery": "delivery", "items": []},
            {"delivery": "delivery", "items": self.lines((self.product_a, 0))},
            {"delivery": "drone", "items": self.lines((self.product_a, 1))},
            {"items": self.lines((self.product_a, 1))},
        ]
        self.client.force_authenticate(user=self.business_user)

        for body in bad_bodies:
            response = self.client.post("/api/v1/orders/", body, format="json")
            self.assertEqual(response.status_code, 400, body)
            self.assertEqual(response.json()["code"], "validation_error")

        self.assertEqual(Order.objects.count(), 0)
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 10)

    def test_duplicate_lines_are_merged(self):
        response = self.place(self.business_user, self.lines((self.product_a, 1), (self.product_b, 1), (self.product_a, 2)))

        self.assertEqual(response.status_code, 201)
        items = response.json()["items"]
        self.assertEqual([(item["product_name"], item["quantity"]) for item in items], [("Product A", 3), ("Product B", 1)])
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 7)

    def test_business_user_cannot_order_for_another_business(self):
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.place(
                self.business_user,
                self.lines((self.product_a, 1)),
                business_id=str(self.other_business.id),
            )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(Order.objects.count(), 0)

    def test_staff_must_name_business(self):
        response = self.place(self.orders_staff, self.lines((self.product_a, 1)))

        self.assertEqual(response.status_code, 400)
        self.assertIn("business_id", response.json()["errors"])

    def test_staff_places_order_for_business_member(self):
        response = self.place(
            self.orders_staff,
            self.lines((self.product_a, 1)),
            business_id=str(self.business.id),
            placed_by=str(self.business_user.id),
        )

        self.assertEqual(response.status_code, 201)
        order = Order.objects.get(id=response.json()["id"])
        self.assertEqual(order.business, self.business)
        self.assertEqual(order.placed_by, self.business_user)

    def test_staff_cannot_attribute_order_to_non_member(self):
        response = self.place(
            self.orders_staff,
            self.lines((self.product_a, 1)),
            business_id=str(self.business.id),
            placed_by=str(self.other_business_user.id),
        )

        self.assertEqual(response.status_code, 400)

    def test_viewer_cannot_place_orders(self):
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.place(self.viewer, self.lines((self.product_a, 1)), business_id=str(self.business.id))

        self.assertEqual(response.status_code, 403)

    def test_unauthenticated_order_is_refused(self):
        self.client.force_authenticate(user=None)

        response = self.client.post("/api/v1/orders/", {"delivery": "pickup", "items": []}, format="json")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "not_authenticated")

    def test_price_edit_does_not_change_committed_totals(self):
        order_id = self.place(self.business_user, self.lines((self.product_a, 2))).json()["id"]
        self.product_a.business_price = Decimal("999.00")
        self.product_a.save()

        self.client.force_authenticate(user=self.orders_staff)
        payload = self.client.get(f"/api/v1/orders/{order_id}/").json()

        self.assertEqual(payload["total"], "200.00")
        self.assertEqual(payload["items"][0]["unit_price"], "100.00")
        self.assertEqual(payload["invoice"]["total"], "200.00")

    def test_business_users_only_list_their_orders(self):
        mine = self.place(self.business_user, self.lines((self.product_a, 1))).json()["id"]
        theirs = self.place(self.other_business_user, self.lines((self.product_b, 1))).json()["id"]

        self.client.force_authenticate(user=self.business_user)
        listed = self.client.get("/api/v1/orders/").json()
        ids = {item["id"] for item in listed["results"]}

        self.assertEqual(ids, {mine})
        self.assertEqual(self.client.get(f"/api/v1/orders/{theirs}/").status_code, 404)

        self.client.force_authenticate(user=self.viewer)
        self.assertEqual(self.client.get("/api/v1/orders/").json()["count"], 2)


class PickupCodeTests(OrderFixtureMixin, TestCase):
    def setUp(self):
        self.create_fixtures()

    def _order_with_code(self, code, status=Order.Status.PLACED):
        invoice = Invoice.objects.create(total=Decimal("1.00"))
        return Order.objects.create(
            business=self.business,
            placed_by=self.business_user,
            status=status,
            delivery=Order.Delivery.PICKUP,
            pickup_code=code,
            total=Decimal("1.00"),
            invoice=invoice,
        )

    def test_active_code_is_never_reissued(self):
        self._order_with_code("123456")
        generator = PickupCodeGenerator(rng=ScriptedRandom([123456, 123456, 654321]))

        order = place_order(
            caller_from_user(self.business_user),
            items=[{"product_id": self.product_a.id, "quantity": 1}],
            delivery="pickup",
            pickup_codes=generator,
        )

        self.assertEqual(order.pickup_code, "654321")

    def test_code_of_finished_order_can_be_reused(self):
        self._order_with_code("222222", status=Order.Status.FULFILLED)
        generator = PickupCodeGenerator(rng=ScriptedRandom([222222]))

        self.assertEqual(generator.issue(), "222222")

    def test_small_draws_keep_leading_zeros(self):
        generator = PickupCodeGenerator(rng=ScriptedRandom([42, 0]))

        self.assertEqual(generator.issue(), "000042")
        self.assertEqual(generator.draw(), "000000")

    def test_exhausted_draws_raise_and_leave_stock(self):
        self._order_with_code("333333")
        generator = PickupCodeGenerator(rng=ScriptedRandom([333333, 333333]), max_attempts=2)

        with self.assertRaises(PickupCodeUnavailable):
            place_order(
                caller_from_user(self.business_user),
                items=[{"product_id": self.product_a.id, "quantity": 1}],
                delivery="pickup",
                pickup_codes=generator,
            )

        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 10)


class FulfillmentTests(OrderFixtureMixin, TestCase):
    def setUp(self):
        self.create_fixtures()
        self.order_id = self.place(self.business_user, self.lines((self.product_a, 3), (self.product_b, 2))).json()["id"]
        self.client.force_authenticate(user=self.orders_staff)

    def set_status(self, status):
        return self.client.patch(f"/api/v1/orders/{self.order_id}/", {"status": status}, format="json")

    def stock(self):
        self.product_a.refresh_from_db()
        self.product_b.refresh_from_db()
        return self.product_a.stock, self.product_b.stock

    def test_viewer_cannot_change_status(self):
        self.client.force_authenticate(user=self.viewer)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.set_status("accepted")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))
        self.assertEqual(Order.objects.get(id=self.order_id).status, "placed")

    def test_business_user_cannot_change_status(self):
        self.client.force_authenticate(user=self.business_user)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.set_status("cancelled")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.stock(), (7, 8))

    def test_cancel_from_processing_restocks(self):
        self.assertEqual(self.set_status("accepted").status_code, 200)
        self.assertEqual(self.set_status("processing").status_code, 200)

        response = self.set_status("cancelled")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "cancelled")
        self.assertEqual(self.stock(), (10, 10))
        log = AuditLog.objects.get(action="order.update", after_snapshot__status="cancelled")
        self.assertEqual(log.before_snapshot["status"], "processing")
        self.assertEqual(log.after_snapshot["status"], "cancelled")

    def test_cancel_after_dispatch_is_rejected(self):
        self.set_status("out_for_delivery")

        response = self.set_status("cancelled")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "invalid_transition")
        self.assertEqual(self.stock(), (7, 8))
        self.assertEqual(Order.objects.get(id=self.order_id).status, "out_for_delivery")

    def test_terminal_orders_accept_no_status_change(self):
        self.assertEqual(self.set_status("fulfilled").status_code, 200)

        for status in ("placed", "cancelled", "fulfilled"):
            response = self.set_status(status)
            self.assertEqual(response.status_code, 409, status)
            self.assertEqual(response.json()["code"], "invalid_transition")

        self.assertEqual(self.stock(), (7, 8))

    def test_cancelled_order_cannot_be_cancelled_again(self):
        self.set_status("cancelled")

        response = self.set_status("cancelled")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(self.stock(), (10, 10))

    def test_same_status_on_open_order_is_noop(self):
        response = self.set_status("placed")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "placed")

    def test_invoice_paid_toggles_on_terminal_order(self):
        self.set_status("fulfilled")

        response = self.client.patch(f"/api/v1/orders/{self.order_id}/", {"invoice_paid": True}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["invoice"]["paid"])

    def test_delivery_change_issues_and_clears_pickup_code(self):
        to_pickup = self.client.patch(f"/api/v1/orders/{self.order_id}/", {"delivery": "pickup"}, format="json")

        self.assertEqual(to_pickup.status_code, 200)
        self.assertEqual(len(to_pickup.json()["pickup_code"]), 6)

        to_delivery = self.client.patch(f"/api/v1/orders/{self.order_id}/", {"delivery": "delivery"}, format="json")

        self.assertEqual(to_delivery.status_code, 200)
        self.assertIsNone(to_delivery.json()["pickup_code"])

    def test_empty_patch_is_validation_error(self):
        response = self.client.patch(f"/api/v1/orders/{self.order_id}/", {}, format="json")

        self.assertEqual(response.status_code, 400)

    def test_unknown_order_is_not_found(self):
        response = self.client.patch(
            "/api/v1/orders/00000000-0000-0000-0000-000000000000/",
            {"status": "accepted"},
            format="json",
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")


class PreorderFlowTests(OrderFixtureMixin, TestCase):
    def setUp(self):
        self.create_fixtures()

    def request_preorder(self, items, user=None, **extra):
        self.client.force_authenticate(user=user or self.business_user)
        return self.client.post("/api/v1/preorders/", {"items": items, **extra}, format="json")

    def test_business_user_requests_preorder(self):
        response = self.request_preorder(self.lines((self.product_a, 2)), note="for Friday")

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["status"], "pending")
        self.assertEqual(payload["note"], "for Friday")
        self.assertEqual(payload["requested_by"], "northwind-emp")
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 10)

    def test_preorder_for_unknown_product_is_not_found(self):
        response = self.request_preorder([{"product_id": "00000000-0000-0000-0000-000000000000", "quantity": 1}])

        self.assertEqual(response.status_code, 404)
        self.assertEqual(Preorder.objects.count(), 0)

    def test_approval_creates_pickup_order_once(self):
        preorder_id = self.request_preorder(self.lines((self.product_a, 2), (self.product_b, 1))).json()["id"]
        self.client.force_authenticate(user=self.inventory_staff)

        response = self.client.post(f"/api/v1/preorders/{preorder_id}/approve/")

        self.assertEqual(response.status_code, 201)
        order = response.json()
        self.assertEqual(order["delivery"], "pickup")
        self.assertEqual(len(order["pickup_code"]), 6)
        self.assertEqual(order["total"], "250.00")
        self.assertEqual(order["placed_by"], "northwind-emp")

        preorder = Preorder.objects.get(id=preorder_id)
        self.assertEqual(preorder.status, Preorder.Status.APPROVED)
        self.assertEqual(str(preorder.order_id), order["id"])
        self.assertEqual(preorder.decided_by, self.inventory_staff)
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 8)

        again = self.client.post(f"/api/v1/preorders/{preorder_id}/approve/")
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["code"], "already_decided")
        deny = self.client.post(f"/api/v1/preorders/{preorder_id}/deny/")
        self.assertEqual(deny.status_code, 409)
        self.assertEqual(Order.objects.count(), 1)

    def test_out_of_stock_approval_leaves_preorder_pending(self):
        preorder_id = self.request_preorder(self.lines((self.product_a, 4))).json()["id"]
        Product.objects.filter(id=self.product_a.id).update(stock=0)
        self.client.force_authenticate(user=self.owner)

        response = self.client.post(f"/api/v1/preorders/{preorder_id}/approve/")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "insufficient_stock")
        preorder = Preorder.objects.get(id=preorder_id)
        self.assertEqual(preorder.status, Preorder.Status.PENDING)
        self.assertIsNone(preorder.order_id)
        self.assertEqual(Order.objects.count(), 0)

    def test_deny_is_final(self):
        preorder_id = self.request_preorder(self.lines((self.product_b, 1))).json()["id"]
        self.client.force_authenticate(user=self.inventory_staff)

        response = self.client.post(f"/api/v1/preorders/{preorder_id}/deny/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "denied")
        self.assertEqual(response.json()["decided_by"], "stock")
        again = self.client.post(f"/api/v1/preorders/{preorder_id}/approve/")
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["code"], "already_decided")
        self.assertTrue(AuditLog.objects.filter(action="preorder.deny", entity_id=preorder_id).exists())

    def test_business_user_cannot_decide_preorders(self):
        preorder_id = self.request_preorder(self.lines((self.product_b, 1))).json()["id"]

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.post(f"/api/v1/preorders/{preorder_id}/approve/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(Preorder.objects.get(id=preorder_id).status, Preorder.Status.PENDING)

    def test_orders_staff_cannot_decide_preorders(self):
        preorder_id = self.request_preorder(self.lines((self.product_b, 1))).json()["id"]
        self.client.force_authenticate(user=self.orders_staff)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.post(f"/api/v1/preorders/{preorder_id}/deny/")

        self.assertEqual(response.status_code, 403)

    def test_preorders_are_scoped_to_business(self):
        self.request_preorder(self.lines((self.product_a, 1)))
        self.request_preorder(self.lines((self.product_b, 1)), user=self.other_business_user)

        self.client.force_authenticate(user=self.business_user)
        listed = self.client.get("/api/v1/preorders/").json()

        self.assertEqual(listed["count"], 1)
        self.assertEqual(listed["results"][0]["business_name"], "Northwind")


class LostRaceTests(OrderFixtureMixin, TestCase):
    """A placement that read stock before a rival commit must roll back entirely."""

    def setUp(self):
        self.create_fixtures()
        Product.objects.filter(id=self.product_a.id).update(stock=1)

    def test_stale_read_of_last_unit_commits_nothing(self):
        stale = {
            self.product_b.id: Product.objects.get(id=self.product_b.id),
            self.product_a.id: Product.objects.get(id=self.product_a.id),
        }
        # The rival order takes the last unit after our rows were read.
        Product.objects.filter(id=self.product_a.id).update(stock=0)

        with mock.patch("orders.services.lock_products", return_value=stale):
            with self.assertRaises(InsufficientStock) as ctx:
                place_order(
                    caller_from_user(self.business_user),
                    items=[
                        {"product_id": self.product_b.id, "quantity": 2},
                        {"product_id": self.product_a.id, "quantity": 1},
                    ],
                    delivery="pickup",
                )

        self.assertEqual(ctx.exception.shortages[0]["available"], 0)
        self.product_a.refresh_from_db()
        self.product_b.refresh_from_db()
        self.assertEqual(self.product_a.stock, 0)
        self.assertEqual(self.product_b.stock, 10)
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(Invoice.objects.count(), 0)

    def test_sequential_orders_for_last_unit(self):
        first = self.place(self.business_user, self.lines((self.product_a, 1)))
        second = self.place(self.other_business_user, self.lines((self.product_a, 1)))

        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["code"], "insufficient_stock")
        self.product_a.refresh_from_db()
        self.assertEqual(self.product_a.stock, 0)
        self.assertEqual(Order.objects.count(), 1)


@unittest.skipUnless(connection.vendor == "postgresql", "row-level locking is only exercised on PostgreSQL")
class ConcurrentPlacementTests(TransactionTestCase):
    def setUp(self):
        self.business = Business.objects.create(name="Race Co")
        self.users = [
            get_user_model().objects.create_user(
                username=f"racer-{index}",
                password="pass1234",
                kind="business",
                business=self.business,
                business_role="employee",
            )
            for index in range(2)
        ]
        self.product = Product.objects.create(
            name="Last One",
            public_price=Decimal("10.00"),
            business_price=Decimal("10.00"),
            stock=1,
        )

    def test_two_orders_for_last_unit_only_one_commits(self):
        barrier = threading.Barrier(len(self.users))
        outcomes = []

        def worker(user):
            try:
                barrier.wait()
                place_order(
                    caller_from_user(user),
                    items=[{"product_id": self.product.id, "quantity": 1}],
                    delivery="delivery",
                )
                outcomes.append("ok")
            except InsufficientStock:
                outcomes.append("short")
            finally:
                connections.close_all()

        threads = [threading.Thread(target=worker, args=(user,)) for user in self.users]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(outcomes), ["ok", "short"])
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 0)
        self.assertEqual(Order.objects.count(), 1)
