import itertools
import json
import logging
from unittest import mock

from django.db import OperationalError, transaction
from django.test import SimpleTestCase, TransactionTestCase
from rest_framework.exceptions import NotFound, PermissionDenied, ValidationError

from common.context import BusinessCaller, StaffCaller
from common.exceptions import InsufficientStock, InvalidTransition, custom_exception_handler
from common.logging import JsonFormatter
from common.permissions import PERMISSION_MATRIX, Action, Resource, is_allowed, require_staff
from common.transactions import run_atomic
from common.utils import to_money
from core.models import User


class PermissionMatrixTests(SimpleTestCase):
    def test_every_resource_action_pair_has_a_grant(self):
        for key in itertools.product(Resource, Action):
            self.assertIn(key, PERMISSION_MATRIX)

    def test_roles_only_match_their_own_side(self):
        # "owner" exists on both sides with different grants.
        self.assertTrue(is_allowed(Resource.SETTINGS, Action.READ, User.StaffRole.OWNER))
        self.assertFalse(is_allowed(Resource.SETTINGS, Action.READ, User.BusinessRole.OWNER))
        self.assertTrue(is_allowed(Resource.ORDERS, Action.WRITE, User.BusinessRole.EMPLOYEE))
        self.assertFalse(is_allowed(Resource.ORDERS, Action.WRITE, User.StaffRole.VIEWER))

    def test_missing_role_is_denied(self):
        self.assertFalse(is_allowed(Resource.PRODUCTS, Action.READ, None))

    def test_nobody_deletes_orders(self):
        for role in itertools.chain(User.StaffRole, User.BusinessRole):
            self.assertFalse(is_allowed(Resource.ORDERS, Action.DELETE, role))

    def test_unknown_resource_is_not_found(self):
        with self.assertRaises(NotFound):
            is_allowed("invoices", "read", User.StaffRole.OWNER)

    def test_require_staff_refuses_business_callers(self):
        caller = BusinessCaller(user_id=1, username="biz", role=User.BusinessRole.OWNER, business_id=1)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            with self.assertRaises(PermissionDenied):
                require_staff(caller, Resource.PREORDERS, Action.WRITE)

        self.assertIn("reason=staff_only", cm.output[0])

    def test_require_staff_returns_permitted_staff(self):
        caller = StaffCaller(user_id=1, username="stock", role=User.StaffRole.INVENTORY)

        self.assertIs(require_staff(caller, Resource.PREORDERS, Action.WRITE), caller)


class ExceptionHandlerTests(SimpleTestCase):
    def test_validation_error_envelope(self):
        response = custom_exception_handler(ValidationError({"quantity": ["Must be positive."]}), {})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.data,
            {
                "code": "validation_error",
                "message": "Validation failed.",
                "errors": {"quantity": ["Must be positive."]},
                "status": 400,
            },
        )

    def test_shortages_stay_numeric(self):
        exc = InsufficientStock([{"product_id": "p-1", "requested": 3, "available": 1}])

        response = custom_exception_handler(exc, {})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "insufficient_stock")
        self.assertEqual(response.data["errors"]["shortages"][0]["requested"], 3)
        self.assertEqual(response.data["errors"]["shortages"][0]["available"], 1)

    def test_conflict_subclass_keeps_its_code(self):
        response = custom_exception_handler(InvalidTransition("Order is fulfilled."), {})

        self.assertEqual(response.data["code"], "invalid_transition")
        self.assertEqual(response.data["message"], "Order is fulfilled.")
        self.assertIsNone(response.data["errors"])

    def test_unhandled_error_is_masked(self):
        with self.assertLogs("common.exceptions", level="ERROR"):
            response = custom_exception_handler(RuntimeError("boom"), {})

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data["code"], "internal_server_error")
        self.assertNotIn("boom", response.data["message"])


class JsonFormatterTests(SimpleTestCase):
    def test_structured_fields_are_emitted(self):
        record = logging.LogRecord("orders.services", logging.INFO, __file__, 1, "order_placed", None, None)
        record.order_id = "abc"
        record.total = "250.00"

        payload = json.loads(JsonFormatter().format(record))

        self.assertEqual(payload["message"], "order_placed")
        self.assertEqual(payload["order_id"], "abc")
        self.assertEqual(payload["total"], "250.00")
        self.assertNotIn("request_id", payload)


class MoneyTests(SimpleTestCase):
    def test_rounds_half_up_to_cents(self):
        self.assertEqual(str(to_money("2.345")), "2.35")
        self.assertEqual(str(to_money(7)), "7.00")


class RunAtomicTests(TransactionTestCase):
    def test_retries_operational_errors_then_succeeds(self):
        calls = []

        def flaky():
            calls.append(transaction.get_connection().in_atomic_block)
            if len(calls) == 1:
                raise OperationalError("could not serialize access")
            return "done"

        with mock.patch("common.transactions.time.sleep") as sleep:
            with self.assertLogs("common.transactions", level="WARNING"):
                result = run_atomic(flaky, attempts=3, backoff=0.01)

        self.assertEqual(result, "done")
        self.assertEqual(calls, [True, True])
        sleep.assert_called_once_with(0.01)

    def test_gives_up_after_last_attempt(self):
        def always_locked():
            raise OperationalError("deadlock detected")

        with mock.patch("common.transactions.time.sleep"):
            with self.assertRaises(OperationalError):
                run_atomic(always_locked, attempts=2, backoff=0)

    def test_domain_errors_are_not_retried(self):
        func = mock.Mock(side_effect=InvalidTransition())

        with self.assertRaises(InvalidTransition):
            run_atomic(func, attempts=5, backoff=0)

        self.assertEqual(func.call_count, 1)
