from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import TestCase
from rest_framework.exceptions import NotAuthenticated, PermissionDenied
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from common.context import BusinessCaller, StaffCaller, caller_from_user
from core.models import Application, AuditLog, Business, ShopSettings


class CallerContextTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.business = Business.objects.create(name="Ctx Co")

    def test_staff_user_resolves_to_staff_caller(self):
        user = self.user_model.objects.create_user(username="ctx-staff", password="pass1234", staff_role="orders")

        caller = caller_from_user(user)

        self.assertIsInstance(caller, StaffCaller)
        self.assertEqual(caller.role, self.user_model.StaffRole.ORDERS)

    def test_business_user_resolves_with_business_id(self):
        user = self.user_model.objects.create_user(
            username="ctx-biz",
            password="pass1234",
            kind="business",
            business=self.business,
            business_role="employee",
        )

        caller = caller_from_user(user)

        self.assertIsInstance(caller, BusinessCaller)
        self.assertEqual(caller.business_id, self.business.id)
        self.assertEqual(caller.role, self.user_model.BusinessRole.EMPLOYEE)

    def test_superuser_without_role_acts_as_owner(self):
        user = self.user_model.objects.create_superuser(username="ctx-root", password="pass1234")

        caller = caller_from_user(user)

        self.assertEqual(caller.role, self.user_model.StaffRole.OWNER)

    def test_staff_without_role_is_refused(self):
        user = self.user_model.objects.create_user(username="ctx-norole", password="pass1234")

        with self.assertRaises(PermissionDenied):
            caller_from_user(user)

    def test_anonymous_is_not_authenticated(self):
        from django.contrib.auth.models import AnonymousUser

        with self.assertRaises(NotAuthenticated):
            caller_from_user(AnonymousUser())


class TokenClaimsTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.business = Business.objects.create(name="Claims Co")
        self.user = get_user_model().objects.create_user(
            username="claims-owner",
            password="pass1234",
            kind="business",
            business=self.business,
            business_role="owner",
        )

    def test_token_carries_role_claims(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "claims-owner", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        token = AccessToken(response.json()["access"])
        self.assertEqual(token["kind"], "business")
        self.assertEqual(token["business_role"], "owner")
        self.assertIsNone(token["staff_role"])
        self.assertEqual(token["business_id"], str(self.business.id))

    def test_bearer_token_authenticates_api_calls(self):
        token = self.client.post(
            "/api/v1/token/",
            {"username": "claims-owner", "password": "pass1234"},
            format="json",
        ).json()["access"]

        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")
        response = self.client.get("/api/v1/orders/")

        self.assertEqual(response.status_code, 200)


class BusinessResourceTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.manager = self.user_model.objects.create_user(username="biz-manager", password="pass1234", staff_role="manager")
        self.viewer = self.user_model.objects.create_user(username="biz-viewer", password="pass1234", staff_role="viewer")
        self.owner = self.user_model.objects.create_user(username="biz-owner", password="pass1234", staff_role="owner")
        self.business = Business.objects.create(name="Acme", discount_pct=Decimal("10.00"))

    def test_viewer_can_list_but_not_create(self):
        self.client.force_authenticate(user=self.viewer)

        listed = self.client.get("/api/v1/businesses/")
        self.assertEqual(listed.status_code, 200)
        self.assertEqual(sorted(listed.json().keys()), ["count", "next", "previous", "results"])

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post("/api/v1/businesses/", {"name": "Nope"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))
        self.assertFalse(Business.objects.filter(name="Nope").exists())

    def test_manager_creates_business_and_audit_row_is_written(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.post("/api/v1/businesses/", {"name": "Globex", "discount_pct": "12.50"}, format="json")

        self.assertEqual(response.status_code, 201)
        created = Business.objects.get(name="Globex")
        self.assertEqual(created.discount_pct, Decimal("12.50"))
        log = AuditLog.objects.get(action="business.create")
        self.assertEqual(log.entity_id, str(created.id))
        self.assertEqual(log.actor, self.manager)

    def test_discount_out_of_range_is_rejected(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.patch(
            f"/api/v1/businesses/{self.business.id}/",
            {"discount_pct": "150"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "validation_error")
        self.assertIn("discount_pct", payload["errors"])
        self.business.refresh_from_db()
        self.assertEqual(self.business.discount_pct, Decimal("10.00"))

    def test_only_owner_deletes_and_members_block_deletion(self):
        self.user_model.objects.create_user(
            username="acme-employee",
            password="pass1234",
            kind="business",
            business=self.business,
            business_role="employee",
        )

        self.client.force_authenticate(user=self.manager)
        self.assertEqual(self.client.delete(f"/api/v1/businesses/{self.business.id}/").status_code, 403)

        self.client.force_authenticate(user=self.owner)
        response = self.client.delete(f"/api/v1/businesses/{self.business.id}/")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "conflict")
        self.assertTrue(Business.objects.filter(id=self.business.id).exists())

    def test_unauthenticated_request_gets_envelope(self):
        response = self.client.get("/api/v1/businesses/")

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(payload["code"], "not_authenticated")
        self.assertEqual(payload["status"], 401)


class UserResourceTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.hr = self.user_model.objects.create_user(username="hr-user", password="pass1234", staff_role="hr")
        self.orders_staff = self.user_model.objects.create_user(username="orders-user", password="pass1234", staff_role="orders")
        self.business = Business.objects.create(name="Initech")

    def test_hr_creates_business_user_with_hashed_password(self):
        self.client.force_authenticate(user=self.hr)

        response = self.client.post(
            "/api/v1/users/",
            {
                "username": "initech-emp",
                "password": "s3cret-pass",
                "kind": "business",
                "business": str(self.business.id),
                "business_role": "employee",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertNotIn("password", response.json())
        created = self.user_model.objects.get(username="initech-emp")
        self.assertTrue(created.check_password("s3cret-pass"))
        self.assertEqual(created.business, self.business)

    def test_staff_user_cannot_belong_to_business(self):
        self.client.force_authenticate(user=self.hr)

        response = self.client.post(
            "/api/v1/users/",
            {
                "username": "confused",
                "password": "pass1234",
                "kind": "staff",
                "staff_role": "viewer",
                "business": str(self.business.id),
            },
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("business", response.json()["errors"])

    def test_orders_staff_cannot_list_users(self):
        self.client.force_authenticate(user=self.orders_staff)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.get("/api/v1/users/")

        self.assertEqual(response.status_code, 403)


class SettingsResourceTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.owner = self.user_model.objects.create_user(username="settings-owner", password="pass1234", staff_role="owner")
        self.manager = self.user_model.objects.create_user(username="settings-manager", password="pass1234", staff_role="manager")

    def test_owner_reads_default_singleton(self):
        self.client.force_authenticate(user=self.owner)

        response = self.client.get("/api/v1/settings/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["payout_pct"], "60.00")
        self.assertEqual(ShopSettings.objects.count(), 1)

    def test_owner_patches_do_not_buy_list(self):
        self.client.force_authenticate(user=self.owner)

        response = self.client.patch("/api/v1/settings/", {"do_not_buy": ["Rusty Sword"]}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(ShopSettings.load().do_not_buy, ["Rusty Sword"])
        self.assertTrue(AuditLog.objects.filter(action="settings.update").exists())

    def test_manager_cannot_read_settings(self):
        self.client.force_authenticate(user=self.manager)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.get("/api/v1/settings/")

        self.assertEqual(response.status_code, 403)


class ApplicationResourceTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.hr = self.user_model.objects.create_user(username="apps-hr", password="pass1234", staff_role="hr")
        self.business = Business.objects.create(name="Apps Co")
        self.business_user = self.user_model.objects.create_user(
            username="apps-biz",
            password="pass1234",
            kind="business",
            business=self.business,
            business_role="owner",
        )

    def test_hr_creates_and_filters_applications(self):
        self.client.force_authenticate(user=self.hr)
        Application.objects.create(full_name="Old", contact="old#1", status="rejected")

        response = self.client.post(
            "/api/v1/applications/",
            {"full_name": "Jo Doe", "contact": "jo#1234", "region": "EU"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)

        listed = self.client.get("/api/v1/applications/?status=new")
        self.assertEqual(listed.status_code, 200)
        names = [item["full_name"] for item in listed.json()["results"]]
        self.assertEqual(names, ["Jo Doe"])

    def test_business_user_cannot_read_applications(self):
        self.client.force_authenticate(user=self.business_user)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.get("/api/v1/applications/")

        self.assertEqual(response.status_code, 403)


class HealthEndpointTests(TestCase):
    def test_healthz_is_public_and_echoes_request_id(self):
        response = APIClient().get("/healthz/", HTTP_X_REQUEST_ID="req-123")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["request_id"], "req-123")
        self.assertEqual(response["X-Request-ID"], "req-123")


class SeedDemoDataTests(TestCase):
    def test_seed_is_idempotent_and_creates_owner_admin(self):
        call_command("seed_demo_data", stdout=StringIO())
        call_command("seed_demo_data", stdout=StringIO())

        admin = get_user_model().objects.get(username="admin")
        self.assertTrue(admin.check_password("1234"))
        self.assertEqual(caller_from_user(admin).role, get_user_model().StaffRole.OWNER)
        self.assertEqual(Business.objects.filter(name="Demo Trading Co").count(), 1)
        self.assertEqual(ShopSettings.objects.count(), 1)
