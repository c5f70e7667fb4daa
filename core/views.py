import logging

from django.contrib.auth import get_user_model
from django.db import connections, transaction
from django.db.models import ProtectedError
from rest_framework import viewsets
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView
from rest_framework_simplejwt.views import TokenObtainPairView

from common.audit import create_audit_log_from_request
from common.exceptions import ConflictError
from common.permissions import Resource, ResourcePermission
from core.models import Application, Business, ShopSettings
from core.serializers import (
    ApplicationSerializer,
    BusinessSerializer,
    RoleClaimsTokenObtainPairSerializer,
    ShopSettingsSerializer,
    UserSerializer,
)

User = get_user_model()
logger = logging.getLogger(__name__)


class AuditedMutationMixin:
    """Write an audit row for every create/update/delete made through the viewset."""

    audit_entity = None
    protected_exception = ConflictError

    def _audit_business(self, instance):
        return getattr(instance, "business", None)

    def _audit(self, *, action, entity_id, business=None, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=f"{self.audit_entity}.{action}",
            entity=self.audit_entity,
            entity_id=entity_id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
            business=business,
        )

    def perform_create(self, serializer):
        instance = serializer.save()
        self._audit(
            action="create",
            entity_id=instance.pk,
            business=self._audit_business(instance),
            after_snapshot=self.get_serializer(instance).data,
        )

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._audit(
            action="update",
            entity_id=instance.pk,
            business=self._audit_business(instance),
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        entity_id = instance.pk
        try:
            with transaction.atomic():
                instance.delete()
        except ProtectedError as exc:
            raise self.protected_exception() from exc
        self._audit(action="delete", entity_id=entity_id, before_snapshot=before_snapshot)


class RoleClaimsTokenObtainPairView(TokenObtainPairView):
    serializer_class = RoleClaimsTokenObtainPairSerializer
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "auth"


class BusinessViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Business.objects.order_by("name")
    serializer_class = BusinessSerializer
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.BUSINESSES
    audit_entity = "business"

    def _audit_business(self, instance):
        return instance


class UserViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = User.objects.select_related("business").order_by("username")
    serializer_class = UserSerializer
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.USERS
    audit_entity = "user"

    def get_queryset(self):
        queryset = super().get_queryset()
        kind = self.request.query_params.get("kind")
        business_id = self.request.query_params.get("business")
        if kind:
            queryset = queryset.filter(kind=kind)
        if business_id:
            queryset = queryset.filter(business_id=business_id)
        return queryset


class ApplicationViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Application.objects.order_by("-created_at")
    serializer_class = ApplicationSerializer
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.APPLICATIONS
    audit_entity = "application"

    def get_queryset(self):
        queryset = super().get_queryset()
        status_filter = self.request.query_params.get("status")
        if status_filter:
            queryset = queryset.filter(status=status_filter)
        return queryset


class ShopSettingsView(APIView):
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.SETTINGS

    def get(self, request):
        return Response(ShopSettingsSerializer(ShopSettings.load()).data)

    def put(self, request):
        return self._update(request, partial=False)

    def patch(self, request):
        return self._update(request, partial=True)

    def _update(self, request, *, partial):
        settings_row = ShopSettings.load()
        before_snapshot = ShopSettingsSerializer(settings_row).data
        serializer = ShopSettingsSerializer(settings_row, data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        serializer.save()
        create_audit_log_from_request(
            request,
            action="settings.update",
            entity="settings",
            entity_id=settings_row.pk,
            before_snapshot=before_snapshot,
            after_snapshot=serializer.data,
        )
        return Response(serializer.data)


@api_view(["GET"])
@permission_classes([AllowAny])
def healthz(request):
    return Response({"status": "ok", "request_id": getattr(request, "request_id", None)})


@api_view(["GET"])
@permission_classes([AllowAny])
def readyz(request):
    try:
        with connections["default"].cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except Exception as exc:
        logger.exception("readiness_check_failed")
        return Response(
            {"status": "error", "request_id": getattr(request, "request_id", None), "detail": str(exc)},
            status=503,
        )

    return Response({"status": "ready", "request_id": getattr(request, "request_id", None)})
