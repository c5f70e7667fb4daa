from rest_framework import generics, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.context import BusinessCaller
from common.exceptions import ProductInUse
from common.permissions import Action, Resource, ResourcePermission
from common.transactions import run_atomic
from core.models import User
from core.views import AuditedMutationMixin
from inventory.ledger import adjust_stock
from inventory.models import Product
from inventory.serializers import CatalogProductSerializer, ProductSerializer, StockAdjustmentSerializer


class ProductViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Product.objects.order_by("name", "id")
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.PRODUCTS
    permission_action_map = {"adjust_stock": Action.WRITE}
    audit_entity = "product"
    protected_exception = ProductInUse

    def get_queryset(self):
        queryset = super().get_queryset()
        caller = getattr(self.request, "caller", None)
        if isinstance(caller, BusinessCaller):
            return queryset.filter(is_active=True)

        active = self.request.query_params.get("active")
        if active in {"true", "1"}:
            queryset = queryset.filter(is_active=True)
        elif active in {"false", "0"}:
            queryset = queryset.filter(is_active=False)
        return queryset

    @action(detail=True, methods=["post"], url_path="adjust-stock")
    def adjust_stock(self, request, pk=None):
        product = self.get_object()
        serializer = StockAdjustmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        delta = serializer.validated_data["delta"]

        before_snapshot = {"stock": product.stock}
        product = run_atomic(lambda: adjust_stock(product.id, delta))
        create_audit_log_from_request(
            request,
            action="product.adjust_stock",
            entity="product",
            entity_id=product.id,
            before_snapshot=before_snapshot,
            after_snapshot={
                "stock": product.stock,
                "delta": delta,
                "reason": serializer.validated_data.get("reason", ""),
            },
        )
        return Response(ProductSerializer(product).data)


class CatalogView(generics.ListAPIView):
    """Public catalog; business users also see the price they pay."""

    queryset = Product.objects.filter(is_active=True).order_by("name", "id")
    serializer_class = CatalogProductSerializer
    permission_classes = [AllowAny]

    def get_serializer_context(self):
        context = super().get_serializer_context()
        user = self.request.user
        if user.is_authenticated and user.kind == User.Kind.BUSINESS and user.business_id:
            context["business"] = user.business
        return context
