from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.context import BusinessCaller
from common.permissions import Action, Resource, ResourcePermission
from orders.fulfillment import update_order
from orders.models import Order, Preorder
from orders.preorders import approve_preorder, create_preorder, deny_preorder
from orders.serializers import (
    OrderCreateSerializer,
    OrderSerializer,
    OrderUpdateSerializer,
    PreorderCreateSerializer,
    PreorderSerializer,
)
from orders.services import place_order

UUID_LOOKUP = r"[0-9a-fA-F-]{36}"


def scoped_to_caller(queryset, caller):
    """Business callers only ever see their own tenant's rows."""
    if isinstance(caller, BusinessCaller):
        return queryset.filter(business_id=caller.business_id)
    return queryset


class OrderViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = Order.objects.select_related("business", "placed_by", "invoice").prefetch_related("items__product")
    serializer_class = OrderSerializer
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.ORDERS
    lookup_value_regex = UUID_LOOKUP

    def get_queryset(self):
        queryset = scoped_to_caller(super().get_queryset(), self.request.caller).order_by("-created_at", "id")
        status_filter = self.request.query_params.get("status")
        business_id = self.request.query_params.get("business")
        if status_filter:
            queryset = queryset.filter(status=status_filter)
        if business_id and not isinstance(self.request.caller, BusinessCaller):
            queryset = queryset.filter(business_id=business_id)
        return queryset

    def _fresh(self, order_id):
        return self.get_serializer(super().get_queryset().get(id=order_id)).data

    def create(self, request, *args, **kwargs):
        serializer = OrderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        order = place_order(
            request.caller,
            business_id=data.get("business_id"),
            items=data["items"],
            delivery=data["delivery"],
            placed_by=data.get("placed_by"),
            request=request,
        )
        payload = self._fresh(order.id)
        create_audit_log_from_request(
            request,
            action="order.create",
            entity="order",
            entity_id=order.id,
            after_snapshot=payload,
            business=order.business,
        )
        return Response(payload, status=status.HTTP_201_CREATED)

    def partial_update(self, request, pk=None):
        serializer = OrderUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        order, previous = update_order(
            request.caller,
            pk,
            status=data.get("status"),
            invoice_paid=data.get("invoice_paid"),
            delivery=data.get("delivery"),
            request=request,
        )
        payload = self._fresh(order.id)
        create_audit_log_from_request(
            request,
            action="order.update",
            entity="order",
            entity_id=order.id,
            before_snapshot=previous,
            after_snapshot={
                "status": payload["status"],
                "delivery": payload["delivery"],
                "pickup_code": payload["pickup_code"],
                "invoice_paid": payload["invoice"]["paid"],
            },
            business=order.business,
        )
        return Response(payload)


class PreorderViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = Preorder.objects.select_related("business", "requested_by", "decided_by").prefetch_related("items__product")
    serializer_class = PreorderSerializer
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.PREORDERS
    permission_action_map = {"approve": Action.WRITE, "deny": Action.WRITE}
    lookup_value_regex = UUID_LOOKUP

    def get_queryset(self):
        queryset = scoped_to_caller(super().get_queryset(), self.request.caller).order_by("-created_at", "id")
        status_filter = self.request.query_params.get("status")
        if status_filter:
            queryset = queryset.filter(status=status_filter)
        return queryset

    def create(self, request, *args, **kwargs):
        serializer = PreorderCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        preorder = create_preorder(
            request.caller,
            business_id=data.get("business_id"),
            items=data["items"],
            note=data.get("note", ""),
            requested_by=data.get("requested_by"),
            request=request,
        )
        payload = self.get_serializer(Preorder.objects.get(id=preorder.id)).data
        create_audit_log_from_request(
            request,
            action="preorder.create",
            entity="preorder",
            entity_id=preorder.id,
            after_snapshot=payload,
            business=preorder.business,
        )
        return Response(payload, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"])
    def approve(self, request, pk=None):
        preorder, order = approve_preorder(request.caller, pk, request=request)
        payload = OrderSerializer(
            Order.objects.select_related("business", "placed_by", "invoice").get(id=order.id),
            context=self.get_serializer_context(),
        ).data
        create_audit_log_from_request(
            request,
            action="preorder.approve",
            entity="preorder",
            entity_id=preorder.id,
            before_snapshot={"status": Preorder.Status.PENDING},
            after_snapshot={"status": preorder.status, "order_id": str(order.id)},
            business=preorder.business,
        )
        return Response(payload, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"])
    def deny(self, request, pk=None):
        preorder = deny_preorder(request.caller, pk, request=request)
        create_audit_log_from_request(
            request,
            action="preorder.deny",
            entity="preorder",
            entity_id=preorder.id,
            before_snapshot={"status": Preorder.Status.PENDING},
            after_snapshot={"status": preorder.status},
            business=preorder.business,
        )
        return Response(self.get_serializer(Preorder.objects.get(id=preorder.id)).data)
