from rest_framework import serializers

from orders.models import Invoice, Order, OrderItem, Preorder, PreorderItem


class LineInputSerializer(serializers.Serializer):
    product_id = serializers.UUIDField()
    quantity = serializers.IntegerField(min_value=1)


class OrderCreateSerializer(serializers.Serializer):
    business_id = serializers.UUIDField(required=False, allow_null=True)
    placed_by = serializers.UUIDField(required=False, allow_null=True)
    delivery = serializers.ChoiceField(choices=Order.Delivery.choices)
    items = LineInputSerializer(many=True, allow_empty=False)


class OrderUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Order.Status.choices, required=False)
    invoice_paid = serializers.BooleanField(required=False)
    delivery = serializers.ChoiceField(choices=Order.Delivery.choices, required=False)

    def validate(self, attrs):
        if not attrs:
            raise serializers.ValidationError("Provide status, invoice_paid or delivery.")
        return attrs


class PreorderCreateSerializer(serializers.Serializer):
    business_id = serializers.UUIDField(required=False, allow_null=True)
    requested_by = serializers.UUIDField(required=False, allow_null=True)
    note = serializers.CharField(required=False, allow_blank=True, default="")
    items = LineInputSerializer(many=True, allow_empty=False)


class InvoiceSerializer(serializers.ModelSerializer):
    class Meta:
        model = Invoice
        fields = ["id", "total", "paid", "paid_at", "issued_at"]
        read_only_fields = fields


class OrderItemSerializer(serializers.ModelSerializer):
    product_id = serializers.UUIDField(read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)

    class Meta:
        model = OrderItem
        fields = ["position", "product_id", "product_name", "quantity", "unit_price", "line_total"]
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    business_id = serializers.UUIDField(read_only=True)
    business_name = serializers.CharField(source="business.name", read_only=True)
    placed_by = serializers.CharField(source="placed_by.username", read_only=True)
    items = OrderItemSerializer(many=True, read_only=True)
    invoice = InvoiceSerializer(read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "business_id",
            "business_name",
            "placed_by",
            "status",
            "delivery",
            "pickup_code",
            "total",
            "items",
            "invoice",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class PreorderItemSerializer(serializers.ModelSerializer):
    product_id = serializers.UUIDField(read_only=True)
    product_name = serializers.CharField(source="product.name", read_only=True)

    class Meta:
        model = PreorderItem
        fields = ["position", "product_id", "product_name", "quantity"]
        read_only_fields = fields


class PreorderSerializer(serializers.ModelSerializer):
    business_id = serializers.UUIDField(read_only=True)
    business_name = serializers.CharField(source="business.name", read_only=True)
    requested_by = serializers.CharField(source="requested_by.username", read_only=True)
    decided_by = serializers.CharField(source="decided_by.username", read_only=True, default=None)
    order_id = serializers.UUIDField(read_only=True)
    items = PreorderItemSerializer(many=True, read_only=True)

    class Meta:
        model = Preorder
        fields = [
            "id",
            "business_id",
            "business_name",
            "requested_by",
            "note",
            "status",
            "items",
            "order_id",
            "decided_by",
            "decided_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields
