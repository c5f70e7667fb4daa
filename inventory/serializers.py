from rest_framework import serializers

from inventory.models import Product
from inventory.pricing import public_price, resolve_unit_price


class ProductSerializer(serializers.ModelSerializer):
    class Meta:
        model = Product
        fields = [
            "id",
            "name",
            "description",
            "image_url",
            "public_price",
            "business_price",
            "stock",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate(self, attrs):
        if self.instance is not None and "stock" in attrs:
            if attrs["stock"] != self.instance.stock:
                raise serializers.ValidationError({"stock": "Stock changes go through the adjust-stock endpoint."})
            attrs.pop("stock")
        return attrs

    def update(self, instance, validated_data):
        # Only edited columns are written; stock belongs to the ledger.
        for field, value in validated_data.items():
            setattr(instance, field, value)
        instance.save(update_fields=[*validated_data, "updated_at"])
        instance.refresh_from_db(fields=["stock"])
        return instance


class StockAdjustmentSerializer(serializers.Serializer):
    delta = serializers.IntegerField()
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True)

    def validate_delta(self, value):
        if value == 0:
            raise serializers.ValidationError("Adjustment must be non-zero.")
        return value


class CatalogProductSerializer(serializers.ModelSerializer):
    public_price = serializers.SerializerMethodField()
    unit_price = serializers.SerializerMethodField()
    in_stock = serializers.SerializerMethodField()

    class Meta:
        model = Product
        fields = ["id", "name", "description", "image_url", "public_price", "unit_price", "in_stock"]

    def get_public_price(self, obj):
        return str(public_price(obj))

    def get_unit_price(self, obj):
        business = self.context.get("business")
        if business is None:
            return None
        return str(resolve_unit_price(obj, business))

    def get_in_stock(self, obj):
        return obj.stock > 0
