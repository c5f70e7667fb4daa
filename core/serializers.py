from django.contrib.auth import get_user_model
from rest_framework import serializers
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer

from core.models import Application, Business, ShopSettings

User = get_user_model()


class RoleClaimsTokenObtainPairSerializer(TokenObtainPairSerializer):
    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)
        token["kind"] = user.kind
        token["staff_role"] = user.staff_role
        token["business_role"] = user.business_role
        token["business_id"] = str(user.business_id) if user.business_id else None
        return token


class BusinessSerializer(serializers.ModelSerializer):
    class Meta:
        model = Business
        fields = ["id", "name", "discount_pct", "is_active", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class UserSerializer(serializers.ModelSerializer):
    password = serializers.CharField(write_only=True, required=False, min_length=4)

    class Meta:
        model = User
        fields = [
            "id",
            "username",
            "password",
            "display_name",
            "email",
            "kind",
            "staff_role",
            "business",
            "business_role",
            "is_active",
            "date_joined",
        ]
        read_only_fields = ["id", "date_joined"]

    def validate(self, attrs):
        def current(field):
            if field in attrs:
                return attrs[field]
            return getattr(self.instance, field, None)

        if self.instance is None and not attrs.get("password"):
            raise serializers.ValidationError({"password": "This field is required."})

        kind = current("kind") or User.Kind.STAFF
        if kind == User.Kind.STAFF:
            if not current("staff_role"):
                raise serializers.ValidationError({"staff_role": "Staff users need a staff role."})
            if current("business") is not None or current("business_role"):
                raise serializers.ValidationError({"business": "Staff users cannot belong to a business."})
        else:
            if current("business") is None:
                raise serializers.ValidationError({"business": "Business users need a business."})
            if not current("business_role"):
                raise serializers.ValidationError({"business_role": "Business users need a business role."})
            if current("staff_role"):
                raise serializers.ValidationError({"staff_role": "Business users cannot hold a staff role."})
        return attrs

    def create(self, validated_data):
        password = validated_data.pop("password")
        user = User(**validated_data)
        user.set_password(password)
        user.save()
        return user

    def update(self, instance, validated_data):
        password = validated_data.pop("password", None)
        for field, value in validated_data.items():
            setattr(instance, field, value)
        if password:
            instance.set_password(password)
        instance.save()
        return instance


class ShopSettingsSerializer(serializers.ModelSerializer):
    do_not_buy = serializers.ListField(child=serializers.CharField(max_length=255), required=False)

    class Meta:
        model = ShopSettings
        fields = ["payout_pct", "fee_pct", "fee_flat", "do_not_buy", "updated_at"]
        read_only_fields = ["updated_at"]


class ApplicationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Application
        fields = [
            "id",
            "full_name",
            "city",
            "contact",
            "ingame_name",
            "phone",
            "state_id",
            "region",
            "about",
            "status",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]
