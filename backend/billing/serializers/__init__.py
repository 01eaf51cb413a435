"""DRF serializers for purchases, subscriptions and credit consumption."""
from __future__ import annotations

from typing import Any, Dict

from django.utils.translation import gettext_lazy as _
from rest_framework import serializers

from billing.models import CreditTransaction, Purchase, Subscription
from billing.services.price_catalog import is_known_one_time_price, is_known_subscription_price

CONSUME_MAX_AMOUNT = 10_000


class PurchaseSerializer(serializers.ModelSerializer):
    class Meta:
        model = Purchase
        fields = (
            "id",
            "product",
            "amount",
            "currency",
            "description",
            "status",
            "stripe_price_id",
            "stripe_session_id",
            "completed_at",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields


class PurchaseCheckoutSerializer(serializers.Serializer):
    """Checkout request for a one-time product."""

    product = serializers.CharField(max_length=100)
    price_id = serializers.CharField(max_length=255)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)
    currency = serializers.CharField(max_length=10, required=False)
    description = serializers.CharField(required=False, allow_blank=True)
    success_url = serializers.URLField(required=False)
    cancel_url = serializers.URLField(required=False)

    def validate_price_id(self, value: str) -> str:
        if not is_known_one_time_price(value):
            raise serializers.ValidationError(_("Unknown price."))
        return value


class SubscriptionCheckoutSerializer(serializers.Serializer):
    price_id = serializers.CharField(max_length=255)
    success_url = serializers.URLField(required=False)
    cancel_url = serializers.URLField(required=False)

    def validate_price_id(self, value: str) -> str:
        if not is_known_subscription_price(value):
            raise serializers.ValidationError(_("Unknown subscription price."))
        return value


class BillingPortalSerializer(serializers.Serializer):
    return_url = serializers.URLField(required=False)


class CreditTransactionSerializer(serializers.ModelSerializer):
    class Meta:
        model = CreditTransaction
        fields = ("id", "amount", "kind", "description", "balance_after", "created_at")
        read_only_fields = fields


class SubscriptionSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = Subscription
        fields = (
            "status",
            "stripe_price_id",
            "interval",
            "current_period_start",
            "current_period_end",
            "cancel_at_period_end",
        )
        read_only_fields = fields


class CreditConsumeSerializer(serializers.Serializer):
    amount = serializers.IntegerField(min_value=1, max_value=CONSUME_MAX_AMOUNT)
    description = serializers.CharField(required=False, allow_blank=True, max_length=255)
    idempotency_key = serializers.CharField(required=False, allow_blank=False, max_length=200)

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        attrs = super().validate(attrs)
        key = attrs.get("idempotency_key")
        if key:
            request = self.context.get("request")
            user_id = getattr(getattr(request, "user", None), "pk", None)
            # Namespaced per user so client keys cannot collide with billing-generated keys.
            attrs["idempotency_key"] = f"consume:{user_id}:{key}"
        return attrs
