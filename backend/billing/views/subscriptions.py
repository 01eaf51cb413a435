"""Subscription checkout and Stripe customer portal endpoints."""
from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.exceptions import (
    MissingStripeCustomer,
    StripeConfigurationError,
    StripeServiceError,
    SubscriptionAlreadyActive,
)
from billing.serializers import BillingPortalSerializer, SubscriptionCheckoutSerializer
from billing.services.subscriptions import create_billing_portal_session, create_subscription_checkout

logger = logging.getLogger(__name__)


class SubscriptionCheckoutView(APIView):
    """Start a Stripe checkout for a subscription plan."""

    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = SubscriptionCheckoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            result = create_subscription_checkout(
                user=request.user,
                price_id=data["price_id"],
                success_url=data.get("success_url"),
                cancel_url=data.get("cancel_url"),
            )
        except SubscriptionAlreadyActive as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)
        except (StripeConfigurationError, StripeServiceError) as exc:
            logger.warning("Unable to create Stripe subscription checkout: %s", exc)
            return Response({"detail": str(exc)}, status=status.HTTP_502_BAD_GATEWAY)

        return Response(
            {
                "subscription_id": result.subscription.pk,
                "checkout_session_id": result.session_id,
                "checkout_url": result.checkout_url,
            },
            status=status.HTTP_201_CREATED,
        )


class BillingPortalView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = BillingPortalSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            url = create_billing_portal_session(
                user=request.user,
                return_url=serializer.validated_data.get("return_url"),
            )
        except MissingStripeCustomer as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        except (StripeConfigurationError, StripeServiceError) as exc:
            logger.warning("Unable to create Stripe billing portal session: %s", exc)
            return Response({"detail": str(exc)}, status=status.HTTP_502_BAD_GATEWAY)

        return Response({"url": url})
