"""Credit balance and consumption endpoints."""
from __future__ import annotations

import logging

from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework.viewsets import ReadOnlyModelViewSet

from billing.exceptions import IdempotencyConflict, InsufficientCredits
from billing.filters import CreditTransactionFilter
from billing.models import CreditTransaction, Subscription
from billing.pagination import BoundedPageNumberPagination
from billing.serializers import (
    CreditConsumeSerializer,
    CreditTransactionSerializer,
    SubscriptionSummarySerializer,
)
from billing.services.credit_ledger import consume_credits, get_credit_balance

logger = logging.getLogger(__name__)


class CreditBalanceView(APIView):
    """Return the authenticated user's credit balance and subscription summary."""

    permission_classes = [IsAuthenticated]

    def get(self, request):
        subscription = Subscription.objects.filter(user=request.user).first()
        return Response(
            {
                "credits": get_credit_balance(request.user),
                "subscription": SubscriptionSummarySerializer(subscription).data if subscription else None,
            }
        )


class CreditConsumeView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = CreditConsumeSerializer(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            result = consume_credits(
                user=request.user,
                amount=data["amount"],
                description=data.get("description", ""),
                idempotency_key=data.get("idempotency_key"),
            )
        except InsufficientCredits as exc:
            return Response(
                {"detail": str(exc), "credits": exc.available, "requested": exc.requested},
                status=status.HTTP_402_PAYMENT_REQUIRED,
            )
        except IdempotencyConflict as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)

        return Response(
            {
                "credits": result.balance,
                "consumed": data["amount"],
                "transaction_id": str(result.transaction.pk),
                "replayed": not result.created,
            },
            status=status.HTTP_200_OK,
        )


class CreditTransactionViewSet(ReadOnlyModelViewSet):
    serializer_class = CreditTransactionSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = BoundedPageNumberPagination
    filterset_class = CreditTransactionFilter

    def get_queryset(self):
        return CreditTransaction.objects.filter(user=self.request.user).order_by("-created_at")
