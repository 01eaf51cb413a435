"""Purchase endpoints: checkout creation, listing, detail and cancellation."""
from __future__ import annotations

from decimal import Decimal
import logging

from rest_framework import status
from rest_framework.exceptions import NotFound
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework.viewsets import ReadOnlyModelViewSet

from billing.exceptions import (
    PurchaseNotFound,
    PurchaseStateError,
    StripeConfigurationError,
    StripeServiceError,
)
from billing.filters import PurchaseFilter
from billing.models import Purchase
from billing.pagination import BoundedPageNumberPagination
from billing.serializers import PurchaseCheckoutSerializer, PurchaseSerializer
from billing.services.purchases import cancel_pending_purchase, create_purchase_checkout, get_purchase_for_user

logger = logging.getLogger(__name__)


class PurchaseViewSet(ReadOnlyModelViewSet):
    serializer_class = PurchaseSerializer
    permission_classes = [IsAuthenticated]
    pagination_class = BoundedPageNumberPagination
    filterset_class = PurchaseFilter

    def get_queryset(self):
        return Purchase.objects.filter(user=self.request.user).order_by("-created_at")

    def get_object(self):
        try:
            return get_purchase_for_user(self.request.user, self.kwargs["purchase_id"])
        except PurchaseNotFound as exc:
            raise NotFound(str(exc)) from exc


class PurchaseCheckoutView(APIView):
    """Create a pending purchase and return the Stripe checkout URL."""

    permission_classes = [IsAuthenticated]

    def post(self, request):
        serializer = PurchaseCheckoutSerializer(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            result = create_purchase_checkout(
                user=request.user,
                product=data["product"],
                price_id=data["price_id"],
                amount=data.get("amount") or Decimal("0.00"),
                currency=data.get("currency"),
                description=data.get("description", ""),
                success_url=data.get("success_url"),
                cancel_url=data.get("cancel_url"),
            )
        except (StripeConfigurationError, StripeServiceError) as exc:
            logger.warning("Unable to create Stripe checkout session: %s", exc)
            return Response({"detail": str(exc)}, status=status.HTTP_502_BAD_GATEWAY)

        return Response(
            {
                "purchase_id": str(result.purchase.pk),
                "checkout_session_id": result.session_id,
                "checkout_url": result.checkout_url,
            },
            status=status.HTTP_201_CREATED,
        )


class PurchaseCancelView(APIView):
    """Cancel a purchase that has not been paid yet."""

    permission_classes = [IsAuthenticated]

    def post(self, request, purchase_id):
        try:
            purchase = cancel_pending_purchase(user=request.user, purchase_id=purchase_id)
        except PurchaseNotFound as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_404_NOT_FOUND)
        except PurchaseStateError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)

        return Response(PurchaseSerializer(purchase).data)
