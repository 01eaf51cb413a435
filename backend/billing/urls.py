"""URL routes for billing endpoints."""
from django.urls import path

from .views import (
    BillingPortalView,
    CreditBalanceView,
    CreditConsumeView,
    CreditTransactionViewSet,
    PurchaseCancelView,
    PurchaseCheckoutView,
    PurchaseViewSet,
    SubscriptionCheckoutView,
)
from .views_webhook import StripeWebhookView

app_name = "billing"

urlpatterns = [
    path("webhooks/stripe/", StripeWebhookView.as_view(), name="stripe-webhook"),
    path("purchases/", PurchaseViewSet.as_view({"get": "list"}), name="purchase-list"),
    path("purchases/checkout/", PurchaseCheckoutView.as_view(), name="purchase-checkout"),
    path(
        "purchases/<uuid:purchase_id>/",
        PurchaseViewSet.as_view({"get": "retrieve"}),
        name="purchase-detail",
    ),
    path(
        "purchases/<uuid:purchase_id>/cancel/",
        PurchaseCancelView.as_view(),
        name="purchase-cancel",
    ),
    path("credits/", CreditBalanceView.as_view(), name="credit-balance"),
    path("credits/consume/", CreditConsumeView.as_view(), name="credit-consume"),
    path(
        "credits/transactions/",
        CreditTransactionViewSet.as_view({"get": "list"}),
        name="credit-transactions",
    ),
    path("subscriptions/checkout/", SubscriptionCheckoutView.as_view(), name="subscription-checkout"),
    path("subscriptions/portal/", BillingPortalView.as_view(), name="billing-portal"),
]
