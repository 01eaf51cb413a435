"""Billing API views."""
from .credits import CreditBalanceView, CreditConsumeView, CreditTransactionViewSet
from .purchases import PurchaseCancelView, PurchaseCheckoutView, PurchaseViewSet
from .subscriptions import BillingPortalView, SubscriptionCheckoutView
