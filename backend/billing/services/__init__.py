"""Expose commonly used billing services."""

from .credit_ledger import CreditLedgerResult, apply_credit_delta, consume_credits, get_credit_balance
from .event_router import Classification, Route, classify_event
from .purchase_reconciler import PurchaseReconciliation, reconcile_purchase_event
from .subscription_sync import SubscriptionSyncResult, sync_customer_subscription
