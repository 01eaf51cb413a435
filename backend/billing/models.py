"""Billing models for purchases, subscriptions, the credit ledger and webhook logging."""
import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Q


def _default_currency() -> str:
    """Resolve default billing currency from settings."""
    return getattr(settings, "STRIPE_CURRENCY", "usd").lower()


class Purchase(models.Model):
    """One-time payment record created before the Stripe checkout session."""

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        COMPLETED = "COMPLETED", "Completed"
        FAILED = "FAILED", "Failed"
        REFUNDED = "REFUNDED", "Refunded"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="purchases",
        help_text="User who owns the purchase.",
    )
    product = models.CharField(max_length=100, help_text="Internal product identifier.")
    amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    currency = models.CharField(max_length=10, default=_default_currency)
    description = models.TextField(blank=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    stripe_price_id = models.CharField(max_length=255, blank=True)
    stripe_payment_intent_id = models.CharField(max_length=255, blank=True, null=True)
    stripe_session_id = models.CharField(max_length=255, blank=True, null=True, unique=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_purchase"
        verbose_name = "Purchase"
        verbose_name_plural = "Purchases"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user", "status"], name="purchase_user_status_idx"),
            models.Index(fields=["stripe_payment_intent_id"], name="purchase_payment_intent_idx"),
        ]

    def __str__(self):
        return f"Purchase<{self.id}:{self.status}>"

    @property
    def is_terminal(self) -> bool:
        return self.status in {self.Status.COMPLETED, self.Status.REFUNDED}


class Subscription(models.Model):
    """Local mirror of the user's Stripe subscription (one per user)."""

    STATUS_NONE = "none"

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="subscription",
    )
    stripe_customer_id = models.CharField(max_length=255, unique=True)
    stripe_subscription_id = models.CharField(max_length=255, blank=True)
    stripe_price_id = models.CharField(max_length=255, blank=True)
    interval = models.CharField(max_length=20, blank=True)
    status = models.CharField(
        max_length=32,
        default=STATUS_NONE,
        help_text="Mirrors the Stripe subscription status; 'none' when no subscription exists.",
    )
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)
    cancel_at_period_end = models.BooleanField(default=False)
    extra = models.JSONField(
        null=True,
        blank=True,
        help_text="Provider-derived details such as card brand and last4.",
    )
    last_synced_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_subscription"
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        ordering = ["-updated_at"]
        indexes = [
            models.Index(fields=["status"], name="subscription_status_idx"),
        ]

    def __str__(self):
        return f"Subscription<{self.user_id}:{self.status}>"

    @property
    def is_active(self) -> bool:
        return self.status in {"active", "trialing"}


class CreditTransaction(models.Model):
    """Append-only record of every mutation applied to a user's credit balance."""

    class Kind(models.TextChoices):
        PURCHASE_GRANT = "purchase_grant", "Purchase grant"
        PURCHASE_REVOKE = "purchase_revoke", "Purchase refund revocation"
        SUBSCRIPTION_CYCLE = "subscription_cycle", "Subscription period allotment"
        SUBSCRIPTION_UPGRADE = "subscription_upgrade", "Subscription upgrade difference"
        CONSUMPTION = "consumption", "Usage consumption"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="credit_transactions",
    )
    amount = models.IntegerField(help_text="Signed amount; positive grants credits, negative removes them.")
    kind = models.CharField(max_length=32, choices=Kind.choices)
    purchase = models.ForeignKey(
        Purchase,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="credit_transactions",
    )
    stripe_event_id = models.CharField(max_length=255, blank=True, null=True)
    stripe_subscription_id = models.CharField(max_length=255, blank=True, null=True)
    idempotency_key = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Deterministic key identifying the cause of this mutation.",
    )
    description = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    balance_after = models.IntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_credit_transaction"
        verbose_name = "Credit transaction"
        verbose_name_plural = "Credit transactions"
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(condition=~Q(amount=0), name="credit_transaction_non_zero_amount"),
            models.UniqueConstraint(
                fields=["idempotency_key"],
                condition=Q(idempotency_key__isnull=False),
                name="credit_transaction_idempotency",
            ),
        ]
        indexes = [
            models.Index(fields=["user", "created_at"], name="credit_tx_user_created_idx"),
            models.Index(fields=["stripe_event_id"], name="credit_tx_event_idx"),
        ]

    def __str__(self):
        return f"CreditTransaction<{self.user_id}:{self.amount}:{self.kind}>"


class WebhookEventLog(models.Model):
    """Keeps track of processed webhook events to guarantee idempotency."""

    class Status(models.TextChoices):
        RECEIVED = "received", "Received"
        PROCESSING = "processing", "Processing"
        PROCESSED = "processed", "Processed"
        IGNORED = "ignored", "Ignored"
        FAILED = "failed", "Failed"

    id = models.BigAutoField(primary_key=True)
    event_id = models.CharField(max_length=255, unique=True)
    payload_hash = models.CharField(
        max_length=64,
        blank=True,
        help_text="SHA256 of the raw payload for drift detection.",
    )
    event_type = models.CharField(max_length=255, blank=True)
    route = models.CharField(max_length=20, blank=True, help_text="Reconciliation path chosen for the event.")
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.RECEIVED,
    )
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    handled = models.BooleanField(
        default=False,
        help_text="True once the event has been fully processed.",
    )
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "billing_webhook_event_log"
        verbose_name = "Webhook event log"
        verbose_name_plural = "Webhook event logs"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="webhook_event_status_idx"),
            models.Index(fields=["event_type"], name="webhook_event_type_idx"),
        ]

    def __str__(self):
        return f"WebhookEventLog<{self.event_id}:{self.status}>"


class BillingEventDeadLetter(models.Model):
    """Persist Stripe events that could not be reconciled."""

    id = models.BigAutoField(primary_key=True)
    event_id = models.CharField(max_length=255, unique=True)
    event_type = models.CharField(max_length=255, blank=True)
    payload = models.JSONField(help_text="Raw event payload that failed processing.")
    failure_reason = models.TextField(help_text="Summary of why handling failed.")
    detail = models.TextField(blank=True)
    retry_count = models.PositiveIntegerField(default=0)
    last_attempt_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Most recent attempt timestamp.",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_event_dead_letter"
        verbose_name = "Billing dead-letter event"
        verbose_name_plural = "Billing dead-letter events"
        ordering = ["-created_at"]

    def __str__(self):
        return f"BillingEventDeadLetter<{self.event_id}>"
