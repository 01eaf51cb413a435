from django.contrib import admin
from django.urls import reverse
from django.utils.html import format_html

from .models import (
    BillingEventDeadLetter,
    CreditTransaction,
    Purchase,
    Subscription,
    WebhookEventLog,
)


def _user_change_link(user):
    if user is None:
        return "-"
    url = reverse("admin:accounts_user_change", args=[user.pk])
    return format_html('<a href="{}">{}</a>', url, user.email or user.username)


@admin.register(Purchase)
class PurchaseAdmin(admin.ModelAdmin):
    """Inspect one-time purchases and their Stripe references."""

    list_display = ("id", "user_link", "product", "status", "amount", "currency", "created_at", "completed_at")
    search_fields = ("id", "user__email", "user__username", "product", "stripe_session_id", "stripe_payment_intent_id")
    list_filter = ("status", "product", "currency", "created_at")
    readonly_fields = (
        "id",
        "stripe_session_id",
        "stripe_payment_intent_id",
        "completed_at",
        "metadata",
        "created_at",
        "updated_at",
    )
    ordering = ("-created_at",)
    list_select_related = ("user",)
    raw_id_fields = ("user",)

    fieldsets = (
        ("Purchase", {"fields": ("id", "user", "product", "description", "status")}),
        ("Amount", {"fields": ("amount", "currency", "stripe_price_id")}),
        ("Stripe", {"fields": ("stripe_session_id", "stripe_payment_intent_id", "metadata")}),
        ("Timestamps", {"fields": ("completed_at", "created_at", "updated_at")}),
    )

    @admin.display(description="User")
    def user_link(self, obj):
        return _user_change_link(obj.user)


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """Read-only mirror of each user's Stripe subscription."""

    list_display = (
        "user_link",
        "status",
        "stripe_price_id",
        "interval",
        "current_period_end",
        "cancel_at_period_end",
        "last_synced_at",
    )
    search_fields = ("user__email", "stripe_customer_id", "stripe_subscription_id", "stripe_price_id")
    list_filter = ("status", "interval", "cancel_at_period_end")
    readonly_fields = (
        "stripe_customer_id",
        "stripe_subscription_id",
        "stripe_price_id",
        "interval",
        "status",
        "current_period_start",
        "current_period_end",
        "cancel_at_period_end",
        "extra",
        "last_synced_at",
        "created_at",
        "updated_at",
    )
    ordering = ("-updated_at",)
    list_select_related = ("user",)
    raw_id_fields = ("user",)

    @admin.display(description="User")
    def user_link(self, obj):
        return _user_change_link(obj.user)


@admin.register(CreditTransaction)
class CreditTransactionAdmin(admin.ModelAdmin):
    """Read-only audit trail for credit movements."""

    list_display = ("created_at", "user_link", "kind", "amount", "balance_after", "idempotency_key")
    search_fields = ("id", "user__email", "idempotency_key", "stripe_event_id", "stripe_subscription_id")
    list_filter = ("kind", "created_at")
    ordering = ("-created_at",)
    list_select_related = ("user",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    @admin.display(description="User")
    def user_link(self, obj):
        return _user_change_link(obj.user)


@admin.register(WebhookEventLog)
class WebhookEventLogAdmin(admin.ModelAdmin):
    """Monitor webhook processing progress and failures."""

    list_display = (
        "event_id",
        "event_type",
        "route",
        "status",
        "handled",
        "attempts",
        "created_at",
        "processed_at",
        "last_error_short",
    )
    search_fields = ("event_id", "event_type")
    list_filter = ("status", "route", "handled", "created_at", "processed_at")
    readonly_fields = (
        "event_id",
        "event_type",
        "route",
        "status",
        "attempts",
        "payload_hash",
        "created_at",
        "processed_at",
        "last_error",
    )
    ordering = ("-created_at",)

    fieldsets = (
        ("Event", {"fields": ("event_id", "event_type", "route", "status", "handled")}),
        ("Processing", {"fields": ("attempts", "payload_hash", "last_error", "created_at", "processed_at")}),
    )

    @admin.display(description="Last error")
    def last_error_short(self, obj):
        if not obj.last_error:
            return "-"
        return obj.last_error if len(obj.last_error) <= 80 else f"{obj.last_error[:77]}..."


@admin.register(BillingEventDeadLetter)
class BillingEventDeadLetterAdmin(admin.ModelAdmin):
    """Allow support to inspect failed webhook events before replaying them."""

    list_display = ("event_id", "event_type", "failure_reason", "retry_count", "last_attempt_at", "created_at")
    search_fields = ("event_id", "event_type", "failure_reason")
    list_filter = ("event_type", "failure_reason", "created_at")
    readonly_fields = (
        "event_id",
        "event_type",
        "payload",
        "failure_reason",
        "detail",
        "retry_count",
        "last_attempt_at",
        "created_at",
    )
    ordering = ("-created_at",)

    fieldsets = (
        ("Event", {"fields": ("event_id", "event_type", "retry_count", "last_attempt_at", "created_at")}),
        ("Payload", {"fields": ("payload", "failure_reason", "detail")}),
    )
