from decimal import Decimal
import uuid

import billing.models
from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("accounts", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Purchase",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("product", models.CharField(help_text="Internal product identifier.", max_length=100)),
                ("amount", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("currency", models.CharField(default=billing.models._default_currency, max_length=10)),
                ("description", models.TextField(blank=True)),
                ("status", models.CharField(choices=[("PENDING", "Pending"), ("COMPLETED", "Completed"), ("FAILED", "Failed"), ("REFUNDED", "Refunded")], default="PENDING", max_length=16)),
                ("stripe_price_id", models.CharField(blank=True, max_length=255)),
                ("stripe_payment_intent_id", models.CharField(blank=True, max_length=255, null=True)),
                ("stripe_session_id", models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.ForeignKey(help_text="User who owns the purchase.", on_delete=django.db.models.deletion.PROTECT, related_name="purchases", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Purchase",
                "verbose_name_plural": "Purchases",
                "db_table": "billing_purchase",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["user", "status"], name="purchase_user_status_idx"),
                    models.Index(fields=["stripe_payment_intent_id"], name="purchase_payment_intent_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("stripe_customer_id", models.CharField(max_length=255, unique=True)),
                ("stripe_subscription_id", models.CharField(blank=True, max_length=255)),
                ("stripe_price_id", models.CharField(blank=True, max_length=255)),
                ("interval", models.CharField(blank=True, max_length=20)),
                ("status", models.CharField(default="none", help_text="Mirrors the Stripe subscription status; 'none' when no subscription exists.", max_length=32)),
                ("current_period_start", models.DateTimeField(blank=True, null=True)),
                ("current_period_end", models.DateTimeField(blank=True, null=True)),
                ("cancel_at_period_end", models.BooleanField(default=False)),
                ("extra", models.JSONField(blank=True, help_text="Provider-derived details such as card brand and last4.", null=True)),
                ("last_synced_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="subscription", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "db_table": "billing_subscription",
                "ordering": ["-updated_at"],
                "indexes": [models.Index(fields=["status"], name="subscription_status_idx")],
            },
        ),
        migrations.CreateModel(
            name="CreditTransaction",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("amount", models.IntegerField(help_text="Signed amount; positive grants credits, negative removes them.")),
                ("kind", models.CharField(choices=[("purchase_grant", "Purchase grant"), ("purchase_revoke", "Purchase refund revocation"), ("subscription_cycle", "Subscription period allotment"), ("subscription_upgrade", "Subscription upgrade difference"), ("consumption", "Usage consumption")], max_length=32)),
                ("stripe_event_id", models.CharField(blank=True, max_length=255, null=True)),
                ("stripe_subscription_id", models.CharField(blank=True, max_length=255, null=True)),
                ("idempotency_key", models.CharField(blank=True, help_text="Deterministic key identifying the cause of this mutation.", max_length=255, null=True)),
                ("description", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("balance_after", models.IntegerField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("purchase", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="credit_transactions", to="billing.purchase")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="credit_transactions", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "verbose_name": "Credit transaction",
                "verbose_name_plural": "Credit transactions",
                "db_table": "billing_credit_transaction",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["user", "created_at"], name="credit_tx_user_created_idx"),
                    models.Index(fields=["stripe_event_id"], name="credit_tx_event_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=~models.Q(amount=0), name="credit_transaction_non_zero_amount"),
                    models.UniqueConstraint(condition=models.Q(idempotency_key__isnull=False), fields=["idempotency_key"], name="credit_transaction_idempotency"),
                ],
            },
        ),
        migrations.CreateModel(
            name="WebhookEventLog",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_id", models.CharField(max_length=255, unique=True)),
                ("payload_hash", models.CharField(blank=True, help_text="SHA256 of the raw payload for drift detection.", max_length=64)),
                ("event_type", models.CharField(blank=True, max_length=255)),
                ("route", models.CharField(blank=True, help_text="Reconciliation path chosen for the event.", max_length=20)),
                ("status", models.CharField(choices=[("received", "Received"), ("processing", "Processing"), ("processed", "Processed"), ("ignored", "Ignored"), ("failed", "Failed")], default="received", max_length=20)),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("last_error", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("handled", models.BooleanField(default=False, help_text="True once the event has been fully processed.")),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "verbose_name": "Webhook event log",
                "verbose_name_plural": "Webhook event logs",
                "db_table": "billing_webhook_event_log",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status"], name="webhook_event_status_idx"),
                    models.Index(fields=["event_type"], name="webhook_event_type_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BillingEventDeadLetter",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("event_id", models.CharField(max_length=255, unique=True)),
                ("event_type", models.CharField(blank=True, max_length=255)),
                ("payload", models.JSONField(help_text="Raw event payload that failed processing.")),
                ("failure_reason", models.TextField(help_text="Summary of why handling failed.")),
                ("detail", models.TextField(blank=True)),
                ("retry_count", models.PositiveIntegerField(default=0)),
                ("last_attempt_at", models.DateTimeField(blank=True, help_text="Most recent attempt timestamp.", null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "verbose_name": "Billing dead-letter event",
                "verbose_name_plural": "Billing dead-letter events",
                "db_table": "billing_event_dead_letter",
                "ordering": ["-created_at"],
            },
        ),
    ]
