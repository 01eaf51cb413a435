"""FilterSet definitions for billing endpoints."""
from __future__ import annotations

import django_filters

from billing.models import CreditTransaction, Purchase


class PurchaseFilter(django_filters.FilterSet):
    status = django_filters.CharFilter(field_name="status", lookup_expr="iexact")
    product = django_filters.CharFilter(field_name="product", lookup_expr="iexact")
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")

    class Meta:
        model = Purchase
        fields = ["status", "product"]


class CreditTransactionFilter(django_filters.FilterSet):
    kind = django_filters.CharFilter(field_name="kind", lookup_expr="iexact")
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")

    class Meta:
        model = CreditTransaction
        fields = ["kind"]
