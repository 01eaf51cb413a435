"""Price and product configuration used by the billing flows."""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Mapping, Optional

from django.conf import settings

logger = logging.getLogger(__name__)

ONE_TIME = "one_time"
SUBSCRIPTION = "subscription"


class CatalogConfigurationError(Exception):
    """Raised when the price catalog in settings is missing or malformed."""


@dataclass(frozen=True)
class RepositoryProduct:
    """A product delivered as read access to a private code repository."""

    key: str
    name: str
    owner: str
    repo: str


def _get_price_table(kind: str) -> Mapping[str, object]:
    price_credits = getattr(settings, "BILLING_PRICE_CREDITS", {}) or {}
    if not isinstance(price_credits, Mapping):
        raise CatalogConfigurationError("BILLING_PRICE_CREDITS must be a mapping.")

    table = price_credits.get(kind) or {}
    if not isinstance(table, Mapping):
        raise CatalogConfigurationError(f"BILLING_PRICE_CREDITS['{kind}'] must map price ids to credits.")
    return table


def get_credits_for_price(price_id: Optional[str], *, subscription: bool = False) -> int:
    """Return the credits granted by ``price_id``.

    One-time and subscription prices live in separate tables, so a price only
    grants credits in the flow it was configured for. Unknown prices grant 0.
    """

    if not price_id:
        return 0

    table = _get_price_table(SUBSCRIPTION if subscription else ONE_TIME)
    raw_value = table.get(price_id)
    if raw_value is None:
        return 0

    try:
        credits = int(raw_value)
    except (TypeError, ValueError) as exc:
        raise CatalogConfigurationError(f"Credits for price '{price_id}' must be an integer.") from exc

    if credits < 0:
        raise CatalogConfigurationError(f"Credits for price '{price_id}' cannot be negative.")
    return credits


def is_known_one_time_price(price_id: str) -> bool:
    return price_id in _get_price_table(ONE_TIME)


def is_known_subscription_price(price_id: str) -> bool:
    return price_id in _get_price_table(SUBSCRIPTION)


def get_repository_product(product_key: Optional[str]) -> Optional[RepositoryProduct]:
    if not product_key:
        return None

    products = getattr(settings, "BILLING_REPOSITORY_PRODUCTS", {}) or {}
    configured = products.get(product_key) if isinstance(products, Mapping) else None
    if not isinstance(configured, Mapping):
        return None

    owner = configured.get("owner")
    repo = configured.get("repo")
    if not owner or not repo:
        logger.warning("Repository product '%s' is missing owner/repo configuration.", product_key)
        return None

    return RepositoryProduct(
        key=product_key,
        name=str(configured.get("name") or repo),
        owner=str(owner),
        repo=str(repo),
    )
