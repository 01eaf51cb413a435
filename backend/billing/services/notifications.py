"""Outbound notifications triggered by billing state changes."""
from __future__ import annotations

import logging
from smtplib import SMTPException

from django.conf import settings
from django.core.mail import BadHeaderError, send_mail
from django.template.loader import render_to_string
from django.utils.html import strip_tags

from billing.models import Purchase
from billing.services.price_catalog import get_repository_product

logger = logging.getLogger(__name__)

REPOSITORY_ACCESS_TEMPLATE = "billing/emails/repository_access.html"


def send_repository_access_email(purchase: Purchase) -> bool:
    """Email the buyer of a repository product; returns whether a message went out.

    Delivery problems are logged and swallowed: the purchase is already
    committed and must not be rolled back or retried because of mail.
    """

    repository = get_repository_product(purchase.product)
    if repository is None:
        return False

    user = purchase.user
    if not user.email:
        logger.warning("Cannot send repository access email for purchase %s: user %s has no email.",
                       purchase.pk, user.pk)
        return False

    context = {
        "purchase": purchase,
        "repository": repository,
        "first_name": user.first_name,
        "site_name": getattr(settings, "SITE_NAME", "Our Platform"),
        "site_url": getattr(settings, "SITE_URL", ""),
    }

    try:
        html_message = render_to_string(REPOSITORY_ACCESS_TEMPLATE, context)
        send_mail(
            subject=f"Repository Access: {repository.name}",
            message=strip_tags(html_message),
            from_email=settings.DEFAULT_FROM_EMAIL,
            recipient_list=[user.email],
            html_message=html_message,
            fail_silently=False,
        )
    except (SMTPException, BadHeaderError, OSError) as exc:
        logger.error("Failed to send repository access email for purchase %s: %s", purchase.pk, exc)
        return False

    logger.info("Repository access email sent to %s for purchase %s.", user.email, purchase.pk)
    return True


def notify_purchase_completed(purchase_id) -> None:
    """``transaction.on_commit`` hook run after a purchase reaches COMPLETED."""

    purchase = Purchase.objects.select_related("user").filter(pk=purchase_id).first()
    if purchase is None or purchase.status != Purchase.Status.COMPLETED:
        return
    send_repository_access_email(purchase)
