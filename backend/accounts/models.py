from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """
    User model carrying the Stripe customer link and the prepaid credit balance
    """
    email = models.EmailField(unique=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    stripe_customer_id = models.CharField(
        max_length=255,
        unique=True,
        blank=True,
        null=True,
        help_text="Stripe customer identifier tied to this user.",
    )
    # Only billing.services.credit_ledger writes to this counter.
    credits = models.IntegerField(
        default=0,
        help_text="Prepaid usage credits available to the user.",
    )
    USERNAME_FIELD = 'username'
    REQUIRED_FIELDS = ['email']

    class Meta:
        db_table = 'user'
        verbose_name = 'User'
        verbose_name_plural = 'Users'

    def __str__(self):
        return self.username
