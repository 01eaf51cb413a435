from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """
    User admin configuration
    """
    list_display = (
        'username', 'email', 'stripe_customer_id', 'credits',
        'is_active', 'created_at'
    )
    list_filter = ('is_active', 'is_staff', 'is_superuser', 'created_at')
    search_fields = ('username', 'email', 'first_name', 'last_name', 'stripe_customer_id')
    ordering = ('-created_at',)
    # Balance changes go through the credit ledger, never through the admin form.
    readonly_fields = ('credits', 'created_at', 'updated_at')

    fieldsets = BaseUserAdmin.fieldsets + (
        ('Billing', {
            'fields': ('stripe_customer_id', 'credits')
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at')
        }),
    )
