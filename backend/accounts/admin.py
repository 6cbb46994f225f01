from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from .models import PrivateClinic, Therapist, User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """
    User admin configuration
    """
    list_display = (
        'username', 'email', 'first_name', 'last_name',
        'role', 'is_active', 'created_at'
    )
    list_filter = ('is_active', 'is_staff', 'is_superuser', 'role', 'created_at')
    search_fields = ('username', 'email', 'first_name', 'last_name')
    ordering = ('-created_at',)
    readonly_fields = ('created_at', 'updated_at')

    fieldsets = BaseUserAdmin.fieldsets + (
        ('Tenant', {
            'fields': ('role',)
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at')
        }),
    )

    add_fieldsets = BaseUserAdmin.add_fieldsets + (
        ('Tenant', {
            'fields': ('email', 'role')
        }),
    )


class BillableAccountAdmin(admin.ModelAdmin):
    list_display = ('full_name', 'email', 'owner', 'stripe_customer_id', 'subscription_plan', 'created_at')
    search_fields = ('full_name', 'email', 'stripe_customer_id', 'owner__username')
    list_select_related = ('owner', 'subscription_plan')
    readonly_fields = ('id', 'created_at', 'updated_at')
    raw_id_fields = ('owner',)


admin.site.register(PrivateClinic, BillableAccountAdmin)
admin.site.register(Therapist, BillableAccountAdmin)
