"""
Django Admin configuration for users.
"""
from django.contrib import admin
from django.contrib.auth.admin import UserAdmin

from .models import User


@admin.register(User)
class DeliveryUserAdmin(UserAdmin):
    list_display = ['username', 'email', 'role', 'is_active', 'last_location_at']
    list_filter = ['role', 'is_active', 'is_staff']
    readonly_fields = ['last_latitude', 'last_longitude', 'last_location_at']
    fieldsets = UserAdmin.fieldsets + (
        ('Delivery', {'fields': ('role', 'phone', 'last_latitude', 'last_longitude', 'last_location_at')}),
    )
    add_fieldsets = UserAdmin.add_fieldsets + (
        ('Delivery', {'fields': ('role', 'phone')}),
    )
