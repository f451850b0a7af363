"""
Django Admin configuration for catalog items.
"""
from django.contrib import admin
from .models import Product


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ['id', 'title', 'price', 'stock', 'is_low_stock', 'is_active']
    list_filter = ['is_active']
    search_fields = ['title', 'description']
    ordering = ['title']

    def is_low_stock(self, obj):
        return obj.is_low_stock
    is_low_stock.boolean = True
    is_low_stock.short_description = 'Low stock'
