"""
Inventory Models - catalog items and their stock counters.

The stock counter is shared by every order: checkout reserves from it and
cancellation returns to it. Writers always use ``F()`` increments so two
concurrent callers never lose an update.
"""
from decimal import Decimal

from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F


class Product(models.Model):
    """
    Catalog item available for delivery.
    """
    title = models.CharField(
        max_length=200,
        db_index=True,
        help_text="Product title for display and search"
    )
    description = models.TextField(blank=True, default='')
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))],
        help_text="Product price (must be positive)"
    )
    stock = models.PositiveIntegerField(
        default=0,
        help_text="Units available to order"
    )
    low_stock_threshold = models.PositiveIntegerField(
        default=10,
        help_text="Threshold for low stock alerts"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether product is available for ordering"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Product'
        verbose_name_plural = 'Products'
        ordering = ['title']
        indexes = [
            models.Index(fields=['title', 'is_active'], name='product_title_active_idx'),
            models.Index(fields=['stock'], name='product_stock_idx'),
        ]

    def __str__(self):
        return f"{self.title} (${self.price})"

    @property
    def is_low_stock(self) -> bool:
        """Check if stock is at or below the low stock threshold."""
        return self.stock <= self.low_stock_threshold

    @property
    def is_out_of_stock(self) -> bool:
        return self.stock == 0

    @classmethod
    def increment_stock(cls, product_id: int, quantity: int) -> int:
        """Atomic counter bump; returns the number of rows updated."""
        return cls.objects.filter(pk=product_id).update(stock=F('stock') + quantity)
