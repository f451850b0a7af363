"""
User model - customers, delivery drivers and admins share one table.

Drivers additionally carry their last-known position, which is visible
across every order they deliver.
"""
from typing import Optional

from django.contrib.auth.models import AbstractUser
from django.db import models

from tracking.geo import Position


class User(AbstractUser):
    """
    Application user with a single role.

    Role:
        - CUSTOMER: places and may cancel their own orders
        - DELIVERY: moves assigned orders along and pushes location
        - ADMIN: unrestricted order, payment and tracking access
    """

    class Role(models.TextChoices):
        CUSTOMER = 'customer', 'Customer'
        DELIVERY = 'delivery', 'Delivery'
        ADMIN = 'admin', 'Admin'

    role = models.CharField(
        max_length=20,
        choices=Role.choices,
        default=Role.CUSTOMER,
        db_index=True,
        help_text="Role used for order authorization"
    )
    phone = models.CharField(max_length=30, blank=True, default='')
    last_latitude = models.FloatField(null=True, blank=True)
    last_longitude = models.FloatField(null=True, blank=True)
    last_location_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the driver last pushed a position"
    )

    @property
    def is_admin_role(self) -> bool:
        return self.is_superuser or self.role == self.Role.ADMIN

    @property
    def is_delivery(self) -> bool:
        return self.role == self.Role.DELIVERY

    @property
    def last_location(self) -> Optional[Position]:
        if self.last_latitude is None or self.last_longitude is None:
            return None
        return Position(self.last_latitude, self.last_longitude, self.last_location_at)
