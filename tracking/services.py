"""
Location store and tracking facade.

Two positions are kept per delivery:
    - the driver's last-known position (on the user, visible across orders)
    - the order-scoped delivery position (on the order, only while the order
      is picked_up or on_the_way)

Every tracking view resolves the driver's coordinates with the same rule:
the order-scoped position wins; the driver's last-known position is the
fallback when the order has none.

Location pushes are not ordered: two racing requests can leave the older
sample stored. The driver-side throttle makes that rare, not impossible.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.utils import timezone

from accounts.actors import Actor
from core.exceptions import NotFoundError, ValidationError
from orders.models import Order
from orders.services import check_order_access, get_order, get_order_by_number
from .geo import Position, eta_between, format_eta, validate_coordinates

logger = logging.getLogger(__name__)

SOURCE_ORDER = 'order'
SOURCE_DRIVER = 'driver'

TRACKED_STATUSES = (Order.Status.ASSIGNED, Order.Status.PICKED_UP, Order.Status.ON_THE_WAY)


@dataclass(frozen=True)
class DriverCoords:
    lat: float
    lng: float
    updated_at: Optional[datetime]
    source: str


@dataclass(frozen=True)
class LocationUpdate:
    driver_position: Position
    updated_order_id: Optional[int]


# =============================================================================
# Location store
# =============================================================================

def find_active_order(driver_id: int, order_id: Optional[int] = None) -> Optional[Order]:
    """
    The order a driver's push belongs to.

    An explicit ``order_id`` must be one of the driver's active orders;
    otherwise the most recently updated active order is used.
    """
    queryset = Order.objects.filter(
        delivery_man_id=driver_id,
        status__in=Order.ACTIVE_DELIVERY_STATUSES,
    )
    if order_id is not None:
        return queryset.filter(pk=order_id).first()
    return queryset.order_by('-updated_at', '-created_at').first()


def set_driver_location(driver_id: int, lat: float, lng: float, at: datetime) -> Position:
    User = get_user_model()
    updated = User.objects.filter(pk=driver_id).update(
        last_latitude=lat, last_longitude=lng, last_location_at=at
    )
    if not updated:
        raise NotFoundError(f"Driver {driver_id} not found")
    return Position(lat, lng, at)


def set_order_location(order_id: int, lat: float, lng: float, at: datetime) -> bool:
    # Status filter re-checked at write time: the order may have been
    # delivered between lookup and write.
    return bool(
        Order.objects.filter(pk=order_id, status__in=Order.ACTIVE_DELIVERY_STATUSES).update(
            delivery_latitude=lat, delivery_longitude=lng, delivery_location_at=at
        )
    )


def record_driver_location(driver_id: int, lat: float, lng: float,
                           order_id: Optional[int] = None) -> LocationUpdate:
    """
    Store one location push.

    Writes the driver's last-known position and, when the driver has an
    active order (or names one), that order's delivery position.

    Raises:
        ValidationError: Coordinates out of range
        NotFoundError: Unknown driver
    """
    if not validate_coordinates(lat, lng):
        raise ValidationError(f"Invalid coordinates ({lat}, {lng})")

    now = timezone.now()
    position = set_driver_location(driver_id, lat, lng, now)

    updated_order_id = None
    order = find_active_order(driver_id, order_id)
    if order is not None and set_order_location(order.pk, lat, lng, now):
        updated_order_id = order.pk
    elif order_id is not None:
        logger.info(f"Driver {driver_id} named order {order_id} but it is not an active delivery of theirs")

    logger.debug(f"Driver {driver_id} at ({lat:.5f}, {lng:.5f}), order={updated_order_id}")
    return LocationUpdate(driver_position=position, updated_order_id=updated_order_id)


# =============================================================================
# Tracking facade
# =============================================================================

def resolve_driver_coords(order: Order) -> Optional[DriverCoords]:
    """Best available driver position for an order, tagged with its source."""
    position = order.delivery_position
    if position is not None:
        return DriverCoords(position.lat, position.lng, position.updated_at, SOURCE_ORDER)

    driver = order.delivery_man
    position = driver.last_location if driver is not None else None
    if position is not None:
        return DriverCoords(position.lat, position.lng, position.updated_at, SOURCE_DRIVER)
    return None


def _coords_dict(coords: Optional[DriverCoords]) -> Optional[dict]:
    if coords is None:
        return None
    return {
        'lat': coords.lat,
        'lng': coords.lng,
        'updated_at': coords.updated_at,
        'source': coords.source,
    }


def build_tracking_view(order: Order) -> dict:
    destination = order.destination
    driver_coords = resolve_driver_coords(order)
    eta = eta_between(
        (driver_coords.lat, driver_coords.lng) if driver_coords else None,
        destination,
        settings.DELIVERY_AVERAGE_SPEED_KMH,
    )
    driver = order.delivery_man

    return {
        'id': order.pk,
        'order_number': order.order_number,
        'status': order.status,
        'payment_status': order.payment_status,
        'created_at': order.created_at,
        'updated_at': order.updated_at,
        'estimated_delivery': order.estimated_delivery,
        'actual_delivery': order.actual_delivery,
        'delivery_address': {
            'street': order.street,
            'city': order.city,
            'state': order.state,
            'zip_code': order.zip_code,
        },
        'destination_coords': destination._asdict() if destination else None,
        'driver_coords': _coords_dict(driver_coords),
        'eta_minutes': eta,
        'eta_text': format_eta(eta),
        'delivery_man': {
            'id': driver.pk,
            'name': driver.get_full_name() or driver.username,
            'phone': driver.phone,
        } if driver else None,
        'poll_interval_seconds': settings.TRACKING_POLL_INTERVAL_SECONDS,
    }


def get_order_tracking(order_id: int, actor: Actor) -> dict:
    """
    Tracking view for one order: admin, the owning customer, or the
    assigned driver.
    """
    order = get_order(order_id)
    check_order_access(order, actor)
    return build_tracking_view(order)


def get_order_tracking_by_number(order_number: str, actor: Actor) -> dict:
    """Same view as get_order_tracking, looked up by the customer-facing number."""
    order = get_order_by_number(order_number)
    check_order_access(order, actor)
    return build_tracking_view(order)


def list_active_deliveries(status: Optional[str] = None, has_coords: Optional[bool] = None) -> dict:
    """Admin overview of orders out for delivery, with the same coordinate rule."""
    queryset = Order.objects.select_related('customer', 'delivery_man').filter(
        status__in=TRACKED_STATUSES
    )
    if status in TRACKED_STATUSES:
        queryset = queryset.filter(status=status)

    views = [build_tracking_view(order) for order in queryset.order_by('-updated_at', '-created_at')]

    summary = {
        'total': len(views),
        'with_driver_coords': sum(1 for v in views if v['driver_coords']),
        'without_driver_coords': sum(1 for v in views if not v['driver_coords']),
        'by_status': {
            tracked.value: sum(1 for v in views if v['status'] == tracked)
            for tracked in TRACKED_STATUSES
        },
    }

    if has_coords is True:
        views = [v for v in views if v['driver_coords']]
    elif has_coords is False:
        views = [v for v in views if not v['driver_coords']]

    return {'orders': views, 'summary': summary}


def driver_location_summary(driver) -> dict:
    """What a driver sees about their own sharing state."""
    active = find_active_order(driver.pk)
    last = driver.last_location
    return {
        'driver': {
            'id': driver.pk,
            'name': driver.get_full_name() or driver.username,
            'last_location': last._asdict() if last else None,
        },
        'active_order': {
            'id': active.pk,
            'order_number': active.order_number,
            'status': active.status,
            'delivery_location': active.delivery_position._asdict() if active.delivery_position else None,
        } if active else None,
        'min_push_interval_seconds': settings.LOCATION_MIN_INTERVAL_SECONDS,
    }
