"""
Management command that plays a driver moving toward an order's destination.

Positions are interpolated from a start point to the destination and pushed
through the same sharing loop a driver device runs, so the throttle and the
server-side endpoint are exercised end to end.

Usage:
    python manage.py simulate_driver 42 --token <driver token>
    python manage.py simulate_driver 42 --token <t> --start 52.50,13.38 --steps 30 --sample-interval 2
"""
import asyncio

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from orders.models import Order
from tracking.geo import Position, format_eta, haversine_km, estimate_eta_minutes
from tracking.sharing import HttpLocationSender, LocationSharer


def parse_point(value):
    try:
        lat, lng = (float(part) for part in value.split(','))
    except ValueError:
        raise CommandError(f'Expected "lat,lng", got {value!r}')
    return lat, lng


def route(start, end, steps):
    """Evenly spaced points from ``start`` to ``end``, both included."""
    for i in range(steps + 1):
        fraction = i / steps
        yield Position(
            start[0] + (end[0] - start[0]) * fraction,
            start[1] + (end[1] - start[1]) * fraction,
        )


class Command(BaseCommand):
    help = 'Simulate a delivery driver sharing their location for an order'

    def add_arguments(self, parser):
        parser.add_argument('order_id', type=int)
        parser.add_argument('--token', required=True, help='API token of the assigned driver')
        parser.add_argument(
            '--base-url',
            default='http://localhost:8000',
            help='API root (default: http://localhost:8000)',
        )
        parser.add_argument(
            '--start',
            type=parse_point,
            default=None,
            help='Start point as "lat,lng" (default: ~3 km north of the destination)',
        )
        parser.add_argument('--steps', type=int, default=20, help='Route points (default: 20)')
        parser.add_argument(
            '--sample-interval',
            type=float,
            default=1.0,
            help='Seconds between position samples (default: 1)',
        )

    def handle(self, *args, **options):
        try:
            order = Order.objects.get(pk=options['order_id'])
        except Order.DoesNotExist:
            raise CommandError(f"Order {options['order_id']} not found")

        destination = order.destination
        if destination is None:
            raise CommandError(f'Order {order.order_number} has no destination coordinates')
        if options['steps'] < 1:
            raise CommandError('--steps must be at least 1')

        start = options['start'] or (destination.lat + 0.027, destination.lng)
        distance = haversine_km(start, destination)
        eta = estimate_eta_minutes(distance, settings.DELIVERY_AVERAGE_SPEED_KMH)
        self.stdout.write(
            f'Driving {distance:.2f} km to {order.order_number} (ETA at average speed: {format_eta(eta)})'
        )

        points = route(start, destination, options['steps'])

        def next_point():
            return next(points, None)

        sender = HttpLocationSender(options['base_url'], options['token'], order_id=order.pk)
        sharer = LocationSharer(
            next_point,
            sender,
            min_interval=settings.LOCATION_MIN_INTERVAL_SECONDS,
            sample_interval=options['sample_interval'],
        )
        duration = (options['steps'] + 1) * options['sample_interval']
        try:
            asyncio.run(sharer.run_for(duration))
        finally:
            sender.close()

        if sharer.last_error:
            self.stdout.write(self.style.WARNING(f'Last push failed: {sharer.last_error}'))
        self.stdout.write(self.style.SUCCESS(
            f'Done: {sharer.sent_count} pushes sent, {sharer.dropped_count} samples throttled'
        ))
