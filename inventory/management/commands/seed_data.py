"""
Management command to seed the database with sample data.

Generates:
- Products with stock
- An admin, customers and delivery drivers (with API tokens)
- Orders in every status, with consistent history and payment fields

Usage:
    python manage.py seed_data
    python manage.py seed_data --clear  # Clear existing data first
"""
import random
import uuid
from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction
from django.db.models import F
from django.utils import timezone
from rest_framework.authtoken.models import Token

from inventory.models import Product
from orders.models import Order, OrderItem, OrderStatusHistory, RESTOCK_NOTE

User = get_user_model()

SEED_PASSWORD = 'delivery-demo'

# (street, city, state, zip, lat, lng)
ADDRESSES = [
    ('350 5th Ave', 'New York', 'NY', '10118', 40.7484, -73.9857),
    ('1 Ferry Building', 'San Francisco', 'CA', '94111', 37.7955, -122.3937),
    ('233 S Wacker Dr', 'Chicago', 'IL', '60606', 41.8789, -87.6359),
    ('400 Broad St', 'Seattle', 'WA', '98109', 47.6205, -122.3493),
    ('700 Clark Ave', 'St. Louis', 'MO', '63102', 38.6226, -90.1928),
    ('1600 Pennsylvania Ave NW', 'Washington', 'DC', '20500', 38.8977, -77.0365),
]

PRODUCT_NAMES = [
    'Margherita Pizza', 'Pad Thai', 'Caesar Salad', 'Chicken Burrito',
    'Sushi Platter', 'Falafel Wrap', 'Ramen Bowl', 'Cheeseburger',
    'Greek Yogurt', 'Cold Brew Coffee', 'Sparkling Water 6-pack', 'Brownie Box',
]

# Status path each seeded order walks to reach its final status
STATUS_PATHS = {
    Order.Status.PENDING: [],
    Order.Status.CONFIRMED: [Order.Status.CONFIRMED],
    Order.Status.ASSIGNED: [Order.Status.CONFIRMED, Order.Status.ASSIGNED],
    Order.Status.PICKED_UP: [Order.Status.CONFIRMED, Order.Status.ASSIGNED, Order.Status.PICKED_UP],
    Order.Status.ON_THE_WAY: [
        Order.Status.CONFIRMED, Order.Status.ASSIGNED, Order.Status.PICKED_UP, Order.Status.ON_THE_WAY,
    ],
    Order.Status.DELIVERED: [
        Order.Status.CONFIRMED, Order.Status.ASSIGNED, Order.Status.PICKED_UP,
        Order.Status.ON_THE_WAY, Order.Status.DELIVERED,
    ],
    Order.Status.CANCELLED: [Order.Status.CANCELLED],
}


class Command(BaseCommand):
    help = 'Seed the database with sample products, users and orders in every status'

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing data before seeding',
        )
        parser.add_argument(
            '--customers',
            type=int,
            default=5,
            help='Number of customers to create (default: 5)',
        )
        parser.add_argument(
            '--drivers',
            type=int,
            default=3,
            help='Number of delivery drivers to create (default: 3)',
        )
        parser.add_argument(
            '--orders-per-status',
            type=int,
            default=2,
            help='Orders to create for each status (default: 2)',
        )

    def handle(self, *args, **options):
        if options['clear']:
            self.stdout.write('Clearing existing data...')
            self._clear_data()

        self.stdout.write('Starting database seeding...')

        with transaction.atomic():
            products = self._create_products()
            admin, customers, drivers = self._create_users(options['customers'], options['drivers'])
            self._create_orders(options['orders_per_status'], products, customers, drivers)

        self.stdout.write(self.style.SUCCESS('Database seeding completed successfully!'))
        self.stdout.write(f'All seeded users share the password "{SEED_PASSWORD}".')
        for driver in drivers:
            token, _ = Token.objects.get_or_create(user=driver)
            self.stdout.write(f'  {driver.username}: token {token.key}')

    def _clear_data(self):
        """Clear all existing data. History and items go with their orders."""
        Order.objects.all().delete()
        Product.objects.all().delete()
        User.objects.filter(is_superuser=False).delete()

        self.stdout.write(self.style.WARNING('All existing data cleared.'))

    def _create_products(self):
        products = []
        for name in PRODUCT_NAMES:
            product, created = Product.objects.get_or_create(
                title=name,
                defaults={
                    'description': f'Freshly prepared {name.lower()}.',
                    'price': Decimal(str(round(random.uniform(4, 30), 2))),
                    'stock': random.randint(20, 200),
                },
            )
            products.append(product)
            if created:
                self.stdout.write(f'  Created product: {name}')

        self.stdout.write(self.style.SUCCESS(f'Created {len(products)} products'))
        return products

    def _create_user(self, username, role, **extra):
        user, created = User.objects.get_or_create(
            username=username,
            defaults={'role': role, 'email': f'{username}@example.com', **extra},
        )
        if created:
            user.set_password(SEED_PASSWORD)
            user.save(update_fields=['password'])
        return user

    def _create_users(self, customer_count, driver_count):
        admin = self._create_user('admin', User.Role.ADMIN, is_staff=True, first_name='Ada')
        customers = [
            self._create_user(f'customer{i + 1}', User.Role.CUSTOMER, first_name=f'Customer {i + 1}')
            for i in range(customer_count)
        ]
        drivers = [
            self._create_user(
                f'driver{i + 1}', User.Role.DELIVERY,
                first_name=f'Driver {i + 1}', phone=f'+1555000{i + 1:04d}',
            )
            for i in range(driver_count)
        ]

        self.stdout.write(self.style.SUCCESS(
            f'Created 1 admin, {len(customers)} customers, {len(drivers)} drivers'
        ))
        return admin, customers, drivers

    def _create_orders(self, per_status, products, customers, drivers):
        created = 0
        for status, path in STATUS_PATHS.items():
            for _ in range(per_status):
                self._create_order(status, path, products, random.choice(customers), random.choice(drivers))
                created += 1

        self.stdout.write(self.style.SUCCESS(f'Created {created} orders'))

    def _create_order(self, status, path, products, customer, driver):
        street, city, state, zip_code, lat, lng = random.choice(ADDRESSES)
        placed_at = timezone.now() - timedelta(minutes=random.randint(30, 600))
        is_cod = status != Order.Status.PENDING and random.random() < 0.25

        order = Order.objects.create(
            order_number=f'ORD-{uuid.uuid4().hex[:10].upper()}',
            customer=customer,
            payment_method=Order.PaymentMethod.CASH_ON_DELIVERY if is_cod else Order.PaymentMethod.PROCESSOR,
            payment_intent_id='' if is_cod else f'pi_seed_{uuid.uuid4().hex[:16]}',
            street=street,
            city=city,
            state=state,
            zip_code=zip_code,
            destination_latitude=lat,
            destination_longitude=lng,
            delivery_fee=Decimal('3.99'),
        )

        subtotal = Decimal('0.00')
        reserved = []
        for product in random.sample(products, k=random.randint(1, 3)):
            quantity = random.randint(1, 3)
            OrderItem.objects.create(
                order=order, product=product, name=product.title,
                quantity=quantity, unit_price=product.price,
            )
            # Reserve stock the way checkout would; skip when sold out
            if Product.objects.filter(pk=product.pk, stock__gte=quantity).update(stock=F('stock') - quantity):
                reserved.append((product.pk, quantity))
            subtotal += product.price * quantity

        history = [OrderStatusHistory(order=order, status=Order.Status.PENDING,
                                      timestamp=placed_at, note='Order placed')]
        at = placed_at
        fields = {}
        for step in path:
            at += timedelta(minutes=random.randint(2, 15))
            note = ''
            if step == Order.Status.CONFIRMED and not is_cod:
                fields.update(payment_status=Order.PaymentStatus.PAID, paid_at=at)
                note = 'Payment succeeded'
            elif step == Order.Status.ASSIGNED:
                fields['delivery_man'] = driver
            elif step in Order.ACTIVE_DELIVERY_STATUSES:
                # Somewhere within ~2 km of the destination
                fields.update(
                    delivery_latitude=lat + random.uniform(-0.015, 0.015),
                    delivery_longitude=lng + random.uniform(-0.015, 0.015),
                    delivery_location_at=at,
                )
            elif step == Order.Status.DELIVERED:
                fields['actual_delivery'] = at
                if is_cod:
                    fields.update(payment_status=Order.PaymentStatus.PAID, paid_at=at)
            elif step == Order.Status.CANCELLED:
                fields.update(cancelled_at=at, cancellation_reason='Customer cancelled')
                note = 'Customer cancelled'
            history.append(OrderStatusHistory(order=order, status=step, timestamp=at, note=note))

        if status == Order.Status.CANCELLED:
            for product_id, quantity in reserved:
                Product.increment_stock(product_id, quantity)
            history.append(OrderStatusHistory(
                order=order, status=status, timestamp=at, note=RESTOCK_NOTE
            ))

        OrderStatusHistory.objects.bulk_create(history)

        tax = (subtotal * Decimal('0.08')).quantize(Decimal('0.01'))
        Order.objects.filter(pk=order.pk).update(
            status=status,
            version=len(path),
            subtotal=subtotal,
            tax=tax,
            total_amount=subtotal + tax + order.delivery_fee,
            created_at=placed_at,
            **fields
        )
