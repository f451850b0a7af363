"""
URL routing for location and tracking endpoints.
"""
from django.urls import path
from . import views

app_name = 'tracking'

urlpatterns = [
    path('location/', views.LocationView.as_view(), name='driver-location'),
    path('orders/<int:pk>/tracking/', views.OrderTrackingView.as_view(), name='order-tracking'),
    path(
        'orders/tracking/<str:order_number>/',
        views.OrderNumberTrackingView.as_view(),
        name='order-number-tracking',
    ),
    path('admin/tracking/active/', views.ActiveDeliveriesView.as_view(), name='active-deliveries'),
]
