"""
URL configuration for the Delivery Order Service.
"""
from django.contrib import admin
from django.urls import path, include
from django.http import JsonResponse


def health_check(request):
    """Health check endpoint for container orchestration."""
    return JsonResponse({'status': 'healthy', 'service': 'delivery-order-api'})


urlpatterns = [
    path('admin/', admin.site.urls),
    path('health/', health_check, name='health-check'),
    path('api/', include('orders.urls')),
    path('api/', include('payments.urls')),
    path('api/', include('tracking.urls')),
]
