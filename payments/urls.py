"""
URL routing for payment endpoints.
"""
from django.urls import path
from . import views

app_name = 'payments'

urlpatterns = [
    path('payments/webhook/', views.PaymentWebhookView.as_view(), name='payment-webhook'),
    path('admin/orders/<int:pk>/sync-payment/', views.SyncPaymentView.as_view(), name='sync-payment'),
    path('admin/orders/<int:pk>/refund/', views.RefundView.as_view(), name='refund'),
]
