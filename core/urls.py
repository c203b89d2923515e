# core/urls.py

from django.urls import path, include
from rest_framework.routers import DefaultRouter

from . import views

router = DefaultRouter()
router.register(r'services', views.ServiceViewSet, basename='services')
router.register(r'bookings', views.BookingViewSet, basename='bookings')
router.register(r'disputes', views.DisputeViewSet, basename='disputes')
router.register(r'payouts', views.PayoutViewSet, basename='payouts')

urlpatterns = [
    path('', include(router.urls)),

    # Notification endpoints
    path('notifications/', views.list_notifications, name='list_notifications'),
    path('notifications/read/<int:pk>/', views.mark_as_read, name='mark_notification_read'),
    path('notifications/read_all/', views.mark_all_read, name='mark_all_notifications_read'),
    path('notifications/unread/count/', views.unread_count, name='unread_notification_count'),

    # Paystack (signature-verified, no auth)
    path('webhooks/paystack/', views.paystack_webhook, name='paystack_webhook'),
]
