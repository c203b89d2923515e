# core/utils/notifications.py

import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

logger = logging.getLogger(__name__)


def send_websocket_notification(user, message, notification_type='info'):
    """
    Send real-time notification via WebSocket + save to DB.
    """
    from core.models import Notification

    Notification.objects.create(
        user=user,
        message=message,
        notification_type=notification_type,
        read=False,
    )

    channel_layer = get_channel_layer()
    if channel_layer is None:
        return

    try:
        async_to_sync(channel_layer.group_send)(
            f'notifications_{user.id}',
            {
                'type': 'send_notification',
                'message': {
                    'type': notification_type,
                    'text': message,
                    'timestamp': timezone.now().isoformat()
                }
            }
        )
    except Exception as e:
        # Socket delivery is best effort; the DB row is the record
        logger.warning(f"WebSocket push to user {user.id} failed: {e}")


def notify_on_commit(user, message, notification_type='info'):
    """
    Queue a notification to go out once the surrounding transaction commits.

    A failed send is logged and never reaches the caller, so a state change
    that already committed is not reported as failed.
    """
    def _send():
        try:
            send_websocket_notification(user, message, notification_type)
        except Exception:
            logger.exception(f"Notification to user {user.id} failed ({notification_type})")

    transaction.on_commit(_send)


def notify_booking_parties(booking, message, notification_type='booking_update', *, client=True, provider=True):
    """Notify the client and/or the provider of a booking."""
    if client:
        notify_on_commit(booking.client, message, notification_type)
    if provider:
        notify_on_commit(booking.provider.user, message, notification_type)


def notify_admins(message, notification_type='admin_alert'):
    """Notify every staff or admin-role user."""
    User = get_user_model()
    admins = User.objects.filter(Q(is_staff=True) | Q(role='admin'), is_active=True)
    for admin in admins:
        notify_on_commit(admin, message, notification_type)
    if not admins:
        logger.warning(f"No admin users to notify: {message}")
