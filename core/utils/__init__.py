# core/utils/__init__.py

# Utils package

# Notification functions
from core.utils.notifications import (
    send_websocket_notification,
    notify_on_commit,
    notify_booking_parties,
    notify_admins,
)

# Money helpers
from core.utils.money import (
    quantize_money,
    fee_breakdown,
)

__all__ = [
    # Notifications
    'send_websocket_notification',
    'notify_on_commit',
    'notify_booking_parties',
    'notify_admins',
    # Money
    'quantize_money',
    'fee_breakdown',
]
