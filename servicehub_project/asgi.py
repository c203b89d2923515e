"""
ASGI config for servicehub_project project.

It exposes the ASGI callable as a module-level variable named `application`.
HTTP goes to Django, WebSockets carry booking and payout notifications.
"""

import os
from django.core.asgi import get_asgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'servicehub_project.settings')

# Initialize Django before importing anything that touches models
django_asgi_app = get_asgi_application()

from channels.auth import AuthMiddlewareStack  # noqa: E402
from channels.routing import ProtocolTypeRouter, URLRouter  # noqa: E402
import core.routing  # noqa: E402

# Define the ASGI application with routing for HTTP and WebSockets
application = ProtocolTypeRouter({
    'http': django_asgi_app,
    'websocket': AuthMiddlewareStack(
        URLRouter(
            core.routing.websocket_urlpatterns
        )
    ),
})
