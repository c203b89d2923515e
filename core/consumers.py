# core/consumers.py

import json
import logging

from channels.generic.websocket import AsyncWebsocketConsumer

logger = logging.getLogger(__name__)


class NotificationConsumer(AsyncWebsocketConsumer):
    """
    Pushes booking, payment and payout notifications to one user.
    Group name: notifications_<user_id> (see core.utils.notifications).
    """

    async def connect(self):
        self.user_id = self.scope['url_route']['kwargs']['user_id']
        self.room_group_name = f'notifications_{self.user_id}'

        user = self.scope.get('user')
        if user is None or not user.is_authenticated or str(user.id) != str(self.user_id):
            logger.warning(f"WebSocket rejected for notifications_{self.user_id}")
            await self.close()
            return

        await self.channel_layer.group_add(
            self.room_group_name,
            self.channel_name
        )
        await self.accept()

        await self.send(text_data=json.dumps({
            'message': f'Connected to WebSocket for user {self.user_id}'
        }))
        logger.info(f"WebSocket connected: {self.room_group_name}")

    async def disconnect(self, close_code):
        await self.channel_layer.group_discard(
            self.room_group_name,
            self.channel_name
        )

    async def receive(self, text_data=None, bytes_data=None):
        # Clients only listen; a ping keeps the connection alive
        try:
            data = json.loads(text_data or '{}')
        except ValueError:
            return
        if data.get('type') == 'ping':
            await self.send(text_data=json.dumps({'type': 'pong'}))

    async def send_notification(self, event):
        await self.send(text_data=json.dumps({
            'message': event['message']
        }))
