# core/auth_serializers.py

from django.contrib.auth import get_user_model
from django.db.models import Q
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer
from rest_framework import serializers

User = get_user_model()


class EmailOrUsernameTokenObtainPairSerializer(TokenObtainPairSerializer):
    """
    Issue a JWT pair for a username OR email in the 'username' field.
    The token carries the user's role so clients can pick their screens.
    """

    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)
        token['role'] = user.role
        provider = getattr(user, 'provider_profile', None)
        if provider is not None:
            token['provider_id'] = provider.id
        return token

    def validate(self, attrs):
        identifier = (attrs.get(self.username_field) or '').strip()
        if not identifier or not attrs.get('password'):
            raise serializers.ValidationError(
                {'detail': 'Username/email and password are required.'}
            )

        # Emails are not unique on AbstractUser; only resolve an unambiguous match
        matches = list(
            User.objects.filter(Q(username__iexact=identifier) | Q(email__iexact=identifier))[:2]
        )
        if len(matches) == 1:
            attrs[self.username_field] = matches[0].username

        return super().validate(attrs)
