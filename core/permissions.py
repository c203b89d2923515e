# core/permissions.py

from rest_framework import permissions


class IsPlatformAdmin(permissions.BasePermission):
    """Allow access only to staff or users with the role 'admin'."""
    def has_permission(self, request, view):
        return bool(request.user and request.user.is_authenticated and request.user.is_platform_admin)


class IsBookingParticipant(permissions.BasePermission):
    """
    Object-level permission: the booking's client, its provider, or an admin.
    Works for Booking objects and anything with a `booking` attribute.
    """
    def has_object_permission(self, request, view, obj):
        if request.user.is_platform_admin:
            return True
        booking = getattr(obj, 'booking', obj)
        return booking.is_participant(request.user)
