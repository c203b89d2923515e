# core/serializers.py

from django.utils import timezone
from rest_framework import serializers

from .models import (
    CustomUser,
    ServiceProvider,
    Service,
    Booking,
    Payment,
    JobProof,
    Payout,
    Dispute,
    DisputeOutcome,
    Notification,
)


class UserSerializer(serializers.ModelSerializer):
    class Meta:
        model = CustomUser
        fields = ['id', 'username', 'first_name', 'last_name', 'email', 'role']
        read_only_fields = fields


class ServiceProviderSerializer(serializers.ModelSerializer):
    user = UserSerializer(read_only=True)

    class Meta:
        model = ServiceProvider
        fields = ['id', 'user', 'bio', 'available', 'service_radius_km']
        read_only_fields = fields


class ServiceSerializer(serializers.ModelSerializer):
    class Meta:
        model = Service
        fields = ['id', 'name', 'category', 'base_price', 'is_active']


class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = [
            'id',
            'amount',
            'escrow_amount',
            'platform_fee',
            'currency',
            'paystack_ref',
            'status',
            'paid_at',
            'refunded_at',
        ]
        read_only_fields = fields


class JobProofSerializer(serializers.ModelSerializer):
    time_until_auto_confirm = serializers.SerializerMethodField()

    class Meta:
        model = JobProof
        fields = [
            'id',
            'photos',
            'notes',
            'completed_at',
            'client_confirmed',
            'confirmed_at',
            'confirmed_by',
            'auto_confirm_at',
            'time_until_auto_confirm',
        ]
        read_only_fields = fields

    def get_time_until_auto_confirm(self, obj):
        if obj.client_confirmed is not None:
            return None
        return int(obj.time_until_auto_confirm().total_seconds())


class DisputeSerializer(serializers.ModelSerializer):
    raised_by = UserSerializer(read_only=True)
    resolved_by = UserSerializer(read_only=True)

    class Meta:
        model = Dispute
        fields = [
            'id',
            'booking',
            'raised_by',
            'reason',
            'status',
            'resolved_by',
            'resolution',
            'outcome',
            'created_at',
            'resolved_at',
        ]
        read_only_fields = fields


class BookingSerializer(serializers.ModelSerializer):
    client = UserSerializer(read_only=True)
    provider = ServiceProviderSerializer(read_only=True)
    service = ServiceSerializer(read_only=True)
    payment = PaymentSerializer(read_only=True)
    job_proof = JobProofSerializer(read_only=True)
    dispute = DisputeSerializer(read_only=True)

    class Meta:
        model = Booking
        fields = [
            'id',
            'client',
            'provider',
            'service',
            'scheduled_date',
            'duration',
            'total_amount',
            'platform_fee',
            'address',
            'location_latitude',
            'location_longitude',
            'notes',
            'status',
            'created_at',
            'accepted_at',
            'started_at',
            'completed_at',
            'cancelled_at',
            'cancelled_by',
            'payment',
            'job_proof',
            'dispute',
        ]
        read_only_fields = fields


class BookingCreateSerializer(serializers.Serializer):
    """Input for POST /api/bookings/. Business rules are checked by the booking ledger."""
    provider_id = serializers.PrimaryKeyRelatedField(
        queryset=ServiceProvider.objects.select_related('user'),
        source='provider',
    )
    service_id = serializers.PrimaryKeyRelatedField(
        queryset=Service.objects.all(),
        source='service',
    )
    scheduled_date = serializers.DateTimeField()
    duration = serializers.IntegerField(min_value=1)
    address = serializers.CharField(max_length=255)
    location_latitude = serializers.FloatField(required=False, allow_null=True)
    location_longitude = serializers.FloatField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True)

    def validate_scheduled_date(self, value):
        if value <= timezone.now():
            raise serializers.ValidationError('Scheduled date must be in the future.')
        return value


class JobProofInputSerializer(serializers.Serializer):
    photos = serializers.ListField(child=serializers.URLField(), required=False, default=list)
    notes = serializers.CharField(required=False, allow_blank=True, default='')

    def validate(self, attrs):
        if not attrs.get('photos') and not attrs.get('notes', '').strip():
            raise serializers.ValidationError('Provide at least one photo or a note.')
        return attrs


class CancelSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default='')


class CheckoutSerializer(serializers.Serializer):
    callback_url = serializers.URLField(required=False)


class VerifyPaymentSerializer(serializers.Serializer):
    reference = serializers.CharField(max_length=100)


class DisputeCreateSerializer(serializers.Serializer):
    reason = serializers.CharField()


class DisputeResolveSerializer(serializers.Serializer):
    outcome = serializers.ChoiceField(choices=DisputeOutcome.choices)
    resolution = serializers.CharField(required=False, allow_blank=True, default='')


class PayoutSerializer(serializers.ModelSerializer):
    booking_id = serializers.IntegerField(source='payment.booking_id', read_only=True)

    class Meta:
        model = Payout
        fields = [
            'id',
            'booking_id',
            'provider',
            'amount',
            'currency',
            'reference',
            'status',
            'transfer_code',
            'attempts',
            'failure_reason',
            'processed_at',
            'created_at',
        ]
        read_only_fields = fields


class NotificationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Notification
        fields = ['id', 'message', 'notification_type', 'read', 'created_at']
        read_only_fields = ['id', 'message', 'notification_type', 'created_at']
