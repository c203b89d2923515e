# core/models.py

from datetime import timedelta
from decimal import Decimal

from django.db import models
from django.contrib.auth.models import AbstractUser
from django.conf import settings
from django.utils import timezone


# --- STATUS ENUMS ---
# Legal edges between these values live in core/state_machine.py.

class BookingStatus(models.TextChoices):
    PENDING = 'PENDING', 'Pending'                                # created, waiting for provider
    CONFIRMED = 'CONFIRMED', 'Confirmed'                          # accepted by the provider
    PENDING_EXECUTION = 'PENDING_EXECUTION', 'Pending execution'  # paid, funds in escrow
    IN_PROGRESS = 'IN_PROGRESS', 'In progress'
    AWAITING_CONFIRMATION = 'AWAITING_CONFIRMATION', 'Awaiting confirmation'
    COMPLETED = 'COMPLETED', 'Completed'
    CANCELLED = 'CANCELLED', 'Cancelled'
    DISPUTED = 'DISPUTED', 'Disputed'


class PaymentStatus(models.TextChoices):
    PENDING = 'PENDING', 'Pending'
    ESCROW = 'ESCROW', 'Held in escrow'
    PROCESSING_RELEASE = 'PROCESSING_RELEASE', 'Processing release'
    RELEASED = 'RELEASED', 'Released'
    REFUNDED = 'REFUNDED', 'Refunded'
    FAILED = 'FAILED', 'Failed'


class PayoutStatus(models.TextChoices):
    PENDING = 'PENDING', 'Pending'
    PROCESSING = 'PROCESSING', 'Processing'
    COMPLETED = 'COMPLETED', 'Completed'
    FAILED = 'FAILED', 'Failed'
    CANCELLED = 'CANCELLED', 'Cancelled'  # never sent; the escrow was refunded instead


class DisputeStatus(models.TextChoices):
    PENDING = 'PENDING', 'Pending'
    RESOLVED = 'RESOLVED', 'Resolved'
    ESCALATED = 'ESCALATED', 'Escalated'


class DisputeOutcome(models.TextChoices):
    RELEASE = 'RELEASE', 'Release to provider'
    REFUND = 'REFUND', 'Refund client'


OPEN_DISPUTE_STATUSES = (DisputeStatus.PENDING, DisputeStatus.ESCALATED)


# Custom user model (extends AbstractUser)
class CustomUser(AbstractUser):
    ROLE_CHOICES = (
        ('client', 'Client'),
        ('provider', 'Service Provider'),
        ('admin', 'Admin'),
    )
    role = models.CharField(max_length=10, choices=ROLE_CHOICES, default='client')
    phone_number = models.CharField(max_length=20, blank=True, null=True)

    def __str__(self):
        return self.username

    @property
    def is_platform_admin(self) -> bool:
        return self.is_staff or self.role == 'admin'


# Service provider model (linked to a user)
class ServiceProvider(models.Model):
    user = models.OneToOneField(
        CustomUser,
        on_delete=models.CASCADE,
        related_name='provider_profile'
    )
    bio = models.TextField(blank=True)
    available = models.BooleanField(default=True)

    location_latitude = models.FloatField(null=True, blank=True)
    location_longitude = models.FloatField(null=True, blank=True)
    service_radius_km = models.DecimalField(max_digits=6, decimal_places=2, null=True, blank=True)

    # Payout account; recipient_code is cached after the first Paystack lookup
    bank_code = models.CharField(max_length=20, blank=True)
    account_number = models.CharField(max_length=30, blank=True)
    account_name = models.CharField(max_length=120, blank=True)
    payout_currency = models.CharField(max_length=3, blank=True)
    recipient_code = models.CharField(max_length=64, blank=True)

    def __str__(self):
        return f"{self.user.username} (Provider)"


# Catalogue entry a booking is made against
class Service(models.Model):
    name = models.CharField(max_length=120)
    category = models.CharField(max_length=60, blank=True)
    base_price = models.DecimalField(max_digits=10, decimal_places=2)
    is_active = models.BooleanField(default=True)

    def __str__(self):
        return self.name


class Booking(models.Model):
    CANCELLED_BY_CHOICES = (
        ('client', 'Client'),
        ('provider', 'Provider'),
        ('system', 'System'),
        ('admin', 'Admin'),
    )

    client = models.ForeignKey(
        CustomUser,
        on_delete=models.PROTECT,
        related_name='bookings',
    )
    provider = models.ForeignKey(
        ServiceProvider,
        on_delete=models.PROTECT,
        related_name='bookings',
    )
    service = models.ForeignKey(
        Service,
        on_delete=models.PROTECT,
        related_name='bookings',
    )

    scheduled_date = models.DateTimeField()
    duration = models.PositiveIntegerField(help_text="Minutes")
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    platform_fee = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    address = models.CharField(max_length=255)
    location_latitude = models.FloatField(null=True, blank=True)
    location_longitude = models.FloatField(null=True, blank=True)
    notes = models.TextField(blank=True)

    status = models.CharField(
        max_length=32,
        choices=BookingStatus.choices,
        default=BookingStatus.PENDING,
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    accepted_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancelled_by = models.CharField(
        max_length=20,
        choices=CANCELLED_BY_CHOICES,
        null=True,
        blank=True,
    )

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status'], name='core_booking_status_idx'),
        ]

    def __str__(self):
        return f"Booking #{self.id} by {self.client.username} ({self.status})"

    def is_participant(self, user) -> bool:
        return user.id in (self.client_id, self.provider.user_id)

    def has_open_dispute(self) -> bool:
        return Dispute.objects.filter(booking_id=self.pk, status__in=OPEN_DISPUTE_STATUSES).exists()


class Payment(models.Model):
    booking = models.OneToOneField(
        Booking,
        on_delete=models.PROTECT,
        related_name='payment',
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    escrow_amount = models.DecimalField(max_digits=12, decimal_places=2)
    platform_fee = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3)

    # External transaction reference; unique so duplicate callbacks cannot create a second row
    paystack_ref = models.CharField(max_length=100, unique=True)

    status = models.CharField(
        max_length=32,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
    )
    paid_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.TextField(blank=True)
    refund_ref = models.CharField(max_length=100, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount=models.F('escrow_amount') + models.F('platform_fee')),
                name='core_payment_breakdown_sums_to_amount',
            ),
            models.CheckConstraint(
                condition=models.Q(escrow_amount__gte=0, platform_fee__gte=0),
                name='core_payment_breakdown_non_negative',
            ),
        ]

    def __str__(self):
        return f"Payment {self.paystack_ref} for booking #{self.booking_id} ({self.status})"

    def breakdown_is_consistent(self) -> bool:
        return self.escrow_amount + self.platform_fee == self.amount


class JobProof(models.Model):
    CONFIRMED_BY_CHOICES = (
        ('client', 'Client'),
        ('system', 'Auto-confirm'),
        ('dispute', 'Dispute resolution'),
    )

    booking = models.OneToOneField(
        Booking,
        on_delete=models.PROTECT,
        related_name='job_proof',
    )
    provider = models.ForeignKey(
        ServiceProvider,
        on_delete=models.PROTECT,
        related_name='job_proofs',
    )
    photos = models.JSONField(default=list, blank=True)
    notes = models.TextField(blank=True)
    completed_at = models.DateTimeField()

    # None until the client (or the sweep) acts
    client_confirmed = models.BooleanField(null=True, blank=True)
    confirmed_at = models.DateTimeField(null=True, blank=True)
    confirmed_by = models.CharField(max_length=10, choices=CONFIRMED_BY_CHOICES, blank=True)
    auto_confirm_at = models.DateTimeField()

    class Meta:
        indexes = [
            models.Index(fields=['client_confirmed', 'auto_confirm_at'], name='core_proof_autoconfirm_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(auto_confirm_at__gte=models.F('completed_at')),
                name='core_proof_auto_confirm_after_completion',
            ),
        ]

    def __str__(self):
        return f"JobProof for booking #{self.booking_id}"

    def time_until_auto_confirm(self, now=None) -> timedelta:
        now = now or timezone.now()
        return max(self.auto_confirm_at - now, timedelta(0))


class Payout(models.Model):
    payment = models.OneToOneField(
        Payment,
        on_delete=models.PROTECT,
        related_name='payout',
    )
    provider = models.ForeignKey(
        ServiceProvider,
        on_delete=models.PROTECT,
        related_name='payouts',
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3)

    # Idempotency key sent to the transfer API; never changes across retries
    reference = models.CharField(max_length=100, unique=True)

    status = models.CharField(
        max_length=20,
        choices=PayoutStatus.choices,
        default=PayoutStatus.PENDING,
    )
    transfer_code = models.CharField(max_length=100, blank=True)
    attempts = models.PositiveSmallIntegerField(default=0)
    failure_reason = models.TextField(blank=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=['status'], name='core_payout_status_idx'),
        ]

    def __str__(self):
        return f"Payout {self.reference} ({self.status})"


class Dispute(models.Model):
    booking = models.OneToOneField(
        Booking,
        on_delete=models.PROTECT,
        related_name='dispute',
    )
    raised_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='disputes_raised',
    )
    reason = models.TextField()
    status = models.CharField(
        max_length=20,
        choices=DisputeStatus.choices,
        default=DisputeStatus.PENDING,
    )
    resolved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='disputes_resolved',
        null=True,
        blank=True,
    )
    resolution = models.TextField(blank=True)
    outcome = models.CharField(max_length=10, choices=DisputeOutcome.choices, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"Dispute #{self.pk} on booking #{self.booking_id} ({self.status})"


# Notification model
class Notification(models.Model):
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE)
    message = models.TextField()
    notification_type = models.CharField(max_length=40, default='info')
    read = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.user} - {self.message[:30]}"
