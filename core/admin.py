# core/admin.py

from django.contrib import admin

from .models import (
    CustomUser,
    ServiceProvider,
    Service,
    Booking,
    Payment,
    JobProof,
    Payout,
    PayoutStatus,
    Dispute,
    Notification,
)

# Status fields are read-only everywhere: they only change through core.services


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    list_display = (
        'id',
        'client',
        'provider',
        'service',
        'status',
        'total_amount',
        'platform_fee',
        'scheduled_date',
    )
    list_filter = ('status',)
    search_fields = (
        'id',
        'client__username',
        'provider__user__username',
    )
    readonly_fields = (
        'status',
        'total_amount',
        'platform_fee',
        'accepted_at',
        'started_at',
        'completed_at',
        'cancelled_at',
        'cancelled_by',
    )


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ('id', 'booking', 'paystack_ref', 'amount', 'escrow_amount', 'platform_fee', 'currency', 'status')
    list_filter = ('status', 'currency')
    search_fields = ('paystack_ref', 'booking__id')
    readonly_fields = ('status', 'amount', 'escrow_amount', 'platform_fee', 'paystack_ref', 'paid_at', 'refund_ref', 'refunded_at')


@admin.register(JobProof)
class JobProofAdmin(admin.ModelAdmin):
    list_display = ('id', 'booking', 'provider', 'completed_at', 'client_confirmed', 'confirmed_by', 'auto_confirm_at')
    list_filter = ('confirmed_by',)
    readonly_fields = ('client_confirmed', 'confirmed_at', 'confirmed_by', 'auto_confirm_at')


@admin.register(Payout)
class PayoutAdmin(admin.ModelAdmin):
    list_display = ('id', 'reference', 'provider', 'amount', 'currency', 'status', 'attempts', 'processed_at')
    list_filter = ('status',)
    search_fields = ('reference', 'transfer_code', 'provider__user__username')
    readonly_fields = ('status', 'reference', 'amount', 'transfer_code', 'attempts', 'failure_reason', 'processed_at')
    actions = ['retry_selected']

    def retry_selected(self, request, queryset):
        """
        Admin action: queue a retry for the selected FAILED payouts.
        """
        from .tasks import retry_payout

        failed = list(queryset.filter(status=PayoutStatus.FAILED).values_list('id', flat=True))
        for payout_id in failed:
            retry_payout.delay(payout_id)
        self.message_user(request, f"Retry queued for {len(failed)} payout(s).")

    retry_selected.short_description = "Retry selected failed payouts"


@admin.register(Dispute)
class DisputeAdmin(admin.ModelAdmin):
    list_display = ('id', 'booking', 'raised_by', 'status', 'outcome', 'created_at', 'resolved_at')
    list_filter = ('status', 'outcome')
    search_fields = ('booking__id', 'raised_by__username', 'reason')
    readonly_fields = ('status', 'outcome', 'resolved_by', 'resolved_at')


@admin.register(ServiceProvider)
class ServiceProviderAdmin(admin.ModelAdmin):
    list_display = (
        'id',
        'user',
        'available',
        'service_radius_km',
        'bank_code',
        'recipient_code',
    )
    search_fields = ('user__username',)


@admin.register(Service)
class ServiceAdmin(admin.ModelAdmin):
    list_display = ('id', 'name', 'category', 'base_price', 'is_active')
    list_filter = ('is_active', 'category')


@admin.register(CustomUser)
class CustomUserAdmin(admin.ModelAdmin):
    list_display = (
        'id',
        'username',
        'email',
        'phone_number',
        'role',
        'is_active',
        'is_staff',
    )
    list_filter = ('role', 'is_active', 'is_staff')
    search_fields = ('username', 'email', 'phone_number')


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ('id', 'user', 'notification_type', 'message', 'read', 'created_at')
    list_filter = ('read', 'notification_type')
    search_fields = ('user__username', 'message')
