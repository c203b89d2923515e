# core/views.py

import json
import logging

from django.db.models import Q
from django.http import HttpResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action, api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from .exceptions import NotFound, PermissionDenied, PreconditionError, StateError
from .models import (
    Booking,
    Dispute,
    Notification,
    Payment,
    Payout,
    Service,
)
from .permissions import IsBookingParticipant, IsPlatformAdmin
from .serializers import (
    BookingCreateSerializer,
    BookingSerializer,
    CancelSerializer,
    CheckoutSerializer,
    DisputeCreateSerializer,
    DisputeResolveSerializer,
    DisputeSerializer,
    JobProofInputSerializer,
    NotificationSerializer,
    PayoutSerializer,
    ServiceSerializer,
    VerifyPaymentSerializer,
)
from .services import bookings, disputes, escrow, job_proofs, payouts
from .services.paystack import verify_webhook_signature
from .utils.money import from_minor_units

logger = logging.getLogger(__name__)


def _provider_for(user):
    provider = getattr(user, 'provider_profile', None)
    if provider is None:
        raise PermissionDenied("You are not a provider.")
    return provider


# -------------------------
# SERVICES (catalogue)
# -------------------------

class ServiceViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Service.objects.filter(is_active=True).order_by('name')
    serializer_class = ServiceSerializer
    permission_classes = [IsAuthenticated]


# -------------------------
# BOOKINGS
# -------------------------

class BookingViewSet(mixins.ListModelMixin,
                     mixins.RetrieveModelMixin,
                     mixins.CreateModelMixin,
                     viewsets.GenericViewSet):
    serializer_class = BookingSerializer
    permission_classes = [IsAuthenticated, IsBookingParticipant]

    def get_queryset(self):
        """
        Limit which bookings each user can see:
        - Client: their own bookings.
        - Provider: bookings assigned to them.
        - Admin/staff: all bookings.
        """
        qs = Booking.objects.select_related(
            'client', 'provider__user', 'service', 'payment', 'job_proof', 'dispute',
        )
        user = self.request.user
        if user.is_platform_admin:
            return qs
        return qs.filter(Q(client=user) | Q(provider__user=user))

    def _respond(self, booking_id, status_code=status.HTTP_200_OK):
        booking = self.get_queryset().get(pk=booking_id)
        return Response(BookingSerializer(booking).data, status=status_code)

    def create(self, request, *args, **kwargs):
        """
        POST /api/bookings/
        Client books a provider for a service.
        """
        serializer = BookingCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        provider = data.pop('provider')
        service = data.pop('service')

        booking = bookings.create_booking(request.user, provider, service, data)
        return self._respond(booking.id, status.HTTP_201_CREATED)

    @action(detail=True, methods=['post'])
    def accept(self, request, pk=None):
        """POST /api/bookings/{id}/accept/ (provider)"""
        booking = self.get_object()
        bookings.accept_booking(booking.id, _provider_for(request.user).id)
        return self._respond(booking.id)

    @action(detail=True, methods=['post'])
    def start(self, request, pk=None):
        """POST /api/bookings/{id}/start/ (provider)"""
        booking = self.get_object()
        bookings.start_job(booking.id, _provider_for(request.user).id)
        return self._respond(booking.id)

    @action(detail=True, methods=['post'])
    def complete(self, request, pk=None):
        """
        POST /api/bookings/{id}/complete/ (provider)
        Body: { "photos": ["https://..."], "notes": "..." }
        """
        booking = self.get_object()
        serializer = JobProofInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        bookings.complete_job(booking.id, _provider_for(request.user).id, serializer.validated_data)
        return self._respond(booking.id)

    @action(detail=True, methods=['post'])
    def confirm(self, request, pk=None):
        """POST /api/bookings/{id}/confirm/ (client) releases the escrowed funds."""
        booking = self.get_object()
        job_proofs.confirm_by_client(booking.id, request.user.id)
        return self._respond(booking.id)

    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        """
        POST /api/bookings/{id}/cancel/
        Body: { "reason": "..." }
        Client, provider or admin; only before work starts.
        """
        booking = self.get_object()
        serializer = CancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        bookings.cancel_booking(booking.id, request.user, serializer.validated_data['reason'])
        return self._respond(booking.id)

    @action(detail=True, methods=['post'])
    def checkout(self, request, pk=None):
        """
        POST /api/bookings/{id}/checkout/
        Returns the Paystack authorization_url for the client to pay.
        """
        booking = self.get_object()
        serializer = CheckoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = escrow.initialize_checkout(
            booking.id,
            request.user,
            callback_url=serializer.validated_data.get('callback_url'),
        )
        return Response(result)

    @action(detail=True, methods=['post'])
    def verify_payment(self, request, pk=None):
        """
        POST /api/bookings/{id}/verify_payment/
        Body: { "reference": "SH_..." }
        Called by the app after the Paystack redirect.
        """
        booking = self.get_object()
        serializer = VerifyPaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        reference = serializer.validated_data['reference']

        if not Payment.objects.filter(booking=booking, paystack_ref=reference).exists():
            raise NotFound("No payment with that reference for this booking.", reference=reference)

        escrow.verify_checkout(reference)
        return self._respond(booking.id)

    @action(detail=True, methods=['post'])
    def dispute(self, request, pk=None):
        """
        POST /api/bookings/{id}/dispute/
        Body: { "reason": "..." }
        """
        booking = self.get_object()
        serializer = DisputeCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        disputes.raise_dispute(booking.id, request.user, serializer.validated_data['reason'])
        return self._respond(booking.id, status.HTTP_201_CREATED)


# -------------------------
# DISPUTES
# -------------------------

class DisputeViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = DisputeSerializer
    permission_classes = [IsAuthenticated, IsBookingParticipant]

    def get_queryset(self):
        qs = Dispute.objects.select_related('booking', 'raised_by', 'resolved_by')
        user = self.request.user
        if user.is_platform_admin:
            return qs
        return qs.filter(Q(booking__client=user) | Q(booking__provider__user=user))

    @action(detail=True, methods=['post'])
    def escalate(self, request, pk=None):
        dispute = disputes.escalate(self.get_object().id, request.user)
        return Response(DisputeSerializer(dispute).data)

    @action(detail=True, methods=['post'], permission_classes=[IsAuthenticated, IsPlatformAdmin])
    def resolve(self, request, pk=None):
        """
        POST /api/disputes/{id}/resolve/ (admin)
        Body: { "outcome": "RELEASE" | "REFUND", "resolution": "..." }
        """
        serializer = DisputeResolveSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        dispute = disputes.resolve(
            self.get_object().id,
            request.user,
            serializer.validated_data['resolution'],
            serializer.validated_data['outcome'],
        )
        return Response(DisputeSerializer(dispute).data)


# -------------------
# PAYOUTS
# -------------------

class PayoutViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = PayoutSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        qs = Payout.objects.select_related('payment').order_by('-created_at')
        user = self.request.user
        if user.is_platform_admin:
            status_filter = self.request.query_params.get('status')
            return qs.filter(status=status_filter.upper()) if status_filter else qs
        return qs.filter(provider__user=user)

    @action(detail=True, methods=['post'], permission_classes=[IsAuthenticated, IsPlatformAdmin])
    def retry(self, request, pk=None):
        """
        POST /api/payouts/{id}/retry/ (admin)
        Queues a retry of a FAILED payout with its original reference.
        """
        from .tasks import retry_payout

        payout = self.get_object()
        retry_payout.delay(payout.id)
        payout.refresh_from_db()
        return Response(PayoutSerializer(payout).data, status=status.HTTP_202_ACCEPTED)


# -------------------------
# NOTIFICATIONS
# -------------------------

@api_view(["GET"])
@permission_classes([IsAuthenticated])
def list_notifications(request):
    notes = Notification.objects.filter(user=request.user).order_by("-created_at")
    if request.query_params.get("unread") in ("1", "true"):
        notes = notes.filter(read=False)
    return Response(NotificationSerializer(notes[:100], many=True).data)


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def mark_as_read(request, pk):
    updated = Notification.objects.filter(id=pk, user=request.user).update(read=True)
    if not updated:
        return Response({"error": "not found"}, status=404)
    return Response({"status": "ok"})


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def mark_all_read(request):
    updated = Notification.objects.filter(user=request.user, read=False).update(read=True)
    return Response({"status": "ok", "updated": updated})


@api_view(["GET"])
@permission_classes([IsAuthenticated])
def unread_count(request):
    count = Notification.objects.filter(user=request.user, read=False).count()
    return Response({"unread_count": count})


# -------------------------
# PAYSTACK WEBHOOK
# -------------------------

@csrf_exempt
@require_POST
def paystack_webhook(request):
    """
    POST /api/webhooks/paystack/
    Paystack signs the raw body with the secret key (HMAC-SHA512).
    Every event is safe to redeliver.
    """
    signature = request.headers.get("x-paystack-signature", "")
    if not verify_webhook_signature(request.body, signature):
        logger.warning("Paystack webhook rejected: bad signature")
        return HttpResponse(status=401)

    try:
        payload = json.loads(request.body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return HttpResponse(status=400)
    if not isinstance(payload, dict):
        return HttpResponse(status=400)

    event = payload.get("event") or ""
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    reference = data.get("reference") or ""
    logger.info(f"Paystack webhook: {event} ref={reference}")

    try:
        if event == "charge.success":
            currency = (data.get("currency") or "").upper()
            metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
            escrow.record_charge_success(
                reference,
                amount=from_minor_units(int(data.get("amount") or 0), currency) if data.get("amount") else None,
                paid_at=data.get("paid_at") or data.get("paidAt"),
                metadata=metadata,
            )
        elif event == "charge.failed":
            escrow.record_charge_failure(reference, data.get("gateway_response") or "Charge failed")
        elif event.startswith("transfer."):
            payouts.handle_transfer_event(event, data)
        else:
            logger.info(f"Paystack webhook event {event} ignored")
    except (StateError, PreconditionError, NotFound) as e:
        # Redelivering these will not change the outcome; acknowledge them
        logger.warning(f"Paystack webhook {event} ref={reference} not applied: {e}")

    return JsonResponse({"status": "ok"})
