# core/tasks.py

from celery import shared_task
from datetime import timedelta
from decimal import Decimal
from django.conf import settings
from django.utils import timezone
import logging

from core.exceptions import EscrowError

logger = logging.getLogger(__name__)


@shared_task
def auto_confirm_sweep_task():
    """
    Confirm overdue job proofs on the client's behalf.
    Runs every 5 minutes
    """
    from core.services.job_proofs import auto_confirm_sweep

    confirmed = auto_confirm_sweep()
    return {'confirmed': len(confirmed), 'booking_ids': confirmed}


@shared_task(acks_late=True)
def dispatch_payout(payment_id: int):
    """
    Transfer a released payment's escrow amount to the provider.
    Queued when the release transaction commits.
    """
    from core.models import PayoutStatus
    from core.services import payouts

    try:
        payout = payouts.dispatch(payment_id)
    except EscrowError as e:
        logger.warning(f"Payout dispatch for payment {payment_id} not performed: {e}")
        return {'success': False, 'error': str(e)}

    if payout.status == PayoutStatus.FAILED:
        payouts.schedule_retry(payout)
        return {'success': False, 'status': payout.status, 'error': payout.failure_reason}

    return {'success': True, 'status': payout.status, 'reference': payout.reference}


@shared_task(acks_late=True)
def retry_payout(payout_id: int):
    """
    Re-attempt a FAILED payout with its original reference.
    """
    from core.models import PayoutStatus
    from core.services import payouts

    try:
        payout = payouts.retry_failed(payout_id)
    except EscrowError as e:
        logger.warning(f"Retry of payout {payout_id} not performed: {e}")
        return {'success': False, 'error': str(e)}

    if payout.status == PayoutStatus.FAILED:
        payouts.schedule_retry(payout)
        return {'success': False, 'status': payout.status, 'attempts': payout.attempts}

    return {'success': True, 'status': payout.status, 'attempts': payout.attempts}


@shared_task(acks_late=True)
def reconcile_payout(payout_id: int):
    """
    Settle a payout stuck in PROCESSING from Paystack's view of its transfer.
    """
    from core.services import payouts

    try:
        payout = payouts.reconcile_processing(payout_id)
    except EscrowError as e:
        logger.warning(f"Reconciliation of payout {payout_id} not performed: {e}")
        return {'success': False, 'error': str(e)}

    return {'success': True, 'status': payout.status, 'attempts': payout.attempts}


@shared_task(acks_late=True)
def refund_orphan_capture(reference: str, amount: str, currency: str, attempt: int = 1):
    """
    Refund a capture that arrived for a booking that cannot use it.
    Retried with the payout backoff; admins are told once attempts run out.
    """
    from core.services import escrow
    from core.services.payouts import retry_delay
    from core.utils.notifications import notify_admins

    if escrow.refund_orphan_capture(reference, Decimal(amount), currency):
        return {'success': True, 'reference': reference, 'attempts': attempt}

    if attempt >= int(getattr(settings, 'ORPHAN_REFUND_MAX_ATTEMPTS', 3)):
        logger.error(f"Giving up on refund of orphan capture {reference} after {attempt} attempts")
        notify_admins(f"Refund of late payment {reference} ({amount} {currency}) failed {attempt} times. Manual refund needed.")
        return {'success': False, 'reference': reference, 'attempts': attempt}

    countdown = retry_delay(attempt)
    refund_orphan_capture.apply_async(args=[reference, amount, currency, attempt + 1], countdown=countdown)
    return {'success': False, 'reference': reference, 'attempts': attempt, 'retry_in': countdown}


@shared_task
def retry_failed_payouts_task(stale_minutes: int | None = None):
    """
    Safety net for payouts whose queued task was lost (worker restart, broker
    outage): re-queue failed payouts that still have attempts left, pending
    payouts that were never picked up and processing payouts whose worker
    never recorded an outcome.
    Runs every hour
    """
    from core.models import Payout, PayoutStatus
    from core.services.payouts import max_attempts

    if stale_minutes is None:
        stale_minutes = int(getattr(settings, 'PAYOUT_STALE_MINUTES', 30))
    threshold = timezone.now() - timedelta(minutes=stale_minutes)

    failed_ids = list(
        Payout.objects.filter(
            status=PayoutStatus.FAILED,
            attempts__lt=max_attempts(),
            updated_at__lte=threshold,
        ).values_list('id', flat=True)
    )
    for payout_id in failed_ids:
        retry_payout.delay(payout_id)

    stale_payment_ids = list(
        Payout.objects.filter(
            status=PayoutStatus.PENDING,
            updated_at__lte=threshold,
        ).values_list('payment_id', flat=True)
    )
    for payment_id in stale_payment_ids:
        dispatch_payout.delay(payment_id)

    stuck_ids = list(
        Payout.objects.filter(
            status=PayoutStatus.PROCESSING,
            updated_at__lte=threshold,
        ).values_list('id', flat=True)
    )
    for payout_id in stuck_ids:
        reconcile_payout.delay(payout_id)

    logger.info(
        f"Re-queued {len(failed_ids)} failed and {len(stale_payment_ids)} stale payouts, "
        f"reconciling {len(stuck_ids)} stuck in processing"
    )
    return {'retried': len(failed_ids), 'redispatched': len(stale_payment_ids), 'reconciled': len(stuck_ids)}
