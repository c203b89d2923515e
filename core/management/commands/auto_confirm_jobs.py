# core/management/commands/auto_confirm_jobs.py

from django.core.management.base import BaseCommand
from django.utils import timezone

from core.models import BookingStatus, JobProof, OPEN_DISPUTE_STATUSES
from core.services.job_proofs import auto_confirm_sweep


class Command(BaseCommand):
    help = 'Confirm completed jobs whose clients did not respond within the grace period'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show which bookings would be confirmed without confirming them',
        )

    def handle(self, *args, **options):
        now = timezone.now()

        if options['dry_run']:
            due = (
                JobProof.objects.filter(
                    client_confirmed__isnull=True,
                    auto_confirm_at__lte=now,
                    booking__status=BookingStatus.AWAITING_CONFIRMATION,
                )
                .exclude(booking__dispute__status__in=OPEN_DISPUTE_STATUSES)
                .select_related('booking')
            )
            if not due:
                self.stdout.write(self.style.SUCCESS('No jobs due for auto-confirmation.'))
                return

            self.stdout.write(self.style.WARNING('DRY RUN - No changes made.'))
            for proof in due:
                overdue_hours = (now - proof.auto_confirm_at).total_seconds() / 3600
                self.stdout.write(f'  - Booking #{proof.booking_id}: overdue by {overdue_hours:.1f} hours')
            return

        confirmed = auto_confirm_sweep(now=now)
        self.stdout.write(self.style.SUCCESS(
            f'Auto-confirm run complete. confirmed={len(confirmed)}'
            + (f' bookings={confirmed}' if confirmed else '')
        ))
