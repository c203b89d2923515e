# core/management/commands/retry_failed_payouts.py

from django.core.management.base import BaseCommand

from core.exceptions import EscrowError
from core.models import Payout, PayoutStatus
from core.services.payouts import max_attempts, retry_failed


class Command(BaseCommand):
    help = 'Retry FAILED payouts with their original transfer reference.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--payout-id',
            type=int,
            help='Retry a single payout',
        )
        parser.add_argument(
            '--include-exhausted',
            action='store_true',
            help='Also retry payouts that have used up their automatic attempts',
        )

    def handle(self, *args, **options):
        payouts = Payout.objects.filter(status=PayoutStatus.FAILED).order_by('updated_at')
        if options['payout_id']:
            payouts = payouts.filter(pk=options['payout_id'])
        elif not options['include_exhausted']:
            payouts = payouts.filter(attempts__lt=max_attempts())

        completed = 0
        still_failed = 0
        errors = 0

        for payout in payouts:
            try:
                result = retry_failed(payout.id)
            except EscrowError as e:
                errors += 1
                self.stderr.write(f'Payout {payout.reference} not retried: {e}')
                continue

            if result.status == PayoutStatus.FAILED:
                still_failed += 1
                self.stderr.write(f'Payout {result.reference} failed again: {result.failure_reason}')
            else:
                completed += 1

        self.stdout.write(self.style.SUCCESS(
            f'Payout retry run complete. '
            f'sent={completed} '
            f'failed={still_failed} '
            f'skipped={errors}'
        ))
