"""Management command to prune handled webhook event log rows."""
from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from billing.services.webhook_reconciler import prune_event_logs


class Command(BaseCommand):
    help = "Delete handled webhook event logs older than the given number of days"

    def add_arguments(self, parser):
        parser.add_argument(
            '--days',
            type=int,
            default=None,
            help='Retention window in days (defaults to BILLING_WEBHOOK_LOG_RETENTION_DAYS)',
        )

    def handle(self, *args, **options):
        days = options.get('days')
        if days is None:
            days = getattr(settings, 'BILLING_WEBHOOK_LOG_RETENTION_DAYS', 7)
        if days < 0:
            raise CommandError("--days must be zero or positive")

        deleted = prune_event_logs(days)
        self.stdout.write(self.style.SUCCESS(f"Deleted {deleted} webhook event log(s) older than {days} days"))
