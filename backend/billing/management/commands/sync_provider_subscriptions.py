"""Management command to re-sync live subscriptions from the payment provider."""
import uuid

from django.core.management.base import BaseCommand, CommandError

from accounts.directory import AccountKind, AccountRef
from accounts.models import PrivateClinic, Therapist
from billing.services.subscription_lifecycle import sync_live_subscriptions


class Command(BaseCommand):
    help = "Re-sync live subscriptions from the payment provider"

    def add_arguments(self, parser):
        parser.add_argument(
            '--account-id',
            type=str,
            help='Clinic or therapist ID to sync (optional)',
        )
        parser.add_argument(
            '--limit',
            type=int,
            default=None,
            help='Maximum number of subscriptions to check',
        )

    def handle(self, *args, **options):
        account = None
        account_id = options.get('account_id')
        if account_id:
            account = self._resolve_account(account_id)

        summary = sync_live_subscriptions(account, limit=options.get('limit'))

        self.stdout.write(
            f"Checked {summary['checked']} subscription(s): "
            f"{summary['updated']} updated, {summary['failed']} failed"
        )
        if summary['failed']:
            self.stdout.write(self.style.WARNING("Some subscriptions could not be synced; see logs"))
        else:
            self.stdout.write(self.style.SUCCESS("Sync complete"))

    @staticmethod
    def _resolve_account(account_id):
        try:
            account_uuid = uuid.UUID(str(account_id))
        except ValueError as exc:
            raise CommandError(f"Invalid account id: {account_id}") from exc

        if PrivateClinic.objects.filter(pk=account_uuid).exists():
            return AccountRef(AccountKind.CLINIC, account_uuid)
        if Therapist.objects.filter(pk=account_uuid).exists():
            return AccountRef(AccountKind.THERAPIST, account_uuid)
        raise CommandError(f"No clinic or therapist with id {account_id}")
