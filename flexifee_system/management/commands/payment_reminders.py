from django.core.management.base import BaseCommand
from flexifee_system.services import PaymentService


class Command(BaseCommand):
    help = "List unpaid dues falling within the reminder window. Run daily from cron."

    def add_arguments(self, parser):
        parser.add_argument('--days', type=int, help='Override the reminder window from BNPL settings')

    def handle(self, *args, **options):
        records = list(PaymentService.reminders_due(days=options.get('days')))
        if not records:
            self.stdout.write(self.style.WARNING("ℹ️ No payments due within the reminder window"))
            return

        for record in records:
            application = record.application
            contact = application.guardian.email or application.guardian.phone_number or 'no contact'
            self.stdout.write(
                f"{application.reference}: {record.label} of {record.amount} due {record.due_date} "
                f"- {application.guardian.name} ({contact})"
            )
        self.stdout.write(self.style.SUCCESS(f"✅ {len(records)} payment reminder(s) due"))
