from django.core.management.base import BaseCommand
from flexifee_system.services import PaymentService


class Command(BaseCommand):
    help = "Mark unpaid dues past their due date as overdue. Run daily from cron."

    def handle(self, *args, **kwargs):
        changed = PaymentService.reconcile_overdue()
        if changed:
            self.stdout.write(self.style.SUCCESS(f"✅ Updated status of {changed} payment(s)"))
        else:
            self.stdout.write(self.style.WARNING("ℹ️ Payment statuses already up to date"))
