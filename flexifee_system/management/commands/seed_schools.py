from django.core.management.base import BaseCommand
from flexifee_system.models import Institution


class Command(BaseCommand):
    help = "Seed demo schools for the BNPL programme"

    def add_arguments(self, parser):
        parser.add_argument('--city', default='Lahore', help="City to assign to the seeded schools")

    def handle(self, *args, **kwargs):
        schools = [
            "Beaconhouse School System",
            "The City School",
            "Lahore Grammar School",
            "Roots Millennium Schools",
            "Allied School",
            "Dar-e-Arqam Schools",
            "Educators School",
            "Army Public School",
        ]

        for name in schools:
            obj, created = Institution.objects.get_or_create(
                name=name,
                defaults={
                    "city": kwargs['city'],
                    "status": "active",
                }
            )
            if created:
                self.stdout.write(self.style.SUCCESS(f"✅ Added {name}"))
            else:
                self.stdout.write(self.style.WARNING(f"ℹ️ Skipped {name} (already exists)"))
