from django.core.management.base import BaseCommand, CommandError

from catalog_sync.services import SyncService


class Command(BaseCommand):
    help = 'Create the default brands and categories, optionally importing brands from the supplier API.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--from-api',
            action='store_true',
            help='Also import the brand list exposed by the supplier API.',
        )

    def handle(self, *args, **options):
        service = SyncService.default()

        result = service.seed_brands()
        if not result.get('success'):
            raise CommandError(f"Seeding failed: {result.get('error')}")
        self.stdout.write(f"Seeded {result['categories']} categories and {result['brands']} brands.")

        if options['from_api']:
            result = service.import_brands()
            if not result.get('success'):
                raise CommandError(f"Brand import failed: {result.get('error')}")
            self.stdout.write(
                f"Imported brands: created={result['created']} skipped={result['skipped']} "
                f"errors={result['errors']}"
            )

        self.stdout.write(self.style.SUCCESS(f"Job rotation rebuilt with {result['total_jobs']} jobs."))
