from django.core.management.base import BaseCommand, CommandError

from catalog_sync.services import SyncService


class Command(BaseCommand):
    help = 'Synchronise one brand immediately, bypassing the batch queue.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--brand',
            help='Brand name or id. Defaults to the next brand in rotation.',
        )

    def handle(self, *args, **options):
        brand = options.get('brand')
        self.stdout.write(f"Starting immediate sync for {brand or 'next brand in rotation'}...")

        result = SyncService.default().run_sync(brand=brand, immediate=True)

        if not result.get('success'):
            raise CommandError(f"Sync failed: {result.get('error', 'unknown error')}")

        self.stdout.write(f"Brand: {result['brand']}")
        self.stdout.write(f"Catalog products: {result['catalog_count']}")
        self.stdout.write(f"Processed: {result['processed_count']}")
        self.stdout.write(f"Created: {result['created']}")
        self.stdout.write(f"Updated: {result['updated']}")
        self.stdout.write(f"Errors: {result['errors']}")
        for detail in result['error_details'][:20]:
            self.stdout.write(f"  #{detail['index']} {detail.get('sku') or '-'}: {detail['error']}")
        self.stdout.write(self.style.SUCCESS(f"Done in {result['duration']}s."))
