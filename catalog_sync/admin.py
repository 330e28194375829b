from django.contrib import admin, messages

from .models import ActivityLogEntry, Brand, Category, StoreProduct, SyncBatch
from .services import SyncService


@admin.register(SyncBatch)
class SyncBatchAdmin(admin.ModelAdmin):
    list_display = (
        'id', 'brand', 'batch_index', 'total_batches', 'status', 'attempts',
        'max_attempts', 'created_at', 'completed_at',
    )
    list_filter = ('status', 'brand')
    search_fields = ('brand', 'error_message')
    readonly_fields = ('payload', 'created_at', 'started_at', 'completed_at')
    actions = ('execute_selected', 'reset_failed')

    @admin.action(description='Process selected batches now')
    def execute_selected(self, request, queryset):
        service = SyncService.default()
        for batch in queryset:
            result = service.execute_batch(batch.pk)
            level = messages.SUCCESS if result.get('success') else messages.ERROR
            self.message_user(request, f"Batch {batch.pk}: {result.get('error') or 'completed'}", level)

    @admin.action(description='Requeue failed batches with attempts left')
    def reset_failed(self, request, queryset):
        brands = set(queryset.values_list('brand', flat=True))
        service = SyncService.default()
        total = sum(service.reset_failed_batches(brand).get('reset_count', 0) for brand in brands)
        self.message_user(request, f"{total} batches requeued.")


@admin.register(Category)
class CategoryAdmin(admin.ModelAdmin):
    list_display = ('code', 'name', 'is_active')
    list_filter = ('is_active',)


@admin.register(Brand)
class BrandAdmin(admin.ModelAdmin):
    list_display = ('name', 'slug', 'is_active')
    list_filter = ('is_active',)
    prepopulated_fields = {'slug': ('name',)}
    filter_horizontal = ('categories',)
    actions = ('sync_now',)

    @admin.action(description='Sync selected brands immediately')
    def sync_now(self, request, queryset):
        service = SyncService.default()
        for brand in queryset:
            result = service.run_sync(brand=brand.name, immediate=True)
            if result.get('success'):
                self.message_user(
                    request,
                    f"{brand.name}: created={result['created']} updated={result['updated']} errors={result['errors']}",
                )
            else:
                self.message_user(request, f"{brand.name}: {result.get('error')}", messages.ERROR)

    def save_related(self, request, form, formsets, change):
        super().save_related(request, form, formsets, change)
        SyncService.default().rebuild_jobs()


@admin.register(StoreProduct)
class StoreProductAdmin(admin.ModelAdmin):
    list_display = ('sku', 'external_sku', 'name', 'brand', 'price', 'stock_quantity', 'last_synced_at')
    list_filter = ('brand', 'stock_status')
    search_fields = ('sku', 'external_sku', 'name')


@admin.register(ActivityLogEntry)
class ActivityLogEntryAdmin(admin.ModelAdmin):
    list_display = ('created_at', 'type', 'description')
    list_filter = ('type',)
