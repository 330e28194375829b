from django.db import models


class BatchStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    PROCESSING = 'processing', 'Processing'
    COMPLETED = 'completed', 'Completed'
    FAILED = 'failed', 'Failed'


class SyncBatch(models.Model):
    brand = models.CharField(max_length=100)
    categories = models.JSONField(default=list, blank=True)
    payload = models.TextField()
    batch_index = models.PositiveIntegerField()
    total_batches = models.PositiveIntegerField()
    status = models.CharField(
        max_length=20, choices=BatchStatus.choices, default=BatchStatus.PENDING
    )
    attempts = models.PositiveIntegerField(default=0)
    max_attempts = models.PositiveIntegerField(default=3)
    priority = models.IntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    started_at = models.DateTimeField(null=True, blank=True)
    claimed_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    error_message = models.TextField(blank=True, default='')

    class Meta:
        ordering = ['-priority', 'created_at', 'id']
        indexes = [
            models.Index(fields=['brand', 'status'], name='batch_brand_status'),
            models.Index(fields=['status', 'created_at'], name='batch_status_created'),
            models.Index(fields=['priority', 'status'], name='batch_priority_status'),
        ]

    def __str__(self):
        return f"{self.brand} {self.batch_index}/{self.total_batches} ({self.status})"


class SyncState(models.Model):
    """Small key/value store for rotation state (job list and cursor)."""

    key = models.CharField(max_length=100, unique=True)
    value = models.JSONField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.key


class Category(models.Model):
    name = models.CharField(max_length=100)
    code = models.IntegerField(unique=True)
    description = models.TextField(blank=True, default='')
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['code']
        verbose_name_plural = 'categories'

    def __str__(self):
        return f"{self.name} ({self.code})"


class Brand(models.Model):
    name = models.CharField(max_length=100, unique=True)
    slug = models.SlugField(max_length=100, unique=True)
    description = models.TextField(blank=True, default='')
    is_active = models.BooleanField(default=True)
    categories = models.ManyToManyField(Category, related_name='brands', blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']

    def __str__(self):
        return self.name


class StoreProduct(models.Model):
    sku = models.CharField(max_length=100, unique=True, null=True, blank=True)
    external_sku = models.CharField(max_length=100, blank=True, default='', db_index=True)
    name = models.CharField(max_length=255, blank=True, default='')
    description = models.TextField(blank=True, default='')
    price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    stock_quantity = models.IntegerField(default=0)
    stock_status = models.CharField(max_length=20, default='outofstock')
    brand = models.CharField(max_length=100, blank=True, default='')
    category_name = models.CharField(max_length=255, blank=True, default='')
    image_url = models.URLField(max_length=500, blank=True, default='')
    attributes = models.JSONField(default=dict, blank=True)
    content_hash = models.CharField(max_length=64, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    last_synced_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.sku or self.external_sku} (hash={self.content_hash[:8]}...)"


class ActivityLogEntry(models.Model):
    type = models.CharField(max_length=50, db_index=True)
    description = models.CharField(max_length=255)
    data = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at', '-id']
        verbose_name_plural = 'activity log entries'

    def __str__(self):
        return f"[{self.type}] {self.description}"
