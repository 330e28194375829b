import pytest
from django.core.cache import cache

BASE_URL = 'https://catalog.test'


@pytest.fixture(autouse=True)
def override_settings(settings):
    settings.CATALOG_API_BASE_URL = f'{BASE_URL}/'
    settings.CATALOG_API_USERNAME = 'api-user'
    settings.CATALOG_API_PASSWORD = 'api-secret'
    settings.CATALOG_API_TIMEOUT = 5
    settings.CATALOG_SYNC_BATCH_SIZE = 500
    settings.CATALOG_SYNC_MAX_ATTEMPTS = 3
    settings.CATALOG_SYNC_BATCH_MEMORY_LIMIT_MB = None
    settings.CATALOG_SYNC_IMMEDIATE_MEMORY_LIMIT_MB = None
    settings.CATALOG_SYNC_DEFAULT_BRANDS = {'HP INC': [], 'APPLE': [1, 7]}


@pytest.fixture(autouse=True)
def clear_cache():
    cache.clear()
    yield
    cache.clear()
