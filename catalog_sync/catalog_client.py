import logging
import time
from threading import Lock

import requests
from django.conf import settings

from .errors import AuthError, FetchError

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
TOKEN_TTL = 3600  # seconds; the supplier does not send a reliable expiry

TOKEN_ENDPOINT = 'Token'
CATALOG_ENDPOINT = 'api/Webapi/VerCatalogo'
BRANDS_ENDPOINT = 'api/Webapi/VerMarcas'
CATEGORIES_ENDPOINT = 'api/Webapi/Ver_Categoria'

# Synonymous quantity field names seen in supplier responses, checked in order.
QUANTITY_FIELDS = ('Quantity', 'quantity', 'Cantidad', 'cantidad', 'Stock', 'stock')


class RateLimiter:
    """
    Fixed-window rate limiter (thread-safe).

    Allows up to `rate` requests per 1-second window.
    The window starts on the first request. While tokens remain, requests
    proceed immediately. When the bucket is empty, the limiter sleeps until
    the current window expires, then opens a fresh window with a full bucket.
    """

    def __init__(self, rate: int):
        self._rate = rate
        self._tokens = rate
        self._window_start = None
        self._lock = Lock()

    def acquire(self):
        with self._lock:
            now = time.monotonic()

            if self._window_start is None or (now - self._window_start) >= 1.0:
                self._window_start = now
                self._tokens = self._rate

            if self._tokens > 0:
                self._tokens -= 1
            else:
                wait = 1.0 - (now - self._window_start)
                if wait > 0:
                    time.sleep(wait)
                self._window_start = time.monotonic()
                self._tokens = self._rate - 1


def record_quantity(record: dict):
    """Return the raw quantity of a record using the first field name present."""
    for field in QUANTITY_FIELDS:
        if field in record:
            return record[field]
    return None


def is_negative_quantity(record: dict) -> bool:
    value = record_quantity(record)
    if value is None or isinstance(value, bool):
        return False
    try:
        return float(value) < 0
    except (TypeError, ValueError):
        return False


def filter_negative_stock(products: list[dict]) -> tuple[list[dict], int]:
    """Drop records whose quantity is negative. Returns (kept, removed_count)."""
    kept = [p for p in products if not (isinstance(p, dict) and is_negative_quantity(p))]
    return kept, len(products) - len(kept)


class CatalogClient:
    def __init__(self, base_url=None, username=None, password=None, timeout=None, session=None):
        base_url = base_url or settings.CATALOG_API_BASE_URL
        self._base_url = base_url.rstrip('/')
        self._username = username if username is not None else settings.CATALOG_API_USERNAME
        self._password = password if password is not None else settings.CATALOG_API_PASSWORD
        self._timeout = timeout or settings.CATALOG_API_TIMEOUT
        self._session = session or requests.Session()
        self._rate_limiter = RateLimiter(getattr(settings, 'CATALOG_API_RATE_LIMIT', 5))
        self._cached_token = None
        self._token_expiry = None

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def get_token(self) -> str:
        """Return a bearer token, requesting a new one when the cached one expired."""
        if self._cached_token and self._token_expiry and time.time() < self._token_expiry:
            return self._cached_token

        url = f"{self._base_url}/{TOKEN_ENDPOINT}"
        data = {
            'username': self._username,
            'password': self._password,
            'grant_type': 'password',
        }
        logger.debug("Requesting API token from %s.", url)

        try:
            response = self._request_with_retry('POST', url, data=data)
        except (requests.RequestException, RuntimeError) as exc:
            logger.error("Failed to retrieve API token: %s", exc)
            raise AuthError(f"Token request failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("Invalid token response: %s", response.text[:500])
            raise AuthError("Token response is not valid JSON.") from exc

        if not isinstance(payload, dict) or not payload.get('access_token'):
            logger.error("Token response without access_token: %s", str(payload)[:500])
            raise AuthError("Token response does not contain an access_token.")

        self._cached_token = payload['access_token']
        self._token_expiry = time.time() + TOKEN_TTL
        logger.info("API token retrieved successfully.")
        return self._cached_token

    def test_connection(self) -> bool:
        try:
            self.get_token()
        except AuthError:
            return False
        return True

    def clear_cache(self):
        self._cached_token = None
        self._token_expiry = None
        logger.info("API token cache cleared.")

    def update_credentials(self, username: str, password: str):
        self._username = username
        self._password = password
        self.clear_cache()
        logger.info("API credentials updated.")

    def get_status(self) -> dict:
        now = time.time()
        return {
            'base_url': self._base_url,
            'timeout': self._timeout,
            'token_cached': self._cached_token is not None,
            'token_expiry': self._token_expiry,
            'time_until_expiry': max(0, int(self._token_expiry - now)) if self._token_expiry else 0,
        }

    # ------------------------------------------------------------------
    # Read endpoints
    # ------------------------------------------------------------------

    def get_catalog(self, brand: str, categories=()) -> list[dict]:
        """
        Fetch the product catalog for one brand, optionally restricted to
        category codes. An empty category list means all categories.

        Records with a negative quantity are removed before returning.
        """
        categories = sorted(categories)
        headers = {'X-MARKS': brand}
        if categories:
            headers['X-CATEGORIA'] = ','.join(str(code) for code in categories)

        logger.debug("Requesting catalog for brand %s, categories %s.", brand, categories)
        payload = self._post_authorized(CATALOG_ENDPOINT, headers, what=f"catalog for {brand}")
        products = self._unwrap(payload, 'listaproductos')

        products, removed = filter_negative_stock(products)
        if removed:
            logger.info(
                "Removed products with negative stock. brand=%s removed_count=%d kept=%d",
                brand, removed, len(products),
            )

        logger.info("Catalog retrieved for brand %s: %d products.", brand, len(products))
        return products

    def get_brands(self) -> list[dict]:
        payload = self._post_authorized(BRANDS_ENDPOINT, {}, what='brands')
        brands = self._unwrap(payload, 'marcas')
        logger.info("Brands retrieved successfully: %d.", len(brands))
        return brands

    def get_categories(self) -> list[dict]:
        payload = self._post_authorized(CATEGORIES_ENDPOINT, {}, what='categories')
        categories = self._unwrap(payload, 'categorias')
        logger.info("Categories retrieved successfully: %d.", len(categories))
        return categories

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _post_authorized(self, endpoint: str, extra_headers: dict, what: str):
        token = self.get_token()
        url = f"{self._base_url}/{endpoint}"
        headers = {
            'Authorization': f'Bearer {token}',
            'Content-Type': 'application/json',
            **extra_headers,
        }
        try:
            response = self._request_with_retry('POST', url, headers=headers)
        except (requests.RequestException, RuntimeError) as exc:
            logger.error("Error retrieving %s from %s: %s", what, url, exc)
            raise FetchError(f"Failed to retrieve {what}: {exc}") from exc

        try:
            return response.json()
        except ValueError as exc:
            logger.error("Invalid JSON response for %s: %s", what, response.text[:500])
            raise FetchError(f"Invalid JSON response for {what}.") from exc

    @staticmethod
    def _unwrap(payload, envelope: str) -> list:
        if not payload:
            return []
        if isinstance(payload, dict):
            if isinstance(payload.get(envelope), list):
                return payload[envelope]
            raise FetchError(f"Unexpected response shape, missing '{envelope}' list.")
        if isinstance(payload, list):
            return payload
        raise FetchError(f"Unexpected response type {type(payload).__name__}.")

    def _request_with_retry(self, method: str, url: str, **kwargs) -> requests.Response:
        backoff = 1.0
        kwargs.setdefault('timeout', self._timeout)
        for attempt in range(1, MAX_RETRIES + 1):
            self._rate_limiter.acquire()
            response = self._session.request(method, url, **kwargs)

            if response.status_code == 429:
                retry_after = self._parse_retry_after(response)
                wait = retry_after if retry_after is not None else backoff
                logger.warning(
                    "429 Too Many Requests (attempt %d/%d). Waiting %.1fs before retry.",
                    attempt, MAX_RETRIES, wait,
                )
                time.sleep(wait)
                backoff *= 2
                continue

            response.raise_for_status()
            return response

        raise RuntimeError(
            f"API request {method} {url} failed after {MAX_RETRIES} retries due to rate limiting."
        )

    @staticmethod
    def _parse_retry_after(response: requests.Response):
        """Return float seconds from Retry-After header, or None if absent/invalid."""
        header = response.headers.get('Retry-After')
        if header is None:
            return None
        try:
            return float(header)
        except (TypeError, ValueError):
            return None
