import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from django.db import DatabaseError, IntegrityError, transaction

from .errors import StoreDatabaseError
from .models import StoreProduct
from .transformer import compute_hash, transform_record

logger = logging.getLogger(__name__)

CREATED = 'created'
UPDATED = 'updated'


@dataclass
class UpsertResult:
    action: str
    product_id: int
    sku: str
    changed: bool = True


class ProductUpserter(Protocol):
    """Find-or-create of one store product keyed by SKU.

    Record-level problems raise UpsertError; anything else is an
    infrastructure failure of the whole batch.
    """

    def upsert(self, record: dict, brand: str) -> UpsertResult:
        ...


class StoreProductUpserter:
    def find_by_sku(self, sku: str) -> Optional[StoreProduct]:
        """Look a product up by exact SKU, then case-insensitive SKU, then external SKU."""
        if not sku:
            return None
        normalized = sku.strip()

        product = StoreProduct.objects.filter(sku=sku).first()
        if product is not None:
            return product

        product = StoreProduct.objects.filter(sku__iexact=normalized).first()
        if product is not None:
            logger.debug("Found SKU %s by case-insensitive match.", sku)
            return product

        product = StoreProduct.objects.filter(external_sku__iexact=normalized).first()
        if product is not None:
            logger.debug("Found SKU %s by external SKU.", sku)
        return product

    def upsert(self, record: dict, brand: str) -> UpsertResult:
        payload = transform_record(record, brand)
        sku = payload['sku']
        new_hash = compute_hash(payload)

        try:
            with transaction.atomic():
                product = self.find_by_sku(sku)
                if product is None:
                    return self._create(payload, new_hash)
                return self._update(product, payload, new_hash)
        except DatabaseError as exc:
            raise StoreDatabaseError(f"Database error writing SKU {sku}: {exc}") from exc

    def _create(self, payload: dict, content_hash: str) -> UpsertResult:
        product = StoreProduct(external_sku=payload['sku'])
        self._apply(product, payload, content_hash)
        product.sku = payload['sku']
        try:
            with transaction.atomic():
                product.save()
        except IntegrityError:
            # SKU taken under a different spelling; keep the supplier SKU in external_sku only.
            logger.warning("SKU conflict for %s – stored in external_sku.", payload['sku'])
            product.sku = None
            product.save()
        logger.info("SKU %s created (id=%s).", payload['sku'], product.pk)
        return UpsertResult(action=CREATED, product_id=product.pk, sku=payload['sku'])

    def _update(self, product: StoreProduct, payload: dict, content_hash: str) -> UpsertResult:
        if product.content_hash == content_hash:
            logger.debug("SKU %s unchanged.", payload['sku'])
            product.save(update_fields=['last_synced_at'])
            return UpsertResult(
                action=UPDATED, product_id=product.pk, sku=payload['sku'], changed=False,
            )

        self._apply(product, payload, content_hash)
        product.save()
        logger.info("SKU %s updated (id=%s).", payload['sku'], product.pk)
        return UpsertResult(action=UPDATED, product_id=product.pk, sku=payload['sku'])

    @staticmethod
    def _apply(product: StoreProduct, payload: dict, content_hash: str):
        product.name = payload['name'][:255]
        product.description = payload['description']
        product.price = payload['price']
        product.stock_quantity = payload['stock']
        product.stock_status = payload['stock_status']
        product.brand = payload['brand']
        product.category_name = payload['category_name'][:255]
        product.image_url = payload['image_url'][:500]
        product.attributes = payload['attributes']
        product.content_hash = content_hash
