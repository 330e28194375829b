import hashlib
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from .catalog_client import record_quantity
from .errors import UpsertError

logger = logging.getLogger(__name__)

SKU_FIELDS = ('Sku', 'SKU', 'PartNum', 'Codigo', 'ProductCode')
WAREHOUSE_FIELD = 'ListaProductosBodega'

# Supplier keys consumed by transform_record; everything else is kept as attributes.
_MAPPED_FIELDS = set(SKU_FIELDS) | {
    'Name', 'Description', 'precio', 'Quantity', 'quantity', 'Cantidad', 'cantidad',
    'Stock', 'stock', 'Marks', 'Categoria', 'CategoriaDescripcion', 'Imagenes',
    WAREHOUSE_FIELD,
}


def extract_sku(raw: dict) -> Optional[str]:
    """Return the first non-blank SKU candidate of a supplier record."""
    for field in SKU_FIELDS:
        value = raw.get(field)
        if value is None:
            continue
        sku = str(value).strip()
        if sku:
            return sku
    return None


def _parse_stock_value(value) -> int:
    """Convert a stock value to int; non-numeric values count as 0."""
    try:
        return int(float(value))
    except (TypeError, ValueError):
        logger.warning("Non-numeric stock value %r – treating as 0.", value)
        return 0


def _parse_price(value) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value)).quantize(Decimal('0.01'))
    except (InvalidOperation, ValueError):
        return None


def total_stock(raw: dict) -> int:
    """
    Stock of a record: its own quantity field when present, otherwise the sum
    of the per-warehouse list. Negative values clamp to 0.
    """
    quantity = record_quantity(raw)
    if quantity is not None:
        stock = _parse_stock_value(quantity)
    else:
        warehouses = raw.get(WAREHOUSE_FIELD) or []
        stock = sum(
            _parse_stock_value(w.get('Stock')) for w in warehouses if isinstance(w, dict)
        )
    return max(stock, 0)


def transform_record(raw: dict, brand: str) -> dict:
    """
    Transform a raw supplier record into the store product payload.

    Raises UpsertError when the record cannot be mapped (no SKU, negative price).
    """
    if not isinstance(raw, dict):
        raise UpsertError(f"Product record must be an object, got {type(raw).__name__}.")

    sku = extract_sku(raw)
    if not sku:
        raise UpsertError("Product record has no SKU.")

    price = _parse_price(raw.get('precio'))
    if price is not None and price < 0:
        raise UpsertError(f"Negative price {price}.", sku=sku)

    stock = total_stock(raw)
    images = [url for url in (raw.get('Imagenes') or []) if isinstance(url, str) and url]
    attributes = {k: v for k, v in raw.items() if k not in _MAPPED_FIELDS}

    return {
        'sku': sku,
        'name': str(raw.get('Name') or '').strip(),
        'description': str(raw.get('Description') or ''),
        'price': str(price) if price is not None else None,
        'stock': stock,
        'stock_status': 'instock' if stock > 0 else 'outofstock',
        'category_name': str(raw.get('CategoriaDescripcion') or raw.get('Categoria') or ''),
        'image_url': images[0] if images else '',
        'brand': brand,
        'attributes': attributes,
    }


def compute_hash(product: dict) -> str:
    """Compute a stable SHA-256 hash of the product dict for delta sync."""
    serialized = json.dumps(product, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(serialized.encode('utf-8')).hexdigest()
