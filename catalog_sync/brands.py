import logging

from django.db import transaction
from django.utils.text import slugify

from .models import Brand, Category

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [
    (1, 'Accesorios Y Perifericos'),
    (7, 'Computadores'),
    (12, 'Impresión'),
    (14, 'Video'),
    (18, 'Servidores Y Almacenamiento'),
]

ALL_CATEGORIES = [code for code, _ in DEFAULT_CATEGORIES]

DEFAULT_BRANDS = {
    'HP INC': ALL_CATEGORIES,
    'DELL': ALL_CATEGORIES,
    'LENOVO': ALL_CATEGORIES,
    'APPLE': [1, 7],
    'ASUS': [7],
    'BOSE': ALL_CATEGORIES,
    'EPSON': ALL_CATEGORIES,
    'JBL': ALL_CATEGORIES,
}


@transaction.atomic
def seed_defaults() -> dict:
    """Create the default categories, brands and assignments on empty tables."""
    created = {'categories': 0, 'brands': 0}

    if not Category.objects.exists():
        for code, name in DEFAULT_CATEGORIES:
            Category.objects.create(code=code, name=name)
            created['categories'] += 1

    if not Brand.objects.exists():
        categories = {c.code: c for c in Category.objects.all()}
        for name, codes in DEFAULT_BRANDS.items():
            brand = Brand.objects.create(name=name, slug=slugify(name))
            brand.categories.set([categories[code] for code in codes if code in categories])
            created['brands'] += 1

    logger.info(
        "Seeded %d categories and %d brands.", created['categories'], created['brands'],
    )
    return created


def import_brands(api_brands: list[dict]) -> dict:
    """
    Create brands from the supplier brand list, skipping names that exist.

    New brands get every active category.
    """
    result = {'created': 0, 'skipped': 0, 'errors': 0, 'error_messages': []}
    categories = list(Category.objects.filter(is_active=True))

    for item in api_brands:
        name = ''
        if isinstance(item, dict):
            name = str(item.get('MarcaHomologada') or item.get('Marks') or '').strip()
        if not name:
            result['errors'] += 1
            result['error_messages'].append(f"Brand entry without a name: {item!r}")
            continue

        if Brand.objects.filter(name__iexact=name).exists():
            result['skipped'] += 1
            continue

        brand = Brand.objects.create(name=name, slug=_unique_slug(name))
        brand.categories.set(categories)
        result['created'] += 1
        logger.info("Imported brand %s.", name)

    logger.info(
        "Brand import finished: created=%d skipped=%d errors=%d.",
        result['created'], result['skipped'], result['errors'],
    )
    return result


def set_brand_categories(brand: Brand, codes) -> list[int]:
    categories = list(Category.objects.filter(code__in=list(codes)))
    brand.categories.set(categories)
    assigned = sorted(c.code for c in categories)
    logger.info("Brand %s assigned categories %s.", brand.name, assigned)
    return assigned


def _unique_slug(name: str) -> str:
    base = slugify(name) or 'brand'
    slug, suffix = base, 2
    while Brand.objects.filter(slug=slug).exists():
        slug = f"{base}-{suffix}"
        suffix += 1
    return slug
