"""Product catalog lookups.

The catalog is the only source of prices: carts, checkout and confirmation
all resolve product ids through it instead of trusting client-supplied
amounts.
"""

import uuid
from collections.abc import Iterable

from django.core.exceptions import ValidationError as DjangoValidationError

from django_replay_store.store.errors import ProductUnavailable
from django_replay_store.store.models import Product


def canonical_product_id(raw: object) -> str:
    """Return a product id in the form ``str(product.pk)`` takes.

    UUIDs are accepted in any case and with or without hyphens; anything
    else is returned stripped and unchanged.
    """
    product_id = str(raw).strip()
    try:
        return str(uuid.UUID(product_id))
    except ValueError:
        return product_id


def _normalize_ids(product_ids: Iterable[object]) -> dict[str, str]:
    """Map canonical ids to the ids as supplied, de-duplicated in first-seen order."""
    seen: dict[str, str] = {}
    for raw in product_ids:
        product_id = str(raw).strip()
        if product_id:
            seen.setdefault(canonical_product_id(product_id), product_id)
    return seen


def _fetch(product_ids: list[str], **filters: object) -> dict[str, Product]:
    try:
        products = Product.objects.filter(pk__in=product_ids, **filters).select_related("replay")
        return {str(product.pk): product for product in products}
    except DjangoValidationError:
        # A malformed UUID anywhere in the list; fall back to one-by-one lookups.
        found: dict[str, Product] = {}
        for product_id in product_ids:
            try:
                product = Product.objects.filter(pk=product_id, **filters).select_related("replay").first()
            except DjangoValidationError:
                continue
            if product is not None:
                found[str(product.pk)] = product
        return found


class ProductCatalog:
    """Read-only access to catalog products."""

    def get_product(self, product_id: object) -> Product | None:
        """Return the active product with this id, or ``None``."""
        ids = list(_normalize_ids([product_id]))
        if not ids:
            return None
        return _fetch(ids, active=True).get(ids[0])

    def get_purchasable(self, product_ids: Iterable[object]) -> list[Product]:
        """Resolve product ids into purchasable products, preserving order.

        Args:
            product_ids: Product ids as supplied by the caller. Duplicates are
                collapsed.

        Returns:
            The matching products in request order.

        Raises:
            ProductUnavailable: If any id is unknown, inactive, unpriced or
                maps to a product with no entitlement.
        """
        ids = _normalize_ids(product_ids)
        found = _fetch(list(ids), active=True)
        missing = [raw for pid, raw in ids.items() if pid not in found or not found[pid].is_purchasable]
        if missing:
            raise ProductUnavailable(missing)
        return [found[pid] for pid in ids]

    def get_products(self, product_ids: Iterable[object]) -> dict[str, Product]:
        """Return products by id regardless of their active flag.

        Used when reconciling payments, where a product may have been
        deactivated after it was paid for.
        """
        return _fetch(list(_normalize_ids(product_ids)))
