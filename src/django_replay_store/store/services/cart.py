"""Session-scoped shopping cart.

The cart lives in the purchaser's browsing session and is handed to whoever
needs it as an explicit :class:`CartStore` object. It is advisory only:
checkout always re-prices the product ids from the catalog.
"""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from dataclasses import asdict, dataclass

from django_replay_store.settings import get_config
from django_replay_store.store.errors import ProductUnavailable, StoreValidationError
from django_replay_store.store.models import Product
from django_replay_store.store.services.catalog import ProductCatalog, canonical_product_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CartItem:
    """A single product line in the cart (quantity is always one)."""

    product_id: str
    product_name: str
    product_type: str
    event_year: int
    amount: int
    currency: str

    @classmethod
    def from_product(cls, product: Product) -> CartItem:
        return cls(
            product_id=str(product.pk),
            product_name=product.product_name,
            product_type=product.product_type,
            event_year=product.event_year,
            amount=product.amount,
            currency=product.currency,
        )


class CartStore:
    """Cart operations over a session-like mapping.

    Args:
        session: The browsing session storage (normally ``request.session``).
        catalog: The product catalog used to resolve product details.
    """

    def __init__(self, session: MutableMapping[str, object], catalog: ProductCatalog | None = None) -> None:
        self.session = session
        self.catalog = catalog or ProductCatalog()
        self.session_key = get_config().cart_session_key

    def _load(self) -> list[CartItem]:
        raw = self.session.get(self.session_key) or []
        items: list[CartItem] = []
        for entry in raw:
            try:
                items.append(CartItem(**entry))
            except TypeError:
                logger.warning("Dropping malformed cart entry from session: %r", entry)
        return items

    def _save(self, items: list[CartItem]) -> None:
        self.session[self.session_key] = [asdict(item) for item in items]
        if hasattr(self.session, "modified"):
            self.session.modified = True

    def items(self) -> list[CartItem]:
        """Return the cart lines in the order they were added."""
        return self._load()

    def product_ids(self) -> list[str]:
        return [item.product_id for item in self._load()]

    def add(self, product_id: str) -> CartItem:
        """Add a product to the cart.

        Adding a product that is already in the cart is a no-op and returns
        the existing line.

        Raises:
            ProductUnavailable: If the product is unknown or not purchasable.
            StoreValidationError: If the cart is already full.
        """
        items = self._load()
        wanted = canonical_product_id(product_id)
        for item in items:
            if item.product_id == wanted:
                return item

        product = self.catalog.get_product(product_id)
        if product is None or not product.is_purchasable:
            raise ProductUnavailable([str(product_id)])

        limit = get_config().max_cart_items
        if len(items) >= limit:
            raise StoreValidationError(f"A cart can hold at most {limit} items.")

        item = CartItem.from_product(product)
        items.append(item)
        self._save(items)
        return item

    def remove(self, product_id: str) -> None:
        """Remove a product from the cart; does nothing if it is absent."""
        items = self._load()
        unwanted = canonical_product_id(product_id)
        remaining = [item for item in items if item.product_id != unwanted]
        if len(remaining) != len(items):
            self._save(remaining)

    def clear(self) -> None:
        self._save([])

    def total(self) -> int:
        """Return the sum of line amounts in the smallest currency unit."""
        return max(0, sum(item.amount for item in self._load()))

    def item_count(self) -> int:
        return len(self._load())
