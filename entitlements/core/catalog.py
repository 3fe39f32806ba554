"""
Catalog resolver: maps purchased line items to catalog products.

Resolution order:
1. embedded product id (set when the checkout session was created)
2. exact match on the normalized name
3. containment match on the normalized name, closest length wins
4. unresolved
"""
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import structlog

from entitlements.core.events import PurchasedLineItem
from entitlements.core.normalization import normalize_product_name
from entitlements.database.store import CatalogRepository

logger = structlog.get_logger(__name__)


class ResolutionStrategy(str, Enum):
    """How a line item's product was determined."""

    EMBEDDED = "embedded"
    EXACT = "exact"
    CONTAINS = "contains"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class Resolution:
    product_ref: Optional[str]
    strategy: ResolutionStrategy

    @property
    def resolved(self) -> bool:
        return self.product_ref is not None


UNRESOLVED = Resolution(product_ref=None, strategy=ResolutionStrategy.UNRESOLVED)


def match_product_name(
    name: str, candidates: Sequence[Tuple[str, str]]
) -> Resolution:
    """
    Match a display name against catalog entries.

    Pure function, no I/O.

    Args:
        name: Display name of the purchased item
        candidates: ``(product_id, normalized_name)`` pairs in catalog order

    Returns:
        Resolution: Matched product and strategy, or ``UNRESOLVED``
    """
    key = normalize_product_name(name)
    if not key:
        return UNRESOLVED

    for product_id, candidate in candidates:
        if candidate and candidate == key:
            return Resolution(product_id, ResolutionStrategy.EXACT)

    best: Optional[Tuple[int, str]] = None
    for product_id, candidate in candidates:
        if not candidate:
            continue
        if candidate in key or key in candidate:
            distance = abs(len(candidate) - len(key))
            # Strict comparison keeps the earliest catalog entry on ties
            if best is None or distance < best[0]:
                best = (distance, product_id)

    if best is not None:
        return Resolution(best[1], ResolutionStrategy.CONTAINS)
    return UNRESOLVED


class CatalogResolver:
    """Resolves line items against a snapshot of the catalog."""

    def __init__(self, products: Sequence[Tuple[str, str]]) -> None:
        """
        Args:
            products: ``(product_id, display_name)`` pairs in catalog order
        """
        self._candidates: List[Tuple[str, str]] = [
            (product_id, normalize_product_name(name)) for product_id, name in products
        ]
        self._known_ids = {product_id for product_id, _ in products}

    @classmethod
    async def load(cls, catalog: CatalogRepository) -> "CatalogResolver":
        """Snapshot the catalog once for the duration of one fulfillment."""
        products = await catalog.list_products()
        return cls([(product.id, product.name) for product in products])

    def resolve(self, item: PurchasedLineItem) -> Resolution:
        """
        Resolve one purchased line item.

        Args:
            item: Validated line item

        Returns:
            Resolution: Product reference (possibly None) and how it was found
        """
        if item.product_id:
            if item.product_id not in self._known_ids:
                logger.warning(
                    "embedded_product_id_not_in_catalog",
                    product_id=item.product_id,
                    item_name=item.name,
                )
            return Resolution(item.product_id, ResolutionStrategy.EMBEDDED)

        resolution = match_product_name(item.name, self._candidates)
        logger.debug(
            "line_item_resolved_by_name",
            item_name=item.name,
            product_ref=resolution.product_ref,
            strategy=resolution.strategy.value,
        )
        return resolution
