"""Product reconciliation against the current inventory.

For delivery notes, each incoming line item is matched against the
inventory snapshot by inventory id, catalog number or barcode. Items with no
match (new products) and matched items without a sale price are sent to the
product review step.
"""

import logging
from decimal import Decimal

from pydantic import BaseModel, Field

from services.finalization.errors import ValidationGap
from services.finalization.lookups import fetch_with_retry
from services.finalization.ports import InventoryStore
from services.finalization.schema import DocumentDraft, IdentityKind, LineItem, round2
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class InventoryIndex:
    """Lookup of inventory records by id, catalog number and barcode."""

    def __init__(self, records: list[LineItem]) -> None:
        self._by_key: dict[str, LineItem] = {}
        for record in records:
            if record.inventory_id:
                self._by_key[f"id:{record.inventory_id}"] = record
            if record.has_catalog_number:
                self._by_key[f"catalog:{record.catalog_number}"] = record
            if record.barcode:
                self._by_key[f"barcode:{record.barcode}"] = record

    def __len__(self) -> int:
        return len(self._by_key)

    def find(self, item: LineItem) -> LineItem | None:
        """Find the inventory record matching a line item.

        Provisional items are never matched by id, only by catalog number
        or barcode.
        """
        for key in self._candidate_keys(item):
            record = self._by_key.get(key)
            if record is not None:
                return record
        return None

    @staticmethod
    def _candidate_keys(item: LineItem) -> list[str]:
        keys = []
        if item.identity is IdentityKind.PERSISTED and item.inventory_id:
            keys.append(f"id:{item.inventory_id}")
        if item.has_catalog_number:
            keys.append(f"catalog:{item.catalog_number}")
        if item.barcode:
            keys.append(f"barcode:{item.barcode}")
        return keys


class ReviewEdit(BaseModel):
    """Details entered for one product during review.

    The sale price is given either directly or as a markup percentage over
    the item's unit price.
    """

    local_id: str
    match_key: str | None = None
    barcode: str | None = None
    sale_price: Decimal | None = Field(None, ge=0)
    markup_percent: Decimal | None = Field(None, ge=0)


def needs_review(item: LineItem, index: InventoryIndex) -> bool:
    if index.find(item) is None:
        return True
    return item.sale_price is None


def items_needing_review(items: list[LineItem], index: InventoryIndex) -> list[LineItem]:
    """Items that are new products or lack a sale price, in document order."""
    return [item for item in items if needs_review(item, index)]


def resolve_sale_price(item: LineItem, edit: ReviewEdit) -> Decimal | None:
    if edit.sale_price is not None:
        return edit.sale_price
    if edit.markup_percent is not None and item.unit_price > 0:
        return round2(item.unit_price * (1 + edit.markup_percent / 100))
    return None


def merge_review_edits(items: list[LineItem], edits: list[ReviewEdit]) -> list[LineItem]:
    """Merge product review results back into the full line item list.

    Edits are located by local id (falling back to the match key). Items not
    addressed by an edit are returned unchanged. Either every edit is applied
    or none is.

    Raises:
        ValidationGap: If an edit matches no item or lacks a positive sale price
    """
    positions = {item.local_id: n for n, item in enumerate(items)}
    by_match_key = {item.match_key: n for n, item in enumerate(items) if item.match_key}

    merged = list(items)
    for edit in edits:
        n = positions.get(edit.local_id)
        if n is None and edit.match_key:
            n = by_match_key.get(edit.match_key)
        if n is None:
            raise ValidationGap(f"No line item with id {edit.local_id}", field="local_id")

        item = merged[n]
        sale_price = resolve_sale_price(item, edit)
        if sale_price is None or sale_price <= 0:
            raise ValidationGap(
                f"A positive sale price is required for '{item.description or item.local_id}'",
                field="sale_price",
            )

        update: dict[str, object] = {"sale_price": sale_price}
        if edit.barcode is not None:
            update["barcode"] = edit.barcode.strip() or None
        merged[n] = item.model_copy(update=update)

    return merged


class ProductReconciler:
    """Decides which line items of a delivery note need product review."""

    def __init__(self, settings: Settings, inventory_store: InventoryStore) -> None:
        """Initialize reconciler.

        Args:
            settings: Application settings
            inventory_store: Source of the inventory snapshot
        """
        self.settings = settings
        self.inventory_store = inventory_store

    async def load_index(self, owner_id: str) -> InventoryIndex:
        """Fetch the inventory snapshot and index it.

        Raises:
            LookupFailure: If the inventory cannot be fetched
        """
        records = await fetch_with_retry(
            self.settings, "inventory", lambda: self.inventory_store.list_inventory(owner_id)
        )
        return InventoryIndex(records)

    async def find_items_needing_review(
        self, owner_id: str, draft: DocumentDraft
    ) -> list[LineItem]:
        """Return the line items of a draft that need product review.

        Only delivery notes with at least one line item are checked; the
        inventory is not fetched otherwise.

        Raises:
            LookupFailure: If the inventory cannot be fetched
        """
        if not draft.is_delivery_note or not draft.line_items:
            return []

        index = await self.load_index(owner_id)
        review_items = items_needing_review(draft.line_items, index)
        logger.info(
            f"{len(review_items)} of {len(draft.line_items)} line items need product review"
        )
        return review_items
