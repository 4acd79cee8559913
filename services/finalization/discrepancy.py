"""Price discrepancy detection and resolution.

Before a delivery note is committed, each line item's incoming unit price is
compared against the price on file for its matching inventory record. Items
whose prices differ by more than the configured tolerance must be resolved
(accept the incoming price, keep the existing one, or override) before the
commit can go ahead.
"""

import logging
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from services.api import metrics
from services.finalization.errors import ValidationGap
from services.finalization.line_items import normalize_line_total
from services.finalization.lookups import fetch_with_retry
from services.finalization.ports import InventoryStore
from services.finalization.reconciler import InventoryIndex
from services.finalization.schema import DocumentDraft, LineItem, PriceDiscrepancy
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class ResolutionChoice(str, Enum):
    """How a single price discrepancy is settled."""

    ACCEPT_INCOMING = "accept_incoming"
    KEEP_EXISTING = "keep_existing"
    OVERRIDE = "override"


class DiscrepancyDecision(BaseModel):
    """User decision for one discrepant line item."""

    local_id: str
    choice: ResolutionChoice = ResolutionChoice.KEEP_EXISTING
    override_price: Decimal | None = Field(None, ge=0)


def detect_discrepancies(
    items: list[LineItem], index: InventoryIndex, tolerance: Decimal
) -> list[PriceDiscrepancy]:
    """Compare incoming unit prices against the inventory snapshot.

    Items without a matching record, or whose price is within tolerance of
    the stored one, are not reported.
    """
    discrepancies = []
    for item in items:
        record = index.find(item)
        if record is None:
            continue
        if abs(record.unit_price - item.unit_price) > tolerance:
            discrepancies.append(
                PriceDiscrepancy(
                    line_item=item,
                    existing_unit_price=record.unit_price,
                    incoming_unit_price=item.unit_price,
                )
            )
    return discrepancies


def accept_all_incoming(discrepancies: list[PriceDiscrepancy]) -> list[DiscrepancyDecision]:
    return [
        DiscrepancyDecision(local_id=d.local_id, choice=ResolutionChoice.ACCEPT_INCOMING)
        for d in discrepancies
    ]


def keep_all_existing(discrepancies: list[PriceDiscrepancy]) -> list[DiscrepancyDecision]:
    return [
        DiscrepancyDecision(local_id=d.local_id, choice=ResolutionChoice.KEEP_EXISTING)
        for d in discrepancies
    ]


def apply_resolution(
    items: list[LineItem],
    discrepancies: list[PriceDiscrepancy],
    decisions: list[DiscrepancyDecision],
) -> list[LineItem]:
    """Apply discrepancy decisions to the line items.

    Discrepant items without a decision keep the existing price. Line totals
    of repriced items are recomputed.

    Args:
        items: Full line item list of the draft
        discrepancies: Discrepancies reported by the detector
        decisions: User decisions, at most one per discrepant item

    Returns:
        New line item list

    Raises:
        ValidationGap: If a decision targets an item that has no discrepancy,
            or an override has no price
    """
    pending = {d.local_id: d for d in discrepancies}
    chosen: dict[str, DiscrepancyDecision] = {}
    for decision in decisions:
        if decision.local_id not in pending:
            raise ValidationGap(
                f"No price discrepancy for line item {decision.local_id}", field="local_id"
            )
        if decision.choice is ResolutionChoice.OVERRIDE and decision.override_price is None:
            raise ValidationGap("An override price is required", field="override_price")
        chosen[decision.local_id] = decision

    resolved = []
    for item in items:
        discrepancy = pending.get(item.local_id)
        if discrepancy is None:
            resolved.append(item)
            continue

        decision = chosen.get(item.local_id) or DiscrepancyDecision(local_id=item.local_id)
        if decision.choice is ResolutionChoice.ACCEPT_INCOMING:
            price = discrepancy.incoming_unit_price
        elif decision.choice is ResolutionChoice.OVERRIDE:
            price = decision.override_price
        else:
            price = discrepancy.existing_unit_price
        resolved.append(normalize_line_total(item.model_copy(update={"unit_price": price})))

    return resolved


class PriceDiscrepancyDetector:
    """Gates the commit of delivery notes on price agreement with inventory."""

    def __init__(self, settings: Settings, inventory_store: InventoryStore) -> None:
        """Initialize detector.

        Args:
            settings: Application settings (price tolerance, retries)
            inventory_store: Source of the authoritative prices
        """
        self.settings = settings
        self.inventory_store = inventory_store

    async def check(self, owner_id: str, draft: DocumentDraft) -> list[PriceDiscrepancy]:
        """Return the price discrepancies of a draft.

        Only delivery notes with line items are checked.

        Raises:
            LookupFailure: If the inventory cannot be fetched
        """
        if not draft.is_delivery_note or not draft.line_items:
            return []

        records = await fetch_with_retry(
            self.settings, "inventory prices", lambda: self.inventory_store.list_inventory(owner_id)
        )
        discrepancies = detect_discrepancies(
            draft.line_items, InventoryIndex(records), self.settings.price_tolerance
        )
        if discrepancies:
            logger.info(f"Detected {len(discrepancies)} price discrepancies")
            metrics.price_discrepancies_total.inc(len(discrepancies))
        return discrepancies
