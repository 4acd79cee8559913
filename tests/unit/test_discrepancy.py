"""Unit tests for price discrepancy detection and resolution."""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from services.finalization.discrepancy import (
    DiscrepancyDecision,
    PriceDiscrepancyDetector,
    ResolutionChoice,
    accept_all_incoming,
    apply_resolution,
    detect_discrepancies,
    keep_all_existing,
)
from services.finalization.errors import ValidationGap
from services.finalization.reconciler import InventoryIndex
from services.finalization.schema import DocumentDraft, DocumentType, IdentityKind, LineItem
from services.shared.config import Settings

TOLERANCE = Decimal("0.01")


@pytest.fixture
def settings() -> Settings:
    """Create test settings without retry waits."""
    return Settings(lookup_retry_initial_wait=0, lookup_retry_max_wait=0)


@pytest.fixture
def inventory() -> list[LineItem]:
    """Inventory with ABC at 9.00 and DEF at 5.00."""
    return [
        LineItem(
            inventory_id="inv-1",
            identity=IdentityKind.PERSISTED,
            catalog_number="ABC",
            unit_price=Decimal("9.00"),
        ),
        LineItem(
            inventory_id="inv-2",
            identity=IdentityKind.PERSISTED,
            catalog_number="DEF",
            unit_price=Decimal("5.00"),
        ),
    ]


@pytest.fixture
def incoming() -> LineItem:
    """ABC received at 10.00."""
    return LineItem(
        catalog_number="ABC",
        quantity=Decimal("2"),
        unit_price=Decimal("10.00"),
        line_total=Decimal("20.00"),
    )


class TestDetectDiscrepancies:
    """Test discrepancy detection."""

    def test_single_discrepancy(self, inventory: list[LineItem], incoming: LineItem) -> None:
        """Only the item with a changed price is reported."""
        same_price = LineItem(catalog_number="DEF", unit_price=Decimal("5.00"))
        unknown = LineItem(catalog_number="NEW", unit_price=Decimal("1.00"))

        found = detect_discrepancies(
            [incoming, same_price, unknown], InventoryIndex(inventory), TOLERANCE
        )

        assert len(found) == 1
        assert found[0].local_id == incoming.local_id
        assert found[0].existing_unit_price == Decimal("9.00")
        assert found[0].incoming_unit_price == Decimal("10.00")

    def test_difference_within_tolerance(self, inventory: list[LineItem]) -> None:
        """Differences up to the tolerance are ignored."""
        item = LineItem(catalog_number="DEF", unit_price=Decimal("5.01"))

        assert detect_discrepancies([item], InventoryIndex(inventory), TOLERANCE) == []

    def test_difference_above_tolerance(self, inventory: list[LineItem]) -> None:
        """Differences above the tolerance are reported."""
        item = LineItem(catalog_number="DEF", unit_price=Decimal("5.02"))

        assert len(detect_discrepancies([item], InventoryIndex(inventory), TOLERANCE)) == 1


class TestApplyResolution:
    """Test applying resolution decisions."""

    def test_choices(self, inventory: list[LineItem], incoming: LineItem) -> None:
        """Each choice sets the unit price and recomputes the total."""
        discrepancies = detect_discrepancies([incoming], InventoryIndex(inventory), TOLERANCE)

        accepted = apply_resolution([incoming], discrepancies, accept_all_incoming(discrepancies))
        kept = apply_resolution([incoming], discrepancies, keep_all_existing(discrepancies))
        overridden = apply_resolution(
            [incoming],
            discrepancies,
            [
                DiscrepancyDecision(
                    local_id=incoming.local_id,
                    choice=ResolutionChoice.OVERRIDE,
                    override_price=Decimal("9.50"),
                )
            ],
        )

        assert accepted[0].unit_price == Decimal("10.00")
        assert kept[0].unit_price == Decimal("9.00")
        assert kept[0].line_total == Decimal("18.00")
        assert overridden[0].unit_price == Decimal("9.50")
        assert overridden[0].line_total == Decimal("19.00")

    def test_unresolved_keeps_existing(self, inventory: list[LineItem], incoming: LineItem) -> None:
        """Items without a decision keep the price on file."""
        discrepancies = detect_discrepancies([incoming], InventoryIndex(inventory), TOLERANCE)

        resolved = apply_resolution([incoming], discrepancies, [])

        assert resolved[0].unit_price == Decimal("9.00")

    def test_override_requires_price(self, inventory: list[LineItem], incoming: LineItem) -> None:
        """An override without a price is rejected."""
        discrepancies = detect_discrepancies([incoming], InventoryIndex(inventory), TOLERANCE)

        with pytest.raises(ValidationGap):
            apply_resolution(
                [incoming],
                discrepancies,
                [DiscrepancyDecision(local_id=incoming.local_id, choice=ResolutionChoice.OVERRIDE)],
            )

    def test_decision_for_unknown_item(self, incoming: LineItem) -> None:
        """Decisions must refer to a discrepant item."""
        with pytest.raises(ValidationGap):
            apply_resolution([incoming], [], [DiscrepancyDecision(local_id=incoming.local_id)])


class TestPriceDiscrepancyDetector:
    """Test the detector with a mocked inventory store."""

    @pytest.mark.asyncio
    async def test_checks_delivery_notes(
        self, settings: Settings, inventory: list[LineItem], incoming: LineItem
    ) -> None:
        """Delivery notes are compared against the inventory."""
        store = AsyncMock()
        store.list_inventory.return_value = inventory
        draft = DocumentDraft(document_type=DocumentType.DELIVERY_NOTE, line_items=[incoming])

        found = await PriceDiscrepancyDetector(settings, store).check("owner-1", draft)

        assert [d.local_id for d in found] == [incoming.local_id]

    @pytest.mark.asyncio
    async def test_invoices_are_not_checked(self, settings: Settings, incoming: LineItem) -> None:
        """Invoices skip the price check entirely."""
        store = AsyncMock()
        draft = DocumentDraft(document_type=DocumentType.INVOICE, line_items=[incoming])

        assert await PriceDiscrepancyDetector(settings, store).check("owner-1", draft) == []
        store.list_inventory.assert_not_awaited()
