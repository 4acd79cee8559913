"""Unit tests for FinalizationCommitter.

Tests cover:
- Derived fields (total, dates, terms label, file name)
- Persist failure handling
- Background sync and staging cleanup
"""

import logging
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from services.finalization.committer import (
    FinalizationCommitter,
    build_file_name,
    build_record,
    derive_total,
)
from services.finalization.errors import PersistFailure
from services.finalization.memory import (
    InMemoryCatalogSync,
    InMemoryDocumentStore,
    InMemoryInventoryStore,
    InMemoryStagingStore,
)
from services.finalization.schema import (
    DocumentDraft,
    DocumentType,
    IdentityKind,
    LineItem,
    PaymentTermOption,
)
from services.shared.config import Settings

OWNER = "owner-1"


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def draft() -> DocumentDraft:
    """Delivery note with two line items and no total."""
    return DocumentDraft(
        document_type=DocumentType.DELIVERY_NOTE,
        supplier_name="Acme",
        invoice_number="INV-1",
        invoice_date="2024-02-03T00:00:00",
        payment_term_option=PaymentTermOption.NET30,
        line_items=[
            LineItem(catalog_number="A", quantity=Decimal("2"), unit_price=Decimal("1.5"),
                     line_total=Decimal("3.00")),
            LineItem(catalog_number="B", quantity=Decimal("1"), unit_price=Decimal("0.333"),
                     line_total=Decimal("0.33")),
        ],
    )


class TestDerivedFields:
    """Test the pure derivation steps."""

    def test_total_derived_from_line_items(self, draft: DocumentDraft) -> None:
        """A missing total is the rounded sum of line totals."""
        assert derive_total(draft) == Decimal("3.33")

    def test_zero_total_counts_as_absent(self, draft: DocumentDraft) -> None:
        """A zero total is replaced by the derived one."""
        zero = draft.model_copy(update={"total_amount": Decimal("0")})
        assert derive_total(zero) == Decimal("3.33")

    def test_given_total_is_kept(self, draft: DocumentDraft) -> None:
        """A scanned total wins over the derived one."""
        assert derive_total(draft.model_copy(update={"total_amount": Decimal("4")})) == Decimal("4")

    def test_record_normalizes_dates_and_label(
        self, draft: DocumentDraft, settings: Settings
    ) -> None:
        """Dates become date objects and the terms get their label."""
        record = build_record(draft, settings)

        assert record.invoice_date == date(2024, 2, 3)
        assert record.payment_terms_label == "Net 30"
        assert record.file_name == "Acme_INV-1"

    def test_unparsed_label_is_preserved(self, draft: DocumentDraft, settings: Settings) -> None:
        """Custom terms without a date keep the original label."""
        custom = draft.model_copy(
            update={
                "payment_term_option": PaymentTermOption.CUSTOM,
                "payment_terms_label": "2/10 net 45",
                "terms_label_unparsed": True,
            }
        )

        assert build_record(custom, settings).payment_terms_label == "2/10 net 45"

    @pytest.mark.parametrize(
        ("supplier", "number", "expected"),
        [
            ("Acme", "INV-1", "Acme_INV-1"),
            ("Acme", None, "Acme"),
            (None, "77", "Invoice_77"),
            ('A/B: "C"', "1?2", "A-B- -C-_1-2"),
        ],
    )
    def test_file_name(self, supplier: str | None, number: str | None, expected: str) -> None:
        """File names combine supplier and number with unsafe characters replaced."""
        draft = DocumentDraft(
            document_type=DocumentType.INVOICE, supplier_name=supplier, invoice_number=number
        )

        assert build_file_name(draft, 100) == expected

    def test_file_name_is_capped(self) -> None:
        """Long names are truncated."""
        draft = DocumentDraft(document_type=DocumentType.INVOICE, supplier_name="x" * 300)

        assert len(build_file_name(draft, 100)) == 100

    def test_existing_file_name_is_reused(self) -> None:
        """A file name generated earlier is kept."""
        draft = DocumentDraft(
            document_type=DocumentType.INVOICE, supplier_name="New", file_name="Old_1"
        )

        assert build_file_name(draft, 100) == "Old_1"


class TestCommit:
    """Test the commit and post-commit steps."""

    @pytest.mark.asyncio
    async def test_commit_persists_and_cleans_up(
        self, settings: Settings, draft: DocumentDraft
    ) -> None:
        """A successful commit syncs in the background and removes staging."""
        inventory = InMemoryInventoryStore()
        documents = InMemoryDocumentStore(inventory)
        staging = InMemoryStagingStore()
        sync = InMemoryCatalogSync()
        artifact_id = staging.put(OWNER, {"raw": True})
        draft = draft.model_copy(update={"source_artifact_id": artifact_id})

        committer = FinalizationCommitter(settings, documents, staging, sync)
        result = await committer.commit(OWNER, draft)
        await committer.wait_for_background()

        assert result.committed_document.id == artifact_id
        assert result.committed_document.total_amount == Decimal("3.33")
        assert all(i.identity is IdentityKind.PERSISTED for i in result.committed_line_items)
        assert len(await inventory.list_inventory(OWNER)) == 2
        assert staging.get(OWNER, artifact_id) is None
        assert len(sync.synced) == 1

    @pytest.mark.asyncio
    async def test_persist_failure_keeps_staging(
        self, settings: Settings, draft: DocumentDraft
    ) -> None:
        """A failed persist raises PersistFailure and leaves staging alone."""
        documents = AsyncMock()
        documents.persist_document.side_effect = RuntimeError("constraint violation")
        staging = AsyncMock()
        sync = AsyncMock()
        draft = draft.model_copy(update={"source_artifact_id": "pending-1"})

        with pytest.raises(PersistFailure) as exc_info:
            await FinalizationCommitter(settings, documents, staging, sync).commit(OWNER, draft)

        assert exc_info.value.source_artifact_id == "pending-1"
        staging.delete_staging_artifact.assert_not_awaited()
        sync.sync_inventory.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sync_failure_is_logged_only(
        self, settings: Settings, draft: DocumentDraft, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A failing background sync never fails the commit."""
        documents = InMemoryDocumentStore(InMemoryInventoryStore())
        sync = AsyncMock()
        sync.sync_inventory.side_effect = RuntimeError("catalog offline")

        committer = FinalizationCommitter(settings, documents, catalog_sync=sync)
        with caplog.at_level(logging.ERROR):
            result = await committer.commit(OWNER, draft)
            await committer.wait_for_background()

        assert result.committed_document.id
        assert "catalog offline" in caplog.text

    @pytest.mark.asyncio
    async def test_sync_disabled(self, draft: DocumentDraft) -> None:
        """No sync is scheduled when disabled."""
        sync = InMemoryCatalogSync()
        committer = FinalizationCommitter(
            Settings(sync_enabled=False),
            InMemoryDocumentStore(InMemoryInventoryStore()),
            catalog_sync=sync,
        )

        await committer.commit(OWNER, draft)
        await committer.wait_for_background()

        assert sync.synced == []

    @pytest.mark.asyncio
    async def test_staging_cleanup_failure_is_logged_only(
        self, settings: Settings, draft: DocumentDraft, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A failing staging delete does not fail the commit."""
        staging = AsyncMock()
        staging.delete_staging_artifact.side_effect = RuntimeError("gone")
        draft = draft.model_copy(update={"source_artifact_id": "pending-9"})

        with caplog.at_level(logging.WARNING):
            await FinalizationCommitter(
                settings, InMemoryDocumentStore(InMemoryInventoryStore()), staging
            ).commit(OWNER, draft)

        assert "pending-9" in caplog.text
