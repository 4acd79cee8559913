"""Final commit of a resolved document draft.

The committer fills in the derived fields of a draft (total, normalized
dates, payment terms label, file name), persists it in one call, and then
runs the post-commit work: a best-effort background sync of the committed
line items with the external catalog and the removal of the staging
artifact. Neither post-commit step can fail the commit.
"""

import asyncio
import logging
import re
import time
import uuid
from decimal import Decimal

from services.api import metrics
from services.finalization.errors import PersistFailure
from services.finalization.line_items import sum_line_totals
from services.finalization.payment_terms import format_terms_label
from services.finalization.ports import CatalogSync, DocumentStore, StagingStore
from services.finalization.schema import (
    DocumentDraft,
    DocumentRecord,
    LineItem,
    PersistResult,
    coerce_date,
)
from services.shared.config import Settings

logger = logging.getLogger(__name__)

# Characters not allowed in generated file names
UNSAFE_FILENAME_CHARS = re.compile(r'[/\\?%*:|"<>]')


def derive_total(draft: DocumentDraft) -> Decimal | None:
    """Total amount of a draft, summed from its line items when absent.

    A zero total counts as absent.
    """
    if draft.total_amount:
        return draft.total_amount
    if draft.line_items:
        return sum_line_totals(draft.line_items)
    return draft.total_amount


def sanitize_filename(name: str, max_length: int) -> str:
    cleaned = UNSAFE_FILENAME_CHARS.sub("-", name).strip()
    return cleaned[:max_length]


def build_file_name(draft: DocumentDraft, max_length: int) -> str:
    """Generate the document file name, reusing one generated earlier.

    Supplier and invoice number are combined when both are known; either one
    alone is used otherwise.
    """
    if draft.file_name:
        return draft.file_name

    supplier = (draft.supplier_name or "").strip()
    number = (draft.invoice_number or "").strip()
    if supplier and number:
        name = f"{supplier}_{number}"
    elif supplier:
        name = supplier
    elif number:
        name = f"Invoice_{number}"
    else:
        name = f"{draft.document_type.value}_{uuid.uuid4().hex[:8]}"
    return sanitize_filename(name, max_length)


def build_record(draft: DocumentDraft, settings: Settings) -> DocumentRecord:
    """Compute the derived fields of a draft.

    Pure: can be called repeatedly without side effects.

    Args:
        draft: Fully resolved draft
        settings: Settings with labels and file name limits

    Returns:
        DocumentRecord ready to persist
    """
    invoice_date = coerce_date(draft.invoice_date)
    if invoice_date is None and draft.invoice_date:
        logger.warning(f"Ignoring unparseable invoice date {draft.invoice_date!r}")
    due_date = coerce_date(draft.payment_due_date)
    if due_date is None and draft.payment_due_date:
        logger.warning(f"Ignoring unparseable payment due date {draft.payment_due_date!r}")

    label = format_terms_label(
        draft.payment_term_option, due_date, settings, raw_label=draft.payment_terms_label
    )
    if label is None:
        label = draft.payment_terms_label

    return DocumentRecord(
        document_type=draft.document_type,
        document_id=draft.document_id,
        file_name=build_file_name(draft, settings.filename_max_length),
        supplier_name=draft.supplier_name,
        supplier_tax_id=draft.supplier_tax_id,
        invoice_number=draft.invoice_number,
        total_amount=derive_total(draft),
        invoice_date=invoice_date,
        payment_method=draft.payment_method,
        payment_due_date=due_date,
        payment_term_option=draft.payment_term_option,
        payment_terms_label=label,
        line_items=draft.line_items,
        raw_extraction_payload=draft.raw_extraction_payload,
    )


class FinalizationCommitter:
    """Persists resolved drafts and runs the post-commit steps."""

    def __init__(
        self,
        settings: Settings,
        document_store: DocumentStore,
        staging_store: StagingStore | None = None,
        catalog_sync: CatalogSync | None = None,
    ) -> None:
        """Initialize committer.

        Args:
            settings: Application settings
            document_store: Store receiving the finalized document
            staging_store: Store holding staging artifacts (optional)
            catalog_sync: External catalog synchronization (optional)
        """
        self.settings = settings
        self.document_store = document_store
        self.staging_store = staging_store
        self.catalog_sync = catalog_sync
        self._background: set[asyncio.Task] = set()

    async def commit(self, owner_id: str, draft: DocumentDraft) -> PersistResult:
        """Persist a resolved draft.

        Args:
            owner_id: Owner of the document
            draft: Draft with no pending discrepancies or review items

        Returns:
            PersistResult with the committed document and line items

        Raises:
            PersistFailure: If the document store rejects the document; the
                staging artifact is kept in that case
        """
        record = build_record(draft, self.settings)

        start = time.time()
        try:
            result = await self.document_store.persist_document(
                owner_id, record, source_artifact_id=draft.source_artifact_id
            )
        except Exception as e:
            logger.error(f"Persisting document '{record.file_name}' failed: {e}")
            metrics.commits_total.labels(status="failed").inc()
            raise PersistFailure(str(e), source_artifact_id=draft.source_artifact_id) from e
        finally:
            metrics.commit_duration_seconds.observe(time.time() - start)

        metrics.commits_total.labels(status="success").inc()
        logger.info(
            f"Committed document {result.committed_document.id} ('{record.file_name}') "
            f"with {len(result.committed_line_items)} line items"
        )

        self._schedule_sync(owner_id, result.committed_line_items)
        await self._delete_staging(owner_id, draft.source_artifact_id)
        return result

    def _schedule_sync(self, owner_id: str, line_items: list[LineItem]) -> None:
        if not self.settings.sync_enabled or self.catalog_sync is None or not line_items:
            return

        task = asyncio.create_task(self.catalog_sync.sync_inventory(owner_id, line_items))
        self._background.add(task)
        task.add_done_callback(self._on_sync_done)

    def _on_sync_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            logger.warning("Background catalog sync was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background catalog sync failed: {error}")
            metrics.sync_failures_total.inc()

    async def _delete_staging(self, owner_id: str, artifact_id: str | None) -> None:
        if not artifact_id or self.staging_store is None:
            return
        try:
            await self.staging_store.delete_staging_artifact(owner_id, artifact_id)
        except Exception as e:
            logger.warning(f"Failed to delete staging artifact {artifact_id}: {e}")

    async def wait_for_background(self) -> None:
        """Wait until all scheduled background syncs have finished."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
