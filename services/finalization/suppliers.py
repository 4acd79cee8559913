"""Supplier identity and payment terms resolution.

The supplier step of a new document either resolves itself from the stored
payment terms of a matching supplier, or produces a prompt for the user.
Confirming the prompt creates or updates the supplier record, writing only
when the stored label or tax id actually changes.
"""

import logging
from datetime import date
from typing import Any

from pydantic import BaseModel, Field

from services.api import metrics
from services.finalization.errors import (
    DuplicateSupplierName,
    FinalizationError,
    LookupFailure,
    SupplierWriteFailure,
    ValidationGap,
)
from services.finalization.lookups import fetch_with_retry
from services.finalization.payment_terms import (
    ParsedTerms,
    compute_due_date,
    format_terms_label,
    parse_terms_label,
)
from services.finalization.ports import SupplierStore
from services.finalization.schema import DocumentDraft, PaymentTermOption, Supplier, coerce_date
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class SupplierPrompt(BaseModel):
    """Data needed to render the supplier and payment details step."""

    candidate_name: str = ""
    existing_suppliers: list[Supplier] = Field(default_factory=list)
    matched_supplier: Supplier | None = None
    initial_option: PaymentTermOption = PaymentTermOption.NONE
    initial_due_date: date | None = None
    invoice_date: date | None = None


class SupplierResolution(BaseModel):
    """Outcome of entering the supplier step.

    Exactly one of ``terms`` (auto-resolved) and ``prompt`` (user input
    needed) is set.
    """

    supplier: Supplier | None = None
    terms: ParsedTerms | None = None
    prompt: SupplierPrompt | None = None

    @property
    def auto_resolved(self) -> bool:
        return self.terms is not None


class SupplierConfirmation(BaseModel):
    """User input submitted for the supplier step."""

    supplier_name: str
    is_new: bool = False
    payment_term_option: PaymentTermOption = PaymentTermOption.NONE
    payment_due_date: date | None = None
    tax_id: str | None = None


class ConfirmedSupplier(BaseModel):
    """Result of a successful supplier confirmation."""

    supplier: Supplier
    payment_term_option: PaymentTermOption
    payment_due_date: date | None = None
    payment_terms_label: str | None = None
    suppliers: list[Supplier] = Field(default_factory=list)


def find_match(name: str | None, suppliers: list[Supplier]) -> Supplier | None:
    """Find a supplier by name (trimmed, case-insensitive exact match)."""
    if not name or not name.strip():
        return None
    wanted = name.strip().casefold()
    for supplier in suppliers:
        if supplier.name.strip().casefold() == wanted:
            return supplier
    return None


class SupplierResolver:
    """Resolves the supplier and payment terms of a new document."""

    def __init__(self, settings: Settings, supplier_store: SupplierStore) -> None:
        """Initialize resolver.

        Args:
            settings: Application settings
            supplier_store: Persisted supplier records
        """
        self.settings = settings
        self.supplier_store = supplier_store

    async def load_suppliers(self, owner_id: str) -> list[Supplier]:
        """Fetch the supplier list.

        Raises:
            LookupFailure: If the list cannot be fetched
        """
        return await fetch_with_retry(
            self.settings, "suppliers", lambda: self.supplier_store.list_suppliers(owner_id)
        )

    async def resolve(self, owner_id: str, draft: DocumentDraft) -> SupplierResolution:
        """Enter the supplier step for a draft.

        When the scanned name matches a supplier with a stored payment terms
        label, the label is parsed and the step resolves without user input.
        Otherwise a prompt is returned.

        Args:
            owner_id: Owner of the supplier records
            draft: Draft being finalized

        Returns:
            SupplierResolution with either parsed terms or a prompt

        Raises:
            LookupFailure: If the supplier list cannot be fetched
        """
        suppliers = await self.load_suppliers(owner_id)
        candidate = (draft.supplier_name or "").strip()
        matched = find_match(candidate, suppliers)

        if matched is not None and (matched.payment_terms_label or "").strip():
            terms = parse_terms_label(matched.payment_terms_label, self.settings)
            logger.info(
                f"Supplier '{matched.name}' resolved from stored terms "
                f"'{matched.payment_terms_label}' -> {terms.option.value}"
            )
            metrics.supplier_auto_resolved_total.inc()
            return SupplierResolution(supplier=matched, terms=terms)

        return SupplierResolution(
            supplier=matched,
            prompt=self.build_prompt(draft, candidate, suppliers, matched),
        )

    def build_prompt(
        self,
        draft: DocumentDraft,
        candidate: str,
        suppliers: list[Supplier],
        matched: Supplier | None,
    ) -> SupplierPrompt:
        initial_option = draft.payment_term_option
        initial_due_date = coerce_date(draft.payment_due_date)

        if initial_option is PaymentTermOption.NONE:
            if draft.payment_terms_label:
                parsed = parse_terms_label(draft.payment_terms_label, self.settings)
                initial_option = parsed.option
                initial_due_date = parsed.due_date or initial_due_date
            elif initial_due_date is not None:
                initial_option = PaymentTermOption.CUSTOM

        return SupplierPrompt(
            candidate_name=matched.name if matched else candidate,
            existing_suppliers=suppliers,
            matched_supplier=matched,
            initial_option=initial_option,
            initial_due_date=initial_due_date,
            invoice_date=coerce_date(draft.invoice_date),
        )

    async def confirm(
        self,
        owner_id: str,
        confirmation: SupplierConfirmation,
        invoice_date: date | None = None,
    ) -> ConfirmedSupplier:
        """Apply the user's supplier confirmation.

        New suppliers (or "existing" ones not found in the list) are created.
        Existing suppliers are updated only when the computed terms label or
        the tax id differs from what is stored.

        Args:
            owner_id: Owner of the supplier records
            confirmation: User input for the step
            invoice_date: Invoice date used to derive the due date

        Returns:
            ConfirmedSupplier with the derived due date and label

        Raises:
            ValidationGap: If the name is blank or custom terms lack a date
            LookupFailure: If the supplier list cannot be fetched
            SupplierWriteFailure: If creating or updating the supplier fails
        """
        name = confirmation.supplier_name.strip()
        if not name:
            raise ValidationGap("Supplier name is required", field="supplier_name")

        option = confirmation.payment_term_option
        due_date = compute_due_date(option, invoice_date, custom_date=confirmation.payment_due_date)
        label = format_terms_label(option, due_date, self.settings)
        tax_id = (confirmation.tax_id or "").strip() or None

        suppliers = await self.load_suppliers(owner_id)
        existing = find_match(name, suppliers)

        if confirmation.is_new or existing is None:
            supplier = await self._create_or_update(owner_id, name, label, tax_id)
        else:
            supplier = await self._update_if_changed(owner_id, existing, label, tax_id)

        suppliers = await self._refresh(owner_id, suppliers)
        return ConfirmedSupplier(
            supplier=supplier,
            payment_term_option=option,
            payment_due_date=due_date,
            payment_terms_label=label,
            suppliers=suppliers,
        )

    async def _create_or_update(
        self, owner_id: str, name: str, label: str | None, tax_id: str | None
    ) -> Supplier:
        try:
            supplier = await self.supplier_store.create_supplier(
                owner_id, name, payment_terms_label=label, tax_id=tax_id
            )
        except DuplicateSupplierName:
            logger.info(f"Supplier '{name}' already exists, updating it instead")
            metrics.supplier_writes_total.labels(action="create", status="duplicate").inc()
            suppliers = await self.load_suppliers(owner_id)
            existing = find_match(name, suppliers)
            if existing is None:
                raise SupplierWriteFailure(name, "reported as duplicate but not found") from None
            return await self._update_if_changed(owner_id, existing, label, tax_id)
        except FinalizationError as e:
            metrics.supplier_writes_total.labels(action="create", status="failed").inc()
            raise SupplierWriteFailure(name, str(e)) from e
        except Exception as e:
            logger.exception(f"Creating supplier '{name}' failed")
            metrics.supplier_writes_total.labels(action="create", status="failed").inc()
            raise SupplierWriteFailure(name, str(e)) from e

        logger.info(f"Created supplier '{supplier.name}' ({supplier.id})")
        metrics.supplier_writes_total.labels(action="create", status="success").inc()
        return supplier

    async def _update_if_changed(
        self, owner_id: str, supplier: Supplier, label: str | None, tax_id: str | None
    ) -> Supplier:
        fields: dict[str, Any] = {}
        if label is not None and label != supplier.payment_terms_label:
            fields["payment_terms_label"] = label
        if tax_id is not None and tax_id != supplier.tax_id:
            fields["tax_id"] = tax_id

        if not fields:
            logger.info(f"Supplier '{supplier.name}' unchanged, skipping update")
            metrics.supplier_writes_total.labels(action="update", status="skipped").inc()
            return supplier

        try:
            await self.supplier_store.update_supplier(owner_id, supplier.id, fields)
        except Exception as e:
            logger.error(f"Updating supplier '{supplier.name}' failed: {e}")
            metrics.supplier_writes_total.labels(action="update", status="failed").inc()
            raise SupplierWriteFailure(supplier.name, str(e)) from e

        logger.info(f"Updated supplier '{supplier.name}': {sorted(fields)}")
        metrics.supplier_writes_total.labels(action="update", status="success").inc()
        return supplier.model_copy(update=fields)

    async def _refresh(self, owner_id: str, previous: list[Supplier]) -> list[Supplier]:
        try:
            return await self.load_suppliers(owner_id)
        except LookupFailure as e:
            logger.warning(f"Could not refresh supplier list after write: {e}")
            return previous
