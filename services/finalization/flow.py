"""Dialog flow state machine for new purchase documents.

The controller decides which confirmation step runs next:

    idle -> supplier_payment_details -> new_product_details -> ready_to_save
                                     \\-----------------------/
    (any lookup failure)              -> error

It never mutates the caller's draft. Each step returns a ``StepResult``
carrying the new state and the typed events the caller applies to its own
draft copy with ``apply_events``.
"""

import logging
from datetime import date
from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, Field

from services.api import metrics
from services.finalization.errors import InvalidFlowTransition, LookupFailure
from services.finalization.reconciler import ProductReconciler, ReviewEdit, merge_review_edits
from services.finalization.schema import DocumentDraft, LineItem, PaymentTermOption, coerce_date
from services.finalization.suppliers import SupplierConfirmation, SupplierPrompt, SupplierResolver

logger = logging.getLogger(__name__)


class FlowState(str, Enum):
    """States of the dialog flow."""

    IDLE = "idle"
    SUPPLIER_PAYMENT_DETAILS = "supplier_payment_details"
    NEW_PRODUCT_DETAILS = "new_product_details"
    READY_TO_SAVE = "ready_to_save"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        return self not in (FlowState.IDLE, FlowState.READY_TO_SAVE)


class SupplierMatched(BaseModel):
    """The scanned name matched a stored supplier that has no payment terms."""

    kind: Literal["supplier_matched"] = "supplier_matched"
    supplier_name: str


class SupplierResolved(BaseModel):
    """Supplier and payment terms settled, automatically or by the user."""

    kind: Literal["supplier_resolved"] = "supplier_resolved"
    supplier_name: str
    payment_term_option: PaymentTermOption
    payment_due_date: date | None = None
    payment_terms_label: str | None = None
    terms_label_unparsed: bool = False
    supplier_tax_id: str | None = None
    automatic: bool = False


class ProductsReviewed(BaseModel):
    """Review edits merged into the full line item list."""

    kind: Literal["products_reviewed"] = "products_reviewed"
    line_items: list[LineItem]


FlowEvent = Union[SupplierMatched, SupplierResolved, ProductsReviewed]


class StepResult(BaseModel):
    """State reached by a flow step and the events it produced."""

    state: FlowState
    events: list[FlowEvent] = Field(default_factory=list)
    supplier_prompt: SupplierPrompt | None = None
    review_items: list[LineItem] = Field(default_factory=list)


def apply_events(draft: DocumentDraft, events: list[FlowEvent]) -> DocumentDraft:
    """Apply flow events to a draft, returning the updated copy."""
    for event in events:
        if isinstance(event, SupplierMatched):
            draft = draft.model_copy(update={"supplier_name": event.supplier_name})
        elif isinstance(event, SupplierResolved):
            update = {
                "supplier_name": event.supplier_name,
                "payment_term_option": event.payment_term_option,
                "payment_due_date": event.payment_due_date,
                "payment_terms_label": event.payment_terms_label,
                "terms_label_unparsed": event.terms_label_unparsed,
            }
            if event.supplier_tax_id:
                update["supplier_tax_id"] = event.supplier_tax_id
            draft = draft.model_copy(update=update)
        elif isinstance(event, ProductsReviewed):
            draft = draft.model_copy(update={"line_items": event.line_items})
    return draft


class DialogFlowController:
    """Sequences the confirmation steps of a new document."""

    def __init__(self, supplier_resolver: SupplierResolver, reconciler: ProductReconciler) -> None:
        """Initialize controller.

        Args:
            supplier_resolver: Resolver for the supplier step
            reconciler: Reconciler deciding on the product review step
        """
        self.supplier_resolver = supplier_resolver
        self.reconciler = reconciler
        self._state = FlowState.IDLE
        self.supplier_prompt: SupplierPrompt | None = None
        self.review_items: list[LineItem] = []

    @property
    def state(self) -> FlowState:
        return self._state

    def _transition(self, new_state: FlowState) -> None:
        old_state = self._state
        self._state = new_state
        logger.info(f"Dialog flow: {old_state.value} -> {new_state.value}")
        metrics.flow_transitions_total.labels(
            from_state=old_state.value, to_state=new_state.value
        ).inc()

    def _require(self, action: str, *states: FlowState) -> None:
        if self._state not in states:
            raise InvalidFlowTransition(action, self._state.value)

    def _result(self, events: list[FlowEvent] | None = None) -> StepResult:
        return StepResult(
            state=self._state,
            events=events or [],
            supplier_prompt=self.supplier_prompt,
            review_items=self.review_items,
        )

    def reset(self) -> None:
        """Return to idle and drop step data."""
        self.supplier_prompt = None
        self.review_items = []
        if self._state is not FlowState.IDLE:
            self._transition(FlowState.IDLE)

    async def start(
        self, owner_id: str, draft: DocumentDraft, existing: bool = False
    ) -> StepResult:
        """Start the flow for a draft.

        Previously saved documents go straight to ready_to_save. New ones
        enter the supplier step, which may resolve itself from the stored
        supplier terms.

        Args:
            owner_id: Owner of the supplier and inventory records
            draft: Draft being finalized
            existing: True for documents that were saved before

        Returns:
            StepResult of the first step

        Raises:
            InvalidFlowTransition: If a step is already active
            LookupFailure: If a required lookup fails (flow enters error)
        """
        self._require("start", FlowState.IDLE, FlowState.READY_TO_SAVE, FlowState.ERROR)
        self.supplier_prompt = None
        self.review_items = []

        if existing:
            self._transition(FlowState.READY_TO_SAVE)
            return self._result()

        self._transition(FlowState.SUPPLIER_PAYMENT_DETAILS)
        try:
            resolution = await self.supplier_resolver.resolve(owner_id, draft)
        except LookupFailure:
            self._transition(FlowState.ERROR)
            raise

        if resolution.auto_resolved:
            terms = resolution.terms
            event = SupplierResolved(
                supplier_name=resolution.supplier.name,
                payment_term_option=terms.option,
                payment_due_date=terms.due_date,
                payment_terms_label=terms.raw_label,
                terms_label_unparsed=terms.unparsed,
                automatic=True,
            )
            return await self._after_supplier_step(owner_id, draft, [event])

        self.supplier_prompt = resolution.prompt
        events: list[FlowEvent] = []
        if resolution.supplier is not None:
            events.append(SupplierMatched(supplier_name=resolution.supplier.name))
        return self._result(events)

    async def confirm_supplier(
        self, owner_id: str, draft: DocumentDraft, confirmation: SupplierConfirmation
    ) -> StepResult:
        """Complete the supplier step with user input.

        On a failed supplier write the flow stays in the supplier step so the
        user can retry.

        Raises:
            InvalidFlowTransition: If the supplier step is not active
            ValidationGap: If the input is incomplete
            SupplierWriteFailure: If the supplier cannot be saved
            LookupFailure: If the supplier list or inventory cannot be fetched
        """
        self._require("confirm supplier", FlowState.SUPPLIER_PAYMENT_DETAILS)

        confirmed = await self.supplier_resolver.confirm(
            owner_id, confirmation, invoice_date=coerce_date(draft.invoice_date)
        )
        event = SupplierResolved(
            supplier_name=confirmed.supplier.name,
            payment_term_option=confirmed.payment_term_option,
            payment_due_date=confirmed.payment_due_date,
            payment_terms_label=confirmed.payment_terms_label,
            supplier_tax_id=confirmed.supplier.tax_id,
        )
        self.supplier_prompt = None
        return await self._after_supplier_step(owner_id, draft, [event])

    async def cancel_supplier_step(self, owner_id: str, draft: DocumentDraft) -> StepResult:
        """Skip the supplier step, keeping whatever was already written.

        Raises:
            InvalidFlowTransition: If the supplier step is not active
            LookupFailure: If the inventory cannot be fetched
        """
        self._require("cancel supplier step", FlowState.SUPPLIER_PAYMENT_DETAILS)
        self.supplier_prompt = None
        return await self._after_supplier_step(owner_id, draft, [])

    async def _after_supplier_step(
        self, owner_id: str, draft: DocumentDraft, events: list[FlowEvent]
    ) -> StepResult:
        if draft.is_delivery_note:
            try:
                review_items = await self.reconciler.find_items_needing_review(owner_id, draft)
            except LookupFailure:
                self._transition(FlowState.ERROR)
                raise
            if review_items:
                self.review_items = review_items
                self._transition(FlowState.NEW_PRODUCT_DETAILS)
                return self._result(events)

        self._transition(FlowState.READY_TO_SAVE)
        return self._result(events)

    def complete_product_review(
        self, draft: DocumentDraft, edits: list[ReviewEdit] | None
    ) -> StepResult:
        """Complete the product review step.

        ``None`` cancels the review and leaves the line items untouched.

        Raises:
            InvalidFlowTransition: If the review step is not active
            ValidationGap: If an edit is invalid (the flow stays in review)
        """
        self._require("complete product review", FlowState.NEW_PRODUCT_DETAILS)

        events: list[FlowEvent] = []
        if edits is not None:
            merged = merge_review_edits(draft.line_items, edits)
            events.append(ProductsReviewed(line_items=merged))
        else:
            logger.info("Product review cancelled, line items left unchanged")

        self.review_items = []
        self._transition(FlowState.READY_TO_SAVE)
        return self._result(events)
