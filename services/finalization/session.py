"""Finalization session: the upward interface of the workflow.

A session owns one document draft while it is being finalized. It drives the
dialog flow, applies the flow's events to its draft copy, runs the save path
(price check, resolution, commit) and rejects every call while an awaiting
operation is still running.
"""

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Literal

from pydantic import BaseModel, Field

from services.finalization.committer import FinalizationCommitter
from services.finalization.discrepancy import (
    DiscrepancyDecision,
    PriceDiscrepancyDetector,
    apply_resolution,
)
from services.finalization.errors import (
    FinalizationError,
    InvalidFlowTransition,
    OperationInProgress,
    ValidationGap,
)
from services.finalization.flow import DialogFlowController, FlowState, StepResult, apply_events
from services.finalization.line_items import add_item, edit_item, remove_item
from services.finalization.reconciler import ReviewEdit
from services.finalization.schema import (
    CommittedDocument,
    DocumentDraft,
    LineItem,
    PersistResult,
    PriceDiscrepancy,
)
from services.finalization.suppliers import SupplierConfirmation, SupplierPrompt

logger = logging.getLogger(__name__)


class ErrorInfo(BaseModel):
    """Last error reported by a session operation."""

    code: str
    detail: str


class SaveOutcome(BaseModel):
    """Result of a save or discrepancy resolution attempt."""

    status: Literal["committed", "needs_price_resolution", "cancelled"]
    discrepancies: list[PriceDiscrepancy] = Field(default_factory=list)
    result: PersistResult | None = None


class SessionView(BaseModel):
    """Everything the presentation layer needs to render the current step."""

    session_id: str
    owner_id: str
    state: FlowState
    draft: DocumentDraft
    supplier_prompt: SupplierPrompt | None = None
    review_items: list[LineItem] = Field(default_factory=list)
    discrepancies: list[PriceDiscrepancy] = Field(default_factory=list)
    committed_document: CommittedDocument | None = None
    last_error: ErrorInfo | None = None


class FinalizationSession:
    """Finalization of a single document draft."""

    def __init__(
        self,
        owner_id: str,
        draft: DocumentDraft,
        controller: DialogFlowController,
        detector: PriceDiscrepancyDetector,
        committer: FinalizationCommitter,
        existing: bool = False,
        session_id: str | None = None,
    ) -> None:
        """Initialize session.

        Args:
            owner_id: Owner of the document and related records
            draft: Draft to finalize (copied, never mutated)
            controller: Dialog flow for this session
            detector: Price discrepancy detector
            committer: Document committer
            existing: True for a previously saved document
            session_id: Identifier (generated when omitted)
        """
        self.session_id = session_id or str(uuid.uuid4())
        self.owner_id = owner_id
        self.existing = existing
        self.controller = controller
        self.detector = detector
        self.committer = committer

        self.draft = draft.model_copy(deep=True)
        self._snapshot = draft.model_copy(deep=True)
        self.discrepancies: list[PriceDiscrepancy] = []
        self.committed_document: CommittedDocument | None = None
        self.last_error: ErrorInfo | None = None
        self._in_flight: set[str] = set()

    @property
    def state(self) -> FlowState:
        return self.controller.state

    @contextmanager
    def _operation(self, name: str, suspends: bool = True) -> Iterator[None]:
        # One suspending operation per session; all entry points are rejected while it runs
        if self._in_flight:
            raise OperationInProgress(next(iter(self._in_flight)))
        if suspends:
            self._in_flight.add(name)
        try:
            yield
            self.last_error = None
        except FinalizationError as e:
            self.last_error = ErrorInfo(code=e.code, detail=str(e))
            raise
        finally:
            if suspends:
                self._in_flight.discard(name)

    def _apply(self, result: StepResult) -> StepResult:
        self.draft = apply_events(self.draft, result.events)
        return result

    async def start(self) -> StepResult:
        """Start (or restart) the dialog flow.

        Raises:
            OperationInProgress: If another operation is still running
            InvalidFlowTransition: If a step is active
            LookupFailure: If a required lookup fails
        """
        with self._operation("start"):
            self._snapshot = self.draft.model_copy(deep=True)
            self.discrepancies = []
            return self._apply(
                await self.controller.start(self.owner_id, self.draft, existing=self.existing)
            )

    async def confirm_supplier(self, confirmation: SupplierConfirmation) -> StepResult:
        """Submit the supplier step.

        Raises:
            OperationInProgress: If another operation is still running
            InvalidFlowTransition: If the supplier step is not active
            ValidationGap: If the input is incomplete
            SupplierWriteFailure: If the supplier cannot be saved
        """
        with self._operation("supplier_write"):
            return self._apply(
                await self.controller.confirm_supplier(self.owner_id, self.draft, confirmation)
            )

    async def cancel_supplier_step(self) -> StepResult:
        """Skip the supplier step, keeping the draft as it is.

        Raises:
            OperationInProgress: If another operation is still running
            InvalidFlowTransition: If the supplier step is not active
            LookupFailure: If the inventory cannot be fetched
        """
        with self._operation("cancel_supplier"):
            result = await self.controller.cancel_supplier_step(self.owner_id, self.draft)
            return self._apply(result)

    def complete_product_review(self, edits: list[ReviewEdit] | None) -> StepResult:
        """Submit (or cancel with ``None``) the product review step.

        Raises:
            OperationInProgress: If another operation is still running
            InvalidFlowTransition: If the review step is not active
            ValidationGap: If an edit is invalid
        """
        with self._operation("product_review", suspends=False):
            return self._apply(self.controller.complete_product_review(self.draft, edits))

    def add_line_item(self, item: LineItem | None = None) -> DocumentDraft:
        """Append a line item, or an empty manual row when none is given.

        Raises:
            OperationInProgress: If another operation is still running
            InvalidFlowTransition: If price discrepancies await resolution
            ValidationGap: If the item's local id is already in use
        """
        with self._operation("edit", suspends=False):
            self._ensure_editable("add line item")
            self.draft = self.draft.model_copy(
                update={"line_items": add_item(self.draft.line_items, item)}
            )
            return self.draft

    def remove_line_item(self, local_id: str) -> DocumentDraft:
        """Remove a line item.

        Raises:
            OperationInProgress: If another operation is still running
            InvalidFlowTransition: If price discrepancies await resolution
            ValidationGap: If no line item has this id
        """
        with self._operation("edit", suspends=False):
            self._ensure_editable("remove line item")
            self.draft = self.draft.model_copy(
                update={"line_items": remove_item(self.draft.line_items, local_id)}
            )
            return self.draft

    def edit_line_item(self, local_id: str, field: str, value: Any) -> DocumentDraft:
        """Edit one field of a line item.

        Raises:
            OperationInProgress: If another operation is still running
            InvalidFlowTransition: If price discrepancies await resolution
            ValidationGap: If the item or field is unknown, or the value is invalid
        """
        with self._operation("edit", suspends=False):
            self._ensure_editable("edit line item")
            self.draft = self.draft.model_copy(
                update={"line_items": edit_item(self.draft.line_items, local_id, field, value)}
            )
            return self.draft

    def _ensure_editable(self, action: str) -> None:
        if self.discrepancies:
            raise InvalidFlowTransition(action, "price_resolution")

    async def save(self) -> SaveOutcome:
        """Save the draft.

        Delivery notes are checked for price discrepancies first; if any are
        found nothing is committed and the outcome lists them for resolution.

        Raises:
            OperationInProgress: If another operation is still running
            InvalidFlowTransition: If the flow is not ready to save or
                discrepancies are awaiting resolution
            ValidationGap: If a delivery note has no line items
            LookupFailure: If the price check cannot fetch the inventory
            PersistFailure: If the commit fails (draft unchanged)
        """
        with self._operation("save"):
            if self.state is not FlowState.READY_TO_SAVE:
                raise InvalidFlowTransition("save", self.state.value)
            if self.discrepancies:
                raise InvalidFlowTransition("save", "price_resolution")
            if self.draft.is_delivery_note and not self.draft.line_items:
                raise ValidationGap(
                    "A delivery note needs at least one line item", field="line_items"
                )

            discrepancies = await self.detector.check(self.owner_id, self.draft)
            if discrepancies:
                self.discrepancies = discrepancies
                return SaveOutcome(status="needs_price_resolution", discrepancies=discrepancies)

            return await self._commit(self.draft)

    async def resolve_discrepancies(
        self, decisions: list[DiscrepancyDecision] | None
    ) -> SaveOutcome:
        """Resolve pending price discrepancies and continue the save.

        ``None`` aborts the save with no side effects.

        Raises:
            OperationInProgress: If another operation is still running
            InvalidFlowTransition: If no discrepancies are pending
            ValidationGap: If a decision is invalid
            PersistFailure: If the commit fails (draft unchanged)
        """
        with self._operation("save"):
            if not self.discrepancies:
                raise InvalidFlowTransition("resolve discrepancies", self.state.value)

            if decisions is None:
                logger.info("Price resolution cancelled, save aborted")
                self.discrepancies = []
                return SaveOutcome(status="cancelled")

            line_items = apply_resolution(self.draft.line_items, self.discrepancies, decisions)
            resolved = self.draft.model_copy(update={"line_items": line_items})
            self.discrepancies = []
            return await self._commit(resolved)

    async def _commit(self, draft: DocumentDraft) -> SaveOutcome:
        result = await self.committer.commit(self.owner_id, draft)
        committed = result.committed_document
        self.draft = draft.model_copy(
            update={
                "document_id": committed.id,
                "file_name": committed.file_name,
                "total_amount": committed.total_amount,
                "line_items": result.committed_line_items,
                "source_artifact_id": None,
            }
        )
        self.committed_document = committed
        return SaveOutcome(status="committed", result=result)

    def reset(self) -> None:
        """Return the flow to idle and restore the draft taken at start.

        Raises:
            OperationInProgress: If another operation is still running
        """
        with self._operation("reset", suspends=False):
            self.controller.reset()
            self.draft = self._snapshot.model_copy(deep=True)
            self.discrepancies = []

    def view(self) -> SessionView:
        return SessionView(
            session_id=self.session_id,
            owner_id=self.owner_id,
            state=self.state,
            draft=self.draft,
            supplier_prompt=self.controller.supplier_prompt,
            review_items=self.controller.review_items,
            discrepancies=self.discrepancies,
            committed_document=self.committed_document,
            last_error=self.last_error,
        )
