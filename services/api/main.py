"""FastAPI application for purchase document finalization.

JSON surface over finalization sessions:
- Health and readiness checks for Kubernetes
- Session lifecycle: start, supplier step, product review, save
- Price discrepancy resolution
- Structured error responses ({code, detail})
- Prometheus metrics for monitoring

Based on FastAPI documentation:
https://fastapi.tiangolo.com/
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from services.api import metrics
from services.finalization.committer import FinalizationCommitter
from services.finalization.discrepancy import (
    DiscrepancyDecision,
    PriceDiscrepancyDetector,
    accept_all_incoming,
    keep_all_existing,
)
from services.finalization.errors import (
    FinalizationError,
    InvalidFlowTransition,
    LookupFailure,
    OperationInProgress,
    PersistFailure,
    SupplierWriteFailure,
    TransientStoreError,
    ValidationGap,
)
from services.finalization.flow import DialogFlowController
from services.finalization.memory import (
    InMemoryCatalogSync,
    InMemoryDocumentStore,
    InMemoryInventoryStore,
    InMemoryStagingStore,
    InMemorySupplierStore,
)
from services.finalization.ports import CatalogSync, StagingStore
from services.finalization.reconciler import ProductReconciler, ReviewEdit
from services.finalization.schema import DocumentDraft, DocumentType, LineItem
from services.finalization.session import FinalizationSession, SaveOutcome, SessionView
from services.finalization.suppliers import SupplierConfirmation, SupplierResolver
from services.queue.tasks import ArqCatalogSync, parse_redis_settings
from services.shared.config import get_settings
from services.shared.logging import configure_logging
from services.storage.service import StagingStorageService

settings = get_settings()
configure_logging(settings)
logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[FinalizationError], int] = {
    ValidationGap: status.HTTP_422_UNPROCESSABLE_ENTITY,
    OperationInProgress: status.HTTP_409_CONFLICT,
    InvalidFlowTransition: status.HTTP_409_CONFLICT,
    LookupFailure: status.HTTP_502_BAD_GATEWAY,
    SupplierWriteFailure: status.HTTP_502_BAD_GATEWAY,
    PersistFailure: status.HTTP_502_BAD_GATEWAY,
    TransientStoreError: status.HTTP_502_BAD_GATEWAY,
}

supplier_store = InMemorySupplierStore()
inventory_store = InMemoryInventoryStore()
document_store = InMemoryDocumentStore(inventory_store)
storage_service = StagingStorageService(settings)
staging_store: StagingStore = (
    storage_service if storage_service.is_available() else InMemoryStagingStore()
)
catalog_sync: CatalogSync = InMemoryCatalogSync()

sessions: dict[str, FinalizationSession] = {}


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Route catalog sync through the background queue when enabled."""
    global catalog_sync
    pool = None
    if settings.queue_enabled:
        from arq import create_pool

        pool = await create_pool(parse_redis_settings(settings))
        catalog_sync = ArqCatalogSync(pool)
        logger.info(f"Catalog sync routed through queue at {settings.redis_url}")
    yield
    if pool is not None:
        await pool.close()


app = FastAPI(
    title="Document Finalization Service",
    description="Finalization workflow for scanned invoices and delivery notes",
    version=settings.service_version,
    lifespan=lifespan,
)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request metrics.

    Tracks:
    - Request count by method, endpoint, and status
    - Request duration by method and endpoint
    """
    # Skip metrics for /metrics endpoint itself
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Label by route template so session ids do not create new series
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint,
    ).observe(duration)

    return response


def error_status(error: FinalizationError) -> int:
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_response(error: FinalizationError, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=error_status(error),
        content={"code": error.code, "detail": str(error), **extra},
    )


@app.exception_handler(FinalizationError)
async def finalization_error_handler(_: Request, exc: FinalizationError) -> JSONResponse:
    """Map workflow errors to HTTP responses."""
    return error_response(exc)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool


class StagePayloadRequest(BaseModel):
    """Extraction output to keep until its document is finalized."""

    owner_id: str
    extraction: dict[str, Any]


class StagePayloadResponse(BaseModel):
    artifact_id: str


class CreateSessionRequest(BaseModel):
    """Request to start finalizing a document.

    Either a ready draft, a raw extraction payload or the id of a staging
    artifact holding one must be given.
    """

    owner_id: str
    draft: DocumentDraft | None = None
    extraction: dict[str, Any] | None = None
    document_type: DocumentType = DocumentType.DELIVERY_NOTE
    source_artifact_id: str | None = None
    existing: bool = False


class ProductReviewRequest(BaseModel):
    """Product review result; ``items: null`` cancels the step."""

    items: list[ReviewEdit] | None = None


class ResolveDiscrepanciesRequest(BaseModel):
    """Price resolution; ``decisions: null`` without a mode aborts the save."""

    decisions: list[DiscrepancyDecision] | None = None
    mode: Literal["accept_all", "keep_all"] | None = None


class LineItemEditRequest(BaseModel):
    """Edit of one line item field."""

    field: str
    value: Any = None


class SaveResponse(BaseModel):
    """Outcome of a save step and the resulting session state."""

    outcome: SaveOutcome
    session: SessionView


def build_session(owner_id: str, draft: DocumentDraft, existing: bool) -> FinalizationSession:
    controller = DialogFlowController(
        SupplierResolver(settings, supplier_store),
        ProductReconciler(settings, inventory_store),
    )
    committer = FinalizationCommitter(
        settings, document_store, staging_store=staging_store, catalog_sync=catalog_sync
    )
    return FinalizationSession(
        owner_id,
        draft,
        controller,
        PriceDiscrepancyDetector(settings, inventory_store),
        committer,
        existing=existing,
    )


def get_session(session_id: str) -> FinalizationSession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown session: {session_id}"
        )
    return session


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness probe.

    Returns:
        Health status information
    """
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness check endpoint for Kubernetes readiness probe.

    Not ready while staging storage is enabled but unreachable.
    """
    if settings.storage_enabled:
        return ReadinessResponse(ready=storage_service.health_check())
    return ReadinessResponse(ready=True)


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint.

    Returns:
        Prometheus metrics in text format
    """
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.post(
    "/api/v1/staging",
    response_model=StagePayloadResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Staging"],
)
async def stage_payload(request: StagePayloadRequest) -> StagePayloadResponse:
    """Store an extraction payload; pass the returned id as ``source_artifact_id``."""
    artifact_id = await staging_store.save_staging_payload(request.owner_id, request.extraction)
    return StagePayloadResponse(artifact_id=artifact_id)


@app.post(
    "/api/v1/sessions",
    response_model=SessionView,
    status_code=status.HTTP_201_CREATED,
    tags=["Sessions"],
)
async def create_session(request: CreateSessionRequest) -> Any:
    """Create a finalization session and start its dialog flow.

    New documents enter the supplier step (which may resolve itself);
    existing documents start ready to save. If a lookup fails the session is
    kept in the error state and the response carries its ``session_id`` so
    the flow can be restarted.
    """
    if request.draft is not None:
        draft = request.draft
    elif request.extraction is not None:
        draft = DocumentDraft.from_extraction(
            request.extraction, request.document_type, request.source_artifact_id
        )
    elif request.source_artifact_id is not None:
        payload = await staging_store.load_staging_payload(
            request.owner_id, request.source_artifact_id
        )
        if payload is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Unknown staging artifact: {request.source_artifact_id}",
            )
        draft = DocumentDraft.from_extraction(
            payload, request.document_type, request.source_artifact_id
        )
    else:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Either draft, extraction or source_artifact_id is required",
        )

    session = build_session(request.owner_id, draft, request.existing)
    sessions[session.session_id] = session
    try:
        await session.start()
    except FinalizationError as e:
        return error_response(e, session_id=session.session_id)
    return session.view()


@app.get("/api/v1/sessions/{session_id}", response_model=SessionView, tags=["Sessions"])
def read_session(session_id: str) -> SessionView:
    """Current state of a session and the data for its active step."""
    return get_session(session_id).view()


@app.post("/api/v1/sessions/{session_id}/restart", response_model=SessionView, tags=["Sessions"])
async def restart_session(session_id: str) -> SessionView:
    """Restart the dialog flow (e.g. after a lookup failure)."""
    session = get_session(session_id)
    await session.start()
    return session.view()


@app.post("/api/v1/sessions/{session_id}/reset", response_model=SessionView, tags=["Sessions"])
def reset_session(session_id: str) -> SessionView:
    """Return to idle and restore the draft as it was when the flow started."""
    session = get_session(session_id)
    session.reset()
    return session.view()


@app.post(
    "/api/v1/sessions/{session_id}/supplier/confirm",
    response_model=SessionView,
    tags=["Supplier"],
)
async def confirm_supplier(session_id: str, confirmation: SupplierConfirmation) -> SessionView:
    """Submit supplier and payment details."""
    session = get_session(session_id)
    await session.confirm_supplier(confirmation)
    return session.view()


@app.post(
    "/api/v1/sessions/{session_id}/supplier/cancel",
    response_model=SessionView,
    tags=["Supplier"],
)
async def cancel_supplier(session_id: str) -> SessionView:
    """Skip the supplier step."""
    session = get_session(session_id)
    await session.cancel_supplier_step()
    return session.view()


@app.post(
    "/api/v1/sessions/{session_id}/products/review",
    response_model=SessionView,
    tags=["Products"],
)
def review_products(session_id: str, request: ProductReviewRequest) -> SessionView:
    """Submit (or cancel) the new product review step."""
    session = get_session(session_id)
    session.complete_product_review(request.items)
    return session.view()


@app.post(
    "/api/v1/sessions/{session_id}/line-items",
    response_model=SessionView,
    status_code=status.HTTP_201_CREATED,
    tags=["Products"],
)
def add_line_item(session_id: str, item: LineItem | None = None) -> SessionView:
    """Append a line item (an empty manual row when no body is sent)."""
    session = get_session(session_id)
    session.add_line_item(item)
    return session.view()


@app.patch(
    "/api/v1/sessions/{session_id}/line-items/{local_id}",
    response_model=SessionView,
    tags=["Products"],
)
def edit_line_item(session_id: str, local_id: str, request: LineItemEditRequest) -> SessionView:
    """Edit one field of a line item."""
    session = get_session(session_id)
    session.edit_line_item(local_id, request.field, request.value)
    return session.view()


@app.delete(
    "/api/v1/sessions/{session_id}/line-items/{local_id}",
    response_model=SessionView,
    tags=["Products"],
)
def remove_line_item(session_id: str, local_id: str) -> SessionView:
    """Remove a line item."""
    session = get_session(session_id)
    session.remove_line_item(local_id)
    return session.view()


@app.post("/api/v1/sessions/{session_id}/save", response_model=SaveResponse, tags=["Save"])
async def save_session(session_id: str) -> SaveResponse:
    """Save the document.

    Delivery notes whose prices disagree with the inventory are not
    committed; the response lists the discrepancies to resolve.
    """
    session = get_session(session_id)
    outcome = await session.save()
    return SaveResponse(outcome=outcome, session=session.view())


@app.post(
    "/api/v1/sessions/{session_id}/discrepancies/resolve",
    response_model=SaveResponse,
    tags=["Save"],
)
async def resolve_discrepancies(
    session_id: str, request: ResolveDiscrepanciesRequest
) -> SaveResponse:
    """Resolve price discrepancies and finish the save."""
    session = get_session(session_id)

    decisions = request.decisions
    if request.mode == "accept_all":
        decisions = accept_all_incoming(session.discrepancies)
    elif request.mode == "keep_all":
        decisions = keep_all_existing(session.discrepancies)

    outcome = await session.resolve_discrepancies(decisions)
    return SaveResponse(outcome=outcome, session=session.view())
