"""Unit tests for the document finalization API.

Tests cover:
- Health check endpoints
- Session lifecycle through supplier step, review and save
- Price discrepancy resolution
- Error mapping to HTTP status codes
- Prometheus metrics endpoint
"""

from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from services.api import main
from services.api.main import app
from services.finalization.memory import (
    InMemoryCatalogSync,
    InMemoryDocumentStore,
    InMemoryInventoryStore,
    InMemoryStagingStore,
    InMemorySupplierStore,
)
from services.finalization.schema import LineItem

OWNER = "owner-1"


@pytest.fixture
def stores(monkeypatch: pytest.MonkeyPatch) -> dict[str, Any]:
    """Fresh in-memory collaborators for each test."""
    suppliers = InMemorySupplierStore()
    suppliers.add(OWNER, "Acme", payment_terms_label="Net 30")
    inventory = InMemoryInventoryStore()
    inventory.add(
        OWNER,
        LineItem(catalog_number="ABC", unit_price=Decimal("9.00"), sale_price=Decimal("14.00")),
    )
    documents = InMemoryDocumentStore(inventory)

    monkeypatch.setattr(main, "supplier_store", suppliers)
    monkeypatch.setattr(main, "inventory_store", inventory)
    monkeypatch.setattr(main, "document_store", documents)
    monkeypatch.setattr(main, "staging_store", InMemoryStagingStore())
    monkeypatch.setattr(main, "catalog_sync", InMemoryCatalogSync())
    monkeypatch.setattr(main, "sessions", {})
    return {"suppliers": suppliers, "inventory": inventory, "documents": documents}


@pytest.fixture
def client(stores: dict[str, Any]) -> TestClient:
    """Create test client."""
    return TestClient(app)


def start(client: TestClient, supplier: str, products: list[dict], **extra: Any) -> dict:
    response = client.post(
        "/api/v1/sessions",
        json={
            "owner_id": OWNER,
            "extraction": {"supplier_name": supplier, "invoice_number": "7", "products": products},
            **extra,
        },
    )
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()


def bolts(price: str) -> dict:
    return {
        "catalog_number": "ABC",
        "product_name": "Bolts",
        "quantity": 2,
        "unit_price": price,
        "sale_price": "14.00",
    }


def test_health_check(client: TestClient) -> None:
    """Test health check endpoint."""
    response = client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["status"] == "healthy"
    assert "version" in data


def test_readiness_check(client: TestClient) -> None:
    """Test readiness check endpoint."""
    response = client.get("/ready")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["ready"] is True


class TestSessionLifecycle:
    """Test driving a session through the HTTP surface."""

    def test_known_supplier_skips_to_save(self, client: TestClient, stores: dict) -> None:
        """A supplier with stored terms is resolved without a prompt."""
        session = start(client, "acme", [bolts("9.00")])

        assert session["state"] == "ready_to_save"
        assert session["draft"]["supplier_name"] == "Acme"
        assert session["draft"]["payment_term_option"] == "net30"

        response = client.post(f"/api/v1/sessions/{session['session_id']}/save")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["outcome"]["status"] == "committed"
        assert data["session"]["committed_document"]["total_amount"] == "18.00"
        assert stores["documents"].count(OWNER) == 1

    def test_unknown_supplier_prompt_and_confirm(self, client: TestClient, stores: dict) -> None:
        """Unknown suppliers are confirmed through the supplier step."""
        session = start(client, "Initech", [bolts("9.00")])
        session_id = session["session_id"]

        assert session["state"] == "supplier_payment_details"
        assert session["supplier_prompt"]["candidate_name"] == "Initech"

        response = client.post(
            f"/api/v1/sessions/{session_id}/supplier/confirm",
            json={"supplier_name": "Initech", "is_new": True, "payment_term_option": "immediate"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["state"] == "ready_to_save"
        assert response.json()["draft"]["payment_due_date"] is not None

    def test_cancel_supplier_then_review(self, client: TestClient) -> None:
        """Cancelling the supplier step moves on to product review."""
        session = start(client, "Initech", [{"catalog_number": "NEW", "unit_price": "2"}])
        session_id = session["session_id"]

        response = client.post(f"/api/v1/sessions/{session_id}/supplier/cancel")
        assert response.json()["state"] == "new_product_details"
        local_id = response.json()["review_items"][0]["local_id"]

        response = client.post(
            f"/api/v1/sessions/{session_id}/products/review",
            json={"items": [{"local_id": local_id, "sale_price": "3.50"}]},
        )

        assert response.json()["state"] == "ready_to_save"
        assert response.json()["draft"]["line_items"][0]["sale_price"] == "3.50"

    def test_price_discrepancy_resolution(self, client: TestClient, stores: dict) -> None:
        """A changed price is reported, then accepted."""
        session_id = start(client, "Acme", [bolts("10.00")])["session_id"]

        response = client.post(f"/api/v1/sessions/{session_id}/save")

        data = response.json()
        assert data["outcome"]["status"] == "needs_price_resolution"
        assert data["session"]["discrepancies"][0]["existing_unit_price"] == "9.00"
        assert stores["documents"].count(OWNER) == 0

        response = client.post(
            f"/api/v1/sessions/{session_id}/discrepancies/resolve", json={"mode": "keep_all"}
        )

        data = response.json()
        assert data["outcome"]["status"] == "committed"
        assert data["session"]["draft"]["line_items"][0]["unit_price"] == "9.00"

    def test_cancel_price_resolution(self, client: TestClient, stores: dict) -> None:
        """Null decisions abort the save."""
        session_id = start(client, "Acme", [bolts("10.00")])["session_id"]
        client.post(f"/api/v1/sessions/{session_id}/save")

        response = client.post(
            f"/api/v1/sessions/{session_id}/discrepancies/resolve", json={"decisions": None}
        )

        assert response.json()["outcome"]["status"] == "cancelled"
        assert stores["documents"].count(OWNER) == 0

    def test_line_item_editing(self, client: TestClient) -> None:
        """Rows can be added, edited and removed."""
        session_id = start(client, "Acme", [])["session_id"]

        response = client.post(f"/api/v1/sessions/{session_id}/line-items")
        assert response.status_code == status.HTTP_201_CREATED
        local_id = response.json()["draft"]["line_items"][0]["local_id"]

        client.patch(
            f"/api/v1/sessions/{session_id}/line-items/{local_id}",
            json={"field": "quantity", "value": "4"},
        )
        response = client.patch(
            f"/api/v1/sessions/{session_id}/line-items/{local_id}",
            json={"field": "unit_price", "value": "2.5"},
        )
        assert response.json()["draft"]["line_items"][0]["line_total"] == "10.00"

        response = client.delete(f"/api/v1/sessions/{session_id}/line-items/{local_id}")
        assert response.json()["draft"]["line_items"] == []

    def test_start_from_staging_artifact(self, client: TestClient, stores: dict) -> None:
        """A staged extraction payload can start a session by its id."""
        extraction = {"supplier_name": "acme", "invoice_number": "7", "products": [bolts("9.00")]}
        response = client.post(
            "/api/v1/staging", json={"owner_id": OWNER, "extraction": extraction}
        )
        assert response.status_code == status.HTTP_201_CREATED
        artifact_id = response.json()["artifact_id"]

        response = client.post(
            "/api/v1/sessions", json={"owner_id": OWNER, "source_artifact_id": artifact_id}
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["state"] == "ready_to_save"
        assert data["draft"]["source_artifact_id"] == artifact_id
        assert data["draft"]["line_items"][0]["catalog_number"] == "ABC"

        client.post(f"/api/v1/sessions/{data['session_id']}/save")
        assert stores["documents"].count(OWNER) == 1
        assert main.staging_store.get(OWNER, artifact_id) is None

    def test_reset(self, client: TestClient) -> None:
        """Reset returns the session to idle with the original draft."""
        session_id = start(client, "acme", [])["session_id"]

        response = client.post(f"/api/v1/sessions/{session_id}/reset")

        assert response.json()["state"] == "idle"
        assert response.json()["draft"]["supplier_name"] == "acme"


class TestErrors:
    """Test mapping of workflow errors to responses."""

    def test_unknown_session(self, client: TestClient) -> None:
        """Unknown session ids return 404."""
        response = client.get("/api/v1/sessions/missing")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_missing_draft_and_extraction(self, client: TestClient) -> None:
        """A session needs a draft or an extraction payload."""
        response = client.post("/api/v1/sessions", json={"owner_id": OWNER})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_unknown_staging_artifact(self, client: TestClient) -> None:
        """A missing staging artifact returns 404."""
        response = client.post(
            "/api/v1/sessions", json={"owner_id": OWNER, "source_artifact_id": "pending-missing"}
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_save_in_wrong_state(self, client: TestClient) -> None:
        """Saving during the supplier step is a conflict."""
        session_id = start(client, "Initech", [bolts("9.00")])["session_id"]

        response = client.post(f"/api/v1/sessions/{session_id}/save")

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["code"] == "INVALID_FLOW_TRANSITION"

    def test_empty_delivery_note(self, client: TestClient) -> None:
        """Saving a delivery note without items is a validation error."""
        session_id = start(client, "Acme", [])["session_id"]

        response = client.post(f"/api/v1/sessions/{session_id}/save")

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["code"] == "VALIDATION_GAP"

    def test_lookup_failure_then_restart(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch, stores: dict
    ) -> None:
        """A failed lookup leaves the session in error until restarted."""
        monkeypatch.setattr(main.settings, "lookup_retry_attempts", 1)
        failing = AsyncMock()
        failing.list_suppliers.side_effect = RuntimeError("timeout")
        monkeypatch.setattr(main, "supplier_store", failing)

        response = client.post(
            "/api/v1/sessions",
            json={"owner_id": OWNER, "extraction": {"supplier_name": "Acme", "products": []}},
        )

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        data = response.json()
        assert data["code"] == "LOOKUP_FAILURE"
        session_id = data["session_id"]
        assert client.get(f"/api/v1/sessions/{session_id}").json()["state"] == "error"

        main.sessions[session_id].controller.supplier_resolver.supplier_store = stores["suppliers"]
        response = client.post(f"/api/v1/sessions/{session_id}/restart")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["state"] == "ready_to_save"


def test_metrics_endpoint(client: TestClient) -> None:
    """Test Prometheus metrics endpoint."""
    start(client, "Acme", [])

    response = client.get("/metrics")

    assert response.status_code == status.HTTP_200_OK
    content = response.text
    assert "http_requests_total" in content
    assert "finalization_flow_transitions_total" in content
    assert "finalization_supplier_auto_resolved_total" in content
