"""Abstract contracts for the collaborators of the finalization workflow.

The workflow never talks to a database, object store or catalog system
directly; it goes through these interfaces so the backing implementation
(in-memory, MinIO staging, queued catalog sync, ...) can be swapped.

Every method is a suspension point: implementations are ``async`` and may
raise ``TransientStoreError`` for failures worth retrying.
"""

from abc import ABC, abstractmethod
from typing import Any

from services.finalization.schema import DocumentRecord, LineItem, PersistResult, Supplier


class SupplierStore(ABC):
    """Persisted vendor records."""

    @abstractmethod
    async def list_suppliers(self, owner_id: str) -> list[Supplier]:
        """List all suppliers of an owner."""
        pass

    @abstractmethod
    async def create_supplier(
        self,
        owner_id: str,
        name: str,
        payment_terms_label: str | None = None,
        tax_id: str | None = None,
    ) -> Supplier:
        """Create a supplier.

        Raises:
            DuplicateSupplierName: If a supplier with this name already exists
        """
        pass

    @abstractmethod
    async def update_supplier(
        self, owner_id: str, supplier_id: str, fields: dict[str, Any]
    ) -> None:
        """Update some fields of a supplier."""
        pass


class InventoryStore(ABC):
    """Current catalog snapshot with authoritative prices."""

    @abstractmethod
    async def list_inventory(self, owner_id: str) -> list[LineItem]:
        """List all inventory records of an owner."""
        pass


class DocumentStore(ABC):
    """Committed documents and their line items."""

    @abstractmethod
    async def persist_document(
        self,
        owner_id: str,
        document: DocumentRecord,
        source_artifact_id: str | None = None,
    ) -> PersistResult:
        """Persist a finalized document and merge its line items into inventory.

        When ``source_artifact_id`` is given, the stored record with that id
        is replaced instead of creating a new one.
        """
        pass


class StagingStore(ABC):
    """Temporary records holding extraction output before finalization."""

    @abstractmethod
    async def save_staging_payload(self, owner_id: str, payload: dict[str, Any]) -> str:
        """Store an extraction payload and return the new artifact id."""
        pass

    @abstractmethod
    async def load_staging_payload(self, owner_id: str, artifact_id: str) -> Any:
        """Extraction payload of a staging artifact, or None if there is none."""
        pass

    @abstractmethod
    async def delete_staging_artifact(self, owner_id: str, artifact_id: str) -> None:
        """Remove a staging artifact."""
        pass


class CatalogSync(ABC):
    """External catalog (point-of-sale / accounting) synchronization."""

    @abstractmethod
    async def sync_inventory(self, owner_id: str, line_items: list[LineItem]) -> None:
        """Push committed line items to the external catalog (best effort)."""
        pass
