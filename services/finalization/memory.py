"""In-memory implementations of the collaborator contracts.

Used for local runs of the API and in tests. All records are kept per owner
and copies are handed out so callers cannot mutate stored state.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any

from services.finalization.errors import DuplicateSupplierName
from services.finalization.ports import (
    CatalogSync,
    DocumentStore,
    InventoryStore,
    StagingStore,
    SupplierStore,
)
from services.finalization.reconciler import InventoryIndex
from services.finalization.schema import (
    CommittedDocument,
    DocumentRecord,
    DocumentType,
    IdentityKind,
    LineItem,
    PersistResult,
    Supplier,
)
from services.finalization.suppliers import find_match

logger = logging.getLogger(__name__)


class InMemorySupplierStore(SupplierStore):
    """Supplier records kept in a dict."""

    def __init__(self) -> None:
        self._suppliers: dict[str, dict[str, Supplier]] = {}

    def add(
        self,
        owner_id: str,
        name: str,
        payment_terms_label: str | None = None,
        tax_id: str | None = None,
    ) -> Supplier:
        supplier = Supplier(
            id=f"sup-{uuid.uuid4().hex[:12]}",
            name=name,
            payment_terms_label=payment_terms_label,
            tax_id=tax_id,
        )
        self._suppliers.setdefault(owner_id, {})[supplier.id] = supplier
        return supplier

    async def list_suppliers(self, owner_id: str) -> list[Supplier]:
        return [s.model_copy() for s in self._suppliers.get(owner_id, {}).values()]

    async def create_supplier(
        self,
        owner_id: str,
        name: str,
        payment_terms_label: str | None = None,
        tax_id: str | None = None,
    ) -> Supplier:
        if find_match(name, list(self._suppliers.get(owner_id, {}).values())) is not None:
            raise DuplicateSupplierName(name)
        return self.add(owner_id, name, payment_terms_label, tax_id).model_copy()

    async def update_supplier(
        self, owner_id: str, supplier_id: str, fields: dict[str, Any]
    ) -> None:
        suppliers = self._suppliers.get(owner_id, {})
        if supplier_id not in suppliers:
            raise KeyError(f"Unknown supplier {supplier_id}")
        suppliers[supplier_id] = suppliers[supplier_id].model_copy(update=fields)


class InMemoryInventoryStore(InventoryStore):
    """Inventory records kept in a dict keyed by inventory id."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, LineItem]] = {}

    def add(self, owner_id: str, item: LineItem) -> LineItem:
        record = item.model_copy(
            update={
                "inventory_id": item.inventory_id or f"inv-{uuid.uuid4().hex[:12]}",
                "identity": IdentityKind.PERSISTED,
            }
        )
        self._records.setdefault(owner_id, {})[record.inventory_id] = record
        return record

    async def list_inventory(self, owner_id: str) -> list[LineItem]:
        return [r.model_copy() for r in self._records.get(owner_id, {}).values()]

    def merge(self, owner_id: str, items: list[LineItem]) -> list[LineItem]:
        """Merge received line items into inventory.

        Matched records take the new price (and sale price, when set) and
        their stock grows by the received quantity; unmatched items become
        new records. Returns the persisted line items in input order.
        """
        index = InventoryIndex(list(self._records.get(owner_id, {}).values()))
        committed = []
        for item in items:
            record = index.find(item)
            if record is None:
                stored = self.add(owner_id, item)
            else:
                sale_price = item.sale_price if item.sale_price is not None else record.sale_price
                stored = record.model_copy(
                    update={
                        "unit_price": item.unit_price,
                        "sale_price": sale_price,
                        "barcode": item.barcode or record.barcode,
                        "quantity": record.quantity + item.quantity,
                    }
                )
                self._records[owner_id][stored.inventory_id] = stored
            committed.append(
                item.model_copy(
                    update={"inventory_id": stored.inventory_id, "identity": IdentityKind.PERSISTED}
                )
            )
        return committed


class InMemoryDocumentStore(DocumentStore):
    """Committed documents kept in a dict; delivery notes update the inventory."""

    def __init__(self, inventory: InMemoryInventoryStore) -> None:
        self.inventory = inventory
        self._documents: dict[str, dict[str, CommittedDocument]] = {}

    def get(self, owner_id: str, document_id: str) -> CommittedDocument | None:
        return self._documents.get(owner_id, {}).get(document_id)

    def count(self, owner_id: str) -> int:
        return len(self._documents.get(owner_id, {}))

    async def persist_document(
        self,
        owner_id: str,
        document: DocumentRecord,
        source_artifact_id: str | None = None,
    ) -> PersistResult:
        document_id = source_artifact_id or document.document_id or f"doc-{uuid.uuid4().hex[:12]}"

        if document.document_type is DocumentType.DELIVERY_NOTE:
            line_items = self.inventory.merge(owner_id, document.line_items)
        else:
            line_items = list(document.line_items)

        committed = CommittedDocument(
            id=document_id, **document.model_dump(exclude={"line_items"}), line_items=line_items
        )
        self._documents.setdefault(owner_id, {})[document_id] = committed
        return PersistResult(committed_document=committed, committed_line_items=line_items)


class InMemoryStagingStore(StagingStore):
    """Staging artifacts (raw extraction payloads) kept in a dict."""

    def __init__(self) -> None:
        self._artifacts: dict[str, dict[str, Any]] = {}

    def put(self, owner_id: str, payload: Any) -> str:
        artifact_id = f"pending-{uuid.uuid4().hex[:12]}"
        self._artifacts.setdefault(owner_id, {})[artifact_id] = payload
        return artifact_id

    def get(self, owner_id: str, artifact_id: str) -> Any:
        return self._artifacts.get(owner_id, {}).get(artifact_id)

    async def save_staging_payload(self, owner_id: str, payload: dict[str, Any]) -> str:
        return self.put(owner_id, payload)

    async def load_staging_payload(self, owner_id: str, artifact_id: str) -> Any:
        return self.get(owner_id, artifact_id)

    async def delete_staging_artifact(self, owner_id: str, artifact_id: str) -> None:
        if self._artifacts.get(owner_id, {}).pop(artifact_id, None) is None:
            raise KeyError(f"Unknown staging artifact {artifact_id}")


class InMemoryCatalogSync(CatalogSync):
    """Records sync calls instead of talking to an external catalog."""

    def __init__(self) -> None:
        self.synced: list[tuple[str, list[LineItem]]] = []

    async def sync_inventory(self, owner_id: str, line_items: list[LineItem]) -> None:
        self.synced.append((owner_id, list(line_items)))
        total = sum((i.quantity for i in line_items), Decimal("0"))
        logger.info(f"Synced {len(line_items)} line items ({total} units) for {owner_id}")
