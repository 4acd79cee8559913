"""Data models for purchase document finalization.

Drafts, line items and suppliers are Pydantic models so they validate on the
way in from extraction payloads and serialize cleanly for the HTTP surface
and the staging store.
"""

import uuid
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

# Catalog number placeholder emitted by extraction when none was printed
CATALOG_PLACEHOLDER = "N/A"

CENT = Decimal("0.01")


def round2(value: Decimal) -> Decimal:
    """Round a money amount to two decimals, half away from zero."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def coerce_date(value: Any) -> date | None:
    """Normalize a date-like value to ``date``.

    Accepts dates, datetimes and ISO 8601 strings (with or without a time
    part). Returns None for blanks and anything unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def new_local_id() -> str:
    """Generate a client-scoped line item identifier (never reused)."""
    return f"item-{uuid.uuid4()}"


class DocumentType(str, Enum):
    """Kinds of purchase documents handled by the workflow."""

    DELIVERY_NOTE = "delivery_note"
    INVOICE = "invoice"


class PaymentTermOption(str, Enum):
    """Payment terms a document (and its supplier) can carry."""

    IMMEDIATE = "immediate"
    NET30 = "net30"
    NET60 = "net60"
    END_OF_MONTH = "end_of_month"
    CUSTOM = "custom"
    NONE = "none"


class IdentityKind(str, Enum):
    """Whether a line item refers to a stored inventory record.

    PROVISIONAL items were created from extraction output or added by hand
    and have no inventory id; PERSISTED items carry the id of an inventory
    record and may be matched by it.
    """

    PROVISIONAL = "provisional"
    PERSISTED = "persisted"


class LineItem(BaseModel):
    """One product row on a document, or one record of the inventory snapshot."""

    local_id: str = Field(default_factory=new_local_id, description="Client-scoped identity")
    identity: IdentityKind = Field(IdentityKind.PROVISIONAL, description="Identity tag")
    inventory_id: str | None = Field(None, description="Inventory record id (persisted only)")
    catalog_number: str | None = Field(None, description="Supplier catalog number")
    barcode: str | None = Field(None, description="Product barcode")
    description: str = Field("", description="Product description")

    quantity: Decimal = Field(Decimal("0"), ge=0, description="Quantity received")
    unit_price: Decimal = Field(Decimal("0"), ge=0, description="Purchase price per unit")
    line_total: Decimal = Field(Decimal("0"), description="quantity x unit_price, rounded")

    # None means the resale price has not been decided yet
    sale_price: Decimal | None = Field(None, ge=0, description="Resale price")
    min_stock_level: int | None = Field(None, description="Minimum stock level")
    max_stock_level: int | None = Field(None, description="Maximum stock level")

    @property
    def has_catalog_number(self) -> bool:
        return bool(self.catalog_number) and self.catalog_number != CATALOG_PLACEHOLDER

    @property
    def match_key(self) -> str | None:
        """Key used to find the matching inventory record.

        Persisted inventory id first, then catalog number, then barcode.
        """
        if self.identity is IdentityKind.PERSISTED and self.inventory_id:
            return f"id:{self.inventory_id}"
        if self.has_catalog_number:
            return f"catalog:{self.catalog_number}"
        if self.barcode:
            return f"barcode:{self.barcode}"
        return None


class Supplier(BaseModel):
    """Supplier record as returned by the supplier store."""

    id: str
    name: str
    payment_terms_label: str | None = None
    tax_id: str | None = None


class DocumentDraft(BaseModel):
    """A scanned purchase document before commit.

    Date fields accept whatever the extraction step produced (ISO strings,
    datetimes or dates); the committer normalizes them to ``date``.
    """

    document_type: DocumentType
    document_id: str | None = Field(None, description="Id of the saved document, if any")
    file_name: str | None = Field(None, description="Stable file name, reused once generated")

    supplier_name: str | None = None
    supplier_tax_id: str | None = None
    invoice_number: str | None = None
    total_amount: Decimal | None = None
    invoice_date: date | datetime | str | None = None
    payment_method: str | None = None

    payment_due_date: date | datetime | str | None = None
    payment_term_option: PaymentTermOption = PaymentTermOption.NONE
    # Raw terms label, kept when it could not be parsed into an option
    payment_terms_label: str | None = None
    terms_label_unparsed: bool = False

    line_items: list[LineItem] = Field(default_factory=list)
    raw_extraction_payload: Any = None
    source_artifact_id: str | None = None
    error_note: str | None = None

    @field_validator("line_items")
    @classmethod
    def _unique_local_ids(cls, items: list[LineItem]) -> list[LineItem]:
        seen: set[str] = set()
        for item in items:
            if item.local_id in seen:
                raise ValueError(f"Duplicate line item id {item.local_id}")
            seen.add(item.local_id)
        return items

    @property
    def is_delivery_note(self) -> bool:
        return self.document_type is DocumentType.DELIVERY_NOTE

    @classmethod
    def from_extraction(
        cls,
        payload: dict[str, Any],
        document_type: DocumentType,
        source_artifact_id: str | None = None,
    ) -> "DocumentDraft":
        """Build a draft from an extraction payload.

        Every line item gets a fresh local id and a provisional identity; the
        payload itself is kept unmodified for audit.

        Args:
            payload: Extraction output (header fields plus ``products``)
            document_type: Kind of document that was scanned
            source_artifact_id: Id of the staging record holding the payload

        Returns:
            New DocumentDraft
        """
        line_items = [_line_item_from_extraction(p) for p in payload.get("products") or []]
        return cls(
            document_type=document_type,
            supplier_name=_clean_text(payload.get("supplier_name")),
            supplier_tax_id=_clean_text(payload.get("supplier_tax_id")),
            invoice_number=_clean_text(payload.get("invoice_number")),
            total_amount=_to_decimal(payload.get("total_amount")),
            invoice_date=payload.get("invoice_date") or None,
            payment_method=_clean_text(payload.get("payment_method")),
            payment_due_date=payload.get("payment_due_date") or None,
            payment_terms_label=_clean_text(payload.get("payment_terms")),
            line_items=line_items,
            raw_extraction_payload=payload,
            source_artifact_id=source_artifact_id,
            error_note=_clean_text(payload.get("error")),
        )


class PriceDiscrepancy(BaseModel):
    """A line item whose incoming unit price differs from the price on file."""

    line_item: LineItem
    existing_unit_price: Decimal
    incoming_unit_price: Decimal

    @property
    def local_id(self) -> str:
        return self.line_item.local_id


class DocumentRecord(BaseModel):
    """Finalized document handed to the document store.

    Produced by the committer from a fully resolved draft; all derived
    fields are filled in and dates are normalized.
    """

    document_type: DocumentType
    document_id: str | None = None
    file_name: str
    supplier_name: str | None = None
    supplier_tax_id: str | None = None
    invoice_number: str | None = None
    total_amount: Decimal | None = None
    invoice_date: date | None = None
    payment_method: str | None = None
    payment_due_date: date | None = None
    payment_term_option: PaymentTermOption = PaymentTermOption.NONE
    payment_terms_label: str | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    raw_extraction_payload: Any = None


class CommittedDocument(DocumentRecord):
    """Document as stored by the document store."""

    id: str


class PersistResult(BaseModel):
    """Result of the persist operation."""

    committed_document: CommittedDocument
    committed_line_items: list[LineItem]


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value).replace(",", ""))
    except InvalidOperation:
        return None


def _line_item_from_extraction(product: dict[str, Any]) -> LineItem:
    quantity = _to_decimal(product.get("quantity")) or Decimal("0")
    unit_price = _to_decimal(product.get("purchase_price"))
    if unit_price is None:
        unit_price = _to_decimal(product.get("unit_price")) or Decimal("0")
    line_total = _to_decimal(product.get("total"))
    if line_total is None:
        line_total = round2(quantity * unit_price)
    sale_price = _to_decimal(product.get("sale_price"))

    return LineItem(
        catalog_number=_clean_text(product.get("catalog_number")),
        barcode=_clean_text(product.get("barcode")),
        description=(
            _clean_text(product.get("product_name"))
            or _clean_text(product.get("description"))
            or "Untitled Product"
        ),
        quantity=max(quantity, Decimal("0")),
        unit_price=max(unit_price, Decimal("0")),
        line_total=line_total,
        sale_price=sale_price,
    )
