"""Line item arithmetic and list editing.

The invariant ``line_total == round2(quantity * unit_price)`` holds for every
item except right after an edit of one of the three fields: the edited field
is trusted as entered and the others are derived from it.
"""

from decimal import Decimal, InvalidOperation
from typing import Any

from services.finalization.errors import ValidationGap
from services.finalization.schema import LineItem, round2

PRICE_FIELDS = ("quantity", "unit_price", "line_total")
OPTIONAL_NUMBER_FIELDS = ("sale_price", "min_stock_level", "max_stock_level")
TEXT_FIELDS = ("description", "catalog_number", "barcode")


def parse_amount(value: Any, field: str) -> Decimal | None:
    """Parse user input into a Decimal.

    Accepts numbers and strings with thousands separators ("1,234.50").
    Blank strings and None parse to None.

    Raises:
        ValidationGap: If the value is not a number or is negative
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = value.replace(",", "").strip()
        if not value:
            return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise ValidationGap(f"{field} must be a number, got {value!r}", field=field) from e
    if not amount.is_finite():
        raise ValidationGap(f"{field} must be a finite number", field=field)
    if amount < 0:
        raise ValidationGap(f"{field} cannot be negative", field=field)
    return amount


def compute_line_total(quantity: Decimal, unit_price: Decimal) -> Decimal:
    return round2(quantity * unit_price)


def apply_price_edit(item: LineItem, field: str, value: Any) -> LineItem:
    """Apply an edit to quantity, unit price or line total.

    Args:
        item: Line item being edited
        field: One of quantity, unit_price, line_total
        value: New value as entered

    Returns:
        New LineItem with the edited field as entered and the others derived

    Raises:
        ValidationGap: If the field is unknown or the value is invalid
    """
    if field not in PRICE_FIELDS:
        raise ValidationGap(f"Not a price field: {field}", field=field)
    amount = parse_amount(value, field) or Decimal("0")

    if field == "quantity":
        return item.model_copy(
            update={"quantity": amount, "line_total": compute_line_total(amount, item.unit_price)}
        )
    if field == "unit_price":
        return item.model_copy(
            update={"unit_price": amount, "line_total": compute_line_total(item.quantity, amount)}
        )

    # line_total edited: derive the unit price when the quantity allows it
    if item.quantity > 0:
        return item.model_copy(
            update={"line_total": amount, "unit_price": round2(amount / item.quantity)}
        )
    if amount == 0:
        return item.model_copy(update={"line_total": amount, "unit_price": Decimal("0")})
    return item.model_copy(update={"line_total": amount})


def normalize_line_total(item: LineItem) -> LineItem:
    """Recompute the line total from quantity and unit price."""
    expected = compute_line_total(item.quantity, item.unit_price)
    if item.line_total == expected:
        return item
    return item.model_copy(update={"line_total": expected})


def new_manual_item() -> LineItem:
    """Create an empty, provisional row for manual entry."""
    return LineItem(description="")


def add_item(items: list[LineItem], item: LineItem | None = None) -> list[LineItem]:
    item = item or new_manual_item()
    if any(i.local_id == item.local_id for i in items):
        raise ValidationGap(f"Line item id {item.local_id} already exists", field="local_id")
    return [*items, item]


def remove_item(items: list[LineItem], local_id: str) -> list[LineItem]:
    remaining = [i for i in items if i.local_id != local_id]
    if len(remaining) == len(items):
        raise ValidationGap(f"No line item with id {local_id}", field="local_id")
    return remaining


def edit_item(items: list[LineItem], local_id: str, field: str, value: Any) -> list[LineItem]:
    """Return a new list with one field of one item changed.

    Raises:
        ValidationGap: If the item or field is unknown, or the value is invalid
    """
    updated: list[LineItem] = []
    found = False
    for item in items:
        if item.local_id != local_id:
            updated.append(item)
            continue
        found = True
        updated.append(_edit_field(item, field, value))
    if not found:
        raise ValidationGap(f"No line item with id {local_id}", field="local_id")
    return updated


def _edit_field(item: LineItem, field: str, value: Any) -> LineItem:
    if field in PRICE_FIELDS:
        return apply_price_edit(item, field, value)
    if field in OPTIONAL_NUMBER_FIELDS:
        amount = parse_amount(value, field)
        if amount is not None and field != "sale_price":
            if amount != amount.to_integral_value():
                raise ValidationGap(f"{field} must be a whole number", field=field)
            return item.model_copy(update={field: int(amount)})
        return item.model_copy(update={field: amount})
    if field in TEXT_FIELDS:
        text = str(value).strip() if value is not None else ""
        if field == "description":
            return item.model_copy(update={field: text})
        return item.model_copy(update={field: text or None})
    raise ValidationGap(f"Field cannot be edited: {field}", field=field)


def sum_line_totals(items: list[LineItem]) -> Decimal:
    return round2(sum((i.line_total for i in items), Decimal("0")))
