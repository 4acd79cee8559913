"""Payment terms labels and due dates.

Suppliers store their payment terms as a free-text label ("Net 30", or a
rendered date for custom terms). ``parse_terms_label`` and
``format_terms_label`` convert between that label and the structured
``PaymentTermOption`` + due date used on drafts; they are inverses for every
label this service produces.
"""

import calendar
import logging
from datetime import date, datetime, timedelta

from pydantic import BaseModel

from services.finalization.errors import ValidationGap
from services.finalization.schema import PaymentTermOption
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class ParsedTerms(BaseModel):
    """Structured form of a payment terms label.

    Attributes:
        option: Payment terms option
        due_date: Concrete due date, when the label encodes one
        raw_label: Label as stored on the supplier
        unparsed: True when the label matched no option and no date
    """

    option: PaymentTermOption
    due_date: date | None = None
    raw_label: str | None = None
    unparsed: bool = False


def canonical_labels(settings: Settings) -> dict[PaymentTermOption, str]:
    """Labels for the options that do not carry a date."""
    return {
        PaymentTermOption.IMMEDIATE: settings.label_immediate,
        PaymentTermOption.NET30: settings.label_net30,
        PaymentTermOption.NET60: settings.label_net60,
        PaymentTermOption.END_OF_MONTH: settings.label_end_of_month,
    }


def parse_terms_label(label: str | None, settings: Settings) -> ParsedTerms:
    """Parse a stored payment terms label.

    The label is compared against the canonical option labels first, then
    parsed as a date (ISO, then ``settings.custom_date_format``). Anything
    else is kept as a custom term with an unknown due date and flagged as
    unparsed; no date is guessed.

    Args:
        label: Stored label (may be None or blank)
        settings: Settings holding the canonical labels

    Returns:
        ParsedTerms for the label
    """
    if label is None or not label.strip():
        return ParsedTerms(option=PaymentTermOption.NONE)

    text = label.strip()
    for option, canonical in canonical_labels(settings).items():
        if text.casefold() == canonical.casefold():
            return ParsedTerms(option=option, raw_label=text)

    parsed_date = parse_date_label(text, settings)
    if parsed_date is not None:
        return ParsedTerms(option=PaymentTermOption.CUSTOM, due_date=parsed_date, raw_label=text)

    logger.warning(
        f"Payment terms label '{text}' is not a known option or date; "
        f"keeping it as custom terms without a due date"
    )
    return ParsedTerms(option=PaymentTermOption.CUSTOM, raw_label=text, unparsed=True)


def parse_date_label(text: str, settings: Settings) -> date | None:
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.strptime(text, settings.custom_date_format).date()
    except ValueError:
        return None


def format_terms_label(
    option: PaymentTermOption,
    due_date: date | None,
    settings: Settings,
    raw_label: str | None = None,
) -> str | None:
    """Render the label stored for a payment terms choice.

    Args:
        option: Payment terms option
        due_date: Due date (used for custom terms)
        settings: Settings holding labels and the date format
        raw_label: Original label, used for custom terms without a date

    Returns:
        Label string, or None when no terms were chosen
    """
    if option is PaymentTermOption.NONE:
        return None
    if option is PaymentTermOption.CUSTOM:
        if due_date is not None:
            return due_date.strftime(settings.custom_date_format)
        return raw_label or settings.label_custom_fallback
    return canonical_labels(settings)[option]


def end_of_month(day: date) -> date:
    last_day = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=last_day)


def compute_due_date(
    option: PaymentTermOption,
    invoice_date: date | None,
    custom_date: date | None = None,
    today: date | None = None,
) -> date | None:
    """Derive the due date for a confirmed payment terms option.

    Net terms count from the end of the invoice month. Without an invoice
    date, today is used as the base.

    Raises:
        ValidationGap: If custom terms are chosen without a date
    """
    today = today or date.today()
    base = invoice_date or today

    if option is PaymentTermOption.NONE:
        return None
    if option is PaymentTermOption.CUSTOM:
        if custom_date is None:
            raise ValidationGap("Custom payment terms require a due date", field="payment_due_date")
        return custom_date
    if option is PaymentTermOption.IMMEDIATE:
        return today
    if option is PaymentTermOption.NET30:
        return end_of_month(base) + timedelta(days=30)
    if option is PaymentTermOption.NET60:
        return end_of_month(base) + timedelta(days=60)
    return end_of_month(base)
