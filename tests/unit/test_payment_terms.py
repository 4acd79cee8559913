"""Unit tests for payment terms labels and due dates."""

import logging
from datetime import date

import pytest

from services.finalization.errors import ValidationGap
from services.finalization.payment_terms import (
    compute_due_date,
    end_of_month,
    format_terms_label,
    parse_terms_label,
)
from services.finalization.schema import PaymentTermOption
from services.shared.config import Settings


@pytest.fixture
def settings() -> Settings:
    """Create test settings with default labels."""
    return Settings()


class TestParseTermsLabel:
    """Test label parsing."""

    @pytest.mark.parametrize(
        ("label", "option"),
        [
            ("Immediate", PaymentTermOption.IMMEDIATE),
            ("net 30", PaymentTermOption.NET30),
            ("  Net 60 ", PaymentTermOption.NET60),
            ("END OF MONTH", PaymentTermOption.END_OF_MONTH),
        ],
    )
    def test_canonical_labels(
        self, settings: Settings, label: str, option: PaymentTermOption
    ) -> None:
        """Should match canonical labels case-insensitively."""
        parsed = parse_terms_label(label, settings)

        assert parsed.option is option
        assert parsed.due_date is None
        assert parsed.unparsed is False

    def test_localized_label(self) -> None:
        """Should use the configured labels."""
        settings = Settings(label_net30="שוטף + 30")

        assert parse_terms_label("שוטף + 30", settings).option is PaymentTermOption.NET30

    def test_iso_date_label(self, settings: Settings) -> None:
        """Should parse ISO dates as custom terms."""
        parsed = parse_terms_label("2024-03-15", settings)

        assert parsed.option is PaymentTermOption.CUSTOM
        assert parsed.due_date == date(2024, 3, 15)

    def test_formatted_date_label(self, settings: Settings) -> None:
        """Should parse dates in the configured format."""
        parsed = parse_terms_label("Mar 15, 2024", settings)

        assert parsed.due_date == date(2024, 3, 15)

    def test_unparseable_label_is_flagged(
        self, settings: Settings, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Should keep the raw label, not guess a date, and warn."""
        with caplog.at_level(logging.WARNING):
            parsed = parse_terms_label("2/10 net 45", settings)

        assert parsed.option is PaymentTermOption.CUSTOM
        assert parsed.due_date is None
        assert parsed.raw_label == "2/10 net 45"
        assert parsed.unparsed is True
        assert "2/10 net 45" in caplog.text

    def test_blank_label(self, settings: Settings) -> None:
        """Should give no terms for a blank label."""
        assert parse_terms_label("  ", settings).option is PaymentTermOption.NONE


class TestFormatTermsLabel:
    """Test label rendering."""

    def test_canonical_option(self, settings: Settings) -> None:
        """Should render the canonical label."""
        assert format_terms_label(PaymentTermOption.NET60, None, settings) == "Net 60"

    def test_custom_with_date(self, settings: Settings) -> None:
        """Should render the due date."""
        label = format_terms_label(PaymentTermOption.CUSTOM, date(2024, 3, 15), settings)

        assert label == "Mar 15, 2024"

    def test_custom_without_date_uses_raw_label(self, settings: Settings) -> None:
        """Should keep an unparsed label."""
        label = format_terms_label(
            PaymentTermOption.CUSTOM, None, settings, raw_label="2/10 net 45"
        )

        assert label == "2/10 net 45"

    def test_custom_without_anything_uses_fallback(self, settings: Settings) -> None:
        """Should fall back to the configured label."""
        assert format_terms_label(PaymentTermOption.CUSTOM, None, settings) == "Custom date"

    def test_none(self, settings: Settings) -> None:
        """Should render nothing for no terms."""
        assert format_terms_label(PaymentTermOption.NONE, None, settings) is None

    @pytest.mark.parametrize(
        ("option", "due_date"),
        [
            (PaymentTermOption.IMMEDIATE, None),
            (PaymentTermOption.END_OF_MONTH, None),
            (PaymentTermOption.CUSTOM, date(2025, 1, 31)),
        ],
    )
    def test_format_then_parse(
        self, settings: Settings, option: PaymentTermOption, due_date: date | None
    ) -> None:
        """Labels produced here should parse back to the same terms."""
        parsed = parse_terms_label(format_terms_label(option, due_date, settings), settings)

        assert parsed.option is option
        assert parsed.due_date == due_date


class TestDueDates:
    """Test due date derivation."""

    def test_end_of_month_leap_year(self) -> None:
        """February 2024 has 29 days."""
        assert end_of_month(date(2024, 2, 10)) == date(2024, 2, 29)

    def test_immediate_is_today(self) -> None:
        """Immediate terms are due today."""
        today = date(2024, 5, 2)

        assert compute_due_date(PaymentTermOption.IMMEDIATE, date(2024, 4, 1), today=today) == today

    def test_net30_counts_from_end_of_month(self) -> None:
        """Net 30 is 30 days after the end of the invoice month."""
        due = compute_due_date(PaymentTermOption.NET30, date(2024, 1, 10))

        assert due == date(2024, 3, 1)

    def test_net60_counts_from_end_of_month(self) -> None:
        """Net 60 is 60 days after the end of the invoice month."""
        due = compute_due_date(PaymentTermOption.NET60, date(2024, 1, 10))

        assert due == date(2024, 3, 31)

    def test_end_of_month(self) -> None:
        """End of month terms are due on the last day of the invoice month."""
        due = compute_due_date(PaymentTermOption.END_OF_MONTH, date(2024, 4, 3))

        assert due == date(2024, 4, 30)

    def test_without_invoice_date_uses_today(self) -> None:
        """Should count from today when no invoice date is known."""
        due = compute_due_date(PaymentTermOption.END_OF_MONTH, None, today=date(2024, 6, 5))

        assert due == date(2024, 6, 30)

    def test_custom_requires_date(self) -> None:
        """Custom terms without a date are rejected."""
        with pytest.raises(ValidationGap):
            compute_due_date(PaymentTermOption.CUSTOM, date(2024, 1, 1))

    def test_custom_uses_given_date(self) -> None:
        """Custom terms use the supplied date."""
        due = compute_due_date(PaymentTermOption.CUSTOM, None, custom_date=date(2024, 8, 1))

        assert due == date(2024, 8, 1)
