"""Unit tests for bill extraction and amount parsing."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from extraction import HintType, extract, partition_by_confidence
from extraction.bills import parse_amount, segment_text

REFERENCE = datetime(2025, 6, 1, 16, 0, tzinfo=timezone.utc)


def _bills(text: str, hint: HintType = HintType.BILL_BATCH):
    return extract(
        text, hint, reference_time=REFERENCE, timezone="America/Mexico_City", language="es"
    )


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("80,120", Decimal("80120.00")),
        ("1.500", Decimal("1500.00")),
        ("12.50", Decimal("12.50")),
        ("12,5", Decimal("12.50")),
        ("1.234,56", Decimal("1234.56")),
        ("1,234.56", Decimal("1234.56")),
        ("abc", None),
        ("0", None),
        ("", None),
    ],
)
def test_parse_amount(raw, expected) -> None:
    """Separators are read as thousands or decimals by position."""
    assert parse_amount(raw) == expected


def test_segment_text_skips_headers_and_lines_without_amounts() -> None:
    """Bullets are stripped and segments without an amount are dropped."""
    text = "*Pagos*\n1) Agua 300; 2) Gas 250\n\nNota sin monto"
    assert segment_text(text) == ["Agua 300", "Gas 250"]


def test_credit_card_bill_with_due_date() -> None:
    """A labelled deadline, currency marker and vendor give full confidence."""
    [entity] = _bills("tarjeta lisi fecha límite 7 junio $80,120")

    assert entity.is_valid is True
    assert entity.payload.vendor == "Tarjeta lisi"
    assert entity.payload.amount == Decimal("80120.00")
    assert entity.payload.currency == "MXN"
    assert entity.payload.due_date == date(2025, 6, 7)
    assert entity.payload.category == "credit_card"
    assert entity.payload.priority == "high"
    assert entity.confidence == 1.0


def test_bare_amount_without_marker() -> None:
    """A name and a number still make a bill, at lower confidence."""
    [entity] = _bills("Braulio 600")

    assert entity.payload.vendor == "Braulio"
    assert entity.payload.amount == Decimal("600.00")
    assert entity.payload.due_date is None
    assert entity.payload.priority == "low"
    assert entity.confidence == 0.9


def test_batch_yields_one_candidate_per_segment() -> None:
    """Each listed payment becomes its own candidate."""
    entities = _bills("Pagos pendientes:\n- Luz $450 vence 10 junio\n- Braulio 600")

    assert [entity.payload.vendor for entity in entities] == ["Luz", "Braulio"]
    luz = entities[0].payload
    assert luz.amount == Decimal("450.00")
    assert luz.due_date == date(2025, 6, 10)
    assert luz.category == "utilities"
    assert luz.priority == "medium"


def test_currency_words_select_currency() -> None:
    """Explicit currency words override the default currency."""
    [entity] = _bills("Netflix 15.99 usd")

    assert entity.payload.currency == "USD"
    assert entity.payload.amount == Decimal("15.99")
    assert entity.payload.category == "membership"


def test_overdue_wording_raises_priority() -> None:
    """Overdue or urgent wording marks the bill high priority."""
    [entity] = _bills("Luz vencida $300")
    assert entity.payload.priority == "high"


def test_missing_amount_is_invalid_and_low_confidence() -> None:
    """Without an amount the candidate is invalid and falls below threshold."""
    [entity] = _bills("Pagar el gas", HintType.BILL)

    assert entity.is_valid is False
    assert "amount_unresolved" in entity.errors
    assert entity.confidence <= 0.4

    accepted, fallback = partition_by_confidence([entity], 0.5)
    assert accepted == []
    assert fallback == [entity]


def test_single_bill_hint_does_not_segment() -> None:
    """The single-bill hint parses the whole text as one candidate."""
    entities = _bills("Luz $450\nAgua $200", HintType.BILL)
    assert len(entities) == 1
