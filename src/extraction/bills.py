"""Bill extraction, one candidate per text segment.

A message listing several pending payments is split into segments on line
breaks, semicolons and bullet markers. Each segment is parsed on its own so a
failure in one line never hides the others.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from extraction.temporal import resolve_date
from extraction.types import BillPayload, ExtractedEntity

logger = logging.getLogger(__name__)

_MAX_VENDOR = 80

_SEGMENT_SPLIT = re.compile(r"[\n;]+")
_BULLET = re.compile(r"^\s*(?:[-*•·▪►]|\d{1,2}[.)])\s+")
_HEADER = re.compile(r"^\s*\*[^*]+\*\s*:?\s*$")
_DUE_WORDS = re.compile(
    r"\b(?:fecha\s+l[ií]mite|fecha\s+de\s+pago|vence(?:\s+el)?|vencimiento|due(?:\s+on|\s+date)?|"
    r"antes\s+del?|before|para\s+el|pagar\s+el|l[ií]mite)\b:?",
    re.IGNORECASE,
)
_NUMBER = r"\d{1,3}(?:[.,]\d{3})+(?:[.,]\d{1,2})?|\d+(?:[.,]\d{1,2})?"
_AMOUNT_PATTERNS = (
    re.compile(rf"(?:US)?\$\s*({_NUMBER})"),
    re.compile(rf"€\s*({_NUMBER})"),
    re.compile(
        rf"(?<![\w.,])({_NUMBER})\s*(?:pesos?|mxn|usd|d[oó]lares|dollars?|eur|euros?)\b",
        re.IGNORECASE,
    ),
    re.compile(rf"(?<![\w.,/:-])({_NUMBER})(?![\w%/:]|[.,]\d)"),
)
_USD = re.compile(r"\busd\b|\bd[oó]lares\b|\bdollars?\b|US\$", re.IGNORECASE)
_EUR = re.compile(r"\beur\b|\beuros?\b|€", re.IGNORECASE)
_CURRENCY_MARKER = re.compile(r"\$|€|\bmxn\b|\bpesos?\b|\busd\b|\beur\b|\beuros?\b|\bd[oó]lares\b|\bdollars?\b", re.IGNORECASE)
_CURRENCY_WORDS = re.compile(r"\b(?:pesos?|mxn|usd|d[oó]lares|dollars?|eur|euros?)\b|US\$|\$|€", re.IGNORECASE)
_FILLER = re.compile(
    r"^(?:pagar(?:\s+a)?|pago(?:\s+de|\s+a)?|pay(?:\s+to)?|payment(?:\s+to)?|factura\s+de|bill\s+from)\s+",
    re.IGNORECASE,
)
_URGENT = re.compile(
    r"\b(?:urgente|urgent|asap|inmediato|immediately|vencid[oa]s?|overdue|atrasad[oa]s?|"
    r"late|recargos?|penalty|[uú]ltimo\s+aviso|final\s+notice)\b",
    re.IGNORECASE,
)
_MULTIPLE_PERIODS = re.compile(
    r"\b(?:[2-9]|\d{2}|dos|tres|cuatro|cinco|seis|two|three|four|five|six)\s+"
    r"(?:meses|periodos|per[ií]odos|mensualidades|quincenas|months|periods|payments)\b",
    re.IGNORECASE,
)
_CATEGORIES = (
    ("credit_card", re.compile(r"\b(?:tarjeta|card|visa|mastercard|amex|tdc)\b", re.IGNORECASE)),
    (
        "utilities",
        re.compile(
            r"\b(?:luz|agua|gas|electricidad|internet|tel[eé]fono|cfe|telmex|izzi|totalplay|"
            r"electricity|water|phone|utility|utilities)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "membership",
        re.compile(
            r"\b(?:gym|gimnasio|membres[ií]a|suscripci[oó]n|netflix|spotify|club|"
            r"membership|subscription)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "loan",
        re.compile(r"\b(?:pr[eé]stamo|hipoteca|cr[eé]dito|loan|mortgage|credit)\b", re.IGNORECASE),
    ),
    (
        "education",
        re.compile(
            r"\b(?:escuela|colegiatura|universidad|curso|inscripci[oó]n|school|tuition|course)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "maintenance",
        re.compile(
            r"\b(?:mantenimiento|reparaci[oó]n|plomero|servicio|maintenance|repair|service)\b",
            re.IGNORECASE,
        ),
    ),
)


def segment_text(text: str) -> list[str]:
    """Split a bill list into candidate segments that mention an amount."""
    segments: list[str] = []
    for raw in _SEGMENT_SPLIT.split(text):
        if _HEADER.match(raw):
            continue
        line = _BULLET.sub("", raw).strip()
        if not line:
            continue
        if not any(pattern.search(line) for pattern in _AMOUNT_PATTERNS):
            continue
        segments.append(line)
    return segments


def extract_bills(
    text: str,
    *,
    reference: datetime,
    language: str,
    default_currency: str = "MXN",
    due_soon_days: int = 7,
    batch: bool = True,
) -> list[ExtractedEntity]:
    """Extract bill candidates from ``text``.

    With ``batch`` the text is segmented first; otherwise the whole text is a
    single segment.
    """
    segments = segment_text(text) if batch else [text.strip()]
    entities: list[ExtractedEntity] = []
    for segment in segments:
        try:
            entities.append(
                _parse_segment(
                    segment,
                    reference=reference,
                    language=language,
                    default_currency=default_currency,
                    due_soon_days=due_soon_days,
                )
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Bill segment parse failed for %r: %s", segment, exc)
            entities.append(
                ExtractedEntity(
                    kind="bill",
                    source_text=segment,
                    language=language,
                    payload=BillPayload(
                        vendor=segment[:_MAX_VENDOR],
                        amount=Decimal("0"),
                        currency=default_currency,
                    ),
                    confidence=0.0,
                    is_valid=False,
                    errors=(f"segment_parse_error: {exc}",),
                )
            )
    return entities


def parse_amount(value: str) -> Decimal | None:
    """Parse an amount written with thousands and/or decimal separators.

    ``80,120`` and ``1.500`` are thousands; ``12.50`` and ``12,5`` are decimals;
    when both separators appear the last one is the decimal separator.
    """
    cleaned = value.strip().replace(" ", "")
    if not cleaned:
        return None
    if "," in cleaned and "." in cleaned:
        decimal_sep = "," if cleaned.rfind(",") > cleaned.rfind(".") else "."
        thousands_sep = "." if decimal_sep == "," else ","
        cleaned = cleaned.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif "," in cleaned or "." in cleaned:
        sep = "," if "," in cleaned else "."
        parts = cleaned.split(sep)
        if len(parts) > 2 or len(parts[-1]) == 3:
            cleaned = cleaned.replace(sep, "")
        else:
            cleaned = cleaned.replace(sep, ".")
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount.quantize(Decimal("0.01"))


def _parse_segment(
    segment: str,
    *,
    reference: datetime,
    language: str,
    default_currency: str,
    due_soon_days: int,
) -> ExtractedEntity:
    errors: list[str] = []
    remaining = segment

    # Bills are usually about a deadline already announced, so no roll-over.
    date_match = resolve_date(segment, reference, language=language, prefer_future=False)
    due_date: date | None = None
    if date_match is not None:
        due_date = date_match.value
        start, end = date_match.span
        remaining = remaining[:start] + " " + remaining[end:]
    remaining = _DUE_WORDS.sub(" ", remaining)

    amount = None
    for pattern in _AMOUNT_PATTERNS:
        match = pattern.search(remaining)
        if not match:
            continue
        amount = parse_amount(match.group(1))
        if amount is not None:
            remaining = remaining[: match.start()] + " " + remaining[match.end() :]
            break
    if amount is None:
        errors.append("amount_unresolved")

    currency = default_currency
    if _USD.search(segment):
        currency = "USD"
    elif _EUR.search(segment):
        currency = "EUR"
    has_marker = bool(_CURRENCY_MARKER.search(segment))

    vendor = _derive_vendor(remaining)
    vendor_ok = vendor is not None
    if vendor is None:
        vendor = "Desconocido" if language == "es" else "Unknown"
        errors.append("vendor_unresolved")

    confidence = 0.5
    if vendor_ok:
        confidence += 0.2
    if amount is not None:
        confidence += 0.2
    if has_marker:
        confidence += 0.1

    payload = BillPayload(
        vendor=vendor,
        amount=amount if amount is not None else Decimal("0"),
        currency=currency,
        due_date=due_date,
        category=_derive_category(segment),
        priority=_derive_priority(segment, due_date, reference.date(), due_soon_days),
        notes=segment,
    )
    return ExtractedEntity(
        kind="bill",
        source_text=segment,
        language=language,
        payload=payload,
        confidence=round(confidence if amount is not None else min(confidence, 0.4), 3),
        is_valid=amount is not None,
        errors=tuple(errors),
    )


def _derive_vendor(remaining: str) -> str | None:
    text = _CURRENCY_WORDS.sub(" ", remaining)
    text = re.sub(r"\.{2,}|…", " ", text)
    text = re.sub(r"\s+", " ", text).strip(" ,.;:-*")
    text = _FILLER.sub("", text).strip(" ,.;:-*")
    if len(re.sub(r"[^\wáéíóúñ]", "", text, flags=re.IGNORECASE)) < 2:
        return None
    words = text.split(" ")[:6]
    vendor = " ".join(words)
    vendor = vendor[0].upper() + vendor[1:]
    return vendor[:_MAX_VENDOR]


def _derive_category(text: str) -> str:
    for category, pattern in _CATEGORIES:
        if pattern.search(text):
            return category
    return "personal"


def _derive_priority(text: str, due_date: date | None, today: date, due_soon_days: int) -> str:
    if _URGENT.search(text) or _MULTIPLE_PERIODS.search(text):
        return "high"
    if due_date is None:
        return "low"
    days_left = (due_date - today).days
    if days_left <= due_soon_days:
        return "high"
    if days_left <= 30:
        return "medium"
    return "low"
