"""
Utility functions shared across the app. This includes:
- utcnow: the single clock used by models and lifecycle checks (naive UTC).
- parse_decimal / parse_optional_int / parse_datetime: tolerant parsing of request payload values.
- clean_str: strip-or-None normalization for free-text fields.
- json_payload: the request JSON body as a dict (API blueprints).
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict

from flask import request

from .errors import ValidationError


def utcnow() -> datetime:
    """Current instant as naive UTC (the storage convention for every DateTime column)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed to be UTC already."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def clean_str(value: Any) -> str | None:
    """Strip a value; empty strings become None."""
    if value is None:
        return None
    raw = str(value).strip()
    return raw or None


def parse_decimal(value: Any) -> Decimal | None:
    """Parse decimal from user input (accepts comma or dot)."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        parsed = value
    else:
        raw = str(value).strip().replace(",", ".")
        if raw == "":
            return None
        try:
            parsed = Decimal(raw)
        except (InvalidOperation, ValueError):
            return None
    # NaN and infinities are not amounts
    return parsed if parsed.is_finite() else None


def parse_optional_int(value: Any) -> int | None:
    """Parse optional int from payload/query."""
    if value is None:
        return None
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def parse_datetime(value: Any) -> datetime | None:
    """
    Parse an ISO-8601 instant ("2026-03-09T14:00:00Z", with or without offset).

    Returns naive UTC, or None when the value is empty or unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    raw = str(value).strip()
    if raw == "":
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return to_naive_utc(datetime.fromisoformat(raw))
    except ValueError:
        return None


def money(x: Decimal) -> Decimal:
    return x.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def format_money(amount: Any, currency: str | None) -> str:
    """Human display used in equity log descriptions: "CHF 50'000.00"."""
    value = money(Decimal(str(amount or 0)))
    grouped = f"{value:,.2f}".replace(",", "'")
    return f"{currency or 'CHF'} {grouped}"


def json_payload() -> Dict[str, Any]:
    """Request JSON body; an absent body is {}, anything but an object is rejected."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.", code="invalid_body")
    return data
