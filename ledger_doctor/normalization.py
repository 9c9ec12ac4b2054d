from __future__ import annotations

import math
import re
from datetime import date
from typing import Any, Sequence

from ledger_doctor.shared import (
    AMOUNT_TOLERANCE,
    COLUMNS,
    MISSING_DEBIT_NUMBERS,
    normalise_header,
)

DMY_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
ISO_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    return str(value).strip()


def is_present(value: Any) -> bool:
    return cell_text(value) != ""


# ══════════════════════════════════════════════════════════════════════════
# MONEY
# ══════════════════════════════════════════════════════════════════════════

def parse_amount(value: Any) -> float:
    """Commas are stripped before parsing; anything unparsable reads as 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = cell_text(value).replace(",", "")
        if not text:
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def format_amount(value: float) -> str:
    if abs(value) < 0.005:
        value = 0.0
    return f"{value:,.2f}"


def is_zero(value: float, tolerance: float = AMOUNT_TOLERANCE) -> bool:
    return abs(value) < tolerance


def amounts_equal(a: float, b: float, tolerance: float = AMOUNT_TOLERANCE) -> bool:
    return abs(a - b) < tolerance


# ══════════════════════════════════════════════════════════════════════════
# DEBIT NUMBERS
# ══════════════════════════════════════════════════════════════════════════

def debit_number(value: Any) -> str:
    """Return the usable Debit No, or "" when the cell means "missing"."""
    text = cell_text(value)
    if text in MISSING_DEBIT_NUMBERS:
        return ""
    return text


def is_missing_debit_no(value: Any) -> bool:
    return debit_number(value) == ""


# ══════════════════════════════════════════════════════════════════════════
# DATES
# ══════════════════════════════════════════════════════════════════════════

def parse_value_date(value: Any) -> date | None:
    """Parse DD/MM/YYYY or YYYY-MM-DD; anything else is None."""
    if isinstance(value, date):
        return value
    text = cell_text(value)
    if not text:
        return None
    m = DMY_RE.match(text)
    if m:
        day, month, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
    else:
        m = ISO_RE.match(text)
        if not m:
            return None
        year, month, day = int(m.group(1)), int(m.group(2)), int(m.group(3))
    try:
        return date(year, month, day)
    except ValueError:
        return None


def days_between(first: Any, second: Any) -> float:
    """Absolute day distance; infinite when either side does not parse."""
    a = parse_value_date(first)
    b = parse_value_date(second)
    if a is None or b is None:
        return math.inf
    return float(abs((a - b).days))


# ══════════════════════════════════════════════════════════════════════════
# COLUMN ORDER
# ══════════════════════════════════════════════════════════════════════════

def rearrange_columns(matrix: Sequence[Sequence[Any]]) -> list[list[Any]]:
    """Reorder columns into schema order and drop columns outside the schema.

    A missing Arrears column is added empty at its schema position so it can
    be recalculated; other missing schema columns stay missing.
    """
    if not matrix:
        return []
    header = [normalise_header(h) for h in matrix[0]]
    order: list[tuple[str, int | None]] = []
    for name in COLUMNS:
        key = normalise_header(name)
        if key in header:
            order.append((name, header.index(key)))
        elif name == "Arrears":
            order.append((name, None))

    result: list[list[Any]] = [[name for name, _ in order]]
    for raw in matrix[1:]:
        row = list(raw)
        result.append([
            row[idx] if idx is not None and idx < len(row) else ""
            for _, idx in order
        ])
    return result
