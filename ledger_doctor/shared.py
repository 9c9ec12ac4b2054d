from __future__ import annotations

import copy
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Iterable, Sequence

COLUMNS = [
    "Value Date",
    "Period",
    "Year of Payment",
    "Payroll Year",
    "Tax Type",
    "Case Type",
    "Debit No",
    "Debit Amount",
    "Credit Amount",
    "Arrears",
    "Last Event",
]
N_COLS = len(COLUMNS)
NUMERIC_COLUMNS = ("Debit Amount", "Credit Amount", "Arrears")

AMOUNT_TOLERANCE = 0.01
DATE_WINDOW_DAYS = 31
GRAND_TOTAL_LABEL = "GRAND TOTAL"
ORPHAN_DEBIT_NO = "NO DEBIT NUMBER"
MISSING_DEBIT_NUMBERS = frozenset({"", "-", "–"})
DEFAULT_STORAGE_SLOT = "stage_one_cleaned_data"


class LedgerError(Exception):
    """Base class for every error raised by ledger-doctor."""


class MissingColumnsError(LedgerError):
    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = tuple(missing)
        super().__init__(f"Columns not found: {', '.join(self.missing)}")


class ConfigError(LedgerError):
    pass


class StorageError(LedgerError):
    pass


def normalise_header(value: object) -> str:
    if value is None:
        return ""
    return " ".join(str(value).strip().lower().split())


_CANONICAL = {normalise_header(name): name for name in COLUMNS}
_NUMERIC = frozenset(normalise_header(name) for name in NUMERIC_COLUMNS)


@dataclass(frozen=True)
class ColumnIndex:
    """Positions of the schema columns inside one concrete header row."""

    headers: tuple[str, ...]
    positions: dict[str, int]
    numeric_positions: frozenset[int]

    @property
    def width(self) -> int:
        return len(self.headers)

    def get(self, name: str) -> int | None:
        return self.positions.get(name)

    def require(self, *names: str) -> tuple[int, ...]:
        missing = [name for name in names if name not in self.positions]
        if missing:
            raise MissingColumnsError(missing)
        return tuple(self.positions[name] for name in names)

    def is_numeric(self, idx: int) -> bool:
        return idx in self.numeric_positions


@lru_cache(maxsize=64)
def _build_column_index(headers: tuple[str, ...]) -> ColumnIndex:
    positions: dict[str, int] = {}
    numeric: set[int] = set()
    for idx, header in enumerate(headers):
        key = normalise_header(header)
        if key in _CANONICAL and _CANONICAL[key] not in positions:
            positions[_CANONICAL[key]] = idx
        if key in _NUMERIC:
            numeric.add(idx)
    return ColumnIndex(headers, positions, frozenset(numeric))


def column_index(headers: Sequence[Any] | ColumnIndex) -> ColumnIndex:
    if isinstance(headers, ColumnIndex):
        return headers
    return _build_column_index(tuple("" if h is None else str(h) for h in headers))


# ══════════════════════════════════════════════════════════════════════════
# ARENA TABLE MODEL
# ══════════════════════════════════════════════════════════════════════════

@dataclass
class LedgerRow:
    row_id: int
    cells: list[Any]

    def cell(self, idx: int | None) -> Any:
        if idx is None or idx < 0 or idx >= len(self.cells):
            return ""
        return self.cells[idx]


@dataclass
class LedgerTable:
    """Header plus ordered rows; every row carries an ID that never shifts."""

    headers: list[str]
    rows: list[LedgerRow] = field(default_factory=list)
    next_id: int = 1

    @classmethod
    def from_matrix(cls, matrix: Sequence[Sequence[Any]]) -> LedgerTable:
        if not matrix:
            return cls(headers=[])
        headers = ["" if h is None else str(h) for h in matrix[0]]
        table = cls(headers=headers)
        width = len(headers)
        for raw in matrix[1:]:
            cells = list(raw)[:width]
            cells += [""] * (width - len(cells))
            table.new_row(cells)
        return table

    @property
    def columns(self) -> ColumnIndex:
        return column_index(self.headers)

    def new_row(self, cells: list[Any]) -> LedgerRow:
        row = LedgerRow(self.next_id, cells)
        self.next_id += 1
        self.rows.append(row)
        return row

    def empty_cells(self) -> list[Any]:
        return [""] * len(self.headers)

    def derive(self) -> LedgerTable:
        """Start an empty table that continues this table's ID sequence."""
        return LedgerTable(headers=list(self.headers), rows=[], next_id=self.next_id)

    def keep(self, row: LedgerRow) -> None:
        self.rows.append(row)

    def row_by_id(self, row_id: int) -> LedgerRow | None:
        for row in self.rows:
            if row.row_id == row_id:
                return row
        return None

    def row_ids(self) -> list[int]:
        return [row.row_id for row in self.rows]

    def to_matrix(self) -> list[list[Any]]:
        return [list(self.headers)] + [list(row.cells) for row in self.rows]

    def copy(self) -> LedgerTable:
        return copy.deepcopy(self)

    def __len__(self) -> int:
        return len(self.rows)
