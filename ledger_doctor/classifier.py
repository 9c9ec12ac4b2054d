from __future__ import annotations

from enum import Enum
from typing import Any, NamedTuple, Sequence

from ledger_doctor.normalization import cell_text, is_present
from ledger_doctor.shared import ColumnIndex, LedgerRow, LedgerTable, column_index


class RowKind(str, Enum):
    HEADER = "header"
    DATA = "data"
    GROUP_TOTAL = "group_total"
    BLANK_SEPARATOR = "blank_separator"
    LABELED_TOTAL = "labeled_total"
    GRAND_TOTAL = "grand_total"


STRUCTURAL_KINDS = frozenset(kind for kind in RowKind if kind is not RowKind.DATA)
SEPARATOR_KINDS = frozenset({RowKind.GROUP_TOTAL, RowKind.BLANK_SEPARATOR})


class ClassifiedRow(NamedTuple):
    row: LedgerRow
    kind: RowKind


def _cells(row: LedgerRow | Sequence[Any]) -> Sequence[Any]:
    return row.cells if isinstance(row, LedgerRow) else row


def _cell(cells: Sequence[Any], idx: int | None) -> Any:
    if idx is None or idx >= len(cells):
        return ""
    return cells[idx]


def is_grand_total_row(cells: Sequence[Any]) -> bool:
    for value in cells:
        text = cell_text(value).upper()
        if "GRAND" in text and "TOTAL" in text:
            return True
    return False


def is_labeled_total_row(cells: Sequence[Any], columns: ColumnIndex) -> bool:
    return "TOTAL" in cell_text(_cell(cells, columns.get("Tax Type"))).upper()


def is_non_numeric_empty(cells: Sequence[Any], columns: ColumnIndex) -> bool:
    """True when every non-monetary cell is empty; monetary cells are ignored."""
    for idx, value in enumerate(cells):
        if columns.is_numeric(idx):
            continue
        if is_present(value):
            return False
    return True


def has_debit_or_credit(cells: Sequence[Any], columns: ColumnIndex) -> bool:
    return is_present(_cell(cells, columns.get("Debit Amount"))) or is_present(
        _cell(cells, columns.get("Credit Amount"))
    )


def classify(
    row: LedgerRow | Sequence[Any],
    headers: Sequence[Any] | ColumnIndex,
    index: int = 1,
) -> RowKind:
    """Derive the structural kind of one row from its content alone.

    ``index`` is the row's position in the full matrix; position 0 is the
    header. Grand-total detection wins over every other check.
    """
    if index == 0:
        return RowKind.HEADER
    columns = column_index(headers)
    cells = _cells(row)

    if is_grand_total_row(cells):
        return RowKind.GRAND_TOTAL
    if is_non_numeric_empty(cells, columns):
        if has_debit_or_credit(cells, columns):
            return RowKind.GROUP_TOTAL
        return RowKind.BLANK_SEPARATOR
    if is_labeled_total_row(cells, columns):
        return RowKind.LABELED_TOTAL
    return RowKind.DATA


def classify_rows(table: LedgerTable) -> list[ClassifiedRow]:
    columns = table.columns
    return [ClassifiedRow(row, classify(row, columns)) for row in table.rows]


def classify_matrix(matrix: Sequence[Sequence[Any]]) -> list[RowKind]:
    if not matrix:
        return []
    columns = column_index(matrix[0])
    return [classify(row, columns, index) for index, row in enumerate(matrix)]


def data_rows(table: LedgerTable) -> list[LedgerRow]:
    return [row for row, kind in classify_rows(table) if kind is RowKind.DATA]
