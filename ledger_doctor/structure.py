from __future__ import annotations

from typing import Iterable

from ledger_doctor.classifier import RowKind, classify_rows
from ledger_doctor.logging_setup import get_logger
from ledger_doctor.normalization import cell_text, format_amount, parse_amount
from ledger_doctor.shared import GRAND_TOTAL_LABEL, LedgerRow, LedgerTable

logger = get_logger(__name__)

# Separator run states for compress_separator_rows
_NONE = 0
_SAW_TOTALS = 1
_SAW_BLANK = 2


def _totals_cells(table: LedgerTable, debit: float, credit: float) -> list:
    debit_idx, credit_idx, arrears_idx = table.columns.require(
        "Debit Amount", "Credit Amount", "Arrears"
    )
    cells = table.empty_cells()
    cells[debit_idx] = format_amount(debit)
    cells[credit_idx] = format_amount(credit)
    cells[arrears_idx] = format_amount(debit - credit)
    return cells


def sum_amounts(table: LedgerTable, rows: Iterable[LedgerRow]) -> tuple[float, float]:
    debit_idx, credit_idx = table.columns.require("Debit Amount", "Credit Amount")
    debit = 0.0
    credit = 0.0
    for row in rows:
        debit += parse_amount(row.cell(debit_idx))
        credit += parse_amount(row.cell(credit_idx))
    return debit, credit


# ══════════════════════════════════════════════════════════════════════════
# GROUP TOTALS
# ══════════════════════════════════════════════════════════════════════════

def recompute_group_totals(table: LedgerTable) -> LedgerTable:
    """Regenerate one totals row and one blank row after each non-zero group.

    A group is a contiguous run of data rows sharing (Tax Type, Payroll Year).
    Groups whose arrears net to zero get no separator rows. Old separators are
    dropped; grand-total rows move to the end unchanged.
    """
    tax_idx, year_idx = table.columns.require("Tax Type", "Payroll Year")
    table.columns.require("Debit Amount", "Credit Amount", "Arrears")

    result = table.derive()
    grand_totals: list[LedgerRow] = []
    group: list[LedgerRow] = []
    group_key: tuple[str, str] | None = None

    def flush() -> None:
        if not group:
            return
        for member in group:
            result.keep(member)
        debit, credit = sum_amounts(table, group)
        if round(debit - credit, 2) != 0:
            result.new_row(_totals_cells(table, debit, credit))
            result.new_row(result.empty_cells())
        logger.debug(
            "Group %s flushed: %d rows, arrears %s", group_key, len(group), format_amount(debit - credit)
        )
        group.clear()

    for row, kind in classify_rows(table):
        if kind is RowKind.GRAND_TOTAL:
            grand_totals.append(row)
        elif kind is RowKind.DATA:
            key = (cell_text(row.cell(tax_idx)), cell_text(row.cell(year_idx)))
            if key != group_key:
                flush()
                group_key = key
            group.append(row)
        elif kind in (RowKind.GROUP_TOTAL, RowKind.BLANK_SEPARATOR):
            continue
        else:
            # Labeled totals end the running group so row order is preserved
            flush()
            group_key = None
            result.keep(row)

    flush()
    for row in grand_totals:
        result.keep(row)
    return result


# ══════════════════════════════════════════════════════════════════════════
# GRAND TOTAL
# ══════════════════════════════════════════════════════════════════════════

def recompute_grand_total(table: LedgerTable, label: str = GRAND_TOTAL_LABEL) -> LedgerTable:
    """Replace any grand total with a blank row plus one fresh grand total.

    Sums cover data rows only, so group totals are never counted twice. The
    blank row directly above an old grand total is treated as part of it
    unless it closes a group separator, which keeps repeated calls from
    stacking blank rows.
    """
    table.columns.require("Debit Amount", "Credit Amount", "Arrears")
    result = table.derive()
    kinds: list[RowKind] = []
    data: list[LedgerRow] = []

    for row, kind in classify_rows(table):
        if kind is RowKind.GRAND_TOTAL:
            if (
                kinds
                and kinds[-1] is RowKind.BLANK_SEPARATOR
                and (len(kinds) < 2 or kinds[-2] is not RowKind.GROUP_TOTAL)
            ):
                result.rows.pop()
                kinds.pop()
            continue
        if kind is RowKind.DATA:
            data.append(row)
        result.keep(row)
        kinds.append(kind)

    debit, credit = sum_amounts(table, data)
    result.new_row(result.empty_cells())
    cells = _totals_cells(table, debit, credit)
    label_idx = table.columns.get("Value Date")
    cells[0 if label_idx is None else label_idx] = label
    result.new_row(cells)
    return result


# ══════════════════════════════════════════════════════════════════════════
# SEPARATOR COMPRESSION
# ══════════════════════════════════════════════════════════════════════════

def compress_separator_rows(table: LedgerTable) -> LedgerTable:
    """Collapse separator runs to one totals row plus one blank row."""
    result = table.derive()
    state = _NONE

    for row, kind in classify_rows(table):
        if kind is RowKind.GROUP_TOTAL:
            state = _SAW_TOTALS
            result.keep(row)
        elif kind is RowKind.BLANK_SEPARATOR:
            if state == _SAW_BLANK:
                continue
            state = _SAW_BLANK
            result.keep(LedgerRow(row.row_id, table.empty_cells()))
        else:
            state = _NONE
            result.keep(row)
    return result


def normalize(table: LedgerTable, label: str = GRAND_TOTAL_LABEL) -> LedgerTable:
    return recompute_grand_total(compress_separator_rows(recompute_group_totals(table)), label)


# ══════════════════════════════════════════════════════════════════════════
# REBUILD HELPERS
# ══════════════════════════════════════════════════════════════════════════

def recalculate_arrears(table: LedgerTable) -> LedgerTable:
    """Set Arrears = Debit - Credit on every data row."""
    debit_idx, credit_idx, arrears_idx = table.columns.require(
        "Debit Amount", "Credit Amount", "Arrears"
    )
    result = table.derive()
    for row, kind in classify_rows(table):
        if kind is RowKind.DATA:
            cells = list(row.cells)
            cells[arrears_idx] = format_amount(
                parse_amount(row.cell(debit_idx)) - parse_amount(row.cell(credit_idx))
            )
            result.keep(LedgerRow(row.row_id, cells))
        else:
            result.keep(LedgerRow(row.row_id, list(row.cells)))
    return result


def rebuild_without(
    table: LedgerTable,
    row_ids: Iterable[int],
    label: str = GRAND_TOTAL_LABEL,
) -> tuple[LedgerTable, list[LedgerRow]]:
    """Drop the given data rows and renormalise the rest.

    Grand-total rows are dropped and recomputed fresh. Structural rows are
    never removed even if their IDs are listed.
    """
    doomed = set(row_ids)
    recalculated = recalculate_arrears(table)
    kept = recalculated.derive()
    removed: list[LedgerRow] = []

    for row, kind in classify_rows(recalculated):
        if kind is RowKind.GRAND_TOTAL:
            continue
        if kind is RowKind.DATA and row.row_id in doomed:
            removed.append(row)
            continue
        kept.keep(row)

    logger.debug("Rebuild dropped %d of %d requested rows", len(removed), len(doomed))
    return normalize(kept, label), removed
