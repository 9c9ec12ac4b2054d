from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

import openpyxl
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from ledger_doctor.classifier import RowKind, classify_rows
from ledger_doctor.linkage import DebitFamily
from ledger_doctor.shared import LedgerTable

if TYPE_CHECKING:
    from ledger_doctor.orchestrator import AuditEntry, RemovedRow


def _header_font() -> Font:
    return Font(bold=True, color="FFFFFF")


def _header_fill(hex_color: str) -> PatternFill:
    return PatternFill("solid", fgColor=hex_color)


def _style_sheet(ws, col_widths: list[int], header_color: str):
    """Apply bold header, color, frozen row, and column widths."""
    fill = _header_fill(header_color)
    font = _header_font()
    for cell in ws[1]:
        cell.font = font
        cell.fill = fill
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=False)
    ws.freeze_panes = "A2"
    for i, width in enumerate(col_widths, start=1):
        ws.column_dimensions[get_column_letter(i)].width = width


def _infer_col_widths(rows: list[list], min_width: int = 10, max_width: int = 60, sample: int = 300) -> list[int]:
    if not rows:
        return []
    widths = [max(min_width, min(max_width, len(str(v)) + 2)) for v in rows[0]]
    for row in rows[1 : sample + 1]:
        for i, val in enumerate(row[: len(widths)]):
            widths[i] = max(widths[i], min(max_width, len(str(val)) + 2))
    return widths


# Structural row accents on the Reconciled sheet
FILL_GROUP_TOTAL = PatternFill("solid", fgColor="E2EFDA")   # soft green
FILL_LABELED_TOTAL = PatternFill("solid", fgColor="DDEBF7")   # soft blue
FILL_GRAND_TOTAL = PatternFill("solid", fgColor="FFF2CC")   # soft yellow
FILL_INVALID = PatternFill("solid", fgColor="FCE4D6")   # soft orange

_ROW_FILLS = {
    RowKind.GROUP_TOTAL: FILL_GROUP_TOTAL,
    RowKind.LABELED_TOTAL: FILL_LABELED_TOTAL,
    RowKind.GRAND_TOTAL: FILL_GRAND_TOTAL,
}

FAMILY_HEADERS = [
    "debit_no", "tax_type", "payroll_year", "period", "entries",
    "total_debit", "total_credit", "arrears", "is_orphaned", "is_valid",
    "suggestion", "reason",
]
AUDIT_HEADERS = ["timestamp", "action", "details", "rows_affected"]


def _write_reconciled(wb, table: LedgerTable) -> None:
    ws = wb.active
    ws.title = "Reconciled"
    width_rows = [list(table.headers)]
    ws.append(list(table.headers))
    bold = Font(bold=True)
    numeric = sorted(table.columns.numeric_positions)
    for classified in classify_rows(table):
        row_out = list(classified.row.cells)
        ws.append(row_out)
        width_rows.append(row_out)
        for idx in numeric:
            ws.cell(ws.max_row, idx + 1).alignment = Alignment(horizontal="right")
        fill = _ROW_FILLS.get(classified.kind)
        if fill is None:
            continue
        for cell in ws[ws.max_row]:
            cell.fill = fill
            cell.font = bold
    _style_sheet(ws, _infer_col_widths(width_rows), "4CAF50")   # green


def _write_removed(wb, headers: list[str], removed_rows: Iterable[RemovedRow]) -> None:
    ws = wb.create_sheet("Removed Rows")
    removed_headers = ["row_id"] + list(headers) + ["removal_reason", "removed_at"]
    width_rows = [removed_headers]
    ws.append(removed_headers)
    for removed in removed_rows:
        row_out = [removed.row_id] + list(removed.cells) + [removed.reason, removed.removed_at]
        ws.append(row_out)
        width_rows.append(row_out)
    _style_sheet(ws, _infer_col_widths(width_rows), "E53935")   # red


def _write_families(wb, families: Iterable[DebitFamily]) -> None:
    ws = wb.create_sheet("Debit Families")
    width_rows = [FAMILY_HEADERS]
    ws.append(FAMILY_HEADERS)
    for family in families:
        row_out = [
            family.debit_no, family.tax_type, family.payroll_year, family.period,
            len(family.entries), round(family.total_debit, 2), round(family.total_credit, 2),
            round(family.arrears, 2), family.is_orphaned, family.is_valid,
            family.suggestion.value, family.reason,
        ]
        ws.append(row_out)
        width_rows.append(row_out)
        if not family.is_valid:
            for cell in ws[ws.max_row]:
                cell.fill = FILL_INVALID
    _style_sheet(ws, _infer_col_widths(width_rows), "1565C0")   # blue
    reason_col = get_column_letter(len(FAMILY_HEADERS))
    for cell in ws[reason_col][1:]:
        cell.alignment = Alignment(wrap_text=True, vertical="top")


def _write_audit(wb, audit_log: Iterable[AuditEntry]) -> None:
    ws = wb.create_sheet("Audit Log")
    width_rows = [AUDIT_HEADERS]
    ws.append(AUDIT_HEADERS)
    for entry in audit_log:
        row_out = [entry.timestamp, entry.action, entry.details, entry.rows_affected]
        ws.append(row_out)
        width_rows.append(row_out)
    _style_sheet(ws, _infer_col_widths(width_rows), "607D8B")   # slate


def write_workbook(
    table: LedgerTable,
    removed_rows: Iterable[RemovedRow],
    families: Iterable[DebitFamily],
    audit_log: Iterable[AuditEntry],
    output_path: Path,
) -> None:
    output_path = Path(output_path)
    wb = openpyxl.Workbook()
    _write_reconciled(wb, table)
    _write_removed(wb, table.headers, removed_rows)
    _write_families(wb, families)
    _write_audit(wb, audit_log)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{output_path.stem}.", suffix=".xlsx", dir=str(output_path.parent))
    os.close(fd)
    temp_path = Path(tmp_name)
    try:
        wb.save(temp_path)
        os.replace(temp_path, output_path)
    finally:
        if temp_path.exists():
            temp_path.unlink()
