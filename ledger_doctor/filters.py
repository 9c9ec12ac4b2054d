from __future__ import annotations

from typing import Iterable

import pandas as pd

from ledger_doctor.classifier import data_rows
from ledger_doctor.normalization import cell_text, debit_number, is_zero, parse_amount
from ledger_doctor.shared import AMOUNT_TOLERANCE, LedgerTable

FINE_PENALTY_INTEREST_KEYWORDS = ("fine", "penalty", "interest")
UNKNOWN_LABEL = "Unknown"

FRAME_COLUMNS = [
    "row_id",
    "value_date",
    "tax_type",
    "case_type",
    "payroll_year",
    "debit_no",
    "debit",
    "credit",
    "arrears",
]


def data_frame(table: LedgerTable) -> pd.DataFrame:
    """One record per data row with parsed amounts and Arrears = Debit - Credit."""
    columns = table.columns
    debit_idx, credit_idx = columns.require("Debit Amount", "Credit Amount")
    records = []
    for row in data_rows(table):
        debit = parse_amount(row.cell(debit_idx))
        credit = parse_amount(row.cell(credit_idx))
        records.append(
            {
                "row_id": row.row_id,
                "value_date": cell_text(row.cell(columns.get("Value Date"))),
                "tax_type": cell_text(row.cell(columns.get("Tax Type"))) or UNKNOWN_LABEL,
                "case_type": cell_text(row.cell(columns.get("Case Type"))) or UNKNOWN_LABEL,
                "payroll_year": cell_text(row.cell(columns.get("Payroll Year"))),
                "debit_no": debit_number(row.cell(columns.get("Debit No"))),
                "debit": debit,
                "credit": credit,
                "arrears": debit - credit,
            }
        )
    return pd.DataFrame.from_records(records, columns=FRAME_COLUMNS)


# ══════════════════════════════════════════════════════════════════════════
# REMOVAL SELECTORS
# ══════════════════════════════════════════════════════════════════════════

def _trimmed(values: Iterable[str]) -> set[str]:
    return {cell_text(value) for value in values}


def zero_arrears_rows(table: LedgerTable, tolerance: float = AMOUNT_TOLERANCE) -> list[int]:
    frame = data_frame(table)
    return [int(row_id) for row_id, arrears in zip(frame["row_id"], frame["arrears"]) if is_zero(arrears, tolerance)]


def rows_outside_tax_types(table: LedgerTable, keep: Iterable[str]) -> list[int]:
    frame = data_frame(table)
    return [int(row_id) for row_id in frame.loc[~frame["tax_type"].isin(_trimmed(keep)), "row_id"]]


def rows_outside_case_types(table: LedgerTable, keep: Iterable[str]) -> list[int]:
    frame = data_frame(table)
    return [int(row_id) for row_id in frame.loc[~frame["case_type"].isin(_trimmed(keep)), "row_id"]]


def fines_penalties_interest_rows(table: LedgerTable) -> list[int]:
    frame = data_frame(table)
    pattern = "|".join(FINE_PENALTY_INTEREST_KEYWORDS)
    mask = frame["case_type"].str.contains(pattern, case=False, regex=True) | frame["tax_type"].str.contains(
        pattern, case=False, regex=True
    )
    return [int(row_id) for row_id in frame.loc[mask, "row_id"]]


# ══════════════════════════════════════════════════════════════════════════
# SUMMARIES
# ══════════════════════════════════════════════════════════════════════════

def tax_type_summary(table: LedgerTable) -> pd.DataFrame:
    frame = data_frame(table)
    if frame.empty:
        return pd.DataFrame(columns=["tax_type", "debit_count", "credit_count", "total_arrears"])
    frame = frame.assign(has_debit=frame["debit"] > 0, has_credit=frame["credit"] > 0)
    summary = (
        frame.groupby("tax_type", sort=False)
        .agg(
            debit_count=("has_debit", "sum"),
            credit_count=("has_credit", "sum"),
            total_arrears=("arrears", "sum"),
        )
        .reset_index()
    )
    summary["debit_count"] = summary["debit_count"].astype(int)
    summary["credit_count"] = summary["credit_count"].astype(int)
    summary["total_arrears"] = summary["total_arrears"].round(2)
    return summary


def case_type_summary(table: LedgerTable) -> pd.DataFrame:
    frame = data_frame(table)
    if frame.empty:
        return pd.DataFrame(columns=["case_type", "count", "total_arrears"])
    summary = (
        frame.groupby("case_type", sort=False)
        .agg(count=("row_id", "size"), total_arrears=("arrears", "sum"))
        .reset_index()
    )
    summary["count"] = summary["count"].astype(int)
    summary["total_arrears"] = summary["total_arrears"].round(2)
    return summary
