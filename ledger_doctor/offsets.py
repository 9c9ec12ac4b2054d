from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Iterable

from ledger_doctor.classifier import data_rows
from ledger_doctor.logging_setup import get_logger
from ledger_doctor.normalization import (
    amounts_equal,
    cell_text,
    days_between,
    debit_number,
    is_zero,
    parse_amount,
    parse_value_date,
)
from ledger_doctor.shared import (
    AMOUNT_TOLERANCE,
    DATE_WINDOW_DAYS,
    GRAND_TOTAL_LABEL,
    LedgerRow,
    LedgerTable,
)
from ledger_doctor.structure import rebuild_without

logger = get_logger(__name__)


class OffsetRule(str, Enum):
    FULL_OFFSET = "full_offset_by_debit_no"
    IMPLICIT_PAIR = "implicit_pairing"
    ZERO_DEBIT_NO_DEBIT_NO = "zero_debit_without_debit_no"
    EMPTY_AMOUNTS = "empty_amounts"


ALL_RULES = tuple(OffsetRule)

RULE_REASONS = {
    OffsetRule.FULL_OFFSET: "Rule 1: debits and credits under one Debit No cancel out",
    OffsetRule.IMPLICIT_PAIR: "Rule 2: offsetting pair without a Debit No within the date window",
    OffsetRule.ZERO_DEBIT_NO_DEBIT_NO: "Rule 3: zero debit and no Debit No",
    OffsetRule.EMPTY_AMOUNTS: "Rule 4: zero debit and zero credit",
}


@dataclass
class OffsetCandidate:
    row: LedgerRow
    debit_no: str
    debit: float
    credit: float
    tax_type: str
    payroll_year: str
    case_type: str
    value_date: date | None
    raw_value_date: str

    @property
    def row_id(self) -> int:
        return self.row.row_id


@dataclass
class OffsetReport:
    """Row IDs marked for removal, each with the first rule that marked it."""

    marks: OrderedDict[int, OffsetRule] = field(default_factory=OrderedDict)
    pairs: list[tuple[int, int]] = field(default_factory=list)

    def mark(self, row_id: int, rule: OffsetRule) -> bool:
        if row_id in self.marks:
            return False
        self.marks[row_id] = rule
        return True

    def is_marked(self, row_id: int) -> bool:
        return row_id in self.marks

    def rule_for(self, row_id: int) -> OffsetRule | None:
        return self.marks.get(row_id)

    def rows_for(self, rule: OffsetRule) -> list[int]:
        return [row_id for row_id, marked_by in self.marks.items() if marked_by is rule]

    @property
    def row_ids(self) -> list[int]:
        return list(self.marks)

    def counts(self) -> dict[str, int]:
        return {rule.value: len(self.rows_for(rule)) for rule in OffsetRule}

    def reasons(self) -> dict[int, str]:
        return {row_id: RULE_REASONS[rule] for row_id, rule in self.marks.items()}

    def __len__(self) -> int:
        return len(self.marks)


def build_candidates(table: LedgerTable) -> list[OffsetCandidate]:
    columns = table.columns
    debit_idx, credit_idx = columns.require("Debit Amount", "Credit Amount")
    debit_no_idx = columns.get("Debit No")
    tax_idx = columns.get("Tax Type")
    year_idx = columns.get("Payroll Year")
    case_idx = columns.get("Case Type")
    date_idx = columns.get("Value Date")

    candidates = []
    for row in data_rows(table):
        raw_date = cell_text(row.cell(date_idx))
        candidates.append(
            OffsetCandidate(
                row=row,
                debit_no=debit_number(row.cell(debit_no_idx)),
                debit=parse_amount(row.cell(debit_idx)),
                credit=parse_amount(row.cell(credit_idx)),
                tax_type=cell_text(row.cell(tax_idx)),
                payroll_year=cell_text(row.cell(year_idx)),
                case_type=cell_text(row.cell(case_idx)),
                value_date=parse_value_date(raw_date),
                raw_value_date=raw_date,
            )
        )
    return candidates


# ══════════════════════════════════════════════════════════════════════════
# RULES
# ══════════════════════════════════════════════════════════════════════════

def _apply_full_offset(candidates: list[OffsetCandidate], report: OffsetReport, tolerance: float) -> None:
    by_debit_no: OrderedDict[str, list[OffsetCandidate]] = OrderedDict()
    for candidate in candidates:
        if candidate.debit_no:
            by_debit_no.setdefault(candidate.debit_no, []).append(candidate)

    for debit_no, members in by_debit_no.items():
        if len(members) < 2:
            continue
        debit = sum(m.debit for m in members)
        credit = sum(m.credit for m in members)
        if amounts_equal(debit, credit, tolerance):
            logger.debug("Rule 1: Debit No %s fully offset across %d rows", debit_no, len(members))
            for member in members:
                report.mark(member.row_id, OffsetRule.FULL_OFFSET)


def _is_implicit_pair(
    first: OffsetCandidate,
    second: OffsetCandidate,
    tolerance: float,
    date_window_days: int,
) -> bool:
    if first.debit_no and second.debit_no:
        return False
    debit = first.debit + second.debit
    credit = first.credit + second.credit
    if not amounts_equal(debit, credit, tolerance) or abs(debit) <= tolerance:
        return False
    if first.tax_type.casefold() != second.tax_type.casefold():
        return False
    if first.payroll_year != second.payroll_year:
        return False
    if first.case_type.casefold() != second.case_type.casefold():
        return False
    if first.value_date is None or second.value_date is None:
        return False
    return days_between(first.value_date, second.value_date) <= date_window_days


def _apply_implicit_pairing(
    candidates: list[OffsetCandidate],
    report: OffsetReport,
    tolerance: float,
    date_window_days: int,
) -> None:
    for i, first in enumerate(candidates):
        if first.debit_no or report.is_marked(first.row_id):
            continue
        for second in candidates[i + 1:]:
            if report.is_marked(second.row_id):
                continue
            if _is_implicit_pair(first, second, tolerance, date_window_days):
                report.mark(first.row_id, OffsetRule.IMPLICIT_PAIR)
                report.mark(second.row_id, OffsetRule.IMPLICIT_PAIR)
                report.pairs.append((first.row_id, second.row_id))
                break


def _apply_zero_debit_without_debit_no(
    candidates: list[OffsetCandidate], report: OffsetReport, tolerance: float
) -> None:
    for candidate in candidates:
        if not candidate.debit_no and is_zero(candidate.debit, tolerance):
            report.mark(candidate.row_id, OffsetRule.ZERO_DEBIT_NO_DEBIT_NO)


def _apply_empty_amounts(candidates: list[OffsetCandidate], report: OffsetReport, tolerance: float) -> None:
    for candidate in candidates:
        if is_zero(candidate.debit, tolerance) and is_zero(candidate.credit, tolerance):
            report.mark(candidate.row_id, OffsetRule.EMPTY_AMOUNTS)


def detect_offsets(
    table: LedgerTable,
    *,
    rules: Iterable[OffsetRule] = ALL_RULES,
    tolerance: float = AMOUNT_TOLERANCE,
    date_window_days: int = DATE_WINDOW_DAYS,
) -> OffsetReport:
    """Mark data rows that offset each other, rule by rule in fixed order.

    A row marked by an earlier rule keeps that mark; later rules only look at
    unmarked rows. Disabled rules are skipped without changing the order.
    """
    enabled = set(rules)
    candidates = build_candidates(table)
    report = OffsetReport()

    if OffsetRule.FULL_OFFSET in enabled:
        _apply_full_offset(candidates, report, tolerance)
    if OffsetRule.IMPLICIT_PAIR in enabled:
        _apply_implicit_pairing(candidates, report, tolerance, date_window_days)
    if OffsetRule.ZERO_DEBIT_NO_DEBIT_NO in enabled:
        _apply_zero_debit_without_debit_no(candidates, report, tolerance)
    if OffsetRule.EMPTY_AMOUNTS in enabled:
        _apply_empty_amounts(candidates, report, tolerance)

    logger.info(
        "Offset detection marked %d of %d data rows %s", len(report), len(candidates), report.counts()
    )
    return report


def remove_offsets(
    table: LedgerTable,
    report: OffsetReport | None = None,
    *,
    label: str = GRAND_TOTAL_LABEL,
    **options,
) -> tuple[LedgerTable, list[LedgerRow], OffsetReport]:
    if report is None:
        report = detect_offsets(table, **options)
    rebuilt, removed = rebuild_without(table, report.row_ids, label)
    return rebuilt, removed, report
