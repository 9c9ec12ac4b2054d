from __future__ import annotations

import unittest

from ledger_doctor.classifier import data_rows
from ledger_doctor.normalization import debit_number
from ledger_doctor.offsets import (
    OffsetRule,
    build_candidates,
    detect_offsets,
    remove_offsets,
)
from ledger_doctor.shared import COLUMNS, LedgerTable
from ledger_doctor.structure import normalize, recalculate_arrears

HEADER = list(COLUMNS)
DEBIT_NO = HEADER.index("Debit No")


def ledger_row(
    *,
    debit_no: str = "",
    debit: str = "",
    credit: str = "",
    value_date: str = "12/01/2023",
    tax_type: str = "VAT",
    payroll_year: str = "2023",
    case_type: str = "Arrears",
) -> list[str]:
    return [value_date, "2023-01", "2023", payroll_year, tax_type, case_type, debit_no, debit, credit, "", "Posted"]


def table_of(*rows: list[str]) -> LedgerTable:
    return LedgerTable.from_matrix([HEADER, *rows])


PAIR_RULES = {OffsetRule.FULL_OFFSET, OffsetRule.IMPLICIT_PAIR}


class FullOffsetTests(unittest.TestCase):
    def test_debit_and_credit_under_one_debit_no_are_both_marked(self):
        table = table_of(
            ledger_row(debit_no="D100", debit="500.00"),
            ledger_row(debit_no="D100", credit="500.00"),
            ledger_row(debit_no="D200", debit="75.00"),
        )
        report = detect_offsets(table)
        self.assertEqual(report.rows_for(OffsetRule.FULL_OFFSET), [1, 2])

        rebuilt, removed, _ = remove_offsets(table, report)
        self.assertEqual([row.row_id for row in removed], [1, 2])
        remaining = [debit_number(row.cell(DEBIT_NO)) for row in data_rows(rebuilt)]
        self.assertNotIn("D100", remaining)
        self.assertEqual(remaining, ["D200"])

    def test_single_member_group_is_never_a_full_offset(self):
        table = table_of(ledger_row(debit_no="D1", debit="0.00", credit="0.00"))
        report = detect_offsets(table, rules={OffsetRule.FULL_OFFSET})
        self.assertEqual(len(report), 0)

    def test_tolerance_is_strict(self):
        table = table_of(
            ledger_row(debit_no="D1", debit="100.00"),
            ledger_row(debit_no="D1", credit="99.99"),
        )
        self.assertEqual(len(detect_offsets(table, rules={OffsetRule.FULL_OFFSET})), 0)

    def test_dash_debit_numbers_do_not_group(self):
        table = table_of(ledger_row(debit_no="-", debit="10.00"), ledger_row(debit_no="-", credit="10.00", value_date="20/06/2023"))
        self.assertEqual(len(detect_offsets(table, rules={OffsetRule.FULL_OFFSET})), 0)


class ImplicitPairTests(unittest.TestCase):
    def test_pair_eight_days_apart_is_removed(self):
        table = table_of(
            ledger_row(debit="1000", value_date="12/01/2023"),
            ledger_row(credit="1000", value_date="20/01/2023"),
        )
        report = detect_offsets(table, rules=PAIR_RULES)
        self.assertEqual(report.rows_for(OffsetRule.IMPLICIT_PAIR), [1, 2])
        self.assertEqual(report.pairs, [(1, 2)])

    def test_pair_sixty_days_apart_is_kept(self):
        table = table_of(
            ledger_row(debit="1000", value_date="12/01/2023"),
            ledger_row(credit="1000", value_date="13/03/2023"),
        )
        report = detect_offsets(table, rules=PAIR_RULES)
        self.assertEqual(len(report), 0)

    def test_iso_dates_are_understood(self):
        table = table_of(
            ledger_row(debit="10", value_date="2023-01-12"),
            ledger_row(credit="10", value_date="2023-02-12"),
        )
        self.assertEqual(len(detect_offsets(table, rules=PAIR_RULES)), 2)

    def test_unparsable_date_never_matches(self):
        table = table_of(
            ledger_row(debit="10", value_date="sometime in January"),
            ledger_row(credit="10", value_date="20/01/2023"),
        )
        self.assertEqual(len(detect_offsets(table, rules=PAIR_RULES)), 0)

    def test_text_fields_compare_case_insensitively_but_year_exactly(self):
        matching = table_of(
            ledger_row(debit="10", tax_type="vat", case_type="ARREARS"),
            ledger_row(credit="10", tax_type="VAT", case_type="arrears"),
        )
        self.assertEqual(len(detect_offsets(matching, rules=PAIR_RULES)), 2)
        padded_year = table_of(
            ledger_row(debit="10"),
            ledger_row(credit="10", payroll_year="2023 "),
        )
        self.assertEqual(len(detect_offsets(padded_year, rules=PAIR_RULES)), 2)
        different_year = table_of(ledger_row(debit="10"), ledger_row(credit="10", payroll_year="2024"))
        self.assertEqual(len(detect_offsets(different_year, rules=PAIR_RULES)), 0)

    def test_one_side_may_carry_a_debit_no(self):
        table = table_of(
            ledger_row(debit="10"),
            ledger_row(debit_no="D9", credit="10"),
        )
        self.assertEqual(detect_offsets(table, rules=PAIR_RULES).rows_for(OffsetRule.IMPLICIT_PAIR), [1, 2])

    def test_first_match_wins_and_stops_scanning(self):
        table = table_of(
            ledger_row(debit="10"),
            ledger_row(credit="10"),
            ledger_row(credit="10"),
        )
        report = detect_offsets(table, rules=PAIR_RULES)
        self.assertEqual(report.pairs, [(1, 2)])
        self.assertFalse(report.is_marked(3))

    def test_zero_zero_pair_is_not_a_match(self):
        table = table_of(ledger_row(debit="0", credit="0"), ledger_row(debit="0", credit="0"))
        self.assertEqual(len(detect_offsets(table, rules=PAIR_RULES)), 0)

    def test_date_window_is_configurable(self):
        table = table_of(
            ledger_row(debit="10", value_date="12/01/2023"),
            ledger_row(credit="10", value_date="20/01/2023"),
        )
        self.assertEqual(len(detect_offsets(table, rules=PAIR_RULES, date_window_days=7)), 0)


class RemainingRuleTests(unittest.TestCase):
    def test_zero_debit_without_debit_no_is_marked_regardless_of_credit(self):
        table = table_of(
            ledger_row(credit="250.00"),
            ledger_row(debit_no="D1", credit="250.00"),
        )
        report = detect_offsets(table)
        self.assertEqual(report.rule_for(1), OffsetRule.ZERO_DEBIT_NO_DEBIT_NO)
        self.assertFalse(report.is_marked(2))

    def test_fully_empty_amounts_are_marked(self):
        table = table_of(ledger_row(debit_no="D7", debit="0.00", credit=""), ledger_row(debit_no="D8", debit="5.00"))
        report = detect_offsets(table)
        self.assertEqual(report.rule_for(1), OffsetRule.EMPTY_AMOUNTS)
        self.assertFalse(report.is_marked(2))

    def test_earlier_rule_keeps_its_mark(self):
        table = table_of(
            ledger_row(debit_no="D100", debit="0.00"),
            ledger_row(debit_no="D100", credit="0.00"),
        )
        report = detect_offsets(table)
        self.assertEqual(report.rule_for(1), OffsetRule.FULL_OFFSET)
        self.assertEqual(report.counts()[OffsetRule.EMPTY_AMOUNTS.value], 0)

    def test_structural_rows_are_never_candidates(self):
        table = normalize(recalculate_arrears(table_of(ledger_row(debit_no="D1", debit="5.00"))))
        self.assertEqual([candidate.row_id for candidate in build_candidates(table)], [1])
        rebuilt, removed, report = remove_offsets(table)
        self.assertEqual(len(report), 0)
        self.assertEqual(removed, [])
        self.assertEqual(rebuilt.to_matrix(), table.to_matrix())

    def test_reasons_name_the_rule(self):
        table = table_of(ledger_row(credit="1.00"))
        self.assertIn("Rule 3", detect_offsets(table).reasons()[1])


if __name__ == "__main__":
    unittest.main()
