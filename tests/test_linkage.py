from __future__ import annotations

import unittest

from ledger_doctor.linkage import (
    Category,
    FamilyEntry,
    Suggestion,
    analyze_linkage,
    classify_case_type,
    match_case_type,
    validate_family_structure,
)
from ledger_doctor.shared import COLUMNS, ORPHAN_DEBIT_NO, LedgerTable

HEADER = list(COLUMNS)


def ledger_row(
    case_type: str,
    *,
    debit_no: str = "D1",
    debit: str = "",
    credit: str = "",
    tax_type: str = "PAYE",
    payroll_year: str = "2022",
    period: str = "2022-06",
) -> list[str]:
    return ["15/06/2022", period, "2022", payroll_year, tax_type, case_type, debit_no, debit, credit, "", "Posted"]


def entries(*case_types: str) -> list[FamilyEntry]:
    result = []
    for row_id, case_type in enumerate(case_types, start=1):
        category, component = match_case_type(case_type)
        result.append(FamilyEntry(row_id, case_type, 100.0, 0.0, "15/06/2022", "", category, component))
    return result


class CaseTypeTests(unittest.TestCase):
    def test_keywords_map_to_categories(self):
        self.assertEqual(classify_case_type("FINAL ORIGINAL ASSESSMENT"), Category.CORE)
        self.assertEqual(classify_case_type("Audit Adjustment"), Category.CORE)
        self.assertEqual(classify_case_type("Arrears b/f"), Category.ADJUSTMENT)
        self.assertEqual(classify_case_type("Discharge"), Category.SETTLEMENT)
        self.assertEqual(classify_case_type("Regular Payment"), Category.SETTLEMENT)
        self.assertEqual(classify_case_type("Late Submission Penalty"), Category.PENALTY)
        self.assertEqual(classify_case_type("Interest on arrears"), Category.ADJUSTMENT)
        self.assertEqual(classify_case_type("Refund"), Category.MISC)
        self.assertEqual(classify_case_type(""), Category.MISC)

    def test_provisional_original_beats_amended(self):
        self.assertEqual(match_case_type("Provisional Original"), (Category.CORE, "Provisional Original"))
        self.assertEqual(match_case_type("provisional amended"), (Category.ADJUSTMENT, "Provisional Amended"))


class ValidateFamilyTests(unittest.TestCase):
    def test_lone_final_original_is_a_valid_standalone(self):
        verdict = validate_family_structure(entries("Final Original"))
        self.assertTrue(verdict.is_valid)
        self.assertEqual(verdict.suggestion, Suggestion.KEEP)
        self.assertIn("standalone", verdict.reason)

    def test_lone_arrears_is_a_carryover_liability(self):
        verdict = validate_family_structure(entries("Arrears"))
        self.assertTrue(verdict.is_valid)
        self.assertIn("carryover", verdict.reason)

    def test_lone_discharge_has_no_matching_core_liability(self):
        verdict = validate_family_structure(entries("Discharge"))
        self.assertFalse(verdict.is_valid)
        self.assertEqual(verdict.suggestion, Suggestion.REMOVE)
        self.assertIn("no matching core liability", verdict.reason)

    def test_lone_non_core_entries_are_removed(self):
        for case_type in ("Regular Payment", "Fine", "Provisional Amended", "Enforcement", "Refund"):
            with self.subTest(case_type=case_type):
                verdict = validate_family_structure(entries(case_type))
                self.assertFalse(verdict.is_valid)
                self.assertEqual(verdict.suggestion, Suggestion.REMOVE)

    def test_family_without_anchor_names_the_category(self):
        self.assertIn("settlement", validate_family_structure(entries("Discharge", "Regular Payment")).reason)
        self.assertIn("penalty", validate_family_structure(entries("Fine", "Interest")).reason)

    def test_amended_needs_its_provisional_original(self):
        verdict = validate_family_structure(entries("Final Original", "Provisional Amended"))
        self.assertFalse(verdict.is_valid)
        self.assertIn("Provisional Original", verdict.reason)
        self.assertTrue(validate_family_structure(entries("Provisional Original", "Provisional Amended")).is_valid)

    def test_valid_family_lists_its_components(self):
        verdict = validate_family_structure(entries("Final Original", "Arrears", "Discharge", "Discharge"))
        self.assertTrue(verdict.is_valid)
        self.assertEqual(verdict.reason, "Valid family: Final Original + Arrears + Discharge")

    def test_arrears_anchor_supports_enforcement(self):
        self.assertTrue(validate_family_structure(entries("Arrears", "Enforcement")).is_valid)

    def test_unanchored_reason_names_every_unsupported_category(self):
        verdict = validate_family_structure(entries("Discharge", "Late Submission"))
        self.assertFalse(verdict.is_valid)
        self.assertEqual(verdict.reason, "No core liability - family holds settlement and penalty entries")

    def test_enforcement_without_an_anchor_is_removed(self):
        verdict = validate_family_structure(entries("Enforcement", "Discharge"))
        self.assertFalse(verdict.is_valid)
        self.assertIn("settlement", verdict.reason)


class AnalyzeLinkageTests(unittest.TestCase):
    def test_rows_group_by_debit_no_tax_type_year_and_period(self):
        table = LedgerTable.from_matrix(
            [
                HEADER,
                ledger_row("Final Original", debit="1000"),
                ledger_row("Discharge", credit="1000"),
                ledger_row("Final Original", debit="10", period="2022-07"),
            ]
        )
        report = analyze_linkage(table)
        self.assertEqual(len(report.families), 2)
        family = report.family("D1|PAYE|2022|2022-06")
        self.assertIsNotNone(family)
        self.assertEqual(family.row_ids, [1, 2])
        self.assertTrue(family.is_valid)

    def test_dash_zero_credit_row_is_an_orphaned_credit(self):
        table = LedgerTable.from_matrix([HEADER, ledger_row("Discharge", debit_no="-", debit="0", credit="250")])
        report = analyze_linkage(table)
        self.assertEqual(len(report.families), 1)
        family = report.families[0]
        self.assertTrue(family.is_orphaned)
        self.assertEqual(family.debit_no, ORPHAN_DEBIT_NO)
        self.assertFalse(family.is_valid)
        self.assertEqual(family.suggestion, Suggestion.REMOVE)
        self.assertIn("only credit amount", family.reason)

    def test_other_rows_without_debit_no_are_left_unlinked(self):
        table = LedgerTable.from_matrix([HEADER, ledger_row("Final Original", debit_no="", debit="75")])
        report = analyze_linkage(table)
        self.assertEqual(report.families, [])
        self.assertEqual(report.unlinked_row_ids, [1])

    def test_sort_puts_orphans_then_invalid_then_valid(self):
        table = LedgerTable.from_matrix(
            [
                HEADER,
                ledger_row("Final Original", debit_no="A1", debit="10"),
                ledger_row("Discharge", debit_no="Z9", credit="10"),
                ledger_row("Discharge", debit_no="B2", credit="10"),
                ledger_row("Regular Payment", debit_no="-", credit="5"),
            ]
        )
        ordered = [family.debit_no for family in analyze_linkage(table).families]
        self.assertEqual(ordered, [ORPHAN_DEBIT_NO, "B2", "Z9", "A1"])

    def test_invalid_families_are_preselected(self):
        table = LedgerTable.from_matrix(
            [
                HEADER,
                ledger_row("Final Original", debit_no="A1", debit="10"),
                ledger_row("Discharge", debit_no="B2", credit="10"),
            ]
        )
        report = analyze_linkage(table)
        selection = {family.debit_no: family.selected for family in report.families}
        self.assertEqual(selection, {"A1": False, "B2": True})
        self.assertEqual([family.debit_no for family in report.invalid], ["B2"])

    def test_as_dict_is_json_friendly(self):
        table = LedgerTable.from_matrix([HEADER, ledger_row("Final Original", debit="12.5", credit="2.5")])
        payload = analyze_linkage(table).families[0].as_dict()
        self.assertEqual(payload["suggestion"], "KEEP")
        self.assertEqual(payload["arrears"], 10.0)
        self.assertEqual(payload["case_types"], ["Final Original"])


if __name__ == "__main__":
    unittest.main()
