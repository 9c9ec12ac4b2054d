from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from ledger_doctor.classifier import data_rows
from ledger_doctor.logging_setup import get_logger
from ledger_doctor.normalization import cell_text, debit_number, is_zero, parse_amount
from ledger_doctor.shared import AMOUNT_TOLERANCE, ORPHAN_DEBIT_NO, LedgerTable

logger = get_logger(__name__)


class Category(str, Enum):
    CORE = "Core"
    ADJUSTMENT = "Adjustment"
    SETTLEMENT = "Settlement"
    PENALTY = "Penalty"
    MISC = "Misc"


class Suggestion(str, Enum):
    KEEP = "KEEP"
    REMOVE = "REMOVE"


# Priority order matters: the first keyword found decides the category.
CASE_TYPE_KEYWORDS: tuple[tuple[Category, str, str], ...] = (
    (Category.CORE, "final original", "Final Original"),
    (Category.CORE, "provisional original", "Provisional Original"),
    (Category.CORE, "additional assessment", "Additional Assessment"),
    (Category.CORE, "audit", "Audit"),
    (Category.ADJUSTMENT, "provisional amended", "Provisional Amended"),
    (Category.ADJUSTMENT, "arrears", "Arrears"),
    (Category.ADJUSTMENT, "enforcement", "Enforcement"),
    (Category.SETTLEMENT, "discharge", "Discharge"),
    (Category.SETTLEMENT, "regular payment", "Regular Payment"),
    (Category.PENALTY, "fine", "Fine"),
    (Category.PENALTY, "penalt", "Penalty"),
    (Category.PENALTY, "interest", "Interest"),
    (Category.PENALTY, "late submission", "Late Submission"),
)

CORE_DESCRIPTIONS = {
    "Final Original": "liability",
    "Provisional Original": "preliminary assessment",
    "Additional Assessment": "additional liability",
    "Audit": "audit finding",
}

ORPHAN_REASON = "Orphaned credit: no debit number, no debit amount, only credit amount"


def match_case_type(text: str) -> tuple[Category, str]:
    """Return (category, component label) for a free-text case type."""
    lowered = (text or "").lower()
    for category, keyword, label in CASE_TYPE_KEYWORDS:
        if keyword in lowered:
            return category, label
    return Category.MISC, (text or "").strip() or "Unknown"


def classify_case_type(text: str) -> Category:
    return match_case_type(text)[0]


# ══════════════════════════════════════════════════════════════════════════
# DATA TYPES
# ══════════════════════════════════════════════════════════════════════════

@dataclass
class FamilyEntry:
    row_id: int
    case_type: str
    debit: float
    credit: float
    value_date: str
    last_event: str
    category: Category
    component: str

    @property
    def arrears(self) -> float:
        return self.debit - self.credit


@dataclass(frozen=True)
class FamilyVerdict:
    is_valid: bool
    reason: str
    suggestion: Suggestion


@dataclass
class DebitFamily:
    family_id: str
    debit_no: str
    tax_type: str
    payroll_year: str
    period: str
    entries: list[FamilyEntry] = field(default_factory=list)
    is_orphaned: bool = False
    is_valid: bool = False
    reason: str = ""
    suggestion: Suggestion = Suggestion.REMOVE
    selected: bool = False

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.debit_no, self.tax_type, self.payroll_year, self.period)

    @property
    def row_ids(self) -> list[int]:
        return [entry.row_id for entry in self.entries]

    @property
    def total_debit(self) -> float:
        return sum(entry.debit for entry in self.entries)

    @property
    def total_credit(self) -> float:
        return sum(entry.credit for entry in self.entries)

    @property
    def arrears(self) -> float:
        return self.total_debit - self.total_credit

    def apply(self, verdict: FamilyVerdict) -> None:
        self.is_valid = verdict.is_valid
        self.reason = verdict.reason
        self.suggestion = verdict.suggestion
        self.selected = not verdict.is_valid

    def as_dict(self) -> dict:
        return {
            "family_id": self.family_id,
            "debit_no": self.debit_no,
            "tax_type": self.tax_type,
            "payroll_year": self.payroll_year,
            "period": self.period,
            "is_orphaned": self.is_orphaned,
            "is_valid": self.is_valid,
            "reason": self.reason,
            "suggestion": self.suggestion.value,
            "selected": self.selected,
            "row_ids": self.row_ids,
            "case_types": [entry.case_type for entry in self.entries],
            "arrears": round(self.arrears, 2),
        }


@dataclass
class LinkageReport:
    families: list[DebitFamily]
    unlinked_row_ids: list[int]

    @property
    def invalid(self) -> list[DebitFamily]:
        return [family for family in self.families if not family.is_valid]

    @property
    def valid(self) -> list[DebitFamily]:
        return [family for family in self.families if family.is_valid]

    def family(self, family_id: str) -> DebitFamily | None:
        for family in self.families:
            if family.family_id == family_id:
                return family
        return None


# ══════════════════════════════════════════════════════════════════════════
# VALIDATION
# ══════════════════════════════════════════════════════════════════════════

def _remove(reason: str) -> FamilyVerdict:
    return FamilyVerdict(False, reason, Suggestion.REMOVE)


def _keep(reason: str) -> FamilyVerdict:
    return FamilyVerdict(True, reason, Suggestion.KEEP)


def _validate_single(entry: FamilyEntry) -> FamilyVerdict:
    component = entry.component
    if entry.category is Category.CORE:
        return _keep(f"Valid standalone {CORE_DESCRIPTIONS[component]} ({component})")
    if component == "Arrears":
        return _keep("Valid standalone carryover liability (Arrears)")
    if component == "Discharge":
        return _remove("Orphaned settlement - no matching core liability")
    if component == "Regular Payment":
        return _remove("Orphaned payment - no matching core liability")
    if entry.category is Category.PENALTY:
        return _remove(f"Orphaned {component.lower()} - no core liability to attach to")
    if component == "Provisional Amended":
        return _remove("Provisional Amended with no Provisional Original to amend")
    if component == "Enforcement":
        return _remove("Enforcement with no arrears or core liability to enforce")
    return _remove(f"Unrecognised case type '{entry.case_type}' - no matching core liability")


def _distinct_components(entries: Sequence[FamilyEntry]) -> list[str]:
    seen: list[str] = []
    for entry in entries:
        if entry.component not in seen:
            seen.append(entry.component)
    return seen


def validate_family_structure(entries: Sequence[FamilyEntry]) -> FamilyVerdict:
    """Judge whether a family forms a coherent liability chain."""
    if not entries:
        return _remove("Empty family")
    if len(entries) == 1:
        return _validate_single(entries[0])

    components = set(_distinct_components(entries))
    categories = {entry.category for entry in entries}
    has_core = Category.CORE in categories
    has_arrears = "Arrears" in components

    # Enforcement needs Arrears or a core entry, so the anchor check covers it
    if not has_core and not has_arrears:
        unsupported = [
            category.value.lower() for category in (Category.SETTLEMENT, Category.PENALTY) if category in categories
        ]
        if unsupported:
            return _remove(f"No core liability - family holds {' and '.join(unsupported)} entries")
        return _remove("No core liability or arrears anchor in family")

    if "Provisional Amended" in components and "Provisional Original" not in components:
        return _remove("Provisional Amended present without a Provisional Original")

    return _keep(f"Valid family: {' + '.join(_distinct_components(entries))}")


# ══════════════════════════════════════════════════════════════════════════
# GROUPING
# ══════════════════════════════════════════════════════════════════════════

def sort_families(families: list[DebitFamily]) -> list[DebitFamily]:
    """Invalid first, orphaned credits first among invalid, then by Debit No."""
    return sorted(
        families,
        key=lambda family: (family.is_valid, not family.is_orphaned, family.debit_no),
    )


def analyze_linkage(table: LedgerTable, *, tolerance: float = AMOUNT_TOLERANCE) -> LinkageReport:
    columns = table.columns
    debit_idx, credit_idx = columns.require("Debit Amount", "Credit Amount")
    debit_no_idx = columns.get("Debit No")
    tax_idx = columns.get("Tax Type")
    year_idx = columns.get("Payroll Year")
    period_idx = columns.get("Period")
    case_idx = columns.get("Case Type")
    date_idx = columns.get("Value Date")
    event_idx = columns.get("Last Event")

    families: dict[str, DebitFamily] = {}
    unlinked: list[int] = []

    for row in data_rows(table):
        case_type = cell_text(row.cell(case_idx))
        category, component = match_case_type(case_type)
        entry = FamilyEntry(
            row_id=row.row_id,
            case_type=case_type,
            debit=parse_amount(row.cell(debit_idx)),
            credit=parse_amount(row.cell(credit_idx)),
            value_date=cell_text(row.cell(date_idx)),
            last_event=cell_text(row.cell(event_idx)),
            category=category,
            component=component,
        )
        debit_no = debit_number(row.cell(debit_no_idx))
        tax_type = cell_text(row.cell(tax_idx))
        payroll_year = cell_text(row.cell(year_idx))
        period = cell_text(row.cell(period_idx))

        if not debit_no:
            if is_zero(entry.debit, tolerance) and entry.credit > 0:
                family_id = f"{ORPHAN_DEBIT_NO}#{row.row_id}"
                families[family_id] = DebitFamily(
                    family_id=family_id,
                    debit_no=ORPHAN_DEBIT_NO,
                    tax_type=tax_type,
                    payroll_year=payroll_year,
                    period=period,
                    entries=[entry],
                    is_orphaned=True,
                )
            else:
                unlinked.append(row.row_id)
            continue

        family_id = "|".join((debit_no, tax_type, payroll_year, period))
        family = families.get(family_id)
        if family is None:
            family = DebitFamily(family_id, debit_no, tax_type, payroll_year, period)
            families[family_id] = family
        family.entries.append(entry)

    for family in families.values():
        if family.is_orphaned:
            family.apply(_remove(ORPHAN_REASON))
        else:
            family.apply(validate_family_structure(family.entries))

    ordered = sort_families(list(families.values()))
    logger.info(
        "Linkage analysis: %d families (%d invalid), %d rows without a Debit No left unlinked",
        len(ordered),
        sum(1 for family in ordered if not family.is_valid),
        len(unlinked),
    )
    return LinkageReport(ordered, unlinked)
