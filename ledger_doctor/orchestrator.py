from __future__ import annotations

import copy
import functools
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

import pandas as pd

from ledger_doctor import filters
from ledger_doctor.classifier import data_rows
from ledger_doctor.config import ReconcileConfig
from ledger_doctor.contracts import utc_now_iso
from ledger_doctor.linkage import DebitFamily, LinkageReport, analyze_linkage
from ledger_doctor.logging_setup import get_logger
from ledger_doctor.normalization import parse_amount, rearrange_columns
from ledger_doctor.offsets import ALL_RULES, OffsetReport, OffsetRule, detect_offsets
from ledger_doctor.repository import KeyValueTableRepository, Matrix, TableRepository
from ledger_doctor.shared import LedgerError, LedgerTable, MissingColumnsError
from ledger_doctor.structure import normalize, rebuild_without, recalculate_arrears

logger = get_logger(__name__)


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    PENDING = "pending"
    NO_OP = "no_op"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass(frozen=True)
class Statistics:
    total_rows: int
    remaining_rows: int
    removed_rows: int
    total_arrears: float

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Outcome:
    status: OutcomeStatus
    message: str
    statistics: Statistics | None = None
    row_ids: tuple[int, ...] = ()
    missing_columns: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status in (OutcomeStatus.SUCCESS, OutcomeStatus.PENDING)


@dataclass(frozen=True)
class RemovedRow:
    row_id: int
    cells: list[Any]
    reason: str
    removed_at: str


@dataclass(frozen=True)
class AuditEntry:
    timestamp: str
    action: str
    details: str
    rows_affected: int


@dataclass(frozen=True)
class PendingRemoval:
    action: str
    row_ids: frozenset[int]
    reasons: dict[int, str]


@dataclass(frozen=True)
class Snapshot:
    action: str
    table: LedgerTable
    removed: dict[int, RemovedRow]


class UndoStack:
    """Bounded stack of table snapshots; depth 1 means one level of undo."""

    def __init__(self, depth: int = 1) -> None:
        self._snapshots: deque[Snapshot] = deque(maxlen=depth)

    def push(self, snapshot: Snapshot) -> None:
        self._snapshots.append(snapshot)

    def pop(self) -> Snapshot | None:
        if not self._snapshots:
            return None
        return self._snapshots.pop()

    def clear(self) -> None:
        self._snapshots.clear()

    def __len__(self) -> int:
        return len(self._snapshots)


def operation(action: str) -> Callable:
    """Turn ledger errors raised inside an operation into a FAILED outcome."""

    def decorator(method: Callable[..., Outcome]) -> Callable[..., Outcome]:
        @functools.wraps(method)
        def wrapper(self: Reconciler, *args, **kwargs) -> Outcome:
            if self._table is None and action != "load":
                return Outcome(OutcomeStatus.FAILED, "No data loaded. Import a ledger first.")
            try:
                return method(self, *args, **kwargs)
            except MissingColumnsError as exc:
                logger.warning("%s aborted: %s", action, exc)
                return Outcome(
                    OutcomeStatus.FAILED,
                    str(exc),
                    statistics=self.statistics(),
                    missing_columns=exc.missing,
                )
            except LedgerError as exc:
                logger.warning("%s failed: %s", action, exc)
                return Outcome(OutcomeStatus.FAILED, str(exc), statistics=self.statistics())

        return wrapper

    return decorator


class Reconciler:
    """Owns the current table, the selection, pending removals and undo."""

    def __init__(self, repository: TableRepository, config: ReconcileConfig | None = None) -> None:
        self.repository = repository
        self.config = config or ReconcileConfig()
        self.review_mode = self.config.review_mode
        self.auto_update = self.config.auto_update
        self._table: LedgerTable | None = None
        self._original: LedgerTable | None = None
        self._total_rows = 0
        self._undo = UndoStack(depth=1)
        self._pending: PendingRemoval | None = None
        self._linkage: LinkageReport | None = None
        self._selected_rows: set[int] = set()
        self._removed: dict[int, RemovedRow] = {}
        self._audit: deque[AuditEntry] = deque(maxlen=self.config.audit_log_limit)

    @classmethod
    def from_matrix(cls, matrix: Matrix, config: ReconcileConfig | None = None) -> Reconciler:
        """Build a reconciler over an in-memory store seeded with ``matrix``."""
        config = config or ReconcileConfig()
        repository = KeyValueTableRepository({}, config.storage_slot)
        repository.save(matrix)
        reconciler = cls(repository, config)
        reconciler.load()
        return reconciler

    # ── read-only state ────────────────────────────────────────────────────

    @property
    def table(self) -> LedgerTable | None:
        return self._table

    @property
    def families(self) -> list[DebitFamily]:
        return list(self._linkage.families) if self._linkage else []

    @property
    def pending_removals(self) -> frozenset[int]:
        return self._pending.row_ids if self._pending else frozenset()

    @property
    def selected_rows(self) -> frozenset[int]:
        return frozenset(self._selected_rows)

    @property
    def removed_rows(self) -> list[RemovedRow]:
        return list(self._removed.values())

    @property
    def audit_log(self) -> list[AuditEntry]:
        return list(self._audit)

    @property
    def can_undo(self) -> bool:
        return len(self._undo) > 0

    def statistics(self) -> Statistics:
        if self._table is None:
            return Statistics(0, 0, len(self._removed), 0.0)
        columns = self._table.columns
        debit_idx = columns.get("Debit Amount")
        credit_idx = columns.get("Credit Amount")
        rows = data_rows(self._table)
        arrears = sum(parse_amount(row.cell(debit_idx)) - parse_amount(row.cell(credit_idx)) for row in rows)
        return Statistics(
            total_rows=self._total_rows,
            remaining_rows=len(rows),
            removed_rows=len(self._removed),
            total_arrears=round(arrears, 2),
        )

    # ── internals ──────────────────────────────────────────────────────────

    def _record(self, action: str, details: str, rows_affected: int) -> None:
        self._audit.append(AuditEntry(utc_now_iso(), action, details, rows_affected))
        logger.info("%s: %s", action, details)

    def _commit(self, table: LedgerTable) -> None:
        self.repository.save(table.to_matrix())
        self._table = table

    def _invalidate_analysis(self) -> None:
        self._pending = None
        self._linkage = None
        self._selected_rows.clear()

    def _outcome(self, status: OutcomeStatus, message: str, **kwargs) -> Outcome:
        return Outcome(status, message, statistics=self.statistics(), **kwargs)

    def _blocked(self) -> Outcome:
        return self._outcome(
            OutcomeStatus.BLOCKED,
            "Review mode is active: removals are preview only. Turn review mode off to apply them.",
        )

    def _gate(self, action: str, row_ids: Iterable[int], reasons: Mapping[int, str] | str) -> Outcome:
        if self.review_mode:
            return self._blocked()
        ids = frozenset(row_ids)
        if not ids:
            return self._outcome(OutcomeStatus.NO_OP, "Nothing to remove.")
        if isinstance(reasons, str):
            reasons = {row_id: reasons for row_id in ids}
        if not self.auto_update:
            self._pending = PendingRemoval(action, ids, dict(reasons))
            return self._outcome(
                OutcomeStatus.PENDING,
                f"{len(ids)} rows staged for removal. Apply or cancel the pending changes.",
                row_ids=tuple(sorted(ids)),
            )
        return self.execute_removal(ids, reasons, action=action)

    # ══════════════════════════════════════════════════════════════════════
    # LOADING
    # ══════════════════════════════════════════════════════════════════════

    @operation("load")
    def load(self) -> Outcome:
        matrix = self.repository.load()
        if matrix is None:
            return Outcome(OutcomeStatus.FAILED, "No data found. Please complete previous stages first.")
        table = recalculate_arrears(LedgerTable.from_matrix(rearrange_columns(matrix)))
        self._commit(table)
        self._original = table.copy()
        self._total_rows = len(data_rows(table))
        self._undo.clear()
        self._removed.clear()
        self._invalidate_analysis()
        self._record("load", "Data loaded and arrears recalculated for all entries", self._total_rows)
        return self._outcome(OutcomeStatus.SUCCESS, "Data loaded. Arrears recalculated for all entries.")

    @operation("normalize")
    def normalize(self) -> Outcome:
        self._commit(normalize(recalculate_arrears(self._table), self.config.grand_total_label))
        self._record("normalize", "Group totals, separators and grand total recomputed", 0)
        return self._outcome(OutcomeStatus.SUCCESS, "Group totals recalculated, two-row separation maintained.")

    # ══════════════════════════════════════════════════════════════════════
    # LINKAGE AND SELECTION
    # ══════════════════════════════════════════════════════════════════════

    @operation("analyze_linkage")
    def analyze_linkage(self) -> Outcome:
        self._linkage = analyze_linkage(self._table, tolerance=self.config.amount_tolerance)
        self._selected_rows.clear()
        invalid = self._linkage.invalid
        return self._outcome(
            OutcomeStatus.SUCCESS,
            f"{len(self._linkage.families)} debit families analysed, {len(invalid)} flagged for removal.",
            row_ids=tuple(row_id for family in invalid for row_id in family.row_ids),
            details={
                "families": len(self._linkage.families),
                "invalid": len(invalid),
                "orphaned": sum(1 for family in invalid if family.is_orphaned),
                "unlinked_rows": len(self._linkage.unlinked_row_ids),
            },
        )

    @operation("toggle_family_selection")
    def toggle_family_selection(self, family_id: str) -> Outcome:
        if self._linkage is None:
            return self._outcome(OutcomeStatus.NO_OP, "Run linkage analysis before selecting families.")
        family = self._linkage.family(family_id)
        if family is None:
            return self._outcome(OutcomeStatus.FAILED, f"Unknown debit family: {family_id}")
        family.selected = not family.selected
        state = "selected" if family.selected else "deselected"
        return self._outcome(OutcomeStatus.SUCCESS, f"Family {family.debit_no} {state}.", row_ids=tuple(family.row_ids))

    @operation("toggle_row_selection")
    def toggle_row_selection(self, row_id: int) -> Outcome:
        if row_id not in {row.row_id for row in data_rows(self._table)}:
            return self._outcome(OutcomeStatus.FAILED, f"Row {row_id} is not a data row.")
        if row_id in self._selected_rows:
            self._selected_rows.discard(row_id)
        else:
            self._selected_rows.add(row_id)
        return self._outcome(OutcomeStatus.SUCCESS, f"{len(self._selected_rows)} rows selected.", row_ids=(row_id,))

    @operation("remove_selected")
    def remove_selected(self) -> Outcome:
        if self.review_mode:
            return self._blocked()
        reasons: dict[int, str] = {}
        for family in self.families:
            if family.selected:
                for row_id in family.row_ids:
                    reasons.setdefault(row_id, f"Debit family {family.debit_no}: {family.reason}")
        for row_id in self._selected_rows:
            reasons.setdefault(row_id, "Selected manually")
        if not reasons:
            return self._outcome(OutcomeStatus.NO_OP, "No families or rows selected.")
        return self._gate("remove_selected", reasons.keys(), reasons)

    @operation("remove_invalid_families")
    def remove_invalid_families(self) -> Outcome:
        if self._linkage is None:
            self._linkage = analyze_linkage(self._table, tolerance=self.config.amount_tolerance)
        for family in self._linkage.families:
            family.selected = not family.is_valid
        self._selected_rows.clear()
        return self.remove_selected()

    # ══════════════════════════════════════════════════════════════════════
    # PENDING, EXECUTION, UNDO
    # ══════════════════════════════════════════════════════════════════════

    @operation("apply_pending")
    def apply_pending(self) -> Outcome:
        if self._pending is None:
            return self._outcome(OutcomeStatus.NO_OP, "No pending changes to apply.")
        if self.review_mode:
            return self._blocked()
        pending = self._pending
        return self.execute_removal(pending.row_ids, pending.reasons, action=pending.action)

    @operation("cancel_pending")
    def cancel_pending(self) -> Outcome:
        if self._pending is None:
            return self._outcome(OutcomeStatus.NO_OP, "No pending changes to cancel.")
        count = len(self._pending.row_ids)
        self._pending = None
        return self._outcome(OutcomeStatus.SUCCESS, f"Discarded {count} pending removals.")

    @operation("execute_removal")
    def execute_removal(
        self,
        row_ids: Iterable[int],
        reasons: Mapping[int, str] | str = "Removed",
        *,
        action: str = "execute_removal",
    ) -> Outcome:
        if self.review_mode:
            return self._blocked()
        ids = set(row_ids)
        if not ids:
            return self._outcome(OutcomeStatus.NO_OP, "No rows selected for removal.")
        rebuilt, removed = rebuild_without(self._table, ids, self.config.grand_total_label)
        if not removed:
            return self._outcome(OutcomeStatus.NO_OP, "None of the selected rows are present in the table.")
        snapshot = Snapshot(action, self._table.copy(), copy.deepcopy(self._removed))
        self._commit(rebuilt)
        self._undo.push(snapshot)

        removed_at = utc_now_iso()
        for row in removed:
            reason = reasons if isinstance(reasons, str) else reasons.get(row.row_id, "Removed")
            self._removed.setdefault(row.row_id, RemovedRow(row.row_id, list(row.cells), reason, removed_at))
        self._invalidate_analysis()
        self._record(action, f"Removed {len(removed)} rows", len(removed))
        return self._outcome(
            OutcomeStatus.SUCCESS,
            f"Removed {len(removed)} rows. Group totals recalculated, two-row separation maintained.",
            row_ids=tuple(row.row_id for row in removed),
        )

    @operation("undo_last_removal")
    def undo_last_removal(self) -> Outcome:
        snapshot = self._undo.pop()
        if snapshot is None:
            return self._outcome(OutcomeStatus.NO_OP, "Nothing to undo.")
        self._commit(snapshot.table)
        self._removed = snapshot.removed
        self._invalidate_analysis()
        self._record("undo", f"Reverted {snapshot.action}", 0)
        return self._outcome(OutcomeStatus.SUCCESS, f"Reverted {snapshot.action}.")

    @operation("restore_all")
    def restore_all(self) -> Outcome:
        self._commit(recalculate_arrears(self._original.copy()))
        restored = len(self._removed)
        self._removed.clear()
        self._undo.clear()
        self._invalidate_analysis()
        self._record("restore_all", f"Restored {restored} removed rows", restored)
        return self._outcome(OutcomeStatus.SUCCESS, "All removed rows restored. Arrears recalculated.")

    # ══════════════════════════════════════════════════════════════════════
    # RULE-DRIVEN REMOVALS
    # ══════════════════════════════════════════════════════════════════════

    def preview_offsets(self, rules: Iterable[OffsetRule] = ALL_RULES) -> OffsetReport:
        if self._table is None:
            return OffsetReport()
        return detect_offsets(
            self._table,
            rules=rules,
            tolerance=self.config.amount_tolerance,
            date_window_days=self.config.date_window_days,
        )

    @operation("remove_offsets")
    def remove_offsets(self, rules: Iterable[OffsetRule] = ALL_RULES) -> Outcome:
        report = self.preview_offsets(rules)
        outcome = self._gate("remove_offsets", report.row_ids, report.reasons())
        details = dict(outcome.details, rule_counts=report.counts())
        return Outcome(
            outcome.status,
            outcome.message,
            statistics=outcome.statistics,
            row_ids=outcome.row_ids or tuple(report.row_ids),
            missing_columns=outcome.missing_columns,
            details=details,
        )

    @operation("remove_zero_arrears")
    def remove_zero_arrears(self) -> Outcome:
        rows = filters.zero_arrears_rows(self._table, self.config.amount_tolerance)
        return self._gate("remove_zero_arrears", rows, "Arrears = 0")

    @operation("filter_tax_types")
    def filter_tax_types(self, keep: Iterable[str]) -> Outcome:
        rows = filters.rows_outside_tax_types(self._table, keep)
        return self._gate("filter_tax_types", rows, "Tax Type filtered out")

    @operation("filter_case_types")
    def filter_case_types(self, keep: Iterable[str]) -> Outcome:
        rows = filters.rows_outside_case_types(self._table, keep)
        return self._gate("filter_case_types", rows, "Case Type filtered out")

    @operation("remove_fines_penalties_interest")
    def remove_fines_penalties_interest(self) -> Outcome:
        rows = filters.fines_penalties_interest_rows(self._table)
        return self._gate("remove_fines_penalties_interest", rows, "Fine, penalty or interest entry")

    # ── summaries ──────────────────────────────────────────────────────────

    def tax_type_summary(self) -> pd.DataFrame:
        if self._table is None:
            raise LedgerError("No data loaded. Import a ledger first.")
        return filters.tax_type_summary(self._table)

    def case_type_summary(self) -> pd.DataFrame:
        if self._table is None:
            raise LedgerError("No data loaded. Import a ledger first.")
        return filters.case_type_summary(self._table)
