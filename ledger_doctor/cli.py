from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any

from ledger_doctor import __version__ as TOOL_VERSION
from ledger_doctor.config import DEFAULT_CONFIG_NAME, default_config_payload, load_config
from ledger_doctor.contracts import build_payload
from ledger_doctor.logging_setup import configure_logging
from ledger_doctor.offsets import OffsetRule
from ledger_doctor.orchestrator import Outcome, OutcomeStatus, Reconciler
from ledger_doctor.repository import open_repository
from ledger_doctor.shared import ConfigError, StorageError
from ledger_doctor.workbook import write_workbook

EXIT_SUCCESS = 0
EXIT_COMMAND_ERROR = 1
EXIT_INPUT_ERROR = 2
EXIT_REMOVALS_FOUND = 3


class CliError(Exception):
    def __init__(self, message: str, code: int = EXIT_COMMAND_ERROR) -> None:
        super().__init__(message)
        self.code = code


class LedgerDoctorArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise CliError(message, EXIT_COMMAND_ERROR)


def eprint(message: str) -> None:
    print(message, file=sys.stderr)


def emit_human(message: str, *, quiet: bool = False) -> None:
    if not quiet:
        eprint(message)


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True)


def write_text(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(payload, encoding="utf-8")


def maybe_emit_json_stdout(payload: Any, enabled: bool) -> None:
    if enabled:
        print(json_dumps(payload))


def log_level_for(args: argparse.Namespace) -> str | None:
    if getattr(args, "verbose", False):
        return "DEBUG"
    if getattr(args, "quiet", False):
        return "ERROR"
    if os.environ.get("LEDGER_DOCTOR_LOG_LEVEL"):
        return None
    return "WARNING"


# ══════════════════════════════════════════════════════════════════════════
# RECONCILER PLUMBING
# ══════════════════════════════════════════════════════════════════════════

def open_reconciler(args: argparse.Namespace) -> Reconciler:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        raise CliError(str(exc), EXIT_COMMAND_ERROR) from exc
    try:
        repository = open_repository(Path(args.input), args.slot or config.storage_slot)
    except StorageError as exc:
        raise CliError(str(exc), EXIT_INPUT_ERROR) from exc

    reconciler = Reconciler(repository, config)
    check_outcome(reconciler.load())
    return reconciler


def check_outcome(outcome: Outcome) -> Outcome:
    if outcome.status is OutcomeStatus.FAILED:
        raise CliError(outcome.message, EXIT_INPUT_ERROR)
    if outcome.status is OutcomeStatus.BLOCKED:
        raise CliError(outcome.message, EXIT_COMMAND_ERROR)
    return outcome


def apply_outcome(reconciler: Reconciler, outcome: Outcome) -> Outcome:
    """Removals staged while auto-update is off are applied straight away."""
    check_outcome(outcome)
    if outcome.status is OutcomeStatus.PENDING:
        outcome = check_outcome(reconciler.apply_pending())
    return outcome


def parse_rules(raw: list[str] | None) -> tuple[OffsetRule, ...]:
    if not raw:
        return tuple(OffsetRule)
    rules = []
    for value in raw:
        try:
            rules.append(OffsetRule(value))
        except ValueError as exc:
            choices = ", ".join(rule.value for rule in OffsetRule)
            raise CliError(f"Unknown offset rule: {value} (choose from {choices})", EXIT_COMMAND_ERROR) from exc
    return tuple(rules)


def render_statistics(reconciler: Reconciler) -> str:
    stats = reconciler.statistics()
    return (
        f"Rows: {stats.remaining_rows} of {stats.total_rows} remaining, "
        f"{stats.removed_rows} removed. Total arrears: {stats.total_arrears:,.2f}"
    )


# ══════════════════════════════════════════════════════════════════════════
# COMMANDS
# ══════════════════════════════════════════════════════════════════════════

def run_normalize(args: argparse.Namespace) -> int:
    reconciler = open_reconciler(args)
    outcome = check_outcome(reconciler.normalize())
    emit_human(outcome.message, quiet=args.quiet)
    emit_human(render_statistics(reconciler), quiet=args.quiet)
    return EXIT_SUCCESS


def run_offsets(args: argparse.Namespace) -> int:
    reconciler = open_reconciler(args)
    rules = parse_rules(args.rules)
    report = reconciler.preview_offsets(rules)
    applied = False
    if args.apply and len(report):
        outcome = apply_outcome(reconciler, reconciler.remove_offsets(rules))
        applied = outcome.status is OutcomeStatus.SUCCESS
        emit_human(outcome.message, quiet=args.quiet)

    payload = build_payload(
        "ledger_doctor.offsets",
        command="offsets",
        input_path=Path(args.input),
        body={
            "rule_counts": report.counts(),
            "marked_rows": [
                {"row_id": row_id, "rule": rule.value, "reason": report.reasons()[row_id]}
                for row_id, rule in report.marks.items()
            ],
            "implicit_pairs": [list(pair) for pair in report.pairs],
            "applied": applied,
        },
        metrics=reconciler.statistics().as_dict(),
    )
    maybe_emit_json_stdout(payload, args.json)
    if not args.json:
        for rule, count in report.counts().items():
            emit_human(f"{rule}: {count} rows", quiet=args.quiet)
    emit_human(render_statistics(reconciler), quiet=args.quiet)
    if len(report) and not args.apply:
        return EXIT_REMOVALS_FOUND
    return EXIT_SUCCESS


def run_families(args: argparse.Namespace) -> int:
    reconciler = open_reconciler(args)
    analysis = check_outcome(reconciler.analyze_linkage())
    families = reconciler.families
    invalid = [family for family in families if not family.is_valid]
    applied = False
    if args.apply and invalid:
        outcome = apply_outcome(reconciler, reconciler.remove_invalid_families())
        applied = outcome.status is OutcomeStatus.SUCCESS
        emit_human(outcome.message, quiet=args.quiet)

    payload = build_payload(
        "ledger_doctor.families",
        command="families",
        input_path=Path(args.input),
        body={
            "families": [family.as_dict() for family in families],
            "analysis": analysis.details,
            "applied": applied,
        },
        metrics=reconciler.statistics().as_dict(),
    )
    maybe_emit_json_stdout(payload, args.json)
    if not args.json:
        emit_human(analysis.message, quiet=args.quiet)
        for family in invalid:
            emit_human(f"  [{family.suggestion.value}] {family.debit_no}: {family.reason}", quiet=args.quiet)
    if invalid and not args.apply:
        return EXIT_REMOVALS_FOUND
    return EXIT_SUCCESS


def run_reconcile(args: argparse.Namespace) -> int:
    reconciler = open_reconciler(args)
    warnings: list[str] = []

    offset_counts = reconciler.preview_offsets().counts()
    offsets = apply_outcome(reconciler, reconciler.remove_offsets())
    emit_human(f"Offsets: {offsets.message}", quiet=args.quiet)

    check_outcome(reconciler.analyze_linkage())
    families = reconciler.families
    family_outcome = apply_outcome(reconciler, reconciler.remove_invalid_families())
    emit_human(f"Debit families: {family_outcome.message}", quiet=args.quiet)
    orphaned = sum(1 for family in families if family.is_orphaned)
    if orphaned:
        warnings.append(f"{orphaned} orphaned debit families removed")

    xlsx_path = Path(args.xlsx) if args.xlsx else None
    if xlsx_path:
        write_workbook(reconciler.table, reconciler.removed_rows, families, reconciler.audit_log, xlsx_path)
        emit_human(f"Workbook written: {xlsx_path}", quiet=args.quiet)

    payload = build_payload(
        "ledger_doctor.reconcile",
        command="reconcile",
        input_path=Path(args.input),
        body={
            "offsets": offset_counts,
            "families": [family.as_dict() for family in families],
            "removed_rows": [
                {"row_id": row.row_id, "reason": row.reason, "removed_at": row.removed_at}
                for row in reconciler.removed_rows
            ],
            "audit_log": [
                {
                    "timestamp": entry.timestamp,
                    "action": entry.action,
                    "details": entry.details,
                    "rows_affected": entry.rows_affected,
                }
                for entry in reconciler.audit_log
            ],
        },
        output_path=xlsx_path,
        metrics=reconciler.statistics().as_dict(),
        warnings=warnings,
    )
    if args.json_summary:
        write_text(Path(args.json_summary), json_dumps(payload))
        emit_human(f"Summary written: {args.json_summary}", quiet=args.quiet)
    maybe_emit_json_stdout(payload, args.json)
    emit_human(render_statistics(reconciler), quiet=args.quiet)
    return EXIT_SUCCESS


def run_summary(args: argparse.Namespace) -> int:
    reconciler = open_reconciler(args)
    tax_summary = reconciler.tax_type_summary()
    case_summary = reconciler.case_type_summary()
    if args.json:
        payload = build_payload(
            "ledger_doctor.summary",
            command="summary",
            input_path=Path(args.input),
            body={
                "tax_types": tax_summary.to_dict(orient="records"),
                "case_types": case_summary.to_dict(orient="records"),
            },
            metrics=reconciler.statistics().as_dict(),
        )
        maybe_emit_json_stdout(payload, True)
        return EXIT_SUCCESS
    print("Tax Type Summary")
    print(tax_summary.to_string(index=False) if not tax_summary.empty else "  (no data rows)")
    print()
    print("Case Type Summary")
    print(case_summary.to_string(index=False) if not case_summary.empty else "  (no data rows)")
    return EXIT_SUCCESS


def run_config_init(args: argparse.Namespace) -> int:
    config_path = Path(args.path)
    if config_path.exists():
        eprint(f"Refusing to overwrite existing config: {config_path}")
        return EXIT_COMMAND_ERROR
    write_text(config_path, default_config_payload())
    emit_human(f"Config written: {config_path}")
    return EXIT_SUCCESS


def run_version() -> int:
    print(TOOL_VERSION)
    return EXIT_SUCCESS


def add_input_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("input", help="Table JSON file or key-value store JSON file")
    parser.add_argument("--slot", help="Store slot holding the table (key-value store inputs)")
    parser.add_argument("--config", help="Path to a ledger-doctor JSON config")
    parser.add_argument("-q", "--quiet", action="store_true", help="Minimal human logs")
    parser.add_argument("-v", "--verbose", action="store_true", help="More human logs")


def build_parser() -> argparse.ArgumentParser:
    parser = LedgerDoctorArgumentParser(prog="ledger-doctor", description="Reconcile tax ledger tables.")
    subparsers = parser.add_subparsers(dest="command", required=True, parser_class=LedgerDoctorArgumentParser)

    normalize = subparsers.add_parser("normalize", help="Recompute group totals, separators and the grand total.")
    add_input_arguments(normalize)

    offsets = subparsers.add_parser("offsets", help="Report offsetting entries; --apply removes them.")
    add_input_arguments(offsets)
    offsets.add_argument("--apply", action="store_true", help="Remove the marked rows")
    offsets.add_argument("--rule", dest="rules", action="append", help="Run only this offset rule (repeatable)")
    offsets.add_argument("--json", action="store_true", help="Write machine JSON to stdout")

    families = subparsers.add_parser("families", help="Validate debit families; --apply removes invalid ones.")
    add_input_arguments(families)
    families.add_argument("--apply", action="store_true", help="Remove invalid families")
    families.add_argument("--json", action="store_true", help="Write machine JSON to stdout")

    reconcile = subparsers.add_parser("reconcile", help="Remove offsets and invalid families, then export.")
    add_input_arguments(reconcile)
    reconcile.add_argument("--xlsx", help="Workbook output path")
    reconcile.add_argument("--json-summary", dest="json_summary", help="JSON summary output path")
    reconcile.add_argument("--json", action="store_true", help="Write machine JSON to stdout")

    summary = subparsers.add_parser("summary", help="Tax type and case type summaries.")
    add_input_arguments(summary)
    summary.add_argument("--json", action="store_true", help="Write machine JSON to stdout")

    config = subparsers.add_parser("config", help="Generate configuration.")
    config_subparsers = config.add_subparsers(dest="config_command", required=True, parser_class=LedgerDoctorArgumentParser)
    config_init = config_subparsers.add_parser("init", help="Write a starter config file.")
    config_init.add_argument("--path", default=DEFAULT_CONFIG_NAME, help="Config output path")

    subparsers.add_parser("version", help="Print version")
    return parser


def main(argv: list[str] | None = None) -> int:
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        configure_logging(log_level_for(args))
        if args.command == "normalize":
            return run_normalize(args)
        if args.command == "offsets":
            return run_offsets(args)
        if args.command == "families":
            return run_families(args)
        if args.command == "reconcile":
            return run_reconcile(args)
        if args.command == "summary":
            return run_summary(args)
        if args.command == "config":
            if args.config_command == "init":
                return run_config_init(args)
        if args.command == "version":
            return run_version()
        raise CliError(f"Unknown command: {args.command}", EXIT_COMMAND_ERROR)
    except CliError as exc:
        eprint(str(exc))
        return exc.code


if __name__ == "__main__":
    raise SystemExit(main())
