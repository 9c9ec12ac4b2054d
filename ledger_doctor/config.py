from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from ledger_doctor.shared import (
    AMOUNT_TOLERANCE,
    DATE_WINDOW_DAYS,
    DEFAULT_STORAGE_SLOT,
    GRAND_TOTAL_LABEL,
    ConfigError,
)

DEFAULT_CONFIG_NAME = "ledger-doctor.json"


@dataclass(frozen=True)
class ReconcileConfig:
    amount_tolerance: float = AMOUNT_TOLERANCE
    date_window_days: int = DATE_WINDOW_DAYS
    grand_total_label: str = GRAND_TOTAL_LABEL
    storage_slot: str = DEFAULT_STORAGE_SLOT
    audit_log_limit: int = 100
    auto_update: bool = True
    review_mode: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


_FIELD_TYPES = {
    "amount_tolerance": (int, float),
    "date_window_days": (int,),
    "grand_total_label": (str,),
    "storage_slot": (str,),
    "audit_log_limit": (int,),
    "auto_update": (bool,),
    "review_mode": (bool,),
}


def config_from_dict(payload: dict[str, Any]) -> ReconcileConfig:
    if not isinstance(payload, dict):
        raise ConfigError("Config must be a JSON object")
    known = {f.name for f in fields(ReconcileConfig)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
    for key, value in payload.items():
        expected = _FIELD_TYPES[key]
        if (isinstance(value, bool) and bool not in expected) or not isinstance(value, expected):
            raise ConfigError(f"Config key '{key}' has the wrong type")
    config = ReconcileConfig(**payload)
    if config.amount_tolerance <= 0:
        raise ConfigError("amount_tolerance must be positive")
    if config.date_window_days < 0:
        raise ConfigError("date_window_days must be >= 0")
    if config.audit_log_limit < 1:
        raise ConfigError("audit_log_limit must be >= 1")
    label = config.grand_total_label.upper()
    if "GRAND" not in label or "TOTAL" not in label:
        # The classifier only recognises grand-total rows by these two words
        raise ConfigError("grand_total_label must contain both 'GRAND' and 'TOTAL'")
    return config


def load_config(path: Path | str | None = None) -> ReconcileConfig:
    if path is None:
        return ReconcileConfig()
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Config file is not readable JSON: {exc}") from exc
    return config_from_dict(payload)


def default_config_payload() -> str:
    return json.dumps(ReconcileConfig().as_dict(), indent=2) + "\n"
