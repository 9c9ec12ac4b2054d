from __future__ import annotations

import json
import os
import tempfile
from collections.abc import MutableMapping
from pathlib import Path
from typing import Any, Iterator, Protocol

from ledger_doctor.shared import DEFAULT_STORAGE_SLOT, StorageError

Matrix = list[list[Any]]


class TableRepository(Protocol):
    def load(self) -> Matrix | None: ...

    def save(self, matrix: Matrix) -> None: ...


def validate_matrix(payload: Any) -> Matrix:
    """Check the array-of-arrays contract and pad short rows to header width."""
    if not isinstance(payload, list) or not payload:
        raise StorageError("Stored table must be a non-empty array of rows")
    if not all(isinstance(row, list) for row in payload):
        raise StorageError("Every stored row must be an array")
    width = len(payload[0])
    if width == 0:
        raise StorageError("Stored table has an empty header row")
    matrix: Matrix = [list(payload[0])]
    for row in payload[1:]:
        if len(row) > width:
            raise StorageError(f"Row has {len(row)} cells but the header has {width}")
        matrix.append(list(row) + [""] * (width - len(row)))
    return matrix


def _atomic_write(path: Path, text: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=path.suffix, dir=str(path.parent))
    except OSError as exc:
        raise StorageError(f"Could not write {path}: {exc}") from exc
    os.close(fd)
    temp_path = Path(tmp_name)
    try:
        temp_path.write_text(text, encoding="utf-8")
        os.replace(temp_path, path)
    except OSError as exc:
        raise StorageError(f"Could not write {path}: {exc}") from exc
    finally:
        if temp_path.exists():
            temp_path.unlink()


class KeyValueTableRepository:
    """Stores the table as one JSON string under a named slot of a string store."""

    def __init__(self, store: MutableMapping[str, str], slot: str = DEFAULT_STORAGE_SLOT) -> None:
        self.store = store
        self.slot = slot

    def load(self) -> Matrix | None:
        try:
            raw = self.store.get(self.slot)
        except OSError as exc:
            raise StorageError(f"Could not read slot '{self.slot}': {exc}") from exc
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            raise StorageError(f"Slot '{self.slot}' does not hold valid JSON: {exc}") from exc
        return validate_matrix(payload)

    def save(self, matrix: Matrix) -> None:
        text = json.dumps(validate_matrix(matrix), ensure_ascii=False)
        try:
            self.store[self.slot] = text
        except OSError as exc:
            raise StorageError(f"Could not write slot '{self.slot}': {exc}") from exc


class JsonFileStore(MutableMapping):
    """A string-keyed store persisted as one JSON object on disk."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StorageError(f"Store file {self.path} is not readable JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise StorageError(f"Store file {self.path} must hold a JSON object")
        return payload

    def _write(self, payload: dict[str, str]) -> None:
        _atomic_write(self.path, json.dumps(payload, indent=2, ensure_ascii=False))

    def __getitem__(self, key: str) -> str:
        return self._read()[key]

    def __setitem__(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise StorageError("Store values must be strings")
        payload = self._read()
        payload[key] = value
        self._write(payload)

    def __delitem__(self, key: str) -> None:
        payload = self._read()
        del payload[key]
        self._write(payload)

    def __iter__(self) -> Iterator[str]:
        return iter(self._read())

    def __len__(self) -> int:
        return len(self._read())


class TableFileRepository:
    """A plain JSON file holding the array-of-arrays table directly."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load(self) -> Matrix | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StorageError(f"Table file {self.path} is not readable JSON: {exc}") from exc
        return validate_matrix(payload)

    def save(self, matrix: Matrix) -> None:
        _atomic_write(self.path, json.dumps(validate_matrix(matrix), indent=2, ensure_ascii=False))


def open_repository(path: Path | str, slot: str = DEFAULT_STORAGE_SLOT) -> TableRepository:
    """Pick the repository by the file's top-level JSON shape."""
    file_path = Path(path)
    if not file_path.exists():
        raise StorageError(f"Input file not found: {file_path}")
    try:
        payload = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise StorageError(f"Input file {file_path} is not readable JSON: {exc}") from exc
    if isinstance(payload, dict):
        return KeyValueTableRepository(JsonFileStore(file_path), slot)
    return TableFileRepository(file_path)
