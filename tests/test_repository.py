from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from ledger_doctor.repository import (
    JsonFileStore,
    KeyValueTableRepository,
    TableFileRepository,
    open_repository,
    validate_matrix,
)
from ledger_doctor.shared import StorageError

MATRIX = [["Tax Type", "Debit Amount"], ["PAYE", "10.00"], ["VAT"]]


class ValidateMatrixTests(unittest.TestCase):
    def test_short_rows_are_padded(self):
        self.assertEqual(validate_matrix(MATRIX)[2], ["VAT", ""])

    def test_bad_shapes_are_rejected(self):
        for payload in ([], {"a": 1}, [["a"], "row"], [[]], [["a"], ["1", "2"]]):
            with self.subTest(payload=payload):
                with self.assertRaises(StorageError):
                    validate_matrix(payload)


class KeyValueRepositoryTests(unittest.TestCase):
    def test_round_trip_through_named_slot(self):
        store: dict[str, str] = {}
        repository = KeyValueTableRepository(store, "cleaned")
        self.assertIsNone(repository.load())
        repository.save(MATRIX)
        self.assertIsInstance(store["cleaned"], str)
        self.assertEqual(repository.load()[1], ["PAYE", "10.00"])

    def test_corrupt_slot_raises(self):
        repository = KeyValueTableRepository({"cleaned": "{not json"}, "cleaned")
        with self.assertRaises(StorageError):
            repository.load()


class FileRepositoryTests(unittest.TestCase):
    def test_table_file_is_written_atomically(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "ledger.json"
            repository = TableFileRepository(path)
            self.assertIsNone(repository.load())
            repository.save(MATRIX)
            self.assertEqual(json.loads(path.read_text(encoding="utf-8"))[0], ["Tax Type", "Debit Amount"])
            self.assertEqual(sorted(p.name for p in Path(tmpdir).iterdir()), ["ledger.json"])

    def test_json_store_keeps_other_keys(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "store.json"
            path.write_text(json.dumps({"other": "keep me"}), encoding="utf-8")
            store = JsonFileStore(path)
            KeyValueTableRepository(store, "stage").save(MATRIX)
            payload = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(payload["other"], "keep me")
            self.assertEqual(json.loads(payload["stage"])[1], ["PAYE", "10.00"])
            self.assertEqual(len(store), 2)

    def test_undecodable_files_raise_storage_error(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "ledger.json"
            path.write_bytes(b'[["Tax Type\xff"]]')
            for read in (lambda: open_repository(path), TableFileRepository(path).load, JsonFileStore(path).__len__):
                with self.assertRaises(StorageError):
                    read()

    def test_open_repository_picks_by_shape(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            table_path = Path(tmpdir) / "table.json"
            table_path.write_text(json.dumps(MATRIX), encoding="utf-8")
            store_path = Path(tmpdir) / "store.json"
            store_path.write_text(json.dumps({"stage": json.dumps(MATRIX)}), encoding="utf-8")

            self.assertIsInstance(open_repository(table_path), TableFileRepository)
            kv = open_repository(store_path, "stage")
            self.assertIsInstance(kv, KeyValueTableRepository)
            self.assertEqual(kv.load()[2], ["VAT", ""])

    def test_open_repository_rejects_missing_and_invalid_files(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(StorageError):
                open_repository(Path(tmpdir) / "absent.json")
            broken = Path(tmpdir) / "broken.json"
            broken.write_text("[[", encoding="utf-8")
            with self.assertRaises(StorageError):
                open_repository(broken)


if __name__ == "__main__":
    unittest.main()
