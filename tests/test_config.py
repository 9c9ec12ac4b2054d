from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from ledger_doctor.config import ReconcileConfig, config_from_dict, default_config_payload, load_config
from ledger_doctor.shared import ConfigError


class ConfigTests(unittest.TestCase):
    def test_defaults(self):
        config = load_config(None)
        self.assertEqual(config.amount_tolerance, 0.01)
        self.assertEqual(config.date_window_days, 31)
        self.assertEqual(config.grand_total_label, "GRAND TOTAL")
        self.assertEqual(config.storage_slot, "stage_one_cleaned_data")
        self.assertEqual(config.audit_log_limit, 100)
        self.assertTrue(config.auto_update)
        self.assertFalse(config.review_mode)

    def test_partial_file_takes_defaults_for_the_rest(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "ledger-doctor.json"
            path.write_text(json.dumps({"review_mode": True, "date_window_days": 14}), encoding="utf-8")
            config = load_config(path)
        self.assertTrue(config.review_mode)
        self.assertEqual(config.date_window_days, 14)
        self.assertEqual(config.audit_log_limit, 100)

    def test_unknown_keys_are_rejected(self):
        with self.assertRaises(ConfigError) as ctx:
            config_from_dict({"tolerance": 0.5})
        self.assertIn("tolerance", str(ctx.exception))

    def test_wrong_types_and_ranges_are_rejected(self):
        for payload in (
            {"auto_update": "yes"},
            {"date_window_days": True},
            {"amount_tolerance": 0},
            {"audit_log_limit": 0},
            {"date_window_days": -1},
            {"grand_total_label": "Summary"},
        ):
            with self.subTest(payload=payload):
                with self.assertRaises(ConfigError):
                    config_from_dict(payload)

    def test_grand_total_label_must_stay_recognisable(self):
        config = config_from_dict({"grand_total_label": "Grand Total (ZAR)"})
        self.assertEqual(config.grand_total_label, "Grand Total (ZAR)")
        with self.assertRaises(ConfigError) as ctx:
            config_from_dict({"grand_total_label": "Total"})
        self.assertIn("GRAND", str(ctx.exception))

    def test_missing_or_broken_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(ConfigError):
                load_config(Path(tmpdir) / "absent.json")
            broken = Path(tmpdir) / "broken.json"
            broken.write_text("{", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_config(broken)

    def test_default_payload_round_trips(self):
        payload = json.loads(default_config_payload())
        self.assertEqual(config_from_dict(payload), ReconcileConfig())


if __name__ == "__main__":
    unittest.main()
