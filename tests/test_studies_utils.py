import json
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, "src")

from nonsmooth_simulator.studies import parse_floats_csv, save_study_metadata, with_time_step


class TestStudyUtils(unittest.TestCase):
    def test_with_time_step_copies(self):
        cfg = {"name": "ball", "time": {"t0": 0.0, "h": 0.01, "T": 1.0}}
        cfg2 = with_time_step(cfg, 0.005)
        self.assertEqual(cfg2["time"], {"t0": 0.0, "h": 0.005, "T": 1.0})
        # original unchanged
        self.assertEqual(cfg["time"]["h"], 0.01)

    def test_with_time_step_creates_time_section(self):
        self.assertEqual(with_time_step({"name": "x"}, 1e-3)["time"], {"h": 1e-3})

    def test_metadata_records_scenario(self):
        cfg = {
            "name": "ball",
            "time": {"t0": 0.0, "h": 0.01, "T": 1.0},
            "simulation": {"newton_options": "linear"},
            "integrators": [{"type": "moreau_jean", "theta": 0.5}],
        }
        with tempfile.TemporaryDirectory() as tmp:
            path = save_study_metadata(Path(tmp) / "meta", cfg, study_type="convergence", quantity="ball.q0")
            meta = json.loads(path.read_text(encoding="utf-8"))
        self.assertEqual(meta["study_type"], "convergence")
        self.assertEqual(meta["scenario"], "ball")
        self.assertEqual(meta["time"]["h"], 0.01)
        self.assertEqual(meta["simulation"], {"newton_options": "linear"})
        self.assertEqual(meta["integrators"], ["moreau_jean"])
        self.assertEqual(meta["quantity"], "ball.q0")
        self.assertIn("git_revision", meta)

    def test_parse_floats(self):
        self.assertEqual(parse_floats_csv("1e-2, 5e-3 2.5e-3"), [1e-2, 5e-3, 2.5e-3])
        self.assertEqual(parse_floats_csv(""), [])
        with self.assertRaises(ValueError):
            parse_floats_csv("1e-2,abc")

if __name__ == "__main__":
    unittest.main()
