"""
Tests for the two-regime SIR recovery experiment.
"""

import json
import unittest
import tensorflow as tf
import sys
import tempfile
import shutil
from pathlib import Path

# Add package root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from epinfer.data.generators import build_models, simulate, two_regime_sir_scenario
from epinfer.experiments.exp_two_regime_sir import (
    _to_serializable,
    main,
    parse_arguments,
    plot_profile,
    summarize_coverage,
)
from epinfer.inference.mcap import mcap
from epinfer.inference.profile import ProfilePoint, ProfileResult


class TestTwoRegimeExperiment(unittest.TestCase):
    """Test cases for the experiment driver."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Clean up temporary directory."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_data(self):
        scenario = two_regime_sir_scenario("normal")
        process, measurement = build_models(scenario)
        sim = simulate(process, measurement, scenario.params, tuple(float(t) for t in range(1, 11)),
                       0.0, 0.1, tf.random.Generator.from_seed(8))
        path = Path(self.temp_dir) / "cases.csv"
        with open(path, "w") as f:
            f.write("time,count\n")
            for t, c in sim.observations.to_rows():
                f.write(f"{t},{c}\n")
        return path

    def test_parse_arguments_defaults(self):
        """Test default command line values."""
        args = parse_arguments([])
        self.assertEqual(args.num_guesses, 20)
        self.assertEqual(args.num_particles, 1000)
        self.assertEqual(args.num_iterations, 50)
        self.assertEqual(args.measurement, "binomial")
        self.assertIsNone(args.profile)
        self.assertEqual(parse_arguments(["--profile"]).profile, [])

    def test_summarize_coverage(self):
        """Test coverage rates with missing intervals and failed trials."""
        trials = [
            {"covered": {"Beta0": True, "Gamma": None}},
            {"covered": {"Beta0": False, "Gamma": None}},
            {"error": "all starts collapsed"},
        ]
        self.assertEqual(summarize_coverage(trials), {"Beta0": 0.5, "Gamma": None})

    def test_to_serializable(self):
        """Test conversion of tuples and unknown objects."""
        self.assertEqual(_to_serializable({"a": (1, 2.0), "b": Path("x")}), {"a": [1, 2.0], "b": "x"})

    def test_plot_profile(self):
        """Test that a profile figure is written."""
        values = [0.5 + k / 20.0 for k in range(21)]
        points = [ProfilePoint(v, -10.0 * (v - 1.0) ** 2) for v in values]
        result = ProfileResult(name="Beta0", rows=[], points=points,
                               interval=mcap([p.loglik for p in points], values))
        fig_path = Path(self.temp_dir) / "profile.png"
        plot_profile(result, 1.0, fig_path)
        self.assertTrue(fig_path.exists())

    def test_main_writes_results(self):
        """Test a tiny end-to-end run on a CSV series."""
        data = self._write_data()
        out = Path(self.temp_dir) / "out"
        summary = main([
            "--data", str(data), "--measurement", "normal", "--output_dir", str(out),
            "--num_guesses", "2", "--num_particles", "20", "--num_iterations", "1",
            "--num_replicates", "1", "--profile", "--no_plots", "--log_level", "WARNING",
        ])
        self.assertTrue((out / "summary.json").exists())
        self.assertEqual(len(summary["trials"]), 1)
        trial = summary["trials"][0]
        self.assertNotIn("error", trial)
        self.assertEqual(trial["num_succeeded"] + trial["num_failed"], 2)

        with open(out / "search_0.json") as f:
            records = json.load(f)
        self.assertEqual(len(records), trial["num_succeeded"])
        self.assertIn("loglik", records[0])
        with open(out / "summary.json") as f:
            self.assertEqual(json.load(f)["scenario"]["model"], "sir")


if __name__ == '__main__':
    unittest.main()
