"""
Unit tests for run context, caching, logging and the worker pool.
"""

import logging
import tempfile
import threading
import unittest
import tensorflow as tf
import sys
from pathlib import Path

# Add package root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from epinfer.exceptions import FilterCollapse
from epinfer.utils.cache import DirectoryCache, MemoryCache, NullCache, make_key
from epinfer.utils.context import (
    PURPOSE_PROFILE,
    PURPOSE_SEARCH,
    UNDERFLOW_LOG_WEIGHT,
    RunContext,
)
from epinfer.utils.logging_config import get_logger, set_level, setup_logging
from epinfer.utils.parallel import run_tasks, split_outcomes


class TestRunContext(unittest.TestCase):
    """Test cases for configuration and substreams."""

    def test_defaults(self):
        """Test the documented defaults."""
        ctx = RunContext()
        self.assertEqual(ctx.num_particles, 1000)
        self.assertEqual(ctx.resample_threshold, 1.0)
        self.assertEqual(ctx.min_profile_points, 8)
        self.assertLess(UNDERFLOW_LOG_WEIGHT, -700.0)

    def test_from_config_rejects_unknown_keys(self):
        """Test that typos in the configuration raise."""
        with self.assertRaises(ValueError):
            RunContext.from_config({"num_particle": 10})
        ctx = RunContext.from_config({"num_particles": 10, "rw_sd": {"Beta0": 0.02}})
        self.assertEqual(ctx.num_particles, 10)

    def test_validation(self):
        """Test that invalid settings raise."""
        with self.assertRaises(ValueError):
            RunContext(num_particles=0)
        with self.assertRaises(ValueError):
            RunContext(cooling_fraction=0.0)
        with self.assertRaises(ValueError):
            RunContext(rw_sd={"Beta0": -0.1})

    def test_config_round_trip(self):
        """Test that to_config feeds back into from_config."""
        ctx = RunContext(seed=3, rw_sd={"Gamma": 0.02, "Beta0": 0.02}, ivp_names=("I0",))
        self.assertEqual(RunContext.from_config(ctx.to_config()), ctx)

    def test_substreams_are_deterministic_and_distinct(self):
        """Test that substreams depend only on (seed, purpose, index)."""
        ctx = RunContext(seed=7)
        a = ctx.substream(PURPOSE_SEARCH, 3).normal([4], dtype=tf.float64)
        b = ctx.substream(PURPOSE_SEARCH, 3).normal([4], dtype=tf.float64)
        c = ctx.substream(PURPOSE_SEARCH, 4).normal([4], dtype=tf.float64)
        d = ctx.substream(PURPOSE_PROFILE, 3).normal([4], dtype=tf.float64)
        e = RunContext(seed=8).substream(PURPOSE_SEARCH, 3).normal([4], dtype=tf.float64)
        tf.debugging.assert_equal(a, b)
        for other in (c, d, e):
            self.assertFalse(bool(tf.reduce_all(tf.equal(a, other))))

    def test_substream_seed_is_non_negative(self):
        """Test that derived seeds fit a signed 64-bit integer."""
        ctx = RunContext(seed=123456789)
        for index in range(20):
            seed = ctx.substream_seed(PURPOSE_SEARCH, index)
            self.assertGreaterEqual(seed, 0)
            self.assertLess(seed, 2 ** 63)


class TestCache(unittest.TestCase):
    """Test cases for result caches."""

    def test_make_key_ignores_order(self):
        """Test that key order does not change the hash."""
        self.assertEqual(make_key({"a": 1, "b": [1, 2]}), make_key({"b": [1, 2], "a": 1}))
        self.assertNotEqual(make_key({"a": 1}), make_key({"a": 2}))

    def test_null_cache_always_computes(self):
        """Test that NullCache recomputes every time."""
        calls = []
        cache = NullCache()
        cache.get_or_compute("k", lambda: calls.append(1) or len(calls))
        cache.get_or_compute("k", lambda: calls.append(1) or len(calls))
        self.assertEqual(len(calls), 2)

    def test_memory_cache(self):
        """Test that MemoryCache computes once per key."""
        calls = []
        cache = MemoryCache()
        first = cache.get_or_compute("k", lambda: calls.append(1) or "value")
        second = cache.get_or_compute("k", lambda: calls.append(1) or "other")
        self.assertEqual(first, "value")
        self.assertEqual(second, "value")
        self.assertEqual(len(calls), 1)

    def test_directory_cache_persists(self):
        """Test that DirectoryCache survives a new instance."""
        with tempfile.TemporaryDirectory() as tmp:
            DirectoryCache(tmp).get_or_compute("k", lambda: {"loglik": -12.5})
            cache = DirectoryCache(tmp)
            self.assertIn("k", cache)
            self.assertEqual(cache.get_or_compute("k", lambda: None), {"loglik": -12.5})
            self.assertEqual(list(Path(tmp).glob("*.tmp")), [])


class TestLogging(unittest.TestCase):
    """Test cases for the package logging setup."""

    def tearDown(self):
        """Restore the default configuration."""
        setup_logging(level="INFO", force=True)

    def test_loggers_share_package_handlers(self):
        """Test that module loggers propagate to the configured package logger."""
        setup_logging(level="DEBUG", force=True)
        package = logging.getLogger("epinfer")
        self.assertEqual(package.level, logging.DEBUG)
        self.assertEqual(len(package.handlers), 1)
        self.assertFalse(package.propagate)
        self.assertEqual(get_logger("epinfer.inference.search").getEffectiveLevel(), logging.DEBUG)

    def test_log_file_and_set_level(self):
        """Test file output and runtime level changes."""
        with tempfile.TemporaryDirectory() as tmp:
            log_file = Path(tmp) / "logs" / "run.log"
            setup_logging(level="INFO", log_file=str(log_file), force=True)
            logger = get_logger("epinfer.tests")
            logger.info("written")
            set_level("ERROR")
            logger.warning("suppressed")
            for handler in logging.getLogger("epinfer").handlers:
                handler.flush()
            text = log_file.read_text()
            setup_logging(level="INFO", force=True)
        self.assertIn("written", text)
        self.assertNotIn("suppressed", text)


class TestRunTasks(unittest.TestCase):
    """Test cases for the worker pool."""

    def test_results_ordered_by_index(self):
        """Test that outcomes come back in task order for any worker count."""
        items = list(range(10))
        for workers in (1, 4):
            with self.subTest(workers=workers):
                outcomes = run_tasks(lambda i, x: x * x, items, max_workers=workers)
                self.assertEqual([o.index for o in outcomes], items)
                self.assertEqual([o.value for o in outcomes], [x * x for x in items])

    def test_parallel_uses_threads(self):
        """Test that several workers run tasks off the calling thread."""
        main = threading.get_ident()
        outcomes = run_tasks(lambda i, x: threading.get_ident(), range(4), max_workers=2)
        self.assertTrue(all(o.value != main for o in outcomes))

    def test_filter_collapse_is_isolated(self):
        """Test that a collapsing task is recorded without stopping the others."""
        def task(i, x):
            if x % 3 == 0:
                raise FilterCollapse("collapsed", time_index=x)
            return x

        for workers in (1, 3):
            with self.subTest(workers=workers):
                outcomes = run_tasks(task, list(range(7)), max_workers=workers)
                succeeded, failed = split_outcomes(outcomes)
                self.assertEqual([i for i, _ in failed], [0, 3, 6])
                self.assertEqual([v for _, v in succeeded], [1, 2, 4, 5])
                self.assertIsInstance(failed[0][1], FilterCollapse)

    def test_other_errors_propagate(self):
        """Test that unexpected exceptions abort the batch."""
        def task(i, x):
            raise RuntimeError("boom")

        for workers in (1, 2):
            with self.subTest(workers=workers):
                with self.assertRaises(RuntimeError):
                    run_tasks(task, [1, 2], max_workers=workers)


if __name__ == '__main__':
    unittest.main()
