"""
Unit tests for compartmental process models and measurement models.
"""

import math
import unittest
import tensorflow as tf
import sys
from pathlib import Path

# Add package root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from epinfer.models.base import binomial_transitions
from epinfer.models.ssm_sir import SIRModel, TransmissionSchedule
from epinfer.models.ssm_seir import SEIRModel
from epinfer.models.measurement import BinomialMeasurement, NormalMeasurement


SIR_PARAMS = {"N": 1000.0, "I0": 5.0, "Beta0": 1.5, "Beta1": 0.3, "Gamma": 0.5, "Rho": 0.95}


def _tensors(params):
    return {k: tf.constant(v, dtype=tf.float64) for k, v in params.items()}


class TestTransmissionSchedule(unittest.TestCase):
    """Test cases for the piecewise transmission rate."""

    def setUp(self):
        """Set up test fixtures."""
        self.schedule = TransmissionSchedule(windows=((6.0, 9.0), (11.0, 14.0)))
        self.params = _tensors(SIR_PARAMS)

    def test_windows_are_closed(self):
        """Test that both window endpoints use the alternate rate."""
        self.assertTrue(self.schedule.in_window(6.0))
        self.assertTrue(self.schedule.in_window(9.0))
        self.assertFalse(self.schedule.in_window(9.5))
        self.assertFalse(self.schedule.in_window(5.99))

    def test_rate_switches(self):
        """Test that the rate switches inside windows."""
        self.assertAlmostEqual(float(self.schedule.rate(self.params, 7.0)), 0.3)
        self.assertAlmostEqual(float(self.schedule.rate(self.params, 10.0)), 1.5)

    def test_inverted_window_rejected(self):
        """Test that a window ending before it starts raises."""
        with self.assertRaises(ValueError):
            TransmissionSchedule(windows=((5.0, 4.0),))


class TestBinomialTransitions(unittest.TestCase):
    """Test cases for bounded transition draws."""

    def test_bounded_by_occupancy(self):
        """Test that draws never exceed the source compartment."""
        generator = tf.random.Generator.from_seed(0)
        counts = tf.constant([0.0, 1.0, 10.0, 100.0], dtype=tf.float64)
        for _ in range(20):
            draws = binomial_transitions(generator, counts, tf.constant(50.0, tf.float64), 1.0)
            self.assertTrue(bool(tf.reduce_all(draws <= counts)))
            self.assertTrue(bool(tf.reduce_all(draws >= 0.0)))

    def test_nan_rate_gives_no_transitions(self):
        """Test that an undefined rate (0 * inf) moves nobody."""
        generator = tf.random.Generator.from_seed(0)
        counts = tf.constant([10.0, 10.0], dtype=tf.float64)
        rate = tf.constant([float("nan"), 0.0], dtype=tf.float64)
        draws = binomial_transitions(generator, counts, rate, 0.1)
        tf.debugging.assert_equal(draws, tf.zeros(2, dtype=tf.float64))


class TestSIRModel(unittest.TestCase):
    """Test cases for the stochastic SIR model."""

    def setUp(self):
        """Set up test fixtures."""
        self.model = SIRModel(windows=((6.0, 9.0), (11.0, 14.0), (16.0, 19.0), (20.0, 24.0)))
        self.params = _tensors(SIR_PARAMS)

    def test_init_rounds_seeds(self):
        """Test that fractional seeds are rounded and accumulators start at zero."""
        params = dict(self.params, I0=tf.constant(4.6, tf.float64))
        state = self.model.init(params, 3)
        self.assertEqual(state.shape, (3, 4))
        named = self.model.named(state)
        tf.debugging.assert_equal(named["I"], tf.fill([3], tf.constant(5.0, tf.float64)))
        tf.debugging.assert_equal(named["S"], tf.fill([3], tf.constant(995.0, tf.float64)))
        tf.debugging.assert_equal(named["C"], tf.zeros([3], tf.float64))

    def test_init_per_particle_seeds(self):
        """Test that a per-particle initial value gives per-particle states."""
        params = dict(self.params, I0=tf.constant([1.2, 7.8], tf.float64))
        state = self.model.init(params, 2)
        tf.debugging.assert_equal(self.model.named(state)["I"], tf.constant([1.0, 8.0], tf.float64))

    def test_population_conserved_and_non_negative(self):
        """Test that S + I + R stays constant and no compartment goes negative."""
        generator = tf.random.Generator.from_seed(1)
        state = self.model.init(self.params, 200)
        t = 0.0
        for _ in range(30):
            state = self.model.advance(state, self.params, t, t + 1.0, 0.1, generator)
            t += 1.0
            named = self.model.named(state)
            total = named["S"] + named["I"] + named["R"]
            tf.debugging.assert_near(total, tf.fill([200], tf.constant(1000.0, tf.float64)))
            self.assertTrue(bool(tf.reduce_all(state >= 0.0)))

    def test_accumulator_counts_interval_incidence(self):
        """Test that C equals the drop in S over one observation interval."""
        generator = tf.random.Generator.from_seed(2)
        state = self.model.init(self.params, 50)
        state = self.model.advance(state, self.params, 0.0, 1.0, 0.1, generator)
        before = self.model.named(state)["S"]
        state = self.model.advance(state, self.params, 1.0, 2.0, 0.1, generator)
        named = self.model.named(state)
        tf.debugging.assert_equal(named["C"], before - named["S"])

    def test_removal_accumulator(self):
        """Test that the removal accumulator tracks R."""
        model = SIRModel(accumulate="removal")
        generator = tf.random.Generator.from_seed(3)
        state = model.init(self.params, 50)
        state = model.advance(state, self.params, 0.0, 2.0, 0.1, generator)
        named = model.named(state)
        tf.debugging.assert_equal(named["C"], named["R"])

    def test_reproducible_with_same_seed(self):
        """Test that equal generator seeds give equal trajectories."""
        def run(seed):
            generator = tf.random.Generator.from_seed(seed)
            state = self.model.init(self.params, 20)
            return self.model.advance(state, self.params, 0.0, 5.0, 0.1, generator)
        tf.debugging.assert_equal(run(7), run(7))

    def test_advance_rejects_empty_span(self):
        """Test that advancing backwards raises."""
        state = self.model.init(self.params, 2)
        with self.assertRaises(ValueError):
            self.model.advance(state, self.params, 1.0, 1.0, 0.1, tf.random.Generator.from_seed(0))

    def test_no_transmission_without_infectives(self):
        """Test that an epidemic with I0 = 0 stays at its initial state."""
        params = dict(self.params, I0=tf.constant(0.0, tf.float64))
        state = self.model.init(params, 10)
        state = self.model.advance(state, params, 0.0, 10.0, 0.1, tf.random.Generator.from_seed(0))
        named = self.model.named(state)
        tf.debugging.assert_equal(named["S"], tf.fill([10], tf.constant(1000.0, tf.float64)))
        tf.debugging.assert_equal(named["C"], tf.zeros([10], tf.float64))

    def test_invalid_accumulator(self):
        """Test that an unknown accumulator choice raises."""
        with self.assertRaises(ValueError):
            SIRModel(accumulate="deaths")


class TestSEIRModel(unittest.TestCase):
    """Test cases for the stochastic SEIR model."""

    def setUp(self):
        """Set up test fixtures."""
        self.model = SEIRModel()
        self.params = _tensors(dict(SIR_PARAMS, E0=3.0, Sigma=0.8))

    def test_state_layout(self):
        """Test state names and initial values."""
        state = self.model.init(self.params, 4)
        self.assertEqual(state.shape, (4, 5))
        named = self.model.named(state)
        tf.debugging.assert_equal(named["S"], tf.fill([4], tf.constant(992.0, tf.float64)))
        tf.debugging.assert_equal(named["E"], tf.fill([4], tf.constant(3.0, tf.float64)))

    def test_population_conserved(self):
        """Test that S + E + I + R stays constant."""
        generator = tf.random.Generator.from_seed(4)
        state = self.model.init(self.params, 100)
        state = self.model.advance(state, self.params, 0.0, 10.0, 0.1, generator)
        named = self.model.named(state)
        total = named["S"] + named["E"] + named["I"] + named["R"]
        tf.debugging.assert_near(total, tf.fill([100], tf.constant(1000.0, tf.float64)))
        self.assertTrue(bool(tf.reduce_all(state >= 0.0)))


class TestMeasurementModels(unittest.TestCase):
    """Test cases for binomial and normal reporting."""

    def setUp(self):
        """Set up test fixtures."""
        self.state = {"C": tf.constant([0.0, 10.0, 20.0], dtype=tf.float64)}
        self.params = {"Rho": tf.constant(0.5, tf.float64)}

    def test_binomial_density(self):
        """Test the binomial log-density against the closed form."""
        model = BinomialMeasurement()
        log_lik = model.density(5.0, self.state, self.params, log=True).numpy()
        self.assertEqual(log_lik[0], -math.inf)
        expected = math.log(math.comb(10, 5) * 0.5 ** 10)
        self.assertAlmostEqual(log_lik[1], expected, places=8)

    def test_binomial_zero_reporting(self):
        """Test that rho = 0 gives zero likelihood to any positive count."""
        model = BinomialMeasurement()
        params = {"Rho": tf.constant(0.0, tf.float64)}
        log_lik = model.density(3.0, self.state, params, log=True)
        self.assertTrue(bool(tf.reduce_all(tf.math.is_inf(log_lik))))

    def test_normal_moments(self):
        """Test mean and variance of the normal approximation."""
        model = NormalMeasurement(overdispersion="Psi", variance_floor=1e-6)
        params = {"Rho": tf.constant(0.5, tf.float64), "Psi": tf.constant(0.1, tf.float64)}
        mean, variance = model.moments(self.state, params)
        tf.debugging.assert_near(mean, tf.constant([0.0, 5.0, 10.0], tf.float64))
        expected = [1e-6, 5.0 * (0.5 + 0.01 * 5.0) + 1e-6, 10.0 * (0.5 + 0.01 * 10.0) + 1e-6]
        tf.debugging.assert_near(variance, tf.constant(expected, tf.float64))

    def test_normal_density_finite_at_zero(self):
        """Test that the variance floor keeps a zero accumulator finite for y = 0."""
        model = NormalMeasurement()
        log_lik = model.density(0.0, self.state, self.params, log=True)
        self.assertTrue(math.isfinite(float(log_lik[0])))

    def test_samples_are_non_negative_integers(self):
        """Test that simulated reports are non-negative integers."""
        generator = tf.random.Generator.from_seed(5)
        for model in (BinomialMeasurement(), NormalMeasurement()):
            with self.subTest(model=repr(model)):
                y = model.sample(self.state, self.params, generator)
                self.assertTrue(bool(tf.reduce_all(y >= 0.0)))
                tf.debugging.assert_equal(y, tf.round(y))

    def test_binomial_sample_bounded(self):
        """Test that binomial reports never exceed the accumulator."""
        generator = tf.random.Generator.from_seed(6)
        y = BinomialMeasurement().sample(self.state, self.params, generator)
        self.assertTrue(bool(tf.reduce_all(y <= self.state["C"])))


if __name__ == '__main__':
    unittest.main()
