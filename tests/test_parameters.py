"""
Unit tests for parameter vectors, spaces and transforms.
"""

import math
import pickle
import unittest
import tensorflow as tf
import sys
from pathlib import Path

# Add package root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from epinfer.exceptions import InvalidTransform
from epinfer.models.parameters import (
    ParameterSpace,
    ParameterVector,
    from_estimation_scale,
    get_bijector,
    to_estimation_scale,
)


class TestTransforms(unittest.TestCase):
    """Test cases for natural <-> estimation scale maps."""

    def test_round_trip(self):
        """Test that each transform inverts on its domain."""
        cases = {
            "identity": [-3.0, 0.0, 2.5],
            "log": [1e-4, 1.0, 250.0],
            "logit": [1e-3, 0.5, 0.95],
        }
        for transform, values in cases.items():
            for value in values:
                with self.subTest(transform=transform, value=value):
                    z = to_estimation_scale(value, transform)
                    back = float(from_estimation_scale(z, transform))
                    self.assertAlmostEqual(back, value, delta=1e-12 * max(1.0, abs(value)))

    def test_known_values(self):
        """Test log and logit against closed forms."""
        self.assertAlmostEqual(float(to_estimation_scale(math.e, "log")), 1.0)
        self.assertAlmostEqual(float(to_estimation_scale(0.5, "logit")), 0.0)
        self.assertAlmostEqual(float(from_estimation_scale(0.0, "logit")), 0.5)

    def test_outside_domain(self):
        """Test that values outside the domain raise InvalidTransform."""
        with self.assertRaises(InvalidTransform):
            to_estimation_scale(0.0, "log")
        with self.assertRaises(InvalidTransform):
            to_estimation_scale(-1.0, "log")
        with self.assertRaises(InvalidTransform):
            to_estimation_scale(1.0, "logit")
        with self.assertRaises(InvalidTransform):
            to_estimation_scale(float("nan"), "identity")

    def test_invalid_transform_is_value_error(self):
        """Test that InvalidTransform can be caught as ValueError."""
        with self.assertRaises(ValueError):
            get_bijector("sqrt")


class TestParameterVector(unittest.TestCase):
    """Test cases for the immutable parameter mapping."""

    def test_mapping_behaviour(self):
        """Test lookup, length and iteration order."""
        theta = ParameterVector({"Beta0": 1.5, "Gamma": 0.5})
        self.assertEqual(theta["Beta0"], 1.5)
        self.assertEqual(len(theta), 2)
        self.assertEqual(list(theta), ["Beta0", "Gamma"])

    def test_replace_returns_new_vector(self):
        """Test that replace leaves the original unchanged."""
        theta = ParameterVector(Beta0=1.5, Gamma=0.5)
        other = theta.replace(Gamma=0.4)
        self.assertEqual(theta["Gamma"], 0.5)
        self.assertEqual(other["Gamma"], 0.4)
        self.assertEqual(other["Beta0"], 1.5)

    def test_immutable(self):
        """Test that attributes cannot be added."""
        theta = ParameterVector(Beta0=1.5)
        with self.assertRaises(AttributeError):
            theta.extra = 1.0
        with self.assertRaises(TypeError):
            theta["Beta0"] = 2.0

    def test_pickle(self):
        """Test that vectors survive pickling (needed by the cache)."""
        theta = ParameterVector(Beta0=1.5, Gamma=0.5)
        self.assertEqual(pickle.loads(pickle.dumps(theta)), theta)


class TestParameterSpace(unittest.TestCase):
    """Test cases for free/fixed partitioning."""

    def setUp(self):
        """Set up test fixtures."""
        self.space = ParameterSpace({"Beta0": "log", "Rho": "logit", "Shift": "identity"})
        self.params = ParameterVector(Beta0=1.5, Rho=0.9, Shift=-2.0, N=1000.0)

    def test_free_and_fixed(self):
        """Test that names outside the transforms are fixed."""
        self.assertEqual(self.space.free_names, ("Beta0", "Rho", "Shift"))
        self.assertEqual(self.space.fixed_names(self.params), ("N",))
        self.assertEqual(self.space.dim, 3)

    def test_vector_round_trip(self):
        """Test to_estimation followed by vector reproduces the parameters."""
        theta = self.space.to_estimation(self.params)
        self.assertEqual(theta.shape, (3,))
        back = self.space.vector(theta, self.params)
        for name in self.params:
            self.assertAlmostEqual(back[name], self.params[name], places=12)

    def test_vector_saturated_estimation_scale(self):
        """Test that extreme estimation-scale values map to valid natural values."""
        theta = tf.constant([800.0, 40.0, 1e308], dtype=tf.float64)
        back = self.space.vector(theta, self.params)
        self.space.validate(back)
        self.assertTrue(math.isfinite(back["Beta0"]))
        self.assertLess(back["Rho"], 1.0)
        self.assertTrue(math.isfinite(back["Shift"]))

        low = self.space.vector(-theta, self.params)
        self.space.validate(low)
        self.assertGreater(low["Beta0"], 0.0)
        self.assertGreater(low["Rho"], 0.0)

    def test_per_particle_columns(self):
        """Test that per-particle inputs stack on the last axis."""
        params = {"Beta0": tf.constant([1.0, 2.0], tf.float64),
                  "Rho": tf.constant([0.5, 0.5], tf.float64),
                  "Shift": tf.constant([0.0, 1.0], tf.float64)}
        theta = self.space.to_estimation(params)
        self.assertEqual(theta.shape, (2, 3))
        natural = self.space.from_estimation(theta)
        tf.debugging.assert_near(natural["Beta0"], params["Beta0"])

    def test_without(self):
        """Test that without moves a parameter to the fixed subset."""
        reduced = self.space.without("Rho")
        self.assertEqual(reduced.free_names, ("Beta0", "Shift"))
        self.assertIn("Rho", reduced.fixed_names(self.params))

    def test_empty_space(self):
        """Test that a space without free parameters has a zero-length point."""
        space = ParameterSpace({})
        self.assertEqual(space.to_estimation(self.params).shape, (0,))

    def test_validate(self):
        """Test that validate checks presence and domain."""
        self.space.validate(self.params)
        with self.assertRaises(InvalidTransform):
            self.space.validate(self.params.replace(Beta0=-1.0))
        with self.assertRaises(KeyError):
            self.space.validate(ParameterVector(Beta0=1.0))

    def test_unknown_transform(self):
        """Test that unknown transform names are rejected."""
        with self.assertRaises(InvalidTransform):
            ParameterSpace({"Beta0": "exp"})


if __name__ == '__main__':
    unittest.main()
