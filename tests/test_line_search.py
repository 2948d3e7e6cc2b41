import math
import unittest

import numpy as np

from src.slim.geometry import signed_volumes
from src.slim.line_search import (
    _smallest_positive_cubic_roots,
    _smallest_positive_quadratic_roots,
    backtracking_line_search,
    flip_avoiding_line_search,
    max_step_to_singularity,
)

TRIANGLE = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
TRIANGLE_FACES = np.array([[0, 1, 2]])
TET = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
TET_ELEMENTS = np.array([[0, 1, 2, 3]])


class TestPolynomialRoots(unittest.TestCase):
    def test_quadratic_and_linear_roots(self):
        roots = _smallest_positive_quadratic_roots(
            np.array([1.0, 0.0, 1.0, 0.0]),
            np.array([-3.0, 2.0, 0.0, 0.0]),
            np.array([2.0, -4.0, 1.0, 5.0]),
        )
        self.assertAlmostEqual(float(roots[0]), 1.0)
        self.assertAlmostEqual(float(roots[1]), 2.0)
        self.assertTrue(math.isinf(float(roots[2])))  # t^2 + 1 has no real roots
        self.assertTrue(math.isinf(float(roots[3])))  # constant

    def test_cubic_roots(self):
        # (t - 1)(t - 2)(t + 1) and (t + 1)(t + 2)(t + 3)
        roots = _smallest_positive_cubic_roots(
            np.array([1.0, 1.0, 0.0]),
            np.array([-2.0, 6.0, 1.0]),
            np.array([-1.0, 11.0, -3.0]),
            np.array([2.0, 6.0, 2.0]),
        )
        self.assertAlmostEqual(float(roots[0]), 1.0, places=9)
        self.assertTrue(math.isinf(float(roots[1])))
        self.assertAlmostEqual(float(roots[2]), 1.0, places=9)


class TestMaxStep(unittest.TestCase):
    def test_triangle_collapse(self):
        direction = np.zeros_like(TRIANGLE)
        direction[2] = [0.0, -2.0]
        self.assertAlmostEqual(max_step_to_singularity(TRIANGLE_FACES, TRIANGLE, direction), 0.5)

    def test_tetrahedron_collapse(self):
        direction = np.zeros_like(TET)
        direction[3] = [0.0, 0.0, -4.0]
        self.assertAlmostEqual(max_step_to_singularity(TET_ELEMENTS, TET, direction), 0.25)

    def test_translation_never_collapses(self):
        direction = np.tile([0.3, -0.2], (3, 1))
        self.assertTrue(math.isinf(max_step_to_singularity(TRIANGLE_FACES, TRIANGLE, direction)))


class TestLineSearch(unittest.TestCase):
    def test_step_is_capped_before_inversion(self):
        candidate = TRIANGLE.copy()
        candidate[2] = [0.0, -1.0]  # full step inverts the triangle

        def energy(x):
            return float(np.sum((x - candidate) ** 2))

        result = flip_avoiding_line_search(TRIANGLE_FACES, TRIANGLE, candidate, energy)
        self.assertTrue(result.accepted)
        self.assertAlmostEqual(result.step_size, 0.4)
        self.assertTrue(np.all(signed_volumes(result.positions, TRIANGLE_FACES) > 0))
        self.assertLess(result.energy, energy(TRIANGLE))

    def test_full_step_when_safe(self):
        candidate = TRIANGLE * 1.5

        def energy(x):
            return float(np.sum((x - candidate) ** 2))

        result = flip_avoiding_line_search(TRIANGLE_FACES, TRIANGLE, candidate, energy, energy(TRIANGLE))
        self.assertTrue(result.accepted)
        self.assertAlmostEqual(result.step_size, 1.0)
        np.testing.assert_allclose(result.positions, candidate)

    def test_backtracking_halves_until_decrease(self):
        direction = np.ones_like(TRIANGLE)

        # minimum at a quarter step: the first accepted step is 0.25
        def energy(x):
            return float(np.sum((x - TRIANGLE - 0.25) ** 2)) + (1.0 if np.any(x > TRIANGLE + 0.3) else 0.0)

        result = backtracking_line_search(TRIANGLE, direction, 1.0, energy, energy(TRIANGLE), max_halvings=12)
        self.assertTrue(result.accepted)
        self.assertAlmostEqual(result.step_size, 0.25)

    def test_exhaustion_keeps_positions(self):
        candidate = TRIANGLE * 2.0

        def energy(x):
            return 10.0

        result = flip_avoiding_line_search(TRIANGLE_FACES, TRIANGLE, candidate, energy, 10.0, max_halvings=3)
        self.assertFalse(result.accepted)
        self.assertEqual(result.step_size, 0.0)
        self.assertEqual(result.energy, 10.0)
        np.testing.assert_allclose(result.positions, TRIANGLE)
