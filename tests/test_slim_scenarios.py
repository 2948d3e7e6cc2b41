import unittest

import numpy as np
import pytest

from src.slim import slim as slim_module
from src.slim.energies import EnergyKind
from src.slim.geometry import signed_volumes
from src.slim.line_search import LineSearchResult
from src.slim.linear_solvers import SPDSolver, SolveFailedError
from src.slim.slim import (
    STATUS_EXHAUSTED,
    SlimSolver,
    precompute,
    set_soft_penalty,
    slim_precompute,
    solve,
)
from src.slim.state import InvalidInputError, SolverState

SQUARE = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]])
SQUARE_FACES = np.array([[0, 1, 2], [0, 2, 3]])

REGULAR_TET = np.array(
    [
        [0.0, 0.0, 0.0],
        [1.0, 0.0, 0.0],
        [0.5, np.sqrt(3.0) / 2.0, 0.0],
        [0.5, np.sqrt(3.0) / 6.0, np.sqrt(2.0 / 3.0)],
    ]
)
TET_ELEMENTS = np.array([[0, 1, 2, 3]])


def _grid(nx: int = 4, ny: int = 4, jitter: float = 0.0, seed: int = 0):
    xs, ys = np.meshgrid(np.linspace(0.0, 1.0, nx), np.linspace(0.0, 1.0, ny))
    rest = np.column_stack([xs.ravel(), ys.ravel()])
    faces = []
    for j in range(ny - 1):
        for i in range(nx - 1):
            v00 = j * nx + i
            v10 = v00 + 1
            v01 = v00 + nx
            v11 = v01 + 1
            faces.append([v00, v10, v11])
            faces.append([v00, v11, v01])
    positions = rest.copy()
    if jitter:
        rng = np.random.default_rng(seed)
        positions = positions + rng.uniform(-jitter, jitter, size=positions.shape)
    return rest, np.asarray(faces, dtype=np.int64), positions


class TestConcreteScenarios(unittest.TestCase):
    def test_two_triangles_at_rest_stay_at_zero_energy(self):
        state = slim_precompute(SQUARE, SQUARE_FACES, SQUARE, EnergyKind.ISOMETRIC)
        self.assertAlmostEqual(state.energy_value, 0.0, delta=1e-10)

        reports = solve(state, 5)
        self.assertEqual(len(reports), 5)
        for report in reports:
            self.assertAlmostEqual(report.energy, 0.0, delta=1e-10)
        np.testing.assert_allclose(state.positions, SQUARE, atol=1e-8)

    def test_displaced_vertex_energy_decreases(self):
        start = SQUARE.copy()
        start[2] += [0.1, 0.1]
        state = slim_precompute(SQUARE, SQUARE_FACES, start, EnergyKind.ISOMETRIC)
        initial = state.energy_value
        self.assertGreater(initial, 0.0)

        reports = solve(state, 10)
        energies = [initial] + [r.energy for r in reports]
        self.assertLess(energies[1], energies[0])
        for prev, curr in zip(energies, energies[1:]):
            self.assertLessEqual(curr, prev + 1e-12)
            self.assertGreaterEqual(curr, 0.0)
        self.assertLess(energies[-1], 0.5 * initial)

    def test_sheared_tetrahedron_approaches_symmetric_dirichlet_minimum(self):
        shear = np.array([[1.0, 0.4, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
        start = REGULAR_TET @ shear.T
        state = slim_precompute(REGULAR_TET, TET_ELEMENTS, start, EnergyKind.SYMMETRIC_DIRICHLET)
        self.assertEqual(state.dimension, 3)
        initial = state.energy_value
        self.assertGreater(initial, 6.0)

        reports = solve(state, 5)
        energies = [initial] + [r.energy for r in reports]
        self.assertTrue(np.all(np.isfinite(energies)))
        for prev, curr in zip(energies, energies[1:]):
            self.assertLessEqual(curr, prev + 1e-12)
        self.assertLess(energies[-1], initial)
        self.assertGreaterEqual(energies[-1], 6.0 - 1e-9)
        self.assertLess(energies[-1] - 6.0, 0.5 * (initial - 6.0))

    def test_soft_constraint_distance_shrinks_with_penalty(self):
        target = np.array([1.0 + np.sqrt(0.5), 1.0 + np.sqrt(0.5)])
        state = slim_precompute(
            SQUARE,
            SQUARE_FACES,
            SQUARE,
            EnergyKind.ISOMETRIC,
            constraint_indices=[0, 2],
            constraint_targets=[[0.0, 0.0], target],
            soft_penalty=1.0,
        )

        distances = []
        for penalty in (1.0, 10.0, 100.0):
            set_soft_penalty(state, penalty)
            solve(state, 20)
            distances.append(float(np.linalg.norm(state.positions[2] - target)))

        self.assertLess(distances[0], 1.0)
        self.assertGreater(distances[0], distances[1])
        self.assertGreater(distances[1], distances[2])


class TestSolverProperties(unittest.TestCase):
    def test_descent_without_flips_for_every_energy(self):
        rest, faces, start = _grid(jitter=0.05, seed=7)
        self.assertTrue(np.all(signed_volumes(start, faces) > 0))
        for kind in EnergyKind:
            with self.subTest(kind=kind.value):
                state = slim_precompute(rest, faces, start, kind, exp_factor=0.5)
                energies = [state.energy_value] + [r.energy for r in solve(state, 4)]
                for prev, curr in zip(energies, energies[1:]):
                    self.assertLessEqual(curr, prev + 1e-12)
                self.assertTrue(np.all(signed_volumes(state.positions, faces) > 0))

    def test_rigid_motion_is_a_fixed_point(self):
        angle = 0.6
        rot = np.array([[np.cos(angle), -np.sin(angle)], [np.sin(angle), np.cos(angle)]])
        start = SQUARE @ rot.T + [2.0, -1.0]
        state = slim_precompute(SQUARE, SQUARE_FACES, start, EnergyKind.ISOMETRIC)
        self.assertAlmostEqual(state.energy_value, 0.0, delta=1e-10)
        for report in solve(state, 3):
            self.assertAlmostEqual(report.energy, 0.0, delta=1e-10)
        np.testing.assert_allclose(state.positions, start, atol=1e-8)

    def test_precompute_is_idempotent(self):
        start = SQUARE.copy()
        start[2] += [0.2, -0.1]
        once = slim_precompute(SQUARE, SQUARE_FACES, start, EnergyKind.SYMMETRIC_DIRICHLET)
        twice = slim_precompute(SQUARE, SQUARE_FACES, start, EnergyKind.SYMMETRIC_DIRICHLET)
        weights = twice.weights
        precompute(twice)

        self.assertEqual(once.energy_value, twice.energy_value)
        self.assertIs(twice.weights, weights)
        np.testing.assert_allclose(once.weights, twice.weights)
        np.testing.assert_allclose(once.positions, twice.positions)
        self.assertEqual(twice.iteration, 0)

    def test_dimension_follows_element_arity(self):
        tri_state = SolverState(SQUARE, SQUARE_FACES, SQUARE)
        tet_state = SolverState(REGULAR_TET, TET_ELEMENTS, REGULAR_TET)
        self.assertEqual(tri_state.dimension, 2)
        self.assertEqual(tet_state.dimension, 3)

    def test_bad_arity_is_rejected(self):
        with self.assertRaises(InvalidInputError):
            SolverState(np.zeros((5, 3)), np.array([[0, 1, 2, 3, 4]]), np.zeros((5, 3)))
        with self.assertRaises(InvalidInputError):
            SolverState(SQUARE, np.array([[0, 1]]), SQUARE)

    def test_mismatched_positions_are_rejected(self):
        with self.assertRaises(InvalidInputError):
            SolverState(SQUARE, SQUARE_FACES, np.zeros((4, 3)))
        with self.assertRaises(InvalidInputError):
            SolverState(SQUARE, SQUARE_FACES, SQUARE, constraint_indices=[0, 1], constraint_targets=[[0.0, 0.0]])

    def test_tetrahedra_with_regular_reference(self):
        start = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
        state = slim_precompute(
            start, TET_ELEMENTS, start, EnergyKind.SYMMETRIC_DIRICHLET, mesh_improvement_3d=True
        )
        initial = state.energy_value
        solve(state, 5)
        self.assertLess(state.energy_value, initial)
        self.assertTrue(np.all(signed_volumes(state.positions, TET_ELEMENTS) > 0))


class TestSlimSolver(unittest.TestCase):
    def test_history_accumulates(self):
        start = SQUARE.copy()
        start[1] += [0.3, 0.0]
        solver = SlimSolver.create(SQUARE, SQUARE_FACES, start, "symmetric_dirichlet")
        solver.solve(2)
        solver.solve(3)
        self.assertEqual([r.iteration for r in solver.history], [1, 2, 3, 4, 5])
        self.assertEqual(solver.dimension, 2)
        self.assertAlmostEqual(solver.energy, solver.history[-1].energy)
        self.assertEqual(solver.element_distortion().shape, (2,))
        self.assertAlmostEqual(solver.compute_energy() / solver.state.mesh_mass, solver.energy)


class _FailingSolver(SPDSolver):
    def solve(self, matrix, rhs, guess=None):
        raise SolveFailedError("boom")


def test_solve_failure_leaves_state_untouched():
    start = SQUARE.copy()
    start[2] += [0.1, 0.1]
    state = slim_precompute(SQUARE, SQUARE_FACES, start, EnergyKind.ISOMETRIC)
    energy = state.energy_value

    with pytest.raises(SolveFailedError):
        solve(state, 3, solver=_FailingSolver())

    np.testing.assert_allclose(state.positions, start)
    assert state.energy_value == energy
    assert state.iteration == 0


def test_exhausted_line_search_is_reported(monkeypatch):
    start = SQUARE.copy()
    start[2] += [0.1, 0.1]
    state = slim_precompute(SQUARE, SQUARE_FACES, start, EnergyKind.ISOMETRIC)
    energy = state.energy_value

    def _exhausted(elements, current, candidate, energy_fn, baseline=None, *, max_halvings=12):
        return LineSearchResult(positions=current.copy(), energy=baseline, step_size=0.0, accepted=False)

    monkeypatch.setattr(slim_module, "flip_avoiding_line_search", _exhausted)
    reports = solve(state, 2)

    assert [r.status for r in reports] == [STATUS_EXHAUSTED, STATUS_EXHAUSTED]
    assert state.energy_value == energy
    np.testing.assert_allclose(state.positions, start)
    assert state.iteration == 2


def test_soft_penalty_change_refreshes_energy():
    state = slim_precompute(
        SQUARE,
        SQUARE_FACES,
        SQUARE,
        EnergyKind.ISOMETRIC,
        constraint_indices=[2],
        constraint_targets=[[1.0, 2.0]],
        soft_penalty=1.0,
    )
    assert state.energy_value == pytest.approx(1.0)
    set_soft_penalty(state, 10.0)
    assert state.energy_value == pytest.approx(10.0)

    with pytest.raises(InvalidInputError):
        set_soft_penalty(state, -1.0)


class TestSinglePinConstraint(unittest.TestCase):
    def test_single_pin_distance_never_grows(self):
        target = np.array([1.0, 2.0])
        state = slim_precompute(
            SQUARE,
            SQUARE_FACES,
            SQUARE,
            EnergyKind.ISOMETRIC,
            constraint_indices=[2],
            constraint_targets=[target],
            soft_penalty=1.0,
        )

        distances = []
        for penalty in (1.0, 10.0, 100.0):
            set_soft_penalty(state, penalty)
            solve(state, 20)
            distances.append(float(np.linalg.norm(state.positions[2] - target)))

        # a translation costs no isometric energy, so one pin is met exactly
        # for every penalty and the distances only tie
        for prev, curr in zip(distances, distances[1:]):
            self.assertLessEqual(curr, prev + 1e-12)
        self.assertLess(distances[-1], 1e-6)


class TestFrozenAfterPrecompute(unittest.TestCase):
    def test_structural_fields_are_read_only(self):
        state = slim_precompute(SQUARE, SQUARE_FACES, SQUARE, EnergyKind.ISOMETRIC)
        for name, value in (
            ("energy", EnergyKind.CONFORMAL),
            ("elements", SQUARE_FACES[::-1].copy()),
            ("dimension", 3),
            ("rest_positions", SQUARE * 2.0),
        ):
            with self.subTest(field=name):
                with self.assertRaises(AttributeError):
                    setattr(state, name, value)
        self.assertEqual(state.energy, EnergyKind.ISOMETRIC)
        self.assertEqual(state.dimension, 2)

    def test_fields_are_writable_before_precompute(self):
        state = SolverState(SQUARE, SQUARE_FACES, SQUARE, energy=EnergyKind.ISOMETRIC)
        state.energy = EnergyKind.CONFORMAL
        precompute(state)
        self.assertEqual(state.family.kind, EnergyKind.CONFORMAL)
        state.soft_penalty = 2.0
        state.positions[0] += [0.01, 0.0]


def _sheared_tet_state():
    shear = np.array([[1.0, 0.4, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
    start = REGULAR_TET @ shear.T
    return slim_precompute(REGULAR_TET, TET_ELEMENTS, start, EnergyKind.SYMMETRIC_DIRICHLET), start


def test_tetrahedral_solve_failure_keeps_committed_positions():
    state, start = _sheared_tet_state()
    solve(state, 2)
    committed = state.positions.copy()
    energy = state.energy_value
    iteration = state.iteration
    assert not np.allclose(committed, start)

    with pytest.raises(SolveFailedError):
        solve(state, 3, solver=_FailingSolver())

    np.testing.assert_allclose(state.positions, committed)
    assert state.energy_value == energy
    assert state.iteration == iteration


def test_tetrahedral_cg_non_convergence_propagates(monkeypatch):
    from src.slim import linear_solvers

    state, start = _sheared_tet_state()

    def _stalled_cg(a, b, x0=None, **kwargs):
        return (np.zeros_like(b) if x0 is None else x0), 7

    monkeypatch.setattr(linear_solvers, "cg", _stalled_cg)
    with pytest.raises(SolveFailedError, match="did not converge"):
        solve(state, 1)

    np.testing.assert_allclose(state.positions, start)
    assert state.iteration == 0
