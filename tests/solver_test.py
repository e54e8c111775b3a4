"""
Tests for the Levenberg-Marquardt pose solver
"""
import unittest
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import scipy.optimize as optimize

from cable_pose import rig
from cable_pose.errors import InvalidInput, DegenerateGeometry, SingularSystem, SolverFailed
from cable_pose.kinematics import CableModel, synthesize_cable_lengths
from cable_pose.request import SolveRequest
from cable_pose.solver import (
    SolverSettings,
    levenberg_marquardt,
    solve,
    solve_damped_normal_equations,
    CONVERGED,
    MAX_ITERATIONS,
    CANCELLED,
)
from rig_fixtures import p, cube_anchors, cube_attachments, cube_center_pose, infeasible_lengths


class UphillModel:
    """
    A model whose jacobian has the wrong sign, so every step the solver takes makes things worse.
    """
    def residuals(self, pose):
        return pose + 10

    def jacobian(self, pose, method='analytic'):
        return -np.eye(6)


class CollapsingJacobianModel:
    """
    Residuals evaluate fine but the jacobian runs into a cable of zero length,
    the way a finite difference jacobian can one step away from the current pose.
    """
    def residuals(self, pose):
        return np.ones(8)

    def jacobian(self, pose, method='analytic'):
        raise DegenerateGeometry('cable 3 has zero length', cable_index=3, pose=pose + 1e-6)


class TestSolver(unittest.TestCase):
    def setUp(self):
        self.lengths = synthesize_cable_lengths(rig.anchors, rig.attachments, rig.demo_pose)
        self.model = CableModel(rig.anchors, rig.attachments, self.lengths)
        self.nearby_guess = p([0, 400, 650, 0, 0, 0])

    def test_cube_from_origin(self):
        # platform synthesized at the center of a cube shaped rig, solved starting from the floor
        lengths = synthesize_cable_lengths(cube_anchors, cube_attachments, cube_center_pose)
        model = CableModel(cube_anchors, cube_attachments, lengths)
        result = levenberg_marquardt(model, np.zeros(6))

        self.assertEqual(CONVERGED, result.status)
        np.testing.assert_allclose(result.pose[:3], [0, 0, 1000], atol=1e-3)
        np.testing.assert_allclose(result.pose[3:], [0, 0, 0], atol=1e-6)
        self.assertLess(result.error, 1e-6)

    def test_round_trip(self):
        result = levenberg_marquardt(self.model, self.nearby_guess)
        self.assertTrue(result.converged)
        np.testing.assert_allclose(result.pose[:3], rig.demo_pose[:3], atol=1e-4)
        np.testing.assert_allclose(result.pose[3:], rig.demo_pose[3:], atol=1e-6)
        self.assertLess(result.error, 1e-8)
        self.assertEqual((8,), result.final_residuals.shape)

    def test_round_trip_central_differences(self):
        settings = SolverSettings(jacobian_method='central')
        result = levenberg_marquardt(self.model, self.nearby_guess, settings)
        self.assertTrue(result.converged)
        np.testing.assert_allclose(result.pose[:3], rig.demo_pose[:3], atol=1e-3)
        np.testing.assert_allclose(result.pose[3:], rig.demo_pose[3:], atol=1e-6)

    def test_agrees_with_scipy(self):
        # perturb the measurement so the optimum has some residual left
        lengths = self.lengths + p([0.5, -0.3, 0.2, 0.0, -0.4, 0.1, 0.3, -0.2])
        model = CableModel(rig.anchors, rig.attachments, lengths)
        ours = levenberg_marquardt(model, self.nearby_guess)
        theirs = optimize.least_squares(model.residuals, self.nearby_guess, method='lm', xtol=1e-12, ftol=1e-12)
        self.assertTrue(theirs.success)
        np.testing.assert_allclose(ours.pose, theirs.x, atol=1e-4)
        self.assertAlmostEqual(ours.error, np.mean(theirs.fun**2), 8)

    def test_zero_residual_initial_guess(self):
        result = levenberg_marquardt(self.model, rig.demo_pose)
        self.assertEqual(CONVERGED, result.status)
        self.assertEqual(0, result.iterations)
        self.assertEqual(0.0, result.error)
        self.assertEqual((), result.error_trace)
        np.testing.assert_array_equal(result.pose, rig.demo_pose)

    def test_error_trace(self):
        result = levenberg_marquardt(self.model, self.nearby_guess)
        trace = np.array(result.error_trace)
        self.assertEqual(result.iterations, len(trace))
        self.assertGreater(len(trace), 0)
        # every accepted step is strictly better than the one before
        self.assertLess(trace[0], result.initial_error)
        self.assertTrue(np.all(np.diff(trace) < 0))
        self.assertEqual(trace[-1], result.error)

    def test_initial_guess_is_not_modified(self):
        guess = self.nearby_guess.copy()
        levenberg_marquardt(self.model, guess)
        np.testing.assert_array_equal(guess, self.nearby_guess)

    def test_max_iterations(self):
        # lengths no pose can satisfy, with a tiny budget
        model = CableModel(rig.anchors, rig.attachments, infeasible_lengths)
        settings = SolverSettings(max_iterations=3)
        result = levenberg_marquardt(model, p([0, 450, 900, 0, 0, 0]), settings)
        self.assertEqual(MAX_ITERATIONS, result.status)
        self.assertFalse(result.converged)
        self.assertEqual(3, result.iterations)
        self.assertEqual(3, len(result.error_trace))
        self.assertEqual((6,), result.pose.shape)
        self.assertTrue(np.all(np.isfinite(result.pose)))
        self.assertLess(result.error, result.initial_error)

    def test_zero_max_iterations(self):
        result = levenberg_marquardt(self.model, self.nearby_guess, SolverSettings(max_iterations=0))
        self.assertEqual(MAX_ITERATIONS, result.status)
        self.assertEqual(0, result.iterations)
        np.testing.assert_array_equal(result.pose, self.nearby_guess)

    def test_cancel_between_iterations(self):
        model = CableModel(rig.anchors, rig.attachments, infeasible_lengths)
        checks = []
        def should_stop():
            checks.append(1)
            return len(checks) > 2
        result = levenberg_marquardt(model, p([0, 450, 900, 0, 0, 0]), should_stop=should_stop)
        self.assertEqual(CANCELLED, result.status)
        self.assertEqual(2, result.iterations)
        self.assertEqual(2, len(result.error_trace))
        self.assertEqual(result.error_trace[-1], result.error)

    def test_degenerate_initial_guess(self):
        anchors = cube_anchors.copy()
        anchors[0] = cube_attachments[0]
        model = CableModel(anchors, cube_attachments, np.full(8, 1000.0))
        with self.assertRaises(DegenerateGeometry) as cm:
            levenberg_marquardt(model, np.zeros(6))
        self.assertEqual(0, cm.exception.cable_index)
        self.assertEqual(0, cm.exception.iteration)
        self.assertEqual(SolverSettings().initial_damping, cm.exception.damping)

    def test_singular_system(self):
        # no normal equations are ever well conditioned enough for this setting
        settings = SolverSettings(max_condition=1.0, max_singular_retries=3)
        with self.assertRaises(SingularSystem) as cm:
            levenberg_marquardt(self.model, self.nearby_guess, settings)
        e = cm.exception
        self.assertEqual(0, e.iteration)
        np.testing.assert_array_equal(e.pose, self.nearby_guess)
        # damping grew once for every retry
        self.assertAlmostEqual(1.0, e.damping)
        self.assertEqual('SingularSystem', e.to_dict()['kind'])

    def test_solver_failed_when_no_step_helps(self):
        settings = SolverSettings(max_rejections=3)
        with self.assertRaises(SolverFailed) as cm:
            levenberg_marquardt(UphillModel(), np.zeros(6), settings)
        e = cm.exception
        self.assertNotIsInstance(e, SingularSystem)
        self.assertEqual(0, e.iteration)
        self.assertAlmostEqual(1.0, e.damping)
        np.testing.assert_array_equal(e.pose, np.zeros(6))

    def test_invalid_initial_guess(self):
        with self.assertRaises(InvalidInput):
            levenberg_marquardt(self.model, [0, 0, 0])
        with self.assertRaises(InvalidInput):
            levenberg_marquardt(self.model, [0, 0, np.nan, 0, 0, 0])

    def test_invalid_settings(self):
        with self.assertRaises(InvalidInput):
            SolverSettings(jacobian_method='backward')
        with self.assertRaises(InvalidInput):
            SolverSettings(damping_increase=0.5)
        with self.assertRaises(InvalidInput):
            SolverSettings.from_dict({'max_iter': 10})

    def test_solve_request(self):
        request = SolveRequest(rig.anchors, rig.attachments, self.lengths, self.nearby_guess)
        result = solve(request)
        d = result.to_dict()
        self.assertEqual({'pose', 'error', 'iterations', 'residuals', 'status', 'initialError'}, set(d))
        self.assertEqual(6, len(d['pose']))
        self.assertEqual(d['iterations'], len(d['residuals']))
        self.assertEqual('converged', d['status'])

    def test_concurrent_solves_are_independent(self):
        poses = [rig.demo_pose + p([dx, 0, 0, 0, 0, 0]) for dx in (-60, -20, 20, 60)]
        requests = [
            SolveRequest(rig.anchors, rig.attachments,
                         synthesize_cable_lengths(rig.anchors, rig.attachments, pose),
                         self.nearby_guess)
            for pose in poses]
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(solve, requests))
        for pose, result in zip(poses, results):
            np.testing.assert_allclose(result.pose[:3], pose[:3], atol=1e-3)

    def test_zero_jacobian_column_is_damped(self):
        # with the platform on the floor of the cube rig no cable length changes with yaw
        lengths = synthesize_cable_lengths(cube_anchors, cube_attachments, cube_center_pose)
        model = CableModel(cube_anchors, cube_attachments, lengths)
        jac = model.jacobian(np.zeros(6))
        np.testing.assert_allclose(jac[:, 5], np.zeros(8), atol=1e-12)
        settings = SolverSettings()
        delta = solve_damped_normal_equations(
            jac.T @ jac, jac.T @ model.residuals(np.zeros(6)), settings.initial_damping, settings)
        self.assertTrue(np.all(np.isfinite(delta)))
        self.assertAlmostEqual(0.0, delta[5])
        # first step heads up towards the center of the cube
        self.assertGreater(delta[2], 0)

    def test_uphill_model_fails_with_default_settings(self):
        # the step shrinks below step_tolerance long before the rejections run out,
        # but the gradient is nowhere near zero so this is not a minimum
        with self.assertRaises(SolverFailed) as cm:
            levenberg_marquardt(UphillModel(), np.zeros(6))
        e = cm.exception
        self.assertEqual(0, e.iteration)
        np.testing.assert_allclose(e.damping, 1e17)
        np.testing.assert_array_equal(e.pose, np.zeros(6))

    def test_restart_at_minimum_converges(self):
        lengths = self.lengths + p([0.5, -0.3, 0.2, 0.0, -0.4, 0.1, 0.3, -0.2])
        model = CableModel(rig.anchors, rig.attachments, lengths)
        first = levenberg_marquardt(model, self.nearby_guess)
        again = levenberg_marquardt(model, first.pose)
        self.assertEqual(CONVERGED, again.status)
        np.testing.assert_allclose(again.pose, first.pose, atol=1e-6)

    def test_degenerate_jacobian_reports_current_pose(self):
        guess = p([1, 2, 3, 0, 0, 0])
        with self.assertRaises(DegenerateGeometry) as cm:
            levenberg_marquardt(CollapsingJacobianModel(), guess, SolverSettings(jacobian_method='central'))
        e = cm.exception
        self.assertEqual(3, e.cable_index)
        self.assertEqual(0, e.iteration)
        np.testing.assert_array_equal(e.pose, guess)

    def test_settings_of_the_wrong_type(self):
        with self.assertRaises(InvalidInput) as cm:
            SolverSettings(max_iterations='100')
        self.assertEqual('max_iterations', cm.exception.field)
        with self.assertRaises(InvalidInput):
            SolverSettings.from_dict({'max_iterations': 10.5})
        with self.assertRaises(InvalidInput):
            SolverSettings.from_dict({'initial_damping': True})
        with self.assertRaises(InvalidInput):
            SolverSettings.from_dict([('max_iterations', 10)])
        # ints are fine where floats are expected
        self.assertEqual(1, SolverSettings.from_dict({'max_condition': 1}).max_condition)
