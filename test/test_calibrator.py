#!/usr/bin/env python3
"""
Tests for the online calibrator.
"""

import threading
import numpy as np
import unittest
from unittest import mock

from onlinecalib.calibrator import Calibrator
from onlinecalib.camera import FovCamera, PinholeCamera, Rig
from onlinecalib.config import CalibratorConfig
from onlinecalib.errors import InvalidArgumentError, InvalidStateError
from onlinecalib.se3 import SE3
from onlinecalib.solver import ProblemBuilder

TIMEOUT = 120.0


def make_landmarks(n, seed=0):
    rng = np.random.default_rng(seed)
    return np.column_stack([
        rng.uniform(-1.0, 1.0, n),
        rng.uniform(-1.0, 1.0, n),
        rng.uniform(3.0, 6.0, n),
    ])


def observe(camera, T_ck, T_kw, landmark):
    return camera.project(T_ck * (T_kw * landmark))


class TestCalibratorStructure(unittest.TestCase):

    def setUp(self):
        self.calib = Calibrator(CalibratorConfig(max_iterations=20, thread_count=1))
        self.camera = PinholeCamera([1.0, 1.0, 0.0, 0.0])

    def tearDown(self):
        self.calib.stop()

    def test_ids_are_increasing(self):
        frame_ids = [self.calib.add_frame() for _ in range(5)]
        camera_ids = [self.calib.add_camera(self.camera) for _ in range(3)]
        self.assertEqual(frame_ids, [0, 1, 2, 3, 4])
        self.assertEqual(camera_ids, [0, 1, 2])
        self.assertEqual(self.calib.num_frames(), 5)
        self.assertEqual(self.calib.num_cameras(), 3)

    def test_inputs_are_copied(self):
        T_kw = SE3.exp(np.array([0.1, 0.2, 0.3, 0.0, 0.0, 0.1]))
        frame = self.calib.add_frame(T_kw)
        camera = self.calib.add_camera(self.camera)

        T_kw.data[4] = 42.0
        self.camera.params[0] = 42.0
        self.assertNotEqual(self.calib.get_frame(frame).data[4], 42.0)
        self.assertNotEqual(self.calib.get_camera(camera).camera.params[0], 42.0)

        copy = self.calib.get_frame(frame)
        copy.data[5] = 42.0
        self.assertNotEqual(self.calib.get_frame(frame).data[5], 42.0)

    def test_add_observation_validates_ids(self):
        self.calib.add_frame()
        self.calib.add_camera(self.camera)

        with self.assertRaises(InvalidArgumentError):
            self.calib.add_observation(1, 0, [0.0, 0.0, 1.0], [0.0, 0.0])
        with self.assertRaises(InvalidArgumentError):
            self.calib.add_observation(0, 1, [0.0, 0.0, 1.0], [0.0, 0.0])
        with self.assertRaises(InvalidArgumentError):
            self.calib.add_observation(-1, 0, [0.0, 0.0, 1.0], [0.0, 0.0])
        with self.assertRaises(InvalidArgumentError):
            self.calib.add_observation(0, 0, [0.0, 1.0], [0.0, 0.0])
        self.assertEqual(self.calib.num_observations(), 0)

        self.calib.add_observation(0, 0, [0.0, 0.0, 1.0], [0.0, 0.0])
        self.assertEqual(self.calib.num_observations(), 1)

    def test_poses_must_be_se3(self):
        """Raw 7-vectors are rejected before anything is stored."""
        raw = np.array([0.0, 0.0, 0.0, 1.0, 0.05, 0.0, 0.0])
        with self.assertRaises(InvalidArgumentError):
            self.calib.add_frame(raw)
        with self.assertRaises(InvalidArgumentError):
            self.calib.add_camera(self.camera, raw)
        self.assertEqual(self.calib.num_frames(), 0)
        self.assertEqual(self.calib.num_cameras(), 0)

        rig = Rig()
        rig.add_camera(self.camera)
        self.calib.add_rig(rig)
        self.assertEqual(self.calib.num_cameras(), 1)

    def test_accessors_validate_ids(self):
        with self.assertRaises(InvalidArgumentError):
            self.calib.get_frame(0)
        with self.assertRaises(InvalidArgumentError):
            self.calib.get_camera(0)
        with self.assertRaises(InvalidArgumentError):
            self.calib.add_camera("pinhole")

    def test_clear(self):
        self.calib.add_frame()
        self.calib.add_camera(self.camera)
        self.calib.add_observation(0, 0, [0.0, 0.0, 1.0], [0.0, 0.0])

        self.calib.clear()
        self.assertEqual(self.calib.num_frames(), 0)
        self.assertEqual(self.calib.num_cameras(), 0)
        self.assertEqual(self.calib.num_observations(), 0)

    def test_clear_while_running(self):
        self.calib.start()
        with self.assertRaises(InvalidStateError):
            self.calib.clear()
        self.calib.stop()
        self.calib.clear()

    def test_add_rig(self):
        rig = Rig()
        T_rc = SE3.exp(np.array([0.1, 0.0, 0.0, 0.0, 0.05, 0.0]))
        rig.add_camera(self.camera)
        rig.add_camera(FovCamera([300.0, 300.0, 320.0, 240.0, 0.9]), T_rc)

        self.assertEqual(self.calib.add_rig(rig), [0, 1])
        cp = self.calib.get_camera(1)
        self.assertIsInstance(cp.camera, FovCamera)
        np.testing.assert_array_almost_equal(cp.T_ck.matrix(), np.linalg.inv(T_rc.matrix()))


class TestCalibratorLifecycle(unittest.TestCase):

    def setUp(self):
        self.calib = Calibrator(CalibratorConfig(max_iterations=10, thread_count=1))

    def tearDown(self):
        self.calib.stop()

    def test_start_stop(self):
        self.assertFalse(self.calib.running)
        self.calib.start()
        self.assertTrue(self.calib.running)
        self.calib.stop()
        self.assertFalse(self.calib.running)

        # restart after stop
        self.calib.start()
        self.assertTrue(self.calib.running)

    def test_double_start_warns(self):
        self.calib.start()
        thread = self.calib._thread
        with self.assertLogs("onlinecalib.calibrator", level="WARNING") as logs:
            self.calib.start()
        self.assertIn("Already running", logs.output[0])
        self.assertIs(self.calib._thread, thread)

    def test_stop_when_idle(self):
        self.calib.stop()
        self.assertFalse(self.calib.running)

    def test_solve_once_while_running(self):
        self.calib.start()
        try:
            with self.assertRaises(InvalidStateError):
                self.calib.solve_once()
        finally:
            self.calib.stop()

    def test_empty_problem_is_skipped(self):
        """With no residuals nothing is solved and no value changes."""
        T_kw = SE3.exp(np.array([0.1, 0.2, 0.3, 0.1, 0.0, 0.0]))
        self.calib.add_frame(T_kw)
        self.calib.add_camera(PinholeCamera([1.0, 1.0, 0.0, 0.0]))

        self.assertIsNone(self.calib.solve_once())
        self.assertIsNone(self.calib.solve_once())
        self.assertEqual(self.calib.iterations_completed, 0)
        np.testing.assert_array_equal(self.calib.get_frame(0).data, T_kw.data)

    def test_context_manager_reports_cameras(self):
        with self.assertLogs("onlinecalib.calibrator", level="INFO") as logs:
            with Calibrator(CalibratorConfig(thread_count=1)) as calib:
                calib.add_camera(PinholeCamera([2.0, 3.0, 4.0, 5.0]))
                self.assertTrue(calib.running)
            self.assertFalse(calib.running)
        self.assertTrue(any("Camera: 0" in line for line in logs.output))


class TestCalibratorOptimisation(unittest.TestCase):

    def setUp(self):
        self.camera = PinholeCamera([1.0, 1.0, 0.0, 0.0])
        self.landmarks = make_landmarks(12)
        self.T_kw_true = [SE3(), SE3.exp(np.array([0.1, -0.05, 0.02, 0.0, 0.05, 0.02]))]

    def _calibrator(self, **overrides):
        values = dict(max_iterations=50, thread_count=1)
        values.update(overrides)
        return Calibrator(CalibratorConfig(**values))

    def test_noiseless_observations_have_zero_cost(self):
        """Observations at the exact projection give a zero initial cost."""
        calib = self._calibrator()
        calib.add_camera(self.camera)
        for T_kw in self.T_kw_true:
            frame = calib.add_frame(T_kw)
            for landmark in self.landmarks:
                calib.add_observation(frame, 0, landmark, observe(self.camera, SE3(), T_kw, landmark))

        result = calib.solve_once()
        self.assertTrue(result.ok)
        self.assertAlmostEqual(result.summary.initial_cost, 0.0, places=12)
        self.assertEqual(result.summary.num_residuals, 2 * 2 * len(self.landmarks))

    def test_landmark_is_interpreted_in_world_frame(self):
        """A pixel computed from the world point through T_kw matches exactly."""
        calib = self._calibrator()
        calib.add_camera(self.camera)
        T_kw = SE3.from_rt(np.eye(3), [0.0, 0.0, 1.0])
        calib.add_frame(T_kw)
        # world (1, 1, 1) -> keyframe (1, 1, 2) -> pixel (0.5, 0.5)
        calib.add_observation(0, 0, [1.0, 1.0, 1.0], [0.5, 0.5])

        builder = calib.build_problem()
        self.assertEqual(builder.num_residuals(), 2)
        block = calib._residuals[0]
        residuals = np.zeros(2)
        self.assertTrue(block.cost.Evaluate(block.parameters, residuals, None))
        np.testing.assert_array_almost_equal(residuals, [0.0, 0.0])
        np.testing.assert_array_almost_equal(
            block.cost.evaluate(T_kw.data, SE3().data, self.camera.params), [0.0, 0.0])

    def test_end_to_end_recovers_frame_pose(self):
        calib = self._calibrator()
        calib.add_camera(self.camera)
        calib.add_frame(self.T_kw_true[0])
        # second frame starts away from the truth
        calib.add_frame(SE3.exp(np.array([0.05, 0.0, 0.0, 0.0, 0.0, 0.0])))
        for frame, T_kw in enumerate(self.T_kw_true):
            for landmark in self.landmarks:
                calib.add_observation(frame, 0, landmark, observe(self.camera, SE3(), T_kw, landmark))

        result = calib.solve_once()
        self.assertTrue(result.ok)
        self.assertGreater(result.summary.initial_cost, 0.0)
        self.assertLess(result.summary.final_cost, result.summary.initial_cost)
        self.assertLess(result.summary.mse, 1e-10)
        np.testing.assert_allclose(calib.get_frame(1).matrix(), self.T_kw_true[1].matrix(), atol=1e-5)
        self.assertGreater(result.summary.max_frame_step, 0.01)
        np.testing.assert_allclose(calib.get_camera(0).camera.params, self.camera.params, atol=1e-5)

    def test_cost_decreases_as_observations_grow(self):
        calib = self._calibrator()
        calib.add_camera(self.camera)
        calib.add_frame(self.T_kw_true[0])
        calib.add_frame(SE3.exp(np.array([0.03, 0.02, 0.0, 0.0, 0.0, 0.0])))
        landmarks = make_landmarks(18, seed=3)

        final_mse = []
        for start in (0, 6, 12):
            for landmark in landmarks[start:start + 6]:
                for frame, T_kw in enumerate(self.T_kw_true):
                    calib.add_observation(frame, 0, landmark, observe(self.camera, SE3(), T_kw, landmark))
            result = calib.solve_once()
            self.assertTrue(result.ok)
            self.assertLessEqual(result.summary.final_cost, result.summary.initial_cost)
            final_mse.append(result.summary.mse)
        self.assertLess(final_mse[-1], 1e-10)

    def test_gauge_camera_is_constant(self):
        """The extrinsics of camera 0 never move, other cameras do."""
        calib = self._calibrator()
        T_c0 = SE3.exp(np.array([0.02, -0.01, 0.0, 0.01, 0.0, -0.02]))
        T_c1_true = SE3.exp(np.array([-0.2, 0.0, 0.0, 0.0, 0.02, 0.0]))
        camera1 = PinholeCamera([1.0, 1.0, 0.0, 0.0])
        calib.add_camera(self.camera, T_c0)
        calib.add_camera(camera1, SE3.exp(np.array([-0.18, 0.01, 0.0, 0.0, 0.0, 0.0])))

        for T_kw in self.T_kw_true:
            frame = calib.add_frame(T_kw)
            for landmark in self.landmarks:
                calib.add_observation(frame, 0, landmark, observe(self.camera, T_c0, T_kw, landmark))
                calib.add_observation(frame, 1, landmark, observe(camera1, T_c1_true, T_kw, landmark))

        initial = calib.get_camera(0).T_ck.data.copy()
        for _ in range(2):
            result = calib.solve_once()
            self.assertTrue(result.ok)

        np.testing.assert_array_equal(calib.get_camera(0).T_ck.data, initial)
        np.testing.assert_allclose(calib.get_camera(1).T_ck.matrix(), T_c1_true.matrix(), atol=1e-5)

    def test_huber_loss(self):
        calib = self._calibrator(loss_scale=0.01)
        calib.add_camera(self.camera)
        calib.add_frame(SE3.exp(np.array([0.02, 0.0, 0.0, 0.0, 0.0, 0.0])))
        for landmark in self.landmarks:
            calib.add_observation(0, 0, landmark, observe(self.camera, SE3(), SE3(), landmark))
        result = calib.solve_once()
        self.assertTrue(result.ok)
        self.assertLess(result.summary.final_cost, result.summary.initial_cost)

    def test_solver_failure_is_logged_and_loop_continues(self):
        calib = self._calibrator(max_iterations=2)
        calib.add_camera(self.camera)
        calib.add_frame()
        calib.add_observation(0, 0, self.landmarks[0], [0.0, 0.0])

        with mock.patch("onlinecalib.solver.pyceres.solve", side_effect=RuntimeError("boom")):
            with self.assertLogs("onlinecalib.calibrator", level="ERROR") as logs:
                calib.start()
                self.assertTrue(calib.wait_for_iterations(3, timeout=TIMEOUT))
                calib.stop()
        self.assertTrue(all("boom" in line for line in logs.output))
        self.assertGreaterEqual(len(logs.output), 3)
        self.assertFalse(calib.last_result.ok)

    def test_failed_build_is_recorded(self):
        """An error while building the problem counts as a failed cycle."""
        calib = self._calibrator(max_iterations=2)
        calib.add_camera(self.camera)
        calib.add_frame()
        calib.add_observation(0, 0, self.landmarks[0], [0.0, 0.0])

        with mock.patch.object(ProblemBuilder, "add_residual_block", side_effect=RuntimeError("bad block")):
            with self.assertLogs("onlinecalib.calibrator", level="ERROR"):
                calib.start()
                self.assertTrue(calib.wait_for_iterations(2, timeout=TIMEOUT))
                calib.stop()
        self.assertFalse(calib.last_result.ok)
        self.assertIn("bad block", calib.last_result.error)

    def test_clear_resets_progress(self):
        calib = self._calibrator()
        calib.add_camera(self.camera)
        calib.add_frame()
        calib.add_observation(0, 0, self.landmarks[0], observe(self.camera, SE3(), SE3(), self.landmarks[0]))
        self.assertIsNotNone(calib.solve_once())
        self.assertEqual(calib.iterations_completed, 1)

        calib.clear()
        self.assertEqual(calib.iterations_completed, 0)
        self.assertIsNone(calib.last_result)

    def test_concurrent_observations(self):
        """Producers add data while the loop solves; every residual gets solved."""
        calib = self._calibrator(max_iterations=5, thread_count=2)
        calib.add_camera(self.camera)
        calib.start()

        n_producers = 4
        landmarks = make_landmarks(10, seed=11)
        errors = []

        def produce(seed):
            try:
                rng = np.random.default_rng(seed)
                xi = np.concatenate([rng.normal(scale=0.05, size=3), rng.normal(scale=0.02, size=3)])
                T_kw = SE3.exp(xi)
                frame = calib.add_frame(T_kw)
                for landmark in landmarks:
                    calib.add_observation(frame, 0, landmark, observe(self.camera, SE3(), T_kw, landmark))
            except Exception as e:
                errors.append(e)

        producers = [threading.Thread(target=produce, args=(i,)) for i in range(n_producers)]
        for thread in producers:
            thread.start()
        for thread in producers:
            thread.join()

        # wait for a cycle that started after the last observation was added
        done = calib.iterations_completed
        self.assertTrue(calib.wait_for_iterations(done + 2, timeout=TIMEOUT))
        calib.stop()

        self.assertEqual(errors, [])
        self.assertEqual(calib.num_frames(), n_producers)
        self.assertEqual(calib.num_cameras(), 1)
        self.assertEqual(calib.num_observations(), n_producers * len(landmarks))
        self.assertTrue(calib.last_result.ok)
        self.assertEqual(calib.last_result.summary.num_residuals, 2 * n_producers * len(landmarks))


class TestCalibratorConfig(unittest.TestCase):

    def test_defaults(self):
        config = CalibratorConfig()
        self.assertEqual(config.max_iterations, 100)
        self.assertEqual(config.thread_count, 4)
        self.assertTrue(config.report_every_iteration)

    def test_invalid(self):
        with self.assertRaises(InvalidArgumentError):
            CalibratorConfig(max_iterations=0)
        with self.assertRaises(InvalidArgumentError):
            CalibratorConfig(thread_count=0)
        with self.assertRaises(InvalidArgumentError):
            CalibratorConfig(loss_scale=-1.0)

    def test_from_dict(self):
        config = CalibratorConfig.from_dict({"max_iterations": 5, "thread_count": 2})
        self.assertEqual(config.max_iterations, 5)
        with self.assertRaises(InvalidArgumentError):
            CalibratorConfig.from_dict({"max_iters": 5})


if __name__ == '__main__':
    unittest.main()
