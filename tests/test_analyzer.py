import os
import queue
import tempfile
import unittest

from form_engine.analyzer import AnalyzerConfig, BodyScaleCalibrator, CalibrationConfig, ExerciseAnalyzer
from form_engine.exercise_analysis.landmarks import LANDMARK_GROUPS
from form_engine.exercise_analysis.squat_validator import SquatBodyweightValidator
from form_engine.ml.runtime import ModelLoadError

from pose_fixtures import FakeClock, FakeSession, make_squat_frame, session_factory_for, squat_angles


class AnalyzerTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.model_path = os.path.join(self.tmp.name, "squat.onnx")
        with open(self.model_path, "wb") as f:
            f.write(b"onnx")
        self.clock = FakeClock()
        self.session = FakeSession(sequence_length=4)

    def tearDown(self):
        self.tmp.cleanup()

    def make_analyzer(self, with_model=True, **overrides):
        if with_model:
            overrides.setdefault("model", {"path": self.model_path})
        overrides.setdefault("ml", {"min_frames": 2})
        config = AnalyzerConfig.from_exercise("bodyweight_squat", overrides)
        return ExerciseAnalyzer(config, session_factory=session_factory_for(self.session), clock=self.clock,
                                feedback_queue=queue.Queue(), error_queue=queue.Queue())

    def feed(self, analyzer, angles, step=0.25):
        records = []
        for angle in angles:
            self.clock.advance(step)
            records.append(analyzer.analyze_frame(make_squat_frame(angle)))
        return records


class TestInitialization(AnalyzerTestCase):
    def test_not_initialized_returns_none(self):
        analyzer = self.make_analyzer()
        self.assertIsNone(analyzer.analyze_frame(make_squat_frame(175)))

    def test_model_load_failure_is_reported(self):
        analyzer = self.make_analyzer(model={"path": os.path.join(self.tmp.name, "missing.onnx")})
        self.assertFalse(analyzer.initialize())
        self.assertFalse(analyzer.is_initialized)
        self.assertIsInstance(analyzer.error_queue.get_nowait(), ModelLoadError)

    def test_without_model_runs_heuristic_only(self):
        analyzer = self.make_analyzer(with_model=False)
        self.assertTrue(analyzer.initialize())
        self.assertIsNone(analyzer.classifier)
        record = analyzer.analyze_frame(make_squat_frame(175))
        self.assertEqual(record.combined.source, "heuristic")
        self.assertFalse(record.ml.available)

    def test_invalid_validator_leaves_ml_running(self):
        analyzer = self.make_analyzer(validator={"knee_down_angle": 170})
        self.assertTrue(analyzer.initialize())
        self.assertIsNone(analyzer.validator)
        self.assertIsNotNone(analyzer.classifier)

    def test_classifier_aligned_to_model(self):
        analyzer = self.make_analyzer()
        analyzer.initialize()
        self.assertIsInstance(analyzer.validator, SquatBodyweightValidator)
        self.assertEqual(analyzer.classifier.config.max_frames, 4)
        self.assertEqual(analyzer.get_config()["ml"]["max_frames"], 4)


class TestFrameAnalysis(AnalyzerTestCase):
    def test_throttling(self):
        analyzer = self.make_analyzer()
        analyzer.initialize()
        self.assertIsNotNone(analyzer.analyze_frame(make_squat_frame(175)))
        self.clock.advance(0.05)
        self.assertIsNone(analyzer.analyze_frame(make_squat_frame(175)))
        self.clock.advance(0.1)
        self.assertIsNotNone(analyzer.analyze_frame(make_squat_frame(175)))
        self.assertEqual(analyzer.metrics.total_frames, 2)

    def test_hybrid_once_buffer_is_ready(self):
        analyzer = self.make_analyzer()
        analyzer.initialize()
        first, second = self.feed(analyzer, [175, 175])
        self.assertEqual(first.combined.source, "heuristic")
        self.assertEqual(second.combined.source, "hybrid")
        self.assertTrue(second.combined.is_correct)

    def test_metrics(self):
        analyzer = self.make_analyzer()
        analyzer.initialize()
        self.feed(analyzer, [175, 175])
        metrics = analyzer.get_metrics()
        self.assertEqual(metrics["total_frames"], 2)
        self.assertEqual(metrics["correct_frames"], 2)
        self.assertAlmostEqual(metrics["avg_confidence"], 0.95)
        self.assertAlmostEqual(metrics["accuracy"], 100.0)
        self.assertAlmostEqual(metrics["form_quality_score"], 0.7 * 100.0 + 0.3 * 95.0)
        self.assertEqual(metrics["ml_stats"]["count"], 1)

    def test_records_are_pushed_to_queue(self):
        analyzer = self.make_analyzer()
        analyzer.initialize()
        records = self.feed(analyzer, [175, 175, 175])
        pushed = [analyzer.feedback_queue.get_nowait() for _ in range(3)]
        self.assertEqual(pushed, records)

    def test_counts_reps_over_a_stream(self):
        analyzer = self.make_analyzer(with_model=False, analysis_interval_ms=0)
        analyzer.initialize()
        self.feed(analyzer, squat_angles(), step=1 / 30)
        self.assertEqual(analyzer.get_metrics()["valid_reps"], 1)

    def test_feedback_mode_switch(self):
        analyzer = self.make_analyzer()
        analyzer.initialize()
        self.assertTrue(analyzer.set_feedback_mode("heuristic_only"))
        self.assertFalse(analyzer.set_feedback_mode("unanimous"))
        records = self.feed(analyzer, [175, 175])
        self.assertEqual(records[-1].combined.source, "heuristic")


class TestCalibration(AnalyzerTestCase):
    def test_height_calibration_sets_validator_scale(self):
        analyzer = self.make_analyzer(calibration={"mode": "height", "user_height_cm": 170})
        analyzer.initialize()
        frame = make_squat_frame(175)
        analyzer.analyze_frame(frame)
        head_top = min(frame[i].y for i in LANDMARK_GROUPS["head"])
        feet_bottom = max(frame[i].y for i in LANDMARK_GROUPS["feet"])
        expected = 170 / (feet_bottom - head_top)
        self.assertAlmostEqual(analyzer.calibrator.cm_per_unit, expected)
        self.assertAlmostEqual(analyzer.validator.distance_scale, expected)

    def test_calibrator_smooths_and_ignores_small_bodies(self):
        calibrator = BodyScaleCalibrator(CalibrationConfig(mode="height", user_height_cm=100, smoothing_factor=0.5))
        frame = make_squat_frame(175)
        first = calibrator.update(frame)
        span = calibrator.body_span(frame)
        self.assertAlmostEqual(first, 100 / span)

        shifted = [lm._replace(y=lm.y * 0.3) for lm in frame]
        self.assertIsNone(calibrator.update(shifted))
        self.assertEqual(calibrator.samples, 1)

    def test_calibration_disabled_by_default(self):
        analyzer = self.make_analyzer()
        analyzer.initialize()
        analyzer.analyze_frame(make_squat_frame(175))
        self.assertIsNone(analyzer.calibrator.cm_per_unit)


class TestLifecycle(AnalyzerTestCase):
    def test_reset_clears_session(self):
        analyzer = self.make_analyzer(analysis_interval_ms=0,
                                      calibration={"mode": "height", "user_height_cm": 170})
        analyzer.initialize()
        self.feed(analyzer, squat_angles())
        analyzer.reset()
        metrics = analyzer.get_metrics()
        self.assertEqual(metrics["total_frames"], 0)
        self.assertEqual(metrics["valid_reps"], 0)
        self.assertIsNone(metrics["cm_per_unit"])
        self.assertIsNone(analyzer.validator.distance_scale)
        self.assertEqual(analyzer.classifier.frame_buffer_length, 0)
        self.assertIsNotNone(analyzer.analyze_frame(make_squat_frame(175)))

    def test_export_report(self):
        analyzer = self.make_analyzer()
        analyzer.initialize()
        self.feed(analyzer, [175, 175])
        report = analyzer.export_report()
        self.assertEqual(report["exercise"], "Bodyweight Squat")
        self.assertEqual(report["exercise_id"], "bodyweight_squat")
        self.assertEqual(report["metrics"]["total_frames"], 2)
        self.assertIn("timestamp", report)
        self.assertEqual(report["config"]["feedback"]["mode"], "hybrid")

    def test_destroy(self):
        analyzer = self.make_analyzer()
        analyzer.initialize()
        analyzer.destroy()
        self.assertFalse(analyzer.is_initialized)
        self.assertIsNone(analyzer.analyze_frame(make_squat_frame(175)))


if __name__ == "__main__":
    unittest.main()
