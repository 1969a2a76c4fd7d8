import json
import os
import tempfile
import unittest

from form_engine.analyzer import AnalyzerConfig, ExerciseAnalyzer
from form_engine.exercise_analysis import get_registered_exercises
from form_engine.exercise_analysis.config_utils import list_available_exercises, load_exercise_config
from form_engine.exercise_analysis.generic_validator import GenericValidator
from form_engine.exercise_analysis.registry import UnknownValidatorError, create_validator
from form_engine.exercise_analysis.validator_config import ConfigError
from form_engine.main import main, read_frames

from pose_fixtures import make_squat_frame, squat_angles


class TestShippedExercises(unittest.TestCase):
    def test_listed(self):
        self.assertEqual(list_available_exercises(), ["bodyweight_squat", "hip_abduction", "plank"])

    def test_every_shipped_document_builds_an_analyzer(self):
        for exercise_id in list_available_exercises():
            with self.subTest(exercise=exercise_id):
                analyzer = ExerciseAnalyzer(AnalyzerConfig.from_exercise(exercise_id))
                self.assertTrue(analyzer.initialize())
                self.assertIsNotNone(analyzer.validator)
                self.assertIsNone(analyzer.classifier)

    def test_generic_documents(self):
        plank = AnalyzerConfig.from_exercise("plank")
        self.assertEqual(plank.feedback.mode, "heuristic_only")
        self.assertEqual(plank.ml.prediction_interval, 5)
        definition = dict(plank.validator)
        validator = create_validator(definition.pop("type"), definition, plank.exercise_id)
        self.assertIsInstance(validator, GenericValidator)
        self.assertEqual(validator.config.mode, "hold")

    def test_registry_contents(self):
        self.assertTrue({"generic", "bodyweight_squat", "squat"} <= set(get_registered_exercises()))
        with self.assertRaises(UnknownValidatorError):
            create_validator("pistol_squat")


class TestOverrides(unittest.TestCase):
    def test_overrides_merge_into_sections(self):
        config = AnalyzerConfig.from_exercise("bodyweight_squat", {
            "feedback": {"mode": "ml_only"},
            "ml": {"threshold": 0.08},
            "validator": {"knee_down_angle": 110},
        })
        self.assertEqual(config.feedback.mode, "ml_only")
        self.assertEqual(config.feedback.ml_weight, 0.6)
        self.assertEqual(config.ml.threshold, 0.08)
        self.assertEqual(config.ml.max_frames, 60)
        self.assertEqual(config.validator["knee_down_angle"], 110)
        self.assertEqual(config.validator["type"], "bodyweight_squat")

    def test_unknown_ml_option(self):
        with self.assertRaises(ConfigError):
            AnalyzerConfig.from_exercise("bodyweight_squat", {"ml": {"window": 10}})

    def test_bad_feedback_mode(self):
        with self.assertRaises(ConfigError):
            AnalyzerConfig.from_exercise("bodyweight_squat", {"feedback": {"mode": "majority"}})

    def test_height_calibration_needs_height(self):
        with self.assertRaises(ConfigError):
            AnalyzerConfig.from_exercise("bodyweight_squat", {"calibration": {"mode": "height"}})


class TestDocumentLoading(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def write(self, name, content):
        path = os.path.join(self.tmp.name, name)
        with open(path, "w") as f:
            f.write(content if isinstance(content, str) else json.dumps(content))
        return path

    def test_unknown_exercise(self):
        with self.assertRaises(ConfigError):
            load_exercise_config("handstand")

    def test_invalid_json(self):
        with self.assertRaises(ConfigError):
            load_exercise_config(config_path=self.write("broken.json", "{not json"))

    def test_missing_exercise_type(self):
        with self.assertRaises(ConfigError):
            load_exercise_config(config_path=self.write("doc.json", {"display_name": "Lunge"}))

    def test_relative_model_paths_resolve_next_to_document(self):
        path = self.write("lunge.json", {
            "exercise_type": "lunge",
            "model": {"path": "models/lunge.onnx", "external_data": "https://example.org/lunge.onnx.data"},
        })
        document = load_exercise_config(config_path=path)
        self.assertEqual(document["model"]["path"], os.path.join(self.tmp.name, "models", "lunge.onnx"))
        self.assertEqual(document["model"]["external_data"], "https://example.org/lunge.onnx.data")


class TestReplayCli(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def test_replay_writes_report(self):
        frames_path = os.path.join(self.tmp.name, "squat.jsonl")
        with open(frames_path, "w") as f:
            for angle in squat_angles():
                frame = [[lm.x, lm.y, lm.z, lm.visibility] for lm in make_squat_frame(angle)]
                f.write(json.dumps({"landmarks": frame}) + "\n")
        report_path = os.path.join(self.tmp.name, "report.json")

        self.assertEqual(len(list(read_frames(frames_path))), 60)
        code = main(["--exercise", "bodyweight_squat", "--landmarks", frames_path,
                     "--fps", "30", "--report", report_path])
        self.assertEqual(code, 0)
        with open(report_path) as f:
            report = json.load(f)
        self.assertEqual(report["exercise_id"], "bodyweight_squat")
        self.assertGreater(report["metrics"]["total_frames"], 0)

    def test_missing_landmark_file(self):
        self.assertEqual(main(["--landmarks", os.path.join(self.tmp.name, "none.json")]), 1)


if __name__ == "__main__":
    unittest.main()
