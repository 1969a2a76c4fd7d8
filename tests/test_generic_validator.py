import unittest
from unittest import mock

from form_engine.exercise_analysis import create_validator
from form_engine.exercise_analysis.base_validator import LANDMARKS_NOT_VISIBLE, Severity
from form_engine.exercise_analysis.generic_validator import GenericValidator, evaluate_condition
from form_engine.exercise_analysis.landmarks import PoseLandmark
from form_engine.exercise_analysis.validator_config import (
    AngleCondition,
    ConfigError,
    ValidatorConfig,
    compare,
    parse_condition,
)

from pose_fixtures import make_squat_frame, squat_angles, with_visibility

KNEE = ["left_hip", "left_knee", "left_ankle"]


def knee_bend_definition(**extra):
    definition = {
        "exercise_id": "knee_bend",
        "mode": "reps",
        "primary_angle": {"landmarks": KNEE, "name": "knee"},
        "states": [
            {"name": "UP", "min_frames": 3,
             "conditions": [{"type": "angle", "landmarks": KNEE, "operator": ">=", "value": 160}]},
            {"name": "DOWN", "min_frames": 3,
             "conditions": [{"type": "angle", "landmarks": KNEE, "operator": "<=", "value": 100}]},
        ],
        "rep_rule": {"sequence": ["UP", "DOWN", "UP"]},
        "initial_state": "UP",
        "checks": [
            {"id": "level_shoulders", "name": "Level shoulders", "severity": "high",
             "condition": {"type": "alignment", "landmarks": ["left_shoulder", "right_shoulder"],
                           "orientation": "horizontal", "tolerance": 0.05},
             "fail_message": "Keep your shoulders level"},
            {"id": "deep_enough", "name": "Depth", "severity": "medium", "active_in_states": ["DOWN"],
             "condition": {"type": "angle", "landmarks": KNEE, "operator": "<=", "value": 80},
             "fail_message": "Go deeper"},
        ],
    }
    definition.update(extra)
    return definition


def make_validator(**extra):
    return GenericValidator(ValidatorConfig.from_dict(knee_bend_definition(**extra)))


class TestConditions(unittest.TestCase):
    def test_invisible_landmark_fails_before_geometry(self):
        condition = AngleCondition((23, 25, 27), ">=", 0.0)
        frame = with_visibility(make_squat_frame(170), PoseLandmark.LEFT_KNEE, 0.4)
        with mock.patch.object(AngleCondition, "measure", side_effect=AssertionError("measured")):
            self.assertFalse(evaluate_condition(condition, frame, 0.7))

    def test_visible_landmarks_are_measured(self):
        condition = AngleCondition((23, 25, 27), ">=", 160.0)
        self.assertTrue(evaluate_condition(condition, make_squat_frame(170), 0.7))
        self.assertFalse(evaluate_condition(condition, make_squat_frame(150), 0.7))

    def test_between_accepts_value_pair(self):
        condition = parse_condition({"type": "angle", "landmarks": KNEE, "operator": "between", "value": [160, 180]})
        self.assertEqual((condition.value, condition.upper), (160.0, 180.0))
        self.assertTrue(evaluate_condition(condition, make_squat_frame(170), 0.7))
        self.assertFalse(evaluate_condition(condition, make_squat_frame(150), 0.7))

    def test_between_is_inclusive(self):
        self.assertTrue(compare(160.0, "between", 160.0, 180.0))
        self.assertTrue(compare(180.0, "between", 160.0, 180.0))
        self.assertFalse(compare(180.5, "between", 160.0, 180.0))
        self.assertFalse(compare(None, ">", 0.0))
        self.assertFalse(compare(float("nan"), "<", 1.0))

    def test_distance_in_cm_needs_a_scale(self):
        condition = parse_condition({"type": "distance", "landmarks": ["left_ankle", "right_ankle"],
                                     "axis": "x", "unit": "cm", "operator": "<", "value": 1000})
        frame = make_squat_frame(170)
        self.assertFalse(evaluate_condition(condition, frame, 0.7))
        self.assertTrue(evaluate_condition(condition, frame, 0.7, distance_scale=180.0))

    def test_symmetry_of_knee_angles(self):
        condition = parse_condition({
            "type": "symmetry",
            "left": ["left_hip", "left_knee", "left_ankle"],
            "right": ["right_hip", "right_knee", "right_ankle"],
            "max_difference": 10,
        })
        self.assertTrue(evaluate_condition(condition, make_squat_frame(150), 0.7))
        self.assertFalse(evaluate_condition(condition, make_squat_frame(150, left_knee_angle=120), 0.7))


class TestConfigParsing(unittest.TestCase):
    def test_unknown_operator(self):
        with self.assertRaises(ConfigError):
            parse_condition({"type": "angle", "landmarks": KNEE, "operator": "~", "value": 1})

    def test_between_needs_ordered_range(self):
        with self.assertRaises(ConfigError):
            parse_condition({"type": "angle", "landmarks": KNEE, "operator": "between", "range": [180, 160]})

    def test_rep_rule_must_reference_states(self):
        with self.assertRaises(ConfigError):
            ValidatorConfig.from_dict(knee_bend_definition(rep_rule={"sequence": ["UP", "SIDEWAYS"]}))

    def test_check_states_must_exist(self):
        definition = knee_bend_definition()
        definition["checks"][1]["active_in_states"] = ["BOTTOM"]
        with self.assertRaises(ConfigError):
            ValidatorConfig.from_dict(definition)

    def test_unknown_mode(self):
        with self.assertRaises(ConfigError):
            ValidatorConfig.from_dict(knee_bend_definition(mode="timed"))


class TestStateMachine(unittest.TestCase):
    def run_frames(self, validator, angles):
        return [validator.validate(make_squat_frame(a), i) for i, a in enumerate(angles)]

    def test_one_cycle_counts_one_rep(self):
        validator = make_validator()
        results = self.run_frames(validator, squat_angles())
        rep_issues = [i for r in results for i in r.issues if i.type == "rep_counted"]
        self.assertEqual(len(rep_issues), 1)
        self.assertEqual(rep_issues[0].severity, Severity.LOW)
        self.assertEqual(rep_issues[0].details["rep_number"], 1)
        self.assertEqual(validator.valid_reps, 1)
        self.assertEqual(validator.current_state, "UP")

    def test_reps_are_monotonic_over_cycles(self):
        validator = make_validator()
        counts = []
        for _ in range(3):
            counts.extend(r.valid_reps for r in self.run_frames(validator, squat_angles()))
        self.assertEqual(counts, sorted(counts))
        self.assertEqual(validator.valid_reps, 3)

    def test_dwell_blocks_early_transition(self):
        validator = make_validator()
        validator.validate(make_squat_frame(90))
        self.assertEqual(validator.current_state, "UP")
        for _ in range(3):
            validator.validate(make_squat_frame(90))
        self.assertEqual(validator.current_state, "DOWN")
        self.assertEqual(validator.state_history, ["UP", "DOWN"])

    def test_partial_movement_counts_nothing(self):
        validator = make_validator()
        self.run_frames(validator, squat_angles(top=170, bottom=120))
        self.assertEqual(validator.valid_reps, 0)
        self.assertEqual(validator.current_state, "UP")

    def test_state_without_conditions_is_entered_after_dwell(self):
        config = ValidatorConfig.from_dict({
            "exercise_id": "open_state",
            "initial_state": "A",
            "states": [
                {"name": "A", "min_frames": 2,
                 "conditions": [{"type": "angle", "landmarks": KNEE, "operator": "<", "value": 10}]},
                {"name": "B"},
            ],
        })
        validator = GenericValidator(config)
        states = [validator.validate(make_squat_frame(170)).current_state for _ in range(3)]
        self.assertEqual(states, ["A", "A", "B"])
        self.assertEqual(validator.state_history, ["A", "B"])

    def test_hold_mode_skips_state_machine(self):
        validator = make_validator(mode="hold")
        self.run_frames(validator, squat_angles())
        self.assertEqual(validator.current_state, "UP")
        self.assertEqual(validator.valid_reps, 0)

    def test_reset_restores_initial_state(self):
        validator = make_validator()
        self.run_frames(validator, squat_angles())
        validator.reset()
        self.assertEqual(validator.valid_reps, 0)
        self.assertEqual(validator.current_state, "UP")
        self.assertEqual(validator.state_history, ["UP"])
        self.assertEqual(validator.get_statistics()["total"], 0)


class TestChecks(unittest.TestCase):
    def test_missing_primary_landmarks(self):
        validator = make_validator()
        frame = with_visibility(make_squat_frame(170), PoseLandmark.LEFT_ANKLE, 0.2)
        result = validator.validate(frame)
        self.assertFalse(result.is_valid)
        self.assertFalse(result.landmarks_visible)
        self.assertEqual(result.summary, LANDMARKS_NOT_VISIBLE)
        self.assertEqual(result.issues, [])

    def test_failed_high_check_invalidates_frame(self):
        validator = make_validator()
        frame = make_squat_frame(170)
        frame[PoseLandmark.RIGHT_SHOULDER] = frame[PoseLandmark.RIGHT_SHOULDER]._replace(y=0.35)
        result = validator.validate(frame)
        self.assertFalse(result.is_valid)
        self.assertFalse(result.is_position_valid)
        self.assertEqual([i.type for i in result.issues], ["level_shoulders"])
        self.assertEqual(result.issues[0].message, "Keep your shoulders level")

    def test_check_only_runs_in_its_states(self):
        validator = make_validator()
        result = validator.validate(make_squat_frame(170))
        self.assertTrue(result.is_valid)
        self.assertEqual(result.issues, [])

        for _ in range(4):
            result = validator.validate(make_squat_frame(95))
        self.assertEqual(validator.current_state, "DOWN")
        self.assertEqual([i.type for i in result.issues], ["deep_enough"])
        self.assertTrue(result.is_valid)

    def test_statistics_and_summary(self):
        validator = make_validator()
        validator.validate(make_squat_frame(170))
        validator.validate(with_visibility(make_squat_frame(170), PoseLandmark.LEFT_KNEE, 0.1))
        stats = validator.get_statistics()
        self.assertEqual(stats["total"], 2)
        self.assertEqual(stats["valid"], 1)
        self.assertEqual(stats["accuracy"], 50.0)
        self.assertEqual(validator.get_summary()["exercise_id"], "knee_bend")

    def test_registry_builds_generic_validator(self):
        definition = knee_bend_definition()
        del definition["exercise_id"]
        validator = create_validator("generic", definition, exercise_id="knee_bend")
        self.assertIsInstance(validator, GenericValidator)
        self.assertEqual(validator.exercise_id, "knee_bend")


if __name__ == "__main__":
    unittest.main()
