"""
squat_validator.py - Hand-tuned validator for the bodyweight squat.

Tracks an UP/DOWN state machine on the smoothed average knee angle and checks trunk control,
bilateral knee symmetry and stance width on every frame.
"""
import logging
import time
from collections import deque
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np

from .base_validator import (
    BaseValidator, Severity, ValidationIssue, ValidationResult,
    has_blocking_issue, highest_severity,
)
from .landmarks import Landmark, PoseLandmark
from .pose_utils import calculate_angle, calculate_inclination, horizontal_distance, midpoint
from .registry import register_validator
from .validator_config import ConfigError

logger = logging.getLogger("SquatValidator")
if not logger.hasHandlers():
    handler = logging.StreamHandler()
    formatter = logging.Formatter('%(asctime)s %(levelname)s %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)


class SquatPhase:
    UP = "UP"
    DOWN = "DOWN"


KEY_LANDMARKS = [
    PoseLandmark.LEFT_SHOULDER, PoseLandmark.RIGHT_SHOULDER,
    PoseLandmark.LEFT_HIP, PoseLandmark.RIGHT_HIP,
    PoseLandmark.LEFT_KNEE, PoseLandmark.RIGHT_KNEE,
    PoseLandmark.LEFT_ANKLE, PoseLandmark.RIGHT_ANKLE,
]


@dataclass(frozen=True)
class SquatConfig:
    """Thresholds for the squat validator; None disables the corresponding rule."""
    min_confidence: float = 0.7
    knee_down_angle: Optional[float] = 120
    knee_up_angle: Optional[float] = 160
    max_trunk_inclination: Optional[float] = 20
    max_lateral_inclination: Optional[float] = 8
    max_angle_difference: Optional[float] = 10
    min_frames_in_state: int = 3
    min_foot_distance: Optional[float] = 0.1
    max_foot_distance: Optional[float] = 0.2
    min_foot_distance_cm: Optional[float] = None
    max_foot_distance_cm: Optional[float] = None
    feedback_cooldown_ms: int = 350
    smoothing_frames: int = 3
    history_length: int = 10

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "SquatConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigError(f"Unknown squat validator options: {unknown}")
        config = cls(**options)
        if config.knee_down_angle is not None and config.knee_up_angle is not None \
                and config.knee_down_angle >= config.knee_up_angle:
            raise ConfigError("knee_down_angle must be below knee_up_angle")
        if config.smoothing_frames < 1 or config.min_frames_in_state < 0:
            raise ConfigError("smoothing_frames must be >= 1 and min_frames_in_state >= 0")
        return config


class FeedbackGenerator:
    """Message templates for squat issues."""

    @staticmethod
    def lateral_lean(direction: str) -> str:
        side = "to the side" if direction == "neutral" else f"to the {direction}"
        return f"Trunk leaning {side} - keep your shoulders level"

    @staticmethod
    def forward_lean() -> str:
        return "Trunk leaning too far forward - keep a neutral spine"

    @staticmethod
    def knee_asymmetry(lower_side: str) -> str:
        return f"Knee asymmetry - {lower_side} knee is lower"

    @staticmethod
    def feet_too_close() -> str:
        return "Feet too close together - widen your stance"

    @staticmethod
    def feet_too_wide() -> str:
        return "Feet too far apart - bring your legs closer"

    @staticmethod
    def valid_rep(count: int) -> str:
        return f"Valid repetition #{count}!"

    @staticmethod
    def prepare_descent() -> str:
        return "Adjust your position - get ready to go down"

    @staticmethod
    def go_lower(down_angle: float) -> str:
        return f"Go lower - reach parallel (~{down_angle:.0f}°)"


@register_validator("bodyweight_squat", "squat")
class SquatBodyweightValidator(BaseValidator):

    def __init__(self, config: Optional[SquatConfig] = None, exercise_id: str = "bodyweight_squat",
                 clock: Callable[[], float] = time.time):
        self.config = config or SquatConfig()
        super().__init__(exercise_id, min_confidence=self.config.min_confidence)
        self._clock = clock
        self.reset()

    @classmethod
    def from_definition(cls, definition: Dict, exercise_id: str, **kwargs) -> "SquatBodyweightValidator":
        definition.pop("type", None)
        return cls(SquatConfig.from_dict(definition), exercise_id=exercise_id, **kwargs)

    def reset(self) -> None:
        self._state = SquatPhase.UP
        self._frames_in_state = 0
        self._valid_reps = 0
        self._bottom_reached = False
        self._depth_reached = False
        self._angle_history = deque(maxlen=self.config.history_length)
        self._last_feedback_time = None
        self.clear_statistics()

    @property
    def valid_reps(self) -> int:
        return self._valid_reps

    @property
    def current_state(self) -> str:
        return self._state

    @property
    def frames_in_state(self) -> int:
        return self._frames_in_state

    def validate(self, frame: Sequence[Landmark], frame_index: int = 0) -> ValidationResult:
        angles = self._calculate_key_angles(frame)
        if angles is None:
            return self.landmarks_not_visible()

        self._angle_history.append(angles)
        rep_issue = self._update_state(angles)

        issues: List[ValidationIssue] = []
        for check in (self._validate_trunk_control, self._validate_bilateral_symmetry):
            issue = check(angles)
            if issue is not None:
                issues.append(issue)
        issue = self._validate_foot_distance(frame)
        if issue is not None:
            issues.append(issue)
        is_position_valid = not issues

        if rep_issue is not None:
            issues.append(rep_issue)
        feedback = self._position_feedback(angles)
        if feedback is not None:
            issues.append(feedback)

        return self._record(ValidationResult(
            is_valid=not has_blocking_issue(issues),
            issues=issues,
            summary=self._build_summary(issues),
            valid_reps=self._valid_reps,
            current_state=self._state,
            is_position_valid=is_position_valid,
            landmarks_visible=True,
            angles=angles,
        ))

    # --- Angles ---
    def _calculate_key_angles(self, frame: Sequence[Landmark]) -> Optional[Dict[str, float]]:
        points = self.visible_landmarks(frame, KEY_LANDMARKS)
        if points is None:
            return None
        l_sh, r_sh, l_hip, r_hip, l_knee, r_knee, l_ankle, r_ankle = points
        angles = {
            "left_knee": calculate_angle(l_hip, l_knee, l_ankle),
            "right_knee": calculate_angle(r_hip, r_knee, r_ankle),
            "left_hip": calculate_angle(l_knee, l_hip, l_sh),
            "right_hip": calculate_angle(r_knee, r_hip, r_sh),
            "trunk_inclination": calculate_inclination(midpoint(l_sh, r_sh), midpoint(l_hip, r_hip)),
            "lateral_inclination": max(
                float(np.degrees(np.arctan2(abs(r_sh.y - l_sh.y), abs(r_sh.x - l_sh.x)))),
                float(np.degrees(np.arctan2(abs(r_hip.y - l_hip.y), abs(r_hip.x - l_hip.x)))),
            ),
            "lateral_offset": r_sh.y - l_sh.y,
        }
        if np.isnan(angles["left_knee"]) or np.isnan(angles["right_knee"]):
            return None
        angles["knee_avg"] = (angles["left_knee"] + angles["right_knee"]) / 2
        return angles

    def smoothed_knee_angle(self) -> float:
        recent = list(self._angle_history)[-self.config.smoothing_frames:]
        return float(np.mean([a["knee_avg"] for a in recent]))

    # --- State machine ---
    def _update_state(self, angles: Dict[str, float]) -> Optional[ValidationIssue]:
        smoothed = self.smoothed_knee_angle()
        dwell_met = self._frames_in_state >= self.config.min_frames_in_state
        new_state = self._state
        if self._state == SquatPhase.UP and self.config.knee_down_angle is not None \
                and smoothed <= self.config.knee_down_angle and dwell_met:
            new_state = SquatPhase.DOWN
        elif self._state == SquatPhase.DOWN and self.config.knee_up_angle is not None \
                and smoothed >= self.config.knee_up_angle and dwell_met:
            new_state = SquatPhase.UP

        if new_state == self._state:
            self._frames_in_state += 1
            return None

        logger.debug(f"Squat {self._state} -> {new_state} (smoothed knee {smoothed:.1f})")
        self._state = new_state
        self._frames_in_state = 0
        if new_state == SquatPhase.DOWN:
            self._bottom_reached = True
            self._depth_reached = False
            return None
        return self._detect_valid_repetition(angles)

    def _detect_valid_repetition(self, angles: Dict[str, float]) -> Optional[ValidationIssue]:
        if not self._bottom_reached:
            return None
        self._bottom_reached = False
        self._valid_reps += 1
        logger.info(f"Squat repetition {self._valid_reps} counted")
        return ValidationIssue(
            type="valid_repetition",
            message=FeedbackGenerator.valid_rep(self._valid_reps),
            severity=Severity.LOW,
            details={"total_reps": self._valid_reps, "knee_angle": round(angles["knee_avg"], 1)},
        )

    # --- Checks ---
    def _validate_trunk_control(self, angles: Dict[str, float]) -> Optional[ValidationIssue]:
        cfg = self.config
        if cfg.max_lateral_inclination is not None and angles["lateral_inclination"] > cfg.max_lateral_inclination:
            offset = angles["lateral_offset"]
            direction = "neutral" if abs(offset) < 0.005 else ("right" if offset > 0 else "left")
            return ValidationIssue(
                "trunk_lateral_inclination", FeedbackGenerator.lateral_lean(direction), Severity.HIGH,
                {"lateral_inclination": round(angles["lateral_inclination"], 1),
                 "max_allowed": cfg.max_lateral_inclination, "direction": direction},
            )
        if cfg.max_trunk_inclination is not None and angles["trunk_inclination"] > cfg.max_trunk_inclination:
            return ValidationIssue(
                "trunk_frontal_inclination", FeedbackGenerator.forward_lean(), Severity.HIGH,
                {"trunk_inclination": round(angles["trunk_inclination"], 1),
                 "max_allowed": cfg.max_trunk_inclination},
            )
        return None

    def _validate_bilateral_symmetry(self, angles: Dict[str, float]) -> Optional[ValidationIssue]:
        if self.config.max_angle_difference is None:
            return None
        difference = abs(angles["left_knee"] - angles["right_knee"])
        if difference <= self.config.max_angle_difference:
            return None
        lower_side = "left" if angles["left_knee"] < angles["right_knee"] else "right"
        return ValidationIssue(
            "bilateral_symmetry", FeedbackGenerator.knee_asymmetry(lower_side), Severity.HIGH,
            {"difference": round(difference, 1), "max_allowed": self.config.max_angle_difference,
             "lower_side": lower_side},
        )

    def _validate_foot_distance(self, frame: Sequence[Landmark]) -> Optional[ValidationIssue]:
        distance = horizontal_distance(frame[PoseLandmark.LEFT_ANKLE], frame[PoseLandmark.RIGHT_ANKLE])
        cfg = self.config
        if self.distance_scale and (cfg.min_foot_distance_cm is not None or cfg.max_foot_distance_cm is not None):
            distance, low, high, unit = distance * self.distance_scale, cfg.min_foot_distance_cm, cfg.max_foot_distance_cm, "cm"
        else:
            low, high, unit = cfg.min_foot_distance, cfg.max_foot_distance, "normalized"
        details = {"distance": round(distance, 3), "unit": unit}
        if low is not None and distance < low:
            return ValidationIssue("foot_distance", FeedbackGenerator.feet_too_close(), Severity.HIGH,
                                   {**details, "min_required": low})
        if high is not None and distance > high:
            return ValidationIssue("foot_distance", FeedbackGenerator.feet_too_wide(), Severity.HIGH,
                                   {**details, "max_allowed": high})
        return None

    def _position_feedback(self, angles: Dict[str, float]) -> Optional[ValidationIssue]:
        """Depth cues; medium cues respect the feedback cooldown, high cues always pass."""
        cfg = self.config
        if cfg.knee_down_angle is None or cfg.knee_up_angle is None:
            return None
        knee = angles["knee_avg"]
        message, severity = None, None
        if self._state == SquatPhase.UP and cfg.knee_down_angle < knee < cfg.knee_up_angle and not self._bottom_reached:
            message, severity = FeedbackGenerator.prepare_descent(), Severity.MEDIUM
        elif self._state == SquatPhase.DOWN:
            if knee <= cfg.knee_down_angle:
                self._depth_reached = True
            elif not self._depth_reached:
                message, severity = FeedbackGenerator.go_lower(cfg.knee_down_angle), Severity.HIGH
        if message is None:
            return None

        now = self._clock()
        cooling_down = (self._last_feedback_time is not None
                        and (now - self._last_feedback_time) * 1000 < cfg.feedback_cooldown_ms)
        if cooling_down and severity != Severity.HIGH:
            return None
        self._last_feedback_time = now
        return ValidationIssue("position_feedback", message, severity,
                               {"knee_angle": round(knee, 1), "state": self._state})

    def _build_summary(self, issues: List[ValidationIssue]) -> Dict[str, Any]:
        problems = [i for i in issues if i.type != "valid_repetition"]
        return {
            "total_issues": len(problems),
            "priority": highest_severity(problems).value,
            "message": (f"Correct execution! Repetitions: {self._valid_reps}" if not problems
                        else f"{len(problems)} issue(s) detected"),
            "valid_reps": self._valid_reps,
            "current_state": self._state,
            "frames_in_state": self._frames_in_state,
        }

    def get_summary(self) -> Dict[str, Any]:
        return {
            "exercise_id": self.exercise_id,
            "current_state": self._state,
            "frames_in_state": self._frames_in_state,
            "valid_reps": self._valid_reps,
        }
