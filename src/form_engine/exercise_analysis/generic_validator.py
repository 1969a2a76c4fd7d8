"""
generic_validator.py - Data-driven heuristic validator.

Every exercise described purely by a ValidatorConfig (states with entry conditions, a rep rule,
a primary angle and per-frame checks) is validated by this one class.
"""
import logging
import time
from collections import deque
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence

import numpy as np

from .base_validator import (
    BaseValidator, Severity, ValidationIssue, ValidationResult,
    has_blocking_issue, highest_severity,
)
from .landmarks import Landmark
from .pose_utils import calculate_angle, check_landmark_visibility
from .registry import register_validator
from .validator_config import Condition, ValidatorConfig, compare

logger = logging.getLogger("GenericValidator")
if not logger.hasHandlers():
    handler = logging.StreamHandler()
    formatter = logging.Formatter('%(asctime)s %(levelname)s %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)


class AngleSample(NamedTuple):
    timestamp: float
    frame_index: int
    angle: float


def evaluate_condition(condition: Condition, frame: Sequence[Landmark], min_confidence: float,
                       distance_scale: Optional[float] = None) -> bool:
    """
    Evaluate one condition against a frame.

    Any referenced landmark that is missing or not visible above min_confidence makes the
    condition False before any geometry is computed.
    """
    if not check_landmark_visibility(frame, condition.landmark_indices(), min_confidence):
        return False
    measured = condition.measure(frame, distance_scale)
    return compare(measured, condition.operator, condition.value, condition.upper)


@register_validator("generic")
class GenericValidator(BaseValidator):
    """State machine + checks validator driven entirely by a ValidatorConfig."""

    def __init__(self, config: ValidatorConfig, clock: Callable[[], float] = time.time):
        super().__init__(config.exercise_id, min_confidence=config.min_confidence)
        self.config = config
        self._clock = clock
        self._initial_state = config.initial_state or (config.states[0].name if config.states else None)
        self.reset()

    @classmethod
    def from_definition(cls, definition: Dict, exercise_id: str, **kwargs) -> "GenericValidator":
        definition.setdefault("exercise_id", exercise_id)
        return cls(ValidatorConfig.from_dict(definition), **kwargs)

    def reset(self) -> None:
        self._current_state = self._initial_state
        self._frames_in_state = 0
        self._state_history = deque(
            [self._initial_state] if self._initial_state else [],
            maxlen=self.config.state_history_length,
        )
        self._valid_reps = 0
        self._is_position_valid = True
        self._angle_history = deque(maxlen=self.config.angle_history_length)
        self.clear_statistics()

    @property
    def valid_reps(self) -> int:
        return self._valid_reps

    @property
    def current_state(self) -> Optional[str]:
        return self._current_state

    @property
    def frames_in_state(self) -> int:
        return self._frames_in_state

    @property
    def state_history(self) -> List[str]:
        return list(self._state_history)

    @property
    def is_position_valid(self) -> bool:
        return self._is_position_valid

    def evaluate(self, condition: Condition, frame: Sequence[Landmark]) -> bool:
        return evaluate_condition(condition, frame, self.min_confidence, self.distance_scale)

    def smoothed_angle(self) -> Optional[float]:
        if not self._angle_history or self.config.primary_angle is None:
            return None
        window = list(self._angle_history)[-self.config.primary_angle.smoothing:]
        return float(np.mean([s.angle for s in window]))

    def validate(self, frame: Sequence[Landmark], frame_index: int = 0) -> ValidationResult:
        angles: Dict[str, float] = {}
        primary = self.config.primary_angle
        if primary is not None:
            points = self.visible_landmarks(frame, primary.landmarks)
            if points is None:
                logger.debug(f"[{self.exercise_id}] frame {frame_index}: primary angle landmarks not visible")
                return self.landmarks_not_visible()
            raw = calculate_angle(*points)
            if np.isnan(raw):
                return self.landmarks_not_visible()
            self._angle_history.append(AngleSample(self._clock(), frame_index, raw))
            angles[primary.name] = raw
            angles[f"{primary.name}_smoothed"] = self.smoothed_angle()

        issues: List[ValidationIssue] = []
        if self.config.mode in ("reps", "hybrid") and self.config.states:
            if self._update_state_machine(frame):
                rep_issue = self._check_rep_completion()
                if rep_issue is not None:
                    issues.append(rep_issue)

        failed = self._run_checks(frame)
        self._is_position_valid = not failed
        issues = failed + issues

        return self._record(ValidationResult(
            is_valid=not has_blocking_issue(issues),
            issues=issues,
            summary=self._build_summary(issues),
            valid_reps=self._valid_reps,
            current_state=self._current_state,
            is_position_valid=self._is_position_valid,
            landmarks_visible=True,
            angles=angles,
        ))

    def _update_state_machine(self, frame: Sequence[Landmark]) -> bool:
        current = self.config.get_state(self._current_state)
        dwell_met = current is None or self._frames_in_state >= current.min_frames
        if dwell_met:
            for state in self.config.states:
                if state.name == self._current_state:
                    continue
                if all(self.evaluate(c, frame) for c in state.conditions):
                    logger.debug(f"[{self.exercise_id}] {self._current_state} -> {state.name} "
                                 f"after {self._frames_in_state} frames")
                    self._current_state = state.name
                    self._frames_in_state = 0
                    self._state_history.append(state.name)
                    return True
        self._frames_in_state += 1
        return False

    def _check_rep_completion(self) -> Optional[ValidationIssue]:
        rule = self.config.rep_rule
        if rule is None:
            return None
        sequence = list(rule.sequence)
        history = list(self._state_history)
        if history[-len(sequence):] != sequence:
            return None
        self._valid_reps += 1
        self._state_history.clear()
        self._state_history.append(self._current_state)
        logger.info(f"[{self.exercise_id}] Repetition {self._valid_reps} counted")
        return ValidationIssue(
            type="rep_counted",
            message=f"Repetition {self._valid_reps} complete!",
            severity=Severity.LOW,
            details={"rep_number": self._valid_reps},
        )

    def _run_checks(self, frame: Sequence[Landmark]) -> List[ValidationIssue]:
        failed = []
        for check in self.config.checks:
            if not check.is_active(self._current_state):
                continue
            if not self.evaluate(check.condition, frame):
                failed.append(ValidationIssue(
                    type=check.id,
                    message=check.fail_message,
                    severity=check.severity,
                    details={"check": check.name, "state": self._current_state},
                ))
        return failed

    def _build_summary(self, issues: List[ValidationIssue]) -> Dict:
        problems = [i for i in issues if i.type != "rep_counted"]
        return {
            "total_issues": len(problems),
            "priority": highest_severity(problems).value,
            "message": "Correct execution" if not problems else f"{len(problems)} issue(s) detected",
            "valid_reps": self._valid_reps,
            "current_state": self._current_state,
            "frames_in_state": self._frames_in_state,
        }

    def get_summary(self) -> Dict:
        return {
            "exercise_id": self.exercise_id,
            "mode": self.config.mode,
            "current_state": self._current_state,
            "frames_in_state": self._frames_in_state,
            "valid_reps": self._valid_reps,
            "is_position_valid": self._is_position_valid,
            "state_history": list(self._state_history),
            "angle_history": [s.angle for s in self._angle_history],
        }
