from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .landmarks import Landmark
from .pose_utils import get_landmark, is_visible


class Severity(str, Enum):
    """Issue severity, ordered critical -> low."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}

BLOCKING_SEVERITIES = (Severity.CRITICAL, Severity.HIGH)

LANDMARKS_NOT_VISIBLE = "landmarks not visible"


@dataclass(frozen=True)
class ValidationIssue:
    """One problem (or notable event, such as a counted rep) found in a frame."""
    type: str
    message: str
    severity: Severity
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one frame."""
    is_valid: bool
    issues: List[ValidationIssue]
    summary: Any
    valid_reps: int
    current_state: Optional[str]
    is_position_valid: bool = False
    landmarks_visible: bool = True
    angles: Dict[str, float] = field(default_factory=dict)

    @property
    def has_critical(self) -> bool:
        return any(issue.severity == Severity.CRITICAL for issue in self.issues)


def has_blocking_issue(issues: Sequence[ValidationIssue]) -> bool:
    return any(issue.severity in BLOCKING_SEVERITIES for issue in issues)


def highest_severity(issues: Sequence[ValidationIssue]) -> Severity:
    if not issues:
        return Severity.LOW
    return min((issue.severity for issue in issues), key=SEVERITY_RANK.__getitem__)


class BaseValidator(ABC):
    """Base class for heuristic form validators."""

    def __init__(self, exercise_id: str, min_confidence: float = 0.7, max_results: int = 100):
        """
        Args:
            exercise_id: Exercise identifier the validator is bound to
            min_confidence: Minimum landmark visibility for a landmark to be used
            max_results: How many per-frame results to keep for statistics
        """
        self.exercise_id = exercise_id
        self.min_confidence = min_confidence
        self.distance_scale: Optional[float] = None  # centimetres per normalized unit
        self._results = deque(maxlen=max_results)

    @abstractmethod
    def validate(self, frame: Sequence[Landmark], frame_index: int = 0) -> ValidationResult:
        """Validate one pose frame and return the issues found."""

    @abstractmethod
    def reset(self) -> None:
        """Return to the initial state, clearing counters and history."""

    @property
    @abstractmethod
    def valid_reps(self) -> int:
        pass

    @property
    @abstractmethod
    def current_state(self) -> Optional[str]:
        pass

    def set_distance_scale(self, cm_per_unit: Optional[float]) -> None:
        self.distance_scale = cm_per_unit

    # --- Landmark helpers ---
    def is_visible(self, landmark: Optional[Landmark]) -> bool:
        return is_visible(landmark, self.min_confidence)

    def visible_landmarks(self, frame: Sequence[Landmark], indices: Sequence[int]) -> Optional[List[Landmark]]:
        """Return the indexed landmarks, or None if any is missing or not visible."""
        landmarks = [get_landmark(frame, i) for i in indices]
        if all(self.is_visible(lm) for lm in landmarks):
            return landmarks
        return None

    def landmarks_not_visible(self) -> ValidationResult:
        result = ValidationResult(
            is_valid=False,
            issues=[],
            summary=LANDMARKS_NOT_VISIBLE,
            valid_reps=self.valid_reps,
            current_state=self.current_state,
            is_position_valid=False,
            landmarks_visible=False,
        )
        self._results.append(result)
        return result

    def _record(self, result: ValidationResult) -> ValidationResult:
        self._results.append(result)
        return result

    def clear_statistics(self) -> None:
        self._results.clear()

    def get_statistics(self) -> Dict[str, Any]:
        """Aggregate the retained per-frame results."""
        total = len(self._results)
        valid = sum(1 for r in self._results if r.is_valid)
        severity_counts = {s.value: 0 for s in Severity}
        for result in self._results:
            for issue in result.issues:
                severity_counts[issue.severity.value] += 1
        return {
            "total": total,
            "valid": valid,
            "invalid": total - valid,
            "accuracy": (valid / total * 100) if total else 0.0,
            "severity_counts": severity_counts,
            "valid_reps": self.valid_reps,
        }
