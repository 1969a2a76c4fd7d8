"""
validator_config.py - Declarative validator definitions (states, rep rule, checks, conditions).

Definitions are parsed once from plain dicts (usually the "validator" section of an exercise
JSON document) into frozen dataclasses and validated before a validator is built from them.
"""
import math
from dataclasses import dataclass
from typing import Any, ClassVar, List, Mapping, Optional, Sequence, Tuple, Union

from .base_validator import Severity
from .landmarks import Landmark, resolve_landmark_index
from .pose_utils import (
    calculate_angle, calculate_distance, calculate_distance_2d,
    get_landmark, horizontal_distance, vertical_distance,
)

OPERATORS = ("<", ">", "<=", ">=", "between")
MODES = ("reps", "hold", "hybrid")


class ConfigError(ValueError):
    """Raised when an exercise or validator definition is malformed."""


def compare(measured: Optional[float], operator: str, value: float, upper: Optional[float] = None) -> bool:
    if measured is None or math.isnan(measured):
        return False
    if operator == "<":
        return measured < value
    if operator == ">":
        return measured > value
    if operator == "<=":
        return measured <= value
    if operator == ">=":
        return measured >= value
    if operator == "between":
        return value <= measured <= upper
    raise ConfigError(f"Unsupported operator: {operator}")


@dataclass(frozen=True)
class AngleCondition:
    kind: ClassVar[str] = "angle"
    landmarks: Tuple[int, int, int]
    operator: str
    value: float
    upper: Optional[float] = None

    def landmark_indices(self) -> Tuple[int, ...]:
        return self.landmarks

    def measure(self, frame: Sequence[Landmark], distance_scale: Optional[float] = None) -> Optional[float]:
        a, b, c = (get_landmark(frame, i) for i in self.landmarks)
        return calculate_angle(a, b, c)


@dataclass(frozen=True)
class DistanceCondition:
    kind: ClassVar[str] = "distance"
    landmarks: Tuple[int, int]
    operator: str
    value: float
    upper: Optional[float] = None
    axis: str = "3d"          # 3d, 2d, x or y
    unit: str = "normalized"  # normalized or cm

    def landmark_indices(self) -> Tuple[int, ...]:
        return self.landmarks

    def measure(self, frame: Sequence[Landmark], distance_scale: Optional[float] = None) -> Optional[float]:
        a, b = (get_landmark(frame, i) for i in self.landmarks)
        if self.axis == "2d":
            distance = calculate_distance_2d(a, b)
        elif self.axis == "x":
            distance = horizontal_distance(a, b)
        elif self.axis == "y":
            distance = vertical_distance(a, b)
        else:
            distance = calculate_distance(a, b)
        if self.unit == "cm":
            # No physical scale until body-height calibration has produced one
            if not distance_scale:
                return None
            return distance * distance_scale
        return distance


@dataclass(frozen=True)
class AlignmentCondition:
    kind: ClassVar[str] = "alignment"
    landmarks: Tuple[int, int]
    orientation: str  # vertical: same x, horizontal: same y
    value: float
    operator: str = "<"
    upper: Optional[float] = None

    def landmark_indices(self) -> Tuple[int, ...]:
        return self.landmarks

    def measure(self, frame: Sequence[Landmark], distance_scale: Optional[float] = None) -> Optional[float]:
        a, b = (get_landmark(frame, i) for i in self.landmarks)
        if self.orientation == "vertical":
            return horizontal_distance(a, b)
        return vertical_distance(a, b)


@dataclass(frozen=True)
class SymmetryCondition:
    """Compares a left/right pair of angles (triples) or distances (pairs)."""
    kind: ClassVar[str] = "symmetry"
    left: Tuple[int, ...]
    right: Tuple[int, ...]
    value: float
    operator: str = "<="
    upper: Optional[float] = None

    def landmark_indices(self) -> Tuple[int, ...]:
        return self.left + self.right

    def _side(self, frame: Sequence[Landmark], indices: Tuple[int, ...]) -> float:
        points = [get_landmark(frame, i) for i in indices]
        if len(points) == 3:
            return calculate_angle(*points)
        return calculate_distance_2d(*points)

    def measure(self, frame: Sequence[Landmark], distance_scale: Optional[float] = None) -> Optional[float]:
        return abs(self._side(frame, self.left) - self._side(frame, self.right))


Condition = Union[AngleCondition, DistanceCondition, AlignmentCondition, SymmetryCondition]


@dataclass(frozen=True)
class StateDefinition:
    name: str
    conditions: Tuple[Condition, ...] = ()
    min_frames: int = 0


@dataclass(frozen=True)
class RepRule:
    sequence: Tuple[str, ...]


@dataclass(frozen=True)
class PrimaryAngle:
    landmarks: Tuple[int, int, int]
    smoothing: int = 3
    name: str = "primary_angle"


@dataclass(frozen=True)
class CheckDefinition:
    id: str
    name: str
    severity: Severity
    condition: Condition
    active_in_states: Tuple[str, ...] = ()
    pass_message: str = ""
    fail_message: str = ""

    def is_active(self, state: Optional[str]) -> bool:
        return not self.active_in_states or state in self.active_in_states


@dataclass(frozen=True)
class ValidatorConfig:
    exercise_id: str
    mode: str = "reps"
    states: Tuple[StateDefinition, ...] = ()
    rep_rule: Optional[RepRule] = None
    primary_angle: Optional[PrimaryAngle] = None
    checks: Tuple[CheckDefinition, ...] = ()
    min_confidence: float = 0.7
    initial_state: Optional[str] = None
    angle_history_length: int = 10
    state_history_length: int = 20
    feedback_cooldown_ms: int = 350

    @property
    def state_names(self) -> List[str]:
        return [s.name for s in self.states]

    def get_state(self, name: Optional[str]) -> Optional[StateDefinition]:
        for state in self.states:
            if state.name == name:
                return state
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ValidatorConfig":
        try:
            exercise_id = data["exercise_id"]
        except KeyError:
            raise ConfigError("Validator definition needs an 'exercise_id'") from None
        primary = data.get("primary_angle")
        config = cls(
            exercise_id=exercise_id,
            mode=data.get("mode", "reps"),
            states=tuple(_parse_state(s) for s in data.get("states", [])),
            rep_rule=RepRule(tuple(data["rep_rule"]["sequence"])) if data.get("rep_rule") else None,
            primary_angle=PrimaryAngle(
                landmarks=_indices(primary["landmarks"], 3, "primary_angle"),
                smoothing=int(primary.get("smoothing", 3)),
                name=primary.get("name", "primary_angle"),
            ) if primary else None,
            checks=tuple(_parse_check(c) for c in data.get("checks", [])),
            min_confidence=float(data.get("min_confidence", 0.7)),
            initial_state=data.get("initial_state"),
            angle_history_length=int(data.get("angle_history_length", 10)),
            state_history_length=int(data.get("state_history_length", 20)),
            feedback_cooldown_ms=int(data.get("feedback_cooldown_ms", 350)),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Check cross-references and ranges; raise ConfigError on the first problem."""
        if self.mode not in MODES:
            raise ConfigError(f"Unknown validator mode '{self.mode}', expected one of {MODES}")
        names = self.state_names
        if len(set(names)) != len(names):
            raise ConfigError(f"Duplicate state names in {self.exercise_id}: {names}")
        if self.mode in ("reps", "hybrid") and self.rep_rule and not self.states:
            raise ConfigError(f"{self.exercise_id}: a rep_rule needs states")
        if self.rep_rule:
            unknown = [s for s in self.rep_rule.sequence if s not in names]
            if unknown or len(self.rep_rule.sequence) < 2:
                raise ConfigError(f"{self.exercise_id}: invalid rep_rule sequence {self.rep_rule.sequence}")
        if self.initial_state is not None and self.initial_state not in names:
            raise ConfigError(f"{self.exercise_id}: initial_state '{self.initial_state}' is not a declared state")
        for check in self.checks:
            unknown = [s for s in check.active_in_states if s not in names]
            if unknown:
                raise ConfigError(f"Check '{check.id}' references unknown states {unknown}")
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ConfigError(f"min_confidence must be within [0, 1], got {self.min_confidence}")
        if self.primary_angle and self.primary_angle.smoothing < 1:
            raise ConfigError("primary_angle.smoothing must be at least 1")
        if self.angle_history_length < 1 or self.state_history_length < 1:
            raise ConfigError("History lengths must be positive")


# --- Parsing helpers ---
def _indices(values: Sequence[Any], expected: Union[int, Tuple[int, ...]], where: str) -> Tuple[int, ...]:
    allowed = expected if isinstance(expected, tuple) else (expected,)
    if len(values) not in allowed:
        raise ConfigError(f"{where}: expected {' or '.join(map(str, allowed))} landmarks, got {len(values)}")
    try:
        return tuple(resolve_landmark_index(v) for v in values)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{where}: {e}") from None


def _threshold(data: Mapping[str, Any], where: str, value_key: str = "value") -> Tuple[str, float, Optional[float]]:
    operator = data.get("operator", "<")
    if operator not in OPERATORS:
        raise ConfigError(f"{where}: unsupported operator '{operator}'")
    if operator == "between":
        bounds = data.get("range")
        if bounds is None and isinstance(data.get(value_key), (list, tuple)):
            bounds = data[value_key]
        if not bounds or len(bounds) != 2 or float(bounds[0]) > float(bounds[1]):
            raise ConfigError(f"{where}: 'between' needs a [low, high] range or value")
        return operator, float(bounds[0]), float(bounds[1])
    if value_key not in data:
        raise ConfigError(f"{where}: missing '{value_key}'")
    return operator, float(data[value_key]), None


def parse_condition(data: Mapping[str, Any]) -> Condition:
    kind = data.get("type")
    if kind == "angle":
        operator, value, upper = _threshold(data, "angle condition")
        return AngleCondition(_indices(data["landmarks"], 3, "angle condition"), operator, value, upper)
    if kind == "distance":
        operator, value, upper = _threshold(data, "distance condition")
        axis = data.get("axis", "3d")
        unit = data.get("unit", "normalized")
        if axis not in ("3d", "2d", "x", "y") or unit not in ("normalized", "cm"):
            raise ConfigError(f"distance condition: bad axis '{axis}' or unit '{unit}'")
        return DistanceCondition(_indices(data["landmarks"], 2, "distance condition"),
                                 operator, value, upper, axis=axis, unit=unit)
    if kind == "alignment":
        orientation = data.get("orientation", "vertical")
        if orientation not in ("vertical", "horizontal"):
            raise ConfigError(f"alignment condition: bad orientation '{orientation}'")
        operator, value, upper = _threshold({"operator": "<", **data}, "alignment condition", "tolerance")
        return AlignmentCondition(_indices(data["landmarks"], 2, "alignment condition"),
                                  orientation, value, operator, upper)
    if kind == "symmetry":
        left = _indices(data["left"], (2, 3), "symmetry condition")
        right = _indices(data["right"], (2, 3), "symmetry condition")
        if len(left) != len(right):
            raise ConfigError("symmetry condition: left and right must have the same shape")
        operator, value, upper = _threshold({"operator": "<=", **data}, "symmetry condition", "max_difference")
        return SymmetryCondition(left, right, value, operator, upper)
    raise ConfigError(f"Unknown condition type: {kind!r}")


def _parse_state(data: Mapping[str, Any]) -> StateDefinition:
    if "name" not in data:
        raise ConfigError("State definition needs a 'name'")
    return StateDefinition(
        name=data["name"],
        conditions=tuple(parse_condition(c) for c in data.get("conditions", [])),
        min_frames=int(data.get("min_frames", 0)),
    )


def _parse_check(data: Mapping[str, Any]) -> CheckDefinition:
    try:
        severity = Severity(data.get("severity", "medium"))
    except ValueError:
        raise ConfigError(f"Check '{data.get('id')}' has unknown severity {data.get('severity')!r}") from None
    if "id" not in data or "condition" not in data:
        raise ConfigError("Check definition needs an 'id' and a 'condition'")
    return CheckDefinition(
        id=data["id"],
        name=data.get("name", data["id"]),
        severity=severity,
        condition=parse_condition(data["condition"]),
        active_in_states=tuple(data.get("active_in_states", [])),
        pass_message=data.get("pass_message", ""),
        fail_message=data.get("fail_message", data.get("name", data["id"])),
    )

