"""
landmarks.py - Landmark type, the 33-point body index scheme, and frame coercion.
"""
from enum import IntEnum
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Sequence


class Landmark(NamedTuple):
    """One skeletal joint in normalized image space."""
    x: float
    y: float
    z: float = 0.0
    visibility: Optional[float] = None


PoseFrame = Sequence[Landmark]


class PoseLandmark(IntEnum):
    NOSE = 0
    LEFT_EYE_INNER = 1
    LEFT_EYE = 2
    LEFT_EYE_OUTER = 3
    RIGHT_EYE_INNER = 4
    RIGHT_EYE = 5
    RIGHT_EYE_OUTER = 6
    LEFT_EAR = 7
    RIGHT_EAR = 8
    MOUTH_LEFT = 9
    MOUTH_RIGHT = 10
    LEFT_SHOULDER = 11
    RIGHT_SHOULDER = 12
    LEFT_ELBOW = 13
    RIGHT_ELBOW = 14
    LEFT_WRIST = 15
    RIGHT_WRIST = 16
    LEFT_PINKY = 17
    RIGHT_PINKY = 18
    LEFT_INDEX = 19
    RIGHT_INDEX = 20
    LEFT_THUMB = 21
    RIGHT_THUMB = 22
    LEFT_HIP = 23
    RIGHT_HIP = 24
    LEFT_KNEE = 25
    RIGHT_KNEE = 26
    LEFT_ANKLE = 27
    RIGHT_ANKLE = 28
    LEFT_HEEL = 29
    RIGHT_HEEL = 30
    LEFT_FOOT_INDEX = 31
    RIGHT_FOOT_INDEX = 32


NUM_LANDMARKS = len(PoseLandmark)

LANDMARK_NAMES = [lm.name.lower() for lm in PoseLandmark]

LANDMARK_GROUPS: Dict[str, List[int]] = {
    "head": list(range(0, 11)),
    "upper_body": list(range(11, 23)),
    "torso": [11, 12, 23, 24],
    "lower_body": list(range(23, 29)),
    "feet": list(range(27, 33)),
}


def resolve_landmark_index(ref: Any) -> int:
    """Accept an int index or a landmark name such as "left_knee"."""
    if isinstance(ref, str):
        try:
            return int(PoseLandmark[ref.upper()])
        except KeyError:
            raise ValueError(f"Unknown landmark name: {ref}") from None
    index = int(ref)
    if index < 0:
        raise ValueError(f"Landmark index must be non-negative, got {index}")
    return index


def _to_landmark(value: Any) -> Landmark:
    if isinstance(value, Landmark):
        return value
    if isinstance(value, Mapping):
        return Landmark(
            float(value["x"]),
            float(value["y"]),
            float(value.get("z", 0.0) or 0.0),
            None if value.get("visibility") is None else float(value["visibility"]),
        )
    values = list(value)
    visibility = float(values[3]) if len(values) > 3 and values[3] is not None else None
    z = float(values[2]) if len(values) > 2 else 0.0
    return Landmark(float(values[0]), float(values[1]), z, visibility)


def coerce_frame(raw: Any) -> List[Landmark]:
    """
    Convert a raw pose frame into a list of Landmarks.

    Accepts a sequence of Landmarks, [x, y, z, visibility] lists or {"x", "y", "z", "visibility"}
    dicts, or a name-keyed dict such as {"left_knee": [x, y, z, vis]} produced by pose detectors.
    Joints absent from a name-keyed dict become invisible placeholders.
    """
    if isinstance(raw, Mapping):
        frame = [Landmark(0.0, 0.0, 0.0, None) for _ in range(NUM_LANDMARKS)]
        for name, value in raw.items():
            frame[resolve_landmark_index(name)] = _to_landmark(value)
        return frame
    return [_to_landmark(value) for value in raw]
