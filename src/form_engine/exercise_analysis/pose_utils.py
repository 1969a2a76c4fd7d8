"""
pose_utils.py - Shared geometry and visibility utilities for landmark frames.
"""
import numpy as np
from typing import Iterable, Optional, Sequence

from .landmarks import Landmark


# --- Math & Geometry Utilities ---
def calculate_angle(a: Landmark, b: Landmark, c: Landmark, use_z: bool = False) -> float:
    """
    Calculate the joint angle at point 'b' between vectors 'ba' and 'bc'.

    Point ordering convention:
    - a: First point (e.g., hip for knee angle)
    - b: Middle point (e.g., knee for knee angle)
    - c: Last point (e.g., ankle for knee angle)

    Args:
        a, b, c: Landmarks
        use_z: Include depth in the vectors; image-plane (x, y) only by default
    Returns:
        Angle in degrees within [0, 180], or NaN if a segment is degenerate
    """
    dims = 3 if use_z else 2
    pa = np.array(a[:dims], dtype=float)
    pb = np.array(b[:dims], dtype=float)
    pc = np.array(c[:dims], dtype=float)
    ba = pa - pb
    bc = pc - pb
    norm_ba = np.linalg.norm(ba)
    norm_bc = np.linalg.norm(bc)
    if norm_ba < 1e-6 or norm_bc < 1e-6:
        return float("nan")
    cosine_angle = np.clip(np.dot(ba, bc) / (norm_ba * norm_bc), -1.0, 1.0)
    return float(np.degrees(np.arccos(cosine_angle)))


def calculate_distance(a: Landmark, b: Landmark) -> float:
    """Euclidean 3D distance; a missing z counts as 0."""
    return float(np.linalg.norm(np.array([a.x - b.x, a.y - b.y, (a.z or 0.0) - (b.z or 0.0)])))


def calculate_distance_2d(a: Landmark, b: Landmark) -> float:
    return float(np.hypot(a.x - b.x, a.y - b.y))


def vertical_distance(a: Landmark, b: Landmark) -> float:
    return abs(a.y - b.y)


def horizontal_distance(a: Landmark, b: Landmark) -> float:
    return abs(a.x - b.x)


def calculate_inclination(top: Landmark, bottom: Landmark) -> float:
    """Deviation of the segment top->bottom from vertical, in degrees (0 = upright)."""
    return float(np.degrees(np.arctan2(abs(top.x - bottom.x), abs(top.y - bottom.y))))


def midpoint(a: Landmark, b: Landmark) -> Landmark:
    return Landmark((a.x + b.x) / 2, (a.y + b.y) / 2, ((a.z or 0.0) + (b.z or 0.0)) / 2,
                    min_visibility([a, b]))


def min_visibility(landmarks: Iterable[Landmark]) -> Optional[float]:
    values = [lm.visibility for lm in landmarks]
    if any(v is None for v in values):
        return None
    return min(values) if values else None


# --- Visibility ---
def is_visible(landmark: Optional[Landmark], threshold: float = 0.5) -> bool:
    """A landmark is usable only when its visibility is present and above the threshold."""
    return landmark is not None and landmark.visibility is not None and landmark.visibility > threshold


def get_landmark(frame: Sequence[Landmark], index: int) -> Optional[Landmark]:
    if 0 <= index < len(frame):
        return frame[index]
    return None


def check_landmark_visibility(frame: Sequence[Landmark], indices: Iterable[int], min_visibility: float = 0.5) -> bool:
    """Check if all indexed landmarks are present and visible above threshold."""
    return all(is_visible(get_landmark(frame, i), min_visibility) for i in indices)
