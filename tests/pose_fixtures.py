"""Synthetic pose frames and a fake inference session shared by the test modules."""
import math
from types import SimpleNamespace

import numpy as np

from form_engine.exercise_analysis.landmarks import NUM_LANDMARKS, Landmark, PoseLandmark


def make_squat_frame(knee_angle, visibility=0.9, left_knee_angle=None):
    """A front-facing body whose knees are bent to knee_angle degrees (180 = straight legs)."""
    frame = [Landmark(0.5, 0.1, 0.0, visibility) for _ in range(NUM_LANDMARKS)]

    def put(index, x, y):
        frame[index] = Landmark(x, y, 0.0, visibility)

    put(PoseLandmark.LEFT_SHOULDER, 0.42, 0.25)
    put(PoseLandmark.RIGHT_SHOULDER, 0.58, 0.25)
    put(PoseLandmark.LEFT_ELBOW, 0.40, 0.38)
    put(PoseLandmark.RIGHT_ELBOW, 0.60, 0.38)
    put(PoseLandmark.LEFT_HIP, 0.42, 0.5)
    put(PoseLandmark.RIGHT_HIP, 0.58, 0.5)
    put(PoseLandmark.LEFT_KNEE, 0.42, 0.7)
    put(PoseLandmark.RIGHT_KNEE, 0.58, 0.7)
    for side, knee_x, angle in (("LEFT", 0.42, left_knee_angle or knee_angle), ("RIGHT", 0.58, knee_angle)):
        theta = math.radians(angle)
        ankle_x = knee_x + 0.2 * math.sin(theta)
        ankle_y = 0.7 - 0.2 * math.cos(theta)
        put(PoseLandmark[f"{side}_ANKLE"], ankle_x, ankle_y)
        put(PoseLandmark[f"{side}_HEEL"], ankle_x, ankle_y + 0.02)
        put(PoseLandmark[f"{side}_FOOT_INDEX"], ankle_x + 0.03, ankle_y + 0.03)
    return frame


def squat_angles(frames=60, top=170.0, bottom=90.0):
    """Knee angles descending from top to bottom, then rising back to top."""
    half = frames // 2
    down = [top - (top - bottom) * i / (half - 1) for i in range(half)]
    up = [bottom + (top - bottom) * i / (half - 1) for i in range(frames - half)]
    return down + up


def with_visibility(frame, index, visibility):
    frame = list(frame)
    lm = frame[index]
    frame[index] = Landmark(lm.x, lm.y, lm.z, visibility)
    return frame


class FakeSession:
    """Stands in for an onnxruntime InferenceSession."""

    def __init__(self, sequence_length=30, feature_width=99, output_name="reconstruction",
                 reconstruct=None, fail=False):
        self.sequence_length = sequence_length
        self.feature_width = feature_width
        self.output_name = output_name
        self.reconstruct = reconstruct or (lambda window: window)
        self.fail = fail
        self.calls = []

    def get_inputs(self):
        return [SimpleNamespace(name="input", shape=[1, self.sequence_length, self.feature_width])]

    def get_outputs(self):
        return [SimpleNamespace(name=self.output_name)]

    def run(self, output_names, feeds):
        self.calls.append((output_names, feeds))
        if self.fail:
            raise RuntimeError("inference exploded")
        window = feeds["input"]
        return [np.asarray(self.reconstruct(window), dtype=np.float32)]


def session_factory_for(session):
    return lambda path: session


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
