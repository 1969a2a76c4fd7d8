"""
classifier.py - Sliding-window anomaly classifier backed by a reconstruction model.

Frames are flattened into (x, y, z) feature vectors and buffered; the model reconstructs the
window and the reconstruction error, compared with a threshold, decides whether the movement
resembles the correct executions the model was trained on.
"""
import logging
import math
import time
from collections import deque
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

import numpy as np

from ..exercise_analysis.landmarks import Landmark, NUM_LANDMARKS
from ..exercise_analysis.validator_config import ConfigError
from .runtime import ModelLoadError, create_onnx_session, load_metadata, open_session

logger = logging.getLogger("AnomalyClassifier")
if not logger.hasHandlers():
    handler = logging.StreamHandler()
    formatter = logging.Formatter('%(asctime)s %(levelname)s %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)

OUTPUT_NAMES = ("reconstruction", "output")
QUALITY_TOLERANCE = 1.1
MIN_CALIBRATION_SAMPLES = 20
CALIBRATION_PERCENTILE = 0.95
PERFORMANCE_WINDOW = 50


class MLStatus(str, Enum):
    WAITING = "waiting"
    PROCESSING = "processing"
    ERROR = "error"
    CORRECT = "correct"
    INCORRECT = "incorrect"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class MLResult:
    status: MLStatus
    confidence: Optional[float] = None
    reconstruction_error: Optional[float] = None
    threshold: Optional[float] = None
    quality_score: Optional[float] = None
    frames: int = 0
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_available(self) -> bool:
        return self.status in (MLStatus.CORRECT, MLStatus.INCORRECT)

    @property
    def is_correct(self) -> Optional[bool]:
        if not self.is_available:
            return None
        return self.status == MLStatus.CORRECT


@dataclass(frozen=True)
class ClassifierConfig:
    max_frames: int = 60
    min_frames: int = 15
    prediction_interval: int = 1
    threshold: float = 0.05
    max_history_size: int = 100
    feature_width: int = NUM_LANDMARKS * 3

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ClassifierConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown ml options: {unknown}")
        return cls(**data).validated()

    def validated(self) -> "ClassifierConfig":
        """Clamp fields into their valid ranges, logging every correction."""
        changes = {}
        max_frames = max(1, int(self.max_frames))
        if max_frames != self.max_frames:
            changes["max_frames"] = max_frames
        min_frames = min(max(1, int(self.min_frames)), max_frames)
        if min_frames != self.min_frames:
            changes["min_frames"] = min_frames
        interval = min(max(1, int(self.prediction_interval)), max_frames)
        if interval != self.prediction_interval:
            changes["prediction_interval"] = interval
        history = max(MIN_CALIBRATION_SAMPLES, int(self.max_history_size))
        if history != self.max_history_size:
            changes["max_history_size"] = history
        if not self.threshold or self.threshold <= 0 or math.isnan(self.threshold):
            changes["threshold"] = ClassifierConfig.threshold
        if self.feature_width < 1:
            changes["feature_width"] = ClassifierConfig.feature_width
        for name, value in changes.items():
            logger.warning(f"Classifier config {name}={getattr(self, name)!r} out of range, using {value!r}")
        return replace(self, **changes) if changes else self

    def aligned_to(self, sequence_length: Optional[int], feature_width: Optional[int]) -> "ClassifierConfig":
        changes = {}
        if sequence_length and sequence_length != self.max_frames:
            logger.warning(f"max_frames {self.max_frames} aligned to model sequence length {sequence_length}")
            changes["max_frames"] = sequence_length
        if feature_width and feature_width != self.feature_width:
            logger.warning(f"feature_width {self.feature_width} aligned to model input width {feature_width}")
            changes["feature_width"] = feature_width
        return replace(self, **changes).validated() if changes else self


def quality_score(error: float, threshold: float) -> float:
    """1.0 at or below threshold, linear decay to 0 at QUALITY_TOLERANCE x threshold."""
    if threshold <= 0:
        return 1.0 if error <= 0 else 0.0
    ratio = error / threshold
    if ratio <= 1.0:
        return 1.0
    # float ratios land a hair under the tolerance for error == threshold * 1.1
    if ratio >= QUALITY_TOLERANCE - 1e-9:
        return 0.0
    return (QUALITY_TOLERANCE - ratio) / (QUALITY_TOLERANCE - 1.0)


def _static_dim(value: Any) -> Optional[int]:
    return value if isinstance(value, int) and value > 0 else None


class AnomalyClassifier:
    """Buffers frames and scores them against a pretrained reconstruction model."""

    def __init__(self, config: Optional[ClassifierConfig] = None,
                 session_factory: Callable[[str], Any] = create_onnx_session,
                 clock: Callable[[], float] = time.perf_counter):
        """
        Args:
            config: Buffering and decision parameters
            session_factory: Builds an inference session from a local model path
            clock: Monotonic clock used for inference timing
        """
        self.config = (config or ClassifierConfig()).validated()
        self._session_factory = session_factory
        self._clock = clock
        self._session = None
        self._input_name = None
        self._output_name = None
        self.is_loaded = False
        self._epoch = 0
        self._allocate_buffers()

    def _allocate_buffers(self) -> None:
        self._frame_buffer = deque(maxlen=self.config.max_frames)
        self._error_history = deque(maxlen=self.config.max_history_size)
        self._inference_times = deque(maxlen=PERFORMANCE_WINDOW)

    @property
    def frame_buffer_length(self) -> int:
        return len(self._frame_buffer)

    @property
    def error_history(self) -> list:
        return list(self._error_history)

    @property
    def threshold(self) -> float:
        return self.config.threshold

    def load_model(self, model_path: str, external_data: Optional[str] = None,
                   metadata_file: Optional[str] = None, timeout: float = 30.0) -> None:
        """
        Load the model and align the buffer geometry to its input.

        Raises:
            ModelLoadError: if the model cannot be fetched or exposes no usable input/output
        """
        logger.info(f"Loading model {model_path}")
        session = open_session(model_path, external_data, self._session_factory, timeout)
        inputs = session.get_inputs()
        outputs = session.get_outputs()
        if not inputs or not outputs:
            raise ModelLoadError(f"Model {model_path} declares no inputs or outputs")
        shape = list(inputs[0].shape or [])
        sequence_length = _static_dim(shape[1]) if len(shape) >= 3 else None
        feature_width = _static_dim(shape[2]) if len(shape) >= 3 else None
        output_names = [o.name for o in outputs]
        self._output_name = next((n for n in OUTPUT_NAMES if n in output_names), output_names[0])
        self._input_name = inputs[0].name
        self._session = session

        config = self.config.aligned_to(sequence_length, feature_width)
        metadata = load_metadata(model_path, metadata_file)
        if "threshold" in metadata:
            try:
                config = replace(config, threshold=float(metadata["threshold"])).validated()
                logger.info(f"Threshold {config.threshold} taken from model metadata")
            except (TypeError, ValueError):
                logger.warning(f"Ignoring non-numeric metadata threshold {metadata['threshold']!r}")
        self.config = config
        self._epoch += 1
        self._allocate_buffers()
        self.is_loaded = True
        logger.info(f"Model ready: input={self._input_name} {shape}, output={self._output_name}, "
                    f"max_frames={config.max_frames}, threshold={config.threshold}")

    def extract_features(self, frame: Sequence[Landmark]) -> np.ndarray:
        """Raw (x, y, z) per landmark in index order, padded or truncated to feature_width."""
        width = self.config.feature_width
        values = np.zeros(width, dtype=np.float32)
        flat = np.asarray([c for lm in frame for c in (lm[0], lm[1], lm[2] or 0.0)], dtype=np.float32)
        n = min(width, flat.size)
        values[:n] = flat[:n]
        return values

    def analyze_frame(self, frame: Sequence[Landmark]) -> MLResult:
        if not self.is_loaded:
            return MLResult(MLStatus.UNAVAILABLE, message="Model not loaded")
        self._frame_buffer.append(self.extract_features(frame))
        n = len(self._frame_buffer)
        if n < self.config.min_frames or n % self.config.prediction_interval != 0:
            return MLResult(MLStatus.PROCESSING, frames=n, threshold=self.config.threshold,
                            message=f"Processing ({n} frames)")
        return self.predict()

    def predict(self) -> MLResult:
        """Run inference over the current buffer; inference failures become an error result."""
        n = len(self._frame_buffer)
        if not self.is_loaded:
            return MLResult(MLStatus.UNAVAILABLE, message="Model not loaded")
        if n < self.config.min_frames:
            return MLResult(MLStatus.WAITING, frames=n, threshold=self.config.threshold,
                            message=f"Waiting for {self.config.min_frames} frames ({n} buffered)")
        epoch = self._epoch
        try:
            error = self._reconstruction_error()
        except Exception as e:
            logger.error(f"Inference failed: {e}")
            return MLResult(MLStatus.ERROR, frames=n, threshold=self.config.threshold, message=str(e))
        if epoch != self._epoch:
            logger.debug("Discarding inference result computed before reset")
            return MLResult(MLStatus.WAITING, frames=len(self._frame_buffer), message="Discarded after reset")
        self._error_history.append(error)
        return self._decide(error, n)

    def _reconstruction_error(self) -> float:
        cfg = self.config
        window = np.zeros((1, cfg.max_frames, cfg.feature_width), dtype=np.float32)
        buffered = np.stack(list(self._frame_buffer))
        window[0, :len(buffered)] = buffered
        start = self._clock()
        outputs = self._session.run([self._output_name], {self._input_name: window})
        self._inference_times.append((self._clock() - start) * 1000.0)
        reconstruction = np.asarray(outputs[0], dtype=np.float32).reshape(window.shape)
        per_frame = np.mean((window[0] - reconstruction[0]) ** 2, axis=1)
        return float(np.mean(per_frame))

    def _decide(self, error: float, frames: int) -> MLResult:
        threshold = self.config.threshold
        is_correct = error <= threshold
        quality = quality_score(error, threshold)
        confidence = min(1.0, max(0.0, quality))
        return MLResult(
            status=MLStatus.CORRECT if is_correct else MLStatus.INCORRECT,
            confidence=confidence,
            reconstruction_error=error,
            threshold=threshold,
            quality_score=quality,
            frames=frames,
            details={
                "error_ratio": error / threshold,
                "comparison": f"{error:.6f} {'<=' if is_correct else '>'} {threshold:.6f}",
            },
        )

    def reset(self) -> None:
        self._epoch += 1
        self._frame_buffer.clear()
        self._error_history.clear()
        self._inference_times.clear()

    def close(self) -> None:
        self.reset()
        self._session = None
        self.is_loaded = False

    def set_threshold(self, threshold: float) -> None:
        self.config = replace(self.config, threshold=float(threshold)).validated()
        logger.info(f"Threshold set to {self.config.threshold:.6f}")

    def auto_calibrate(self) -> Optional[float]:
        """Set the threshold to the 95th percentile of the error history (needs 20 samples)."""
        n = len(self._error_history)
        if n < MIN_CALIBRATION_SAMPLES:
            logger.warning(f"Auto-calibration needs {MIN_CALIBRATION_SAMPLES} errors, have {n}")
            return None
        ordered = sorted(self._error_history)
        threshold = ordered[min(n - 1, int(math.floor(CALIBRATION_PERCENTILE * n)))]
        self.set_threshold(threshold)
        return self.config.threshold

    def adjust_threshold_for_tolerance(self, factor: float = 1.5) -> float:
        self.set_threshold(self.config.threshold * factor)
        return self.config.threshold

    def get_statistics(self) -> Optional[Dict[str, Any]]:
        if not self._error_history:
            return None
        errors = np.asarray(self._error_history, dtype=float)
        times = list(self._inference_times)
        mean_ms = float(np.mean(times)) if times else 0.0
        return {
            "count": int(errors.size),
            "min": float(errors.min()),
            "max": float(errors.max()),
            "mean": float(errors.mean()),
            "median": float(np.median(errors)),
            "p25": float(np.percentile(errors, 25)),
            "p75": float(np.percentile(errors, 75)),
            "p95": float(np.percentile(errors, 95)),
            "threshold": self.config.threshold,
            "performance": {
                "avg_inference_ms": mean_ms,
                "fps": (1000.0 / mean_ms) if mean_ms > 0 else 0.0,
                "samples": len(times),
            },
            "config": asdict(self.config),
        }
