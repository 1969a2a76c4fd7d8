"""
analyzer.py - Per-session orchestrator tying the classifier, validator and fusion layer together.
"""
import logging
import queue
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

import numpy as np

from .exercise_analysis.base_validator import BaseValidator
from .exercise_analysis.config_utils import load_exercise_config
from .exercise_analysis.landmarks import LANDMARK_GROUPS, Landmark, coerce_frame
from .exercise_analysis.pose_utils import get_landmark, is_visible
from .exercise_analysis.registry import UnknownValidatorError, create_validator
from .exercise_analysis.validator_config import ConfigError
from .feedback.feedback_system import FeedbackConfig, FeedbackRecord, FeedbackSystem
from .ml.classifier import AnomalyClassifier, ClassifierConfig, MLResult, MLStatus
from .ml.runtime import ModelLoadError, create_onnx_session

logger = logging.getLogger("ExerciseAnalyzer")
if not logger.hasHandlers():
    handler = logging.StreamHandler()
    formatter = logging.Formatter('%(asctime)s %(levelname)s %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)

SCORE_HISTORY_SIZE = 3
ACCURACY_WEIGHT = 0.7
CONFIDENCE_WEIGHT = 0.3


@dataclass(frozen=True)
class CalibrationConfig:
    mode: str = "none"  # none or height
    user_height_cm: Optional[float] = None
    min_height_ratio: float = 0.4
    smoothing_factor: float = 0.2
    visibility_threshold: float = 0.5

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CalibrationConfig":
        config = cls(**data)
        if config.mode not in ("none", "height"):
            raise ConfigError(f"Unknown calibration mode '{config.mode}'")
        if config.mode == "height" and not (config.user_height_cm and config.user_height_cm > 0):
            raise ConfigError("Height calibration needs a positive user_height_cm")
        if not 0.0 < config.smoothing_factor <= 1.0:
            raise ConfigError("smoothing_factor must be within (0, 1]")
        if not 0.0 < config.min_height_ratio <= 1.0:
            raise ConfigError("min_height_ratio must be within (0, 1]")
        return config


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass(frozen=True)
class AnalyzerConfig:
    """Fully resolved session configuration; build it with from_exercise()."""
    exercise_id: str
    display_name: str = ""
    model_path: Optional[str] = None
    external_data: Optional[str] = None
    metadata_file: Optional[str] = None
    ml: ClassifierConfig = field(default_factory=ClassifierConfig)
    validator: Optional[Dict[str, Any]] = None  # validator definition, treated as read-only
    feedback: FeedbackConfig = field(default_factory=FeedbackConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    analysis_interval_ms: int = 100

    @classmethod
    def from_document(cls, document: Mapping[str, Any], overrides: Optional[Mapping[str, Any]] = None) -> "AnalyzerConfig":
        """Assemble defaults -> exercise document -> caller overrides, then validate."""
        merged = _merge(dict(document), overrides or {})
        model = merged.get("model") or {}
        try:
            config = cls(
                exercise_id=merged["exercise_type"],
                display_name=merged.get("display_name", merged["exercise_type"]),
                model_path=model.get("path"),
                external_data=model.get("external_data"),
                metadata_file=model.get("metadata_file"),
                ml=ClassifierConfig.from_dict(merged.get("ml") or {}),
                validator=dict(merged["validator"]) if merged.get("validator") else None,
                feedback=FeedbackConfig.from_dict(merged.get("feedback") or {}),
                calibration=CalibrationConfig.from_dict(merged.get("calibration") or {}),
                analysis_interval_ms=int(merged.get("analysis_interval_ms", 100)),
            )
        except KeyError as e:
            raise ConfigError(f"Exercise document is missing {e}") from None
        except TypeError as e:
            raise ConfigError(f"Invalid exercise document: {e}") from None
        if config.analysis_interval_ms < 0:
            raise ConfigError("analysis_interval_ms must be non-negative")
        return config

    @classmethod
    def from_exercise(cls, exercise_id: Optional[str] = None, overrides: Optional[Mapping[str, Any]] = None,
                      config_path: Optional[str] = None) -> "AnalyzerConfig":
        return cls.from_document(load_exercise_config(exercise_id, config_path), overrides)


class BodyScaleCalibrator:
    """Estimates centimetres per normalized unit from the user's real height."""

    def __init__(self, config: CalibrationConfig):
        self.config = config
        self.cm_per_unit: Optional[float] = None
        self.samples = 0

    def body_span(self, frame: Sequence[Landmark]) -> Optional[float]:
        threshold = self.config.visibility_threshold
        head = [lm.y for lm in (get_landmark(frame, i) for i in LANDMARK_GROUPS["head"]) if is_visible(lm, threshold)]
        feet = [lm.y for lm in (get_landmark(frame, i) for i in LANDMARK_GROUPS["feet"]) if is_visible(lm, threshold)]
        if not head or not feet:
            return None
        # y grows downwards: highest head point has the smallest y
        return max(feet) - min(head)

    def update(self, frame: Sequence[Landmark]) -> Optional[float]:
        if self.config.mode != "height":
            return None
        span = self.body_span(frame)
        if span is None or span < self.config.min_height_ratio:
            return None
        estimate = self.config.user_height_cm / span
        if self.cm_per_unit is None:
            self.cm_per_unit = estimate
        else:
            alpha = self.config.smoothing_factor
            self.cm_per_unit = self.cm_per_unit + alpha * (estimate - self.cm_per_unit)
        self.samples += 1
        return self.cm_per_unit

    def reset(self) -> None:
        self.cm_per_unit = None
        self.samples = 0


@dataclass
class AnalyzerMetrics:
    total_frames: int = 0
    correct_frames: int = 0
    incorrect_frames: int = 0
    avg_confidence: float = 0.0
    session_start: float = field(default_factory=time.time)
    session_duration: float = 0.0


class ExerciseAnalyzer:
    """
    Runs one exercise session over a sequential stream of pose frames.

    Results are returned from analyze_frame(); callers wanting push delivery pass queues that
    receive every FeedbackRecord (feedback_queue) and every initialization failure (error_queue).
    """

    def __init__(self, config: AnalyzerConfig,
                 session_factory: Callable[[str], Any] = create_onnx_session,
                 clock: Callable[[], float] = time.monotonic,
                 feedback_queue: Optional[queue.Queue] = None,
                 error_queue: Optional[queue.Queue] = None):
        self.config = config
        self._session_factory = session_factory
        self._clock = clock
        self.feedback_queue = feedback_queue
        self.error_queue = error_queue

        self.classifier: Optional[AnomalyClassifier] = None
        self.validator: Optional[BaseValidator] = None
        self.feedback_system: Optional[FeedbackSystem] = None
        self.calibrator = BodyScaleCalibrator(config.calibration)
        self.is_initialized = False

        self._lock = threading.Lock()
        self._epoch = 0
        self._reset_rolling_state()

    def _reset_rolling_state(self) -> None:
        self.metrics = AnalyzerMetrics()
        self._session_clock_start = self._clock()
        self._last_analysis_time = None
        self._score_history = deque(maxlen=SCORE_HISTORY_SIZE)
        self._frame_index = 0

    def _report_error(self, error: Exception) -> None:
        logger.error(f"[{self.config.exercise_id}] {type(error).__name__}: {error}")
        if self.error_queue is not None:
            self.error_queue.put(error)

    def initialize(self) -> bool:
        """Build the components; False when the model cannot be loaded."""
        cfg = self.config
        if cfg.model_path:
            classifier = AnomalyClassifier(cfg.ml, session_factory=self._session_factory)
            try:
                classifier.load_model(cfg.model_path, cfg.external_data, cfg.metadata_file)
            except ModelLoadError as e:
                self._report_error(e)
                return False
            self.classifier = classifier
        else:
            logger.warning(f"[{cfg.exercise_id}] No model configured, ML judgment unavailable")

        if cfg.validator:
            definition = dict(cfg.validator)
            try:
                self.validator = create_validator(definition.pop("type", cfg.exercise_id), definition, cfg.exercise_id)
            except (UnknownValidatorError, ConfigError) as e:
                logger.warning(f"[{cfg.exercise_id}] Validator unavailable, continuing without it: {e}")
                self.validator = None
        else:
            logger.info(f"[{cfg.exercise_id}] No validator configured")

        self.feedback_system = FeedbackSystem(cfg.feedback)
        self.is_initialized = True
        logger.info(f"[{cfg.exercise_id}] Analyzer initialized (ml={self.classifier is not None}, "
                    f"validator={type(self.validator).__name__ if self.validator else None}, mode={cfg.feedback.mode})")
        return True

    def analyze_frame(self, frame: Any) -> Optional[FeedbackRecord]:
        """Analyze one frame; None when not initialized, throttled, or superseded by reset()."""
        if not self.is_initialized:
            return None
        frame = coerce_frame(frame)

        scale = self.calibrator.update(frame)
        if scale is not None and self.validator is not None:
            self.validator.set_distance_scale(scale)

        now = self._clock()
        if self._last_analysis_time is not None and \
                (now - self._last_analysis_time) * 1000.0 < self.config.analysis_interval_ms:
            return None
        self._last_analysis_time = now

        with self._lock:
            epoch = self._epoch
            ml_result = self._analyze_ml(frame)
            heuristic_result = self.validator.validate(frame, self._frame_index) if self.validator else None
            if epoch != self._epoch:
                logger.debug("Dropping frame analysed across a reset")
                return None
            self._frame_index += 1
            record = self.feedback_system.integrate(ml_result, heuristic_result)
            self._update_metrics(record)

        if self.feedback_queue is not None:
            self.feedback_queue.put(record)
        return record

    def _analyze_ml(self, frame: Sequence[Landmark]) -> MLResult:
        if self.classifier is None:
            return MLResult(MLStatus.UNAVAILABLE, message="No model loaded")
        return self.classifier.analyze_frame(frame)

    def _update_metrics(self, record: FeedbackRecord) -> None:
        m = self.metrics
        m.total_frames += 1
        m.session_duration = self._clock() - self._session_clock_start
        combined = record.combined
        if combined.verdict == "unknown":
            return
        if combined.is_correct:
            m.correct_frames += 1
        else:
            m.incorrect_frames += 1
        decided = m.correct_frames + m.incorrect_frames
        m.avg_confidence += (combined.confidence - m.avg_confidence) / decided

        if record.ml.available and record.ml.quality_score is not None:
            self._score_history.append(record.ml.quality_score * 100.0)
        else:
            self._score_history.append(100.0 if combined.is_correct else 0.0)

    @property
    def accuracy(self) -> float:
        return float(np.mean(self._score_history)) if self._score_history else 0.0

    @property
    def form_quality_score(self) -> float:
        return ACCURACY_WEIGHT * self.accuracy + CONFIDENCE_WEIGHT * self.metrics.avg_confidence * 100.0

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **asdict(self.metrics),
            "accuracy": self.accuracy,
            "form_quality_score": self.form_quality_score,
            "valid_reps": self.validator.valid_reps if self.validator else 0,
            "current_state": self.validator.current_state if self.validator else None,
            "cm_per_unit": self.calibrator.cm_per_unit,
            "ml_stats": self.classifier.get_statistics() if self.classifier else None,
            "heuristic_stats": self.validator.get_statistics() if self.validator else None,
            "feedback_stats": self.feedback_system.get_statistics() if self.feedback_system else None,
        }

    def get_config(self) -> Dict[str, Any]:
        config = asdict(self.config)
        if self.classifier is not None:
            config["ml"] = asdict(self.classifier.config)
        if self.feedback_system is not None:
            config["feedback"] = asdict(self.feedback_system.get_config())
        return config

    def set_feedback_mode(self, mode: str) -> bool:
        return self.feedback_system.set_mode(mode) if self.feedback_system else False

    def set_feedback_weights(self, ml_weight: float, heuristic_weight: float) -> None:
        if self.feedback_system:
            self.feedback_system.set_weights(ml_weight, heuristic_weight)

    def auto_calibrate(self) -> Optional[float]:
        if self.classifier is None:
            logger.warning("Auto-calibration requested without a loaded model")
            return None
        threshold = self.classifier.auto_calibrate()
        if threshold is not None:
            logger.info(f"[{self.config.exercise_id}] Threshold auto-calibrated to {threshold:.6f}")
        return threshold

    def reset(self) -> None:
        self._epoch += 1
        with self._lock:
            if self.classifier:
                self.classifier.reset()
            if self.validator:
                self.validator.reset()
                self.validator.set_distance_scale(None)
            if self.feedback_system:
                self.feedback_system.reset()
            self.calibrator.reset()
            self._reset_rolling_state()
        logger.info(f"[{self.config.exercise_id}] Session reset")

    def destroy(self) -> None:
        self.reset()
        if self.classifier:
            self.classifier.close()
        self.classifier = None
        self.validator = None
        self.feedback_system = None
        self.is_initialized = False

    def export_report(self) -> Dict[str, Any]:
        self.metrics.session_duration = self._clock() - self._session_clock_start
        return {
            "exercise": self.config.display_name or self.config.exercise_id,
            "exercise_id": self.config.exercise_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "duration": self.metrics.session_duration,
            "metrics": self.get_metrics(),
            "config": self.get_config(),
        }
