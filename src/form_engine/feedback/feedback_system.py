"""
feedback_system.py - Fuses the anomaly classifier and heuristic validator into one verdict.

Modes:
- ml_only: the model's judgment alone
- heuristic_only: the validator's judgment alone
- hybrid: either judge can veto a correct verdict; confidences are reported, never averaged
  into the boolean decision
"""
import logging
import math
import time
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..exercise_analysis.base_validator import SEVERITY_RANK, Severity, ValidationIssue, ValidationResult
from ..exercise_analysis.validator_config import ConfigError
from ..ml.classifier import MLResult, MLStatus

logger = logging.getLogger("FeedbackSystem")
if not logger.hasHandlers():
    handler = logging.StreamHandler()
    formatter = logging.Formatter('%(asctime)s %(levelname)s %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)

MODES = ("ml_only", "heuristic_only", "hybrid")
SEVERITY_PENALTY = {
    Severity.CRITICAL: 0.4,
    Severity.HIGH: 0.25,
    Severity.MEDIUM: 0.15,
    Severity.LOW: 0.05,
}
SEVERITY_ICON = {
    Severity.CRITICAL: "🔴",
    Severity.HIGH: "🟠",
    Severity.MEDIUM: "🟡",
    Severity.LOW: "🟢",
}
REP_ISSUE_TYPES = ("rep_counted", "valid_repetition")
ML_DEFAULT_CONFIDENCE = 0.7
HYBRID_ML_DEFAULT_CONFIDENCE = 0.5
MAX_HISTORY = 50


@dataclass(frozen=True)
class FeedbackConfig:
    mode: str = "hybrid"
    ml_weight: float = 0.6
    heuristic_weight: float = 0.4
    max_feedback_items: int = 3

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedbackConfig":
        config = cls(**data)
        if config.mode not in MODES:
            raise ConfigError(f"Unknown feedback mode '{config.mode}', expected one of {MODES}")
        if config.ml_weight < 0 or config.heuristic_weight < 0 or config.ml_weight + config.heuristic_weight <= 0:
            raise ConfigError("Feedback weights must be non-negative and not both zero")
        if config.max_feedback_items < 0:
            raise ConfigError("max_feedback_items must be non-negative")
        return config


@dataclass(frozen=True)
class ProcessedMLResult:
    available: bool
    status: str
    is_correct: Optional[bool] = None
    confidence: Optional[float] = None
    reconstruction_error: Optional[float] = None
    threshold: Optional[float] = None
    quality_score: Optional[float] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class ProcessedHeuristicResult:
    available: bool
    is_valid: Optional[bool] = None
    issues: Tuple[ValidationIssue, ...] = ()
    valid_reps: int = 0
    current_state: Optional[str] = None
    has_critical: bool = False
    summary: Any = None


@dataclass(frozen=True)
class CombinedDecision:
    verdict: str  # correct, incorrect or unknown
    is_correct: Optional[bool]
    confidence: float
    rationale: str
    source: str
    agreement: Optional[bool] = None
    ml_score: Optional[float] = None
    heuristic_score: Optional[float] = None
    combined_score: Optional[float] = None


@dataclass(frozen=True)
class FeedbackMessage:
    type: str  # success, warning, error or info
    text: str
    priority: int
    severity: Optional[str] = None


@dataclass(frozen=True)
class Visualization:
    color: str
    show_ml: bool
    show_heuristics: bool
    highlight_issues: Tuple[str, ...] = ()
    ml_metrics: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FeedbackRecord:
    timestamp: float
    mode: str
    ml: ProcessedMLResult
    heuristic: ProcessedHeuristicResult
    combined: CombinedDecision
    messages: Tuple[FeedbackMessage, ...]
    visualization: Visualization

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _clamp_confidence(value: Optional[float], default: float) -> float:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return default
    return min(1.0, max(0.0, float(value)))


class FeedbackSystem:
    """Per-session fusion layer; keeps the last MAX_HISTORY records for statistics."""

    def __init__(self, config: Optional[FeedbackConfig] = None, clock: Callable[[], float] = time.time):
        self.config = config or FeedbackConfig()
        self.mode = self.config.mode
        self.ml_weight = self.config.ml_weight
        self.heuristic_weight = self.config.heuristic_weight
        self._clock = clock
        self._history = deque(maxlen=MAX_HISTORY)

    def set_mode(self, mode: str) -> bool:
        if mode not in MODES:
            logger.warning(f"Ignoring unknown feedback mode '{mode}'")
            return False
        self.mode = mode
        return True

    def set_weights(self, ml_weight: float, heuristic_weight: float) -> None:
        total = ml_weight + heuristic_weight
        if ml_weight < 0 or heuristic_weight < 0 or total <= 0:
            logger.warning(f"Ignoring invalid weights ml={ml_weight} heuristic={heuristic_weight}")
            return
        self.ml_weight = ml_weight / total
        self.heuristic_weight = heuristic_weight / total

    # --- Normalization of the two judges ---
    @staticmethod
    def process_ml_result(ml: Optional[MLResult]) -> ProcessedMLResult:
        if ml is None:
            return ProcessedMLResult(available=False, status=MLStatus.UNAVAILABLE.value)
        if not ml.is_available:
            message = ml.message
            if ml.status == MLStatus.PROCESSING:
                message = f"Processing ({ml.frames} frames)"
            return ProcessedMLResult(available=False, status=ml.status.value, message=message)
        return ProcessedMLResult(
            available=True,
            status=ml.status.value,
            is_correct=ml.is_correct,
            confidence=ml.confidence,
            reconstruction_error=ml.reconstruction_error,
            threshold=ml.threshold,
            quality_score=ml.quality_score,
            message="Movement pattern recognised" if ml.is_correct else "Atypical movement pattern",
        )

    @staticmethod
    def process_heuristic_result(result: Optional[ValidationResult]) -> ProcessedHeuristicResult:
        if result is None or not result.landmarks_visible:
            return ProcessedHeuristicResult(
                available=False,
                summary=None if result is None else result.summary,
                valid_reps=0 if result is None else result.valid_reps,
                current_state=None if result is None else result.current_state,
            )
        return ProcessedHeuristicResult(
            available=True,
            is_valid=result.is_valid,
            issues=tuple(result.issues),
            valid_reps=result.valid_reps,
            current_state=result.current_state,
            has_critical=result.has_critical,
            summary=result.summary,
        )

    # --- Decisions ---
    def integrate(self, ml: Optional[MLResult], heuristic: Optional[ValidationResult]) -> FeedbackRecord:
        ml_data = self.process_ml_result(ml)
        heuristic_data = self.process_heuristic_result(heuristic)
        use_ml = ml_data.available and self.mode != "heuristic_only"
        use_heuristic = heuristic_data.available and self.mode != "ml_only"

        if use_ml and use_heuristic:
            combined = self.hybrid_decision(ml_data, heuristic_data)
        elif use_ml:
            combined = self.ml_only_decision(ml_data)
        elif use_heuristic:
            combined = self.heuristic_only_decision(heuristic_data)
        else:
            combined = CombinedDecision(verdict="unknown", is_correct=None, confidence=0.0,
                                        rationale="No judge available for this frame", source="none")

        record = FeedbackRecord(
            timestamp=self._clock(),
            mode=self.mode,
            ml=ml_data,
            heuristic=heuristic_data,
            combined=combined,
            messages=tuple(self._generate_messages(ml_data, heuristic_data, combined)),
            visualization=self._visualization(ml_data, heuristic_data, combined),
        )
        self._history.append(record)
        return record

    @staticmethod
    def ml_only_decision(ml: ProcessedMLResult) -> CombinedDecision:
        confidence = _clamp_confidence(ml.confidence, ML_DEFAULT_CONFIDENCE)
        return CombinedDecision(
            verdict="correct" if ml.is_correct else "incorrect",
            is_correct=ml.is_correct,
            confidence=confidence,
            rationale="Movement matches the learned pattern" if ml.is_correct
            else "Movement deviates from the learned pattern",
            source="ml",
        )

    @staticmethod
    def heuristic_only_decision(heuristic: ProcessedHeuristicResult) -> CombinedDecision:
        if heuristic.is_valid:
            confidence = 0.9
        elif heuristic.has_critical:
            confidence = 0.95
        else:
            confidence = 0.85
        return CombinedDecision(
            verdict="correct" if heuristic.is_valid else "incorrect",
            is_correct=heuristic.is_valid,
            confidence=confidence,
            rationale="Biomechanical checks passed" if heuristic.is_valid else "Biomechanical checks failed",
            source="heuristic",
        )

    @staticmethod
    def heuristic_score(heuristic: ProcessedHeuristicResult) -> float:
        if heuristic.is_valid:
            return 0.95
        penalty = sum(SEVERITY_PENALTY[i.severity] for i in heuristic.issues if i.type != "valid_repetition")
        return max(0.0, 1.0 - penalty)

    def hybrid_decision(self, ml: ProcessedMLResult, heuristic: ProcessedHeuristicResult) -> CombinedDecision:
        ml_confidence = _clamp_confidence(ml.confidence, HYBRID_ML_DEFAULT_CONFIDENCE)
        ml_score = ml_confidence if ml.is_correct else 1.0 - ml_confidence
        h_score = self.heuristic_score(heuristic)
        ml_incorrect = not ml.is_correct
        heuristic_invalid = not heuristic.is_valid
        is_correct = not ml_incorrect and not (heuristic_invalid or heuristic.has_critical)

        if heuristic.has_critical:
            critical = next(i for i in heuristic.issues if i.severity == Severity.CRITICAL)
            rationale = f"Critical form issue: {critical.message}"
        elif ml_incorrect and heuristic_invalid:
            rationale = "Atypical movement pattern with technical errors"
        elif ml_incorrect:
            rationale = "Movement deviates from the learned pattern"
        elif heuristic_invalid:
            rationale = "Biomechanical checks failed"
        else:
            rationale = "Both judges confirm correct execution"

        return CombinedDecision(
            verdict="correct" if is_correct else "incorrect",
            is_correct=is_correct,
            confidence=max(ml_confidence, h_score),
            rationale=rationale,
            source="hybrid",
            agreement=ml.is_correct == heuristic.is_valid,
            ml_score=ml_score,
            heuristic_score=h_score,
            combined_score=ml_score * self.ml_weight + h_score * self.heuristic_weight,
        )

    # --- Presentation ---
    def _generate_messages(self, ml: ProcessedMLResult, heuristic: ProcessedHeuristicResult,
                           combined: CombinedDecision) -> List[FeedbackMessage]:
        messages = []
        if combined.verdict == "correct":
            messages.append(FeedbackMessage("success", "Correct form!", 1))
        elif combined.verdict == "incorrect":
            messages.append(FeedbackMessage("error", combined.rationale, 1))
        else:
            messages.append(FeedbackMessage("info", ml.message or "Waiting for a clear view of the body", 1))

        if self.mode == "ml_only":
            if ml.available:
                messages.append(FeedbackMessage(
                    "info", f"Reconstruction error {ml.reconstruction_error:.4f} (threshold {ml.threshold:.4f})", 5))
        elif heuristic.available:
            ordered = sorted(heuristic.issues, key=lambda i: SEVERITY_RANK[i.severity])
            for n, issue in enumerate(ordered[:self.config.max_feedback_items]):
                if issue.type in REP_ISSUE_TYPES:
                    kind = "success"
                elif issue.severity in (Severity.CRITICAL, Severity.HIGH):
                    kind = "error"
                else:
                    kind = "warning"
                messages.append(FeedbackMessage(
                    kind, f"{SEVERITY_ICON[issue.severity]} {issue.message}", 2 + n, issue.severity.value))

        if self.mode == "hybrid" and combined.agreement is False:
            note = ("Model flagged an atypical pattern that the checks did not catch" if not ml.is_correct
                    else "Checks flagged issues in a pattern the model considers typical")
            messages.append(FeedbackMessage("info", note, 10))
        return sorted(messages, key=lambda m: m.priority)

    @staticmethod
    def _visualization(ml: ProcessedMLResult, heuristic: ProcessedHeuristicResult,
                       combined: CombinedDecision) -> Visualization:
        if combined.verdict == "correct":
            color = "#00ff88" if combined.confidence > 0.8 else "#88ff88"
        elif combined.verdict == "incorrect":
            color = "#ff4444" if combined.confidence > 0.8 else "#ff8844"
        else:
            color = "#888888"
        metrics = {}
        if ml.available:
            metrics = {
                "reconstruction_error": ml.reconstruction_error,
                "threshold": ml.threshold,
                "quality_score": ml.quality_score,
            }
        return Visualization(
            color=color,
            show_ml=ml.available,
            show_heuristics=heuristic.available,
            highlight_issues=tuple(i.type for i in heuristic.issues if i.type not in REP_ISSUE_TYPES),
            ml_metrics=metrics,
        )

    # --- Statistics ---
    @property
    def history(self) -> List[FeedbackRecord]:
        return list(self._history)

    def reset(self) -> None:
        self._history.clear()

    def get_statistics(self) -> Dict[str, Any]:
        decided = [r for r in self._history if r.combined.verdict != "unknown"]
        correct = sum(1 for r in decided if r.combined.is_correct)
        compared = [r for r in self._history if r.combined.agreement is not None]
        agreed = sum(1 for r in compared if r.combined.agreement)
        return {
            "total": len(self._history),
            "correct": correct,
            "incorrect": len(decided) - correct,
            "accuracy": (correct / len(decided) * 100) if decided else 0.0,
            "avg_confidence": (sum(r.combined.confidence for r in decided) / len(decided)) if decided else 0.0,
            "ml_heuristic_agreement": (agreed / len(compared) * 100) if compared else 0.0,
            "mode": self.mode,
        }

    def get_config(self) -> FeedbackConfig:
        return replace(self.config, mode=self.mode, ml_weight=self.ml_weight, heuristic_weight=self.heuristic_weight)
