"""
Exercise form analysis engine: anomaly classifier + heuristic validator fused per frame.
"""

from .analyzer import AnalyzerConfig, CalibrationConfig, ExerciseAnalyzer
from .exercise_analysis import Landmark, PoseLandmark, create_validator, load_exercise_config
from .feedback import FeedbackRecord, FeedbackSystem
from .ml import AnomalyClassifier, ClassifierConfig, MLResult, MLStatus, ModelLoadError

__version__ = "0.1.0"

__all__ = [
    'AnalyzerConfig',
    'AnomalyClassifier',
    'CalibrationConfig',
    'ClassifierConfig',
    'ExerciseAnalyzer',
    'FeedbackRecord',
    'FeedbackSystem',
    'Landmark',
    'MLResult',
    'MLStatus',
    'ModelLoadError',
    'PoseLandmark',
    'create_validator',
    'load_exercise_config',
]
