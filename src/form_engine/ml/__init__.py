from .runtime import ModelLoadError, create_onnx_session
from .classifier import AnomalyClassifier, ClassifierConfig, MLResult, MLStatus, quality_score

__all__ = [
    'AnomalyClassifier',
    'ClassifierConfig',
    'MLResult',
    'MLStatus',
    'ModelLoadError',
    'create_onnx_session',
    'quality_score',
]
