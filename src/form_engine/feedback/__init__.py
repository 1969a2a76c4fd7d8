from .feedback_system import (
    CombinedDecision, FeedbackConfig, FeedbackMessage, FeedbackRecord, FeedbackSystem,
    ProcessedHeuristicResult, ProcessedMLResult, Visualization,
)
from .cooldown import FeedbackCooldown

__all__ = [
    'CombinedDecision',
    'FeedbackConfig',
    'FeedbackCooldown',
    'FeedbackMessage',
    'FeedbackRecord',
    'FeedbackSystem',
    'ProcessedHeuristicResult',
    'ProcessedMLResult',
    'Visualization',
]
