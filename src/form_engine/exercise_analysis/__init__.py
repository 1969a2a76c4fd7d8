"""
Exercise analysis package: landmark geometry, validator definitions and heuristic validators.
"""

from .landmarks import Landmark, PoseLandmark, coerce_frame
from .base_validator import BaseValidator, Severity, ValidationIssue, ValidationResult
from .validator_config import ConfigError, ValidatorConfig
from .registry import (
    VALIDATOR_REGISTRY, UnknownValidatorError,
    create_validator, get_registered_exercises, has_validator, register_validator,
)
# Importing the validator modules registers them
from .generic_validator import GenericValidator, evaluate_condition
from .squat_validator import SquatBodyweightValidator, SquatConfig
from .config_utils import list_available_exercises, load_exercise_config

__all__ = [
    'Landmark',
    'PoseLandmark',
    'coerce_frame',
    'BaseValidator',
    'Severity',
    'ValidationIssue',
    'ValidationResult',
    'ConfigError',
    'ValidatorConfig',
    'VALIDATOR_REGISTRY',
    'UnknownValidatorError',
    'create_validator',
    'get_registered_exercises',
    'has_validator',
    'register_validator',
    'GenericValidator',
    'evaluate_condition',
    'SquatBodyweightValidator',
    'SquatConfig',
    'list_available_exercises',
    'load_exercise_config',
]
