"""
registry.py - Validator registry keyed by validator type.

Validator classes add themselves with @register_validator when their module is imported; the
package __init__ imports every validator module, so the table is complete once
form_engine.exercise_analysis is imported.
"""
from typing import Any, Dict, List, Mapping, Optional

# --- Validator Registry ---
VALIDATOR_REGISTRY: Dict[str, type] = {}  # Maps validator type keys to validator classes.


class UnknownValidatorError(KeyError):
    pass


def register_validator(*keys: str):  # Decorator adding a validator class to the registry under each key.
    def decorator(cls):
        for key in keys:
            VALIDATOR_REGISTRY[key] = cls
        return cls
    return decorator


def has_validator(validator_type: str) -> bool:
    return validator_type in VALIDATOR_REGISTRY


def get_registered_exercises() -> List[str]:
    return sorted(VALIDATOR_REGISTRY)


def create_validator(validator_type: str, definition: Optional[Mapping[str, Any]] = None,
                     exercise_id: Optional[str] = None, **kwargs):
    """
    Build a validator from its registry key and definition.

    Args:
        validator_type: Registry key, e.g. "bodyweight_squat" or "generic"
        definition: Validator options (or the full generic definition)
        exercise_id: Exercise the validator is bound to; defaults to validator_type
        **kwargs: Passed through to the validator (e.g. clock)
    Raises:
        UnknownValidatorError: if no validator is registered under validator_type
    """
    try:
        cls = VALIDATOR_REGISTRY[validator_type]
    except KeyError:
        raise UnknownValidatorError(
            f"No validator registered for '{validator_type}'. Available: {get_registered_exercises()}"
        ) from None
    return cls.from_definition(dict(definition or {}), exercise_id or validator_type, **kwargs)
