import json
import os
from typing import Any, Dict, List, Optional

from .validator_config import ConfigError

CONFIG_DIR = os.path.join(os.path.dirname(__file__), "configs")


def load_exercise_config(exercise_id: Optional[str] = None, config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load an exercise document from JSON.

    Either a shipped exercise id ("bodyweight_squat") or an explicit config_path is required.
    Relative model paths inside the document are resolved against the document's directory.
    """
    if config_path is None:
        if not exercise_id:
            raise ConfigError("An exercise id or a config path is required")
        config_path = os.path.join(CONFIG_DIR, f"{exercise_id}.json")
    try:
        with open(config_path, "r") as f:
            config = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Exercise config not found: {config_path}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {config_path}: {e}") from None
    if not isinstance(config, dict) or "exercise_type" not in config:
        raise ConfigError(f"{config_path} is not an exercise document (missing 'exercise_type')")

    model = config.get("model") or {}
    base_dir = os.path.dirname(os.path.abspath(config_path))
    for key in ("path", "external_data", "metadata_file"):
        value = model.get(key)
        if value and "://" not in value and not os.path.isabs(value):
            model[key] = os.path.join(base_dir, value)
    return config


def list_available_exercises(config_dir: str = CONFIG_DIR) -> List[str]:
    return sorted(name[:-5] for name in os.listdir(config_dir) if name.endswith(".json"))
