"""
runtime.py - Model artifact fetching and ONNX inference session construction.
"""
import json
import logging
import os
import shutil
import tempfile
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

import onnxruntime as ort
import requests

logger = logging.getLogger("ModelRuntime")
if not logger.hasHandlers():
    handler = logging.StreamHandler()
    formatter = logging.Formatter('%(asctime)s %(levelname)s %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)


class ModelLoadError(RuntimeError):
    """Model (or its external weights) could not be fetched, parsed or turned into a session."""


def is_url(path: str) -> bool:
    return urlparse(path).scheme in ("http", "https")


def create_onnx_session(model_path: str) -> ort.InferenceSession:
    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    return ort.InferenceSession(model_path, sess_options=options, providers=["CPUExecutionProvider"])


def _download(url: str, dest_dir: str, timeout: float) -> str:
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    filename = os.path.basename(urlparse(url).path) or "model.onnx"
    path = os.path.join(dest_dir, filename)
    with open(path, "wb") as f:
        f.write(response.content)
    logger.info(f"Downloaded {url} ({len(response.content)} bytes)")
    return path


def _stage(source: str, dest_dir: str, timeout: float) -> str:
    if is_url(source):
        return _download(source, dest_dir, timeout)
    if not os.path.isfile(source):
        raise FileNotFoundError(source)
    return shutil.copy(source, dest_dir)


def open_session(model_path: str, external_data: Optional[str] = None,
                 session_factory: Callable[[str], Any] = create_onnx_session,
                 timeout: float = 30.0) -> Any:
    """
    Build an inference session for a model given by local path or URL.

    ONNX resolves external weight files relative to the model file, so a remote model, or a
    model whose external-data blob lives elsewhere, is staged into a temporary directory first.
    """
    try:
        if not is_url(model_path) and external_data is None:
            if not os.path.isfile(model_path):
                raise FileNotFoundError(model_path)
            return session_factory(model_path)
        with tempfile.TemporaryDirectory(prefix="form_engine_model_") as workdir:
            local_model = _stage(model_path, workdir, timeout)
            if external_data is not None:
                _stage(external_data, workdir, timeout)
            return session_factory(local_model)
    except ModelLoadError:
        raise
    except (OSError, requests.RequestException) as e:
        raise ModelLoadError(f"Could not fetch model {model_path}: {e}") from e
    except Exception as e:
        raise ModelLoadError(f"Could not create inference session for {model_path}: {e}") from e


def metadata_path_for(model_path: str) -> str:
    root, _ = os.path.splitext(model_path)
    return f"{root}_metadata.json"


def load_metadata(model_path: str, metadata_file: Optional[str] = None, timeout: float = 10.0) -> Dict[str, Any]:
    """Best-effort read of the model's metadata document; an empty dict when absent or unreadable."""
    path = metadata_file or metadata_path_for(model_path)
    try:
        if is_url(path):
            response = requests.get(path, timeout=timeout)
            response.raise_for_status()
            data = response.json()
        else:
            if not os.path.isfile(path):
                return {}
            with open(path, "r") as f:
                data = json.load(f)
    except (OSError, ValueError, requests.RequestException) as e:
        logger.warning(f"Ignoring unreadable model metadata {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}
