"""
One-Shot Comic — Settings.

Tunables come from config/comic_settings.yaml, secrets and overrides
from the environment (load .env with python-dotenv before calling
load_settings()).
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

import yaml

from oneshot_comic.models import DEFAULT_MAX_UPLOAD_BYTES

logger = logging.getLogger(__name__)

CONFIG_PATH = "config/comic_settings.yaml"

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
SCRIPT_MODEL = "gemini-2.5-flash"
IMAGE_MODEL = "gemini-2.5-flash-image"


@dataclass(frozen=True)
class ComicSettings:
    """Resolved settings shared by the gateway and the orchestrator."""
    api_key: str = ""
    api_base: str = GEMINI_API_BASE
    script_model: str = SCRIPT_MODEL
    image_model: str = IMAGE_MODEL
    request_timeout: float = 120.0
    script_temperature: float = 0.9
    min_panels: int = 3
    max_panels: int = 6
    context_panel_count: int = 3
    aspect_ratio: str = "1:1"
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES


def _load_config(path: str) -> dict:
    """Load the YAML settings file. Missing or broken files yield {}."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Settings file not found: {path} (using defaults)")
        return {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load settings from {path}: {e}")
        return {}


def load_settings(path: Optional[str] = None) -> ComicSettings:
    """
    Build ComicSettings from the YAML file and the environment.

    Precedence: environment variable > YAML file > built-in default.
    """
    path = path or os.environ.get("ONESHOT_CONFIG") or CONFIG_PATH
    config = _load_config(path)

    models = config.get("models", {}) or {}
    api = config.get("api", {}) or {}
    script = config.get("script", {}) or {}
    images = config.get("images", {}) or {}
    upload = config.get("upload", {}) or {}
    defaults = ComicSettings()

    api_key = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
    if not api_key:
        logger.warning("GEMINI_API_KEY not set — model requests will fail")

    settings = ComicSettings(
        api_key=api_key,
        api_base=(
            os.environ.get("ONESHOT_API_BASE")
            or api.get("base_url", defaults.api_base)
        ).rstrip("/"),
        script_model=os.environ.get("ONESHOT_SCRIPT_MODEL") or models.get("script", defaults.script_model),
        image_model=os.environ.get("ONESHOT_IMAGE_MODEL") or models.get("image", defaults.image_model),
        request_timeout=float(api.get("timeout_seconds", defaults.request_timeout)),
        script_temperature=float(script.get("temperature", defaults.script_temperature)),
        min_panels=int(script.get("min_panels", defaults.min_panels)),
        max_panels=int(script.get("max_panels", defaults.max_panels)),
        context_panel_count=int(script.get("context_panels", defaults.context_panel_count)),
        aspect_ratio=str(images.get("aspect_ratio", defaults.aspect_ratio)),
        max_upload_bytes=int(upload.get("max_bytes", defaults.max_upload_bytes)),
    )

    if settings.min_panels < 1 or settings.max_panels < settings.min_panels:
        raise ValueError(
            f"Invalid panel range {settings.min_panels}-{settings.max_panels} in {path}"
        )
    if settings.context_panel_count < 1:
        raise ValueError(
            f"script.context_panels must be at least 1, got {settings.context_panel_count} in {path}"
        )

    return settings
