"""YAML-backed template library."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

import yaml

from backend.core.config import settings

from .dto import Template
from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES_PATH = Path(__file__).parent / "data" / "templates.yaml"


def load_templates(path: Path) -> Dict[str, Template]:
    """Parse a template file.

    Raises:
        ConfigError: If the file is missing or malformed
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Template file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid template file {path}: {exc}") from exc

    entries = data.get("templates") if isinstance(data, dict) else None
    if not isinstance(entries, dict):
        raise ConfigError(f"Template file {path} has no 'templates' mapping")

    templates = {}
    for key, entry in entries.items():
        if not isinstance(entry, dict) or not entry.get("message"):
            raise ConfigError(f"Template '{key}' in {path} has no message")
        templates[str(key)] = Template(
            key=str(key),
            title_template=entry.get("title") or "",
            message_template=entry["message"],
            variables_description=entry.get("variables") or "",
        )
    return templates


class FileTemplateRepository:
    """Template repository reading a YAML file once at construction."""

    def __init__(self, path: Optional[str | Path] = None):
        self.path = Path(path or settings.DUNNING_TEMPLATES_PATH or DEFAULT_TEMPLATES_PATH)
        self.templates = load_templates(self.path)
        logger.debug("Loaded templates", extra={"path": str(self.path), "count": len(self.templates)})

    def get_template(self, key: str) -> Optional[Template]:
        return self.templates.get(key)
