"""
User preferences for the DTF halftone CLI, stored as JSON.

Holds the default processing settings, the vision-model suggestion options,
the last input/output directories and a short list of recently processed files.
"""

import copy
import json
import logging
import os
from typing import Any, Optional, Dict, List
from pathlib import Path

from halftone_lib import ProcessingSettings

logger = logging.getLogger(__name__)

__all__ = [
    'ConfigManager',
]

MAX_RECENT_FILES = 10


class ConfigManager:
    """Loads, queries and persists the preferences file."""

    DEFAULT_CONFIG = {
        "defaults": ProcessingSettings().to_dict(),
        "paths": {
            "last_image_dir": None,
            "last_save_dir": None
        },
        "suggestion": {
            "enabled": False,
            "model": "gemini-2.5-flash",
            "timeout": 30
        },
        "recent_files": []
    }

    def __init__(self, config_file: str = "config.json"):
        self.config_file = config_file
        self.config = self._load_config()

    def _load_config(self) -> Dict:
        """Read the preferences file over the defaults; write the defaults if it is missing."""
        defaults = copy.deepcopy(self.DEFAULT_CONFIG)
        if not os.path.exists(self.config_file):
            self.config = defaults
            self.save()
            return defaults

        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                stored = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading preferences from {self.config_file}: {e}")
            return defaults

        if not isinstance(stored, dict):
            logger.error(f"Ignoring preferences in {self.config_file}: top level is not an object")
            return defaults
        return self._merge_configs(defaults, stored)

    def _merge_configs(self, base: Dict, stored: Dict) -> Dict:
        """Overlay stored values on base, recursing into nested sections. Unknown keys are dropped."""
        for key, value in base.items():
            if key not in stored:
                continue
            if isinstance(value, dict) and isinstance(stored[key], dict):
                base[key] = self._merge_configs(value, stored[key])
            else:
                base[key] = stored[key]
        return base

    def save(self):
        try:
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=4)
        except OSError as e:
            logger.error(f"Error saving preferences to {self.config_file}: {e}")

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Look up a nested value, e.g. get("suggestion", "model").
        Returns `default` when any key along the way is missing.
        """
        node = self.config
        for key in keys:
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node

    def set(self, *keys: str, value: Any):
        """Store a nested value, e.g. set("defaults", "grid_size", value=8)."""
        if not keys:
            return
        node = self.config
        for key in keys[:-1]:
            node = node.setdefault(key, {})
        node[keys[-1]] = value

    # ---- Processing defaults ----

    def get_default_settings(self) -> ProcessingSettings:
        """Stored defaults as settings; built-in defaults if the stored ones do not parse."""
        try:
            return ProcessingSettings.from_dict(self.get("defaults", default={}))
        except (TypeError, ValueError) as e:
            logger.error(f"Invalid default settings in preferences: {e}")
            return ProcessingSettings()

    def set_default_settings(self, settings: ProcessingSettings):
        self.set("defaults", value=settings.to_dict())

    # ---- Directories and recent files ----

    def update_last_path(self, path_type: str, filepath: str):
        """Remember the directory of `filepath` as the last "image" or "save" location."""
        if filepath:
            self.set("paths", f"last_{path_type}_dir", value=str(Path(filepath).parent))

    def get_last_path(self, path_type: str) -> Optional[str]:
        return self.get("paths", f"last_{path_type}_dir")

    def add_recent_file(self, filepath: str, max_recent: int = MAX_RECENT_FILES):
        """Move `filepath` to the front of the recent list, keeping at most `max_recent`."""
        recent = [f for f in self.get("recent_files", default=[]) if f != filepath]
        self.set("recent_files", value=[filepath] + recent[:max_recent - 1])

    def get_recent_files(self, max_count: int = MAX_RECENT_FILES) -> List[str]:
        """Recent files that still exist on disk, newest first."""
        return [f for f in self.get("recent_files", default=[]) if os.path.exists(f)][:max_count]

    def clear_recent_files(self):
        self.set("recent_files", value=[])
