"""
Utility functions for the DTF halftone application.
"""

import json
import logging
import os
import string
from pathlib import Path
from typing import List, Tuple, Dict, Optional

from PIL import Image

from halftone_lib import ProcessingSettings

logger = logging.getLogger(__name__)

__all__ = [
    # Functions
    'load_presets_from_file',
    'save_presets_to_file',
    'hex_to_rgb',
    'validate_image_file',
    'load_image_rgba',
    'save_png',
    # Classes
    'PresetManager',
]

IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.gif', '.bmp', '.tiff', '.webp'}


def load_presets_from_file(filepath: str = "presets.json") -> List[Dict]:
    """
    Load settings presets from JSON file.

    Args:
        filepath: Path to preset JSON file

    Returns:
        List of preset dictionaries with 'name' and 'settings' keys
    """
    if not os.path.exists(filepath):
        return []

    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            presets = json.load(f)
        return presets if isinstance(presets, list) else []
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Error loading presets: {e}")
        return []


def save_presets_to_file(presets: List[Dict], filepath: str = "presets.json"):
    """
    Save presets to JSON file.

    Args:
        presets: List of preset dictionaries
        filepath: Path to save JSON file
    """
    try:
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(presets, f, indent=4)
    except OSError as e:
        logger.error(f"Error saving presets: {e}")


def hex_to_rgb(hex_color: str) -> Tuple[int, int, int]:
    """
    Strict '#rrggbb' / 'rrggbb' conversion, used to reject bad colors in job files.
    The core itself falls back to white instead (see parse_mono_color).

    Raises:
        ValueError: If the string is not exactly six hex digits
    """
    digits = hex_color[1:] if hex_color.startswith('#') else hex_color
    if len(digits) != 6 or not all(c in string.hexdigits for c in digits):
        raise ValueError(f"Invalid hex color: {hex_color!r}")
    return tuple(int(digits[i:i + 2], 16) for i in (0, 2, 4))


def validate_image_file(filepath) -> bool:
    """True for an existing file with a supported raster extension."""
    ext = os.path.splitext(filepath)[1].lower()
    return ext in IMAGE_EXTENSIONS and os.path.isfile(filepath)


def load_image_rgba(filepath) -> Image.Image:
    """Open an image and return it fully loaded in RGBA mode."""
    with Image.open(filepath) as img:
        return img.convert('RGBA')


def save_png(image: Image.Image, filepath) -> Path:
    """
    Save image as PNG, creating parent directories. PNG keeps the alpha
    channel the halftone knockout depends on.
    """
    path = Path(filepath)
    path.parent.mkdir(parents=True, exist_ok=True)
    image.save(path, format='PNG')
    return path


class PresetManager:
    """
    Manages named processing presets with loading, saving, and validation.
    """

    def __init__(self, filepath: str = "presets.json"):
        self.filepath = filepath
        self.presets = []
        self.load()

    def load(self):
        """Load presets from file."""
        self.presets = load_presets_from_file(self.filepath)

    def save(self):
        """Save presets to file."""
        save_presets_to_file(self.presets, self.filepath)

    def add_preset(self, name: str, settings: ProcessingSettings):
        """Add a new preset, replacing one with the same name."""
        for preset in self.presets:
            if preset['name'] == name:
                preset['settings'] = settings.to_dict()
                self.save()
                return

        self.presets.append({'name': name, 'settings': settings.to_dict()})
        self.save()

    def remove_preset(self, name: str):
        """Remove a preset by name."""
        self.presets = [p for p in self.presets if p['name'] != name]
        self.save()

    def get_preset(self, name: str) -> Optional[ProcessingSettings]:
        """Get preset settings by name."""
        for preset in self.presets:
            if preset['name'] == name:
                try:
                    return ProcessingSettings.from_dict(preset.get('settings', {}))
                except (TypeError, ValueError) as e:
                    logger.error(f"Invalid preset '{name}': {e}")
                    return None
        return None

    def list_preset_names(self) -> List[str]:
        """Get list of all preset names."""
        return [p['name'] for p in self.presets]
