"""
A Python library turning an RGBA bitmap into a DTF (direct-to-film) halftone:
near-black background removal, optional single-color recoloring, then a grid of
brightness-modulated shapes knocked out of the alpha channel so the printed ink
layer "breathes".
Use this as a standalone library or import it from your application.
"""

import logging
import math
import re
from dataclasses import dataclass, asdict, replace
from enum import Enum
from typing import Optional, Tuple, Union

import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

# Stamps at or below this size are treated as negligible and skipped
MIN_STAMP_SIZE = 0.1
MIN_GRID_SIZE = 2
WHITE = (255, 255, 255)

_HEX_COLOR_RE = re.compile(r'#?([a-f\d]{2})([a-f\d]{2})([a-f\d]{2})', re.IGNORECASE)


# -------------------- Enumerations --------------------

class HalftoneShape(Enum):
    CIRCLE = "circle"
    SQUARE = "square"
    DIAMOND = "diamond"
    LINE = "line"

    @classmethod
    def parse(cls, value: Union[str, "HalftoneShape"]) -> "HalftoneShape":
        """
        Resolve a shape from its value, its name, or the pt-BR label used by
        the web front end ("Círculo", "Quadrado", "Diamante", "Linha").
        """
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        for shape in cls:
            if key in (shape.value, shape.name.lower()):
                return shape
        if key in _SHAPE_LABELS:
            return _SHAPE_LABELS[key]
        raise ValueError(f"Unknown halftone shape: {value!r}")


_SHAPE_LABELS = {
    "círculo": HalftoneShape.CIRCLE,
    "circulo": HalftoneShape.CIRCLE,
    "quadrado": HalftoneShape.SQUARE,
    "diamante": HalftoneShape.DIAMOND,
    "linha": HalftoneShape.LINE,
}


class ColorMode(Enum):
    ORIGINAL = "original"
    MONO = "mono"

    @classmethod
    def parse(cls, value: Union[str, "ColorMode"]) -> "ColorMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown color mode: {value!r}") from None


# -------------------- Settings --------------------

@dataclass(frozen=True)
class ProcessingSettings:
    """
    Immutable snapshot of the parameters for one transform call.
    """
    black_threshold: int = 30
    grid_size: int = 6
    shape: HalftoneShape = HalftoneShape.CIRCLE
    color_mode: ColorMode = ColorMode.ORIGINAL
    mono_color: str = "#ffffff"
    intensity: float = 1.0
    invert: bool = False

    @staticmethod
    def get_parameter_info():
        """
        Returns metadata about every configurable parameter.
        The CLI uses it for validation and clamping.
        """
        return {
            'black_threshold': {
                'type': 'int',
                'default': 30,
                'min': 0,
                'max': 255,
                'label': 'Black Threshold',
                'description': 'Pixels whose brightest channel is at or below this become transparent'
            },
            'grid_size': {
                'type': 'int',
                'default': 6,
                'min': MIN_GRID_SIZE,
                'max': 64,
                'label': 'Grid Size',
                'description': 'Side length in pixels of each halftone cell'
            },
            'shape': {
                'type': 'choice',
                'default': HalftoneShape.CIRCLE.value,
                'choices': [s.value for s in HalftoneShape],
                'label': 'Shape',
                'description': 'Geometry punched out of each cell'
            },
            'color_mode': {
                'type': 'choice',
                'default': ColorMode.ORIGINAL.value,
                'choices': [m.value for m in ColorMode],
                'label': 'Color Mode',
                'description': 'Keep the original colors or recolor all ink to one color'
            },
            'mono_color': {
                'type': 'color',
                'default': '#ffffff',
                'label': 'Mono Color',
                'description': 'Ink color used in mono mode (#rrggbb)'
            },
            'intensity': {
                'type': 'float',
                'default': 1.0,
                'min': 0.1,
                'max': 1.5,
                'step': 0.1,
                'label': 'Intensity',
                'description': 'Global multiplier on knockout size (higher = more open mesh)'
            },
            'invert': {
                'type': 'bool',
                'default': False,
                'label': 'Invert',
                'description': 'Bright areas get the bigger holes instead of dark ones'
            }
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessingSettings":
        """
        Build settings from a JSON-like mapping. Unknown keys are ignored and
        missing keys keep their defaults.
        """
        params = cls.get_parameter_info()
        values = {key: info['default'] for key, info in params.items()}
        values.update({k: v for k, v in data.items() if k in params})
        return cls(
            black_threshold=int(values['black_threshold']),
            grid_size=int(values['grid_size']),
            shape=HalftoneShape.parse(values['shape']),
            color_mode=ColorMode.parse(values['color_mode']),
            mono_color=str(values['mono_color']),
            intensity=float(values['intensity']),
            invert=bool(values['invert']),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data['shape'] = self.shape.value
        data['color_mode'] = self.color_mode.value
        return data

    def clamped(self) -> "ProcessingSettings":
        """Copy with every numeric field pulled into its UI range."""
        params = self.get_parameter_info()

        def clamp(name, value):
            return min(max(value, params[name]['min']), params[name]['max'])

        return replace(
            self,
            black_threshold=int(clamp('black_threshold', int(self.black_threshold))),
            grid_size=int(clamp('grid_size', math.floor(self.grid_size))),
            intensity=float(clamp('intensity', float(self.intensity))),
        )

    def with_suggestion(self, suggestion) -> "ProcessingSettings":
        """Apply the shape and grid size of a SuggestionResult."""
        return replace(
            self,
            shape=suggestion.suggested_shape,
            grid_size=int(suggestion.suggested_grid_size),
        )


def parse_mono_color(value: Optional[str]) -> Tuple[int, int, int]:
    """
    Parse '#rrggbb' or 'rrggbb'. Anything malformed falls back to white.
    """
    match = _HEX_COLOR_RE.fullmatch(value or "")
    if not match:
        return WHITE
    return tuple(int(group, 16) for group in match.groups())


# -------------------- Pixel Buffer --------------------

class PixelBuffer:
    """
    Owns a (height, width, 4) uint8 RGBA array in row-major order with straight alpha.
    Both processing stages mutate it in place.
    """
    def __init__(self, width: int, height: int, data=None):
        if width < 0 or height < 0:
            raise ValueError(f"Invalid buffer size: {width}x{height}")
        if data is None:
            pixels = np.zeros((height, width, 4), dtype=np.uint8)
        else:
            raw = np.frombuffer(bytes(data), dtype=np.uint8)
            if raw.size != width * height * 4:
                raise ValueError(
                    f"Expected {width * height * 4} bytes for {width}x{height} RGBA, got {raw.size}")
            pixels = raw.reshape((height, width, 4)).copy()
        self._pixels = pixels

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "PixelBuffer":
        arr = np.asarray(arr)
        if arr.ndim != 3 or arr.shape[2] != 4:
            raise ValueError(f"Expected an (H, W, 4) array, got shape {arr.shape}")
        buf = cls(arr.shape[1], arr.shape[0])
        buf._pixels[...] = arr.astype(np.uint8)
        return buf

    @classmethod
    def from_image(cls, image: Image.Image) -> "PixelBuffer":
        return cls.from_array(np.array(image.convert('RGBA'), dtype=np.uint8))

    @property
    def width(self) -> int:
        return self._pixels.shape[1]

    @property
    def height(self) -> int:
        return self._pixels.shape[0]

    @property
    def pixels(self) -> np.ndarray:
        return self._pixels

    def copy(self) -> "PixelBuffer":
        return PixelBuffer.from_array(self._pixels)

    def to_bytes(self) -> bytes:
        return self._pixels.tobytes()

    def to_image(self) -> Image.Image:
        return Image.fromarray(self._pixels, 'RGBA')

    def __repr__(self):
        return f"PixelBuffer({self.width}x{self.height})"


# -------------------- Stage 1: Background Strip & Recolor --------------------

def strip_background(buffer: PixelBuffer, settings: ProcessingSettings) -> PixelBuffer:
    """
    Zero the alpha of every visible pixel whose brightest channel is at or
    below the black threshold (RGB left as is). In mono mode the surviving
    pixels get the mono color, alpha untouched. Transparent pixels are skipped.
    """
    pix = buffer.pixels
    visible = pix[:, :, 3] > 0
    max_val = pix[:, :, :3].max(axis=2)
    dark = visible & (max_val <= settings.black_threshold)
    pix[:, :, 3][dark] = 0

    if settings.color_mode == ColorMode.MONO:
        survivors = visible & ~dark
        pix[survivors, :3] = parse_mono_color(settings.mono_color)
    return buffer


# -------------------- Stage 2: Halftone Knockout --------------------

def compute_cell_brightness(buffer: PixelBuffer, grid_size: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Average (R+G+B)/3 over the visible pixels of every grid cell.
    Returns (mean, count) arrays of shape (rows, cols); empty cells have mean 0.
    """
    pix = buffer.pixels
    h, w = pix.shape[:2]
    rows = -(-h // grid_size)
    cols = -(-w // grid_size)

    cell_y = np.arange(h) // grid_size
    cell_x = np.arange(w) // grid_size
    cell_ids = cell_y[:, None] * cols + cell_x[None, :]

    visible = pix[:, :, 3] > 0
    brightness = pix[:, :, :3].astype(np.float64).sum(axis=2) / 3.0

    ids = cell_ids[visible]
    totals = np.bincount(ids, weights=brightness[visible], minlength=rows * cols)
    counts = np.bincount(ids, minlength=rows * cols)
    mean = np.divide(totals, counts, out=np.zeros(rows * cols), where=counts > 0)
    return mean.reshape((rows, cols)), counts.reshape((rows, cols))


def compute_stamp_sizes(mean: np.ndarray, count: np.ndarray, grid_size: int,
                        intensity: float, invert: bool) -> np.ndarray:
    """
    Map per-cell brightness to a stamp radius/half-extent.
    Normal: darker cells get bigger holes, with a 0.3 floor so solid ink still breathes.
    Inverted: brighter cells get bigger holes.
    Cells without ink or with a negligible stamp get size 0.
    """
    normalized = mean / 255.0
    if not invert:
        size_factor = intensity * (1.0 - normalized * 0.7)
    else:
        size_factor = intensity * (0.2 + normalized * 0.8)

    max_radius = (grid_size / 2.0) * 1.5
    sizes = np.maximum(0.0, max_radius * size_factor)
    sizes[(count == 0) | (sizes <= MIN_STAMP_SIZE)] = 0.0
    return sizes


def _stamp_extent(shape: HalftoneShape, max_size: float) -> float:
    # Farthest a stamp reaches from its cell center along either axis
    if shape == HalftoneShape.DIAMOND:
        return max_size * 1.4
    elif shape == HalftoneShape.LINE:
        return 0.0
    return max_size


def stamp_coverage(shape: HalftoneShape, sizes: np.ndarray, grid_size: int,
                   width: int, height: int) -> np.ndarray:
    """
    Rasterize every stamp into one (height, width) boolean mask.
    A pixel is covered when its center lies inside some stamp. Stamps may spill
    into neighboring cells, so each pixel is tested against the cells within
    reach; coverage is OR-ed, which makes the result independent of stamp order.
    """
    covered = np.zeros((height, width), dtype=bool)
    rows, cols = sizes.shape
    if not sizes.any():
        return covered

    g = float(grid_size)
    px = np.arange(width) + 0.5
    py = np.arange(height) + 0.5
    own_x = np.arange(width) // grid_size
    own_y = np.arange(height) // grid_size

    reach = int(math.ceil(_stamp_extent(shape, float(sizes.max())) / g + 0.5))

    for oy in range(-reach, reach + 1):
        ny = own_y + oy
        valid_y = (ny >= 0) & (ny < rows)
        if not valid_y.any():
            continue
        dy = py - (ny * g + g / 2.0)
        for ox in range(-reach, reach + 1):
            nx = own_x + ox
            valid_x = (nx >= 0) & (nx < cols)
            if not valid_x.any():
                continue
            dx = px - (nx * g + g / 2.0)

            s = sizes[np.clip(ny, 0, rows - 1)[:, None], np.clip(nx, 0, cols - 1)[None, :]]
            s = np.where(valid_y[:, None] & valid_x[None, :], s, 0.0)
            active = s > 0
            if not active.any():
                continue

            ddx = dx[None, :]
            ddy = dy[:, None]
            if shape == HalftoneShape.CIRCLE:
                hit = ddx ** 2 + ddy ** 2 <= s ** 2
            elif shape == HalftoneShape.SQUARE:
                hit = (ddx >= -s) & (ddx < s) & (ddy >= -s) & (ddy < s)
            elif shape == HalftoneShape.DIAMOND:
                hit = np.abs(ddx) + np.abs(ddy) <= s * 1.4
            elif shape == HalftoneShape.LINE:
                # Bar spans exactly the cell width
                bar = np.minimum(g - 1.0, s * 2.0)
                hit = ((ddx >= -g / 2.0) & (ddx < g / 2.0)
                       & (ddy >= -bar / 2.0) & (ddy < bar / 2.0))
            else:
                raise ValueError(f"Unsupported halftone shape: {shape}")

            covered |= active & hit
    return covered


def composite_knockout(alpha: np.ndarray, coverage: np.ndarray) -> np.ndarray:
    """
    Alpha-subtractive blend: result = min(dest, dest * (1 - coverage)).
    Never adds coverage back.
    """
    dest = alpha.astype(np.float64)
    result = np.minimum(dest, dest * (1.0 - coverage))
    return np.clip(np.rint(result), 0, 255).astype(np.uint8)


def apply_knockout(buffer: PixelBuffer, settings: ProcessingSettings) -> PixelBuffer:
    """
    Punch the halftone mesh out of an already stripped buffer, in place.
    """
    grid_size = max(MIN_GRID_SIZE, int(math.floor(settings.grid_size)))
    mean, count = compute_cell_brightness(buffer, grid_size)
    sizes = compute_stamp_sizes(mean, count, grid_size, settings.intensity, settings.invert)
    covered = stamp_coverage(settings.shape, sizes, grid_size, buffer.width, buffer.height)

    pix = buffer.pixels
    pix[:, :, 3] = composite_knockout(pix[:, :, 3], covered.astype(np.float64))

    logger.debug("Knockout: %d/%d cells stamped, %d pixels covered",
                 int(np.count_nonzero(sizes)), sizes.size, int(np.count_nonzero(covered)))
    return buffer


def transform(source: PixelBuffer, settings: ProcessingSettings) -> PixelBuffer:
    """
    Full pipeline on a private copy of `source`: strip and recolor, then knock out.
    The source buffer is never modified.
    """
    buffer = source.copy()
    strip_background(buffer, settings)
    apply_knockout(buffer, settings)
    return buffer


# -------------------- Halftone Processor --------------------

class HalftoneProcessor:
    """
    Runs the transform on PIL images. Always starts from the given image, never
    from an earlier result, so re-running with tweaked settings is repeatable.
    """
    def __init__(self, settings: Optional[ProcessingSettings] = None):
        self.settings = settings or ProcessingSettings()

    @staticmethod
    def get_parameter_info() -> dict:
        return ProcessingSettings.get_parameter_info()

    def process(self, image: Image.Image) -> Image.Image:
        source = PixelBuffer.from_image(image)
        logger.debug("Processing %dx%d image: shape=%s grid=%s intensity=%.2f invert=%s",
                     source.width, source.height, self.settings.shape.value,
                     self.settings.grid_size, self.settings.intensity, self.settings.invert)
        return transform(source, self.settings).to_image()
