"""Tests for the halftone core: background strip, recolor, and knockout.

Covers the per-pixel stripping rules, cell sampling, the brightness-to-size
policy, stamp geometry and the end-to-end transform scenarios.
"""

from __future__ import annotations

import numpy as np
import pytest
from PIL import Image

from halftone_lib import (
    ColorMode,
    HalftoneProcessor,
    HalftoneShape,
    PixelBuffer,
    ProcessingSettings,
    apply_knockout,
    composite_knockout,
    compute_cell_brightness,
    compute_stamp_sizes,
    parse_mono_color,
    stamp_coverage,
    strip_background,
    transform,
)


def solid(width: int, height: int, rgba) -> PixelBuffer:
    return PixelBuffer.from_array(np.full((height, width, 4), rgba, dtype=np.uint8))


def reference_coverage(shape, sizes, g, width, height):
    """Per-cell, per-pixel stamping in row-major order."""
    covered = np.zeros((height, width), dtype=bool)
    rows, cols = sizes.shape
    for r in range(rows):
        for c in range(cols):
            s = sizes[r, c]
            if s <= 0:
                continue
            cx = c * g + g / 2.0
            cy = r * g + g / 2.0
            for y in range(height):
                for x in range(width):
                    dx = x + 0.5 - cx
                    dy = y + 0.5 - cy
                    if shape == HalftoneShape.CIRCLE:
                        hit = dx ** 2 + dy ** 2 <= s ** 2
                    elif shape == HalftoneShape.SQUARE:
                        hit = -s <= dx < s and -s <= dy < s
                    elif shape == HalftoneShape.DIAMOND:
                        hit = abs(dx) + abs(dy) <= s * 1.4
                    else:
                        bar = min(g - 1.0, s * 2.0)
                        hit = -g / 2.0 <= dx < g / 2.0 and -bar / 2.0 <= dy < bar / 2.0
                    if hit:
                        covered[y, x] = True
    return covered


# ---------------------------------------------------------------------------
# Mono color parsing
# ---------------------------------------------------------------------------


class TestParseMonoColor:
    @pytest.mark.parametrize("value, expected", [
        ("#FF8000", (255, 128, 0)),
        ("ff8000", (255, 128, 0)),
        ("#00aAfF", (0, 170, 255)),
    ])
    def test_valid(self, value, expected) -> None:
        assert parse_mono_color(value) == expected

    @pytest.mark.parametrize("value", ["#fff", "zzzzzz", "", None, "#12345678", "red",
                                       "#ff0000\n", " #ff0000", "##ff0000"])
    def test_malformed_falls_back_to_white(self, value) -> None:
        assert parse_mono_color(value) == (255, 255, 255)


# ---------------------------------------------------------------------------
# Settings and buffer
# ---------------------------------------------------------------------------


class TestProcessingSettings:
    def test_defaults(self) -> None:
        s = ProcessingSettings()
        assert s.black_threshold == 30
        assert s.grid_size == 6
        assert s.shape is HalftoneShape.CIRCLE
        assert s.color_mode is ColorMode.ORIGINAL
        assert s.intensity == 1.0
        assert s.invert is False

    def test_from_dict_parses_enums_and_ignores_unknown(self) -> None:
        s = ProcessingSettings.from_dict({
            "shape": "diamond", "color_mode": "MONO", "grid_size": "8", "foo": 1,
        })
        assert s.shape is HalftoneShape.DIAMOND
        assert s.color_mode is ColorMode.MONO
        assert s.grid_size == 8

    @pytest.mark.parametrize("label, shape", [
        ("Círculo", HalftoneShape.CIRCLE),
        ("Quadrado", HalftoneShape.SQUARE),
        ("Diamante", HalftoneShape.DIAMOND),
        ("Linha", HalftoneShape.LINE),
        ("LINE", HalftoneShape.LINE),
    ])
    def test_shape_labels(self, label, shape) -> None:
        assert HalftoneShape.parse(label) is shape

    def test_unknown_shape_raises(self) -> None:
        with pytest.raises(ValueError):
            ProcessingSettings.from_dict({"shape": "hexagon"})

    def test_unknown_color_mode_raises(self) -> None:
        with pytest.raises(ValueError):
            ColorMode.parse("cmyk")

    def test_to_dict_is_json_friendly(self) -> None:
        d = ProcessingSettings(shape=HalftoneShape.LINE).to_dict()
        assert d["shape"] == "line"
        assert d["color_mode"] == "original"
        assert ProcessingSettings.from_dict(d) == ProcessingSettings(shape=HalftoneShape.LINE)

    def test_clamped(self) -> None:
        s = ProcessingSettings(black_threshold=300, grid_size=1, intensity=3.0).clamped()
        assert s.black_threshold == 255
        assert s.grid_size == 2
        assert s.intensity == 1.5

    def test_clamped_floors_grid(self) -> None:
        assert ProcessingSettings(grid_size=6.9).clamped().grid_size == 6

    def test_with_suggestion(self) -> None:
        from suggestion_service import SuggestionResult
        s = ProcessingSettings().with_suggestion(
            SuggestionResult(HalftoneShape.LINE, 12, "vintage"))
        assert s.shape is HalftoneShape.LINE
        assert s.grid_size == 12
        assert s.black_threshold == 30

    def test_is_immutable(self) -> None:
        with pytest.raises(Exception):
            ProcessingSettings().grid_size = 4


class TestPixelBuffer:
    def test_from_bytes(self) -> None:
        data = bytes(range(2 * 3 * 4))
        buf = PixelBuffer(2, 3, data)
        assert (buf.width, buf.height) == (2, 3)
        assert buf.pixels.shape == (3, 2, 4)
        assert buf.to_bytes() == data

    def test_wrong_length_raises(self) -> None:
        with pytest.raises(ValueError):
            PixelBuffer(2, 2, b"\x00" * 15)

    def test_empty_by_default(self) -> None:
        buf = PixelBuffer(4, 2)
        assert not buf.pixels.any()

    def test_from_rgb_image_is_opaque(self) -> None:
        buf = PixelBuffer.from_image(Image.new("RGB", (5, 4), (10, 20, 30)))
        assert (buf.width, buf.height) == (5, 4)
        assert (buf.pixels[:, :, 3] == 255).all()
        assert tuple(buf.pixels[0, 0, :3]) == (10, 20, 30)

    def test_copy_is_independent(self) -> None:
        buf = solid(2, 2, (1, 2, 3, 4))
        dup = buf.copy()
        dup.pixels[0, 0, 0] = 99
        assert buf.pixels[0, 0, 0] == 1

    def test_rejects_bad_array(self) -> None:
        with pytest.raises(ValueError):
            PixelBuffer.from_array(np.zeros((2, 2, 3), dtype=np.uint8))


# ---------------------------------------------------------------------------
# Stage 1
# ---------------------------------------------------------------------------


class TestStripBackground:
    def test_dark_pixels_lose_alpha_only(self) -> None:
        buf = solid(3, 3, (10, 20, 30, 255))
        strip_background(buf, ProcessingSettings(black_threshold=30))
        assert (buf.pixels[:, :, 3] == 0).all()
        assert (buf.pixels[:, :, :3] == (10, 20, 30)).all()

    def test_threshold_is_inclusive(self) -> None:
        arr = np.zeros((1, 2, 4), dtype=np.uint8)
        arr[0, 0] = (30, 0, 0, 255)
        arr[0, 1] = (31, 0, 0, 255)
        buf = PixelBuffer.from_array(arr)
        strip_background(buf, ProcessingSettings(black_threshold=30))
        assert buf.pixels[0, 0, 3] == 0
        assert buf.pixels[0, 1, 3] == 255

    def test_transparent_pixels_untouched(self) -> None:
        arr = np.zeros((1, 3, 4), dtype=np.uint8)
        arr[0, 0] = (5, 5, 5, 0)
        arr[0, 1] = (200, 100, 50, 0)
        arr[0, 2] = (200, 100, 50, 255)
        buf = PixelBuffer.from_array(arr)
        strip_background(buf, ProcessingSettings(color_mode=ColorMode.MONO, mono_color="#00ff00"))
        assert tuple(buf.pixels[0, 0]) == (5, 5, 5, 0)
        assert tuple(buf.pixels[0, 1]) == (200, 100, 50, 0)
        assert tuple(buf.pixels[0, 2]) == (0, 255, 0, 255)

    def test_mono_recolor_keeps_alpha(self) -> None:
        rng = np.random.default_rng(1)
        arr = rng.integers(0, 256, size=(6, 7, 4), dtype=np.uint8)
        before = arr.copy()
        buf = PixelBuffer.from_array(arr)
        strip_background(buf, ProcessingSettings(black_threshold=40,
                                                 color_mode=ColorMode.MONO,
                                                 mono_color="#1E90FF"))
        visible = before[:, :, 3] > 0
        survivors = visible & (before[:, :, :3].max(axis=2) > 40)
        assert (buf.pixels[survivors, :3] == (30, 144, 255)).all()
        assert (buf.pixels[survivors, 3] == before[survivors, 3]).all()
        stripped = visible & ~survivors
        assert (buf.pixels[stripped, 3] == 0).all()
        assert (buf.pixels[stripped, :3] == before[stripped, :3]).all()

    def test_malformed_mono_color_is_white(self) -> None:
        buf = solid(2, 2, (100, 50, 50, 200))
        strip_background(buf, ProcessingSettings(color_mode=ColorMode.MONO, mono_color="nope"))
        assert (buf.pixels[:, :, :3] == 255).all()
        assert (buf.pixels[:, :, 3] == 200).all()

    def test_original_mode_keeps_rgb(self) -> None:
        buf = solid(2, 2, (100, 50, 50, 255))
        strip_background(buf, ProcessingSettings())
        assert (buf.pixels == (100, 50, 50, 255)).all()


# ---------------------------------------------------------------------------
# Stage 2 sampling and sizing
# ---------------------------------------------------------------------------


class TestCellBrightness:
    def test_partial_cells(self) -> None:
        buf = solid(3, 3, (30, 60, 90, 255))
        mean, count = compute_cell_brightness(buf, 2)
        assert mean.shape == (2, 2)
        assert np.allclose(mean, 60.0)
        assert count.tolist() == [[4, 2], [2, 1]]

    def test_ignores_transparent_pixels(self) -> None:
        arr = np.zeros((2, 2, 4), dtype=np.uint8)
        arr[0, 0] = (255, 255, 255, 255)
        arr[0, 1] = (0, 0, 0, 0)
        arr[1, 0] = (90, 90, 90, 10)
        arr[1, 1] = (255, 255, 255, 0)
        mean, count = compute_cell_brightness(PixelBuffer.from_array(arr), 2)
        assert count[0, 0] == 2
        assert mean[0, 0] == pytest.approx((255 + 90) / 2)

    def test_simple_channel_average(self) -> None:
        mean, _ = compute_cell_brightness(solid(2, 2, (255, 0, 0, 255)), 2)
        assert mean[0, 0] == pytest.approx(85.0)

    def test_empty_cell(self) -> None:
        mean, count = compute_cell_brightness(solid(4, 4, (200, 200, 200, 0)), 2)
        assert not count.any()
        assert not mean.any()


class TestStampSizes:
    def test_white_cell_normal(self) -> None:
        sizes = compute_stamp_sizes(np.array([[255.0]]), np.array([[1]]), 8, 1.0, False)
        assert sizes[0, 0] == pytest.approx(1.8)

    def test_white_cell_inverted(self) -> None:
        sizes = compute_stamp_sizes(np.array([[255.0]]), np.array([[1]]), 8, 1.0, True)
        assert sizes[0, 0] == pytest.approx(6.0)

    def test_empty_cell_has_no_stamp(self) -> None:
        sizes = compute_stamp_sizes(np.array([[0.0]]), np.array([[0]]), 8, 1.0, False)
        assert sizes[0, 0] == 0.0

    def test_negligible_stamp_skipped(self) -> None:
        # 1.5 * 0.1 * 0.3 = 0.045
        sizes = compute_stamp_sizes(np.array([[255.0]]), np.array([[4]]), 2, 0.1, False)
        assert sizes[0, 0] == 0.0

    def test_monotonic_in_intensity(self) -> None:
        rng = np.random.default_rng(7)
        mean = rng.uniform(0, 255, size=(5, 5))
        count = np.ones((5, 5), dtype=int)
        for invert in (False, True):
            previous = None
            for intensity in np.linspace(0.1, 1.5, 15):
                sizes = compute_stamp_sizes(mean, count, 6, intensity, invert)
                if previous is not None:
                    assert (sizes >= previous).all()
                previous = sizes

    def test_invert_reverses_ordering(self) -> None:
        mean = np.array([[40.0, 200.0]])
        count = np.ones((1, 2), dtype=int)
        normal = compute_stamp_sizes(mean, count, 8, 1.0, False)
        inverted = compute_stamp_sizes(mean, count, 8, 1.0, True)
        assert normal[0, 0] >= normal[0, 1]
        assert inverted[0, 0] <= inverted[0, 1]


# ---------------------------------------------------------------------------
# Stage 2 stamping
# ---------------------------------------------------------------------------


class TestStampCoverage:
    @pytest.mark.parametrize("shape", list(HalftoneShape))
    @pytest.mark.parametrize("intensity", [0.4, 1.0, 1.5])
    def test_matches_sequential_stamping(self, shape, intensity) -> None:
        rng = np.random.default_rng(3)
        arr = rng.integers(0, 256, size=(11, 13, 4), dtype=np.uint8)
        arr[:4, :4, 3] = 0
        buf = PixelBuffer.from_array(arr)
        mean, count = compute_cell_brightness(buf, 3)
        sizes = compute_stamp_sizes(mean, count, 3, intensity, False)
        got = stamp_coverage(shape, sizes, 3, 13, 11)
        expected = reference_coverage(shape, sizes, 3, 13, 11)
        assert np.array_equal(got, expected)

    def test_stamp_spills_into_neighbor_cell(self) -> None:
        # Dark-gray left cell gets a radius-4 hole that reaches the white right cell
        arr = np.zeros((4, 8, 4), dtype=np.uint8)
        arr[:, :4] = (40, 40, 40, 255)
        arr[:, 4:] = (255, 255, 255, 255)
        buf = PixelBuffer.from_array(arr)
        apply_knockout(buf, ProcessingSettings(grid_size=4, intensity=1.5))
        assert buf.pixels[1, 4, 3] == 0
        assert buf.pixels[0, 7, 3] == 255

    def test_no_stamps(self) -> None:
        covered = stamp_coverage(HalftoneShape.CIRCLE, np.zeros((2, 2)), 4, 8, 8)
        assert not covered.any()


class TestCompositeKnockout:
    def test_full_coverage_clears(self) -> None:
        alpha = np.array([[255, 128, 0]], dtype=np.uint8)
        out = composite_knockout(alpha, np.ones((1, 3)))
        assert out.tolist() == [[0, 0, 0]]

    def test_partial_coverage_never_adds(self) -> None:
        alpha = np.array([[200, 100]], dtype=np.uint8)
        out = composite_knockout(alpha, np.array([[0.5, 0.0]]))
        assert out.tolist() == [[100, 100]]


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


def white_8x8() -> PixelBuffer:
    return solid(8, 8, (255, 255, 255, 255))


def disc_mask(radius: float, size: int = 8, center: float = 4.0) -> np.ndarray:
    c = np.arange(size) + 0.5
    return (c[None, :] - center) ** 2 + (c[:, None] - center) ** 2 <= radius ** 2


class TestTransform:
    @pytest.mark.parametrize("shape", list(HalftoneShape))
    @pytest.mark.parametrize("grid", [2, 3, 8])
    def test_all_black_becomes_transparent(self, shape, grid) -> None:
        src = solid(4, 4, (0, 0, 0, 255))
        out = transform(src, ProcessingSettings(black_threshold=30, grid_size=grid,
                                                shape=shape, intensity=1.5))
        assert (out.pixels[:, :, 3] == 0).all()

    def test_white_circle(self) -> None:
        out = transform(white_8x8(), ProcessingSettings(grid_size=8, intensity=1.0))
        inside = disc_mask(1.8)
        assert np.count_nonzero(inside) == 12
        assert (out.pixels[:, :, 3][inside] == 0).all()
        assert (out.pixels[:, :, 3][~inside] == 255).all()
        assert (out.pixels[:, :, :3] == 255).all()

    def test_white_circle_inverted(self) -> None:
        out = transform(white_8x8(), ProcessingSettings(grid_size=8, intensity=1.0, invert=True))
        inside = disc_mask(6.0)
        assert (out.pixels[:, :, 3][inside] == 0).all()
        assert (out.pixels[:, :, 3][~inside] == 255).all()
        assert np.count_nonzero(inside) > 12

    def test_white_square(self) -> None:
        out = transform(white_8x8(), ProcessingSettings(grid_size=8, shape=HalftoneShape.SQUARE))
        expected = np.full((8, 8), 255)
        expected[2:6, 2:6] = 0
        assert np.array_equal(out.pixels[:, :, 3], expected)

    def test_white_line(self) -> None:
        out = transform(white_8x8(), ProcessingSettings(grid_size=8, shape=HalftoneShape.LINE))
        expected = np.full((8, 8), 255)
        expected[2:6, :] = 0
        assert np.array_equal(out.pixels[:, :, 3], expected)

    def test_white_diamond(self) -> None:
        out = transform(white_8x8(), ProcessingSettings(grid_size=8, shape=HalftoneShape.DIAMOND))
        c = np.arange(8) + 0.5
        inside = np.abs(c[None, :] - 4) + np.abs(c[:, None] - 4) <= 1.8 * 1.4
        assert (out.pixels[:, :, 3][inside] == 0).all()
        assert (out.pixels[:, :, 3][~inside] == 255).all()

    def test_empty_cell_gets_no_knockout(self) -> None:
        arr = np.zeros((8, 16, 4), dtype=np.uint8)
        arr[:, :8] = (10, 10, 10, 255)
        arr[:, 8:] = (255, 255, 255, 255)
        src = PixelBuffer.from_array(arr)
        settings = ProcessingSettings(grid_size=8)
        stripped = strip_background(src.copy(), settings)
        mean, count = compute_cell_brightness(stripped, 8)
        assert count[0, 0] == 0
        out = transform(src, settings)
        assert (out.pixels[:, :8] == stripped.pixels[:, :8]).all()

    def test_source_not_mutated_and_repeatable(self) -> None:
        rng = np.random.default_rng(11)
        src = PixelBuffer.from_array(rng.integers(0, 256, size=(20, 17, 4), dtype=np.uint8))
        before = src.to_bytes()
        settings = ProcessingSettings(grid_size=5, shape=HalftoneShape.DIAMOND,
                                      color_mode=ColorMode.MONO, mono_color="#ff0000")
        first = transform(src, settings)
        second = transform(src, settings)
        assert src.to_bytes() == before
        assert first.to_bytes() == second.to_bytes()
        assert (first.width, first.height) == (17, 20)

    def test_grid_below_minimum_is_clamped(self) -> None:
        src = white_8x8()
        two = transform(src, ProcessingSettings(grid_size=2)).to_bytes()
        assert transform(src, ProcessingSettings(grid_size=1)).to_bytes() == two
        assert transform(src, ProcessingSettings(grid_size=0)).to_bytes() == two

    def test_fractional_grid_is_floored(self) -> None:
        src = white_8x8()
        assert (transform(src, ProcessingSettings(grid_size=6.7)).to_bytes()
                == transform(src, ProcessingSettings(grid_size=6)).to_bytes())

    def test_mono_recolor_drives_sampling(self) -> None:
        src = solid(8, 8, (100, 0, 0, 255))
        original = transform(src, ProcessingSettings(grid_size=8))
        mono = transform(src, ProcessingSettings(grid_size=8, color_mode=ColorMode.MONO,
                                                 mono_color="#ffffff"))
        holes_original = np.count_nonzero(original.pixels[:, :, 3] == 0)
        holes_mono = np.count_nonzero(mono.pixels[:, :, 3] == 0)
        assert holes_mono < holes_original

    def test_empty_image(self) -> None:
        out = transform(PixelBuffer(0, 0), ProcessingSettings())
        assert (out.width, out.height) == (0, 0)


class TestHalftoneProcessor:
    def test_process_returns_rgba_same_size(self) -> None:
        img = Image.new("RGB", (10, 7), (255, 255, 255))
        out = HalftoneProcessor(ProcessingSettings(grid_size=4)).process(img)
        assert out.mode == "RGBA"
        assert out.size == (10, 7)

    def test_default_settings(self) -> None:
        assert HalftoneProcessor().settings == ProcessingSettings()
