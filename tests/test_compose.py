"""
Tests for CompositionEngine.

Tests cover:
- Canvas size comes from the background
- Draw order (background → text → foreground)
- Anchor placement and rotation about the anchor
- Determinism
- Missing-raster and bad-canvas handling
"""

import pytest
from io import BytesIO
from PIL import Image

from errors import ResourceError
from services.compose import CompositionEngine, TextOverlaySpec

TRANSPARENT = (0, 0, 0, 0)


def ink_bbox(image: Image.Image):
    return image.getchannel("A").getbbox()


def test_default_overlay_values():
    overlay = TextOverlaySpec()
    assert overlay.to_dict() == {
        "content": "",
        "size_px": 120,
        "color_hex": "#ffffff",
        "x_percent": 50,
        "y_percent": 50,
        "rotation_degrees": 0,
    }


def test_canvas_size_comes_from_background(engine):
    background = Image.new("RGB", (320, 200), (10, 20, 30))
    foreground = Image.new("RGBA", (64, 64), TRANSPARENT)

    result = engine.composite(background, TextOverlaySpec(content="HI"), foreground)

    assert result.size == (320, 200)
    assert result.mode == "RGBA"


def test_mismatched_foreground_is_stretched(engine):
    background = Image.new("RGBA", (100, 50), (255, 0, 0, 255))
    foreground = Image.new("RGBA", (10, 10), (0, 0, 255, 255))

    result = engine.composite(background, TextOverlaySpec(), foreground)

    assert result.size == (100, 50)
    # Opaque 10x10 cutout stretched over the whole canvas
    assert result.getpixel((0, 0)) == (0, 0, 255, 255)
    assert result.getpixel((99, 49)) == (0, 0, 255, 255)


def test_missing_raster_produces_nothing(engine):
    background = Image.new("RGBA", (10, 10))
    assert engine.composite(background, TextOverlaySpec(), None) is None
    assert engine.composite(None, TextOverlaySpec(), background) is None


def test_zero_size_canvas_raises_resource_error(engine):
    background = Image.new("RGBA", (0, 0))
    foreground = Image.new("RGBA", (10, 10))
    with pytest.raises(ResourceError):
        engine.composite(background, TextOverlaySpec(), foreground)


def test_identical_inputs_give_identical_pixels(engine):
    background = Image.new("RGBA", (200, 120), (0, 128, 0, 255))
    foreground = Image.new("RGBA", (200, 120), TRANSPARENT)
    foreground.paste((0, 0, 255, 255), (80, 40, 120, 80))
    overlay = TextOverlaySpec(content="SAME", size_px=20, color_hex="#ff0000", rotation_degrees=30)

    first = engine.composite(background, overlay, foreground)
    second = engine.composite(background, overlay, foreground)

    assert first.tobytes() == second.tobytes()


def test_text_drawn_between_background_and_foreground(engine):
    size = (400, 300)
    background = Image.new("RGBA", size, (0, 128, 0, 255))
    subject_box = (150, 120, 250, 180)
    foreground = Image.new("RGBA", size, TRANSPARENT)
    foreground.paste((0, 0, 255, 255), subject_box)
    overlay = TextOverlaySpec(content="WIDE TEXT", size_px=30, color_hex="#ff0000")

    result = engine.composite(background, overlay, foreground)
    text_layer = engine.render_text_layer(overlay, size)

    # Subject pixels occlude the text
    for x in range(subject_box[0], subject_box[2], 7):
        for y in range(subject_box[1], subject_box[3], 7):
            assert result.getpixel((x, y)) == (0, 0, 255, 255)

    # Solid text pixels outside the subject show through the alpha hole
    visible_text = [
        (x, y)
        for x in range(0, size[0], 2)
        for y in range(0, size[1], 2)
        if text_layer.getpixel((x, y))[3] == 255
        and not (subject_box[0] <= x < subject_box[2] and subject_box[1] <= y < subject_box[3])
    ]
    assert visible_text
    for point in visible_text[:50]:
        assert result.getpixel(point) == (255, 0, 0, 255)

    # Far corner: background only
    assert result.getpixel((2, 2)) == (0, 128, 0, 255)


def test_anchor_point_uses_percentages(engine):
    overlay = TextOverlaySpec(x_percent=25, y_percent=75)
    assert engine.anchor_point(overlay, (400, 200)) == (100.0, 150.0)


def test_upright_text_is_centered_on_anchor(engine):
    overlay = TextOverlaySpec(content="HI", size_px=20, x_percent=25, y_percent=50)
    layer = engine.render_text_layer(overlay, (400, 300))

    left, top, right, bottom = ink_bbox(layer)
    assert abs((left + right) / 2 - 100) <= 3
    assert abs((top + bottom) / 2 - 150) <= 40 * 0.35


def test_half_turn_keeps_anchor(engine):
    size = (400, 300)
    upright = engine.render_text_layer(TextOverlaySpec(content="HELLO", size_px=20), size)
    flipped = engine.render_text_layer(TextOverlaySpec(content="HELLO", size_px=20, rotation_degrees=180), size)

    left, top, right, bottom = ink_bbox(upright)
    f_left, f_top, f_right, f_bottom = ink_bbox(flipped)

    # 180° about (200, 150) maps x → 400 - x and y → 300 - y
    assert abs(f_left - (size[0] - right)) <= 3
    assert abs(f_right - (size[0] - left)) <= 3
    assert abs(f_top - (size[1] - bottom)) <= 3
    assert abs(f_bottom - (size[1] - top)) <= 3


def test_quarter_turn_stands_text_up(engine):
    # Wide text rotated 90° becomes tall
    layer = engine.render_text_layer(
        TextOverlaySpec(content="WIDEWIDE", size_px=10, rotation_degrees=90),
        (300, 300),
    )
    left, top, right, bottom = ink_bbox(layer)
    assert (bottom - top) > (right - left)


def test_empty_content_draws_no_text(engine):
    layer = engine.render_text_layer(TextOverlaySpec(content=""), (50, 50))
    assert ink_bbox(layer) is None


def test_font_size_is_scaled():
    small = CompositionEngine(text_scale=1.0).render_text_layer(TextOverlaySpec(content="H", size_px=20), (200, 200))
    large = CompositionEngine(text_scale=2.0).render_text_layer(TextOverlaySpec(content="H", size_px=20), (200, 200))

    small_height = ink_bbox(small)[3] - ink_bbox(small)[1]
    large_height = ink_bbox(large)[3] - ink_bbox(large)[1]
    assert large_height > small_height * 1.5


def test_hello_scenario(engine):
    """800x600 upload, red HELLO at the center, subject drawn over it."""
    size = (800, 600)
    background = Image.new("RGB", size, (0, 128, 0))
    subject_box = (300, 250, 500, 350)
    foreground = Image.new("RGBA", size, TRANSPARENT)
    foreground.paste((0, 0, 255, 255), subject_box)
    overlay = TextOverlaySpec(content="HELLO", size_px=140, color_hex="#ff0000")

    result = engine.composite(background, overlay, foreground)

    assert result.size == (800, 600)
    assert result.getpixel((400, 300)) == (0, 0, 255, 255)
    assert result.getpixel((5, 5)) == (0, 128, 0, 255)

    red = sum(1 for pixel in result.getdata() if pixel == (255, 0, 0, 255))
    assert red > 0


def test_encode_png_round_trips_size(engine):
    image = Image.new("RGBA", (30, 20), (1, 2, 3, 255))
    decoded = Image.open(BytesIO(engine.encode_png(image)))
    assert decoded.format == "PNG"
    assert decoded.size == (30, 20)
