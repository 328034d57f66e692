"""
Image Compositing Service (Text Behind Image)
=============================================
Builds the "text behind the subject" illusion from three layers.

Pipeline:
1. Background: the original photo, full-frame (defines the canvas size)
2. Text: drawn at a percentage anchor, optionally rotated about it
3. Foreground: the background-removed cutout, stretched to the canvas

The cutout's transparent pixels let the text show through while the opaque
subject pixels cover it. The draw order is the whole trick.
"""

from dataclasses import dataclass, asdict
from functools import lru_cache
from io import BytesIO
from pathlib import Path
from typing import Optional, Tuple, Dict, Any

from PIL import Image, ImageColor, ImageDraw, ImageFont

from config import settings
from errors import ResourceError
from logging_setup import get_logger

logger = get_logger(__name__)

BOLD_FONT_CANDIDATES = [
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",  # Debian/Ubuntu
    "/usr/share/fonts/dejavu/DejaVuSans-Bold.ttf",  # Fedora
    "/usr/share/fonts/TTF/DejaVuSans-Bold.ttf",  # Arch
    "/Library/Fonts/Arial Bold.ttf",  # macOS
    "/System/Library/Fonts/Supplemental/Arial Bold.ttf",
    "C:/Windows/Fonts/arialbd.ttf",  # Windows
]


@dataclass
class TextOverlaySpec:
    """Where and how the text is drawn. Percentages are of the canvas size."""
    content: str = ""
    size_px: float = 120
    color_hex: str = "#ffffff"
    x_percent: float = 50
    y_percent: float = 50
    rotation_degrees: float = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@lru_cache(maxsize=32)
def load_bold_font(size: int, font_path: Optional[str] = None) -> Tuple[ImageFont.ImageFont, bool]:
    """
    Load a bold TrueType font at `size` pixels.

    Returns:
        (font, is_bold). When no bold face is found, Pillow's scalable default
        is returned with is_bold=False and the caller fakes the weight.
    """
    candidates = [font_path] if font_path else []
    candidates.extend(BOLD_FONT_CANDIDATES)

    for path in candidates:
        if path and Path(path).exists():
            try:
                return ImageFont.truetype(path, size), True
            except OSError as e:
                logger.debug("font_load_failed", path=path, error=str(e))
                continue

    logger.warning("bold_font_unavailable", size=size)
    return ImageFont.load_default(size=size), False


class CompositionEngine:
    """
    Pure compositor: identical inputs give identical pixels
    (for a given font engine).
    """

    def __init__(self, text_scale: float = 2.0, font_path: Optional[str] = None):
        """
        Args:
            text_scale: Multiplier applied to TextOverlaySpec.size_px. The editor
                        works on a 2x internal scale, so 120 means 240px glyphs.
            font_path: Optional bold TTF to use instead of the system fallbacks
        """
        self.text_scale = text_scale
        self.font_path = font_path

    def anchor_point(self, overlay: TextOverlaySpec, canvas_size: Tuple[int, int]) -> Tuple[float, float]:
        """Convert the percentage anchor to canvas pixels."""
        width, height = canvas_size
        return (overlay.x_percent / 100 * width, overlay.y_percent / 100 * height)

    def render_text_layer(self, overlay: TextOverlaySpec, canvas_size: Tuple[int, int]) -> Image.Image:
        """
        Draw the overlay text on a transparent canvas-sized layer.

        The text is centered on the anchor and the layer is rotated about that
        same point, so the anchor never moves with rotation.
        """
        layer = Image.new("RGBA", canvas_size, (0, 0, 0, 0))
        if not overlay.content:
            return layer

        font_size = max(1, int(round(overlay.size_px * self.text_scale)))
        font, is_bold = load_bold_font(font_size, self.font_path)
        fill = ImageColor.getrgb(overlay.color_hex)
        anchor_x, anchor_y = self.anchor_point(overlay, canvas_size)

        draw = ImageDraw.Draw(layer)
        draw.text(
            (anchor_x, anchor_y),
            overlay.content,
            font=font,
            fill=fill,
            anchor="mm",
            # No bold face on this host: thicken the strokes instead
            stroke_width=0 if is_bold else max(1, font_size // 30),
            stroke_fill=None if is_bold else fill,
        )

        if overlay.rotation_degrees % 360 != 0:
            # Pillow rotates counter-clockwise; canvas rotation is clockwise (y down)
            layer = layer.rotate(
                -overlay.rotation_degrees,
                resample=Image.Resampling.BICUBIC,
                center=(anchor_x, anchor_y),
            )
        return layer

    def composite(
        self,
        background: Optional[Image.Image],
        overlay: TextOverlaySpec,
        foreground: Optional[Image.Image],
    ) -> Optional[Image.Image]:
        """
        Compose background → text → foreground.

        Args:
            background: Original photo; its size is the canvas size
            overlay: Text to draw between the two rasters
            foreground: Background-removed cutout (RGBA)

        Returns:
            RGBA image the size of `background`, or None when either raster
            is missing (removal still pending)

        Raises:
            ResourceError: the canvas cannot be created (zero-sized background)
        """
        if background is None or foreground is None:
            return None

        canvas_size = background.size
        if canvas_size[0] <= 0 or canvas_size[1] <= 0:
            raise ResourceError(f"Cannot draw on a {canvas_size[0]}x{canvas_size[1]} canvas")

        canvas = Image.new("RGBA", canvas_size, (0, 0, 0, 0))

        # Layer 1: background, full-frame
        canvas = Image.alpha_composite(canvas, self._fit_to_canvas(background, canvas_size))

        # Layer 2: text
        canvas = Image.alpha_composite(canvas, self.render_text_layer(overlay, canvas_size))

        # Layer 3: cutout on top; its alpha holes reveal the text
        if foreground.size != canvas_size:
            logger.info(
                "foreground_size_mismatch",
                foreground=f"{foreground.width}x{foreground.height}",
                canvas=f"{canvas_size[0]}x{canvas_size[1]}",
            )
        canvas = Image.alpha_composite(canvas, self._fit_to_canvas(foreground, canvas_size))

        return canvas

    def encode_png(self, image: Image.Image) -> bytes:
        """PNG-encode a composite for download or the host document."""
        buffer = BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()

    @staticmethod
    def _fit_to_canvas(image: Image.Image, canvas_size: Tuple[int, int]) -> Image.Image:
        """Stretch to the canvas size (no aspect preservation, like drawImage)."""
        if image.mode != "RGBA":
            image = image.convert("RGBA")
        if image.size != canvas_size:
            image = image.resize(canvas_size, Image.Resampling.LANCZOS)
        return image


compose_service = CompositionEngine(text_scale=settings.TEXT_SCALE, font_path=settings.FONT_PATH)
