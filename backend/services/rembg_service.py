"""
Background Removal Service
==========================
Cuts the subject out of a user photo using open-source AI models.

BackgroundRemovalClient is the contract the pipeline depends on; the
rembg implementation below is the default. The model itself is opaque:
latency is unbounded and the output size is not guaranteed to match the input.
"""

import asyncio
from abc import ABC, abstractmethod
from io import BytesIO
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from config import settings
from errors import RemovalError
from logging_setup import get_logger
from services.resource_manager import ResourceHandle

logger = get_logger(__name__)


def _rembg_remove(image: Image.Image, session, **kwargs) -> Image.Image:
    from rembg import remove

    return remove(image, session=session, **kwargs)


class BackgroundRemovalClient(ABC):
    """Async contract over an external segmentation service."""

    @abstractmethod
    async def remove_background(self, image: ResourceHandle) -> bytes:
        """
        Remove the background from the raster behind `image`.

        Args:
            image: Live handle to the uploaded raster (any format Pillow reads)

        Returns:
            PNG-encoded RGBA bytes, background alpha zeroed

        Raises:
            RemovalError: network, unsupported-format or model failure
        """
        pass


class RembgRemovalClient(BackgroundRemovalClient):
    """
    Background removal with rembg (U²-Net / IS-Net, free, self-hostable).

    The model session is created on first use. rembg downloads the weights
    on first run (~170MB) and caches them in ~/.u2net/.
    """

    def __init__(self, model_name: str = "u2net", alpha_matting: bool = False):
        """
        Args:
            model_name: rembg model ("u2net", "isnet-general-use", ...)
            alpha_matting: Use alpha matting for finer edge details
                          (slower but better for hair/fur)
        """
        self.model_name = model_name
        self.alpha_matting = alpha_matting
        self._session = None

    def _ensure_session(self):
        """Lazy-load the rembg model session on first use."""
        if self._session is None:
            from rembg import new_session

            logger.info("rembg_session_loading", model=self.model_name)
            self._session = new_session(self.model_name)
        return self._session

    def _remove_sync(self, image_bytes: bytes) -> bytes:
        try:
            input_image = Image.open(BytesIO(image_bytes))
            input_image.load()
            # Upright, matching the background the compositor draws
            input_image = ImageOps.exif_transpose(input_image)
        except (UnidentifiedImageError, OSError) as e:
            raise RemovalError(f"Unsupported image format: {e}", reason="unsupported_format") from e

        session = self._ensure_session()
        if self.alpha_matting:
            output_image = _rembg_remove(
                input_image,
                session,
                alpha_matting=True,
                alpha_matting_foreground_threshold=240,
                alpha_matting_background_threshold=10,
            )
        else:
            output_image = _rembg_remove(input_image, session)

        buffer = BytesIO()
        output_image.convert("RGBA").save(buffer, format="PNG")
        return buffer.getvalue()

    async def remove_background(self, image: ResourceHandle) -> bytes:
        # Read the bytes on the loop thread; the handle may be released later
        image_bytes = image.data
        try:
            # Inference blocks, so run it off the event loop
            return await asyncio.to_thread(self._remove_sync, image_bytes)
        except RemovalError:
            raise
        except Exception as e:
            raise RemovalError(f"Background removal failed: {e}", reason="internal") from e


def create_removal_client(model_name: Optional[str] = None) -> BackgroundRemovalClient:
    """Build the configured removal client."""
    return RembgRemovalClient(
        model_name=model_name or settings.REMBG_MODEL,
        alpha_matting=settings.ALPHA_MATTING,
    )


# Singleton instance for use across the application
rembg_service = create_removal_client()
