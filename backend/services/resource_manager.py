"""
Resource Lifecycle Manager
==========================
Owns the transient raster buffers the editor works with: the uploaded
original (ImageSource) and the background-removed cutout (ForegroundCutout).

Each buffer lives behind a ResourceHandle with exactly one owner. Handles
are released explicitly; nothing here relies on garbage collection.
"""

from dataclasses import dataclass, field
from io import BytesIO
from itertools import count
from typing import Dict, List, Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from errors import ResourceError
from logging_setup import get_logger

logger = get_logger(__name__)

KIND_SOURCE = "source"
KIND_CUTOUT = "cutout"


@dataclass(eq=False)
class ResourceHandle:
    """A lease on a transient binary resource."""
    handle_id: int
    kind: str
    content_type: Optional[str] = None
    # Generation token of the request that produced this buffer (cutouts only)
    generation: Optional[int] = None
    _data: Optional[bytes] = field(default=None, repr=False)
    released: bool = False

    @property
    def data(self) -> bytes:
        if self.released or self._data is None:
            raise ResourceError(
                f"Resource handle {self.handle_id} ({self.kind}) has been released",
                details={"handle_id": self.handle_id},
            )
        return self._data

    @property
    def size_bytes(self) -> int:
        return 0 if self._data is None else len(self._data)


class ResourceLifecycleManager:
    """
    Issues and tracks resource handles.

    Usage:
        manager = ResourceLifecycleManager()
        source = manager.replace(source, upload_bytes, kind=KIND_SOURCE)
        ...
        manager.release(source)
    """

    def __init__(self):
        self._ids = count(1)
        self._live: Dict[int, ResourceHandle] = {}
        self.double_releases = 0

    @property
    def live_handles(self) -> List[ResourceHandle]:
        return list(self._live.values())

    def is_live(self, handle: Optional[ResourceHandle]) -> bool:
        return handle is not None and handle.handle_id in self._live

    def acquire(
        self,
        data: bytes,
        kind: str,
        content_type: Optional[str] = None,
        generation: Optional[int] = None,
    ) -> ResourceHandle:
        """Create a new handle that owns `data`."""
        if not data:
            raise ResourceError(f"Cannot acquire an empty {kind} resource")

        handle = ResourceHandle(
            handle_id=next(self._ids),
            kind=kind,
            content_type=content_type,
            generation=generation,
            _data=bytes(data),
        )
        self._live[handle.handle_id] = handle
        logger.debug("resource_acquired", handle_id=handle.handle_id, kind=kind, size_bytes=handle.size_bytes)
        return handle

    def release(self, handle: ResourceHandle) -> bool:
        """
        Invalidate a handle and drop its buffer.

        Releasing the same handle twice is a caller bug: it is logged and
        counted, never raised.

        Returns:
            True if the handle was live, False otherwise
        """
        if handle.released or handle.handle_id not in self._live:
            self.double_releases += 1
            logger.warning("resource_double_release", handle_id=handle.handle_id, kind=handle.kind)
            return False

        del self._live[handle.handle_id]
        handle.released = True
        handle._data = None
        logger.debug("resource_released", handle_id=handle.handle_id, kind=handle.kind)
        return True

    def replace(
        self,
        old_handle: Optional[ResourceHandle],
        data: bytes,
        kind: str,
        content_type: Optional[str] = None,
        generation: Optional[int] = None,
    ) -> ResourceHandle:
        """
        Swap `old_handle` for a fresh handle over `data` in one call.

        The new buffer is acquired first so a bad payload leaves the old
        handle untouched.
        """
        new_handle = self.acquire(data, kind, content_type=content_type, generation=generation)
        if old_handle is not None and self.is_live(old_handle):
            self.release(old_handle)
        return new_handle

    def open_image(self, handle: Optional[ResourceHandle]) -> Image.Image:
        """
        Decode a live handle into a Pillow image, upright.

        EXIF orientation is applied so the raster matches what rembg hands
        back (it transposes its input the same way before segmenting).
        """
        if handle is None:
            raise ResourceError("No raster to open")

        try:
            image = Image.open(BytesIO(handle.data))
            image.load()
            image = ImageOps.exif_transpose(image)
        except (UnidentifiedImageError, OSError) as e:
            raise ResourceError(
                f"Cannot decode {handle.kind} raster: {e}",
                details={"handle_id": handle.handle_id},
            ) from e
        return image

    def release_all(self) -> int:
        """Release every live handle. Returns how many were released."""
        handles = self.live_handles
        for handle in handles:
            self.release(handle)
        return len(handles)
