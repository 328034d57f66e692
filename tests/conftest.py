"""
Pytest configuration and shared fixtures.

FakeRemovalClient stands in for rembg: every call parks on an asyncio
future so tests decide when (and in which order) removals finish.
"""

import asyncio
from io import BytesIO
from typing import List, Tuple

import pytest
from PIL import Image

from errors import RemovalError
from services.compose import CompositionEngine
from services.rembg_service import BackgroundRemovalClient
from services.resource_manager import ResourceHandle


def png_bytes(size=(80, 60), color=(0, 128, 0, 255), mode="RGBA") -> bytes:
    """Encode a solid-color image as PNG."""
    buffer = BytesIO()
    Image.new(mode, size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def cutout_bytes(size=(80, 60), box=None, color=(0, 0, 255, 255)) -> bytes:
    """Transparent PNG with an opaque rectangle standing in for the subject."""
    image = Image.new("RGBA", size, (0, 0, 0, 0))
    if box:
        image.paste(color, box)
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def oriented_jpeg(size=(80, 60), orientation=6) -> bytes:
    """JPEG with a red left half and blue right half, tagged with an EXIF orientation."""
    image = Image.new("RGB", size, (0, 0, 255))
    image.paste((255, 0, 0), (0, 0, size[0] // 2, size[1]))
    exif = Image.Exif()
    exif[0x0112] = orientation
    buffer = BytesIO()
    image.save(buffer, format="JPEG", quality=95, exif=exif.tobytes())
    return buffer.getvalue()


async def settle(rounds: int = 5):
    """Let scheduled tasks and call_soon callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeRemovalClient(BackgroundRemovalClient):
    """Removal client whose results are delivered by the test."""

    def __init__(self):
        self.calls: List[Tuple[ResourceHandle, asyncio.Future]] = []

    async def remove_background(self, image: ResourceHandle) -> bytes:
        future = asyncio.get_running_loop().create_future()
        self.calls.append((image, future))
        return await future

    def succeed(self, index: int, data: bytes):
        future = self.calls[index][1]
        if not future.done():
            future.set_result(data)

    def fail(self, index: int, error: Exception):
        future = self.calls[index][1]
        if not future.done():
            future.set_exception(error)


@pytest.fixture
def fake_client():
    return FakeRemovalClient()


@pytest.fixture
def engine():
    return CompositionEngine(text_scale=2.0)


@pytest.fixture
def removal_error():
    return RemovalError("model crashed", reason="internal")
