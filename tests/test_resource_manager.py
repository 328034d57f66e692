"""Tests for ResourceLifecycleManager."""

import pytest

from conftest import oriented_jpeg, png_bytes
from errors import ResourceError
from services.resource_manager import KIND_CUTOUT, KIND_SOURCE, ResourceLifecycleManager


@pytest.fixture
def manager():
    return ResourceLifecycleManager()


def test_acquire_tracks_handle(manager):
    handle = manager.acquire(b"abc", KIND_SOURCE, content_type="image/png")

    assert manager.is_live(handle)
    assert handle.data == b"abc"
    assert handle.content_type == "image/png"
    assert manager.live_handles == [handle]


def test_acquire_issues_unique_ids(manager):
    a = manager.acquire(b"a", KIND_SOURCE)
    b = manager.acquire(b"b", KIND_SOURCE)
    assert a.handle_id != b.handle_id


def test_acquire_rejects_empty_payload(manager):
    with pytest.raises(ResourceError):
        manager.acquire(b"", KIND_SOURCE)
    assert manager.live_handles == []


def test_release_invalidates_handle(manager):
    handle = manager.acquire(b"abc", KIND_SOURCE)

    assert manager.release(handle) is True
    assert not manager.is_live(handle)
    assert handle.released
    with pytest.raises(ResourceError):
        handle.data


def test_double_release_is_counted_not_raised(manager):
    handle = manager.acquire(b"abc", KIND_SOURCE)
    manager.release(handle)

    assert manager.release(handle) is False
    assert manager.double_releases == 1


def test_replace_releases_old_handle(manager):
    old = manager.acquire(b"old", KIND_SOURCE)
    new = manager.replace(old, b"new", KIND_SOURCE)

    assert old.released
    assert manager.live_handles == [new]
    assert new.data == b"new"


def test_replace_without_old_handle(manager):
    new = manager.replace(None, b"new", KIND_SOURCE)
    assert manager.live_handles == [new]


def test_replace_with_bad_payload_keeps_old_handle(manager):
    old = manager.acquire(b"old", KIND_SOURCE)
    with pytest.raises(ResourceError):
        manager.replace(old, b"", KIND_SOURCE)
    assert manager.is_live(old)


def test_replace_skips_already_released_handle(manager):
    old = manager.acquire(b"old", KIND_SOURCE)
    manager.release(old)
    manager.replace(old, b"new", KIND_SOURCE)
    assert manager.double_releases == 0


def test_cutout_carries_generation(manager):
    handle = manager.acquire(b"x", KIND_CUTOUT, generation=7)
    assert handle.generation == 7


def test_open_image_decodes_png(manager):
    handle = manager.acquire(png_bytes(size=(12, 8)), KIND_SOURCE)
    image = manager.open_image(handle)
    assert image.size == (12, 8)


def test_open_image_applies_exif_orientation(manager):
    # Stored 40x20, displayed rotated a quarter turn
    handle = manager.acquire(oriented_jpeg(size=(40, 20), orientation=6), KIND_SOURCE)
    image = manager.open_image(handle)

    assert image.size == (20, 40)
    assert image.getpixel((10, 5))[0] > 200  # red half is now on top


def test_open_image_rejects_garbage(manager):
    handle = manager.acquire(b"not an image", KIND_SOURCE)
    with pytest.raises(ResourceError):
        manager.open_image(handle)


def test_open_image_rejects_released_handle(manager):
    handle = manager.acquire(png_bytes(), KIND_SOURCE)
    manager.release(handle)
    with pytest.raises(ResourceError):
        manager.open_image(handle)


def test_release_all(manager):
    manager.acquire(b"a", KIND_SOURCE)
    manager.acquire(b"b", KIND_CUTOUT)

    assert manager.release_all() == 2
    assert manager.live_handles == []
    assert manager.double_releases == 0
