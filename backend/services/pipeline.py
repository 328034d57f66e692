"""
Pipeline Controller
===================
State machine behind one editor: upload → background removal → ready,
with cancel and reset at any point.

States: IDLE, AWAITING_REMOVAL, READY, FAILED

Concurrency model:
- Everything runs on one asyncio loop. The removal call is a task; only its
  completion touches controller state, and only after re-checking its
  generation token. The latest upload/cancel always wins.
- Cancelling the task is best-effort (the model may already be running in
  a worker thread), so token validation is never skipped.
- cancel() is two-phase: is_processing flips synchronously, the resource
  cleanup runs on the next loop iteration.
"""

import asyncio
import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from PIL import Image, ImageColor

from config import settings
from errors import HostIntegrationError, RemovalError, ResourceError, UserInputError
from logging_setup import get_logger
from services.compose import CompositionEngine, TextOverlaySpec, compose_service
from services.generation_tracker import RequestGenerationTracker
from services.rembg_service import BackgroundRemovalClient
from services.resource_manager import (
    KIND_CUTOUT,
    KIND_SOURCE,
    ResourceHandle,
    ResourceLifecycleManager,
)
from services.storage_service import HostDocument, StorageResult, download_filename

logger = get_logger(__name__)

TEXT_REQUIRED_MESSAGE = "Please enter text."


class PipelineState(str, Enum):
    IDLE = "idle"
    AWAITING_REMOVAL = "awaiting_removal"
    READY = "ready"
    FAILED = "failed"


@dataclass
class UploadedFile:
    """A raster handed over by the file picker."""
    filename: str
    data: bytes
    content_type: Optional[str] = None


@dataclass(frozen=True)
class PipelineSnapshot:
    """Read-only view of the controller, handed to listeners and the API."""
    state: PipelineState
    is_processing: bool
    generation: int
    selected_file: Optional[str]
    has_source: bool
    has_cutout: bool
    has_preview: bool
    overlay: TextOverlaySpec
    text_error: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["state"] = self.state.value
        return data


Listener = Callable[[str, PipelineSnapshot], None]


class PipelineController:
    """
    Owns the editor state and mutates it only through its operations.

    Usage:
        controller = PipelineController(rembg_service)
        controller.upload_image(UploadedFile("cat.jpg", data, "image/jpeg"))
        await controller.wait_for_removal()
        controller.update_overlay(content="HELLO", color_hex="#ff0000")
        png = controller.engine.encode_png(controller.preview)
    """

    def __init__(
        self,
        client: BackgroundRemovalClient,
        engine: Optional[CompositionEngine] = None,
        resources: Optional[ResourceLifecycleManager] = None,
        tracker: Optional[RequestGenerationTracker] = None,
        propagate_cancel: Optional[bool] = None,
        removal_timeout: Optional[float] = None,
        session_id: Optional[str] = None,
    ):
        """
        Args:
            client: Background-removal collaborator
            engine: Compositor (defaults to the shared compose_service)
            resources: Handle manager (one per controller by default)
            tracker: Generation tracker (one per controller by default)
            propagate_cancel: Also cancel the in-flight removal task on
                              cancel/superseding upload. Defaults to config.
            removal_timeout: Seconds before a removal counts as failed.
                             Defaults to config (unset = no timeout).
            session_id: Bound into every log line
        """
        self.client = client
        self.engine = engine or compose_service
        self.resources = resources or ResourceLifecycleManager()
        self.tracker = tracker or RequestGenerationTracker()
        self.propagate_cancel = settings.PROPAGATE_CANCELLATION if propagate_cancel is None else propagate_cancel
        self.removal_timeout = settings.REMOVAL_TIMEOUT_SECONDS if removal_timeout is None else removal_timeout
        self.session_id = session_id
        self._log = logger.bind(session_id=session_id) if session_id else logger

        self._state = PipelineState.IDLE
        self._is_processing = False
        self._source: Optional[ResourceHandle] = None
        self._cutout: Optional[ResourceHandle] = None
        self._selected_file: Optional[str] = None
        self._overlay = TextOverlaySpec()
        self._text_error: Optional[str] = None
        self._last_error: Optional[RemovalError] = None
        self._preview: Optional[Image.Image] = None
        self._decoded: Dict[int, Image.Image] = {}
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    @property
    def source(self) -> Optional[ResourceHandle]:
        return self._source

    @property
    def cutout(self) -> Optional[ResourceHandle]:
        return self._cutout

    @property
    def overlay(self) -> TextOverlaySpec:
        return self._overlay

    @property
    def text_error(self) -> Optional[str]:
        return self._text_error

    @property
    def last_error(self) -> Optional[RemovalError]:
        return self._last_error

    @property
    def preview(self) -> Optional[Image.Image]:
        return self._preview

    def snapshot(self) -> PipelineSnapshot:
        return PipelineSnapshot(
            state=self._state,
            is_processing=self._is_processing,
            generation=self.tracker.current,
            selected_file=self._selected_file,
            has_source=self._source is not None,
            has_cutout=self._cutout is not None,
            has_preview=self._preview is not None,
            overlay=dataclasses.replace(self._overlay),
            text_error=self._text_error,
            last_error=self._last_error.message if self._last_error else None,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a state-change listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def upload_image(self, file: Optional[UploadedFile]) -> Optional[int]:
        """
        Start processing a new photo. Supersedes any in-flight removal.

        Must be called from a running event loop (the removal is a task).

        Returns:
            The generation token of the dispatched removal, or None when
            there was no file.
        """
        if file is None:
            return None
        if not file.data:
            raise UserInputError("The selected file is empty.", field="photo")
        if file.content_type and not file.content_type.startswith("image/"):
            raise UserInputError(
                f"Unsupported file type: {file.content_type}",
                field="photo",
                details={"content_type": file.content_type},
            )

        token = self.tracker.begin()
        self._cancel_in_flight()

        self._source = self._replace(self._source, file.data, file.content_type)
        self._release_cutout()
        self._selected_file = file.filename
        self._last_error = None
        self._preview = None
        self._is_processing = True
        self._state = PipelineState.AWAITING_REMOVAL
        self._emit("image_uploaded")

        self._log.info("removal_dispatched", generation=token, filename=file.filename, size_bytes=len(file.data))
        self._task = asyncio.get_running_loop().create_task(self._run_removal(token, self._source))
        return token

    def removal_completed(self, token: int, cutout: ResourceHandle):
        """Apply a finished removal, unless a newer upload/cancel superseded it."""
        if self.tracker.is_stale(token):
            self._log.info("stale_result_discarded", generation=token, current=self.tracker.current)
            self.resources.release(cutout)
            return

        self._release_cutout()
        self._cutout = cutout
        self._task = None
        self._is_processing = False
        self._state = PipelineState.READY
        self._refresh_preview()
        self._log.info("removal_completed", generation=token)
        self._emit("removal_completed")

    def removal_failed(self, token: int, error: RemovalError):
        """Surface a removal failure, unless it belongs to a superseded request."""
        if self.tracker.is_stale(token):
            self._log.debug("stale_failure_ignored", generation=token, error=error.message)
            return

        self._release_source()
        self._release_cutout()
        self._selected_file = None
        self._task = None
        self._preview = None
        self._is_processing = False
        self._last_error = error
        self._state = PipelineState.FAILED
        self._log.warning("removal_failed", generation=token, reason=error.details.get("reason"), error=error.message)
        self._emit("removal_failed")

    def cancel(self) -> int:
        """
        Abandon the current photo.

        Phase 1 (now): is_processing goes False and listeners hear about it
        before anything else changes. Phase 2 (next loop iteration): both
        rasters are released and the file selection is cleared.
        """
        token = self.tracker.begin()
        self._cancel_in_flight()

        self._is_processing = False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        else:
            loop.call_soon(self._finish_cancel, token)

        self._emit("processing_changed")
        if loop is None:
            # No loop, so nothing is mid-render
            self._finish_cancel(token)
        return token

    def reset(self):
        """Drop the photo and restore the default text settings, synchronously."""
        self.tracker.begin()
        self._cancel_in_flight()

        self._release_source()
        self._release_cutout()
        self._selected_file = None
        self._overlay = TextOverlaySpec()
        self._text_error = None
        self._last_error = None
        self._preview = None
        self._is_processing = False
        self._state = PipelineState.IDLE
        self._log.info("pipeline_reset", generation=self.tracker.current)
        self._emit("reset")

    def update_overlay(self, **fields) -> TextOverlaySpec:
        """
        Edit the text overlay and recompute the preview.

        Raises:
            UserInputError: unknown field or unparseable color
        """
        known = {f.name for f in dataclasses.fields(TextOverlaySpec)}
        unknown = set(fields) - known
        if unknown:
            raise UserInputError(f"Unknown overlay fields: {', '.join(sorted(unknown))}")

        if "color_hex" in fields:
            try:
                ImageColor.getrgb(fields["color_hex"])
            except ValueError as e:
                raise UserInputError(f"Invalid color: {fields['color_hex']}", field="color_hex") from e

        for name in ("size_px", "x_percent", "y_percent", "rotation_degrees"):
            if name in fields:
                try:
                    fields[name] = float(fields[name])
                except (TypeError, ValueError) as e:
                    raise UserInputError(f"{name} must be a number", field=name) from e
        if "content" in fields:
            fields["content"] = str(fields["content"])
            self._text_error = None

        self._overlay = dataclasses.replace(self._overlay, **fields)
        self._refresh_preview()
        self._emit("overlay_changed")
        return self._overlay

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def render_preview(self) -> Optional[Image.Image]:
        """Recompute the composite now. None while either raster is missing."""
        self._refresh_preview()
        return self._preview

    def export_download(self) -> Tuple[str, bytes]:
        """PNG for the local-download path: (file name, bytes)."""
        composite = self._preview if self._preview is not None else self.render_preview()
        if composite is None:
            raise UserInputError("Nothing to download yet. Upload an image and wait for processing to finish.")
        return download_filename(), self.engine.encode_png(composite)

    async def add_to_document(self, host: HostDocument) -> StorageResult:
        """
        Commit the composite to the host document.

        Raises:
            UserInputError: blank text, or no composite yet
            HostIntegrationError: the host rejected the image. State is kept
                                  so the user can retry without re-uploading.
        """
        if not self._overlay.content.strip():
            self._text_error = TEXT_REQUIRED_MESSAGE
            self._emit("text_error")
            raise UserInputError(TEXT_REQUIRED_MESSAGE, field="content")

        composite = self._preview if self._preview is not None else self.render_preview()
        if composite is None:
            raise UserInputError("Upload an image and wait for processing to finish.")

        if self._text_error:
            self._text_error = None
            self._emit("text_error")

        png_bytes = self.engine.encode_png(composite)
        try:
            result = await host.add_image(png_bytes)
        except HostIntegrationError as e:
            self._log.error("add_to_document_failed", error=e.message)
            raise
        except Exception as e:
            self._log.error("add_to_document_failed", error=str(e))
            raise HostIntegrationError(f"Failed to add image to document: {e}") from e

        self._log.info("added_to_document", location=result.location, size_bytes=len(png_bytes))
        return result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait_for_removal(self):
        """Wait for the in-flight removal (if any) to settle."""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def close(self):
        """Release everything this controller owns."""
        self.tracker.begin()
        self._cancel_in_flight()
        self._release_source()
        self._release_cutout()
        self._preview = None
        self._is_processing = False
        self._state = PipelineState.IDLE

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_removal(self, token: int, source: ResourceHandle):
        """Removal task body. Every failure ends up in removal_failed()."""
        try:
            if self.removal_timeout:
                raster = await asyncio.wait_for(self.client.remove_background(source), self.removal_timeout)
            else:
                raster = await self.client.remove_background(source)
            cutout = self.resources.acquire(raster, KIND_CUTOUT, content_type="image/png", generation=token)
        except asyncio.CancelledError:
            self._log.debug("removal_task_cancelled", generation=token)
            raise
        except asyncio.TimeoutError as e:
            if self.removal_timeout:
                error = RemovalError(f"Background removal timed out after {self.removal_timeout}s", reason="timeout")
            else:
                # Raised by the client itself, not by wait_for
                error = RemovalError(f"Background removal failed: {e!r}", reason="internal")
            self.removal_failed(token, error)
            return
        except RemovalError as e:
            self.removal_failed(token, e)
            return
        except ResourceError as e:
            # Source released underneath us, or an empty result
            self.removal_failed(token, RemovalError(e.message, reason="internal"))
            return
        except Exception as e:
            self.removal_failed(token, RemovalError(f"Background removal failed: {e}", reason="internal"))
            return

        self.removal_completed(token, cutout)

    def _finish_cancel(self, token: int):
        if self.tracker.is_stale(token):
            # A newer upload/reset already owns the state
            self._log.debug("cancel_cleanup_superseded", generation=token)
            return

        self._release_source()
        self._release_cutout()
        self._selected_file = None
        self._preview = None
        self._state = PipelineState.IDLE
        self._log.info("processing_cancelled", generation=token)
        self._emit("cancel_cleanup")

    def _cancel_in_flight(self):
        task, self._task = self._task, None
        if self.propagate_cancel and task is not None and not task.done():
            task.cancel()

    def _replace(self, old: Optional[ResourceHandle], data: bytes, content_type: Optional[str]) -> ResourceHandle:
        if old is not None:
            self._decoded.pop(old.handle_id, None)
        return self.resources.replace(old, data, KIND_SOURCE, content_type=content_type)

    def _release_source(self):
        if self._source is not None:
            self._decoded.pop(self._source.handle_id, None)
            self.resources.release(self._source)
            self._source = None

    def _release_cutout(self):
        if self._cutout is not None:
            self._decoded.pop(self._cutout.handle_id, None)
            self.resources.release(self._cutout)
            self._cutout = None

    def _open(self, handle: ResourceHandle) -> Image.Image:
        image = self._decoded.get(handle.handle_id)
        if image is None:
            image = self.resources.open_image(handle)
            self._decoded[handle.handle_id] = image
        return image

    def _refresh_preview(self):
        self._preview = None
        if self._source is None or self._cutout is None:
            return
        try:
            self._preview = self.engine.composite(self._open(self._source), self._overlay, self._open(self._cutout))
        except ResourceError as e:
            # Not user-facing; the next trigger tries again
            self._log.debug("preview_aborted", error=e.message)

    def _emit(self, event: str):
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(event, snapshot)
            except Exception:
                # A broken listener must not leave the state machine half-applied
                self._log.exception("listener_failed", pipeline_event=event)
