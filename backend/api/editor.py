"""
Editor API Endpoints
====================
HTTP surface over the text-behind-image pipeline.

Each editor session owns one PipelineController. Uploads return right away;
background removal runs in the background and clients poll the session
until `state` is "ready" (or "failed").
"""

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel, Field
from typing import Optional

from logging_setup import SessionLogContext
from services.pipeline import PipelineController, PipelineSnapshot, UploadedFile
from services.session_service import EditorSessionStore, session_store
from services.storage_service import HostDocument, host_document

router = APIRouter()


def get_session_store() -> EditorSessionStore:
    return session_store


def get_host_document() -> HostDocument:
    return host_document


class OverlayResponse(BaseModel):
    content: str
    size_px: float
    color_hex: str
    x_percent: float
    y_percent: float
    rotation_degrees: float


class SessionResponse(BaseModel):
    """Snapshot of one editor session."""
    session_id: str
    state: str
    is_processing: bool
    generation: int
    selected_file: Optional[str] = None
    has_source: bool
    has_cutout: bool
    has_preview: bool
    overlay: OverlayResponse
    text_error: Optional[str] = None
    last_error: Optional[str] = None


class OverlayUpdate(BaseModel):
    """Partial text settings update. Ranges mirror the editor's controls."""
    content: Optional[str] = None
    size_px: Optional[float] = Field(None, ge=20, le=1000)
    color_hex: Optional[str] = Field(None, pattern=r"^#[0-9a-fA-F]{6}$")
    x_percent: Optional[float] = Field(None, ge=0, le=100)
    y_percent: Optional[float] = Field(None, ge=0, le=100)
    rotation_degrees: Optional[float] = Field(None, ge=-180, le=180)


class CommitResponse(BaseModel):
    success: bool
    output_id: str
    location: str


def _to_response(controller: PipelineController, snapshot: Optional[PipelineSnapshot] = None) -> SessionResponse:
    snapshot = snapshot or controller.snapshot()
    return SessionResponse(session_id=controller.session_id, **snapshot.to_dict())


@router.post("/sessions", response_model=SessionResponse)
async def create_session(store: EditorSessionStore = Depends(get_session_store)):
    """Open a new editor session."""
    controller = store.create()
    return _to_response(controller)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, store: EditorSessionStore = Depends(get_session_store)):
    """Current state of an editor session (poll this while processing)."""
    return _to_response(store.get(session_id))


@router.delete("/sessions/{session_id}")
async def close_session(session_id: str, store: EditorSessionStore = Depends(get_session_store)):
    """Close a session and release its images."""
    with SessionLogContext(session_id):
        store.close(session_id)
    return {"success": True, "session_id": session_id}


@router.post("/sessions/{session_id}/upload", response_model=SessionResponse)
async def upload_photo(
    session_id: str,
    photo: UploadFile = File(...),
    store: EditorSessionStore = Depends(get_session_store),
):
    """
    Upload a photo and start background removal.

    Any removal still running for an earlier upload is superseded.
    """
    controller = store.get(session_id)
    photo_bytes = await photo.read()
    with SessionLogContext(session_id):
        controller.upload_image(UploadedFile(
            filename=photo.filename or "upload",
            data=photo_bytes,
            content_type=photo.content_type,
        ))
    return _to_response(controller)


@router.post("/sessions/{session_id}/cancel", response_model=SessionResponse)
async def cancel_processing(session_id: str, store: EditorSessionStore = Depends(get_session_store)):
    """
    Cancel processing. The response reflects phase 1 only (is_processing
    false); images are cleared on the next loop iteration.
    """
    controller = store.get(session_id)
    with SessionLogContext(session_id):
        controller.cancel()
    return _to_response(controller)


@router.post("/sessions/{session_id}/reset", response_model=SessionResponse)
async def reset_session(session_id: str, store: EditorSessionStore = Depends(get_session_store)):
    """Clear the photo and restore default text settings."""
    controller = store.get(session_id)
    with SessionLogContext(session_id):
        controller.reset()
    return _to_response(controller)


@router.patch("/sessions/{session_id}/overlay", response_model=SessionResponse)
async def update_overlay(
    session_id: str,
    update: OverlayUpdate,
    store: EditorSessionStore = Depends(get_session_store),
):
    """Edit the text settings; the preview is recomputed."""
    controller = store.get(session_id)
    with SessionLogContext(session_id):
        controller.update_overlay(**update.model_dump(exclude_unset=True, exclude_none=True))
    return _to_response(controller)


@router.get("/sessions/{session_id}/preview")
async def get_preview(session_id: str, store: EditorSessionStore = Depends(get_session_store)):
    """Current composite as PNG."""
    controller = store.get(session_id)
    preview = controller.preview if controller.preview is not None else controller.render_preview()
    if preview is None:
        raise HTTPException(status_code=404, detail="No preview available yet")
    return Response(content=controller.engine.encode_png(preview), media_type="image/png")


@router.get("/sessions/{session_id}/download")
async def download_composite(session_id: str, store: EditorSessionStore = Depends(get_session_store)):
    """Download the composite as a PNG attachment."""
    controller = store.get(session_id)
    with SessionLogContext(session_id):
        filename, png_bytes = controller.export_download()
    return Response(
        content=png_bytes,
        media_type="image/png",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/sessions/{session_id}/commit", response_model=CommitResponse)
async def commit_to_document(
    session_id: str,
    store: EditorSessionStore = Depends(get_session_store),
    host: HostDocument = Depends(get_host_document),
):
    """Add the composite to the host document."""
    controller = store.get(session_id)
    with SessionLogContext(session_id):
        result = await controller.add_to_document(host)
    return CommitResponse(success=True, output_id=result.output_id, location=result.location)
