"""
Text Behind Image Backend
=========================
FastAPI application: upload a photo, remove its background, and composite
text between the photo and its cut-out subject.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from api.editor import router as editor_router
from config import settings
from errors import setup_exception_handlers
from logging_setup import get_logger, setup_logging

setup_logging(settings.LOG_LEVEL, json_format=settings.LOG_JSON)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("app_started", storage_provider=settings.STORAGE_PROVIDER, rembg_model=settings.REMBG_MODEL)
    yield
    # Release every open editor's images on shutdown
    from services.session_service import session_store
    session_store.close_all()
    logger.info("app_stopped")


app = FastAPI(
    title="Text Behind Image API",
    description="Background removal and text-behind-subject compositing",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow frontend origin (and localhost for dev)
allow_origins = [
    settings.FRONTEND_URL,
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_exception_handlers(app)

# Register API routers
app.include_router(editor_router, prefix="/api/editor", tags=["editor"])


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "text-behind-image-api",
        "version": "0.1.0",
    }


@app.get("/health")
async def health():
    """Detailed health check for deployment monitoring."""
    try:
        from services.rembg_service import rembg_service
        rembg_status = f"ok ({type(rembg_service).__name__})"
    except Exception as e:
        rembg_status = f"error: {str(e)}"

    try:
        from services.storage_service import host_document
        storage_status = f"ok ({type(host_document.provider).__name__})"
    except Exception as e:
        storage_status = f"error: {str(e)}"

    from services.session_service import session_store

    return {
        "status": "healthy",
        "storage_provider": settings.STORAGE_PROVIDER,
        "open_sessions": len(session_store),
        "services": {
            "rembg": rembg_status,
            "storage": storage_status,
        },
    }
