"""
Editor Session Store
====================
One PipelineController per open editor, keyed by session id.

Abandoned editors are evicted lazily: every create/get sweeps sessions that
have been idle longer than the TTL, and creating past MAX_SESSIONS closes
the least recently used one. Eviction goes through close(), so the evicted
controller's rasters are released like on an explicit DELETE.
"""

import time
import uuid
from collections import OrderedDict
from typing import Callable, Dict, Optional

from config import settings
from errors import SessionNotFoundError
from logging_setup import get_logger
from services.compose import CompositionEngine
from services.pipeline import PipelineController
from services.rembg_service import BackgroundRemovalClient, rembg_service

logger = get_logger(__name__)


class EditorSessionStore:
    """In-memory registry of editor sessions, least recently used first."""

    def __init__(
        self,
        client: Optional[BackgroundRemovalClient] = None,
        engine: Optional[CompositionEngine] = None,
        idle_ttl: Optional[float] = None,
        max_sessions: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            client: Removal client shared by every session
            engine: Compositor (defaults to the shared compose_service)
            idle_ttl: Seconds without access before a session is evicted.
                      Defaults to config; 0 or None disables expiry.
            max_sessions: Open-session cap. Defaults to config.
            clock: Monotonic time source
        """
        self.client = client or rembg_service
        self.engine = engine
        self.idle_ttl = settings.SESSION_IDLE_TTL_SECONDS if idle_ttl is None else idle_ttl
        self.max_sessions = settings.MAX_SESSIONS if max_sessions is None else max_sessions
        self._clock = clock
        self._sessions: "OrderedDict[str, PipelineController]" = OrderedDict()
        self._last_access: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def create(self) -> PipelineController:
        self.evict_expired()
        while self.max_sessions and len(self._sessions) >= self.max_sessions:
            oldest = next(iter(self._sessions))
            logger.info("session_evicted", session_id=oldest, reason="max_sessions")
            self.close(oldest)

        session_id = uuid.uuid4().hex
        controller = PipelineController(self.client, engine=self.engine, session_id=session_id)
        self._sessions[session_id] = controller
        self._touch(session_id)
        logger.info("session_created", session_id=session_id)
        return controller

    def get(self, session_id: str) -> PipelineController:
        self.evict_expired()
        controller = self._sessions.get(session_id)
        if controller is None:
            raise SessionNotFoundError(session_id)
        self._touch(session_id)
        return controller

    def close(self, session_id: str):
        controller = self._sessions.pop(session_id, None)
        self._last_access.pop(session_id, None)
        if controller is None:
            raise SessionNotFoundError(session_id)
        controller.close()
        logger.info("session_closed", session_id=session_id)

    def close_all(self):
        for session_id in list(self._sessions):
            self.close(session_id)

    def evict_expired(self) -> int:
        """Close every session idle longer than the TTL. Returns how many."""
        if not self.idle_ttl:
            return 0
        cutoff = self._clock() - self.idle_ttl
        expired = [sid for sid in self._sessions if self._last_access[sid] <= cutoff]
        for session_id in expired:
            logger.info("session_evicted", session_id=session_id, reason="idle")
            self.close(session_id)
        return len(expired)

    def _touch(self, session_id: str):
        self._last_access[session_id] = self._clock()
        self._sessions.move_to_end(session_id)


# Singleton instance for use across the application
session_store = EditorSessionStore()
