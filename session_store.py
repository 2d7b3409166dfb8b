"""
Session store adapter used by the chain orchestrator.

Wraps a SessionRepository with the pipeline's persistence policy:
- create/update failures degrade to in-memory operation and return a warning
- an access-control rejection gets exactly one re-authentication + retry
- reads never raise; they return None / [] and log the failure
"""

from __future__ import annotations

import logging
import os
from contextvars import ContextVar
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from models import ChainDiagnosisSession
from session_repository import AccessDeniedError, SessionPersistenceError, SessionRepository

logger = logging.getLogger(__name__)


class IdentityProvider:
    """Supplies the authenticated identity that persistence writes act under."""

    def current_user_id(self) -> Optional[str]:
        return None

    def reauthenticate(self) -> Optional[str]:
        return self.current_user_id()


class StaticIdentityProvider(IdentityProvider):
    def __init__(self, user_id: Optional[str] = None) -> None:
        self.user_id = user_id

    def current_user_id(self) -> Optional[str]:
        return self.user_id


_request_user_id: ContextVar[Optional[str]] = ContextVar("radiance_request_user_id", default=None)


class ContextIdentityProvider(IdentityProvider):
    """Reads the identity bound to the current request context by `bind_request_user`."""

    def current_user_id(self) -> Optional[str]:
        return _request_user_id.get()


def bind_request_user(user_id: Optional[str]) -> None:
    _request_user_id.set((user_id or "").strip() or None)


class PersistOutcome(BaseModel):
    persisted: bool
    warning: Optional[str] = None


class SessionStore:
    def __init__(
        self,
        repository: SessionRepository,
        identity_provider: Optional[IdentityProvider] = None,
        allow_degraded: Optional[bool] = None,
    ) -> None:
        self.repository = repository
        self.identity_provider = identity_provider or IdentityProvider()
        if allow_degraded is None:
            allow_degraded = (
                (os.getenv("RADIANCE_SESSION_STORE_ALLOW_DEGRADED", "true") or "true").strip().lower()
                in {"1", "true", "yes", "on"}
            )
        self.allow_degraded = allow_degraded

    @property
    def backend_name(self) -> str:
        return self.repository.backend_name

    def initialize(self) -> bool:
        try:
            self.repository.initialize()
            return True
        except Exception as exc:
            if not self.allow_degraded:
                raise SessionPersistenceError(f"Session store initialization failed: {exc}") from exc
            logger.warning("Session store (%s) unavailable at startup: %s", self.backend_name, exc)
            return False

    def current_user_id(self) -> Optional[str]:
        return self.identity_provider.current_user_id()

    # ---- Writes ----

    def create(self, session: ChainDiagnosisSession) -> PersistOutcome:
        def _insert(acting_user_id: Optional[str]) -> None:
            self.repository.insert(session, acting_user_id=acting_user_id)

        def _rebind_owner(user_id: Optional[str]) -> None:
            if user_id:
                session.user_id = user_id

        return self._write("create", session.id, _insert, on_reauth=_rebind_owner)

    def update(self, session_id: str, fields: Dict[str, Any]) -> PersistOutcome:
        def _update(acting_user_id: Optional[str]) -> None:
            self.repository.update(session_id, fields, acting_user_id=acting_user_id)

        return self._write("update", session_id, _update)

    # ---- Reads ----

    def get_by_id(self, session_id: str) -> Optional[ChainDiagnosisSession]:
        try:
            return self.repository.get(session_id)
        except Exception as exc:
            logger.warning("Failed to load session %s from %s: %s", session_id, self.backend_name, exc)
            return None

    def list_by_user(self, user_id: str, *, limit: int = 50) -> List[ChainDiagnosisSession]:
        try:
            return self.repository.list_by_user(user_id, limit=limit)
        except Exception as exc:
            logger.warning("Failed to list sessions for user %s from %s: %s", user_id, self.backend_name, exc)
            return []

    # ---- Internals ----

    def _write(
        self,
        operation: str,
        session_id: str,
        write: Callable[[Optional[str]], None],
        on_reauth: Optional[Callable[[Optional[str]], None]] = None,
    ) -> PersistOutcome:
        acting_user_id = self.identity_provider.current_user_id()
        try:
            write(acting_user_id)
            return PersistOutcome(persisted=True)
        except AccessDeniedError as exc:
            logger.warning(
                "Session %s %s rejected by access control; re-authenticating once: %s",
                operation,
                session_id,
                exc,
            )
        except Exception as exc:
            return self._degrade(operation, session_id, exc)

        try:
            refreshed_user_id = self.identity_provider.reauthenticate()
            if on_reauth is not None:
                on_reauth(refreshed_user_id)
            write(refreshed_user_id)
            return PersistOutcome(persisted=True)
        except Exception as exc:
            return self._degrade(operation, session_id, exc)

    def _degrade(self, operation: str, session_id: str, exc: Exception) -> PersistOutcome:
        if not self.allow_degraded:
            raise SessionPersistenceError(f"Session {operation} failed for {session_id}: {exc}") from exc
        warning = f"Session {operation} not persisted ({self.backend_name}): {exc}"
        logger.warning("Persistence degraded for session %s: %s", session_id, warning)
        return PersistOutcome(persisted=False, warning=warning)
