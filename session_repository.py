"""
Radiance AI Chain Diagnosis Service - Session Persistence Backends

Provides repository implementations for chain diagnosis sessions:
- SqliteSessionRepository (local/runtime default)
- FirestoreSessionRepository (cloud runtime backend)
- InMemorySessionRepository (tests and ephemeral runs)

Every backend enforces record ownership: a write made on behalf of an
authenticated user is rejected when the record belongs to someone else.
"""

from __future__ import annotations

import copy
import json
import os
import sqlite3
from datetime import datetime
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from models import ChainDiagnosisSession, load_session_payload, utc_now

try:
    from google.cloud import firestore
except Exception:
    firestore = None


SESSIONS_TABLE = "chain_diagnosis_sessions"


class SessionPersistenceError(RuntimeError):
    """The backend could not complete a read or write."""


class AccessDeniedError(PermissionError):
    """The acting identity does not own the record being written."""


def serialize_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, BaseModel):
            out[key] = value.model_dump(mode="json")
        elif isinstance(value, Enum):
            out[key] = value.value
        elif isinstance(value, datetime):
            out[key] = value.isoformat()
        else:
            out[key] = value
    return out


def check_owner(owner_id: Optional[str], acting_user_id: Optional[str], session_id: str) -> None:
    if acting_user_id is None:
        return
    if owner_id != acting_user_id:
        raise AccessDeniedError(
            f"User {acting_user_id!r} may not write session {session_id} owned by {owner_id!r}."
        )


class SessionRepository:
    backend_name = "base"

    def initialize(self) -> None:
        """Prepares backend storage. Safe to call more than once."""

    def insert(self, session: ChainDiagnosisSession, *, acting_user_id: Optional[str] = None) -> None:
        raise NotImplementedError

    def update(
        self,
        session_id: str,
        fields: Dict[str, Any],
        *,
        acting_user_id: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    def get(self, session_id: str) -> Optional[ChainDiagnosisSession]:
        raise NotImplementedError

    def list_by_user(self, user_id: str, *, limit: int = 50) -> List[ChainDiagnosisSession]:
        raise NotImplementedError


class InMemorySessionRepository(SessionRepository):
    backend_name = "memory"

    def __init__(self) -> None:
        self._store: Dict[str, Dict[str, Any]] = {}
        self._lock = Lock()

    def insert(self, session: ChainDiagnosisSession, *, acting_user_id: Optional[str] = None) -> None:
        check_owner(session.user_id, acting_user_id, session.id)
        with self._lock:
            if session.id in self._store:
                raise SessionPersistenceError(f"Session already exists: {session.id}")
            self._store[session.id] = session.to_store_payload()

    def update(
        self,
        session_id: str,
        fields: Dict[str, Any],
        *,
        acting_user_id: Optional[str] = None,
    ) -> None:
        with self._lock:
            payload = self._store.get(session_id)
            if payload is None:
                raise SessionPersistenceError(f"Session not found: {session_id}")
            check_owner(payload.get("user_id"), acting_user_id, session_id)
            payload.update(serialize_fields(fields))
            payload["updated_at"] = utc_now().isoformat()

    def get(self, session_id: str) -> Optional[ChainDiagnosisSession]:
        with self._lock:
            payload = self._store.get(session_id)
            if payload is None:
                return None
            payload = copy.deepcopy(payload)
        return load_session_payload(payload)

    def list_by_user(self, user_id: str, *, limit: int = 50) -> List[ChainDiagnosisSession]:
        with self._lock:
            rows = [copy.deepcopy(p) for p in self._store.values() if p.get("user_id") == user_id]
        rows.sort(key=lambda p: p.get("created_at") or "", reverse=True)
        return [load_session_payload(p) for p in rows[: max(1, limit)]]


class SqliteSessionRepository(SessionRepository):
    backend_name = "sqlite"

    def __init__(self, db_path: str) -> None:
        if not db_path:
            raise RuntimeError("SQLite repository requires a non-empty db_path.")
        self.db_path = str(Path(db_path).expanduser().resolve())
        self._lock = Lock()
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize(self) -> None:
        with self._lock:
            if self._initialized:
                return
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {SESSIONS_TABLE} (
                        id TEXT PRIMARY KEY,
                        user_id TEXT,
                        created_at TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'in_progress',
                        current_step INTEGER NOT NULL DEFAULT 0,
                        error_message TEXT,
                        payload_json TEXT NOT NULL
                    )
                    """
                )
                for column in ("user_id", "created_at", "status"):
                    conn.execute(
                        f"CREATE INDEX IF NOT EXISTS idx_{SESSIONS_TABLE}_{column} "
                        f"ON {SESSIONS_TABLE}({column})"
                    )
                conn.commit()
            self._initialized = True

    def insert(self, session: ChainDiagnosisSession, *, acting_user_id: Optional[str] = None) -> None:
        check_owner(session.user_id, acting_user_id, session.id)
        self.initialize()
        payload = session.to_store_payload()
        try:
            with self._lock, self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO {SESSIONS_TABLE} (
                        id, user_id, created_at, status, current_step, error_message, payload_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.created_at.isoformat(),
                        session.status.value,
                        session.current_step,
                        session.error_message,
                        json.dumps(payload),
                    ),
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise SessionPersistenceError(f"SQLite insert failed for session {session.id}: {exc}") from exc

    def update(
        self,
        session_id: str,
        fields: Dict[str, Any],
        *,
        acting_user_id: Optional[str] = None,
    ) -> None:
        self.initialize()
        try:
            with self._lock, self._connect() as conn:
                row = conn.execute(
                    f"SELECT user_id, payload_json FROM {SESSIONS_TABLE} WHERE id = ?",
                    (session_id,),
                ).fetchone()
                if row is None:
                    raise SessionPersistenceError(f"Session not found: {session_id}")
                check_owner(row["user_id"], acting_user_id, session_id)

                payload = json.loads(row["payload_json"])
                payload.update(serialize_fields(fields))
                payload["updated_at"] = utc_now().isoformat()
                conn.execute(
                    f"""
                    UPDATE {SESSIONS_TABLE}
                    SET status = ?, current_step = ?, error_message = ?, payload_json = ?
                    WHERE id = ?
                    """,
                    (
                        payload.get("status") or "in_progress",
                        int(payload.get("current_step") or 0),
                        payload.get("error_message"),
                        json.dumps(payload),
                        session_id,
                    ),
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise SessionPersistenceError(f"SQLite update failed for session {session_id}: {exc}") from exc

    def get(self, session_id: str) -> Optional[ChainDiagnosisSession]:
        self.initialize()
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT payload_json FROM {SESSIONS_TABLE} WHERE id = ?",
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        return load_session_payload(json.loads(row["payload_json"]))

    def list_by_user(self, user_id: str, *, limit: int = 50) -> List[ChainDiagnosisSession]:
        self.initialize()
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT payload_json FROM {SESSIONS_TABLE}
                WHERE user_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (user_id, max(1, int(limit))),
            ).fetchall()
        return [load_session_payload(json.loads(row["payload_json"])) for row in rows]


class FirestoreSessionRepository(SessionRepository):
    backend_name = "firestore"

    def __init__(self, project_id: str, collection: str = SESSIONS_TABLE, client: Any = None) -> None:
        if client is None:
            if firestore is None:
                raise RuntimeError(
                    "google-cloud-firestore is unavailable. Install the `firestore` extra first."
                )
            if not project_id:
                raise RuntimeError("Firestore repository requires GOOGLE_CLOUD_PROJECT.")
            client = firestore.Client(project=project_id)
        self.project_id = project_id
        self.collection_name = collection
        self.client = client
        self.collection = self.client.collection(collection)

    def insert(self, session: ChainDiagnosisSession, *, acting_user_id: Optional[str] = None) -> None:
        check_owner(session.user_id, acting_user_id, session.id)
        try:
            self.collection.document(session.id).create(session.to_store_payload())
        except Exception as exc:
            raise SessionPersistenceError(f"Firestore insert failed for session {session.id}: {exc}") from exc

    def update(
        self,
        session_id: str,
        fields: Dict[str, Any],
        *,
        acting_user_id: Optional[str] = None,
    ) -> None:
        doc_ref = self.collection.document(session_id)
        snapshot = doc_ref.get()
        if not snapshot.exists:
            raise SessionPersistenceError(f"Session not found: {session_id}")
        check_owner((snapshot.to_dict() or {}).get("user_id"), acting_user_id, session_id)
        payload = serialize_fields(fields)
        payload["updated_at"] = utc_now().isoformat()
        try:
            doc_ref.update(payload)
        except Exception as exc:
            raise SessionPersistenceError(f"Firestore update failed for session {session_id}: {exc}") from exc

    def get(self, session_id: str) -> Optional[ChainDiagnosisSession]:
        snapshot = self.collection.document(session_id).get()
        if not snapshot.exists:
            return None
        return load_session_payload(snapshot.to_dict() or {})

    def list_by_user(self, user_id: str, *, limit: int = 50) -> List[ChainDiagnosisSession]:
        docs = self.collection.where("user_id", "==", user_id).stream()
        rows = [doc.to_dict() or {} for doc in docs]
        rows.sort(key=lambda p: p.get("created_at") or "", reverse=True)
        return [load_session_payload(p) for p in rows[: max(1, limit)]]


def build_session_repository(backend: Optional[str] = None) -> SessionRepository:
    selected = (backend or os.getenv("RADIANCE_SESSION_STORE_BACKEND", "sqlite") or "sqlite").strip().lower()
    if selected == "sqlite":
        local_data_dir = Path(
            (os.getenv("RADIANCE_LOCAL_DATA_DIR", "./local_data") or "./local_data").strip()
        ).expanduser().resolve()
        db_path = (os.getenv("RADIANCE_SQLITE_DB_PATH") or str(local_data_dir / "chain_sessions.sqlite3")).strip()
        return SqliteSessionRepository(db_path=db_path)
    if selected == "firestore":
        return FirestoreSessionRepository(
            project_id=(os.getenv("GOOGLE_CLOUD_PROJECT") or "").strip(),
            collection=(os.getenv("RADIANCE_FIRESTORE_COLLECTION") or SESSIONS_TABLE).strip(),
        )
    if selected == "memory":
        return InMemorySessionRepository()
    raise ValueError(
        f"Unsupported RADIANCE_SESSION_STORE_BACKEND='{selected}'. "
        "Allowed values: sqlite, firestore, memory."
    )
