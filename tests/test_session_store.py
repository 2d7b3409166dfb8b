import asyncio

import pytest

from models import ChainDiagnosisSession, UserInput
from session_repository import AccessDeniedError, InMemorySessionRepository, SessionPersistenceError
from session_store import (
    ContextIdentityProvider,
    IdentityProvider,
    SessionStore,
    StaticIdentityProvider,
    bind_request_user,
)


class _BrokenRepository(InMemorySessionRepository):
    backend_name = "broken"

    def initialize(self):
        raise RuntimeError("disk unavailable")

    def insert(self, session, *, acting_user_id=None):
        raise SessionPersistenceError("insert failed")

    def update(self, session_id, fields, *, acting_user_id=None):
        raise SessionPersistenceError("update failed")

    def get(self, session_id):
        raise SessionPersistenceError("read failed")

    def list_by_user(self, user_id, *, limit=50):
        raise SessionPersistenceError("read failed")


class _RefreshingIdentity(IdentityProvider):
    """Hands out a stale identity until re-authentication is requested."""

    def __init__(self, stale, fresh):
        self.user_id = stale
        self.fresh = fresh
        self.reauth_calls = 0

    def current_user_id(self):
        return self.user_id

    def reauthenticate(self):
        self.reauth_calls += 1
        self.user_id = self.fresh
        return self.user_id


def _session(user_id="user-1"):
    return ChainDiagnosisSession(user_id=user_id, user_input=UserInput())


def test_create_and_update_persist_when_backend_healthy():
    store = SessionStore(InMemorySessionRepository(), StaticIdentityProvider("user-1"))
    session = _session()

    assert store.create(session).persisted is True
    outcome = store.update(session.id, {"current_step": 1})

    assert outcome.persisted is True
    assert outcome.warning is None
    assert store.get_by_id(session.id).current_step == 1


def test_failures_degrade_to_warnings():
    store = SessionStore(_BrokenRepository(), allow_degraded=True)
    session = _session()

    created = store.create(session)
    updated = store.update(session.id, {"current_step": 1})

    assert created.persisted is False
    assert "insert failed" in created.warning
    assert updated.persisted is False
    assert "update failed" in updated.warning


def test_failures_raise_when_degradation_disabled():
    store = SessionStore(_BrokenRepository(), allow_degraded=False)

    with pytest.raises(SessionPersistenceError, match="create failed"):
        store.create(_session())
    with pytest.raises(SessionPersistenceError, match="initialization failed"):
        store.initialize()


def test_reads_never_raise():
    store = SessionStore(_BrokenRepository())

    assert store.get_by_id("anything") is None
    assert store.list_by_user("user-1") == []
    assert store.initialize() is False


def test_access_denied_triggers_one_reauth_and_retry():
    repo = InMemorySessionRepository()
    identity = _RefreshingIdentity(stale="stale-user", fresh="user-1")
    store = SessionStore(repo, identity)
    session = _session(user_id="user-1")
    repo.insert(session)

    outcome = store.update(session.id, {"current_step": 1})

    assert outcome.persisted is True
    assert identity.reauth_calls == 1
    assert repo.get(session.id).current_step == 1


def test_create_rebinds_owner_after_reauth():
    repo = InMemorySessionRepository()
    identity = _RefreshingIdentity(stale="stale-user", fresh="fresh-user")
    store = SessionStore(repo, identity)
    session = _session(user_id="stale-user")

    class _RejectStale(InMemorySessionRepository):
        def insert(self, session, *, acting_user_id=None):
            if acting_user_id == "stale-user":
                raise AccessDeniedError("token expired")
            repo.insert(session, acting_user_id=acting_user_id)

    store.repository = _RejectStale()
    outcome = store.create(session)

    assert outcome.persisted is True
    assert session.user_id == "fresh-user"
    assert repo.get(session.id).user_id == "fresh-user"


def test_second_access_denied_degrades():
    repo = InMemorySessionRepository()
    identity = _RefreshingIdentity(stale="intruder", fresh="still-intruder")
    store = SessionStore(repo, identity)
    session = _session(user_id="owner")
    repo.insert(session)

    outcome = store.update(session.id, {"current_step": 1})

    assert outcome.persisted is False
    assert identity.reauth_calls == 1
    assert repo.get(session.id).current_step == 0


def test_context_identity_is_request_scoped():
    provider = ContextIdentityProvider()

    async def _handle(user_id):
        bind_request_user(user_id)
        await asyncio.sleep(0)
        return provider.current_user_id()

    async def _run():
        return await asyncio.gather(_handle("alice"), _handle("bob"), _handle("  "))

    assert asyncio.run(_run()) == ["alice", "bob", None]
