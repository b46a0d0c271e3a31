# tests/conftest.py
"""Shared fixtures: in-memory database, a logged-in user and a session context."""
import os
import tempfile

# keep the application engine away from the working tree
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="ident_switch-"))
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ident_switch.core import crypto
from ident_switch.core.hosts import Security
from ident_switch.db import crud
from ident_switch.db.init_db import init_db
from ident_switch.db.models import IdentSwitchAccount
from ident_switch.switcher.context import SessionContext
from ident_switch.switcher.resolver import ConnectionParams, Protocol

PRIMARY_FOLDERS = {"drafts": "Drafts", "sent": "Sent", "junk": "Junk", "trash": "Trash"}


class FakeImap:
    """Stands in for protocols.imap_unseen; values may be exceptions to raise."""

    def __init__(self, counts=None):
        self.counts = counts if counts is not None else {}
        self.calls = []

    def __call__(self, params, timeout):
        self.calls.append(params.username)
        value = self.counts[params.username]
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)

    @event.listens_for(engine, "connect")
    def _fk(dbapi_conn, _record):
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def user(db):
    return crud.get_or_create_user(db, "alice@example.com")


@pytest.fixture
def make_account(db, user):
    """Create identity + account record; protocol fields can be overridden."""
    def _make(email, owner=None, **fields):
        owner = owner or user
        identity = crud.create_identity(db, owner.id, email)
        values = {
            "imap_host": "ssl://imap.example.com",
            "username": email,
            "password": crypto.encrypt("secret"),
        }
        values.update(fields)
        return crud.upsert(db, IdentSwitchAccount(user_id=owner.id, iid=identity.id, **values))
    return _make


@pytest.fixture
def store():
    return {}


@pytest.fixture
def ctx(store, user):
    c = SessionContext(store, user.id, user.username)
    c.begin(
        ConnectionParams(Protocol.imap, "imap.primary.test", 993, Security.ssl, user.username, "primary-pw"),
        PRIMARY_FOLDERS,
    )
    return c


@pytest.fixture
def unseen():
    return FakeImap()


@pytest.fixture
def client(session_factory, unseen, monkeypatch):
    from fastapi.testclient import TestClient

    from main import app
    from ident_switch.api.deps import get_checker, get_preconfig
    from ident_switch.db.session import get_db
    from ident_switch.switcher import protocols
    from ident_switch.switcher.checker import NotifyDefaults, UnreadChecker
    from ident_switch.switcher.preconfig import Preconfig

    def _get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_preconfig] = lambda: Preconfig({}, only=False)
    app.dependency_overrides[get_checker] = lambda: UnreadChecker(
        unseen, round_robin=False, workers=1, defaults=NotifyDefaults(basic=True)
    )
    monkeypatch.setattr(protocols, "imap_test", lambda params, timeout=10: None)
    monkeypatch.setattr(protocols, "smtp_test", lambda params, timeout=10: None)
    monkeypatch.setattr(protocols, "sieve_test", lambda params: None)

    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def logged_in(client):
    r = client.post("/auth/login", data={"username": "alice@example.com", "password": "primary-pw"},
                    follow_redirects=False)
    assert r.status_code == 303
    return client
