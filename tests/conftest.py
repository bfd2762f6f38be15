"""
Test configuration and fixtures.

The ORM schema runs on an in-memory SQLite database shared through a
StaticPool; provider HTTP calls are replaced per test with monkeypatch.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("EMBEDDING_CACHE_ENABLED", "false")
os.environ.setdefault("PUBLIC_BASE_URL", "http://testserver")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ragdesk.blobstore import BlobStore
from ragdesk.db import Base
from ragdesk import models  # noqa: F401
from ragdesk.models import Chat, ChatCollection, Collection
from ragdesk.documents import create_document


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )

    @event.listens_for(eng, "connect")
    def _enable_fks(dbapi_conn, _):
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def blobs(tmp_path):
    return BlobStore(str(tmp_path / "blobs"), "test-signing-key", "http://testserver")


@pytest.fixture
def collection(db):
    col = Collection(user_id="user-1", name="Handbook")
    db.add(col)
    db.commit()
    return col


@pytest.fixture
def make_document(db, blobs, collection):
    """Upload bytes into the test collection and return the Document row."""

    def _make(data: bytes, file_name: str = "notes.txt", mime_type: str = "text/plain"):
        return create_document(db, blobs, collection.user_id, collection.id, file_name, data, mime_type)

    return _make


@pytest.fixture
def linked_chat(db, collection):
    chat = Chat(user_id=collection.user_id, title="New Chat")
    db.add(chat)
    db.flush()
    db.add(ChatCollection(chat_id=chat.id, collection_id=collection.id))
    db.commit()
    return chat
