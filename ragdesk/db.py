"""Database setup and session utilities for SQLAlchemy.

This module centralizes engine/session initialization, metadata base, and helpers:
- init_db: Ensures the pgvector extension exists and creates required tables and the
  HNSW index over the chunks.embedding column for vector similarity search.
- session_scope: Context-managed transactional scope for imperative workflows.
- get_db: FastAPI dependency to yield a per-request SQLAlchemy Session.

Configuration is read from ragdesk.config.settings.DATABASE_URL.
"""
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ragdesk.config import settings

# SQLAlchemy setup
engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()

SessionFactory = Callable[[], Session]


def init_db() -> None:
    """Initialize database extensions, tables, and vector indexes.

    Ensures pgvector extension is available, creates tables from SQLAlchemy metadata,
    and creates the HNSW index over chunks.embedding if missing.

    This function is idempotent and safe to run multiple times.
    """
    with engine.connect() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        conn.commit()

    # Import models after Base is defined
    from ragdesk import models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    # Cosine HNSW index; matches the operator used by retrieval.match_chunks
    with engine.connect() as conn:
        conn.execute(
            text(
                """
                CREATE INDEX IF NOT EXISTS idx_chunks_embedding_hnsw
                ON chunks USING hnsw (embedding vector_cosine_ops)
                """
            )
        )
        conn.commit()


@contextmanager
def session_scope(factory: Optional[SessionFactory] = None):
    """Provide a transactional scope around a series of operations.

    Args:
        factory: Optional session factory; defaults to SessionLocal.

    Yields:
        Session: A SQLAlchemy session bound to the configured engine.

    Notes:
        - Commits on successful exit.
        - Rolls back and re-raises on exception.
        - Always closes the session at the end.
    """
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator:
    """FastAPI dependency that yields a SQLAlchemy Session.

    Yields:
        Session: A session tied to the current request lifecycle.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
