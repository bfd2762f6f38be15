"""Per-user provider and RAG settings resolution.

Provides:
- RagConfig / get_rag_settings: chunking and retrieval parameters with defaults.
- resolve_embedding_config: the user's default enabled embedding provider, or
  the OpenAI fallback from settings.
- get_default_provider / set_default_provider: "one default per user" for the
  embedding, chat and web-search provider tables.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Type

from sqlalchemy import update
from sqlalchemy.orm import Session

from ragdesk.config import settings
from ragdesk.embedding import EmbeddingConfig
from ragdesk.errors import NotFoundError
from ragdesk.models import ChatProvider, EmbeddingProvider, RAGSettings, WebSearchProvider

logger = logging.getLogger(__name__)

PROVIDER_MODELS: Dict[str, Type] = {
    "embedding": EmbeddingProvider,
    "chat": ChatProvider,
    "web-search": WebSearchProvider,
}


@dataclass(frozen=True)
class RagConfig:
    chunk_size: int
    chunk_overlap: int
    top_k: int
    match_threshold: float
    embedding_model: str


def get_rag_settings(db: Session, user_id: Optional[str]) -> RagConfig:
    """Load a user's RAG settings; missing rows and zero values fall back to defaults.

    Args:
        db: SQLAlchemy session.
        user_id: Owner id (None yields the defaults).

    Returns:
        RagConfig: Effective parameters.
    """
    row = None
    if user_id:
        row = db.query(RAGSettings).filter(RAGSettings.user_id == user_id).one_or_none()
    if row is None:
        return RagConfig(
            chunk_size=settings.CHUNK_SIZE,
            chunk_overlap=settings.CHUNK_OVERLAP,
            top_k=settings.TOP_K,
            match_threshold=settings.MATCH_THRESHOLD,
            embedding_model=settings.OPENAI_EMBEDDING_MODEL,
        )
    return RagConfig(
        chunk_size=row.chunk_size or settings.CHUNK_SIZE,
        chunk_overlap=row.chunk_overlap if row.chunk_overlap is not None else settings.CHUNK_OVERLAP,
        top_k=row.top_k_results or settings.TOP_K,
        match_threshold=row.match_threshold or settings.MATCH_THRESHOLD,
        embedding_model=row.embedding_model or settings.OPENAI_EMBEDDING_MODEL,
    )


def get_default_provider(db: Session, model: Type, user_id: Optional[str]):
    """Return the user's default enabled provider row of the given table, or None."""
    if not user_id:
        return None
    return (
        db.query(model)
        .filter(model.user_id == user_id, model.is_default.is_(True), model.is_enabled.is_(True))
        .one_or_none()
    )


def resolve_embedding_config(db: Session, user_id: Optional[str], rag: Optional[RagConfig] = None) -> EmbeddingConfig:
    """Pick the embedding endpoint, key and model for a user.

    The default enabled EmbeddingProvider wins field by field; anything it
    leaves empty falls back to settings (and the RAG settings' model).
    """
    provider = get_default_provider(db, EmbeddingProvider, user_id)
    fallback_model = rag.embedding_model if rag else settings.OPENAI_EMBEDDING_MODEL
    if provider is None:
        logger.info("Using embedding provider: OpenAI (fallback)")
        return EmbeddingConfig.default(fallback_model)
    logger.info("Using embedding provider: %s", provider.display_name)
    return EmbeddingConfig(
        base_url=(provider.base_url or settings.OPENAI_BASE_URL).rstrip("/"),
        api_key=provider.api_key or settings.OPENAI_API_KEY,
        model=provider.model_id or fallback_model,
        display_name=provider.display_name,
    )


def set_default_provider(db: Session, kind: str, user_id: str, provider_id: str):
    """Make one provider the user's default for its category.

    Runs in the caller's transaction: the user's rows are locked, every other
    default is cleared, then the chosen row is flagged. The partial unique
    index rejects any interleaving that would leave two defaults.

    Args:
        db: SQLAlchemy session (committed by the caller).
        kind: "embedding", "chat" or "web-search".
        user_id: Owner id.
        provider_id: Row to make default.

    Returns:
        The updated provider row.

    Raises:
        NotFoundError: Unknown kind, or no such provider for this user.
    """
    model = PROVIDER_MODELS.get(kind)
    if model is None:
        raise NotFoundError(f"Unknown provider kind: {kind}")

    rows = db.query(model).filter(model.user_id == user_id).with_for_update().all()
    target = next((r for r in rows if r.id == provider_id), None)
    if target is None:
        raise NotFoundError(f"Provider not found: {provider_id}")

    db.execute(
        update(model)
        .where(model.user_id == user_id, model.id != provider_id, model.is_default.is_(True))
        .values(is_default=False)
    )
    db.flush()
    db.execute(update(model).where(model.id == provider_id).values(is_default=True))
    db.flush()
    db.refresh(target)
    logger.info("Default %s provider for %s is now %s", kind, user_id, provider_id)
    return target
