"""Database ORM models.

Defines the persistent entities shared by the ingestion pipeline and the chat
orchestrator:
- Collection / Document / Chunk: uploaded files, their lifecycle state and the
  embedded chunks used for vector similarity search.
- Chat / ChatCollection / ChatMessage: conversations, the collections linked to
  them and their persisted messages.
- EmbeddingProvider / ChatProvider / WebSearchProvider: per-user provider
  credentials, at most one default per user and category.
- RAGSettings / UserSettings: per-user chunking, retrieval and model choices.
"""
import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declared_attr, relationship

from ragdesk.config import settings
from ragdesk.db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class DocumentStatus:
    PROCESSING = "processing"
    INDEXED = "indexed"
    FAILED = "failed"


class Collection(Base):
    """A named grouping of documents owned by a user."""
    __tablename__ = "collections"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Document(Base):
    """An uploaded file and its ingestion state.

    Notes:
        processing_progress holds the latest step snapshot written by the
        ingestion pipeline; it is always replaced as a whole, never patched.
        deleted_at marks a soft delete; original_collection_id is kept so the
        document can be restored into the collection it came from.
    """
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=_uuid)
    collection_id = Column(String(36), ForeignKey("collections.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    file_name = Column(String(512), nullable=False)
    file_path = Column(String(1024), nullable=False)
    file_size = Column(Integer, nullable=True)
    mime_type = Column(String(255), nullable=True)

    status = Column(String(32), nullable=False, default=DocumentStatus.PROCESSING)
    error_message = Column(Text, nullable=True)
    processing_progress = Column(JSON, nullable=True)

    deleted_at = Column(DateTime, nullable=True)
    original_collection_id = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    collection = relationship("Collection")
    chunks = relationship("Chunk", back_populates="document", cascade="all, delete-orphan", passive_deletes=True)


class Chunk(Base):
    """Vector-embedded document chunk used for retrieval.

    Text chunks come first in chunk_index order; synthetic image-caption chunks
    (has_image=True) follow them. chunk_index is contiguous from 0 per document.

    Notes:
        The embedding dimension is derived from settings.EMBEDDING_DIM and should
        match the embedding models configured for users.
    """
    __tablename__ = "chunks"

    id = Column(String(36), primary_key=True, default=_uuid)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    collection_id = Column(String(36), nullable=False)
    user_id = Column(String(64), nullable=False)

    chunk_index = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    embedding = Column(Vector(dim=settings.EMBEDDING_DIM), nullable=True)

    has_image = Column(Boolean, nullable=False, default=False)
    image_path = Column(String(1024), nullable=True)
    image_caption = Column(Text, nullable=True)

    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    document = relationship("Document", back_populates="chunks")

    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_chunks_document_index"),
        Index("idx_chunks_document", "document_id"),
        Index("idx_chunks_collection", "collection_id"),
    )


class Chat(Base):
    __tablename__ = "chats"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False, default="New Chat")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ChatCollection(Base):
    """Join entity linking chats to the collections they may search."""
    __tablename__ = "chat_collections"

    id = Column(String(36), primary_key=True, default=_uuid)
    chat_id = Column(String(36), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    collection_id = Column(String(36), ForeignKey("collections.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("chat_id", "collection_id", name="uq_chat_collection"),)


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    chat_id = Column(String(36), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(32), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class _ProviderMixin:
    """Columns shared by the three provider categories.

    A partial unique index allows a single is_default row per user.
    """
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    provider_name = Column(String(64), nullable=False)
    display_name = Column(String(255), nullable=False)
    base_url = Column(String(1024), nullable=True)
    api_key = Column(Text, nullable=True)
    model_id = Column(String(255), nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    @declared_attr
    def __table_args__(cls):
        return (
            Index(
                f"uq_{cls.__tablename__}_one_default",
                "user_id",
                unique=True,
                postgresql_where=text("is_default"),
                sqlite_where=text("is_default = 1"),
            ),
        )


class EmbeddingProvider(_ProviderMixin, Base):
    __tablename__ = "embedding_providers"


class ChatProvider(_ProviderMixin, Base):
    """Custom chat completion endpoint (OpenAI-compatible or ollama)."""
    __tablename__ = "chat_providers"


class WebSearchProvider(_ProviderMixin, Base):
    """Web search credentials; provider_name is brave, serper, tavily or custom."""
    __tablename__ = "web_search_providers"


class RAGSettings(Base):
    __tablename__ = "rag_settings"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, unique=True)
    chunk_size = Column(Integer, nullable=False, default=800)
    chunk_overlap = Column(Integer, nullable=False, default=100)
    top_k_results = Column(Integer, nullable=False, default=10)
    match_threshold = Column(Float, nullable=False, default=0.2)
    embedding_model = Column(String(255), nullable=False, default="text-embedding-3-small")


class UserSettings(Base):
    __tablename__ = "user_settings"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, unique=True)
    selected_model = Column(String(255), nullable=True)
