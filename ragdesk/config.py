"""Application configuration and environment-driven settings.

Defines the Settings class based on pydantic-settings to centralize configuration for:
- Fallback API keys and model names (embeddings, chat gateway, vision captioning)
- Data stores (PostgreSQL, Redis) and the local blob store
- Default RAG parameters used when a user has no saved RAG settings
- Tool limits and outbound HTTP timeouts
- Logging and optional observability (Langfuse)

A light-weight local safety warning is printed if OPENAI_API_KEY is not set when not running in Docker.
"""
import os
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Strongly-typed application settings loaded from environment variables.

    Uses pydantic-settings to populate fields from a .env file or process env.
    Provider records saved per user take precedence over the fallbacks here.
    """
    # Fallback embedding provider (used when a user has no default embedding provider)
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"  # 1536 dims

    # Chat completion gateway (OpenAI-compatible streaming endpoint)
    CHAT_GATEWAY_URL: str = "https://api.openai.com/v1/chat/completions"
    CHAT_GATEWAY_API_KEY: str = ""
    DEFAULT_CHAT_MODEL: str = "gpt-4o-mini"
    ASSISTANT_NAME: str = "ragdesk"

    # Vision captioning
    CAPTION_MODEL: str = "gpt-4o-mini"
    CAPTION_BASE_URL: str = ""
    CAPTION_API_KEY: str = ""

    # Data stores
    DATABASE_URL: str = "postgresql+psycopg2://rag_user:rag_pass@db:5432/rag_db"
    REDIS_URL: str = "redis://redis:6379/0"
    EMBEDDING_CACHE_ENABLED: bool = True
    EMBEDDING_CACHE_TTL_SECONDS: int = 3600

    # Blob store
    BLOB_ROOT: str = "data/blobs"
    BLOB_SIGNING_KEY: str = "change-me"
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    SIGNED_URL_TTL_SECONDS: int = 3600

    # RAG defaults
    CHUNK_SIZE: int = 800
    CHUNK_OVERLAP: int = 100
    TOP_K: int = 10
    MATCH_THRESHOLD: float = 0.2

    # Tools
    TOOL_SEARCH_MAX_RESULTS: int = 5
    TOOL_EXCERPT_CHARS: int = 300
    WEB_SEARCH_MAX_RESULTS: int = 5

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS: int = 60

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

    # Observability (optional)
    LANGFUSE_HOST: str = ""
    LANGFUSE_PUBLIC_KEY: str = ""
    LANGFUSE_SECRET_KEY: str = ""

    # Derived
    @property
    def EMBEDDING_DIM(self) -> int:
        """Embedding dimension of the chunks.embedding column.

        Returns:
            int: The vector dimension inferred from OPENAI_EMBEDDING_MODEL.
        """
        model = self.OPENAI_EMBEDDING_MODEL.lower()
        if "text-embedding-3-large" in model:
            return 3072
        # text-embedding-3-small, ada-002 and most compatible providers
        return 1536

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()

# Safety check for local dev (inside API container this must be set)
if os.environ.get("RUNNING_IN_DOCKER", "0") == "0":
    if not settings.OPENAI_API_KEY:
        # Avoid raising to allow local scaffolding before setting .env
        print("[WARN] OPENAI_API_KEY not set. Set it in .env or configure per-user providers.")
