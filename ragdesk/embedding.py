"""Embedding utilities wrapping any OpenAI-compatible embeddings API.

Provides:
- EmbeddingConfig: endpoint, credentials and model for one embedding provider.
- get_client: Cached OpenAI client per (base_url, api_key).
- embed_texts: One batched call for a whole document's chunks.
- embed_query: Single-text helper for chat retrieval, cached in Redis.

Fallback endpoint and model are configured via ragdesk.config.settings.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import openai
from openai import OpenAI

from ragdesk import cache
from ragdesk.config import settings
from ragdesk.errors import ConsistencyError, EmbeddingError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmbeddingConfig:
    """Resolved embedding provider for one user.

    Attributes:
        base_url: OpenAI-compatible API root (e.g. https://api.openai.com/v1).
        api_key: Provider API key.
        model: Embedding model identifier.
        display_name: Human-readable provider name for logs.
    """
    base_url: str
    api_key: str
    model: str
    display_name: str = "OpenAI"

    @classmethod
    def default(cls, model: Optional[str] = None) -> "EmbeddingConfig":
        return cls(
            base_url=settings.OPENAI_BASE_URL,
            api_key=settings.OPENAI_API_KEY,
            model=model or settings.OPENAI_EMBEDDING_MODEL,
        )


_clients: Dict[Tuple[str, str], OpenAI] = {}


def get_client(config: EmbeddingConfig) -> OpenAI:
    """Return a cached OpenAI client for the config's endpoint and key.

    Args:
        config: Embedding provider config.

    Returns:
        OpenAI: Client instance reused across calls with the same endpoint/key.
    """
    key = (config.base_url, config.api_key)
    client = _clients.get(key)
    if client is None:
        client = OpenAI(api_key=config.api_key or "missing", base_url=config.base_url or None, max_retries=0)
        _clients[key] = client
    return client


def embed_texts(texts: List[str], config: EmbeddingConfig) -> List[List[float]]:
    """Embed a batch of texts in a single provider call.

    Args:
        texts: List of input strings to embed.
        config: Embedding provider config.

    Returns:
        List[List[float]]: One embedding vector per input text, in input order.

    Raises:
        EmbeddingError: The provider call failed (status and body attached when available).
        ConsistencyError: The provider returned a different number of vectors.
    """
    if not texts:
        return []
    client = get_client(config)
    logger.info("Embedding %d texts with %s (%s)", len(texts), config.display_name, config.model)
    try:
        resp = client.embeddings.create(model=config.model, input=texts)
    except openai.APIStatusError as e:
        body = e.response.text if e.response is not None else ""
        raise EmbeddingError(
            f"Embedding API error: {e.status_code} - {body}", status_code=e.status_code, body=body
        ) from e
    except openai.OpenAIError as e:
        raise EmbeddingError(f"Embedding API error: {e}") from e

    data = sorted(resp.data, key=lambda d: d.index)
    if len(data) != len(texts):
        raise ConsistencyError(f"Embedding count mismatch: expected {len(texts)}, got {len(data)}")
    return [d.embedding for d in data]


def embed_query(text: str, config: EmbeddingConfig) -> List[float]:
    """Embed a single query string, consulting the Redis cache first.

    Args:
        text: The query to embed.
        config: Embedding provider config.

    Returns:
        List[float]: The embedding vector for the query.
    """
    cached = cache.get_cached_embedding(config.base_url, config.model, text)
    if cached is not None:
        return cached
    vec = embed_texts([text], config)[0]
    cache.set_cached_embedding(config.base_url, config.model, text, vec)
    return vec
