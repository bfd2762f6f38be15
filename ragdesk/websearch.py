"""Web search through the user's default search provider.

Each provider has its own request and response shape; results are rendered
as a numbered markdown list followed by a synthesis instruction for the model.
"""
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from sqlalchemy.orm import Session

from ragdesk.config import settings
from ragdesk.models import WebSearchProvider
from ragdesk.providers import get_default_provider

logger = logging.getLogger(__name__)

BRAVE_URL = "https://api.search.brave.com/res/v1/web/search"
SERPER_URL = "https://google.serper.dev/search"
TAVILY_URL = "https://api.tavily.com/search"

DISABLED_MESSAGE = "Web search is disabled. Enable it in the chat interface to use this feature."
NO_PROVIDER_MESSAGE = "No web search provider configured. Please add one in Settings → Web Search."
SYNTHESIS_INSTRUCTION = (
    "IMPORTANT: Synthesize this information into a comprehensive, well-written response. "
    "Do NOT just list these results. Cite sources naturally in your response and include "
    'a "Sources" section at the end with clickable links.'
)

Result = Tuple[str, str, str]


class SearchProviderError(Exception):
    """A search provider answered with a non-success status."""

    def __init__(self, label: str, reason: str):
        super().__init__(f"{label} API error: {reason}")


def _check(resp: requests.Response, label: str) -> Dict[str, Any]:
    if not resp.ok:
        raise SearchProviderError(label, resp.reason or str(resp.status_code))
    return resp.json()


def _brave(provider: WebSearchProvider, query: str) -> List[Result]:
    resp = requests.get(
        BRAVE_URL,
        params={"q": query},
        headers={"X-Subscription-Token": provider.api_key or "", "Accept": "application/json"},
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    data = _check(resp, "Brave Search")
    results = (data.get("web") or {}).get("results") or []
    return [(r.get("title", ""), r.get("url", ""), r.get("description", "")) for r in results]


def _serper(provider: WebSearchProvider, query: str) -> List[Result]:
    resp = requests.post(
        SERPER_URL,
        json={"q": query},
        headers={"X-API-KEY": provider.api_key or ""},
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    data = _check(resp, "Serper")
    return [(r.get("title", ""), r.get("link", ""), r.get("snippet", "")) for r in data.get("organic") or []]


def _tavily(provider: WebSearchProvider, query: str) -> List[Result]:
    resp = requests.post(
        TAVILY_URL,
        json={"api_key": provider.api_key, "query": query, "max_results": settings.WEB_SEARCH_MAX_RESULTS},
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    data = _check(resp, "Tavily")
    return [(r.get("title", ""), r.get("url", ""), r.get("content", "")) for r in data.get("results") or []]


def _custom(provider: WebSearchProvider, query: str) -> str:
    """Custom endpoints get {"query": ...} and their JSON answer is passed through."""
    resp = requests.post(
        provider.base_url,
        json={"query": query},
        headers={"Authorization": f"Bearer {provider.api_key or ''}"},
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    data = _check(resp, "Custom provider")
    return json.dumps(data, indent=2, ensure_ascii=False)


SEARCHERS: Dict[str, Callable[[WebSearchProvider, str], List[Result]]] = {
    "brave": _brave,
    "serper": _serper,
    "tavily": _tavily,
}


def format_results(results: List[Result], limit: Optional[int] = None) -> str:
    results = results[: limit or settings.WEB_SEARCH_MAX_RESULTS]
    if not results:
        return "No results found."
    return "\n\n".join(
        f"{i}. **[{title}]({url})**\n   {snippet}" for i, (title, url, snippet) in enumerate(results, start=1)
    )


def web_search(query: str, enabled: bool, db: Session, user_id: Optional[str]) -> str:
    """Search the web with the user's default enabled provider.

    Args:
        query: Search query.
        enabled: The chat's web-search toggle.
        db: SQLAlchemy session.
        user_id: Chat owner.

    Returns:
        str: Formatted results plus synthesis instruction, or an explanatory message.
    """
    logger.info("Web search requested: %r (enabled=%s)", query, enabled)
    if not enabled:
        return DISABLED_MESSAGE

    provider = get_default_provider(db, WebSearchProvider, user_id)
    if provider is None:
        return NO_PROVIDER_MESSAGE

    name = provider.provider_name
    try:
        if name == "custom":
            if not provider.base_url:
                return "Custom provider has no API endpoint configured."
            body = _custom(provider, query)
        elif name in SEARCHERS:
            body = format_results(SEARCHERS[name](provider, query))
        else:
            return f"Unknown provider: {name}"
    except SearchProviderError as e:
        return str(e)
    except (requests.RequestException, ValueError) as e:
        logger.warning("Web search via %s failed: %s", name, e)
        return f"Web search error: {e}"

    return f'Web search results for "{query}":\n\n{body}\n\n---\n{SYNTHESIS_INSTRUCTION}'
