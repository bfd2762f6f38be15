"""Streaming chat completion client.

Provides:
- CompletionTarget / resolve_target: which endpoint, key and model serve a user's chat
- normalize_completions_url: OpenAI-compatible custom endpoints end in /chat/completions
- build_payload: per-family request body (ollama never receives tools)
- open_stream: POST with stream=True, mapping non-success statuses to ProviderError
- iter_events: provider stream -> ProviderEvent frames in the OpenAI delta schema

Configuration is read from ragdesk.config.settings.
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

import requests
from sqlalchemy.orm import Session

from ragdesk.config import settings
from ragdesk.errors import PaymentRequiredError, ProviderError, RateLimitError
from ragdesk.models import ChatProvider, UserSettings
from ragdesk.providers import get_default_provider
from ragdesk.streaming import sse_frame

logger = logging.getLogger(__name__)

FAMILY_GATEWAY = "gateway"
FAMILY_OPENAI = "openai"
FAMILY_OLLAMA = "ollama"

CUSTOM_PREFIX = "custom:"


@dataclass(frozen=True)
class CompletionTarget:
    """Where a chat completion request is sent.

    Attributes:
        url: Full endpoint URL.
        api_key: Bearer token, may be empty for self-hosted endpoints.
        model: Model identifier sent in the payload.
        display_name: Name the assistant reports as its underlying model.
        family: gateway, openai (custom OpenAI-compatible) or ollama.
        model_ref: The selected model identifier ("custom:<id>" for custom providers).
    """
    url: str
    api_key: str
    model: str
    display_name: str
    family: str = FAMILY_GATEWAY
    model_ref: str = ""

    @property
    def supports_tools(self) -> bool:
        return self.family != FAMILY_OLLAMA


def normalize_completions_url(base_url: str) -> str:
    """Append the chat completions path to a custom endpoint if missing.

    Args:
        base_url: Endpoint as configured by the user.

    Returns:
        str: URL ending in /chat/completions.
    """
    url = base_url.rstrip("/")
    if url.endswith("/chat/completions"):
        return url
    if url.endswith("/v1"):
        return f"{url}/chat/completions"
    return f"{url}/v1/chat/completions"


def _gateway_target(model: str) -> CompletionTarget:
    return CompletionTarget(
        url=settings.CHAT_GATEWAY_URL,
        api_key=settings.CHAT_GATEWAY_API_KEY or settings.OPENAI_API_KEY,
        model=model,
        display_name=model,
        family=FAMILY_GATEWAY,
        model_ref=model,
    )


def _custom_target(provider: ChatProvider) -> CompletionTarget:
    base = (provider.base_url or "").rstrip("/")
    if provider.provider_name == FAMILY_OLLAMA:
        url, family = f"{base}/api/chat", FAMILY_OLLAMA
    else:
        url, family = normalize_completions_url(base), FAMILY_OPENAI
    return CompletionTarget(
        url=url,
        api_key=provider.api_key or "",
        model=provider.model_id or "",
        display_name=provider.display_name,
        family=family,
        model_ref=f"{CUSTOM_PREFIX}{provider.id}",
    )


def resolve_target(db: Session, user_id: Optional[str]) -> CompletionTarget:
    """Resolve the completion target for a chat owner.

    Order: gateway default model, then the user's selected model, then the
    user's default enabled custom chat provider, which wins when present.
    """
    model = settings.DEFAULT_CHAT_MODEL
    if user_id:
        us = db.query(UserSettings).filter(UserSettings.user_id == user_id).one_or_none()
        if us is not None and us.selected_model:
            model = us.selected_model
            logger.info("Using user-selected model: %s", model)
        provider = get_default_provider(db, ChatProvider, user_id)
        if provider is not None:
            logger.info("Using custom API provider: %s", provider.display_name)
            return _custom_target(provider)
    return _gateway_target(model)


def build_payload(
    target: CompletionTarget, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"model": target.model, "messages": messages, "stream": True}
    if tools and target.supports_tools:
        payload["tools"] = tools
    return payload


def _raise_for_status(resp: requests.Response) -> None:
    if resp.ok:
        return
    body = resp.text
    resp.close()
    logger.error("AI gateway error: %s %s", resp.status_code, body[:500])
    if resp.status_code == 429:
        raise RateLimitError(upstream_status=429, body=body)
    if resp.status_code == 402:
        raise PaymentRequiredError(upstream_status=402, body=body)
    raise ProviderError(f"AI gateway error: {resp.status_code}", upstream_status=resp.status_code, body=body)


def open_stream(
    target: CompletionTarget,
    messages: List[Dict[str, Any]],
    tools: Optional[List[Dict[str, Any]]] = None,
) -> requests.Response:
    """Start a streamed completion.

    Args:
        target: Resolved completion target.
        messages: Full conversation including the system prompt.
        tools: Tool definitions; dropped for targets without tool support.

    Returns:
        requests.Response: Open streaming response; the caller closes it.

    Raises:
        RateLimitError: Provider answered 429.
        PaymentRequiredError: Provider answered 402.
        ProviderError: Any other non-success status or a connection failure.
    """
    headers = {"Content-Type": "application/json"}
    if target.api_key:
        headers["Authorization"] = f"Bearer {target.api_key}"
    payload = build_payload(target, messages, tools)
    try:
        resp = requests.post(
            target.url, json=payload, headers=headers, stream=True, timeout=settings.HTTP_TIMEOUT_SECONDS
        )
    except requests.RequestException as e:
        raise ProviderError(f"AI gateway unreachable: {e}") from e
    _raise_for_status(resp)
    return resp


@dataclass
class ProviderEvent:
    """One SSE frame from the provider plus its parsed JSON, if it parsed."""
    frame: str
    payload: Optional[Dict[str, Any]] = None

    @property
    def delta(self) -> Dict[str, Any]:
        if not self.payload:
            return {}
        choices = self.payload.get("choices") or []
        if not choices:
            return {}
        return choices[0].get("delta") or {}


def _iter_openai(lines: Iterator[str]) -> Iterator[ProviderEvent]:
    for line in lines:
        if not line.strip() or line.startswith(":"):
            continue
        if not line.startswith("data: "):
            continue
        data = line[6:]
        if data.strip() == "[DONE]":
            continue
        try:
            payload = json.loads(data)
        except ValueError:
            yield ProviderEvent(frame=f"{line}\n\n")
            continue
        yield ProviderEvent(frame=f"{line}\n\n", payload=payload if isinstance(payload, dict) else None)


def _iter_ollama(lines: Iterator[str]) -> Iterator[ProviderEvent]:
    for line in lines:
        if not line.strip():
            continue
        try:
            chunk = json.loads(line)
        except ValueError:
            logger.warning("Skipping unparseable ollama line: %s", line[:200])
            continue
        content = (chunk.get("message") or {}).get("content") or ""
        if not content:
            continue
        payload = {"choices": [{"index": 0, "delta": {"content": content}}]}
        yield ProviderEvent(frame=sse_frame(payload), payload=payload)


def iter_events(target: CompletionTarget, response: requests.Response) -> Iterator[ProviderEvent]:
    """Iterate a provider stream as OpenAI-style delta frames.

    OpenAI-compatible SSE lines pass through unchanged; ollama NDJSON lines are
    reshaped into choices[0].delta.content frames. The provider's own [DONE]
    marker is dropped.

    Raises:
        ProviderError: The connection failed mid-stream.
    """
    try:
        lines = (raw.decode("utf-8", errors="replace") for raw in response.iter_lines())
        if target.family == FAMILY_OLLAMA:
            yield from _iter_ollama(lines)
        else:
            yield from _iter_openai(lines)
    except requests.RequestException as e:
        raise ProviderError(f"Stream interrupted: {e}") from e
    finally:
        response.close()
