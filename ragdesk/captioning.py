"""Vision captioning for images extracted from documents.

Captions become the content of synthetic image chunks and are shown next to
cited sources, so the instruction asks for searchable detail.
"""
import base64
import logging
from typing import Dict, Optional, Tuple

import openai
from openai import OpenAI

from ragdesk.config import settings
from ragdesk.errors import CaptioningError

logger = logging.getLogger(__name__)

CAPTION_INSTRUCTION = (
    "Describe this image in detail for document search purposes. "
    "Include any text, diagrams, charts, or key visual elements."
)
FALLBACK_CAPTION = "Image"

_clients: Dict[Tuple[str, str], OpenAI] = {}


def get_client(base_url: Optional[str] = None, api_key: Optional[str] = None) -> OpenAI:
    base_url = base_url or settings.CAPTION_BASE_URL or settings.OPENAI_BASE_URL
    api_key = api_key or settings.CAPTION_API_KEY or settings.OPENAI_API_KEY
    key = (base_url, api_key)
    if key not in _clients:
        _clients[key] = OpenAI(api_key=api_key or "missing", base_url=base_url, max_retries=0)
    return _clients[key]


def caption_image(data: bytes, content_type: str = "image/png", model: Optional[str] = None) -> str:
    """Caption raw image bytes with a vision-capable chat model.

    Args:
        data: Raw image bytes.
        content_type: MIME type used in the inline data URL.
        model: Optional model override; defaults to settings.CAPTION_MODEL.

    Returns:
        str: The model's description, or "Image" when it returns nothing.

    Raises:
        CaptioningError: The provider call failed.
    """
    image_b64 = base64.b64encode(data).decode("ascii")
    try:
        resp = get_client().chat.completions.create(
            model=model or settings.CAPTION_MODEL,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": CAPTION_INSTRUCTION},
                        {"type": "image_url", "image_url": {"url": f"data:{content_type};base64,{image_b64}"}},
                    ],
                }
            ],
        )
    except openai.OpenAIError as e:
        raise CaptioningError(f"Caption request failed: {e}") from e

    content = resp.choices[0].message.content if resp.choices else None
    return (content or "").strip() or FALLBACK_CAPTION
