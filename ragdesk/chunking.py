"""Chunking helpers for extracted document text.

This module provides:
- words_for_tokens: token budget -> approximate word budget (x0.75)
- validate_chunking: guard against configurations that cannot advance
- chunk_words: sliding word window with overlap
- build_chunks: text chunks followed by synthetic image-caption chunks, indexed in one pass
"""
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

WORDS_PER_TOKEN = 0.75


@dataclass
class ImageCaption:
    """A captioned image ready to become a synthetic chunk."""
    index: int
    path: str
    caption: str


@dataclass
class PlannedChunk:
    chunk_index: int
    content: str
    has_image: bool = False
    image_path: Optional[str] = None
    image_caption: Optional[str] = None
    image_index: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)


def words_for_tokens(tokens: int) -> int:
    """Convert a token budget into an approximate word budget.

    Args:
        tokens: Budget in tokens.

    Returns:
        int: floor(tokens * 0.75).
    """
    return int(math.floor(tokens * WORDS_PER_TOKEN))


def validate_chunking(chunk_size: int, overlap: int) -> None:
    """Reject chunking parameters whose window could never advance.

    Args:
        chunk_size: Chunk size in tokens.
        overlap: Overlap in tokens.

    Raises:
        ValueError: If the window size or step would be non-positive.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0:
        raise ValueError(f"chunk_overlap must not be negative, got {overlap}")
    if overlap >= chunk_size:
        raise ValueError(f"chunk_overlap ({overlap}) must be smaller than chunk_size ({chunk_size})")
    size_words = words_for_tokens(chunk_size)
    if size_words <= 0 or size_words - words_for_tokens(overlap) <= 0:
        raise ValueError(f"chunk_size {chunk_size} with overlap {overlap} leaves no room for a word window")


def chunk_words(text: str, chunk_size: int, overlap: int) -> List[str]:
    """Split text into overlapping word windows.

    Windows hold words_for_tokens(chunk_size) words and advance by the window
    size minus words_for_tokens(overlap). The last window is the first one that
    reaches the end of the text.

    Args:
        text: Input text.
        chunk_size: Target chunk size in tokens.
        overlap: Overlap between consecutive chunks in tokens.

    Returns:
        List[str]: Non-empty chunks, words joined with single spaces.
    """
    validate_chunking(chunk_size, overlap)
    words = text.split()
    if not words:
        return []

    size = words_for_tokens(chunk_size)
    step = size - words_for_tokens(overlap)
    n = len(words)

    chunks: List[str] = []
    start = 0
    while start < n:
        end = min(n, start + size)
        chunks.append(" ".join(words[start:end]))
        if end == n:
            break
        start += step
    return chunks


def build_chunks(
    text: str,
    chunk_size: int,
    overlap: int,
    captions: Optional[List[ImageCaption]] = None,
) -> List[PlannedChunk]:
    """Plan the full chunk list for a document.

    Text chunks keep source order; one "[IMAGE n]" chunk per captioned image is
    appended after them. chunk_index is assigned over the combined list.

    Args:
        text: Extracted document text.
        chunk_size: Chunk size in tokens.
        overlap: Overlap in tokens.
        captions: Captioned images (uncaptioned images are simply absent).

    Returns:
        List[PlannedChunk]: Chunks with contiguous chunk_index from 0.
    """
    planned: List[PlannedChunk] = [PlannedChunk(chunk_index=-1, content=c) for c in chunk_words(text, chunk_size, overlap)]
    for cap in captions or []:
        planned.append(
            PlannedChunk(
                chunk_index=-1,
                content=f"[IMAGE {cap.index + 1}] {cap.caption}",
                has_image=True,
                image_path=cap.path,
                image_caption=cap.caption,
                image_index=cap.index,
            )
        )
    for i, chunk in enumerate(planned):
        chunk.chunk_index = i
    return planned
