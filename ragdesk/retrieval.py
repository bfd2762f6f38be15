"""Vector retrieval over document chunks.

This module implements:
- match_chunks: pgvector cosine similarity search bounded by threshold and count
- linked_collection_ids: collections a chat may search
- build_sources: deduplicated parent documents of matched chunks for citation

Similarity is 1 - cosine distance (the <=> operator), the same operator the
HNSW index is built for.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.orm import Session

from ragdesk.blobstore import DOCUMENTS_BUCKET, BlobStore
from ragdesk.errors import BlobStoreError
from ragdesk.models import ChatCollection, Document

logger = logging.getLogger(__name__)


@dataclass
class ChunkMatch:
    id: str
    document_id: str
    content: str
    similarity: float
    has_image: bool = False
    image_path: Optional[str] = None
    image_caption: Optional[str] = None


def _vector_literal(vec: Sequence[float]) -> str:
    return "[" + ",".join(f"{float(x):.6f}" for x in vec) + "]"


def match_chunks(
    db: Session,
    embedding: Sequence[float],
    threshold: float,
    count: int,
    collection_ids: List[str],
) -> List[ChunkMatch]:
    """Find the chunks most similar to a query embedding.

    Args:
        db: SQLAlchemy session.
        embedding: Query vector.
        threshold: Minimum cosine similarity.
        count: Maximum number of matches.
        collection_ids: Collections to search; empty yields no matches.

    Returns:
        List[ChunkMatch]: Matches ordered by descending similarity. Chunks of
            soft-deleted documents are excluded.
    """
    if not collection_ids:
        return []

    sql = text(
        """
        SELECT c.id, c.document_id, c.content, c.has_image, c.image_path, c.image_caption,
            1 - (c.embedding <=> CAST(:qvec AS vector)) AS similarity
        FROM chunks c
        JOIN documents d ON d.id = c.document_id
        WHERE c.collection_id IN :collection_ids
            AND d.deleted_at IS NULL
            AND c.embedding IS NOT NULL
            AND 1 - (c.embedding <=> CAST(:qvec AS vector)) >= :threshold
        ORDER BY c.embedding <=> CAST(:qvec AS vector)
        LIMIT :limit
        """
    ).bindparams(bindparam("collection_ids", expanding=True))

    rows = db.execute(
        sql,
        {
            "qvec": _vector_literal(embedding),
            "collection_ids": list(collection_ids),
            "threshold": threshold,
            "limit": count,
        },
    ).mappings().all()

    return [
        ChunkMatch(
            id=r["id"],
            document_id=r["document_id"],
            content=r["content"],
            similarity=float(r["similarity"]),
            has_image=bool(r["has_image"]),
            image_path=r["image_path"],
            image_caption=r["image_caption"],
        )
        for r in rows
    ]


def linked_collection_ids(db: Session, chat_id: Optional[str]) -> List[str]:
    if not chat_id:
        return []
    return [cid for (cid,) in db.query(ChatCollection.collection_id).filter(ChatCollection.chat_id == chat_id)]


def build_sources(db: Session, blobs: BlobStore, matches: List[ChunkMatch]) -> List[Dict[str, Any]]:
    """Turn matches into citable source documents.

    One entry per parent document, in first-match order, with a signed
    download URL and the image fields of that document's first matched image
    chunk, if any.

    Args:
        db: SQLAlchemy session.
        blobs: Blob store used to sign download URLs.
        matches: Chunk matches from match_chunks.

    Returns:
        List[Dict[str, Any]]: {id, name, size, downloadUrl, hasImage, imagePath, imageCaption}.
    """
    doc_ids: List[str] = []
    for m in matches:
        if m.document_id not in doc_ids:
            doc_ids.append(m.document_id)
    if not doc_ids:
        return []

    docs = {d.id: d for d in db.query(Document).filter(Document.id.in_(doc_ids))}
    sources: List[Dict[str, Any]] = []
    for doc_id in doc_ids:
        doc = docs.get(doc_id)
        if doc is None:
            continue
        try:
            url = blobs.create_signed_url(DOCUMENTS_BUCKET, doc.file_path)
        except BlobStoreError as e:
            logger.warning("Could not sign URL for %s: %s", doc.file_path, e)
            url = None
        image = next((m for m in matches if m.document_id == doc_id and m.has_image), None)
        sources.append(
            {
                "id": doc.id,
                "name": doc.file_name,
                "size": doc.file_size,
                "downloadUrl": url,
                "hasImage": image is not None,
                "imagePath": image.image_path if image else None,
                "imageCaption": image.image_caption if image else None,
            }
        )
    return sources
