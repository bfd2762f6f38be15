"""Document lifecycle and introspection.

Provides:
- create_document: store an upload and insert its processing row
- get_document_status / list_document_chunks: the status and chunk queries
- list_documents / list_deleted_documents: active and soft-deleted documents
- soft_delete_document / restore_document / permanently_delete_document

Ingestion itself lives in ragdesk.ingestion.pipeline; callers trigger it
after create_document and restore_document.
"""
import logging
import math
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ragdesk.blobstore import DOCUMENTS_BUCKET, IMAGES_BUCKET, BlobStore
from ragdesk.config import settings
from ragdesk.errors import BlobStoreError, NotFoundError
from ragdesk.models import Chunk, Collection, Document, DocumentStatus
from ragdesk.progress import starting_snapshot

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200
TOKENS_PER_WORD = 1.3


def _get_document(db: Session, document_id: str) -> Document:
    doc = db.get(Document, document_id)
    if doc is None:
        raise NotFoundError("Document not found")
    return doc


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def create_document(
    db: Session,
    blobs: BlobStore,
    user_id: str,
    collection_id: str,
    file_name: str,
    data: bytes,
    mime_type: Optional[str] = None,
) -> Document:
    """Upload the raw file and insert a processing Document row.

    Args:
        db: SQLAlchemy session (committed here).
        blobs: Blob store for the documents bucket.
        user_id: Owner id.
        collection_id: Target collection (must belong to the owner).
        file_name: Original file name.
        data: Raw bytes.
        mime_type: Declared MIME type.

    Returns:
        Document: The new row, status "processing".
    """
    collection = db.get(Collection, collection_id)
    if collection is None or collection.user_id != user_id:
        raise NotFoundError("Collection not found")

    path = f"{user_id}/{uuid.uuid4()}-{file_name}"
    blobs.upload(DOCUMENTS_BUCKET, path, data, content_type=mime_type)

    doc = Document(
        collection_id=collection_id,
        user_id=user_id,
        file_name=file_name,
        file_path=path,
        file_size=len(data),
        mime_type=mime_type,
        status=DocumentStatus.PROCESSING,
        processing_progress=starting_snapshot(),
    )
    db.add(doc)
    db.commit()
    db.refresh(doc)
    logger.info("Created document %s (%s, %d bytes)", doc.id, file_name, len(data))
    return doc


def get_document_status(db: Session, document_id: str) -> Dict[str, Any]:
    """Document metadata plus chunk statistics.

    Returns:
        dict: {"document": {...}, "vectorStats": {totalChunks, avgChunkLength,
            embeddingDimensions, indexType}}
    """
    doc = _get_document(db, document_id)
    lengths = [len(c) for (c,) in db.query(Chunk.content).filter(Chunk.document_id == document_id)]
    total = len(lengths)
    avg = round(sum(lengths) / total) if total else 0
    collection = db.get(Collection, doc.collection_id)

    return {
        "document": {
            "id": doc.id,
            "fileName": doc.file_name,
            "filePath": doc.file_path,
            "fileSize": doc.file_size,
            "mimeType": doc.mime_type,
            "status": doc.status,
            "errorMessage": doc.error_message,
            "collectionName": collection.name if collection else None,
            "collectionId": doc.collection_id,
            "userId": doc.user_id,
            "createdAt": _iso(doc.created_at),
            "processingProgress": doc.processing_progress,
        },
        "vectorStats": {
            "totalChunks": total,
            "avgChunkLength": avg,
            "embeddingDimensions": settings.EMBEDDING_DIM,
            "indexType": "HNSW",
        },
    }


def list_document_chunks(db: Session, document_id: str) -> Dict[str, List[Dict[str, Any]]]:
    """All chunks of a document ordered by chunk_index, with preview and token estimate."""
    _get_document(db, document_id)
    rows = (
        db.query(Chunk.id, Chunk.chunk_index, Chunk.content, Chunk.meta)
        .filter(Chunk.document_id == document_id)
        .order_by(Chunk.chunk_index.asc())
        .all()
    )
    chunks = []
    for row in rows:
        content = row.content or ""
        preview = content[:PREVIEW_CHARS] + ("..." if len(content) > PREVIEW_CHARS else "")
        chunks.append(
            {
                "id": row.id,
                "chunkIndex": row.chunk_index,
                "content": content,
                "contentPreview": preview,
                "tokenLength": math.ceil(len(content.split()) * TOKENS_PER_WORD),
                "metadata": row.meta,
            }
        )
    return {"chunks": chunks}


def list_documents(db: Session, collection_id: str) -> List[Document]:
    return (
        db.query(Document)
        .filter(Document.collection_id == collection_id, Document.deleted_at.is_(None))
        .order_by(Document.created_at.desc())
        .all()
    )


def list_deleted_documents(db: Session, user_id: str) -> List[Document]:
    """Soft-deleted documents of a user, most recently deleted first."""
    return (
        db.query(Document)
        .filter(Document.user_id == user_id, Document.deleted_at.isnot(None))
        .order_by(Document.deleted_at.desc())
        .all()
    )


def soft_delete_document(db: Session, document_id: str) -> Document:
    doc = _get_document(db, document_id)
    doc.deleted_at = datetime.utcnow()
    doc.original_collection_id = doc.collection_id
    db.commit()
    logger.info("Soft-deleted document %s", document_id)
    return doc


def restore_document(db: Session, document_id: str) -> Document:
    """Undo a soft delete and reset the document for reprocessing.

    The caller is expected to re-trigger ingestion afterwards.
    """
    doc = _get_document(db, document_id)
    doc.deleted_at = None
    doc.collection_id = doc.original_collection_id or doc.collection_id
    doc.status = DocumentStatus.PROCESSING
    doc.error_message = None
    doc.processing_progress = starting_snapshot()
    db.commit()
    logger.info("Restored document %s into collection %s", document_id, doc.collection_id)
    return doc


def permanently_delete_document(db: Session, blobs: BlobStore, document_id: str) -> None:
    """Remove the stored file and image blobs, then the row (chunks cascade)."""
    doc = _get_document(db, document_id)
    image_paths = [
        p for (p,) in db.query(Chunk.image_path).filter(Chunk.document_id == document_id, Chunk.image_path.isnot(None))
    ]
    try:
        blobs.remove(DOCUMENTS_BUCKET, [doc.file_path])
        if image_paths:
            blobs.remove(IMAGES_BUCKET, image_paths)
    except BlobStoreError as e:
        logger.error("Failed to delete from storage: %s", e)

    db.delete(doc)
    db.commit()
    logger.info("Permanently deleted document %s", document_id)
