"""Document ingestion pipeline.

Runs one uploaded document through download, extraction, image captioning,
chunking, batched embedding and a single bulk write of its chunks, persisting
a progress snapshot before each step. On success the document is marked
indexed; any error marks it failed with the message stored on the row.

Main functions:
- process_document: run the full pipeline for one document id
- main: CLI entrypoint (python -m ragdesk.ingestion.pipeline --document-id ID)

Configuration:
- Blob store: ragdesk.blobstore (BLOB_ROOT)
- Embeddings: the owner's default embedding provider, else ragdesk.config.settings
- Chunking: the owner's RAG settings, else CHUNK_SIZE / CHUNK_OVERLAP
"""
import argparse
import logging
import mimetypes
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from sqlalchemy import delete, func
from sqlalchemy.exc import SQLAlchemyError

from ragdesk.blobstore import DOCUMENTS_BUCKET, IMAGES_BUCKET, BlobStore, get_blob_store
from ragdesk.captioning import caption_image
from ragdesk.chunking import ImageCaption, PlannedChunk, build_chunks
from ragdesk.db import SessionFactory, SessionLocal, session_scope
from ragdesk.embedding import embed_texts
from ragdesk.errors import NotFoundError, PersistenceError, RagdeskError
from ragdesk.extractors import ExtractedImage, extract_content
from ragdesk.models import Chunk, Document
from ragdesk.obs import configure_logging, span
from ragdesk.progress import (
    STEP_CAPTION,
    STEP_CHUNK,
    STEP_EMBED,
    STEP_EXTRACT,
    STEP_SAVE,
    ProgressTracker,
)
from ragdesk.providers import get_rag_settings, resolve_embedding_config

logger = logging.getLogger(__name__)

Captioner = Callable[[bytes, str], str]


@dataclass
class IngestionResult:
    document_id: str
    success: bool
    chunks: int = 0
    images: int = 0
    processing_time: int = 0
    verified: bool = False
    error: Optional[str] = None


@dataclass
class _DocumentInfo:
    id: str
    user_id: str
    collection_id: str
    file_name: str
    file_path: str
    file_size: Optional[int]
    mime_type: Optional[str]


def _load_document(session_factory: SessionFactory, document_id: str) -> _DocumentInfo:
    with session_scope(session_factory) as db:
        doc = db.get(Document, document_id)
        if doc is None:
            raise NotFoundError("Document not found")
        return _DocumentInfo(
            id=doc.id,
            user_id=doc.user_id,
            collection_id=doc.collection_id,
            file_name=doc.file_name,
            file_path=doc.file_path,
            file_size=doc.file_size,
            mime_type=doc.mime_type,
        )


def image_path_for(user_id: str, document_id: str, index: int, content_type: str = "image/png") -> str:
    """Deterministic per-document blob path for an extracted image.

    The extension follows the image content type.
    """
    ext = mimetypes.guess_extension(content_type) or ".bin"
    return f"{user_id}/{document_id}/image_{index}{ext}"


def _caption_one(
    doc: _DocumentInfo, image: ExtractedImage, blobs: BlobStore, captioner: Captioner
) -> Optional[ImageCaption]:
    path = image_path_for(doc.user_id, doc.id, image.index, image.content_type)
    try:
        blobs.upload(IMAGES_BUCKET, path, image.data, content_type=image.content_type, upsert=True)
    except RagdeskError as e:
        logger.warning("Failed to upload image %d: %s", image.index, e)
        return None
    try:
        caption = captioner(image.data, image.content_type)
    except RagdeskError as e:
        logger.warning("Failed to caption image %d: %s", image.index, e)
        return None
    logger.info("Generated caption for image %d: %s", image.index, caption[:100])
    return ImageCaption(index=image.index, path=path, caption=caption)


def _caption_images(
    doc: _DocumentInfo,
    images: List[ExtractedImage],
    blobs: BlobStore,
    captioner: Captioner,
    tracker: ProgressTracker,
) -> List[ImageCaption]:
    """Upload and caption each image; failures skip that image only."""
    captions: List[ImageCaption] = []
    tracker.update(STEP_CAPTION, 35, 55)
    n = len(images)
    for i, image in enumerate(images):
        caption = _caption_one(doc, image, blobs, captioner)
        if caption is not None:
            captions.append(caption)
        tracker.update(STEP_CAPTION, 35 + int((i + 1) / n * 10), 50 - (i + 1) * 2)
    logger.info("Captioned %d of %d images", len(captions), n)
    return captions


def _chunk_rows(doc: _DocumentInfo, planned: List[PlannedChunk], embeddings, text_length: int) -> List[Chunk]:
    total = len(planned)
    rows: List[Chunk] = []
    for chunk, emb in zip(planned, embeddings):
        meta = {
            "file_name": doc.file_name,
            "chunk_number": chunk.chunk_index + 1,
            "total_chunks": total,
            "file_size": doc.file_size,
            "extracted_text_length": text_length,
            "has_image": chunk.has_image,
        }
        if chunk.image_index is not None:
            meta["image_index"] = chunk.image_index
        rows.append(
            Chunk(
                document_id=doc.id,
                collection_id=doc.collection_id,
                user_id=doc.user_id,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                embedding=emb,
                has_image=chunk.has_image,
                image_path=chunk.image_path,
                image_caption=chunk.image_caption,
                meta=meta,
            )
        )
    return rows


def _replace_chunks(session_factory: SessionFactory, document_id: str, rows: List[Chunk]) -> int:
    """Swap the document's chunks for `rows` in one transaction and re-count them.

    Returns:
        int: Number of chunks stored for the document after the write.
    """
    try:
        with session_scope(session_factory) as db:
            db.execute(delete(Chunk).where(Chunk.document_id == document_id))
            db.add_all(rows)
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to save chunks to database: {e}") from e

    with session_scope(session_factory) as db:
        return db.query(func.count(Chunk.id)).filter(Chunk.document_id == document_id).scalar() or 0


def process_document(
    document_id: str,
    session_factory: SessionFactory = SessionLocal,
    blobs: Optional[BlobStore] = None,
    captioner: Captioner = caption_image,
) -> IngestionResult:
    """Ingest one document end to end.

    Args:
        document_id: Document row id.
        session_factory: Factory for short-lived sessions (one per write).
        blobs: Blob store; defaults to the configured store.
        captioner: Image captioning callable.

    Returns:
        IngestionResult: Outcome; errors are recorded on the document, not raised.
    """
    blobs = blobs or get_blob_store()
    tracker = ProgressTracker(session_factory, document_id)
    t0 = time.time()

    try:
        tracker.start(eta=90)
        doc = _load_document(session_factory, document_id)
        logger.info("Processing document %s (%s, %s)", doc.file_name, doc.id, doc.mime_type)

        with session_scope(session_factory) as db:
            rag = get_rag_settings(db, doc.user_id)
            emb_config = resolve_embedding_config(db, doc.user_id, rag)
        logger.info("Using RAG settings: chunk_size=%d overlap=%d model=%s", rag.chunk_size, rag.chunk_overlap, emb_config.model)

        with span("ingest.download", {"document_id": doc.id}):
            data = blobs.download(DOCUMENTS_BUCKET, doc.file_path)
        if doc.file_size is not None and len(data) != doc.file_size:
            logger.warning("File size mismatch: expected %s, got %d", doc.file_size, len(data))

        tracker.update(STEP_EXTRACT, 15, 75)
        with span("ingest.extract", {"file_name": doc.file_name}):
            content = extract_content(data, doc.file_name, doc.mime_type)
        tracker.update(STEP_EXTRACT, 30, 60)

        captions: List[ImageCaption] = []
        if content.images:
            with span("ingest.caption", {"images": len(content.images)}):
                captions = _caption_images(doc, content.images, blobs, captioner, tracker)

        tracker.update(STEP_CHUNK, 50, 40)
        planned = build_chunks(content.text, rag.chunk_size, rag.chunk_overlap, captions)
        if not planned:
            raise RagdeskError("No chunks created - text extraction may have failed")
        logger.info(
            "Created %d chunks (%d text + %d image)", len(planned), len(planned) - len(captions), len(captions)
        )

        tracker.update(STEP_EMBED, 65, 30)
        with span("ingest.embed", {"chunks": len(planned), "model": emb_config.model}):
            embeddings = embed_texts([c.content for c in planned], emb_config)

        tracker.update(STEP_SAVE, 85, 15)
        rows = _chunk_rows(doc, planned, embeddings, len(content.text))
        with span("ingest.save", {"chunks": len(rows)}):
            stored = _replace_chunks(session_factory, doc.id, rows)

        verified = stored == len(planned)
        if not verified:
            logger.warning("Verification failed: expected %d chunks, found %d", len(planned), stored)

        processing_time = int(round(time.time() - t0))
        tracker.complete(
            processing_time=processing_time,
            verified=verified,
            images_processed=len(content.images),
            images_captioned=len(captions),
            total_chunks=len(planned),
        )
        logger.info(
            "Document processing completed in %ds. Indexed %d chunks with %d images.",
            processing_time,
            len(planned),
            len(captions),
        )
        return IngestionResult(
            document_id=document_id,
            success=True,
            chunks=len(planned),
            images=len(captions),
            processing_time=processing_time,
            verified=verified,
        )
    except Exception as e:
        logger.exception("Document processing error for %s", document_id)
        message = str(e) or e.__class__.__name__
        try:
            tracker.fail(message)
        except SQLAlchemyError:
            logger.exception("Could not record failure for document %s", document_id)
        return IngestionResult(document_id=document_id, success=False, error=message)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Ingest one uploaded document.")
    parser.add_argument("--document-id", required=True)
    args = parser.parse_args(argv)

    configure_logging()
    result = process_document(args.document_id)
    if result.success:
        print(f"[DONE] {result.document_id}: {result.chunks} chunks, {result.images} images in {result.processing_time}s")
        return 0
    print(f"[ERROR] {result.document_id}: {result.error}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
