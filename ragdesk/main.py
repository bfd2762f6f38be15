"""FastAPI application entrypoint and routes.

Exposes document upload/ingestion/introspection, document lifecycle actions,
default-provider selection, the streaming chat endpoint and signed blob
downloads. Configures CORS and logging, and initializes the database schema
at startup.
"""
import logging
import mimetypes
from typing import List

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ragdesk import documents
from ragdesk.blobstore import BlobStore, get_blob_store
from ragdesk.db import SessionFactory, SessionLocal, get_db, init_db
from ragdesk.errors import BlobStoreError, DownloadError, NotFoundError, ProviderError
from ragdesk.ingestion.pipeline import process_document
from ragdesk.obs import configure_logging
from ragdesk.orchestrator import ChatOrchestrator
from ragdesk.providers import set_default_provider
from ragdesk.schemas import ChatRequest, DocumentOut, DocumentRequest, ErrorResponse, IngestResponse, SetDefaultRequest

logger = logging.getLogger(__name__)

app = FastAPI(title="ragdesk", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_credentials=True,
    allow_headers=["*"],
)


def get_session_factory() -> SessionFactory:
    """Factory for flows that outlive the request (background ingestion, chat streaming)."""
    return SessionLocal


def get_blobs() -> BlobStore:
    return get_blob_store()


@app.on_event("startup")
def on_startup() -> None:
    """Configure logging and ensure DB schema and indexes exist."""
    configure_logging()
    init_db()


@app.exception_handler(NotFoundError)
def handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(ProviderError)
def handle_provider_error(request: Request, exc: ProviderError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})


@app.get("/health")
def health():
    """Liveness probe endpoint.

    Returns:
        dict: {"status": "ok"} when the service is running.
    """
    return {"status": "ok"}


def _document_out(doc) -> DocumentOut:
    return DocumentOut(
        id=doc.id,
        collectionId=doc.collection_id,
        fileName=doc.file_name,
        filePath=doc.file_path,
        fileSize=doc.file_size,
        mimeType=doc.mime_type,
        status=doc.status,
    )


@app.post("/documents", response_model=DocumentOut, status_code=201)
def upload_document(
    background: BackgroundTasks,
    user_id: str = Form(...),
    collection_id: str = Form(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    factory: SessionFactory = Depends(get_session_factory),
    blobs: BlobStore = Depends(get_blobs),
) -> DocumentOut:
    """Store an upload and schedule its ingestion."""
    data = file.file.read()
    doc = documents.create_document(
        db, blobs, user_id, collection_id, file.filename or "upload", data, file.content_type
    )
    background.add_task(process_document, doc.id, factory, blobs)
    return _document_out(doc)


@app.post("/ingest", response_model=IngestResponse, responses={500: {"model": ErrorResponse}})
def ingest(
    req: DocumentRequest,
    factory: SessionFactory = Depends(get_session_factory),
    blobs: BlobStore = Depends(get_blobs),
):
    """Run ingestion for one document synchronously.

    Returns:
        IngestResponse on success, or {"error": message} with status 500.
    """
    result = process_document(req.document_id, factory, blobs)
    if not result.success:
        return JSONResponse(status_code=500, content={"error": result.error})
    return IngestResponse(
        success=True,
        chunks=result.chunks,
        images=result.images,
        processingTime=result.processing_time,
        verified=result.verified,
    )


@app.post("/document-status")
def document_status(req: DocumentRequest, db: Session = Depends(get_db)):
    return documents.get_document_status(db, req.document_id)


@app.post("/document-chunks")
def document_chunks(req: DocumentRequest, db: Session = Depends(get_db)):
    return documents.list_document_chunks(db, req.document_id)


@app.get("/collections/{collection_id}/documents", response_model=List[DocumentOut])
def collection_documents(collection_id: str, db: Session = Depends(get_db)):
    return [_document_out(d) for d in documents.list_documents(db, collection_id)]


@app.get("/users/{user_id}/deleted-documents", response_model=List[DocumentOut])
def deleted_documents(user_id: str, db: Session = Depends(get_db)):
    return [_document_out(d) for d in documents.list_deleted_documents(db, user_id)]


@app.post("/documents/{document_id}/delete", response_model=DocumentOut)
def soft_delete(document_id: str, db: Session = Depends(get_db)):
    return _document_out(documents.soft_delete_document(db, document_id))


@app.post("/documents/{document_id}/restore", response_model=DocumentOut)
def restore(
    document_id: str,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    factory: SessionFactory = Depends(get_session_factory),
    blobs: BlobStore = Depends(get_blobs),
):
    """Restore a soft-deleted document and reprocess it in the background."""
    doc = documents.restore_document(db, document_id)
    background.add_task(process_document, doc.id, factory, blobs)
    return _document_out(doc)


@app.delete("/documents/{document_id}", status_code=204)
def permanent_delete(document_id: str, db: Session = Depends(get_db), blobs: BlobStore = Depends(get_blobs)):
    documents.permanently_delete_document(db, blobs, document_id)
    return Response(status_code=204)


@app.post("/providers/{kind}/{provider_id}/default")
def make_default(kind: str, provider_id: str, req: SetDefaultRequest, db: Session = Depends(get_db)):
    """Make a provider the user's default for its category."""
    try:
        provider = set_default_provider(db, kind, req.user_id, provider_id)
        db.commit()
    except IntegrityError:
        db.rollback()
        return JSONResponse(status_code=409, content={"error": "Concurrent default update, please retry."})
    return {"id": provider.id, "kind": kind, "isDefault": provider.is_default}


CHAT_RESPONSES = {
    200: {"content": {"text/event-stream": {}}},
    402: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


@app.post("/chat", responses=CHAT_RESPONSES)
def chat(
    req: ChatRequest,
    factory: SessionFactory = Depends(get_session_factory),
    blobs: BlobStore = Depends(get_blobs),
):
    """Stream a tool-augmented chat answer as server-sent events.

    Provider errors before streaming starts are returned as {"error": ...}
    with status 429, 402 or 500 (see handle_provider_error).
    """
    orchestrator = ChatOrchestrator(
        message=req.message,
        history=[m.model_dump() for m in req.messages],
        chat_id=req.chat_id,
        web_search_enabled=req.web_search_enabled,
        user_id=req.user_id,
        session_factory=factory,
        blobs=blobs,
    )
    orchestrator.prepare().start()
    return StreamingResponse(
        orchestrator.stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.get("/blobs/{bucket}/{path:path}")
def download_blob(
    bucket: str,
    path: str,
    expires: int = Query(...),
    signature: str = Query(...),
    blobs: BlobStore = Depends(get_blobs),
):
    """Serve a blob for a valid, unexpired signed URL."""
    if not blobs.verify_signature(bucket, path, expires, signature):
        return JSONResponse(status_code=403, content={"error": "Invalid or expired signature"})
    try:
        data = blobs.download(bucket, path)
    except (DownloadError, BlobStoreError):
        return JSONResponse(status_code=404, content={"error": "Blob not found"})
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)
