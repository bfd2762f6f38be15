"""Tests for document lifecycle, blob storage and provider settings."""
import time

import pytest

from ragdesk.blobstore import DOCUMENTS_BUCKET, IMAGES_BUCKET
from ragdesk.config import settings
from ragdesk.documents import (
    get_document_status,
    list_deleted_documents,
    list_document_chunks,
    list_documents,
    permanently_delete_document,
    restore_document,
    soft_delete_document,
)
from ragdesk.errors import BlobStoreError, DownloadError, NotFoundError
from ragdesk.models import Chunk, Collection, Document, DocumentStatus, EmbeddingProvider, RAGSettings, WebSearchProvider
from ragdesk.progress import starting_snapshot
from ragdesk.providers import get_rag_settings, resolve_embedding_config, set_default_provider


def add_chunk(db, doc, index, content, **kwargs):
    chunk = Chunk(document_id=doc.id, collection_id=doc.collection_id, user_id=doc.user_id,
                  chunk_index=index, content=content, meta={"chunk_number": index + 1}, **kwargs)
    db.add(chunk)
    db.commit()
    return chunk


class TestBlobStore:
    def test_upload_download_remove(self, blobs):
        blobs.upload(DOCUMENTS_BUCKET, "u/a.txt", b"hello")
        assert blobs.download(DOCUMENTS_BUCKET, "u/a.txt") == b"hello"
        assert blobs.remove(DOCUMENTS_BUCKET, ["u/a.txt", "u/missing.txt"]) == 1
        with pytest.raises(DownloadError):
            blobs.download(DOCUMENTS_BUCKET, "u/a.txt")

    def test_no_silent_overwrite(self, blobs):
        blobs.upload(IMAGES_BUCKET, "x.png", b"1")
        with pytest.raises(BlobStoreError):
            blobs.upload(IMAGES_BUCKET, "x.png", b"2")
        blobs.upload(IMAGES_BUCKET, "x.png", b"2", upsert=True)
        assert blobs.download(IMAGES_BUCKET, "x.png") == b"2"

    @pytest.mark.parametrize("path", ["../escape.txt", "a/../../escape.txt"])
    def test_rejects_traversal(self, blobs, path):
        with pytest.raises(BlobStoreError):
            blobs.upload(DOCUMENTS_BUCKET, path, b"x")

    def test_signed_url_round_trip(self, blobs):
        url = blobs.create_signed_url(DOCUMENTS_BUCKET, "u/report.pdf", expires_in=60)
        assert url.startswith("http://testserver/blobs/documents/u/report.pdf?")
        query = dict(p.split("=") for p in url.split("?", 1)[1].split("&"))
        expires = int(query["expires"])
        assert blobs.verify_signature(DOCUMENTS_BUCKET, "u/report.pdf", expires, query["signature"])
        assert not blobs.verify_signature(DOCUMENTS_BUCKET, "u/other.pdf", expires, query["signature"])
        assert not blobs.verify_signature(DOCUMENTS_BUCKET, "u/report.pdf", expires + 1, query["signature"])

    def test_expired_signature(self, blobs):
        past = int(time.time()) - 10
        sig = blobs._signature(DOCUMENTS_BUCKET, "f", past)
        assert not blobs.verify_signature(DOCUMENTS_BUCKET, "f", past, sig)


class TestCreateDocument:
    def test_stores_blob_and_row(self, db, blobs, make_document):
        doc = make_document(b"hello world", "hello.txt")
        assert doc.status == DocumentStatus.PROCESSING
        assert doc.file_size == 11
        assert doc.file_path.startswith("user-1/")
        assert doc.file_path.endswith("-hello.txt")
        assert doc.processing_progress == starting_snapshot()
        assert blobs.download(DOCUMENTS_BUCKET, doc.file_path) == b"hello world"

    def test_foreign_collection(self, db, blobs, collection):
        from ragdesk.documents import create_document

        with pytest.raises(NotFoundError):
            create_document(db, blobs, "someone-else", collection.id, "a.txt", b"x", "text/plain")


class TestIntrospection:
    def test_status_with_stats(self, db, make_document, collection):
        doc = make_document(b"abc")
        add_chunk(db, doc, 0, "a" * 10)
        add_chunk(db, doc, 1, "b" * 21)

        status = get_document_status(db, doc.id)

        assert status["document"]["fileName"] == "notes.txt"
        assert status["document"]["collectionName"] == "Handbook"
        stats = status["vectorStats"]
        assert stats["totalChunks"] == 2
        assert stats["avgChunkLength"] == 16
        assert stats["embeddingDimensions"] == settings.EMBEDDING_DIM
        assert stats["indexType"] == "HNSW"

    def test_status_without_chunks(self, db, make_document):
        stats = get_document_status(db, make_document(b"abc").id)["vectorStats"]
        assert stats["totalChunks"] == 0
        assert stats["avgChunkLength"] == 0

    def test_unknown_document(self, db):
        with pytest.raises(NotFoundError):
            get_document_status(db, "nope")
        with pytest.raises(NotFoundError):
            list_document_chunks(db, "nope")

    def test_chunk_listing(self, db, make_document):
        doc = make_document(b"abc")
        add_chunk(db, doc, 1, "second chunk text")
        add_chunk(db, doc, 0, "word " * 100)

        chunks = list_document_chunks(db, doc.id)["chunks"]

        assert [c["chunkIndex"] for c in chunks] == [0, 1]
        assert chunks[0]["contentPreview"] == ("word " * 100)[:200] + "..."
        assert chunks[0]["tokenLength"] == 130
        assert chunks[1]["contentPreview"] == "second chunk text"
        assert chunks[1]["tokenLength"] == 4
        assert chunks[1]["metadata"] == {"chunk_number": 2}


class TestLifecycle:
    def test_soft_delete_and_restore(self, db, make_document, collection):
        doc = make_document(b"abc")
        doc.status = DocumentStatus.INDEXED
        db.commit()

        soft_delete_document(db, doc.id)
        assert list_documents(db, collection.id) == []
        assert [d.id for d in list_deleted_documents(db, "user-1")] == [doc.id]
        assert doc.original_collection_id == collection.id

        restored = restore_document(db, doc.id)
        assert restored.deleted_at is None
        assert restored.status == DocumentStatus.PROCESSING
        assert restored.processing_progress == starting_snapshot()
        assert [d.id for d in list_documents(db, collection.id)] == [doc.id]
        assert list_deleted_documents(db, "user-1") == []

    def test_permanent_delete_removes_blobs_and_chunks(self, db, blobs, make_document):
        doc = make_document(b"abc")
        blobs.upload(IMAGES_BUCKET, "user-1/x/image_0.png", b"png")
        add_chunk(db, doc, 0, "text")
        add_chunk(db, doc, 1, "[IMAGE 1] pic", has_image=True, image_path="user-1/x/image_0.png")
        doc_id, path = doc.id, doc.file_path

        permanently_delete_document(db, blobs, doc_id)

        db.expire_all()
        assert db.get(Document, doc_id) is None
        assert db.query(Chunk).filter(Chunk.document_id == doc_id).count() == 0
        with pytest.raises(DownloadError):
            blobs.download(DOCUMENTS_BUCKET, path)
        with pytest.raises(DownloadError):
            blobs.download(IMAGES_BUCKET, "user-1/x/image_0.png")


class TestRagSettings:
    def test_defaults_without_row(self, db):
        rag = get_rag_settings(db, "nobody")
        assert (rag.chunk_size, rag.chunk_overlap, rag.top_k) == (800, 100, 10)
        assert rag.match_threshold == pytest.approx(0.2)

    def test_zero_values_fall_back(self, db):
        db.add(RAGSettings(user_id="u", chunk_size=0, chunk_overlap=0, top_k_results=0, match_threshold=0.5))
        db.commit()
        rag = get_rag_settings(db, "u")
        assert rag.chunk_size == 800
        assert rag.chunk_overlap == 0
        assert rag.top_k == 10
        assert rag.match_threshold == pytest.approx(0.5)


class TestEmbeddingProviderResolution:
    def test_fallback(self, db):
        cfg = resolve_embedding_config(db, "u")
        assert cfg.base_url == settings.OPENAI_BASE_URL
        assert cfg.model == settings.OPENAI_EMBEDDING_MODEL
        assert cfg.display_name == "OpenAI"

    def test_default_provider(self, db):
        db.add(EmbeddingProvider(user_id="u", provider_name="custom", display_name="Local",
                                 base_url="http://embed.local/v1/", api_key="k", model_id="nomic", is_default=True))
        db.commit()
        cfg = resolve_embedding_config(db, "u")
        assert (cfg.base_url, cfg.api_key, cfg.model, cfg.display_name) == ("http://embed.local/v1", "k", "nomic", "Local")

    def test_rag_model_used_when_provider_has_none(self, db):
        db.add(EmbeddingProvider(user_id="u", provider_name="openai", display_name="OpenAI", is_default=True))
        db.add(RAGSettings(user_id="u", embedding_model="text-embedding-3-large"))
        db.commit()
        cfg = resolve_embedding_config(db, "u", get_rag_settings(db, "u"))
        assert cfg.model == "text-embedding-3-large"
        assert cfg.base_url == settings.OPENAI_BASE_URL


class TestSetDefaultProvider:
    def test_swaps_default(self, db):
        a = WebSearchProvider(user_id="u", provider_name="brave", display_name="Brave", is_default=True)
        b = WebSearchProvider(user_id="u", provider_name="serper", display_name="Serper")
        other = WebSearchProvider(user_id="v", provider_name="tavily", display_name="Tavily", is_default=True)
        db.add_all([a, b, other])
        db.commit()

        set_default_provider(db, "web-search", "u", b.id)
        db.commit()

        db.expire_all()
        defaults = db.query(WebSearchProvider).filter(WebSearchProvider.is_default.is_(True)).all()
        assert sorted(p.id for p in defaults) == sorted([b.id, other.id])

    def test_one_default_enforced_by_index(self, db):
        from sqlalchemy.exc import IntegrityError

        db.add(EmbeddingProvider(user_id="u", provider_name="a", display_name="A", is_default=True))
        db.add(EmbeddingProvider(user_id="u", provider_name="b", display_name="B", is_default=True))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_unknown_kind_or_provider(self, db):
        with pytest.raises(NotFoundError):
            set_default_provider(db, "storage", "u", "x")
        with pytest.raises(NotFoundError):
            set_default_provider(db, "chat", "u", "missing")

    def test_cannot_take_another_users_provider(self, db):
        p = EmbeddingProvider(user_id="v", provider_name="a", display_name="A")
        db.add(p)
        db.commit()
        with pytest.raises(NotFoundError):
            set_default_provider(db, "embedding", "u", p.id)


class TestCollections:
    def test_documents_scoped_to_collection(self, db, make_document, collection):
        other = Collection(user_id="user-1", name="Other")
        db.add(other)
        db.commit()
        make_document(b"abc")
        assert len(list_documents(db, collection.id)) == 1
        assert list_documents(db, other.id) == []
