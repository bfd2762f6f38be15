"""Local-filesystem blob store with time-limited signed download URLs.

Blobs live under <root>/<bucket>/<path>. Signed URLs point back at the API's
/blobs route and carry an expiry timestamp and an HMAC-SHA256 signature over
"bucket/path:expires".
"""
import hashlib
import hmac
import logging
import os
import time
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import quote, urlencode

from ragdesk.config import settings
from ragdesk.errors import BlobStoreError, DownloadError

logger = logging.getLogger(__name__)

DOCUMENTS_BUCKET = "documents"
IMAGES_BUCKET = "document-images"


class BlobStore:
    def __init__(self, root: str, signing_key: str, public_base_url: str):
        self.root = Path(root)
        self.signing_key = signing_key.encode("utf-8")
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve(self, bucket: str, path: str) -> Path:
        """Map bucket/path to a file under root, refusing traversal outside the bucket."""
        if not bucket or "/" in bucket or bucket in (".", ".."):
            raise BlobStoreError(f"Invalid bucket: {bucket!r}")
        base = (self.root / bucket).resolve()
        target = (base / path.lstrip("/")).resolve()
        if base != target and base not in target.parents:
            raise BlobStoreError(f"Invalid blob path: {path!r}")
        return target

    def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: Optional[str] = None,
        upsert: bool = False,
    ) -> str:
        """Write a blob.

        Args:
            bucket: Bucket name.
            path: Object path within the bucket.
            data: Blob bytes.
            content_type: Informational; stored blobs are served by extension.
            upsert: Overwrite an existing object instead of failing.

        Returns:
            str: The stored path.

        Raises:
            BlobStoreError: Invalid path, or the object exists and upsert is False.
        """
        target = self._resolve(bucket, path)
        if target.exists() and not upsert:
            raise BlobStoreError(f"Blob already exists: {bucket}/{path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, target)
        logger.debug("Stored blob %s/%s (%d bytes, %s)", bucket, path, len(data), content_type)
        return path

    def download(self, bucket: str, path: str) -> bytes:
        target = self._resolve(bucket, path)
        try:
            return target.read_bytes()
        except OSError as e:
            raise DownloadError(f"Failed to download file: {bucket}/{path}") from e

    def remove(self, bucket: str, paths: Iterable[str]) -> int:
        """Delete blobs; missing ones are ignored. Returns the number removed."""
        removed = 0
        for p in paths:
            target = self._resolve(bucket, p)
            if target.exists():
                target.unlink()
                removed += 1
        return removed

    def _signature(self, bucket: str, path: str, expires: int) -> str:
        msg = f"{bucket}/{path}:{expires}".encode("utf-8")
        return hmac.new(self.signing_key, msg, hashlib.sha256).hexdigest()

    def create_signed_url(self, bucket: str, path: str, expires_in: Optional[int] = None) -> str:
        """Build a download URL valid for expires_in seconds."""
        self._resolve(bucket, path)
        expires = int(time.time()) + int(expires_in or settings.SIGNED_URL_TTL_SECONDS)
        query = urlencode({"expires": expires, "signature": self._signature(bucket, path, expires)})
        return f"{self.public_base_url}/blobs/{quote(bucket)}/{quote(path)}?{query}"

    def verify_signature(self, bucket: str, path: str, expires: int, signature: str) -> bool:
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._signature(bucket, path, expires), signature or "")


_store: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    """Return the process-wide blob store configured from settings."""
    global _store
    if _store is None:
        _store = BlobStore(settings.BLOB_ROOT, settings.BLOB_SIGNING_KEY, settings.PUBLIC_BASE_URL)
    return _store
