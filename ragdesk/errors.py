"""Exception taxonomy shared by the ingestion pipeline and the chat orchestrator.

Ingestion errors terminate a run and are stored on the document for the user
to see. Captioning and tool errors are isolated by their callers. Provider
errors raised before streaming starts are turned into a JSON error response.
"""
from typing import Optional


class RagdeskError(Exception):
    """Base class for all application errors."""


class NotFoundError(RagdeskError):
    """A requested row (document, chat, provider) does not exist."""


class ExtractionError(RagdeskError):
    """Unsupported, corrupt or empty document."""


class UnsupportedFormatError(ExtractionError):
    pass


class EmbeddingError(RagdeskError):
    """The embedding provider call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ConsistencyError(EmbeddingError):
    """The provider returned a different number of vectors than inputs."""


class CaptioningError(RagdeskError):
    pass


class DownloadError(RagdeskError):
    """A blob could not be fetched from the blob store."""


class BlobStoreError(RagdeskError):
    pass


class PersistenceError(RagdeskError):
    """Bulk chunk write failed."""


class ProviderError(RagdeskError):
    """Chat completion provider returned a non-success status.

    Attributes:
        status_code: HTTP status returned to the client (429, 402 or 500).
        public_message: User-facing message for the JSON error payload.
    """

    status_code = 500
    public_message = "AI gateway error"

    def __init__(self, message: Optional[str] = None, upstream_status: Optional[int] = None, body: str = ""):
        super().__init__(message or self.public_message)
        self.upstream_status = upstream_status
        self.body = body


class RateLimitError(ProviderError):
    status_code = 429
    public_message = "Rate limits exceeded, please try again later."


class PaymentRequiredError(ProviderError):
    status_code = 402
    public_message = "Payment required, please add funds to your AI workspace."


class ToolExecutionError(RagdeskError):
    """A tool failed; converted into a result string for the model."""
