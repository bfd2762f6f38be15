"""Pydantic request/response schemas for the API.

Defines the public contracts used by the FastAPI endpoints. Field names on
the wire are camelCase (chatId, documentId, webSearchEnabled); Python
attributes are snake_case.
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class HistoryMessage(BaseModel):
    """A prior conversation turn sent by the client."""
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(_CamelModel):
    """Request body for the streaming chat endpoint.

    Attributes:
        chat_id: Existing chat; enables history persistence and retrieval.
        user_id: Owner for a new chat when chat_id is omitted.
        message: The new user message.
        messages: Prior turns, oldest first.
        web_search_enabled: Whether the web_search tool may be offered.
    """
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    message: str = Field(..., min_length=1, description="User message")
    messages: List[HistoryMessage] = Field(default_factory=list)
    web_search_enabled: bool = Field(default=False, alias="webSearchEnabled")


class DocumentRequest(_CamelModel):
    document_id: str = Field(..., alias="documentId")


class SetDefaultRequest(_CamelModel):
    user_id: str = Field(..., alias="userId")


class IngestResponse(BaseModel):
    """Outcome of a synchronous ingestion run.

    Attributes:
        success: Always True (failures are returned as {"error": ...} with status 500).
        chunks: Number of chunks stored.
        images: Number of captioned images.
        processingTime: Seconds spent.
        verified: Whether the stored chunk count matched the planned count.
    """
    success: bool
    chunks: int
    images: int
    processingTime: int
    verified: bool


class DocumentOut(BaseModel):
    id: str
    collectionId: str
    fileName: str
    filePath: str
    fileSize: Optional[int] = None
    mimeType: Optional[str] = None
    status: str


class ErrorResponse(BaseModel):
    error: str
