"""Application package containing the API, configuration, data access, ingestion
and chat pipelines, and supporting utilities.

Submodules overview:
- main: FastAPI application bootstrap and routes.
- config: Application settings and environment variable loading.
- db: Database engine/session management helpers.
- models: ORM models and relationships.
- schemas: Pydantic request/response models for API contracts.
- errors: Exception taxonomy.
- extractors: Format-specific text and image extraction.
- chunking: Word-window chunking and image-caption chunks.
- embedding / captioning: Embedding and vision provider clients.
- blobstore: Local blob storage with signed URLs.
- progress / ingestion: Document ingestion pipeline and its progress snapshots.
- documents: Document lifecycle and introspection.
- providers: Per-user provider and RAG settings resolution.
- retrieval: pgvector similarity search and source building.
- generation / streaming: Streamed chat completions and SSE framing.
- tools / websearch: Tools offered to the chat model.
- orchestrator: Tool-augmented streaming chat.
- cache: Redis cache for query embeddings.
- obs: Logging setup and observability utilities (tracing/spans).
"""
