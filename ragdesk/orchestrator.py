"""Tool-augmented streaming chat.

A ChatOrchestrator serves one chat request in three phases:

1. prepare(): resolve the chat owner, completion target, embedding provider
   and RAG settings; retrieve context chunks from the chat's linked
   collections; build the message list; persist the user message.
2. start(): open the first provider stream. Provider errors raised here
   happen before any byte is sent and become a JSON error response.
3. stream(): yield SSE frames in order: sources (at most once), passthrough
   content deltas, then for each buffered tool call a tool_call / tool_result
   pair, the follow-up completion's deltas, and a final [DONE].

The upstream is consumed on a worker thread that always runs to completion,
so the assistant message is persisted once the upstream stream has finished,
also when the client went away mid-stream.
"""
import logging
import queue
import threading
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ragdesk.blobstore import BlobStore, get_blob_store
from ragdesk.config import settings
from ragdesk.db import SessionFactory, SessionLocal, session_scope
from ragdesk.embedding import EmbeddingConfig, embed_query
from ragdesk.errors import EmbeddingError
from ragdesk.generation import CompletionTarget, iter_events, open_stream, resolve_target
from ragdesk.models import Chat, ChatMessage
from ragdesk.obs import Trace, span
from ragdesk.providers import RagConfig, get_rag_settings, resolve_embedding_config
from ragdesk.retrieval import build_sources, linked_collection_ids, match_chunks
from ragdesk.streaming import DONE_FRAME, ToolCallAccumulator, sse_frame
from ragdesk.tools import ToolContext, available_tools, execute_tool

logger = logging.getLogger(__name__)

_END = object()

NEW_CHAT_TITLE = "New Chat"
TITLE_WORDS = 6
TITLE_MAX_CHARS = 100


def derive_title(message: str) -> str:
    """First six words of the message, with "..." when it was longer."""
    words = " ".join(message.split(" ")[:TITLE_WORDS])
    title = words + "..." if len(words) < len(message) else words
    return title[:TITLE_MAX_CHARS]


def build_system_prompt(
    display_name: str,
    has_collections: bool,
    web_search_enabled: bool,
    context_chunks: List[str],
) -> str:
    """System prompt; the tool list mirrors available_tools()."""
    name = settings.ASSISTANT_NAME
    tool_lines = []
    if has_collections:
        tool_lines.append(
            "- search_documents: Search the user's uploaded documents "
            "(only use when user explicitly asks about their documents)"
        )
    if web_search_enabled:
        tool_lines.append("- web_search: Search the internet for current information")
    tool_lines.append("- calculator: Perform mathematical calculations")
    tool_lines.append("- get_current_date: Get current date and time")

    prompt = f"""You are {name}, an AI assistant powered by {display_name}.

**Your Identity:**
When asked "what are you" or "who are you", respond that you are {name}, an AI assistant powered by {display_name}.

**Available Tools:**
{chr(10).join(tool_lines)}

**How to Handle Document Information:**
When answering questions about documents:
- NEVER recite or quote large sections of documents unless explicitly asked to do so
- Provide concise, relevant summaries that directly answer the user's question
- Extract only the key information needed to answer the question
- If the user wants the full text, they will specifically ask for it

**How to Handle Web Search Results:**
When you receive web search results, synthesize the information into a clear, comprehensive response. Cite sources naturally in your writing (e.g., "According to [Source Name]...") and include a "Sources" section at the end with clickable links formatted as: **[Title](URL)**

**General Guidelines:**
- Answer questions directly using your knowledge unless the user specifically asks about their documents or needs current information
- Only use tools when explicitly needed for the request
- Format responses with proper markdown for readability
- Keep responses concise and to the point unless asked for detailed explanations"""

    if context_chunks:
        joined = "\n\n---\n\n".join(context_chunks)
        prompt += (
            f"\n\n**Document Context:**\n{joined}\n\n"
            "Use this context to answer questions, but summarize and synthesize - don't recite it verbatim."
        )
    return prompt


class ChatOrchestrator:
    def __init__(
        self,
        message: str,
        history: Optional[List[Dict[str, Any]]] = None,
        chat_id: Optional[str] = None,
        web_search_enabled: bool = False,
        user_id: Optional[str] = None,
        session_factory: SessionFactory = SessionLocal,
        blobs: Optional[BlobStore] = None,
    ):
        self.message = message
        self.history = history or []
        self.chat_id = chat_id
        self.web_search_enabled = web_search_enabled
        self.user_id = user_id
        self.session_factory = session_factory
        self.blobs = blobs or get_blob_store()

        self.target: Optional[CompletionTarget] = None
        self.embedding_config: Optional[EmbeddingConfig] = None
        self.rag: Optional[RagConfig] = None
        self.collection_ids: List[str] = []
        self.context_chunks: List[str] = []
        self.sources: List[Dict[str, Any]] = []
        self.messages: List[Dict[str, Any]] = []
        self.tools: List[Dict[str, Any]] = []
        self.is_new_chat = False

        self._response = None
        self._parts: List[str] = []
        self._persisted = False
        self._worker: Optional[threading.Thread] = None
        self.trace = Trace("chat", input={"chat_id": chat_id, "message": message})

    @property
    def assembled_message(self) -> str:
        return "".join(self._parts)

    # ----- phase 1 -----

    def prepare(self) -> "ChatOrchestrator":
        with session_scope(self.session_factory) as db:
            chat = self._resolve_chat(db)
            self.target = resolve_target(db, self.user_id)
            self.rag = get_rag_settings(db, self.user_id)
            self.embedding_config = resolve_embedding_config(db, self.user_id, self.rag)
            self.collection_ids = linked_collection_ids(db, self.chat_id) if chat is not None else []

            if self.collection_ids:
                self._retrieve(db)

            if chat is not None:
                self.is_new_chat = chat.title == NEW_CHAT_TITLE and not (
                    db.query(ChatMessage.id).filter(ChatMessage.chat_id == chat.id).first()
                )
                db.add(ChatMessage(chat_id=chat.id, role="user", content=self.message))

        system = build_system_prompt(
            self.target.display_name, bool(self.collection_ids), self.web_search_enabled, self.context_chunks
        )
        self.messages = [{"role": "system", "content": system}]
        self.messages.extend({"role": m["role"], "content": m["content"]} for m in self.history)
        self.messages.append({"role": "user", "content": self.message})
        self.tools = available_tools(bool(self.collection_ids), self.web_search_enabled)
        logger.info(
            "Chat %s prepared: model=%s web_search=%s collections=%d context=%d",
            self.chat_id,
            self.target.display_name,
            self.web_search_enabled,
            len(self.collection_ids),
            len(self.context_chunks),
        )
        return self

    def _resolve_chat(self, db) -> Optional[Chat]:
        """Look up the chat (creating one when only a user id is given) and its owner."""
        chat = None
        if self.chat_id:
            chat = db.get(Chat, self.chat_id)
            if chat is None:
                logger.warning("Chat %s not found; answering without history or retrieval", self.chat_id)
                self.chat_id = None
        elif self.user_id:
            chat = Chat(user_id=self.user_id, title=NEW_CHAT_TITLE)
            db.add(chat)
            db.flush()
            self.chat_id = chat.id
        if chat is not None:
            self.user_id = chat.user_id
        return chat

    def _retrieve(self, db) -> None:
        try:
            with span("chat.retrieve", {"collections": len(self.collection_ids)}):
                vec = embed_query(self.message, self.embedding_config)
                matches = match_chunks(
                    db, vec, self.rag.match_threshold, self.rag.top_k, self.collection_ids
                )
        except EmbeddingError as e:
            logger.error("Embedding generation failed: %s", e)
            return
        logger.info("Search completed. Found chunks: %d", len(matches))
        self.context_chunks = [m.content for m in matches]
        self.sources = build_sources(db, self.blobs, matches)
        self.trace.event("retrieval", {"chunks": len(matches), "sources": len(self.sources)})

    # ----- phase 2 -----

    def start(self) -> "ChatOrchestrator":
        """Open the first completion stream; ProviderError propagates to the caller."""
        with span("chat.completion", {"model": self.target.model, "family": self.target.family}):
            self._response = open_stream(self.target, self.messages, self.tools)
        return self

    # ----- phase 3 -----

    def stream(self) -> Iterator[str]:
        """Yield SSE frames produced by a worker thread.

        The worker drains the upstream and persists the answer even after the
        reader stops iterating, which is what the server does on disconnect.
        """
        frames: "queue.Queue[Any]" = queue.Queue()
        self._worker = threading.Thread(
            target=self._pump, args=(frames,), name=f"chat-stream-{self.chat_id or 'anon'}"
        )
        self._worker.start()
        while True:
            item = frames.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the stream worker has finished; True when it has."""
        if self._worker is None:
            return True
        self._worker.join(timeout)
        return not self._worker.is_alive()

    def _pump(self, frames: "queue.Queue[Any]") -> None:
        try:
            for frame in self._events():
                frames.put(frame)
        except Exception as e:
            logger.exception("Chat stream for %s failed", self.chat_id)
            frames.put(e)
        finally:
            frames.put(_END)

    def _events(self) -> Iterator[str]:
        try:
            if self.sources:
                yield sse_frame({"type": "sources", "sources": self.sources})

            calls = ToolCallAccumulator()
            for event in iter_events(self.target, self._response):
                if calls.add_delta(event.delta):
                    continue
                self._collect(event.delta)
                yield event.frame

            if calls:
                yield from self._run_tools(calls)
                follow_up = open_stream(self.target, self.messages)
                for event in iter_events(self.target, follow_up):
                    if event.delta.get("tool_calls"):
                        continue
                    self._collect(event.delta)
                    yield event.frame

            yield DONE_FRAME
        finally:
            self._persist()

    def _collect(self, delta: Dict[str, Any]) -> None:
        content = delta.get("content")
        if content:
            self._parts.append(content)

    def _run_tools(self, calls: ToolCallAccumulator) -> Iterator[str]:
        logger.info("Executing tool calls: %d", len(calls))
        with session_scope(self.session_factory) as db:
            ctx = ToolContext(
                db=db,
                chat_id=self.chat_id,
                user_id=self.user_id,
                web_search_enabled=self.web_search_enabled,
                embedding_config=self.embedding_config,
                rag_settings=self.rag,
            )
            for call in calls.calls():
                try:
                    args = call.parsed_arguments()
                    result = None
                except ValueError as e:
                    args = {}
                    result = f"Tool error: Invalid tool arguments: {e}"

                yield sse_frame({"type": "tool_call", "tool": call.name, "args": args})
                self._parts.append(f"\n\n🔧 Using {call.name}...\n\n")

                if result is None:
                    with span("chat.tool", {"tool": call.name}):
                        result = execute_tool(call.name, args, ctx)
                self.trace.event("tool", {"tool": call.name, "args": args, "result": result[:500]})

                yield sse_frame({"type": "tool_result", "tool": call.name, "result": result})
                self._parts.append(f"**{call.name} result:**\n{result}\n\n")

                self.messages.append({"role": "assistant", "content": None, "tool_calls": [call.as_message_call()]})
                self.messages.append({"role": "tool", "tool_call_id": call.id, "content": result})

    def _persist(self) -> None:
        """Save the assembled assistant message once; title new chats."""
        if self._persisted:
            return
        self._persisted = True
        text = self.assembled_message
        self.trace.generation(
            "answer", prompt=self.messages, output=text, model=self.target.model if self.target else ""
        )
        self.trace.end(output={"chars": len(text)})
        if not self.chat_id or not text:
            return
        try:
            with session_scope(self.session_factory) as db:
                db.add(ChatMessage(chat_id=self.chat_id, role="assistant", content=text))
                if self.is_new_chat:
                    chat = db.get(Chat, self.chat_id)
                    if chat is not None:
                        chat.title = derive_title(self.message)
        except SQLAlchemyError:
            logger.exception("Failed to save assistant message for chat %s", self.chat_id)
