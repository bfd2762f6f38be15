"""Tools the chat model may call, and their execution.

Four tools are defined; search_documents is offered only when the chat has
linked collections and web_search only when the web-search toggle is on.
Every tool returns a string that is fed back to the model. Failures become
"Tool error: ..." results instead of aborting the chat.
"""
import ast
import logging
import math
import operator
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ragdesk.config import settings
from ragdesk.embedding import EmbeddingConfig, embed_query
from ragdesk.errors import EmbeddingError, ToolExecutionError
from ragdesk.providers import RagConfig
from ragdesk.retrieval import linked_collection_ids, match_chunks
from ragdesk.websearch import web_search

logger = logging.getLogger(__name__)

SEARCH_DOCUMENTS = "search_documents"
WEB_SEARCH = "web_search"
CALCULATOR = "calculator"
GET_CURRENT_DATE = "get_current_date"

INVALID_CALCULATION = "Invalid calculation result."


def _function_tool(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    params: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        params["required"] = required
    return {"type": "function", "function": {"name": name, "description": description, "parameters": params}}


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    _function_tool(
        SEARCH_DOCUMENTS,
        "Search through the user's RAG document collections for relevant information. "
        "Use this when the user asks questions about their documents or uploaded content.",
        {"query": {"type": "string", "description": "The search query to find relevant documents"}},
        ["query"],
    ),
    _function_tool(
        WEB_SEARCH,
        "Search the internet for current information. Only use when web search is enabled "
        "and user needs up-to-date information not in training data.",
        {"query": {"type": "string", "description": "The search query"}},
        ["query"],
    ),
    _function_tool(
        CALCULATOR,
        "Perform mathematical calculations. Supports basic arithmetic operations.",
        {
            "expression": {
                "type": "string",
                "description": "The mathematical expression to evaluate (e.g., '2 + 2', '10 * 5')",
            }
        },
        ["expression"],
    ),
    _function_tool(GET_CURRENT_DATE, "Get the current date and time information.", {}, []),
]


def available_tools(has_collections: bool, web_search_enabled: bool) -> List[Dict[str, Any]]:
    """Tool definitions offered to the model for this request."""
    out = []
    for tool in TOOL_DEFINITIONS:
        name = tool["function"]["name"]
        if name == SEARCH_DOCUMENTS and not has_collections:
            continue
        if name == WEB_SEARCH and not web_search_enabled:
            continue
        out.append(tool)
    return out


@dataclass
class ToolContext:
    db: Session
    chat_id: Optional[str]
    user_id: Optional[str]
    web_search_enabled: bool
    embedding_config: EmbeddingConfig
    rag_settings: RagConfig


# ----- calculator -----

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Pow: operator.pow,
}
_UNARY_OPS = {ast.UAdd: operator.pos, ast.USub: operator.neg}
_MAX_EXPONENT = 1000
# results beyond float range are invalid anyway; refuse to build larger ints
_MAX_RESULT_BITS = 1024


def _check_power(base: float, exponent: float) -> None:
    if abs(exponent) > _MAX_EXPONENT:
        raise ValueError("exponent too large")
    if abs(base) > 1 and exponent > 0 and exponent * math.log2(abs(base)) > _MAX_RESULT_BITS:
        raise ValueError("power result too large")


def _eval_node(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        left, right = _eval_node(node.left), _eval_node(node.right)
        if isinstance(node.op, ast.Pow):
            _check_power(left, right)
        result = _BIN_OPS[type(node.op)](left, right)
        if isinstance(result, int) and result.bit_length() > _MAX_RESULT_BITS:
            raise ValueError("result too large")
        return result
    raise ValueError(f"unsupported expression element: {type(node).__name__}")


def _format_number(value: float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def calculate(expression: str) -> str:
    """Evaluate an arithmetic expression.

    Everything except digits, + - * / ( ) . and whitespace is stripped first.

    Returns:
        str: "<expression> = <result>" or "Invalid calculation result.".
    """
    cleaned = re.sub(r"[^0-9+\-*/().\s]", "", expression or "")
    if not cleaned.strip():
        return INVALID_CALCULATION
    try:
        result = _eval_node(ast.parse(cleaned.strip(), mode="eval"))
        if isinstance(result, complex) or not math.isfinite(result):
            return INVALID_CALCULATION
    except (SyntaxError, ValueError, ZeroDivisionError, OverflowError):
        return INVALID_CALCULATION
    return f"{expression} = {_format_number(result)}"


def current_date(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    hour = now.hour % 12 or 12
    formatted = f"{now:%A, %B} {now.day}, {now.year} at {hour}:{now:%M} {now:%p} {now.tzname() or 'UTC'}"
    return f"Current date and time: {formatted}"


# ----- document search -----

def search_documents(query: str, ctx: ToolContext) -> str:
    if not ctx.chat_id or not ctx.user_id:
        return "Chat not initialized."
    collection_ids = linked_collection_ids(ctx.db, ctx.chat_id)
    if not collection_ids:
        return "No document collections linked to this chat. Please link a collection first."

    try:
        vec = embed_query(query, ctx.embedding_config)
    except EmbeddingError as e:
        logger.warning("search_documents embedding failed: %s", e)
        return "Error generating search embedding."

    matches = match_chunks(
        ctx.db, vec, ctx.rag_settings.match_threshold, ctx.rag_settings.top_k, collection_ids
    )
    if not matches:
        return "No relevant documents found for your query."

    excerpts = "\n\n".join(
        f"[{i}] {m.content[: settings.TOOL_EXCERPT_CHARS]}..."
        for i, m in enumerate(matches[: settings.TOOL_SEARCH_MAX_RESULTS], start=1)
    )
    return f"Found {len(matches)} relevant document chunks:\n\n{excerpts}"


def _require(args: Dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolExecutionError(f"Missing required argument: {key}")
    return value


_HANDLERS: Dict[str, Callable[[Dict[str, Any], ToolContext], str]] = {
    SEARCH_DOCUMENTS: lambda args, ctx: search_documents(_require(args, "query"), ctx),
    WEB_SEARCH: lambda args, ctx: web_search(_require(args, "query"), ctx.web_search_enabled, ctx.db, ctx.user_id),
    CALCULATOR: lambda args, ctx: calculate(_require(args, "expression")),
    GET_CURRENT_DATE: lambda args, ctx: current_date(),
}


def execute_tool(name: str, args: Dict[str, Any], ctx: ToolContext) -> str:
    """Run one tool call and return its result string.

    Args:
        name: Tool name from the model.
        args: Decoded arguments.
        ctx: Request-scoped context.

    Returns:
        str: Tool output, "Unknown tool: <name>" or "Tool error: <message>".
    """
    handler = _HANDLERS.get(name)
    if handler is None:
        return f"Unknown tool: {name}"
    logger.info("Executing tool %s", name)
    try:
        return handler(args, ctx)
    except ToolExecutionError as e:
        return f"Tool error: {e}"
    except Exception as e:
        logger.exception("Tool %s failed", name)
        return f"Tool error: {str(e) or e.__class__.__name__}"
