"""Server-sent event framing and tool-call delta buffering."""
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

DONE_FRAME = "data: [DONE]\n\n"


def sse_frame(payload: Dict[str, Any]) -> str:
    """Serialize one event as an SSE data frame."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


@dataclass
class ToolCall:
    index: int
    id: str
    name: str
    arguments: List[str] = field(default_factory=list)

    @property
    def arguments_json(self) -> str:
        return "".join(self.arguments)

    def parsed_arguments(self) -> Dict[str, Any]:
        """Decode the buffered argument JSON; an empty buffer means no arguments.

        Raises:
            ValueError: The buffer is not a JSON object.
        """
        raw = self.arguments_json.strip()
        if not raw:
            return {}
        value = json.loads(raw)
        if not isinstance(value, dict):
            raise ValueError("Tool arguments must be a JSON object")
        return value

    def as_message_call(self) -> Dict[str, Any]:
        """OpenAI assistant-message representation of this call."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }


class ToolCallAccumulator:
    """Buffers streamed tool-call fragments by index until the stream ends.

    The first fragment for an index fixes the call's id and name; later
    fragments only append to its argument buffer.
    """

    def __init__(self):
        self._calls: Dict[int, ToolCall] = {}

    def add(self, fragment: Dict[str, Any]) -> None:
        index = fragment.get("index") or 0
        fn = fragment.get("function") or {}
        args = fn.get("arguments") or ""
        call = self._calls.get(index)
        if call is None:
            call_id = fragment.get("id") or f"call_{int(time.time() * 1000)}_{index}"
            call = ToolCall(index=index, id=call_id, name=fn.get("name") or "")
            self._calls[index] = call
        if args:
            call.arguments.append(args)

    def add_delta(self, delta: Dict[str, Any]) -> bool:
        """Consume a delta's tool_calls; returns True if it carried any."""
        fragments: Optional[List[Dict[str, Any]]] = delta.get("tool_calls")
        if not fragments:
            return False
        for fragment in fragments:
            self.add(fragment)
        return True

    def __len__(self) -> int:
        return len(self._calls)

    def __bool__(self) -> bool:
        return bool(self._calls)

    def calls(self) -> List[ToolCall]:
        return [self._calls[i] for i in sorted(self._calls)]
