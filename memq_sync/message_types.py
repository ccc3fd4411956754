"""
Types for normalized Claude Code JSONL records.

A Message is built once by the parser and never mutated afterwards; content is
always a tuple of typed blocks, whatever shape the source line used.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


class MessageType(str, Enum):
    SUMMARY = "summary"
    USER = "user"
    ASSISTANT = "assistant"


VALID_MESSAGE_TYPES = frozenset(t.value for t in MessageType)


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: str = "text"


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: Mapping[str, Any] = field(default_factory=dict)
    type: str = "tool_use"


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: Any = None
    is_error: bool = False
    type: str = "tool_result"


@dataclass(frozen=True)
class UnknownBlock:
    """A block whose type tag is not recognized. Kept verbatim."""
    type: str
    data: Mapping[str, Any] = field(default_factory=dict)


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock, UnknownBlock]


_SCALARS = (str, int, float)


def _is_optional(value: Any, types: Tuple[type, ...]) -> bool:
    return value is None or (isinstance(value, types) and not isinstance(value, bool))


def decode_content_block(item: Any) -> ContentBlock:
    """
    Decode one raw content item into its typed block.

    A known tag whose fields have the wrong JSON types is kept verbatim as an
    UnknownBlock rather than coerced.
    """
    if not isinstance(item, dict):
        # Bare strings (and anything else) inside a content list are text
        return TextBlock(text=item if isinstance(item, str) else str(item))

    block_type = item.get("type")
    if block_type == "text" and _is_optional(item.get("text"), (str,)):
        return TextBlock(text=item.get("text") or "")
    if (
        block_type == "tool_use"
        and _is_optional(item.get("id"), _SCALARS)
        and _is_optional(item.get("name"), (str,))
        and _is_optional(item.get("input"), (dict,))
    ):
        return ToolUseBlock(
            id=str(item.get("id") or ""),
            name=item.get("name") or "unknown",
            input=MappingProxyType(dict(item.get("input") or {})),
        )
    if (
        block_type == "tool_result"
        and _is_optional(item.get("tool_use_id"), _SCALARS)
        and isinstance(item.get("is_error", False), (bool, type(None)))
    ):
        return ToolResultBlock(
            tool_use_id=str(item.get("tool_use_id") or ""),
            content=item.get("content"),
            is_error=bool(item.get("is_error")),
        )
    tag = block_type if isinstance(block_type, str) and block_type else "unknown"
    return UnknownBlock(type=tag, data=MappingProxyType(dict(item)))


def is_content_block(value: Any) -> bool:
    return isinstance(value, (TextBlock, ToolUseBlock, ToolResultBlock, UnknownBlock))


def coerce_content(raw_content: Any) -> Tuple[ContentBlock, ...]:
    """
    Coerce a raw ``content`` value to an ordered tuple of blocks.

    A list is decoded item by item; any other non-empty value becomes a
    single text block.
    """
    if raw_content is None:
        return ()
    if isinstance(raw_content, (list, tuple)):
        return tuple(decode_content_block(item) for item in raw_content)
    if isinstance(raw_content, str):
        return (TextBlock(text=raw_content),)
    return (TextBlock(text=str(raw_content)),)


def block_to_dict(block: ContentBlock) -> Dict[str, Any]:
    """Plain JSON-ready form of a block."""
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": dict(block.input)}
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
            "is_error": block.is_error,
        }
    return dict(block.data)


@dataclass(frozen=True)
class Message:
    """A normalized Claude Code message ready for the sink."""
    id: str
    type: MessageType
    timestamp: str
    session_id: str
    project_id: str
    content: Tuple[ContentBlock, ...] = ()
    role: Optional[str] = None
    cost: Optional[float] = None
    usage: Optional[Mapping[str, Any]] = None
    summary: Optional[str] = None
    parent_id: Optional[str] = None
    line_number: int = 0
    id_source: str = "id"  # 'id', 'uuid', 'leafUuid', 'fallback_id', 'generated'
    extra: Mapping[str, Any] = field(default_factory=dict)
    raw: str = ""
    # content value as found on the line, before coercion to blocks
    raw_content: Any = field(default=None, compare=False, repr=False)

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock) and b.text)

    @property
    def tool_uses(self) -> List[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready dict used by the storage layer."""
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "role": self.role,
            "content": [block_to_dict(b) for b in self.content],
            "cost": self.cost,
            "usage": dict(self.usage) if self.usage is not None else None,
            "summary": self.summary,
            "parent_id": self.parent_id,
            "sessionId": self.session_id,
            "projectId": self.project_id,
        }


@dataclass(frozen=True)
class LineError:
    """One rejected line; line_number is 0 for file-level failures."""
    line_number: int
    reason: str


@dataclass
class ParseOutcome:
    """Result of parsing a whole file or text buffer."""
    messages: List[Message] = field(default_factory=list)
    errors: List[LineError] = field(default_factory=list)
    lines_processed: int = 0
    valid_messages: int = 0

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)
