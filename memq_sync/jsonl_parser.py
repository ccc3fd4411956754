"""
JSONL parsing for Claude Code session files.

Turns raw lines into normalized Message records. Parsing a file never raises:
bad lines are recorded in the ParseOutcome and the rest of the file is still
processed, so a log that is being appended to (or is partly damaged) always
yields whatever can be read.
"""

import json
import logging
import random
import string
import time
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Optional, Tuple, Union

from .errors import FileAccessError, JSONLSyntaxError, MemqSyncError, MessageValidationError
from .message_types import (
    VALID_MESSAGE_TYPES,
    LineError,
    Message,
    MessageType,
    ParseOutcome,
    coerce_content,
    is_content_block,
)

logger = logging.getLogger(__name__)

JSONL_SUFFIX = ".jsonl"
UNKNOWN = "unknown"
DEFAULT_PROJECT_MARKER = "projects"

# Identifier fields, in resolution order
ID_FIELDS = ("id", "uuid", "leafUuid", "fallback_id")

# Fields lifted into Message attributes; everything else ends up in ``extra``
_CONSUMED_FIELDS = frozenset(
    ID_FIELDS + ("type", "timestamp", "message", "content", "role",
                 "cost", "cost_usd", "usage", "summary", "parentUuid")
)

_FALLBACK_ALPHABET = string.ascii_lowercase + string.digits


def generate_fallback_id(line_number: Optional[int] = None) -> str:
    """Synthesize an id from the line position plus a short random suffix."""
    position = line_number or int(time.time() * 1000)
    suffix = "".join(random.choices(_FALLBACK_ALPHABET, k=9))
    return f"line_{position}_{suffix}"


def resolve_message_id(data: Dict[str, Any], line_number: Optional[int] = None) -> Tuple[str, str]:
    """Return ``(id, source_field)`` following the id fallback order."""
    for field_name in ID_FIELDS:
        value = data.get(field_name)
        if value and isinstance(value, (str, int)) and not isinstance(value, bool):
            return str(value), field_name
    return generate_fallback_id(line_number), "generated"


def _split_wrapper(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Collect content/role/cost/usage from either record shape.

    Claude Code wraps the payload as ``{"type": "user", "message": {"role":
    "user", "content": "..."}}``; older or already-normalized records carry
    the same fields at top level. Wrapper values win when present.

    ``raw_content`` is what the second-stage validator checks: wrapper
    content is always list-shaped (a bare value is wrapped), top-level
    content is kept exactly as found.
    """
    fields = {
        "content": data.get("content"),
        "raw_content": data.get("content"),
        "role": data.get("role"),
        "cost": data.get("cost", data.get("cost_usd")),
        "usage": data.get("usage"),
    }

    wrapper = data.get("message")
    if not isinstance(wrapper, dict):
        return fields

    if wrapper.get("content"):
        fields["content"] = wrapper["content"]
        fields["raw_content"] = wrapper["content"] if isinstance(wrapper["content"], list) else [wrapper["content"]]
    if wrapper.get("role"):
        fields["role"] = wrapper["role"]
    if wrapper.get("cost_usd") is not None:
        fields["cost"] = wrapper["cost_usd"]
    elif wrapper.get("cost") is not None:
        fields["cost"] = wrapper["cost"]
    if wrapper.get("usage"):
        fields["usage"] = wrapper["usage"]
    return fields


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _optional_str(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def parse_jsonl_line(
    line: str,
    line_number: Optional[int] = None,
    session_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> Optional[Message]:
    """
    Parse a single JSONL line.

    Returns None for blank lines. Raises JSONLSyntaxError when the line is not
    a JSON object and MessageValidationError when required fields are missing
    or the type is not one of summary/user/assistant.
    """
    stripped = line.strip().lstrip("\ufeff")
    if not stripped:
        return None

    try:
        data = json.loads(stripped)
    except (ValueError, RecursionError) as e:
        # ValueError covers JSONDecodeError and oversized integer literals
        raise JSONLSyntaxError(line_number, str(e) or type(e).__name__) from e

    if not isinstance(data, dict):
        raise JSONLSyntaxError(line_number, f"expected a JSON object, got {type(data).__name__}")

    if not data.get("type") or not data.get("timestamp"):
        raise MessageValidationError("Missing required fields: type and timestamp")

    if not isinstance(data["type"], str) or data["type"] not in VALID_MESSAGE_TYPES:
        raise MessageValidationError(f"Invalid message type: {data['type']!s:.80}")

    if not isinstance(data["timestamp"], str):
        raise MessageValidationError(f"Invalid timestamp: {data['timestamp']!s:.80}")

    message_id, id_source = resolve_message_id(data, line_number)
    fields = _split_wrapper(data)

    usage = fields["usage"]
    if isinstance(usage, dict):
        usage = MappingProxyType(dict(usage))
    elif usage is not None:
        usage = None

    extra = {k: v for k, v in data.items() if k not in _CONSUMED_FIELDS}

    return Message(
        id=message_id,
        type=MessageType(data["type"]),
        timestamp=data["timestamp"],
        session_id=session_id or _optional_str(data.get("sessionId")) or UNKNOWN,
        project_id=project_id or UNKNOWN,
        content=coerce_content(fields["content"]),
        role=_optional_str(fields["role"]),
        cost=_to_float(fields["cost"]),
        usage=usage,
        summary=_optional_str(data.get("summary")),
        parent_id=_optional_str(data.get("parentUuid")),
        line_number=line_number or 0,
        id_source=id_source,
        extra=MappingProxyType(extra),
        raw=stripped,
        raw_content=fields["raw_content"],
    )


def parse_jsonl_content(
    content: str,
    session_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> ParseOutcome:
    """Parse JSONL text into a ParseOutcome, recording bad lines as errors."""
    outcome = ParseOutcome()

    for line_number, line in enumerate(content.split("\n"), 1):
        if not line.strip():
            continue

        outcome.lines_processed += 1
        try:
            message = parse_jsonl_line(line, line_number, session_id, project_id)
        except MemqSyncError as e:
            outcome.errors.append(LineError(line_number, f"Line {line_number}: {e}"))
            continue
        except Exception as e:
            # Anything else is still one bad line, never the whole file
            logger.warning(f"Unexpected {type(e).__name__} parsing line {line_number}: {e}")
            outcome.errors.append(LineError(line_number, f"Line {line_number}: {type(e).__name__}: {e}"))
            continue

        if message is not None:
            outcome.messages.append(message)
            outcome.valid_messages += 1

    return outcome


def parse_jsonl_file(
    file_path: Union[str, Path],
    session_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> ParseOutcome:
    """
    Parse a JSONL file.

    Session and project ids default to the ones derived from the path. A file
    that cannot be read yields a single error and zero processed lines.
    """
    path = Path(file_path)
    session_id = session_id or extract_session_id(path)
    project_id = project_id or extract_project_id(path)

    try:
        # Invalid bytes are replaced so one torn write cannot hide the whole file
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        error = FileAccessError(path, str(e))
        logger.warning(str(error))
        return ParseOutcome(errors=[LineError(0, str(error))])

    outcome = parse_jsonl_content(content, session_id, project_id)
    if outcome.errors:
        logger.debug(
            f"Parsed {path.name}: {outcome.valid_messages}/{outcome.lines_processed} "
            f"valid, {len(outcome.errors)} errors"
        )
    return outcome


def validate_message(message: Message) -> Message:
    """
    Enforce the type-specific shape of a message before it is committed.

    Summary messages need a summary. For user and assistant messages the
    content found on the line must have been an array (wrapper content is
    always accepted), and the decoded content must be a sequence of blocks.
    """
    if message.type is MessageType.SUMMARY:
        if not message.summary:
            raise MessageValidationError("Summary message missing summary field")
    elif message.type in (MessageType.USER, MessageType.ASSISTANT):
        if message.raw_content and not isinstance(message.raw_content, list):
            raise MessageValidationError(f"{message.type.value} message has invalid content array")
        if not isinstance(message.content, (tuple, list)) or not all(map(is_content_block, message.content)):
            raise MessageValidationError(f"{message.type.value} message has invalid content array")
    else:
        raise MessageValidationError(f"Unknown message type: {message.type}")
    return message


def extract_session_id(file_path: Union[str, Path]) -> str:
    """Session id is the file name without its extension."""
    name = Path(file_path).name
    if name.endswith(JSONL_SUFFIX):
        return name[: -len(JSONL_SUFFIX)]
    return Path(name).stem


def extract_project_id(file_path: Union[str, Path], marker: str = DEFAULT_PROJECT_MARKER) -> str:
    """
    Project id is the path segment right after ``marker``.

    Returns "unknown" when the marker is missing or there is no room for both
    a project segment and a file name after it.
    """
    parts = Path(file_path).parts
    try:
        marker_index = parts.index(marker)
    except ValueError:
        return UNKNOWN

    if marker_index >= len(parts) - 2:
        return UNKNOWN
    return parts[marker_index + 1]
