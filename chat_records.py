"""
Typed records for Claude Code chat history JSONL files.

Each line of a chat file decodes to one of ChatMessage, SystemNotice or
SessionSummary. Message content is either a plain string or a tuple of
content blocks (TextBlock, ToolUseBlock, ToolResultBlock, ThinkingBlock).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union


# Bookkeeping records that carry nothing to render
IGNORED_RECORD_TYPES = frozenset({'file-history-snapshot', 'queue-operation', 'progress'})


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: Any = None  # str, list of parts, or None


@dataclass(frozen=True)
class ThinkingBlock:
    thinking: str


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock, ThinkingBlock]


@dataclass(frozen=True)
class ChatMessage:
    """A user or assistant turn."""
    type: str  # "user" or "assistant"
    content: Union[str, tuple]
    timestamp: str
    session_id: str = ''
    cwd: str = ''
    version: str = ''
    model: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    # Filled in by tool result reconciliation, never present in the log
    tool_results: Optional[Mapping[str, str]] = None


@dataclass(frozen=True)
class SystemNotice:
    content: str
    timestamp: str
    session_id: str = ''
    cwd: str = ''
    version: str = ''


@dataclass(frozen=True)
class SessionSummary:
    summary: str
    leaf_uuid: str = ''


LogRecord = Union[ChatMessage, SystemNotice, SessionSummary]


def _require(obj: dict, key: str, kind: type) -> Any:
    value = obj.get(key)
    if not isinstance(value, kind):
        raise ValueError(f"field '{key}' missing or not a {kind.__name__}")
    return value


def _optional_str(obj: dict, key: str) -> str:
    value = obj.get(key)
    if value is None:
        return ''
    if not isinstance(value, str):
        raise ValueError(f"field '{key}' is not a str")
    return value


def _token_count(usage: dict, key: str) -> int:
    value = usage.get(key) or 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"usage field '{key}' is not a number")
    return int(value)


def decode_content_block(block: Any) -> Optional[ContentBlock]:
    """Decode one content block; unsupported block types return None."""
    if not isinstance(block, dict):
        raise ValueError("content block is not an object")

    block_type = block.get('type')
    if block_type == 'text':
        return TextBlock(_optional_str(block, 'text'))
    if block_type == 'tool_use':
        tool_input = block.get('input')
        return ToolUseBlock(
            id=str(block.get('id') or ''),
            name=str(block.get('name') or 'unknown_tool'),
            input=tool_input if isinstance(tool_input, dict) else {},
        )
    if block_type == 'tool_result':
        return ToolResultBlock(str(block.get('tool_use_id') or ''), block.get('content'))
    if block_type == 'thinking':
        return ThinkingBlock(_optional_str(block, 'thinking'))
    # Images, documents and future block types are not rendered
    return None


def decode_record(obj: Any) -> Optional[LogRecord]:
    """
    Decode one parsed JSONL object into a LogRecord.

    Returns None for bookkeeping records that are skipped on purpose and
    raises ValueError for anything that doesn't match a known record shape.
    """
    if not isinstance(obj, dict):
        raise ValueError("record is not an object")

    record_type = obj.get('type')

    if record_type in IGNORED_RECORD_TYPES:
        return None

    if record_type == 'summary':
        return SessionSummary(
            summary=_require(obj, 'summary', str),
            leaf_uuid=obj.get('leafUuid') or '',
        )

    if record_type == 'system':
        return SystemNotice(
            content=_require(obj, 'content', str),
            timestamp=_require(obj, 'timestamp', str),
            session_id=obj.get('sessionId') or '',
            cwd=obj.get('cwd') or '',
            version=obj.get('version') or '',
        )

    if record_type in ('user', 'assistant'):
        message = _require(obj, 'message', dict)
        raw_content = message.get('content')
        if isinstance(raw_content, str):
            content = raw_content
        elif isinstance(raw_content, list):
            decoded = (decode_content_block(block) for block in raw_content)
            content = tuple(block for block in decoded if block is not None)
        else:
            raise ValueError("message content must be a string or a list")

        usage = message.get('usage') if isinstance(message.get('usage'), dict) else {}
        return ChatMessage(
            type=record_type,
            content=content,
            timestamp=_require(obj, 'timestamp', str),
            session_id=obj.get('sessionId') or '',
            cwd=obj.get('cwd') or '',
            version=obj.get('version') or '',
            model=_optional_str(message, 'model') or None,
            input_tokens=_token_count(usage, 'input_tokens'),
            output_tokens=_token_count(usage, 'output_tokens'),
        )

    raise ValueError(f"unsupported record type: {record_type!r}")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (or pass a datetime through) as an aware datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except (AttributeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def record_timestamp(record: LogRecord) -> Optional[str]:
    """The record's timestamp string, if its variant carries one."""
    if isinstance(record, (ChatMessage, SystemNotice)):
        return record.timestamp
    return None
