"""
Claude Code specific formatting of chat content.

- Collapsing long assistant output behind a "More..." disclosure so exported
  transcripts stay scannable.
- Rendering tool invocations as a one-line summary plus a collapsible body
  with parameters and results.
- Timestamp formatting for headings and metadata.
"""

import json
from datetime import datetime
from typing import Callable, Mapping, Optional, Sequence, Union

from chat_records import ToolUseBlock, parse_timestamp
from markdown_doc import (
    Break,
    Code,
    Heading,
    Html,
    InlineCode,
    Node,
    Paragraph,
    Strong,
    Text,
    create_details_block,
    nodes_to_html,
    stringify_markdown,
)


MAX_VISIBLE_PARAGRAPHS = 3


def format_timestamp(timestamp: Union[str, datetime]) -> str:
    """Format as local time with UTC offset, e.g. '2025-01-01 11:00 +01:00'."""
    parsed = parse_timestamp(timestamp)
    if parsed is None:
        return str(timestamp)

    local = parsed.astimezone()
    offset_minutes = int(local.utcoffset().total_seconds() // 60)
    sign = "+" if offset_minutes >= 0 else "-"
    hours, minutes = divmod(abs(offset_minutes), 60)
    return f"{local:%Y-%m-%d %H:%M} {sign}{hours:02d}:{minutes:02d}"


# =============================================================================
# Collapsing
# =============================================================================

def split_collapsible(nodes: Sequence[Node]) -> tuple[list, list]:
    """
    Split content into (visible, collapsed) node lists.

    The first three paragraphs stay visible, as does any other block seen
    before the third paragraph. A heading, a fourth paragraph, or any block
    after the third paragraph switches to collapsing, and everything from
    that node on is collapsed.
    """
    visible = []
    collapsed = []
    paragraphs = 0
    collapsing = False

    for node in nodes:
        if not collapsing:
            if isinstance(node, Paragraph):
                paragraphs += 1
                collapsing = paragraphs > MAX_VISIBLE_PARAGRAPHS
            elif isinstance(node, Heading):
                collapsing = True
            else:
                collapsing = paragraphs >= MAX_VISIBLE_PARAGRAPHS

        if collapsing:
            collapsed.append(node)
        else:
            visible.append(node)

    return visible, collapsed


def _is_details_block(node: Node) -> bool:
    return isinstance(node, Html) and "<details>" in node.value


def process_assistant_content(nodes: Sequence[Node]) -> list:
    """Keep the start of the content visible and fold the rest into a disclosure."""
    visible, collapsed = split_collapsible(nodes)
    result = list(visible)

    if collapsed:
        if any(_is_details_block(node) for node in collapsed):
            # Tool uses bring their own <details>; don't nest them in another
            result.append(Html(stringify_markdown(collapsed).strip()))
        else:
            result.extend(create_details_block([Text("More...")], collapsed))

    return result


# =============================================================================
# Tool uses
# =============================================================================

TODO_STATUS_GLYPHS = {
    'completed': "✅",
    'in_progress': "🔄",
    'pending': "⏳",
}

# Tools whose result is shown openly rather than in the collapsible body
OPEN_RESULT_TOOLS = frozenset({'Write', 'Edit'})

RESULT_LABELS = {
    'Read': "File Contents:",
}


def _file_name(path: str) -> str:
    return path.rsplit('/', 1)[-1]


def _code_node(content: str, language: Optional[str] = None) -> Node:
    """Inline code for one-liners, a fenced block otherwise."""
    if "\n" in content:
        return Code(content, language)
    return InlineCode(content)


def _todos(tool_input: Mapping) -> list:
    todos = tool_input.get('todos')
    if not isinstance(todos, list):
        return []
    return [t for t in todos if isinstance(t, dict)]


def _describe_todo_write(tool_input: Mapping) -> Optional[list]:
    todos = _todos(tool_input)
    if not todos:
        return None
    statuses = [t.get('status') for t in todos]
    return [Text(
        f"Updated todo list ({statuses.count('completed')} completed, "
        f"{statuses.count('in_progress')} in progress, "
        f"{statuses.count('pending')} pending)"
    )]


def _describe_file(verb: str) -> Callable[[Mapping], Optional[list]]:
    def describe(tool_input: Mapping) -> Optional[list]:
        path = tool_input.get('file_path')
        if not path:
            return None
        return [Text(f"{verb} "), InlineCode(_file_name(str(path)))]
    return describe


def _describe_multi_edit(tool_input: Mapping) -> Optional[list]:
    path = tool_input.get('file_path')
    if not path:
        return None
    edits = tool_input.get('edits')
    count = len(edits) if isinstance(edits, list) else 0
    return [Text(f"Made {count} edits to "), InlineCode(_file_name(str(path)))]


def _describe_bash(tool_input: Mapping) -> Optional[list]:
    command = tool_input.get('command')
    if not command:
        return None
    return [_code_node(str(command), 'bash')]


def _describe_pattern(prefix: str) -> Callable[[Mapping], Optional[list]]:
    def describe(tool_input: Mapping) -> Optional[list]:
        pattern = tool_input.get('pattern')
        if not pattern:
            return None
        return [Text(f"{prefix} "), InlineCode(str(pattern))]
    return describe


def _describe_task(tool_input: Mapping) -> Optional[list]:
    description = tool_input.get('description')
    if not description:
        return None
    agent_type = tool_input.get('subagent_type')
    if agent_type:
        return [Text(f"{description} ({agent_type})")]
    return [Text(str(description))]


def _describe_value(key: str) -> Callable[[Mapping], Optional[list]]:
    def describe(tool_input: Mapping) -> Optional[list]:
        value = tool_input.get(key)
        if not value:
            return None
        return [InlineCode(str(value))]
    return describe


# One-line label descriptions per tool; tools not listed get a bare label
TOOL_DESCRIPTIONS: dict[str, Callable[[Mapping], Optional[list]]] = {
    'TodoWrite': _describe_todo_write,
    'Read': _describe_file("Read file"),
    'Write': _describe_file("Created file"),
    'Edit': _describe_file("Edited file"),
    'MultiEdit': _describe_multi_edit,
    'Bash': _describe_bash,
    'Glob': _describe_pattern("Search pattern"),
    'Grep': _describe_pattern("Search for"),
    'Task': _describe_task,
    'WebFetch': _describe_value('url'),
    'WebSearch': _describe_value('query'),
}


def _todo_list_nodes(tool_input: Mapping) -> list:
    todos = _todos(tool_input)
    if not todos:
        return []

    children = [Strong([Text("Tasks:")])]
    for todo in todos:
        status = todo.get('status')
        if not isinstance(status, str) or status not in TODO_STATUS_GLYPHS:
            status = 'pending'
        glyph = TODO_STATUS_GLYPHS[status]
        children.extend([Break(), Text(f"{glyph} {todo.get('content', '')}")])
    return [Paragraph(children)]


# Content shown openly below the label, never collapsed
OPEN_TOOL_CONTENT: dict[str, Callable[[Mapping], list]] = {
    'TodoWrite': _todo_list_nodes,
}


def create_tool_summary(tool_name: str, description: Optional[Sequence[Node]] = None) -> list:
    """Label nodes: '🔧 **Tool**' plus ': description' when there is one."""
    summary = [Text("🔧 "), Strong([Text(tool_name)])]
    if description:
        summary.append(Text(": "))
        summary.extend(description)
    return summary


def create_tool_use_nodes(block: ToolUseBlock, result: Optional[str] = None) -> list:
    """
    Render a tool invocation.

    The label becomes the <summary> of a <details> block holding the
    parameters and (for most tools) the result. Write/Edit results and
    TodoWrite task lists are shown openly after the label.
    """
    tool_name = block.name or 'unknown_tool'
    tool_input = dict(block.input or {})

    describe = TOOL_DESCRIPTIONS.get(tool_name)
    summary = create_tool_summary(tool_name, describe(tool_input) if describe else None)

    open_nodes = []
    open_content = OPEN_TOOL_CONTENT.get(tool_name)
    if open_content:
        open_nodes.extend(open_content(tool_input))

    collapsible = []
    if tool_input:
        collapsible.append(Paragraph([Strong([Text("Parameters:")])]))
        collapsible.append(Code(json.dumps(tool_input, indent=2, ensure_ascii=False), 'json'))

    if result:
        if tool_name in OPEN_RESULT_TOOLS:
            open_nodes.append(Paragraph([Text("📋 "), Strong([Text("Result:")])]))
            open_nodes.append(Code(result))
        else:
            label = RESULT_LABELS.get(tool_name, "Result:")
            collapsible.append(Paragraph([Strong([Text(label)])]))
            collapsible.append(Code(result))

    if collapsible:
        return create_details_block(summary, collapsible) + open_nodes
    return [Html(nodes_to_html(summary))] + open_nodes
