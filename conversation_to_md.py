#!/usr/bin/env python3
"""
Convert Claude Code chat history JSONL files to readable Markdown.

Exports a whole project (every chat, oldest first) or a single chat file.
Tool results are folded into the tool calls that requested them, and long
assistant output is collapsed behind <details> blocks.
"""

import argparse
import json
import pathlib
import sys
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping, Optional, Sequence, Union

from chat_formatting import create_tool_use_nodes, format_timestamp, process_assistant_content
from chat_records import (
    ChatMessage,
    LogRecord,
    SessionSummary,
    SystemNotice,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from claude_project import (
    detect_current_project,
    extract_chat_metadata,
    find_chat_files,
    parse_chat_file,
    sort_chat_files_by_time,
)
from markdown_doc import (
    Blockquote,
    Break,
    Emphasis,
    Heading,
    Paragraph,
    Strong,
    Text,
    ThematicBreak,
    UnsupportedNodeError,
    create_metadata_table_nodes,
    parse_markdown,
    stringify_markdown,
)


@dataclass
class ExportOptions:
    """Options for a Markdown export."""
    output: Optional[pathlib.Path] = None
    chats: Optional[list[str]] = None  # restrict to these chat IDs
    include_meta: bool = True  # export and per-chat metadata tables
    include_timestamps: bool = True  # timestamp headings for user/system entries


# =============================================================================
# Tool result reconciliation
# =============================================================================

def _is_block_content(entry: LogRecord, role: str) -> bool:
    return (
        isinstance(entry, ChatMessage)
        and entry.type == role
        and not isinstance(entry.content, str)
    )


def collect_tool_results(entries: Sequence[LogRecord]) -> dict[str, str]:
    """
    Map tool_use IDs to their result text.

    Results come from tool_result blocks in user messages; structured
    payloads are rendered as JSON. A repeated ID keeps the last result.
    """
    tool_results = {}

    for entry in entries:
        if isinstance(entry, ChatMessage) and entry.type == 'assistant' and entry.tool_results:
            tool_results.update(entry.tool_results)
        if not _is_block_content(entry, 'user'):
            continue
        for block in entry.content:
            if isinstance(block, ToolResultBlock) and block.tool_use_id and block.content:
                if isinstance(block.content, str):
                    tool_results[block.tool_use_id] = block.content
                else:
                    tool_results[block.tool_use_id] = json.dumps(
                        block.content, indent=2, ensure_ascii=False
                    )

    return tool_results


def merge_tool_results(entries: Sequence[LogRecord]) -> list[LogRecord]:
    """
    Attach tool results to assistant messages and drop result-only user messages.

    Every assistant message gets a read-only view of the chat's tool result
    index; user messages made up entirely of tool_result blocks are removed.
    All other entries pass through in order.
    """
    tool_results = MappingProxyType(collect_tool_results(entries))
    merged = []

    for entry in entries:
        if _is_block_content(entry, 'user'):
            if all(isinstance(block, ToolResultBlock) for block in entry.content):
                continue

        if isinstance(entry, ChatMessage) and entry.type == 'assistant':
            entry = replace(entry, tool_results=tool_results)

        merged.append(entry)

    return merged


# =============================================================================
# Entry rendering
# =============================================================================

def _user_text_paragraph(text: str) -> Paragraph:
    """Literal user text, one line break node per newline."""
    children = []
    for index, line in enumerate(text.split('\n')):
        if index:
            children.append(Break())
        children.append(Text(line))
    return Paragraph(children)


def extract_content_nodes(
    content: Union[str, Sequence],
    tool_results: Optional[Mapping[str, str]] = None,
    is_assistant: bool = False,
) -> list:
    """
    Turn message content into document nodes.

    Assistant text is parsed as Markdown; user text is kept literally.
    Tool uses are rendered with their matching result, if any. Tool
    results and thinking blocks produce nothing.
    """
    blocks = (TextBlock(content),) if isinstance(content, str) else content
    nodes = []

    for block in blocks:
        if isinstance(block, TextBlock):
            if not block.text:
                continue
            if is_assistant:
                nodes.extend(parse_markdown(block.text))
            else:
                nodes.append(_user_text_paragraph(block.text))
        elif isinstance(block, ToolUseBlock):
            result = tool_results.get(block.id) if tool_results and block.id else None
            nodes.extend(create_tool_use_nodes(block, result))
        elif isinstance(block, (ToolResultBlock, ThinkingBlock)):
            continue
        else:
            raise TypeError(f"Unknown content block: {type(block).__name__}")

    return nodes


def _entry_heading(timestamp: str, role: str, options: ExportOptions) -> Heading:
    label = format_timestamp(timestamp) if options.include_timestamps else role
    return Heading(3, [Text(label)])


def create_chat_entry_nodes(entry: LogRecord, options: Optional[ExportOptions] = None) -> list:
    """Render one log record; records with nothing to show render to []."""
    options = options or ExportOptions()

    if isinstance(entry, SessionSummary):
        return process_assistant_content([
            Heading(2, [Text("Summary")]),
            Paragraph([Text(entry.summary)]),
        ])

    if isinstance(entry, SystemNotice):
        return process_assistant_content([
            _entry_heading(entry.timestamp, "System", options),
            Paragraph([Text("🔧 "), Strong([Text("System")]), Text(f": {entry.content}")]),
        ])

    if not isinstance(entry, ChatMessage):
        raise TypeError(f"Unknown log record: {type(entry).__name__}")

    content_nodes = extract_content_nodes(
        entry.content,
        entry.tool_results,
        is_assistant=entry.type != 'user',
    )
    if not content_nodes:
        return []

    if entry.type == 'user':
        return [
            _entry_heading(entry.timestamp, "User", options),
            Blockquote(content_nodes),
        ]

    # Assistant and anything else: headings must never show bare
    return process_assistant_content(content_nodes)


# =============================================================================
# Document assembly
# =============================================================================

def create_export_metadata(
    project_name: str,
    chat_files: Sequence[pathlib.Path],
    options: ExportOptions,
) -> dict[str, str]:
    """Metadata for the export as a whole."""
    selected = len(options.chats) if options.chats else len(chat_files)
    return {
        "Project Name": project_name,
        "Export Date": format_timestamp(datetime.now(timezone.utc)),
        "Total Chat Files": str(len(chat_files)),
        "Exported Chats": str(selected),
        "Output Format": "Markdown",
    }


def _format_metadata_times(metadata: dict[str, str]) -> dict[str, str]:
    formatted = dict(metadata)
    for key in ("Start Time", "End Time"):
        if formatted.get(key):
            formatted[key] = format_timestamp(formatted[key])
    return formatted


def build_markdown_document(
    title: str,
    chat_files: Sequence[pathlib.Path],
    options: Optional[ExportOptions] = None,
) -> str:
    """
    Build the Markdown export for the given chat files.

    Chats appear oldest first. A chat that fails to load is replaced by an
    error note and the remaining chats are still exported.
    """
    options = options or ExportOptions()
    chat_files = [pathlib.Path(p) for p in chat_files]
    nodes = [Heading(1, [Text(title)])]

    if len(chat_files) > 1:
        if options.include_meta:
            project_name = chat_files[0].parent.name or "Chat"
            nodes.extend(create_metadata_table_nodes(
                create_export_metadata(project_name, chat_files, options)
            ))
        nodes.append(ThematicBreak())

    for chat_file in sort_chat_files_by_time(chat_files):
        chat_id = chat_file.stem
        print(f"Processing chat: {chat_id}", file=sys.stderr)
        nodes.append(Heading(2, [Text(f"Chat: {chat_id}")]))

        try:
            entries = parse_chat_file(chat_file)
            print(f"  Found {len(entries)} entries", file=sys.stderr)

            if options.include_meta:
                metadata = _format_metadata_times(extract_chat_metadata(entries))
                nodes.extend(create_metadata_table_nodes(metadata))

            for entry in merge_tool_results(entries):
                nodes.extend(create_chat_entry_nodes(entry, options))
        except UnsupportedNodeError:
            # A node type without a label rendering is a bug, not bad input
            raise
        except Exception as e:
            print(f"Error processing {chat_file}: {e}", file=sys.stderr)
            nodes.append(Paragraph([Emphasis([Text(f"Error processing this chat: {e}")])]))

        nodes.append(ThematicBreak())

    return stringify_markdown(nodes)


def _write_output(markdown: str, options: ExportOptions) -> None:
    if options.output:
        pathlib.Path(options.output).write_text(markdown, encoding='utf-8')
        print(f"✅ Export completed: {options.output}", file=sys.stderr)
    else:
        sys.stdout.write(markdown)


def export_project(project_path: pathlib.Path, options: Optional[ExportOptions] = None) -> str:
    """Export every chat of a Claude project directory."""
    options = options or ExportOptions()
    project_path = pathlib.Path(project_path)

    chat_files = find_chat_files(project_path, options.chats)
    print(f"Found {len(chat_files)} chat file(s)", file=sys.stderr)

    title = f"{project_path.name} - Claude Code History Export"
    markdown = build_markdown_document(title, chat_files, options)
    _write_output(markdown, options)
    return markdown


def export_chat(chat_path: pathlib.Path, options: Optional[ExportOptions] = None) -> str:
    """Export a single chat JSONL file."""
    options = options or ExportOptions()
    chat_path = pathlib.Path(chat_path)
    if not chat_path.is_file():
        raise FileNotFoundError(f"Chat file not found: {chat_path}")

    title = f"{chat_path.stem} - Claude Code Chat Export"
    markdown = build_markdown_document(title, [chat_path], options)
    _write_output(markdown, options)
    return markdown


# =============================================================================
# CLI
# =============================================================================

def resolve_input_path(
    input_path: Optional[pathlib.Path],
    current_project: bool = False,
) -> tuple[str, pathlib.Path]:
    """Return ("chat" | "project", path) for the command line input."""
    if input_path is None and current_project:
        detected = detect_current_project()
        if detected is None:
            raise FileNotFoundError(
                "No Claude project found for current directory. Make sure you're in a "
                "directory that has a corresponding project in ~/.claude/projects/"
            )
        return 'project', detected

    if input_path is None:
        raise FileNotFoundError(
            "No input provided. Provide a path to a Claude project directory or chat "
            "JSONL file, or use --current-project."
        )

    if input_path.suffix == '.jsonl':
        return 'chat', input_path
    return 'project', input_path


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description='Export Claude Code chat history to Markdown',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Export all chats from a project to stdout
  %(prog)s ~/.claude/projects/my-project

  # Export the current directory's project
  %(prog)s --current-project

  # Export a single chat file to a Markdown file
  %(prog)s ~/.claude/projects/my-project/chat123.jsonl --output chat.md

  # Export selected chats of a project
  %(prog)s ~/.claude/projects/my-project --chat chat123 --chat chat456
        """
    )
    parser.add_argument('input', nargs='?', type=pathlib.Path,
                        help='Claude project directory or chat JSONL file')
    parser.add_argument('--output', '-o', type=pathlib.Path,
                        help='Output Markdown file (stdout if not specified)')
    parser.add_argument('--current-project', action='store_true',
                        help="Use the current directory's Claude project")
    parser.add_argument('--chat', '-c', action='append', dest='chats', metavar='ID',
                        help='Only export this chat ID (repeatable)')
    parser.add_argument('--no-meta', action='store_true',
                        help='Leave out metadata tables')
    parser.add_argument('--no-timestamps', action='store_true',
                        help='Head user and system entries with the author instead of the time')
    args = parser.parse_args(argv)

    if args.input is None and not args.current_project:
        parser.print_help()
        return

    options = ExportOptions(
        output=args.output,
        chats=args.chats,
        include_meta=not args.no_meta,
        include_timestamps=not args.no_timestamps,
    )

    try:
        kind, path = resolve_input_path(args.input, args.current_project)
        print(f"Exporting {kind}: {path.stem if kind == 'chat' else path.name}", file=sys.stderr)
        print(f"Output: {args.output or 'stdout'}", file=sys.stderr)
        if kind == 'chat':
            export_chat(path, options)
        else:
            export_project(path, options)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
