"""
Claude Code project discovery and chat file loading.

Chats live as JSONL files in per-project directories under
~/.claude/projects/. This module finds those files, decodes them into typed
records and derives the metadata shown at the top of each exported chat.
"""

import json
import os
import pathlib
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Optional, Sequence

from chat_records import (
    ChatMessage,
    LogRecord,
    SystemNotice,
    decode_record,
    parse_timestamp,
    record_timestamp,
)


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def get_claude_projects_dir() -> pathlib.Path:
    """Get the Claude Code projects directory."""
    return pathlib.Path.home() / '.claude' / 'projects'


def detect_current_project(
    cwd: Optional[pathlib.Path] = None,
    projects_dir: Optional[pathlib.Path] = None,
) -> Optional[pathlib.Path]:
    """
    Find the Claude project directory that matches the working directory.

    Tries the directory name itself, then the full path encoded the way
    Claude Code names project directories (slashes and dots become dashes),
    then a few common spelling variations of the directory name.
    """
    cwd = pathlib.Path(cwd or os.getcwd())
    projects_dir = projects_dir or get_claude_projects_dir()
    if not projects_dir.is_dir():
        return None

    name = cwd.name
    candidates = [
        name,
        str(cwd).replace('/', '-').replace('.', '-'),
        name.replace('_', '-'),
        name.replace('-', '_'),
        name.replace('-', '').replace('_', ''),
        name.replace('.', '-'),
        name.lower(),
        name.lower().replace('_', '-'),
        name.lower().replace('.', '-'),
    ]

    for candidate in candidates:
        if not candidate:
            continue
        project_dir = projects_dir / candidate
        if project_dir.is_dir():
            return project_dir

    return None


def find_chat_files(
    project_path: pathlib.Path,
    chat_ids: Optional[Sequence[str]] = None,
) -> list[pathlib.Path]:
    """Find chat JSONL files in a project directory, optionally only the given chat IDs."""
    project_path = pathlib.Path(project_path)
    if not project_path.is_dir():
        raise FileNotFoundError(f"Project directory not found: {project_path}")

    chat_files = []
    if chat_ids:
        for chat_id in chat_ids:
            chat_file = project_path / f"{chat_id}.jsonl"
            if chat_file.is_file():
                chat_files.append(chat_file)
            else:
                print(f"Warning: Chat file not found: {chat_file}", file=sys.stderr)
    else:
        chat_files = sorted(p for p in project_path.glob("*.jsonl") if p.is_file())

    if not chat_files:
        raise FileNotFoundError("No chat files found to export")

    return chat_files


def parse_chat_file(filepath: pathlib.Path) -> list[LogRecord]:
    """
    Decode a chat JSONL file into records.

    Lines that are not valid JSON or don't match a known record shape are
    skipped with a warning; an unreadable file raises.
    """
    records = []
    with open(filepath, 'r', encoding='utf-8') as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                record = decode_record(json.loads(line))
            except ValueError as e:
                # json.JSONDecodeError is a ValueError too
                print(f"Warning: Failed to parse line {line_num} in {filepath}: {e}", file=sys.stderr)
                continue
            if record is not None:
                records.append(record)
    return records


def get_chat_start_time(chat_file: pathlib.Path) -> datetime:
    """Timestamp of the first timestamped record; the epoch if there is none."""
    try:
        with open(chat_file, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = decode_record(json.loads(line))
                except ValueError:
                    continue
                if record is None:
                    continue
                started = parse_timestamp(record_timestamp(record))
                if started is not None:
                    return started
    except (OSError, UnicodeDecodeError):
        pass
    return EPOCH


def sort_chat_files_by_time(chat_files: Sequence[pathlib.Path]) -> list[pathlib.Path]:
    """Order chat files by start time, earliest first (ties keep input order)."""
    if not chat_files:
        return []

    with ThreadPoolExecutor(max_workers=min(8, len(chat_files))) as pool:
        start_times = list(pool.map(get_chat_start_time, chat_files))

    ordered = sorted(zip(start_times, range(len(chat_files))))
    return [chat_files[index] for _, index in ordered]


def extract_chat_metadata(records: Sequence[LogRecord]) -> dict[str, str]:
    """Summarize a chat's session, timing, message counts and token usage."""
    session_records = [
        r for r in records
        if isinstance(r, (ChatMessage, SystemNotice)) and r.session_id
    ]
    if not session_records:
        return {}

    first = session_records[0]
    last = session_records[-1]

    user_messages = [r for r in session_records if isinstance(r, ChatMessage) and r.type == 'user']
    assistant_messages = [
        r for r in session_records if isinstance(r, ChatMessage) and r.type == 'assistant'
    ]

    models = {}
    for msg in assistant_messages:
        if msg.model:
            models[msg.model] = True

    input_tokens = sum(msg.input_tokens for msg in assistant_messages)
    output_tokens = sum(msg.output_tokens for msg in assistant_messages)

    return {
        "Session ID": first.session_id,
        "Working Directory": first.cwd,
        "Claude Code Version": first.version,
        "Start Time": first.timestamp,
        "End Time": last.timestamp,
        "Total Messages": str(len(records)),
        "User Messages": str(len(user_messages)),
        "Assistant Messages": str(len(assistant_messages)),
        "Models Used": ", ".join(models) or "Unknown",
        "Total Input Tokens": str(input_tokens),
        "Total Output Tokens": str(output_tokens),
        "Total Tokens": str(input_tokens + output_tokens),
    }
