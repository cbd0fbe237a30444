#!/usr/bin/env python3
"""
Test harness for conversation_to_md.py using txtar-style test cases.

Test cases are stored in test_cases.txtar as pairs of .json and .md files.
The harness parses the txtar, runs the appropriate transformation, and
asserts the output matches the expected markdown.
"""

import json
import pytest
from pathlib import Path

from chat_records import ChatMessage, TextBlock, ToolResultBlock, ToolUseBlock, decode_content_block, decode_record
from chat_formatting import create_tool_use_nodes
from conversation_to_md import (
    ExportOptions,
    build_markdown_document,
    collect_tool_results,
    create_chat_entry_nodes,
    extract_content_nodes,
    main,
    merge_tool_results,
    resolve_input_path,
)
import conversation_to_md
from markdown_doc import (
    Blockquote,
    Emphasis,
    Heading,
    Html,
    Paragraph,
    Text,
    UnsupportedNodeError,
    create_details_block,
    stringify_markdown,
)


TXTAR_PATH = Path(__file__).parent / "test_cases.txtar"


def parse_txtar(content: str) -> dict[str, str]:
    """
    Parse txtar format into a dict of filename -> content.

    Format:
        -- filename --
        content
        -- another_file --
        more content
    """
    files = {}
    current_file = None
    current_lines = []

    for line in content.split('\n'):
        if line.startswith('-- ') and line.endswith(' --'):
            if current_file is not None:
                # Remove trailing blank lines and comment lines
                while current_lines and (not current_lines[-1] or current_lines[-1].startswith('#')):
                    current_lines.pop()
                files[current_file] = '\n'.join(current_lines)
            current_file = line[3:-3].strip()
            current_lines = []
        elif line.startswith('#') and current_file is None:
            # Skip comment lines before first file
            continue
        elif current_file is not None:
            current_lines.append(line)

    if current_file is not None:
        while current_lines and (not current_lines[-1] or current_lines[-1].startswith('#')):
            current_lines.pop()
        files[current_file] = '\n'.join(current_lines)

    return files


def load_test_cases() -> dict[str, list[tuple[str, str, str]]]:
    """
    Load and group test cases by category.

    Returns dict of category -> [(test_name, json_content, md_content), ...]
    """
    content = TXTAR_PATH.read_text(encoding='utf-8')
    files = parse_txtar(content)

    cases_by_category: dict[str, dict[str, dict[str, str]]] = {}

    for filepath, file_content in files.items():
        parts = filepath.rsplit('/', 1)
        if len(parts) != 2:
            continue
        category, filename = parts

        if filename.endswith('.json'):
            test_name = filename[:-5]
            ext = 'json'
        elif filename.endswith('.md'):
            test_name = filename[:-3]
            ext = 'md'
        else:
            continue

        cases_by_category.setdefault(category, {}).setdefault(test_name, {})[ext] = file_content

    result = {}
    for category, tests in cases_by_category.items():
        result[category] = []
        for test_name, contents in sorted(tests.items()):
            if 'json' in contents and 'md' in contents:
                result[category].append((
                    test_name,
                    contents['json'].strip(),
                    contents['md'],
                ))

    return result


TEST_CASES = load_test_cases()


def get_test_ids(category: str) -> list[str]:
    """Get test IDs for parametrization."""
    return [name for name, _, _ in TEST_CASES.get(category, [])]


def get_test_params(category: str) -> list[tuple[str, str, str]]:
    """Get test parameters for parametrization."""
    return TEST_CASES.get(category, [])


def render_records(raw_records: list[dict], options: ExportOptions) -> str:
    """Decode, reconcile and render raw JSONL objects as one Markdown string."""
    records = [r for r in (decode_record(obj) for obj in raw_records) if r is not None]
    nodes = []
    for entry in merge_tool_results(records):
        nodes.extend(create_chat_entry_nodes(entry, options))
    return stringify_markdown(nodes)


def write_chat(path: Path, records: list[dict]) -> Path:
    path.write_text('\n'.join(json.dumps(r) for r in records) + '\n', encoding='utf-8')
    return path


def user_record(text, timestamp="2025-01-01T10:00:00Z", session_id="s1"):
    return {
        "type": "user",
        "message": {"role": "user", "content": text},
        "timestamp": timestamp,
        "sessionId": session_id,
        "cwd": "/work",
        "version": "1.0.0",
    }


def assistant_record(content, timestamp="2025-01-01T10:00:01Z", session_id="s1"):
    return {
        "type": "assistant",
        "message": {
            "role": "assistant",
            "model": "claude-test",
            "content": content,
            "usage": {"input_tokens": 10, "output_tokens": 5},
        },
        "timestamp": timestamp,
        "sessionId": session_id,
    }


def tool_result_record(tool_use_id, content, timestamp="2025-01-01T10:00:02Z"):
    return {
        "type": "user",
        "message": {"role": "user", "content": [
            {"type": "tool_result", "tool_use_id": tool_use_id, "content": content},
        ]},
        "timestamp": timestamp,
        "sessionId": "s1",
    }


# =============================================================================
# Entry rendering tests
# =============================================================================

@pytest.mark.parametrize(
    "test_name,json_input,expected_md",
    get_test_params("entry_nodes"),
    ids=get_test_ids("entry_nodes"),
)
def test_entry_nodes(test_name: str, json_input: str, expected_md: str):
    """Render decoded records the way a chat section renders them."""
    raw_records = json.loads(json_input)

    result = render_records(raw_records, ExportOptions(include_timestamps=False))

    result_lines = result.rstrip('\n')
    expected_lines = expected_md.rstrip('\n')

    assert result_lines == expected_lines, (
        f"\n\nTest: {test_name}\n"
        f"Expected:\n{repr(expected_lines)}\n\n"
        f"Got:\n{repr(result_lines)}"
    )


# =============================================================================
# Tool use rendering tests
# =============================================================================

@pytest.mark.parametrize(
    "test_name,json_input,expected_md",
    get_test_params("tool_use"),
    ids=get_test_ids("tool_use"),
)
def test_tool_use_nodes(test_name: str, json_input: str, expected_md: str):
    """Render a single tool_use block with an optional result."""
    data = json.loads(json_input)
    block = decode_content_block(data['block'])

    result = stringify_markdown(create_tool_use_nodes(block, data.get('result')))

    result_lines = result.rstrip('\n')
    expected_lines = expected_md.rstrip('\n')

    assert result_lines == expected_lines, (
        f"\n\nTest: {test_name}\n"
        f"Expected:\n{repr(expected_lines)}\n\n"
        f"Got:\n{repr(result_lines)}"
    )


# =============================================================================
# Txtar parsing tests (meta-tests)
# =============================================================================

class TestTxtarParsing:
    """Tests for the txtar parsing itself."""

    def test_parse_simple(self):
        content = """-- file1.txt --
hello
-- file2.txt --
world"""
        files = parse_txtar(content)
        assert files == {
            "file1.txt": "hello",
            "file2.txt": "world",
        }

    def test_parse_with_comments(self):
        content = """# This is a comment
# Another comment
-- file.txt --
content"""
        files = parse_txtar(content)
        assert files == {"file.txt": "content"}

    def test_parse_multiline_content(self):
        content = """-- file.txt --
line1
line2
line3"""
        files = parse_txtar(content)
        assert files == {"file.txt": "line1\nline2\nline3"}

    def test_parse_with_path(self):
        content = """-- dir/subdir/file.txt --
content"""
        files = parse_txtar(content)
        assert files == {"dir/subdir/file.txt": "content"}

    def test_test_cases_loaded(self):
        """Verify test cases were loaded correctly."""
        assert "entry_nodes" in TEST_CASES
        assert "tool_use" in TEST_CASES

        assert len(TEST_CASES["entry_nodes"]) >= 10
        assert len(TEST_CASES["tool_use"]) >= 5


# =============================================================================
# Tool result reconciliation
# =============================================================================

def _decode_all(raw_records):
    return [decode_record(r) for r in raw_records]


class TestToolResultReconciliation:

    def test_result_only_message_dropped_and_result_attached(self):
        entries = _decode_all([
            assistant_record([{"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}}]),
            tool_result_record("t1", "file.txt"),
        ])

        merged = merge_tool_results(entries)

        assert len(merged) == 1
        assert merged[0].type == 'assistant'
        assert merged[0].tool_results["t1"] == "file.txt"

    def test_last_duplicate_result_wins(self):
        entries = _decode_all([
            tool_result_record("t1", "first"),
            tool_result_record("t1", "second"),
        ])
        assert collect_tool_results(entries) == {"t1": "second"}

    def test_structured_result_rendered_as_json(self):
        entries = _decode_all([tool_result_record("t1", [{"type": "text", "text": "done"}])])
        assert collect_tool_results(entries) == {
            "t1": json.dumps([{"type": "text", "text": "done"}], indent=2),
        }

    def test_empty_result_not_recorded(self):
        entries = _decode_all([tool_result_record("t1", "")])
        assert collect_tool_results(entries) == {}

    def test_string_user_message_kept(self):
        entries = _decode_all([user_record("plain text")])
        assert merge_tool_results(entries) == entries

    def test_order_preserved_and_idempotent(self):
        entries = _decode_all([
            user_record("first"),
            assistant_record([{"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": "a.py"}}]),
            tool_result_record("t1", "contents"),
            user_record("second", timestamp="2025-01-01T10:00:03Z"),
        ])

        once = merge_tool_results(entries)
        twice = merge_tool_results(once)

        assert [e.content if e.type == 'user' else 'assistant' for e in once] == [
            "first", "assistant", "second",
        ]
        assert twice == once
        assert dict(twice[1].tool_results) == {"t1": "contents"}

    def test_index_is_read_only(self):
        entries = _decode_all([
            assistant_record([{"type": "tool_use", "id": "t1", "name": "Bash", "input": {}}]),
            tool_result_record("t1", "ok"),
        ])
        merged = merge_tool_results(entries)
        with pytest.raises(TypeError):
            merged[0].tool_results["t2"] = "nope"


# =============================================================================
# Entry nodes
# =============================================================================

class TestChatEntryNodes:

    def test_user_heading_is_formatted_timestamp(self, utc_timezone):
        entry = decode_record(user_record("Hi", timestamp="2025-01-01T10:00:00.000Z"))
        nodes = create_chat_entry_nodes(entry, ExportOptions())

        assert nodes[0] == Heading(3, [Text("2025-01-01 10:00 +00:00")])
        assert isinstance(nodes[1], Blockquote)

    def test_empty_user_text_renders_nothing(self):
        entry = decode_record(user_record(""))
        assert create_chat_entry_nodes(entry) == []

    def test_user_tool_use_rendered(self):
        entry = ChatMessage(
            type='user',
            content=(ToolUseBlock("t1", "Glob", {"pattern": "*.md"}),),
            timestamp="2025-01-01T10:00:00Z",
        )
        nodes = create_chat_entry_nodes(entry, ExportOptions(include_timestamps=False))
        quoted = nodes[1].children[0]
        assert isinstance(quoted, Html)
        assert "<strong>Glob</strong>" in quoted.value

    def test_assistant_never_shows_bare_heading(self):
        entry = decode_record(assistant_record([{"type": "text", "text": "# Title\n\nBody"}]))
        nodes = create_chat_entry_nodes(entry)
        assert not any(isinstance(node, Heading) for node in nodes)

    def test_unknown_record_type_rejected(self):
        with pytest.raises(TypeError):
            create_chat_entry_nodes({"type": "user"})

    def test_extract_content_nodes_skips_thinking_and_results(self):
        nodes = extract_content_nodes(
            (TextBlock(""), ToolResultBlock("t1", "x")),
            is_assistant=True,
        )
        assert nodes == []


# =============================================================================
# Document assembly
# =============================================================================

@pytest.fixture
def project_dir(tmp_path):
    project = tmp_path / "myproject"
    project.mkdir()
    return project


class TestBuildDocument:

    def test_chats_in_chronological_order(self, project_dir):
        # Alphabetical a, b, c; chronological b, a, c
        write_chat(project_dir / "a.jsonl", [user_record("from a", timestamp="2025-02-01T10:00:00Z")])
        write_chat(project_dir / "b.jsonl", [user_record("from b", timestamp="2025-01-01T10:00:00Z")])
        write_chat(project_dir / "c.jsonl", [user_record("from c", timestamp="2025-03-01T10:00:00Z")])
        chat_files = sorted(project_dir.glob("*.jsonl"))

        md = build_markdown_document("Export", chat_files)

        positions = [md.index(f"## Chat: {name}") for name in ("b", "a", "c")]
        assert positions == sorted(positions)

    def test_bad_chat_isolated(self, project_dir, capsys):
        write_chat(project_dir / "good.jsonl", [
            user_record("hello there"),
            assistant_record([{"type": "text", "text": "General Kenobi"}]),
        ])
        (project_dir / "bad.jsonl").write_bytes(b"\xff\xfe not utf-8\n")

        md = build_markdown_document("Export", sorted(project_dir.glob("*.jsonl")))

        assert "## Chat: bad" in md
        assert "*Error processing this chat: " in md
        assert "## Chat: good" in md
        assert "> hello there" in md
        assert "General Kenobi" in md
        assert "Error processing" in capsys.readouterr().err

    def test_document_structure(self, project_dir):
        write_chat(project_dir / "one.jsonl", [user_record("one")])
        write_chat(project_dir / "two.jsonl", [user_record("two", timestamp="2025-01-02T10:00:00Z")])

        md = build_markdown_document("Export", sorted(project_dir.glob("*.jsonl")))

        assert md.startswith("# Export\n\n| Property | Value |\n| :-- | :-- |\n| Project Name | myproject |")
        assert "| Total Chat Files | 2 |" in md
        assert "| Session ID | s1 |" in md
        assert md.count("\n---\n") == 3
        assert md.endswith("---\n")

    def test_rendering_failure_isolated(self, project_dir, monkeypatch, capsys):
        def render_tool(block, result=None):
            if block.name == 'Explode':
                raise TypeError("unhashable type: 'dict'")
            return create_tool_use_nodes(block, result)

        monkeypatch.setattr(conversation_to_md, 'create_tool_use_nodes', render_tool)
        write_chat(project_dir / "good.jsonl", [
            user_record("hello there"),
            assistant_record([{"type": "text", "text": "General Kenobi"}]),
        ])
        write_chat(project_dir / "bad.jsonl", [
            user_record("boom", timestamp="2025-01-02T10:00:00Z"),
            assistant_record([{"type": "tool_use", "id": "t1", "name": "Explode", "input": {}}],
                             timestamp="2025-01-02T10:00:01Z"),
        ])

        md = build_markdown_document("Export", sorted(project_dir.glob("*.jsonl")))

        assert "## Chat: bad" in md
        assert "*Error processing this chat: unhashable type: 'dict'*" in md
        assert "## Chat: good" in md
        assert "> hello there" in md
        assert "General Kenobi" in md
        assert "Error processing" in capsys.readouterr().err

    def test_unusual_tool_input_rendered(self, project_dir):
        good = write_chat(project_dir / "good.jsonl", [user_record("hello there")])
        odd = write_chat(project_dir / "odd.jsonl", [
            assistant_record([
                {"type": "tool_use", "id": "t1", "name": "TodoWrite",
                 "input": {"todos": [{"content": "x", "status": {"s": 1}}]}},
                {"type": "tool_use", "id": "t2", "name": "MultiEdit",
                 "input": {"file_path": "/src/a.py", "edits": 3}},
            ], timestamp="2025-01-02T10:00:00Z"),
        ])

        md = build_markdown_document("Export", [good, odd])

        assert "Error processing" not in md
        assert "> hello there" in md
        assert "⏳ x" in md
        assert "Made 0 edits to <code>a.py</code>" in md

    def test_unsupported_label_node_propagates(self, project_dir, monkeypatch):
        def render_tool(block, result=None):
            return create_details_block([Emphasis([Text("label")])], [Paragraph([Text("body")])])

        monkeypatch.setattr(conversation_to_md, 'create_tool_use_nodes', render_tool)
        chat = write_chat(project_dir / "tools.jsonl", [
            assistant_record([{"type": "tool_use", "id": "t1", "name": "Bash", "input": {}}]),
        ])

        with pytest.raises(UnsupportedNodeError):
            build_markdown_document("Tools", [chat])

    def test_single_chat_has_no_export_metadata(self, project_dir):
        chat = write_chat(project_dir / "solo.jsonl", [user_record("only")])

        md = build_markdown_document("Solo", [chat])

        assert "Project Name" not in md
        assert md.startswith("# Solo\n\n## Chat: solo\n\n| Property | Value |")

    def test_without_metadata(self, project_dir):
        chat = write_chat(project_dir / "solo.jsonl", [user_record("only")])

        md = build_markdown_document("Solo", [chat], ExportOptions(include_meta=False, include_timestamps=False))

        assert md == "# Solo\n\n## Chat: solo\n\n### User\n\n> only\n\n---\n"

    def test_tool_result_reaches_tool_use(self, project_dir):
        chat = write_chat(project_dir / "tools.jsonl", [
            assistant_record([{"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "pwd"}}]),
            tool_result_record("t1", "/home/me"),
        ])

        md = build_markdown_document("Tools", [chat], ExportOptions(include_meta=False))

        assert "**Result:**\n\n```\n/home/me\n```" in md
        assert "tool_result" not in md


# =============================================================================
# CLI
# =============================================================================

class TestCli:

    def test_export_project_to_file(self, project_dir, tmp_path):
        write_chat(project_dir / "chat1.jsonl", [user_record("hi")])
        output = tmp_path / "out.md"

        main([str(project_dir), "--output", str(output)])

        assert output.read_text(encoding='utf-8').startswith("# myproject - Claude Code History Export")

    def test_export_single_chat_to_stdout(self, project_dir, capsys):
        chat = write_chat(project_dir / "chat1.jsonl", [user_record("hi")])

        main([str(chat), "--no-meta"])

        out = capsys.readouterr().out
        assert out.startswith("# chat1 - Claude Code Chat Export")
        assert "> hi" in out

    def test_selected_chats_only(self, project_dir, capsys):
        write_chat(project_dir / "keep.jsonl", [user_record("kept")])
        write_chat(project_dir / "skip.jsonl", [user_record("skipped")])

        main([str(project_dir), "--chat", "keep"])

        out = capsys.readouterr().out
        assert "## Chat: keep" in out
        assert "skipped" not in out

    def test_no_input_prints_help(self, capsys):
        main([])
        assert "usage:" in capsys.readouterr().out

    def test_missing_project_exits_nonzero(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main([str(tmp_path / "missing")])

        assert excinfo.value.code == 1
        assert "Project directory not found" in capsys.readouterr().err

    def test_resolve_input_path(self):
        assert resolve_input_path(Path("x/chat.jsonl")) == ("chat", Path("x/chat.jsonl"))
        assert resolve_input_path(Path("x/project")) == ("project", Path("x/project"))
        with pytest.raises(FileNotFoundError):
            resolve_input_path(None)
