"""
Markdown document model used by the exporter.

Documents are built as trees of small immutable node values (headings,
paragraphs, tables, code blocks, raw HTML fragments, ...). Markdown text is
parsed into that tree with markdown-it-py and serialized back with
stringify_markdown(). Collapsible <details> blocks are embedded as raw HTML
fragments whose body is ordinary Markdown.
"""

import html
import re
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Union

from markdown_it import MarkdownIt


_MARKDOWN = MarkdownIt("commonmark").enable("table").enable("strikethrough")


def _freeze(node, name: str = "children") -> None:
    object.__setattr__(node, name, tuple(getattr(node, name)))


# =============================================================================
# Inline nodes
# =============================================================================

@dataclass(frozen=True)
class Text:
    value: str


@dataclass(frozen=True)
class Emphasis:
    children: Sequence["Node"] = ()

    def __post_init__(self):
        _freeze(self)


@dataclass(frozen=True)
class Strong:
    children: Sequence["Node"] = ()

    def __post_init__(self):
        _freeze(self)


@dataclass(frozen=True)
class Delete:
    children: Sequence["Node"] = ()

    def __post_init__(self):
        _freeze(self)


@dataclass(frozen=True)
class InlineCode:
    value: str


@dataclass(frozen=True)
class Break:
    pass


@dataclass(frozen=True)
class Link:
    url: str
    children: Sequence["Node"] = ()
    title: Optional[str] = None

    def __post_init__(self):
        _freeze(self)


@dataclass(frozen=True)
class Image:
    url: str
    alt: str = ""
    title: Optional[str] = None


@dataclass(frozen=True)
class Html:
    """Raw markup passed through verbatim (block or inline)."""
    value: str


# =============================================================================
# Block nodes
# =============================================================================

@dataclass(frozen=True)
class Paragraph:
    children: Sequence["Node"] = ()

    def __post_init__(self):
        _freeze(self)


@dataclass(frozen=True)
class Heading:
    depth: int
    children: Sequence["Node"] = ()

    def __post_init__(self):
        if not 1 <= self.depth <= 6:
            raise ValueError(f"Heading depth must be 1-6, got {self.depth}")
        _freeze(self)


@dataclass(frozen=True)
class Blockquote:
    children: Sequence["Node"] = ()

    def __post_init__(self):
        _freeze(self)


@dataclass(frozen=True)
class ListItem:
    children: Sequence["Node"] = ()

    def __post_init__(self):
        _freeze(self)


@dataclass(frozen=True)
class ListBlock:
    items: Sequence[ListItem] = ()
    ordered: bool = False
    start: int = 1
    tight: bool = True

    def __post_init__(self):
        _freeze(self, "items")


@dataclass(frozen=True)
class Code:
    value: str
    lang: Optional[str] = None


@dataclass(frozen=True)
class ThematicBreak:
    pass


@dataclass(frozen=True)
class TableCell:
    children: Sequence["Node"] = ()

    def __post_init__(self):
        _freeze(self)


@dataclass(frozen=True)
class TableRow:
    cells: Sequence[TableCell] = ()

    def __post_init__(self):
        _freeze(self, "cells")


@dataclass(frozen=True)
class Table:
    rows: Sequence[TableRow] = ()
    align: Sequence[Optional[str]] = ()

    def __post_init__(self):
        _freeze(self, "rows")
        _freeze(self, "align")


Node = Union[
    Text, Emphasis, Strong, Delete, InlineCode, Break, Link, Image, Html,
    Paragraph, Heading, Blockquote, ListItem, ListBlock, Code, ThematicBreak,
    TableCell, TableRow, Table,
]

INLINE_TYPES = (Text, Emphasis, Strong, Delete, InlineCode, Break, Link, Image)


# =============================================================================
# Parsing (markdown-it token stream -> nodes)
# =============================================================================

class _Frame:
    """An open container while walking a token stream."""

    def __init__(self, token=None):
        self.token = token
        self.children = []
        self.tight = True
        self.aligns = []

    @property
    def kind(self) -> str:
        return self.token.type if self.token is not None else "root"


def parse_markdown(content: str) -> list:
    """Parse Markdown text into a list of block nodes."""
    return _convert_blocks(_MARKDOWN.parse(content))


def _convert_blocks(tokens) -> list:
    stack = [_Frame()]

    for token in tokens:
        if token.type in ("thead_open", "thead_close", "tbody_open", "tbody_close"):
            continue

        if token.nesting == 1:
            # Loose lists keep their paragraphs visible; tight ones hide them
            if (token.type == "paragraph_open" and stack[-1].kind == "list_item_open"
                    and not token.hidden):
                stack[-2].tight = False
            stack.append(_Frame(token))
        elif token.nesting == -1:
            frame = stack.pop()
            if frame.kind == "th_open":
                stack[-2].aligns.append(_cell_align(frame.token))
            stack[-1].children.append(_close_block(frame))
        elif token.type == "inline":
            stack[-1].children.extend(_convert_inline(token.children or []))
        else:
            node = _leaf_block(token)
            if node is not None:
                stack[-1].children.append(node)

    return stack[0].children


def _cell_align(token) -> Optional[str]:
    style = token.attrGet("style") or ""
    if style.startswith("text-align:"):
        return style[len("text-align:"):]
    return None


def _close_block(frame: _Frame):
    kind = frame.kind
    if kind == "paragraph_open":
        return Paragraph(frame.children)
    if kind == "heading_open":
        return Heading(int(frame.token.tag[1]), frame.children)
    if kind == "blockquote_open":
        return Blockquote(frame.children)
    if kind == "bullet_list_open":
        return ListBlock(frame.children, ordered=False, tight=frame.tight)
    if kind == "ordered_list_open":
        start = frame.token.attrGet("start")
        return ListBlock(frame.children, ordered=True,
                         start=int(start) if start is not None else 1, tight=frame.tight)
    if kind == "list_item_open":
        return ListItem(frame.children)
    if kind == "table_open":
        return Table(frame.children, frame.aligns)
    if kind == "tr_open":
        return TableRow(frame.children)
    if kind in ("th_open", "td_open"):
        return TableCell(frame.children)
    raise ValueError(f"Unexpected block token: {kind}")


def _leaf_block(token):
    if token.type == "fence":
        info = token.info.strip()
        return Code(_strip_final_newline(token.content), info.split()[0] if info else None)
    if token.type == "code_block":
        return Code(_strip_final_newline(token.content))
    if token.type == "hr":
        return ThematicBreak()
    if token.type == "html_block":
        return Html(token.content.rstrip("\n"))
    return None


def _strip_final_newline(value: str) -> str:
    return value[:-1] if value.endswith("\n") else value


def _convert_inline(tokens) -> list:
    stack = [_Frame()]

    for token in tokens:
        if token.nesting == 1:
            stack.append(_Frame(token))
        elif token.nesting == -1:
            frame = stack.pop()
            stack[-1].children.extend(_close_inline(frame))
        else:
            stack[-1].children.append(_leaf_inline(token))

    return _merge_text(stack[0].children)


def _close_inline(frame: _Frame) -> list:
    children = _merge_text(frame.children)
    kind = frame.kind
    if kind == "em_open":
        return [Emphasis(children)]
    if kind == "strong_open":
        return [Strong(children)]
    if kind == "s_open":
        return [Delete(children)]
    if kind == "link_open":
        return [Link(frame.token.attrGet("href") or "", children, frame.token.attrGet("title"))]
    # Unknown wrappers contribute their content only
    return children


def _leaf_inline(token):
    if token.type in ("text", "text_special"):
        return Text(token.content)
    if token.type == "softbreak":
        return Text("\n")
    if token.type == "hardbreak":
        return Break()
    if token.type == "code_inline":
        return InlineCode(token.content)
    if token.type == "html_inline":
        return Html(token.content)
    if token.type == "image":
        return Image(token.attrGet("src") or "", token.content, token.attrGet("title"))
    return Text(token.content)


def _merge_text(nodes: list) -> list:
    merged = []
    for node in nodes:
        if isinstance(node, Text) and merged and isinstance(merged[-1], Text):
            merged[-1] = Text(merged[-1].value + node.value)
        else:
            merged.append(node)
    return merged


# =============================================================================
# Serialization (nodes -> Markdown)
# =============================================================================

_ESCAPE_RE = re.compile(r"([\\`*_\[\]<>|~])")
_ENTITY_RE = re.compile(r"&(?=#?[0-9A-Za-z]+;)")
_ORDERED_MARKER_RE = re.compile(r"(\d{1,9})([.)])")
_BACKTICK_RUN_RE = re.compile(r"`+")

_ALIGN_DELIMITERS = {"left": ":--", "right": "--:", "center": ":-:", None: "---"}


def stringify_markdown(nodes: Sequence[Node]) -> str:
    """Serialize nodes to Markdown text (trailing newline, empty for no nodes)."""
    if not nodes:
        return ""
    return _join_blocks(nodes) + "\n"


def _join_blocks(nodes: Sequence[Node], separator: str = "\n\n") -> str:
    parts = []
    inline_run = []

    for node in nodes:
        if isinstance(node, INLINE_TYPES):
            inline_run.append(node)
            continue
        if inline_run:
            parts.append(_inline(inline_run))
            inline_run = []
        parts.append(_block(node))

    if inline_run:
        parts.append(_inline(inline_run))

    return separator.join(parts)


def _block(node: Node) -> str:
    if isinstance(node, Paragraph):
        return _inline(node.children)
    if isinstance(node, Heading):
        return "#" * node.depth + " " + _inline(node.children, "heading", line_start=False)
    if isinstance(node, Blockquote):
        inner = _join_blocks(node.children)
        return "\n".join(f"> {line}" if line else ">" for line in inner.split("\n"))
    if isinstance(node, ListBlock):
        return _list(node)
    if isinstance(node, Code):
        fence = "`" * max(3, _longest_backtick_run(node.value) + 1)
        return f"{fence}{node.lang or ''}\n{node.value}\n{fence}"
    if isinstance(node, ThematicBreak):
        return "---"
    if isinstance(node, Html):
        return node.value
    if isinstance(node, Table):
        return _table(node)
    raise TypeError(f"Cannot serialize node type: {type(node).__name__}")


def _list(node: ListBlock) -> str:
    items = []
    for index, item in enumerate(node.items):
        marker = f"{node.start + index}." if node.ordered else "-"
        content = _join_blocks(item.children, "\n" if node.tight else "\n\n")
        lines = content.split("\n")
        indent = " " * (len(marker) + 1)
        first = f"{marker} {lines[0]}" if lines[0] else marker
        rest = [indent + line if line else "" for line in lines[1:]]
        items.append("\n".join([first] + rest))
    return ("\n" if node.tight else "\n\n").join(items)


def _table(node: Table) -> str:
    rows = [[_inline(cell.children, "cell", line_start=False) for cell in row.cells]
            for row in node.rows]
    if not rows:
        return ""

    width = max(len(row) for row in rows)
    rows = [row + [""] * (width - len(row)) for row in rows]
    align = list(node.align)[:width] + [None] * (width - len(node.align))

    def format_row(cells):
        return "| " + " | ".join(cells) + " |"

    lines = [format_row(rows[0]), format_row([_ALIGN_DELIMITERS.get(a, "---") for a in align])]
    lines.extend(format_row(row) for row in rows[1:])
    return "\n".join(lines)


def _inline(nodes: Sequence[Node], context: str = "flow", line_start: bool = True) -> str:
    result = ""
    for node in nodes:
        at_line_start = result.endswith("\n") if result else line_start
        result += _inline_node(node, context, at_line_start)
    return result


def _inline_node(node: Node, context: str, line_start: bool) -> str:
    if isinstance(node, Text):
        return _escape_text(node.value, context, line_start)
    if isinstance(node, Emphasis):
        return "*" + _inline(node.children, context, False) + "*"
    if isinstance(node, Strong):
        return "**" + _inline(node.children, context, False) + "**"
    if isinstance(node, Delete):
        return "~~" + _inline(node.children, context, False) + "~~"
    if isinstance(node, InlineCode):
        return _code_span(node.value, context)
    if isinstance(node, Break):
        if context == "cell":
            return "<br>"
        if context == "heading":
            return " "
        return "\\\n"
    if isinstance(node, Link):
        text = _inline(node.children, context, False)
        return f"[{text}]({_link_destination(node.url, node.title)})"
    if isinstance(node, Image):
        alt = _escape_text(node.alt, context, False)
        return f"![{alt}]({_link_destination(node.url, node.title)})"
    if isinstance(node, Html):
        return node.value if context == "flow" else node.value.replace("\n", " ")
    raise TypeError(f"Cannot serialize inline node type: {type(node).__name__}")


def _escape_text(value: str, context: str, line_start: bool) -> str:
    lines = []
    for index, line in enumerate(value.split("\n")):
        line = _ESCAPE_RE.sub(r"\\\1", line)
        line = _ENTITY_RE.sub(r"\\&", line)
        if context == "flow" and (index > 0 or line_start):
            line = _escape_line_start(line)
        lines.append(line)
    return ("\n" if context == "flow" else " ").join(lines)


def _escape_line_start(line: str) -> str:
    """Keep a line from being read as a block construct."""
    if not line:
        return line
    if line[0] == " ":
        return "&#x20;" + line[1:]
    if line[0] == "\t":
        return "&#x9;" + line[1:]
    if line[0] in "#+-=":
        return "\\" + line
    match = _ORDERED_MARKER_RE.match(line)
    if match:
        return match.group(1) + "\\" + line[match.end(1):]
    return line


def _longest_backtick_run(value: str) -> int:
    return max((len(run) for run in _BACKTICK_RUN_RE.findall(value)), default=0)


def _code_span(value: str, context: str) -> str:
    if not value:
        return ""
    if context != "flow":
        value = value.replace("\n", " ")
    if context == "cell":
        value = value.replace("|", "\\|")
    fence = "`" * (_longest_backtick_run(value) + 1)
    padded = (value.startswith("`") or value.endswith("`")
              or (value.startswith(" ") and value.endswith(" ") and value.strip()))
    pad = " " if padded else ""
    return f"{fence}{pad}{value}{pad}{fence}"


def _link_destination(url: str, title: Optional[str]) -> str:
    if not url or re.search(r"[\s()<>]", url):
        destination = "<" + url.replace("<", "\\<").replace(">", "\\>") + ">"
    else:
        destination = url
    if title:
        escaped_title = title.replace("\\", "\\\\").replace('"', '\\"')
        destination += f' "{escaped_title}"'
    return destination


# =============================================================================
# Inline HTML for <summary> labels
# =============================================================================

class UnsupportedNodeError(TypeError):
    """A node type reached nodes_to_html() that it has no rendering for."""


def nodes_to_html(nodes: Sequence[Node]) -> str:
    """
    Render inline nodes as HTML for use inside a <summary> label.

    Only text, strong, inline code, code blocks and links are supported;
    anything else raises UnsupportedNodeError.
    """
    return "".join(_node_to_html(node) for node in nodes)


def _node_to_html(node: Node) -> str:
    if isinstance(node, Text):
        return html.escape(node.value, quote=False)
    if isinstance(node, Strong):
        return f"<strong>{nodes_to_html(node.children)}</strong>"
    if isinstance(node, InlineCode):
        return f"<code>{html.escape(node.value, quote=False)}</code>"
    if isinstance(node, Code):
        # Newlines as character references so a blank line can't end the HTML block
        body = html.escape(node.value, quote=False).replace("\n", "&#10;")
        return f"<pre>{body}</pre>"
    if isinstance(node, Link):
        href = html.escape(node.url, quote=True)
        return f'<a href="{href}">{nodes_to_html(node.children)}</a>'
    raise UnsupportedNodeError(f"Unsupported node type for inline HTML: {type(node).__name__}")


# =============================================================================
# Builders
# =============================================================================

def create_details_block(summary: Sequence[Node], content: Sequence[Node]) -> list:
    """Wrap content in a collapsible <details> block labelled with summary."""
    summary_html = nodes_to_html(summary)
    content_markdown = stringify_markdown(content).rstrip("\n")
    return [Html(f"<details><summary>{summary_html}</summary>\n\n{content_markdown}\n\n</details>")]


def create_metadata_table_nodes(metadata: Mapping[str, str]) -> list:
    """Build a two-column Property/Value table; no table for empty metadata."""
    if not metadata:
        return []

    rows = [TableRow([TableCell([Text("Property")]), TableCell([Text("Value")])])]
    for key, value in metadata.items():
        rows.append(TableRow([TableCell([Text(key)]), TableCell([Text(str(value))])]))

    return [Table(rows, align=("left", "left"))]
