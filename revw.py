#!/usr/bin/env python3
"""Revw — a modal editor for two-section OUTSIDE/INSIDE journals."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import re
import subprocess
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from prompt_toolkit import Application
from prompt_toolkit.application.current import get_app
from prompt_toolkit.data_structures import Point
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.layout.containers import HSplit, VSplit, Window, WindowAlign
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.layout import Layout
from prompt_toolkit.styles import Style as PtStyle

# ════════════════════════════════════════════════════════════════════════
#  Errors
# ════════════════════════════════════════════════════════════════════════


class RevwError(Exception):
    """Base class for every error reported on the status line."""


class ParseError(RevwError):
    """Malformed JSON, Markdown or Toon input, or a schema violation."""


class StructuralError(RevwError):
    """The buffer is well-formed but the operation cannot find its target."""


class StorageError(RevwError):
    """File or clipboard I/O failed."""


class GuardRejection(RevwError):
    """The operation is not allowed in the current mode."""


# ════════════════════════════════════════════════════════════════════════
#  Data Models
# ════════════════════════════════════════════════════════════════════════

SECTIONS = ("outside", "inside")
OUTSIDE_FIELDS = ("name", "context", "url", "percentage")
INSIDE_FIELDS = ("date", "context")
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class OutsideEntry:
    """An external observation: a named resource with optional url/progress."""
    name: str = ""
    context: str = ""           # may hold literal "\n" escapes
    url: Optional[str] = ""
    percentage: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "context": self.context,
            "url": self.url,
            "percentage": self.percentage,
        }


@dataclass
class InsideEntry:
    """An internal, reflective note labelled by a free-form date."""
    date: str = ""
    context: str = ""

    def to_dict(self) -> dict:
        return {"date": self.date, "context": self.context}


@dataclass
class Document:
    outside: list[OutsideEntry] = field(default_factory=list)
    inside: list[InsideEntry] = field(default_factory=list)

    def section(self, name: str) -> list:
        return self.outside if name == "outside" else self.inside

    def to_dict(self) -> dict:
        return {
            "outside": [e.to_dict() for e in self.outside],
            "inside": [e.to_dict() for e in self.inside],
        }


def expand_escapes(text: str) -> str:
    """Turn the literal two-character ``\\n`` escape into real line breaks."""
    return text.replace("\\n", "\n")


# ════════════════════════════════════════════════════════════════════════
#  Canonical JSON
# ════════════════════════════════════════════════════════════════════════


def _expect_str(value, where: str, optional: bool = False) -> Optional[str]:
    if value is None and optional:
        return None
    if not isinstance(value, str):
        raise ParseError(f"{where} must be a string")
    return value


def _expect_percentage(value, where: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ParseError(f"{where} must be an integer")
    if isinstance(value, int):
        pct = value
    elif isinstance(value, float) and value.is_integer():
        pct = int(value)
    elif isinstance(value, str) and re.fullmatch(r"[+-]?\d+", value.strip()):
        pct = int(value)
    else:
        raise ParseError(f"{where} must be an integer, got {value!r}")
    if pct < 0:
        raise ParseError(f"{where} must not be negative")
    return pct


def _json_section(data: dict, key: str) -> list[dict]:
    items = data.get(key)
    if items is None:
        return []
    if not isinstance(items, list):
        raise ParseError(f"'{key}' is not an array")
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise ParseError(f"{key}[{i}] is not an object")
    return items


def document_from_dict(data) -> Document:
    """Validate decoded JSON against the fixed schema."""
    if not isinstance(data, dict):
        raise ParseError("Invalid JSON structure: expected an object")
    doc = Document()
    for i, item in enumerate(_json_section(data, "outside")):
        where = f"outside[{i}]"
        doc.outside.append(OutsideEntry(
            name=_expect_str(item.get("name", ""), f"{where}.name"),
            context=_expect_str(item.get("context", ""), f"{where}.context"),
            url=_expect_str(item.get("url", ""), f"{where}.url", optional=True),
            percentage=_expect_percentage(item.get("percentage"), f"{where}.percentage"),
        ))
    for i, item in enumerate(_json_section(data, "inside")):
        where = f"inside[{i}]"
        doc.inside.append(InsideEntry(
            date=_expect_str(item.get("date", ""), f"{where}.date"),
            context=_expect_str(item.get("context", ""), f"{where}.context"),
        ))
    return doc


def parse_document(text: str) -> Document:
    """Parse canonical JSON text. An empty buffer is an empty document."""
    if not text.strip():
        return Document()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Invalid JSON: {exc}") from exc
    return document_from_dict(data)


def dump_document(doc: Document) -> str:
    """Serialize to canonical JSON, pretty-printed with 2-space indentation."""
    return json.dumps(doc.to_dict(), indent=2, ensure_ascii=False)


# ════════════════════════════════════════════════════════════════════════
#  Markdown
# ════════════════════════════════════════════════════════════════════════

_MD_SECTION_HEADERS = {"## OUTSIDE": "outside", "## INSIDE": "inside"}
_MD_ENTRY_RE = re.compile(r"^###(?:\s+(.*))?$")
_MD_URL = "**URL:**"
_MD_PERCENTAGE = "**Percentage:**"
_MD_PERCENTAGE_RE = re.compile(r"^(\d+)\s*%?$")


@dataclass
class MarkdownBlock:
    """One entry found in a Markdown buffer, with its inclusive line span."""
    section: str
    title: str
    lines: list[str]
    url: Optional[str]
    percentage: Optional[int]
    start: int
    end: int


def _is_md_header(stripped: str) -> bool:
    return stripped.startswith("## ") or bool(_MD_ENTRY_RE.match(stripped))


def scan_markdown(text: str) -> list[MarkdownBlock]:
    """Find entries in Markdown text.

    Recognizes ``## OUTSIDE`` / ``## INSIDE`` sections and ``### title``
    entry headers. Inside a section, a non-blank line without a header opens
    an entry with that line as its implicit title. An entry ends at the next
    header, at a blank line followed by a new non-marker line, or at EOF.
    Text outside the two sections is skipped.
    """
    lines = text.split("\n")
    blocks: list[MarkdownBlock] = []
    section = None
    i = 0
    while i < len(lines):
        stripped = lines[i].strip()
        if stripped in _MD_SECTION_HEADERS:
            section = _MD_SECTION_HEADERS[stripped]
            i += 1
            continue
        if stripped.startswith("## "):
            section = None
            i += 1
            continue
        if not stripped or section is None:
            i += 1
            continue

        m = _MD_ENTRY_RE.match(stripped)
        title = (m.group(1) or "").strip() if m else stripped
        start = i
        i += 1
        content: list[str] = []
        url = None
        percentage = None
        while i < len(lines):
            raw = lines[i]
            s = raw.strip()
            if _is_md_header(s):
                break
            if not s and i + 1 < len(lines):
                nxt = lines[i + 1].strip()
                if nxt and not nxt.startswith("**") and not _is_md_header(nxt):
                    i += 1
                    break
            if s.startswith(_MD_URL):
                url = s[len(_MD_URL):].strip()
                i += 1
                continue
            if s.startswith(_MD_PERCENTAGE):
                pm = _MD_PERCENTAGE_RE.match(s[len(_MD_PERCENTAGE):].strip())
                if pm:
                    percentage = int(pm.group(1))
                i += 1
                continue
            if s or content:
                content.append(raw)
            i += 1

        while content and not content[-1].strip():
            content.pop()
        blocks.append(MarkdownBlock(
            section=section, title=title, lines=content, url=url,
            percentage=percentage, start=start, end=i - 1,
        ))
    return blocks


def markdown_to_document(text: str) -> Document:
    """Build a Document from Markdown; multi-line contexts become ``\\n`` escapes."""
    doc = Document()
    for block in scan_markdown(text):
        context = "\\n".join(block.lines)
        if block.section == "outside":
            doc.outside.append(OutsideEntry(
                name=block.title, context=context,
                url=block.url if block.url is not None else "",
                percentage=block.percentage,
            ))
        else:
            doc.inside.append(InsideEntry(date=block.title, context=context))
    return doc


def _outside_markdown(entry: OutsideEntry) -> list[str]:
    lines = [f"### {entry.name}"]
    if entry.context:
        lines.append(expand_escapes(entry.context))
    if entry.url:
        lines.extend(["", f"{_MD_URL} {entry.url}"])
    if entry.percentage is not None:
        lines.extend(["", f"{_MD_PERCENTAGE} {entry.percentage}%"])
    return lines


def _inside_markdown(entry: InsideEntry) -> list[str]:
    lines = [f"### {entry.date}"]
    if entry.context:
        lines.append(expand_escapes(entry.context))
    return lines


def document_to_markdown(doc: Document) -> str:
    lines: list[str] = []
    if doc.outside:
        lines.extend(["## OUTSIDE", ""])
        for entry in doc.outside:
            lines.extend(_outside_markdown(entry))
            lines.append("")
    if doc.inside:
        lines.extend(["## INSIDE", ""])
        for entry in doc.inside:
            lines.extend(_inside_markdown(entry))
            lines.append("")
    return "\n".join(lines)


def json_to_markdown(json_text: str) -> str:
    return document_to_markdown(parse_document(json_text))


def markdown_to_json(markdown_text: str) -> str:
    return dump_document(markdown_to_document(markdown_text))


# ════════════════════════════════════════════════════════════════════════
#  Toon
# ════════════════════════════════════════════════════════════════════════

TOON_HEADER_RE = re.compile(r"^([A-Za-z_][\w-]*)\[(\d*)\]\{([^}]*)\}:$")
_TOON_NULL = "null"
_TOON_INDENT = "  "


@dataclass
class ToonRow:
    """A data row of a Toon section, with its inclusive line span."""
    section: str
    fields: list[str]
    cells: list[tuple[str, bool]]   # (value, was_quoted)
    start: int
    end: int


def _toon_quote(value: str) -> str:
    if (any(c in value for c in ',"\n') or value == _TOON_NULL
            or value != value.strip()):
        return '"' + value.replace('"', '""') + '"'
    return value


def _toon_cell(value) -> str:
    if value is None:
        return _TOON_NULL
    if isinstance(value, int):
        return str(value)
    return _toon_quote(value)


def _toon_section(name: str, fields: tuple, entries: list) -> str:
    rows = [f"{name}[{len(entries)}]{{{','.join(fields)}}}:"]
    for entry in entries:
        values = entry.to_dict()
        rows.append(_TOON_INDENT + ",".join(_toon_cell(values[f]) for f in fields))
    return "\n".join(rows)


def document_to_toon(doc: Document) -> str:
    parts = []
    if doc.outside:
        parts.append(_toon_section("outside", OUTSIDE_FIELDS, doc.outside))
    if doc.inside:
        parts.append(_toon_section("inside", INSIDE_FIELDS, doc.inside))
    return "\n\n".join(parts) + "\n" if parts else ""


def split_toon_row(line: str) -> list[tuple[str, bool]]:
    """Split one data row on commas outside double quotes.

    A doubled quote inside a quoted value is a literal quote. Unquoted values
    are stripped; whitespace around a quoted value is dropped.
    """
    cells: list[tuple[str, bool]] = []
    buf: list[str] = []
    quoted = False
    in_quotes = False
    i = 0
    while i < len(line):
        ch = line[i]
        if ch == '"':
            if in_quotes and line[i + 1:i + 2] == '"':
                buf.append('"')
                i += 2
                continue
            if not in_quotes and not quoted and not "".join(buf).strip():
                buf = []
            in_quotes = not in_quotes
            quoted = True
        elif ch == "," and not in_quotes:
            cells.append(_finish_cell(buf, quoted))
            buf = []
            quoted = False
        elif quoted and not in_quotes and ch.isspace():
            pass
        else:
            buf.append(ch)
        i += 1
    cells.append(_finish_cell(buf, quoted))
    return cells


def _finish_cell(buf: list[str], quoted: bool) -> tuple[str, bool]:
    value = "".join(buf)
    return (value if quoted else value.strip()), quoted


def _parse_toon_header(line: str) -> Optional[tuple[str, list[str]]]:
    m = TOON_HEADER_RE.match(line)
    if not m:
        return None
    fields = [f.strip() for f in m.group(3).split(",") if f.strip()]
    return m.group(1), fields


def scan_toon(text: str) -> list[ToonRow]:
    """Collect the data rows of every known section.

    The declared count in a header is informational. A row whose quotes are
    still open continues on the next line. Lines outside a section are
    skipped; a row with the wrong number of cells is a StructuralError.
    """
    lines = text.split("\n")
    rows: list[ToonRow] = []
    section = None
    fields: list[str] = []
    i = 0
    while i < len(lines):
        stripped = lines[i].strip()
        if not stripped:
            section = None
            i += 1
            continue
        header = _parse_toon_header(stripped)
        if header:
            section, fields = header
            i += 1
            continue
        if section not in SECTIONS:
            i += 1
            continue

        start = i
        record = lines[i].lstrip()
        while record.count('"') % 2 and i + 1 < len(lines):
            i += 1
            record += "\n" + lines[i]
        cells = split_toon_row(record)
        if len(cells) != len(fields):
            raise StructuralError(
                f"Field count mismatch on line {start + 1}: "
                f"expected {len(fields)}, got {len(cells)}")
        rows.append(ToonRow(section, list(fields), cells, start, i))
        i += 1
    return rows


def _toon_value(name: str, value: str, quoted: bool):
    if not quoted and name in ("url", "percentage") and value in (_TOON_NULL, ""):
        return None if value == _TOON_NULL or name == "percentage" else value
    if name == "percentage" and re.fullmatch(r"[+-]?\d+", value.strip()):
        return int(value)
    return value


def toon_to_dict(text: str) -> dict:
    """Decode Toon into the canonical JSON shape (values not yet validated)."""
    defaults = {
        "outside": {"name": "", "context": "", "url": "", "percentage": None},
        "inside": {"date": "", "context": ""},
    }
    data: dict[str, list] = {"outside": [], "inside": []}
    for row in scan_toon(text):
        item = dict(defaults[row.section])
        for name, (value, quoted) in zip(row.fields, row.cells):
            if name in item:
                item[name] = _toon_value(name, value, quoted)
        data[row.section].append(item)
    return data


def toon_to_json(toon_text: str) -> str:
    return json.dumps(toon_to_dict(toon_text), indent=2, ensure_ascii=False)


def toon_to_document(text: str) -> Document:
    data = toon_to_dict(text)
    # An unreadable percentage is dropped rather than failing the whole file.
    for item in data["outside"]:
        if not isinstance(item["percentage"], int) or item["percentage"] < 0:
            item["percentage"] = None
    return document_from_dict(data)


def json_to_toon(json_text: str) -> str:
    return document_to_toon(parse_document(json_text))


# ════════════════════════════════════════════════════════════════════════
#  File modes
# ════════════════════════════════════════════════════════════════════════


class FileMode(Enum):
    JSON = "json"
    MARKDOWN = "markdown"
    TOON = "toon"

    @classmethod
    def for_path(cls, path) -> "FileMode":
        suffix = Path(path).suffix.lower()
        if suffix in (".md", ".markdown"):
            return cls.MARKDOWN
        if suffix == ".toon":
            return cls.TOON
        return cls.JSON


def document_from_text(text: str, mode: FileMode) -> Document:
    if mode is FileMode.MARKDOWN:
        return markdown_to_document(text)
    if mode is FileMode.TOON:
        return toon_to_document(text)
    return parse_document(text)


def document_to_text(doc: Document, mode: FileMode) -> str:
    if mode is FileMode.MARKDOWN:
        return document_to_markdown(doc)
    if mode is FileMode.TOON:
        return document_to_toon(doc)
    return dump_document(doc)


def detect_format(text: str) -> Optional[FileMode]:
    """Guess which of the three serializations a pasted text is in."""
    stripped = text.strip()
    if not stripped:
        return None
    try:
        if isinstance(json.loads(stripped), dict):
            return FileMode.JSON
    except json.JSONDecodeError:
        pass
    lines = [line.strip() for line in stripped.split("\n")]
    if any(TOON_HEADER_RE.match(line) for line in lines):
        return FileMode.TOON
    if any(line in _MD_SECTION_HEADERS for line in lines):
        return FileMode.MARKDOWN
    return None


# ════════════════════════════════════════════════════════════════════════
#  Storage
# ════════════════════════════════════════════════════════════════════════


def clean_path(raw: str) -> Path:
    """Normalize a path typed on the command line or pasted from a clipboard."""
    return Path(raw.strip().strip("'\"")).expanduser()


def read_text_file(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StorageError(f"Cannot read {path}: {exc.strerror or exc}") from exc


def write_text_file(path: Path, content: str) -> None:
    try:
        path.write_text(content, encoding="utf-8")
    except OSError as exc:
        raise StorageError(f"Cannot write {path}: {exc.strerror or exc}") from exc


def file_mtime(path: Optional[Path]) -> Optional[float]:
    if path is None:
        return None
    try:
        return path.stat().st_mtime
    except OSError:
        return None


# ════════════════════════════════════════════════════════════════════════
#  Entry Operations
# ════════════════════════════════════════════════════════════════════════


@dataclass
class EntrySpan:
    """Where entry ``index`` of ``section`` sits in the buffer (inclusive lines)."""
    section: str
    index: int
    start: int
    end: int


@dataclass
class EditResult:
    text: str
    message: str
    cursor: Optional[tuple[int, int]] = None


def _percentage_key(entry: OutsideEntry) -> int:
    return entry.percentage or 0


def sort_entries(doc: Document) -> Document:
    """Outside by percentage (desc, null as 0) then name; inside by date desc."""
    return Document(
        outside=sorted(doc.outside, key=lambda e: (-_percentage_key(e), e.name)),
        inside=sorted(doc.inside, key=lambda e: e.date, reverse=True),
    )


def sort_by_percentage(doc: Document) -> Document:
    return Document(
        outside=sorted(doc.outside, key=lambda e: -_percentage_key(e)),
        inside=sorted(doc.inside, key=lambda e: e.date, reverse=True),
    )


def sort_by_name(doc: Document) -> Document:
    return Document(
        outside=sorted(doc.outside, key=lambda e: e.name),
        inside=sorted(doc.inside, key=lambda e: e.date, reverse=True),
    )


def _clone(entry):
    return type(entry)(**entry.to_dict())


class EntryOperations:
    """Entry add/delete/duplicate/order over one buffer representation.

    Every operation is pure: it takes the buffer text and returns an
    EditResult, raising ParseError or StructuralError on failure without
    side effects. Subclasses supply the codec and the span scanner.
    """

    mode = FileMode.JSON

    def load(self, text: str) -> Document:
        return document_from_text(text, self.mode)

    def render(self, doc: Document) -> str:
        return document_to_text(doc, self.mode)

    def entry_spans(self, text: str) -> list[EntrySpan]:
        raise NotImplementedError

    def field_cursor(self, text: str, span: EntrySpan, name: str) -> tuple[int, int]:
        return span.start, 0

    # ── lookup ───────────────────────────────────────────────────────

    def span_at(self, text: str, line: int) -> EntrySpan:
        for span in self.entry_spans(text):
            if span.start <= line <= span.end:
                return span
        raise StructuralError("Cursor is not inside an entry")

    def _span_of(self, text: str, section: str, index: int) -> Optional[EntrySpan]:
        for span in self.entry_spans(text):
            if span.section == section and span.index == index:
                return span
        return None

    def first_line_of(self, text: str, section: str) -> Optional[int]:
        span = self._span_of(text, section, 0)
        return span.start if span else None

    # ── mutations ────────────────────────────────────────────────────

    def add_inside_entry(self, text: str, now: Optional[datetime] = None) -> EditResult:
        doc = self.load(text)
        date = (now or datetime.now()).strftime(DATE_FORMAT)
        doc.inside.insert(0, InsideEntry(date=date))
        new_text = self.render(doc)
        span = self._span_of(new_text, "inside", 0)
        cursor = self.field_cursor(new_text, span, "context") if span else None
        return EditResult(new_text, "New INSIDE entry added", cursor)

    def add_outside_entry(self, text: str) -> EditResult:
        doc = self.load(text)
        doc.outside.append(OutsideEntry())
        new_text = self.render(doc)
        span = self._span_of(new_text, "outside", len(doc.outside) - 1)
        cursor = self.field_cursor(new_text, span, "name") if span else None
        return EditResult(new_text, "New OUTSIDE entry added", cursor)

    def delete_entry_at_cursor(self, text: str, line: int) -> EditResult:
        doc = self.load(text)
        span = self.span_at(text, line)
        del doc.section(span.section)[span.index]
        new_text = self.render(doc)
        cursor = (min(span.start, max(len(new_text.split("\n")) - 1, 0)), 0)
        return EditResult(new_text, "Entry deleted", cursor)

    def duplicate_entry_at_cursor(self, text: str, line: int) -> EditResult:
        doc = self.load(text)
        span = self.span_at(text, line)
        entries = doc.section(span.section)
        entries.insert(span.index + 1, _clone(entries[span.index]))
        new_text = self.render(doc)
        dup = self._span_of(new_text, span.section, span.index + 1)
        return EditResult(new_text, "Entry duplicated", self._indent_cursor(new_text, dup))

    def _indent_cursor(self, text: str, span: Optional[EntrySpan]) -> Optional[tuple[int, int]]:
        if span is None:
            return None
        line = text.split("\n")[span.start]
        return span.start, len(line) - len(line.lstrip())

    def _reorder(self, text: str, sorter: Callable[[Document], Document],
                 message: str) -> EditResult:
        doc = self.load(text)
        if not doc.outside and not doc.inside:
            return EditResult(text, "No entries")
        return EditResult(self.render(sorter(doc)), message)

    def order_entries(self, text: str) -> EditResult:
        return self._reorder(text, sort_entries, "Entries ordered")

    def order_by_percentage(self, text: str) -> EditResult:
        return self._reorder(text, sort_by_percentage, "Entries ordered by percentage")

    def order_by_name(self, text: str) -> EditResult:
        return self._reorder(text, sort_by_name, "Entries ordered by name")


# ── JSON ─────────────────────────────────────────────────────────────


def _json_entry_spans(text: str) -> list[EntrySpan]:
    """Locate the objects of the top-level section arrays by a character scan.

    Tracks nesting depth and the key that opened each array, so string
    contents containing braces or brackets never confuse the scan.
    """
    spans: list[EntrySpan] = []
    counts = {name: 0 for name in SECTIONS}
    depth = 0
    line = 0
    in_string = escaped = False
    token: list[str] = []
    last_string = None
    key = None
    array_key = None
    start = None
    for ch in text:
        if ch == "\n":
            line += 1
        if in_string:
            if escaped:
                escaped = False
                token.append(ch)
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
                last_string = "".join(token)
            else:
                token.append(ch)
            continue
        if ch == '"':
            in_string = True
            token = []
        elif ch == ":" and depth == 1:
            key = last_string
        elif ch in "{[":
            depth += 1
            if depth == 2:
                array_key = key if ch == "[" else None
            elif depth == 3 and ch == "{" and array_key in SECTIONS:
                start = line
        elif ch in "}]":
            if depth == 3 and ch == "}" and start is not None:
                spans.append(EntrySpan(array_key, counts[array_key], start, line))
                counts[array_key] += 1
                start = None
            depth -= 1
            if depth <= 1:
                array_key = None
    return spans


class JsonOperations(EntryOperations):
    mode = FileMode.JSON

    def entry_spans(self, text: str) -> list[EntrySpan]:
        parse_document(text)
        return _json_entry_spans(text)

    def field_cursor(self, text: str, span: EntrySpan, name: str) -> tuple[int, int]:
        marker = f'"{name}": "'
        lines = text.split("\n")
        for i in range(span.start, span.end + 1):
            col = lines[i].find(marker)
            if col != -1:
                return i, col + len(marker)
        return span.start, 0


# ── Markdown ─────────────────────────────────────────────────────────


def _collapse_blank_runs(lines: list[str]) -> list[str]:
    out: list[str] = []
    for line in lines:
        if not line.strip() and out and not out[-1].strip():
            continue
        out.append(line)
    return out


class MarkdownOperations(EntryOperations):
    """Markdown entries are edited by line surgery so surrounding text survives."""

    mode = FileMode.MARKDOWN

    def entry_spans(self, text: str) -> list[EntrySpan]:
        spans = []
        counts = {name: 0 for name in SECTIONS}
        for block in scan_markdown(text):
            spans.append(EntrySpan(block.section, counts[block.section], block.start, block.end))
            counts[block.section] += 1
        return spans

    def add_inside_entry(self, text: str, now: Optional[datetime] = None) -> EditResult:
        date = (now or datetime.now()).strftime(DATE_FORMAT)
        lines = text.split("\n") if text else []
        header = next((i for i, l in enumerate(lines) if l.strip() == "## INSIDE"), None)
        if header is None:
            while lines and not lines[-1].strip():
                lines.pop()
            prefix = [""] if lines else []
            lines.extend(prefix + ["## INSIDE", "", f"### {date}", ""])
            return EditResult("\n".join(lines), "New INSIDE entry added", (len(lines) - 1, 0))
        new = ["", f"### {date}", ""]
        if header + 1 < len(lines) and not lines[header + 1].strip():
            new = new[:-1]
        lines[header + 1:header + 1] = new
        return EditResult("\n".join(lines), "New INSIDE entry added", (header + 3, 0))

    def add_outside_entry(self, text: str) -> EditResult:
        lines = text.split("\n") if text else []
        has_outside = any(l.strip() == "## OUTSIDE" for l in lines)
        inside = next((i for i, l in enumerate(lines) if l.strip() == "## INSIDE"), None)
        if not has_outside:
            new = ["## OUTSIDE", "", "### ", ""]
            at = inside if inside is not None else 0
            if inside is None and lines and any(l.strip() for l in lines):
                at = len(lines)
                new = [""] + new
            lines[at:at] = new
            row = at + new.index("### ")
            return EditResult("\n".join(lines), "New OUTSIDE entry added", (row, 4))
        # The OUTSIDE section runs to the next "## " header, wherever INSIDE is.
        header = next(i for i, l in enumerate(lines) if l.strip() == "## OUTSIDE")
        end = next((i for i in range(header + 1, len(lines))
                    if lines[i].strip().startswith("## ")), len(lines))
        at = end
        while at > header + 1 and not lines[at - 1].strip():
            at -= 1
        new = ["", "### "]
        if at == end and at < len(lines):
            new.append("")
        lines[at:at] = new
        return EditResult("\n".join(lines), "New OUTSIDE entry added", (at + 1, 4))

    def delete_entry_at_cursor(self, text: str, line: int) -> EditResult:
        span = self.span_at(text, line)
        lines = text.split("\n")
        kept = _collapse_blank_runs(lines[:span.start] + lines[span.end + 1:])
        cursor = (min(span.start, max(len(kept) - 1, 0)), 0)
        return EditResult("\n".join(kept), "Entry deleted", cursor)

    def duplicate_entry_at_cursor(self, text: str, line: int) -> EditResult:
        span = self.span_at(text, line)
        block = scan_markdown(text)[self._block_number(text, span)]
        if block.section == "outside":
            clone = _outside_markdown(OutsideEntry(
                name=block.title, context="\\n".join(block.lines),
                url=block.url or "", percentage=block.percentage))
        else:
            clone = _inside_markdown(InsideEntry(block.title, "\\n".join(block.lines)))
        lines = text.split("\n")
        at = span.end + 1
        if lines[span.end].strip():
            insert = [""] + clone
            row = at + 1
        else:
            insert = clone + [""]
            row = at
        lines[at:at] = insert
        return EditResult("\n".join(lines), "Entry duplicated", (row, 0))

    def _block_number(self, text: str, span: EntrySpan) -> int:
        for n, other in enumerate(self.entry_spans(text)):
            if other.start == span.start:
                return n
        raise StructuralError("Cursor is not inside an entry")


# ── Toon ─────────────────────────────────────────────────────────────


class ToonOperations(EntryOperations):
    mode = FileMode.TOON

    def entry_spans(self, text: str) -> list[EntrySpan]:
        spans = []
        counts = {name: 0 for name in SECTIONS}
        for row in scan_toon(text):
            spans.append(EntrySpan(row.section, counts[row.section], row.start, row.end))
            counts[row.section] += 1
        return spans

    def field_cursor(self, text: str, span: EntrySpan, name: str) -> tuple[int, int]:
        line = text.split("\n")[span.start]
        if name == "context":
            return span.start, len(line)
        return span.start, len(_TOON_INDENT)


_OPERATIONS = {
    FileMode.JSON: JsonOperations(),
    FileMode.MARKDOWN: MarkdownOperations(),
    FileMode.TOON: ToonOperations(),
}


def operations_for(mode: FileMode) -> EntryOperations:
    return _OPERATIONS[mode]


# ════════════════════════════════════════════════════════════════════════
#  Undo History
# ════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Snapshot:
    text: str
    line: int = 0
    col: int = 0


class UndoHistory:
    """Bounded undo/redo stacks of whole-buffer snapshots.

    Pushing clears redo. A speculative push can be taken back with
    discard_last(), which also restores the redo stack it cleared.
    """

    def __init__(self, limit: int = 100):
        self.limit = max(1, limit)
        self._undo: list[Snapshot] = []
        self._redo: list[Snapshot] = []
        self._stash: Optional[tuple[list[Snapshot], Optional[Snapshot]]] = None

    def __len__(self):
        return len(self._undo)

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def push(self, snapshot: Snapshot) -> None:
        self._undo.append(snapshot)
        dropped = self._undo.pop(0) if len(self._undo) > self.limit else None
        self._stash = (self._redo, dropped)
        self._redo = []

    def discard_last(self) -> Optional[Snapshot]:
        if not self._undo:
            return None
        snapshot = self._undo.pop()
        if self._stash is not None:
            redo, dropped = self._stash
            self._redo = redo
            if dropped is not None:
                self._undo.insert(0, dropped)
            self._stash = None
        return snapshot

    def undo(self, current: Snapshot) -> Optional[Snapshot]:
        if not self._undo:
            return None
        self._stash = None
        self._redo.append(current)
        return self._undo.pop()

    def redo(self, current: Snapshot) -> Optional[Snapshot]:
        if not self._redo:
            return None
        self._stash = None
        self._undo.append(current)
        if len(self._undo) > self.limit:
            self._undo.pop(0)
        return self._redo.pop()

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()
        self._stash = None


# ════════════════════════════════════════════════════════════════════════
#  Search
# ════════════════════════════════════════════════════════════════════════


def _fold(text: str) -> str:
    # Per-character lowering that never changes the string length.
    return "".join(c.lower() if len(c.lower()) == 1 else c for c in text)


def find_in_lines(lines: list[str], query: str) -> list[tuple[int, int]]:
    """Case-insensitive, non-overlapping (line, col) matches in reading order."""
    needle = _fold(query)
    matches: list[tuple[int, int]] = []
    if not needle:
        return matches
    for row, line in enumerate(lines):
        hay = _fold(line)
        pos = hay.find(needle)
        while pos != -1:
            matches.append((row, pos))
            pos = hay.find(needle, pos + len(needle))
    return matches


class SearchState:
    def __init__(self):
        self.query = ""
        self.matches: list[tuple[int, int]] = []
        self.index: Optional[int] = None

    def run(self, query: str, matches: list[tuple[int, int]]) -> None:
        self.query = query
        self.matches = matches
        self.index = 0 if matches else None

    def step(self, direction: int) -> Optional[tuple[int, int]]:
        if not self.matches:
            return None
        current = self.index if self.index is not None else -direction
        self.index = (current + direction) % len(self.matches)
        return self.matches[self.index]

    @property
    def current(self) -> Optional[tuple[int, int]]:
        return self.matches[self.index] if self.index is not None else None

    def describe(self) -> str:
        return f"Match {self.index + 1} of {len(self.matches)} for '{self.query}'"

    def clear(self) -> None:
        self.query = ""
        self.matches = []
        self.index = None


# ════════════════════════════════════════════════════════════════════════
#  Substitute
# ════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class SubstituteCommand:
    pattern: str
    replacement: str
    whole_buffer: bool = False
    every: bool = False        # g: all occurrences per line
    confirm: bool = False      # c: ask per match


def parse_substitute(text: str) -> SubstituteCommand:
    """Parse ``s/pat/rep/[gc]`` or ``%s/pat/rep/[gc]``; patterns are literal."""
    whole = text.startswith("%")
    body = text[1:] if whole else text
    if not body.startswith("s/"):
        raise ParseError("Invalid substitute syntax. Use :s/pattern/replacement/[flags]")
    parts = body[2:].split("/", 2)
    if len(parts) < 2:
        raise ParseError("Invalid substitute syntax. Use :s/pattern/replacement/[flags]")
    pattern, replacement = parts[0], parts[1]
    flags = parts[2] if len(parts) == 3 else ""
    if not pattern:
        raise ParseError("Empty pattern")
    unknown = set(flags) - set("gc")
    if unknown:
        raise ParseError(f"Unknown substitute flag: {''.join(sorted(unknown))}")
    return SubstituteCommand(pattern, replacement, whole, "g" in flags, "c" in flags)


def _target_rows(cmd: SubstituteCommand, lines: list[str], cursor_line: int) -> range:
    if cmd.whole_buffer:
        return range(len(lines))
    return range(cursor_line, min(cursor_line + 1, len(lines)))


def substitute_lines(lines: list[str], cmd: SubstituteCommand,
                     cursor_line: int = 0) -> tuple[list[str], int]:
    out = list(lines)
    count = 0
    for row in _target_rows(cmd, out, cursor_line):
        line = out[row]
        if cmd.every:
            n = line.count(cmd.pattern)
            if n:
                out[row] = line.replace(cmd.pattern, cmd.replacement)
                count += n
        else:
            pos = line.find(cmd.pattern)
            if pos != -1:
                out[row] = line[:pos] + cmd.replacement + line[pos + len(cmd.pattern):]
                count += 1
    return out, count


@dataclass(frozen=True)
class SubstituteMatch:
    line: int
    col: int
    pattern: str
    replacement: str


def collect_matches(lines: list[str], cmd: SubstituteCommand,
                    cursor_line: int = 0) -> list[SubstituteMatch]:
    matches: list[SubstituteMatch] = []
    for row in _target_rows(cmd, lines, cursor_line):
        pos = lines[row].find(cmd.pattern)
        while pos != -1:
            matches.append(SubstituteMatch(row, pos, cmd.pattern, cmd.replacement))
            if not cmd.every:
                break
            pos = lines[row].find(cmd.pattern, pos + len(cmd.pattern))
    return matches


def apply_match(lines: list[str], match: SubstituteMatch) -> bool:
    """Replace one precomputed match in place; stale coordinates are skipped."""
    if match.line >= len(lines):
        return False
    line = lines[match.line]
    end = match.col + len(match.pattern)
    if line[match.col:end] != match.pattern:
        return False
    lines[match.line] = line[:match.col] + match.replacement + line[end:]
    return True


class ConfirmSession:
    """State of an interactive ``c``-flag substitution."""

    def __init__(self, matches: list[SubstituteMatch], entry: Snapshot):
        self.matches = matches
        self.entry = entry
        self.index = 0
        self.applied = 0

    @property
    def done(self) -> bool:
        return self.index >= len(self.matches)

    @property
    def current(self) -> SubstituteMatch:
        return self.matches[self.index]

    def prompt(self) -> str:
        return (f"Replace with '{self.current.replacement}'? (y/n/a/q) "
                f"[{self.index + 1}/{len(self.matches)}]")

    def accept(self, lines: list[str]) -> None:
        if apply_match(lines, self.current):
            self.applied += 1
        self.index += 1

    def skip(self) -> None:
        self.index += 1

    def accept_all(self, lines: list[str]) -> None:
        # Right-to-left so earlier columns on a shared line stay valid.
        for match in reversed(self.matches[self.index:]):
            if apply_match(lines, match):
                self.applied += 1
        self.index = len(self.matches)


# ════════════════════════════════════════════════════════════════════════
#  Cards (View mode)
# ════════════════════════════════════════════════════════════════════════


@dataclass
class Card:
    """An entry as rendered in View mode."""
    section: str
    index: int
    lines: list[str]


def _card_lines(entry) -> list[str]:
    if isinstance(entry, OutsideEntry):
        lines = [entry.name]
        if entry.context:
            lines.extend(expand_escapes(entry.context).split("\n"))
        if entry.url:
            lines.append(entry.url)
        if entry.percentage is not None:
            lines.append(f"{entry.percentage}%")
        return lines
    lines = [entry.date]
    if entry.context:
        lines.extend(expand_escapes(entry.context).split("\n"))
    return lines


def build_cards(doc: Document, pattern: str = "") -> list[Card]:
    """Cards for every entry, OUTSIDE first, optionally filtered (case-insensitive)."""
    cards = [Card("outside", i, _card_lines(e)) for i, e in enumerate(doc.outside)]
    cards += [Card("inside", i, _card_lines(e)) for i, e in enumerate(doc.inside)]
    if pattern:
        needle = _fold(pattern)
        cards = [c for c in cards if any(needle in _fold(line) for line in c.lines)]
    return cards


def find_in_cards(cards: list[Card], query: str) -> list[tuple[int, int]]:
    """Matches as (card position, column) pairs."""
    needle = _fold(query)
    matches: list[tuple[int, int]] = []
    if not needle:
        return matches
    for pos, card in enumerate(cards):
        for line in card.lines:
            hay = _fold(line)
            col = hay.find(needle)
            while col != -1:
                matches.append((pos, col))
                col = hay.find(needle, col + len(needle))
    return matches


# ════════════════════════════════════════════════════════════════════════
#  Normal-mode prefixes
# ════════════════════════════════════════════════════════════════════════


class PrefixState:
    """Two-key Normal-mode sequences (gg, g-, g+, dd, yy).

    Either empty or holding one pending prefix key. The state resets after
    every second key, matched or not.
    """

    PREFIXES = frozenset("gdy")
    SEQUENCES = frozenset({"gg", "g-", "g+", "dd", "yy"})

    def __init__(self):
        self.pending: Optional[str] = None

    def feed(self, key: str) -> tuple[bool, Optional[str]]:
        """Return (consumed, completed_sequence)."""
        if self.pending is None:
            if key in self.PREFIXES:
                self.pending = key
                return True, None
            return False, None
        sequence = self.pending + key
        self.pending = None
        return True, (sequence if sequence in self.SEQUENCES else None)

    def reset(self) -> None:
        self.pending = None


# ════════════════════════════════════════════════════════════════════════
#  Configuration
# ════════════════════════════════════════════════════════════════════════


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    undo_limit: int = 100
    autoreload: bool = False
    status_seconds: float = 3.0

    @classmethod
    def from_env(cls, environ=None) -> "Config":
        env = os.environ if environ is None else environ
        config = cls()
        if env.get("REVW_UNDO_LIMIT"):
            try:
                config.undo_limit = max(1, int(env["REVW_UNDO_LIMIT"]))
            except ValueError:
                pass
        if env.get("REVW_STATUS_SECONDS"):
            try:
                config.status_seconds = float(env["REVW_STATUS_SECONDS"])
            except ValueError:
                pass
        config.autoreload = _env_flag(env.get("REVW_AUTORELOAD"))
        return config


# ════════════════════════════════════════════════════════════════════════
#  Clipboard
# ════════════════════════════════════════════════════════════════════════


def _clipboard_copy(text):
    """Copy text to system clipboard."""
    for cmd in [["wl-copy"], ["xclip", "-selection", "clipboard"]]:
        try:
            subprocess.run(cmd, input=text, text=True, timeout=2, check=True)
            return True
        except (FileNotFoundError, subprocess.TimeoutExpired,
                subprocess.CalledProcessError):
            continue
    return False


def _clipboard_paste():
    """Get text from system clipboard."""
    for cmd in [["wl-paste", "--no-newline"], ["xclip", "-selection", "clipboard", "-o"]]:
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=2)
            if result.returncode == 0:
                return result.stdout
        except (FileNotFoundError, subprocess.TimeoutExpired):
            continue
    return None


class SystemClipboard:
    def get(self) -> str:
        text = _clipboard_paste()
        if text is None:
            raise StorageError("Clipboard unavailable (install wl-clipboard or xclip)")
        return text

    def set(self, text: str) -> None:
        if not _clipboard_copy(text):
            raise StorageError("Clipboard unavailable (install wl-clipboard or xclip)")


# ════════════════════════════════════════════════════════════════════════
#  Session
# ════════════════════════════════════════════════════════════════════════


class ViewMode(Enum):
    VIEW = "view"
    EDIT = "edit"


class InputMode(Enum):
    NORMAL = "normal"
    INSERT = "insert"
    COMMAND = "command"
    SEARCH = "search"
    CONFIRM = "confirm"


HISTORY_LIMIT = 10


def _remember(history: list[str], item: str) -> None:
    if not item:
        return
    if item in history:
        history.remove(item)
    history.append(item)
    del history[:-HISTORY_LIMIT]


class Session:
    """All editor state: buffer, cursor, modes, history and collaborators.

    Operations raise RevwError before touching the buffer, so a failure
    leaves text and history as they were. execute_command() and
    handle_key() turn those errors into status messages.
    """

    def __init__(self, text: str = "", file_mode: FileMode = FileMode.JSON,
                 config: Optional[Config] = None, clipboard=None,
                 status_sink: Optional[Callable[[str], None]] = None):
        self.config = config or Config()
        self.text = text
        self.file_mode = file_mode
        self.file_path: Optional[Path] = None
        self.file_mtime: Optional[float] = None
        self.view_mode = ViewMode.EDIT
        self.input_mode = InputMode.NORMAL
        self.cursor_line = 0
        self.cursor_col = 0
        self.selected_card = 0
        self.history = UndoHistory(self.config.undo_limit)
        self.search = SearchState()
        self.prefix = PrefixState()
        self.command_buffer = ""
        self.search_buffer = ""
        self.command_history: list[str] = []
        self.search_history: list[str] = []
        self.history_pos: Optional[int] = None
        self.filter_pattern = ""
        self.register = ""
        self.confirm: Optional[ConfirmSession] = None
        self._insert_entry: Optional[Snapshot] = None
        self.is_modified = False
        self.auto_reload = self.config.autoreload
        self.show_line_numbers = False
        self.clipboard = clipboard or SystemClipboard()
        self.status_sink = status_sink
        self.status = ""

    # ── basics ───────────────────────────────────────────────────────

    @property
    def lines(self) -> list[str]:
        return self.text.split("\n")

    @property
    def operations(self) -> EntryOperations:
        return operations_for(self.file_mode)

    def set_status(self, message: str) -> None:
        self.status = message
        if self.status_sink:
            self.status_sink(message)

    def document(self) -> Document:
        return document_from_text(self.text, self.file_mode)

    def render(self, doc: Document) -> str:
        return document_to_text(doc, self.file_mode)

    def cards(self) -> list[Card]:
        return build_cards(self.document(), self.filter_pattern)

    def snapshot(self) -> Snapshot:
        return Snapshot(self.text, self.cursor_line, self.cursor_col)

    def restore(self, snapshot: Snapshot) -> None:
        self.text = snapshot.text
        self.cursor_line = snapshot.line
        self.cursor_col = snapshot.col
        self.clamp_cursor()

    def clamp_cursor(self) -> None:
        lines = self.lines
        self.cursor_line = min(max(self.cursor_line, 0), len(lines) - 1)
        self.cursor_col = min(max(self.cursor_col, 0), len(lines[self.cursor_line]))

    def _clamp_card(self) -> None:
        try:
            count = len(self.cards())
        except RevwError:
            count = 0
        self.selected_card = min(max(self.selected_card, 0), max(count - 1, 0))

    def commit(self, result: EditResult) -> bool:
        """Apply an operation's result as one undoable mutation."""
        if result.text == self.text:
            self.set_status(result.message)
            return False
        self.history.push(self.snapshot())
        self.text = result.text
        self.is_modified = True
        if result.cursor:
            self.cursor_line, self.cursor_col = result.cursor
        self.clamp_cursor()
        self.set_status(result.message)
        return True

    def _still_parses(self, before: str, after: str) -> None:
        """Reject an edit that breaks a buffer which parsed before it."""
        try:
            document_from_text(before, self.file_mode)
        except RevwError:
            return
        try:
            document_from_text(after, self.file_mode)
        except RevwError as exc:
            raise ParseError(f"Change rejected, buffer would not parse: {exc}") from exc

    # ── undo ─────────────────────────────────────────────────────────

    def undo(self) -> None:
        snapshot = self.history.undo(self.snapshot())
        if snapshot is None:
            self.set_status("Already at oldest change")
            return
        self.restore(snapshot)
        self.is_modified = True
        self._clamp_card()
        self.set_status("Undo")

    def redo(self) -> None:
        snapshot = self.history.redo(self.snapshot())
        if snapshot is None:
            self.set_status("Already at newest change")
            return
        self.restore(snapshot)
        self.is_modified = True
        self._clamp_card()
        self.set_status("Redo")

    # ── files ────────────────────────────────────────────────────────

    def open(self, path: Path) -> bool:
        """Load a file, choosing the format from its suffix."""
        try:
            content = read_text_file(path)
            mode = FileMode.for_path(path)
            document_from_text(content, mode)
        except RevwError as exc:
            self.set_status(f"Error loading '{path}': {exc}")
            return False
        self.text = content
        self.file_mode = mode
        self.file_path = path
        self.file_mtime = file_mtime(path)
        self.history.clear()
        self.search.clear()
        self.filter_pattern = ""
        self.cursor_line = self.cursor_col = self.selected_card = 0
        self.is_modified = False
        self.set_status(f"Opened: {path}")
        return True

    def new_file(self, path: Path) -> None:
        self.text = ""
        self.file_mode = FileMode.for_path(path)
        self.file_path = path
        self.file_mtime = None
        self.history.clear()
        self.cursor_line = self.cursor_col = self.selected_card = 0
        self.is_modified = False
        self.set_status(f"New file: {path}")

    def reload(self) -> bool:
        if self.file_path is None:
            self.set_status("No file to reload")
            return False
        try:
            content = read_text_file(self.file_path)
            document_from_text(content, self.file_mode)
        except RevwError as exc:
            self.set_status(f"Reload failed: {exc}")
            return False
        if content != self.text:
            self.history.push(self.snapshot())
            self.text = content
            self.clamp_cursor()
            self._clamp_card()
        self.file_mtime = file_mtime(self.file_path)
        self.is_modified = False
        self.set_status(f"Reloaded: {self.file_path}")
        return True

    def check_autoreload(self) -> bool:
        """Reload when the file changed on disk; never interrupts Insert mode."""
        if not self.auto_reload or self.file_path is None:
            return False
        if self.input_mode is not InputMode.NORMAL:
            return False
        mtime = file_mtime(self.file_path)
        if mtime is None or mtime == self.file_mtime:
            return False
        return self.reload()

    def save(self, path: Optional[Path] = None) -> bool:
        """Write the buffer. An unparseable buffer is never written."""
        target = path or self.file_path
        if target is None:
            self.set_status("No filename. Use :w FILE")
            return False
        mode = FileMode.for_path(target) if path else self.file_mode
        try:
            doc = self.document()
            if mode is FileMode.JSON or mode is not self.file_mode:
                content = document_to_text(doc, mode)
            else:
                content = self.text
            write_text_file(target, content)
        except RevwError as exc:
            self.set_status(f"Not saved: {exc}")
            return False
        if content != self.text:
            self.text = content
            self.clamp_cursor()
        self.file_mode = mode
        self.file_path = target
        self.file_mtime = file_mtime(target)
        self.is_modified = False
        self.set_status(f"Saved: {target}")
        return True

    def _autosave(self, message: str) -> None:
        if self.file_path is not None and self.save():
            self.set_status(f"{message} (saved)")

    # ── entry commands ───────────────────────────────────────────────

    def _apply(self, result: EditResult) -> bool:
        """Commit a structural change, saving straight away in View mode."""
        changed = self.commit(result)
        if changed and self.view_mode is ViewMode.VIEW:
            self._autosave(result.message)
        return changed

    def _entry_op(self, name: str, *args) -> bool:
        return self._apply(getattr(self.operations, name)(self.text, *args))

    def add_inside(self) -> None:
        if self._entry_op("add_inside_entry") and self.view_mode is ViewMode.VIEW:
            self.filter_pattern = ""
            self.selected_card = len(self.document().outside)

    def add_outside(self) -> None:
        if self._entry_op("add_outside_entry") and self.view_mode is ViewMode.VIEW:
            self.filter_pattern = ""
            self.selected_card = len(self.document().outside) - 1

    def order(self, which: str = "") -> None:
        name = {"": "order_entries", "p": "order_by_percentage",
                "n": "order_by_name"}[which]
        self._entry_op(name)
        self._clamp_card()

    def delete_entry(self) -> None:
        if self.view_mode is ViewMode.VIEW:
            self._card_op("delete")
        else:
            self._entry_op("delete_entry_at_cursor", self.cursor_line)

    def duplicate_entry(self) -> None:
        if self.view_mode is ViewMode.VIEW:
            self._card_op("duplicate")
        else:
            self._entry_op("duplicate_entry_at_cursor", self.cursor_line)

    def _card_op(self, action: str) -> None:
        if self.filter_pattern:
            raise GuardRejection(f"Cannot {action} entries while a filter is active (:nof)")
        cards = self.cards()
        if not cards:
            self.set_status("No entries")
            return
        card = cards[min(self.selected_card, len(cards) - 1)]
        doc = self.document()
        entries = doc.section(card.section)
        if action == "delete":
            del entries[card.index]
            message = "Entry deleted"
        else:
            entries.insert(card.index + 1, _clone(entries[card.index]))
            message = "Entry duplicated"
        self._apply(EditResult(self.render(doc), message))
        if action == "duplicate":
            self.selected_card += 1
        self._clamp_card()

    def clear_content(self, section: Optional[str] = None) -> None:
        doc = self.document()
        if section is None:
            doc = Document()
            message = "Content cleared"
        else:
            doc.section(section).clear()
            message = f"{section.upper()} section cleared"
        self._apply(EditResult(self.render(doc), message, (0, 0)))
        self._clamp_card()

    def jump_to_section(self, section: str) -> None:
        label = section.upper()
        if self.view_mode is ViewMode.VIEW:
            for pos, card in enumerate(self.cards()):
                if card.section == section:
                    self.selected_card = pos
                    self.set_status(f"Jumped to {label}")
                    return
        else:
            line = self.operations.first_line_of(self.text, section)
            if line is not None:
                self.cursor_line, self.cursor_col = line, 0
                self.set_status(f"Jumped to {label}")
                return
        self.set_status(f"No {label} entries found")

    # ── clipboard ────────────────────────────────────────────────────

    def copy_to_clipboard(self, mode: Optional[FileMode] = None) -> None:
        if mode is None or mode is self.file_mode:
            content = self.text
        else:
            content = document_to_text(self.document(), mode)
        self.clipboard.set(content)
        self.set_status(f"Copied to clipboard ({(mode or self.file_mode).value})")

    def _clipboard_document(self) -> Optional[Document]:
        raw = self.clipboard.get()
        mode = detect_format(raw)
        if mode is not None:
            return document_from_text(raw.strip(), mode)
        candidate = clean_path(raw) if raw.strip() else None
        if candidate is not None and candidate.is_file():
            self.open(candidate)
            return None
        raise ParseError("Clipboard does not hold a journal or a file path")

    def paste_from_clipboard(self) -> None:
        doc = self._clipboard_document()
        if doc is None:
            return
        self._apply(EditResult(self.render(doc), "Pasted from clipboard", (0, 0)))
        self._clamp_card()

    def append_from_clipboard(self) -> None:
        incoming = self._clipboard_document()
        if incoming is None:
            return
        doc = self.document()
        doc.outside.extend(incoming.outside)
        doc.inside.extend(incoming.inside)
        count = len(incoming.outside) + len(incoming.inside)
        self._apply(EditResult(self.render(doc), f"Appended {count} entries"))
        self._clamp_card()

    # ── section / entry clipboard ────────────────────────────────────

    def copy_section(self, section: str) -> None:
        label = section.upper()
        entries = self.document().section(section)
        if not entries:
            self.set_status(f"No {label} entries found")
            return
        part = Document()
        part.section(section).extend(entries)
        self.clipboard.set(self.render(part))
        self.set_status(f"Copied {label} section to clipboard")

    def paste_section(self, section: str, append: bool = False) -> None:
        """Overwrite one section with the clipboard's, or add to it.

        Appended INSIDE entries go on top, OUTSIDE entries at the end.
        """
        label = section.upper()
        raw = self.clipboard.get()
        mode = detect_format(raw)
        if mode is None:
            raise ParseError("Clipboard does not hold a journal")
        incoming = document_from_text(raw.strip(), mode).section(section)
        if not incoming:
            raise ParseError(f"No {label} entries in clipboard")
        doc = self.document()
        entries = doc.section(section)
        if not append:
            entries[:] = incoming
            message = f"{label} section overwritten from clipboard"
        elif section == "inside":
            entries[:0] = incoming
            message = "INSIDE entries inserted at top from clipboard"
        else:
            entries.extend(incoming)
            message = "OUTSIDE entries appended from clipboard"
        self._apply(EditResult(self.render(doc), message))
        self._clamp_card()

    def _selected_entry(self) -> tuple[str, int]:
        if self.view_mode is ViewMode.VIEW:
            cards = self.cards()
            if not cards:
                raise StructuralError("No entry selected")
            card = cards[min(self.selected_card, len(cards) - 1)]
            return card.section, card.index
        span = self.operations.span_at(self.text, self.cursor_line)
        return span.section, span.index

    def copy_url(self) -> None:
        section, index = self._selected_entry()
        entry = self.document().section(section)[index]
        if section != "outside" or not entry.url:
            self.set_status("No URL found in selected entry")
            return
        self.clipboard.set(entry.url)
        self.set_status(f"Copied URL: {entry.url}")

    def paste_url(self) -> None:
        url = self.clipboard.get().strip()
        if not url.startswith(("http://", "https://")):
            raise ParseError("Clipboard doesn't contain a valid URL "
                             "(must start with http:// or https://)")
        section, index = self._selected_entry()
        if section != "outside":
            raise GuardRejection("INSIDE entries have no URL")
        doc = self.document()
        doc.outside[index].url = url
        self._apply(EditResult(self.render(doc), f"URL pasted: {url}"))

    def copy_cards(self, as_json: bool = False) -> None:
        """Copy the selected card as shown, or as a JSON journal."""
        if self.view_mode is not ViewMode.VIEW:
            raise GuardRejection("Not in card view mode")
        cards = self.cards()
        if not cards:
            self.set_status("No cards to copy")
            return
        card = cards[min(self.selected_card, len(cards) - 1)]
        if as_json:
            part = Document()
            part.section(card.section).append(self.document().section(card.section)[card.index])
            self.clipboard.set(dump_document(part))
            self.set_status("Copied 1 card(s) as JSON")
        else:
            self.clipboard.set("\n".join([card.section.upper(), ""] + card.lines))
            self.set_status("Copied 1 card(s)")

    # ── view / filter / search ───────────────────────────────────────

    def toggle_view(self) -> None:
        if self.view_mode is ViewMode.EDIT:
            try:
                self.document()
            except RevwError as exc:
                self.set_status(f"Cannot switch to View mode: {exc}")
                return
            self.view_mode = ViewMode.VIEW
            self.set_status("View mode")
        else:
            self.view_mode = ViewMode.EDIT
            self.set_status("Edit mode")
        self.filter_pattern = ""
        self.search.clear()
        self._clamp_card()

    def set_filter(self, pattern: str) -> None:
        if self.view_mode is not ViewMode.VIEW:
            raise GuardRejection("Filter only works in View mode")
        if not pattern:
            self.clear_filter()
            return
        self.filter_pattern = pattern
        self.selected_card = 0
        self.set_status(f"Filter: {pattern} ({len(self.cards())} entries)")

    def clear_filter(self) -> None:
        self.filter_pattern = ""
        self._clamp_card()
        self.set_status("Filter cleared")

    def run_search(self, query: str) -> None:
        self.input_mode = InputMode.NORMAL
        if not query:
            return
        _remember(self.search_history, query)
        if self.view_mode is ViewMode.VIEW:
            matches = find_in_cards(self.cards(), query)
        else:
            matches = find_in_lines(self.lines, query)
        self.search.run(query, matches)
        if not matches:
            self.set_status(f"Pattern not found: {query}")
            return
        self._jump(matches[0])
        self.set_status(self.search.describe())

    def step_search(self, direction: int) -> None:
        target = self.search.step(direction)
        if target is None:
            if self.search.query:
                self.set_status(f"Pattern not found: {self.search.query}")
            return
        self._jump(target)
        self.set_status(self.search.describe())

    def _jump(self, target: tuple[int, int]) -> None:
        if self.view_mode is ViewMode.VIEW:
            self.selected_card = target[0]
        else:
            self.cursor_line, self.cursor_col = target
            self.clamp_cursor()

    # ── substitute ───────────────────────────────────────────────────

    def substitute(self, text: str) -> None:
        if self.view_mode is not ViewMode.EDIT:
            raise GuardRejection("Substitute only works in Edit mode")
        cmd = parse_substitute(text)
        lines = self.lines
        if cmd.confirm:
            matches = collect_matches(lines, cmd, self.cursor_line)
            if not matches:
                self.set_status(f"Pattern not found: {cmd.pattern}")
                return
            entry = self.snapshot()
            self.history.push(entry)
            self.confirm = ConfirmSession(matches, entry)
            self.input_mode = InputMode.CONFIRM
            self._show_confirm()
            return
        new_lines, count = substitute_lines(lines, cmd, self.cursor_line)
        if not count:
            self.set_status(f"Pattern not found: {cmd.pattern}")
            return
        new_text = "\n".join(new_lines)
        self._still_parses(self.text, new_text)
        plural = "s" if count != 1 else ""
        self.commit(EditResult(new_text, f"{count} substitution{plural} made"))

    def _show_confirm(self) -> None:
        match = self.confirm.current
        self.cursor_line, self.cursor_col = match.line, match.col
        self.clamp_cursor()
        self.set_status(self.confirm.prompt())

    def answer_confirm(self, key: str) -> None:
        confirm = self.confirm
        if confirm is None:
            self.input_mode = InputMode.NORMAL
            return
        if key in ("q", "escape"):
            self.restore(confirm.entry)
            self.history.discard_last()
            self._end_confirm()
            self.set_status("Substitute cancelled")
            return
        lines = self.lines
        if key == "y":
            confirm.accept(lines)
        elif key == "n":
            confirm.skip()
        elif key == "a":
            confirm.accept_all(lines)
        else:
            return
        self.text = "\n".join(lines)
        if not confirm.done:
            self._show_confirm()
            return
        self._end_confirm()
        try:
            self._still_parses(confirm.entry.text, self.text)
        except ParseError as exc:
            self.restore(confirm.entry)
            self.history.discard_last()
            self.set_status(str(exc))
            return
        if confirm.applied == 0:
            self.history.discard_last()
        else:
            self.is_modified = True
        plural = "s" if confirm.applied != 1 else ""
        self.set_status(f"{confirm.applied} substitution{plural} completed")

    def _end_confirm(self) -> None:
        self.confirm = None
        self.input_mode = InputMode.NORMAL

    # ── insert mode ──────────────────────────────────────────────────

    def begin_insert(self, how: str = "i") -> None:
        if self.view_mode is not ViewMode.EDIT:
            return
        self._insert_entry = self.snapshot()
        self.history.push(self._insert_entry)
        if how == "a":
            self.cursor_col = min(self.cursor_col + 1, len(self.lines[self.cursor_line]))
        elif how == "o":
            lines = self.lines
            lines.insert(self.cursor_line + 1, "")
            self.text = "\n".join(lines)
            self.cursor_line += 1
            self.cursor_col = 0
        self.input_mode = InputMode.INSERT
        self.set_status("-- INSERT --")

    def end_insert(self) -> None:
        entry = self._insert_entry
        self._insert_entry = None
        if entry is not None:
            if self.text == entry.text:
                self.history.discard_last()
            else:
                self.is_modified = True
        self.input_mode = InputMode.NORMAL
        self.set_status("")

    def insert_text(self, chars: str) -> None:
        lines = self.lines
        line = lines[self.cursor_line]
        lines[self.cursor_line] = line[:self.cursor_col] + chars + line[self.cursor_col:]
        self.text = "\n".join(lines)
        self.cursor_col += len(chars)

    def insert_newline(self) -> None:
        lines = self.lines
        line = lines[self.cursor_line]
        lines[self.cursor_line:self.cursor_line + 1] = [line[:self.cursor_col], line[self.cursor_col:]]
        self.text = "\n".join(lines)
        self.cursor_line += 1
        self.cursor_col = 0

    def backspace(self) -> None:
        lines = self.lines
        if self.cursor_col > 0:
            line = lines[self.cursor_line]
            lines[self.cursor_line] = line[:self.cursor_col - 1] + line[self.cursor_col:]
            self.cursor_col -= 1
        elif self.cursor_line > 0:
            prev = lines[self.cursor_line - 1]
            lines[self.cursor_line - 1:self.cursor_line + 1] = [prev + lines[self.cursor_line]]
            self.cursor_line -= 1
            self.cursor_col = len(prev)
        else:
            return
        self.text = "\n".join(lines)

    def delete_forward(self) -> None:
        lines = self.lines
        line = lines[self.cursor_line]
        if self.cursor_col < len(line):
            lines[self.cursor_line] = line[:self.cursor_col] + line[self.cursor_col + 1:]
        elif self.cursor_line + 1 < len(lines):
            lines[self.cursor_line:self.cursor_line + 2] = [line + lines[self.cursor_line + 1]]
        else:
            return
        self.text = "\n".join(lines)

    # ── normal-mode line edits ───────────────────────────────────────

    def delete_char(self) -> None:
        line = self.lines[self.cursor_line]
        if self.cursor_col >= len(line):
            return
        self.history.push(self.snapshot())
        self.delete_forward()
        self.is_modified = True
        self.clamp_cursor()

    def delete_line(self) -> None:
        lines = self.lines
        self.history.push(self.snapshot())
        self.register = lines[self.cursor_line]
        del lines[self.cursor_line]
        self.text = "\n".join(lines)
        self.cursor_col = 0
        self.is_modified = True
        self.clamp_cursor()

    def yank_line(self) -> None:
        self.register = self.lines[self.cursor_line]
        self.set_status("Line yanked")

    def put_line(self) -> None:
        lines = self.lines
        self.history.push(self.snapshot())
        lines.insert(self.cursor_line + 1, self.register)
        self.text = "\n".join(lines)
        self.cursor_line += 1
        self.cursor_col = 0
        self.is_modified = True

    def move(self, dline: int = 0, dcol: int = 0) -> None:
        if self.view_mode is ViewMode.VIEW:
            if dline:
                self.selected_card += dline
                self._clamp_card()
            return
        self.cursor_line += dline
        self.cursor_col += dcol
        self.clamp_cursor()

    def move_to(self, line: Optional[int] = None, col: Optional[int] = None) -> None:
        if self.view_mode is ViewMode.VIEW:
            if line is not None:
                self.selected_card = line
                self._clamp_card()
            return
        if line is not None:
            self.cursor_line = line if line >= 0 else len(self.lines) - 1
        self.clamp_cursor()
        if col is not None:
            self.cursor_col = col if col >= 0 else len(self.lines[self.cursor_line])


# ════════════════════════════════════════════════════════════════════════
#  Commands
# ════════════════════════════════════════════════════════════════════════


def _cmd_write(s: Session, arg: str) -> bool:
    s.save(clean_path(arg) if arg else None)
    return False


def _cmd_write_quit(s: Session, arg: str) -> bool:
    return s.save(clean_path(arg) if arg else None)


def _cmd_quit(s: Session, arg: str) -> bool:
    return True


def _cmd_edit(s: Session, arg: str) -> bool:
    if not arg:
        s.reload()
        return False
    path = clean_path(arg)
    if path.exists():
        s.open(path)
    else:
        s.new_file(path)
    return False


def _cmd_enew(s: Session, arg: str) -> bool:
    s.history.push(s.snapshot())
    s.text = ""
    s.file_path = None
    s.file_mtime = None
    s.cursor_line = s.cursor_col = s.selected_card = 0
    s.filter_pattern = ""
    s.is_modified = False
    s.set_status("New buffer")
    return False


def _cmd_autoreload(s: Session, arg: str) -> bool:
    s.auto_reload = not s.auto_reload
    s.file_mtime = file_mtime(s.file_path)
    s.set_status(f"Auto-reload {'enabled' if s.auto_reload else 'disabled'}")
    return False


def _cmd_filter(s: Session, arg: str) -> bool:
    s.set_filter(arg)
    return False


def _cmd_nofilter(s: Session, arg: str) -> bool:
    s.clear_filter()
    return False


def _cmd_nohighlight(s: Session, arg: str) -> bool:
    s.search.clear()
    s.set_status("Search highlight cleared")
    return False


def _cmd_set(s: Session, arg: str) -> bool:
    if arg in ("nu", "number"):
        s.show_line_numbers = True
        s.set_status("Line numbers on")
    elif arg in ("nonu", "nonumber"):
        s.show_line_numbers = False
        s.set_status("Line numbers off")
    else:
        s.set_status(f"Unknown option: {arg}")
    return False


def _simple(action: Callable[[Session], None]) -> Callable[[Session, str], bool]:
    def run(s: Session, arg: str) -> bool:
        action(s)
        return False
    return run


COMMANDS: dict[str, Callable[[Session, str], bool]] = {
    "w": _cmd_write,
    "wq": _cmd_write_quit,
    "x": _simple(lambda s: s.clear_content()),
    "q": _cmd_quit,
    "e": _cmd_edit,
    "enew": _cmd_enew,
    "ar": _cmd_autoreload,
    "ai": _simple(Session.add_inside),
    "ao": _simple(Session.add_outside),
    "o": _simple(lambda s: s.order()),
    "op": _simple(lambda s: s.order("p")),
    "on": _simple(lambda s: s.order("n")),
    "gi": _simple(lambda s: s.jump_to_section("inside")),
    "go": _simple(lambda s: s.jump_to_section("outside")),
    "dd": _simple(Session.delete_entry),
    "yy": _simple(Session.duplicate_entry),
    "xi": _simple(lambda s: s.clear_content("inside")),
    "xo": _simple(lambda s: s.clear_content("outside")),
    "c": _simple(lambda s: s.copy_to_clipboard()),
    "cj": _simple(lambda s: s.copy_to_clipboard(FileMode.JSON)),
    "cm": _simple(lambda s: s.copy_to_clipboard(FileMode.MARKDOWN)),
    "ct": _simple(lambda s: s.copy_to_clipboard(FileMode.TOON)),
    "ci": _simple(lambda s: s.copy_section("inside")),
    "co": _simple(lambda s: s.copy_section("outside")),
    "cu": _simple(Session.copy_url),
    "cc": _simple(lambda s: s.copy_cards()),
    "ccj": _simple(lambda s: s.copy_cards(as_json=True)),
    "v": _simple(Session.paste_from_clipboard),
    "va": _simple(Session.append_from_clipboard),
    "vi": _simple(lambda s: s.paste_section("inside")),
    "vo": _simple(lambda s: s.paste_section("outside")),
    "vai": _simple(lambda s: s.paste_section("inside", append=True)),
    "vao": _simple(lambda s: s.paste_section("outside", append=True)),
    "vu": _simple(Session.paste_url),
    "f": _cmd_filter,
    "nof": _cmd_nofilter,
    "noh": _cmd_nohighlight,
    "set": _cmd_set,
}


def execute_command(s: Session, command: str) -> bool:
    """Run one ``:`` command line. Returns True when the session should end."""
    command = command.strip()
    if not command:
        return False
    try:
        if command.startswith(("s/", "%s/")):
            s.substitute(command)
            return False
        name, _, arg = command.partition(" ")
        handler = COMMANDS.get(name)
        if handler is None:
            s.set_status(f"Unknown command: {command}")
            return False
        return handler(s, arg.strip())
    except RevwError as exc:
        s.set_status(str(exc))
        return False


# ════════════════════════════════════════════════════════════════════════
#  Key Dispatch
# ════════════════════════════════════════════════════════════════════════

_MOTIONS = {
    "h": (0, -1), "left": (0, -1),
    "l": (0, 1), "right": (0, 1),
    "j": (1, 0), "down": (1, 0),
    "k": (-1, 0), "up": (-1, 0),
    "pagedown": (20, 0), "pageup": (-20, 0),
}


def _is_printable(key: str) -> bool:
    return len(key) == 1 and key.isprintable()


def _run_sequence(s: Session, sequence: str) -> None:
    if sequence == "gg":
        s.move_to(0, 0)
    elif sequence == "g-":
        s.undo()
    elif sequence == "g+":
        s.redo()
    elif s.view_mode is ViewMode.VIEW:
        if sequence == "dd":
            s.delete_entry()
        else:
            s.duplicate_entry()
    elif sequence == "dd":
        s.delete_line()
    else:
        s.yank_line()


def _normal_key(s: Session, key: str) -> bool:
    consumed, sequence = s.prefix.feed(key)
    if sequence:
        _run_sequence(s, sequence)
        return False
    if consumed:
        return False
    if key in _MOTIONS:
        s.move(*_MOTIONS[key])
    elif key == "0":
        s.move_to(col=0)
    elif key == "$":
        s.move_to(col=-1)
    elif key == "G":
        s.move_to(line=-1 if s.view_mode is ViewMode.EDIT else len(s.cards()) - 1)
    elif key == ":":
        s.input_mode = InputMode.COMMAND
        s.command_buffer = ""
        s.history_pos = None
    elif key == "/":
        s.input_mode = InputMode.SEARCH
        s.search_buffer = ""
        s.history_pos = None
    elif key in ("i", "a", "o"):
        s.begin_insert(key)
    elif key == "r":
        s.toggle_view()
    elif key == "u":
        s.undo()
    elif key == "n":
        s.step_search(1)
    elif key == "N":
        s.step_search(-1)
    elif s.view_mode is ViewMode.EDIT and key == "x":
        s.delete_char()
    elif s.view_mode is ViewMode.EDIT and key == "p":
        s.put_line()
    elif key == "escape":
        s.set_status("")
    return False


def _insert_key(s: Session, key: str) -> bool:
    if key == "escape":
        s.end_insert()
    elif key == "enter":
        s.insert_newline()
    elif key == "backspace":
        s.backspace()
    elif key == "delete":
        s.delete_forward()
    elif key == "tab":
        s.insert_text("  ")
    elif key in ("left", "right", "up", "down"):
        s.move(*_MOTIONS[key])
    elif _is_printable(key):
        s.insert_text(key)
    return False


def _browse_history(s: Session, history: list[str], direction: int) -> Optional[str]:
    if not history:
        return None
    if s.history_pos is None:
        if direction > 0:
            return None
        s.history_pos = len(history) - 1
    else:
        s.history_pos += direction
        if s.history_pos >= len(history):
            s.history_pos = None
            return ""
        s.history_pos = max(s.history_pos, 0)
    return history[s.history_pos]


def _line_editor_key(s: Session, key: str, attr: str, history: list[str]) -> Optional[str]:
    """Shared editing for the command and search lines; returns text on Enter."""
    text = getattr(s, attr)
    if key == "escape":
        setattr(s, attr, "")
        s.input_mode = InputMode.NORMAL
    elif key == "enter":
        setattr(s, attr, "")
        return text
    elif key == "backspace":
        if not text:
            s.input_mode = InputMode.NORMAL
        setattr(s, attr, text[:-1])
    elif key in ("up", "down"):
        recalled = _browse_history(s, history, -1 if key == "up" else 1)
        if recalled is not None:
            setattr(s, attr, recalled)
    elif _is_printable(key):
        setattr(s, attr, text + key)
    return None


def _command_key(s: Session, key: str) -> bool:
    line = _line_editor_key(s, key, "command_buffer", s.command_history)
    if line is None:
        return False
    s.input_mode = InputMode.NORMAL
    _remember(s.command_history, line.strip())
    return execute_command(s, line)


def _search_key(s: Session, key: str) -> bool:
    query = _line_editor_key(s, key, "search_buffer", s.search_history)
    if query is not None:
        s.run_search(query)
    return False


def _confirm_key(s: Session, key: str) -> bool:
    s.answer_confirm(key)
    return False


_MODE_HANDLERS = {
    InputMode.NORMAL: _normal_key,
    InputMode.INSERT: _insert_key,
    InputMode.COMMAND: _command_key,
    InputMode.SEARCH: _search_key,
    InputMode.CONFIRM: _confirm_key,
}


def handle_key(s: Session, key: str) -> bool:
    """Feed one key press to the session. Returns True when it should end."""
    try:
        return _MODE_HANDLERS[s.input_mode](s, key)
    except RevwError as exc:
        s.set_status(str(exc))
        return False


# ════════════════════════════════════════════════════════════════════════
#  Application State
# ════════════════════════════════════════════════════════════════════════


class AppState:
    """Terminal-side state kept beside the editing Session."""

    def __init__(self, session: Session):
        self.session = session
        self.notification_task = None
        self.quit_pending = 0.0


# ════════════════════════════════════════════════════════════════════════
#  Helpers
# ════════════════════════════════════════════════════════════════════════


def show_notification(state: AppState, message: str, duration: float = 3.0) -> None:
    """Schedule the status bar to clear once ``message`` has been shown for a while."""
    get_app().invalidate()
    if state.notification_task:
        state.notification_task.cancel()
        state.notification_task = None
    if not message:
        return

    async def _clear():
        await asyncio.sleep(duration)
        if state.session.status == message:
            state.session.status = ""
            get_app().invalidate()

    state.notification_task = asyncio.ensure_future(_clear())


def _search_spans(s: Session) -> dict[int, list[tuple[int, int]]]:
    spans: dict[int, list[tuple[int, int]]] = {}
    width = len(s.search.query)
    for row, col in s.search.matches:
        spans.setdefault(row, []).append((col, col + width))
    return spans


def _line_fragments(line: str, row: int, s: Session, marks: list[tuple[int, int]]) -> list:
    has_cursor = row == s.cursor_line and s.input_mode is not InputMode.COMMAND
    if not marks and not has_cursor:
        return [("class:editor", line)]
    frags = []
    for col, ch in enumerate(line + " "):
        style = "class:editor"
        if any(a <= col < b for a, b in marks):
            style = "class:search-match"
        if has_cursor and col == s.cursor_col:
            style = "class:cursor"
        if col == len(line) and style == "class:editor":
            break
        frags.append((style, ch))
    return frags


def edit_fragments(s: Session) -> list:
    lines = s.lines
    gutter = len(str(len(lines)))
    spans = _search_spans(s)
    frags = []
    for row, line in enumerate(lines):
        if s.show_line_numbers:
            frags.append(("class:line-number", f"{row + 1:>{gutter}} "))
        frags.extend(_line_fragments(line, row, s, spans.get(row, [])))
        frags.append(("", "\n"))
    return frags


def view_fragments(s: Session) -> tuple[list, int]:
    """Card view text plus the row where the selected card starts."""
    try:
        cards = s.cards()
    except RevwError as exc:
        return [("class:error", f" {exc}\n")], 0
    if not cards:
        label = "No entries match the filter" if s.filter_pattern else "No entries"
        return [("class:hint", f" {label}\n")], 0
    frags = []
    row = selected_row = 0
    for pos, card in enumerate(cards):
        selected = pos == s.selected_card
        if selected:
            selected_row = row
        head = "class:card.header.selected" if selected else "class:card.header"
        body = "class:card.selected" if selected else "class:card"
        frags.append((head, f" {card.section.upper()} {card.index + 1}  {card.lines[0]}\n"))
        row += 1
        for line in card.lines[1:]:
            frags.append((body, f"   {line}\n"))
            row += 1
        frags.append(("", "\n"))
        row += 1
    return frags, selected_row


def status_fragments(s: Session) -> list:
    if s.input_mode is InputMode.COMMAND:
        return [("class:status", f":{s.command_buffer}")]
    if s.input_mode is InputMode.SEARCH:
        return [("class:status", f"/{s.search_buffer}")]
    name = s.file_path.name if s.file_path else "[No Name]"
    modified = " [+]" if s.is_modified else ""
    mode = s.input_mode.value.upper()
    left = f" {mode}  {s.view_mode.value.upper()}  {s.file_mode.value}  {name}{modified}"
    if s.filter_pattern:
        left += f"  filter:{s.filter_pattern}"
    if s.auto_reload:
        left += "  [ar]"
    frags = [("class:status.mode", left)]
    if s.status:
        frags.append(("class:status", f"  {s.status}"))
    return frags


# ════════════════════════════════════════════════════════════════════════
#  Application
# ════════════════════════════════════════════════════════════════════════

# prompt_toolkit key name -> core key name
_KEY_NAMES = {
    "escape": "escape",
    "enter": "enter",
    "backspace": "backspace",
    "delete": "delete",
    "tab": "tab",
    "up": "up",
    "down": "down",
    "left": "left",
    "right": "right",
    "pageup": "pageup",
    "pagedown": "pagedown",
}


def create_app(session: Session) -> Application:
    state = AppState(session)
    session.status_sink = lambda message: show_notification(
        state, message, session.config.status_seconds)

    def get_body():
        if session.view_mode is ViewMode.VIEW:
            return view_fragments(session)[0]
        return edit_fragments(session)

    def get_cursor():
        if session.view_mode is ViewMode.VIEW:
            return Point(x=0, y=view_fragments(session)[1])
        gutter = len(str(len(session.lines))) + 1 if session.show_line_numbers else 0
        return Point(x=session.cursor_col + gutter, y=session.cursor_line)

    body = Window(
        FormattedTextControl(get_body, get_cursor_position=get_cursor,
                             focusable=True, show_cursor=False),
        wrap_lines=False,
    )

    def get_hint():
        if session.input_mode is InputMode.CONFIRM:
            return [("class:accent", " y yes  n no  a all  q quit ")]
        return [("class:hint", " :w save  :q quit  r view/edit  ^q quit ")]

    status_bar = VSplit([
        Window(FormattedTextControl(lambda: status_fragments(session)), style="class:status"),
        Window(FormattedTextControl(get_hint), align=WindowAlign.RIGHT,
               style="class:status", width=40),
    ], height=1)

    root = HSplit([body, status_bar])

    kb = KeyBindings()

    def dispatch(event, key):
        if handle_key(session, key):
            event.app.exit()
        event.app.invalidate()

    def _bind(pt_key, key):
        @kb.add(pt_key, eager=(pt_key == "escape"))
        def _(event):
            dispatch(event, key)

    for pt_key, key in _KEY_NAMES.items():
        _bind(pt_key, key)

    @kb.add("<any>")
    def _(event):
        if _is_printable(event.data):
            dispatch(event, event.data)

    @kb.add("c-q")
    def _(event):
        now = time.monotonic()
        if now - state.quit_pending < 2.0:
            event.app.exit()
        else:
            state.quit_pending = now
            session.set_status("Press Ctrl+Q again to quit.")

    # ── Style ────────────────────────────────────────────────────────

    style = PtStyle.from_dict({
        "": "#e0e0e0 bg:#2a2a2a",
        "editor": "",
        "cursor": "reverse",
        "search-match": "bg:#e0af68 #2a2a2a",
        "line-number": "#666666",
        "status": "#8a8a8a bg:#333333",
        "status.mode": "#e0e0e0 bg:#333333",
        "hint": "#777777",
        "accent": "#e0af68",
        "error": "#f7768e",
        "card": "#a0a0a0",
        "card.selected": "#e0e0e0 bg:#383838",
        "card.header": "bold #7aa2f7",
        "card.header.selected": "bold #e0af68 bg:#383838",
    })

    # ── Build Application ────────────────────────────────────────────

    app = Application(
        layout=Layout(root, focused_element=body),
        key_bindings=kb,
        style=style,
        full_screen=True,
        mouse_support=False,
    )
    app.ttimeoutlen = 0.05
    return app


async def autoreload_loop(session: Session, interval: float = 1.0) -> None:
    """Poll the open file and reload it when it changes on disk."""
    while True:
        await asyncio.sleep(interval)
        if session.check_autoreload():
            get_app().invalidate()


# ════════════════════════════════════════════════════════════════════════
#  Entry point
# ════════════════════════════════════════════════════════════════════════


def convert_file(path: Path, mode: FileMode) -> str:
    """Read a journal in any format and render it in ``mode``."""
    content = read_text_file(path)
    return document_to_text(document_from_text(content, FileMode.for_path(path)), mode)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="revw", description="Modal editor for OUTSIDE/INSIDE journals.")
    parser.add_argument("file", nargs="?", help="journal file (.json, .md or .toon)")
    parser.add_argument("--stdout", action="store_true",
                        help="print FILE converted, without starting the editor")
    parser.add_argument("--output", metavar="PATH",
                        help="write FILE converted to PATH, without starting the editor")
    fmt = parser.add_mutually_exclusive_group()
    fmt.add_argument("--json", dest="format", action="store_const", const="json")
    fmt.add_argument("--markdown", dest="format", action="store_const", const="markdown")
    fmt.add_argument("--toon", dest="format", action="store_const", const="toon")
    return parser


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.stdout or args.output:
        if not args.file:
            parser.error("FILE is required with --stdout/--output")
        try:
            output = convert_file(clean_path(args.file), FileMode(args.format or "json"))
            if args.output:
                write_text_file(clean_path(args.output), output)
            else:
                sys.stdout.write(output if output.endswith("\n") else output + "\n")
        except RevwError as exc:
            print(f"revw: {exc}", file=sys.stderr)
            sys.exit(1)
        return

    session = Session(config=Config.from_env())
    if args.file:
        path = clean_path(args.file)
        if path.exists():
            session.open(path)
        else:
            session.new_file(path)

    app = create_app(session)
    app.run(pre_run=lambda: app.create_background_task(autoreload_loop(session)))


if __name__ == "__main__":
    main()
