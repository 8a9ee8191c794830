#!/usr/bin/env python3
"""
Tests for the journal model, format converters, entry operations, undo,
search, substitute and the modal dispatcher.
"""

import json
import os
import tempfile
from datetime import datetime
from pathlib import Path

# Add source paths for imports
import sys
sys.path.insert(0, str(Path(__file__).parent))

from revw import (
    Config, Document, FileMode, InputMode, InsideEntry,
    JsonOperations, MarkdownOperations, OutsideEntry, ParseError, PrefixState,
    SearchState, Session, Snapshot, StructuralError, ToonOperations,
    UndoHistory, ViewMode, _remember, _toon_quote, build_cards, convert_file,
    detect_format, document_to_markdown, document_to_toon, dump_document,
    find_in_lines, handle_key, json_to_markdown, main,
    markdown_to_document, markdown_to_json, parse_document, parse_substitute,
    scan_markdown, sort_by_name, sort_by_percentage, sort_entries,
    split_toon_row, toon_to_document, toon_to_json,
)

NOW = datetime(2025, 1, 2, 3, 4, 5)


class FakeClipboard:
    def __init__(self, text=""):
        self.text = text

    def get(self):
        return self.text

    def set(self, text):
        self.text = text


def _sample():
    return Document(
        outside=[
            OutsideEntry("Zebra", "striped", "https://z.example", 50),
            OutsideEntry("Apple", "line one\\nline two", "", 100),
            OutsideEntry("Banana", "", None, None),
        ],
        inside=[
            InsideEntry("2024-01-01 09:00:00", "morning"),
            InsideEntry("2024-03-01 10:00:00", "later"),
        ],
    )


def _names(text, mode=FileMode.JSON):
    if mode is FileMode.MARKDOWN:
        doc = markdown_to_document(text)
    elif mode is FileMode.TOON:
        doc = toon_to_document(text)
    else:
        doc = parse_document(text)
    return [e.name for e in doc.outside]


def _line_of(text, needle):
    for i, line in enumerate(text.split("\n")):
        if needle in line:
            return i
    raise AssertionError(f"{needle!r} not in buffer")


def _keys(session, *keys):
    quit_requested = False
    for key in keys:
        quit_requested = handle_key(session, key) or quit_requested
    return quit_requested


def _command(session, text):
    return _keys(session, ":", *text, "enter")


# ── Model / canonical JSON ───────────────────────────────────────────


def test_parse_document():
    doc = parse_document(dump_document(_sample()))
    assert doc == _sample()
    print("  Canonical round trip OK")

    assert parse_document("") == Document()
    assert parse_document("   \n") == Document()
    print("  Empty buffer OK")

    doc = parse_document('{"outside": [{"name": "A", "percentage": "42", "extra": 1}]}')
    assert doc.outside[0].percentage == 42
    assert doc.outside[0].url == ""
    assert doc.inside == []
    print("  Coercion and defaults OK")

    for bad in ('{"outside": [', '[1, 2]', '{"outside": {}}',
                '{"outside": [{"percentage": -5}]}',
                '{"outside": [{"percentage": "lots"}]}',
                '{"inside": [{"date": 3}]}'):
        try:
            parse_document(bad)
        except ParseError:
            pass
        else:
            raise AssertionError(f"accepted {bad!r}")
    print("  Schema violations rejected OK")


def test_dump_document():
    text = dump_document(Document(outside=[OutsideEntry("Ünïcode")]))
    assert text.startswith('{\n  "outside": [\n    {\n      "name": "Ünïcode"')
    assert '"percentage": null' in text
    assert not text.endswith("\n")
    print("  Pretty, 2-space, non-ASCII kept OK")


# ── Markdown ─────────────────────────────────────────────────────────


def test_markdown_output():
    md = document_to_markdown(_sample())
    lines = md.split("\n")
    assert lines[:9] == [
        "## OUTSIDE", "", "### Zebra", "striped", "",
        "**URL:** https://z.example", "", "**Percentage:** 50%", "",
    ]
    assert "line one\nline two" in md
    assert "**URL:** \n" not in md
    assert "## INSIDE\n\n### 2024-01-01 09:00:00\nmorning" in md
    print("  Markdown layout OK")

    assert document_to_markdown(Document(inside=[InsideEntry("d", "c")])).startswith("## INSIDE")
    assert document_to_markdown(Document()) == ""
    print("  Empty sections omitted OK")


def test_markdown_round_trip():
    doc = _sample()
    doc.outside[2].url = ""
    back = markdown_to_document(document_to_markdown(doc))
    assert back == doc
    assert markdown_to_json(json_to_markdown(dump_document(doc))) == dump_document(doc)
    print("  Markdown round trip OK")


def test_markdown_tolerance():
    md = (
        "# My journal\n"
        "free-form intro\n"
        "\n"
        "## OUTSIDE\n"
        "\n"
        "First\n"
        "about first\n"
        "\n"
        "Second\n"
        "about second\n"
        "**Percentage:** 75%\n"
        "\n"
        "## INSIDE\n"
        "\n"
        "Monday\n"
        "felt good\n"
        "\n"
        "\n"
    )
    doc = markdown_to_document(md)
    assert [(e.name, e.context, e.percentage) for e in doc.outside] == [
        ("First", "about first", None), ("Second", "about second", 75)]
    assert doc.inside == [InsideEntry("Monday", "felt good")]
    print("  Implicit titles and blank-line boundaries OK")

    doc = markdown_to_document("## OUTSIDE\n\n###\nbody\n\n**Percentage:** -3%\n")
    assert doc.outside[0].name == ""
    assert doc.outside[0].percentage is None
    print("  Empty header and bad percentage OK")

    blocks = scan_markdown("## OUTSIDE\n\n### A\nalpha\n\n### B\nbeta")
    assert [(b.title, b.start, b.end) for b in blocks] == [("A", 2, 4), ("B", 5, 6)]
    print("  Block spans OK")


# ── Toon ─────────────────────────────────────────────────────────────


def test_toon_quoting():
    assert _toon_quote("Test, Name") == '"Test, Name"'
    assert _toon_quote('say "hi"') == '"say ""hi"""'
    assert _toon_quote("null") == '"null"'
    assert _toon_quote(" padded") == '" padded"'
    assert _toon_quote("plain text") == "plain text"

    doc = Document(outside=[OutsideEntry("Test, Name", 'say "hi"', "", 5)])
    toon = document_to_toon(doc)
    assert toon == (
        "outside[1]{name,context,url,percentage}:\n"
        '  "Test, Name","say ""hi""",,5\n'
    )
    assert toon_to_document(toon).outside[0].name == "Test, Name"
    print("  Quote escaping OK")

    assert split_toon_row('a, "b, c" ,d') == [("a", False), ("b, c", True), ("d", False)]
    assert split_toon_row('"",x') == [("", True), ("x", False)]
    print("  CSV split OK")


def test_toon_round_trip():
    doc = _sample()
    doc.outside.append(OutsideEntry("null", "two\nreal lines", " spaced ", 0))
    toon = document_to_toon(doc)
    assert "\n\ninside[2]{date,context}:\n" in toon
    assert toon_to_document(toon) == doc
    print("  Toon lossless OK")


def test_toon_parsing():
    text = (
        "Some notes before the table\n"
        "\n"
        "outside[9]{name,percentage}:\n"
        "  A,abc\n"
        "  B,42\n"
        "  C,\n"
    )
    data = json.loads(toon_to_json(text))
    assert [e["percentage"] for e in data["outside"]] == ["abc", 42, None]
    assert data["outside"][0]["url"] == ""
    print("  Declared count ignored, percentage typing OK")

    doc = toon_to_document(text)
    assert [e.percentage for e in doc.outside] == [None, 42, None]
    assert [e.name for e in doc.outside] == ["A", "B", "C"]
    print("  Unreadable percentage dropped on open OK")

    try:
        toon_to_json("outside[1]{name,context,url,percentage}:\n  a,b\n")
    except StructuralError as exc:
        assert "expected 4, got 2" in str(exc)
    else:
        raise AssertionError("field count mismatch accepted")
    print("  Field count mismatch OK")


def test_detect_format():
    assert detect_format(dump_document(_sample())) is FileMode.JSON
    assert detect_format(document_to_toon(_sample())) is FileMode.TOON
    assert detect_format(document_to_markdown(_sample())) is FileMode.MARKDOWN
    assert detect_format("/tmp/journal.json") is None
    print("  Format detection OK")


# ── Ordering ─────────────────────────────────────────────────────────


def test_ordering():
    doc = Document(outside=[
        OutsideEntry("Zebra", percentage=50),
        OutsideEntry("Apple", percentage=100),
        OutsideEntry("Banana", percentage=100),
    ])
    assert [e.name for e in sort_entries(doc).outside] == ["Apple", "Banana", "Zebra"]
    print("  Percentage then name OK")

    doc = Document(outside=[
        OutsideEntry("Zebra", percentage=100),
        OutsideEntry("Apple", percentage=50),
        OutsideEntry("Banana", percentage=100),
    ])
    once = sort_by_percentage(doc)
    assert [e.name for e in once.outside] == ["Zebra", "Banana", "Apple"]
    assert sort_by_percentage(once) == once
    print("  Stable, idempotent percentage order OK")

    doc = Document(outside=[
        OutsideEntry("A", percentage=None),
        OutsideEntry("B", percentage=10),
        OutsideEntry("C", percentage=0),
    ])
    assert [e.name for e in sort_by_percentage(doc).outside] == ["B", "A", "C"]
    print("  Null as 0 OK")

    doc = Document(
        outside=[OutsideEntry("b"), OutsideEntry("B"), OutsideEntry("a")],
        inside=[InsideEntry("2024-01-01"), InsideEntry("2025-06-01"), InsideEntry("2024-12-31")],
    )
    ordered = sort_by_name(doc)
    assert [e.name for e in ordered.outside] == ["B", "a", "b"]
    assert [e.date for e in ordered.inside] == ["2025-06-01", "2024-12-31", "2024-01-01"]
    print("  Name order, inside by date OK")

    result = JsonOperations().order_entries(dump_document(_sample()))
    assert _names(result.text) == ["Apple", "Zebra", "Banana"]
    print("  Buffer ordering OK")

    session = Session('{"outside": [], "inside": []}')
    before = session.text
    _command(session, "o")
    assert session.status == "No entries"
    assert session.text == before
    assert len(session.history) == 0
    print("  Empty document ordering OK")


# ── Entry operations ─────────────────────────────────────────────────


def test_json_operations():
    ops = JsonOperations()
    text = dump_document(_sample())

    result = ops.add_inside_entry(text, now=NOW)
    doc = parse_document(result.text)
    assert doc.inside[0] == InsideEntry("2025-01-02 03:04:05", "")
    line, col = result.cursor
    row = result.text.split("\n")[line]
    assert row.endswith('"context": ""')
    assert col == row.index('"context": "') + len('"context": "')
    print("  Add inside OK")

    result = ops.add_outside_entry(text)
    doc = parse_document(result.text)
    assert doc.outside[-1] == OutsideEntry()
    assert '"name": ""' in result.text.split("\n")[result.cursor[0]]
    print("  Add outside OK")

    result = ops.delete_entry_at_cursor(text, _line_of(text, '"name": "Apple"'))
    assert _names(result.text) == ["Zebra", "Banana"]
    result = ops.delete_entry_at_cursor(text, _line_of(text, '"morning"'))
    assert [e.date for e in parse_document(result.text).inside] == ["2024-03-01 10:00:00"]
    print("  Delete at cursor OK")

    result = ops.duplicate_entry_at_cursor(text, _line_of(text, '"name": "Zebra"'))
    assert _names(result.text) == ["Zebra", "Zebra", "Apple", "Banana"]
    assert result.text.split("\n")[result.cursor[0]].strip() == "{"
    assert result.cursor[0] > _line_of(text, '"name": "Zebra"')
    print("  Duplicate OK")

    for line in (0, 1):
        try:
            ops.delete_entry_at_cursor(text, line)
        except StructuralError:
            pass
        else:
            raise AssertionError("deleted outside any entry")
    try:
        ops.add_outside_entry('{"outside": [')
    except ParseError:
        pass
    else:
        raise AssertionError("invalid JSON accepted")
    print("  Errors OK")

    tricky = dump_document(Document(outside=[OutsideEntry('{ "[braces]" }'), OutsideEntry("B")]))
    result = ops.delete_entry_at_cursor(tricky, _line_of(tricky, '"name": "B"'))
    assert _names(result.text) == ['{ "[braces]" }']
    print("  Braces inside strings OK")


def test_markdown_operations():
    ops = MarkdownOperations()
    text = "# Notes\nfree text\n\n## OUTSIDE\n\n### A\nalpha\n\n### B\nbeta\n"

    result = ops.delete_entry_at_cursor(text, 6)
    assert result.text.startswith("# Notes\nfree text\n")
    assert _names(result.text, FileMode.MARKDOWN) == ["B"]
    assert "\n\n\n" not in result.text
    print("  Delete keeps free-form text OK")

    try:
        ops.delete_entry_at_cursor(text, 1)
    except StructuralError:
        pass
    else:
        raise AssertionError("deleted free-form text")
    print("  Cursor outside entry OK")

    result = ops.duplicate_entry_at_cursor(text, 9)
    assert _names(result.text, FileMode.MARKDOWN) == ["A", "B", "B"]
    assert result.text.split("\n")[result.cursor[0]] == "### B"
    print("  Duplicate OK")

    result = ops.add_inside_entry(text, now=NOW)
    doc = markdown_to_document(result.text)
    assert doc.inside == [InsideEntry("2025-01-02 03:04:05", "")]
    assert result.text.split("\n")[result.cursor[0]] == ""
    print("  Add inside (new section) OK")

    with_inside = result.text
    result = ops.add_inside_entry(with_inside, now=datetime(2026, 1, 1))
    dates = [e.date for e in markdown_to_document(result.text).inside]
    assert dates == ["2026-01-01 00:00:00", "2025-01-02 03:04:05"]
    print("  Add inside (existing section) OK")

    result = ops.add_outside_entry(text)
    assert _names(result.text, FileMode.MARKDOWN) == ["A", "B", ""]
    line, col = result.cursor
    assert result.text.split("\n")[line] == "### " and col == 4
    result = ops.add_outside_entry(with_inside)
    doc = markdown_to_document(result.text)
    assert [e.name for e in doc.outside] == ["A", "B", ""]
    assert len(doc.inside) == 1
    result = ops.add_outside_entry("")
    assert result.text.split("\n")[result.cursor[0]] == "### "
    print("  Add outside OK")

    result = ops.order_by_name(document_to_markdown(Document(
        outside=[OutsideEntry("b"), OutsideEntry("a")])))
    assert _names(result.text, FileMode.MARKDOWN) == ["a", "b"]
    print("  Ordering OK")


def test_markdown_add_outside_layouts():
    ops = MarkdownOperations()
    inside_first = "## INSIDE\n\n### d\nnote\n\n## OUTSIDE\n\n### A\nalpha\n"
    result = ops.add_outside_entry(inside_first)
    doc = markdown_to_document(result.text)
    assert [e.name for e in doc.outside] == ["A", ""]
    assert [e.date for e in doc.inside] == ["d"]
    assert result.text.split("\n")[result.cursor[0]] == "### "
    print("  INSIDE before OUTSIDE OK")

    trailing = "## OUTSIDE\n\n### A\nalpha\n\n## Notes\nfree text\n"
    result = ops.add_outside_entry(trailing)
    assert _names(result.text, FileMode.MARKDOWN) == ["A", ""]
    assert result.text.endswith("### \n\n## Notes\nfree text\n")
    assert result.text.split("\n")[result.cursor[0]] == "### "
    print("  Section after OUTSIDE OK")

    result = ops.add_outside_entry("## OUTSIDE\n## INSIDE\n")
    assert result.text == "## OUTSIDE\n\n### \n\n## INSIDE\n"
    assert result.cursor == (2, 4)
    print("  Empty OUTSIDE section OK")


def test_toon_operations():
    ops = ToonOperations()
    text = document_to_toon(_sample())

    result = ops.delete_entry_at_cursor(text, 2)
    assert _names(result.text, FileMode.TOON) == ["Zebra", "Banana"]
    try:
        ops.delete_entry_at_cursor(text, 0)
    except StructuralError:
        pass
    else:
        raise AssertionError("deleted a header")
    print("  Delete OK")

    result = ops.add_inside_entry(text, now=NOW)
    line, col = result.cursor
    row = result.text.split("\n")[line]
    assert row == "  2025-01-02 03:04:05,"
    assert col == len(row)
    print("  Add inside OK")

    result = ops.duplicate_entry_at_cursor(text, 6)
    assert len(toon_to_document(result.text).inside) == 3
    print("  Duplicate OK")


# ── Undo ─────────────────────────────────────────────────────────────


def test_undo_history():
    history = UndoHistory(limit=3)
    for i in range(5):
        history.push(Snapshot(str(i)))
    assert len(history) == 3
    assert history.undo(Snapshot("now")).text == "4"
    assert history.can_redo
    print("  Capped depth OK")

    history = UndoHistory()
    history.push(Snapshot("a"))
    assert history.undo(Snapshot("b")).text == "a"
    history.push(Snapshot("a"))
    assert not history.can_redo
    history.discard_last()
    assert history.can_redo
    assert history.redo(Snapshot("a")).text == "b"
    print("  Speculative push restores redo OK")


def test_undo_redo_session():
    session = Session(dump_document(_sample()))
    before = session.text
    for command in ("ao", "ao", "o"):
        _command(session, command)
    after = session.text
    assert after != before

    _keys(session, "u", "u", "g", "-")
    assert session.text == before
    _keys(session, "g", "+", "g", "+", "g", "+")
    assert session.text == after
    _keys(session, "g", "+")
    assert session.status == "Already at newest change"
    print("  N undos / N redos OK")


# ── Search ───────────────────────────────────────────────────────────


def test_search():
    lines = ["", "", "foo", "", "", "FOO here", "", "", "", "a foo"]
    matches = find_in_lines(lines, "foo")
    assert [row for row, _ in matches] == [2, 5, 9]
    assert find_in_lines(["aaaa"], "aa") == [(0, 0), (0, 2)]
    assert find_in_lines(["x"], "") == []
    print("  Case-insensitive, non-overlapping OK")

    search = SearchState()
    search.run("foo", matches)
    seen = [search.step(1)[0] for _ in range(4)]
    assert seen == [5, 9, 2, 5]
    assert search.step(-1)[0] == 2
    assert search.step(-1)[0] == 9
    print("  Wraparound OK")

    session = Session("\n".join(lines))
    _keys(session, "/", *"foo", "enter")
    assert session.status == "Match 1 of 3 for 'foo'"
    assert (session.cursor_line, session.cursor_col) == (2, 0)
    _keys(session, "n", "n", "n")
    assert session.cursor_line == 2
    _keys(session, "N")
    assert session.status == "Match 3 of 3 for 'foo'"
    _keys(session, "/", "enter")
    assert session.search.query == "foo"
    assert session.input_mode is InputMode.NORMAL
    _command(session, "noh")
    assert session.search.matches == []
    print("  Session search OK")

    session = Session(dump_document(_sample()))
    _keys(session, "r", "/", *"line", "enter")
    assert session.search.matches == [(1, 0), (1, 0)]
    assert session.selected_card == 1
    print("  Card search OK")


# ── Substitute ───────────────────────────────────────────────────────


def test_substitute():
    session = Session("foo foo\nbar foo")
    _command(session, "s/foo/bar/")
    assert session.text == "bar foo\nbar foo"
    assert session.status == "1 substitution made"

    session = Session("foo foo\nbar foo")
    _command(session, "s/foo/bar/g")
    assert session.text == "bar bar\nbar foo"

    session = Session("foo foo\nbar foo")
    _command(session, "%s/foo/bar/g")
    assert session.text == "bar bar\nbar bar"
    assert session.status == "3 substitutions made"
    assert len(session.history) == 1
    _keys(session, "u")
    assert session.text == "foo foo\nbar foo"
    print("  Scope and flags OK")

    session = Session("foo")
    _command(session, "%s/zzz/y/g")
    assert session.text == "foo"
    assert len(session.history) == 0
    assert session.status == "Pattern not found: zzz"
    print("  Pattern not found OK")

    for bad, message in (("s/", "Invalid substitute syntax"), ("s//x/", "Empty pattern"),
                         ("s/a/b/z", "Unknown substitute flag")):
        session = Session("a")
        _command(session, bad)
        assert session.status.startswith(message), session.status
        assert session.text == "a"
    cmd = parse_substitute("%s/a/b/gc")
    assert cmd.whole_buffer and cmd.every and cmd.confirm
    print("  Syntax errors OK")

    text = dump_document(_sample())
    session = Session(text)
    _command(session, "%s/{/(/g")
    assert session.text == text
    assert len(session.history) == 0
    assert session.status.startswith("Change rejected")
    print("  Invalid result rejected OK")

    session = Session('{"outside": [{"name": "x"}]}')
    _keys(session, "r")
    assert session.view_mode is ViewMode.VIEW
    _command(session, "s/x/y/")
    assert session.status == "Substitute only works in Edit mode"
    print("  Edit-mode guard OK")


def test_substitute_confirm():
    session = Session("foo foo\nfoo")
    _command(session, "%s/foo/bar/gc")
    assert session.input_mode is InputMode.CONFIRM
    assert session.status == "Replace with 'bar'? (y/n/a/q) [1/3]"
    _keys(session, "y", "n", "y")
    assert session.text == "bar foo\nbar"
    assert session.status == "2 substitutions completed"
    assert session.input_mode is InputMode.NORMAL
    assert len(session.history) == 1
    print("  y/n OK")

    session = Session("foo foo\nfoo")
    _command(session, "%s/foo/bar/gc")
    _keys(session, "n", "a")
    assert session.text == "foo bar\nbar"
    print("  a OK")

    session = Session("foo foo\nfoo")
    _command(session, "%s/foo/bar/gc")
    _keys(session, "y", "q")
    assert session.text == "foo foo\nfoo"
    assert session.status == "Substitute cancelled"
    assert len(session.history) == 0
    print("  q rolls back OK")

    session = Session("foo")
    _command(session, "s/foo/bar/c")
    _keys(session, "n")
    assert session.text == "foo"
    assert len(session.history) == 0
    print("  Nothing applied leaves no history OK")

    # Coordinates are frozen at scan time; a shifted match is skipped.
    session = Session("a a")
    _command(session, "s/a/xyz/gc")
    _keys(session, "y", "y")
    assert session.text == "xyz a"
    assert session.status == "1 substitution completed"
    print("  Stale match skipped OK")


# ── Dispatcher ───────────────────────────────────────────────────────


def test_prefix_state():
    prefix = PrefixState()
    assert prefix.feed("j") == (False, None)
    assert prefix.feed("g") == (True, None)
    assert prefix.feed("g") == (True, "gg")
    assert prefix.pending is None
    assert prefix.feed("d") == (True, None)
    assert prefix.feed("x") == (True, None)
    assert prefix.pending is None
    assert prefix.feed("y") == (True, None)
    assert prefix.feed("y") == (True, "yy")
    print("  Prefix state machine OK")


def test_commands():
    session = Session("")
    assert _command(session, "q") is True
    assert _command(session, "bogus arg") is False
    assert session.status == "Unknown command: bogus arg"
    _command(session, "wq")
    assert session.status.startswith("No filename")
    print("  Quit and unknown commands OK")

    session = Session(dump_document(_sample()))
    _command(session, "gi")
    assert session.cursor_line == _line_of(session.text, '"date": "2024-01-01 09:00:00"') - 1
    _command(session, "xi")
    assert parse_document(session.text).inside == []
    _command(session, "gi")
    assert session.status == "No INSIDE entries found"
    _command(session, "x")
    assert parse_document(session.text) == Document()
    print("  Section commands OK")

    session = Session("")
    _command(session, "set nu")
    assert session.show_line_numbers
    _command(session, "set nonu")
    assert not session.show_line_numbers
    print("  Options OK")

    history = []
    for item in ["a", "b", "a"] + [str(i) for i in range(12)]:
        _remember(history, item)
    assert history == [str(i) for i in range(2, 12)]
    session = Session("")
    _command(session, "noh")
    _command(session, "set nu")
    _keys(session, ":", "up", "up")
    assert session.command_buffer == "noh"
    _keys(session, "down", "down")
    assert session.command_buffer == ""
    _keys(session, "escape")
    assert session.input_mode is InputMode.NORMAL
    print("  Command history OK")


def test_view_mode_and_filter():
    session = Session(dump_document(_sample()))
    _command(session, "f apple")
    assert session.status == "Filter only works in View mode"

    _keys(session, "r")
    assert session.view_mode is ViewMode.VIEW
    _command(session, "f APPLE")
    assert session.status == "Filter: APPLE (1 entries)"
    assert [c.lines[0] for c in session.cards()] == ["Apple"]
    before = session.text
    _keys(session, "d", "d")
    assert session.text == before
    assert "filter" in session.status
    _command(session, "yy")
    assert session.text == before
    print("  Filter guard OK")

    _command(session, "nof")
    assert session.status == "Filter cleared"
    _keys(session, "j", "d", "d")
    assert _names(session.text) == ["Zebra", "Banana"]
    _keys(session, "y", "y")
    assert _names(session.text) == ["Zebra", "Banana", "Banana"]
    print("  Card delete/duplicate OK")

    _keys(session, "r")
    assert session.view_mode is ViewMode.EDIT
    session = Session("{broken")
    _keys(session, "r")
    assert session.view_mode is ViewMode.EDIT
    assert session.status.startswith("Cannot switch to View mode")
    print("  Toggle OK")

    cards = build_cards(_sample())
    assert cards[1].lines == ["Apple", "line one", "line two", "100%"]
    assert (cards[3].section, cards[3].index) == ("inside", 0)
    print("  Cards OK")


def test_edit_keys():
    session = Session("a\nb\nc")
    _keys(session, "j", "d", "d")
    assert session.text == "a\nc"
    _keys(session, "p")
    assert session.text == "a\nc\nb"
    _keys(session, "g", "g", "x")
    assert session.text == "\nc\nb"
    _keys(session, "u", "u", "u")
    assert session.text == "a\nb\nc"
    print("  dd / p / x OK")

    session = Session("hello")
    _keys(session, "$", "i", "!", "enter", "w", "escape")
    assert session.text == "hello!\nw"
    assert len(session.history) == 1
    _keys(session, "u")
    assert session.text == "hello"
    _keys(session, "i", "escape")
    assert len(session.history) == 0
    print("  Insert session is one undo step OK")

    session = Session("ab")
    _keys(session, "a", "X", "backspace", "backspace", "escape")
    assert session.text == "b"
    _keys(session, "o", *"new", "escape")
    assert session.text == "b\nnew"
    print("  a / o / backspace OK")


def test_clipboard_commands():
    clipboard = FakeClipboard()
    session = Session(dump_document(_sample()), clipboard=clipboard)
    _command(session, "cm")
    assert clipboard.text == document_to_markdown(_sample())
    _command(session, "ct")
    assert clipboard.text == document_to_toon(_sample())
    print("  Copy OK")

    clipboard.text = document_to_toon(Document(outside=[OutsideEntry("Pasted")]))
    _command(session, "va")
    assert _names(session.text) == ["Zebra", "Apple", "Banana", "Pasted"]
    _command(session, "v")
    assert _names(session.text) == ["Pasted"]
    print("  Paste and append OK")

    clipboard.text = "not a journal"
    before = session.text
    _command(session, "v")
    assert session.text == before
    assert session.status.startswith("Clipboard does not hold")
    print("  Bad clipboard OK")


def test_section_clipboard_commands():
    clipboard = FakeClipboard()
    session = Session(dump_document(_sample()), clipboard=clipboard)
    _command(session, "ci")
    assert clipboard.text == dump_document(Document(inside=_sample().inside))
    assert session.status == "Copied INSIDE section to clipboard"
    _command(session, "co")
    assert parse_document(clipboard.text).outside == _sample().outside
    assert parse_document(clipboard.text).inside == []
    empty = Session(dump_document(Document(outside=[OutsideEntry("A")])), clipboard=clipboard)
    _command(empty, "ci")
    assert empty.status == "No INSIDE entries found"
    print("  Section copy OK")

    clipboard.text = document_to_toon(Document(outside=[OutsideEntry("Pasted")]))
    _command(session, "vo")
    assert _names(session.text) == ["Pasted"]
    assert len(parse_document(session.text).inside) == 2
    clipboard.text = document_to_markdown(Document(outside=[OutsideEntry("More")]))
    _command(session, "vao")
    assert _names(session.text) == ["Pasted", "More"]
    assert session.status == "OUTSIDE entries appended from clipboard"
    clipboard.text = dump_document(Document(inside=[InsideEntry("2025-05-05 00:00:00", "new")]))
    _command(session, "vai")
    dates = [e.date for e in parse_document(session.text).inside]
    assert dates == ["2025-05-05 00:00:00", "2024-01-01 09:00:00", "2024-03-01 10:00:00"]
    _command(session, "vi")
    assert [e.context for e in parse_document(session.text).inside] == ["new"]
    print("  Section overwrite and append OK")

    clipboard.text = dump_document(Document(outside=[OutsideEntry("X")]))
    before = session.text
    _command(session, "vi")
    assert session.text == before
    assert session.status == "No INSIDE entries in clipboard"
    print("  Missing section in clipboard OK")


def test_url_and_card_clipboard_commands():
    clipboard = FakeClipboard()
    session = Session(dump_document(_sample()), clipboard=clipboard)
    session.cursor_line = _line_of(session.text, '"Zebra"')
    _command(session, "cu")
    assert clipboard.text == "https://z.example"
    assert session.status == "Copied URL: https://z.example"
    session.cursor_line = _line_of(session.text, '"morning"')
    _command(session, "cu")
    assert session.status == "No URL found in selected entry"
    print("  Copy URL OK")

    clipboard.text = "  https://banana.example\n"
    session.cursor_line = _line_of(session.text, '"Banana"')
    _command(session, "vu")
    assert parse_document(session.text).outside[2].url == "https://banana.example"
    clipboard.text = "ftp://nope"
    before = session.text
    _command(session, "vu")
    assert session.text == before
    assert session.status.startswith("Clipboard doesn't contain a valid URL")
    print("  Paste URL OK")

    session = Session(dump_document(_sample()), clipboard=clipboard)
    _command(session, "cc")
    assert session.status == "Not in card view mode"
    _keys(session, "r")
    _command(session, "cc")
    assert clipboard.text == "OUTSIDE\n\nZebra\nstriped\nhttps://z.example\n50%"
    _keys(session, "j")
    _command(session, "ccj")
    assert parse_document(clipboard.text).outside == [_sample().outside[1]]
    assert session.status == "Copied 1 card(s) as JSON"
    print("  Card copy OK")


# ── Files ────────────────────────────────────────────────────────────


def test_file_io():
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        path = tmp / "journal.json"
        path.write_text('{"outside": [{"name": "A"}], "inside": []}')

        session = Session()
        assert session.open(path)
        assert session.file_mode is FileMode.JSON
        _command(session, "w")
        assert path.read_text() == dump_document(Document(outside=[OutsideEntry("A")]))
        assert not session.is_modified
        print("  Open/save JSON OK")

        session.text = "{broken"
        _command(session, "w")
        assert session.status.startswith("Not saved")
        assert '"A"' in path.read_text()
        print("  Invalid buffer refused OK")

        session.text = path.read_text()
        _command(session, f"w {tmp / 'journal.toon'}")
        assert session.file_mode is FileMode.TOON
        assert (tmp / "journal.toon").read_text() == "outside[1]{name,context,url,percentage}:\n  A,,,null\n"
        print("  Save-as converts OK")

        md = tmp / "notes.md"
        md.write_text("## INSIDE\n\n### today\nfine\n")
        _command(session, f"e {md}")
        assert session.file_mode is FileMode.MARKDOWN
        _command(session, "ai")
        assert len(markdown_to_document(session.text).inside) == 2
        print("  Markdown file mode OK")

        assert not session.open(tmp / "missing.json")
        assert session.status.startswith("Error loading")
        assert session.file_path == md
        print("  Missing file OK")


def test_view_mode_autosave():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "journal.json"
        path.write_text(dump_document(Document(outside=[OutsideEntry("A")])))
        clipboard = FakeClipboard(document_to_toon(Document(outside=[OutsideEntry("Pasted")])))
        session = Session(clipboard=clipboard)
        assert session.open(path)
        _keys(session, "r")
        assert session.view_mode is ViewMode.VIEW

        _command(session, "va")
        assert _names(path.read_text()) == ["A", "Pasted"]
        assert session.status == "Appended 1 entries (saved)"
        _command(session, "xo")
        assert _names(path.read_text()) == []
        assert session.status == "OUTSIDE section cleared (saved)"
        _command(session, "v")
        assert _names(path.read_text()) == ["Pasted"]
        assert session.status == "Pasted from clipboard (saved)"
        _command(session, "x")
        assert path.read_text() == dump_document(Document())
        assert not session.is_modified
        print("  Clear and paste auto-save OK")


def test_autoreload():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "journal.json"
        path.write_text(dump_document(Document()))
        session = Session()
        session.open(path)
        assert not session.check_autoreload()
        _command(session, "ar")
        assert session.auto_reload

        path.write_text(dump_document(_sample()))
        stamp = session.file_mtime + 10
        os.utime(path, (stamp, stamp))
        assert session.check_autoreload()
        assert parse_document(session.text) == _sample()
        assert len(session.history) == 1
        assert not session.check_autoreload()
        print("  Auto-reload OK")


def test_config_and_cli():
    config = Config.from_env({"REVW_UNDO_LIMIT": "5", "REVW_AUTORELOAD": "yes",
                              "REVW_STATUS_SECONDS": "bad"})
    assert config.undo_limit == 5
    assert config.autoreload
    assert config.status_seconds == 3.0
    assert Session(config=config).history.limit == 5
    print("  Environment config OK")

    with tempfile.TemporaryDirectory() as tmpdir:
        src = Path(tmpdir) / "journal.json"
        src.write_text(dump_document(_sample()))
        out = Path(tmpdir) / "journal.md"
        main(["--output", str(out), "--markdown", str(src)])
        assert out.read_text() == document_to_markdown(_sample())
        assert convert_file(out, FileMode.JSON) == dump_document(
            markdown_to_document(document_to_markdown(_sample())))
        print("  Conversion CLI OK")


if __name__ == "__main__":
    print("Testing model and canonical JSON...")
    test_parse_document()
    test_dump_document()
    print("  ✓ Model tests passed\n")

    print("Testing Markdown conversion...")
    test_markdown_output()
    test_markdown_round_trip()
    test_markdown_tolerance()
    print("  ✓ Markdown tests passed\n")

    print("Testing Toon conversion...")
    test_toon_quoting()
    test_toon_round_trip()
    test_toon_parsing()
    test_detect_format()
    print("  ✓ Toon tests passed\n")

    print("Testing ordering and entry operations...")
    test_ordering()
    test_json_operations()
    test_markdown_operations()
    test_markdown_add_outside_layouts()
    test_toon_operations()
    print("  ✓ Entry operation tests passed\n")

    print("Testing undo, search and substitute...")
    test_undo_history()
    test_undo_redo_session()
    test_search()
    test_substitute()
    test_substitute_confirm()
    print("  ✓ Engine tests passed\n")

    print("Testing dispatcher...")
    test_prefix_state()
    test_commands()
    test_view_mode_and_filter()
    test_edit_keys()
    test_clipboard_commands()
    test_section_clipboard_commands()
    test_url_and_card_clipboard_commands()
    print("  ✓ Dispatcher tests passed\n")

    print("Testing files and configuration...")
    test_file_io()
    test_view_mode_autosave()
    test_autoreload()
    test_config_and_cli()
    print("  ✓ File tests passed\n")

    print("=" * 50)
    print("All tests passed!")
    print("=" * 50)
