"""Cell materialization tests.

Tests for:
- cell_program_lines() - generated lines, entry point mode, skipped lines
- LineSink - line counting, cursor translation, error latching
- materialize_cell() - file contents, cursor round trip, line map
"""
import io
import sys
from pathlib import Path

import pytest

SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))

from go_decls import NO_CURSOR, NO_CURSOR_LINE, Cursor
from gocell_repl import (
    LineSink,
    MaterializationError,
    cell_program_lines,
    materialize_cell,
)


class FlakyFile:
    """File-like object whose n-th write fails."""

    def __init__(self, fail_on):
        self.fail_on = fail_on
        self.attempts = 0
        self.written = []

    def write(self, text):
        self.attempts += 1
        if self.attempts >= self.fail_on:
            raise OSError(f"disk full on write {self.attempts}")
        self.written.append(text)


class TestCellProgramLines:
    """Unit tests for the line generator."""

    def test_plain_cell(self):
        lines = list(cell_program_lines(["func f() {}"], set()))
        assert lines == [
            ("package main", NO_CURSOR_LINE, 0),
            ("", NO_CURSOR_LINE, 0),
            ("func f() {}", 0, 0),
        ]

    def test_entry_point_mode(self):
        lines = list(cell_program_lines(["var x = 1", "%main", "fmt.Println(x)"], set()))
        assert [text for text, _, _ in lines] == [
            "package main",
            "",
            "var x = 1",
            "",
            "func main() {",
            "\tflag.Parse()",
            "\tfmt.Println(x)",
            "}",
        ]
        assert lines[6] == ("\tfmt.Println(x)", 2, 1)

    def test_double_percent_marker(self):
        texts = [text for text, _, _ in cell_program_lines(["%%", "f()"], set())]
        assert "func main() {" in texts
        assert "\tf()" in texts

    def test_skipped_lines_are_omitted(self):
        lines = list(cell_program_lines(["%args 1 2", "var x = 1", "!ls"], {0, 2}))
        assert [cell_line for _, cell_line, _ in lines] == [NO_CURSOR_LINE, NO_CURSOR_LINE, 1]

    def test_trailing_spaces_are_trimmed(self):
        lines = list(cell_program_lines(["var x = 1   ", "%main   "], set()))
        assert lines[2][0] == "var x = 1"
        assert ("func main() {", NO_CURSOR_LINE, 0) in lines

    def test_indented_marker_is_not_a_marker(self):
        lines = list(cell_program_lines(["func f() {", "  %main", "}"], set()))
        texts = [text for text, _, _ in lines]
        assert "func main() {" not in texts
        assert ("  %main", 1, 0) in lines

    def test_second_marker_is_ignored(self):
        texts = [text for text, _, _ in cell_program_lines(["%main", "a()", "%main", "b()"], set())]
        assert texts.count("func main() {") == 1
        assert texts[-1] == "}"


class TestLineSink:
    """Unit tests for the consumer side."""

    def test_counts_lines_and_returns_position(self):
        sink = LineSink(io.StringIO())
        assert sink.add("package main") == 0
        assert sink.add("") == 1
        assert sink.add("var x = 1", 0, 0) == 2
        assert sink.line_count == 3
        assert sink.line_map == [NO_CURSOR_LINE, NO_CURSOR_LINE, 0]

    def test_translates_cursor(self):
        sink = LineSink(io.StringIO(), Cursor(1, 4))
        sink.consume([("package main", NO_CURSOR_LINE, 0), ("a", 0, 1), ("b", 1, 1)])
        assert sink.cursor == Cursor(2, 5)

    def test_no_cursor(self):
        sink = LineSink(io.StringIO())
        sink.consume([("a", 0, 0)])
        assert sink.cursor == NO_CURSOR

    def test_latches_first_error_and_drains(self):
        """After a write error the rest of the lines are consumed, not written."""
        produced = []

        def producer():
            for i in range(5):
                produced.append(i)
                yield f"line {i}", i, 0

        f = FlakyFile(fail_on=2)
        sink = LineSink(f)
        sink.consume(producer())

        assert produced == [0, 1, 2, 3, 4]
        assert f.attempts == 2
        assert f.written == ["line 0\n"]
        assert "write 2" in str(sink.error)
        assert sink.line_count == 5

    def test_cursor_still_tracked_after_error(self):
        f = FlakyFile(fail_on=1)
        sink = LineSink(f, Cursor(3, 0))
        sink.consume((f"l{i}", i, 0) for i in range(5))
        assert sink.error is not None
        assert sink.cursor == Cursor(3, 0)


class TestMaterializeCell:
    """materialize_cell() writes the file and maps positions."""

    def test_writes_file(self, tmp_path):
        path = tmp_path / "main.go"
        materialize_cell(path, ["func f() int { return 1 }"])
        assert path.read_text() == "package main\n\nfunc f() int { return 1 }\n"

    def test_truncates_existing_file(self, tmp_path):
        path = tmp_path / "main.go"
        path.write_text("old contents\n" * 10)
        materialize_cell(path, ["var x = 1"])
        assert "old contents" not in path.read_text()

    def test_cursor_round_trip(self, tmp_path):
        """Cursor at (L, C) lands at (L + 2 synthetic lines, C)."""
        cell = ["func f() int {", "\treturn 1", "}"]
        result = materialize_cell(tmp_path / "main.go", cell, set(), Cursor(1, 3))
        assert result.cursor == Cursor(3, 3)
        file_lines = (tmp_path / "main.go").read_text().split("\n")
        assert file_lines[result.cursor.line][result.cursor.col] == cell[1][3]

    def test_cursor_round_trip_in_entry_point_mode(self, tmp_path):
        """After %main the column shifts by one tab and the marker adds 3 lines."""
        cell = ["var x = 1", "%main", "fmt.Println(x)"]
        result = materialize_cell(tmp_path / "main.go", cell, set(), Cursor(2, 4))
        assert result.cursor == Cursor(6, 5)
        file_lines = (tmp_path / "main.go").read_text().split("\n")
        assert file_lines[6][5] == cell[2][4]

    def test_cursor_after_skipped_line(self, tmp_path):
        cell = ["%args a", "var x = 1"]
        result = materialize_cell(tmp_path / "main.go", cell, {0}, Cursor(1, 4))
        assert result.cursor == Cursor(2, 4)

    def test_cursor_on_skipped_line_is_absent(self, tmp_path):
        result = materialize_cell(tmp_path / "main.go", ["%args a", "var x = 1"], {0}, Cursor(0, 1))
        assert result.cursor == NO_CURSOR

    def test_line_map_and_deltas(self, tmp_path):
        result = materialize_cell(tmp_path / "main.go", ["var x = 1", "%main", "f()"])
        assert result.line_map == [
            NO_CURSOR_LINE, NO_CURSOR_LINE, 0,
            NO_CURSOR_LINE, NO_CURSOR_LINE, NO_CURSOR_LINE, 2, NO_CURSOR_LINE,
        ]
        assert result.col_deltas[6] == 1
        assert result.col_deltas[2] == 0

    def test_unwritable_path(self, tmp_path):
        with pytest.raises(MaterializationError, match="creating"):
            materialize_cell(tmp_path / "missing" / "main.go", ["var x = 1"])
