#!/usr/bin/env python3
"""Go declarations accumulated across notebook cells.

This module holds the data model used by gocell_repl.py:

  - Cursor / NO_CURSOR: a 0-based (line, col) position, or "no cursor".
  - Function, TypeDecl, Constant, Variable, Import: declaration records.
  - Declarations: the mergeable table of records, one dict per kind.

and the default parsing collaborator:

  - parse_declarations(path, cursor) / parse_source(text, cursor)

The scanner only understands the top-level structure of a Go file (which
keyword starts a declaration, where it ends, what it is named). It does not
type check anything: that is left to `go build`.

Records are treated as values. Declarations.copy() duplicates the records so
a tentative set can be mutated without touching the committed one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple


NO_CURSOR_LINE = -1

# Order in which the blocks of a program are rendered.
DECLARATION_KINDS = ("imports", "types", "constants", "variables", "functions")

# Last significant character of a line that means "the statement continues".
_CONTINUATION_CHARS = frozenset(",([{=+-*/%&|^<>!:.")

_IDENT = r"[A-Za-z_][A-Za-z0-9_]*"
_IDENT_RE = re.compile(_IDENT)
_NAMES_RE = re.compile(rf"^({_IDENT}(?:\s*,\s*{_IDENT})*)")
_FUNC_RE = re.compile(rf"^func\s+({_IDENT})")
_METHOD_RE = re.compile(rf"^func\s*\(([^)]*)\)\s*({_IDENT})")
_IMPORT_SPEC_RE = re.compile(rf'^(?:({_IDENT}|\.)\s+)?("[^"]*"|`[^`]*`)')


class GoCellError(RuntimeError):
    # Pipeline step that was running when the error was raised, if any.
    stage: Optional[str] = None


class ParseError(GoCellError):
    """Source is not a list of top-level Go declarations.

    `line` and `col` are 0-based positions in the parsed text, or
    NO_CURSOR_LINE when unknown.
    """

    def __init__(self, message: str, line: int = NO_CURSOR_LINE, col: int = NO_CURSOR_LINE, filename: str = ""):
        self.message = message
        self.line = line
        self.col = col
        self.filename = filename
        super().__init__(self._format())

    def _format(self) -> str:
        if self.line == NO_CURSOR_LINE:
            return f"{self.filename}: {self.message}" if self.filename else self.message
        where = f"{self.line + 1}:{max(self.col, 0) + 1}"
        if self.filename:
            where = f"{self.filename}:{where}"
        return f"{where}: {self.message}"


class RenderError(GoCellError):
    def __init__(self, block: str, message: str):
        self.block = block
        super().__init__(f"in block {block!r}: {message}")


@dataclass(frozen=True)
class Cursor:
    line: int = NO_CURSOR_LINE
    col: int = NO_CURSOR_LINE

    def has_cursor(self) -> bool:
        return self.line != NO_CURSOR_LINE

    def shifted(self, lines: int = 0, cols: int = 0) -> "Cursor":
        if not self.has_cursor():
            return self
        return Cursor(self.line + lines, self.col + cols)


NO_CURSOR = Cursor()


# =============================================================================
# Declaration records
# =============================================================================

@dataclass
class Declaration:
    """Base record.

    `definition` is the standalone source text of the declaration.
    `cursor` is relative to `definition` (line 0 is its first line).
    `source_lines` has one entry per definition line: the line it came from in
    the text it was parsed from (the pipeline rewrites them to cell lines).
    They are transient and cleared when a set is committed.
    """

    key: str
    definition: str
    cursor: Cursor = NO_CURSOR
    source_lines: Tuple[int, ...] = ()

    def has_cursor(self) -> bool:
        return self.cursor.has_cursor()

    @property
    def names(self) -> Tuple[str, ...]:
        return (self.key,)


@dataclass
class Function(Declaration):
    name: str = ""
    receiver: str = ""


@dataclass
class TypeDecl(Declaration):
    name: str = ""


@dataclass
class Constant(Declaration):
    declared_names: Tuple[str, ...] = ()

    @property
    def names(self) -> Tuple[str, ...]:
        return self.declared_names


@dataclass
class Variable(Declaration):
    declared_names: Tuple[str, ...] = ()

    @property
    def names(self) -> Tuple[str, ...]:
        return self.declared_names


@dataclass
class Import(Declaration):
    path: str = ""
    alias: str = ""


def function_key(name: str, receiver: str = "") -> str:
    return f"{receiver}~{name}" if receiver else name


def import_key(path: str, alias: str = "") -> str:
    if alias in ("_", "."):
        return f"{alias}~{path}"
    return alias or path


# =============================================================================
# Declaration set
# =============================================================================

class Declarations:
    """All declarations of a program, one table per kind."""

    def __init__(self) -> None:
        self.imports: Dict[str, Import] = {}
        self.types: Dict[str, TypeDecl] = {}
        self.constants: Dict[str, Constant] = {}
        self.variables: Dict[str, Variable] = {}
        self.functions: Dict[str, Function] = {}

    def table(self, kind: str) -> Dict[str, Declaration]:
        if kind not in DECLARATION_KINDS:
            raise KeyError(f"Unknown declaration kind: {kind}")
        return getattr(self, kind)

    def add(self, kind: str, decl: Declaration) -> None:
        self.table(kind)[decl.key] = decl

    def copy(self) -> "Declarations":
        """Duplicate the set; records are copied too, so mutating either side is safe."""
        other = Declarations()
        for kind in DECLARATION_KINDS:
            other.table(kind).update({k: replace(v) for k, v in self.table(kind).items()})
        return other

    def merge_from(self, other: "Declarations") -> List[str]:
        """Merge `other` into self, last writer wins.

        Constants and variables can declare several names in one record: a
        merged record also evicts any existing record sharing one of its names,
        e.g. `const A = 5` evicts a whole `A,B,C` iota group.

        Returns the keys of the records evicted that way.
        """
        evicted: List[str] = []
        for kind in DECLARATION_KINDS:
            mine = self.table(kind)
            for key, decl in other.table(kind).items():
                if kind in ("constants", "variables"):
                    names = {n for n in decl.names if n != "_"}
                    stale = [k for k, d in mine.items() if k != key and names.intersection(d.names)]
                    for k in stale:
                        del mine[k]
                        evicted.append(k)
                mine[key] = replace(decl)
        return evicted

    def remove(self, keys: Iterable[str]) -> List[str]:
        """Remove declarations by key from whichever table holds them.

        Returns the keys that were not found.
        """
        missing: List[str] = []
        for key in keys:
            found = False
            for kind in DECLARATION_KINDS:
                table = self.table(kind)
                if key in table:
                    del table[key]
                    found = True
            if not found:
                missing.append(key)
        return missing

    def list_keys(self) -> Dict[str, List[str]]:
        return {kind: sorted(self.table(kind)) for kind in DECLARATION_KINDS}

    def clear_cell_info(self) -> None:
        """Drop cursors and source lines, which only make sense for the current cell."""
        for kind in DECLARATION_KINDS:
            for decl in self.table(kind).values():
                decl.cursor = NO_CURSOR
                decl.source_lines = ()

    def is_empty(self) -> bool:
        return len(self) == 0

    def __len__(self) -> int:
        return sum(len(self.table(kind)) for kind in DECLARATION_KINDS)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Declarations):
            return NotImplemented
        return all(self.table(k) == other.table(k) for k in DECLARATION_KINDS)

    def __repr__(self) -> str:
        counts = ", ".join(f"{k}={len(self.table(k))}" for k in DECLARATION_KINDS)
        return f"Declarations({counts})"

    # -------------------------------------------------------------------------
    # Block renderers. Each returns the block's lines, the cursor relative to
    # the first line of the block, and the source line of each emitted line.
    # -------------------------------------------------------------------------

    def render_imports(self) -> Tuple[List[str], Cursor, List[int]]:
        if not self.imports:
            return [], NO_CURSOR, []
        lines = ["import ("]
        origins = [NO_CURSOR_LINE]
        cursor = NO_CURSOR
        for key in sorted(self.imports):
            imp = self.imports[key]
            _check_definition(key, imp)
            if "\n" in imp.definition:
                raise ValueError(f"import {key!r} spans more than one line")
            if imp.has_cursor() and not cursor.has_cursor():
                # One tab of indentation inside the group.
                cursor = Cursor(len(lines), imp.cursor.col + 1)
            lines.append("\t" + imp.definition)
            origins.append(imp.source_lines[0] if imp.source_lines else NO_CURSOR_LINE)
        lines.extend([")", ""])
        origins.extend([NO_CURSOR_LINE, NO_CURSOR_LINE])
        return lines, cursor, origins

    def render_types(self) -> Tuple[List[str], Cursor, List[int]]:
        return _render_definitions(self.types)

    def render_constants(self) -> Tuple[List[str], Cursor, List[int]]:
        return _render_definitions(self.constants)

    def render_variables(self) -> Tuple[List[str], Cursor, List[int]]:
        return _render_definitions(self.variables)

    def render_functions(self) -> Tuple[List[str], Cursor, List[int]]:
        return _render_definitions(self.functions)


def _check_definition(key: str, decl: Declaration) -> None:
    if not isinstance(decl.definition, str) or not decl.definition.strip():
        raise ValueError(f"declaration {key!r} has no definition")


def _render_definitions(table: Dict[str, Declaration]) -> Tuple[List[str], Cursor, List[int]]:
    lines: List[str] = []
    origins: List[int] = []
    cursor = NO_CURSOR
    for key in sorted(table):
        decl = table[key]
        _check_definition(key, decl)
        if decl.has_cursor() and not cursor.has_cursor():
            cursor = decl.cursor.shifted(lines=len(lines))
        def_lines = decl.definition.split("\n")
        lines.extend(def_lines)
        if len(decl.source_lines) == len(def_lines):
            origins.extend(decl.source_lines)
        else:
            origins.extend([NO_CURSOR_LINE] * len(def_lines))
        lines.append("")
        origins.append(NO_CURSOR_LINE)
    return lines, cursor, origins


# =============================================================================
# Scanner
# =============================================================================

@dataclass
class _LineInfo:
    start_depth: int
    starts_in_literal: bool
    end_depth: int
    ends_in_literal: bool
    last_sig: str
    has_code: bool


@dataclass
class ParseResult:
    decls: Declarations
    cursor_key: Optional[Tuple[str, str]] = None


def _skip_quoted(line: str, i: int) -> int:
    quote = line[i]
    j = i + 1
    while j < len(line):
        if line[j] == "\\":
            j += 2
            continue
        if line[j] == quote:
            return j + 1
        j += 1
    return len(line)


def _scan_lines(lines: List[str], filename: str = "") -> List[_LineInfo]:
    """Track bracket depth, comments and raw strings line by line."""
    infos: List[_LineInfo] = []
    depth = 0
    state = "code"  # code | block_comment | raw_string
    for line_num, line in enumerate(lines):
        start_depth = depth
        starts_in_literal = state != "code"
        last_sig = ""
        has_code = state == "raw_string"
        i = 0
        n = len(line)
        while i < n:
            if state == "block_comment":
                end = line.find("*/", i)
                if end < 0:
                    break
                state = "code"
                i = end + 2
                continue
            if state == "raw_string":
                end = line.find("`", i)
                if end < 0:
                    break
                state = "code"
                last_sig = "`"
                i = end + 1
                continue
            ch = line[i]
            if ch in " \t\r":
                i += 1
                continue
            if line.startswith("//", i):
                break
            if line.startswith("/*", i):
                state = "block_comment"
                i += 2
                continue
            has_code = True
            if ch == "`":
                state = "raw_string"
                last_sig = ch
                i += 1
                continue
            if ch in "\"'":
                i = _skip_quoted(line, i)
                last_sig = ch
                continue
            if ch in "([{":
                depth += 1
            elif ch in ")]}":
                depth -= 1
                if depth < 0:
                    raise ParseError(f"unbalanced {ch!r}", line_num, i, filename)
            last_sig = ch
            i += 1
        infos.append(_LineInfo(start_depth, starts_in_literal, depth, state != "code", last_sig, has_code))
    return infos


def _statement_end(infos: List[_LineInfo], start: int, base_depth: int, filename: str) -> int:
    """Index of the last line of the statement starting at `start`."""
    for j in range(start, len(infos)):
        info = infos[j]
        if not info.has_code or info.ends_in_literal:
            continue
        if info.end_depth == base_depth and info.last_sig not in _CONTINUATION_CHARS:
            return j
    raise ParseError("unexpected end of input, declaration is not closed", start, 0, filename)


def _relative_cursor(cursor: Cursor, start: int, end: int, first_col_delta: int = 0) -> Cursor:
    if not cursor.has_cursor() or not start <= cursor.line <= end:
        return NO_CURSOR
    col = cursor.col + (first_col_delta if cursor.line == start else 0)
    return Cursor(cursor.line - start, max(col, 0))


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


class _Scanner:
    def __init__(self, text: str, cursor: Cursor, filename: str):
        self.lines = text.split("\n")
        self.cursor = cursor
        self.filename = filename
        self.infos = _scan_lines(self.lines, filename)
        self.decls = Declarations()
        self.cursor_key: Optional[Tuple[str, str]] = None

    def error(self, message: str, line: int, col: int = 0) -> ParseError:
        return ParseError(message, line, col, self.filename)

    def add(self, kind: str, decl: Declaration) -> None:
        if decl.has_cursor() and self.cursor_key is None:
            self.cursor_key = (kind, decl.key)
        self.decls.add(kind, decl)

    def scan(self) -> ParseResult:
        doc_start: Optional[int] = None
        i = 0
        while i < len(self.lines):
            line = self.lines[i]
            info = self.infos[i]
            stripped = line.strip()
            if not info.has_code:
                if info.starts_in_literal or stripped.startswith("//") or stripped.startswith("/*"):
                    if doc_start is None:
                        doc_start = i
                else:
                    doc_start = None
                i += 1
                continue

            end = _statement_end(self.infos, i, 0, self.filename)
            word_match = _IDENT_RE.match(stripped)
            word = word_match.group(0) if word_match else ""
            start = i if doc_start is None else doc_start
            if word == "package":
                pass
            elif word == "import":
                self.scan_imports(i, end)
            elif word == "func":
                self.scan_function(start, i, end)
            elif word in ("type", "const", "var"):
                self.scan_specs(word, start, i, end)
            else:
                raise self.error("non-declaration statement outside function body", i, _indent(line))
            doc_start = None
            i = end + 1
        return ParseResult(self.decls, self.cursor_key)

    def source_lines(self, start: int, end: int) -> Tuple[int, ...]:
        return tuple(range(start, end + 1))

    def scan_function(self, start: int, head: int, end: int) -> None:
        header = self.lines[head].strip()
        receiver = ""
        method = _METHOD_RE.match(header)
        if method:
            recv_type = method.group(1).split()[-1] if method.group(1).split() else ""
            receiver = recv_type.lstrip("*").split("[", 1)[0]
            name = method.group(2)
        else:
            plain = _FUNC_RE.match(header)
            if not plain:
                raise self.error("function declaration without a name", head, _indent(self.lines[head]))
            name = plain.group(1)
        definition = "\n".join(self.lines[start:end + 1])
        self.add("functions", Function(
            key=function_key(name, receiver),
            definition=definition,
            cursor=_relative_cursor(self.cursor, start, end),
            source_lines=self.source_lines(start, end),
            name=name,
            receiver=receiver,
        ))

    def group_specs(self, head: int, end: int) -> List[Tuple[int, int]]:
        """Line ranges of the specs of a `kw (` ... `)` group."""
        if self.infos[head].end_depth != 1 or self.infos[head].last_sig != "(":
            raise self.error(
                "unsupported grouped declaration layout, put each spec on its own line",
                head, _indent(self.lines[head]))
        specs: List[Tuple[int, int]] = []
        j = head + 1
        while j < end:
            info = self.infos[j]
            if not info.has_code:
                j += 1
                continue
            if self.lines[j].strip().startswith(")"):
                break
            spec_end = _statement_end(self.infos, j, 1, self.filename)
            specs.append((j, spec_end))
            j = spec_end + 1
        return specs

    def scan_imports(self, head: int, end: int) -> None:
        line = self.lines[head]
        rest = line.strip()[len("import"):]
        if rest.lstrip().startswith("("):
            if re.match(r"^\s*\(\s*\)", rest):
                return
            for spec_start, _ in self.group_specs(head, end):
                spec_line = self.lines[spec_start]
                self.add_import(spec_line.strip(), spec_start, _indent(spec_line))
        else:
            offset = _indent(line) + len("import") + (len(rest) - len(rest.lstrip()))
            self.add_import(rest.strip(), head, offset)

    def add_import(self, spec: str, line_num: int, col_offset: int) -> None:
        match = _IMPORT_SPEC_RE.match(spec)
        if not match:
            raise self.error("malformed import spec", line_num, col_offset)
        alias = match.group(1) or ""
        quoted = match.group(2)
        path = quoted[1:-1]
        definition = f"{alias} {quoted}" if alias else quoted
        self.add("imports", Import(
            key=import_key(path, alias),
            definition=definition,
            cursor=_relative_cursor(self.cursor, line_num, line_num, -col_offset),
            source_lines=(line_num,),
            path=path,
            alias=alias,
        ))

    def scan_specs(self, keyword: str, start: int, head: int, end: int) -> None:
        line = self.lines[head]
        rest = line.strip()[len(keyword):]
        if not rest.lstrip().startswith("("):
            self.add_spec(keyword, start, head, end, first_col_delta=0)
            return
        if re.match(r"^\s*\(\s*\)", rest):
            return
        specs = self.group_specs(head, end)
        if keyword == "const" and any("=" not in self._spec_text(s, e) for s, e in specs):
            # Implicit repetition (iota): the group only makes sense as a whole.
            names: List[str] = []
            for s, e in specs:
                names.extend(self._names(self._spec_text(s, e), s))
            self.add("constants", Constant(
                key=",".join(names),
                definition="\n".join(self.lines[start:end + 1]),
                cursor=_relative_cursor(self.cursor, start, end),
                source_lines=self.source_lines(start, end),
                declared_names=tuple(names),
            ))
            return
        for s, e in specs:
            # "kw " is prepended to the first line, replacing its indentation.
            delta = len(keyword) + 1 - _indent(self.lines[s])
            self.add_spec(keyword, s, s, e, first_col_delta=delta, prefix=keyword + " ")

    def _spec_text(self, start: int, end: int) -> str:
        return "\n".join(self.lines[start:end + 1]).strip()

    def _names(self, spec: str, line_num: int) -> List[str]:
        match = _NAMES_RE.match(spec)
        if not match:
            raise self.error("declaration without a name", line_num, _indent(self.lines[line_num]))
        return [n.strip() for n in match.group(1).split(",")]

    def add_spec(self, keyword: str, start: int, head: int, end: int, first_col_delta: int, prefix: str = "") -> None:
        body = self.lines[start:end + 1]
        if prefix:
            body = [prefix + body[0].lstrip()] + body[1:]
        definition = "\n".join(body)
        spec = self._spec_text(head, end)
        if not prefix:
            spec = spec[len(keyword):].strip()
        cursor = _relative_cursor(self.cursor, start, end, first_col_delta if start == head else 0)
        source_lines = self.source_lines(start, end)
        if keyword == "type":
            name = self._names(spec, head)[0]
            self.add("types", TypeDecl(key=name, definition=definition, cursor=cursor,
                                       source_lines=source_lines, name=name))
            return
        names = tuple(self._names(spec, head))
        key = ",".join(names)
        if names == ("_",):
            key = "_~" + " ".join(spec.split())
        record_cls = Constant if keyword == "const" else Variable
        kind = "constants" if keyword == "const" else "variables"
        self.add(kind, record_cls(key=key, definition=definition, cursor=cursor,
                                  source_lines=source_lines, declared_names=names))


def parse_source(text: str, cursor: Cursor = NO_CURSOR, filename: str = "") -> ParseResult:
    """Parse the top-level declarations of Go source text.

    Args:
        text: Complete Go file contents.
        cursor: Optional position (0-based) in `text`.
        filename: Used only in error messages.

    Returns:
        ParseResult with the declarations and, when the cursor falls inside
        one of them, its (kind, key).

    Raises:
        ParseError: for statements outside of declarations, unbalanced
        brackets or unterminated declarations.
    """
    return _Scanner(text, cursor, filename).scan()


def parse_declarations(path: Path, cursor: Cursor = NO_CURSOR) -> ParseResult:
    """Parsing collaborator used by the build pipeline."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    return parse_source(text, cursor, filename=path.name)
