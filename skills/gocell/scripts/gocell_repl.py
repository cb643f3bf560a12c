#!/usr/bin/env python3
"""Persistent Go notebook cells.

Each cell holds a fragment of Go source. Its top-level declarations are
merged with everything previous cells declared, a complete main.go is
rendered, fixed up with goimports, built with `go build` and the binary is
run with its output streamed back. Declarations only become part of the
session once the program compiles: a broken cell never changes the state.

Typical flow:
  1) Initialize a session (creates the session directory and `go mod init`):
       python gocell_repl.py init
  2) Execute cells repeatedly (declarations persist):
       python gocell_repl.py --state .gocell_state/<session>/state.pkl exec -c 'func sq(x int) int { return x*x }'
       python gocell_repl.py --state ... exec <<'GO'
       %main
       fmt.Println(sq(3))
       GO

Inside a cell:
  - `%main` (or `%%`) starts the body of func main(); lines after it are
    indented into it. Without it a stub main is used so the code can still
    be compiled.
  - `%args a b`, `%autoget`, `%noautoget`, `%reset`, `%ls`, `%rm key...`,
    `%help` and `!shell command` are handled before the Go code runs.

Environment:
  - GOCELL_GO: go executable (default: "go")
  - GOCELL_GOIMPORTS: goimports executable (default: looked up in PATH)

Security note:
  This compiles and runs arbitrary code. Treat it like running code you wrote.
"""

from __future__ import annotations

import argparse
import json
import os
import pickle
import re
import shlex
import shutil
import subprocess
import sys
import textwrap
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from go_decls import (
    DECLARATION_KINDS,
    NO_CURSOR,
    NO_CURSOR_LINE,
    Cursor,
    Declarations,
    Function,
    GoCellError,
    ParseError,
    ParseResult,
    RenderError,
    parse_declarations,
)


DEFAULT_GOCELL_STATE_DIR = Path(".gocell_state")
DEFAULT_PACKAGE = "gocell"
MAIN_FILENAME = "main.go"
STATE_FILENAME = "state.pkl"
RUNS_LOG_FILENAME = "runs.jsonl"
STATE_VERSION = 1

ENTRY_POINT_MARKERS = ("%main", "%%")
STUB_MAIN = "func main() { flag.Parse() }"

GOIMPORTS_INSTALL_MESSAGE = """
Program goimports is not installed. It is used to automatically import
missing standard packages, and is a standard Go toolkit package. You
can install it from the notebook with:

!go install golang.org/x/tools/cmd/goimports@latest

"""

HELP_TEXT = """\
Special lines in a cell:
  %main, %%        Start the body of func main(). Following lines are indented into it.
  %args a b ...    Set the arguments passed to the program.
  %autoget         Run `go get` after goimports (default).
  %noautoget       Do not run `go get`.
  %reset           Forget all accumulated declarations.
  %ls, %list       List accumulated declarations.
  %rm key ...      Remove declarations by key (see %ls).
  %help            Show this message.
  !command         Run a shell command in the session's Go directory.
"""


class MaterializationError(GoCellError):
    pass


class ToolMissingError(GoCellError):
    def __init__(self, tool: str, message: str):
        self.tool = tool
        super().__init__(message)


class ToolFailureError(GoCellError):
    def __init__(self, tool: str, command: List[str], output: str, returncode: int):
        self.tool = tool
        self.command = command
        self.output = output
        self.returncode = returncode
        super().__init__(f"failed to run {' '.join(shlex.quote(c) for c in command)!r} (exit status {returncode})")


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _create_session_path(package: str) -> Path:
    """Generate a timestamped session directory path."""
    name = re.sub(r"[^a-zA-Z0-9]+", "-", package.lower()).strip("-") or "gocell"
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return DEFAULT_GOCELL_STATE_DIR / f"{name}-{timestamp}" / STATE_FILENAME


def _go_executable() -> str:
    return os.environ.get("GOCELL_GO", "").strip() or "go"


def _log_run(session_dir: Path, entry: Dict[str, Any]) -> None:
    """Append a cell run entry to runs.jsonl.

    Adds timestamp if not present.
    """
    if "timestamp" not in entry:
        entry["timestamp"] = datetime.now(timezone.utc).isoformat()
    log_file = session_dir / RUNS_LOG_FILENAME
    with log_file.open("a", encoding="utf-8") as f:
        f.write(json.dumps(entry) + "\n")


# =============================================================================
# Output channels
# =============================================================================

class StdioChannel:
    """Session output channel backed by this process' stdout/stderr.

    Anything with write_stdout(text) / write_stderr(text) can be used instead,
    e.g. a transport that publishes stream messages to a notebook client.
    """

    def __init__(self, stdout: Optional[IO[str]] = None, stderr: Optional[IO[str]] = None):
        self.stdout = stdout or sys.stdout
        self.stderr = stderr or sys.stderr
        self._lock = threading.Lock()

    def write_stdout(self, text: str) -> None:
        with self._lock:
            self.stdout.write(text)
            self.stdout.flush()

    def write_stderr(self, text: str) -> None:
        with self._lock:
            self.stderr.write(text)
            self.stderr.flush()


# =============================================================================
# Process runner
# =============================================================================

@dataclass
class ToolResult:
    command: List[str]
    output: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessRunner:
    """Runs the external toolchain.

    run() buffers combined stdout+stderr; stream() forwards output live, for
    the compiled program, which may run for as long as it likes.
    """

    def which(self, tool: str) -> Optional[str]:
        return shutil.which(tool)

    def run(self, tool: str, args: List[str], workdir: Path) -> ToolResult:
        cmd = [tool, *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=workdir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError as e:
            raise ToolMissingError(tool, f"{tool} not found: {e}") from e
        return ToolResult(cmd, result.stdout or "", result.returncode)

    def stream(self, cmd: List[str], workdir: Path, output: Any) -> int:
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=workdir,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except FileNotFoundError as e:
            raise ToolMissingError(cmd[0], f"{cmd[0]} not found: {e}") from e

        def pump(pipe: IO[str], write: Callable[[str], None]) -> None:
            with pipe:
                for line in iter(pipe.readline, ""):
                    write(line)

        pumps = [
            threading.Thread(target=pump, args=(proc.stdout, output.write_stdout), daemon=True),
            threading.Thread(target=pump, args=(proc.stderr, output.write_stderr), daemon=True),
        ]
        for t in pumps:
            t.start()
        returncode = proc.wait()
        for t in pumps:
            t.join()
        return returncode


# =============================================================================
# Cell materialization
# =============================================================================

@dataclass
class MaterializedCell:
    """Result of writing a cell as a standalone Go file.

    line_map[i] is the cell line of file line i (NO_CURSOR_LINE for
    scaffolding), col_deltas[i] how far right the cell text was shifted.
    """

    path: Path
    cursor: Cursor
    line_map: List[int]
    col_deltas: List[int]


class LineSink:
    """Consumer of generated lines.

    Writes each line to `f`, keeps the running line counter and translates the
    cell cursor when its line goes by. A write error is latched: the first one
    is kept and the remaining lines are still consumed (but not written), so
    the producer always runs to completion.
    """

    def __init__(self, f: IO[str], cursor_in_cell: Cursor = NO_CURSOR):
        self.f = f
        self.cursor_in_cell = cursor_in_cell
        self.cursor = NO_CURSOR
        self.line_map: List[int] = []
        self.col_deltas: List[int] = []
        self.error: Optional[OSError] = None

    @property
    def line_count(self) -> int:
        return len(self.line_map)

    def add(self, text: str, cell_line: int = NO_CURSOR_LINE, delta_col: int = 0) -> int:
        """Write one line, returning its 0-based line number in the file."""
        line_in_file = self.line_count
        self.line_map.append(cell_line)
        self.col_deltas.append(delta_col)
        if self.error is None:
            try:
                self.f.write(text + "\n")
            except OSError as e:
                self.error = e
        if (
            self.cursor_in_cell.has_cursor()
            and cell_line != NO_CURSOR_LINE
            and cell_line == self.cursor_in_cell.line
        ):
            self.cursor = Cursor(line_in_file, self.cursor_in_cell.col + delta_col)
        return line_in_file

    def consume(self, lines: Iterable[Tuple[str, int, int]]) -> None:
        for text, cell_line, delta_col in lines:
            self.add(text, cell_line, delta_col)


def cell_program_lines(lines: List[str], skip_lines: Set[int]) -> Iterator[Tuple[str, int, int]]:
    """Generate (text, cell_line, delta_col) for the minimal program of a cell."""
    yield "package main", NO_CURSOR_LINE, 0
    yield "", NO_CURSOR_LINE, 0

    in_main = False
    for ii, line in enumerate(lines):
        line = line.rstrip(" ")
        if line in ENTRY_POINT_MARKERS:
            if not in_main:
                yield "", NO_CURSOR_LINE, 0
                yield "func main() {", NO_CURSOR_LINE, 0
                yield "\tflag.Parse()", NO_CURSOR_LINE, 0
                in_main = True
            continue
        if ii in skip_lines:
            continue
        if in_main:
            yield "\t" + line, ii, 1
        else:
            yield line, ii, 0
    if in_main:
        yield "}", NO_CURSOR_LINE, 0


def materialize_cell(
    path: Path,
    lines: List[str],
    skip_lines: Optional[Set[int]] = None,
    cursor_in_cell: Cursor = NO_CURSOR,
) -> MaterializedCell:
    """Write the cell lines as a compilable Go file.

    Args:
        path: File to create (or truncate).
        lines: Raw cell lines.
        skip_lines: Indices of lines to leave out (directives).
        cursor_in_cell: Optional cursor in cell coordinates.

    Returns:
        MaterializedCell with the cursor in file coordinates.

    Raises:
        MaterializationError: the file could not be written. Whatever was
        written before the failure is left on disk.
    """
    path = Path(path)
    try:
        with path.open("w", encoding="utf-8") as f:
            sink = LineSink(f, cursor_in_cell)
            sink.consume(cell_program_lines(lines, set(skip_lines or ())))
    except OSError as e:
        raise MaterializationError(f"creating {str(path)!r}: {e}") from e
    if sink.error is not None:
        raise MaterializationError(f"writing to {str(path)!r}: {sink.error}") from sink.error
    return MaterializedCell(path, sink.cursor, sink.line_map, sink.col_deltas)


# =============================================================================
# Program rendering
# =============================================================================

@dataclass
class RenderedProgram:
    """A complete main.go as written by render_program().

    header_lines counts the package clause and the import block; goimports
    only ever touches that part of the file.
    """

    path: Path
    cursor: Cursor
    line_map: List[int]
    lines: List[str]
    header_lines: int


def render_program(path: Path, decls: Declarations, entry_point: Function) -> RenderedProgram:
    """Write all declarations plus the entry point into one Go file.

    Blocks are written in a fixed order (imports, types, constants,
    variables, functions) and sorted by key within each block, so the same
    set always renders to the same text. The first block reporting a cursor
    wins.

    Raises:
        RenderError: a block failed to render. Blocks after it are not
            attempted and the partial file is left in place.
        MaterializationError: the file could not be written.
    """
    path = Path(path)
    blocks = (
        ("imports", decls.render_imports),
        ("types", decls.render_types),
        ("constants", decls.render_constants),
        ("variables", decls.render_variables),
        ("functions", decls.render_functions),
    )
    cursor = NO_CURSOR
    written: List[str] = []
    line_map: List[int] = []
    header_lines = 0

    def w(text_lines: List[str], origins: List[int]) -> None:
        f.write("".join(line + "\n" for line in text_lines))
        written.extend(text_lines)
        line_map.extend(origins)

    try:
        with path.open("w", encoding="utf-8") as f:
            w(["package main", ""], [NO_CURSOR_LINE, NO_CURSOR_LINE])
            for name, render in blocks:
                try:
                    block_lines, block_cursor, origins = render()
                except (ValueError, TypeError, AttributeError, KeyError) as e:
                    raise RenderError(name, str(e)) from e
                if block_cursor.has_cursor() and not cursor.has_cursor():
                    cursor = block_cursor.shifted(lines=len(written))
                w(block_lines, origins)
                if name == "imports":
                    header_lines = len(written)

            w([""], [NO_CURSOR_LINE])
            if entry_point.has_cursor() and not cursor.has_cursor():
                cursor = entry_point.cursor.shifted(lines=len(written))
            entry_lines = entry_point.definition.split("\n")
            if len(entry_point.source_lines) == len(entry_lines):
                entry_origins = list(entry_point.source_lines)
            else:
                entry_origins = [NO_CURSOR_LINE] * len(entry_lines)
            w(entry_lines, entry_origins)
    except OSError as e:
        raise MaterializationError(f"writing {str(path)!r}: {e}") from e
    return RenderedProgram(path, cursor, line_map, written, header_lines)


def realign_line_map(line_map: List[int], header_lines: int, delta: int) -> List[int]:
    """Shift a program line map after the header grew or shrank by `delta` lines."""
    return [NO_CURSOR_LINE] * max(header_lines + delta, 0) + line_map[header_lines:]


def header_delta(rendered: RenderedProgram, program_lines: List[str]) -> int:
    """Lines goimports added to (or removed from) the header of a rendered program.

    The first declaration line after the header is looked up in the rewritten
    file, ignoring whitespace since gofmt respaces code. When it cannot be
    found, the first line past the rewritten package and import section is
    used instead. The overall length difference is never used: gofmt also
    collapses blank lines further down.
    """
    anchor = next(
        (ii for ii in range(rendered.header_lines, len(rendered.lines)) if rendered.lines[ii].strip()),
        None,
    )
    if anchor is None:
        return 0
    wanted = _compact(rendered.lines[anchor])
    for jj, line in enumerate(program_lines):
        if _compact(line) == wanted:
            return jj - anchor
    first = _first_declaration_line(program_lines)
    return 0 if first is None else first - anchor


def _compact(line: str) -> str:
    return "".join(line.split())


def _first_declaration_line(program_lines: List[str]) -> Optional[int]:
    """Index of the first line after the package clause and imports."""
    in_imports = False
    for jj, line in enumerate(program_lines):
        text = line.strip()
        if in_imports:
            in_imports = not text.startswith(")")
            continue
        if not text or text.startswith("package "):
            continue
        if re.match(r"^import\b", text):
            in_imports = text.endswith("(")
            continue
        return jj
    return None


# =============================================================================
# Diagnostics
# =============================================================================

_DIAGNOSTIC_RE = re.compile(
    r"^(?P<file>(?:\S*/)?" + re.escape(MAIN_FILENAME) + r"):(?P<line>\d+)(?::(?P<col>\d+))?:\s?(?P<msg>.*)$"
)


def format_diagnostics(output: str, program_lines: List[str], line_map: List[int]) -> str:
    """Point compiler messages at cell lines where possible.

    `main.go:L:C: msg` becomes `cell line N: msg` when program line L came
    from the current cell, and every located message is followed by the
    program line it refers to.
    """
    formatted: List[str] = []
    for raw in output.splitlines():
        match = _DIAGNOSTIC_RE.match(raw.strip())
        if not match:
            formatted.append(raw)
            continue
        line = int(match.group("line")) - 1
        cell_line = line_map[line] if 0 <= line < len(line_map) else NO_CURSOR_LINE
        if cell_line != NO_CURSOR_LINE:
            location = f"cell line {cell_line + 1}"
        else:
            location = f"{MAIN_FILENAME}:{line + 1}"
            if match.group("col"):
                location += f":{match.group('col')}"
        formatted.append(f"{location}: {match.group('msg')}")
        if 0 <= line < len(program_lines):
            formatted.append(f"    {program_lines[line].strip()}")
    return "\n".join(formatted) + ("\n" if formatted else "")


# =============================================================================
# Directives
# =============================================================================

@dataclass
class Directive:
    line: int
    name: str
    args: List[str] = field(default_factory=list)


_KNOWN_DIRECTIVES = {"args", "autoget", "noautoget", "reset", "ls", "list", "rm", "help"}


def parse_directives(lines: List[str]) -> Tuple[Set[int], List[Directive]]:
    """Find lines starting with `%` or `!` (in column 0) in a cell.

    Returns:
        (skip_lines, directives): the line indices the materializer should
        leave out, and the directives in cell order. Entry point markers are
        left to the materializer.

    Raises:
        GoCellError: unknown `%` command.
    """
    skip_lines: Set[int] = set()
    directives: List[Directive] = []
    for ii, line in enumerate(lines):
        # Only column 0 counts: an indented `!b` is Go negation.
        if not line or line[0] not in "%!":
            continue
        if line.rstrip(" ") in ENTRY_POINT_MARKERS:
            continue
        stripped = line.rstrip()
        if stripped.startswith("!"):
            directives.append(Directive(ii, "!", [stripped[1:].strip()]))
            skip_lines.add(ii)
        elif stripped.startswith("%"):
            try:
                parts = shlex.split(stripped[1:])
            except ValueError as e:
                raise GoCellError(f"cell line {ii + 1}: {e}") from e
            if not parts or parts[0] not in _KNOWN_DIRECTIVES:
                raise GoCellError(f"cell line {ii + 1}: unknown special command {stripped!r}, see %help")
            directives.append(Directive(ii, parts[0], parts[1:]))
            skip_lines.add(ii)
    return skip_lines, directives


def has_go_code(lines: List[str], skip_lines: Set[int]) -> bool:
    return any(line.strip() for ii, line in enumerate(lines) if ii not in skip_lines)


# =============================================================================
# Session
# =============================================================================

@dataclass
class CellResult:
    """Outcome of a successful pipeline run (compiled, committed and executed)."""

    exit_code: int
    has_main: bool
    committed_keys: Dict[str, List[str]]


@dataclass
class CursorInfo:
    cursor: Cursor
    declaration: Optional[Tuple[str, str]]


class GoCellSession:
    """State of one notebook session and the cell build pipeline.

    The committed declarations are only ever replaced in one place, after a
    successful `go build`. Everything before that works on a copy.
    """

    def __init__(
        self,
        session_dir: Path,
        package: str = DEFAULT_PACKAGE,
        args: Optional[List[str]] = None,
        auto_get: bool = True,
        runner: Optional[ProcessRunner] = None,
        parser: Optional[Callable[..., ParseResult]] = None,
        output: Any = None,
    ):
        self.session_dir = Path(session_dir)
        self.package = package
        self.args: List[str] = list(args or [])
        self.auto_get = auto_get
        self.decls = Declarations()
        self.runner = runner or ProcessRunner()
        self.parse = parser or parse_declarations
        self.output = output or StdioChannel()

    @property
    def workdir(self) -> Path:
        return self.session_dir / "go"

    @property
    def main_path(self) -> Path:
        return self.workdir / MAIN_FILENAME

    @property
    def binary_path(self) -> Path:
        return self.workdir / self.package

    @property
    def state_path(self) -> Path:
        return self.session_dir / STATE_FILENAME

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def to_state(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "package": self.package,
            "args": list(self.args),
            "auto_get": self.auto_get,
            "decls": self.decls,
        }

    def save(self) -> None:
        _ensure_parent_dir(self.state_path)
        tmp_path = self.state_path.with_suffix(self.state_path.suffix + ".tmp")
        with tmp_path.open("wb") as f:
            pickle.dump(self.to_state(), f, protocol=pickle.HIGHEST_PROTOCOL)
        tmp_path.replace(self.state_path)

    @classmethod
    def load(cls, state_path: Path, **kwargs: Any) -> "GoCellSession":
        state_path = Path(state_path)
        if not state_path.exists():
            raise GoCellError(
                f"No state found at {state_path}. Run: python gocell_repl.py init"
            )
        with state_path.open("rb") as f:
            state = pickle.load(f)
        if not isinstance(state, dict) or not isinstance(state.get("decls"), Declarations):
            raise GoCellError(f"Corrupt state file: {state_path}")
        session = cls(
            state_path.parent,
            package=state.get("package", DEFAULT_PACKAGE),
            args=state.get("args", []),
            auto_get=state.get("auto_get", True),
            **kwargs,
        )
        session.decls = state["decls"]
        return session

    def init_workdir(self) -> None:
        """Create the Go module the cells are built in."""
        self.workdir.mkdir(parents=True, exist_ok=True)
        if not (self.workdir / "go.mod").exists():
            self._run_checked("go mod init", _go_executable(), ["mod", "init", self.package])

    # -------------------------------------------------------------------------
    # Toolchain
    # -------------------------------------------------------------------------

    def _run_checked(self, label: str, tool: str, args: List[str]) -> ToolResult:
        result = self.runner.run(tool, args, self.workdir)
        if not result.ok:
            self.output.write_stderr(self._with_newline(result.output) + f"exit status {result.returncode}\n")
            raise ToolFailureError(label, result.command, result.output, result.returncode)
        return result

    @staticmethod
    def _with_newline(text: str) -> str:
        return text if not text or text.endswith("\n") else text + "\n"

    def go_imports(self) -> None:
        """Run goimports on main.go, then `go get` when auto_get is on."""
        goimports = os.environ.get("GOCELL_GOIMPORTS", "").strip() or self.runner.which("goimports")
        if not goimports:
            self.output.write_stderr(GOIMPORTS_INSTALL_MESSAGE)
            raise ToolMissingError("goimports", "goimports is not installed, see the instructions above")
        self._run_checked("goimports", goimports, ["-w", str(self.main_path)])
        if self.auto_get:
            self._run_checked("go get", _go_executable(), ["get"])

    def compile(self, rendered: RenderedProgram) -> None:
        """Build main.go into the session binary.

        Compiler messages are forwarded to the output channel, with positions
        mapped back to cell lines where the rendered program allows it.
        """
        result = self.runner.run(_go_executable(), ["build", "-o", str(self.binary_path)], self.workdir)
        if result.ok:
            return
        try:
            program_lines = self.main_path.read_text(encoding="utf-8").split("\n")
        except OSError:
            program_lines = rendered.lines
        # goimports rewrites the import block, moving everything below it.
        delta = header_delta(rendered, program_lines)
        line_map = realign_line_map(rendered.line_map, rendered.header_lines, delta)
        self.output.write_stderr(format_diagnostics(result.output, program_lines, line_map))
        raise ToolFailureError("go build", result.command, result.output, result.returncode)

    def execute(self) -> int:
        return self.runner.stream([str(self.binary_path), *self.args], self.workdir, self.output)

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def _parse_cell(self, materialized: MaterializedCell) -> ParseResult:
        try:
            parsed = self.parse(materialized.path, materialized.cursor)
        except ParseError as e:
            line_map = materialized.line_map
            if 0 <= e.line < len(line_map) and line_map[e.line] != NO_CURSOR_LINE:
                col = max(e.col - materialized.col_deltas[e.line], 0)
                raise ParseError(e.message, line_map[e.line], col, filename="cell") from e
            raise
        # Records point at materialized file lines; point them at cell lines.
        for kind in DECLARATION_KINDS:
            for decl in parsed.decls.table(kind).values():
                decl.source_lines = tuple(
                    line_map_get(materialized.line_map, line) for line in decl.source_lines
                )
        return parsed

    def _prepare(
        self,
        lines: List[str],
        skip_lines: Set[int],
        cursor_in_cell: Cursor,
        progress: Dict[str, Any],
    ) -> Tuple[Declarations, Function, RenderedProgram, ParseResult]:
        self.workdir.mkdir(parents=True, exist_ok=True)

        progress["stage"] = "materialize"
        materialized = materialize_cell(self.main_path, lines, skip_lines, cursor_in_cell)

        progress["stage"] = "parse"
        parsed = self._parse_cell(materialized)
        cell_decls = parsed.decls

        entry_point = cell_decls.functions.pop("main", None)
        progress["has_main"] = entry_point is not None
        if entry_point is None:
            entry_point = Function(key="main", definition=STUB_MAIN, name="main")

        progress["stage"] = "merge"
        tentative = self.decls.copy()
        progress["evicted"] = tentative.merge_from(cell_decls)

        progress["stage"] = "render"
        rendered = render_program(self.main_path, tentative, entry_point)
        return tentative, entry_point, rendered, parsed

    def execute_cell(self, lines: List[str], skip_lines: Optional[Set[int]] = None) -> CellResult:
        """Merge, build, commit and run one cell.

        Args:
            lines: Cell lines.
            skip_lines: Line indices to leave out (already handled directives).

        Returns:
            CellResult with the program's exit code. A non-zero exit code is
            program behaviour, not a failure: the declarations stay committed.

        Raises:
            GoCellError: any failure up to and including compilation. The
            committed declarations are unchanged. The error's `stage` names
            the step that failed.
        """
        progress: Dict[str, Any] = {"stage": "start", "committed": False}
        run_id = f"run_{uuid.uuid4().hex[:8]}"
        start_time = time.time()
        exit_code: Optional[int] = None
        error: Optional[BaseException] = None
        try:
            tentative, _, rendered, _ = self._prepare(lines, set(skip_lines or ()), NO_CURSOR, progress)

            progress["stage"] = "imports"
            self.go_imports()

            progress["stage"] = "compile"
            self.compile(rendered)

            progress["stage"] = "commit"
            tentative.clear_cell_info()
            self.decls = tentative
            progress["committed"] = True
            self.save()
            for key in progress["evicted"]:
                self.output.write_stderr(f"* Declaration {key!r} removed, it shared a name with the new cell.\n")

            progress["stage"] = "execute"
            exit_code = self.execute()
            progress["stage"] = "done"
            return CellResult(exit_code, progress.get("has_main", False), self.decls.list_keys())
        except GoCellError as e:
            e.stage = progress["stage"]
            error = e
            raise
        finally:
            _log_run(self.session_dir, {
                "run_id": run_id,
                "stage": progress["stage"],
                "status": "error" if error is not None else "success",
                "committed": progress["committed"],
                "exit_code": exit_code,
                "duration_ms": int((time.time() - start_time) * 1000),
                "error_preview": str(error)[:200] if error is not None else "",
            })

    def cursor_in_program(
        self,
        lines: List[str],
        cursor_in_cell: Cursor,
        skip_lines: Optional[Set[int]] = None,
    ) -> CursorInfo:
        """Translate a cell cursor into the full rendered program.

        Runs the pipeline up to rendering (no toolchain, no commit). Returns
        the cursor in main.go and the (kind, key) of the declaration holding
        it, or ("functions", "main") when it is in the entry point.
        """
        progress: Dict[str, Any] = {"stage": "start"}
        _, _, rendered, parsed = self._prepare(lines, set(skip_lines or ()), cursor_in_cell, progress)
        return CursorInfo(rendered.cursor, parsed.cursor_key)

    # -------------------------------------------------------------------------
    # Directives and whole cells
    # -------------------------------------------------------------------------

    def list_declarations(self) -> str:
        out: List[str] = []
        for kind, keys in self.decls.list_keys().items():
            if keys:
                out.append(f"{kind}:")
                out.extend(f"  - {key}" for key in keys)
        return "\n".join(out) + "\n" if out else "No declarations.\n"

    def apply_directive(self, directive: Directive) -> None:
        name = directive.name
        if name == "!":
            cmd = directive.args[0]
            self.workdir.mkdir(parents=True, exist_ok=True)
            returncode = self.runner.stream(["bash", "-c", cmd], self.workdir, self.output)
            if returncode != 0:
                raise ToolFailureError("shell", ["bash", "-c", cmd], "", returncode)
        elif name == "args":
            self.args = list(directive.args)
            self.save()
        elif name == "autoget":
            self.auto_get = True
            self.save()
        elif name == "noautoget":
            self.auto_get = False
            self.save()
        elif name == "reset":
            self.decls = Declarations()
            self.save()
            self.output.write_stdout("* State reset: all declarations removed.\n")
        elif name in ("ls", "list"):
            self.output.write_stdout(self.list_declarations())
        elif name == "rm":
            missing = self.decls.remove(directive.args)
            self.save()
            for key in missing:
                self.output.write_stderr(f"* Key {key!r} not found.\n")
            removed = len(directive.args) - len(missing)
            self.output.write_stdout(f"* {removed} declaration(s) removed.\n")
        elif name == "help":
            self.output.write_stdout(HELP_TEXT)
        else:
            raise GoCellError(f"unknown special command %{name}")

    def run_cell(self, code: str) -> Optional[CellResult]:
        """Run a cell as typed by the user: directives first, then the Go code."""
        lines = code.split("\n")
        skip_lines, directives = parse_directives(lines)
        for directive in directives:
            self.apply_directive(directive)
        if not has_go_code(lines, skip_lines):
            return None
        return self.execute_cell(lines, skip_lines)


def line_map_get(line_map: List[int], line: int) -> int:
    if 0 <= line < len(line_map):
        return line_map[line]
    return NO_CURSOR_LINE


# =============================================================================
# CLI
# =============================================================================

def _describe_error(e: GoCellError) -> str:
    stage = getattr(e, "stage", None)
    if stage:
        return f"in execute_cell() while running stage {stage!r}: {e}"
    return str(e)


def cmd_init(args: argparse.Namespace) -> int:
    state_path = Path(args.state) if args.state else _create_session_path(args.package)
    session = GoCellSession(
        state_path.parent,
        package=args.package,
        args=args.args or [],
        auto_get=args.auto_get,
    )
    session.init_workdir()
    session.save()

    print(f"Session path: {state_path}")
    print(f"Session directory: {state_path.parent}")
    print(f"Go directory: {session.workdir}")
    print(f"Package: {session.package}")
    if not session.auto_get:
        print("Auto get: disabled")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    session = GoCellSession.load(Path(args.state))
    keys = session.decls.list_keys()

    print("gocell status")
    print(f"  State file: {args.state}")
    print(f"  Session directory: {session.session_dir}")
    print(f"  Go directory: {session.workdir}")
    print(f"  Package: {session.package}")
    print(f"  Args: {' '.join(session.args) if session.args else '(none)'}")
    print(f"  Auto get: {'enabled' if session.auto_get else 'disabled'}")
    for kind in DECLARATION_KINDS:
        print(f"  {kind.capitalize()}: {len(keys[kind])}")
        if args.show_decls:
            for key in keys[kind]:
                print(f"    - {key}")
    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    session = GoCellSession.load(Path(args.state))
    count = len(session.decls)
    session.decls = Declarations()
    session.save()
    print(f"Removed {count} declarations from: {args.state}")
    return 0


def _read_code(args: argparse.Namespace) -> str:
    code = args.code
    if code is None:
        code = sys.stdin.read()
    return code


def cmd_exec(args: argparse.Namespace) -> int:
    session = GoCellSession.load(Path(args.state).resolve())
    result = session.run_cell(_read_code(args))
    if result is None or result.exit_code == 0:
        return 0
    sys.stderr.write(f"exit status {result.exit_code}\n")
    return 1


def cmd_cursor(args: argparse.Namespace) -> int:
    """Print where a cell cursor lands in the rendered main.go, as JSON."""
    session = GoCellSession.load(Path(args.state).resolve())
    lines = _read_code(args).split("\n")
    skip_lines, _ = parse_directives(lines)
    info = session.cursor_in_program(lines, Cursor(args.line, args.col), skip_lines)
    result = {
        "found": info.cursor.has_cursor(),
        "line": info.cursor.line if info.cursor.has_cursor() else None,
        "col": info.cursor.col if info.cursor.has_cursor() else None,
        "declaration": list(info.declaration) if info.declaration else None,
        "file": str(session.main_path),
    }
    print(json.dumps(result, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="gocell_repl",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=textwrap.dedent(
            """\
            Persistent Go notebook cells.

            Examples:
              # Initialize (auto-creates session directory)
              python gocell_repl.py init

              # Use the session (pass --state from init output)
              python gocell_repl.py --state .gocell_state/gocell-20260120-153000/state.pkl status
              python gocell_repl.py --state ... exec -c 'type Point struct{ X, Y int }'
              python gocell_repl.py --state ... exec <<'GO'
              %main
              fmt.Println(Point{1, 2})
              GO
            """
        ),
    )
    p.add_argument(
        "--state",
        default=None,
        help="Path to state pickle. For init, this is optional (auto-generated). For other commands, required.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    p_init = sub.add_parser("init", help="Initialize a session and its Go module")
    p_init.add_argument(
        "--package",
        default=DEFAULT_PACKAGE,
        help=f"Go module and binary name (default: {DEFAULT_PACKAGE})",
    )
    p_init.add_argument(
        "--no-auto-get",
        dest="auto_get",
        action="store_false",
        help="Do not run `go get` after goimports",
    )
    p_init.add_argument(
        "--args",
        nargs=argparse.REMAINDER,
        default=None,
        help="Arguments passed to the program on every execution",
    )
    p_init.set_defaults(func=cmd_init)

    p_status = sub.add_parser("status", help="Show current state summary")
    p_status.add_argument(
        "--show-decls", action="store_true", help="List accumulated declaration keys"
    )
    p_status.set_defaults(func=cmd_status)

    p_reset = sub.add_parser("reset", help="Forget all accumulated declarations")
    p_reset.set_defaults(func=cmd_reset)

    p_exec = sub.add_parser("exec", help="Execute a Go cell with persisted declarations")
    p_exec.add_argument(
        "-c",
        "--code",
        default=None,
        help="Inline cell contents. If omitted, reads the cell from stdin.",
    )
    p_exec.set_defaults(func=cmd_exec)

    p_cursor = sub.add_parser(
        "cursor", help="Translate a cell cursor into the rendered main.go (JSON)"
    )
    p_cursor.add_argument("--line", type=int, required=True, help="0-based cell line")
    p_cursor.add_argument("--col", type=int, required=True, help="0-based cell column")
    p_cursor.add_argument(
        "-c",
        "--code",
        default=None,
        help="Inline cell contents. If omitted, reads the cell from stdin.",
    )
    p_cursor.set_defaults(func=cmd_cursor)

    return p


def main(argv: List[str]) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd != "init" and not args.state:
        parser.error(f"--state is required for '{args.cmd}' command")

    try:
        return int(args.func(args))
    except GoCellError as e:
        sys.stderr.write(f"ERROR: {_describe_error(e)}\n")
        return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
