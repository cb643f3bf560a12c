"""Shared test fixtures for gocell tests."""
import os
import subprocess
import sys
from pathlib import Path

import pytest

# Add scripts dir to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))

from gocell_repl import GoCellSession, ToolResult  # noqa: E402


def pytest_addoption(parser):
    """Add custom CLI options for pytest."""
    parser.addoption(
        "--slow",
        action="store_true",
        default=False,
        help="Run slow tests that build real Go programs"
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow (requires --slow to run)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip slow tests unless --slow flag is given."""
    if config.getoption("--slow"):
        return

    skip_slow = pytest.mark.skip(reason="need --slow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


@pytest.fixture(autouse=True)
def clean_toolchain_env(monkeypatch):
    """Tests never pick up toolchain overrides from the developer's shell."""
    monkeypatch.delenv("GOCELL_GO", raising=False)
    monkeypatch.delenv("GOCELL_GOIMPORTS", raising=False)


class RecordingChannel:
    """Output channel that keeps everything written to it."""

    def __init__(self):
        self.stdout_parts = []
        self.stderr_parts = []

    def write_stdout(self, text):
        self.stdout_parts.append(text)

    def write_stderr(self, text):
        self.stderr_parts.append(text)

    @property
    def stdout(self):
        return "".join(self.stdout_parts)

    @property
    def stderr(self):
        return "".join(self.stderr_parts)


class FakeRunner:
    """Scripted stand-in for ProcessRunner.

    `results` maps a step ("goimports", "get", "build", "mod") to
    (output, returncode). The main.go seen by `go build` is kept in
    `built_sources`.
    """

    def __init__(self, results=None, exit_code=0, program_output="", goimports="/fake/bin/goimports"):
        self.results = dict(results or {})
        self.exit_code = exit_code
        self.program_output = program_output
        self.goimports = goimports
        self.calls = []
        self.built_sources = []

    def which(self, tool):
        return self.goimports if tool == "goimports" else None

    def steps(self):
        return [self._step(call[0], call[1:]) for call in self.calls]

    @staticmethod
    def _step(tool, args):
        if tool.endswith("goimports"):
            return "goimports"
        if tool == "go":
            return args[0]
        return "exec"

    def run(self, tool, args, workdir):
        self.calls.append([tool, *args])
        step = self._step(tool, args)
        if step == "build":
            self.built_sources.append((Path(workdir) / "main.go").read_text())
        output, returncode = self.results.get(step, ("", 0))
        return ToolResult([tool, *args], output, returncode)

    def stream(self, cmd, workdir, output):
        self.calls.append(list(cmd))
        if self.program_output:
            output.write_stdout(self.program_output)
        return self.exit_code


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def session(tmp_path, runner, channel):
    """A session backed by the fake runner, with nothing committed yet."""
    return GoCellSession(tmp_path / "session", runner=runner, output=channel)


# -----------------------------------------------------------------------------
# CLI fixtures: a fake go toolchain made of shell scripts
# -----------------------------------------------------------------------------

FAKE_GO = r'''#!/bin/bash
case "$1" in
  mod)
    echo "module $3" > go.mod
    ;;
  get)
    ;;
  build)
    if grep -q BROKEN main.go; then
      echo "./main.go:3:5: undefined: BROKEN"
      exit 1
    fi
    cat > "$3" <<'EOF'
#!/bin/bash
echo "fake program args: $*"
EOF
    chmod +x "$3"
    ;;
  *)
    echo "unexpected go command: $*" >&2
    exit 2
    ;;
esac
'''

FAKE_GOIMPORTS = "#!/bin/bash\nexit 0\n"


@pytest.fixture
def gocell_repl_path():
    """Path to the gocell_repl.py script."""
    return SCRIPTS_DIR / "gocell_repl.py"


@pytest.fixture
def fake_toolchain_env(tmp_path):
    """Environment pointing gocell at the fake go and goimports scripts."""
    bin_dir = tmp_path / "fakebin"
    bin_dir.mkdir()
    go = bin_dir / "go"
    go.write_text(FAKE_GO)
    go.chmod(0o755)
    goimports = bin_dir / "goimports"
    goimports.write_text(FAKE_GOIMPORTS)
    goimports.chmod(0o755)
    env = dict(os.environ)
    env["GOCELL_GO"] = str(go)
    env["GOCELL_GOIMPORTS"] = str(goimports)
    return env


@pytest.fixture
def init_session(tmp_path, gocell_repl_path, fake_toolchain_env):
    """Factory fixture to create initialized sessions.

    Runs gocell_repl.py init and returns the state.pkl path.
    """
    def _init(*extra_args) -> Path:
        cmd = [sys.executable, str(gocell_repl_path), "init", *extra_args]
        result = subprocess.run(cmd, capture_output=True, text=True, cwd=tmp_path, env=fake_toolchain_env)
        assert result.returncode == 0, f"Init failed: {result.stderr}"

        for line in result.stdout.splitlines():
            if "Session path:" in line:
                raw_path = line.split(":", 1)[1].strip()
                return (tmp_path / raw_path).resolve()

        raise ValueError(f"Could not find state path in init output: {result.stdout}")

    return _init


@pytest.fixture
def run_cli(gocell_repl_path, fake_toolchain_env):
    """Factory fixture to run gocell_repl.py commands on a session.

    Returns (stdout, stderr, returncode).
    """
    def _run(state_path: Path, *args, stdin=None) -> tuple:
        cmd = [sys.executable, str(gocell_repl_path), "--state", str(state_path), *args]
        result = subprocess.run(cmd, capture_output=True, text=True, input=stdin, env=fake_toolchain_env)
        return result.stdout, result.stderr, result.returncode

    return _run
