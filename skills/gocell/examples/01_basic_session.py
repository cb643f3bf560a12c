#!/usr/bin/env python3
"""Example: Basic gocell session.

This example walks through a notebook session:
1. Initialize a session (creates a Go module)
2. Declare a type and a function in one cell
3. Use them from a later cell's %main
4. Submit a broken cell and see that the session is unchanged
5. Translate a cell cursor into the rendered main.go

Requires `go` and `goimports` in PATH.

Run from the skills/gocell directory:
    python3 examples/01_basic_session.py
"""

import json
import subprocess
import sys
import tempfile
from pathlib import Path

# Path to gocell_repl.py
GOCELL_REPL = Path(__file__).parent.parent / "scripts" / "gocell_repl.py"


def run_cmd(cmd: list, cwd: Path = None, stdin: str = None) -> tuple:
    """Run command and return (stdout, stderr, returncode)."""
    result = subprocess.run(cmd, capture_output=True, text=True, cwd=cwd, input=stdin)
    return result.stdout, result.stderr, result.returncode


def main():
    with tempfile.TemporaryDirectory() as tmpdir:
        tmpdir = Path(tmpdir)

        print("=" * 60)
        print("Example 1: Basic gocell session")
        print("=" * 60)

        # Step 1: Initialize session
        print("\n[Step 1] Initializing session...")
        stdout, stderr, code = run_cmd(
            ["python3", str(GOCELL_REPL), "init", "--no-auto-get"],
            cwd=tmpdir
        )
        if code != 0:
            print(f"Error: {stderr}")
            return 1

        state_path = None
        for line in stdout.splitlines():
            if "Session path:" in line:
                state_path = tmpdir / line.split(":", 1)[1].strip()
                break

        print(f"  Session created: {state_path.parent.name}")
        repl = ["python3", str(GOCELL_REPL), "--state", str(state_path)]

        # Step 2: Declarations only, run with a stub main
        print("\n[Step 2] Declaring Point and Point.Scale...")
        stdout, stderr, code = run_cmd(repl + ["exec"], stdin="""
type Point struct{ X, Y int }

func (p Point) Scale(k int) Point {
	return Point{p.X * k, p.Y * k}
}
""")
        print(stderr or "  ok")

        # Step 3: Use them from %main (fmt is imported by goimports)
        print("\n[Step 3] Using them from a later cell...")
        stdout, stderr, code = run_cmd(repl + ["exec"], stdin="""
%main
fmt.Println(Point{1, 2}.Scale(3))
""")
        print(f"  Program output: {stdout.strip()}")

        # Step 4: A cell that does not compile is not committed
        print("\n[Step 4] Submitting a broken cell...")
        stdout, stderr, code = run_cmd(repl + ["exec"], stdin="""
func broken() int {
	return notDefined
}
""")
        print(f"  Exit code: {code}")
        print("  " + "\n  ".join(stderr.strip().splitlines()))
        stdout, stderr, code = run_cmd(repl + ["status", "--show-decls"])
        print(stdout)

        # Step 5: Where does a cell cursor land in main.go?
        print("[Step 5] Translating a cursor...")
        stdout, stderr, code = run_cmd(
            repl + ["cursor", "--line", "1", "--col", "8"],
            stdin="func area(p Point) int {\n\treturn p.X * p.Y\n}"
        )
        info = json.loads(stdout)
        print(f"  main.go line {info['line']}, col {info['col']} in {info['declaration']}")

        print("\n" + "=" * 60)
        print("Example completed successfully!")
        print("=" * 60)
        return 0


if __name__ == "__main__":
    sys.exit(main())
