"""
Run external tools (cargo, objcopy, the filesystem packer, the emulator)
through one entry point so every stage sees failures the same way.
"""

from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

PathLike = Union[str, Path]

# Reported when the tool could not be started at all (shell convention).
NOT_STARTED = 127

OUTPUT_TAIL_LINES = 20


@dataclass(frozen=True)
class ToolResult:
    argv: Tuple[str, ...]
    returncode: int
    output: str = ""
    started: bool = True

    @property
    def ok(self) -> bool:
        return self.started and self.returncode == 0


def note(message: str) -> None:
    print(f"bootpipe: {message}", file=sys.stderr)


def format_argv(argv: Sequence[str]) -> str:
    return " ".join(argv)


def describe(result: ToolResult) -> str:
    if not result.started:
        return f"could not start {result.argv[0]}"
    return f"exit {result.returncode}: {format_argv(result.argv)}"


def tail(text: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    kept = text.rstrip("\n").splitlines()[-lines:]
    return "\n".join(kept)


def run_tool(
    argv: Sequence[PathLike],
    *,
    cwd: Optional[PathLike] = None,
    capture: bool = True,
    echo: bool = False,
) -> ToolResult:
    """Run ``argv`` to completion.

    With ``capture`` the combined stdout/stderr is collected into the result;
    otherwise the child inherits the terminal. A tool that cannot be started
    yields ``started=False`` and ``returncode=NOT_STARTED`` instead of raising.
    """
    args = tuple(str(a) for a in argv)
    if echo:
        note(f"exec {format_argv(args)}")
    try:
        if capture:
            proc = subprocess.run(
                args,
                cwd=str(cwd) if cwd is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
            )
            output = proc.stdout or ""
        else:
            proc = subprocess.run(args, cwd=str(cwd) if cwd is not None else None)
            output = ""
    except OSError as exc:
        return ToolResult(args, NOT_STARTED, f"{args[0]}: {exc.strerror or exc}", started=False)

    if echo and output:
        print(output, end="" if output.endswith("\n") else "\n", file=sys.stderr)
    return ToolResult(args, proc.returncode, output)
