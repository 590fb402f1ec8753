from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from .boards import emit_board_constants, load_registry, lookup
from .config import BUILD_MODES, load_workspace, resolve_config
from .errors import PipelineError
from .pipeline import Pipeline
from .tools import note, tail

COMMANDS = ("build", "run", "clean", "disasm", "fs-img", "board-constants", "boards")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bootpipe",
        description="Build a bare-metal kernel image and boot it under QEMU with the board's device topology.",
    )
    parser.add_argument("command", choices=COMMANDS, help="Operation to run.")
    parser.add_argument("--config", default=None, help="Workspace JSON (default: ./bootpipe.json if present).")
    parser.add_argument("--board", default=None, help="Board profile (env BOARD, default qemu).")
    parser.add_argument("--mode", choices=BUILD_MODES, default=None, help="Build mode (env MODE, default release).")
    parser.add_argument("--user-mode", choices=BUILD_MODES, default=None, help="User program build mode.")
    parser.add_argument("--display", default=None, help="on|off (env GUI, default off).")
    parser.add_argument("--test", default=None, help="Program the filesystem image starts by default (env TEST).")
    parser.add_argument("--disasm-flags", default=None, help="objdump flags (env DISASM, default -x).")
    parser.add_argument("--target", default=None, help="Target triple (env TARGET).")
    parser.add_argument("--sbi", default=None, help="Firmware flavour (env SBI, default rustsbi).")
    parser.add_argument("--out", default=None, help="Output path for board-constants.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Echo commands and tool output.")
    return parser


def _report(exc: PipelineError) -> None:
    print(f"bootpipe: ERROR: {exc}", file=sys.stderr)
    if exc.output.strip():
        print(tail(exc.output), file=sys.stderr)


def _run(args: argparse.Namespace) -> int:
    config = resolve_config(
        {
            "board": args.board,
            "mode": args.mode,
            "user_mode": args.user_mode,
            "display": args.display,
            "test": args.test,
            "disasm_flags": args.disasm_flags,
            "target": args.target,
            "sbi": args.sbi,
        },
        os.environ,
    )
    workspace = load_workspace(Path(args.config) if args.config else None)
    registry = load_registry(workspace.boards_file)

    if args.command == "boards":
        for name in sorted(registry):
            profile = registry[name]
            print(f"{name}\t{profile.arch}\t{profile.kernel_entry_pa:#x}\t{len(profile.devices)} devices")
        return 0
    if args.command == "board-constants":
        profile = lookup(registry, config.board)
        out = Path(args.out) if args.out else workspace.kernel_dir / "src" / "boards" / f"{profile.name}_generated.rs"
        emit_board_constants(profile, out)
        note(f"wrote {out}")
        return 0

    pipeline = Pipeline(config, workspace, registry, verbose=args.verbose)
    if args.command == "build":
        pipeline.build()
        return 0
    if args.command == "run":
        return pipeline.run()
    if args.command == "clean":
        pipeline.clean()
        return 0
    if args.command == "disasm":
        return pipeline.disasm()
    if args.command == "fs-img":
        if pipeline.fs_image() is None:
            note("no user program crate configured; nothing to pack")
        return 0
    raise AssertionError(args.command)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    try:
        return _run(args)
    except PipelineError as exc:
        _report(exc)
        return exc.code
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
