#!/usr/bin/env python3
"""
Stand-in for ``cargo build --target T [--release]``.

Reads ``fake-cargo.json`` from the working directory:
  {"binaries": {"os": "0x80200000"}, "fail": 0}
and writes one ELF per binary (plus a cargo-style ``.d`` file and ``deps/``)
to target/T/<mode>/. Each call is appended to ``fake-cargo.log`` together
with the contents of ``src/linker.ld`` at the time of the call.
"""

import json
import sys
from pathlib import Path

from elfgen import make_elf, payload_for


def main(argv):
    if not argv or argv[0] != "build":
        print(f"fake cargo: unsupported command {argv!r}", file=sys.stderr)
        return 101
    target = argv[argv.index("--target") + 1]
    mode = "release" if "--release" in argv else "debug"

    spec = json.loads(Path("fake-cargo.json").read_text(encoding="utf-8"))
    staged = Path("src") / "linker.ld"
    record = {"argv": argv, "staged_layout": staged.read_text(encoding="utf-8") if staged.exists() else None}
    with open("fake-cargo.log", "a", encoding="utf-8") as log:
        log.write(json.dumps(record) + "\n")

    if spec.get("fail"):
        print("error[E0425]: cannot find value `x` in this scope", file=sys.stderr)
        return int(spec["fail"])

    out = Path("target") / target / mode
    out.mkdir(parents=True, exist_ok=True)
    (out / "deps").mkdir(exist_ok=True)
    for name, addr in spec.get("binaries", {}).items():
        (out / name).write_bytes(make_elf([(int(str(addr), 0), payload_for(name))], bss=0x100))
        (out / f"{name}.d").write_text(f"{out / name}: src/main.rs\n", encoding="utf-8")
    print(f"    Finished {mode} target(s)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
