#!/usr/bin/env python3
"""
Stand-in for the filesystem packer:
``--target DIR --output IMG [--entry NAME] NAME...``.

The "image" is JSON: {"entry": NAME|null, "files": {NAME: size}}.
FAKE_PACKER_FAIL=<status> writes half an image and exits with it.
"""

import argparse
import json
import os
import sys
from pathlib import Path


def main(argv):
    ap = argparse.ArgumentParser()
    ap.add_argument("--target", required=True)
    ap.add_argument("--output", required=True)
    ap.add_argument("--entry", default=None)
    ap.add_argument("names", nargs="*")
    args = ap.parse_args(argv)

    out = Path(args.output)
    fail = os.environ.get("FAKE_PACKER_FAIL")
    if fail:
        out.write_text('{"files": {', encoding="utf-8")
        return int(fail)

    files = {}
    for name in args.names:
        path = Path(args.target) / name
        if not path.is_file():
            print(f"fs packer: missing {path}", file=sys.stderr)
            return 2
        files[name] = path.stat().st_size
    out.write_text(json.dumps({"entry": args.entry, "files": files}), encoding="utf-8")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
