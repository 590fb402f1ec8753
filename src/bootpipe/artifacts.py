from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


def partial_path(final: Path) -> Path:
    return final.with_name(f".{final.name}.partial")


def remove_file(path: Path) -> bool:
    """Delete ``path`` if it is a file. Returns True when something was removed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


@contextmanager
def publishing(final: Path) -> Iterator[Path]:
    """Yield a scratch path next to ``final``; rename it into place on success.

    Any exception leaves ``final`` untouched and removes the scratch file.
    """
    final.parent.mkdir(parents=True, exist_ok=True)
    scratch = partial_path(final)
    remove_file(scratch)
    try:
        yield scratch
    except BaseException:
        remove_file(scratch)
        raise
    os.replace(scratch, final)


def write_text_atomic(path: Path, text: str) -> None:
    with publishing(path) as scratch:
        with scratch.open("w", encoding="utf-8", newline="\n") as f:
            f.write(text)
