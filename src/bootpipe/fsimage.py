"""
Pack the compiled user programs into the filesystem image the kernel mounts.

Two packer command lines are understood:

``easy-fs-fuse``
    ``easy-fs-fuse -s <src> -t <bin>``: program names are taken from the
    ``*.rs`` files in ``<src>``, each binary is read from ``<bin>/<name>`` and
    the image is always written to ``<bin>/fs.img``. The selected programs are
    staged into a scratch directory so the tool sees exactly that set.

``listed``
    ``<packer> --target <bin> --output <img> [--entry <name>] <names...>``.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .artifacts import publishing, remove_file
from .config import EASY_FS_FUSE, FS_PACKER_STYLES, LISTED, BuildConfig, Workspace, mode_args
from .errors import FsImageBuildFailed
from .package import is_elf
from .tools import ToolResult, describe, note, run_tool

# easy-fs-fuse has no output option.
EASY_FS_IMAGE = "fs.img"


@dataclass(frozen=True)
class FsImage:
    path: Path
    programs: Tuple[str, ...]
    entry: Optional[str] = None


def find_program_binaries(source_dir: Path) -> List[Path]:
    """ELF executables directly inside ``source_dir``.

    cargo leaves ``.d`` dependency files and ``deps/``, ``build/`` directories
    next to the binaries; only files with an ELF header count.
    """
    if not source_dir.is_dir():
        raise FsImageBuildFailed(f"user program directory not found: {source_dir}")
    return sorted(p for p in source_dir.iterdir() if p.is_file() and is_elf(p))


def build_user_programs(config: BuildConfig, workspace: Workspace, *, verbose: bool = False) -> Path:
    bin_dir = workspace.user_bin_dir(config)
    if workspace.user_dir is None or bin_dir is None:
        raise FsImageBuildFailed("no user program crate configured")
    argv = [*workspace.toolchain.cargo, "build", "--target", config.target, *mode_args(config.user_mode)]
    result = run_tool(argv, cwd=workspace.user_dir, echo=verbose)
    if not result.ok:
        raise FsImageBuildFailed(
            f"user program build failed ({describe(result)})", status=result.returncode, output=result.output
        )
    return bin_dir


def staging_dir(output_path: Path) -> Path:
    return output_path.with_name(f".{output_path.name}.stage")


def packer_argv(
    packer: Sequence[str],
    style: str,
    source_dir: Path,
    output: Path,
    names: Sequence[str] = (),
    entry: Optional[str] = None,
) -> List[str]:
    """Command line for ``style``.

    For ``easy-fs-fuse`` ``source_dir`` holds the ``<name>.rs`` markers and
    ``output`` is the binary directory the tool writes ``fs.img`` into.
    """
    if style == EASY_FS_FUSE:
        return [*packer, "-s", str(source_dir), "-t", str(output)]
    if style == LISTED:
        argv = [*packer, "--target", str(source_dir), "--output", str(output)]
        if entry is not None:
            argv += ["--entry", entry]
        return argv + list(names)
    raise FsImageBuildFailed(f"unknown packer style {style!r} (known: {', '.join(FS_PACKER_STYLES)})")


def _stage_programs(binaries: Sequence[Path], stage: Path) -> Tuple[Path, Path]:
    shutil.rmtree(stage, ignore_errors=True)
    src, bins = stage / "src", stage / "bin"
    src.mkdir(parents=True)
    bins.mkdir()
    for path in binaries:
        (src / f"{path.name}.rs").touch()
        shutil.copyfile(path, bins / path.name)
    return src, bins


def _pack_easy_fs(
    packer: Sequence[str], binaries: Sequence[Path], stage: Path, scratch: Path, verbose: bool
) -> ToolResult:
    src, bins = _stage_programs(binaries, stage)
    result = run_tool(packer_argv(packer, EASY_FS_FUSE, src, bins), echo=verbose)
    produced = bins / EASY_FS_IMAGE
    if result.ok and produced.is_file():
        os.replace(produced, scratch)
    return result


def build_fs_image(
    source_dir: Path,
    output_path: Path,
    packer: Sequence[str],
    *,
    style: str = EASY_FS_FUSE,
    entry: Optional[str] = None,
    verbose: bool = False,
) -> FsImage:
    binaries = find_program_binaries(source_dir)
    names = [p.name for p in binaries]
    if entry is not None:
        if entry not in names:
            raise FsImageBuildFailed(
                f"test selection {entry!r} is not among the user programs in {source_dir}"
            )
        names.remove(entry)
        names.insert(0, entry)
    if style not in FS_PACKER_STYLES:
        raise FsImageBuildFailed(f"unknown packer style {style!r} (known: {', '.join(FS_PACKER_STYLES)})")

    stage = staging_dir(output_path)
    try:
        with publishing(output_path) as scratch:
            if style == EASY_FS_FUSE:
                result = _pack_easy_fs(packer, binaries, stage, scratch, verbose)
            else:
                result = run_tool(packer_argv(packer, style, source_dir, scratch, names, entry), echo=verbose)
            if not result.ok:
                raise FsImageBuildFailed(
                    f"filesystem packer failed ({describe(result)})",
                    status=result.returncode,
                    output=result.output,
                )
            if not scratch.is_file():
                raise FsImageBuildFailed(f"filesystem packer wrote no image for {source_dir}", output=result.output)
    except FsImageBuildFailed:
        remove_file(output_path)
        raise
    finally:
        shutil.rmtree(stage, ignore_errors=True)

    note(f"filesystem image {output_path} ({len(names)} programs)")
    return FsImage(output_path, tuple(names), entry)
