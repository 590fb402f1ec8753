from __future__ import annotations

import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from .artifacts import remove_file
from .boards import BoardProfile
from .config import BuildConfig, Workspace, mode_args
from .errors import BuildFailed
from .tools import describe, note, run_tool

# The kernel crate's build only looks for this one name.
STAGED_LAYOUT = Path("src") / "linker.ld"


@dataclass(frozen=True)
class KernelArtifact:
    elf: Path
    bin_path: Path
    load_address: int


def staged_layout_path(kernel_dir: Path) -> Path:
    return kernel_dir / STAGED_LAYOUT


@contextmanager
def staged_layout(kernel_dir: Path, profile: BoardProfile) -> Iterator[Path]:
    """Copy the board's layout script to ``src/linker.ld`` for the duration of
    the block. The copy is removed on every exit path."""
    source = kernel_dir / profile.layout_script
    if not source.is_file():
        raise BuildFailed(f"layout script for board {profile.name!r} not found: {source}")
    staged = staged_layout_path(kernel_dir)
    staged.parent.mkdir(parents=True, exist_ok=True)
    try:
        shutil.copyfile(source, staged)
        yield staged
    finally:
        remove_file(staged)


def compile_kernel(
    config: BuildConfig, profile: BoardProfile, workspace: Workspace, *, verbose: bool = False
) -> KernelArtifact:
    note(f"Platform: {profile.name}")
    argv = [*workspace.toolchain.cargo, "build", "--target", config.target, *mode_args(config.mode)]
    with staged_layout(workspace.kernel_dir, profile):
        result = run_tool(argv, cwd=workspace.kernel_dir, echo=verbose)

    if not result.ok:
        raise BuildFailed(
            f"kernel build failed ({describe(result)})",
            status=result.returncode,
            output=result.output,
        )

    elf = workspace.kernel_elf(config)
    if not elf.is_file():
        raise BuildFailed(f"compiler reported success but produced no kernel at {elf}", output=result.output)
    return KernelArtifact(elf=elf, bin_path=workspace.kernel_bin(config), load_address=profile.kernel_entry_pa)
