"""
The named operations: build, run, clean, disasm and fs-img.

Every stage blocks on its external tool and the first failure propagates
unchanged. A failed compile or pack also removes the previously published
raw image, so ``run`` can never boot a kernel older than the last build
attempt.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .artifacts import partial_path, remove_file
from .boards import BoardProfile, load_registry, lookup
from .config import BuildConfig, Toolchain, Workspace
from .cross import KernelArtifact, compile_kernel, staged_layout_path
from .errors import BuildFailed, DisassemblyFailed, PackagingFailed
from .fsimage import FsImage, build_fs_image, build_user_programs, staging_dir
from .launch import BuildArtifacts, LaunchDescriptor, compose_launch, launch
from .package import pack_kernel
from .tools import describe, note, run_tool


@dataclass(frozen=True)
class BuildResult:
    kernel: KernelArtifact
    kernel_bin: Path
    fs_image: Optional[FsImage] = None

    def artifacts(self) -> BuildArtifacts:
        return BuildArtifacts(self.kernel_bin, self.fs_image.path if self.fs_image else None)


class Pipeline:
    def __init__(
        self,
        config: BuildConfig,
        workspace: Workspace,
        registry: Optional[Dict[str, BoardProfile]] = None,
        *,
        verbose: bool = False,
    ) -> None:
        if registry is None:
            registry = load_registry(workspace.boards_file)
        # Resolved up front: an unknown board fails before any stage runs.
        self.profile = lookup(registry, config.board)
        self.config = config
        self.workspace = workspace
        self.verbose = verbose

    @property
    def toolchain(self) -> Toolchain:
        return self.workspace.toolchain

    def compile(self) -> KernelArtifact:
        return compile_kernel(self.config, self.profile, self.workspace, verbose=self.verbose)

    def fs_image(self) -> Optional[FsImage]:
        """Build the user programs and pack them; None when no user crate is configured."""
        output = self.workspace.fs_image(self.config)
        if output is None:
            return None
        source_dir = build_user_programs(self.config, self.workspace, verbose=self.verbose)
        return build_fs_image(
            source_dir,
            output,
            self.toolchain.fs_packer,
            style=self.toolchain.fs_packer_style,
            entry=self.config.test,
            verbose=self.verbose,
        )

    def build(self) -> BuildResult:
        try:
            kernel = self.compile()
            kernel_bin = pack_kernel(kernel, self.toolchain.objcopy_for(self.profile.arch), verbose=self.verbose)
        except (BuildFailed, PackagingFailed):
            remove_file(self.workspace.kernel_bin(self.config))
            raise
        return BuildResult(kernel, kernel_bin, self.fs_image())

    def launch_descriptor(self, result: BuildResult) -> LaunchDescriptor:
        return compose_launch(self.profile, result.artifacts(), self.config, self.workspace)

    def run(self) -> int:
        descriptor = self.launch_descriptor(self.build())
        status = launch(descriptor, verbose=self.verbose)
        note(f"emulator exited with status {status}")
        return status

    def artifact_paths(self) -> List[Path]:
        paths = [self.workspace.kernel_elf(self.config), self.workspace.kernel_bin(self.config)]
        fs_img = self.workspace.fs_image(self.config)
        if fs_img is not None:
            paths.append(fs_img)
        return paths

    def clean(self) -> List[Path]:
        removed: List[Path] = []
        for path in self.artifact_paths():
            for candidate in (path, partial_path(path)):
                if remove_file(candidate):
                    removed.append(candidate)
        staged = staged_layout_path(self.workspace.kernel_dir)
        if remove_file(staged):
            removed.append(staged)
        fs_img = self.workspace.fs_image(self.config)
        if fs_img is not None and staging_dir(fs_img).is_dir():
            shutil.rmtree(staging_dir(fs_img))
            removed.append(staging_dir(fs_img))
        for path in removed:
            note(f"removed {path}")
        return removed

    def disasm(self) -> int:
        kernel = self.compile()
        argv = [*self.toolchain.objdump_for(self.profile.arch), *self.config.disasm_flags, kernel.elf]
        result = run_tool(argv, capture=False, echo=self.verbose)
        if not result.ok:
            raise DisassemblyFailed(f"disassembly failed ({describe(result)})", status=result.returncode)
        return 0
