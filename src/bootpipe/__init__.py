"""
bootpipe: build a bare-metal kernel image, pack the user programs into a
filesystem image and boot both under QEMU with the board's device topology.
"""

from .boards import BoardProfile, DeviceDescriptor, load_registry, lookup
from .config import BuildConfig, Toolchain, Workspace, load_workspace, resolve_config
from .errors import (
    BuildFailed,
    ConfigError,
    DisassemblyFailed,
    FsImageBuildFailed,
    LaunchFailed,
    PackagingFailed,
    PipelineError,
    UnknownBoard,
)
from .pipeline import BuildResult, Pipeline

__version__ = "0.1.0"

__all__ = [
    "BoardProfile",
    "BuildConfig",
    "BuildFailed",
    "BuildResult",
    "ConfigError",
    "DeviceDescriptor",
    "DisassemblyFailed",
    "FsImageBuildFailed",
    "LaunchFailed",
    "PackagingFailed",
    "Pipeline",
    "PipelineError",
    "Toolchain",
    "UnknownBoard",
    "Workspace",
    "load_registry",
    "load_workspace",
    "lookup",
    "resolve_config",
]
