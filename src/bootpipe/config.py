"""
Build configuration and workspace layout.

Settings come from CLI flags, then the environment variables the kernel
Makefile used (BOARD, MODE, GUI, TEST, DISASM, TARGET, SBI), then defaults.
They are resolved once into a frozen ``BuildConfig``; no stage reads the
environment on its own.
"""

from __future__ import annotations

import json
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .boards import DEFAULT_BOARD
from .errors import ConfigError

DEFAULT_TARGET = "riscv64gc-unknown-none-elf"
DEFAULT_MODE = "release"
DEFAULT_SBI = "rustsbi"
DEFAULT_DISASM_FLAGS = ("-x",)
BUILD_MODES = ("debug", "release")

WORKSPACE_FILE = "bootpipe.json"

# Command-line conventions the filesystem packer may follow (see fsimage).
EASY_FS_FUSE = "easy-fs-fuse"
LISTED = "listed"
FS_PACKER_STYLES = (EASY_FS_FUSE, LISTED)

_ENV_KEYS = {
    "board": "BOARD",
    "mode": "MODE",
    "display": "GUI",
    "test": "TEST",
    "disasm_flags": "DISASM",
    "target": "TARGET",
    "sbi": "SBI",
}


def parse_switch(value: Any, where: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("on", "1", "yes", "true"):
        return True
    if text in ("off", "0", "no", "false", ""):
        return False
    raise ConfigError(f"{where} must be on or off, got {value!r}")


@dataclass(frozen=True)
class BuildConfig:
    target: str = DEFAULT_TARGET
    mode: str = DEFAULT_MODE
    board: str = DEFAULT_BOARD
    display: bool = False
    test: Optional[str] = None
    disasm_flags: Tuple[str, ...] = DEFAULT_DISASM_FLAGS
    sbi: str = DEFAULT_SBI
    user_mode: str = DEFAULT_MODE

    def __post_init__(self) -> None:
        for name in ("mode", "user_mode"):
            if getattr(self, name) not in BUILD_MODES:
                raise ConfigError(f"{name} must be one of {', '.join(BUILD_MODES)}, got {getattr(self, name)!r}")
        if not self.target:
            raise ConfigError("target must not be empty")


def resolve_config(overrides: Mapping[str, Any], environ: Mapping[str, str]) -> BuildConfig:
    """Merge CLI ``overrides`` (None means unset) over ``environ`` over defaults."""
    values: Dict[str, Any] = {}
    for key, env_key in _ENV_KEYS.items():
        value = overrides.get(key)
        if value is None and environ.get(env_key, "") != "":
            value = environ[env_key]
        if value is not None:
            values[key] = value

    if "display" in values:
        values["display"] = parse_switch(values["display"], "display")
    if "disasm_flags" in values and isinstance(values["disasm_flags"], str):
        values["disasm_flags"] = tuple(shlex.split(values["disasm_flags"]))
    if "test" in values:
        values["test"] = str(values["test"]).strip() or None
    if overrides.get("user_mode") is not None:
        values["user_mode"] = overrides["user_mode"]
    return BuildConfig(**values)


def mode_args(mode: str) -> Tuple[str, ...]:
    return ("--release",) if mode == "release" else ()


@dataclass(frozen=True)
class Toolchain:
    """Command prefixes for the external tools. Unset entries fall back to
    defaults derived from the board's architecture."""

    cargo: Tuple[str, ...] = ("cargo",)
    objcopy: Optional[Tuple[str, ...]] = None
    objdump: Optional[Tuple[str, ...]] = None
    fs_packer: Tuple[str, ...] = (EASY_FS_FUSE,)
    fs_packer_style: str = EASY_FS_FUSE
    emulator: Optional[Tuple[str, ...]] = None

    def objcopy_for(self, arch: str) -> Tuple[str, ...]:
        return self.objcopy or ("rust-objcopy", f"--binary-architecture={arch}")

    def objdump_for(self, arch: str) -> Tuple[str, ...]:
        return self.objdump or ("rust-objdump", f"--arch-name={arch}")

    def emulator_for(self, arch: str) -> Tuple[str, ...]:
        return self.emulator or (f"qemu-system-{arch}",)


@dataclass(frozen=True)
class Workspace:
    kernel_dir: Path = Path(".")
    user_dir: Optional[Path] = None
    firmware_dir: Path = Path("../bootloader")
    boards_file: Optional[Path] = None
    kernel_name: str = "os"
    toolchain: Toolchain = field(default_factory=Toolchain)

    def kernel_elf(self, config: BuildConfig) -> Path:
        return self.kernel_dir / "target" / config.target / config.mode / self.kernel_name

    def kernel_bin(self, config: BuildConfig) -> Path:
        elf = self.kernel_elf(config)
        return elf.with_name(elf.name + ".bin")

    def user_bin_dir(self, config: BuildConfig) -> Optional[Path]:
        if self.user_dir is None:
            return None
        return self.user_dir / "target" / config.target / config.user_mode

    def fs_image(self, config: BuildConfig) -> Optional[Path]:
        bin_dir = self.user_bin_dir(config)
        return bin_dir / "fs.img" if bin_dir is not None else None

    def firmware(self, config: BuildConfig, firmware_name: Optional[str] = None) -> Path:
        return self.firmware_dir / (firmware_name or f"{config.sbi}-{config.board}.bin")


def _resolve_under(root: Path, rel_or_abs: str) -> Path:
    p = Path(rel_or_abs)
    if p.is_absolute():
        return p
    return root / p


def _command(value: Any, where: str) -> Tuple[str, ...]:
    if isinstance(value, str):
        parts = tuple(shlex.split(value))
    elif isinstance(value, list) and all(isinstance(v, str) for v in value):
        parts = tuple(value)
    else:
        raise ConfigError(f"{where} must be a string or a list of strings")
    if not parts:
        raise ConfigError(f"{where} must not be empty")
    return parts


def parse_workspace(data: Mapping[str, Any], root: Path, *, source: str = "<workspace>") -> Workspace:
    known = {"kernel_dir", "user_dir", "firmware_dir", "boards", "kernel_name", "tools", "fs_packer_style"}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"{source}: unknown keys: {', '.join(unknown)}")

    tools_raw = data.get("tools", {}) or {}
    if not isinstance(tools_raw, dict):
        raise ConfigError(f"{source}: tools must be a mapping")
    tool_fields = {"cargo", "objcopy", "objdump", "fs_packer", "emulator"}
    bad = sorted(set(tools_raw) - tool_fields)
    if bad:
        raise ConfigError(f"{source}: unknown tools: {', '.join(bad)}")
    commands: Dict[str, Any] = {k: _command(v, f"{source}:tools.{k}") for k, v in tools_raw.items()}
    style = data.get("fs_packer_style", EASY_FS_FUSE)
    if style not in FS_PACKER_STYLES:
        raise ConfigError(f"{source}: fs_packer_style must be one of {', '.join(FS_PACKER_STYLES)}, got {style!r}")
    toolchain = Toolchain(fs_packer_style=style, **commands)

    user_dir = data.get("user_dir")
    boards = data.get("boards")
    return Workspace(
        kernel_dir=_resolve_under(root, str(data.get("kernel_dir", "."))),
        user_dir=_resolve_under(root, str(user_dir)) if user_dir else None,
        firmware_dir=_resolve_under(root, str(data.get("firmware_dir", "../bootloader"))),
        boards_file=_resolve_under(root, str(boards)) if boards else None,
        kernel_name=str(data.get("kernel_name", "os")),
        toolchain=toolchain,
    )


def load_workspace(path: Optional[Path] = None, *, cwd: Optional[Path] = None) -> Workspace:
    """Read a workspace file; relative paths in it are taken from its directory.

    Without an explicit ``path``, ``bootpipe.json`` in ``cwd`` is used when it
    exists, else the kernel crate is assumed to be ``cwd``.
    """
    cwd = cwd or Path.cwd()
    if path is None:
        candidate = cwd / WORKSPACE_FILE
        if not candidate.exists():
            return Workspace(kernel_dir=cwd, firmware_dir=cwd / "../bootloader")
        path = candidate
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"workspace file not found: {path}") from None
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{path}: invalid JSON: {exc}") from None
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return parse_workspace(data, path.resolve().parent, source=path.as_posix())
