"""
Board profiles: load address, layout script and virtual device topology for
each supported board.

Profiles are data (``data/boards.json``, optionally extended by a workspace
boards file). The same data renders the kernel-side constants module, so the
load address and device addresses the kernel is compiled against come from
the profile the pipeline launches with.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .artifacts import write_text_atomic
from .errors import ConfigError, UnknownBoard

DEFAULT_BOARD = "qemu"
BUILTIN_BOARDS = Path(__file__).with_name("data") / "boards.json"

DEVICE_KINDS = ("storage", "display", "input", "network")
FORWARD_PROTOS = ("tcp", "udp")

_RE_IDENT = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def parse_addr(text: Any) -> int:
    if isinstance(text, bool):
        raise ValueError(f"not an address: {text!r}")
    if isinstance(text, int):
        return text
    text = str(text).strip().replace("_", "")
    if text.lower().startswith("0x"):
        return int(text, 16)
    return int(text, 10)


@dataclass(frozen=True)
class PortForward:
    proto: str
    host: int
    guest: int

    def hostfwd(self) -> str:
        return f"hostfwd={self.proto}::{self.host}-:{self.guest}"


@dataclass(frozen=True)
class DeviceDescriptor:
    name: str
    kind: str
    model: str
    slot: int
    forwards: Tuple[PortForward, ...] = ()


@dataclass(frozen=True)
class KernelConstant:
    name: str
    value: int
    hex: bool = False


@dataclass(frozen=True)
class BoardProfile:
    name: str
    arch: str
    machine: str
    kernel_entry_pa: int
    layout_script: str
    devices: Tuple[DeviceDescriptor, ...]
    mmio_base: int
    mmio_stride: int
    mmio_count: int
    memory: Optional[str] = None
    firmware: Optional[str] = None
    constants: Tuple[KernelConstant, ...] = ()

    def transport_index(self, device: DeviceDescriptor) -> int:
        # Kernel drivers locate their device by bus index; slot n is bus n.
        return device.slot

    def device_address(self, device: DeviceDescriptor) -> int:
        return self.mmio_base + self.transport_index(device) * self.mmio_stride

    def bus_name(self, device: DeviceDescriptor) -> str:
        return f"virtio-mmio-bus.{self.transport_index(device)}"

    def devices_of(self, kind: str) -> List[DeviceDescriptor]:
        return [d for d in self.devices if d.kind == kind]


def _expect_dict(obj: Any, where: str) -> Dict[str, Any]:
    if not isinstance(obj, dict):
        raise ConfigError(f"{where} must be a mapping")
    return obj


def _expect_list(obj: Any, where: str) -> List[Any]:
    if not isinstance(obj, list):
        raise ConfigError(f"{where} must be a list")
    return obj


def _expect_str(obj: Any, where: str) -> str:
    if not isinstance(obj, str) or not obj.strip():
        raise ConfigError(f"{where} must be a non-empty string")
    return obj.strip()


def _expect_addr(obj: Any, where: str) -> int:
    try:
        value = parse_addr(obj)
    except (TypeError, ValueError):
        raise ConfigError(f"{where} must be an int or 0x-prefixed string, got {obj!r}") from None
    if value < 0 or value > 0xFFFF_FFFF_FFFF_FFFF:
        raise ConfigError(f"{where} does not fit in 64 bits: {value:#x}")
    return value


def _require_keys(obj: Dict[str, Any], keys: Tuple[str, ...], *, where: str) -> None:
    missing = [k for k in keys if k not in obj]
    if missing:
        raise ConfigError(f"{where}: missing required keys: {', '.join(missing)}")


def _parse_forward(raw: Any, where: str) -> PortForward:
    fwd = _expect_dict(raw, where)
    _require_keys(fwd, ("proto", "host", "guest"), where=where)
    proto = _expect_str(fwd["proto"], f"{where}.proto").lower()
    if proto not in FORWARD_PROTOS:
        raise ConfigError(f"{where}.proto must be one of {', '.join(FORWARD_PROTOS)}")
    host = _expect_addr(fwd["host"], f"{where}.host")
    guest = _expect_addr(fwd["guest"], f"{where}.guest")
    for port in (host, guest):
        if not 0 < port < 65536:
            raise ConfigError(f"{where}: port out of range: {port}")
    return PortForward(proto, host, guest)


def _parse_device(raw: Any, where: str) -> DeviceDescriptor:
    dev = _expect_dict(raw, where)
    _require_keys(dev, ("name", "slot", "kind", "model"), where=where)
    name = _expect_str(dev["name"], f"{where}.name")
    if not _RE_IDENT.match(name):
        raise ConfigError(f"{where}.name must be an identifier: {name!r}")
    kind = _expect_str(dev["kind"], f"{where}.kind")
    if kind not in DEVICE_KINDS:
        raise ConfigError(f"{where}.kind {kind!r} not one of {', '.join(DEVICE_KINDS)}")
    slot = dev["slot"]
    if not isinstance(slot, int) or isinstance(slot, bool):
        raise ConfigError(f"{where}.slot must be an int")
    forwards = tuple(
        _parse_forward(f, f"{where}.forwards[{i}]")
        for i, f in enumerate(_expect_list(dev.get("forwards", []), f"{where}.forwards"))
    )
    if forwards and kind != "network":
        raise ConfigError(f"{where}: port forwards are only valid on network devices")
    return DeviceDescriptor(name, kind, _expect_str(dev["model"], f"{where}.model"), slot, forwards)


def _parse_constants(raw: Any, where: str) -> Tuple[KernelConstant, ...]:
    out: List[KernelConstant] = []
    for name, value in _expect_dict(raw, where).items():
        if not _RE_IDENT.match(name):
            raise ConfigError(f"{where}: bad constant name {name!r}")
        is_hex = isinstance(value, str) and value.strip().lower().startswith("0x")
        out.append(KernelConstant(name.upper(), _expect_addr(value, f"{where}.{name}"), is_hex))
    return tuple(out)


def _check_topology(profile: BoardProfile, where: str) -> None:
    slots = sorted(d.slot for d in profile.devices)
    if slots != list(range(len(slots))):
        raise ConfigError(f"{where}: device slots must be unique and contiguous from 0, got {slots}")
    if len(profile.devices) > profile.mmio_count:
        raise ConfigError(
            f"{where}: {len(profile.devices)} devices but only {profile.mmio_count} virtio transports"
        )
    names = [d.name for d in profile.devices]
    if len(set(names)) != len(names):
        raise ConfigError(f"{where}: duplicate device names")
    if len(profile.devices_of("storage")) > 1:
        raise ConfigError(f"{where}: at most one storage device is supported")
    host_ports = [(f.proto, f.host) for d in profile.devices for f in d.forwards]
    if len(set(host_ports)) != len(host_ports):
        raise ConfigError(f"{where}: duplicate host port forwards")


def parse_profile(raw: Any, where: str) -> BoardProfile:
    board = _expect_dict(raw, where)
    _require_keys(
        board,
        ("name", "arch", "machine", "kernel_entry_pa", "layout_script", "virtio_mmio", "devices"),
        where=where,
    )
    name = _expect_str(board["name"], f"{where}.name")
    where = f"board[{name}]"
    mmio = _expect_dict(board["virtio_mmio"], f"{where}.virtio_mmio")
    _require_keys(mmio, ("base", "stride", "count"), where=f"{where}.virtio_mmio")

    devices = [
        _parse_device(d, f"{where}.devices[{i}]")
        for i, d in enumerate(_expect_list(board["devices"], f"{where}.devices"))
    ]
    devices.sort(key=lambda d: d.slot)

    memory = board.get("memory")
    firmware = board.get("firmware")
    profile = BoardProfile(
        name=name,
        arch=_expect_str(board["arch"], f"{where}.arch"),
        machine=_expect_str(board["machine"], f"{where}.machine"),
        kernel_entry_pa=_expect_addr(board["kernel_entry_pa"], f"{where}.kernel_entry_pa"),
        layout_script=_expect_str(board["layout_script"], f"{where}.layout_script"),
        devices=tuple(devices),
        mmio_base=_expect_addr(mmio["base"], f"{where}.virtio_mmio.base"),
        mmio_stride=_expect_addr(mmio["stride"], f"{where}.virtio_mmio.stride"),
        mmio_count=_expect_addr(mmio["count"], f"{where}.virtio_mmio.count"),
        memory=_expect_str(memory, f"{where}.memory") if memory is not None else None,
        firmware=_expect_str(firmware, f"{where}.firmware") if firmware is not None else None,
        constants=_parse_constants(board.get("constants", {}), f"{where}.constants"),
    )
    _check_topology(profile, where)
    return profile


def _read_boards(path: Path) -> List[BoardProfile]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"boards file not found: {path}") from None
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{path}: invalid JSON: {exc}") from None
    data = _expect_dict(data, path.as_posix())
    if data.get("schema_version", 1) != 1:
        raise ConfigError(f"{path}: unsupported schema_version {data.get('schema_version')!r}")
    boards = _expect_list(data.get("boards"), f"{path.as_posix()}:boards")
    return [parse_profile(b, f"{path.as_posix()}:boards[{i}]") for i, b in enumerate(boards)]


def load_registry(extra: Optional[Path] = None) -> Dict[str, BoardProfile]:
    """Built-in profiles, overlaid by the boards in ``extra`` if given."""
    registry: Dict[str, BoardProfile] = {}
    for path in [BUILTIN_BOARDS] + ([extra] if extra is not None else []):
        for profile in _read_boards(path):
            registry[profile.name] = profile
    return registry


def lookup(registry: Dict[str, BoardProfile], name: str) -> BoardProfile:
    try:
        return registry[name]
    except KeyError:
        raise UnknownBoard(name, sorted(registry)) from None


def _rust_int(value: int, hex_form: bool) -> str:
    return f"{value:#x}" if hex_form else str(value)


def render_board_constants(profile: BoardProfile) -> str:
    lines: List[str] = []
    lines.append(f"// AUTO-GENERATED by bootpipe board-constants for board `{profile.name}`; do not edit manually.")
    lines.append("")
    lines.append(f"pub const KERNEL_ENTRY_PA: usize = {profile.kernel_entry_pa:#x};")
    for const in profile.constants:
        lines.append(f"pub const {const.name}: usize = {_rust_int(const.value, const.hex)};")
    lines.append("")

    for dev in profile.devices:
        lines.append(f"/// slot {dev.slot}: {dev.model}")
        lines.append(f"pub const VIRTIO_{dev.name.upper()}: usize = {profile.device_address(dev):#x};")
    lines.append("")

    lines.append("pub const MMIO: &[(usize, usize)] = &[")
    for dev in profile.devices:
        lines.append(f"    ({profile.device_address(dev):#x}, {profile.mmio_stride:#x}),")
    lines.append("];")
    lines.append("")
    return "\n".join(lines)


def emit_board_constants(profile: BoardProfile, path: Path) -> Path:
    write_text_atomic(path, render_board_constants(profile))
    return path
