"""
Compose and run the emulator command line.

Devices are attached in slot order and each one is pinned to its virtio-mmio
bus, so the address a driver finds a device at depends only on the board
profile, never on which other devices happen to be attached.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from .boards import BoardProfile, DeviceDescriptor
from .config import BuildConfig, Workspace
from .errors import LaunchFailed
from .tools import describe, note, run_tool


@dataclass(frozen=True)
class BuildArtifacts:
    kernel_bin: Path
    fs_image: Optional[Path] = None


@dataclass(frozen=True)
class DeviceAttachment:
    slot: int
    kind: str
    name: str
    args: Tuple[str, ...]


@dataclass(frozen=True)
class LaunchDescriptor:
    emulator: Tuple[str, ...]
    machine: str
    memory: Optional[str]
    firmware: Path
    kernel_bin: Path
    load_address: int
    display: bool
    devices: Tuple[DeviceAttachment, ...]

    def display_args(self) -> Tuple[str, ...]:
        # The serial console stays on the terminal either way.
        if self.display:
            return ("-serial", "stdio")
        return ("-display", "none", "-nographic")

    def argv(self) -> List[str]:
        args: List[str] = [*self.emulator, "-machine", self.machine]
        if self.memory:
            args += ["-m", self.memory]
        args += ["-bios", str(self.firmware)]
        args += self.display_args()
        args += ["-device", f"loader,file={self.kernel_bin},addr={self.load_address:#x}"]
        for dev in self.devices:
            args += dev.args
        return args


def _attach(profile: BoardProfile, dev: DeviceDescriptor, artifacts: BuildArtifacts) -> Optional[DeviceAttachment]:
    bus = f"bus={profile.bus_name(dev)}"
    if dev.kind == "storage":
        if artifacts.fs_image is None:
            return None
        drive_id = f"{dev.name}0"
        args = (
            "-drive", f"file={artifacts.fs_image},if=none,format=raw,id={drive_id}",
            "-device", f"{dev.model},drive={drive_id},{bus}",
        )
    elif dev.kind == "network":
        netdev_id = f"{dev.name}0"
        netdev = ",".join([f"user,id={netdev_id}", *(f.hostfwd() for f in dev.forwards)])
        args = ("-netdev", netdev, "-device", f"{dev.model},netdev={netdev_id},{bus}")
    else:
        args = ("-device", f"{dev.model},{bus}")
    return DeviceAttachment(dev.slot, dev.kind, dev.name, args)


def compose_launch(
    profile: BoardProfile, artifacts: BuildArtifacts, config: BuildConfig, workspace: Workspace
) -> LaunchDescriptor:
    devices = []
    for dev in profile.devices:
        attachment = _attach(profile, dev, artifacts)
        if attachment is not None:
            devices.append(attachment)

    return LaunchDescriptor(
        emulator=workspace.toolchain.emulator_for(profile.arch),
        machine=profile.machine,
        memory=profile.memory,
        firmware=workspace.firmware(config, profile.firmware),
        kernel_bin=artifacts.kernel_bin,
        load_address=profile.kernel_entry_pa,
        display=config.display,
        devices=tuple(devices),
    )


def launch(descriptor: LaunchDescriptor, *, verbose: bool = False) -> int:
    """Run the emulator in the foreground and return its exit status."""
    if not descriptor.firmware.is_file():
        raise LaunchFailed(f"firmware binary not found: {descriptor.firmware}")
    if not descriptor.kernel_bin.is_file():
        raise LaunchFailed(f"kernel image not found: {descriptor.kernel_bin}")
    for dev in descriptor.devices:
        note(f"slot {dev.slot}: {dev.kind} {dev.name}")

    result = run_tool(descriptor.argv(), capture=False, echo=verbose)
    if not result.started:
        raise LaunchFailed(f"emulator {describe(result)} ({result.output})")
    return result.returncode
