import json
import sys
import tempfile
import unittest
from pathlib import Path
from typing import Dict, Optional

from bootpipe.config import LISTED, BuildConfig, Toolchain, Workspace

FAKES = Path(__file__).resolve().parent / "fakes"
TARGET = "riscv64gc-unknown-none-elf"
LOAD_ADDRESS = 0x80200000
LAYOUT_TEXT = "OUTPUT_ARCH(riscv)\nBASE_ADDRESS = 0x80200000;\n"


def fake(name: str):
    return (sys.executable, str(FAKES / f"{name}.py"))


def fake_toolchain() -> Toolchain:
    return Toolchain(
        cargo=fake("cargo"),
        objcopy=fake("objcopy"),
        objdump=fake("objdump"),
        fs_packer=fake("fs_packer"),
        fs_packer_style=LISTED,
        emulator=fake("qemu"),
    )


def read_cargo_log(crate: Path):
    log = crate / "fake-cargo.log"
    if not log.exists():
        return []
    return [json.loads(line) for line in log.read_text(encoding="utf-8").splitlines()]


class WorkspaceTestCase(unittest.TestCase):
    """A temp directory laid out like the kernel repo: os/, user/, bootloader/."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.kernel_dir = self.root / "os"
        (self.kernel_dir / "src").mkdir(parents=True)
        (self.kernel_dir / "src" / "linker-qemu.ld").write_text(LAYOUT_TEXT, encoding="utf-8")
        self.write_cargo_spec(self.kernel_dir, {"os": hex(LOAD_ADDRESS)})

        self.firmware_dir = self.root / "bootloader"
        self.firmware_dir.mkdir()
        (self.firmware_dir / "rustsbi-qemu.bin").write_bytes(b"\x00" * 16)

    def tearDown(self):
        self._tmp.cleanup()

    def write_cargo_spec(self, crate: Path, binaries: Dict[str, str], fail: int = 0) -> None:
        crate.mkdir(parents=True, exist_ok=True)
        spec = {"binaries": binaries, "fail": fail}
        (crate / "fake-cargo.json").write_text(json.dumps(spec), encoding="utf-8")

    def make_user_crate(self, programs) -> Path:
        user_dir = self.root / "user"
        self.write_cargo_spec(user_dir, {name: "0x10000" for name in programs})
        return user_dir

    def workspace(self, user_programs: Optional[list] = None) -> Workspace:
        user_dir = self.make_user_crate(user_programs) if user_programs is not None else None
        return Workspace(
            kernel_dir=self.kernel_dir,
            user_dir=user_dir,
            firmware_dir=self.firmware_dir,
            toolchain=fake_toolchain(),
        )

    def config(self, **kwargs) -> BuildConfig:
        return BuildConfig(target=TARGET, **kwargs)
