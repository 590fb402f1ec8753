"""
Turn the linked kernel ELF into the raw image the firmware loader places at
the board's load address.

The conversion itself is objcopy's job. Before running it we read the ELF
program headers and check that the lowest loadable segment sits at the
profile's load address: objcopy's raw output starts at that segment, so a
kernel linked for another address would boot from the wrong place.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from .artifacts import publishing, remove_file
from .cross import KernelArtifact
from .errors import PackagingFailed
from .tools import describe, note, run_tool

ELF_MAGIC = b"\x7fELF"
PT_LOAD = 1

_ELFCLASS32 = 1
_ELFCLASS64 = 2
_ELFDATA2LSB = 1
_ELFDATA2MSB = 2

# (phoff, phentsize, phnum) offsets within the file header, per class.
_EHDR_FIELDS = {
    _ELFCLASS32: ("I", 0x1C, 0x2A, 0x2C),
    _ELFCLASS64: ("Q", 0x20, 0x36, 0x38),
}


class ElfError(ValueError):
    pass


@dataclass(frozen=True)
class LoadSegment:
    paddr: int
    vaddr: int
    offset: int
    filesz: int
    memsz: int


def is_elf(path: Path) -> bool:
    try:
        with path.open("rb") as f:
            return f.read(4) == ELF_MAGIC
    except OSError:
        return False


def read_load_segments(data: bytes) -> List[LoadSegment]:
    if data[:4] != ELF_MAGIC or len(data) < 6:
        raise ElfError("not an ELF file")
    klass, endian = data[4], data[5]
    if klass not in _EHDR_FIELDS:
        raise ElfError(f"unsupported ELF class {klass}")
    if len(data) < (0x40 if klass == _ELFCLASS64 else 0x34):
        raise ElfError("file header is truncated")
    if endian not in (_ELFDATA2LSB, _ELFDATA2MSB):
        raise ElfError(f"unsupported ELF data encoding {endian}")
    bo = "<" if endian == _ELFDATA2LSB else ">"

    off_fmt, phoff_at, phentsize_at, phnum_at = _EHDR_FIELDS[klass]
    (phoff,) = struct.unpack_from(bo + off_fmt, data, phoff_at)
    (phentsize,) = struct.unpack_from(bo + "H", data, phentsize_at)
    (phnum,) = struct.unpack_from(bo + "H", data, phnum_at)

    segments: List[LoadSegment] = []
    for i in range(phnum):
        base = phoff + i * phentsize
        if base + phentsize > len(data):
            raise ElfError(f"program header {i} is truncated")
        if klass == _ELFCLASS64:
            p_type, _flags, offset, vaddr, paddr, filesz, memsz, _align = struct.unpack_from(
                bo + "IIQQQQQQ", data, base
            )
        else:
            p_type, offset, vaddr, paddr, filesz, memsz, _flags, _align = struct.unpack_from(
                bo + "IIIIIIII", data, base
            )
        if p_type == PT_LOAD:
            segments.append(LoadSegment(paddr, vaddr, offset, filesz, memsz))
    return segments


def image_base(segments: Sequence[LoadSegment]) -> int:
    """Address of the first byte objcopy emits: the lowest segment with file data."""
    with_data = [s for s in segments if s.filesz > 0]
    if not with_data:
        raise ElfError("no loadable segments with file data")
    return min(s.paddr for s in with_data)


def check_load_address(elf: Path, load_address: int) -> None:
    try:
        base = image_base(read_load_segments(elf.read_bytes()))
    except (OSError, ElfError) as exc:
        raise PackagingFailed(f"cannot read program headers of {elf}: {exc}") from None
    if base != load_address:
        raise PackagingFailed(
            f"{elf} is linked at {base:#x} but the board loads the kernel at {load_address:#x}"
        )


def pack_kernel(artifact: KernelArtifact, objcopy: Sequence[str], *, verbose: bool = False) -> Path:
    try:
        check_load_address(artifact.elf, artifact.load_address)
        with publishing(artifact.bin_path) as scratch:
            result = run_tool(
                [*objcopy, artifact.elf, "--strip-all", "-O", "binary", scratch], echo=verbose
            )
            if not result.ok:
                raise PackagingFailed(
                    f"objcopy failed ({describe(result)})", status=result.returncode, output=result.output
                )
            if not scratch.is_file():
                raise PackagingFailed(f"objcopy produced no output for {artifact.elf}", output=result.output)
    except PackagingFailed:
        remove_file(artifact.bin_path)
        raise
    note(f"kernel image {artifact.bin_path} (load {artifact.load_address:#x})")
    return artifact.bin_path
