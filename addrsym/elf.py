"""Reading of ELF object files: sections, symbols and separate debug files."""

from __future__ import annotations

import bisect
import functools
import os
import struct
import sys
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Union

from .stash import Stash

SHT_SYMTAB = 2
SHT_STRTAB = 3
SHT_NOTE = 7
SHT_NOBITS = 8
SHT_DYNSYM = 11
SHF_COMPRESSED = 0x800
ELFCOMPRESS_ZLIB = 1
STT_OBJECT = 1
STT_FUNC = 2
SHN_UNDEF = 0
SHN_XINDEX = 0xFFFF
EV_CURRENT = 1
ELF_NOTE_GNU = b"GNU"
NT_GNU_BUILD_ID = 3

DEBUG_PATH = "/usr/lib/debug"
BUILD_ID_PATH = "/usr/lib/debug/.build-id/"
BUILD_ID_SUFFIX = ".debug"
GNU_ZLIB_MAGIC = b"ZLIB\0\0\0\0"

PathLike = Union[str, os.PathLike]


class _Malformed(Exception):
    """Internal signal that the file does not hold what it claims."""


@dataclass(frozen=True)
class _Layout:
    header: str
    section: str
    symbol: str
    chdr: str


_LAYOUT64 = _Layout("HHIQQQIHHHHHH", "IIQQQQIIQQ", "IBBHQQ", "IIQQ")
_LAYOUT32 = _Layout("HHIIIIIHHHHHH", "IIIIIIIIII", "IIIBBH", "III")


def _read(data, offset: int, size: int) -> bytes:
    if offset < 0 or size < 0 or offset + size > len(data):
        raise _Malformed
    return bytes(data[offset:offset + size])


def _unpack(data, offset: int, fmt: str) -> tuple:
    return struct.unpack(fmt, _read(data, offset, struct.calcsize(fmt)))


def _align_up(value: int, align: int) -> int:
    return (value + align - 1) & ~(align - 1)


@dataclass(frozen=True)
class _SectionHeader:
    name: int
    type: int
    flags: int
    addr: int
    offset: int
    size: int
    link: int
    info: int
    addralign: int
    entsize: int


class _StringTable:
    __slots__ = ("_data",)

    def __init__(self, data: bytes) -> None:
        self._data = data

    def get(self, offset: int) -> bytes:
        if offset >= len(self._data):
            raise _Malformed
        end = self._data.find(b"\0", offset)
        if end < 0:
            raise _Malformed
        return self._data[offset:end]


@dataclass(frozen=True)
class ParsedSym:
    """A defined function or data symbol: address, size and name offset."""

    address: int
    size: int
    name: int


class ElfObject:
    """A parsed ELF file with its section table and sorted symbols."""

    def __init__(self, data, endian: str, is_64: bool,
                 sections: list[_SectionHeader], section_names: bytes) -> None:
        self.data = data
        self.endian = endian
        self.is_64 = is_64
        self.sections = sections
        self._layout = _LAYOUT64 if is_64 else _LAYOUT32
        self._section_names = _StringTable(section_names)
        self._strings = _StringTable(b"")
        self.syms: list[ParsedSym] = []
        self._sym_addresses: list[int] = []

    @classmethod
    def parse(cls, data) -> Optional["ElfObject"]:
        """Parse ``data`` as an ELF file, or return None if it is not one."""
        try:
            return cls._parse(data)
        except (_Malformed, struct.error):
            return None

    @classmethod
    def _parse(cls, data) -> "ElfObject":
        ident = _read(data, 0, 16)
        if ident[:4] != b"\x7fELF":
            raise _Malformed
        if ident[4] == 1:
            is_64, layout = False, _LAYOUT32
        elif ident[4] == 2:
            is_64, layout = True, _LAYOUT64
        else:
            raise _Malformed
        endian = {1: "<", 2: ">"}.get(ident[5])
        if endian is None or ident[6] != EV_CURRENT:
            raise _Malformed

        (_type, _machine, _version, _entry, _phoff, shoff, _flags, _ehsize,
         _phentsize, _phnum, shentsize, shnum, shstrndx) = _unpack(data, 16, endian + layout.header)

        sh_fmt = endian + layout.section
        sh_size = struct.calcsize(sh_fmt)
        sections: list[_SectionHeader] = []
        if shoff != 0:
            if shentsize != sh_size:
                raise _Malformed
            first = _SectionHeader(*_unpack(data, shoff, sh_fmt))
            if shnum == 0:
                shnum = first.size
            if shoff + shnum * sh_size > len(data):
                raise _Malformed
            sections = [_SectionHeader(*_unpack(data, shoff + i * sh_size, sh_fmt))
                        for i in range(shnum)]
            if shstrndx == SHN_XINDEX:
                shstrndx = first.link

        obj = cls(data, endian, is_64, sections, b"")
        if sections and shstrndx != SHN_UNDEF:
            if shstrndx >= len(sections):
                raise _Malformed
            obj._section_names = _StringTable(obj._section_data(sections[shstrndx]))

        raw_syms, strings = obj._symbol_table(SHT_SYMTAB)
        if not raw_syms:
            raw_syms, strings = obj._symbol_table(SHT_DYNSYM)
        obj._strings = strings
        obj.syms = sorted(
            (ParsedSym(value, size, name)
             for name, info, shndx, value, size in raw_syms
             if info & 0xF in (STT_FUNC, STT_OBJECT) and shndx != SHN_UNDEF),
            key=lambda sym: sym.address,
        )
        obj._sym_addresses = [sym.address for sym in obj.syms]
        return obj

    def _section_data(self, header: _SectionHeader) -> bytes:
        if header.type == SHT_NOBITS:
            return b""
        return _read(self.data, header.offset, header.size)

    def _section_name(self, header: _SectionHeader) -> Optional[bytes]:
        try:
            return self._section_names.get(header.name)
        except _Malformed:
            return None

    def _section_header(self, name: str) -> Optional[_SectionHeader]:
        wanted = name.encode()
        return next((h for h in self.sections if self._section_name(h) == wanted), None)

    def _symbol_table(self, sh_type: int) -> tuple[list[tuple], _StringTable]:
        header = next((h for h in self.sections if h.type == sh_type), None)
        if header is None:
            return [], _StringTable(b"")
        if header.link >= len(self.sections):
            raise _Malformed
        strings = _StringTable(self._section_data(self.sections[header.link]))
        raw = self._section_data(header)
        fmt = self.endian + self._layout.symbol
        entsize = struct.calcsize(fmt)
        raw = raw[: len(raw) // entsize * entsize]
        if self.is_64:
            entries = [(name, info, shndx, value, size)
                       for name, info, _other, shndx, value, size in struct.iter_unpack(fmt, raw)]
        else:
            entries = [(name, info, shndx, value, size)
                       for name, value, size, info, _other, shndx in struct.iter_unpack(fmt, raw)]
        return entries, strings

    def section(self, stash: Stash, name: str) -> Optional[bytes]:
        """Return the contents of section ``name``, decompressed if needed."""
        header = self._section_header(name)
        if header is not None:
            try:
                data = self._section_data(header)
            except _Malformed:
                return None
            if not header.flags & SHF_COMPRESSED:
                return data
            fmt = self.endian + self._layout.chdr
            chdr_size = struct.calcsize(fmt)
            if len(data) < chdr_size:
                return None
            fields = struct.unpack_from(fmt, data)
            ch_type = fields[0]
            ch_size = fields[2] if self.is_64 else fields[1]
            if ch_type != ELFCOMPRESS_ZLIB:
                return None
            return _inflate_into(stash, data[chdr_size:], ch_size)

        if not name.startswith(".debug_"):
            return None
        debug_name = name[7:].encode()
        compressed = next(
            (h for h in self.sections
             if (section_name := self._section_name(h)) is not None
             and section_name.startswith(b".zdebug_")
             and section_name[8:] == debug_name),
            None,
        )
        if compressed is None:
            return None
        try:
            data = self._section_data(compressed)
        except _Malformed:
            return None
        if data[:8] != GNU_ZLIB_MAGIC or len(data) < 12:
            return None
        size = int.from_bytes(data[8:12], "big")
        return _inflate_into(stash, data[12:], size)

    def search_symtab(self, addr: int) -> Optional[bytes]:
        """Name of the symbol whose range covers ``addr``, if any."""
        i = bisect.bisect_right(self._sym_addresses, addr) - 1
        if i < 0:
            return None
        sym = self.syms[i]
        if sym.address <= addr <= sym.address + sym.size:
            try:
                return self._strings.get(sym.name)
            except _Malformed:
                return None
        return None

    def build_id(self) -> Optional[bytes]:
        """The GNU build ID from the first note that carries one."""
        for header in self.sections:
            if header.type != SHT_NOTE:
                continue
            try:
                data = self._section_data(header)
            except _Malformed:
                continue
            for name, n_type, desc in self._notes(data, header.addralign):
                if name == ELF_NOTE_GNU and n_type == NT_GNU_BUILD_ID:
                    return desc
        return None

    def _notes(self, data: bytes, addralign: int) -> Iterator[tuple[bytes, int, bytes]]:
        if addralign <= 4:
            align = 4
        elif addralign == 8:
            align = 8
        else:
            return
        fmt = self.endian + "III"
        while data:
            if len(data) < 12:
                return
            namesz, descsz, n_type = struct.unpack_from(fmt, data)
            name_end = 12 + namesz
            if name_end > len(data):
                return
            name = data[12:name_end]
            if name.endswith(b"\0"):
                name = name[:-1]
            desc_start = _align_up(name_end, align)
            desc_end = desc_start + descsz
            if desc_end > len(data):
                return
            yield name, n_type, data[desc_start:desc_end]
            data = data[_align_up(desc_end, align):]

    def gnu_debuglink_path(self, path: PathLike) -> Optional[tuple[Path, int]]:
        """Locate the file named by ``.gnu_debuglink``; returns it with its CRC."""
        header = self._section_header(".gnu_debuglink")
        if header is None:
            return None
        try:
            data = self._section_data(header)
        except _Malformed:
            return None
        end = data.find(b"\0")
        if end < 0:
            return None
        filename = data[:end]
        offset = (end + 1 + 3) & ~3
        crc_bytes = data[offset:offset + 4]
        if len(crc_bytes) != 4:
            return None
        crc = int.from_bytes(crc_bytes, "little" if self.endian == "<" else "big")
        found = locate_debuglink(path, filename)
        return None if found is None else (found, crc)

    def gnu_debugaltlink_path(self, path: PathLike) -> Optional[tuple[Path, bytes]]:
        """Locate the supplementary file named by ``.gnu_debugaltlink``."""
        header = self._section_header(".gnu_debugaltlink")
        if header is None:
            return None
        try:
            data = self._section_data(header)
        except _Malformed:
            return None
        end = data.find(b"\0")
        if end < 0:
            return None
        filename = data[:end]
        build_id = data[end + 1:]
        found = locate_debugaltlink(path, filename, build_id)
        return None if found is None else (found, build_id)


def _inflate_into(stash: Stash, data: bytes, size: int) -> Optional[bytearray]:
    decompressed = decompress_zlib(data, size)
    if decompressed is None:
        return None
    buffer = stash.allocate(size)
    buffer[:] = decompressed
    return buffer


def decompress_zlib(data: bytes, size: int) -> Optional[bytes]:
    """Inflate a zlib stream that must fill exactly ``size`` bytes and use all input."""
    decompressor = zlib.decompressobj()
    try:
        output = decompressor.decompress(data, min(size + 1, sys.maxsize))
    except (zlib.error, OverflowError, ValueError):
        return None
    if (not decompressor.eof or decompressor.unused_data
            or decompressor.unconsumed_tail or len(output) != size):
        return None
    return output


@functools.lru_cache(maxsize=None)
def debug_path_exists() -> bool:
    """Whether the system debug directory exists (checked once, Linux and FreeBSD only)."""
    if not sys.platform.startswith(("linux", "freebsd")):
        return False
    return os.path.isdir(DEBUG_PATH)


def locate_build_id(build_id: bytes) -> Optional[Path]:
    """Path of the debug file for ``build_id`` under the build-id directory."""
    if len(build_id) < 2:
        return None
    if not debug_path_exists():
        return None
    hex_id = bytes(build_id).hex()
    return Path(f"{BUILD_ID_PATH}{hex_id[:2]}/{hex_id[2:]}{BUILD_ID_SUFFIX}")


def _canonicalize(path: PathLike) -> Optional[Path]:
    try:
        return Path(path).resolve(strict=True)
    except (OSError, RuntimeError):
        return None


def _parent(path: Path) -> Optional[Path]:
    parent = path.parent
    return None if parent == path else parent


def locate_debuglink(path: PathLike, filename: Union[bytes, str]) -> Optional[Path]:
    """Find the file named in ``.gnu_debuglink`` of the object at ``path``.

    Tries the object's directory, its ``.debug`` subdirectory, then the
    same directory below the system debug path.
    """
    canonical = _canonicalize(path)
    if canonical is None:
        return None
    parent = _parent(canonical)
    if parent is None:
        return None
    name = os.fsdecode(filename)

    candidate = parent / name
    if candidate != canonical and candidate.is_file():
        return candidate

    candidate = parent / ".debug" / name
    if candidate.is_file():
        return candidate

    if debug_path_exists():
        candidate = Path(DEBUG_PATH) / parent.relative_to(parent.anchor) / name
        if candidate.is_file():
            return candidate

    return None


def locate_debugaltlink(path: PathLike, filename: Union[bytes, str],
                        build_id: bytes) -> Optional[Path]:
    """Find the file named in ``.gnu_debugaltlink``, falling back to its build ID."""
    name = Path(os.fsdecode(filename))
    if name.is_absolute():
        if name.is_file():
            return name
    else:
        canonical = _canonicalize(path)
        if canonical is None:
            return None
        parent = _parent(canonical)
        if parent is None:
            return None
        candidate = parent / name
        if candidate.is_file():
            return candidate
    return locate_build_id(build_id)