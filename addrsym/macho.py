"""Reading of Mach-O files: fat headers, DWARF sections, symbols and UUIDs."""

from __future__ import annotations

import bisect
import struct
from dataclasses import dataclass
from typing import Optional

from .stash import Stash

MH_MAGIC = 0xFEEDFACE
MH_CIGAM = 0xCEFAEDFE
MH_MAGIC_64 = 0xFEEDFACF
MH_CIGAM_64 = 0xCFFAEDFE
FAT_MAGIC = 0xCAFEBABE
FAT_CIGAM = 0xBEBAFECA
FAT_MAGIC_64 = 0xCAFEBABF
FAT_CIGAM_64 = 0xBFBAFECA
MH_OBJECT = 0x1
LC_SEGMENT = 0x1
LC_SYMTAB = 0x2
LC_SEGMENT_64 = 0x19
LC_UUID = 0x1B
N_STAB = 0xE0
N_TYPE = 0x0E
N_UNDF = 0x0
N_INDR = 0xA
N_FUN = 0x24
N_STSYM = 0x26
N_SO = 0x64
N_OSO = 0x66

CPU_TYPE_X86 = 7
CPU_TYPE_X86_64 = 0x01000007
CPU_TYPE_ARM = 12
CPU_TYPE_ARM64 = 0x0100000C


class _Malformed(Exception):
    """Internal signal that the file does not hold what it claims."""


def _read(data, offset: int, size: int) -> bytes:
    if offset < 0 or size < 0 or offset + size > len(data):
        raise _Malformed
    return bytes(data[offset:offset + size])


def find_header(data, desired_cpu: Optional[int]) -> Optional[bytes]:
    """Return the Mach-O image in ``data``, choosing ``desired_cpu`` from a fat file."""
    data = bytes(data)
    if len(data) < 4:
        return None
    (magic,) = struct.unpack_from("<I", data)
    if magic in (MH_MAGIC_64, MH_CIGAM_64, MH_MAGIC, MH_CIGAM):
        return data
    if magic in (FAT_MAGIC, FAT_CIGAM, FAT_MAGIC_64, FAT_CIGAM_64):
        is64 = magic in (FAT_MAGIC_64, FAT_CIGAM_64)
        fmt = ">iiQQII" if is64 else ">iiIII"
        entry = struct.calcsize(fmt)
        if len(data) < 8:
            return None
        (nfat,) = struct.unpack_from(">I", data, 4)
        for i in range(nfat):
            pos = 8 + i * entry
            if pos + entry > len(data):
                break
            fields = struct.unpack_from(fmt, data, pos)
            if desired_cpu is not None and fields[0] == desired_cpu:
                offset, size = fields[2], fields[3]
                if offset + size > len(data):
                    return None
                return data[offset:offset + size]
        return None
    return None


def split_archive_path(path: bytes) -> Optional[tuple[bytes, bytes]]:
    """Split ``archive.a(member.o)`` into the archive path and member name."""
    if not path or not path.endswith(b")"):
        return None
    body = path[:-1]
    index = body.find(b"(")
    if index < 0:
        return None
    return body[:index], body[index + 1:]


@dataclass(frozen=True)
class _Section:
    sectname: bytes
    segname: bytes
    offset: int
    size: int


@dataclass(frozen=True)
class ObjectMapEntry:
    """A function recorded in debug-map stabs, with the object file holding its DWARF."""

    address: int
    size: int
    name: bytes
    object_path: bytes


class MachOObject:
    """A parsed Mach-O image or object file."""

    def __init__(self, data, endian: str, filetype: int) -> None:
        self.data = data
        self.endian = endian
        self.filetype = filetype
        self.dwarf: Optional[list[_Section]] = None
        self.syms: list[tuple[bytes, int]] = []
        self.syms_sort_by_name = False
        self.object_map: Optional[list[ObjectMapEntry]] = None
        self._object_map_keys: list[int] = []
        self._uuid: Optional[bytes] = None
        self._keys: list = []

    @classmethod
    def parse(cls, data) -> Optional["MachOObject"]:
        """Parse a single-architecture Mach-O file, or return None."""
        try:
            return cls._parse(bytes(data))
        except (_Malformed, struct.error):
            return None

    @classmethod
    def _parse(cls, data: bytes) -> "MachOObject":
        (magic,) = struct.unpack("<I", _read(data, 0, 4))
        if magic in (MH_MAGIC, MH_MAGIC_64):
            endian = "<"
        elif magic in (MH_CIGAM, MH_CIGAM_64):
            endian = ">"
        else:
            raise _Malformed
        is64 = magic in (MH_MAGIC_64, MH_CIGAM_64)
        (_m, _cpu, _sub, filetype, ncmds, _sizeofcmds, _flags) = struct.unpack(
            endian + "7I", _read(data, 0, 28))
        obj = cls(data, endian, filetype)
        is_object = filetype == MH_OBJECT
        nlists: list[tuple[bytes, int, int]] = []
        pos = 32 if is64 else 28
        for _ in range(ncmds):
            cmd, cmdsize = struct.unpack(endian + "II", _read(data, pos, 8))
            if cmdsize < 8:
                raise _Malformed
            body = _read(data, pos, cmdsize)
            if cmd in (LC_SEGMENT, LC_SEGMENT_64):
                seg64 = cmd == LC_SEGMENT_64
                segname = body[8:24].rstrip(b"\0")
                nsects_at = 64 if seg64 else 48
                (nsects,) = struct.unpack_from(endian + "I", body, nsects_at)
                if segname == b"__DWARF" or (is_object and segname == b""):
                    obj.dwarf = _sections(body, endian, seg64, nsects)
            elif cmd == LC_SYMTAB:
                symoff, nsyms, stroff, strsize = struct.unpack_from(endian + "4I", body, 8)
                nlists = _nlists(data, endian, is64, symoff, nsyms, _read(data, stroff, strsize))
                obj.syms = [(name, value) for name, n_type, value in nlists
                            if name and _is_definition(n_type)]
            elif cmd == LC_UUID:
                obj._uuid = body[8:24]
            pos += cmdsize
        if is_object:
            obj.syms.sort(key=lambda s: s[0])
            obj.syms_sort_by_name = True
            obj._keys = [name for name, _ in obj.syms]
        else:
            obj.syms.sort(key=lambda s: s[1])
            obj._keys = [addr for _, addr in obj.syms]
            obj.object_map = _object_map(nlists)
            obj._object_map_keys = [entry.address for entry in obj.object_map]
        return obj

    def uuid(self) -> Optional[bytes]:
        """The 16-byte UUID from the ``LC_UUID`` command, if present."""
        return self._uuid

    def section(self, stash: Stash, name: str) -> Optional[bytes]:
        """Contents of a DWARF section; ``.debug_x`` also matches ``__debug_x``."""
        if self.dwarf is None:
            return None
        wanted = name.encode()
        for section in self.dwarf:
            sname = section.sectname
            if sname == wanted or (sname.startswith(b"__") and wanted.startswith(b".")
                                   and sname[2:] == wanted[1:]):
                try:
                    return _read(self.data, section.offset, section.size)
                except _Malformed:
                    return None
        return None

    def search_symtab(self, addr: int) -> Optional[bytes]:
        """Name of the closest symbol at or below ``addr``."""
        if self.syms_sort_by_name:
            raise ValueError("object file symbols are sorted by name")
        i = bisect.bisect_right(self._keys, addr) - 1
        if i < 0:
            return None
        return self.syms[i][0]

    def search_symbol_by_name(self, name: bytes) -> Optional[int]:
        """Address of the symbol called ``name`` in an object file."""
        i = bisect.bisect_left(self._keys, name) if self.syms_sort_by_name else -1
        if 0 <= i < len(self._keys) and self._keys[i] == name:
            return self.syms[i][1]
        return None

    def search_object_map(self, addr: int) -> Optional[ObjectMapEntry]:
        """The debug-map entry whose function covers ``addr``, if any.

        Only executables and libraries carry a debug map; the entry names the
        object file whose DWARF describes the function.
        """
        if not self.object_map:
            return None
        i = bisect.bisect_right(self._object_map_keys, addr) - 1
        if i < 0:
            return None
        entry = self.object_map[i]
        if addr - entry.address < entry.size:
            return entry
        return None


def _is_definition(n_type: int) -> bool:
    return (n_type & N_STAB) == 0 and (n_type & N_TYPE) not in (N_UNDF, N_INDR)


def _sections(body: bytes, endian: str, seg64: bool, nsects: int) -> list[_Section]:
    start = 72 if seg64 else 56
    size = 80 if seg64 else 68
    result = []
    for i in range(nsects):
        raw = body[start + i * size:start + (i + 1) * size]
        if len(raw) < size:
            raise _Malformed
        sectname, segname = raw[:16].rstrip(b"\0"), raw[16:32].rstrip(b"\0")
        if seg64:
            _addr, sz, offset = struct.unpack_from(endian + "QQI", raw, 32)
        else:
            _addr, sz, offset = struct.unpack_from(endian + "III", raw, 32)
        result.append(_Section(sectname, segname, offset, sz))
    return result


def _nlists(data: bytes, endian: str, is64: bool, symoff: int, nsyms: int,
            strings: bytes) -> list[tuple[bytes, int, int]]:
    """All symbol table entries as (name, n_type, n_value), stabs included."""
    fmt = endian + ("IBBHQ" if is64 else "IBBhI")
    entry = struct.calcsize(fmt)
    raw = _read(data, symoff, nsyms * entry)
    result = []
    for strx, n_type, _sect, _desc, value in struct.iter_unpack(fmt, raw):
        if strx >= len(strings):
            continue
        end = strings.find(b"\0", strx)
        name = strings[strx:] if end < 0 else strings[strx:end]
        result.append((name, n_type, value))
    return result


def _object_map(nlists: list[tuple[bytes, int, int]]) -> list[ObjectMapEntry]:
    """Build the debug map from ``N_SO``/``N_OSO``/``N_FUN`` stabs, sorted by address."""
    entries: list[ObjectMapEntry] = []
    current_object: Optional[bytes] = None
    current_function: Optional[tuple[bytes, int]] = None
    for name, n_type, value in nlists:
        if n_type & N_STAB == 0:
            continue
        if n_type == N_SO:
            current_object = None
        elif n_type == N_OSO:
            current_object = name
        elif n_type == N_FUN:
            if name:
                current_function = (name, value)
            elif current_function is not None:
                func_name, address = current_function
                current_function = None
                if current_object is not None:
                    entries.append(ObjectMapEntry(address, value, func_name, current_object))
        elif n_type == N_STSYM and name and current_object is not None:
            entries.append(ObjectMapEntry(value, 1, name, current_object))
    entries.sort(key=lambda e: e.address)
    return entries