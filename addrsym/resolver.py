"""Address-to-symbol resolution over the libraries loaded into this process."""

from __future__ import annotations

import os
import platform
import struct
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Union

from . import macho as _macho
from .coff import CoffObject
from .elf import ElfObject, locate_build_id
from .filemap import FileMap, map_file
from .maps import MapsEntry, MapsParseError, parse_maps
from .stash import Stash
from .symbols import Symbol, adjust_ip

MAPPINGS_CACHE_SIZE = 4
ADDRESS_SPACE = 1 << (struct.calcsize("P") * 8)

_ELF_MAGIC = b"\x7fELF"
_PE_MAGIC = b"MZ"
_MACHO_MAGICS = frozenset(
    struct.pack("<I", magic)
    for magic in (
        _macho.MH_MAGIC, _macho.MH_CIGAM, _macho.MH_MAGIC_64, _macho.MH_CIGAM_64,
        _macho.FAT_MAGIC, _macho.FAT_CIGAM, _macho.FAT_MAGIC_64, _macho.FAT_CIGAM_64,
    )
)
_ET_EXEC = 2

PathLike = Union[str, os.PathLike]
_ObjectFile = Union[ElfObject, CoffObject, _macho.MachOObject]


@dataclass(frozen=True)
class LibrarySegment:
    """A segment of a library as stated in its object file, and its size in memory."""

    stated_virtual_memory_address: int
    len: int


@dataclass
class Library:
    """A loaded object file: its path, its segments and its load bias."""

    name: str
    segments: list[LibrarySegment] = field(default_factory=list)
    bias: int = 0

    def contains(self, addr: int) -> bool:
        """Whether any segment, relocated by the bias, holds ``addr``."""
        for segment in self.segments:
            start = (segment.stated_virtual_memory_address + self.bias) % ADDRESS_SPACE
            end = (start + segment.len) % ADDRESS_SPACE
            if start <= addr < end:
                return True
        return False


class Mapping:
    """A parsed object file kept together with the memory it was parsed from."""

    def __init__(self, obj: _ObjectFile, file_map: FileMap, stash: Stash,
                 sup: Optional[_ObjectFile] = None) -> None:
        self.object = obj
        self.sup = sup
        self._map = file_map
        self._stash = stash

    @classmethod
    def new(cls, path: PathLike) -> Optional["Mapping"]:
        """Map and parse the object file at ``path``, preferring separate debug files."""
        file_map = map_file(path)
        if file_map is None:
            return None
        magic = bytes(file_map.data[:4])
        if magic.startswith(_ELF_MAGIC):
            return cls._new_elf(path, file_map)
        if magic.startswith(_PE_MAGIC):
            return cls._from_object(file_map, CoffObject.parse(file_map.data))
        if magic in _MACHO_MAGICS:
            return cls._new_macho(Path(path), file_map)
        file_map.close()
        return None

    @classmethod
    def _from_object(cls, file_map: FileMap, obj: Optional[_ObjectFile]) -> Optional["Mapping"]:
        if obj is None:
            file_map.close()
            return None
        return cls(obj, file_map, Stash())

    @classmethod
    def _new_elf(cls, path: PathLike, file_map: FileMap) -> Optional["Mapping"]:
        obj = ElfObject.parse(file_map.data)
        if obj is None:
            file_map.close()
            return None

        build_id = obj.build_id()
        debug_path = locate_build_id(build_id) if build_id is not None else None
        if debug_path is not None:
            mapping = cls._new_elf_debug(debug_path, None)
            if mapping is not None:
                file_map.close()
                return mapping

        debuglink = obj.gnu_debuglink_path(path)
        if debuglink is not None:
            mapping = cls._new_elf_debug(*debuglink)
            if mapping is not None:
                file_map.close()
                return mapping

        return cls(obj, file_map, Stash())

    @classmethod
    def _new_elf_debug(cls, path: Path, crc: Optional[int]) -> Optional["Mapping"]:
        file_map = map_file(path)
        if file_map is None:
            return None
        obj = ElfObject.parse(file_map.data)
        if obj is None:
            file_map.close()
            return None

        stash = Stash()
        altlink = obj.gnu_debugaltlink_path(path)
        if altlink is not None:
            sup_path, sup_build_id = altlink
            sup_map = map_file(sup_path)
            if sup_map is not None:
                stash.set_mmap_aux(sup_map)
                sup = ElfObject.parse(sup_map.data)
                if sup is not None and sup.build_id() == sup_build_id:
                    return cls(obj, file_map, stash, sup)
        return cls(obj, file_map, stash)

    @classmethod
    def _new_macho(cls, path: Path, file_map: FileMap) -> Optional["Mapping"]:
        image = _macho.find_header(file_map.data, _desired_cpu())
        obj = _macho.MachOObject.parse(image) if image is not None else None
        if obj is None:
            file_map.close()
            return None
        uuid = obj.uuid()
        if uuid is not None and path.parent != path:
            mapping = cls._load_dsym(path.parent, uuid)
            if mapping is not None:
                file_map.close()
                return mapping
        return cls(obj, file_map, Stash())

    @classmethod
    def _load_dsym(cls, directory: Path, uuid: bytes) -> Optional["Mapping"]:
        try:
            entries = list(os.scandir(directory))
        except OSError:
            return None
        for entry in entries:
            if not entry.name.endswith(".dSYM"):
                continue
            candidates = Path(entry.path) / "Contents" / "Resources" / "DWARF"
            mapping = cls._try_dsym_candidate(candidates, uuid)
            if mapping is not None:
                return mapping
        return None

    @classmethod
    def _try_dsym_candidate(cls, directory: Path, uuid: bytes) -> Optional["Mapping"]:
        try:
            entries = list(os.scandir(directory))
        except OSError:
            return None
        for entry in entries:
            file_map = map_file(entry.path)
            if file_map is None:
                return None
            image = _macho.find_header(file_map.data, _desired_cpu())
            obj = _macho.MachOObject.parse(image) if image is not None else None
            if obj is not None and obj.uuid() == uuid:
                return cls(obj, file_map, Stash())
            file_map.close()
        return None

    def close(self) -> None:
        """Release the mapped file and anything held in the stash."""
        self._stash.close()
        self._map.close()


def _desired_cpu() -> Optional[int]:
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        return _macho.CPU_TYPE_X86_64
    if machine in ("arm64", "aarch64"):
        return _macho.CPU_TYPE_ARM64
    if machine in ("i386", "i486", "i586", "i686", "x86"):
        return _macho.CPU_TYPE_X86
    if machine.startswith("arm"):
        return _macho.CPU_TYPE_ARM
    return None


class Cache:
    """Known libraries plus a small most-recently-used cache of parsed mappings."""

    def __init__(self, libraries: Optional[Iterable[Library]] = None) -> None:
        self.libraries: list[Library] = (
            native_libraries() if libraries is None else list(libraries)
        )
        self.mappings: list[tuple[int, Mapping]] = []

    def avma_to_svma(self, addr: int) -> Optional[tuple[int, int]]:
        """Find the library holding ``addr``; return its index and the stated address."""
        for index, library in enumerate(self.libraries):
            if library.contains(addr):
                return index, (addr - library.bias) % ADDRESS_SPACE
        return None

    def mapping_for_lib(self, lib: int) -> Optional[Mapping]:
        """The mapping for library ``lib``, loaded if needed and moved to the front."""
        position = next((i for i, (idx, _) in enumerate(self.mappings) if idx == lib), None)
        if position is not None:
            if position != 0:
                self.mappings.insert(0, self.mappings.pop(position))
        else:
            mapping = Mapping.new(self.libraries[lib].name)
            if mapping is None:
                return None
            if len(self.mappings) == MAPPINGS_CACHE_SIZE:
                _, evicted = self.mappings.pop()
                evicted.close()
            self.mappings.insert(0, (lib, mapping))
        return self.mappings[0][1]

    def clear(self) -> None:
        """Drop every cached mapping."""
        for _, mapping in self.mappings:
            mapping.close()
        self.mappings.clear()

    def resolve(self, addr: int) -> list[Symbol]:
        """Symbols for the return address ``addr``; empty when nothing is known."""
        ip = adjust_ip(addr)
        if ip is None:
            return []
        found = self.avma_to_svma(ip)
        if found is None:
            return []
        lib, svma = found
        mapping = self.mapping_for_lib(lib)
        if mapping is None:
            return []
        name = mapping.object.search_symtab(svma)
        if name is None:
            return []
        return [Symbol(name_bytes=bytes(name))]


def libraries_from_maps(entries: Iterable[MapsEntry],
                        current_exe: Optional[PathLike] = None) -> list[Library]:
    """Group file-backed regions of a maps listing into libraries.

    Each file's load base is the lowest region start minus its file offset;
    the current executable, when given, comes first.
    """
    grouped: dict[str, list[MapsEntry]] = {}
    for entry in entries:
        name = entry.pathname
        if not name or name.startswith("["):
            continue
        grouped.setdefault(name, []).append(entry)

    libraries = []
    for name, regions in grouped.items():
        base = min(region.address[0] - region.offset for region in regions)
        segments = [
            LibrarySegment(region.address[0] - base, region.address[1] - region.address[0])
            for region in regions
        ]
        libraries.append(Library(name, segments, base))

    if current_exe is not None:
        exe = os.fspath(current_exe)
        libraries.sort(key=lambda library: library.name != exe)
    return libraries


def _is_fixed_executable(path: str) -> bool:
    try:
        with open(path, "rb") as file:
            header = file.read(18)
    except OSError:
        return False
    if len(header) < 18 or not header.startswith(_ELF_MAGIC):
        return False
    order = "little" if header[5] == 1 else "big"
    return int.from_bytes(header[16:18], order) == _ET_EXEC


def _current_exe() -> str:
    try:
        return os.readlink("/proc/self/exe")
    except OSError:
        return os.path.realpath(sys.executable)


def native_libraries() -> list[Library]:
    """Libraries currently loaded into this process (empty where unknown)."""
    if not sys.platform.startswith("linux"):
        return []
    try:
        entries = parse_maps()
    except MapsParseError:
        return []
    libraries = libraries_from_maps(entries, _current_exe())
    for library in libraries:
        # Fixed-address executables state absolute addresses already.
        if _is_fixed_executable(library.name):
            library.segments = [
                LibrarySegment(segment.stated_virtual_memory_address + library.bias, segment.len)
                for segment in library.segments
            ]
            library.bias = 0
    return libraries


_LOCK = threading.Lock()
_CACHE: Optional[Cache] = None


def resolve(addr: int) -> list[Symbol]:
    """Resolve a return address in this process to its symbols."""
    global _CACHE
    with _LOCK:
        if _CACHE is None:
            _CACHE = Cache()
        return _CACHE.resolve(addr)


def clear_symbol_cache() -> None:
    """Release the parsed mappings held by the process-wide cache."""
    with _LOCK:
        if _CACHE is not None:
            _CACHE.clear()