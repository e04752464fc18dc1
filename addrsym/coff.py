"""Reading of PE/COFF image files: sections and function symbols."""

from __future__ import annotations

import bisect
import struct
from dataclasses import dataclass
from typing import Optional

from .stash import Stash

IMAGE_DOS_SIGNATURE = b"MZ"
IMAGE_NT_SIGNATURE = b"PE\0\0"
IMAGE_NT_OPTIONAL_HDR32_MAGIC = 0x10B
IMAGE_NT_OPTIONAL_HDR64_MAGIC = 0x20B
IMAGE_SYM_DTYPE_FUNCTION = 2
IMAGE_SIZEOF_SYMBOL = 18
IMAGE_SIZEOF_SECTION_HEADER = 40


class _Malformed(Exception):
    """Internal signal that the file does not hold what it claims."""


def _read(data, offset: int, size: int) -> bytes:
    if offset < 0 or size < 0 or offset + size > len(data):
        raise _Malformed
    return bytes(data[offset:offset + size])


@dataclass(frozen=True)
class _Section:
    name: bytes
    virtual_size: int
    virtual_address: int
    size_of_raw_data: int
    pointer_to_raw_data: int


@dataclass(frozen=True)
class _Headers:
    image_base: int
    sections: list
    symtab_offset: int
    symbol_count: int


def _parse_headers(data) -> _Headers:
    if _read(data, 0, 2) != IMAGE_DOS_SIGNATURE:
        raise _Malformed
    (nt_offset,) = struct.unpack("<I", _read(data, 0x3C, 4))
    if _read(data, nt_offset, 4) != IMAGE_NT_SIGNATURE:
        raise _Malformed
    (_machine, nsections, _time, symtab_offset, nsyms, opt_size,
     _chars) = struct.unpack("<HHIIIHH", _read(data, nt_offset + 4, 20))
    opt_offset = nt_offset + 24
    optional = _read(data, opt_offset, opt_size)
    if len(optional) < 2:
        raise _Malformed
    (magic,) = struct.unpack_from("<H", optional)
    if magic == IMAGE_NT_OPTIONAL_HDR64_MAGIC:
        if len(optional) < 32:
            raise _Malformed
        (image_base,) = struct.unpack_from("<Q", optional, 24)
    elif magic == IMAGE_NT_OPTIONAL_HDR32_MAGIC:
        if len(optional) < 32:
            raise _Malformed
        (image_base,) = struct.unpack_from("<I", optional, 28)
    else:
        raise _Malformed
    table = opt_offset + opt_size
    sections = []
    for i in range(nsections):
        raw = _read(data, table + i * IMAGE_SIZEOF_SECTION_HEADER, IMAGE_SIZEOF_SECTION_HEADER)
        name, vsize, vaddr, rawsize, rawptr = struct.unpack_from("<8sIIII", raw)
        sections.append(_Section(name.rstrip(b"\0"), vsize, vaddr, rawsize, rawptr))
    return _Headers(image_base, sections, symtab_offset, nsyms)


def get_image_base(data) -> Optional[int]:
    """The preferred load address from a PE file's optional header."""
    try:
        return _parse_headers(data).image_base
    except (_Malformed, struct.error):
        return None


class CoffObject:
    """A parsed PE image with function symbols sorted by virtual address."""

    def __init__(self, data, sections: list, strings: bytes,
                 symbols: list[tuple[int, bytes]]) -> None:
        self.data = data
        self.sections = sections
        self._strings = strings
        self.symbols = symbols
        self._addresses = [addr for addr, _ in symbols]

    @classmethod
    def parse(cls, data) -> Optional["CoffObject"]:
        """Parse ``data`` as a PE image, or return None if it is not one."""
        try:
            return cls._parse(data)
        except (_Malformed, struct.error):
            return None

    @classmethod
    def _parse(cls, data) -> "CoffObject":
        headers = _parse_headers(data)
        strings = b""
        raw_syms = b""
        if headers.symtab_offset:
            raw_syms = _read(data, headers.symtab_offset, headers.symbol_count * IMAGE_SIZEOF_SYMBOL)
            str_offset = headers.symtab_offset + len(raw_syms)
            (str_len,) = struct.unpack("<I", _read(data, str_offset, 4))
            strings = _read(data, str_offset, max(str_len, 4))

        symbols = []
        i = 0
        while i < headers.symbol_count:
            entry = raw_syms[i * IMAGE_SIZEOF_SYMBOL:(i + 1) * IMAGE_SIZEOF_SYMBOL]
            name, value, section_number, sym_type, _cls, naux = struct.unpack("<8sIhHBB", entry)
            i += 1 + naux
            derived = (sym_type >> 4) & 0x3
            if derived != IMAGE_SYM_DTYPE_FUNCTION or section_number == 0:
                continue
            if section_number < 1 or section_number > len(headers.sections):
                raise _Malformed
            va = headers.sections[section_number - 1].virtual_address
            symbols.append((value + va + headers.image_base, _symbol_name(name, strings)))
        symbols.sort(key=lambda item: item[0])
        return cls(data, headers.sections, strings, symbols)

    def _section_name(self, section: _Section) -> Optional[bytes]:
        name = section.name
        if name.startswith(b"/"):
            try:
                offset = int(name[1:].decode("ascii"))
            except (ValueError, UnicodeDecodeError):
                return None
            end = self._strings.find(b"\0", offset)
            return None if end < 0 else self._strings[offset:end]
        return name

    def section(self, stash: Stash, name: str) -> Optional[bytes]:
        """Return the file contents of section ``name``."""
        wanted = name.encode()
        for section in self.sections:
            if self._section_name(section) == wanted:
                size = min(section.size_of_raw_data, section.virtual_size or section.size_of_raw_data)
                try:
                    return _read(self.data, section.pointer_to_raw_data, size)
                except _Malformed:
                    return None
        return None

    def search_symtab(self, addr: int) -> Optional[bytes]:
        """Name of the closest function symbol at or below ``addr``."""
        i = bisect.bisect_left(self._addresses, addr)
        if i < len(self._addresses) and self._addresses[i] == addr:
            return self.symbols[i][1]
        if i == 0:
            return None
        return self.symbols[i - 1][1]


def _symbol_name(raw: bytes, strings: bytes) -> bytes:
    if raw[:4] == b"\0\0\0\0":
        (offset,) = struct.unpack_from("<I", raw, 4)
        end = strings.find(b"\0", offset)
        if offset >= len(strings) or end < 0:
            raise _Malformed
        return strings[offset:end]
    return raw.rstrip(b"\0")