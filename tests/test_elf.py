import struct
import zlib
from dataclasses import dataclass, replace
from pathlib import Path

import pytest

from addrsym.elf import (
    ELFCOMPRESS_ZLIB,
    NT_GNU_BUILD_ID,
    SHF_COMPRESSED,
    SHT_DYNSYM,
    SHT_NOBITS,
    SHT_NOTE,
    SHT_STRTAB,
    SHT_SYMTAB,
    STT_FUNC,
    STT_OBJECT,
    ElfObject,
    debug_path_exists,
    decompress_zlib,
    locate_build_id,
    locate_debugaltlink,
    locate_debuglink,
)
from addrsym.stash import Stash

SHT_PROGBITS = 1


@dataclass(frozen=True)
class Sec:
    name: str
    type: int
    data: bytes
    flags: int = 0
    link: str = ""
    addralign: int = 1


def build_elf(sections, *, is_64=True, endian="<", version=1, elf_class=None):
    hdr_fmt = endian + ("HHIQQQIHHHHHH" if is_64 else "HHIIIIIHHHHHH")
    sh_fmt = endian + ("IIQQQQIIQQ" if is_64 else "IIIIIIIIII")
    ehsize = 16 + struct.calcsize(hdr_fmt)
    shentsize = struct.calcsize(sh_fmt)

    all_sections = list(sections) + [Sec(".shstrtab", SHT_STRTAB, b"")]
    names = bytearray(b"\0")
    name_offsets = []
    for sec in all_sections:
        name_offsets.append(len(names))
        names += sec.name.encode() + b"\0"
    all_sections[-1] = replace(all_sections[-1], data=bytes(names))
    index = {sec.name: i + 1 for i, sec in enumerate(all_sections)}

    body = bytearray()
    offsets = []
    for sec in all_sections:
        body += bytes(-len(body) % 8)
        offsets.append(ehsize + len(body))
        body += sec.data
    body += bytes(-len(body) % 8)
    shoff = ehsize + len(body)

    headers = bytearray(struct.pack(sh_fmt, *([0] * 10)))
    for sec, offset, name_offset in zip(all_sections, offsets, name_offsets):
        link = index[sec.link] if sec.link else 0
        headers += struct.pack(sh_fmt, name_offset, sec.type, sec.flags, 0, offset,
                               len(sec.data), link, 0, sec.addralign, 0)

    klass = elf_class if elf_class is not None else (2 if is_64 else 1)
    ident = b"\x7fELF" + bytes([klass, 1 if endian == "<" else 2, version]) + bytes(9)
    header = struct.pack(hdr_fmt, 1, 0, 1, 0, 0, shoff, 0, ehsize, 0, 0,
                         shentsize, len(all_sections) + 1, len(all_sections))
    return ident + header + bytes(body) + bytes(headers)


def symbols(entries, *, is_64=True, endian="<"):
    strtab = bytearray(b"\0")
    raw = bytearray()
    for name, value, size, stt, shndx in [("", 0, 0, 0, 0)] + list(entries):
        offset = 0
        if name:
            offset = len(strtab)
            strtab += name.encode() + b"\0"
        if is_64:
            raw += struct.pack(endian + "IBBHQQ", offset, stt, 0, shndx, value, size)
        else:
            raw += struct.pack(endian + "IIIBBH", offset, value, size, stt, 0, shndx)
    return bytes(raw), bytes(strtab)


def symtab_sections(entries, *, kind=SHT_SYMTAB, is_64=True, endian="<"):
    raw, strtab = symbols(entries, is_64=is_64, endian=endian)
    return [
        Sec(".text", SHT_PROGBITS, b"\x90" * 16),
        Sec(".strtab", SHT_STRTAB, strtab),
        Sec(".symtab", kind, raw, link=".strtab"),
    ]


def gnu_note(desc, *, n_type=NT_GNU_BUILD_ID, endian="<"):
    padded = desc + bytes(-len(desc) % 4)
    return struct.pack(endian + "III", 4, len(desc), n_type) + b"GNU\0" + padded


SAMPLE_SYMS = [
    ("foo", 0x1000, 0x10, STT_FUNC, 1),
    ("bar", 0x2000, 0x20, STT_FUNC, 1),
    ("table", 0x3000, 0x8, STT_OBJECT, 1),
    ("imported", 0x1800, 0x100, STT_FUNC, 0),
    ("untyped", 0x2800, 0x100, 0, 1),
]


@pytest.mark.parametrize("data", [b"", b"not an elf file at all", b"\x7fELF"])
def test_parse_rejects_non_elf(data):
    assert ElfObject.parse(data) is None


def test_parse_rejects_bad_version_and_class():
    assert ElfObject.parse(build_elf([], version=0)) is None
    assert ElfObject.parse(build_elf([], elf_class=3)) is None


def test_search_symtab_ranges():
    obj = ElfObject.parse(build_elf(symtab_sections(SAMPLE_SYMS)))
    assert obj.search_symtab(0x1000) == b"foo"
    assert obj.search_symtab(0x1010) == b"foo"
    assert obj.search_symtab(0x1011) is None
    assert obj.search_symtab(0x2005) == b"bar"
    assert obj.search_symtab(0x3004) == b"table"
    assert obj.search_symtab(0x500) is None


def test_search_symtab_skips_undefined_and_untyped():
    obj = ElfObject.parse(build_elf(symtab_sections(SAMPLE_SYMS)))
    assert obj.search_symtab(0x1850) is None
    assert obj.search_symtab(0x2850) is None
    assert [s.address for s in obj.syms] == sorted(s.address for s in obj.syms)
    assert len(obj.syms) == 3


def test_falls_back_to_dynsym():
    obj = ElfObject.parse(build_elf(symtab_sections(SAMPLE_SYMS, kind=SHT_DYNSYM)))
    assert obj.search_symtab(0x2000) == b"bar"


def test_no_symbols_gives_no_names():
    obj = ElfObject.parse(build_elf([Sec(".text", SHT_PROGBITS, b"\0" * 8)]))
    assert obj.syms == []
    assert obj.search_symtab(0) is None


def test_big_endian_32bit_object():
    sections = symtab_sections(SAMPLE_SYMS, is_64=False, endian=">")
    sections.append(Sec(".note.gnu.build-id", SHT_NOTE, gnu_note(b"\x01\x02\x03", endian=">"), addralign=4))
    obj = ElfObject.parse(build_elf(sections, is_64=False, endian=">"))
    assert obj.search_symtab(0x1008) == b"foo"
    assert obj.build_id() == b"\x01\x02\x03"


def test_section_plain_and_missing():
    payload = b"debug info bytes"
    obj = ElfObject.parse(build_elf([Sec(".debug_info", SHT_PROGBITS, payload),
                                     Sec(".bss", SHT_NOBITS, b"")]))
    stash = Stash()
    assert obj.section(stash, ".debug_info") == payload
    assert obj.section(stash, ".bss") == b""
    assert obj.section(stash, ".debug_line") is None
    assert obj.section(stash, ".text") is None
    assert len(stash) == 0


def test_section_gabi_compressed():
    payload = b"abcdefgh" * 20
    chdr = struct.pack("<IIQQ", ELFCOMPRESS_ZLIB, 0, len(payload), 1)
    sec = Sec(".debug_info", SHT_PROGBITS, chdr + zlib.compress(payload), flags=SHF_COMPRESSED)
    obj = ElfObject.parse(build_elf([sec]))
    stash = Stash()
    assert bytes(obj.section(stash, ".debug_info")) == payload
    assert len(stash) == 1


def test_section_gabi_unknown_compression():
    payload = b"xyz" * 10
    chdr = struct.pack("<IIQQ", ELFCOMPRESS_ZLIB + 1, 0, len(payload), 1)
    sec = Sec(".debug_info", SHT_PROGBITS, chdr + zlib.compress(payload), flags=SHF_COMPRESSED)
    obj = ElfObject.parse(build_elf([sec]))
    assert obj.section(Stash(), ".debug_info") is None


def test_section_gnu_zdebug():
    payload = b"line program" * 5
    data = b"ZLIB\0\0\0\0" + len(payload).to_bytes(4, "big") + zlib.compress(payload)
    obj = ElfObject.parse(build_elf([Sec(".zdebug_line", SHT_PROGBITS, data)]))
    assert bytes(obj.section(Stash(), ".debug_line")) == payload
    assert obj.section(Stash(), ".debug_info") is None


def test_section_gnu_zdebug_bad_magic():
    payload = b"line program"
    data = b"ZLIX\0\0\0\0" + len(payload).to_bytes(4, "big") + zlib.compress(payload)
    obj = ElfObject.parse(build_elf([Sec(".zdebug_line", SHT_PROGBITS, data)]))
    assert obj.section(Stash(), ".debug_line") is None


def test_decompress_zlib_round_trip_and_errors():
    payload = b"hello world"
    compressed = zlib.compress(payload)
    assert decompress_zlib(compressed, len(payload)) == payload
    assert decompress_zlib(compressed, len(payload) - 1) is None
    assert decompress_zlib(compressed, len(payload) + 1) is None
    assert decompress_zlib(compressed + b"x", len(payload)) is None
    assert decompress_zlib(b"garbage", 4) is None
    assert decompress_zlib(zlib.compress(b""), 0) == b""


def test_build_id_from_note():
    build_id = bytes(range(20))
    notes = gnu_note(b"\x00\x00", n_type=1) + gnu_note(build_id)
    obj = ElfObject.parse(build_elf([Sec(".note.gnu.build-id", SHT_NOTE, notes, addralign=4)]))
    assert obj.build_id() == build_id


def test_build_id_absent():
    obj = ElfObject.parse(build_elf([Sec(".text", SHT_PROGBITS, b"\0")]))
    assert obj.build_id() is None


def test_gnu_debuglink_path(tmp_path):
    exe = tmp_path / "prog"
    exe.write_bytes(b"")
    (tmp_path / "prog.debug").write_bytes(b"")
    crc = 0x12345678
    data = b"prog.debug\0" + bytes(-len(b"prog.debug\0") % 4) + struct.pack("<I", crc)
    obj = ElfObject.parse(build_elf([Sec(".gnu_debuglink", SHT_PROGBITS, data)]))
    assert obj.gnu_debuglink_path(exe) == (tmp_path.resolve() / "prog.debug", crc)


def test_gnu_debuglink_path_missing_crc(tmp_path):
    exe = tmp_path / "prog"
    exe.write_bytes(b"")
    (tmp_path / "prog.debug").write_bytes(b"")
    obj = ElfObject.parse(build_elf([Sec(".gnu_debuglink", SHT_PROGBITS, b"prog.debug\0")]))
    assert obj.gnu_debuglink_path(exe) is None


def test_gnu_debugaltlink_path(tmp_path):
    exe = tmp_path / "prog"
    exe.write_bytes(b"")
    (tmp_path / "sup.debug").write_bytes(b"")
    build_id = b"\xaa\xbb\xcc"
    obj = ElfObject.parse(build_elf([Sec(".gnu_debugaltlink", SHT_PROGBITS, b"sup.debug\0" + build_id)]))
    assert obj.gnu_debugaltlink_path(exe) == (tmp_path.resolve() / "sup.debug", build_id)


def test_locate_debuglink_skips_self_and_uses_debug_dir(tmp_path):
    exe = tmp_path / "prog"
    exe.write_bytes(b"")
    (tmp_path / ".debug").mkdir()
    (tmp_path / ".debug" / "prog").write_bytes(b"")
    assert locate_debuglink(exe, b"prog") == tmp_path.resolve() / ".debug" / "prog"


def test_locate_debuglink_nonexistent_object(tmp_path):
    assert locate_debuglink(tmp_path / "missing", b"prog.debug") is None


def test_locate_debugaltlink_absolute(tmp_path):
    sup = tmp_path / "sup"
    sup.write_bytes(b"")
    assert locate_debugaltlink(tmp_path / "prog", str(sup).encode(), b"") == sup


def test_locate_debugaltlink_falls_back_to_build_id(tmp_path):
    exe = tmp_path / "prog"
    exe.write_bytes(b"")
    assert locate_debugaltlink(exe, b"absent", b"\x01") is None
    build_id = b"\x01\x02\x03\x04"
    assert locate_debugaltlink(exe, b"absent", build_id) == locate_build_id(build_id)


def test_locate_build_id():
    assert locate_build_id(b"\xab") is None
    expected = Path("/usr/lib/debug/.build-id/ab/cdef.debug") if debug_path_exists() else None
    assert locate_build_id(b"\xab\xcd\xef") == expected