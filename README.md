# addrsym

`addrsym` turns code addresses into symbol names. It reads symbol tables
straight from object files: ELF on Linux and other Unix systems, Mach-O
on macOS and PE/COFF on Windows. It has no dependencies outside the
standard library.

## Installing

```
pip install addrsym
```

To run the tests:

```
pip install "addrsym[test]"
pytest
```

## Resolving an address

```python
from addrsym.resolver import resolve, clear_symbol_cache

for symbol in resolve(0x7F5985F46123):
    print(symbol.name, symbol.addr)

clear_symbol_cache()
```

`resolve` returns a list of `addrsym.symbols.Symbol`. The list is empty
when no loaded library covers the address or when the library's symbol
table has no symbol for it. The address is moved back one byte before
lookup, because a return address points at the instruction after the
call (see `addrsym.symbols.adjust_ip`; zero is left as it is).

The libraries loaded in the running process are found once, from
`/proc/self/maps`, on Linux only; on other systems the list of libraries
is empty and `resolve` finds nothing. Up to four parsed object files are
kept in a most-recently-used cache; `clear_symbol_cache()` releases them.
Both functions are guarded by a lock and may be called from any thread.

For other processes or for testing, build a `Cache` yourself:

```python
from addrsym.maps import parse_maps
from addrsym.resolver import Cache, libraries_from_maps

cache = Cache(libraries_from_maps(parse_maps("/proc/self/maps")))
symbols = cache.resolve(0x401234)
```

`libraries_from_maps` groups the file-backed regions of a maps listing
into `Library` objects (path, `LibrarySegment` list and load bias).
`Cache.avma_to_svma` finds the library holding an address and the
address as stated in that file; `Cache.mapping_for_lib` loads or reuses
the parsed file as a `Mapping`. `Mapping.new(path)` recognises ELF,
PE/COFF and Mach-O files. For ELF it first looks for a separate debug
file by build ID and then by `.gnu_debuglink`. For Mach-O it looks for
a matching `.dSYM` bundle beside the file.

## What it does not do

Symbols come from symbol tables only. DWARF debug information is not
interpreted, so resolved symbols carry a name but no source file, line
or column. `Symbol.filename`, `Symbol.lineno` and `Symbol.colno` stay
`None`. No inlined frames are reported: `resolve` returns at most one
symbol. There is no command-line program.

## Working with object files directly

Each format has a parser that works on the raw bytes of a file and
returns `None` when the bytes are not a file of that kind:

```python
from pathlib import Path
from addrsym.elf import ElfObject
from addrsym.stash import Stash

obj = ElfObject.parse(Path("/usr/bin/env").read_bytes())
if obj is not None:
    print(obj.search_symtab(0x1234))
    print(obj.build_id())
    debug_info = obj.section(Stash(), ".debug_info")
```

- `addrsym.elf.ElfObject`: `search_symtab` matches function and data
  symbols whose range covers the address. `section` returns a section's
  bytes and inflates zlib-compressed sections, both the standard form
  and the older `.zdebug_` form; the inflated buffer is kept in the
  given `Stash`. `build_id`, `gnu_debuglink_path` and
  `gnu_debugaltlink_path` are also provided. The module has
  `locate_build_id`, `locate_debuglink`, `locate_debugaltlink`,
  `debug_path_exists` and `decompress_zlib` as well.
- `addrsym.coff.CoffObject` and `get_image_base`: PE/COFF images. COFF
  does not store symbol sizes, so an address is matched to the nearest
  function symbol at or before it.
- `addrsym.macho.MachOObject`: `section` (`.debug_x` also matches
  `__debug_x`), `search_symtab`, `uuid`, `search_symbol_by_name` and
  `search_object_map`, which finds the object file named in the debug
  map. `find_header(data, desired_cpu)` picks one architecture out of a
  fat binary. `split_archive_path` splits `archive.a(member.o)` into the
  archive path and the member name.

`addrsym.filemap.FileMap` maps a file read-only and can be used as a
context manager. `map_file` does the same but returns `None` on failure.
`addrsym.stash.Stash` keeps decompressed buffers and one auxiliary map
alive.

## Process memory maps

```python
from addrsym.maps import MapsEntry, parse_maps

entry = MapsEntry.parse(
    "08056000-08077000 rw-p 00000000 00:00 0          [heap]"
)
assert entry.ip_matches(0x08056000)
assert entry.pathname == "[heap]"

entries = parse_maps("/proc/self/maps")
```

`MapsEntry.parse` and `parse_maps` raise `MapsParseError` (a
`ValueError`) when a line is malformed or the file cannot be read.

## Symbol names

`addrsym.symbols.SymbolName` keeps the raw bytes of a name and
demangles Rust legacy (`_ZN...E`) names:

- `as_bytes()` returns the raw bytes.
- `as_str()` returns the raw (mangled) text, or `None` when the bytes
  are not valid UTF-8.
- `str(name)` gives the demangled name, hash included.
  `format(name, "#")` leaves the trailing hash out. Names that are not
  demangled are shown with each bad byte sequence replaced by U+FFFD
  (`format_symbol_name`).

`addrsym.types.BytesOrWideString` holds a file name as either bytes or
UTF-16 code units. `to_str_lossy()` turns it into text and `into_path()`
turns it into a `pathlib.Path`; `into_path()` raises `ValueError` when
the representation cannot form a path on the current platform.