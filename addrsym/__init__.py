"""Resolve code addresses to symbol names from ELF, Mach-O and PE/COFF symbol tables."""

__version__ = "0.1.0"

__all__ = [
    "types",
    "filemap",
    "stash",
    "maps",
    "elf",
    "coff",
    "macho",
    "symbols",
    "resolver",
]