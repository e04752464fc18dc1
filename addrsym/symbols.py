"""Resolved symbols and their names, with Rust legacy demangling."""

from __future__ import annotations

import os
import string
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .types import BytesOrWideString

_HEX_DIGITS = frozenset(string.hexdigits)

_ESCAPES = {
    "SP": "@",
    "BP": "*",
    "RF": "&",
    "LT": "<",
    "GT": ">",
    "LP": "(",
    "RP": ")",
    "C": ",",
}


def adjust_ip(addr: Optional[int]) -> Optional[int]:
    """Step a return address back by one so it points into the call instruction.

    A null (zero) or missing address is returned unchanged.
    """
    if not addr:
        return addr
    return addr - 1


def format_symbol_name(data: bytes) -> str:
    """Decode raw symbol bytes, replacing each invalid UTF-8 sequence with U+FFFD."""
    return bytes(data).decode("utf-8", errors="replace")


@dataclass(frozen=True)
class _Demangled:
    elements: tuple[str, ...]
    suffix: str

    def render(self, alternate: bool) -> str:
        pieces = []
        last = len(self.elements) - 1
        for i, element in enumerate(self.elements):
            if alternate and i == last and i > 0 and _is_rust_hash(element):
                break
            if i > 0:
                pieces.append("::")
            pieces.append(_decode_element(element))
        pieces.append(self.suffix)
        return "".join(pieces)


def _is_rust_hash(element: str) -> bool:
    return element.startswith("h") and all(c in _HEX_DIGITS for c in element[1:])


def _decode_element(element: str) -> str:
    rest = element[1:] if element.startswith("_$") else element
    out = []
    while rest:
        if rest.startswith("."):
            if rest.startswith(".."):
                out.append("::")
                rest = rest[2:]
            else:
                out.append(".")
                rest = rest[1:]
        elif rest.startswith("$"):
            end = rest.find("$", 1)
            if end < 0:
                break
            decoded = _decode_escape(rest[1:end])
            if decoded is None:
                break
            out.append(decoded)
            rest = rest[end + 1:]
        else:
            stops = [i for i in (rest.find("."), rest.find("$")) if i >= 0]
            end = min(stops) if stops else len(rest)
            out.append(rest[:end])
            rest = rest[end:]
    out.append(rest)
    return "".join(out)


def _decode_escape(escape: str) -> Optional[str]:
    if escape in _ESCAPES:
        return _ESCAPES[escape]
    if escape.startswith("u") and len(escape) > 1 and all(c in _HEX_DIGITS for c in escape[1:]):
        code = int(escape[1:], 16)
        if code > 0x10FFFF or 0xD800 <= code <= 0xDFFF:
            return None
        char = chr(code)
        if char.isprintable() or char == " ":
            return char
    return None


def _try_demangle(text: str) -> Optional[_Demangled]:
    for prefix in ("_ZN", "ZN", "__ZN"):
        if text.startswith(prefix):
            inner = text[len(prefix):]
            break
    else:
        return None
    if not inner.isascii():
        return None

    elements = []
    pos = 0
    while pos < len(inner) and inner[pos] != "E":
        start = pos
        while pos < len(inner) and inner[pos].isdigit():
            pos += 1
        if pos == start:
            return None
        length = int(inner[start:pos])
        if pos + length > len(inner):
            return None
        elements.append(inner[pos:pos + length])
        pos += length
    if pos >= len(inner) or not elements:
        return None

    suffix = inner[pos + 1:]
    if suffix and not suffix.startswith("."):
        return None
    return _Demangled(tuple(elements), suffix)


class SymbolName:
    """A symbol name: raw bytes plus its demangled form when it is a Rust symbol.

    ``str()`` gives the demangled name (with hash); ``format(name, "#")``
    leaves out the trailing hash.
    """

    __slots__ = ("_bytes", "_text", "_demangled")

    def __init__(self, data: bytes) -> None:
        self._bytes = bytes(data)
        try:
            self._text: Optional[str] = self._bytes.decode("utf-8")
        except UnicodeDecodeError:
            self._text = None
        self._demangled = _try_demangle(self._text) if self._text is not None else None

    @property
    def is_demangled(self) -> bool:
        return self._demangled is not None

    def as_str(self) -> Optional[str]:
        """The raw (mangled) name as text, or None if it is not valid UTF-8."""
        return self._text

    def as_bytes(self) -> bytes:
        """The raw name bytes."""
        return self._bytes

    def _render(self, alternate: bool) -> str:
        if self._demangled is not None:
            return self._demangled.render(alternate)
        return format_symbol_name(self._bytes)

    def __str__(self) -> str:
        return self._render(False)

    def __format__(self, spec: str) -> str:
        if spec == "#":
            return self._render(True)
        return format(self._render(False), spec)

    def __repr__(self) -> str:
        if self._demangled is not None:
            return self._demangled.render(False)
        return repr(format_symbol_name(self._bytes))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SymbolName):
            return self._bytes == other._bytes
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._bytes)


@dataclass(frozen=True)
class Symbol:
    """What is known about the code at an address; any part may be missing."""

    name_bytes: Optional[bytes] = None
    addr: Optional[int] = None
    filename_bytes: Optional[bytes] = None
    lineno: Optional[int] = None
    colno: Optional[int] = None

    @property
    def name(self) -> Optional[SymbolName]:
        """The function name, if known."""
        if self.name_bytes is None:
            return None
        return SymbolName(self.name_bytes)

    def filename_raw(self) -> Optional[BytesOrWideString]:
        """The raw file name, if known."""
        if self.filename_bytes is None:
            return None
        return BytesOrWideString.from_bytes(self.filename_bytes)

    @property
    def filename(self) -> Optional[Path]:
        """The source file as a path, if known."""
        if self.filename_bytes is None:
            return None
        return Path(os.fsdecode(self.filename_bytes))

    def __repr__(self) -> str:
        fields = []
        name = self.name
        if name is not None:
            fields.append(f"name: {name!r}")
        if self.addr is not None:
            fields.append(f"addr: {self.addr:#x}")
        filename = self.filename
        if filename is not None:
            fields.append(f"filename: {str(filename)!r}")
        if self.lineno is not None:
            fields.append(f"lineno: {self.lineno}")
        return "Symbol { " + ", ".join(fields) + " }" if fields else "Symbol"