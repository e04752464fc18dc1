"""Parsing of the process memory map listing (``/proc/self/maps``)."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Union

_HEX = re.compile(r"\+?[0-9a-fA-F]+")
_USIZE_LIMIT = 1 << 64


class MapsParseError(ValueError):
    """A maps listing or one of its lines could not be parsed."""


def _hex(text: str) -> int:
    if not _HEX.fullmatch(text):
        raise MapsParseError("Couldn't parse hex number")
    value = int(text, 16)
    if value >= _USIZE_LIMIT:
        raise MapsParseError("Couldn't parse hex number")
    return value


@dataclass(frozen=True)
class MapsEntry:
    """One mapped region: address range, permissions, offset, device, inode and path."""

    address: tuple[int, int]
    perms: tuple[str, str, str, str]
    offset: int
    dev: tuple[int, int]
    inode: int
    pathname: str = ""

    @classmethod
    def parse(cls, line: str) -> "MapsEntry":
        """Parse a line of the form ``address perms offset dev inode [pathname]``."""
        parts = iter([part for part in line.split(" ") if part])

        def take(message: str) -> str:
            try:
                return next(parts)
            except StopIteration:
                raise MapsParseError(message) from None

        range_str = take("Couldn't find address")
        perms_str = take("Couldn't find permissions")
        offset_str = take("Couldn't find offset")
        dev_str = take("Couldn't find dev")
        inode_str = take("Couldn't find inode")
        pathname = next(parts, "")

        start, sep, limit = range_str.partition("-")
        if not sep:
            raise MapsParseError("Couldn't parse address range")
        address = (_hex(start), _hex(limit))

        if len(perms_str) < 4:
            raise MapsParseError("insufficient perms")
        if len(perms_str) > 4:
            raise MapsParseError("too many perms")
        perms = tuple(perms_str)

        offset = _hex(offset_str)

        major, sep, minor = dev_str.partition(":")
        if not sep:
            raise MapsParseError("Couldn't parse dev")
        dev = (_hex(major), _hex(minor))

        inode = _hex(inode_str)

        return cls(address, perms, offset, dev, inode, pathname)

    def ip_matches(self, ip: int) -> bool:
        """Whether ``ip`` lies in this entry's half-open address range."""
        start, limit = self.address
        return start <= ip < limit


def parse_maps(path: Union[str, os.PathLike] = "/proc/self/maps") -> list[MapsEntry]:
    """Parse every line of a maps listing."""
    try:
        file = open(path, "r", encoding="utf-8", newline="")
    except OSError:
        raise MapsParseError(f"Couldn't open {os.fspath(path)}") from None
    with file:
        try:
            text = file.read()
        except (OSError, UnicodeDecodeError):
            raise MapsParseError(f"Couldn't read {os.fspath(path)}") from None

    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [MapsEntry.parse(line.removesuffix("\r")) for line in lines]