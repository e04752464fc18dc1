"""A string that is either raw bytes or UTF-16 code units."""

from __future__ import annotations

import enum
import os
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Union


class StringKind(enum.Enum):
    """Which representation a :class:`BytesOrWideString` holds."""

    BYTES = "bytes"
    WIDE = "wide"


@dataclass(frozen=True)
class BytesOrWideString:
    """Either a byte string (typical on Unix) or wide UTF-16 units (Windows)."""

    kind: StringKind
    data: Union[bytes, tuple[int, ...]]

    @classmethod
    def from_bytes(cls, data: bytes) -> "BytesOrWideString":
        """Wrap a byte string."""
        return cls(StringKind.BYTES, bytes(data))

    @classmethod
    def from_wide(cls, units: Iterable[int]) -> "BytesOrWideString":
        """Wrap a sequence of UTF-16 code units."""
        units = tuple(units)
        for unit in units:
            if not 0 <= unit <= 0xFFFF:
                raise ValueError(f"not a UTF-16 code unit: {unit!r}")
        return cls(StringKind.WIDE, units)

    def _wide_bytes(self) -> bytes:
        return struct.pack(f"<{len(self.data)}H", *self.data)

    def to_str_lossy(self) -> str:
        """Decode to text, replacing invalid sequences with U+FFFD."""
        if self.kind is StringKind.BYTES:
            return self.data.decode("utf-8", errors="replace")
        return self._wide_bytes().decode("utf-16-le", errors="replace")

    def into_path(self) -> Path:
        """Return the string as a filesystem path.

        Raises ValueError when the representation cannot form a path on
        this platform.
        """
        if self.kind is StringKind.BYTES and os.name != "nt":
            return Path(os.fsdecode(self.data))
        if self.kind is StringKind.WIDE and os.name == "nt":
            return Path(self._wide_bytes().decode("utf-16-le", errors="surrogatepass"))
        if self.kind is StringKind.BYTES:
            try:
                return Path(self.data.decode("utf-8"))
            except UnicodeDecodeError:
                pass
        raise ValueError(f"cannot form a path from a {self.kind.value} string on this platform")

    def __str__(self) -> str:
        return self.to_str_lossy()