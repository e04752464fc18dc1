"""A small arena that keeps byte buffers alive for a parsed object."""

from __future__ import annotations

from typing import Any, Optional


class Stash:
    """Holds decompressed sections and one auxiliary file map."""

    def __init__(self) -> None:
        self._buffers: list[bytearray] = []
        self._mmap_aux: Optional[Any] = None

    def allocate(self, size: int) -> bytearray:
        """Return a new zero-filled buffer of ``size`` bytes, kept by the stash."""
        buffer = bytearray(size)
        self._buffers.append(buffer)
        return buffer

    def set_mmap_aux(self, data):
        """Keep ``data`` alive for the stash's lifetime and return it.

        Only one auxiliary map may be stored; a second raises RuntimeError.
        """
        if self._mmap_aux is not None:
            raise RuntimeError("auxiliary map already set")
        self._mmap_aux = data
        return data

    @property
    def mmap_aux(self):
        return self._mmap_aux

    def close(self) -> None:
        """Drop all buffers and close the auxiliary map if it can be closed."""
        aux, self._mmap_aux = self._mmap_aux, None
        close = getattr(aux, "close", None)
        if close is not None:
            close()
        self._buffers.clear()

    def __len__(self) -> int:
        return len(self._buffers)