"""Read-only memory maps of whole files."""

from __future__ import annotations

import mmap
import os
from typing import Optional, Union


class FileMap:
    """The full contents of a file, mapped read-only into memory."""

    __slots__ = ("_buffer", "_closed")

    def __init__(self, buffer: Union[mmap.mmap, bytes]) -> None:
        self._buffer = buffer
        self._closed = False

    @classmethod
    def open(cls, path: Union[str, os.PathLike]) -> "FileMap":
        """Map the file at ``path``; raises OSError if that is not possible."""
        with open(path, "rb") as file:
            size = os.fstat(file.fileno()).st_size
            if size == 0:
                return cls(b"")
            return cls(mmap.mmap(file.fileno(), size, access=mmap.ACCESS_READ))

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def data(self) -> Union[mmap.mmap, bytes]:
        """The mapped bytes, usable wherever a buffer is accepted."""
        if self._closed:
            raise ValueError("file map is closed")
        return self._buffer

    def close(self) -> None:
        """Release the mapping; further access raises ValueError."""
        if self._closed:
            return
        if isinstance(self._buffer, mmap.mmap):
            self._buffer.close()
        self._buffer = b""
        self._closed = True

    def __len__(self) -> int:
        return len(self.data)

    def __getitem__(self, key):
        return self.data[key]

    def __bytes__(self) -> bytes:
        return bytes(self.data)

    def __enter__(self) -> "FileMap":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def map_file(path: Union[str, os.PathLike]) -> Optional[FileMap]:
    """Map the file at ``path``, or return None if it cannot be opened or mapped."""
    try:
        return FileMap.open(path)
    except (OSError, ValueError):
        return None