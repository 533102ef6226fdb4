"""File systems for serving files, optionally without directory listings."""

from __future__ import annotations

import os
import posixpath
import stat as _stat
from typing import Any, BinaryIO, Optional


class _OpenedFile:
    """A file or directory opened from a :class:`Directory`."""

    def __init__(self, path: str):
        self.path = path
        self._info = os.stat(path)
        self._handle: Optional[BinaryIO] = None
        self._entries: Optional[list[os.DirEntry]] = None
        if not self.is_dir:
            self._handle = open(path, "rb")

    @property
    def is_dir(self) -> bool:
        return _stat.S_ISDIR(self._info.st_mode)

    def stat(self) -> os.stat_result:
        return self._info

    def read(self, size: int = -1) -> bytes:
        if self._handle is None:
            raise IsADirectoryError(f"is a directory: {self.path}")
        return self._handle.read(size)

    def readdir(self, count: int) -> list[os.DirEntry]:
        """Return up to ``count`` entries, or all remaining when ``count <= 0``."""
        if not self.is_dir:
            raise NotADirectoryError(f"not a directory: {self.path}")
        if self._entries is None:
            with os.scandir(self.path) as entries:
                self._entries = sorted(entries, key=lambda entry: entry.name)
        if count <= 0:
            batch, self._entries = self._entries, []
            return batch
        if not self._entries:
            raise EOFError("no more directory entries")
        batch, self._entries = self._entries[:count], self._entries[count:]
        return batch

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()

    def __enter__(self) -> "_OpenedFile":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class Directory:
    """A file system rooted at a directory of the local disk."""

    def __init__(self, root: str):
        self.root = root

    def open(self, name: str) -> _OpenedFile:
        """Open ``name``, a slash-separated path that cannot leave the root."""
        if "\x00" in name or (os.sep != "/" and os.sep in name):
            raise ValueError("invalid character in file path")
        cleaned = posixpath.normpath("/" + name.lstrip("/")).lstrip("/")
        root = self.root or "."
        full = os.path.join(root, *cleaned.split("/")) if cleaned else root
        return _OpenedFile(full)


class NeuteredReaddirFile:
    """A file whose directory listing is always empty."""

    def __init__(self, file: Any):
        self._file = file

    @property
    def is_dir(self) -> bool:
        return self._file.is_dir

    def stat(self) -> os.stat_result:
        return self._file.stat()

    def read(self, size: int = -1) -> bytes:
        return self._file.read(size)

    def readdir(self, count: int) -> list:
        """Return no entries for a directory, which disables directory listings."""
        if not self._file.is_dir:
            raise NotADirectoryError(f"not a directory: {getattr(self._file, 'path', '')}")
        hidden: list = []
        return hidden

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> "NeuteredReaddirFile":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class OnlyFilesFS:
    """A file system that hides directory contents."""

    def __init__(self, fs: Any):
        self.fs = fs

    def open(self, name: str) -> NeuteredReaddirFile:
        return NeuteredReaddirFile(self.fs.open(name))


def directory(root: str, list_directory: bool) -> Directory | OnlyFilesFS:
    """Return a file system for ``root``, listing directories only if asked."""
    fs = Directory(root)
    if list_directory:
        return fs
    return OnlyFilesFS(fs)