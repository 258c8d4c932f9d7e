"""
Read-only file systems that import jobs read their source files from.

Invariants:
    - Paths are relative to the file system root; nothing outside the
      root is reachable, whatever ``..`` segments a path carries
    - Files are opened in binary mode; readers decode them
"""

from __future__ import annotations

import logging
import os
from abc import abstractmethod
from pathlib import Path
from typing import BinaryIO, Protocol, runtime_checkable

from ..entity import Provider
from ..errors import InvalidParamError, NotFoundError

logger = logging.getLogger(__name__)


@runtime_checkable
class ReadOnlyFS(Protocol):
    @abstractmethod
    def stat(self, path: str) -> os.stat_result:
        ...

    @abstractmethod
    def read_dir(self, path: str) -> list[str]:
        """Names of the regular files directly under path, sorted."""
        ...

    @abstractmethod
    def open(self, path: str) -> BinaryIO:
        ...


class LocalFS:
    """Read-only view of a local directory.

    Example:
        >>> fs = LocalFS("/data/imports")
        >>> with fs.open("space_1/items.jsonl") as f:
        ...     first = f.readline()
    """

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        full = (self.root / path.lstrip("/")).resolve()
        if full != self.root and self.root not in full.parents:
            raise InvalidParamError(f"path escapes file root: {path}")
        return full

    def stat(self, path: str) -> os.stat_result:
        full = self._resolve(path)
        try:
            return full.stat()
        except FileNotFoundError as e:
            raise NotFoundError(f"file not found: {path}") from e

    def read_dir(self, path: str) -> list[str]:
        full = self._resolve(path)
        if not full.is_dir():
            raise NotFoundError(f"directory not found: {path}")
        return sorted(p.name for p in full.iterdir() if p.is_file())

    def open(self, path: str) -> BinaryIO:
        full = self._resolve(path)
        try:
            return full.open("rb")
        except FileNotFoundError as e:
            raise NotFoundError(f"file not found: {path}") from e
        except IsADirectoryError as e:
            raise InvalidParamError(f"not a file: {path}") from e


class FileSystems:
    """File systems by provider."""

    def __init__(self, systems: dict[Provider, ReadOnlyFS] | None = None) -> None:
        self._systems: dict[Provider, ReadOnlyFS] = dict(systems or {})

    def register(self, provider: Provider, fs: ReadOnlyFS) -> None:
        self._systems[provider] = fs

    def get(self, provider: Provider) -> ReadOnlyFS:
        fs = self._systems.get(provider)
        if fs is None:
            raise InvalidParamError(f"unsupported file provider: {provider.value}")
        return fs
