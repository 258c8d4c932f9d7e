"""
Format-aware record readers over binary file streams.

Every reader yields one record per call to ``next()`` as a dict of native
JSON values and returns None at end of file. ``cursor`` counts the
physical records consumed so far: data rows for CSV and Parquet, lines
for JSONL (empty lines included). Import progress is stored in cursor
units, so ``seek_to_offset(cursor)`` resumes where a previous run left
off.

Invariants:
    - JSONL integers stay ints, never floats
    - CSV values are always strings; a UTF-8 BOM is skipped
    - seek_to_offset past the end raises and leaves the cursor at the end
    - Content errors, including non-UTF-8 text, raise FileDecodeError
"""

from __future__ import annotations

import csv
import io
import json
import logging
from abc import abstractmethod
from typing import Any, BinaryIO, Iterator, Protocol, runtime_checkable

import pyarrow.parquet as pq

from ..entity import FileFormat

logger = logging.getLogger(__name__)

Record = dict[str, Any]


class FileReadError(Exception):
    """A file could not be read or a record could not be decoded."""


class FileDecodeError(FileReadError):
    """File content is not valid for its format or is not UTF-8 text."""


def _not_utf8(name: str, where: str, e: UnicodeDecodeError) -> FileDecodeError:
    return FileDecodeError(f"{name} is not valid UTF-8 text {where}: {e.reason}")


@runtime_checkable
class RecordReader(Protocol):
    name: str

    @property
    @abstractmethod
    def cursor(self) -> int:
        ...

    @abstractmethod
    def next(self) -> Record | None:
        """Read the next record, or None at end of file.

        Raises:
            FileReadError: If the record cannot be decoded
        """
        ...

    @abstractmethod
    def seek_to_offset(self, offset: int) -> None:
        """Skip forward until cursor == offset.

        Raises:
            FileReadError: If the file ends first
        """
        ...

    @abstractmethod
    def close(self) -> None:
        ...


class _BaseReader:
    def __init__(self, name: str, stream: BinaryIO) -> None:
        self.name = name
        self._stream = stream
        self._cursor = 0

    @property
    def cursor(self) -> int:
        return self._cursor

    def seek_to_offset(self, offset: int) -> None:
        while self._cursor < offset:
            if not self._skip():
                raise FileReadError(
                    f"cannot seek {self.name} to {offset}, file ends at {self._cursor}"
                )

    def _skip(self) -> bool:
        return self.next() is not None

    def close(self) -> None:
        self._stream.close()

    def __enter__(self) -> _BaseReader:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class CSVReader(_BaseReader):
    """CSV with a header row. Quoting is lenient about stray quotes."""

    def __init__(self, name: str, stream: BinaryIO) -> None:
        super().__init__(name, stream)
        self._text = io.TextIOWrapper(stream, encoding="utf-8-sig", newline="")
        self._rows = csv.reader(self._text, strict=False, skipinitialspace=False)
        try:
            self._header = next(self._rows, [])
        except UnicodeDecodeError as e:
            raise _not_utf8(self.name, "in the header", e) from e
        except csv.Error as e:
            raise FileDecodeError(f"failed to read csv header of {self.name}: {e}") from e

    @property
    def header(self) -> list[str]:
        return list(self._header)

    def next(self) -> Record | None:
        try:
            row = next(self._rows, None)
        except UnicodeDecodeError as e:
            raise _not_utf8(self.name, f"after row {self._cursor}", e) from e
        except csv.Error as e:
            raise FileDecodeError(f"failed to read {self.name} after row {self._cursor}: {e}") from e
        if row is None:
            return None
        self._cursor += 1
        return {col: value for col, value in zip(self._header, row)}

    def close(self) -> None:
        self._text.close()


class JSONLReader(_BaseReader):
    """One JSON object per line. Empty lines are skipped but counted."""

    def __init__(self, name: str, stream: BinaryIO) -> None:
        super().__init__(name, stream)
        self._text = io.TextIOWrapper(stream, encoding="utf-8-sig")

    def next(self) -> Record | None:
        while True:
            line = self._readline()
            if line == "":
                return None
            self._cursor += 1
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except ValueError as e:
                raise FileDecodeError(f"invalid json at {self.name}:{self._cursor}: {e}") from e
            if not isinstance(record, dict):
                raise FileDecodeError(f"line {self._cursor} of {self.name} is not a json object")
            return record

    def _skip(self) -> bool:
        # Seeking does not decode, so a bad line is only reported when read.
        if self._readline() == "":
            return False
        self._cursor += 1
        return True

    def _readline(self) -> str:
        try:
            return self._text.readline()
        except UnicodeDecodeError as e:
            raise _not_utf8(self.name, f"after line {self._cursor}", e) from e

    def close(self) -> None:
        self._text.close()


class ParquetReader(_BaseReader):
    """Parquet rows, read in batches."""

    BATCH_SIZE = 1024

    def __init__(self, name: str, stream: BinaryIO) -> None:
        super().__init__(name, stream)
        try:
            self._file = pq.ParquetFile(stream)
        except (OSError, ValueError) as e:
            raise FileReadError(f"failed to open parquet file {self.name}: {e}") from e
        self._rows = self._iter_rows()

    def _iter_rows(self) -> Iterator[Record]:
        for batch in self._file.iter_batches(batch_size=self.BATCH_SIZE):
            yield from batch.to_pylist()

    def next(self) -> Record | None:
        try:
            row = next(self._rows, None)
        except (OSError, ValueError) as e:
            raise FileReadError(f"failed to read {self.name} after row {self._cursor}: {e}") from e
        if row is None:
            return None
        self._cursor += 1
        return row


def open_reader(name: str, stream: BinaryIO, fmt: FileFormat | None) -> RecordReader:
    """Open a reader for stream; the format falls back to the file extension.

    Raises:
        FileReadError: If the format is unknown or the file cannot be opened
    """
    fmt = fmt or FileFormat.from_path(name)
    if fmt == FileFormat.CSV:
        return CSVReader(name, stream)
    if fmt == FileFormat.JSONL:
        return JSONLReader(name, stream)
    if fmt == FileFormat.PARQUET:
        return ParquetReader(name, stream)
    raise FileReadError(f"unsupported file format of {name}")
