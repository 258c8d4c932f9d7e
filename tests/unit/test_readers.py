"""
Unit tests for file record readers.

Tests cover:
- CSV headers, BOM handling and string values
- JSONL type preservation, empty lines and seeking
- Parquet rows
- Format detection
- Non-UTF-8 and malformed content reported as decode errors
"""

import io

import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from dbaas.dataset_engine.entity import FileFormat
from dbaas.dataset_engine.fileio import (
    CSVReader,
    FileDecodeError,
    FileReadError,
    JSONLReader,
    ParquetReader,
    open_reader,
)


def read_all(reader):
    records = []
    while True:
        record = reader.next()
        if record is None:
            return records
        records.append(record)


class TestCSVReader:
    """Tests for CSVReader."""

    def test_reads_rows_as_strings(self):
        raw = "\ufeffinput,score\nhello,1\n\"a, b\",2\n".encode("utf-8")
        reader = CSVReader("data.csv", io.BytesIO(raw))
        assert reader.header == ["input", "score"]
        assert read_all(reader) == [{"input": "hello", "score": "1"}, {"input": "a, b", "score": "2"}]
        assert reader.cursor == 2

    def test_seek_skips_rows(self):
        raw = b"n\n1\n2\n3\n"
        reader = CSVReader("data.csv", io.BytesIO(raw))
        reader.seek_to_offset(2)
        assert reader.next() == {"n": "3"}
        assert reader.cursor == 3

    def test_seek_past_end(self):
        reader = CSVReader("data.csv", io.BytesIO(b"n\n1\n"))
        with pytest.raises(FileReadError):
            reader.seek_to_offset(5)
        assert reader.cursor == 1


class TestJSONLReader:
    """Tests for JSONLReader."""

    def test_preserves_json_types(self):
        raw = b'{"id": 12345678901234567, "score": 0.5, "ok": true, "tags": ["a"]}\n'
        record = JSONLReader("data.jsonl", io.BytesIO(raw)).next()
        assert record["id"] == 12345678901234567
        assert isinstance(record["id"], int)
        assert record["score"] == 0.5
        assert record["ok"] is True
        assert record["tags"] == ["a"]

    def test_empty_lines_counted(self):
        raw = b'{"n": 1}\n\n{"n": 2}\n'
        reader = JSONLReader("data.jsonl", io.BytesIO(raw))
        assert reader.next() == {"n": 1}
        assert reader.next() == {"n": 2}
        assert reader.cursor == 3
        assert reader.next() is None

    def test_seek_counts_lines(self):
        raw = "".join(f'{{"n": {i}}}\n' for i in range(10)).encode()
        reader = JSONLReader("data.jsonl", io.BytesIO(raw))
        reader.seek_to_offset(7)
        assert reader.next() == {"n": 7}

    def test_invalid_line_reports_position(self):
        reader = JSONLReader("data.jsonl", io.BytesIO(b'{"n": 1}\nnot json\n{"n": 3}\n'))
        reader.next()
        with pytest.raises(FileReadError, match="data.jsonl:2"):
            reader.next()
        assert reader.next() == {"n": 3}

    def test_non_object_line_rejected(self):
        reader = JSONLReader("data.jsonl", io.BytesIO(b"[1, 2]\n"))
        with pytest.raises(FileReadError):
            reader.next()


class TestParquetReader:
    """Tests for ParquetReader."""

    @pytest.fixture
    def parquet_bytes(self):
        table = pa.table({"input": ["a", "b", "c"], "n": [1, 2, 3]})
        buf = io.BytesIO()
        pq.write_table(table, buf)
        return buf.getvalue()

    def test_reads_rows(self, parquet_bytes):
        reader = ParquetReader("data.parquet", io.BytesIO(parquet_bytes))
        assert read_all(reader) == [
            {"input": "a", "n": 1},
            {"input": "b", "n": 2},
            {"input": "c", "n": 3},
        ]

    def test_seek(self, parquet_bytes):
        reader = ParquetReader("data.parquet", io.BytesIO(parquet_bytes))
        reader.seek_to_offset(2)
        assert reader.next() == {"input": "c", "n": 3}

    def test_not_parquet(self):
        with pytest.raises(FileReadError):
            ParquetReader("data.parquet", io.BytesIO(b"definitely not parquet"))


class TestOpenReader:
    """Tests for open_reader format detection."""

    def test_format_from_extension(self):
        assert isinstance(open_reader("a/B.JSONL", io.BytesIO(b""), None), JSONLReader)
        assert isinstance(open_reader("a/b.csv", io.BytesIO(b"x\n"), None), CSVReader)

    def test_explicit_format_wins(self):
        assert isinstance(open_reader("a/b.txt", io.BytesIO(b""), FileFormat.JSONL), JSONLReader)

    def test_unknown_format(self):
        with pytest.raises(FileReadError):
            open_reader("a/b.txt", io.BytesIO(b""), None)


class TestDecodeErrors:
    """Tests for content that is not valid UTF-8 or not valid for its format."""

    def test_latin1_csv(self):
        raw = "question\ncafé crème\n".encode("latin-1")
        with pytest.raises(FileDecodeError, match="not valid UTF-8"):
            read_all(CSVReader("legacy.csv", io.BytesIO(raw)))

    def test_latin1_jsonl(self):
        raw = '{"question": "café"}\n'.encode("latin-1")
        reader = JSONLReader("legacy.jsonl", io.BytesIO(raw))
        with pytest.raises(FileDecodeError, match="legacy.jsonl is not valid UTF-8"):
            reader.next()

    def test_invalid_json_is_decode_error(self):
        reader = JSONLReader("data.jsonl", io.BytesIO(b"{not json}\n"))
        with pytest.raises(FileDecodeError):
            reader.next()

    def test_unsupported_format_is_not_decode_error(self):
        with pytest.raises(FileReadError) as exc:
            open_reader("notes.txt", io.BytesIO(b"hello"), None)
        assert not isinstance(exc.value, FileDecodeError)
