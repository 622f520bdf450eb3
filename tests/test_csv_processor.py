"""
Tests for CSVProcessor and CsvRowWriter.
"""
import csv

import pytest

from suitcase_sync.models.errors import LocalIOError, SchemaError
from suitcase_sync.services.csv_processor import CSVProcessor, CsvRowWriter

HEADER = ["_id", "name", "notes", "_row_etag"]


def read_rows(path):
    with open(path, newline='', encoding='utf-8') as f:
        return list(csv.reader(f))


class TestCsvRowWriter:
    """Test cases for the streaming CSV writer."""

    def test_writes_header_and_rows(self, tmp_path):
        path = tmp_path / "out" / "data.csv"

        with CsvRowWriter(path, HEADER) as writer:
            writer.write_row(["r1", "Ada", "plain", "e1"])
            writer.write_row(["r2", "Bob", 'says "hi", twice\nthen leaves', "e2"])

        assert writer.rows_written == 2
        rows = read_rows(path)
        assert rows[0] == HEADER
        assert rows[2][2] == 'says "hi", twice\nthen leaves'
        assert len(rows) == 3

    def test_flush_makes_rows_visible(self, tmp_path):
        path = tmp_path / "data.csv"
        writer = CsvRowWriter(path, HEADER).open()
        try:
            writer.write_row(["r1", "Ada", "", "e1"])
            writer.flush()
            assert len(read_rows(path)) == 2
        finally:
            writer.close()

    def test_existing_file_needs_overwrite(self, tmp_path):
        path = tmp_path / "data.csv"
        path.write_text("old\n", encoding="utf-8")

        with pytest.raises(LocalIOError, match="already exists"):
            CsvRowWriter(path, HEADER).open()
        assert path.read_text(encoding="utf-8") == "old\n"

        with CsvRowWriter(path, HEADER, overwrite=True):
            pass
        assert read_rows(path) == [HEADER]

    def test_cell_count_must_match_header(self, tmp_path):
        with CsvRowWriter(tmp_path / "data.csv", HEADER) as writer:
            with pytest.raises(ValueError):
                writer.write_row(["r1"])

    def test_write_before_open_fails(self, tmp_path):
        with pytest.raises(LocalIOError, match="not open"):
            CsvRowWriter(tmp_path / "data.csv", HEADER).write_row(["a", "b", "c", "d"])

    def test_unwritable_location(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("", encoding="utf-8")

        with pytest.raises(LocalIOError, match="Cannot open"):
            CsvRowWriter(blocker / "data.csv", HEADER).open()


class TestCSVProcessor:
    """Test cases for reading upload input."""

    @pytest.fixture(autouse=True)
    def setup_processor(self, tmp_path):
        self.processor = CSVProcessor()
        self.tmp_path = tmp_path

    def write_csv(self, text, name="input.csv", encoding="utf-8"):
        path = self.tmp_path / name
        path.write_text(text, encoding=encoding)
        return path

    def test_read_header(self):
        path = self.write_csv("_id,name,_row_etag\nr1,Ada,e1\n")
        assert self.processor.read_header(path) == ["_id", "name", "_row_etag"]

    def test_read_header_strips_bom(self):
        path = self.write_csv("_id,name\nr1,Ada\n", encoding="utf-8-sig")
        assert self.processor.read_header(path) == ["_id", "name"]

    def test_read_header_missing_file(self):
        with pytest.raises(LocalIOError, match="not found"):
            self.processor.read_header(self.tmp_path / "absent.csv")

    def test_read_header_empty_file(self):
        with pytest.raises(SchemaError, match="no header"):
            self.processor.read_header(self.write_csv(""))

    def test_read_header_duplicate_columns(self):
        with pytest.raises(SchemaError, match="repeats"):
            self.processor.read_header(self.write_csv("_id,name,name\n"))

    def test_validate_csv_format(self):
        path = self.write_csv("_id,name\n")

        assert self.processor.validate_csv_format(path, ["_id", "name"]) == []
        assert self.processor.validate_csv_format(path, ["_id", "age", "name"]) == ["age"]

    def test_iter_record_batches(self):
        path = self.write_csv("_id,name,age\nr1,Ada,036\nr2,,40\nr3,Cy,NA\n")

        batches = list(self.processor.iter_record_batches(path, batch_size=2))

        assert [len(batch) for batch in batches] == [2, 1]
        assert batches[0][0] == {"_id": "r1", "name": "Ada", "age": "036"}
        assert batches[0][1]["name"] == ""
        assert batches[1][0]["age"] == "NA"

    def test_iter_record_batches_header_only(self):
        path = self.write_csv("_id,name\n")
        assert list(self.processor.iter_record_batches(path, batch_size=10)) == []

    def test_count_data_lines(self):
        path = self.write_csv('_id,notes\nr1,"two\nlines"\nr2,x\n')

        assert CSVProcessor.count_data_lines(path) == 2
        assert CSVProcessor.count_data_lines(self.tmp_path / "absent.csv") is None
