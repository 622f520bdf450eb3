"""
CSV reading and writing for the Aggregate sync engine.
"""
import csv
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import pandas as pd
from loguru import logger

from ..models.errors import LocalIOError, SchemaError


class CsvRowWriter:
    """
    Streams rows into a CSV file one page at a time.

    The header is written when the file is opened; every ``flush`` pushes the
    rows written so far to disk, so a fatal error later in the run keeps the
    pages already flushed.
    """

    def __init__(self, csv_path: Path, header: Sequence[str], overwrite: bool = False):
        self.csv_path = Path(csv_path)
        self.header = list(header)
        self.overwrite = overwrite
        self.rows_written = 0
        self._file = None
        self._writer = None

    def open(self) -> 'CsvRowWriter':
        """
        Create (or truncate) the output file and write the header.

        Raises:
            LocalIOError: The file exists and overwrite is off, or it cannot be created
        """
        if self.csv_path.exists() and not self.overwrite:
            raise LocalIOError(f"Output file already exists (set overwrite to replace it): {self.csv_path}")

        try:
            self.csv_path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.csv_path, 'w', newline='', encoding='utf-8')
            self._writer = csv.writer(self._file, quoting=csv.QUOTE_MINIMAL)
            self._writer.writerow(self.header)
        except OSError as e:
            self.close()
            raise LocalIOError(f"Cannot open output file {self.csv_path}: {e}") from e

        logger.debug(f"Opened CSV writer for {self.csv_path} with {len(self.header)} columns")
        return self

    def write_row(self, cells: Sequence[str]) -> None:
        if self._writer is None:
            raise LocalIOError(f"CSV writer for {self.csv_path} is not open")
        if len(cells) != len(self.header):
            raise ValueError(f"Row has {len(cells)} cells, header has {len(self.header)}")

        try:
            self._writer.writerow(cells)
        except OSError as e:
            raise LocalIOError(f"Cannot write to {self.csv_path}: {e}") from e
        self.rows_written += 1

    def flush(self) -> None:
        if self._file is None:
            return
        try:
            self._file.flush()
        except OSError as e:
            raise LocalIOError(f"Cannot flush {self.csv_path}: {e}") from e

    def close(self) -> None:
        if self._file is not None:
            try:
                self._file.close()
            except OSError as e:
                raise LocalIOError(f"Cannot close {self.csv_path}: {e}") from e
            finally:
                self._file = None
                self._writer = None

    def __enter__(self) -> 'CsvRowWriter':
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class CSVProcessor:
    """Handles CSV output writers and chunked CSV input for uploads."""

    def open_writer(self, csv_path: Path, header: Sequence[str], overwrite: bool = False) -> CsvRowWriter:
        return CsvRowWriter(csv_path, header, overwrite=overwrite)

    def read_header(self, csv_path: Path) -> List[str]:
        """
        Read the header row of a CSV file.

        Raises:
            LocalIOError: File missing or unreadable
            SchemaError: File is empty or the header repeats a column
        """
        csv_path = Path(csv_path)
        if not csv_path.is_file():
            raise LocalIOError(f"CSV file not found: {csv_path}")

        try:
            with open(csv_path, 'r', newline='', encoding='utf-8-sig') as csvfile:
                header = next(csv.reader(csvfile), None)
        except (OSError, UnicodeDecodeError) as e:
            raise LocalIOError(f"Cannot read CSV file {csv_path}: {e}") from e

        if not header:
            raise SchemaError(f"CSV file has no header row: {csv_path}")

        duplicates = sorted({name for name in header if header.count(name) > 1})
        if duplicates:
            raise SchemaError(f"CSV header repeats columns {duplicates}: {csv_path}")
        return header

    def validate_csv_format(self, csv_path: Path, required_columns: Iterable[str]) -> List[str]:
        """
        Check that a CSV file carries every required column.

        Returns:
            The missing column names (empty when the file is usable)
        """
        header = set(self.read_header(csv_path))
        return [name for name in required_columns if name not in header]

    def iter_record_batches(self, csv_path: Path, batch_size: int) -> Iterator[List[Dict[str, Any]]]:
        """
        Yield the CSV's records in batches of at most ``batch_size``.

        Every cell is read as text; empty cells stay empty strings.
        """
        try:
            with pd.read_csv(
                csv_path,
                dtype=str,
                keep_default_na=False,
                na_filter=False,
                encoding='utf-8-sig',
                chunksize=batch_size
            ) as reader:
                for chunk in reader:
                    if chunk.empty:
                        continue
                    yield chunk.to_dict('records')
        except pd.errors.EmptyDataError:
            return
        except (OSError, UnicodeDecodeError) as e:
            raise LocalIOError(f"Cannot read CSV file {csv_path}: {e}") from e
        except pd.errors.ParserError as e:
            raise SchemaError(f"Malformed CSV file {csv_path}: {e}") from e

    @staticmethod
    def count_data_lines(csv_path: Path) -> Optional[int]:
        """Number of records in a CSV file, or None if it cannot be read."""
        try:
            with open(csv_path, 'r', newline='', encoding='utf-8-sig') as csvfile:
                return max(sum(1 for _ in csv.reader(csvfile)) - 1, 0)
        except (OSError, UnicodeDecodeError, csv.Error):
            return None
