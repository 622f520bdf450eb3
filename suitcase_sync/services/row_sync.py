"""
Row synchronization engine: download, upload and reset for one table.
"""
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from ..clients.server_session import ServerSession
from ..models.config import CsvConfig, SyncSettings
from ..models.data_models import FlatColumn, RowPage, SyncResult, SyncStats, TableSchema, TaskStatus
from ..models.errors import AttachmentError, LocalIOError, SchemaError, SyncError
from .attachment_manager import AttachmentCoordinator, TransferCounts
from .csv_processor import CSVProcessor, CsvRowWriter
from .schema_mapper import SchemaMapper
from .version_gate import VersionGate

ProgressCallback = Callable[[SyncResult], None]


class EngineState(str, Enum):
    INIT = "init"
    SCHEMA_FETCHED = "schema_fetched"
    PAGING = "paging"
    FLUSHING = "flushing"
    DONE = "done"
    FAILED = "failed"


class CancellationToken:
    """Cooperative cancellation flag, checked between pages and batches."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class RowSyncEngine:
    """
    Moves the rows of one table between the server and a local CSV file.

    Download walks INIT -> SCHEMA_FETCHED -> PAGING -> FLUSHING -> DONE, or
    FAILED on a fatal error. Upload and reset follow the same states and pass
    the version gate before anything is sent.
    """

    def __init__(self, session: ServerSession, settings: Optional[SyncSettings] = None,
                 mapper: Optional[SchemaMapper] = None, csv_processor: Optional[CSVProcessor] = None,
                 version_gate: Optional[VersionGate] = None):
        """
        Initialize the engine with a server session and its collaborators.

        Args:
            session: Session for the server holding the table
            settings: Page/batch sizes and worker counts (defaults when omitted)
            mapper: Schema mapper (defaults to SchemaMapper())
            csv_processor: CSV reader/writer factory (defaults to CSVProcessor())
            version_gate: Data-version gate for writes (defaults to VersionGate())
        """
        self.session = session
        self.settings = settings or SyncSettings()
        self.mapper = mapper or SchemaMapper()
        self.csv_processor = csv_processor or CSVProcessor()
        self.version_gate = version_gate or VersionGate()
        self.state = EngineState.INIT

    def _transition(self, state: EngineState) -> None:
        logger.debug(f"Engine state {self.state.value} -> {state.value}")
        self.state = state

    @staticmethod
    def _cancelled(token: Optional[CancellationToken]) -> bool:
        return token is not None and token.cancelled

    @staticmethod
    def _report(stats: SyncStats, on_progress: Optional[ProgressCallback]) -> None:
        if on_progress is not None:
            on_progress(stats.snapshot())

    def table_dir(self, output_dir: Path, table_id: str) -> Path:
        """Directory holding a table's CSV and its instances/ tree."""
        return Path(output_dir) / self.session.connection.app_id / table_id

    def csv_path(self, output_dir: Path, table_id: str, config: CsvConfig) -> Path:
        return self.table_dir(output_dir, table_id) / config.csv_file_name

    def download(self, table_id: str, config: CsvConfig, output_dir: Path, overwrite: bool = False,
                 refetch_attachments: bool = False,
                 cancel_token: Optional[CancellationToken] = None,
                 on_progress: Optional[ProgressCallback] = None) -> SyncResult:
        """
        Download every row of a table into a CSV file (and attachments, if configured).

        Args:
            table_id: Table to download
            config: CSV layout options
            output_dir: Root download directory
            overwrite: Replace an existing CSV instead of failing with LocalIOError
            refetch_attachments: Download attachments even when the local copy is current
            cancel_token: Checked before the next page is requested
            on_progress: Called with cumulative counts after every page

        Returns:
            SyncResult with status COMPLETED or CANCELLED

        Raises:
            SyncError: Any fatal error; pages already flushed stay on disk
        """
        self.state = EngineState.INIT
        stats = SyncStats()
        status = TaskStatus.COMPLETED
        csv_path = self.csv_path(output_dir, table_id, config)
        logger.info(f"Starting download of table {table_id} to {csv_path}")

        try:
            if self._cancelled(cancel_token):
                logger.info(f"Download of {table_id} cancelled before start")
                return stats.to_result(TaskStatus.CANCELLED)

            schema = self.session.fetch_schema(table_id)
            self._transition(EngineState.SCHEMA_FETCHED)

            columns = self.mapper.flatten(schema, config)
            table_dir = csv_path.parent
            attachments = AttachmentCoordinator(
                self.session, table_id, max_workers=self.settings.attachment_workers,
                refetch=refetch_attachments
            )

            with self.csv_processor.open_writer(csv_path, self.mapper.column_names(columns), overwrite=overwrite) as writer:
                self._transition(EngineState.PAGING)

                for page in self.session.iter_row_pages(table_id, fetch_limit=self.settings.page_size):
                    self._download_page(page, columns, config, table_dir, attachments, writer, stats)
                    writer.flush()
                    logger.info(f"Flushed page of {len(page.rows)} rows "
                                f"({stats.rows_processed} total) for {table_id}")
                    self._report(stats, on_progress)

                    if page.next_cursor is not None and self._cancelled(cancel_token):
                        logger.info(f"Download of {table_id} cancelled after {stats.rows_processed} rows")
                        status = TaskStatus.CANCELLED
                        break

                self._transition(EngineState.FLUSHING)

        except SyncError as e:
            self._transition(EngineState.FAILED)
            logger.error(f"Download of {table_id} failed: {e.message} "
                         f"({stats.rows_processed} rows already written)")
            raise

        self._transition(EngineState.DONE)
        result = stats.to_result(status)
        logger.info(f"Download of {table_id} finished - Rows: {result.rows_processed}, "
                    f"Attachments fetched: {result.attachments_fetched}, "
                    f"failed: {result.attachments_failed}, errors: {len(result.errors)}")
        return result

    def _download_page(self, page: RowPage, columns: List[FlatColumn], config: CsvConfig, table_dir: Path,
                       attachments: AttachmentCoordinator, writer: CsvRowWriter, stats: SyncStats) -> None:
        stats.errors.extend(page.rejected)

        refs = []
        for row in page.rows:
            try:
                refs.extend(attachments.resolve(row, config, table_dir))
            except AttachmentError as e:
                logger.warning(f"Row {row.row_id}: {e.message}")
                stats.record_exception(e)

        # every transfer for this page completes before its rows are written
        self._add_transfers(stats, attachments.fetch_all(refs, table_dir))

        for row in page.rows:
            writer.write_row(self.mapper.map_row(row, columns, config))
            stats.rows_processed += 1

    @staticmethod
    def _add_transfers(stats: SyncStats, counts: TransferCounts) -> None:
        stats.attachments_fetched += counts.fetched
        stats.attachments_failed += counts.failed
        stats.attachments_skipped += counts.skipped
        stats.errors.extend(counts.errors)

    def resolve_upload_path(self, input_path: Path, table_id: str) -> Path:
        """
        Find the CSV to upload: the path itself, or <dir>/<table_id>.csv.

        Raises:
            LocalIOError: No such file
        """
        path = Path(input_path)
        if path.is_dir():
            path = path / f"{table_id}.csv"
        if not path.is_file():
            raise LocalIOError(f"Upload file not found: {path}")
        return path

    def upload(self, table_id: str, input_path: Path, data_version: Any,
               cancel_token: Optional[CancellationToken] = None,
               on_progress: Optional[ProgressCallback] = None) -> SyncResult:
        """
        Upload a local CSV back to the server in bounded batches.

        Nothing is posted unless the version gate approves data_version and
        the CSV header covers every data column of the server schema.

        Returns:
            SyncResult with per-row failures in errors

        Raises:
            VersionConflictError: data_version missing or stale
            SchemaError: CSV does not match the server schema
            SyncError: Any other fatal error
        """
        self.state = EngineState.INIT
        stats = SyncStats()
        status = TaskStatus.COMPLETED

        try:
            csv_path = self.resolve_upload_path(input_path, table_id)
            logger.info(f"Starting upload of {csv_path} to table {table_id}")

            if self._cancelled(cancel_token):
                logger.info(f"Upload to {table_id} cancelled before start")
                return stats.to_result(TaskStatus.CANCELLED)

            schema = self.session.fetch_schema(table_id)
            self._transition(EngineState.SCHEMA_FETCHED)
            approved_version = self.version_gate.check(data_version, schema.data_version)

            columns = self._upload_columns(schema, csv_path)
            attachments = AttachmentCoordinator(
                self.session, table_id, max_workers=self.settings.attachment_workers
            )
            total = self.csv_processor.count_data_lines(csv_path)
            logger.info(f"Uploading {total if total is not None else 'unknown number of'} rows "
                        f"in batches of {self.settings.upload_batch_size}")

            self._transition(EngineState.PAGING)
            for batch in self.csv_processor.iter_record_batches(csv_path, self.settings.upload_batch_size):
                if self._cancelled(cancel_token):
                    logger.info(f"Upload to {table_id} cancelled after {stats.rows_processed} rows")
                    status = TaskStatus.CANCELLED
                    break

                payloads = [self.mapper.unmap_row(record, columns) for record in batch]
                outcomes = self.session.post_rows(table_id, payloads, approved_version)
                for row_id in self._apply_outcomes(payloads, outcomes, stats):
                    self._add_transfers(stats, attachments.push_row_files(row_id, csv_path.parent))
                self._report(stats, on_progress)

            self._transition(EngineState.FLUSHING)

        except SyncError as e:
            self._transition(EngineState.FAILED)
            logger.error(f"Upload to {table_id} failed: {e.message} "
                         f"({stats.rows_processed} rows already accepted)")
            raise

        self._transition(EngineState.DONE)
        result = stats.to_result(status)
        logger.info(f"Upload to {table_id} finished - Rows accepted: {result.rows_processed}, "
                    f"errors: {len(result.errors)}")
        return result

    def _upload_columns(self, schema: TableSchema, csv_path: Path) -> List[FlatColumn]:
        columns = self.mapper.flatten(schema, CsvConfig())
        data_names = [column.name for column in columns if not column.is_metadata]

        missing = self.csv_processor.validate_csv_format(csv_path, data_names)
        if missing:
            raise SchemaError(f"{csv_path} is missing columns of table {schema.table_id}: {missing}")

        known = set(self.mapper.column_names(self.mapper.flatten(schema, CsvConfig(extra_metadata=True))))
        unknown = [name for name in self.csv_processor.read_header(csv_path) if name not in known]
        if unknown:
            logger.warning(f"Ignoring columns not in the table schema: {unknown}")
        return columns

    @staticmethod
    def _apply_outcomes(payloads: List[Dict[str, Any]], outcomes: List[Dict[str, Any]],
                        stats: SyncStats) -> List[str]:
        by_id = {str(outcome.get('id')): outcome for outcome in outcomes if isinstance(outcome, dict)}
        accepted = []
        for payload in payloads:
            row_id = payload['id']
            outcome = by_id.get(row_id)
            if outcome is None:
                stats.record_error(row_id, "Server reported no outcome for row")
                continue

            result = str(outcome.get('outcome') or 'SUCCESS').upper()
            if result == 'SUCCESS':
                stats.rows_processed += 1
                accepted.append(row_id)
            else:
                message = outcome.get('message') or 'rejected by server'
                logger.warning(f"Row {row_id} not applied: {result} - {message}")
                stats.record_error(row_id, f"{result}: {message}")
        return accepted

    def reset(self, table_id: str, data_version: Any,
              cancel_token: Optional[CancellationToken] = None) -> SyncResult:
        """
        Reset the server table once the version gate approves data_version.

        Returns:
            SyncResult whose rows_processed is the number of rows the server deleted
        """
        self.state = EngineState.INIT
        stats = SyncStats()
        logger.info(f"Starting reset of table {table_id}")

        try:
            if self._cancelled(cancel_token):
                logger.info(f"Reset of {table_id} cancelled before start")
                return stats.to_result(TaskStatus.CANCELLED)

            schema = self.session.fetch_schema(table_id)
            self._transition(EngineState.SCHEMA_FETCHED)
            approved_version = self.version_gate.check(data_version, schema.data_version)

            self._transition(EngineState.FLUSHING)
            stats.rows_processed = self.session.reset_table(table_id, approved_version)

        except SyncError as e:
            self._transition(EngineState.FAILED)
            logger.error(f"Reset of {table_id} failed: {e.message}")
            raise

        self._transition(EngineState.DONE)
        logger.info(f"Reset of {table_id} finished - {stats.rows_processed} rows deleted")
        return stats.to_result()
