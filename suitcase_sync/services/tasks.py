"""
Download, upload and reset as cancellable units of work.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from ..clients.server_session import ServerSession
from ..models.config import CsvConfig, ServerConnection, SyncSettings
from ..models.data_models import SyncResult
from ..models.errors import SyncError
from .row_sync import CancellationToken, ProgressCallback, RowSyncEngine

FailureCallback = Callable[[SyncError], None]
SessionFactory = Callable[[ServerConnection, SyncSettings], ServerSession]


@dataclass(frozen=True)
class DownloadParams:
    connection: ServerConnection
    csv_config: CsvConfig
    output_dir: Path
    overwrite: bool = False
    refetch_attachments: bool = False


@dataclass(frozen=True)
class UploadParams:
    connection: ServerConnection
    input_path: Path
    data_version: Any


@dataclass(frozen=True)
class ResetParams:
    connection: ServerConnection
    data_version: Any


class SyncTask(ABC):
    """One operation against one table, run by a TaskRunner."""
    name = 'sync'

    def __init__(self, params):
        self.params = params

    @property
    def connection(self) -> ServerConnection:
        return self.params.connection

    @abstractmethod
    def execute(self, engine: RowSyncEngine, cancel_token: CancellationToken,
                on_progress: Optional[ProgressCallback] = None) -> SyncResult:
        """Run the operation on the given engine."""


class DownloadTask(SyncTask):
    name = 'download'

    def execute(self, engine, cancel_token, on_progress=None):
        p: DownloadParams = self.params
        return engine.download(p.connection.table_id, p.csv_config, p.output_dir, overwrite=p.overwrite,
                               refetch_attachments=p.refetch_attachments,
                               cancel_token=cancel_token, on_progress=on_progress)


class UploadTask(SyncTask):
    name = 'upload'

    def execute(self, engine, cancel_token, on_progress=None):
        p: UploadParams = self.params
        return engine.upload(p.connection.table_id, p.input_path, p.data_version,
                             cancel_token=cancel_token, on_progress=on_progress)


class ResetTask(SyncTask):
    name = 'reset'

    def execute(self, engine, cancel_token, on_progress=None):
        p: ResetParams = self.params
        result = engine.reset(p.connection.table_id, p.data_version, cancel_token=cancel_token)
        if on_progress is not None:
            on_progress(result)
        return result


class TaskRunner:
    """
    Runs one task at a time against a fresh server session.

    cancel() may be called from another thread; the running task stops at its
    next page or batch boundary and returns a CANCELLED result. Every run gets
    a fresh token, so a cancel only affects the task running at that moment.
    Fatal errors are logged, handed to the failure callback and re-raised.
    """

    def __init__(self, settings: Optional[SyncSettings] = None,
                 session_factory: Optional[SessionFactory] = None):
        self.settings = settings or SyncSettings()
        self.session_factory = session_factory or ServerSession.from_settings
        self.cancel_token = CancellationToken()

    def cancel(self) -> None:
        logger.info("Cancellation requested")
        self.cancel_token.cancel()

    def run(self, task: SyncTask, on_progress: Optional[ProgressCallback] = None,
            on_failure: Optional[FailureCallback] = None) -> SyncResult:
        connection = task.connection
        logger.info(f"Running {task.name} task for {connection.app_id}/{connection.table_id} "
                    f"on {connection.base_url}")

        cancel_token = CancellationToken()
        self.cancel_token = cancel_token

        session = self.session_factory(connection, self.settings)
        try:
            engine = RowSyncEngine(session, self.settings)
            result = task.execute(engine, cancel_token, on_progress)
        except SyncError as e:
            logger.error(f"{task.name.capitalize()} task failed: {e.message}")
            if on_failure is not None:
                on_failure(e)
            raise
        finally:
            session.close()

        if result.cancelled:
            logger.warning(f"{task.name.capitalize()} task cancelled - {result.rows_processed} rows processed")
        elif result.errors:
            logger.warning(f"{task.name.capitalize()} task completed with {len(result.errors)} errors")
        else:
            logger.info(f"{task.name.capitalize()} task completed successfully")
        return result


def run_download(connection: ServerConnection, table_id: str, csv_config: CsvConfig, output_path,
                 overwrite: bool = False, refetch_attachments: bool = False,
                 settings: Optional[SyncSettings] = None,
                 on_progress: Optional[ProgressCallback] = None) -> SyncResult:
    """Download a table into output_path/<app>/<table>/. Raises SyncError on fatal errors."""
    task = DownloadTask(DownloadParams(connection.with_table(table_id), csv_config, Path(output_path),
                                       overwrite=overwrite, refetch_attachments=refetch_attachments))
    return TaskRunner(settings).run(task, on_progress=on_progress)


def run_upload(connection: ServerConnection, table_id: str, input_path, data_version: Any,
               settings: Optional[SyncSettings] = None,
               on_progress: Optional[ProgressCallback] = None) -> SyncResult:
    """Upload a CSV to a table. Raises VersionConflictError before posting on a stale version."""
    task = UploadTask(UploadParams(connection.with_table(table_id), Path(input_path), data_version))
    return TaskRunner(settings).run(task, on_progress=on_progress)


def run_reset(connection: ServerConnection, table_id: str, data_version: Any,
              settings: Optional[SyncSettings] = None) -> SyncResult:
    """Reset a table. Raises VersionConflictError on a stale version."""
    task = ResetTask(ResetParams(connection.with_table(table_id), data_version))
    return TaskRunner(settings).run(task)
