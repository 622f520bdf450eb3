# Services package
from .schema_mapper import SchemaMapper
from .csv_processor import CSVProcessor, CsvRowWriter
from .attachment_manager import AttachmentCoordinator, TransferCounts
from .version_gate import VersionGate
from .row_sync import CancellationToken, EngineState, RowSyncEngine
from .tasks import (
    DownloadParams, DownloadTask, ResetParams, ResetTask, SyncTask, TaskRunner,
    UploadParams, UploadTask, run_download, run_reset, run_upload
)

__all__ = [
    'SchemaMapper',
    'CSVProcessor',
    'CsvRowWriter',
    'AttachmentCoordinator',
    'TransferCounts',
    'VersionGate',
    'CancellationToken',
    'EngineState',
    'RowSyncEngine',
    'DownloadParams',
    'DownloadTask',
    'ResetParams',
    'ResetTask',
    'SyncTask',
    'TaskRunner',
    'UploadParams',
    'UploadTask',
    'run_download',
    'run_reset',
    'run_upload'
]
