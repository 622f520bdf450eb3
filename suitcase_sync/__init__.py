"""
Suitcase Sync - moves ODK Aggregate table rows and attachments to and from local CSV files.
"""

from .services.tasks import TaskRunner, run_download, run_upload, run_reset
from .models.config import ServerConnection, CsvConfig, SyncSettings
from .models.data_models import SyncResult, TaskStatus
from .models.errors import SyncError, VersionConflictError

__version__ = "2.0.0"
__all__ = [
    "TaskRunner",
    "run_download",
    "run_upload",
    "run_reset",
    "ServerConnection",
    "CsvConfig",
    "SyncSettings",
    "SyncResult",
    "TaskStatus",
    "SyncError",
    "VersionConflictError"
]
