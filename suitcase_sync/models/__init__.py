"""
Models package for the Aggregate sync engine.
"""
from .config import ServerConnection, CsvConfig, SyncSettings
from .data_models import (
    AttachmentRef, AttachmentStatus, ColumnDefinition, FlatColumn, Row, RowError,
    RowPage, SyncResult, SyncStats, TableSchema, TaskStatus
)
from .errors import (
    AttachmentError, AuthError, LocalIOError, NetworkError, NotFoundError,
    RequestRejectedError, SchemaError, SyncError, VersionConflictError,
    VersionConflictReason
)

__all__ = [
    'ServerConnection',
    'CsvConfig',
    'SyncSettings',
    'AttachmentRef',
    'AttachmentStatus',
    'ColumnDefinition',
    'FlatColumn',
    'Row',
    'RowError',
    'RowPage',
    'SyncResult',
    'SyncStats',
    'TableSchema',
    'TaskStatus',
    'AttachmentError',
    'AuthError',
    'LocalIOError',
    'NetworkError',
    'NotFoundError',
    'RequestRejectedError',
    'SchemaError',
    'SyncError',
    'VersionConflictError',
    'VersionConflictReason'
]
