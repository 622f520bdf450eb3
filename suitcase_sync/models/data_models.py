"""
Core data models for the Aggregate sync engine.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import SchemaError, SyncError

_MISSING = object()


@dataclass(frozen=True)
class ColumnDefinition:
    """One element of the server's column tree."""
    element_key: str
    element_type: str
    children: Tuple['ColumnDefinition', ...] = ()

    @classmethod
    def from_json(cls, data: Any) -> 'ColumnDefinition':
        """Build a column (and its children) from the server's JSON, validating as we go."""
        if not isinstance(data, dict):
            raise SchemaError(f"Column definition must be an object, got {type(data).__name__}")

        key = data.get('elementKey')
        if not isinstance(key, str) or not key.strip():
            raise SchemaError(f"Column definition has no usable elementKey: {data}")
        if '.' in key:
            raise SchemaError(f"Column elementKey may not contain '.': {key}")

        children = data.get('childElements') or []
        if not isinstance(children, list):
            raise SchemaError(f"childElements of {key} must be a list")

        return cls(
            element_key=key,
            element_type=str(data.get('elementType') or 'string'),
            children=tuple(cls.from_json(child) for child in children)
        )


@dataclass(frozen=True)
class TableSchema:
    """Server table definition, read once per run."""
    table_id: str
    schema_etag: Optional[str]
    data_version: Optional[str]
    columns: Tuple[ColumnDefinition, ...]

    @classmethod
    def from_json(cls, data: Any) -> 'TableSchema':
        if not isinstance(data, dict):
            raise SchemaError("Table resource must be a JSON object")

        columns = data.get('orderedColumns')
        if not isinstance(columns, list):
            raise SchemaError("Table resource has no orderedColumns list")

        version = data.get('dataVersion')
        return cls(
            table_id=str(data.get('tableId') or ''),
            schema_etag=data.get('schemaETag'),
            data_version=None if version is None else str(version),
            columns=tuple(ColumnDefinition.from_json(column) for column in columns)
        )


@dataclass(frozen=True)
class FlatColumn:
    """A CSV column: dotted name plus where its value comes from."""
    name: str
    column_type: str
    path: Tuple[str, ...] = ()
    metadata_key: Optional[str] = None

    @property
    def is_metadata(self) -> bool:
        return self.metadata_key is not None


class AttachmentStatus(str, Enum):
    PENDING = "pending"
    FETCHED = "fetched"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class AttachmentRef:
    """A binary file referenced by a row's attachment manifest."""
    row_id: str
    file_name: str
    remote_uri: str
    local_relative_path: str = ''
    content_type: Optional[str] = None
    size: Optional[int] = None
    md5hash: Optional[str] = None
    status: AttachmentStatus = AttachmentStatus.PENDING
    error: Optional[str] = None

    def mark_fetched(self) -> None:
        self.status = AttachmentStatus.FETCHED
        self.error = None

    def mark_skipped(self) -> None:
        self.status = AttachmentStatus.SKIPPED

    def mark_failed(self, message: str) -> None:
        self.status = AttachmentStatus.FAILED
        self.error = message

    @classmethod
    def from_manifest(cls, row_id: str, entry: Any) -> 'AttachmentRef':
        """
        Build a reference from one manifest entry.

        Raises:
            SchemaError: The entry is not an object, lacks a file name or URL,
                or has a contentLength that is not a non-negative integer
        """
        if not isinstance(entry, dict):
            raise SchemaError(f"Attachment manifest entry must be an object, got {type(entry).__name__}",
                              row_id=row_id)

        file_name = entry.get('filename')
        remote_uri = entry.get('downloadUrl')
        if not isinstance(file_name, str) or not isinstance(remote_uri, str) or not remote_uri:
            raise SchemaError(f"Attachment manifest entry needs filename and downloadUrl: {entry}",
                              row_id=row_id)

        size = entry.get('contentLength')
        if size is not None:
            try:
                size = int(size)
            except (TypeError, ValueError) as e:
                raise SchemaError(f"Attachment {file_name} has invalid contentLength: {size!r}",
                                  row_id=row_id) from e
            if size < 0:
                raise SchemaError(f"Attachment {file_name} has negative contentLength: {size}",
                                  row_id=row_id)

        return cls(
            row_id=row_id,
            file_name=file_name,
            remote_uri=remote_uri,
            content_type=entry.get('contentType'),
            size=size,
            md5hash=entry.get('md5hash')
        )


@dataclass
class Row:
    """One table row: data values, server metadata and attachments."""
    row_id: str
    values: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    attachments: List[AttachmentRef] = field(default_factory=list)

    def value_at(self, path: Tuple[str, ...]) -> Any:
        """Return the value at a nested path, or None when any step is missing."""
        current: Any = self.values
        for key in path:
            if not isinstance(current, dict) or key not in current:
                current = _MISSING
                break
            current = current[key]

        if current is _MISSING:
            # flat payloads key nested values by their dotted name
            return self.values.get('.'.join(path))
        return current

    @classmethod
    def from_json(cls, data: Any) -> 'Row':
        if not isinstance(data, dict) or not data.get('id'):
            raise SchemaError(f"Row without an id in server response: {data}")

        if 'values' in data:
            values = data.get('values') or {}
        else:
            values = {
                column.get('column'): column.get('value')
                for column in data.get('orderedColumns') or []
            }
        if not isinstance(values, dict):
            raise SchemaError(f"Row {data['id']} has malformed values", row_id=data['id'])

        metadata = {
            key: value for key, value in data.items()
            if key not in ('id', 'values', 'orderedColumns')
        }
        return cls(row_id=str(data['id']), values=values, metadata=metadata)


@dataclass(frozen=True)
class RowError:
    row_id: Optional[str]
    message: str


@dataclass
class RowPage:
    """One page of rows plus the cursor for the next one (None at end of stream)."""
    rows: List[Row]
    next_cursor: Optional[str] = None
    rejected: List[RowError] = field(default_factory=list)


class TaskStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one download, upload or reset run."""
    rows_processed: int = 0
    attachments_fetched: int = 0
    attachments_failed: int = 0
    attachments_skipped: int = 0
    errors: Tuple[RowError, ...] = ()
    status: TaskStatus = TaskStatus.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.status == TaskStatus.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'rows_processed': self.rows_processed,
            'attachments_fetched': self.attachments_fetched,
            'attachments_failed': self.attachments_failed,
            'attachments_skipped': self.attachments_skipped,
            'errors': [{'row_id': e.row_id, 'message': e.message} for e in self.errors]
        }


@dataclass
class SyncStats:
    """Mutable counters accumulated while a run is in progress."""
    rows_processed: int = 0
    attachments_fetched: int = 0
    attachments_failed: int = 0
    attachments_skipped: int = 0
    errors: List[RowError] = field(default_factory=list)

    def record_error(self, row_id: Optional[str], message: str) -> None:
        self.errors.append(RowError(row_id=row_id, message=message))

    def record_exception(self, error: SyncError) -> None:
        self.record_error(error.row_id, error.message)

    def snapshot(self) -> SyncResult:
        return self.to_result(TaskStatus.RUNNING)

    def to_result(self, status: TaskStatus = TaskStatus.COMPLETED) -> SyncResult:
        return SyncResult(
            rows_processed=self.rows_processed,
            attachments_fetched=self.attachments_fetched,
            attachments_failed=self.attachments_failed,
            attachments_skipped=self.attachments_skipped,
            errors=tuple(self.errors),
            status=status
        )
