"""
Maps the server's nested column tree onto a flat CSV layout and back.

Column naming is the dotted path of element keys, taken depth-first in the
server's column order, so the same schema always yields the same header.

CSV layout::

    _id, <data columns...>, _row_etag[, <extra metadata columns...>]

Scan formatting re-encodes data cells for the ODK Scan app: list values
(or strings holding a JSON array) are joined with single spaces, booleans
become ``true``/``false``, and then SCAN_SUBSTITUTIONS is applied in order.
"""
import json
import posixpath
import re
import uuid
from typing import Any, Dict, List, Optional, Tuple

from ..models.config import CsvConfig
from ..models.data_models import ColumnDefinition, FlatColumn, Row, TableSchema
from ..models.errors import SchemaError

ATTACHMENT_TYPES = frozenset({'rowpath'})
INSTANCES_DIR = 'instances'

ID_COLUMN = FlatColumn('_id', 'string', metadata_key='id')
ROW_ETAG_COLUMN = FlatColumn('_row_etag', 'string', metadata_key='rowETag')
EXTRA_METADATA_COLUMNS = (
    FlatColumn('_savepoint_timestamp', 'string', metadata_key='savepointTimestamp'),
    FlatColumn('_savepoint_creator', 'string', metadata_key='savepointCreator'),
    FlatColumn('_create_user', 'string', metadata_key='createUser'),
    FlatColumn('_last_update_user', 'string', metadata_key='lastUpdateUser'),
    FlatColumn('_data_etag_at_modification', 'string', metadata_key='dataETagAtModification'),
)

# Applied in order; "\r\n" must be replaced before its halves.
SCAN_SUBSTITUTIONS: Tuple[Tuple[str, str], ...] = (
    ('\r\n', ' '),
    ('\r', ' '),
    ('\n', ' '),
    ('\t', ' '),
)


def safe_row_dir(row_id: str) -> str:
    """Directory name for a row's attachments."""
    return re.sub(r'[^A-Za-z0-9_-]', '_', row_id)


def attachment_relative_path(row_id: str, file_name: str) -> str:
    """Path of an attachment relative to the CSV file, always with forward slashes."""
    return posixpath.join(INSTANCES_DIR, safe_row_dir(row_id), file_name)


class SchemaMapper:
    """Converts table schemas to flat columns and rows to CSV cells."""

    def data_columns(self, schema: TableSchema) -> List[FlatColumn]:
        """Leaf columns of the schema, depth-first, named by dotted path."""
        columns: List[FlatColumn] = []

        def walk(definition: ColumnDefinition, prefix: Tuple[str, ...]) -> None:
            path = prefix + (definition.element_key,)
            if definition.children:
                for child in definition.children:
                    walk(child, path)
            else:
                columns.append(FlatColumn('.'.join(path), definition.element_type, path))

        for definition in schema.columns:
            walk(definition, ())
        return columns

    def flatten(self, schema: TableSchema, config: CsvConfig) -> List[FlatColumn]:
        """
        Build the ordered CSV columns for a schema.

        Raises:
            SchemaError: Two columns flatten to the same name
        """
        columns = [ID_COLUMN] + self.data_columns(schema) + [ROW_ETAG_COLUMN]
        if config.extra_metadata:
            columns.extend(EXTRA_METADATA_COLUMNS)

        seen = set()
        for column in columns:
            if column.name in seen:
                raise SchemaError(f"Schema for {schema.table_id} flattens to duplicate column: {column.name}")
            seen.add(column.name)
        return columns

    @staticmethod
    def column_names(columns: List[FlatColumn]) -> List[str]:
        return [column.name for column in columns]

    def map_row(self, row: Row, columns: List[FlatColumn], config: CsvConfig) -> List[str]:
        """Turn a row into one CSV cell per column, in column order."""
        cells = []
        for column in columns:
            if column.metadata_key == 'id':
                cells.append(row.row_id)
            elif column.is_metadata:
                cells.append(self.encode_cell(row.metadata.get(column.metadata_key)))
            elif column.column_type in ATTACHMENT_TYPES and config.include_attachments:
                file_name = self.encode_cell(row.value_at(column.path))
                cells.append(attachment_relative_path(row.row_id, file_name) if file_name else '')
            elif config.scan_formatting:
                cells.append(self.scan_encode(row.value_at(column.path)))
            else:
                cells.append(self.encode_cell(row.value_at(column.path)))
        return cells

    @staticmethod
    def encode_cell(value: Any) -> str:
        """Default cell encoding. Missing values are always an empty cell."""
        if value is None:
            return ''
        if isinstance(value, bool):
            return 'true' if value else 'false'
        if isinstance(value, (list, dict)):
            return json.dumps(value, separators=(',', ':'), ensure_ascii=False)
        return str(value)

    @classmethod
    def scan_encode(cls, value: Any) -> str:
        """Encode a cell the way the Scan app expects it."""
        if isinstance(value, str) and value.lstrip().startswith('['):
            try:
                parsed = json.loads(value)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                value = parsed

        if isinstance(value, (list, tuple)):
            text = ' '.join(cls.encode_cell(item) for item in value if item is not None)
        else:
            text = cls.encode_cell(value)

        for old, new in SCAN_SUBSTITUTIONS:
            text = text.replace(old, new)
        return text

    def unmap_row(self, record: Dict[str, Any], columns: List[FlatColumn]) -> Dict[str, Any]:
        """
        Rebuild a server row payload from one CSV record.

        Args:
            record: Mapping of column name to cell text
            columns: Flat columns the record was written with

        Returns:
            Row payload ({"id", "values", optional "rowETag"})
        """
        row_id = self._text(record.get(ID_COLUMN.name)) or f"uuid:{uuid.uuid4()}"
        values: Dict[str, Any] = {}

        for column in columns:
            if column.is_metadata:
                continue
            value = self.decode_cell(record.get(column.name), column)
            self._assign(values, column.path, value)

        payload: Dict[str, Any] = {'id': row_id, 'values': values}
        row_etag = self._text(record.get(ROW_ETAG_COLUMN.name))
        if row_etag:
            payload['rowETag'] = row_etag
        return payload

    def decode_cell(self, cell: Any, column: FlatColumn) -> Optional[str]:
        text = '' if cell is None else str(cell)
        if text == '':
            return None
        if column.column_type in ATTACHMENT_TYPES and text.startswith(INSTANCES_DIR + '/'):
            return posixpath.basename(text)
        return text

    @staticmethod
    def _text(cell: Any) -> str:
        if cell is None:
            return ''
        return str(cell).strip()

    @staticmethod
    def _assign(values: Dict[str, Any], path: Tuple[str, ...], value: Any) -> None:
        target = values
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = value
