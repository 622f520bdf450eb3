"""
Pytest configuration and fixtures for the Aggregate sync engine tests.
"""
from typing import Any, Dict, List, Optional
from unittest.mock import Mock

import pytest

from suitcase_sync.clients.server_session import ServerSession
from suitcase_sync.models.config import ServerConnection, SyncSettings
from suitcase_sync.models.data_models import Row, RowPage, TableSchema

SCHEMA_PAYLOAD = {
    "tableId": "census",
    "schemaETag": "schema-1",
    "dataVersion": "2",
    "orderedColumns": [
        {"elementKey": "name", "elementType": "string"},
        {"elementKey": "age", "elementType": "integer"},
        {"elementKey": "location", "elementType": "geopoint", "childElements": [
            {"elementKey": "latitude", "elementType": "number"},
            {"elementKey": "longitude", "elementType": "number"}
        ]},
        {"elementKey": "photo", "elementType": "rowpath"}
    ]
}


def make_row_json(index: int, photo: Optional[str] = None) -> Dict[str, Any]:
    """Server JSON for one census row."""
    return {
        "id": f"uuid:row-{index}",
        "rowETag": f"etag-{index}",
        "dataETagAtModification": "data-etag-1",
        "deleted": False,
        "createUser": "mailto:creator@example.org",
        "lastUpdateUser": "mailto:editor@example.org",
        "savepointTimestamp": "2024-01-01T12:00:00",
        "savepointCreator": "mailto:creator@example.org",
        "savepointType": "COMPLETE",
        "values": {
            "name": f"Person {index}",
            "age": 30,
            "location": {"latitude": 47.6, "longitude": -122.3},
            "photo": photo
        }
    }


def make_pages(total: int, page_size: int, photo: Optional[str] = None) -> List[RowPage]:
    """Split total rows into pages chained by cursors."""
    pages = []
    for start in range(0, total, page_size):
        rows = [Row.from_json(make_row_json(i, photo)) for i in range(start, min(start + page_size, total))]
        has_more = start + page_size < total
        pages.append(RowPage(rows=rows, next_cursor=f"c{start + page_size}" if has_more else None))
    return pages


class PageFeed:
    """Stands in for ServerSession.iter_row_pages and records every page handed out."""

    def __init__(self, pages: List[RowPage], fail_after: Optional[int] = None, error: Exception = None):
        self.pages = pages
        self.fail_after = fail_after
        self.error = error
        self.fetched = 0

    def __call__(self, table_id, fetch_limit=1000):
        for index, page in enumerate(self.pages):
            if self.fail_after is not None and index == self.fail_after:
                raise self.error
            self.fetched += 1
            yield page


@pytest.fixture
def connection():
    return ServerConnection(
        base_url="http://aggregate.example.org",
        app_id="default",
        table_id="census",
        username="collector",
        password="secret"
    )


@pytest.fixture
def settings():
    return SyncSettings(page_size=100, upload_batch_size=2, attachment_workers=4)


@pytest.fixture
def schema():
    return TableSchema.from_json(SCHEMA_PAYLOAD)


@pytest.fixture
def fake_session(connection, schema):
    """A ServerSession mock serving the census schema and no rows."""
    session = Mock(spec=ServerSession)
    session.connection = connection
    session.fetch_schema.return_value = schema
    session.iter_row_pages.side_effect = PageFeed([RowPage(rows=[])])
    session.fetch_attachment_manifest.return_value = []
    return session
