"""
Mock Aggregate server for exercising the sync engine.

Holds tables in memory and serves:
- GET  /{app}/tables/{table}                                 : table resource
- GET  /{app}/tables/{table}/rows                            : paginated rows
- POST /{app}/tables/{table}/rows                            : batched row upload
- GET  /{app}/tables/{table}/attachments/{row}/manifest      : attachment manifest
- GET  /{app}/tables/{table}/attachments/{row}/file/{name}   : attachment bytes
- PUT  /{app}/tables/{table}/attachments/{row}/file/{name}   : attachment upload
- POST /{app}/tables/{table}/reset                           : reset table
"""

import hashlib
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel
import uvicorn


class RowUploadRequest(BaseModel):
    dataVersion: str
    rows: List[Dict[str, Any]]


class ResetRequest(BaseModel):
    dataVersion: str


class MockTable:
    """An in-memory table with rows, attachments and a data version."""

    def __init__(self, table_id: str, columns: List[Dict[str, Any]], data_version: str = "1"):
        self.table_id = table_id
        self.columns = columns
        self.data_version = data_version
        self.schema_etag = f"schema-{uuid.uuid4().hex[:8]}"
        self.rows: List[Dict[str, Any]] = []
        self.files: Dict[str, Dict[str, bytes]] = {}

    def find_row(self, row_id: str) -> Optional[Dict[str, Any]]:
        for row in self.rows:
            if row["id"] == row_id:
                return row
        return None

    def to_resource(self) -> Dict[str, Any]:
        return {
            "tableId": self.table_id,
            "schemaETag": self.schema_etag,
            "dataVersion": self.data_version,
            "orderedColumns": self.columns
        }


class MockDataGenerator:
    """Generates a realistic census table."""

    COLUMNS = [
        {"elementKey": "name", "elementType": "string"},
        {"elementKey": "age", "elementType": "integer"},
        {"elementKey": "location", "elementType": "geopoint", "childElements": [
            {"elementKey": "latitude", "elementType": "number"},
            {"elementKey": "longitude", "elementType": "number"}
        ]},
        {"elementKey": "photo", "elementType": "rowpath"}
    ]

    @classmethod
    def generate_table(cls, table_id: str = "census", row_count: int = 250) -> MockTable:
        table = MockTable(table_id, cls.COLUMNS, data_version="1")
        for i in range(row_count):
            row_id = f"uuid:{uuid.UUID(int=i + 1)}"
            values: Dict[str, Any] = {
                "name": f"Person {i + 1}",
                "age": 20 + i % 50,
                "location": {"latitude": round(47.6 + i / 1000, 4), "longitude": round(-122.3 - i / 1000, 4)},
                "photo": None
            }
            if i % 10 == 0:
                values["photo"] = "photo.jpg"
                table.files[row_id] = {"photo.jpg": f"image bytes for {row_id}".encode()}
            table.rows.append(cls.new_row(row_id, values))
        return table

    @staticmethod
    def new_row(row_id: str, values: Dict[str, Any], user: str = "mailto:collector@example.org") -> Dict[str, Any]:
        now = datetime.now().isoformat()
        return {
            "id": row_id,
            "rowETag": f"uuid:{uuid.uuid4()}",
            "dataETagAtModification": f"uuid:{uuid.uuid4()}",
            "deleted": False,
            "createUser": user,
            "lastUpdateUser": user,
            "savepointTimestamp": now,
            "savepointCreator": user,
            "savepointType": "COMPLETE",
            "formId": None,
            "locale": "en_US",
            "values": values
        }


def create_app(seed: bool = True) -> FastAPI:
    """Build a mock server with its own in-memory store."""
    app = FastAPI(
        title="Mock Aggregate Server",
        description="Mock Aggregate server for sync engine testing",
        version="1.0.0"
    )
    tables: Dict[str, MockTable] = {}
    if seed:
        census = MockDataGenerator.generate_table()
        tables[f"default/{census.table_id}"] = census
    app.state.tables = tables

    def get_table(app_id: str, table_id: str) -> MockTable:
        table = tables.get(f"{app_id}/{table_id}")
        if table is None:
            raise HTTPException(status_code=404, detail=f"Table {app_id}/{table_id} not found")
        return table

    def check_version(table: MockTable, supplied: str) -> None:
        if supplied != table.data_version:
            raise HTTPException(status_code=409,
                                detail=f"Data version {supplied} does not match {table.data_version}")

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"message": "Mock Aggregate Server is running", "timestamp": datetime.now()}

    @app.get("/{app_id}/tables/{table_id}")
    async def table_resource(app_id: str, table_id: str) -> Dict[str, Any]:
        return get_table(app_id, table_id).to_resource()

    @app.get("/{app_id}/tables/{table_id}/rows")
    async def get_rows(app_id: str, table_id: str, fetchLimit: int = 1000,
                       cursor: Optional[str] = None) -> Dict[str, Any]:
        """Return one page of rows; the cursor is an opaque offset token."""
        table = get_table(app_id, table_id)
        if fetchLimit < 1:
            raise HTTPException(status_code=400, detail="fetchLimit must be positive")

        offset = 0
        if cursor:
            if not cursor.startswith("c") or not cursor[1:].isdigit():
                raise HTTPException(status_code=400, detail="Invalid cursor")
            offset = int(cursor[1:])

        page = table.rows[offset:offset + fetchLimit]
        has_more = offset + fetchLimit < len(table.rows)
        return {
            "rows": page,
            "webSafeResumeCursor": f"c{offset + fetchLimit}" if has_more else None,
            "hasMoreResults": has_more
        }

    @app.post("/{app_id}/tables/{table_id}/rows")
    async def post_rows(app_id: str, table_id: str, body: RowUploadRequest) -> Dict[str, Any]:
        """Insert or update rows; an update must carry the current rowETag."""
        table = get_table(app_id, table_id)
        check_version(table, body.dataVersion)

        outcomes = []
        for incoming in body.rows:
            row_id = incoming.get("id")
            if not row_id:
                outcomes.append({"id": row_id, "outcome": "FAILED", "message": "Row id is required"})
                continue

            existing = table.find_row(row_id)
            if existing is None:
                table.rows.append(MockDataGenerator.new_row(row_id, incoming.get("values") or {}))
                outcomes.append({"id": row_id, "outcome": "SUCCESS"})
            elif incoming.get("rowETag") != existing["rowETag"]:
                outcomes.append({"id": row_id, "outcome": "IN_CONFLICT",
                                 "message": "Row was changed on the server"})
            else:
                existing["values"] = incoming.get("values") or {}
                existing["rowETag"] = f"uuid:{uuid.uuid4()}"
                outcomes.append({"id": row_id, "outcome": "SUCCESS"})

        return {"rows": outcomes, "dataVersion": table.data_version}

    @app.get("/{app_id}/tables/{table_id}/attachments/{row_id}/manifest")
    async def manifest(app_id: str, table_id: str, row_id: str) -> Dict[str, Any]:
        table = get_table(app_id, table_id)
        if table.find_row(row_id) is None:
            raise HTTPException(status_code=404, detail=f"Row {row_id} not found")

        files = table.files.get(row_id, {})
        return {
            "files": [
                {
                    "filename": name,
                    "contentType": "image/jpeg" if name.endswith(".jpg") else "application/octet-stream",
                    "contentLength": len(content),
                    "md5hash": f"md5:{hashlib.md5(content).hexdigest()}",
                    "downloadUrl": f"attachments/{quote(row_id, safe='')}/file/{quote(name)}"
                }
                for name, content in sorted(files.items())
            ]
        }

    @app.get("/{app_id}/tables/{table_id}/attachments/{row_id}/file/{file_name:path}")
    async def get_file(app_id: str, table_id: str, row_id: str, file_name: str):
        table = get_table(app_id, table_id)
        content = table.files.get(row_id, {}).get(file_name)
        if content is None:
            raise HTTPException(status_code=404, detail=f"File {file_name} not found")
        return Response(content=content, media_type="application/octet-stream")

    @app.put("/{app_id}/tables/{table_id}/attachments/{row_id}/file/{file_name:path}")
    async def put_file(app_id: str, table_id: str, row_id: str, file_name: str, request: Request):
        table = get_table(app_id, table_id)
        if table.find_row(row_id) is None:
            raise HTTPException(status_code=404, detail=f"Row {row_id} not found")

        content = await request.body()
        table.files.setdefault(row_id, {})[file_name] = content
        return {"status": "stored", "filename": file_name, "size": len(content)}

    @app.post("/{app_id}/tables/{table_id}/reset")
    async def reset(app_id: str, table_id: str, body: ResetRequest) -> Dict[str, Any]:
        """Drop every row and attachment and move the table to a new data version."""
        table = get_table(app_id, table_id)
        check_version(table, body.dataVersion)

        deleted = len(table.rows)
        table.rows.clear()
        table.files.clear()
        table.data_version = str(int(table.data_version) + 1) if table.data_version.isdigit() else "1"
        return {"rowsDeleted": deleted, "dataVersion": table.data_version}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "mock_api.server:app",
        host="0.0.0.0",
        port=8001,
        reload=True,
        log_level="info"
    )
