"""
Tests for the mock Aggregate server, and end-to-end runs of the engine against it.
"""
import csv
from unittest.mock import patch
from urllib.parse import quote

import pytest
import requests
from fastapi.testclient import TestClient
from requests.structures import CaseInsensitiveDict

from mock_api.server import create_app
from suitcase_sync.clients.server_session import ServerSession
from suitcase_sync.models.config import CsvConfig, ServerConnection, SyncSettings
from suitcase_sync.models.errors import NotFoundError, VersionConflictError
from suitcase_sync.services.row_sync import RowSyncEngine

FIRST_ROW = "uuid:00000000-0000-0000-0000-000000000001"


class TestMockServer:
    """Test cases for the mock server endpoints."""

    def setup_method(self):
        self.client = TestClient(create_app())

    def test_table_resource(self):
        response = self.client.get("/default/tables/census")

        assert response.status_code == 200
        data = response.json()
        assert data["dataVersion"] == "1"
        assert data["orderedColumns"][2]["childElements"][0]["elementKey"] == "latitude"

    def test_unknown_table(self):
        assert self.client.get("/default/tables/missing").status_code == 404

    def test_rows_are_paginated(self):
        first = self.client.get("/default/tables/census/rows", params={"fetchLimit": 100}).json()
        assert len(first["rows"]) == 100
        assert first["hasMoreResults"] is True

        last = self.client.get("/default/tables/census/rows",
                               params={"fetchLimit": 100, "cursor": "c200"}).json()
        assert len(last["rows"]) == 50
        assert last["hasMoreResults"] is False
        assert last["webSafeResumeCursor"] is None

    def test_invalid_cursor(self):
        response = self.client.get("/default/tables/census/rows", params={"cursor": "bogus"})
        assert response.status_code == 400

    def test_manifest_and_file(self):
        row = quote(FIRST_ROW, safe='')
        manifest = self.client.get(f"/default/tables/census/attachments/{row}/manifest").json()

        assert [entry["filename"] for entry in manifest["files"]] == ["photo.jpg"]
        content = self.client.get(f"/default/tables/census/attachments/{row}/file/photo.jpg").content
        assert len(content) == manifest["files"][0]["contentLength"]

    def test_post_rows_checks_version_and_etag(self):
        stale = self.client.post("/default/tables/census/rows",
                                 json={"dataVersion": "0", "rows": [{"id": "uuid:new"}]})
        assert stale.status_code == 409

        outcomes = self.client.post("/default/tables/census/rows", json={"dataVersion": "1", "rows": [
            {"id": "uuid:new", "values": {"name": "New person"}},
            {"id": FIRST_ROW, "rowETag": "outdated", "values": {}},
        ]}).json()["rows"]
        assert [o["outcome"] for o in outcomes] == ["SUCCESS", "IN_CONFLICT"]

    def test_reset_bumps_version(self):
        result = self.client.post("/default/tables/census/reset", json={"dataVersion": "1"}).json()

        assert result == {"rowsDeleted": 250, "dataVersion": "2"}
        assert self.client.get("/default/tables/census").json()["dataVersion"] == "2"
        assert self.client.get("/default/tables/census/rows").json()["rows"] == []


class ClientBridge:
    """Routes ServerSession requests into a TestClient and returns requests responses."""

    def __init__(self, client):
        self.client = client

    def __call__(self, method, url, timeout=None, stream=False, params=None, json=None,
                 data=None, headers=None):
        content = data.read() if data is not None else None
        reply = self.client.request(method, url, params=params, json=json, content=content, headers=headers)

        response = requests.Response()
        response.status_code = reply.status_code
        response.headers = CaseInsensitiveDict(reply.headers)
        response.url = url
        response._content = reply.content
        response._content_consumed = True
        return response


class TestEndToEnd:
    """Download, upload and reset through ServerSession against the mock server."""

    @pytest.fixture(autouse=True)
    def setup_engine(self, tmp_path):
        client = TestClient(create_app())
        connection = ServerConnection("http://testserver", "default", "census")
        self.session = ServerSession(connection, max_retries=0)
        self.engine = RowSyncEngine(self.session, SyncSettings(page_size=100, upload_batch_size=50))
        self.output_dir = tmp_path
        with patch.object(self.session.session, 'request', side_effect=ClientBridge(client)):
            yield

    def download(self, config):
        return self.engine.download("census", config, self.output_dir)

    def test_download_with_attachments(self):
        result = self.download(CsvConfig(include_attachments=True))

        assert result.rows_processed == 250
        assert result.attachments_fetched == 25
        assert result.attachments_failed == 0

        table_dir = self.output_dir / "default" / "census"
        with open(table_dir / "link_unformatted.csv", newline='', encoding='utf-8') as f:
            rows = list(csv.reader(f))
        assert len(rows) == 251
        photo = rows[1][rows[0].index("photo")]
        assert photo == "instances/uuid_00000000-0000-0000-0000-000000000001/photo.jpg"
        assert (table_dir / photo).read_bytes() == f"image bytes for {FIRST_ROW}".encode()

    def test_download_then_upload_round_trip(self):
        self.download(CsvConfig(include_attachments=True))
        csv_path = self.output_dir / "default" / "census" / "link_unformatted.csv"

        result = self.engine.upload("census", csv_path, "1")

        assert result.rows_processed == 250
        assert result.errors == ()
        assert result.attachments_fetched == 25

    def test_upload_after_reset_is_rejected(self):
        self.download(CsvConfig())
        csv_path = self.output_dir / "default" / "census" / "data_unformatted.csv"

        reset = self.engine.reset("census", "1")
        assert reset.rows_processed == 250

        with pytest.raises(VersionConflictError):
            self.engine.upload("census", csv_path, "1")
        assert self.session.fetch_schema("census").data_version == "2"

    def test_missing_table(self):
        with pytest.raises(NotFoundError):
            self.engine.download("households", CsvConfig(), self.output_dir)
