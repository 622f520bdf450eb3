"""
Tests for AttachmentCoordinator.
"""
import hashlib
from pathlib import Path
from unittest.mock import Mock

import pytest

from suitcase_sync.clients.server_session import ServerSession
from suitcase_sync.models.config import CsvConfig
from suitcase_sync.models.data_models import AttachmentRef, AttachmentStatus, Row
from suitcase_sync.models.errors import (
    AttachmentError, AuthError, NetworkError, NotFoundError
)
from suitcase_sync.services.attachment_manager import AttachmentCoordinator


def make_ref(file_name, row_id="uuid:row-1", size=None, md5hash=None):
    return AttachmentRef(
        row_id=row_id,
        file_name=file_name,
        remote_uri=f"http://aggregate.example.org/files/{file_name}",
        size=size,
        md5hash=md5hash
    )


def write_file(destination, data=b"payload"):
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(data)
    return len(data)


class TestAttachmentCoordinator:
    """Test cases for attachment resolution and transfer."""

    @pytest.fixture(autouse=True)
    def setup_coordinator(self, tmp_path):
        self.session = Mock(spec=ServerSession)
        self.session.download_attachment.side_effect = lambda url, destination: write_file(destination)
        self.coordinator = AttachmentCoordinator(self.session, "census", max_workers=4)
        self.output_dir = tmp_path

    def test_resolve_assigns_local_paths(self):
        self.session.fetch_attachment_manifest.return_value = [make_ref("photo.jpg"), make_ref("audio.mp3")]
        row = Row(row_id="uuid:row-1")

        refs = self.coordinator.resolve(row, CsvConfig(include_attachments=True), self.output_dir)

        self.session.fetch_attachment_manifest.assert_called_once_with("census", "uuid:row-1")
        assert [ref.local_relative_path for ref in refs] == [
            "instances/uuid_row-1/photo.jpg", "instances/uuid_row-1/audio.mp3"
        ]
        assert row.attachments == refs

    def test_resolve_skipped_without_attachments(self):
        refs = self.coordinator.resolve(Row(row_id="r"), CsvConfig(), self.output_dir)

        assert refs == []
        self.session.fetch_attachment_manifest.assert_not_called()

    def test_resolve_manifest_failure_is_attachment_error(self):
        self.session.fetch_attachment_manifest.side_effect = NotFoundError("gone")

        with pytest.raises(AttachmentError) as excinfo:
            self.coordinator.resolve(Row(row_id="r"), CsvConfig(include_attachments=True), self.output_dir)
        assert excinfo.value.row_id == "r"
        assert not excinfo.value.fatal

    def test_resolve_auth_failure_propagates(self):
        self.session.fetch_attachment_manifest.side_effect = AuthError("denied")

        with pytest.raises(AuthError):
            self.coordinator.resolve(Row(row_id="r"), CsvConfig(include_attachments=True), self.output_dir)

    def test_fetch_all_downloads_every_file(self):
        refs = [make_ref(f"file{i}.bin", row_id=f"uuid:row-{i}") for i in range(6)]

        counts = self.coordinator.fetch_all(refs, self.output_dir)

        assert counts.fetched == 6
        assert counts.failed == 0
        assert self.session.download_attachment.call_count == 6
        assert all(ref.status == AttachmentStatus.FETCHED for ref in refs)
        assert (self.output_dir / "instances" / "uuid_row-3" / "file3.bin").read_bytes() == b"payload"

    def test_one_failure_does_not_stop_the_others(self):
        def download(url, destination):
            if url.endswith("broken.jpg"):
                raise NetworkError("connection reset")
            return write_file(destination)

        self.session.download_attachment.side_effect = download
        refs = [make_ref("a.jpg"), make_ref("broken.jpg"), make_ref("c.jpg")]

        counts = self.coordinator.fetch_all(refs, self.output_dir)

        assert counts.fetched == 2
        assert counts.failed == 1
        assert refs[1].status == AttachmentStatus.FAILED
        assert refs[1].error == "connection reset"
        assert counts.errors[0].row_id == "uuid:row-1"
        assert "broken.jpg" in counts.errors[0].message

    def test_rejected_credentials_stop_the_transfer(self):
        self.session.download_attachment.side_effect = AuthError("credentials rejected")
        refs = [make_ref("a.jpg"), make_ref("b.jpg")]

        with pytest.raises(AuthError):
            self.coordinator.fetch_all(refs, self.output_dir)

    def test_matching_size_is_skipped(self):
        existing = self.output_dir / "instances" / "uuid_row-1" / "photo.jpg"
        size = write_file(existing, b"already here")
        ref = make_ref("photo.jpg", size=size)

        counts = self.coordinator.fetch_all([ref], self.output_dir)

        assert counts.skipped == 1
        assert ref.status == AttachmentStatus.SKIPPED
        self.session.download_attachment.assert_not_called()

    def test_size_mismatch_is_downloaded_again(self):
        write_file(self.output_dir / "instances" / "uuid_row-1" / "photo.jpg", b"short")
        ref = make_ref("photo.jpg", size=1024)

        counts = self.coordinator.fetch_all([ref], self.output_dir)

        assert counts.fetched == 1
        self.session.download_attachment.assert_called_once()

    def test_matching_md5_is_skipped(self):
        data = b"same bytes"
        write_file(self.output_dir / "instances" / "uuid_row-1" / "photo.jpg", data)
        ref = make_ref("photo.jpg", md5hash="md5:" + hashlib.md5(data).hexdigest())

        counts = self.coordinator.fetch_all([ref], self.output_dir)

        assert counts.skipped == 1

    def test_refetch_downloads_present_files(self):
        size = write_file(self.output_dir / "instances" / "uuid_row-1" / "photo.jpg")
        coordinator = AttachmentCoordinator(self.session, "census", refetch=True)

        counts = coordinator.fetch_all([make_ref("photo.jpg", size=size)], self.output_dir)

        assert counts.fetched == 1
        assert counts.skipped == 0

    @pytest.mark.parametrize("file_name", ["", "../escape.jpg", "/etc/passwd"])
    def test_unsafe_names_fail_without_download(self, file_name):
        ref = make_ref(file_name)

        counts = self.coordinator.fetch_all([ref], self.output_dir)

        assert counts.failed == 1
        assert "Unsafe" in ref.error
        self.session.download_attachment.assert_not_called()

    def test_push_row_files(self):
        row_dir = self.output_dir / "instances" / "uuid_row-1"
        write_file(row_dir / "photo.jpg")
        write_file(row_dir / "notes.txt")
        write_file(row_dir / "leftover.jpg.part")

        counts = self.coordinator.push_row_files("uuid:row-1", self.output_dir)

        assert counts.fetched == 2
        uploaded = sorted(call.args[2] for call in self.session.upload_attachment.call_args_list)
        assert uploaded == ["notes.txt", "photo.jpg"]

    def test_push_row_files_records_failures(self):
        write_file(self.output_dir / "instances" / "uuid_row-1" / "photo.jpg")
        self.session.upload_attachment.side_effect = NetworkError("timeout")

        counts = self.coordinator.push_row_files("uuid:row-1", self.output_dir)

        assert counts.failed == 1
        assert counts.errors[0].message == "Attachment photo.jpg: timeout"

    def test_push_rejected_credentials_propagate(self):
        write_file(self.output_dir / "instances" / "uuid_row-1" / "photo.jpg")
        self.session.upload_attachment.side_effect = AuthError("credentials rejected")

        with pytest.raises(AuthError):
            self.coordinator.push_row_files("uuid:row-1", self.output_dir)

    def test_push_row_without_files(self):
        counts = self.coordinator.push_row_files("uuid:none", self.output_dir)

        assert counts.fetched == 0
        self.session.upload_attachment.assert_not_called()
