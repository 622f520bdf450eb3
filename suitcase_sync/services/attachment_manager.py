"""
Attachment resolution and transfer for rows of an Aggregate table.

Files live beside the CSV in ``instances/<row>/<file>`` so rows that carry
attachments with the same name never collide.
"""
import hashlib
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import List, Optional

from loguru import logger

from ..clients.server_session import ServerSession
from ..models.config import CsvConfig
from ..models.data_models import AttachmentRef, AttachmentStatus, Row, RowError
from ..models.errors import AttachmentError, AuthError, SyncError
from .schema_mapper import INSTANCES_DIR, attachment_relative_path, safe_row_dir


@dataclass
class TransferCounts:
    """Outcome of transferring a group of attachments."""
    fetched: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[RowError] = field(default_factory=list)


class AttachmentCoordinator:
    """Resolves attachment manifests to local paths and moves the files."""

    def __init__(self, session: ServerSession, table_id: str, max_workers: int = 4, refetch: bool = False):
        self.session = session
        self.table_id = table_id
        self.max_workers = max_workers
        self.refetch = refetch

    def resolve(self, row: Row, config: CsvConfig, output_dir: Path) -> List[AttachmentRef]:
        """
        Fetch a row's manifest and assign each file its local relative path.

        Returns an empty list when attachments are not included.

        Raises:
            AttachmentError: The manifest could not be fetched or parsed
            AuthError: Credentials were rejected
        """
        if not config.include_attachments:
            return []

        try:
            refs = self.session.fetch_attachment_manifest(self.table_id, row.row_id)
        except AuthError:
            raise
        except SyncError as e:
            raise AttachmentError(f"Cannot fetch attachment manifest: {e.message}", row_id=row.row_id) from e

        for ref in refs:
            ref.local_relative_path = attachment_relative_path(row.row_id, ref.file_name)
        row.attachments = refs
        logger.debug(f"Row {row.row_id} references {len(refs)} attachments under {output_dir}")
        return refs

    def local_path(self, ref: AttachmentRef, output_dir: Path) -> Path:
        """
        Absolute local path of an attachment.

        Raises:
            AttachmentError: The file name is empty, absolute or escapes the row directory
        """
        name = PurePosixPath(ref.file_name or '')
        if not ref.file_name or name.is_absolute() or '..' in name.parts:
            raise AttachmentError(f"Unsafe attachment file name: {ref.file_name!r}", row_id=ref.row_id)

        relative = PurePosixPath(ref.local_relative_path or attachment_relative_path(ref.row_id, ref.file_name))
        return Path(output_dir).joinpath(*relative.parts)

    def is_current(self, ref: AttachmentRef, path: Path) -> bool:
        """True when the local copy already matches the server's file."""
        if not path.is_file():
            return False
        if ref.size is not None:
            return path.stat().st_size == ref.size
        if ref.md5hash:
            return self._md5(path) == ref.md5hash.split(':', 1)[-1].lower()
        return False

    def fetch_all(self, refs: List[AttachmentRef], output_dir: Path) -> TransferCounts:
        """
        Download every attachment, concurrently, and wait for all of them.

        One failure never stops the others; each ref is marked fetched,
        skipped or failed.

        Raises:
            AuthError: Credentials were rejected for any file
        """
        counts = TransferCounts()
        if not refs:
            return counts

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(self._fetch_one, ref, Path(output_dir)): ref for ref in refs}
            for future in as_completed(futures):
                ref = futures[future]
                future.result()
                if ref.status == AttachmentStatus.FETCHED:
                    counts.fetched += 1
                elif ref.status == AttachmentStatus.SKIPPED:
                    counts.skipped += 1
                else:
                    counts.failed += 1
                    counts.errors.append(RowError(ref.row_id, f"Attachment {ref.file_name}: {ref.error}"))

        logger.info(f"Attachments: {counts.fetched} fetched, {counts.skipped} already present, "
                    f"{counts.failed} failed")
        return counts

    def _fetch_one(self, ref: AttachmentRef, output_dir: Path) -> None:
        try:
            path = self.local_path(ref, output_dir)
            if not self.refetch and self.is_current(ref, path):
                logger.debug(f"Attachment already present: {path}")
                ref.mark_skipped()
                return

            self.session.download_attachment(ref.remote_uri, path)
            ref.mark_fetched()
        except AuthError:
            raise
        except (SyncError, OSError) as e:
            message = e.message if isinstance(e, SyncError) else str(e)
            logger.error(f"Failed to fetch attachment {ref.file_name} for row {ref.row_id}: {message}")
            ref.mark_failed(message)

    def push_row_files(self, row_id: str, base_dir: Path) -> TransferCounts:
        """Upload every file found in a row's local attachment directory."""
        counts = TransferCounts()
        row_dir = Path(base_dir) / INSTANCES_DIR / safe_row_dir(row_id)
        if not row_dir.is_dir():
            return counts

        files = sorted(p for p in row_dir.rglob('*') if p.is_file() and not p.name.endswith('.part'))
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(self._push_one, row_id, row_dir, path): path for path in files}
            for future in as_completed(futures):
                error = future.result()
                if error is None:
                    counts.fetched += 1
                else:
                    counts.failed += 1
                    counts.errors.append(RowError(row_id, error))
        return counts

    def _push_one(self, row_id: str, row_dir: Path, path: Path) -> Optional[str]:
        file_name = path.relative_to(row_dir).as_posix()
        try:
            self.session.upload_attachment(self.table_id, row_id, file_name, path)
            return None
        except AuthError:
            raise
        except (SyncError, OSError) as e:
            message = e.message if isinstance(e, SyncError) else str(e)
            logger.error(f"Failed to upload attachment {file_name} for row {row_id}: {message}")
            return f"Attachment {file_name}: {message}"

    @staticmethod
    def _md5(path: Path) -> str:
        digest = hashlib.md5()
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(64 * 1024), b''):
                digest.update(chunk)
        return digest.hexdigest()
