"""
Configuration classes for the Aggregate sync engine.
"""
import os
from dataclasses import dataclass, replace
from urllib.parse import urlparse


@dataclass(frozen=True)
class ServerConnection:
    """Endpoint, app, table and credentials for one Aggregate server."""
    base_url: str
    app_id: str
    table_id: str
    username: str = ''
    password: str = ''

    def __post_init__(self):
        parsed = urlparse(self.base_url or '')
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f"base_url must be an absolute http(s) URL: {self.base_url!r}")
        if not (self.app_id or '').strip():
            raise ValueError("app_id cannot be empty")
        if not (self.table_id or '').strip():
            raise ValueError("table_id cannot be empty")
        object.__setattr__(self, 'base_url', self.base_url.rstrip('/'))
        object.__setattr__(self, 'username', self.username or '')
        object.__setattr__(self, 'password', self.password or '')

    @property
    def is_anonymous(self) -> bool:
        return not self.username and not self.password

    def with_table(self, table_id: str) -> 'ServerConnection':
        """Return a copy of this connection pointed at another table."""
        return replace(self, table_id=table_id)

    @classmethod
    def from_env(cls) -> 'ServerConnection':
        """Create ServerConnection from environment variables."""
        return cls(
            base_url=os.getenv('AGGREGATE_URL', ''),
            app_id=os.getenv('AGGREGATE_APP_ID', 'default'),
            table_id=os.getenv('AGGREGATE_TABLE_ID', ''),
            username=os.getenv('AGGREGATE_USERNAME', ''),
            password=os.getenv('AGGREGATE_PASSWORD', '')
        )


@dataclass(frozen=True)
class CsvConfig:
    """Controls how rows and attachments are laid out in the CSV output."""
    include_attachments: bool = False
    scan_formatting: bool = False
    extra_metadata: bool = False

    @property
    def csv_file_name(self) -> str:
        # link_unformatted.csv, data_formatted_extra.csv, ...
        name = 'link' if self.include_attachments else 'data'
        name += '_formatted' if self.scan_formatting else '_unformatted'
        if self.extra_metadata:
            name += '_extra'
        return f"{name}.csv"


@dataclass
class SyncSettings:
    """Engine tuning and local paths."""
    page_size: int = 1000
    upload_batch_size: int = 500
    max_retries: int = 3
    backoff_factor: float = 1.0
    timeout: int = 30
    attachment_workers: int = 4
    download_dir: str = 'Download'
    upload_dir: str = 'Upload'
    log_file: str = 'logs/suitcase_sync.log'

    def __post_init__(self):
        if self.page_size < 1:
            raise ValueError("page_size must be positive")
        if self.upload_batch_size < 1:
            raise ValueError("upload_batch_size must be positive")
        self.attachment_workers = min(max(self.attachment_workers, 1), 8)

    @classmethod
    def from_env(cls) -> 'SyncSettings':
        """Create SyncSettings from environment variables."""
        return cls(
            page_size=int(os.getenv('SUITCASE_PAGE_SIZE', '1000')),
            upload_batch_size=int(os.getenv('SUITCASE_UPLOAD_BATCH_SIZE', '500')),
            max_retries=int(os.getenv('SUITCASE_MAX_RETRIES', '3')),
            backoff_factor=float(os.getenv('SUITCASE_BACKOFF_FACTOR', '1.0')),
            timeout=int(os.getenv('SUITCASE_TIMEOUT', '30')),
            attachment_workers=int(os.getenv('SUITCASE_ATTACHMENT_WORKERS', '4')),
            download_dir=os.getenv('SUITCASE_DOWNLOAD_DIR', 'Download'),
            upload_dir=os.getenv('SUITCASE_UPLOAD_DIR', 'Upload'),
            log_file=os.getenv('SUITCASE_LOG_FILE', 'logs/suitcase_sync.log')
        )
