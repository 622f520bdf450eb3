"""
Main entry point for the Aggregate sync engine.

Everything is configured through environment variables; flag parsing is
left to whatever front-end embeds the engine.
"""
import json
import os
import sys
from pathlib import Path
from loguru import logger

from .models.config import CsvConfig, ServerConnection, SyncSettings
from .models.errors import SyncError
from .services.tasks import run_download, run_reset, run_upload


def setup_logging(settings: SyncSettings):
    """Configure logging for the sync engine."""
    # Remove default logger
    logger.remove()

    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level="INFO"
    )

    log_dir = Path(settings.log_file).parent
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        settings.log_file,
        rotation="10 MB",
        retention="7 days",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level="DEBUG"
    )


def _env_flag(name: str) -> bool:
    return os.getenv(name, 'false').lower() == 'true'


def print_help():
    """Print help information."""
    help_text = """
Suitcase Sync - Aggregate table synchronization

USAGE:
    python -m suitcase_sync.main [download|upload|reset|help]

ENVIRONMENT VARIABLES:
    AGGREGATE_URL             Server URL
    AGGREGATE_APP_ID          App id (default: default)
    AGGREGATE_TABLE_ID        Table id
    AGGREGATE_USERNAME        Username (empty for anonymous access)
    AGGREGATE_PASSWORD        Password (empty for anonymous access)
    SUITCASE_DATA_VERSION     Data version, required for upload and reset
    SUITCASE_PATH             Download directory, or upload file/directory
    SUITCASE_ATTACHMENTS      Download attachments (true/false)
    SUITCASE_SCAN             Apply Scan formatting (true/false)
    SUITCASE_EXTRA            Add extra metadata columns (true/false)
    SUITCASE_FORCE            Overwrite an existing CSV file (true/false)
    SUITCASE_REFETCH          Download attachments already present locally (true/false)
    SUITCASE_PAGE_SIZE, SUITCASE_UPLOAD_BATCH_SIZE, SUITCASE_MAX_RETRIES,
    SUITCASE_BACKOFF_FACTOR, SUITCASE_TIMEOUT, SUITCASE_ATTACHMENT_WORKERS,
    SUITCASE_DOWNLOAD_DIR, SUITCASE_UPLOAD_DIR, SUITCASE_LOG_FILE
"""
    print(help_text)


def main():
    """Run one operation selected by the first argument."""
    command = sys.argv[1].lower() if len(sys.argv) > 1 else 'help'
    if command in ("help", "--help", "-h"):
        print_help()
        return

    settings = SyncSettings.from_env()
    setup_logging(settings)

    try:
        connection = ServerConnection.from_env()
        data_version = os.getenv('SUITCASE_DATA_VERSION')

        if command == "download":
            config = CsvConfig(
                include_attachments=_env_flag('SUITCASE_ATTACHMENTS'),
                scan_formatting=_env_flag('SUITCASE_SCAN'),
                extra_metadata=_env_flag('SUITCASE_EXTRA')
            )
            result = run_download(connection, connection.table_id, config,
                                  os.getenv('SUITCASE_PATH') or settings.download_dir,
                                  overwrite=_env_flag('SUITCASE_FORCE'),
                                  refetch_attachments=_env_flag('SUITCASE_REFETCH'), settings=settings)
        elif command == "upload":
            result = run_upload(connection, connection.table_id,
                                os.getenv('SUITCASE_PATH') or settings.upload_dir,
                                data_version, settings=settings)
        elif command == "reset":
            result = run_reset(connection, connection.table_id, data_version, settings=settings)
        else:
            logger.error(f"Unknown command: {command}")
            print_help()
            sys.exit(1)

        logger.info(f"Result: {json.dumps(result.to_dict(), indent=2)}")
        if result.errors:
            sys.exit(2)

    except ValueError as e:
        logger.error(f"Invalid configuration: {str(e)}")
        sys.exit(1)
    except SyncError as e:
        logger.error(f"{command.capitalize()} failed: {e.message}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down")
        sys.exit(130)


if __name__ == "__main__":
    main()
