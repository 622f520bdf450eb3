#!/usr/bin/env python3
"""
Demo of a full download -> upload -> reset cycle against the mock server.

Start the mock server first:
    python mock_api/run_server.py
"""
import sys
import tempfile
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from suitcase_sync.models.config import CsvConfig, ServerConnection, SyncSettings
from suitcase_sync.models.errors import SyncError, VersionConflictError
from suitcase_sync.services.tasks import run_download, run_reset, run_upload
from loguru import logger


def main():
    """Demo the sync engine against the mock Aggregate server."""
    logger.remove()
    logger.add(sys.stderr, format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> - <level>{message}</level>", level="INFO")

    logger.info("🧳 Suitcase Sync Demo")

    connection = ServerConnection("http://localhost:8001", "default", "census")
    settings = SyncSettings(page_size=100, upload_batch_size=50)
    output_dir = Path(tempfile.mkdtemp(prefix="suitcase_demo_"))

    try:
        logger.info("📥 Downloading census with attachments...")
        config = CsvConfig(include_attachments=True)
        result = run_download(
            connection, "census", config, output_dir, settings=settings,
            on_progress=lambda snapshot: logger.info(f"   {snapshot.rows_processed} rows so far")
        )
        logger.success(f"✅ Downloaded {result.rows_processed} rows, "
                       f"{result.attachments_fetched} attachments")

        csv_path = output_dir / "default" / "census" / config.csv_file_name
        logger.info(f"CSV written to {csv_path}")

        logger.info("📤 Uploading the CSV back at data version 1...")
        result = run_upload(connection, "census", csv_path, "1", settings=settings)
        logger.success(f"✅ Server accepted {result.rows_processed} rows ({len(result.errors)} errors)")

        logger.info("🗑️ Resetting the table...")
        result = run_reset(connection, "census", "1", settings=settings)
        logger.success(f"✅ Server deleted {result.rows_processed} rows")

        logger.info("📤 Uploading again with the old data version...")
        try:
            run_upload(connection, "census", csv_path, "1", settings=settings)
        except VersionConflictError as e:
            logger.success(f"✅ Stale upload rejected as expected: {e.message}")

    except SyncError as e:
        logger.error(f"❌ Demo failed: {e.message}")
        return 1

    logger.success("🎉 Demo completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
