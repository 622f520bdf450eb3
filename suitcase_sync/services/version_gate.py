"""
Data-version check guarding every write to the server.
"""
from typing import Any, Optional

from loguru import logger

from ..models.errors import VersionConflictError, VersionConflictReason


class VersionGate:
    """
    Approves uploads and resets only when the caller's data version equals the
    server's current one. Downloads never pass through the gate.
    """

    @staticmethod
    def normalize(version: Any) -> Optional[str]:
        if version is None:
            return None
        text = str(version).strip()
        return text or None

    def check(self, supplied_version: Any, server_version: Any) -> str:
        """
        Compare the supplied data version with the server's.

        Args:
            supplied_version: Version the caller believes is current
            server_version: Version the server reports for the table

        Returns:
            The approved version token

        Raises:
            VersionConflictError: MISSING when no version was supplied,
                STALE when it differs from the server's
        """
        supplied = self.normalize(supplied_version)
        current = self.normalize(server_version)

        if supplied is None:
            raise VersionConflictError(
                "A data version is required for upload and reset",
                reason=VersionConflictReason.MISSING,
                supplied=None,
                current=current
            )

        if supplied != current:
            logger.warning(f"Rejecting write: supplied data version {supplied}, server is at {current}")
            raise VersionConflictError(
                f"Data version {supplied} is stale; the server is at version {current}. "
                f"Download the table again before writing.",
                reason=VersionConflictReason.STALE,
                supplied=supplied,
                current=current
            )

        logger.debug(f"Data version {supplied} approved")
        return supplied
