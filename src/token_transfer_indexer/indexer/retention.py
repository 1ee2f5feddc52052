"""Size-bounded retention of indexed transfers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from token_transfer_indexer.storage.repos import TransferRepository

if TYPE_CHECKING:
    from token_transfer_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class RetentionManager:
    """Evicts the oldest-by-block transfers once the store exceeds its cap.

    Runs only after the scan's inserts are committed. A crash between the two
    leaves the store over the cap, which the next cycle corrects.
    """

    def __init__(self, database: DatabaseManager, *, max_records: int) -> None:
        if max_records < 1:
            raise ValueError("max_records must be >= 1")
        self._db = database
        self._max_records = max_records

    async def enforce(self) -> int:
        """Trim the store down to the cap.

        Returns:
            Number of transfers deleted.
        """
        async with self._db.get_async_session() as session:
            repo = TransferRepository(session)
            excess = await repo.count() - self._max_records
            if excess <= 0:
                return 0

            logger.info(
                "Deleting %d old transfers to maintain the %d-record limit.",
                excess,
                self._max_records,
            )
            ids = await repo.find_oldest(excess)
            return await repo.delete_by_ids(ids)
