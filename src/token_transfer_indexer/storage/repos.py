"""Repository implementations for transfer data access.

`TransferRepository` is the event store used by the indexing engine
(frontier lookup, idempotent bulk insert, eviction and rollback) and the
read interface consumed by the query layer.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, localcontext
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from token_transfer_indexer.storage.models import TransferModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Keeps bulk statements under SQLite's bound-parameter limit.
_BATCH_SIZE = 500


@dataclass
class TransferDTO:
    """Data transfer object for indexed Transfer events."""

    tx_hash: str
    log_index: int
    block_number: int
    block_hash: str
    from_address: str
    to_address: str
    amount: str
    timestamp: datetime
    id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TransferModel) -> TransferDTO:
        return cls(
            id=model.id,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            block_hash=model.block_hash,
            from_address=model.from_address,
            to_address=model.to_address,
            amount=model.amount,
            timestamp=model.timestamp,
            created_at=model.created_at,
        )

    @property
    def natural_key(self) -> tuple[str, int]:
        return (self.tx_hash.lower(), self.log_index)

    def amount_decimal(self, decimals: int) -> Decimal:
        """Amount in whole-token units (e.g. USDC has 6 decimals)."""
        with localcontext() as ctx:
            ctx.prec = 100
            return Decimal(int(self.amount)).scaleb(-decimals)


@dataclass(frozen=True)
class FrontierDTO:
    """Highest indexed block and the hash it was indexed with."""

    block_number: int
    block_hash: str


class TransferRepository:
    """Repository for indexed transfers."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    # ------------------------------------------------------------------
    # Indexing engine operations
    # ------------------------------------------------------------------

    async def find_highest_block(self) -> FrontierDTO | None:
        """Return the frontier (highest stored block), or None if the store is empty."""
        result = await self.session.execute(
            select(TransferModel.block_number, TransferModel.block_hash)
            .order_by(TransferModel.block_number.desc(), TransferModel.id.desc())
            .limit(1)
        )
        row = result.first()
        if row is None:
            return None
        return FrontierDTO(block_number=int(row[0]), block_hash=str(row[1]))

    async def insert_many_ignoring_duplicates(self, dtos: Sequence[TransferDTO]) -> int:
        """Insert transfers, silently skipping natural-key duplicates.

        Returns:
            Number of rows actually created (duplicates are not counted).
        """
        if not dtos:
            return 0

        now = datetime.now(UTC)
        rows_by_key: dict[tuple[str, int], dict[str, object]] = {}
        for dto in dtos:
            rows_by_key.setdefault(
                dto.natural_key,
                {
                    "tx_hash": dto.tx_hash.lower(),
                    "log_index": dto.log_index,
                    "block_number": dto.block_number,
                    "block_hash": dto.block_hash.lower(),
                    "from_address": dto.from_address.lower(),
                    "to_address": dto.to_address.lower(),
                    "amount": dto.amount,
                    "timestamp": dto.timestamp,
                    "created_at": now,
                },
            )
        rows = list(rows_by_key.values())

        insert_fn = pg_insert if self.session.get_bind().dialect.name == "postgresql" else sqlite_insert
        inserted = 0
        for start in range(0, len(rows), _BATCH_SIZE):
            stmt = insert_fn(TransferModel).values(rows[start : start + _BATCH_SIZE])
            stmt = stmt.on_conflict_do_nothing(index_elements=["tx_hash", "log_index"])
            result = await self.session.execute(stmt.returning(TransferModel.id))
            inserted += len(result.all())

        await self.session.flush()
        return inserted

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(TransferModel))
        return int(result.scalar_one())

    async def find_oldest(self, n: int) -> list[int]:
        """Ids of the ``n`` lowest-block transfers (ties broken by id)."""
        if n <= 0:
            return []
        result = await self.session.execute(
            select(TransferModel.id)
            .order_by(TransferModel.block_number.asc(), TransferModel.id.asc())
            .limit(n)
        )
        return [int(row_id) for row_id in result.scalars().all()]

    async def delete_by_ids(self, ids: Sequence[int]) -> int:
        deleted = 0
        for start in range(0, len(ids), _BATCH_SIZE):
            batch = list(ids[start : start + _BATCH_SIZE])
            result = await self.session.execute(delete(TransferModel).where(TransferModel.id.in_(batch)))
            deleted += result.rowcount or 0
        await self.session.flush()
        return deleted

    async def delete_where_block_at_least(self, threshold: int) -> int:
        """Delete every transfer with ``block_number >= threshold`` (reorg rollback)."""
        result = await self.session.execute(
            delete(TransferModel).where(TransferModel.block_number >= threshold)
        )
        await self.session.flush()
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Read interface
    # ------------------------------------------------------------------

    async def list_transfers(
        self,
        *,
        from_address: str | None = None,
        to_address: str | None = None,
        limit: int = 20,
    ) -> list[TransferDTO]:
        """Most recent transfers first, optionally filtered by sender and/or recipient.

        Args:
            from_address: Exact sender filter.
            to_address: Exact recipient filter.
            limit: Maximum number of results.

        Returns:
            List of TransferDTOs ordered by block descending.
        """
        if limit < 1:
            raise ValueError("limit must be >= 1")
        stmt = select(TransferModel)
        if from_address:
            stmt = stmt.where(TransferModel.from_address == from_address.lower())
        if to_address:
            stmt = stmt.where(TransferModel.to_address == to_address.lower())
        stmt = stmt.order_by(
            TransferModel.block_number.desc(),
            TransferModel.log_index.desc(),
        ).limit(limit)
        result = await self.session.execute(stmt)
        return [TransferDTO.from_model(m) for m in result.scalars().all()]

    async def get_address_history(self, address: str, *, limit: int = 20) -> list[TransferDTO]:
        """Transfers sent or received by ``address``, most recent first."""
        if limit < 1:
            raise ValueError("limit must be >= 1")
        normalized = address.lower()
        result = await self.session.execute(
            select(TransferModel)
            .where(or_(TransferModel.from_address == normalized, TransferModel.to_address == normalized))
            .order_by(TransferModel.block_number.desc(), TransferModel.log_index.desc())
            .limit(limit)
        )
        return [TransferDTO.from_model(m) for m in result.scalars().all()]
