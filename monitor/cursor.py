"""Persistent per-stream indexing cursor.

One row in ``indexed_blocks`` per stream holds the highest block whose logs
have all been applied. Advancing uses GREATEST so two runners racing on the
same stream can never move it backwards; only :meth:`reset` lowers it.
"""
import logging
from typing import Optional

from database import get_pool

logger = logging.getLogger(__name__)


class BlockCursorStore:
    """Reads and writes the last fully processed block per stream"""

    def __init__(self, pool=None):
        self.pool = pool

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    async def get(self, stream_id: str) -> Optional[int]:
        """Last processed block, or None if the stream has never run"""
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                'SELECT block_number FROM indexed_blocks WHERE stream_id = $1',
                stream_id
            )

    async def advance(self, stream_id: str, block_number: int) -> int:
        """Move the cursor forward to ``block_number`` if it is ahead.

        Returns:
            The stored value after the update
        """
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            stored = await conn.fetchval(
                '''
                INSERT INTO indexed_blocks (stream_id, block_number, updated_at)
                VALUES ($1, $2, now())
                ON CONFLICT (stream_id) DO UPDATE
                SET block_number = GREATEST(indexed_blocks.block_number, EXCLUDED.block_number),
                    updated_at = now()
                RETURNING block_number
                ''',
                stream_id,
                block_number
            )
        if stored != block_number:
            logger.info(f"Cursor {stream_id} already at {stored}, not moved to {block_number}")
        return stored

    async def reset(self, stream_id: str, block_number: int) -> None:
        """Set the cursor unconditionally (administrative reindex)"""
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''
                INSERT INTO indexed_blocks (stream_id, block_number, updated_at)
                VALUES ($1, $2, now())
                ON CONFLICT (stream_id) DO UPDATE
                SET block_number = EXCLUDED.block_number, updated_at = now()
                ''',
                stream_id,
                block_number
            )
        logger.warning(f"Cursor {stream_id} reset to {block_number}")
