"""Listings module for the relational projection.

This module provides the SQL for:
- Inserting listings, offers and activity idempotently
- Guarded terminal-state transitions
- Durable anomaly records
- Batches of open rows for reconciliation

Every write method takes the connection first so callers can group several
writes into one transaction via :meth:`ListingStore.transaction`. The unique
constraints declared in ``database/schema`` are what make the inserts
idempotent; the ``WHERE ... IS NULL`` guards make terminal states final.
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from asyncpg.exceptions import UniqueViolationError

from database import get_pool

logger = logging.getLogger(__name__)

LISTINGS = 'listings'
OFFERS = 'offers'

LISTING_COLUMNS = (
    'contract_type',
    'blockchain_listing_id',
    'order_hash',
    'seller_address',
    'nft_contract',
    'token_id',
    'price',
    'currency',
    'expiry',
    'metadata_uri',
    'order_parameters',
    'counter',
    'tx_hash',
    'created_at',
)

OFFER_COLUMNS = (
    'contract_type',
    'blockchain_offer_id',
    'order_hash',
    'buyer_address',
    'seller_address',
    'nft_contract',
    'token_id',
    'amount',
    'currency',
    'expiry',
    'order_parameters',
    'counter',
    'tx_hash',
    'created_at',
)

ACTIVITY_COLUMNS = (
    'type',
    'contract_type',
    'actor_address',
    'nft_contract',
    'token_id',
    'price',
    'metadata',
    'tx_hash',
    'block_number',
    'log_index',
    'created_at',
)

ANOMALY_COLUMNS = (
    'dedup_key',
    'kind',
    'contract_type',
    'natural_key',
    'tx_hash',
    'block_number',
    'log_index',
    'detail',
)

JSON_COLUMNS = {'order_parameters', 'metadata', 'detail'}

# Natural key column per (table, contract_type)
NATURAL_KEYS = {
    (LISTINGS, 'exchange'): 'blockchain_listing_id',
    (LISTINGS, 'seaport'): 'order_hash',
    (OFFERS, 'exchange'): 'blockchain_offer_id',
    (OFFERS, 'seaport'): 'order_hash',
}

# Terminal timestamp columns per table
TERMINAL_COLUMNS = {
    LISTINGS: ('sold_at', 'cancelled_at'),
    OFFERS: ('accepted_at', 'cancelled_at'),
}


class StoreError(Exception):
    """Base exception for projection store errors."""
    pass


def natural_key_column(table: str, contract_type: str) -> str:
    try:
        return NATURAL_KEYS[(table, contract_type)]
    except KeyError:
        raise StoreError(f"Unknown table/contract type: {table}/{contract_type}")


def open_condition(table: str) -> str:
    first, second = TERMINAL_COLUMNS[table]
    return f"{first} IS NULL AND {second} IS NULL"


def _strip_nul(value: Any) -> Any:
    """Drop NUL characters, which Postgres rejects in text and jsonb"""
    if isinstance(value, str):
        return value.replace('\x00', '')
    if isinstance(value, dict):
        return {_strip_nul(key): _strip_nul(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_strip_nul(item) for item in value]
    return value


def _encode(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS and value is not None:
        return json.dumps(_strip_nul(value))
    if column == 'counter' and value is not None:
        return Decimal(value)
    if isinstance(value, str):
        return _strip_nul(value)
    return value


def _decode_row(row) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    result = dict(row)
    for column in JSON_COLUMNS:
        if isinstance(result.get(column), str):
            result[column] = json.loads(result[column])
    return result


def _placeholders(columns: Iterable[str]) -> str:
    return ', '.join(
        f"${i}::jsonb" if column in JSON_COLUMNS else f"${i}"
        for i, column in enumerate(columns, start=1)
    )


class ListingStore:
    """asyncpg-backed store for listings, offers, activity and anomalies."""

    def __init__(self, pool=None):
        """Initialize the store.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
        """
        self.pool = pool

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        """Acquire a connection without opening a transaction."""
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        """Acquire a connection inside a transaction.

        Everything written through the yielded connection commits together
        or not at all.
        """
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def _insert(self, conn, table: str, columns, row: Dict[str, Any], conflict: str = '') -> bool:
        present = [column for column in columns if column in row]
        values = [_encode(column, row[column]) for column in present]
        inserted = await conn.fetchval(
            f'''
            INSERT INTO {table} ({', '.join(present)})
            VALUES ({_placeholders(present)})
            ON CONFLICT {conflict} DO NOTHING
            RETURNING id
            ''',
            *values
        )
        return inserted is not None

    # Creation

    async def insert_listing(self, conn, row: Dict[str, Any]) -> bool:
        """Insert a listing unless its natural key already exists.

        Returns:
            True if a row was inserted, False if it was already present
        """
        return await self._insert(conn, LISTINGS, LISTING_COLUMNS, row)

    async def insert_offer(self, conn, row: Dict[str, Any]) -> bool:
        """Insert an offer unless its natural key already exists."""
        return await self._insert(conn, OFFERS, OFFER_COLUMNS, row)

    async def insert_activity(self, conn, row: Dict[str, Any]) -> bool:
        """Insert an activity row keyed by (tx_hash, type).

        Returns:
            False when an activity with the same key exists (already applied)
        """
        return await self._insert(conn, 'activity', ACTIVITY_COLUMNS, row, '(tx_hash, type)')

    async def activity_exists(self, conn, tx_hash: str, activity_type: str) -> bool:
        return await conn.fetchval(
            'SELECT EXISTS(SELECT 1 FROM activity WHERE tx_hash = $1 AND type = $2)',
            tx_hash,
            activity_type
        )

    async def record_anomaly(self, conn, row: Dict[str, Any]) -> bool:
        """Durably record an anomaly once per dedup key.

        Returns:
            True if this is the first record for the key
        """
        inserted = await self._insert(conn, 'anomalies', ANOMALY_COLUMNS, row, '(dedup_key)')
        if inserted:
            logger.warning(
                f"Anomaly {row['kind']} recorded for "
                f"{row.get('contract_type')}/{row.get('natural_key')} (tx {row.get('tx_hash')})"
            )
        return inserted

    # Lookups

    async def get_listing(self, conn, contract_type: str, key: str) -> Optional[Dict[str, Any]]:
        column = natural_key_column(LISTINGS, contract_type)
        row = await conn.fetchrow(
            f'SELECT * FROM listings WHERE {column} = $1 AND contract_type = $2',
            key,
            contract_type
        )
        return _decode_row(row)

    async def get_offer(self, conn, contract_type: str, key: str) -> Optional[Dict[str, Any]]:
        column = natural_key_column(OFFERS, contract_type)
        row = await conn.fetchrow(
            f'SELECT * FROM offers WHERE {column} = $1 AND contract_type = $2',
            key,
            contract_type
        )
        return _decode_row(row)

    # Guarded terminal transitions. Each returns True only if it moved the row.

    async def _mark(self, conn, table: str, contract_type: str, key: str, assignments: Dict[str, Any]) -> bool:
        column = natural_key_column(table, contract_type)
        names = list(assignments)
        sets = ', '.join(f"{name} = ${i}" for i, name in enumerate(names, start=3))
        row_id = await conn.fetchval(
            f'''
            UPDATE {table}
            SET {sets}, updated_at = now()
            WHERE {column} = $1 AND contract_type = $2
            AND {open_condition(table)}
            RETURNING id
            ''',
            key,
            contract_type,
            *[assignments[name] for name in names]
        )
        return row_id is not None

    async def mark_listing_sold(
        self, conn, contract_type: str, key: str, buyer: Optional[str],
        tx_hash: str, at: datetime
    ) -> bool:
        return await self._mark(conn, LISTINGS, contract_type, key, {
            'sold_at': at,
            'buyer_address': buyer,
            'sale_tx_hash': tx_hash,
        })

    async def mark_listing_cancelled(self, conn, contract_type: str, key: str, tx_hash: str, at: datetime) -> bool:
        return await self._mark(conn, LISTINGS, contract_type, key, {
            'cancelled_at': at,
            'cancel_tx_hash': tx_hash,
        })

    async def mark_offer_accepted(
        self, conn, contract_type: str, key: str, seller: Optional[str],
        tx_hash: str, at: datetime
    ) -> bool:
        return await self._mark(conn, OFFERS, contract_type, key, {
            'accepted_at': at,
            'seller_address': seller,
            'accept_tx_hash': tx_hash,
        })

    async def mark_offer_cancelled(self, conn, contract_type: str, key: str, tx_hash: str, at: datetime) -> bool:
        return await self._mark(conn, OFFERS, contract_type, key, {
            'cancelled_at': at,
            'cancel_tx_hash': tx_hash,
        })

    async def cancel_below_counter(
        self, conn, offerer: str, counter: int, tx_hash: str, at: datetime
    ) -> Dict[str, List[str]]:
        """Cancel open Seaport rows signed by ``offerer`` under a lower counter.

        Returns:
            Order hashes cancelled, per table
        """
        owner = {LISTINGS: 'seller_address', OFFERS: 'buyer_address'}
        cancelled = {}
        for table in (LISTINGS, OFFERS):
            rows = await conn.fetch(
                f'''
                UPDATE {table}
                SET cancelled_at = $3, cancel_tx_hash = $4, updated_at = now()
                WHERE contract_type = 'seaport'
                AND {owner[table]} = $1
                AND counter IS NOT NULL AND counter < $2
                AND {open_condition(table)}
                RETURNING order_hash
                ''',
                offerer,
                Decimal(counter),
                at,
                tx_hash
            )
            cancelled[table] = [row['order_hash'] for row in rows]
        return cancelled

    # Reconciliation support

    async def fetch_open(self, conn, table: str, limit: int) -> List[Dict[str, Any]]:
        """Open rows, least recently reconciled first."""
        rows = await conn.fetch(
            f'''
            SELECT * FROM {table}
            WHERE {open_condition(table)}
            ORDER BY last_reconciled_at ASC NULLS FIRST, created_at ASC
            LIMIT $1
            ''',
            limit
        )
        return [_decode_row(row) for row in rows]

    async def touch_reconciled(self, conn, table: str, row_ids: List[Any], at: datetime) -> None:
        if not row_ids:
            return
        await conn.execute(
            f'UPDATE {table} SET last_reconciled_at = $2 WHERE id = ANY($1::UUID[])',
            row_ids,
            at
        )

    async def fetch_seaport_orders(self, conn, table: str, limit: int, offset: int = 0) -> List[Dict[str, Any]]:
        """Seaport rows carrying stored order parameters, for hash repair."""
        rows = await conn.fetch(
            f'''
            SELECT id, order_hash, order_parameters, counter FROM {table}
            WHERE contract_type = 'seaport' AND order_parameters IS NOT NULL
            ORDER BY created_at ASC, id ASC
            LIMIT $1 OFFSET $2
            ''',
            limit,
            offset
        )
        return [_decode_row(row) for row in rows]

    async def update_order_hash(self, conn, table: str, row_id: Any, order_hash: str) -> bool:
        """Replace a row's order hash.

        Returns:
            False if another row already holds ``order_hash``
        """
        try:
            # Savepoint so a conflict does not poison an outer transaction
            async with conn.transaction():
                await conn.execute(
                    f'UPDATE {table} SET order_hash = $2, updated_at = now() WHERE id = $1',
                    row_id,
                    order_hash
                )
        except UniqueViolationError:
            return False
        return True

    # Reporting

    async def list_anomalies(self, conn, kind: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        rows = await conn.fetch(
            '''
            SELECT * FROM anomalies
            WHERE resolved_at IS NULL AND ($1::TEXT IS NULL OR kind = $1)
            ORDER BY created_at DESC
            LIMIT $2
            ''',
            kind,
            limit
        )
        return [_decode_row(row) for row in rows]

    async def get_stats(self, conn) -> Dict[str, int]:
        row = await conn.fetchrow(f'''
            SELECT
                (SELECT count(*) FROM listings WHERE {open_condition(LISTINGS)}) AS open_listings,
                (SELECT count(*) FROM listings WHERE sold_at IS NOT NULL) AS sold_listings,
                (SELECT count(*) FROM listings WHERE cancelled_at IS NOT NULL) AS cancelled_listings,
                (SELECT count(*) FROM offers WHERE {open_condition(OFFERS)}) AS open_offers,
                (SELECT count(*) FROM offers WHERE accepted_at IS NOT NULL) AS accepted_offers,
                (SELECT count(*) FROM offers WHERE cancelled_at IS NOT NULL) AS cancelled_offers,
                (SELECT count(*) FROM activity) AS activity,
                (SELECT count(*) FROM anomalies WHERE resolved_at IS NULL) AS open_anomalies
        ''')
        return dict(row)


__all__ = [
    'ListingStore',
    'StoreError',
    'LISTINGS',
    'OFFERS',
    'NATURAL_KEYS',
    'TERMINAL_COLUMNS',
    'natural_key_column',
]
