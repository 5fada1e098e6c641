"""Reconciliation of the projection against live contract state.

The sweep never looks at event logs. It reads current contract state with
``eth_call`` and compares it to open rows:

- terminal on-chain but open locally: corrected through the projector with a
  synthetic ``reconcile:<key>`` transaction reference
- absent on-chain: flagged, never deleted
- past local expiry but open on-chain: flagged, and only closed when the
  caller asks for it

Ambiguous cases are flagged rather than guessed.
"""
import asyncio
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from asyncpg.exceptions import PostgresError

from listings import LISTINGS, OFFERS, natural_key_column
from orders import (
    OrderParametersError,
    ZERO_ADDRESS,
    get_order_hash,
    parse_order_parameters,
)
from projector import ApplyStatus, ProjectionError, StateProjector
from rpc import EthereumRPC, RPCError

logger = logging.getLogger(__name__)

EXCHANGE_LISTING_CALL = (
    'listings(uint256)',
    ['address', 'address', 'uint256', 'uint256', 'uint256', 'bool', 'bool', 'bool'],
)
EXCHANGE_OFFER_CALL = (
    'offers(uint256)',
    ['address', 'address', 'uint256', 'uint256', 'uint256', 'bool', 'bool'],
)
ORDER_STATUS_CALL = (
    'getOrderStatus(bytes32)',
    ['bool', 'bool', 'uint256', 'uint256'],
)
COUNTER_CALL = (
    'getCounter(address)',
    ['uint256'],
)

# Drift kinds
SOLD_ONCHAIN = 'sold_onchain'
ACCEPTED_ONCHAIN = 'accepted_onchain'
CANCELLED_ONCHAIN = 'cancelled_onchain'
COUNTER_INVALIDATED = 'counter_invalidated'
MISSING_ONCHAIN = 'missing_onchain'
EXPIRED_OPEN = 'expired_open'
MALFORMED_ORDER_PARAMETERS = 'malformed_order_parameters'
ORDER_HASH_CONFLICT = 'order_hash_conflict'


class ReconciliationError(Exception):
    """Raised when a sweep cannot run at all (e.g. the store is unreachable)."""
    pass


@dataclass
class DriftRecord:
    table: str
    contract_type: str
    natural_key: str
    kind: str
    action: str
    onchain: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SweepResult:
    checked: int = 0
    drifted: int = 0
    corrected: int = 0
    flagged: int = 0
    errors: List[str] = field(default_factory=list)
    drift: List[DriftRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RepairResult:
    checked: int = 0
    mismatched: int = 0
    repaired: int = 0
    flagged: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _sort_key(row: Dict[str, Any]):
    reconciled = row.get('last_reconciled_at')
    created = row.get('created_at') or datetime.min.replace(tzinfo=timezone.utc)
    # Never-reconciled rows first
    return (reconciled is not None, reconciled or created, created)


class ReconciliationService:
    """Compares open listings and offers with contract state and repairs drift"""

    def __init__(
        self,
        rpc: EthereumRPC,
        store,
        projector: StateProjector,
        exchange_address: str,
        seaport_address: str,
        concurrency: int = 4
    ):
        self.rpc = rpc
        self.store = store
        self.projector = projector
        self.exchange_address = exchange_address
        self.seaport_address = seaport_address
        self.concurrency = concurrency
        self.running = False

    # On-chain reads (read-only eth_call only)

    async def _call(self, address: str, call: Tuple[str, List[str]], args: List[Any]) -> tuple:
        signature, outputs = call
        return await asyncio.to_thread(self.rpc.read_contract, address, signature, outputs, args)

    async def _read_state(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Current on-chain state of one row, as a flat dict"""
        if row['contract_type'] == 'exchange':
            if table == LISTINGS:
                values = await self._call(
                    self.exchange_address, EXCHANGE_LISTING_CALL, [int(row['blockchain_listing_id'])]
                )
                seller, _, _, price, expires_at, _, sold, cancelled = values
                return {
                    'exists': seller.lower() != ZERO_ADDRESS,
                    'sold': sold,
                    'cancelled': cancelled,
                    'expires_at': expires_at,
                    'price': str(price),
                }
            values = await self._call(
                self.exchange_address, EXCHANGE_OFFER_CALL, [int(row['blockchain_offer_id'])]
            )
            buyer, _, _, amount, expires_at, accepted, cancelled = values
            return {
                'exists': buyer.lower() != ZERO_ADDRESS,
                'accepted': accepted,
                'cancelled': cancelled,
                'expires_at': expires_at,
                'amount': str(amount),
            }

        order_hash = bytes.fromhex(row['order_hash'][2:])
        validated, cancelled, total_filled, total_size = await self._call(
            self.seaport_address, ORDER_STATUS_CALL, [order_hash]
        )
        state = {
            'exists': True,
            'validated': validated,
            'cancelled': cancelled,
            'total_filled': str(total_filled),
            'total_size': str(total_size),
            'filled': total_size > 0 and total_filled >= total_size,
        }
        if row.get('counter') is not None:
            owner = row['seller_address'] if table == LISTINGS else row['buyer_address']
            (counter,) = await self._call(self.seaport_address, COUNTER_CALL, [owner])
            state['counter'] = str(counter)
            state['counter_invalidated'] = counter > int(row['counter'])
        return state

    async def _read_guarded(self, semaphore: asyncio.Semaphore, table: str, row: Dict[str, Any]):
        async with semaphore:
            try:
                return await self._read_state(table, row)
            except (RPCError, ValueError) as e:
                # ValueError: stored key unparseable or return tuple of the wrong shape
                return e

    # Classification

    def classify(
        self,
        table: str,
        row: Dict[str, Any],
        state: Dict[str, Any],
        now: datetime,
        expire: bool = False
    ) -> Optional[Tuple[str, Optional[str]]]:
        """Decide what drift, if any, a row shows.

        Returns:
            None when consistent, else ``(kind, outcome)`` where ``outcome``
            is the terminal state to correct to, or None to only flag
        """
        if not state.get('exists', True):
            return MISSING_ONCHAIN, None

        if row['contract_type'] == 'exchange':
            if table == LISTINGS and state.get('sold'):
                return SOLD_ONCHAIN, 'sold'
            if table == OFFERS and state.get('accepted'):
                return ACCEPTED_ONCHAIN, 'accepted'
            if state.get('cancelled'):
                return CANCELLED_ONCHAIN, 'cancelled'
        else:
            if state.get('cancelled'):
                return CANCELLED_ONCHAIN, 'cancelled'
            if state.get('filled'):
                if table == LISTINGS:
                    return SOLD_ONCHAIN, 'sold'
                return ACCEPTED_ONCHAIN, 'accepted'
            if state.get('counter_invalidated'):
                return COUNTER_INVALIDATED, 'cancelled'

        expiry = row.get('expiry')
        if expiry is not None and expiry <= now:
            return EXPIRED_OPEN, ('cancelled' if expire else None)

        return None

    # Sweep

    async def _fetch_batch(self, limit: int) -> List[Tuple[str, Dict[str, Any]]]:
        async with self.store.connection() as conn:
            listings = await self.store.fetch_open(conn, LISTINGS, limit)
            offers = await self.store.fetch_open(conn, OFFERS, limit)
        rows = [(LISTINGS, row) for row in listings] + [(OFFERS, row) for row in offers]
        rows.sort(key=lambda item: _sort_key(item[1]))
        return rows[:limit]

    async def sweep(self, limit: int = 100, expire: bool = False, dry_run: bool = False) -> SweepResult:
        """Check up to ``limit`` open rows, least recently reconciled first.

        Args:
            limit: Maximum rows to check
            expire: Close rows past their local expiry that are still open on-chain
            dry_run: Report drift without writing anything

        Raises:
            ReconciliationError: The batch could not be loaded
        """
        result = SweepResult()
        try:
            batch = await self._fetch_batch(limit)
        except PostgresError as e:
            raise ReconciliationError(f"Could not load open rows: {e}") from e

        semaphore = asyncio.Semaphore(self.concurrency)
        states = await asyncio.gather(*(
            self._read_guarded(semaphore, table, row) for table, row in batch
        ))

        now = datetime.now(timezone.utc)
        touched: Dict[str, List[Any]] = {LISTINGS: [], OFFERS: []}

        for (table, row), state in zip(batch, states):
            contract_type = row['contract_type']
            key = row[natural_key_column(table, contract_type)]
            if isinstance(state, Exception):
                logger.warning(f"Could not read {table} {contract_type}/{key}: {state}")
                result.errors.append(f"{table}/{key}: {state}")
                continue

            result.checked += 1
            touched[table].append(row['id'])
            verdict = self.classify(table, row, state, now, expire)
            if verdict is None:
                continue

            kind, outcome = verdict
            result.drifted += 1
            record = DriftRecord(table, contract_type, key, kind, 'none', state)
            result.drift.append(record)
            if dry_run:
                record.action = 'would_correct' if outcome else 'would_flag'
                continue

            try:
                if outcome:
                    marker = f"reconcile-expired:{key}" if kind == EXPIRED_OPEN else f"reconcile:{key}"
                    applied = await self.projector.apply_correction(
                        table, contract_type, key, outcome, marker, {'kind': kind, 'onchain': state}
                    )
                    if applied.status == ApplyStatus.APPLIED:
                        record.action = 'corrected'
                        result.corrected += 1
                    else:
                        record.action = 'already_terminal'
                else:
                    await self.projector.flag(kind, contract_type, key, {'table': table, 'onchain': state})
                    record.action = 'flagged'
                    result.flagged += 1
            except ProjectionError as e:
                logger.error(f"Could not correct {table} {contract_type}/{key}: {e}")
                result.errors.append(f"{table}/{key}: {e}")

        if not dry_run:
            try:
                async with self.store.connection() as conn:
                    for table, row_ids in touched.items():
                        await self.store.touch_reconciled(conn, table, row_ids, now)
            except PostgresError as e:
                result.errors.append(f"touch: {e}")

        logger.info(
            f"Reconciliation sweep: {result.checked} checked, {result.drifted} drifted, "
            f"{result.corrected} corrected, {result.flagged} flagged"
            + (" (dry run)" if dry_run else "")
        )
        return result

    async def drift_report(self, limit: int = 100) -> SweepResult:
        """Sweep without writing anything"""
        return await self.sweep(limit, dry_run=True)

    # Order hash repair

    async def repair_order_hashes(self, limit: int = 500, offset: int = 0, dry_run: bool = False) -> RepairResult:
        """Recompute stored Seaport order hashes and fix mismatches.

        Rows whose parameters cannot be hashed are flagged and skipped; rows
        stored without a counter cannot be recomputed and are skipped.
        """
        result = RepairResult()
        try:
            async with self.store.connection() as conn:
                batches = [
                    (table, await self.store.fetch_seaport_orders(conn, table, limit, offset))
                    for table in (LISTINGS, OFFERS)
                ]
        except PostgresError as e:
            raise ReconciliationError(f"Could not load orders: {e}") from e

        for table, rows in batches:
            for row in rows:
                result.checked += 1
                stored = row['order_hash']
                params = row['order_parameters']
                counter = row.get('counter')
                has_counter = counter is not None or (
                    isinstance(params, dict) and params.get('counter') is not None
                )
                if not has_counter:
                    result.skipped += 1
                    continue

                try:
                    order = parse_order_parameters(
                        params, counter=int(counter) if counter is not None else None
                    )
                    computed = get_order_hash(order)
                except OrderParametersError as e:
                    result.flagged += 1
                    logger.warning(f"Malformed order parameters on {table} {row['id']}: {e}")
                    if not dry_run:
                        await self.projector.flag(
                            MALFORMED_ORDER_PARAMETERS, 'seaport', stored,
                            {'table': table, 'row_id': str(row['id']), 'error': str(e)}
                        )
                    continue

                if computed == stored:
                    continue

                result.mismatched += 1
                logger.info(f"Order hash mismatch on {table} {row['id']}: {stored} -> {computed}")
                if dry_run:
                    continue

                async with self.store.transaction() as conn:
                    updated = await self.store.update_order_hash(conn, table, row['id'], computed)
                if updated:
                    result.repaired += 1
                else:
                    result.flagged += 1
                    await self.projector.flag(
                        ORDER_HASH_CONFLICT, 'seaport', computed,
                        {'table': table, 'row_id': str(row['id']), 'stored': stored}
                    )

        logger.info(
            f"Order hash repair: {result.checked} checked, {result.mismatched} mismatched, "
            f"{result.repaired} repaired, {result.flagged} flagged"
        )
        return result

    async def start(self, interval: float, limit: int) -> None:
        """Sweep periodically until stopped"""
        self.running = True
        logger.info("Starting reconciliation loop")
        while self.running:
            try:
                await self.sweep(limit)
            except ReconciliationError as e:
                logger.error(f"Sweep failed: {e}")
            except Exception:
                logger.exception("Sweep failed unexpectedly, retrying next interval")
            await asyncio.sleep(interval)

    def stop(self):
        """Stop the reconciliation loop after the current sweep."""
        logger.info("Stopping reconciliation...")
        self.running = False


__all__ = [
    'ReconciliationService',
    'ReconciliationError',
    'SweepResult',
    'RepairResult',
    'DriftRecord',
]
