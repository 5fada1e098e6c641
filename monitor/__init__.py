"""Monitor module for indexing marketplace events from the chain.

This module provides:
- Polling passes over block ranges (EventIndexer)
- Push ingestion of single transactions (WebhookIngestor)
- The wiring that builds the whole engine from settings

The cursor only ever advances after every log in a range has been applied,
so an interrupted or failed run is retried from the same block next time.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from asyncpg.exceptions import PostgresError

from listings import ListingStore
from projector import ProjectionError, StateProjector
from rpc import EthereumRPC, RPCError, InvalidRangeError
from .cursor import BlockCursorStore
from .pipeline import ApplyCounts, LogPipeline, attach_block_timestamps
from .webhook import WebhookIngestor, IngestResult, extract_transactions, verify_signature

logger = logging.getLogger(__name__)


@dataclass
class IndexResult(ApplyCounts):
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    processed_blocks: int = 0
    blocks_remaining: int = 0
    cursor: Optional[int] = None


class EventIndexer:
    """Polls both contracts' logs and applies them in chain order"""

    def __init__(
        self,
        rpc: EthereumRPC,
        pipeline: LogPipeline,
        cursor_store: BlockCursorStore,
        stream_id: str,
        start_block: int,
        max_blocks_per_run: int = 2000,
        log_chunk_size: int = 500,
        confirmations: int = 0
    ):
        """Initialize the indexer.

        Args:
            rpc: Chain client
            pipeline: Decode/apply pipeline
            cursor_store: Persistent cursor
            stream_id: Cursor row this indexer owns
            start_block: First block to index when the stream has no cursor
            max_blocks_per_run: Cap on blocks covered by one run
            log_chunk_size: Block span of each eth_getLogs request
            confirmations: Blocks to stay behind head
        """
        self.rpc = rpc
        self.pipeline = pipeline
        self.cursor_store = cursor_store
        self.stream_id = stream_id
        self.start_block = start_block
        self.max_blocks_per_run = max_blocks_per_run
        self.log_chunk_size = log_chunk_size
        self.confirmations = confirmations
        self.running = False
        self._lock = asyncio.Lock()

    async def _fetch_logs(self, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        """Fetch logs in spans of log_chunk_size, halving a span the node rejects"""
        logs = []
        span = self.log_chunk_size
        chunk_start = from_block
        while chunk_start <= to_block:
            chunk_end = min(to_block, chunk_start + span - 1)
            try:
                batch = await asyncio.to_thread(
                    self.rpc.get_logs, self.pipeline.addresses, chunk_start, chunk_end
                )
            except InvalidRangeError:
                if chunk_end == chunk_start:
                    raise
                span = max(1, (chunk_end - chunk_start + 1) // 2)
                logger.warning(f"Node rejected range {chunk_start}-{chunk_end}, retrying with span {span}")
                continue
            logs.extend(batch)
            chunk_start = chunk_end + 1
        return logs

    async def _process_range(self, result: IndexResult) -> None:
        """Fetch and apply every log in [from_block, to_block], recording failures in result"""
        try:
            logs = await self._fetch_logs(result.from_block, result.to_block)
            raw_logs = self.pipeline.normalize(logs, result)
            raw_logs = await attach_block_timestamps(self.rpc, raw_logs)
            await self.pipeline.apply(raw_logs, result)
        except RPCError as e:
            logger.error(f"RPC failure indexing {result.from_block}-{result.to_block}: {e}")
            result.errors.append(f"rpc: {e}")
        except (ProjectionError, PostgresError) as e:
            logger.error(f"Apply failure indexing {result.from_block}-{result.to_block}: {e}")
            result.errors.append(f"apply: {e}")

    async def run_once(self) -> IndexResult:
        """Index the next range after the cursor.

        The range is ``[cursor + 1, min(head - confirmations, cursor +
        max_blocks_per_run)]``. The cursor moves to the end of the range only
        if every log in it was applied.
        """
        async with self._lock:
            result = IndexResult()
            try:
                cursor = await self.cursor_store.get(self.stream_id)
                if cursor is None:
                    cursor = self.start_block - 1
                result.cursor = cursor

                head = await asyncio.to_thread(self.rpc.get_block_number) - self.confirmations
            except RPCError as e:
                logger.error(f"Could not read chain head: {e}")
                result.errors.append(f"rpc: {e}")
                return result
            except PostgresError as e:
                logger.error(f"Could not read cursor {self.stream_id}: {e}")
                result.errors.append(f"cursor: {e}")
                return result

            if head <= cursor:
                logger.debug(f"Stream {self.stream_id} is up to date at {cursor}")
                return result

            result.from_block = cursor + 1
            result.to_block = min(head, cursor + self.max_blocks_per_run)
            await self._process_range(result)

            if result.errors:
                logger.warning(
                    f"Run aborted, cursor {self.stream_id} stays at {cursor} "
                    f"({len(result.errors)} errors)"
                )
                return result

            try:
                result.cursor = await self.cursor_store.advance(self.stream_id, result.to_block)
            except PostgresError as e:
                logger.error(f"Could not advance cursor {self.stream_id}: {e}")
                result.errors.append(f"cursor: {e}")
                return result

            result.processed_blocks = result.to_block - result.from_block + 1
            result.blocks_remaining = max(0, head - result.to_block)
            logger.info(
                f"Indexed blocks {result.from_block}-{result.to_block}: "
                f"{result.events_applied} applied, {result.duplicates} duplicate, "
                f"{result.anomalies} anomalies, {result.blocks_remaining} blocks behind"
            )
            return result

    async def index_range(self, from_block: int, to_block: int) -> IndexResult:
        """Replay a block range without reading or moving the cursor.

        Ranges wider than max_blocks_per_run are processed window by window;
        processing stops at the first failing window.
        """
        if from_block < 0 or to_block < from_block:
            raise InvalidRangeError(f"Invalid range {from_block}-{to_block}")

        total = IndexResult(from_block=from_block, to_block=from_block - 1)
        window_start = from_block
        while window_start <= to_block:
            window = IndexResult(
                from_block=window_start,
                to_block=min(to_block, window_start + self.max_blocks_per_run - 1)
            )
            await self._process_range(window)
            for name in ('logs_seen', 'events_applied', 'duplicates', 'ignored',
                         'anomalies', 'decode_errors', 'activity_inserted'):
                setattr(total, name, getattr(total, name) + getattr(window, name))
            total.errors.extend(window.errors)
            if window.errors:
                break
            total.to_block = window.to_block
            total.processed_blocks += window.to_block - window.from_block + 1
            window_start = window.to_block + 1

        total.blocks_remaining = to_block - total.to_block
        return total

    async def reindex_from(self, block_number: int) -> IndexResult:
        """Reset the cursor so the next run starts at ``block_number``, then run"""
        if block_number < 0:
            raise InvalidRangeError(f"Invalid block {block_number}")
        async with self._lock:
            await self.cursor_store.reset(self.stream_id, block_number - 1)
        return await self.run_once()

    async def start(self, poll_interval: float) -> None:
        """Run until stopped, catching up in back-to-back runs when behind"""
        self.running = True
        logger.info(f"Starting indexer for stream {self.stream_id}")
        while self.running:
            try:
                result = await self.run_once()
            except Exception:
                # Connection drops surface as OSError or asyncpg InterfaceError
                logger.exception(f"Indexer run for stream {self.stream_id} failed, retrying")
                await asyncio.sleep(poll_interval)
                continue
            if result.errors or result.blocks_remaining == 0:
                await asyncio.sleep(poll_interval)

    def stop(self):
        """Stop the polling loop after the current run."""
        logger.info("Stopping indexer...")
        self.running = False


@dataclass
class Engine:
    """Everything the entry points need, built once from settings"""
    settings: Dict[str, Any]
    rpc: EthereumRPC
    store: ListingStore
    cursor_store: BlockCursorStore
    projector: StateProjector
    pipeline: LogPipeline
    indexer: EventIndexer
    webhook: WebhookIngestor
    reconciler: Any = field(default=None)


def build_engine(settings: Dict[str, Any], pool=None, rpc: Optional[EthereumRPC] = None) -> Engine:
    """Wire the indexing and reconciliation engine from validated settings.

    Args:
        settings: Output of ``config.load_config``
        pool: Optional database pool; fetched lazily from ``database`` if omitted
        rpc: Optional preconfigured client
    """
    # Import here to avoid circular imports
    from reconcile import ReconciliationService

    rpc = rpc or EthereumRPC.from_settings(settings)
    store = ListingStore(pool)
    cursor_store = BlockCursorStore(pool)
    projector = StateProjector(
        store,
        payment_token=settings['payment_token_address'],
        payment_decimals=settings['payment_token_decimals'],
        default_listing_days=settings['default_listing_days'],
        fee_recipient=settings.get('fee_recipient') or None,
    )
    pipeline = LogPipeline(
        projector,
        exchange_address=settings['exchange_address'],
        seaport_address=settings['seaport_address'],
        payment_token=settings['payment_token_address'],
    )
    indexer = EventIndexer(
        rpc,
        pipeline,
        cursor_store,
        stream_id=settings['stream_id'],
        start_block=settings['start_block'],
        max_blocks_per_run=settings['max_blocks_per_run'],
        log_chunk_size=settings['log_chunk_size'],
        confirmations=settings['confirmations'],
    )
    reconciler = ReconciliationService(
        rpc,
        store,
        projector,
        exchange_address=settings['exchange_address'],
        seaport_address=settings['seaport_address'],
        concurrency=settings['reconcile_concurrency'],
    )
    return Engine(
        settings=settings,
        rpc=rpc,
        store=store,
        cursor_store=cursor_store,
        projector=projector,
        pipeline=pipeline,
        indexer=indexer,
        webhook=WebhookIngestor(pipeline, rpc),
        reconciler=reconciler,
    )


__all__ = [
    'EventIndexer',
    'IndexResult',
    'Engine',
    'build_engine',
    'BlockCursorStore',
    'LogPipeline',
    'WebhookIngestor',
    'IngestResult',
    'extract_transactions',
    'verify_signature',
]
