"""Push ingestion of transaction logs from a webhook provider.

The ingestor feeds the same decode/apply pipeline as polling. It never
touches the block cursor: a webhook only ever covers single transactions,
so it cannot vouch for a whole block range being indexed.
"""
import asyncio
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from asyncpg.exceptions import PostgresError

from projector import ProjectionError
from rpc import RPCError
from .pipeline import ApplyCounts, LogPipeline, attach_block_timestamps

logger = logging.getLogger(__name__)

ADDRESS_ACTIVITY = 'ADDRESS_ACTIVITY'
MINED_TRANSACTION = 'MINED_TRANSACTION'
SIGNATURE_HEADER = 'x-alchemy-signature'


class WebhookPayloadError(ValueError):
    """Raised for a payload that is not a recognised webhook shape."""
    pass


@dataclass
class IngestResult(ApplyCounts):
    tx_hash: Optional[str] = None


def verify_signature(body: bytes, signature: Optional[str], signing_key: str) -> bool:
    """Check an HMAC-SHA256 hex signature over the raw request body"""
    if not signature:
        return False
    digest = hmac.new(signing_key.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, signature.strip().lower())


def extract_transactions(payload: Mapping[str, Any]) -> List[Tuple[str, List[Dict[str, Any]]]]:
    """Pull ``(tx_hash, logs)`` pairs out of a webhook payload.

    ``ADDRESS_ACTIVITY`` payloads list activity entries, each optionally
    carrying the emitted ``log``. ``MINED_TRANSACTION`` payloads carry one
    transaction and its ``logs``. Pairs keep first-seen transaction order.

    Raises:
        WebhookPayloadError: Unknown type or missing ``event``
    """
    if not isinstance(payload, Mapping):
        raise WebhookPayloadError("payload must be an object")

    kind = payload.get('type')
    event = payload.get('event')
    if not isinstance(event, Mapping):
        raise WebhookPayloadError("payload has no event object")

    grouped: Dict[str, List[Dict[str, Any]]] = {}

    if kind == ADDRESS_ACTIVITY:
        for activity in event.get('activity') or []:
            tx_hash = activity.get('hash')
            log = activity.get('log')
            if not tx_hash:
                continue
            logs = grouped.setdefault(tx_hash.lower(), [])
            if isinstance(log, Mapping):
                logs.append(dict(log))
    elif kind == MINED_TRANSACTION:
        transaction = event.get('transaction') or {}
        tx_hash = transaction.get('hash')
        if not tx_hash:
            raise WebhookPayloadError("mined transaction payload has no hash")
        logs = event.get('logs')
        if logs is None:
            logs = transaction.get('logs') or []
        grouped[tx_hash.lower()] = [dict(log) for log in logs]
    else:
        raise WebhookPayloadError(f"unsupported webhook type {kind!r}")

    return list(grouped.items())


class WebhookIngestor:
    """Applies the logs of single transactions, pushed by a webhook or submitted by hash"""

    def __init__(self, pipeline: LogPipeline, rpc=None):
        """Initialize the ingestor.

        Args:
            pipeline: Decode/apply pipeline shared with the indexer
            rpc: Optional chain client, used to resolve block timestamps and
                to fetch receipts in :meth:`ingest_transaction`
        """
        self.pipeline = pipeline
        self.rpc = rpc

    async def ingest(self, tx_hash: str, logs: Iterable[Mapping[str, Any]]) -> IngestResult:
        """Decode and apply the tracked-contract logs of one transaction.

        Safe to call for a transaction polling already applied (or will
        apply): the projector's uniqueness guarantees make the second
        application a no-op.
        """
        result = IngestResult(tx_hash=tx_hash.lower())
        raw_logs = self.pipeline.normalize(logs, result, tx_hash=tx_hash.lower())
        if not raw_logs:
            logger.debug(f"No tracked logs in {tx_hash}")
            return result

        try:
            if self.rpc is not None:
                raw_logs = await attach_block_timestamps(self.rpc, raw_logs)
            await self.pipeline.apply(raw_logs, result)
        except RPCError as e:
            logger.error(f"Block lookup for {tx_hash} failed: {e}")
            result.errors.append(f"rpc: {e}")
        except (ProjectionError, PostgresError) as e:
            logger.error(f"Webhook ingest of {tx_hash} failed: {e}")
            result.errors.append(str(e))

        logger.info(
            f"Webhook {tx_hash}: {result.events_applied} applied, "
            f"{result.duplicates} duplicate, {result.ignored} ignored"
        )
        return result

    async def ingest_payload(self, payload: Mapping[str, Any]) -> List[IngestResult]:
        """Ingest every transaction in a webhook payload"""
        return [
            await self.ingest(tx_hash, logs)
            for tx_hash, logs in extract_transactions(payload)
        ]

    async def ingest_transaction(self, tx_hash: str) -> IngestResult:
        """Fetch a transaction's receipt and apply its tracked logs.

        Used when a client reports a transaction it just sent. Waits for the
        receipt according to the client's retry policy.

        Raises:
            NotFoundError: The receipt did not become visible in time
            RPCError: The node could not be reached
        """
        if self.rpc is None:
            raise RuntimeError("ingest_transaction needs an RPC client")
        receipt = await asyncio.to_thread(self.rpc.get_transaction_receipt, tx_hash)
        if receipt.get('status') == '0x0':
            logger.info(f"Transaction {tx_hash} reverted, nothing to apply")
        return await self.ingest(tx_hash, receipt.get('logs') or [])
