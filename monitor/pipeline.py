"""Decode-and-apply pipeline shared by the polling and webhook paths."""
import asyncio
import logging
from dataclasses import dataclass, field, asdict, replace
from typing import Any, Dict, Iterable, List, Optional

from decoders import DecodeError, RawLog, normalize_log
from decoders.exchange import ExchangeDecoder
from decoders.seaport import SeaportDecoder
from projector import ApplyResult, ApplyStatus, StateProjector

logger = logging.getLogger(__name__)


@dataclass
class ApplyCounts:
    """Tally of apply outcomes for one batch of logs"""
    logs_seen: int = 0
    events_applied: int = 0
    duplicates: int = 0
    ignored: int = 0
    anomalies: int = 0
    decode_errors: int = 0
    activity_inserted: int = 0
    errors: List[str] = field(default_factory=list)

    def count(self, result: ApplyResult) -> None:
        if result.status == ApplyStatus.APPLIED:
            self.events_applied += 1
        elif result.status == ApplyStatus.DUPLICATE:
            self.duplicates += 1
        elif result.status == ApplyStatus.IGNORED:
            self.ignored += 1
        else:
            self.anomalies += 1
        if result.activity_inserted:
            self.activity_inserted += 1

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class LogPipeline:
    """Routes logs to the decoder for their contract and applies the results.

    Logs are applied strictly in the order given; callers sort them by
    (block_number, log_index) first. A database failure propagates so the
    caller can abort the batch.
    """

    def __init__(self, projector: StateProjector, exchange_address: str, seaport_address: str, payment_token: str):
        self.projector = projector
        self.decoders = {
            exchange_address.lower(): ExchangeDecoder(exchange_address),
            seaport_address.lower(): SeaportDecoder(seaport_address, payment_token),
        }

    @property
    def addresses(self) -> List[str]:
        return list(self.decoders)

    def tracks(self, address: Optional[str]) -> bool:
        return bool(address) and address.lower() in self.decoders

    def normalize(self, logs: Iterable[Dict[str, Any]], counts: ApplyCounts, tx_hash: Optional[str] = None) -> List[RawLog]:
        """Normalize, drop untracked and removed logs, sort into chain order"""
        raw_logs = []
        for log in logs:
            try:
                raw = normalize_log(log, tx_hash)
            except DecodeError as e:
                counts.decode_errors += 1
                logger.warning(f"Skipping unparseable log {log!r}: {e}")
                continue
            if not self.tracks(raw.address):
                continue
            if raw.removed:
                logger.info(f"Skipping removed log {raw.tx_hash}:{raw.log_index}")
                continue
            raw_logs.append(raw)
        raw_logs.sort(key=lambda raw: raw.sort_key)
        return raw_logs

    async def apply(self, raw_logs: Iterable[RawLog], counts: ApplyCounts) -> None:
        """Decode and project each log in order.

        Decode failures are recorded as anomalies and skipped.

        Raises:
            ProjectionError: A write failed; later logs were not applied
        """
        for raw in raw_logs:
            counts.logs_seen += 1
            decoder = self.decoders[raw.address]
            try:
                event = decoder.decode(raw)
            except DecodeError as e:
                counts.decode_errors += 1
                logger.warning(f"Decode error in {raw.tx_hash}:{raw.log_index}: {e}")
                await self.projector.record_decode_error(raw, e, decoder.contract_type)
                continue

            if event is None:
                continue

            counts.count(await self.projector.apply_event(event))


async def attach_block_timestamps(rpc, raw_logs: List[RawLog]) -> List[RawLog]:
    """Fill in block timestamps the log source left out, one lookup per block.

    ``eth_getLogs`` and transaction receipts carry no timestamp on most
    nodes; without one the projector would stamp rows with indexing time.

    Raises:
        RPCError: A block lookup failed
    """
    missing = sorted({raw.block_number for raw in raw_logs if raw.block_timestamp is None})
    if not missing:
        return raw_logs

    timestamps = {}
    for block_number in missing:
        timestamps[block_number] = await asyncio.to_thread(rpc.get_block_timestamp, block_number)

    return [
        raw if raw.block_timestamp is not None
        else replace(raw, block_timestamp=timestamps[raw.block_number])
        for raw in raw_logs
    ]
