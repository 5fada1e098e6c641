"""Protocol event decoders.

Raw logs arrive in slightly different shapes from ``eth_getLogs`` and from
webhook payloads. :func:`normalize_log` turns either into a :class:`RawLog`;
the per-protocol decoders turn a RawLog into a typed domain event.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak, encode_hex
from hexbytes import HexBytes

from .events import LogRef

logger = logging.getLogger(__name__)


class DecodeError(Exception):
    """Raised when a log with a known signature has a malformed payload."""
    def __init__(self, message: str, event_name: Optional[str] = None):
        self.event_name = event_name
        super().__init__(f"{event_name}: {message}" if event_name else message)


@dataclass(frozen=True)
class RawLog:
    address: str
    topics: Tuple[str, ...]
    data: HexBytes
    block_number: int
    tx_hash: str
    log_index: int
    removed: bool = False
    block_timestamp: Optional[int] = None

    @property
    def topic0(self) -> Optional[str]:
        return self.topics[0] if self.topics else None

    @property
    def ref(self) -> LogRef:
        return LogRef(
            tx_hash=self.tx_hash,
            block_number=self.block_number,
            log_index=self.log_index,
            address=self.address,
            block_timestamp=self.block_timestamp,
        )

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value)
    return int(text, 16) if text.lower().startswith('0x') else int(text)


def _as_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return encode_hex(bytes(value))
    return str(value).lower()


def normalize_log(log: Mapping[str, Any], tx_hash: Optional[str] = None) -> RawLog:
    """Build a RawLog from an RPC or webhook log object.

    Accepts the JSON-RPC shape (``address``, ``blockNumber``, ``logIndex``,
    ``transactionHash``) and the webhook GraphQL shape (``account.address``,
    ``index``, ``transaction.hash``). Hex strings and ints are both accepted.

    Raises:
        DecodeError: Required fields are missing or unparseable
    """
    try:
        address = log.get('address')
        if address is None and isinstance(log.get('account'), Mapping):
            address = log['account'].get('address')

        tx = log.get('transactionHash') or tx_hash
        if tx is None and isinstance(log.get('transaction'), Mapping):
            tx = log['transaction'].get('hash')

        block_number = log.get('blockNumber')
        if block_number is None and isinstance(log.get('transaction'), Mapping):
            block = log['transaction'].get('block')
            if isinstance(block, Mapping):
                block_number = block.get('number')

        log_index = log.get('logIndex', log.get('index'))

        if address is None or tx is None or block_number is None or log_index is None:
            raise DecodeError("log is missing address, transaction hash, block number or index")

        return RawLog(
            address=_as_hex(address),
            topics=tuple(_as_hex(topic) for topic in log.get('topics') or ()),
            data=HexBytes(log.get('data') or '0x'),
            block_number=_as_int(block_number),
            tx_hash=_as_hex(tx),
            log_index=_as_int(log_index),
            removed=bool(log.get('removed', False)),
            block_timestamp=_as_int(log.get('blockTimestamp')),
        )
    except (TypeError, ValueError) as e:
        raise DecodeError(f"unparseable log: {e}") from e


@dataclass(frozen=True)
class EventABI:
    """Signature and argument layout of one event"""
    name: str
    signature: str
    indexed: Tuple[str, ...]
    data: Tuple[str, ...]

    @property
    def topic0(self) -> str:
        return encode_hex(keccak(text=self.signature))

    def decode_args(self, log: RawLog) -> Tuple[Tuple[Any, ...], Tuple[Any, ...]]:
        """Decode indexed topics and data into two tuples.

        Raises:
            DecodeError: Topic count or data layout does not match
        """
        if len(log.topics) != len(self.indexed) + 1:
            raise DecodeError(
                f"expected {len(self.indexed) + 1} topics, got {len(log.topics)}",
                self.name
            )
        try:
            indexed = tuple(
                abi_decode([abi_type], HexBytes(topic))[0]
                for abi_type, topic in zip(self.indexed, log.topics[1:])
            )
            data = tuple(abi_decode(list(self.data), bytes(log.data))) if self.data else ()
        except (DecodingError, ValueError, TypeError, OverflowError) as e:
            raise DecodeError(f"malformed payload: {e}", self.name) from e
        return indexed, data


class ProtocolDecoder:
    """Base class for per-protocol decoders.

    Subclasses register handlers in ``handlers``: a mapping of EventABI to a
    method building the domain event from ``(log, indexed, data)``.
    """

    contract_type: str = ''
    events: Sequence[EventABI] = ()

    def __init__(self, address: Optional[str] = None):
        self.address = address.lower() if address else None
        self._by_topic: Dict[str, Tuple[EventABI, Callable]] = {
            abi.topic0: (abi, getattr(self, f"_build_{abi.name}"))
            for abi in self.events
        }

    @property
    def topics(self) -> Tuple[str, ...]:
        return tuple(self._by_topic)

    def handles(self, log: RawLog) -> bool:
        """True when the log is from this decoder's contract (if bound)"""
        return self.address is None or log.address == self.address

    def decode(self, log: RawLog):
        """Decode one log into a domain event.

        Returns:
            The event, or None for an unknown signature or a removed log

        Raises:
            DecodeError: Known signature with a malformed payload
        """
        if log.removed:
            logger.debug(f"Skipping removed log {log.tx_hash}:{log.log_index}")
            return None
        entry = self._by_topic.get(log.topic0)
        if entry is None:
            return None
        abi, build = entry
        indexed, data = abi.decode_args(log)
        try:
            return build(log, indexed, data)
        except (TypeError, ValueError, IndexError) as e:
            raise DecodeError(f"unexpected argument shape: {e}", abi.name) from e


def lower(address: Any) -> str:
    """Lower-case an address decoded by eth_abi (checksummed str)"""
    return str(address).lower()


__all__ = [
    'DecodeError',
    'RawLog',
    'EventABI',
    'ProtocolDecoder',
    'normalize_log',
    'lower',
]
