"""RPC module for interacting with an Ethereum-compatible JSON-RPC endpoint.

Calls go through a shared ``requests.Session``. Transient transport failures
and "not yet visible" transaction lookups are retried according to an injected
:class:`RetryPolicy`; everything else fails immediately with a typed error.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import backoff
import requests
from eth_abi import decode as abi_decode, encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import encode_hex, decode_hex, function_signature_to_4byte_selector, to_hex

logger = logging.getLogger(__name__)

# JSON-RPC codes providers use for oversized or malformed log ranges
RANGE_ERROR_CODES = (-32602, -32005)
RANGE_ERROR_HINTS = (
    'block range',
    'range too large',
    'query returned more than',
    'exceed maximum block range',
    'too many blocks',
)
RETRYABLE_HTTP_STATUS = (429, 500, 502, 503, 504)


class RPCError(Exception):
    """Base exception for RPC errors"""
    def __init__(self, message: str, code: Optional[int] = None, method: Optional[str] = None):
        self.code = code
        self.method = method
        super().__init__(f"RPC Error [{code}] in {method}: {message}" if code else message)

class NodeConnectionError(RPCError):
    """Raised when a request fails in transport (timeout, refused, 429, 5xx)"""
    pass

class UnavailableError(RPCError):
    """Raised when transient failures outlast the retry policy"""
    pass

class NotFoundError(RPCError):
    """Raised when a transaction or receipt never became visible"""
    pass

class InvalidRangeError(RPCError):
    """Raised for a malformed or oversized log range. Never retried."""
    pass

class NodeError(RPCError):
    """Raised when the node answers with a JSON-RPC error object"""
    pass

class CallRevertedError(NodeError):
    """Raised when an eth_call reverts, returns no data or returns data that does not decode"""
    pass


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry settings shared by every retried call.

    ``max_attempts`` counts the first try. ``max_time`` caps the total seconds
    spent, whichever limit is hit first wins.
    """
    max_attempts: int = 5
    interval: float = 1.0
    max_time: float = 30.0
    jitter: bool = True
    exponential: bool = False

    def _wait_kwargs(self) -> Dict[str, Any]:
        kwargs = {
            'max_tries': self.max_attempts,
            'max_time': self.max_time,
            'jitter': backoff.full_jitter if self.jitter else None,
        }
        if self.exponential:
            kwargs['wait_gen'] = backoff.expo
            kwargs['factor'] = self.interval
        else:
            kwargs['wait_gen'] = backoff.constant
            kwargs['interval'] = self.interval
        return kwargs

    def on_exception(self, exceptions):
        """Decorator retrying while ``exceptions`` are raised"""
        return backoff.on_exception(
            exception=exceptions,
            on_backoff=_log_backoff,
            **self._wait_kwargs()
        )

    def until_present(self):
        """Decorator retrying while the call returns None"""
        return backoff.on_predicate(
            predicate=lambda result: result is None,
            on_backoff=_log_backoff,
            **self._wait_kwargs()
        )


def _log_backoff(details: Dict[str, Any]) -> None:
    logger.debug(
        f"Retrying {details['target'].__name__} "
        f"(attempt {details['tries']}, waited {details['elapsed']:.1f}s)"
    )


class RPCMethod:
    """Descriptor class for RPC methods"""
    def __init__(self, method_name: str):
        self.method_name = method_name

    def __get__(self, obj, objtype=None):
        if obj is None:
            return self

        def caller(*args) -> Any:
            return obj.request(self.method_name, list(args))

        return caller


def _validate_range(from_block: Any, to_block: Any) -> None:
    for name, value in (('from_block', from_block), ('to_block', to_block)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidRangeError(f"{name} must be an integer block number, got {value!r}")
        if value < 0:
            raise InvalidRangeError(f"{name} must not be negative, got {value}")
    if from_block > to_block:
        raise InvalidRangeError(f"from_block {from_block} is after to_block {to_block}")


def _is_range_error(error: Dict[str, Any]) -> bool:
    if error.get('code') in RANGE_ERROR_CODES:
        return True
    message = str(error.get('message', '')).lower()
    return any(hint in message for hint in RANGE_ERROR_HINTS)


class EthereumRPC:
    """JSON-RPC client for an EVM chain node or hosted provider"""

    def __init__(
        self,
        url: str,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 10,
        session: Optional[requests.Session] = None
    ):
        """Initialize RPC client.

        Args:
            url: HTTP(S) endpoint of the node
            retry_policy: Retry settings for transient failures and lookups
            timeout: Per-request timeout in seconds
            session: Optional preconfigured session (tests inject a mock here)
        """
        self.url = url
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout

        self.session = session or requests.Session()
        self.session.headers['content-type'] = 'application/json'

        # Request ID counter
        self._request_id = 0

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> 'EthereumRPC':
        """Build a client from validated settings"""
        policy = RetryPolicy(
            max_attempts=settings['rpc_max_attempts'],
            interval=settings['rpc_retry_interval'],
            max_time=settings['rpc_max_time'],
        )
        return cls(settings['rpc_url'], retry_policy=policy, timeout=settings['rpc_timeout'])

    def _get_request_id(self) -> int:
        """Get unique request ID"""
        self._request_id += 1
        return self._request_id

    def _post(self, payload: Union[Dict[str, Any], List[Dict[str, Any]]]) -> Any:
        """Send one HTTP request and return the parsed JSON body.

        Raises:
            NodeConnectionError: Transport failure worth retrying
            NodeError: Non-retryable HTTP error or unparseable body
        """
        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise NodeConnectionError(
                f"Request timed out after {self.timeout} seconds"
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise NodeConnectionError(
                f"Failed to connect to node at {self.url}"
            ) from e
        except requests.exceptions.RequestException as e:
            raise NodeConnectionError(f"Request failed: {str(e)}") from e

        if response.status_code in RETRYABLE_HTTP_STATUS:
            raise NodeConnectionError(f"HTTP {response.status_code} from node")

        try:
            body = response.json()
        except ValueError as e:
            if response.status_code >= 400:
                raise NodeError(f"HTTP {response.status_code} from node") from e
            raise NodeError(f"Invalid response format: {str(e)}") from e

        if response.status_code >= 400 and not isinstance(body, (dict, list)):
            raise NodeError(f"HTTP {response.status_code} from node")

        return body

    def _send(self, payload: Union[Dict[str, Any], List[Dict[str, Any]]], method: str) -> Any:
        """POST with transport retries, wrapping exhaustion as UnavailableError"""
        retrying = self.retry_policy.on_exception(NodeConnectionError)(self._post)
        try:
            return retrying(payload)
        except NodeConnectionError as e:
            raise UnavailableError(str(e), method=method) from e

    def request(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        """Make a single JSON-RPC call and return its ``result``.

        Args:
            method: RPC method name
            params: Positional parameters

        Returns:
            The ``result`` member of the response

        Raises:
            UnavailableError: Transport kept failing past the retry policy
            InvalidRangeError: Node rejected a log range
            NodeError: Node returned any other error object
        """
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": list(params or []),
            "id": self._get_request_id()
        }
        body = self._send(payload, method)

        if not isinstance(body, dict):
            raise NodeError(f"Unexpected response type {type(body).__name__}", method=method)

        error = body.get('error')
        if error is not None:
            if not isinstance(error, dict):
                error = {'message': str(error)}
            message = error.get('message', 'Unknown error')
            code = error.get('code', -1)
            if method == 'eth_getLogs' and _is_range_error(error):
                raise InvalidRangeError(message, code, method)
            if method == 'eth_call' and (code == 3 or 'revert' in str(message).lower()):
                raise CallRevertedError(message, code, method)
            raise NodeError(message, code, method)

        if 'result' not in body:
            raise NodeError("Invalid response format: missing result", method=method)
        return body['result']

    def passthrough(self, payload: Union[Dict[str, Any], List[Dict[str, Any]]]) -> Any:
        """Forward a raw JSON-RPC payload (single or batch) and return the body verbatim"""
        method = payload.get('method', 'unknown') if isinstance(payload, dict) else 'batch'
        return self._send(payload, method)

    # Define RPC methods as descriptors
    eth_blockNumber = RPCMethod('eth_blockNumber')
    eth_chainId = RPCMethod('eth_chainId')
    eth_getLogs = RPCMethod('eth_getLogs')
    eth_call = RPCMethod('eth_call')
    eth_getTransactionByHash = RPCMethod('eth_getTransactionByHash')
    eth_getTransactionReceipt = RPCMethod('eth_getTransactionReceipt')
    eth_getBlockByNumber = RPCMethod('eth_getBlockByNumber')

    def get_block_number(self) -> int:
        """Latest block height"""
        return int(self.eth_blockNumber(), 16)

    def get_chain_id(self) -> int:
        return int(self.eth_chainId(), 16)

    def get_block_timestamp(self, block_number: int) -> Optional[int]:
        block = self.eth_getBlockByNumber(to_hex(block_number), False)
        if not block:
            return None
        return int(block['timestamp'], 16)

    def get_logs(
        self,
        addresses: Union[str, Iterable[str]],
        from_block: int,
        to_block: int,
        topics: Optional[List[Any]] = None
    ) -> List[Dict[str, Any]]:
        """Fetch logs emitted by ``addresses`` in ``[from_block, to_block]``.

        Malformed ranges fail before any request is made. The caller is
        responsible for keeping the span within the provider's limit.

        Raises:
            InvalidRangeError: Range is malformed or rejected by the node
        """
        _validate_range(from_block, to_block)

        if isinstance(addresses, str):
            address_filter: Union[str, List[str]] = addresses
        else:
            address_filter = list(addresses)

        log_filter = {
            'address': address_filter,
            'fromBlock': to_hex(from_block),
            'toBlock': to_hex(to_block),
        }
        if topics:
            log_filter['topics'] = topics

        return self.eth_getLogs(log_filter) or []

    def _lookup(self, method: str, tx_hash: str) -> Dict[str, Any]:
        fetch = self.retry_policy.until_present()(lambda: self.request(method, [tx_hash]))
        result = fetch()
        if result is None:
            raise NotFoundError(
                f"{tx_hash} not visible after {self.retry_policy.max_attempts} attempts",
                method=method
            )
        return result

    def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        """Fetch a transaction, waiting for it to become visible.

        Raises:
            NotFoundError: Still unknown once the retry policy is exhausted
        """
        return self._lookup('eth_getTransactionByHash', tx_hash)

    def get_transaction_receipt(self, tx_hash: str) -> Dict[str, Any]:
        """Fetch a mined transaction's receipt, waiting for it to become visible.

        Raises:
            NotFoundError: Still unknown once the retry policy is exhausted
        """
        return self._lookup('eth_getTransactionReceipt', tx_hash)

    def read_contract(
        self,
        address: str,
        signature: str,
        output_types: Sequence[str],
        args: Sequence[Any] = (),
        block: str = 'latest'
    ) -> tuple:
        """Call a view function and decode its return values.

        Args:
            address: Contract address
            signature: Canonical function signature, e.g. ``getCounter(address)``
            output_types: ABI types of the return values
            args: Call arguments matching the signature's input types
            block: Block tag to read at

        Returns:
            Tuple of decoded return values

        Raises:
            CallRevertedError: Call reverted, the address has no code, or the
                return data does not match ``output_types``
        """
        input_types = _signature_input_types(signature)
        data = function_signature_to_4byte_selector(signature) + abi_encode(input_types, list(args))
        raw = self.eth_call({'to': address, 'data': encode_hex(data)}, block)

        payload = decode_hex(raw or '0x')
        if not payload:
            raise CallRevertedError(f"{signature} returned no data", method='eth_call')
        try:
            return tuple(abi_decode(list(output_types), payload))
        except DecodingError as e:
            raise CallRevertedError(
                f"{signature} returned data not matching {list(output_types)}: {e}",
                method='eth_call'
            ) from e


def _signature_input_types(signature: str) -> List[str]:
    """Split ``name(type1,type2)`` into its top-level parameter types"""
    inner = signature[signature.index('(') + 1:signature.rindex(')')]
    types, depth, current = [], 0, ''
    for char in inner:
        if char == ',' and depth == 0:
            types.append(current)
            current = ''
            continue
        if char == '(':
            depth += 1
        elif char == ')':
            depth -= 1
        current += char
    if current:
        types.append(current)
    return types


__all__ = [
    'EthereumRPC',
    'RetryPolicy',
    'RPCMethod',
    'RPCError',
    'NodeConnectionError',
    'UnavailableError',
    'NotFoundError',
    'InvalidRangeError',
    'NodeError',
    'CallRevertedError',
]
