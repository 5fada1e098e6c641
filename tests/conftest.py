"""Shared fixtures: in-memory store, cursor and RPC fakes, and log builders.

The fakes honour the same contract as the asyncpg-backed classes: inserts
are idempotent on the natural keys, terminal updates are guarded, activity
is unique on (tx_hash, type) and a failed transaction leaves no writes.
"""
import copy
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

import pytest
from eth_abi import encode as abi_encode
from eth_utils import encode_hex

from listings import LISTINGS, OFFERS, TERMINAL_COLUMNS, natural_key_column
from monitor.pipeline import LogPipeline
from projector import StateProjector
from rpc import InvalidRangeError, NotFoundError, UnavailableError

EXCHANGE_ADDRESS = '0x06fb7424ba65d587405b9c754bc40da9398b72f0'
SEAPORT_ADDRESS = '0x0000000000000068f116a894984e2db1123eb395'
USDC = '0x833589fcd6edb6e08f4c7c32d4f71b54bda02913'
SELLER = '0x8ba1f109551bd432803012645ac136ddd64dba72'
BUYER = '0x70997970c51812dc3a010c7d01b50e0d17dc79c8'
NFT = '0x5fbdb2315678afecb367f032d93f642f64180aa3'
FEE_RECIPIENT = '0x0db12c0a67bc5b8942ea3126a465d7a0b23126c7'

# Seaport getOrderHash of sample_order(): EIP-712 struct hash of OrderComponents
# under typehash 0xfa445660...2c2f. test_orders re-derives it field by field
# with eth-abi and keccak, outside orders.hashing.
SAMPLE_ORDER_HASH = '0x6a0dd6400b3394e64b1b63e4cd3a3f8427bf81062a84a81436d5afab3167da38'


def sample_order(**overrides) -> Dict[str, Any]:
    """A one-NFT listing for 99 USDC to the seller plus 1 USDC fee"""
    order = {
        'offerer': '0x8ba1f109551bD432803012645Ac136ddd64DBA72',
        'zone': '0x0000000000000000000000000000000000000000',
        'offer': [{
            'itemType': 2,
            'token': '0x5FbDB2315678afecb367f032d93F642f64180aa3',
            'identifierOrCriteria': '7',
            'startAmount': '1',
            'endAmount': '1',
        }],
        'consideration': [
            {
                'itemType': 1,
                'token': '0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913',
                'identifierOrCriteria': '0',
                'startAmount': '99000000',
                'endAmount': '99000000',
                'recipient': '0x8ba1f109551bD432803012645Ac136ddd64DBA72',
            },
            {
                'itemType': 1,
                'token': '0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913',
                'identifierOrCriteria': '0',
                'startAmount': '1000000',
                'endAmount': '1000000',
                'recipient': '0x0db12C0A67bc5B8942ea3126a465d7a0b23126C7',
            },
        ],
        'orderType': 0,
        'startTime': '1700000000',
        'endTime': '1702592000',
        'zoneHash': '0x' + '00' * 32,
        'salt': '12345678901234567890',
        'conduitKey': '0x' + '00' * 32,
        'counter': '0',
    }
    order.update(overrides)
    return order


def sample_offer_order(**overrides) -> Dict[str, Any]:
    """A buyer offering 50 USDC for token 7"""
    order = {
        'offerer': BUYER,
        'offer': [{
            'itemType': 1,
            'token': USDC,
            'identifierOrCriteria': '0',
            'startAmount': '50000000',
            'endAmount': '50000000',
        }],
        'consideration': [{
            'itemType': 2,
            'token': NFT,
            'identifierOrCriteria': '7',
            'startAmount': '1',
            'endAmount': '1',
            'recipient': BUYER,
        }],
        'startTime': '1700000000',
        'endTime': '1702592000',
        'salt': '42',
        'counter': '0',
    }
    order.update(overrides)
    return order


def tx_hash_for(block: int, index: int) -> str:
    return '0x' + f"{block:032x}{index:032x}"


def make_log(
    abi, indexed=(), data=(), address=EXCHANGE_ADDRESS, block=100, index=0,
    tx_hash: Optional[str] = None, **extra
) -> Dict[str, Any]:
    """Build an eth_getLogs-shaped log for an EventABI"""
    log = {
        'address': address,
        'topics': [abi.topic0] + [
            encode_hex(abi_encode([abi_type], [value]))
            for abi_type, value in zip(abi.indexed, indexed)
        ],
        'data': encode_hex(abi_encode(list(abi.data), list(data))) if abi.data else '0x',
        'blockNumber': hex(block),
        'logIndex': hex(index),
        'transactionHash': tx_hash or tx_hash_for(block, index),
        'removed': False,
    }
    log.update(extra)
    return log


class FakeConnection:
    """Stand-in for an asyncpg connection; the fake store ignores it"""
    pass


class FakeStore:
    """In-memory ListingStore with the same uniqueness and guard semantics"""

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            LISTINGS: [],
            OFFERS: [],
            'activity': [],
            'anomalies': [],
        }
        self.fail_with: Optional[Exception] = None
        self.fail_on: Optional[str] = None

    def _maybe_fail(self, operation: str):
        if self.fail_with is not None and self.fail_on in (None, operation):
            raise self.fail_with

    @asynccontextmanager
    async def connection(self):
        yield FakeConnection()

    @asynccontextmanager
    async def transaction(self):
        snapshot = copy.deepcopy(self.tables)
        try:
            yield FakeConnection()
        except BaseException:
            self.tables = snapshot
            raise

    # Views used by tests

    @property
    def listings(self) -> List[Dict[str, Any]]:
        return self.tables[LISTINGS]

    @property
    def offers(self) -> List[Dict[str, Any]]:
        return self.tables[OFFERS]

    @property
    def activity(self) -> List[Dict[str, Any]]:
        return self.tables['activity']

    @property
    def anomalies(self) -> List[Dict[str, Any]]:
        return self.tables['anomalies']

    def add_row(self, table: str, **row) -> Dict[str, Any]:
        """Insert a row directly, bypassing uniqueness checks"""
        full = self._defaults(table)
        full.update(row)
        self.tables[table].append(full)
        return full

    # Writes

    def _defaults(self, table: str) -> Dict[str, Any]:
        row = {
            'id': uuid4(),
            'created_at': datetime.now(timezone.utc),
            'updated_at': None,
        }
        if table in (LISTINGS, OFFERS):
            for column in (
                'blockchain_listing_id', 'blockchain_offer_id', 'order_hash', 'buyer_address',
                'seller_address', 'price', 'amount', 'currency', 'expiry', 'metadata_uri',
                'order_parameters', 'counter', 'tx_hash', 'sale_tx_hash', 'accept_tx_hash',
                'cancel_tx_hash', 'sold_at', 'accepted_at', 'cancelled_at', 'last_reconciled_at',
            ):
                row[column] = None
        if table == 'anomalies':
            row['resolved_at'] = None
        return row

    def _insert(self, table: str, row: Dict[str, Any], unique) -> bool:
        for existing in self.tables[table]:
            for columns in unique:
                values = tuple(row.get(column) for column in columns)
                if None not in values and values == tuple(existing.get(column) for column in columns):
                    return False
        full = self._defaults(table)
        full.update(copy.deepcopy(row))
        self.tables[table].append(full)
        return True

    async def insert_listing(self, conn, row):
        self._maybe_fail('insert_listing')
        return self._insert(LISTINGS, row, [('blockchain_listing_id',), ('order_hash',)])

    async def insert_offer(self, conn, row):
        self._maybe_fail('insert_offer')
        return self._insert(OFFERS, row, [('blockchain_offer_id',), ('order_hash',)])

    async def insert_activity(self, conn, row):
        self._maybe_fail('insert_activity')
        return self._insert('activity', row, [('tx_hash', 'type')])

    async def activity_exists(self, conn, tx_hash, activity_type):
        return any(
            row['tx_hash'] == tx_hash and row['type'] == activity_type
            for row in self.activity
        )

    async def record_anomaly(self, conn, row):
        self._maybe_fail('record_anomaly')
        return self._insert('anomalies', row, [('dedup_key',)])

    # Lookups

    def _find(self, table, contract_type, key):
        column = natural_key_column(table, contract_type)
        for row in self.tables[table]:
            if row['contract_type'] == contract_type and row.get(column) == key:
                return row
        return None

    async def get_listing(self, conn, contract_type, key):
        row = self._find(LISTINGS, contract_type, key)
        return copy.deepcopy(row) if row else None

    async def get_offer(self, conn, contract_type, key):
        row = self._find(OFFERS, contract_type, key)
        return copy.deepcopy(row) if row else None

    # Guarded transitions

    @staticmethod
    def _is_open(table, row) -> bool:
        return all(row.get(column) is None for column in TERMINAL_COLUMNS[table])

    def _mark(self, table, contract_type, key, assignments) -> bool:
        self._maybe_fail('mark')
        row = self._find(table, contract_type, key)
        if row is None or not self._is_open(table, row):
            return False
        row.update(assignments)
        row['updated_at'] = datetime.now(timezone.utc)
        return True

    async def mark_listing_sold(self, conn, contract_type, key, buyer, tx_hash, at):
        return self._mark(LISTINGS, contract_type, key, {
            'sold_at': at, 'buyer_address': buyer, 'sale_tx_hash': tx_hash,
        })

    async def mark_listing_cancelled(self, conn, contract_type, key, tx_hash, at):
        return self._mark(LISTINGS, contract_type, key, {
            'cancelled_at': at, 'cancel_tx_hash': tx_hash,
        })

    async def mark_offer_accepted(self, conn, contract_type, key, seller, tx_hash, at):
        return self._mark(OFFERS, contract_type, key, {
            'accepted_at': at, 'seller_address': seller, 'accept_tx_hash': tx_hash,
        })

    async def mark_offer_cancelled(self, conn, contract_type, key, tx_hash, at):
        return self._mark(OFFERS, contract_type, key, {
            'cancelled_at': at, 'cancel_tx_hash': tx_hash,
        })

    async def cancel_below_counter(self, conn, offerer, counter, tx_hash, at):
        owner = {LISTINGS: 'seller_address', OFFERS: 'buyer_address'}
        cancelled = {}
        for table in (LISTINGS, OFFERS):
            cancelled[table] = []
            for row in self.tables[table]:
                if (
                    row['contract_type'] == 'seaport'
                    and row[owner[table]] == offerer
                    and row['counter'] is not None and int(row['counter']) < counter
                    and self._is_open(table, row)
                ):
                    row.update({'cancelled_at': at, 'cancel_tx_hash': tx_hash})
                    cancelled[table].append(row['order_hash'])
        return cancelled

    # Reconciliation support

    async def fetch_open(self, conn, table, limit):
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        rows = [row for row in self.tables[table] if self._is_open(table, row)]
        rows.sort(key=lambda row: (
            row['last_reconciled_at'] is not None,
            row['last_reconciled_at'] or oldest,
            row['created_at'],
        ))
        return copy.deepcopy(rows[:limit])

    async def touch_reconciled(self, conn, table, row_ids, at):
        for row in self.tables[table]:
            if row['id'] in row_ids:
                row['last_reconciled_at'] = at

    async def fetch_seaport_orders(self, conn, table, limit, offset=0):
        rows = [
            row for row in self.tables[table]
            if row['contract_type'] == 'seaport' and row['order_parameters'] is not None
        ]
        return [
            {key: row[key] for key in ('id', 'order_hash', 'order_parameters', 'counter')}
            for row in rows[offset:offset + limit]
        ]

    async def update_order_hash(self, conn, table, row_id, order_hash):
        if any(row['order_hash'] == order_hash and row['id'] != row_id for row in self.tables[table]):
            return False
        for row in self.tables[table]:
            if row['id'] == row_id:
                row['order_hash'] = order_hash
        return True

    # Reporting

    async def list_anomalies(self, conn, kind=None, limit=100):
        rows = [
            row for row in self.anomalies
            if row['resolved_at'] is None and (kind is None or row['kind'] == kind)
        ]
        return copy.deepcopy(rows[::-1][:limit])

    async def get_stats(self, conn):
        return {
            'open_listings': sum(self._is_open(LISTINGS, row) for row in self.listings),
            'sold_listings': sum(row['sold_at'] is not None for row in self.listings),
            'cancelled_listings': sum(row['cancelled_at'] is not None for row in self.listings),
            'open_offers': sum(self._is_open(OFFERS, row) for row in self.offers),
            'accepted_offers': sum(row['accepted_at'] is not None for row in self.offers),
            'cancelled_offers': sum(row['cancelled_at'] is not None for row in self.offers),
            'activity': len(self.activity),
            'open_anomalies': sum(row['resolved_at'] is None for row in self.anomalies),
        }


class FakeCursorStore:
    """In-memory BlockCursorStore; advance never moves backwards"""

    def __init__(self, initial: Optional[Dict[str, int]] = None):
        self.cursors: Dict[str, int] = dict(initial or {})
        self.fail_with: Optional[Exception] = None

    async def get(self, stream_id):
        if self.fail_with is not None:
            raise self.fail_with
        return self.cursors.get(stream_id)

    async def advance(self, stream_id, block_number):
        current = self.cursors.get(stream_id)
        self.cursors[stream_id] = block_number if current is None else max(current, block_number)
        return self.cursors[stream_id]

    async def reset(self, stream_id, block_number):
        self.cursors[stream_id] = block_number
        return block_number


class FakeRPC:
    """Chain stub serving canned logs and contract reads"""

    def __init__(self, head: int = 0, logs: Optional[List[Dict[str, Any]]] = None):
        self.head = head
        self.logs = list(logs or [])
        self.chain_id = 8453
        self.max_span: Optional[int] = None
        self.fail_get_logs: Optional[Exception] = None
        self.get_logs_calls: List[tuple] = []
        self.contract_state: Dict[tuple, Any] = {}
        self.read_calls: List[tuple] = []
        self.passthrough_calls: List[Any] = []
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.timestamp_calls: List[int] = []
        self.fail_timestamps: Optional[Exception] = None
        # Block n is mined n seconds after this
        self.block_time_base = int(datetime.now(timezone.utc).timestamp())

    def get_block_number(self) -> int:
        if isinstance(self.head, Exception):
            raise self.head
        return self.head

    def get_chain_id(self) -> int:
        return self.chain_id

    def get_logs(self, addresses, from_block, to_block, topics=None):
        if from_block > to_block:
            raise InvalidRangeError(f"Invalid range {from_block}-{to_block}")
        self.get_logs_calls.append((from_block, to_block))
        if self.fail_get_logs is not None:
            raise self.fail_get_logs
        if self.max_span is not None and to_block - from_block + 1 > self.max_span:
            raise InvalidRangeError("query returned more than 10000 results", code=-32005)
        wanted = {address.lower() for address in addresses}
        return [
            log for log in self.logs
            if log['address'].lower() in wanted
            and from_block <= int(log['blockNumber'], 16) <= to_block
        ]

    def read_contract(self, address, signature, output_types, args=(), block='latest'):
        key = (signature,) + tuple(args)
        self.read_calls.append(key)
        value = self.contract_state.get(key)
        if value is None:
            raise UnavailableError(f"no canned state for {key}", method='eth_call')
        if isinstance(value, Exception):
            raise value
        return value

    def get_block_timestamp(self, block_number):
        self.timestamp_calls.append(block_number)
        if self.fail_timestamps is not None:
            raise self.fail_timestamps
        return self.block_time_base + block_number

    def get_transaction_receipt(self, tx_hash):
        receipt = self.receipts.get(tx_hash.lower())
        if receipt is None:
            raise NotFoundError(f"Transaction {tx_hash} not found")
        if isinstance(receipt, Exception):
            raise receipt
        return receipt

    def passthrough(self, payload):
        self.passthrough_calls.append(payload)
        if isinstance(payload, list):
            return [{'jsonrpc': '2.0', 'id': item.get('id'), 'result': hex(self.head)} for item in payload]
        return {'jsonrpc': '2.0', 'id': payload.get('id'), 'result': hex(self.head)}


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def cursor_store():
    return FakeCursorStore()


@pytest.fixture
def fake_rpc():
    return FakeRPC()


@pytest.fixture
def projector(store):
    return StateProjector(store, payment_token=USDC, payment_decimals=6, default_listing_days=7)


@pytest.fixture
def pipeline(projector):
    return LogPipeline(
        projector,
        exchange_address=EXCHANGE_ADDRESS,
        seaport_address=SEAPORT_ADDRESS,
        payment_token=USDC,
    )


@pytest.fixture
def settings():
    return {
        'db_url': 'postgresql://root@localhost:26257/marketplace_test?sslmode=disable',
        'rpc_url': 'http://localhost:8545',
        'chain_id': 8453,
        'exchange_address': EXCHANGE_ADDRESS,
        'seaport_address': SEAPORT_ADDRESS,
        'payment_token_address': USDC,
        'payment_token_decimals': 6,
        'start_block': 100,
        'stream_id': 'marketplace',
        'max_blocks_per_run': 50,
        'log_chunk_size': 20,
        'confirmations': 0,
        'rpc_max_attempts': 2,
        'rpc_retry_interval': 0.0,
        'rpc_max_time': 1,
        'rpc_timeout': 1,
        'poll_interval': 1,
        'reconcile_interval': 1,
        'reconcile_batch_size': 10,
        'reconcile_concurrency': 2,
        'default_listing_days': 7,
        'fee_recipient': '',
        'webhook_signing_key': '',
        'admin_token': '',
    }
