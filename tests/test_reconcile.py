"""Tests for reconciliation sweeps and order hash repair."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from reconcile import ReconciliationService
from rpc import CallRevertedError
from conftest import (
    BUYER,
    EXCHANGE_ADDRESS,
    NFT,
    SAMPLE_ORDER_HASH,
    SEAPORT_ADDRESS,
    SELLER,
    USDC,
    FakeRPC,
    sample_order,
)

ZERO = '0x' + '00' * 20
FUTURE = datetime.now(timezone.utc) + timedelta(days=3)
PAST = datetime.now(timezone.utc) - timedelta(days=3)
ORDER_HASH_BYTES = bytes.fromhex(SAMPLE_ORDER_HASH[2:])


@pytest.fixture
def rpc():
    return FakeRPC(head=1000)


@pytest.fixture
def service(rpc, store, projector):
    return ReconciliationService(
        rpc, store, projector,
        exchange_address=EXCHANGE_ADDRESS,
        seaport_address=SEAPORT_ADDRESS,
        concurrency=2,
    )


def add_listing(store, listing_id='1', expiry=FUTURE):
    return store.add_row(
        'listings',
        contract_type='exchange',
        blockchain_listing_id=listing_id,
        seller_address=SELLER,
        nft_contract=NFT,
        token_id='7',
        price=Decimal('25'),
        currency=USDC,
        expiry=expiry,
    )


def add_seaport_listing(store, order_hash=SAMPLE_ORDER_HASH, counter=0, parameters=None):
    return store.add_row(
        'listings',
        contract_type='seaport',
        order_hash=order_hash,
        seller_address=SELLER,
        nft_contract=NFT,
        token_id='7',
        price=Decimal('99'),
        currency=USDC,
        expiry=FUTURE,
        counter=counter,
        order_parameters=parameters if parameters is not None else sample_order(),
    )


def listing_state(sold=False, cancelled=False, seller=SELLER):
    return (seller, NFT, 7, 25000000, 0, True, sold, cancelled)


@pytest.mark.asyncio
async def test_sold_onchain_is_corrected(service, rpc, store):
    add_listing(store)
    rpc.contract_state[('listings(uint256)', 1)] = listing_state(sold=True)

    result = await service.sweep(10)
    assert (result.checked, result.drifted, result.corrected) == (1, 1, 1)
    assert result.drift[0].kind == 'sold_onchain'
    assert result.drift[0].action == 'corrected'

    row = store.listings[0]
    assert row['sold_at'] is not None
    assert row['sale_tx_hash'] == 'reconcile:1'
    assert row['last_reconciled_at'] is not None
    assert [anomaly['kind'] for anomaly in store.anomalies] == ['buyer_unresolved']


@pytest.mark.asyncio
async def test_cancelled_onchain_is_corrected(service, rpc, store):
    add_listing(store)
    rpc.contract_state[('listings(uint256)', 1)] = listing_state(cancelled=True)

    result = await service.sweep(10)
    assert result.corrected == 1
    assert store.listings[0]['cancelled_at'] is not None
    assert store.activity[-1]['type'] == 'listing_cancelled'


@pytest.mark.asyncio
async def test_missing_onchain_is_flagged_not_deleted(service, rpc, store):
    add_listing(store)
    rpc.contract_state[('listings(uint256)', 1)] = listing_state(seller=ZERO)

    result = await service.sweep(10)
    assert result.flagged == 1
    assert result.corrected == 0
    assert len(store.listings) == 1
    assert store.listings[0]['cancelled_at'] is None
    assert store.anomalies[0]['kind'] == 'missing_onchain'


@pytest.mark.asyncio
async def test_expired_open_only_flagged_by_default(service, rpc, store):
    add_listing(store, expiry=PAST)
    rpc.contract_state[('listings(uint256)', 1)] = listing_state()

    result = await service.sweep(10)
    assert result.drift[0].kind == 'expired_open'
    assert result.flagged == 1
    assert store.listings[0]['cancelled_at'] is None

    result = await service.sweep(10, expire=True)
    assert result.corrected == 1
    assert store.listings[0]['cancel_tx_hash'] == 'reconcile-expired:1'


@pytest.mark.asyncio
async def test_consistent_row_has_no_drift(service, rpc, store):
    add_listing(store)
    rpc.contract_state[('listings(uint256)', 1)] = listing_state()

    result = await service.sweep(10)
    assert result.checked == 1
    assert result.drifted == 0
    assert store.listings[0]['last_reconciled_at'] is not None


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(service, rpc, store):
    add_listing(store)
    rpc.contract_state[('listings(uint256)', 1)] = listing_state(sold=True)

    result = await service.drift_report(10)
    assert result.drifted == 1
    assert result.corrected == 0
    assert result.drift[0].action == 'would_correct'
    row = store.listings[0]
    assert row['sold_at'] is None
    assert row['last_reconciled_at'] is None
    assert store.anomalies == []


@pytest.mark.asyncio
async def test_offer_accepted_onchain(service, rpc, store):
    store.add_row(
        'offers',
        contract_type='exchange',
        blockchain_offer_id='5',
        buyer_address=BUYER,
        nft_contract=NFT,
        token_id='7',
        amount=Decimal('10'),
        expiry=FUTURE,
    )
    rpc.contract_state[('offers(uint256)', 5)] = (BUYER, NFT, 7, 10000000, 0, True, False)

    result = await service.sweep(10)
    assert result.corrected == 1
    assert store.offers[0]['accepted_at'] is not None
    assert store.offers[0]['accept_tx_hash'] == 'reconcile:5'


@pytest.mark.asyncio
@pytest.mark.parametrize('status,counter,kind', [
    ((True, False, 1, 1), 0, 'sold_onchain'),
    ((True, True, 0, 0), 0, 'cancelled_onchain'),
    ((False, False, 0, 0), 1, 'counter_invalidated'),
])
async def test_seaport_drift(service, rpc, store, status, counter, kind):
    add_seaport_listing(store)
    rpc.contract_state[('getOrderStatus(bytes32)', ORDER_HASH_BYTES)] = status
    rpc.contract_state[('getCounter(address)', SELLER)] = (counter,)

    result = await service.sweep(10)
    assert result.drift[0].kind == kind
    assert result.corrected == 1
    row = store.listings[0]
    assert row['sold_at'] is not None or row['cancelled_at'] is not None


@pytest.mark.asyncio
async def test_partial_fill_is_still_open(service, rpc, store):
    add_seaport_listing(store)
    rpc.contract_state[('getOrderStatus(bytes32)', ORDER_HASH_BYTES)] = (True, False, 1, 4)
    rpc.contract_state[('getCounter(address)', SELLER)] = (0,)

    result = await service.sweep(10)
    assert result.drifted == 0


@pytest.mark.asyncio
async def test_read_failure_is_per_row(service, rpc, store):
    add_listing(store, '1')
    add_listing(store, '2')
    rpc.contract_state[('listings(uint256)', 2)] = listing_state(cancelled=True)

    result = await service.sweep(10)
    assert result.checked == 1
    assert len(result.errors) == 1
    assert result.corrected == 1
    first, second = store.listings
    assert first['last_reconciled_at'] is None
    assert second['cancelled_at'] is not None


@pytest.mark.asyncio
async def test_least_recently_reconciled_first(service, rpc, store):
    stale = add_listing(store, '1')
    fresh = add_listing(store, '2')
    fresh['last_reconciled_at'] = datetime.now(timezone.utc)
    stale['last_reconciled_at'] = datetime.now(timezone.utc) - timedelta(hours=1)
    never = add_listing(store, '3')
    for listing_id in (1, 2, 3):
        rpc.contract_state[('listings(uint256)', listing_id)] = listing_state()

    await service.sweep(2)
    assert fresh['last_reconciled_at'] < never['last_reconciled_at']
    assert sorted(call[1] for call in rpc.read_calls) == [1, 3]


@pytest.mark.asyncio
async def test_repair_order_hashes(service, store):
    add_seaport_listing(store, order_hash='0x' + 'ee' * 32)

    result = await service.repair_order_hashes(10)
    assert (result.checked, result.mismatched, result.repaired) == (1, 1, 1)
    assert store.listings[0]['order_hash'] == SAMPLE_ORDER_HASH

    again = await service.repair_order_hashes(10)
    assert again.mismatched == 0


@pytest.mark.asyncio
async def test_repair_dry_run(service, store):
    add_seaport_listing(store, order_hash='0x' + 'ee' * 32)

    result = await service.repair_order_hashes(10, dry_run=True)
    assert result.mismatched == 1
    assert result.repaired == 0
    assert store.listings[0]['order_hash'] == '0x' + 'ee' * 32


@pytest.mark.asyncio
async def test_repair_conflict_is_flagged(service, store):
    add_seaport_listing(store)
    add_seaport_listing(store, order_hash='0x' + 'ee' * 32)

    result = await service.repair_order_hashes(10)
    assert result.flagged == 1
    assert result.repaired == 0
    assert store.anomalies[0]['kind'] == 'order_hash_conflict'


@pytest.mark.asyncio
async def test_repair_flags_malformed_and_skips_counterless(service, store):
    add_seaport_listing(store, order_hash='0x' + 'e1' * 32, parameters={'offerer': 'nope'})
    counterless = sample_order()
    del counterless['counter']
    add_seaport_listing(store, order_hash='0x' + 'e2' * 32, counter=None, parameters=counterless)

    result = await service.repair_order_hashes(10)
    assert result.flagged == 1
    assert result.skipped == 1
    assert store.anomalies[0]['kind'] == 'malformed_order_parameters'


@pytest.mark.asyncio
async def test_undecodable_read_is_per_row(service, rpc, store):
    add_listing(store, '1')
    add_listing(store, '2')
    rpc.contract_state[('listings(uint256)', 1)] = CallRevertedError(
        'listings(uint256) returned data not matching', method='eth_call'
    )
    rpc.contract_state[('listings(uint256)', 2)] = listing_state(cancelled=True)

    result = await service.sweep(10)
    assert len(result.errors) == 1
    assert result.errors[0].startswith('listings/1')
    assert result.corrected == 1
    assert store.listings[1]['cancelled_at'] is not None


@pytest.mark.asyncio
async def test_wrong_shape_read_is_per_row(service, rpc, store):
    add_listing(store, '1')
    rpc.contract_state[('listings(uint256)', 1)] = (SELLER, NFT, 7)

    result = await service.sweep(10)
    assert result.checked == 0
    assert len(result.errors) == 1
    assert store.listings[0]['last_reconciled_at'] is None


@pytest.mark.asyncio
async def test_loop_survives_dropped_connection(service, monkeypatch):
    sweeps = []

    async def flaky_sweep(limit):
        sweeps.append(limit)
        if len(sweeps) == 1:
            raise ConnectionResetError('connection lost')

    monkeypatch.setattr(service, 'sweep', flaky_sweep)
    task = asyncio.create_task(service.start(0.01, 25))
    for _ in range(100):
        if len(sweeps) >= 2:
            break
        await asyncio.sleep(0.01)
    assert not task.done()

    service.stop()
    await asyncio.wait_for(task, timeout=1)
    assert sweeps[:2] == [25, 25]
