"""Tests for the polling indexer and its cursor discipline."""

import asyncio

import pytest
from asyncpg.exceptions import SerializationError

from decoders.exchange import LISTING_CREATED, LISTING_SOLD, LISTING_CANCELLED
from monitor import EventIndexer
from rpc import InvalidRangeError, UnavailableError
from conftest import BUYER, NFT, SELLER, FakeRPC, make_log

STREAM = 'marketplace'


def created(listing_id, block, index=0):
    return make_log(LISTING_CREATED, (listing_id, SELLER, NFT), (7, 25000000, ''), block=block, index=index)


def sold(listing_id, block, index=0):
    return make_log(LISTING_SOLD, (listing_id, BUYER), (25000000,), block=block, index=index)


def make_indexer(rpc, pipeline, cursor_store, **kwargs):
    options = dict(stream_id=STREAM, start_block=100, max_blocks_per_run=50, log_chunk_size=20)
    options.update(kwargs)
    return EventIndexer(rpc, pipeline, cursor_store, **options)


@pytest.mark.asyncio
async def test_first_run_starts_at_deployment_block(pipeline, cursor_store, store):
    rpc = FakeRPC(head=130, logs=[created(1, 100), sold(1, 129)])
    indexer = make_indexer(rpc, pipeline, cursor_store)

    result = await indexer.run_once()
    assert result.errors == []
    assert (result.from_block, result.to_block) == (100, 130)
    assert result.events_applied == 2
    assert result.processed_blocks == 31
    assert result.blocks_remaining == 0
    assert cursor_store.cursors[STREAM] == 130
    assert store.listings[0]['sold_at'] is not None


@pytest.mark.asyncio
async def test_logs_applied_in_chain_order(pipeline, cursor_store, store):
    # Served out of order; the sale must still land after the creation
    rpc = FakeRPC(head=110, logs=[sold(1, 105, 5), created(1, 105, 2)])
    indexer = make_indexer(rpc, pipeline, cursor_store)

    result = await indexer.run_once()
    assert result.events_applied == 2
    assert result.anomalies == 0
    assert store.listings[0]['sold_at'] is not None


@pytest.mark.asyncio
async def test_range_is_capped(pipeline, cursor_store):
    rpc = FakeRPC(head=1000)
    indexer = make_indexer(rpc, pipeline, cursor_store)

    result = await indexer.run_once()
    assert result.to_block == 149
    assert result.blocks_remaining == 851
    assert cursor_store.cursors[STREAM] == 149
    # Fetched in log_chunk_size spans
    assert rpc.get_logs_calls == [(100, 119), (120, 139), (140, 149)]


@pytest.mark.asyncio
async def test_confirmations_hold_back_head(pipeline, cursor_store):
    rpc = FakeRPC(head=130)
    indexer = make_indexer(rpc, pipeline, cursor_store, confirmations=10)

    result = await indexer.run_once()
    assert result.to_block == 120


@pytest.mark.asyncio
async def test_up_to_date_does_nothing(pipeline, cursor_store):
    cursor_store.cursors[STREAM] = 130
    rpc = FakeRPC(head=130)
    indexer = make_indexer(rpc, pipeline, cursor_store)

    result = await indexer.run_once()
    assert result.from_block is None
    assert rpc.get_logs_calls == []


@pytest.mark.asyncio
async def test_rpc_failure_leaves_cursor(pipeline, cursor_store):
    cursor_store.cursors[STREAM] = 110
    rpc = FakeRPC(head=130)
    rpc.fail_get_logs = UnavailableError("node down")
    indexer = make_indexer(rpc, pipeline, cursor_store)

    result = await indexer.run_once()
    assert result.errors
    assert cursor_store.cursors[STREAM] == 110


@pytest.mark.asyncio
async def test_head_failure_leaves_cursor(pipeline, cursor_store):
    rpc = FakeRPC(head=UnavailableError("node down"))
    indexer = make_indexer(rpc, pipeline, cursor_store)

    result = await indexer.run_once()
    assert result.errors
    assert STREAM not in cursor_store.cursors


@pytest.mark.asyncio
async def test_apply_failure_then_retry(pipeline, cursor_store, store):
    rpc = FakeRPC(head=130, logs=[created(1, 100), sold(1, 120)])
    indexer = make_indexer(rpc, pipeline, cursor_store)

    store.fail_with = SerializationError('restart transaction')
    store.fail_on = 'mark'
    failed = await indexer.run_once()
    assert failed.errors
    assert STREAM not in cursor_store.cursors

    store.fail_with = None
    retried = await indexer.run_once()
    assert retried.errors == []
    # The creation applied in the failed run is recognised, not doubled
    assert retried.duplicates == 1
    assert retried.events_applied == 1
    assert len(store.listings) == 1
    assert store.listings[0]['sold_at'] is not None
    assert cursor_store.cursors[STREAM] == 130


@pytest.mark.asyncio
async def test_span_limit_is_split(pipeline, cursor_store):
    rpc = FakeRPC(head=119, logs=[created(1, 103), created(2, 117)])
    rpc.max_span = 5
    indexer = make_indexer(rpc, pipeline, cursor_store)

    result = await indexer.run_once()
    assert result.errors == []
    assert result.events_applied == 2
    assert cursor_store.cursors[STREAM] == 119


@pytest.mark.asyncio
async def test_decode_error_is_recorded_and_skipped(pipeline, cursor_store, store):
    broken = sold(1, 105)
    broken['data'] = '0x1234'
    rpc = FakeRPC(head=110, logs=[created(1, 101), broken])
    indexer = make_indexer(rpc, pipeline, cursor_store)

    result = await indexer.run_once()
    assert result.errors == []
    assert result.decode_errors == 1
    assert result.events_applied == 1
    assert store.anomalies[0]['kind'] == 'decode_error'
    assert cursor_store.cursors[STREAM] == 110


@pytest.mark.asyncio
async def test_index_range_leaves_cursor(pipeline, cursor_store, store):
    cursor_store.cursors[STREAM] = 500
    rpc = FakeRPC(head=600, logs=[created(1, 100), make_log(LISTING_CANCELLED, (1,), block=180)])
    indexer = make_indexer(rpc, pipeline, cursor_store)

    result = await indexer.index_range(100, 200)
    assert result.errors == []
    assert result.events_applied == 2
    assert result.processed_blocks == 101
    assert cursor_store.cursors[STREAM] == 500
    assert store.listings[0]['cancelled_at'] is not None


@pytest.mark.asyncio
async def test_index_range_rejects_bad_range(pipeline, cursor_store):
    indexer = make_indexer(FakeRPC(head=10), pipeline, cursor_store)
    with pytest.raises(InvalidRangeError):
        await indexer.index_range(20, 10)


@pytest.mark.asyncio
async def test_reindex_moves_cursor_back(pipeline, cursor_store, store):
    cursor_store.cursors[STREAM] = 500
    rpc = FakeRPC(head=130, logs=[created(1, 110)])
    indexer = make_indexer(rpc, pipeline, cursor_store)

    result = await indexer.reindex_from(105)
    assert result.from_block == 105
    assert result.to_block == 130
    assert cursor_store.cursors[STREAM] == 130
    assert len(store.listings) == 1


@pytest.mark.asyncio
async def test_created_at_comes_from_block_time(pipeline, cursor_store, store):
    rpc = FakeRPC(head=110, logs=[created(1, 104, 0), created(2, 104, 1), created(3, 107)])
    indexer = make_indexer(rpc, pipeline, cursor_store)

    result = await indexer.run_once()
    assert result.events_applied == 3
    assert rpc.timestamp_calls == [104, 107]
    stamps = [row['created_at'].timestamp() - rpc.block_time_base for row in store.listings]
    assert stamps == [104, 104, 107]


@pytest.mark.asyncio
async def test_block_time_lookup_failure_leaves_cursor(pipeline, cursor_store, store):
    rpc = FakeRPC(head=110, logs=[created(1, 104)])
    rpc.fail_timestamps = UnavailableError('node down')
    indexer = make_indexer(rpc, pipeline, cursor_store)

    result = await indexer.run_once()
    assert result.errors
    assert store.listings == []
    assert STREAM not in cursor_store.cursors


@pytest.mark.asyncio
async def test_loop_survives_dropped_connection(pipeline, cursor_store):
    rpc = FakeRPC(head=110)
    indexer = make_indexer(rpc, pipeline, cursor_store)
    cursor_store.fail_with = ConnectionRefusedError(111, 'Connect call failed')

    task = asyncio.create_task(indexer.start(0.01))
    await asyncio.sleep(0.05)
    assert not task.done()

    cursor_store.fail_with = None
    for _ in range(100):
        if cursor_store.cursors.get(STREAM) == 110:
            break
        await asyncio.sleep(0.01)
    indexer.stop()
    await asyncio.wait_for(task, timeout=1)
    assert cursor_store.cursors[STREAM] == 110
