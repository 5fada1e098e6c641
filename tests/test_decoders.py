"""Tests for log normalization and the per-protocol decoders."""

import pytest

from decoders import DecodeError, normalize_log
from decoders.events import (
    CounterIncremented,
    ListingCreated,
    ListingSold,
    OfferMade,
    OrderCancelled,
    OrderFulfilled,
    OrderValidated,
    OrdersMatched,
)
from decoders.exchange import (
    ExchangeDecoder,
    LISTING_CANCELLED,
    LISTING_CREATED,
    LISTING_SOLD,
    OFFER_MADE,
)
from decoders.seaport import (
    COUNTER_INCREMENTED,
    ORDER_CANCELLED,
    ORDER_FULFILLED,
    ORDER_VALIDATED,
    ORDERS_MATCHED,
    SeaportDecoder,
)
from orders import get_order_hash, parse_order_parameters
from conftest import (
    BUYER,
    EXCHANGE_ADDRESS,
    FEE_RECIPIENT,
    NFT,
    SAMPLE_ORDER_HASH,
    SEAPORT_ADDRESS,
    SELLER,
    USDC,
    make_log,
)

ZERO = '0x' + '00' * 20
ORDER_HASH = bytes.fromhex(SAMPLE_ORDER_HASH[2:])


@pytest.fixture
def exchange():
    return ExchangeDecoder(EXCHANGE_ADDRESS)


@pytest.fixture
def seaport():
    return SeaportDecoder(SEAPORT_ADDRESS, USDC)


def decode(decoder, log):
    return decoder.decode(normalize_log(log))


def test_listing_created(exchange):
    log = make_log(LISTING_CREATED, (42, SELLER, NFT), (7, 25000000, 'ipfs://meta'), block=120, index=3)
    event = decode(exchange, log)
    assert isinstance(event, ListingCreated)
    assert event.listing_id == 42
    assert event.seller == SELLER
    assert event.nft_contract == NFT
    assert event.token_id == 7
    assert event.price == 25000000
    assert event.metadata_uri == 'ipfs://meta'
    assert event.log.block_number == 120
    assert event.log.log_index == 3
    assert event.contract_type == 'exchange'


def test_listing_created_drops_nul_padding(exchange):
    log = make_log(LISTING_CREATED, (42, SELLER, NFT), (7, 25000000, 'ipfs://a\x00b\x00\x00'))
    assert decode(exchange, log).metadata_uri == 'ipfs://ab'


def test_listing_sold(exchange):
    event = decode(exchange, make_log(LISTING_SOLD, (42, BUYER), (25000000,)))
    assert isinstance(event, ListingSold)
    assert event.buyer == BUYER
    assert event.price == 25000000


def test_offer_made(exchange):
    event = decode(exchange, make_log(OFFER_MADE, (5, BUYER, NFT), (7, 10000000)))
    assert isinstance(event, OfferMade)
    assert event.offer_id == 5
    assert event.amount == 10000000


def test_unknown_signature_is_skipped(exchange):
    log = make_log(LISTING_CANCELLED, (1,))
    log['topics'][0] = '0x' + 'ab' * 32
    assert decode(exchange, log) is None


def test_removed_log_is_skipped(exchange):
    assert decode(exchange, make_log(LISTING_CANCELLED, (1,), removed=True)) is None


def test_truncated_data_raises(exchange):
    log = make_log(LISTING_SOLD, (42, BUYER), (25000000,))
    log['data'] = log['data'][:20]
    with pytest.raises(DecodeError) as info:
        decode(exchange, log)
    assert info.value.event_name == 'ListingSold'


def test_wrong_topic_count_raises(exchange):
    log = make_log(LISTING_SOLD, (42, BUYER), (25000000,))
    log['topics'] = log['topics'][:2]
    with pytest.raises(DecodeError):
        decode(exchange, log)


def test_listing_fill(seaport):
    log = make_log(
        ORDER_FULFILLED,
        (SELLER, ZERO),
        (
            ORDER_HASH,
            BUYER,
            [(2, NFT, 7, 1)],
            [(1, USDC, 0, 99000000, SELLER), (1, USDC, 0, 1000000, FEE_RECIPIENT)],
        ),
        address=SEAPORT_ADDRESS,
    )
    event = decode(seaport, log)
    assert isinstance(event, OrderFulfilled)
    assert event.order_hash == SAMPLE_ORDER_HASH
    assert event.offerer == SELLER
    assert event.recipient == BUYER
    fill = event.fill
    assert fill.side == 'listing'
    assert fill.buyer == BUYER
    assert fill.seller == SELLER
    assert fill.token_id == 7
    assert fill.total_price == 99000000
    assert fill.currency == USDC


def test_offer_fill(seaport):
    log = make_log(
        ORDER_FULFILLED,
        (BUYER, ZERO),
        (
            ORDER_HASH,
            SELLER,
            [(1, USDC, 0, 50000000)],
            [(2, NFT, 7, 1, BUYER)],
        ),
        address=SEAPORT_ADDRESS,
    )
    fill = decode(seaport, log).fill
    assert fill.side == 'offer'
    assert fill.buyer == BUYER
    assert fill.seller == SELLER
    assert fill.total_price == 50000000


def test_mixed_currency_fill_is_unpriced(seaport):
    other_token = '0x' + '12' * 20
    log = make_log(
        ORDER_FULFILLED,
        (SELLER, ZERO),
        (
            ORDER_HASH,
            BUYER,
            [(2, NFT, 7, 1)],
            [(1, USDC, 0, 99000000, SELLER), (1, other_token, 0, 5, SELLER)],
        ),
        address=SEAPORT_ADDRESS,
    )
    fill = decode(seaport, log).fill
    assert fill.total_price is None
    assert fill.currency is None


def test_bundle_has_no_fill(seaport):
    log = make_log(
        ORDER_FULFILLED,
        (SELLER, ZERO),
        (ORDER_HASH, BUYER, [(2, NFT, 7, 1), (2, NFT, 8, 1)], [(1, USDC, 0, 5, SELLER)]),
        address=SEAPORT_ADDRESS,
    )
    assert decode(seaport, log).fill is None


def test_order_cancelled(seaport):
    log = make_log(ORDER_CANCELLED, (SELLER, ZERO), (ORDER_HASH,), address=SEAPORT_ADDRESS)
    event = decode(seaport, log)
    assert isinstance(event, OrderCancelled)
    assert event.order_hash == SAMPLE_ORDER_HASH


def test_order_validated_parameters_hash_back(seaport):
    parameters = (
        SELLER,
        ZERO,
        [(2, NFT, 7, 1, 1)],
        [
            (1, USDC, 0, 99000000, 99000000, SELLER),
            (1, USDC, 0, 1000000, 1000000, FEE_RECIPIENT),
        ],
        0,
        1700000000,
        1702592000,
        b'\x00' * 32,
        12345678901234567890,
        b'\x00' * 32,
        2,
    )
    log = make_log(ORDER_VALIDATED, (), (ORDER_HASH, parameters), address=SEAPORT_ADDRESS)
    event = decode(seaport, log)
    assert isinstance(event, OrderValidated)
    assert event.offerer == SELLER
    assert 'counter' not in event.parameters
    assert get_order_hash(parse_order_parameters(event.parameters, counter=0)) == SAMPLE_ORDER_HASH


def test_counter_incremented(seaport):
    log = make_log(COUNTER_INCREMENTED, (SELLER,), (3,), address=SEAPORT_ADDRESS)
    event = decode(seaport, log)
    assert isinstance(event, CounterIncremented)
    assert event.offerer == SELLER
    assert event.new_counter == 3


def test_orders_matched(seaport):
    other = bytes.fromhex('11' * 32)
    log = make_log(ORDERS_MATCHED, (), ([ORDER_HASH, other],), address=SEAPORT_ADDRESS)
    event = decode(seaport, log)
    assert isinstance(event, OrdersMatched)
    assert event.order_hashes == (SAMPLE_ORDER_HASH, '0x' + '11' * 32)
    assert event.contract_type == 'seaport'


def test_normalize_webhook_shape():
    rpc_log = make_log(LISTING_CANCELLED, (9,), block=300, index=4)
    log = normalize_log({
        'account': {'address': EXCHANGE_ADDRESS.upper().replace('0X', '0x')},
        'topics': rpc_log['topics'],
        'data': rpc_log['data'],
        'index': 4,
        'transaction': {'hash': rpc_log['transactionHash'], 'block': {'number': 300}},
    })
    assert log.address == EXCHANGE_ADDRESS
    assert log.block_number == 300
    assert log.log_index == 4
    assert log.tx_hash == rpc_log['transactionHash']


def test_normalize_missing_fields():
    with pytest.raises(DecodeError):
        normalize_log({'topics': [], 'data': '0x'})
