"""Typed domain events produced by the protocol decoders.

Each protocol has a closed set of event types. The projector dispatches on
the concrete class, so adding a type here means handling it there.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

EXCHANGE = 'exchange'
SEAPORT = 'seaport'


@dataclass(frozen=True)
class LogRef:
    """Where an event came from"""
    tx_hash: str
    block_number: int
    log_index: int
    address: str
    block_timestamp: Optional[int] = None


# Exchange contract

@dataclass(frozen=True)
class ListingCreated:
    log: LogRef
    listing_id: int
    seller: str
    nft_contract: str
    token_id: int
    price: int
    metadata_uri: str
    contract_type = EXCHANGE


@dataclass(frozen=True)
class ListingSold:
    log: LogRef
    listing_id: int
    buyer: str
    price: int
    contract_type = EXCHANGE


@dataclass(frozen=True)
class ListingCancelled:
    log: LogRef
    listing_id: int
    contract_type = EXCHANGE


@dataclass(frozen=True)
class OfferMade:
    log: LogRef
    offer_id: int
    buyer: str
    nft_contract: str
    token_id: int
    amount: int
    contract_type = EXCHANGE


@dataclass(frozen=True)
class OfferAccepted:
    log: LogRef
    offer_id: int
    seller: str
    contract_type = EXCHANGE


@dataclass(frozen=True)
class OfferCancelled:
    log: LogRef
    offer_id: int
    contract_type = EXCHANGE


ExchangeEvent = Union[
    ListingCreated,
    ListingSold,
    ListingCancelled,
    OfferMade,
    OfferAccepted,
    OfferCancelled,
]


# Seaport

@dataclass(frozen=True)
class SpentItem:
    item_type: int
    token: str
    identifier: int
    amount: int


@dataclass(frozen=True)
class ReceivedItem:
    item_type: int
    token: str
    identifier: int
    amount: int
    recipient: str


@dataclass(frozen=True)
class Fill:
    """Trade derived from an OrderFulfilled event.

    ``side`` is ``listing`` when the offerer sold an NFT and ``offer`` when the
    offerer paid for one. ``total_price`` is in base units of ``currency`` and
    is None when the currency legs could not be summed unambiguously.
    """
    side: str
    buyer: str
    seller: str
    nft_contract: str
    token_id: int
    total_price: Optional[int]
    currency: Optional[str]


@dataclass(frozen=True)
class OrderFulfilled:
    log: LogRef
    order_hash: str
    offerer: str
    zone: str
    recipient: str
    offer: Tuple[SpentItem, ...]
    consideration: Tuple[ReceivedItem, ...]
    fill: Optional[Fill]
    contract_type = SEAPORT


@dataclass(frozen=True)
class OrderCancelled:
    log: LogRef
    order_hash: str
    offerer: str
    zone: str
    contract_type = SEAPORT


@dataclass(frozen=True)
class OrderValidated:
    """On-chain validation of an order, carrying its full parameters.

    ``parameters`` is the canonical camelCase form without ``counter`` (the
    event does not carry it).
    """
    log: LogRef
    order_hash: str
    offerer: str
    parameters: Dict[str, Any]
    contract_type = SEAPORT


@dataclass(frozen=True)
class CounterIncremented:
    """Offerer bumped their counter, invalidating every order signed under a lower one"""
    log: LogRef
    offerer: str
    new_counter: int
    contract_type = SEAPORT


@dataclass(frozen=True)
class OrdersMatched:
    """Orders settled against each other in one match call"""
    log: LogRef
    order_hashes: Tuple[str, ...]
    contract_type = SEAPORT


SeaportEvent = Union[
    OrderFulfilled,
    OrderCancelled,
    OrderValidated,
    CounterIncremented,
    OrdersMatched,
]

DomainEvent = Union[ExchangeEvent, SeaportEvent]
