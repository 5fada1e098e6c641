"""Orders module for Seaport order parameters.

This module handles order hash recomputation and derives the marketplace
terms (seller, token, price) an order represents.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Union

from .hashing import (
    ItemType,
    OrderType,
    OfferItem,
    ConsiderationItem,
    OrderComponents,
    OrderParametersError,
    parse_order_parameters,
    hash_order_components,
    get_order_hash,
    ORDER_TYPEHASH,
    OFFER_ITEM_TYPEHASH,
    CONSIDERATION_ITEM_TYPEHASH,
    ZERO_ADDRESS,
)

NATIVE_CURRENCY = 'native'
NATIVE_DECIMALS = 18


@dataclass(frozen=True)
class OrderTerms:
    """What an order trades, from the marketplace's point of view.

    ``side`` is ``listing`` when the offerer gives the NFT and ``offer`` when
    the offerer gives currency for it. ``amount`` is in base units and is
    None when the currency legs are mixed or unsupported.
    """
    side: str
    offerer: str
    nft_contract: str
    token_id: int
    amount: Optional[int]
    currency: Optional[str]
    start_time: int
    end_time: int


def currency_of(item_type: int, token: str, payment_token: str) -> Optional[str]:
    """Currency tag for a native or payment-token item, None for anything else"""
    if item_type == ItemType.NATIVE:
        return NATIVE_CURRENCY
    if item_type == ItemType.ERC20 and token.lower() == payment_token.lower():
        return payment_token.lower()
    return None


def sum_currency(items: Iterable[Any], payment_token: str) -> tuple:
    """Sum the amounts of a set of currency items.

    Items need ``item_type``, ``token`` and ``amount`` attributes.

    Returns:
        ``(total, currency)``; ``(None, None)`` when the items use more than
        one currency or any unsupported token, ``(0, None)`` when empty.
    """
    total = 0
    currencies = set()
    for item in items:
        currency = currency_of(item.item_type, item.token, payment_token)
        if currency is None:
            return None, None
        currencies.add(currency)
        total += item.amount
    if len(currencies) > 1:
        return None, None
    return total, (currencies.pop() if currencies else None)


def to_display_amount(amount: Optional[int], currency: Optional[str], payment_decimals: int) -> Optional[Decimal]:
    """Convert base units into a human-readable decimal for storage"""
    if amount is None or currency is None:
        return None
    decimals = NATIVE_DECIMALS if currency == NATIVE_CURRENCY else payment_decimals
    return Decimal(amount).scaleb(-decimals)


@dataclass(frozen=True)
class _Leg:
    item_type: int
    token: str
    amount: int


def derive_listing_terms(
    order_parameters: Union[Mapping[str, Any], OrderComponents],
    payment_token: str
) -> OrderTerms:
    """Derive side, NFT and price from an order's offer and consideration.

    A listing offers one NFT and is priced by the currency consideration
    items paid back to the offerer (marketplace fees and royalties paid to
    other recipients are excluded). An offer gives currency and asks for one
    NFT delivered to the offerer.

    Raises:
        OrderParametersError: The order does not trade exactly one NFT
    """
    order = parse_order_parameters(order_parameters, require_counter=False)

    offered_nfts = [item for item in order.offer if item.item_type.is_nft]
    if offered_nfts:
        if len(offered_nfts) != 1:
            raise OrderParametersError("listing orders must offer exactly one NFT")
        nft = offered_nfts[0]
        legs = [
            _Leg(item.item_type, item.token, item.start_amount)
            for item in order.consideration
            if item.recipient == order.offerer
        ]
        amount, currency = sum_currency(legs, payment_token)
        return OrderTerms(
            side='listing',
            offerer=order.offerer,
            nft_contract=nft.token,
            token_id=nft.identifier_or_criteria,
            amount=amount,
            currency=currency,
            start_time=order.start_time,
            end_time=order.end_time,
        )

    wanted_nfts = [
        item for item in order.consideration
        if item.item_type.is_nft and item.recipient == order.offerer
    ]
    if len(wanted_nfts) != 1:
        raise OrderParametersError("order neither offers nor requests exactly one NFT")
    nft = wanted_nfts[0]
    legs = [_Leg(item.item_type, item.token, item.start_amount) for item in order.offer]
    amount, currency = sum_currency(legs, payment_token)
    return OrderTerms(
        side='offer',
        offerer=order.offerer,
        nft_contract=nft.token,
        token_id=nft.identifier_or_criteria,
        amount=amount,
        currency=currency,
        start_time=order.start_time,
        end_time=order.end_time,
    )


__all__ = [
    'ItemType',
    'OrderType',
    'OfferItem',
    'ConsiderationItem',
    'OrderComponents',
    'OrderTerms',
    'OrderParametersError',
    'parse_order_parameters',
    'hash_order_components',
    'get_order_hash',
    'derive_listing_terms',
    'currency_of',
    'sum_currency',
    'to_display_amount',
    'NATIVE_CURRENCY',
    'ORDER_TYPEHASH',
    'OFFER_ITEM_TYPEHASH',
    'CONSIDERATION_ITEM_TYPEHASH',
    'ZERO_ADDRESS',
]
