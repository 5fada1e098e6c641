"""Decoder for Seaport order events.

Besides plain decoding, fulfillment events are turned into a :class:`Fill`
describing who bought which NFT from whom and for how much.
"""
import logging
from typing import Optional, Sequence

from eth_utils import encode_hex

from orders import ItemType, sum_currency
from orders.hashing import NFT_ITEM_TYPES
from . import EventABI, ProtocolDecoder, lower
from .events import (
    SEAPORT,
    SpentItem,
    ReceivedItem,
    Fill,
    OrderFulfilled,
    OrderCancelled,
    OrderValidated,
    CounterIncremented,
    OrdersMatched,
)

logger = logging.getLogger(__name__)

SPENT_ITEM = '(uint8,address,uint256,uint256)'
RECEIVED_ITEM = '(uint8,address,uint256,uint256,address)'
OFFER_ITEM = '(uint8,address,uint256,uint256,uint256)'
CONSIDERATION_ITEM = '(uint8,address,uint256,uint256,uint256,address)'
ORDER_PARAMETERS = (
    f'(address,address,{OFFER_ITEM}[],{CONSIDERATION_ITEM}[],'
    'uint8,uint256,uint256,bytes32,uint256,bytes32,uint256)'
)

ORDER_FULFILLED = EventABI(
    name='OrderFulfilled',
    signature=f'OrderFulfilled(bytes32,address,address,address,{SPENT_ITEM}[],{RECEIVED_ITEM}[])',
    indexed=('address', 'address'),
    data=('bytes32', 'address', f'{SPENT_ITEM}[]', f'{RECEIVED_ITEM}[]'),
)
ORDER_CANCELLED = EventABI(
    name='OrderCancelled',
    signature='OrderCancelled(bytes32,address,address)',
    indexed=('address', 'address'),
    data=('bytes32',),
)
ORDER_VALIDATED = EventABI(
    name='OrderValidated',
    signature=f'OrderValidated(bytes32,{ORDER_PARAMETERS})',
    indexed=(),
    data=('bytes32', ORDER_PARAMETERS),
)
COUNTER_INCREMENTED = EventABI(
    name='CounterIncremented',
    signature='CounterIncremented(uint256,address)',
    indexed=('address',),
    data=('uint256',),
)
ORDERS_MATCHED = EventABI(
    name='OrdersMatched',
    signature='OrdersMatched(bytes32[])',
    indexed=(),
    data=('bytes32[]',),
)


def derive_fill(
    offerer: str,
    recipient: str,
    offer: Sequence[SpentItem],
    consideration: Sequence[ReceivedItem],
    payment_token: str
) -> Optional[Fill]:
    """Work out buyer, seller, NFT and price of a single-NFT fulfillment.

    Returns None when the order does not move exactly one NFT.
    """
    offered_nfts = [item for item in offer if item.item_type in NFT_ITEM_TYPES]
    if offered_nfts:
        if len(offered_nfts) != 1:
            return None
        nft = offered_nfts[0]
        # Seller proceeds only; fees and royalties go to other recipients
        legs = [
            item for item in consideration
            if item.recipient == offerer and item.item_type not in NFT_ITEM_TYPES
        ]
        total, currency = sum_currency(legs, payment_token)
        return Fill(
            side='listing',
            buyer=recipient,
            seller=offerer,
            nft_contract=nft.token,
            token_id=nft.identifier,
            total_price=total if legs else None,
            currency=currency,
        )

    wanted_nfts = [
        item for item in consideration
        if item.item_type in NFT_ITEM_TYPES and item.recipient == offerer
    ]
    if len(wanted_nfts) != 1:
        return None
    nft = wanted_nfts[0]
    total, currency = sum_currency(offer, payment_token)
    return Fill(
        side='offer',
        buyer=offerer,
        seller=recipient,
        nft_contract=nft.token,
        token_id=nft.identifier,
        total_price=total if offer else None,
        currency=currency,
    )


class SeaportDecoder(ProtocolDecoder):
    """Decodes the Seaport order lifecycle events"""

    contract_type = SEAPORT
    events = (
        ORDER_FULFILLED,
        ORDER_CANCELLED,
        ORDER_VALIDATED,
        COUNTER_INCREMENTED,
        ORDERS_MATCHED,
    )

    def __init__(self, address: Optional[str] = None, payment_token: str = ''):
        super().__init__(address)
        self.payment_token = payment_token.lower()

    def _build_OrderFulfilled(self, log, indexed, data):
        offerer, zone = (lower(value) for value in indexed)
        order_hash, recipient, raw_offer, raw_consideration = data
        offer = tuple(
            SpentItem(item_type=item[0], token=lower(item[1]), identifier=item[2], amount=item[3])
            for item in raw_offer
        )
        consideration = tuple(
            ReceivedItem(
                item_type=item[0],
                token=lower(item[1]),
                identifier=item[2],
                amount=item[3],
                recipient=lower(item[4]),
            )
            for item in raw_consideration
        )
        recipient = lower(recipient)
        fill = derive_fill(offerer, recipient, offer, consideration, self.payment_token)
        if fill is None:
            logger.debug(f"OrderFulfilled {encode_hex(order_hash)} is not a single-NFT trade")
        return OrderFulfilled(
            log=log.ref,
            order_hash=encode_hex(order_hash),
            offerer=offerer,
            zone=zone,
            recipient=recipient,
            offer=offer,
            consideration=consideration,
            fill=fill,
        )

    def _build_OrderCancelled(self, log, indexed, data):
        offerer, zone = (lower(value) for value in indexed)
        return OrderCancelled(
            log=log.ref,
            order_hash=encode_hex(data[0]),
            offerer=offerer,
            zone=zone,
        )

    def _build_OrderValidated(self, log, indexed, data):
        order_hash, raw = data
        (offerer, zone, raw_offer, raw_consideration, order_type,
         start_time, end_time, zone_hash, salt, conduit_key, total_original) = raw
        parameters = {
            'offerer': lower(offerer),
            'zone': lower(zone),
            'offer': [
                {
                    'itemType': int(ItemType(item[0])),
                    'token': lower(item[1]),
                    'identifierOrCriteria': str(item[2]),
                    'startAmount': str(item[3]),
                    'endAmount': str(item[4]),
                }
                for item in raw_offer
            ],
            'consideration': [
                {
                    'itemType': int(ItemType(item[0])),
                    'token': lower(item[1]),
                    'identifierOrCriteria': str(item[2]),
                    'startAmount': str(item[3]),
                    'endAmount': str(item[4]),
                    'recipient': lower(item[5]),
                }
                for item in raw_consideration
            ],
            'orderType': order_type,
            'startTime': str(start_time),
            'endTime': str(end_time),
            'zoneHash': encode_hex(zone_hash),
            'salt': str(salt),
            'conduitKey': encode_hex(conduit_key),
            'totalOriginalConsiderationItems': str(total_original),
        }
        return OrderValidated(
            log=log.ref,
            order_hash=encode_hex(order_hash),
            offerer=lower(offerer),
            parameters=parameters,
        )

    def _build_CounterIncremented(self, log, indexed, data):
        return CounterIncremented(log=log.ref, offerer=lower(indexed[0]), new_counter=data[0])

    def _build_OrdersMatched(self, log, indexed, data):
        return OrdersMatched(
            log=log.ref,
            order_hashes=tuple(encode_hex(order_hash) for order_hash in data[0]),
        )
