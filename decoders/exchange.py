"""Decoder for the marketplace exchange contract's listing and offer events."""
from . import EventABI, ProtocolDecoder, lower
from .events import (
    EXCHANGE,
    ListingCreated,
    ListingSold,
    ListingCancelled,
    OfferMade,
    OfferAccepted,
    OfferCancelled,
)

LISTING_CREATED = EventABI(
    name='ListingCreated',
    signature='ListingCreated(uint256,address,address,uint256,uint256,string)',
    indexed=('uint256', 'address', 'address'),
    data=('uint256', 'uint256', 'string'),
)
LISTING_SOLD = EventABI(
    name='ListingSold',
    signature='ListingSold(uint256,address,uint256)',
    indexed=('uint256', 'address'),
    data=('uint256',),
)
LISTING_CANCELLED = EventABI(
    name='ListingCancelled',
    signature='ListingCancelled(uint256)',
    indexed=('uint256',),
    data=(),
)
OFFER_MADE = EventABI(
    name='OfferMade',
    signature='OfferMade(uint256,address,address,uint256,uint256)',
    indexed=('uint256', 'address', 'address'),
    data=('uint256', 'uint256'),
)
OFFER_ACCEPTED = EventABI(
    name='OfferAccepted',
    signature='OfferAccepted(uint256,address)',
    indexed=('uint256', 'address'),
    data=(),
)
OFFER_CANCELLED = EventABI(
    name='OfferCancelled',
    signature='OfferCancelled(uint256)',
    indexed=('uint256',),
    data=(),
)


class ExchangeDecoder(ProtocolDecoder):
    """Decodes ListingCreated/Sold/Cancelled and OfferMade/Accepted/Cancelled"""

    contract_type = EXCHANGE
    events = (
        LISTING_CREATED,
        LISTING_SOLD,
        LISTING_CANCELLED,
        OFFER_MADE,
        OFFER_ACCEPTED,
        OFFER_CANCELLED,
    )

    def _build_ListingCreated(self, log, indexed, data):
        listing_id, seller, nft_contract = indexed
        token_id, price, metadata_uri = data
        return ListingCreated(
            log=log.ref,
            listing_id=listing_id,
            seller=lower(seller),
            nft_contract=lower(nft_contract),
            token_id=token_id,
            price=price,
            metadata_uri=metadata_uri.replace('\x00', ''),
        )

    def _build_ListingSold(self, log, indexed, data):
        listing_id, buyer = indexed
        (price,) = data
        return ListingSold(log=log.ref, listing_id=listing_id, buyer=lower(buyer), price=price)

    def _build_ListingCancelled(self, log, indexed, data):
        return ListingCancelled(log=log.ref, listing_id=indexed[0])

    def _build_OfferMade(self, log, indexed, data):
        offer_id, buyer, nft_contract = indexed
        token_id, amount = data
        return OfferMade(
            log=log.ref,
            offer_id=offer_id,
            buyer=lower(buyer),
            nft_contract=lower(nft_contract),
            token_id=token_id,
            amount=amount,
        )

    def _build_OfferAccepted(self, log, indexed, data):
        offer_id, seller = indexed
        return OfferAccepted(log=log.ref, offer_id=offer_id, seller=lower(seller))

    def _build_OfferCancelled(self, log, indexed, data):
        return OfferCancelled(log=log.ref, offer_id=indexed[0])
