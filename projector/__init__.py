"""State projector.

Applies decoded domain events to the listings/offers/activity projection.
Every event is applied in its own transaction and every write is idempotent:

- creation events insert on the natural key and do nothing if it exists
- terminal events update only rows that are not already terminal
- each application writes one activity row keyed by (tx_hash, type), so a
  second delivery of the same event is recognised as already applied

Events whose natural key is unknown are recorded as anomalies instead of
fabricating rows.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from asyncpg.exceptions import PostgresError

from decoders import RawLog, DecodeError
from decoders.events import (
    EXCHANGE,
    SEAPORT,
    LogRef,
    ListingCreated,
    ListingSold,
    ListingCancelled,
    OfferMade,
    OfferAccepted,
    OfferCancelled,
    OrderFulfilled,
    OrderCancelled,
    OrderValidated,
    CounterIncremented,
    OrdersMatched,
)
from listings import LISTINGS, OFFERS
from orders import (
    OrderParametersError,
    derive_listing_terms,
    get_order_hash,
    parse_order_parameters,
    to_display_amount,
)

logger = logging.getLogger(__name__)

# Activity types
LISTING_CREATED = 'listing_created'
OFFER_MADE = 'offer_made'
SALE = 'sale'
OFFER_ACCEPTED = 'offer_accepted'
LISTING_CANCELLED = 'listing_cancelled'
OFFER_CANCELLED = 'offer_cancelled'

# Anomaly kinds
UNKNOWN_NATURAL_KEY = 'unknown_natural_key'
DECODE_ERROR = 'decode_error'
UNPRICED_FILL = 'unpriced_fill'
BUYER_UNRESOLVED = 'buyer_unresolved'


class ApplyStatus(str, Enum):
    APPLIED = 'applied'
    DUPLICATE = 'duplicate'
    IGNORED = 'ignored'
    ANOMALY = 'anomaly'


@dataclass(frozen=True)
class ApplyResult:
    status: ApplyStatus
    event_type: str
    natural_key: Optional[str] = None
    activity_inserted: bool = False
    detail: Optional[str] = None


class ProjectionError(Exception):
    """Raised when an event could not be written (database failure)."""
    def __init__(self, message: str, event_type: Optional[str] = None):
        self.event_type = event_type
        super().__init__(message)


def _event_time(log: LogRef) -> datetime:
    if log.block_timestamp is not None:
        return datetime.fromtimestamp(log.block_timestamp, tz=timezone.utc)
    return datetime.now(timezone.utc)


def _from_unix(value: int) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        # Seaport uses uint256 max for "never expires"
        return None


class StateProjector:
    """Applies domain events from both protocols to the projection"""

    def __init__(
        self,
        store,
        payment_token: str,
        payment_decimals: int = 6,
        default_listing_days: int = 7,
        fee_recipient: Optional[str] = None
    ):
        """Initialize the projector.

        Args:
            store: ListingStore (or anything with the same interface)
            payment_token: ERC-20 address prices are denominated in
            payment_decimals: Decimals of the payment token
            default_listing_days: Expiry given to exchange listings, whose
                events carry none
            fee_recipient: Marketplace fee address. When set, Seaport orders
                not paying it are treated as foreign and ignored.
        """
        self.store = store
        self.payment_token = payment_token.lower()
        self.payment_decimals = payment_decimals
        self.default_listing_days = default_listing_days
        self.fee_recipient = fee_recipient.lower() if fee_recipient else None
        self._handlers = {
            ListingCreated: self._listing_created,
            ListingSold: self._listing_sold,
            ListingCancelled: self._listing_cancelled,
            OfferMade: self._offer_made,
            OfferAccepted: self._offer_accepted,
            OfferCancelled: self._offer_cancelled,
            OrderFulfilled: self._order_fulfilled,
            OrderCancelled: self._order_cancelled,
            OrderValidated: self._order_validated,
            CounterIncremented: self._counter_incremented,
            OrdersMatched: self._orders_matched,
        }

    def _display(self, amount: Optional[int], currency: Optional[str] = None):
        """Base units to a stored decimal; exchange amounts are always in the payment token"""
        return to_display_amount(amount, currency or self.payment_token, self.payment_decimals)

    def _order_price(self, terms):
        return to_display_amount(terms.amount, terms.currency, self.payment_decimals)

    async def apply_event(self, event) -> ApplyResult:
        """Apply one event in its own transaction.

        Raises:
            ProjectionError: The database rejected the write
        """
        handler = self._handlers.get(type(event))
        if handler is None:
            raise ProjectionError(f"No handler for {type(event).__name__}")

        event_type = type(event).__name__
        try:
            async with self.store.transaction() as conn:
                result = await handler(conn, event)
        except PostgresError as e:
            logger.error(f"Failed to apply {event_type} from {event.log.tx_hash}: {e}")
            raise ProjectionError(str(e), event_type) from e

        log_method = logger.info if result.status == ApplyStatus.APPLIED else logger.debug
        log_method(
            f"{event_type} {result.natural_key} -> {result.status.value} "
            f"(tx {event.log.tx_hash}, block {event.log.block_number})"
        )
        return result

    # Shared helpers

    async def _activity(
        self, conn, activity_type: str, event, actor: Optional[str],
        nft_contract: Optional[str], token_id: Optional[int], price=None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        log = event.log
        return await self.store.insert_activity(conn, {
            'type': activity_type,
            'contract_type': event.contract_type,
            'actor_address': actor,
            'nft_contract': nft_contract,
            'token_id': str(token_id) if token_id is not None else None,
            'price': price,
            'metadata': metadata or {},
            'tx_hash': log.tx_hash,
            'block_number': log.block_number,
            'log_index': log.log_index,
            'created_at': _event_time(log),
        })

    async def _anomaly(
        self, conn, kind: str, contract_type: Optional[str], natural_key: Optional[str],
        log: Optional[LogRef] = None, detail: Optional[Dict[str, Any]] = None,
        dedup_key: Optional[str] = None
    ) -> bool:
        if dedup_key is None:
            if log is not None:
                dedup_key = f"{kind}:{log.tx_hash}:{log.log_index}"
            else:
                dedup_key = f"{kind}:{contract_type}:{natural_key}"
        return await self.store.record_anomaly(conn, {
            'dedup_key': dedup_key,
            'kind': kind,
            'contract_type': contract_type,
            'natural_key': natural_key,
            'tx_hash': log.tx_hash if log else None,
            'block_number': log.block_number if log else None,
            'log_index': log.log_index if log else None,
            'detail': detail or {},
        })

    async def _after_guard_miss(
        self, conn, event, table: str, key: str, activity_type: str, foreign_ok: bool = False
    ) -> ApplyResult:
        """Classify a terminal event whose guarded update touched nothing"""
        event_type = type(event).__name__
        getter = self.store.get_listing if table == LISTINGS else self.store.get_offer
        row = await getter(conn, event.contract_type, key)

        if row is None:
            if foreign_ok:
                return ApplyResult(ApplyStatus.IGNORED, event_type, key, detail='foreign order')
            await self._anomaly(
                conn, UNKNOWN_NATURAL_KEY, event.contract_type, key, event.log,
                {'event': event_type, 'table': table}
            )
            return ApplyResult(ApplyStatus.ANOMALY, event_type, key, detail=UNKNOWN_NATURAL_KEY)

        if await self.store.activity_exists(conn, event.log.tx_hash, activity_type):
            return ApplyResult(ApplyStatus.DUPLICATE, event_type, key)

        logger.info(
            f"Ignoring stale {event_type} for {table} {key}: row already terminal "
            f"(tx {event.log.tx_hash})"
        )
        return ApplyResult(ApplyStatus.IGNORED, event_type, key, detail='already terminal')

    def _pays_fee_recipient(self, recipients) -> bool:
        """True only when a fee recipient is configured and the order pays it"""
        if not self.fee_recipient:
            return False
        return self.fee_recipient in {recipient.lower() for recipient in recipients}

    # Exchange contract

    async def _listing_created(self, conn, event: ListingCreated) -> ApplyResult:
        key = str(event.listing_id)
        created_at = _event_time(event.log)
        inserted = await self.store.insert_listing(conn, {
            'contract_type': EXCHANGE,
            'blockchain_listing_id': key,
            'seller_address': event.seller,
            'nft_contract': event.nft_contract,
            'token_id': str(event.token_id),
            'price': self._display(event.price),
            'currency': self.payment_token,
            'expiry': created_at + timedelta(days=self.default_listing_days),
            'metadata_uri': event.metadata_uri or None,
            'tx_hash': event.log.tx_hash,
            'created_at': created_at,
        })
        activity = await self._activity(
            conn, LISTING_CREATED, event, event.seller, event.nft_contract,
            event.token_id, self._display(event.price), {'listing_id': key}
        )
        status = ApplyStatus.APPLIED if inserted else ApplyStatus.DUPLICATE
        return ApplyResult(status, 'ListingCreated', key, activity)

    async def _listing_sold(self, conn, event: ListingSold) -> ApplyResult:
        key = str(event.listing_id)
        moved = await self.store.mark_listing_sold(
            conn, EXCHANGE, key, event.buyer, event.log.tx_hash, _event_time(event.log)
        )
        if not moved:
            return await self._after_guard_miss(conn, event, LISTINGS, key, SALE)

        listing = await self.store.get_listing(conn, EXCHANGE, key)
        activity = await self._activity(
            conn, SALE, event, event.buyer, listing['nft_contract'], listing['token_id'],
            self._display(event.price), {'listing_id': key, 'seller': listing['seller_address']}
        )
        return ApplyResult(ApplyStatus.APPLIED, 'ListingSold', key, activity)

    async def _listing_cancelled(self, conn, event: ListingCancelled) -> ApplyResult:
        key = str(event.listing_id)
        moved = await self.store.mark_listing_cancelled(
            conn, EXCHANGE, key, event.log.tx_hash, _event_time(event.log)
        )
        if not moved:
            return await self._after_guard_miss(conn, event, LISTINGS, key, LISTING_CANCELLED)

        listing = await self.store.get_listing(conn, EXCHANGE, key)
        activity = await self._activity(
            conn, LISTING_CANCELLED, event, listing['seller_address'],
            listing['nft_contract'], listing['token_id'], listing['price'], {'listing_id': key}
        )
        return ApplyResult(ApplyStatus.APPLIED, 'ListingCancelled', key, activity)

    async def _offer_made(self, conn, event: OfferMade) -> ApplyResult:
        key = str(event.offer_id)
        created_at = _event_time(event.log)
        inserted = await self.store.insert_offer(conn, {
            'contract_type': EXCHANGE,
            'blockchain_offer_id': key,
            'buyer_address': event.buyer,
            'nft_contract': event.nft_contract,
            'token_id': str(event.token_id),
            'amount': self._display(event.amount),
            'currency': self.payment_token,
            'expiry': created_at + timedelta(days=self.default_listing_days),
            'tx_hash': event.log.tx_hash,
            'created_at': created_at,
        })
        activity = await self._activity(
            conn, OFFER_MADE, event, event.buyer, event.nft_contract, event.token_id,
            self._display(event.amount), {'offer_id': key}
        )
        status = ApplyStatus.APPLIED if inserted else ApplyStatus.DUPLICATE
        return ApplyResult(status, 'OfferMade', key, activity)

    async def _offer_accepted(self, conn, event: OfferAccepted) -> ApplyResult:
        key = str(event.offer_id)
        moved = await self.store.mark_offer_accepted(
            conn, EXCHANGE, key, event.seller, event.log.tx_hash, _event_time(event.log)
        )
        if not moved:
            return await self._after_guard_miss(conn, event, OFFERS, key, OFFER_ACCEPTED)

        offer = await self.store.get_offer(conn, EXCHANGE, key)
        activity = await self._activity(
            conn, OFFER_ACCEPTED, event, event.seller, offer['nft_contract'], offer['token_id'],
            offer['amount'], {'offer_id': key, 'buyer': offer['buyer_address']}
        )
        return ApplyResult(ApplyStatus.APPLIED, 'OfferAccepted', key, activity)

    async def _offer_cancelled(self, conn, event: OfferCancelled) -> ApplyResult:
        key = str(event.offer_id)
        moved = await self.store.mark_offer_cancelled(
            conn, EXCHANGE, key, event.log.tx_hash, _event_time(event.log)
        )
        if not moved:
            return await self._after_guard_miss(conn, event, OFFERS, key, OFFER_CANCELLED)

        offer = await self.store.get_offer(conn, EXCHANGE, key)
        activity = await self._activity(
            conn, OFFER_CANCELLED, event, offer['buyer_address'], offer['nft_contract'],
            offer['token_id'], offer['amount'], {'offer_id': key}
        )
        return ApplyResult(ApplyStatus.APPLIED, 'OfferCancelled', key, activity)

    # Seaport

    async def _locate_order(self, conn, order_hash: str):
        """Find the table holding a Seaport order hash: listings first, then offers"""
        listing = await self.store.get_listing(conn, SEAPORT, order_hash)
        if listing is not None:
            return LISTINGS, listing
        offer = await self.store.get_offer(conn, SEAPORT, order_hash)
        if offer is not None:
            return OFFERS, offer
        return None, None

    async def _order_fulfilled(self, conn, event: OrderFulfilled) -> ApplyResult:
        key = event.order_hash
        table, row = await self._locate_order(conn, key)
        if table is None:
            recipients = [item.recipient for item in event.consideration]
            if not self._pays_fee_recipient(recipients):
                return ApplyResult(ApplyStatus.IGNORED, 'OrderFulfilled', key, detail='foreign order')
            await self._anomaly(
                conn, UNKNOWN_NATURAL_KEY, SEAPORT, key, event.log,
                {'event': 'OrderFulfilled', 'offerer': event.offerer}
            )
            return ApplyResult(ApplyStatus.ANOMALY, 'OrderFulfilled', key, detail=UNKNOWN_NATURAL_KEY)

        fill = event.fill
        at = _event_time(event.log)
        if table == LISTINGS:
            buyer = fill.buyer if fill and fill.side == 'listing' else event.recipient
            moved = await self.store.mark_listing_sold(conn, SEAPORT, key, buyer, event.log.tx_hash, at)
            activity_type, actor = SALE, buyer
        else:
            seller = fill.seller if fill and fill.side == 'offer' else event.recipient
            moved = await self.store.mark_offer_accepted(conn, SEAPORT, key, seller, event.log.tx_hash, at)
            activity_type, actor = OFFER_ACCEPTED, seller

        if not moved:
            return await self._after_guard_miss(conn, event, table, key, activity_type)

        price = None
        if fill is not None and fill.total_price is not None:
            price = self._display(fill.total_price, fill.currency)
        else:
            await self._anomaly(
                conn, UNPRICED_FILL, SEAPORT, key, event.log,
                {'reason': 'no single-currency payment to derive a price from'}
            )

        activity = await self._activity(
            conn, activity_type, event, actor, row['nft_contract'], row['token_id'], price,
            {'order_hash': key, 'offerer': event.offerer, 'recipient': event.recipient}
        )
        return ApplyResult(ApplyStatus.APPLIED, 'OrderFulfilled', key, activity)

    async def _order_cancelled(self, conn, event: OrderCancelled) -> ApplyResult:
        key = event.order_hash
        table, row = await self._locate_order(conn, key)
        if table is None:
            return ApplyResult(ApplyStatus.IGNORED, 'OrderCancelled', key, detail='foreign order')

        at = _event_time(event.log)
        if table == LISTINGS:
            moved = await self.store.mark_listing_cancelled(conn, SEAPORT, key, event.log.tx_hash, at)
            activity_type, price = LISTING_CANCELLED, row['price']
        else:
            moved = await self.store.mark_offer_cancelled(conn, SEAPORT, key, event.log.tx_hash, at)
            activity_type, price = OFFER_CANCELLED, row['amount']

        if not moved:
            return await self._after_guard_miss(conn, event, table, key, activity_type)

        activity = await self._activity(
            conn, activity_type, event, event.offerer, row['nft_contract'], row['token_id'],
            price, {'order_hash': key}
        )
        return ApplyResult(ApplyStatus.APPLIED, 'OrderCancelled', key, activity)

    async def _order_validated(self, conn, event: OrderValidated) -> ApplyResult:
        key = event.order_hash
        recipients = [item['recipient'] for item in event.parameters['consideration']]
        table, _ = await self._locate_order(conn, key)
        if table is None and not self._pays_fee_recipient(recipients):
            return ApplyResult(ApplyStatus.IGNORED, 'OrderValidated', key, detail='foreign order')

        try:
            terms = derive_listing_terms(event.parameters, self.payment_token)
        except OrderParametersError as e:
            logger.info(f"Ignoring validated order {key}: {e}")
            return ApplyResult(ApplyStatus.IGNORED, 'OrderValidated', key, detail=str(e))

        inserted, activity_type, table = await self._insert_order(
            conn, key, terms, event.parameters, None, event.log.tx_hash, _event_time(event.log)
        )
        activity = await self._activity(
            conn, activity_type, event, terms.offerer, terms.nft_contract, terms.token_id,
            self._order_price(terms), {'order_hash': key}
        )
        status = ApplyStatus.APPLIED if inserted else ApplyStatus.DUPLICATE
        return ApplyResult(status, 'OrderValidated', key, activity)

    async def _counter_incremented(self, conn, event: CounterIncremented) -> ApplyResult:
        key = f"{event.offerer}:{event.new_counter}"
        cancelled = await self.store.cancel_below_counter(
            conn, event.offerer, event.new_counter, event.log.tx_hash, _event_time(event.log)
        )
        activity = False
        for table, activity_type in ((LISTINGS, LISTING_CANCELLED), (OFFERS, OFFER_CANCELLED)):
            if cancelled[table]:
                activity |= await self._activity(
                    conn, activity_type, event, event.offerer, None, None, None,
                    {'order_hashes': cancelled[table], 'counter': str(event.new_counter)}
                )

        if cancelled[LISTINGS] or cancelled[OFFERS]:
            return ApplyResult(ApplyStatus.APPLIED, 'CounterIncremented', key, activity)
        return ApplyResult(ApplyStatus.IGNORED, 'CounterIncremented', key, detail='no open orders')

    async def _orders_matched(self, conn, event: OrdersMatched) -> ApplyResult:
        # Each matched order also emits OrderFulfilled, which carries the trade
        key = event.log.tx_hash
        tracked = []
        for order_hash in event.order_hashes:
            table, _ = await self._locate_order(conn, order_hash)
            if table is not None:
                tracked.append(order_hash)
        if not tracked:
            return ApplyResult(ApplyStatus.IGNORED, 'OrdersMatched', key, detail='foreign order')
        logger.info(f"Orders {', '.join(tracked)} matched in {key}")
        return ApplyResult(
            ApplyStatus.IGNORED, 'OrdersMatched', key,
            detail=f"{len(tracked)} tracked orders, settled by their OrderFulfilled events"
        )

    async def _insert_order(
        self, conn, order_hash: str, terms, parameters: Mapping[str, Any],
        counter: Optional[int], tx_hash: Optional[str], created_at: datetime
    ):
        price = self._order_price(terms)
        common = {
            'contract_type': SEAPORT,
            'order_hash': order_hash,
            'nft_contract': terms.nft_contract,
            'token_id': str(terms.token_id),
            'currency': terms.currency,
            'expiry': _from_unix(terms.end_time),
            'order_parameters': dict(parameters),
            'counter': counter,
            'tx_hash': tx_hash,
            'created_at': created_at,
        }
        if terms.side == 'listing':
            inserted = await self.store.insert_listing(conn, dict(
                common, seller_address=terms.offerer, price=price
            ))
            return inserted, LISTING_CREATED, LISTINGS
        inserted = await self.store.insert_offer(conn, dict(
            common, buyer_address=terms.offerer, amount=price
        ))
        return inserted, OFFER_MADE, OFFERS

    # Write paths used outside the event stream

    async def register_order(
        self,
        order_parameters: Mapping[str, Any],
        tx_hash: Optional[str] = None
    ) -> ApplyResult:
        """Pre-insert a Seaport listing or offer under its computed order hash.

        Used by the public API when a client submits a signed order, before
        any on-chain event references it. Later events find the row by hash.

        Raises:
            OrderParametersError: Parameters are malformed or not a single-NFT trade
            ProjectionError: The database rejected the write
        """
        order = parse_order_parameters(order_parameters)
        order_hash = get_order_hash(order)
        terms = derive_listing_terms(order, self.payment_token)
        now = datetime.now(timezone.utc)

        try:
            async with self.store.transaction() as conn:
                inserted, activity_type, _ = await self._insert_order(
                    conn, order_hash, terms, order.to_dict(), order.counter, tx_hash, now
                )
                activity = False
                if inserted and tx_hash:
                    activity = await self.store.insert_activity(conn, {
                        'type': activity_type,
                        'contract_type': SEAPORT,
                        'actor_address': terms.offerer,
                        'nft_contract': terms.nft_contract,
                        'token_id': str(terms.token_id),
                        'price': self._order_price(terms),
                        'metadata': {'order_hash': order_hash},
                        'tx_hash': tx_hash,
                        'created_at': now,
                    })
        except PostgresError as e:
            raise ProjectionError(str(e), 'register_order') from e

        status = ApplyStatus.APPLIED if inserted else ApplyStatus.DUPLICATE
        logger.info(f"Registered seaport {terms.side} {order_hash} -> {status.value}")
        return ApplyResult(status, 'register_order', order_hash, activity)

    async def record_decode_error(self, log: RawLog, error: DecodeError, contract_type: Optional[str] = None) -> bool:
        """Durably record a log that could not be decoded"""
        try:
            async with self.store.transaction() as conn:
                return await self._anomaly(
                    conn, DECODE_ERROR, contract_type, log.topic0, log.ref,
                    {'error': str(error), 'event': error.event_name}
                )
        except PostgresError as e:
            raise ProjectionError(str(e), 'decode_error') from e

    async def apply_correction(
        self,
        table: str,
        contract_type: str,
        key: str,
        outcome: str,
        marker: str,
        reason: Dict[str, Any]
    ) -> ApplyResult:
        """Move a row to a terminal state on the strength of a contract read.

        ``marker`` stands in for the transaction hash so the correction is
        distinguishable from an event-sourced transition. Sold/accepted
        corrections cannot know the counterparty and are flagged for it.

        Args:
            table: ``listings`` or ``offers``
            contract_type: ``exchange`` or ``seaport``
            key: Natural key of the row
            outcome: ``sold``, ``accepted`` or ``cancelled``
            marker: Synthetic transaction reference
            reason: What the on-chain read showed, kept in activity metadata
        """
        now = datetime.now(timezone.utc)
        try:
            async with self.store.transaction() as conn:
                if outcome == 'sold':
                    moved = await self.store.mark_listing_sold(conn, contract_type, key, None, marker, now)
                    activity_type = SALE
                elif outcome == 'accepted':
                    moved = await self.store.mark_offer_accepted(conn, contract_type, key, None, marker, now)
                    activity_type = OFFER_ACCEPTED
                elif table == LISTINGS:
                    moved = await self.store.mark_listing_cancelled(conn, contract_type, key, marker, now)
                    activity_type = LISTING_CANCELLED
                else:
                    moved = await self.store.mark_offer_cancelled(conn, contract_type, key, marker, now)
                    activity_type = OFFER_CANCELLED

                if not moved:
                    return ApplyResult(ApplyStatus.IGNORED, 'correction', key, detail='already terminal')

                getter = self.store.get_listing if table == LISTINGS else self.store.get_offer
                row = await getter(conn, contract_type, key)
                owner = row['seller_address'] if table == LISTINGS else row['buyer_address']
                activity = await self.store.insert_activity(conn, {
                    'type': activity_type,
                    'contract_type': contract_type,
                    'actor_address': owner if outcome == 'cancelled' else None,
                    'nft_contract': row['nft_contract'],
                    'token_id': row['token_id'],
                    'price': row['price'] if table == LISTINGS else row['amount'],
                    'metadata': dict(reason, source='reconciliation', natural_key=key),
                    'tx_hash': marker,
                    'created_at': now,
                })
                if outcome in ('sold', 'accepted'):
                    await self._anomaly(
                        conn, BUYER_UNRESOLVED, contract_type, key,
                        detail={'table': table, 'marker': marker}
                    )
        except PostgresError as e:
            raise ProjectionError(str(e), 'correction') from e

        logger.info(f"Corrected {table} {contract_type}/{key} to {outcome} ({marker})")
        return ApplyResult(ApplyStatus.APPLIED, 'correction', key, activity)

    async def flag(
        self,
        kind: str,
        contract_type: str,
        key: str,
        detail: Dict[str, Any]
    ) -> bool:
        """Record a drift flag once per (kind, row)"""
        try:
            async with self.store.transaction() as conn:
                return await self._anomaly(conn, kind, contract_type, key, detail=detail)
        except PostgresError as e:
            raise ProjectionError(str(e), kind) from e


__all__ = [
    'StateProjector',
    'ApplyResult',
    'ApplyStatus',
    'ProjectionError',
    'UNKNOWN_NATURAL_KEY',
    'DECODE_ERROR',
    'UNPRICED_FILL',
    'BUYER_UNRESOLVED',
]
