"""Seaport order hashing.

Recomputes the hash Seaport's ``getOrderHash`` returns for a set of
``OrderComponents``. The result is the EIP-712 struct hash of the order (no
domain separator), which is the order's identifier in every Seaport event.

Encoding, following Seaport 1.6 ``ConsiderationBase``:

* each offer/consideration item is ``keccak(abi.encode(ITEM_TYPEHASH, fields...))``
* an item array is ``keccak`` of the concatenated item hashes (an empty array
  hashes the empty byte string)
* the order is ``keccak(abi.encode(ORDER_TYPEHASH, offerer, zone, offerHash,
  considerationHash, orderType, startTime, endTime, zoneHash, salt, conduitKey,
  counter))``

The order typehash covers the referenced struct types appended in
alphabetical order, as EIP-712 requires.
"""
import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from eth_abi import encode as abi_encode
from eth_utils import keccak, is_hex_address, encode_hex, decode_hex

UINT256_MAX = 2 ** 256 - 1
UINT8_MAX = 2 ** 8 - 1
ZERO_ADDRESS = '0x' + '00' * 20
ZERO_BYTES32 = '0x' + '00' * 32
BYTES32_RE = re.compile(r'^0x[0-9a-fA-F]{64}$')

OFFER_ITEM_TYPE = (
    "OfferItem(uint8 itemType,address token,uint256 identifierOrCriteria,"
    "uint256 startAmount,uint256 endAmount)"
)
CONSIDERATION_ITEM_TYPE = (
    "ConsiderationItem(uint8 itemType,address token,uint256 identifierOrCriteria,"
    "uint256 startAmount,uint256 endAmount,address recipient)"
)
ORDER_COMPONENTS_TYPE = (
    "OrderComponents(address offerer,address zone,OfferItem[] offer,"
    "ConsiderationItem[] consideration,uint8 orderType,uint256 startTime,"
    "uint256 endTime,bytes32 zoneHash,uint256 salt,bytes32 conduitKey,uint256 counter)"
)

OFFER_ITEM_TYPEHASH = keccak(text=OFFER_ITEM_TYPE)
CONSIDERATION_ITEM_TYPEHASH = keccak(text=CONSIDERATION_ITEM_TYPE)
ORDER_TYPEHASH = keccak(text=ORDER_COMPONENTS_TYPE + CONSIDERATION_ITEM_TYPE + OFFER_ITEM_TYPE)


class ItemType(IntEnum):
    NATIVE = 0
    ERC20 = 1
    ERC721 = 2
    ERC1155 = 3
    ERC721_WITH_CRITERIA = 4
    ERC1155_WITH_CRITERIA = 5

    @property
    def is_nft(self) -> bool:
        return self in NFT_ITEM_TYPES

    @property
    def is_currency(self) -> bool:
        return self in (ItemType.NATIVE, ItemType.ERC20)


NFT_ITEM_TYPES = frozenset({
    ItemType.ERC721,
    ItemType.ERC1155,
    ItemType.ERC721_WITH_CRITERIA,
    ItemType.ERC1155_WITH_CRITERIA,
})


class OrderType(IntEnum):
    FULL_OPEN = 0
    PARTIAL_OPEN = 1
    FULL_RESTRICTED = 2
    PARTIAL_RESTRICTED = 3
    CONTRACT = 4


class OrderParametersError(ValueError):
    """Raised when order parameters are missing fields or hold malformed values."""
    pass


@dataclass(frozen=True)
class OfferItem:
    item_type: ItemType
    token: str
    identifier_or_criteria: int
    start_amount: int
    end_amount: int


@dataclass(frozen=True)
class ConsiderationItem:
    item_type: ItemType
    token: str
    identifier_or_criteria: int
    start_amount: int
    end_amount: int
    recipient: str


@dataclass(frozen=True)
class OrderComponents:
    """Normalized Seaport order. Addresses and bytes32 values are lower-case hex."""
    offerer: str
    zone: str
    offer: Tuple[OfferItem, ...]
    consideration: Tuple[ConsiderationItem, ...]
    order_type: OrderType
    start_time: int
    end_time: int
    zone_hash: str
    salt: int
    conduit_key: str
    counter: int

    def to_dict(self) -> Dict[str, Any]:
        """Canonical camelCase form, integers as decimal strings (JSON safe)"""
        return {
            'offerer': self.offerer,
            'zone': self.zone,
            'offer': [
                {
                    'itemType': int(item.item_type),
                    'token': item.token,
                    'identifierOrCriteria': str(item.identifier_or_criteria),
                    'startAmount': str(item.start_amount),
                    'endAmount': str(item.end_amount),
                }
                for item in self.offer
            ],
            'consideration': [
                {
                    'itemType': int(item.item_type),
                    'token': item.token,
                    'identifierOrCriteria': str(item.identifier_or_criteria),
                    'startAmount': str(item.start_amount),
                    'endAmount': str(item.end_amount),
                    'recipient': item.recipient,
                }
                for item in self.consideration
            ],
            'orderType': int(self.order_type),
            'startTime': str(self.start_time),
            'endTime': str(self.end_time),
            'zoneHash': self.zone_hash,
            'salt': str(self.salt),
            'conduitKey': self.conduit_key,
            'counter': str(self.counter),
        }


_MISSING = object()


def _snake(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def _get(params: Mapping[str, Any], name: str, default: Any = _MISSING, aliases: Tuple[str, ...] = ()) -> Any:
    for key in (name, _snake(name)) + aliases:
        if key in params and params[key] is not None:
            return params[key]
    if default is _MISSING:
        raise OrderParametersError(f"missing field '{name}'")
    return default


def _uint(value: Any, field: str, maximum: int = UINT256_MAX) -> int:
    if isinstance(value, bool):
        raise OrderParametersError(f"{field}: expected an integer, got a boolean")
    if isinstance(value, int):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            number = int(text, 16) if text.lower().startswith('0x') else int(text, 10)
        except ValueError:
            raise OrderParametersError(f"{field}: not an integer ({value!r})")
    else:
        raise OrderParametersError(f"{field}: unsupported type {type(value).__name__}")
    if not 0 <= number <= maximum:
        raise OrderParametersError(f"{field}: {number} out of range")
    return number


def _address(value: Any, field: str) -> str:
    if not isinstance(value, str) or not is_hex_address(value):
        raise OrderParametersError(f"{field}: not a 20-byte hex address ({value!r})")
    return value.lower()


def _bytes32(value: Any, field: str) -> str:
    if isinstance(value, (bytes, bytearray)) and len(value) == 32:
        return encode_hex(bytes(value))
    if not isinstance(value, str) or not BYTES32_RE.match(value):
        raise OrderParametersError(f"{field}: not a 32-byte hex value ({value!r})")
    return value.lower()


def _item_type(value: Any, field: str) -> ItemType:
    number = _uint(value, field, UINT8_MAX)
    try:
        return ItemType(number)
    except ValueError:
        raise OrderParametersError(f"{field}: unknown item type {number}")


def _items(params: Mapping[str, Any], name: str) -> list:
    items = _get(params, name)
    if not isinstance(items, (list, tuple)):
        raise OrderParametersError(f"{name}: expected a list of items")
    return list(items)


def _parse_offer_item(item: Any, path: str) -> OfferItem:
    if not isinstance(item, Mapping):
        raise OrderParametersError(f"{path}: expected an object")
    return OfferItem(
        item_type=_item_type(_get(item, 'itemType'), f"{path}.itemType"),
        token=_address(_get(item, 'token'), f"{path}.token"),
        identifier_or_criteria=_uint(
            _get(item, 'identifierOrCriteria', aliases=('identifier',)),
            f"{path}.identifierOrCriteria"
        ),
        start_amount=_uint(_get(item, 'startAmount'), f"{path}.startAmount"),
        end_amount=_uint(_get(item, 'endAmount'), f"{path}.endAmount"),
    )


def _parse_consideration_item(item: Any, path: str) -> ConsiderationItem:
    offer_part = _parse_offer_item(item, path)
    return ConsiderationItem(
        item_type=offer_part.item_type,
        token=offer_part.token,
        identifier_or_criteria=offer_part.identifier_or_criteria,
        start_amount=offer_part.start_amount,
        end_amount=offer_part.end_amount,
        recipient=_address(_get(item, 'recipient'), f"{path}.recipient"),
    )


def parse_order_parameters(
    params: Union[Mapping[str, Any], OrderComponents],
    counter: Optional[int] = None,
    require_counter: bool = True
) -> OrderComponents:
    """Normalize raw order parameters into :class:`OrderComponents`.

    Accepts camelCase or snake_case keys, integers as ints or decimal/hex
    strings, and ``identifier`` as an alias of ``identifierOrCriteria``.
    ``zone``, ``zoneHash``, ``conduitKey`` and ``orderType`` default to zero.

    Args:
        params: Raw order parameters (e.g. as submitted by a client)
        counter: Overrides the ``counter`` field when given
        require_counter: When False a missing counter reads as 0. The result
            is then fine for inspecting terms but not for hashing.

    Raises:
        OrderParametersError: A required field is missing or malformed
    """
    if isinstance(params, OrderComponents):
        return params
    if not isinstance(params, Mapping):
        raise OrderParametersError("order parameters must be an object")

    # Wrapped form {"parameters": {...}, "signature": ...}
    if 'parameters' in params and isinstance(params['parameters'], Mapping):
        params = params['parameters']

    offer = tuple(
        _parse_offer_item(item, f"offer[{i}]")
        for i, item in enumerate(_items(params, 'offer'))
    )
    consideration = tuple(
        _parse_consideration_item(item, f"consideration[{i}]")
        for i, item in enumerate(_items(params, 'consideration'))
    )

    order_type = _uint(_get(params, 'orderType', 0), 'orderType', UINT8_MAX)
    try:
        order_type = OrderType(order_type)
    except ValueError:
        raise OrderParametersError(f"orderType: unknown order type {order_type}")

    if counter is not None:
        raw_counter = counter
    else:
        raw_counter = _get(params, 'counter', _MISSING if require_counter else 0)

    return OrderComponents(
        offerer=_address(_get(params, 'offerer'), 'offerer'),
        zone=_address(_get(params, 'zone', ZERO_ADDRESS), 'zone'),
        offer=offer,
        consideration=consideration,
        order_type=order_type,
        start_time=_uint(_get(params, 'startTime'), 'startTime'),
        end_time=_uint(_get(params, 'endTime'), 'endTime'),
        zone_hash=_bytes32(_get(params, 'zoneHash', ZERO_BYTES32), 'zoneHash'),
        salt=_uint(_get(params, 'salt'), 'salt'),
        conduit_key=_bytes32(_get(params, 'conduitKey', ZERO_BYTES32), 'conduitKey'),
        counter=_uint(raw_counter, 'counter'),
    )


def _hash_offer_item(item: OfferItem) -> bytes:
    return keccak(abi_encode(
        ['bytes32', 'uint8', 'address', 'uint256', 'uint256', 'uint256'],
        [
            OFFER_ITEM_TYPEHASH,
            int(item.item_type),
            item.token,
            item.identifier_or_criteria,
            item.start_amount,
            item.end_amount,
        ]
    ))


def _hash_consideration_item(item: ConsiderationItem) -> bytes:
    return keccak(abi_encode(
        ['bytes32', 'uint8', 'address', 'uint256', 'uint256', 'uint256', 'address'],
        [
            CONSIDERATION_ITEM_TYPEHASH,
            int(item.item_type),
            item.token,
            item.identifier_or_criteria,
            item.start_amount,
            item.end_amount,
            item.recipient,
        ]
    ))


def hash_order_components(order: OrderComponents) -> bytes:
    """32-byte struct hash of normalized order components"""
    offer_hash = keccak(b''.join(_hash_offer_item(item) for item in order.offer))
    consideration_hash = keccak(
        b''.join(_hash_consideration_item(item) for item in order.consideration)
    )
    return keccak(abi_encode(
        [
            'bytes32', 'address', 'address', 'bytes32', 'bytes32', 'uint8',
            'uint256', 'uint256', 'bytes32', 'uint256', 'bytes32', 'uint256',
        ],
        [
            ORDER_TYPEHASH,
            order.offerer,
            order.zone,
            offer_hash,
            consideration_hash,
            int(order.order_type),
            order.start_time,
            order.end_time,
            decode_hex(order.zone_hash),
            order.salt,
            decode_hex(order.conduit_key),
            order.counter,
        ]
    ))


def get_order_hash(order_parameters: Union[Mapping[str, Any], OrderComponents]) -> str:
    """Compute the Seaport order hash as a lower-case ``0x`` hex string.

    Pure and deterministic; no network access.

    Raises:
        OrderParametersError: Parameters cannot be normalized
    """
    return encode_hex(hash_order_components(parse_order_parameters(order_parameters)))
