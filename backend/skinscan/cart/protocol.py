"""
Cross-frame cart protocol: message vocabulary, envelopes, and the
normalized cart model both sides agree on.

Envelopes travel as plain JSON-shaped dicts:

    {"type": "ADD_TO_CART", "payload": {...}, "correlationId": "..."}

Requests that expect a reply always carry a correlationId; the host echoes
it on the reply. Broadcasts (CART_INITIAL_STATE) carry none.
"""

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from skinscan.core.exceptions import ProtocolError

DEFAULT_CURRENCY = "EUR"


class MessageType(str, Enum):
    # embedded → host
    GET_CART = "GET_CART"
    ADD_TO_CART = "ADD_TO_CART"
    REMOVE_FROM_CART = "REMOVE_FROM_CART"
    ADD_ROUTINE_TO_CART = "ADD_ROUTINE_TO_CART"
    NAVIGATE = "NAVIGATE"
    # host → embedded
    CART_INITIAL_STATE = "CART_INITIAL_STATE"
    CART_UPDATE_SUCCESS = "CART_UPDATE_SUCCESS"
    CART_UPDATE_ERROR = "CART_UPDATE_ERROR"
    CART_DATA = "CART_DATA"


REQUEST_TYPES = frozenset({
    MessageType.GET_CART,
    MessageType.ADD_TO_CART,
    MessageType.REMOVE_FROM_CART,
    MessageType.ADD_ROUTINE_TO_CART,
    MessageType.NAVIGATE,
})

# Requests the embedded side waits on; NAVIGATE is fire-and-forget
REPLY_EXPECTED = REQUEST_TYPES - {MessageType.NAVIGATE}

RESPONSE_TYPES = frozenset({
    MessageType.CART_UPDATE_SUCCESS,
    MessageType.CART_UPDATE_ERROR,
    MessageType.CART_DATA,
})


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CartMessageEnvelope(_CamelModel):
    type: MessageType
    payload: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = None
    origin: str | None = None

    @classmethod
    def parse(cls, data: Any, origin: str | None = None) -> "CartMessageEnvelope":
        """Validate an incoming message; anything unrecognizable is a ProtocolError."""
        if not isinstance(data, dict):
            raise ProtocolError("Cart message is not an object")
        try:
            envelope = cls.model_validate(data)
        except ValidationError as exc:
            raise ProtocolError(f"Malformed cart message: {exc.errors()[0]['msg']}") from exc
        if envelope.origin is None:
            envelope.origin = origin
        return envelope


# ── Identifier normalization ─────────────────────────────────────────────────

_TRAILING_DIGITS = re.compile(r"/(\d+)$")


def normalize_variant_id(value: Any) -> int:
    """
    Reduce a variant identifier to the platform's numeric ID.

    Accepts numeric IDs (int or digit string) and structured global IDs
    such as "gid://shopify/ProductVariant/123456789".
    """
    if isinstance(value, bool):
        raise ProtocolError(f"Invalid variant ID: {value!r}")
    if isinstance(value, int):
        if value <= 0:
            raise ProtocolError(f"Invalid variant ID: {value!r}")
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
        match = _TRAILING_DIGITS.search(text)
        if match and text.startswith("gid://"):
            return int(match.group(1))
    raise ProtocolError(f"Invalid variant ID: {value!r}")


def same_variant(a: Any, b: Any) -> bool:
    try:
        return normalize_variant_id(a) == normalize_variant_id(b)
    except ProtocolError:
        return False


# ── Cart model ───────────────────────────────────────────────────────────────

def to_minor_units(value: Any) -> int:
    """Prices as integer minor units. Strings with a decimal point are major units."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ProtocolError(f"Invalid price: {value!r}")
    if isinstance(value, int):
        return value
    try:
        if isinstance(value, float) or (isinstance(value, str) and "." in value):
            return int((Decimal(str(value)) * 100).quantize(Decimal("1")))
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError) as exc:
        raise ProtocolError(f"Invalid price: {value!r}") from exc


class CartLine(_CamelModel):
    key: str
    variant_id: int
    product_id: int | None = None
    title: str = ""
    quantity: int
    price: int = 0              # minor units, per item
    image: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)


class CartSnapshot(_CamelModel):
    """Read-mostly view of the host cart. Prices are integer minor units."""

    item_count: int = 0
    total_price: int = 0
    currency: str = DEFAULT_CURRENCY
    items: list[CartLine] = Field(default_factory=list)
    token: str | None = None

    @property
    def total(self) -> Decimal:
        return Decimal(self.total_price) / 100

    def quantity_of(self, variant_id: Any) -> int:
        return sum(line.quantity for line in self.items if same_variant(line.variant_id, variant_id))

    def line_for(self, variant_id: Any) -> CartLine | None:
        for line in self.items:
            if same_variant(line.variant_id, variant_id):
                return line
        return None

    @classmethod
    def from_host(cls, cart: dict) -> "CartSnapshot":
        """
        Normalize the host's native cart (`/cart.js` shape, or a cart
        webhook body with `line_items`) into a snapshot.
        """
        if not isinstance(cart, dict):
            raise ProtocolError("Cart payload is not an object")

        # Already normalized (e.g. relayed snapshot)
        if "itemCount" in cart:
            try:
                return cls.model_validate(cart)
            except ValidationError as exc:
                raise ProtocolError(f"Malformed cart snapshot: {exc.errors()[0]['msg']}") from exc

        raw_items = cart.get("items") or cart.get("line_items") or []
        if not isinstance(raw_items, list):
            raise ProtocolError("Cart items are not a list")
        lines = [_line_from_host(index, item) for index, item in enumerate(raw_items)]

        item_count = cart.get("item_count")
        total_price = cart.get("total_price")
        try:
            return cls(
                item_count=int(item_count) if item_count is not None else sum(line.quantity for line in lines),
                total_price=(
                    to_minor_units(total_price)
                    if total_price is not None
                    else sum(line.price * line.quantity for line in lines)
                ),
                currency=cart.get("currency") or DEFAULT_CURRENCY,
                items=lines,
                token=cart.get("token"),
            )
        except (ValidationError, TypeError, ValueError) as exc:
            raise ProtocolError(f"Malformed cart: {exc}") from exc


def _line_from_host(index: int, item: Any) -> CartLine:
    if not isinstance(item, dict):
        raise ProtocolError(f"Cart item {index} is not an object")
    try:
        variant = item.get("variant_id") or item.get("id")
        price = item.get("final_price", item.get("price"))
        properties = item.get("properties") or {}
        if isinstance(properties, list):
            properties = {
                p.get("name") or p.get("key"): p.get("value") for p in properties if isinstance(p, dict)
            }
        return CartLine(
            key=str(item.get("key") or item.get("id") or variant),
            variant_id=normalize_variant_id(variant),
            product_id=item.get("product_id"),
            title=item.get("product_title") or item.get("title") or "",
            quantity=int(item.get("quantity") or 0),
            price=to_minor_units(price),
            image=item.get("image"),
            properties=properties,
        )
    except ValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(p) for p in error["loc"])
        raise ProtocolError(f"Malformed cart item {index}: {field}: {error['msg']}") from exc
    except (TypeError, ValueError, AttributeError) as exc:
        raise ProtocolError(f"Malformed cart item {index}: {exc}") from exc


class PendingCartUpdate(_CamelModel):
    shop_key: str
    snapshot: CartSnapshot
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def age_seconds(self, now: datetime | None = None) -> float:
        return ((now or datetime.now(timezone.utc)) - self.received_at).total_seconds()
