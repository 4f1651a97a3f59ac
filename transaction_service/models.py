"""
models.py — Data Models for Transaction Processing

This module defines the data structures exchanged with the calling layer and
with the persistence collaborators. It uses Pydantic models to ensure type
safety and validation at every boundary.

Every variant type (discounts, promotion criteria, order status) is a
discriminated union tagged by a `kind` field, so a stored or transmitted
value always deserializes back into the exact variant it was written as,
and an unknown shape is rejected with a pydantic ValidationError.

Models:
    - Percentage / Fixed (DiscountValue): A discount applied to a price.
    - BuySpecific / BuyAny / BuyCategory (PromotionBuy): Qualifying condition of a promotion.
    - GetSoloThis / GetThis / GetSpecific / GetAny / GetCategory (PromotionGet): Promotion reward.
    - Promotion, PromotionInput: A promotion rule and its creation payload.
    - ProductPurchase, ProductInstance: Line items and their pickable units.
    - Queued / Transit / Processing / InStore / Fulfilled / Failed (OrderStatus).
    - Order, OrderInit, OrderState: Orders and their status history.
    - Transaction, TransactionInit, TransactionInput: Sales transactions.
"""

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# --- Discounts ---

class Percentage(BaseModel):
    """
    A relative discount.

    Attributes:
        value (int): Percentage taken off the price, between 0 and 100.
    """
    kind: Literal["percentage"] = "percentage"
    value: int = Field(..., ge=0, le=100)


class Fixed(BaseModel):
    """
    An absolute discount.

    Attributes:
        value (float): Amount taken off the price. The result never drops below zero.
    """
    kind: Literal["fixed"] = "fixed"
    value: float = Field(..., ge=0)


DiscountValue = Annotated[Union[Percentage, Fixed], Field(discriminator="kind")]


def no_discount() -> Percentage:
    return Percentage(value=0)


# --- Promotions ---

class BuySpecific(BaseModel):
    """The cart holds at least `quantity` units of the product `sku`."""
    kind: Literal["specific"] = "specific"
    sku: str
    quantity: float = Field(..., gt=0)


class BuyAny(BaseModel):
    """The cart holds at least `quantity` units of any product."""
    kind: Literal["any"] = "any"
    quantity: float = Field(..., gt=0)


class BuyCategory(BaseModel):
    """The cart holds at least `quantity` units tagged with `tag`."""
    kind: Literal["category"] = "category"
    tag: str
    quantity: float = Field(..., gt=0)


PromotionBuy = Annotated[Union[BuySpecific, BuyAny, BuyCategory], Field(discriminator="kind")]


class GetSoloThis(BaseModel):
    """The products that satisfied the Buy criterion are discounted themselves (e.g. 50% off t-shirts)."""
    kind: Literal["solo_this"] = "solo_this"
    discount: DiscountValue


class GetThis(BaseModel):
    """The next `quantity` units of the bought product are discounted (e.g. buy 1 get 1 half price)."""
    kind: Literal["this"] = "this"
    quantity: float = Field(..., gt=0)
    discount: DiscountValue


class GetSpecific(BaseModel):
    """Up to `quantity` units of the product `sku` are discounted."""
    kind: Literal["specific"] = "specific"
    sku: str
    quantity: float = Field(..., gt=0)
    discount: DiscountValue


class GetAny(BaseModel):
    """Up to `quantity` units of any other product are discounted."""
    kind: Literal["any"] = "any"
    quantity: float = Field(..., gt=0)
    discount: DiscountValue


class GetCategory(BaseModel):
    """Up to `quantity` units tagged with `tag` are discounted."""
    kind: Literal["category"] = "category"
    tag: str
    quantity: float = Field(..., gt=0)
    discount: DiscountValue


PromotionGet = Annotated[
    Union[GetSoloThis, GetThis, GetSpecific, GetAny, GetCategory],
    Field(discriminator="kind"),
]


class PromotionInput(BaseModel):
    """
    Administrative payload used to create or update a promotion.

    Attributes:
        name (str): Display name, e.g. "Buy 1 Get 1 10% off".
        buy (PromotionBuy): Qualifying condition on the cart.
        get (PromotionGet): What receives the discount once `buy` is satisfied.
        valid_till (datetime): Last instant at which the promotion applies.
        timestamp (datetime): Creation time.
    """
    name: str
    buy: PromotionBuy
    get: PromotionGet
    valid_till: datetime
    timestamp: datetime = Field(default_factory=utc_now)


class Promotion(PromotionInput):
    id: str


# --- Line items ---

class PickStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PICKED = "picked"
    UNCERTAIN = "uncertain"
    FAILED = "failed"


class ProductInstance(BaseModel):
    """A single pickable unit of a line item."""
    id: str = Field(default_factory=new_id)
    pick_status: PickStatus = PickStatus.PENDING


class ProductPurchase(BaseModel):
    """
    One product-and-quantity entry of an order.

    Attributes:
        id (str): Line item identifier.
        product_name (str): Display name of the product.
        product_code (str): Variant code (e.g. size/colour combination).
        product_sku (str): Stock keeping unit of the product.
        product_cost (float): Unit cost.
        quantity (float): Purchased quantity. Must be greater than zero.
        discount (DiscountValue): Per-line discount, applied before the order discount.
        tags (List[str]): Category tags used by category promotions.
        instances (List[ProductInstance]): Pickable units; when omitted, one per unit with a
            fractional remainder picked as a whole unit (2.5 gives 3).
    """
    id: str = Field(default_factory=new_id)
    product_name: str = ""
    product_code: str
    product_sku: str
    product_cost: float = Field(..., ge=0)
    quantity: float = Field(..., gt=0)
    discount: DiscountValue = Field(default_factory=no_discount)
    tags: List[str] = Field(default_factory=list)
    instances: List[ProductInstance] = Field(default_factory=list)

    @model_validator(mode="after")
    def _default_instances(self):
        if not self.instances:
            self.instances = [ProductInstance() for _ in range(math.ceil(self.quantity))]
        return self


# --- Locations & notes ---

class Location(BaseModel):
    store_code: str
    store_id: str
    contact_name: str = ""
    address: str = ""


class Note(BaseModel):
    message: str
    author: str
    timestamp: datetime = Field(default_factory=utc_now)

    def __str__(self):
        return f"{self.timestamp.strftime('%d/%m/%Y %H:%M')}: {self.message}"


# --- Order status ---

class TransitInformation(BaseModel):
    shipping_company: str
    query_url: str = ""
    tracking_code: str


class Queued(BaseModel):
    """Open cart, till cart or being processed."""
    kind: Literal["queued"] = "queued"


class Transit(BaseModel):
    """Delivery item handed to a carrier."""
    kind: Literal["transit"] = "transit"
    information: TransitInformation


class Processing(BaseModel):
    """Click-n-collect or delivery being processed, with the date processing started."""
    kind: Literal["processing"] = "processing"
    started_at: datetime = Field(default_factory=utc_now)


class InStore(BaseModel):
    """Click-n-collect item waiting in store."""
    kind: Literal["in_store"] = "in_store"


class Fulfilled(BaseModel):
    """In-store purchase or delivered item."""
    kind: Literal["fulfilled"] = "fulfilled"


class Failed(BaseModel):
    """Unable to fulfil; the reason is given."""
    kind: Literal["failed"] = "failed"
    reason: str


OrderStatus = Annotated[
    Union[Queued, Transit, Processing, InStore, Fulfilled, Failed],
    Field(discriminator="kind"),
]


class OrderState(BaseModel):
    date: datetime
    status: OrderStatus


# --- Orders ---

class OrderInit(BaseModel):
    """
    An order as submitted with a new transaction.

    Attributes:
        id (str): Order UUID, generated when omitted.
        reference (str): Human-facing order reference used for lookups.
        origin (Location): Store the goods leave from; stock is adjusted here.
        destination (Location): Store or address the goods go to.
        products (List[ProductPurchase]): Line items.
        order_notes (List[Note]): Free-form notes.
        creation_date (datetime): Creation timestamp.
        discount (DiscountValue): Order-level discount, applied after line discounts.
    """
    id: str = Field(default_factory=new_id)
    reference: str
    origin: Location
    destination: Location
    products: List[ProductPurchase]
    order_notes: List[Note] = Field(default_factory=list)
    creation_date: datetime = Field(default_factory=utc_now)
    discount: DiscountValue = Field(default_factory=no_discount)


class Order(OrderInit):
    status: OrderStatus = Field(default_factory=Queued)
    status_history: List[OrderState] = Field(default_factory=list)


# --- Transactions ---

class TransactionType(str, Enum):
    OUT = "out"
    IN = "in"
    PENDING_OUT = "pending_out"
    PENDING_IN = "pending_in"
    SAVED = "saved"
    QUOTE = "quote"

    @property
    def stock_direction(self) -> int:
        """Sign of the stock delta produced by this transaction type."""
        if self in (TransactionType.OUT, TransactionType.PENDING_OUT):
            return -1
        if self in (TransactionType.IN, TransactionType.PENDING_IN):
            return 1
        return 0


class Payment(BaseModel):
    payment_method: str
    amount: float
    currency: str = "AUD"


class CustomerRef(BaseModel):
    customer_id: str
    customer_name: str = ""


class TransactionInit(BaseModel):
    """
    Payload used to create a new transaction.

    Attributes:
        customer (CustomerRef): The purchasing customer.
        transaction_type (TransactionType): Sale, return, saved cart, quote, ...
        products (List[OrderInit]): Orders making up the transaction.
        payment (List[Payment]): Payments; their sum must match the computed cost.
        order_date (datetime): Date of the transaction, also the promotion evaluation instant.
        order_notes (List[Note]): Free-form notes.
        salesperson (str): Employee id of the salesperson.
        kiosk (str): Terminal identifier.
    """
    customer: CustomerRef
    transaction_type: TransactionType
    products: List[OrderInit]
    payment: List[Payment] = Field(default_factory=list)
    order_date: datetime = Field(default_factory=utc_now)
    order_notes: List[Note] = Field(default_factory=list)
    salesperson: str
    kiosk: str


class TransactionInput(BaseModel):
    """Full mutable body of a transaction, used by updates."""
    customer: CustomerRef
    transaction_type: TransactionType
    products: List[Order]
    order_total: float
    payment: List[Payment]
    order_date: datetime
    order_notes: List[Note] = Field(default_factory=list)
    salesperson: str
    kiosk: str


class Transaction(TransactionInput):
    id: str

    def find_order(self, order_ref: str) -> Optional[Order]:
        for order in self.products:
            if order.reference == order_ref or order.id == order_ref:
                return order
        return None
