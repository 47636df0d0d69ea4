"""
Host storefront contracts

The order/fulfillment store and event bus belong to the host application.
This module defines what the carrier integration needs from them, plus the
order snapshot types the shipment pipeline consumes.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Union


class HostOrderNotFound(LookupError):
    """Raised by an OrderStore when the order id is unknown."""


class OrderStore(Protocol):
    """Read/patch access to host orders and fulfillments."""

    async def get_order_owner(self, order_id: str) -> Optional[str]:
        """Customer id owning the order, None for guest orders. Raises HostOrderNotFound."""
        ...

    async def get_fulfillment_data(self, fulfillment_id: str) -> Optional[Dict[str, Any]]:
        """Stored carrier metadata of a fulfillment, None when unknown."""
        ...

    async def update_fulfillment_data(self, fulfillment_id: str, data: Dict[str, Any]) -> None:
        ...


class EventBus(Protocol):
    """Named-event publisher. Optional collaborator."""

    async def emit(self, name: str, payload: Dict[str, Any]) -> None:
        ...


# ==================== Order snapshot ====================


@dataclass
class OrderAddress:
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    address_1: Optional[str] = None
    address_2: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None
    country_code: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class ProductDimensions:
    """Product-level fallback for variants without their own measurements."""
    weight: Optional[float] = None  # grams
    length: Optional[float] = None  # cm
    width: Optional[float] = None
    height: Optional[float] = None


@dataclass
class ProductVariant:
    sku: Optional[str] = None
    weight: Optional[float] = None  # grams
    length: Optional[float] = None  # cm
    width: Optional[float] = None
    height: Optional[float] = None
    hs_code: Optional[str] = None
    product: Optional[ProductDimensions] = None

    def measurement(self, name: str) -> Optional[float]:
        value = getattr(self, name)
        if value is None and self.product is not None:
            value = getattr(self.product, name)
        return value


@dataclass
class OrderLineItem:
    id: str
    title: str
    unit_price: Union[Decimal, float, int]
    quantity: int = 1
    variant: Optional[ProductVariant] = None
    variant_sku: Optional[str] = None


@dataclass
class HostOrder:
    id: str
    created_at: datetime
    email: Optional[str] = None
    items: List[OrderLineItem] = field(default_factory=list)
    shipping_address: Optional[OrderAddress] = None
    billing_address: Optional[OrderAddress] = None
    customer_id: Optional[str] = None
    payment_status: Optional[str] = None


@dataclass
class FulfillmentItem:
    line_item_id: str
    quantity: int
    title: Optional[str] = None
    sku: Optional[str] = None
