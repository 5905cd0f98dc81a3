"""
Order lifecycle Pydantic schemas for API request/response validation.

Customers see their order's delivery code; couriers never do, so the
code is only filled in on responses to the customer who placed the order.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from delivery.services.orders.enums import ActorRole, DeliveryStatus, OrderStatus


class AddressSnapshot(BaseModel):
    """Delivery address captured at checkout."""

    model_config = ConfigDict(str_strip_whitespace=True)

    latitude: float = Field(..., ge=-90, le=90, description="Latitude")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude")
    text: str = Field(..., min_length=1, max_length=500, description="Street address")
    phone: Optional[str] = Field(None, max_length=30, description="Contact phone")
    instructions: Optional[str] = Field(
        None,
        max_length=500,
        description="Instructions for the courier",
    )


class OrderItem(BaseModel):
    """Line item supplied by the cart service."""

    model_config = ConfigDict(str_strip_whitespace=True)

    product_id: UUID = Field(..., description="Catalog product")
    name: str = Field(..., min_length=1, max_length=200)
    quantity: int = Field(..., gt=0, le=100)
    unit_price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)


class OrderCreateRequest(BaseModel):
    """Checked-out cart turned into an order."""

    items: list[OrderItem] = Field(..., min_length=1)
    total_amount: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    address: AddressSnapshot
    notes: Optional[str] = Field(None, max_length=1000)


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class CompleteDeliveryRequest(BaseModel):
    """
    Completion request from the courier.

    The photo is either uploaded inline as base64 or referenced by a path
    the client already uploaded to the blob store.
    """

    code: str = Field(..., pattern=r"^[0-9]{5}$", description="Customer's delivery code")
    photo_ref: Optional[str] = Field(None, min_length=1, max_length=512)
    photo_base64: Optional[str] = Field(None, min_length=1)
    photo_content_type: str = Field("image/jpeg", pattern=r"^image/[a-z0-9.+-]+$")

    @model_validator(mode="after")
    def validate_single_photo_source(self) -> "CompleteDeliveryRequest":
        if self.photo_ref and self.photo_base64:
            raise ValueError("Provide either photo_ref or photo_base64, not both")
        return self


class LocationReport(BaseModel):
    """Position fix reported by the courier's device."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0, description="Meters")
    heading: Optional[float] = Field(None, ge=0, lt=360, description="Degrees")
    speed: Optional[float] = Field(None, ge=0, description="Meters per second")


class OrderResponse(BaseModel):
    """Order as visible to the requesting actor."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: UUID
    status: OrderStatus
    status_detailed: DeliveryStatus
    assigned_courier_id: Optional[UUID] = None
    courier_accepted_at: Optional[datetime] = None
    out_for_delivery_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    delivery_photo_ref: Optional[str] = None
    address: AddressSnapshot
    items: list[OrderItem]
    total_amount: Decimal
    notes: Optional[str] = None
    delivery_code: Optional[str] = Field(
        None,
        description="Only returned to the customer who placed the order",
    )
    created_at: datetime
    updated_at: datetime


class OrderListResponse(BaseModel):
    items: list[OrderResponse]
    total: int


class StatusHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: Optional[DeliveryStatus] = None
    to_status: DeliveryStatus
    actor_role: ActorRole
    actor_id: Optional[UUID] = None
    reason: Optional[str] = None
    created_at: datetime


def to_order_response(order, viewer_id: Optional[UUID] = None) -> OrderResponse:
    """Serialize an order, revealing the delivery code only to its customer."""
    response = OrderResponse.model_validate(order)
    code = order.delivery_code if viewer_id is not None and order.customer_id == viewer_id else None
    return response.model_copy(update={"delivery_code": code})
