"""
Live tracking Pydantic schemas.
"""

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel

from delivery.services.orders.enums import DeliveryStatus


class RouteResponse(BaseModel):
    points: list[tuple[float, float]]
    source: Literal["osrm", "straight_line"]


class TrackingViewResponse(BaseModel):
    """Rendered live state of a tracked order."""

    order_id: UUID
    status: Optional[DeliveryStatus] = None
    courier_id: Optional[UUID] = None
    tracking_active: bool
    position: Optional[tuple[float, float]] = None
    position_sampled_at: Optional[datetime] = None
    trail: list[tuple[float, float]]
    destination: Optional[tuple[float, float]] = None
    route: Optional[RouteResponse] = None
    terminal_notice: Optional[str] = None
