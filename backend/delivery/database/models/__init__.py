"""
ORM models for the order store.

Importing this package registers every table on Base.metadata.
"""

from delivery.database.base import Base
from delivery.database.models.delivery_photo import DeliveryPhoto
from delivery.database.models.location import CourierLocation
from delivery.database.models.order import Order, OrderStatusHistory

__all__ = [
    "Base",
    "CourierLocation",
    "DeliveryPhoto",
    "Order",
    "OrderStatusHistory",
]
