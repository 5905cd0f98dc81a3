"""
API v1 package initialization.
"""

from delivery.api.v1.deliveries import router as deliveries_router
from delivery.api.v1.notifications import router as notifications_router
from delivery.api.v1.orders import router as orders_router
from delivery.api.v1.tracking import router as tracking_router

__all__ = [
    "deliveries_router",
    "notifications_router",
    "orders_router",
    "tracking_router",
]
