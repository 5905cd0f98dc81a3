"""
Courier API endpoints.

Couriers list orders waiting for pickup, claim them, pick them up, report
their position while delivering, and complete the delivery with the
customer's code and a photo. Responses to couriers never carry the
delivery code.
"""

import base64
import binascii
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from delivery.api.deps import CurrentCourier, Service
from delivery.core.logging import get_logger
from delivery.schemas.orders import (
    CompleteDeliveryRequest,
    LocationReport,
    OrderListResponse,
    OrderResponse,
    to_order_response,
)
from delivery.services.orders.verification import PhotoUpload
from delivery.services.tracking.publisher import PositionFix

logger = get_logger(__name__)

router = APIRouter(prefix="/deliveries", tags=["deliveries"])


def decode_photo(request: CompleteDeliveryRequest) -> Optional[PhotoUpload]:
    """
    Decode an inline photo upload.

    Raises:
        HTTPException: 422 if the payload is not valid base64
    """
    if request.photo_base64 is None:
        return None
    try:
        data = base64.b64decode(request.photo_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.warning("Invalid photo payload", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Photo must be base64 encoded",
        ) from e
    if not data:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Photo must not be empty",
        )
    return PhotoUpload(data=data, content_type=request.photo_content_type)


@router.get(
    "/available",
    response_model=OrderListResponse,
    summary="List orders ready for pickup",
    description="Oldest first, so orders waiting longest are offered first",
)
async def list_available(
    courier: CurrentCourier,
    service: Service,
    limit: int = Query(50, ge=1, le=100),
) -> OrderListResponse:
    orders = await service.available_orders(limit=limit)
    return OrderListResponse(
        items=[to_order_response(order) for order in orders],
        total=len(orders),
    )


@router.get(
    "/mine",
    response_model=OrderListResponse,
    summary="List my active deliveries",
)
async def list_mine(
    courier: CurrentCourier,
    service: Service,
    limit: int = Query(50, ge=1, le=100),
) -> OrderListResponse:
    orders = await service.courier_orders(courier.id, limit=limit)
    return OrderListResponse(
        items=[to_order_response(order) for order in orders],
        total=len(orders),
    )


@router.post(
    "/{order_id}/claim",
    response_model=OrderResponse,
    summary="Claim order",
    description="At most one courier wins; others receive 409",
)
async def claim_order(
    order_id: UUID,
    courier: CurrentCourier,
    service: Service,
) -> OrderResponse:
    logger.info(
        "Courier claiming order",
        order_id=str(order_id),
        courier_id=str(courier.id),
    )
    order = await service.claim_order(order_id, courier.id)
    return to_order_response(order)


@router.post(
    "/{order_id}/release",
    response_model=OrderResponse,
    summary="Release claimed order",
)
async def release_order(
    order_id: UUID,
    courier: CurrentCourier,
    service: Service,
) -> OrderResponse:
    order = await service.release_order(order_id, courier.id)
    return to_order_response(order)


@router.post(
    "/{order_id}/start",
    response_model=OrderResponse,
    summary="Pick up order and start delivery",
)
async def start_delivery(
    order_id: UUID,
    courier: CurrentCourier,
    service: Service,
) -> OrderResponse:
    order = await service.start_delivery(order_id, courier.id)
    return to_order_response(order)


@router.post(
    "/{order_id}/complete",
    response_model=OrderResponse,
    summary="Complete delivery",
    description="Requires the customer's 5-digit code and a delivery photo",
)
async def complete_delivery(
    order_id: UUID,
    request: CompleteDeliveryRequest,
    courier: CurrentCourier,
    service: Service,
) -> OrderResponse:
    photo = decode_photo(request)
    logger.info(
        "Courier completing delivery",
        order_id=str(order_id),
        courier_id=str(courier.id),
        inline_photo=photo is not None,
    )
    order = await service.complete_delivery(
        order_id,
        courier.id,
        request.code,
        photo=photo,
        photo_ref=request.photo_ref,
    )
    return to_order_response(order)


@router.post(
    "/{order_id}/location",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Report courier position",
)
async def report_location(
    order_id: UUID,
    report: LocationReport,
    courier: CurrentCourier,
    service: Service,
) -> dict[str, str]:
    await service.report_location(
        order_id,
        courier.id,
        PositionFix(
            latitude=report.latitude,
            longitude=report.longitude,
            accuracy=report.accuracy,
            heading=report.heading,
            speed=report.speed,
        ),
    )
    return {"status": "accepted"}
