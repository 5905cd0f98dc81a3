"""
Order API endpoints for customers and the kitchen.

Customers place, view and cancel their orders; kitchen staff move orders
through preparation until they are ready for pickup. Lifecycle errors are
translated to HTTP responses by the application's DeliveryError handler.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query, status

from delivery.api.deps import (
    Actor,
    CurrentActor,
    CurrentCustomer,
    CurrentKitchen,
    Service,
    require_role,
)
from delivery.core.logging import get_logger
from delivery.schemas.orders import (
    CancelOrderRequest,
    OrderCreateRequest,
    OrderListResponse,
    OrderResponse,
    StatusHistoryResponse,
    to_order_response,
)
from delivery.services.orders.enums import ActorRole

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

CancellingActor = Annotated[
    Actor,
    Depends(require_role(ActorRole.CUSTOMER, ActorRole.SYSTEM)),
]


@router.post(
    "/",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place order",
)
async def create_order(
    request: OrderCreateRequest,
    customer: CurrentCustomer,
    service: Service,
) -> OrderResponse:
    """Create an order from a checked-out cart."""
    logger.info(
        "Creating order",
        customer_id=str(customer.id),
        item_count=len(request.items),
    )

    order = await service.create_order(
        customer_id=customer.id,
        items=[item.model_dump(mode="json") for item in request.items],
        total_amount=request.total_amount,
        address=request.address.model_dump(mode="json"),
        notes=request.notes,
    )
    return to_order_response(order, viewer_id=customer.id)


@router.get(
    "/",
    response_model=OrderListResponse,
    summary="List my orders",
)
async def list_my_orders(
    customer: CurrentCustomer,
    service: Service,
    limit: int = Query(50, ge=1, le=100),
) -> OrderListResponse:
    orders = await service.customer_orders(customer.id, limit=limit)
    return OrderListResponse(
        items=[to_order_response(order, viewer_id=customer.id) for order in orders],
        total=len(orders),
    )


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
)
async def get_order(
    order_id: UUID,
    actor: CurrentActor,
    service: Service,
) -> OrderResponse:
    order = await service.get_order(order_id, actor.role, actor.id)
    return to_order_response(order, viewer_id=actor.id)


@router.get(
    "/{order_id}/history",
    response_model=list[StatusHistoryResponse],
    summary="Get order status history",
)
async def get_order_history(
    order_id: UUID,
    actor: CurrentActor,
    service: Service,
) -> list[StatusHistoryResponse]:
    await service.get_order(order_id, actor.role, actor.id)
    history = await service.order_history(order_id)
    return [StatusHistoryResponse.model_validate(entry) for entry in history]


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel order",
    description="Customers can cancel until the courier is on the way",
)
async def cancel_order(
    order_id: UUID,
    actor: CancellingActor,
    service: Service,
    request: Optional[CancelOrderRequest] = Body(None),
) -> OrderResponse:
    logger.info(
        "Cancelling order",
        order_id=str(order_id),
        actor_id=str(actor.id),
        role=actor.role.value,
    )
    order = await service.cancel_order(
        order_id,
        actor.role,
        actor.id,
        reason=request.reason if request else None,
    )
    return to_order_response(order, viewer_id=actor.id)


@router.post(
    "/{order_id}/preparing",
    response_model=OrderResponse,
    summary="Start preparing order",
)
async def start_preparing(
    order_id: UUID,
    actor: CurrentKitchen,
    service: Service,
) -> OrderResponse:
    order = await service.start_preparing(order_id, actor.role, actor.id)
    return to_order_response(order)


@router.post(
    "/{order_id}/ready",
    response_model=OrderResponse,
    summary="Mark order ready for pickup",
)
async def mark_ready(
    order_id: UUID,
    actor: CurrentKitchen,
    service: Service,
) -> OrderResponse:
    order = await service.mark_ready(order_id, actor.role, actor.id)
    return to_order_response(order)
