"""
Delivery verification gating the terminal transition.

Completing a delivery needs an evidence photo and the customer's delivery
code. The photo is stored first and recorded against the order id, so a
failed code check keeps it and a retry reuses it instead of uploading a
second one. The transition itself is a single conditional update, which is
the only commit point for the delivered state; retrying the whole operation
after a partial failure converges on the same result.
"""

import hmac
import uuid
from dataclasses import dataclass
from typing import Optional

from delivery.core.config import get_settings
from delivery.core.exceptions import (
    CodeMismatch,
    EvidenceRequired,
    InvalidTransition,
    OperationTimeout,
)
from delivery.core.logging import get_logger
from delivery.core.retry import with_timeout
from delivery.database.models.delivery_photo import DeliveryPhoto
from delivery.database.models.order import Order
from delivery.services.orders.enums import ActorRole, DeliveryStatus
from delivery.services.orders.lifecycle import OrderLifecycle
from delivery.services.orders.states import Delivered, OrderState
from delivery.services.storage.blob_store import BlobStore, delivery_photo_key

logger = get_logger(__name__)


@dataclass(frozen=True)
class PhotoUpload:
    """Evidence photo bytes captured at the door."""

    data: bytes
    content_type: str = "image/jpeg"


def codes_match(entered: str, expected: str) -> bool:
    """Exact comparison of a delivery code, digits only."""
    return hmac.compare_digest(entered.encode("utf-8"), expected.encode("utf-8"))


def delivered_by(state: OrderState, courier_id: uuid.UUID) -> bool:
    return isinstance(state, Delivered) and state.courier_id == courier_id


class DeliveryVerifier:
    """
    Verifies and applies the out_for_delivery -> delivered transition.

    Attributes:
        lifecycle: Transition executor for the request's session
        blob_store: Storage for evidence photos
        completion_timeout: Client-side deadline for one completion
    """

    def __init__(
        self,
        lifecycle: OrderLifecycle,
        blob_store: BlobStore,
        completion_timeout: Optional[float] = None,
    ):
        self.lifecycle = lifecycle
        self.repository = lifecycle.repository
        self.state_machine = lifecycle.state_machine
        self.blob_store = blob_store
        self.completion_timeout = (
            completion_timeout or get_settings().completion_timeout_seconds
        )

    async def complete(
        self,
        order_id: uuid.UUID,
        courier_id: uuid.UUID,
        code: str,
        photo: Optional[PhotoUpload] = None,
        photo_ref: Optional[str] = None,
    ) -> Order:
        """
        Complete a delivery.

        Args:
            order_id: Order being delivered
            courier_id: Courier completing it
            code: Delivery code the customer gave the courier
            photo: Evidence photo to upload
            photo_ref: Reference of a photo already uploaded by the client

        Returns:
            The delivered order

        Raises:
            CodeMismatch: If the code is wrong; the photo is kept
            EvidenceRequired: If no photo was given or stored before
            InvalidTransition: If the order is not out for delivery
            NotAuthorized: If another courier holds the order
            BlobStoreError: If the photo upload failed
            OperationTimeout: If completion did not finish in time
        """
        try:
            return await with_timeout(
                self._complete(order_id, courier_id, code, photo, photo_ref),
                self.completion_timeout,
                "complete_delivery",
                order_id=str(order_id),
            )
        except OperationTimeout:
            await self.lifecycle.rollback()
            raise

    async def _complete(
        self,
        order_id: uuid.UUID,
        courier_id: uuid.UUID,
        code: str,
        photo: Optional[PhotoUpload],
        photo_ref: Optional[str],
    ) -> Order:
        order, state = await self.lifecycle.load(order_id)
        expected_code = order.delivery_code
        await self.lifecycle.commit()

        if delivered_by(state, courier_id):
            logger.info(
                "Delivery already completed by courier",
                order_id=str(order_id),
                courier_id=str(courier_id),
            )
            return order

        self.state_machine.validate_transition(
            state,
            DeliveryStatus.DELIVERED,
            ActorRole.COURIER,
            courier_id,
        )

        evidence = await self._ensure_evidence(order_id, courier_id, photo, photo_ref)

        if not codes_match(code, expected_code):
            logger.info(
                "Delivery code mismatch",
                order_id=str(order_id),
                courier_id=str(courier_id),
            )
            raise CodeMismatch(
                "Delivery code does not match",
                order_id=str(order_id),
            )

        new_state = self.state_machine.next_state(
            state,
            DeliveryStatus.DELIVERED,
            ActorRole.COURIER,
            courier_id,
            photo_ref=evidence.storage_path,
        )

        try:
            delivered = await self.lifecycle.apply(
                order_id,
                state,
                new_state,
                ActorRole.COURIER,
                courier_id,
                reason="Delivered with verified code",
            )
        except InvalidTransition:
            order, current = await self.lifecycle.load(order_id)
            await self.lifecycle.commit()
            if delivered_by(current, courier_id):
                return order
            raise

        logger.info(
            "Delivery completed",
            order_id=str(order_id),
            courier_id=str(courier_id),
            photo_ref=evidence.storage_path,
        )
        return delivered

    async def _ensure_evidence(
        self,
        order_id: uuid.UUID,
        courier_id: uuid.UUID,
        photo: Optional[PhotoUpload],
        photo_ref: Optional[str],
    ) -> DeliveryPhoto:
        existing = await self.repository.get_delivery_photo(order_id)
        await self.lifecycle.commit()
        if existing is not None:
            logger.info(
                "Reusing stored delivery photo",
                order_id=str(order_id),
                storage_path=existing.storage_path,
            )
            return existing

        if photo is None and not photo_ref:
            raise EvidenceRequired("Delivery photo required", order_id=str(order_id))

        if photo is not None:
            photo_ref = await self.blob_store.put(
                delivery_photo_key(order_id, photo.content_type),
                photo.data,
                photo.content_type,
            )
        elif not await self.blob_store.exists(photo_ref):
            logger.info(
                "Delivery photo reference not found in blob store",
                order_id=str(order_id),
                photo_ref=photo_ref,
            )
            raise EvidenceRequired(
                "Delivery photo was not uploaded",
                order_id=str(order_id),
                photo_ref=photo_ref,
            )

        record = await self.repository.save_delivery_photo(order_id, courier_id, photo_ref)
        await self.lifecycle.commit()
        return record
