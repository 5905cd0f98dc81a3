"""
Test suite for DeliveryService.

Tests cover the end-to-end delivery flow, cancellation rules, the kitchen
flow, order visibility per actor, status notifications, change feed
announcements and courier location reports.
"""

import asyncio
import uuid

import pytest
import pytest_asyncio

from delivery.core.config import get_settings
from delivery.core.exceptions import (
    AlreadyTaken,
    CodeMismatch,
    InvalidTransition,
    NotAuthorized,
    OrderNotFound,
    PreconditionFailed,
)
from delivery.services.orders.enums import ActorRole, DeliveryStatus, OrderStatus
from delivery.services.orders.service import generate_delivery_code
from delivery.services.tracking.events import (
    AVAILABLE_ORDERS_TOPIC,
    LocationSampled,
    OrderChanged,
    courier_location_topic,
    notifications_topic,
    order_topic,
)
from delivery.services.tracking.publisher import PositionFix, PublisherRegistry
from delivery.services.tracking.repository import LocationRepository, SQLLocationStore


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest_asyncio.fixture(autouse=True)
async def uploaded_photo(blob_store) -> str:
    """Evidence photo the courier app uploaded as "p1" before completing."""
    return await blob_store.put("p1", b"\xff\xd8\xff\xe0jpeg-bytes", "image/jpeg")


@pytest.fixture
def pending_initial_status(monkeypatch):
    """New orders start in pending so the kitchen flow applies."""
    monkeypatch.setattr(get_settings(), "order_initial_status", "pending")


@pytest.fixture
def recorder(event_bus):
    """Collect events published on the given topics."""

    async def record(*topics: str) -> list:
        received: list = []

        async def handler(event) -> None:
            received.append(event)

        for topic in topics:
            await event_bus.subscribe(topic, handler)
        return received

    return record


@pytest_asyncio.fixture
async def publishers(session_factory, event_bus):
    """Publisher registry that only samples when a test ticks it."""
    registry = PublisherRegistry(
        SQLLocationStore(session_factory),
        event_bus,
        poll_seconds=3600,
    )
    yield registry
    await registry.stop_all()


# ============================================================================
# Delivery Code Tests
# ============================================================================


class TestDeliveryCode:
    """Tests for delivery code generation."""

    def test_codes_are_five_digits(self) -> None:
        for _ in range(200):
            code = generate_delivery_code()
            assert len(code) == 5
            assert 10000 <= int(code) <= 99999

    @pytest.mark.asyncio
    async def test_created_order_gets_generated_code(self, new_order):
        order = await new_order(code=None)

        assert len(order.delivery_code) == 5
        assert order.delivery_code.isdigit()


# ============================================================================
# Delivery Flow Tests
# ============================================================================


class TestDeliveryFlow:
    """End-to-end delivery through every courier step."""

    @pytest.mark.asyncio
    async def test_happy_path(self, make_service, new_order, courier_id, customer_id):
        order = await new_order(code="12345")
        assert order.status_detailed == DeliveryStatus.READY_FOR_PICKUP
        assert order.status == OrderStatus.PENDING

        claimed = await make_service().claim_order(order.id, courier_id)
        assert claimed.status_detailed == DeliveryStatus.ASSIGNED_TO_DRIVER

        started = await make_service().start_delivery(order.id, courier_id)
        assert started.status_detailed == DeliveryStatus.OUT_FOR_DELIVERY
        assert started.out_for_delivery_at is not None

        with pytest.raises(CodeMismatch):
            await make_service().complete_delivery(
                order.id, courier_id, "00000", photo_ref="p1"
            )

        delivered = await make_service().complete_delivery(
            order.id, courier_id, "12345", photo_ref="p1"
        )
        assert delivered.status_detailed == DeliveryStatus.DELIVERED
        assert delivered.status == OrderStatus.COMPLETED
        assert delivered.delivery_photo_ref == "p1"

        history = await make_service().order_history(order.id)
        assert [entry.to_status for entry in history] == [
            DeliveryStatus.READY_FOR_PICKUP,
            DeliveryStatus.ASSIGNED_TO_DRIVER,
            DeliveryStatus.OUT_FOR_DELIVERY,
            DeliveryStatus.DELIVERED,
        ]
        assert history[-1].actor_id == courier_id

    @pytest.mark.asyncio
    async def test_start_requires_claim(self, make_service, new_order, courier_id):
        order = await new_order()

        with pytest.raises(InvalidTransition):
            await make_service().start_delivery(order.id, courier_id)

    @pytest.mark.asyncio
    async def test_other_courier_cannot_start(
        self, make_service, new_order, courier_id, other_courier_id
    ):
        order = await new_order()
        await make_service().claim_order(order.id, courier_id)

        with pytest.raises(NotAuthorized):
            await make_service().start_delivery(order.id, other_courier_id)

    @pytest.mark.asyncio
    async def test_terminal_orders_accept_no_transitions(
        self, make_service, new_order, courier_id
    ):
        order = await new_order()
        await make_service().claim_order(order.id, courier_id)
        await make_service().start_delivery(order.id, courier_id)
        await make_service().complete_delivery(order.id, courier_id, "12345", photo_ref="p1")

        with pytest.raises(InvalidTransition):
            await make_service().cancel_order(order.id, ActorRole.SYSTEM)
        with pytest.raises(InvalidTransition):
            await make_service().release_order(order.id, courier_id)


# ============================================================================
# Cancellation Tests
# ============================================================================


class TestCancellation:
    """Tests for DeliveryService.cancel_order."""

    @pytest.mark.asyncio
    async def test_customer_cancels_waiting_order(self, make_service, new_order, customer_id):
        order = await new_order()

        cancelled = await make_service().cancel_order(
            order.id, ActorRole.CUSTOMER, customer_id, reason="Changed my mind"
        )

        assert cancelled.status_detailed == DeliveryStatus.CANCELLED
        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        history = await make_service().order_history(order.id)
        assert history[-1].reason == "Changed my mind"

    @pytest.mark.asyncio
    async def test_customer_cancels_assigned_order(
        self, make_service, new_order, customer_id, courier_id
    ):
        order = await new_order()
        await make_service().claim_order(order.id, courier_id)

        cancelled = await make_service().cancel_order(
            order.id, ActorRole.CUSTOMER, customer_id
        )

        assert cancelled.status_detailed == DeliveryStatus.CANCELLED
        assert cancelled.assigned_courier_id is None

    @pytest.mark.asyncio
    async def test_customer_cannot_cancel_once_on_the_way(
        self, make_service, new_order, customer_id, courier_id
    ):
        order = await new_order()
        await make_service().claim_order(order.id, courier_id)
        await make_service().start_delivery(order.id, courier_id)

        with pytest.raises(InvalidTransition):
            await make_service().cancel_order(order.id, ActorRole.CUSTOMER, customer_id)

    @pytest.mark.asyncio
    async def test_system_cancels_order_on_the_way(
        self, make_service, new_order, courier_id
    ):
        order = await new_order()
        await make_service().claim_order(order.id, courier_id)
        await make_service().start_delivery(order.id, courier_id)

        cancelled = await make_service().cancel_order(order.id, ActorRole.SYSTEM)

        assert cancelled.status_detailed == DeliveryStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_customer_cannot_cancel_someone_elses_order(self, make_service, new_order):
        order = await new_order()

        with pytest.raises(NotAuthorized):
            await make_service().cancel_order(order.id, ActorRole.CUSTOMER, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_cancel_unknown_order(self, make_service, customer_id):
        with pytest.raises(OrderNotFound):
            await make_service().cancel_order(uuid.uuid4(), ActorRole.CUSTOMER, customer_id)


# ============================================================================
# Kitchen Flow Tests
# ============================================================================


@pytest.mark.usefixtures("pending_initial_status")
class TestKitchenFlow:
    """Orders starting in pending move through preparation."""

    @pytest.mark.asyncio
    async def test_kitchen_prepares_and_releases_to_couriers(
        self, make_service, new_order, courier_id
    ):
        order = await new_order()
        assert order.status_detailed == DeliveryStatus.PENDING
        assert await make_service().available_orders() == []

        await make_service().start_preparing(order.id)
        ready = await make_service().mark_ready(order.id)

        assert ready.status_detailed == DeliveryStatus.READY_FOR_PICKUP
        available = await make_service().available_orders()
        assert [o.id for o in available] == [order.id]

    @pytest.mark.asyncio
    async def test_courier_cannot_claim_pending_order(
        self, make_service, new_order, courier_id
    ):
        order = await new_order()

        with pytest.raises(AlreadyTaken):
            await make_service().claim_order(order.id, courier_id)

    @pytest.mark.asyncio
    async def test_kitchen_cannot_skip_preparation(self, make_service, new_order):
        order = await new_order()

        with pytest.raises(InvalidTransition):
            await make_service().mark_ready(order.id)

    @pytest.mark.asyncio
    async def test_courier_role_cannot_drive_kitchen_steps(
        self, make_service, new_order, courier_id
    ):
        order = await new_order()

        with pytest.raises(InvalidTransition):
            await make_service().start_preparing(order.id, ActorRole.COURIER, courier_id)

    @pytest.mark.asyncio
    async def test_concurrent_kitchen_updates_apply_once(self, make_service, new_order):
        order = await new_order()
        await make_service().start_preparing(order.id)

        results = await asyncio.gather(
            make_service().mark_ready(order.id),
            make_service().mark_ready(order.id),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, BaseException)]
        failed = [r for r in results if isinstance(r, BaseException)]
        assert len(succeeded) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], InvalidTransition)


# ============================================================================
# Visibility Tests
# ============================================================================


class TestVisibility:
    """Tests for DeliveryService.get_order per actor."""

    @pytest.mark.asyncio
    async def test_customer_sees_own_order(self, make_service, new_order, customer_id):
        order = await new_order()

        found = await make_service().get_order(order.id, ActorRole.CUSTOMER, customer_id)

        assert found.id == order.id

    @pytest.mark.asyncio
    async def test_other_customer_gets_not_found(self, make_service, new_order):
        order = await new_order()

        with pytest.raises(OrderNotFound):
            await make_service().get_order(order.id, ActorRole.CUSTOMER, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_courier_visibility_follows_assignment(
        self, make_service, new_order, courier_id, other_courier_id
    ):
        order = await new_order()
        await make_service().get_order(order.id, ActorRole.COURIER, other_courier_id)

        await make_service().claim_order(order.id, courier_id)

        await make_service().get_order(order.id, ActorRole.COURIER, courier_id)
        with pytest.raises(OrderNotFound):
            await make_service().get_order(order.id, ActorRole.COURIER, other_courier_id)

    @pytest.mark.asyncio
    async def test_tracking_limited_to_holding_courier(
        self, make_service, new_order, courier_id, other_courier_id, customer_id
    ):
        order = await new_order()
        with pytest.raises(OrderNotFound):
            await make_service().get_trackable_order(order.id, ActorRole.COURIER, courier_id)

        await make_service().claim_order(order.id, courier_id)

        await make_service().get_trackable_order(order.id, ActorRole.COURIER, courier_id)
        await make_service().get_trackable_order(order.id, ActorRole.CUSTOMER, customer_id)
        await make_service().get_trackable_order(order.id, ActorRole.KITCHEN)
        with pytest.raises(OrderNotFound):
            await make_service().get_trackable_order(
                order.id, ActorRole.COURIER, other_courier_id
            )

    @pytest.mark.asyncio
    async def test_delivering_courier_still_sees_delivered_order(
        self, make_service, new_order, courier_id
    ):
        order = await new_order()
        await make_service().claim_order(order.id, courier_id)
        await make_service().start_delivery(order.id, courier_id)
        await make_service().complete_delivery(order.id, courier_id, "12345", photo_ref="p1")

        found = await make_service().get_order(order.id, ActorRole.COURIER, courier_id)

        assert found.delivered_by_courier_id == courier_id

    @pytest.mark.asyncio
    async def test_customer_orders_newest_first(self, make_service, new_order, customer_id):
        first = await new_order()
        second = await new_order()
        await new_order(customer_id=uuid.uuid4())

        orders = await make_service().customer_orders(customer_id)

        assert [o.id for o in orders] == [second.id, first.id]


# ============================================================================
# Notification and Feed Tests
# ============================================================================


class TestAnnouncements:
    """Every applied transition is notified and announced once."""

    @pytest.mark.asyncio
    async def test_customer_notified_of_each_status(
        self, make_service, new_order, courier_id, customer_id, recorder
    ):
        notifications = await recorder(notifications_topic(customer_id))

        order = await new_order()
        await make_service().claim_order(order.id, courier_id)
        await make_service().start_delivery(order.id, courier_id)
        await make_service().complete_delivery(order.id, courier_id, "12345", photo_ref="p1")

        assert [n.new_status for n in notifications] == [
            DeliveryStatus.READY_FOR_PICKUP,
            DeliveryStatus.ASSIGNED_TO_DRIVER,
            DeliveryStatus.OUT_FOR_DELIVERY,
            DeliveryStatus.DELIVERED,
        ]
        assert notifications[2].title == "On the way!"
        assert notifications[3].title == "Delivered! Enjoy your meal"
        assert all(n.order_id == order.id for n in notifications)

    @pytest.mark.asyncio
    async def test_rejected_transition_emits_nothing(
        self, make_service, new_order, courier_id, other_courier_id, customer_id, recorder
    ):
        order = await new_order()
        await make_service().claim_order(order.id, courier_id)
        notifications = await recorder(notifications_topic(customer_id))

        with pytest.raises(AlreadyTaken):
            await make_service().claim_order(order.id, other_courier_id)

        assert notifications == []

    @pytest.mark.asyncio
    async def test_order_changes_announced_on_feed(
        self, make_service, new_order, courier_id, recorder
    ):
        order = await new_order()
        changes = await recorder(order_topic(order.id))
        available = await recorder(AVAILABLE_ORDERS_TOPIC)

        await make_service().claim_order(order.id, courier_id)
        await make_service().start_delivery(order.id, courier_id)

        assert all(isinstance(event, OrderChanged) for event in changes)
        assert [(e.previous_status, e.status_detailed) for e in changes] == [
            (DeliveryStatus.READY_FOR_PICKUP, DeliveryStatus.ASSIGNED_TO_DRIVER),
            (DeliveryStatus.ASSIGNED_TO_DRIVER, DeliveryStatus.OUT_FOR_DELIVERY),
        ]
        assert changes[0].assigned_courier_id == courier_id
        # Only the claim touches the available queue
        assert len(available) == 1


# ============================================================================
# Location Report Tests
# ============================================================================


class TestLocationReports:
    """Tests for DeliveryService.report_location."""

    @pytest.mark.asyncio
    async def test_report_requires_active_delivery(self, make_service, new_order, courier_id):
        order = await new_order()

        with pytest.raises(PreconditionFailed) as exc_info:
            await make_service().report_location(
                order.id, courier_id, PositionFix(52.52, 13.40)
            )

        assert "only active during a delivery" in exc_info.value.user_message

    @pytest.mark.asyncio
    async def test_report_from_other_courier_rejected(
        self, make_service, new_order, courier_id, other_courier_id
    ):
        order = await new_order()
        await make_service().claim_order(order.id, courier_id)

        with pytest.raises(NotAuthorized):
            await make_service().report_location(
                order.id, other_courier_id, PositionFix(52.52, 13.40)
            )

    @pytest.mark.asyncio
    async def test_reported_fix_is_published(
        self, make_service, new_order, courier_id, publishers, recorder, session_factory
    ):
        order = await new_order()
        samples = await recorder(courier_location_topic(courier_id))
        await make_service(publishers=publishers).claim_order(order.id, courier_id)
        await make_service(publishers=publishers).start_delivery(order.id, courier_id)

        await make_service(publishers=publishers).report_location(
            order.id, courier_id, PositionFix(52.5200, 13.4050, accuracy=5.0)
        )
        sample = await publishers.get(order.id).tick()

        assert isinstance(sample, LocationSampled)
        assert sample.order_id == order.id
        assert [s.latitude for s in samples] == [52.52]
        async with session_factory() as session:
            latest = await LocationRepository(session).latest_sample(courier_id)
        assert latest.longitude == pytest.approx(13.405)

    @pytest.mark.asyncio
    async def test_publishing_stops_when_delivered(
        self, make_service, new_order, courier_id, publishers
    ):
        order = await new_order()
        service = make_service(publishers=publishers)
        await service.claim_order(order.id, courier_id)
        await service.start_delivery(order.id, courier_id)
        assert publishers.get(order.id).running

        await make_service(publishers=publishers).complete_delivery(
            order.id, courier_id, "12345", photo_ref="p1"
        )

        assert publishers.get(order.id) is None

    @pytest.mark.asyncio
    async def test_publishing_stops_when_released(
        self, make_service, new_order, courier_id, publishers
    ):
        order = await new_order()
        await make_service(publishers=publishers).claim_order(order.id, courier_id)
        await make_service(publishers=publishers).start_delivery(order.id, courier_id)

        await make_service(publishers=publishers).release_order(order.id, courier_id)

        assert publishers.get(order.id) is None

    @pytest.mark.asyncio
    async def test_publishing_stops_when_cancelled(
        self, make_service, new_order, courier_id, publishers
    ):
        order = await new_order()
        await make_service(publishers=publishers).claim_order(order.id, courier_id)
        await make_service(publishers=publishers).start_delivery(order.id, courier_id)
        assert publishers.get(order.id).running

        cancelled = await make_service(publishers=publishers).cancel_order(
            order.id, ActorRole.SYSTEM, reason="Restaurant closed"
        )

        assert cancelled.status_detailed == DeliveryStatus.CANCELLED
        assert publishers.get(order.id) is None
