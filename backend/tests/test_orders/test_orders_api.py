"""
Integration tests for the order, delivery and tracking API endpoints.

Requests go through the full FastAPI application with httpx's ASGI
transport. The lifespan does not run, so fixtures place the shared
collaborators on app.state and point the session dependency at the test
database.
"""

import base64
import uuid
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from fastapi import HTTPException, status
from httpx import ASGITransport, AsyncClient

from delivery.api.deps import create_access_token
from delivery.api.v1.deliveries import decode_photo
from delivery.core.config import get_settings
from delivery.core.exceptions import (
    AlreadyTaken,
    BlobStoreError,
    CodeMismatch,
    InconsistentOrderState,
    InvalidTransition,
    NotAuthorized,
    OrderNotFound,
)
from delivery.database.connection import get_db
from delivery.main import app, error_status_code
from delivery.schemas.orders import CompleteDeliveryRequest
from delivery.services.orders.enums import ActorRole
from delivery.services.tracking.publisher import PublisherRegistry
from delivery.services.tracking.repository import SQLLocationStore

API = "/api/v1"


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def client(session_factory, event_bus, blob_store) -> AsyncGenerator[AsyncClient, None]:
    """
    HTTP client bound to the application and the test database.

    Yields:
        AsyncClient: Client sending requests straight to the ASGI app
    """

    async def override_get_db():
        async with session_factory() as session:
            yield session

    publishers = PublisherRegistry(
        SQLLocationStore(session_factory),
        event_bus,
        poll_seconds=3600,
    )
    app.state.session_factory = session_factory
    app.state.event_bus = event_bus
    app.state.blob_store = blob_store
    app.state.publishers = publishers
    app.state.routing = None
    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    await publishers.stop_all()
    app.dependency_overrides.clear()


def auth(actor_id: uuid.UUID, role: ActorRole) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(actor_id, role)}"}


@pytest.fixture
def customer_headers(customer_id) -> dict[str, str]:
    return auth(customer_id, ActorRole.CUSTOMER)


@pytest.fixture
def courier_headers(courier_id) -> dict[str, str]:
    return auth(courier_id, ActorRole.COURIER)


@pytest.fixture
def other_courier_headers(other_courier_id) -> dict[str, str]:
    return auth(other_courier_id, ActorRole.COURIER)


@pytest.fixture
def order_request() -> dict:
    """Order creation body as the checkout screen sends it."""
    return {
        "items": [
            {
                "product_id": str(uuid.uuid4()),
                "name": "Pad thai",
                "quantity": 1,
                "unit_price": "12.90",
            }
        ],
        "total_amount": "12.90",
        "address": {
            "latitude": 48.8566,
            "longitude": 2.3522,
            "text": "1 Rue de Rivoli, Paris",
            "phone": "+33123456789",
        },
        "notes": "No peanuts",
    }


@pytest.fixture
def place_order(client, customer_headers, order_request):
    """Place an order through the API and return the response body."""

    async def place() -> dict:
        response = await client.post(f"{API}/orders/", json=order_request, headers=customer_headers)
        assert response.status_code == status.HTTP_201_CREATED
        return response.json()

    return place


# ============================================================================
# Error Mapping Tests
# ============================================================================


class TestErrorStatusCodes:
    """Tests for error_status_code."""

    @pytest.mark.parametrize(
        "error,expected",
        [
            (OrderNotFound("missing"), 404),
            (NotAuthorized("not yours"), 403),
            (CodeMismatch("wrong code"), 422),
            (AlreadyTaken("taken"), 409),
            (InvalidTransition("ready_for_pickup", "delivered", "courier"), 409),
            (BlobStoreError("upload failed"), 503),
            (InconsistentOrderState("bad row"), 500),
        ],
    )
    def test_mapping(self, error, expected: int) -> None:
        assert error_status_code(error) == expected


class TestDecodePhoto:
    """Tests for inline photo decoding."""

    def test_decodes_base64(self) -> None:
        request = CompleteDeliveryRequest(
            code="12345",
            photo_base64=base64.b64encode(b"image").decode(),
            photo_content_type="image/png",
        )

        photo = decode_photo(request)

        assert photo.data == b"image"
        assert photo.content_type == "image/png"

    def test_no_inline_photo(self) -> None:
        assert decode_photo(CompleteDeliveryRequest(code="12345", photo_ref="p1")) is None

    def test_invalid_base64_rejected(self) -> None:
        request = CompleteDeliveryRequest(code="12345", photo_base64="not base64!")

        with pytest.raises(HTTPException) as exc_info:
            decode_photo(request)

        assert exc_info.value.status_code == 422


# ============================================================================
# Health Tests
# ============================================================================


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "X-Request-ID" in response.headers


# ============================================================================
# Authentication Tests
# ============================================================================


class TestAuthentication:
    """Bearer token and role checks."""

    @pytest.mark.asyncio
    async def test_missing_token(self, client, order_request) -> None:
        response = await client.post(f"{API}/orders/", json=order_request)

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_invalid_token(self, client) -> None:
        response = await client.get(
            f"{API}/deliveries/available",
            headers={"Authorization": "Bearer not-a-token"},
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_courier_cannot_place_order(
        self, client, courier_headers, order_request
    ) -> None:
        response = await client.post(f"{API}/orders/", json=order_request, headers=courier_headers)

        assert response.status_code == status.HTTP_403_FORBIDDEN

    @pytest.mark.asyncio
    async def test_customer_cannot_claim(self, client, customer_headers, place_order) -> None:
        order = await place_order()

        response = await client.post(
            f"{API}/deliveries/{order['id']}/claim",
            headers=customer_headers,
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN


# ============================================================================
# Order Endpoint Tests
# ============================================================================


class TestOrderEndpoints:
    """Customer and kitchen order endpoints."""

    @pytest.mark.asyncio
    async def test_place_order(self, client, customer_headers, customer_id, order_request):
        response = await client.post(f"{API}/orders/", json=order_request, headers=customer_headers)

        assert response.status_code == status.HTTP_201_CREATED
        body = response.json()
        assert body["customer_id"] == str(customer_id)
        assert body["status"] == "pending"
        assert body["status_detailed"] == "ready_for_pickup"
        assert len(body["delivery_code"]) == 5
        assert body["address"]["text"] == "1 Rue de Rivoli, Paris"

    @pytest.mark.asyncio
    async def test_invalid_order_rejected(self, client, customer_headers, order_request):
        order_request["items"] = []

        response = await client.post(f"{API}/orders/", json=order_request, headers=customer_headers)

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        body = response.json()
        assert body["error"] == "ValidationError"
        assert body["details"][0]["loc"][-1] == "items"

    @pytest.mark.asyncio
    async def test_list_my_orders(self, client, customer_headers, place_order):
        first = await place_order()
        second = await place_order()

        response = await client.get(f"{API}/orders/", headers=customer_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert [item["id"] for item in body["items"]] == [second["id"], first["id"]]

    @pytest.mark.asyncio
    async def test_code_only_visible_to_customer(
        self, client, customer_headers, courier_headers, place_order
    ):
        order = await place_order()

        as_customer = await client.get(f"{API}/orders/{order['id']}", headers=customer_headers)
        as_courier = await client.get(f"{API}/orders/{order['id']}", headers=courier_headers)

        assert as_customer.json()["delivery_code"] == order["delivery_code"]
        assert as_courier.status_code == 200
        assert as_courier.json()["delivery_code"] is None

    @pytest.mark.asyncio
    async def test_other_customer_gets_404(self, client, place_order):
        order = await place_order()

        response = await client.get(
            f"{API}/orders/{order['id']}",
            headers=auth(uuid.uuid4(), ActorRole.CUSTOMER),
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"] == "OrderNotFound"

    @pytest.mark.asyncio
    async def test_cancel_with_reason(self, client, customer_headers, place_order):
        order = await place_order()

        response = await client.post(
            f"{API}/orders/{order['id']}/cancel",
            json={"reason": "Ordered twice"},
            headers=customer_headers,
        )
        history = await client.get(
            f"{API}/orders/{order['id']}/history",
            headers=customer_headers,
        )

        assert response.status_code == 200
        assert response.json()["status_detailed"] == "cancelled"
        assert history.json()[-1]["reason"] == "Ordered twice"
        assert history.json()[-1]["actor_role"] == "customer"

    @pytest.mark.asyncio
    async def test_cancel_without_body(self, client, customer_headers, place_order):
        order = await place_order()

        response = await client.post(
            f"{API}/orders/{order['id']}/cancel",
            headers=customer_headers,
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_kitchen_flow(self, client, customer_headers, order_request, monkeypatch):
        monkeypatch.setattr(get_settings(), "order_initial_status", "pending")
        kitchen = auth(uuid.uuid4(), ActorRole.KITCHEN)
        created = await client.post(f"{API}/orders/", json=order_request, headers=customer_headers)
        order_id = created.json()["id"]

        skipped = await client.post(f"{API}/orders/{order_id}/ready", headers=kitchen)
        preparing = await client.post(f"{API}/orders/{order_id}/preparing", headers=kitchen)
        ready = await client.post(f"{API}/orders/{order_id}/ready", headers=kitchen)

        assert created.json()["status_detailed"] == "pending"
        assert skipped.status_code == status.HTTP_409_CONFLICT
        assert preparing.json()["status_detailed"] == "preparing"
        assert ready.json()["status_detailed"] == "ready_for_pickup"
        assert ready.json()["delivery_code"] is None


# ============================================================================
# Courier Endpoint Tests
# ============================================================================


class TestDeliveryEndpoints:
    """Courier claim, pickup, location and completion endpoints."""

    @pytest.mark.asyncio
    async def test_available_orders_hide_code(self, client, courier_headers, place_order):
        order = await place_order()

        response = await client.get(f"{API}/deliveries/available", headers=courier_headers)

        items = response.json()["items"]
        assert [item["id"] for item in items] == [order["id"]]
        assert items[0]["delivery_code"] is None

    @pytest.mark.asyncio
    async def test_second_claim_conflicts(
        self, client, courier_headers, other_courier_headers, place_order
    ):
        order = await place_order()

        first = await client.post(f"{API}/deliveries/{order['id']}/claim", headers=courier_headers)
        second = await client.post(
            f"{API}/deliveries/{order['id']}/claim",
            headers=other_courier_headers,
        )

        assert first.status_code == 200
        assert second.status_code == status.HTTP_409_CONFLICT
        body = second.json()
        assert body["error"] == "AlreadyTaken"
        assert body["detail"].startswith("Another courier already accepted this order")

    @pytest.mark.asyncio
    async def test_full_delivery(
        self, client, courier_headers, customer_headers, courier_id, place_order
    ):
        order = await place_order()
        order_id = order["id"]
        photo = base64.b64encode(b"\xff\xd8\xff\xe0door").decode()
        wrong_code = "00000" if order["delivery_code"] != "00000" else "11111"

        await client.post(f"{API}/deliveries/{order_id}/claim", headers=courier_headers)
        mine = await client.get(f"{API}/deliveries/mine", headers=courier_headers)
        started = await client.post(f"{API}/deliveries/{order_id}/start", headers=courier_headers)
        located = await client.post(
            f"{API}/deliveries/{order_id}/location",
            json={"latitude": 48.85, "longitude": 2.35, "accuracy": 8.0},
            headers=courier_headers,
        )
        rejected = await client.post(
            f"{API}/deliveries/{order_id}/complete",
            json={"code": wrong_code, "photo_base64": photo},
            headers=courier_headers,
        )
        completed = await client.post(
            f"{API}/deliveries/{order_id}/complete",
            json={"code": order["delivery_code"]},
            headers=courier_headers,
        )

        assert [item["id"] for item in mine.json()["items"]] == [order_id]
        assert started.json()["status_detailed"] == "out_for_delivery"
        assert located.status_code == status.HTTP_202_ACCEPTED
        assert rejected.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert rejected.json()["error"] == "CodeMismatch"
        assert completed.status_code == 200
        body = completed.json()
        assert body["status"] == "completed"
        assert body["status_detailed"] == "delivered"
        assert body["delivery_photo_ref"] == f"deliveries/{order_id}.jpg"

        as_customer = await client.get(f"{API}/orders/{order_id}", headers=customer_headers)
        assert as_customer.json()["status_detailed"] == "delivered"

    @pytest.mark.asyncio
    async def test_complete_without_photo(self, client, courier_headers, place_order):
        order = await place_order()
        await client.post(f"{API}/deliveries/{order['id']}/claim", headers=courier_headers)
        await client.post(f"{API}/deliveries/{order['id']}/start", headers=courier_headers)

        response = await client.post(
            f"{API}/deliveries/{order['id']}/complete",
            json={"code": order["delivery_code"]},
            headers=courier_headers,
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["error"] == "EvidenceRequired"

    @pytest.mark.asyncio
    async def test_malformed_code_rejected(self, client, courier_headers, place_order):
        order = await place_order()

        response = await client.post(
            f"{API}/deliveries/{order['id']}/complete",
            json={"code": "12a45", "photo_ref": "p1"},
            headers=courier_headers,
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["error"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_release(self, client, courier_headers, place_order):
        order = await place_order()
        await client.post(f"{API}/deliveries/{order['id']}/claim", headers=courier_headers)

        released = await client.post(
            f"{API}/deliveries/{order['id']}/release",
            headers=courier_headers,
        )
        available = await client.get(f"{API}/deliveries/available", headers=courier_headers)

        assert released.json()["status_detailed"] == "ready_for_pickup"
        assert released.json()["assigned_courier_id"] is None
        assert available.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_location_for_unheld_order(
        self, client, courier_headers, other_courier_headers, place_order
    ):
        order = await place_order()
        await client.post(f"{API}/deliveries/{order['id']}/claim", headers=courier_headers)

        response = await client.post(
            f"{API}/deliveries/{order['id']}/location",
            json={"latitude": 48.85, "longitude": 2.35},
            headers=other_courier_headers,
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN


# ============================================================================
# Tracking Endpoint Tests
# ============================================================================


class TestTrackingEndpoint:
    """GET /tracking/{order_id}."""

    @pytest.mark.asyncio
    async def test_tracking_view_while_on_the_way(
        self, client, customer_headers, courier_headers, courier_id, place_order
    ):
        order = await place_order()
        await client.post(f"{API}/deliveries/{order['id']}/claim", headers=courier_headers)
        await client.post(f"{API}/deliveries/{order['id']}/start", headers=courier_headers)
        await client.post(
            f"{API}/deliveries/{order['id']}/location",
            json={"latitude": 48.85, "longitude": 2.35},
            headers=courier_headers,
        )
        publisher = app.state.publishers.get(uuid.UUID(order["id"]))
        await publisher.tick()

        response = await client.get(f"{API}/tracking/{order['id']}", headers=customer_headers)

        assert response.status_code == 200
        view = response.json()
        assert view["status"] == "out_for_delivery"
        assert view["tracking_active"] is True
        assert view["courier_id"] == str(courier_id)
        assert view["position"] == [48.85, 2.35]
        assert view["destination"] == [48.8566, 2.3522]
        assert view["route"]["source"] == "straight_line"

    @pytest.mark.asyncio
    async def test_tracking_view_after_cancel(self, client, customer_headers, place_order):
        order = await place_order()
        await client.post(f"{API}/orders/{order['id']}/cancel", headers=customer_headers)

        response = await client.get(f"{API}/tracking/{order['id']}", headers=customer_headers)

        view = response.json()
        assert view["tracking_active"] is False
        assert view["position"] is None
        assert view["terminal_notice"] == "Order cancelled"

    @pytest.mark.asyncio
    async def test_tracking_hidden_from_other_customers(self, client, place_order):
        order = await place_order()

        response = await client.get(
            f"{API}/tracking/{order['id']}",
            headers=auth(uuid.uuid4(), ActorRole.CUSTOMER),
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND

    @pytest.mark.asyncio
    async def test_tracking_limited_to_holding_courier(
        self, client, courier_headers, other_courier_headers, place_order
    ):
        order = await place_order()
        url = f"{API}/tracking/{order['id']}"

        before_claim = await client.get(url, headers=other_courier_headers)
        await client.post(f"{API}/deliveries/{order['id']}/claim", headers=courier_headers)
        holder = await client.get(url, headers=courier_headers)
        rival = await client.get(url, headers=other_courier_headers)

        assert before_claim.status_code == status.HTTP_404_NOT_FOUND
        assert holder.status_code == status.HTTP_200_OK
        assert rival.status_code == status.HTTP_404_NOT_FOUND
