"""HTTP-level tests: routes, dependency wiring and error mapping."""

from __future__ import annotations

import uuid

import httpx
import pytest

from marketplace_escrow.api.deps import (
    get_app_settings,
    get_db_session_factory,
    get_idempotency_store,
    get_locks,
    get_processor,
)
from marketplace_escrow.api.middleware import status_for
from marketplace_escrow.domain.exceptions import (
    DuplicateOperationError,
    InvalidRequestError,
    OfferExpiredError,
    PaymentProcessorError,
    PaymentReconciliationAmbiguousError,
    PaymentSettlementFailedError,
    RevisionLimitExceededError,
)
from marketplace_escrow.main import create_app

BUYER = "buyer-1"
SELLER = "seller-1"


@pytest.fixture
def app(session_factory, processor, locks, settings, idempotency):
    app = create_app()
    app.dependency_overrides[get_db_session_factory] = lambda: session_factory
    app.dependency_overrides[get_processor] = lambda: processor
    app.dependency_overrides[get_locks] = lambda: locks
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_idempotency_store] = lambda: idempotency
    return app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _create_order(client, **overrides) -> dict:  # noqa: ANN003
    body = {"buyer_id": BUYER, "seller_id": SELLER, "listing_id": "listing-1", "amount": 10000}
    body.update(overrides)
    response = await client.post("/api/v1/orders", json=body)
    assert response.status_code == 201, response.text
    return response.json()


async def _post(client, path: str, **body):  # noqa: ANN003, ANN202
    return await client.post(path, json=body)


class TestOrderRoutes:
    @pytest.mark.asyncio
    async def test_full_lifecycle(self, client) -> None:
        order = await _create_order(client)
        assert order["status"] == "paid"
        assert order["platform_fee"] == 3000
        assert order["seller_amount"] == 7000
        base = f"/api/v1/orders/{order['id']}"

        assert (await _post(client, f"{base}/start-work", actor=SELLER)).status_code == 200
        response = await _post(client, f"{base}/deliver", actor=SELLER, message="done", files=["a"])
        assert response.json()["status"] == "delivered"

        response = await _post(client, f"{base}/accept", actor=BUYER)
        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["payment_released"] is True

        timeline = (await client.get(f"{base}/timeline")).json()
        assert [e["sequence"] for e in timeline] == list(range(1, len(timeline) + 1))

        verification = (await client.get(f"{base}/timeline/verify")).json()
        assert verification["consistent"] is True
        assert verification["status"] == "completed"

    @pytest.mark.asyncio
    async def test_invalid_transition_is_409(self, client) -> None:
        order = await _create_order(client)
        response = await _post(client, f"/api/v1/orders/{order['id']}/accept", actor=BUYER)
        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "INVALID_TRANSITION"
        assert body["current_state"] == "paid"
        assert body["allowed_events"] == ["party_disputes"]

    @pytest.mark.asyncio
    async def test_wrong_actor_is_403(self, client) -> None:
        order = await _create_order(client)
        response = await _post(client, f"/api/v1/orders/{order['id']}/start-work", actor=BUYER)
        assert response.status_code == 403
        assert response.json()["error"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_unknown_order_is_404(self, client) -> None:
        response = await client.get(f"/api/v1/orders/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json()["error"] == "ORDER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_declined_payment_is_402(self, client, processor) -> None:
        processor.fail_next("create_intent", PaymentProcessorError("card declined"))
        response = await client.post(
            "/api/v1/orders",
            json={"buyer_id": BUYER, "seller_id": SELLER, "listing_id": "l", "amount": 500},
        )
        assert response.status_code == 402
        assert response.json()["retryable"] is True

    @pytest.mark.asyncio
    async def test_validation_error_is_422(self, client) -> None:
        response = await client.post(
            "/api/v1/orders",
            json={"buyer_id": BUYER, "seller_id": SELLER, "listing_id": "l", "amount": 0},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_actions_endpoint(self, client) -> None:
        order = await _create_order(client)
        response = await client.get(f"/api/v1/orders/{order['id']}/actions", params={"actor": SELLER})
        body = response.json()
        assert body["role"] == "seller"
        assert body["allowed_events"] == [
            "party_disputes",
            "seller_acknowledges",
            "seller_starts_work",
        ]

    @pytest.mark.asyncio
    async def test_list_requires_exactly_one_party(self, client) -> None:
        await _create_order(client)
        assert (await client.get("/api/v1/orders")).status_code == 400
        response = await client.get("/api/v1/orders", params={"buyer_id": BUYER})
        assert len(response.json()) == 1

    @pytest.mark.asyncio
    async def test_buyer_summary(self, client) -> None:
        await _create_order(client)
        response = await client.get(f"/api/v1/orders/summary/buyer/{BUYER}")
        assert response.status_code == 200
        assert response.json()["in_escrow"] == 10000

    @pytest.mark.asyncio
    async def test_request_id_header(self, client) -> None:
        response = await client.get(f"/api/v1/orders/{uuid.uuid4()}")
        assert "x-request-id" in response.headers


class TestOfferRoutes:
    @pytest.mark.asyncio
    async def test_offer_to_order(self, client) -> None:
        response = await client.post(
            "/api/v1/offers",
            json={"buyer_id": BUYER, "seller_id": SELLER, "listing_id": "l", "amount": 5000},
        )
        assert response.status_code == 201
        offer = response.json()
        base = f"/api/v1/offers/{offer['id']}"

        response = await _post(client, f"{base}/pay", actor=BUYER)
        assert response.json()["status"] == "paid"

        response = await _post(client, f"{base}/accept", actor=SELLER)
        assert response.status_code == 200
        order_id = response.json()["order_id"]

        order = (await client.get(f"/api/v1/orders/{order_id}")).json()
        assert order["status"] == "paid"
        assert order["order_type"] == "accepted_offer"

    @pytest.mark.asyncio
    async def test_reject(self, client, processor) -> None:
        offer = (
            await client.post(
                "/api/v1/offers",
                json={"buyer_id": BUYER, "seller_id": SELLER, "listing_id": "l", "amount": 5000},
            )
        ).json()
        base = f"/api/v1/offers/{offer['id']}"
        await _post(client, f"{base}/pay", actor=BUYER)

        response = await _post(client, f"{base}/reject", actor=SELLER, reason="no thanks")
        assert response.json()["status"] == "rejected"
        assert len(processor.calls_for("refund")) == 1

    @pytest.mark.asyncio
    async def test_expire_sweep(self, client) -> None:
        response = await client.post("/api/v1/offers/expire")
        assert response.status_code == 200


class TestStatusMapping:
    @pytest.mark.parametrize(
        ("exc", "status"),
        [
            (RevisionLimitExceededError("o", 3, 3), 409),
            (OfferExpiredError("o", "2026-01-01T00:00:00+00:00"), 409),
            (PaymentReconciliationAmbiguousError("capture"), 503),
            (PaymentSettlementFailedError("o", "closed"), 502),
            (InvalidRequestError("bad"), 400),
            (DuplicateOperationError("checkout-1"), 409),
        ],
    )
    def test_status_for(self, exc, status: int) -> None:
        assert status_for(exc) == status
