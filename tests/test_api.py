"""HTTP surface: auth, response envelopes and the main money flows end to end."""

import uuid

import httpx
import pytest

from skillmint.core.security import SecurityService, hmac_sha256_hex
from skillmint.core.settings import settings
from skillmint.db.session import get_session
from skillmint.main import app
from skillmint.services.shares.razorpay_service import get_razorpay_service


@pytest.fixture
async def api(session_factory, leases, policy, mailer, gateway, system):
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_razorpay_service] = lambda: gateway
    app.state.leases = leases
    app.state.policy = policy
    app.state.mailer = mailer

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def _auth(user) -> dict:
    token = await SecurityService().create_access_token(str(user.id))
    return {"Authorization": f"Bearer {token}"}


class TestEnvelope:
    async def test_health(self, api) -> None:
        resp = await api.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    async def test_missing_token(self, api) -> None:
        resp = await api.get("/api/v1/wallet/balance")
        assert resp.status_code == 401
        body = resp.json()
        assert body["success"] is False
        assert body["message"] == "Token not found"
        assert "timestamp" in body

    async def test_garbage_token(self, api) -> None:
        resp = await api.get("/api/v1/wallet/balance", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401

    async def test_cookie_token(self, api, seed) -> None:
        user = await seed.user()
        token = await SecurityService().create_access_token(str(user.id))
        api.cookies.set("access_token", token)
        resp = await api.get("/api/v1/wallet/balance")
        assert resp.status_code == 200

    async def test_validation_envelope(self, api, seed) -> None:
        user = await seed.user()
        resp = await api.post("/api/v1/orders", json={"course_id": "nope"}, headers=await _auth(user))
        assert resp.status_code == 400
        body = resp.json()
        assert body["message"] == "Validation failed"
        assert body["errors"][0]["field"] == "body.course_id"

    async def test_not_found_envelope(self, api, seed) -> None:
        user = await seed.user()
        resp = await api.get(f"/api/v1/orders/{uuid.uuid4()}", headers=await _auth(user))
        assert resp.status_code == 404
        assert resp.json()["success"] is False


class TestMoneyFlows:
    async def test_balance(self, api, seed) -> None:
        user = await seed.user()
        await seed.fund(user, 42_000)
        resp = await api.get("/api/v1/wallet/balance", headers=await _auth(user))
        assert resp.status_code == 200
        assert resp.json()["data"] == {"total": 42_000, "available": 42_000, "reserved": 0}

    async def test_order_create_and_confirm(self, api, seed, gateway) -> None:
        buyer = await seed.user()
        course = await seed.course(await seed.user("Instructor", role="instructor"))
        headers = await _auth(buyer)

        resp = await api.post("/api/v1/orders", json={"course_id": str(course.id)}, headers=headers)
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["gateway"]["amount"] == 100_000
        assert data["gateway"]["key_id"] == gateway.key_id
        order_id = data["order"]["id"]
        gateway_order_id = data["gateway"]["gateway_order_id"]

        signature = hmac_sha256_hex(settings.RAZORPAY_KEY_SECRET, f"{gateway_order_id}|pay_api0001")
        resp = await api.post(
            f"/api/v1/orders/{order_id}/confirm",
            json={"gateway_payment_id": "pay_api0001", "signature": signature},
            headers=headers,
        )
        assert resp.status_code == 200
        order = resp.json()["data"]
        assert order["status"] == "completed"
        assert (order["instructor_share"], order["platform_share"], order["commission_share"]) == (
            80_000,
            10_000,
            10_000,
        )

    async def test_bad_signature_is_rejected(self, api, seed) -> None:
        buyer = await seed.user()
        course = await seed.course(await seed.user("Instructor", role="instructor"))
        headers = await _auth(buyer)
        created = await api.post("/api/v1/orders", json={"course_id": str(course.id)}, headers=headers)
        order_id = created.json()["data"]["order"]["id"]

        resp = await api.post(
            f"/api/v1/orders/{order_id}/confirm",
            json={"gateway_payment_id": "pay_x", "signature": "0" * 64},
            headers=headers,
        )
        assert resp.status_code == 422
        assert resp.json()["success"] is False

    async def test_withdrawal_request(self, api, seed) -> None:
        user = await seed.affiliate("Asha")
        await seed.fund(user, 100_000)
        resp = await api.post(
            "/api/v1/withdrawals",
            json={"amount": 50_000, "method": "upi", "account_details": {"vpa": "asha@okbank"}},
            headers=await _auth(user),
        )
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert (data["amount"], data["net_amount"], data["status"]) == (50_000, 49_000, "pending")

    async def test_insufficient_funds_envelope(self, api, seed) -> None:
        user = await seed.affiliate("Asha")
        resp = await api.post(
            "/api/v1/withdrawals",
            json={"amount": 50_000, "method": "upi"},
            headers=await _auth(user),
        )
        assert resp.status_code == 422
        assert resp.json()["errors"] == {"available": 0, "requested": 50_000}

    async def test_webhook_signature_checked(self, api) -> None:
        resp = await api.post(
            "/api/v1/webhooks/gateway",
            content=b'{"event": "payment.captured"}',
            headers={"X-Razorpay-Signature": "bogus"},
        )
        assert resp.status_code == 422


class TestAdmin:
    async def test_admin_route_forbidden_for_students(self, api, seed) -> None:
        user = await seed.user()
        resp = await api.get("/api/v1/admin/withdrawals", headers=await _auth(user))
        assert resp.status_code == 403
        assert resp.json()["errors"] == {"capability": "APPROVE_WITHDRAWAL"}

    async def test_policy_update(self, api, seed, policy) -> None:
        admin = await seed.admin()
        headers = await _auth(admin)

        resp = await api.put("/api/v1/admin/policy", json={"min_payout": 20_000}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["data"]["min_payout"] == 20_000
        assert policy.get().min_payout == 20_000

        resp = await api.get("/api/v1/admin/policy", headers=headers)
        assert resp.json()["data"]["policy"]["min_payout"] == 20_000

    async def test_inconsistent_policy_rejected(self, api, seed, policy) -> None:
        admin = await seed.admin()
        resp = await api.put(
            "/api/v1/admin/policy", json={"min_payout": 9_000_000}, headers=await _auth(admin)
        )
        assert resp.status_code == 400
        assert policy.get().min_payout == 10_000

    async def test_admin_credit(self, api, seed) -> None:
        admin = await seed.admin()
        user = await seed.user()
        resp = await api.post(
            f"/api/v1/admin/wallets/{user.id}/credit",
            json={"amount": 5_000, "reason": "goodwill"},
            headers=await _auth(admin),
        )
        assert resp.status_code == 200
        resp = await api.get("/api/v1/wallet/balance", headers=await _auth(user))
        assert resp.json()["data"]["total"] == 5_000
