import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import jwt
import pytest
import pytest_asyncio

from pix_engine.api.dependencies import get_services
from pix_engine.core.config import settings
from pix_engine.core.crypto import HmacSigner
from pix_engine.infrastructure.database.session import get_db
from pix_engine.main import app

from conftest import RECEIVER_MAIL


def token_for(user_id, role="user", **claims) -> str:
    return jwt.encode({"sub": str(user_id), "role": role, **claims}, settings.SECRET_KEY, algorithm="HS256")


def auth(user_id, role="user") -> dict:
    return {"Authorization": f"Bearer {token_for(user_id, role)}"}


@pytest_asyncio.fixture
async def client(session_factory, services):
    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db]       = override_db
    app.dependency_overrides[get_services] = lambda: services
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://pix.test") as c:
        yield c
    app.dependency_overrides.clear()


class TestAuthentication:

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get("/v1/pix/limits")
        assert response.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_bad_token(self, client):
        response = await client.get("/v1/pix/limits", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        assert response.json()["error"] == "Token inválido o expirado."

    @pytest.mark.asyncio
    async def test_expired_token(self, client):
        expired = token_for(uuid.uuid4(), exp=datetime.now(timezone.utc) - timedelta(minutes=1))
        response = await client.get("/v1/pix/limits", headers={"Authorization": f"Bearer {expired}"})
        assert response.status_code == 401
        assert "expirado" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_admin_surface_requires_role(self, client):
        user_id = uuid.uuid4()
        denied = await client.get("/v1/fraud/alerts/pending", headers=auth(user_id))
        allowed = await client.get("/v1/fraud/alerts/pending", headers=auth(user_id, "admin"))

        assert denied.status_code == 403
        assert allowed.status_code == 200
        assert allowed.json() == []


class TestKeysApi:

    @pytest.mark.asyncio
    async def test_create_and_list(self, client, parties):
        sender, _, _, _ = parties
        headers = auth(sender.owner_id)

        created = await client.post(
            "/v1/pix/keys", json={"type": "EMAIL", "value": "Carlos@Example.com"}, headers=headers
        )
        assert created.status_code == 201
        assert created.json()["value"] == "carlos@example.com"
        assert created.json()["is_primary"] is False

        listed = await client.get("/v1/pix/keys", headers=headers)
        assert [k["type"] for k in listed.json()] == ["NATIONAL_ID", "EMAIL"]

    @pytest.mark.asyncio
    async def test_duplicate_key_conflicts(self, client, parties):
        sender, _, _, _ = parties
        response = await client.post(
            "/v1/pix/keys", json={"type": "EMAIL", "value": RECEIVER_MAIL}, headers=auth(sender.owner_id)
        )
        assert response.status_code == 409
        assert response.json()["error"] == "Esta llave PIX ya está registrada."

    @pytest.mark.asyncio
    async def test_resolve_masks_owner(self, client, parties):
        sender, _, _, _ = parties
        response = await client.get(
            "/v1/pix/keys/resolve", params={"value": RECEIVER_MAIL}, headers=auth(sender.owner_id)
        )

        body = response.json()
        assert response.status_code == 200
        assert body["found"] is True and body["is_internal"] is True
        assert body["owner_name"] == "Maria S***"
        assert body["masked_key"] == "ma***@example.com"


class TestTransfersApi:

    @pytest.mark.asyncio
    async def test_send_and_fetch(self, client, parties):
        sender, _, receiver, _ = parties

        sent = await client.post(
            "/v1/pix/transfers",
            json={"receiver_key": RECEIVER_MAIL, "amount": "250.00", "description": "Almoço"},
            headers=auth(sender.owner_id),
        )
        assert sent.status_code == 201
        assert sent.json()["status"] == "COMPLETED"
        assert Decimal(str(sent.json()["amount"])) == Decimal("250.00")

        transfer_id = sent.json()["id"]
        seen_by_receiver = await client.get(f"/v1/pix/transfers/{transfer_id}", headers=auth(receiver.owner_id))
        assert seen_by_receiver.status_code == 200
        assert seen_by_receiver.json()["direction"] == "IN"

        stranger = await client.get(f"/v1/pix/transfers/{transfer_id}", headers=auth(uuid.uuid4()))
        assert stranger.status_code == 404

        history = await client.get("/v1/pix/transfers", params={"limit": 5}, headers=auth(sender.owner_id))
        assert history.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_insufficient_funds_body(self, client, parties):
        sender, _, _, _ = parties

        response = await client.post(
            "/v1/pix/transfers",
            json={"receiver_key": RECEIVER_MAIL, "amount": "1500.00"},
            headers=auth(sender.owner_id),
        )

        assert response.status_code == 422
        assert response.json() == {"error": "Saldo insuficiente.", "available": "1000.00"}

    @pytest.mark.asyncio
    async def test_scheduler_endpoints_are_admin_only(self, client):
        response = await client.get("/v1/pix/transfers/scheduled/due", headers=auth(uuid.uuid4()))
        assert response.status_code == 403


class TestQrCodeApi:

    @pytest.mark.asyncio
    async def test_generate_then_read(self, client, parties):
        sender, _, receiver, _ = parties

        generated = await client.post(
            "/v1/pix/qrcode/generate",
            json={"amount": "45.50", "description": "Cafe"},
            headers=auth(receiver.owner_id),
        )
        assert generated.status_code == 200
        assert generated.json()["is_dynamic"] is True

        read = await client.post(
            "/v1/pix/qrcode/read", json={"payload": generated.json()["payload"]}, headers=auth(sender.owner_id)
        )
        body = read.json()
        assert read.status_code == 200
        assert body["receiver_key"] == RECEIVER_MAIL
        assert Decimal(str(body["amount"])) == Decimal("45.50")
        assert body["receiver"]["name"] == "Maria S***"

    @pytest.mark.asyncio
    async def test_corrupted_payload(self, client):
        response = await client.post(
            "/v1/pix/qrcode/read", json={"payload": "00020101021126" + "0" * 20}, headers=auth(uuid.uuid4())
        )
        assert response.status_code == 422
        assert response.json()["error"] == "Payload sin CRC."


class TestLimitsApi:

    @pytest.mark.asyncio
    async def test_read_and_update(self, client):
        headers = auth(uuid.uuid4())

        current = await client.get("/v1/pix/limits", headers=headers)
        assert Decimal(str(current.json()["daily_limit"])) == Decimal("5000.00")

        updated = await client.patch("/v1/pix/limits", json={"daily_limit": "8000"}, headers=headers)
        assert updated.status_code == 200
        assert Decimal(str(updated.json()["daily_limit"])) == Decimal("8000")

    @pytest.mark.asyncio
    async def test_invalid_updates(self, client):
        headers = auth(uuid.uuid4())

        unknown = await client.patch("/v1/pix/limits", json={"weekly_limit": "10"}, headers=headers)
        too_high = await client.patch("/v1/pix/limits", json={"per_transaction_limit": "9000"}, headers=headers)

        assert unknown.status_code == 422
        assert too_high.status_code == 422


class TestWebhookApi:

    def signed(self, body: dict) -> tuple[bytes, dict]:
        raw = json.dumps(body).encode()
        signature = HmacSigner(settings.WEBHOOK_SHARED_SECRET.encode()).sign(raw)
        return raw, {"X-Webhook-Signature": signature, "Content-Type": "application/json"}

    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected(self, client):
        raw, _ = self.signed({"event_type": "pix.sent"})
        response = await client.post(
            "/v1/pix/webhook", content=raw, headers={"X-Webhook-Signature": "0" * 64}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_refund_event_is_applied(self, client, parties):
        sender, _, _, _ = parties
        sent = await client.post(
            "/v1/pix/transfers",
            json={"receiver_key": RECEIVER_MAIL, "amount": "100.00"},
            headers=auth(sender.owner_id),
        )
        raw, headers = self.signed({
            "event_type":            "pix.refunded",
            "external_reference_id": sent.json()["external_reference_id"],
            "amount":                "100.00",
            "timestamp":             "2025-03-12T15:00:00Z",
        })

        response = await client.post("/v1/pix/webhook", content=raw, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "PROCESSED"
        assert response.json()["outcome"] == "REFUNDED"

    @pytest.mark.asyncio
    async def test_malformed_payload(self, client):
        raw, headers = self.signed({"event_type": "pix.unknown"})
        response = await client.post("/v1/pix/webhook", content=raw, headers=headers)
        assert response.status_code == 422


class TestAuditApi:

    @pytest.mark.asyncio
    async def test_own_chain_and_foreign_chain(self, client, parties):
        sender, _, receiver, _ = parties
        await client.post(
            "/v1/pix/transfers",
            json={"receiver_key": RECEIVER_MAIL, "amount": "10.00"},
            headers=auth(sender.owner_id),
        )

        own = await client.get("/v1/audit/chain/verify", headers=auth(sender.owner_id))
        assert own.json() == {"is_valid": True, "checked_count": 1, "broken_links": [], "tampered_entries": []}

        params = {"user_id": str(receiver.owner_id)}
        foreign = await client.get("/v1/audit/chain/verify", params=params, headers=auth(sender.owner_id))
        as_admin = await client.get("/v1/audit/chain/verify", params=params, headers=auth(uuid.uuid4(), "admin"))

        assert foreign.status_code == 403
        assert as_admin.status_code == 200
        assert as_admin.json()["checked_count"] == 1

    @pytest.mark.asyncio
    async def test_export_rejects_inverted_period(self, client):
        response = await client.get(
            "/v1/audit/chain/export",
            params={"start": "2025-03-12T00:00:00Z", "end": "2025-03-11T00:00:00Z"},
            headers=auth(uuid.uuid4()),
        )
        assert response.status_code == 422


class TestPlatform:

    @pytest.mark.asyncio
    async def test_health_and_security_headers(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["redis"] == "degraded"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"].startswith("no-store")
