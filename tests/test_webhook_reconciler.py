import hashlib
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from pix_engine.domain.models import Account, Transfer, TransferKey, WebhookEvent
from pix_engine.domain.schemas import (
    TransferRequest,
    TransferStatus,
    WebhookEventType,
    WebhookPayload,
    WebhookStatus,
)

from conftest import NOON, RECEIVER_MAIL, insert_transfer, reload


def event(event_type, ref, amount="100.00", **data) -> WebhookPayload:
    return WebhookPayload(
        event_type            = event_type,
        external_reference_id = ref,
        amount                = Decimal(amount) if amount is not None else None,
        timestamp             = NOON,
        data                  = data,
    )


async def in_flight(db, services, parties, ref, amount="100.00") -> Transfer:
    """Transferencia PROCESSING con los fondos ya retenidos."""
    sender, sender_key, receiver, receiver_key = parties
    transfer = await insert_transfer(
        db, sender, sender_key, amount,
        status                = TransferStatus.PROCESSING,
        receiver              = receiver,
        receiver_key          = receiver_key,
        external_reference_id = ref,
    )
    assert await services.settlement.freeze(db, transfer.id)
    return transfer


async def account_state(db, account_id):
    account = await reload(db, Account, account_id)
    return account.balance, account.frozen_balance


class TestSettlementEvents:

    @pytest.mark.asyncio
    async def test_sent_completes_and_duplicate_is_noop(self, db, services, parties):
        sender, _, receiver, _ = parties
        sender_id, receiver_id = sender.id, receiver.id
        transfer = await in_flight(db, services, parties, "E-SENT-1")
        transfer_id = transfer.id

        ack = await services.reconciler.process(db, event(WebhookEventType.SENT, "E-SENT-1"))
        assert ack.status == WebhookStatus.PROCESSED
        assert ack.outcome == "COMPLETED"
        assert (await reload(db, Transfer, transfer_id)).status == TransferStatus.COMPLETED.value
        assert await account_state(db, sender_id) == (Decimal("900.00"), 0)
        assert await account_state(db, receiver_id) == (Decimal("100.00"), 0)

        again = await services.reconciler.process(db, event(WebhookEventType.SENT, "E-SENT-1"))
        assert again.status == WebhookStatus.NO_OP
        assert await account_state(db, sender_id) == (Decimal("900.00"), 0)

    @pytest.mark.asyncio
    async def test_received_on_processing_credits_receiver(self, db, services, parties):
        _, _, receiver, _ = parties
        receiver_id = receiver.id
        transfer = await in_flight(db, services, parties, "E-RECV-1")

        ack = await services.reconciler.process(db, event(WebhookEventType.RECEIVED, "E-RECV-1"))

        assert ack.outcome == "COMPLETED"
        assert (await reload(db, Transfer, transfer.id)).receiver_credited_at is not None
        assert await account_state(db, receiver_id) == (Decimal("100.00"), 0)

    @pytest.mark.asyncio
    async def test_received_credits_completed_transfer_once(self, db, services, parties):
        sender, sender_key, receiver, receiver_key = parties
        receiver_id = receiver.id
        await insert_transfer(
            db, sender, sender_key, "100.00",
            receiver=receiver, receiver_key=receiver_key, external_reference_id="E-RECV-2",
        )

        first  = await services.reconciler.process(db, event(WebhookEventType.RECEIVED, "E-RECV-2"))
        second = await services.reconciler.process(db, event(WebhookEventType.RECEIVED, "E-RECV-2"))

        assert first.outcome == "RECEIVER_CREDITED"
        assert second.status == WebhookStatus.NO_OP
        assert await account_state(db, receiver_id) == (Decimal("100.00"), 0)

    @pytest.mark.asyncio
    async def test_failed_releases_hold_once(self, db, services, parties):
        sender, _, _, _ = parties
        sender_id = sender.id
        transfer = await in_flight(db, services, parties, "E-FAIL-1")
        transfer_id = transfer.id
        assert await account_state(db, sender_id) == (Decimal("1000.00"), Decimal("100.00"))

        first = await services.reconciler.process(
            db, event(WebhookEventType.FAILED, "E-FAIL-1", reason="Conta destino encerrada")
        )
        second = await services.reconciler.process(db, event(WebhookEventType.FAILED, "E-FAIL-1"))

        assert first.outcome == "FAILED"
        assert second.status == WebhookStatus.NO_OP
        failed = await reload(db, Transfer, transfer_id)
        assert failed.status == TransferStatus.FAILED.value
        assert failed.failure_reason == "Conta destino encerrada"
        assert await account_state(db, sender_id) == (Decimal("1000.00"), 0)

    @pytest.mark.asyncio
    async def test_failed_after_completion_is_noop(self, db, services, parties):
        sender, sender_key, receiver, receiver_key = parties
        transfer = await insert_transfer(
            db, sender, sender_key, "100.00",
            receiver=receiver, receiver_key=receiver_key, external_reference_id="E-FAIL-2",
        )
        transfer_id = transfer.id

        ack = await services.reconciler.process(db, event(WebhookEventType.FAILED, "E-FAIL-2"))

        assert ack.status == WebhookStatus.NO_OP
        assert (await reload(db, Transfer, transfer_id)).status == TransferStatus.COMPLETED.value


class TestRefunds:

    async def completed_transfer(self, db, services, parties):
        sender, _, _, _ = parties
        response = await services.orchestrator.send(
            db, sender.owner_id,
            TransferRequest(receiver_key=RECEIVER_MAIL, amount=Decimal("300.00")),
            now=NOON,
        )
        return response

    @pytest.mark.asyncio
    async def test_refund_restores_both_sides(self, db, services, parties):
        sender, _, receiver, _ = parties
        sender_id, receiver_id, owner_id = sender.id, receiver.id, sender.owner_id
        response = await self.completed_transfer(db, services, parties)

        ack = await services.reconciler.process(
            db, event(WebhookEventType.REFUNDED, response.external_reference_id, "300.00")
        )

        assert ack.outcome == "REFUNDED"
        assert (await reload(db, Transfer, response.id)).status == TransferStatus.REFUNDED.value
        assert await account_state(db, sender_id) == (Decimal("1000.00"), 0)
        assert await account_state(db, receiver_id) == (Decimal("0.00"), 0)

        limits = await services.limits.get_limits(db, owner_id, NOON)
        assert limits.used_today == 0

        verification = await services.audit.verify_chain(db, owner_id)
        assert verification.is_valid and verification.checked_count == 2

    @pytest.mark.asyncio
    async def test_refund_fails_when_receiver_spent_the_funds(self, db, services, parties):
        sender, _, receiver, _ = parties
        sender_id, receiver_id = sender.id, receiver.id
        response = await self.completed_transfer(db, services, parties)
        await db.execute(update(Account).where(Account.id == receiver_id).values(balance=Decimal("50.00")))
        await db.commit()

        ack = await services.reconciler.process(
            db, event(WebhookEventType.REFUNDED, response.external_reference_id, "300.00")
        )

        assert ack.status == WebhookStatus.FAILED
        assert (await reload(db, Transfer, response.id)).status == TransferStatus.COMPLETED.value
        assert await account_state(db, sender_id) == (Decimal("700.00"), 0)
        assert await account_state(db, receiver_id) == (Decimal("50.00"), 0)


class TestEventStore:

    @pytest.mark.asyncio
    async def test_unknown_reference_is_retried_later(self, db, services, parties):
        sender, sender_key, receiver, receiver_key = parties
        ids = (sender.id, sender_key.id, receiver.id, receiver_key.id)

        ack = await services.reconciler.process(db, event(WebhookEventType.SENT, "E-LATE-1"))
        assert ack.status == WebhookStatus.FAILED
        stored = await reload(db, WebhookEvent, ack.event_id)
        assert stored.retry_count == 1
        assert "E-LATE-1" in stored.error_message

        # La respuesta síncrona llega después que el webhook
        refreshed = (
            await reload(db, Account, ids[0]),
            await reload(db, TransferKey, ids[1]),
            await reload(db, Account, ids[2]),
            await reload(db, TransferKey, ids[3]),
        )
        transfer = await in_flight(db, services, refreshed, "E-LATE-1")

        acks = await services.reconciler.retry_failed(db)

        assert [(a.event_id, a.status, a.outcome) for a in acks] == [
            (ack.event_id, WebhookStatus.PROCESSED, "COMPLETED")
        ]
        assert (await reload(db, Transfer, transfer.id)).status == TransferStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_unexpected_handler_error_is_retryable(self, db, services, parties, monkeypatch):
        transfer = await in_flight(db, services, parties, "E-DB-1")
        transfer_id = transfer.id

        async def broken_complete(*args, **kwargs):
            raise RuntimeError("database connection lost")

        monkeypatch.setattr(services.settlement, "complete", broken_complete)
        ack = await services.reconciler.process(db, event(WebhookEventType.SENT, "E-DB-1"))

        assert ack.status == WebhookStatus.FAILED
        stored = await reload(db, WebhookEvent, ack.event_id)
        assert (stored.status, stored.retry_count) == (WebhookStatus.FAILED.value, 1)
        assert "database connection lost" in stored.error_message
        assert (await reload(db, Transfer, transfer_id)).status == TransferStatus.PROCESSING.value

        monkeypatch.undo()
        acks = await services.reconciler.retry_failed(db)

        assert [(a.event_id, a.status, a.outcome) for a in acks] == [
            (ack.event_id, WebhookStatus.PROCESSED, "COMPLETED")
        ]
        assert (await reload(db, Transfer, transfer_id)).status == TransferStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_amount_mismatch_fails(self, db, services, parties):
        await in_flight(db, services, parties, "E-AMT-1")

        ack = await services.reconciler.process(db, event(WebhookEventType.SENT, "E-AMT-1", "99.00"))

        assert ack.status == WebhookStatus.FAILED
        stored = await reload(db, WebhookEvent, ack.event_id)
        assert "no coincide" in stored.error_message

    @pytest.mark.asyncio
    async def test_payload_is_stored_encrypted(self, db, services, parties):
        await in_flight(db, services, parties, "E-ENC-1")
        payload = event(WebhookEventType.SENT, "E-ENC-1")
        raw = payload.model_dump_json().encode()

        await services.reconciler.process(db, payload, raw)

        [stored] = await services.reconciler.history(db, "E-ENC-1")
        assert raw not in stored.encrypted_payload
        assert services.reconciler.cipher.decrypt(stored.encrypted_payload) == raw
        assert stored.payload_digest == hashlib.sha256(raw).hexdigest()
        assert stored.status == WebhookStatus.PROCESSED.value

    @pytest.mark.asyncio
    async def test_exhausted_events_are_not_retried(self, db, services):
        ack = await services.reconciler.process(db, event(WebhookEventType.SENT, "E-GONE-1"))
        await db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == ack.event_id)
            .values(retry_count=services.reconciler.max_retries)
        )
        await db.commit()

        assert await services.reconciler.retry_failed(db) == []
        status = await db.scalar(select(WebhookEvent.status).where(WebhookEvent.id == ack.event_id))
        assert status == WebhookStatus.FAILED.value
