import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from pix_engine.core.exceptions import (
    ExtraAuthenticationRequiredError,
    FraudBlockedError,
    InsufficientFundsError,
    InvalidTransitionError,
    LimitExceededError,
    ReceiverNotFoundError,
    SelfTransferError,
    SettlementError,
    TransferNotCancellableError,
    TransferNotFoundError,
    ValidationError,
)
from pix_engine.domain.models import Account, LedgerEntry, Transfer
from pix_engine.domain.schemas import (
    LimitConstraint,
    SettlementResult,
    TransferRequest,
    TransferStatus,
)
from pix_engine.services.transfer_settlement import can_transition

from conftest import EXTERNAL_MAIL, NOON, RECEIVER_MAIL, SENDER_CPF, make_account, reload


def pix(receiver_key=RECEIVER_MAIL, amount="250.00", **kwargs) -> TransferRequest:
    return TransferRequest(receiver_key=receiver_key, amount=Decimal(amount), **kwargs)


async def balances(db, *accounts):
    return [(await reload(db, Account, a.id)).balance for a in accounts]


async def only_transfer(db) -> Transfer:
    return await db.scalar(select(Transfer).execution_options(populate_existing=True))


class TestStateMachine:

    def test_allowed_transitions(self):
        assert can_transition(TransferStatus.PENDING, TransferStatus.PROCESSING)
        assert can_transition(TransferStatus.PENDING, TransferStatus.CANCELLED)
        assert can_transition(TransferStatus.PROCESSING, TransferStatus.COMPLETED)
        assert can_transition(TransferStatus.COMPLETED, TransferStatus.REFUNDED)

    def test_terminal_states(self):
        for terminal in (TransferStatus.FAILED, TransferStatus.CANCELLED, TransferStatus.REFUNDED):
            assert not any(can_transition(terminal, s) for s in TransferStatus)
        assert not can_transition(TransferStatus.COMPLETED, TransferStatus.FAILED)


class TestImmediateTransfer:

    @pytest.mark.asyncio
    async def test_internal_transfer_moves_money(self, db, services, parties, network):
        sender, sender_key, receiver, _ = parties

        response = await services.orchestrator.send(db, sender.owner_id, pix(), now=NOON)

        assert response.status == TransferStatus.COMPLETED
        assert response.external_reference_id.startswith("E")
        assert response.receiver.name == "Maria S***"
        assert response.receiver.masked_key == "ma***@example.com"
        assert await balances(db, sender, receiver) == [Decimal("750.00"), Decimal("250.00")]
        assert (await reload(db, Account, sender.id)).frozen_balance == 0

        transfer = await only_transfer(db)
        assert transfer.receiver_credited_at is not None
        assert network.requests[0].idempotency_key == str(transfer.id)
        assert network.requests[0].sender_key == sender_key.value

        ledger = (await db.execute(select(LedgerEntry.entry_type, LedgerEntry.amount))).all()
        assert sorted((t, a) for t, a in ledger) == [("PIX_IN", Decimal("250.00")), ("PIX_OUT", Decimal("-250.00"))]

        limits = await services.limits.get_limits(db, sender.owner_id, NOON)
        assert limits.used_today == Decimal("250.00")

        for owner in (sender.owner_id, receiver.owner_id):
            verification = await services.audit.verify_chain(db, owner)
            assert verification.is_valid and verification.checked_count == 1

    @pytest.mark.asyncio
    async def test_money_is_conserved_across_transfers(self, db, services, parties):
        sender, _, receiver, _ = parties
        third = await make_account(db, "500.00", "Ana Costa")
        await services.keys.create(db, third.owner_id, "PHONE", "(11) 98765-4321")

        await services.orchestrator.send(db, sender.owner_id, pix(amount="300"), now=NOON)
        await services.orchestrator.send(db, third.owner_id, pix(SENDER_CPF, amount="120"), now=NOON)
        await services.orchestrator.send(db, receiver.owner_id, pix("+5511987654321", amount="80"), now=NOON)

        assert await balances(db, sender, receiver, third) == [
            Decimal("820.00"), Decimal("220.00"), Decimal("460.00"),
        ]
        assert sum(await balances(db, sender, receiver, third)) == Decimal("1500.00")

    @pytest.mark.asyncio
    async def test_external_receiver(self, db, services, parties, key_lookup):
        sender, _, _, _ = parties

        response = await services.orchestrator.send(db, sender.owner_id, pix(EXTERNAL_MAIL), now=NOON)

        transfer = await only_transfer(db)
        assert response.receiver.bank == "Banco Externo"
        assert transfer.receiver_account_id is None
        assert transfer.external_receiver_key == EXTERNAL_MAIL
        assert await balances(db, sender) == [Decimal("750.00")]

    @pytest.mark.asyncio
    async def test_concurrent_transfers_cannot_overdraw(self, session_factory, db, services, parties):
        sender, _, receiver, _ = parties
        # Perfil y ventana de límites ya existentes: ambas corrutinas solo los leen
        await services.profiles.get_or_create(db, sender.owner_id)
        await services.limits.get_limits(db, sender.owner_id, NOON)

        async def attempt():
            async with session_factory() as session:
                return await services.orchestrator.send(session, sender.owner_id, pix(amount="700"), now=NOON)

        results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)

        completed = [r for r in results if not isinstance(r, Exception)]
        rejected  = [r for r in results if isinstance(r, InsufficientFundsError)]
        assert len(completed) == 1 and len(rejected) == 1

        account = await reload(db, Account, sender.id)
        assert account.balance == Decimal("300.00")
        assert account.frozen_balance == 0
        assert await balances(db, receiver) == [Decimal("700.00")]

    @pytest.mark.asyncio
    async def test_concurrent_transfers_cannot_exceed_daily_limit(
        self, session_factory, db, services, parties, network
    ):
        sender, _, receiver, _ = parties
        await db.execute(update(Account).where(Account.id == sender.id).values(balance=Decimal("10000.00")))
        await db.commit()
        await services.profiles.get_or_create(db, sender.owner_id)
        await services.limits.get_limits(db, sender.owner_id, NOON)
        network.delay = 0.2

        async def attempt():
            async with session_factory() as session:
                return await services.orchestrator.send(session, sender.owner_id, pix(amount="2000"), now=NOON)

        results = await asyncio.gather(attempt(), attempt(), attempt(), return_exceptions=True)

        completed = [r for r in results if not isinstance(r, Exception)]
        rejected  = [r for r in results if isinstance(r, LimitExceededError)]
        assert len(completed) == 2 and len(rejected) == 1
        assert rejected[0].constraint == LimitConstraint.DAILY.value

        limits = await services.limits.get_limits(db, sender.owner_id, NOON)
        assert limits.used_today == Decimal("4000.00")
        assert limits.used_today <= limits.daily_limit

        account = await reload(db, Account, sender.id)
        assert (account.balance, account.frozen_balance) == (Decimal("6000.00"), 0)
        assert await balances(db, receiver) == [Decimal("4000.00")]

        processing = await db.scalar(
            select(func.count(Transfer.id)).where(Transfer.status == TransferStatus.PROCESSING.value)
        )
        assert processing == 0


class TestPreflight:

    @pytest.mark.asyncio
    async def test_insufficient_funds_creates_nothing(self, db, services, parties):
        sender, _, _, _ = parties

        with pytest.raises(InsufficientFundsError) as exc:
            await services.orchestrator.send(db, sender.owner_id, pix(amount="1500"), now=NOON)

        assert exc.value.details["available"] == "1000.00"
        assert await db.scalar(select(func.count(Transfer.id))) == 0

    @pytest.mark.asyncio
    async def test_per_transaction_limit_reports_headroom(self, db, services):
        rich = await make_account(db, "5000.00", "Rico Souza")
        await services.keys.create(db, rich.owner_id, "RANDOM")
        target = await make_account(db)
        await services.keys.create(db, target.owner_id, "EMAIL", RECEIVER_MAIL)

        with pytest.raises(LimitExceededError) as exc:
            await services.orchestrator.send(db, rich.owner_id, pix(amount="2500"), now=NOON)

        assert exc.value.constraint == LimitConstraint.PER_TRANSACTION.value
        assert exc.value.headroom == Decimal("2000.00")

    @pytest.mark.asyncio
    async def test_nightly_limit_applies_at_night(self, db, services, parties):
        sender, _, _, _ = parties
        await services.limits.update_limits(db, sender.owner_id, NOON, nightly_limit=Decimal("100"))
        night = NOON + timedelta(hours=8)   # 20:00 em São Paulo

        with pytest.raises(LimitExceededError) as exc:
            await services.orchestrator.send(db, sender.owner_id, pix(amount="150"), now=night)

        assert exc.value.constraint == LimitConstraint.NIGHTLY.value
        assert exc.value.headroom == Decimal("100")

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, db, services, parties):
        sender, _, _, _ = parties
        with pytest.raises(ValidationError):
            await services.orchestrator.send(db, sender.owner_id, pix(amount="0"), now=NOON)

    @pytest.mark.asyncio
    async def test_unknown_receiver(self, db, services, parties):
        sender, _, _, _ = parties
        with pytest.raises(ReceiverNotFoundError):
            await services.orchestrator.send(db, sender.owner_id, pix("ninguem@example.com"), now=NOON)

    @pytest.mark.asyncio
    async def test_same_key_is_rejected(self, db, services, parties):
        sender, _, _, _ = parties
        with pytest.raises(SelfTransferError):
            await services.orchestrator.send(db, sender.owner_id, pix(SENDER_CPF), now=NOON)

    @pytest.mark.asyncio
    async def test_sender_without_key(self, db, services, parties):
        keyless = await make_account(db, "100.00")
        with pytest.raises(ValidationError):
            await services.orchestrator.send(db, keyless.owner_id, pix(amount="10"), now=NOON)


class TestRiskAndSettlementFailures:

    @pytest.mark.asyncio
    async def test_network_rejection_releases_hold(self, db, services, parties, network):
        sender, _, receiver, _ = parties
        network.results.append(SettlementResult(success=False, failure_reason="Conta destino bloqueada"))

        with pytest.raises(SettlementError) as exc:
            await services.orchestrator.send(db, sender.owner_id, pix(), now=NOON)

        assert exc.value.reason == "Conta destino bloqueada"
        transfer = await only_transfer(db)
        assert transfer.status == TransferStatus.FAILED.value
        assert transfer.failure_reason == "Conta destino bloqueada"
        assert transfer.funds_held is False

        account = await reload(db, Account, sender.id)
        assert (account.balance, account.frozen_balance) == (Decimal("1000.00"), 0)
        assert await balances(db, receiver) == [0]
        assert (await services.limits.get_limits(db, sender.owner_id, NOON)).used_today == 0

    @pytest.mark.asyncio
    async def test_settlement_timeout(self, db, services, parties, network):
        sender, _, _, _ = parties
        network.delay = 1.0
        services.orchestrator.settlement_timeout = 0.05

        with pytest.raises(SettlementError) as exc:
            await services.orchestrator.send(db, sender.owner_id, pix(), now=NOON)

        assert "Timeout" in exc.value.reason
        assert (await only_transfer(db)).status == TransferStatus.FAILED.value
        assert (await reload(db, Account, sender.id)).frozen_balance == 0

    @pytest.mark.asyncio
    async def test_network_exception(self, db, services, parties, network):
        sender, _, _, _ = parties
        network.error = ConnectionError("reset by peer")

        with pytest.raises(SettlementError):
            await services.orchestrator.send(db, sender.owner_id, pix(), now=NOON)
        assert await balances(db, sender) == [Decimal("1000.00")]

    @pytest.mark.asyncio
    async def test_blocked_by_risk_never_reaches_network(self, db, services, parties, network):
        sender, _, _, _ = parties
        await services.profiles.adjust_score(db, sender.owner_id, 95)

        with pytest.raises(FraudBlockedError) as exc:
            await services.orchestrator.send(db, sender.owner_id, pix(), now=NOON)

        assert exc.value.score == 95
        assert network.requests == []
        transfer = await only_transfer(db)
        assert transfer.status == TransferStatus.FAILED.value
        assert transfer.fraud_score == 95

    @pytest.mark.asyncio
    async def test_extra_authentication(self, db, services, parties, network):
        sender, _, _, _ = parties
        await services.profiles.adjust_score(db, sender.owner_id, 65)

        with pytest.raises(ExtraAuthenticationRequiredError) as exc:
            await services.orchestrator.send(db, sender.owner_id, pix(), now=NOON)
        assert exc.value.score == 65
        assert network.requests == []

        response = await services.orchestrator.send(db, sender.owner_id, pix(auth_verified=True), now=NOON)
        assert response.status == TransferStatus.COMPLETED
        assert response.fraud_score == 65


class TestScheduled:

    @pytest.mark.asyncio
    async def test_schedule_then_execute(self, db, services, parties):
        sender, _, receiver, _ = parties
        when = NOON + timedelta(days=1)

        scheduled = await services.orchestrator.send(db, sender.owner_id, pix(scheduled_for=when), now=NOON)

        assert scheduled.status == TransferStatus.PENDING
        assert await balances(db, sender) == [Decimal("1000.00")]
        assert await services.orchestrator.due_scheduled(db, NOON) == []
        assert await services.orchestrator.due_scheduled(db, when) == [scheduled.id]

        with pytest.raises(InvalidTransitionError):
            await services.orchestrator.execute_scheduled(db, scheduled.id, NOON)

        executed = await services.orchestrator.execute_scheduled(db, scheduled.id, when)

        assert executed.status == TransferStatus.COMPLETED
        assert await balances(db, sender, receiver) == [Decimal("750.00"), Decimal("250.00")]

        with pytest.raises(InvalidTransitionError):
            await services.orchestrator.execute_scheduled(db, scheduled.id, when)

    @pytest.mark.asyncio
    async def test_scheduled_execution_revalidates_balance(self, db, services, parties):
        sender, _, _, _ = parties
        when = NOON + timedelta(days=1)
        scheduled = await services.orchestrator.send(
            db, sender.owner_id, pix(amount="900", scheduled_for=when), now=NOON
        )
        await services.orchestrator.send(db, sender.owner_id, pix(amount="500"), now=NOON)

        with pytest.raises(InsufficientFundsError):
            await services.orchestrator.execute_scheduled(db, scheduled.id, when)

        transfer = await reload(db, Transfer, scheduled.id)
        assert transfer.status == TransferStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_cancel_only_by_owner_and_once(self, db, services, parties):
        sender, _, receiver, _ = parties
        scheduled = await services.orchestrator.send(
            db, sender.owner_id, pix(scheduled_for=NOON + timedelta(days=3)), now=NOON
        )

        with pytest.raises(TransferNotCancellableError):
            await services.orchestrator.cancel_scheduled(db, receiver.owner_id, scheduled.id)

        await services.orchestrator.cancel_scheduled(db, sender.owner_id, scheduled.id, NOON)
        assert (await reload(db, Transfer, scheduled.id)).status == TransferStatus.CANCELLED.value

        with pytest.raises(TransferNotCancellableError):
            await services.orchestrator.cancel_scheduled(db, sender.owner_id, scheduled.id)


class TestHistory:

    @pytest.mark.asyncio
    async def test_sender_and_receiver_views(self, db, services, parties):
        sender, _, receiver, _ = parties
        sent = await services.orchestrator.send(db, sender.owner_id, pix(amount="10"), now=NOON)
        await services.orchestrator.send(db, sender.owner_id, pix(amount="20"), now=NOON + timedelta(minutes=1))
        await services.orchestrator.send(
            db, sender.owner_id, pix(amount="30", scheduled_for=NOON + timedelta(days=2)),
            now=NOON + timedelta(minutes=2),
        )

        outgoing = await services.orchestrator.list_history(db, sender.owner_id, page=1, limit=2)
        assert outgoing.total == 3
        assert outgoing.total_pages == 2
        assert [v.amount for v in outgoing.items] == [Decimal("30.00"), Decimal("20.00")]
        assert {v.direction for v in outgoing.items} == {"OUT"}
        assert outgoing.items[0].sender_key == "***.***.247-**"

        incoming = await services.orchestrator.list_history(db, receiver.owner_id)
        assert incoming.total == 2
        assert {v.direction for v in incoming.items} == {"IN"}

        completed = await services.orchestrator.list_history(
            db, sender.owner_id, status=TransferStatus.COMPLETED
        )
        assert completed.total == 2

        view = await services.orchestrator.get_transfer(db, receiver.owner_id, sent.id)
        assert view.receiver_key == "ma***@example.com"

    @pytest.mark.asyncio
    async def test_unrelated_user_cannot_see_transfer(self, db, services, parties):
        sender, _, _, _ = parties
        sent = await services.orchestrator.send(db, sender.owner_id, pix(), now=NOON)
        stranger = await make_account(db)

        with pytest.raises(TransferNotFoundError):
            await services.orchestrator.get_transfer(db, stranger.owner_id, sent.id)
