import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from pix_engine.core.crypto import HmacSigner
from pix_engine.core.exceptions import ChainIntegrityError
from pix_engine.domain.models import AuditEntry
from pix_engine.domain.schemas import AuditEventType
from pix_engine.services.audit_chain import AuditChain

from conftest import NOON


@pytest.fixture
def chain():
    return AuditChain(HmacSigner(b"audit-test-secret"))


async def append_three(db, chain, user_id):
    entries = []
    balance = Decimal("1000.00")
    for i in range(3):
        entry = await chain.append(
            db,
            user_id        = user_id,
            event_type     = AuditEventType.PIX_SENT,
            payload        = {"transfer_id": uuid.uuid4(), "step": i, "fee": Decimal("0.00")},
            amount         = Decimal("100"),
            balance_before = balance,
            balance_after  = balance - 100,
            now            = NOON + timedelta(minutes=i),
        )
        balance -= 100
        entries.append(entry)
    await db.commit()
    return entries


class TestAppend:

    @pytest.mark.asyncio
    async def test_entries_are_linked(self, db, chain):
        user_id = uuid.uuid4()
        first, second, third = await append_three(db, chain, user_id)

        assert [e.sequence for e in (first, second, third)] == [1, 2, 3]
        assert first.previous_hash is None
        assert second.previous_hash == first.hash
        assert third.previous_hash == second.hash
        assert len(first.hash) == 64
        assert first.payload["fee"] == "0.00"

    @pytest.mark.asyncio
    async def test_chains_are_per_user(self, db, chain):
        await append_three(db, chain, uuid.uuid4())
        other = await chain.append(db, uuid.uuid4(), AuditEventType.PIX_RECEIVED, {}, Decimal("5"))

        assert other.sequence == 1
        assert other.previous_hash is None


class TestVerification:

    @pytest.mark.asyncio
    async def test_untouched_chain_is_valid(self, db, chain):
        user_id = uuid.uuid4()
        await append_three(db, chain, user_id)
        db.expire_all()

        result = await chain.verify_chain(db, user_id)

        assert result.is_valid is True
        assert result.checked_count == 3
        assert result.broken_links == []
        assert result.tampered_entries == []

    @pytest.mark.asyncio
    async def test_altered_amount_is_detected(self, db, chain):
        user_id = uuid.uuid4()
        _, second, _ = await append_three(db, chain, user_id)
        await db.execute(update(AuditEntry).where(AuditEntry.id == second.id).values(amount=Decimal("1.00")))
        await db.commit()
        db.expire_all()

        result = await chain.verify_chain(db, user_id)

        assert result.is_valid is False
        assert result.tampered_entries == [
            {"sequence": 2, "entry_id": str(second.id), "reason": "HASH_MISMATCH"}
        ]
        assert result.broken_links == []

    @pytest.mark.asyncio
    async def test_relinked_entry_breaks_the_chain(self, db, chain):
        user_id = uuid.uuid4()
        first, second, _ = await append_three(db, chain, user_id)
        await db.execute(
            update(AuditEntry).where(AuditEntry.id == second.id).values(previous_hash="0" * 64)
        )
        await db.commit()
        db.expire_all()

        result = await chain.verify_chain(db, user_id)

        assert result.broken_links[0]["sequence"] == 2
        assert result.broken_links[0]["expected"] == first.hash
        assert result.broken_links[0]["found"] == "0" * 64

    @pytest.mark.asyncio
    async def test_foreign_signer_is_detected(self, db, chain):
        user_id = uuid.uuid4()
        await append_three(db, chain, user_id)
        db.expire_all()

        result = await AuditChain(HmacSigner(b"another-secret")).verify_chain(db, user_id)

        assert result.is_valid is False
        assert {t["reason"] for t in result.tampered_entries} == {"INVALID_SIGNATURE"}
        assert len(result.tampered_entries) == 3

    @pytest.mark.asyncio
    async def test_assert_chain_intact_raises(self, db, chain):
        user_id = uuid.uuid4()
        _, _, third = await append_three(db, chain, user_id)
        await db.execute(update(AuditEntry).where(AuditEntry.id == third.id).values(signature="f" * 64))
        await db.commit()
        db.expire_all()

        with pytest.raises(ChainIntegrityError) as exc:
            await chain.assert_chain_intact(db, user_id)
        assert exc.value.details["tampered_entries"][0]["reason"] == "INVALID_SIGNATURE"


class TestExport:

    @pytest.mark.asyncio
    async def test_export_filters_by_period(self, db, chain):
        user_id = uuid.uuid4()
        await append_three(db, chain, user_id)

        export = await chain.export_chain(db, user_id, NOON + timedelta(minutes=1), NOON + timedelta(minutes=5))

        assert export.entry_count == 2
        assert [e["sequence"] for e in export.entries] == [2, 3]
        assert export.entries[0]["amount"] == "100.00"
        assert export.entries[0]["balance_after"] == "800.00"
