import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.core.errors import InsufficientFunds, ValidationError
from app.models.fonds import Fonds, MouvementFonds
from app.services import fund_ledger


@pytest.mark.asyncio
async def test_credit_increases_balance_and_records_entry(db_session):
    fund = await fund_ledger.credit(db_session, "usd", Decimal("500"), "Ravitaillement caisse")
    await db_session.commit()

    assert fund.montant_disponible == Decimal("500")
    movements = await fund_ledger.list_movements(db_session, "USD")
    assert len(movements) == 1
    assert movements[0].type_mouvement == "entree"
    assert movements[0].montant == Decimal("500")
    assert movements[0].solde_apres == Decimal("500")


@pytest.mark.asyncio
@pytest.mark.parametrize("montant", [Decimal("0"), Decimal("-10"), "abc"])
async def test_credit_rejects_non_positive_amounts(db_session, montant):
    with pytest.raises(ValidationError):
        await fund_ledger.credit(db_session, "USD", montant)
    assert await fund_ledger.get_balance(db_session, "USD") == Decimal("0")


@pytest.mark.asyncio
async def test_unsupported_currency(db_session):
    with pytest.raises(ValidationError):
        await fund_ledger.credit(db_session, "EUR", Decimal("10"))


@pytest.mark.asyncio
async def test_debit_decrements_and_records_exit(db_session, fund):
    await fund("CDF", "300000")

    movement = await fund_ledger.debit(db_session, "CDF", Decimal("120000"), "Achat carburant")
    await db_session.commit()

    assert movement.type_mouvement == "sortie"
    assert movement.solde_apres == Decimal("180000")
    assert await fund_ledger.get_balance(db_session, "CDF") == Decimal("180000")


@pytest.mark.asyncio
async def test_debit_refused_when_insufficient(db_session, fund):
    await fund("USD", "100")

    with pytest.raises(InsufficientFunds) as excinfo:
        await fund_ledger.debit(db_session, "USD", Decimal("100.01"))
    await db_session.rollback()

    err = excinfo.value
    assert err.shortfalls == {"USD": {"disponible": Decimal("100"), "requis": Decimal("100.01")}}
    assert err.to_dict()["error"] == "insufficient_funds"
    assert await fund_ledger.get_balance(db_session, "USD") == Decimal("100")
    sorties = (
        await db_session.execute(select(MouvementFonds).where(MouvementFonds.type_mouvement == "sortie"))
    ).scalars().all()
    assert sorties == []


@pytest.mark.asyncio
async def test_debit_of_full_balance_is_allowed(db_session, fund):
    await fund("USD", "75.50")
    await fund_ledger.debit(db_session, "USD", Decimal("75.50"))
    await db_session.commit()
    assert await fund_ledger.get_balance(db_session, "USD") == Decimal("0")


@pytest.mark.asyncio
async def test_balance_matches_movement_history(db_session, fund):
    await fund("USD", "500")
    await fund("CDF", "1000000")
    await fund_ledger.debit(db_session, "USD", Decimal("120.25"))
    await fund_ledger.debit(db_session, "CDF", Decimal("400000"))
    await fund_ledger.credit(db_session, "USD", Decimal("30"))
    await db_session.commit()

    assert await fund_ledger.ledger_discrepancies(db_session) == []
    assert await fund_ledger.get_balance(db_session, "USD") == Decimal("409.75")


@pytest.mark.asyncio
async def test_seed_funds_is_idempotent(db_session, fund):
    await fund("USD", "10")
    created = await fund_ledger.seed_funds(db_session, ["USD", "CDF"])
    assert created == []
    assert await fund_ledger.get_balance(db_session, "USD") == Decimal("10")
    assert [f.devise for f in await fund_ledger.list_funds(db_session)] == ["CDF", "USD"]


@pytest.mark.asyncio
async def test_lock_balances_reports_each_currency(db_session, fund):
    await fund("USD", "42")
    balances = await fund_ledger.lock_balances(db_session, ["usd", "CDF"])
    assert balances == {"CDF": Decimal("0"), "USD": Decimal("42")}
    await db_session.rollback()


@pytest.mark.asyncio
async def test_debit_from_stale_session_cannot_overdraw(db_session, async_session, fund):
    await fund("USD", "100")

    async with async_session() as first, async_session() as second:
        for s in (first, second):
            cached = await s.get(Fonds, "USD")
            assert cached.montant_disponible == Decimal("100")

        await fund_ledger.debit(first, "USD", Decimal("60"))
        await first.commit()

        with pytest.raises(InsufficientFunds) as excinfo:
            await fund_ledger.debit(second, "USD", Decimal("60"))
        await second.rollback()

    assert excinfo.value.shortfalls["USD"]["disponible"] == Decimal("40")
    assert await fund_ledger.get_balance(db_session, "USD") == Decimal("40")
    assert await fund_ledger.ledger_discrepancies(db_session) == []


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(is_sqlite, async_session, db_session, fund):
    if is_sqlite:
        pytest.skip("row-level concurrency needs TEST_DATABASE_URL (PostgreSQL)")
    await fund("USD", "100")

    async def withdraw():
        async with async_session() as s:
            try:
                await fund_ledger.debit(s, "USD", Decimal("60"))
                await s.commit()
                return "ok"
            except InsufficientFunds:
                await s.rollback()
                return "refused"

    results = await asyncio.gather(withdraw(), withdraw())

    assert sorted(results) == ["ok", "refused"]
    assert await fund_ledger.get_balance(db_session, "USD") == Decimal("40")
