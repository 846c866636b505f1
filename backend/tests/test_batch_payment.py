from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.core.errors import BatchIneligible, InsufficientFunds, PermissionDenied, ValidationError
from app.models.fonds import MouvementFonds
from app.models.requisition import Niveau, Statut
from app.services import batch_payment, fund_ledger, workflow


async def _sortie_count(db) -> int:
    return await db.scalar(
        select(func.count()).select_from(MouvementFonds).where(MouvementFonds.type_mouvement == "sortie")
    )


@pytest.mark.asyncio
async def test_batch_is_all_or_nothing(db_session, users, create_requisition, advance_to, fund):
    await fund("USD", "100")
    first = await advance_to(await create_requisition("60"), Niveau.PAIEMENT)
    second = await advance_to(await create_requisition("50"), Niveau.PAIEMENT)

    with pytest.raises(InsufficientFunds) as excinfo:
        await batch_payment.pay_batch(db_session, [first.id, second.id], users["comptable"])
    await db_session.rollback()

    assert excinfo.value.shortfalls["USD"] == {"disponible": Decimal("100"), "requis": Decimal("110.00")}
    assert await fund_ledger.get_balance(db_session, "USD") == Decimal("100")
    assert await _sortie_count(db_session) == 0
    for req in (first, second):
        await db_session.refresh(req)
        assert (req.niveau, req.statut) == (Niveau.PAIEMENT, Statut.VALIDEE)


@pytest.mark.asyncio
async def test_batch_pays_each_currency_with_one_movement(db_session, users, create_requisition, advance_to, fund):
    await fund("USD", "200")
    await fund("CDF", "300000")
    reqs = [
        await advance_to(await create_requisition("60"), Niveau.PAIEMENT),
        await advance_to(await create_requisition("50"), Niveau.PAIEMENT),
        await advance_to(await create_requisition("280000", devise="CDF"), Niveau.PAIEMENT),
    ]

    summary = await batch_payment.pay_batch(db_session, [r.id for r in reqs], users["comptable"], "banque")
    await db_session.commit()

    assert summary.paid_count == 3
    assert summary.totals == {"CDF": Decimal("280000.00"), "USD": Decimal("110.00")}
    assert summary.as_dict()["message"] == "3 réquisition(s) payée(s)"
    assert len(summary.mouvements) == 2
    assert await _sortie_count(db_session) == 2
    assert await fund_ledger.get_balance(db_session, "USD") == Decimal("90")
    assert await fund_ledger.get_balance(db_session, "CDF") == Decimal("20000")
    assert await fund_ledger.ledger_discrepancies(db_session) == []

    for req in reqs:
        await db_session.refresh(req)
        assert (req.niveau, req.statut) == (Niveau.TERMINE, Statut.PAYEE)
        assert req.mode_paiement.value == "banque"
        actions = await workflow.list_actions(db_session, req.id)
        assert actions[-1].action == "pay"
        assert actions[-1].commentaire == "Paiement groupé"


@pytest.mark.asyncio
async def test_batch_reports_every_ineligible_requisition(db_session, users, create_requisition, advance_to, fund):
    await fund("USD", "500")
    ready = await advance_to(await create_requisition("60"), Niveau.PAIEMENT)
    pending = await advance_to(await create_requisition("40"), Niveau.GM)

    with pytest.raises(BatchIneligible) as excinfo:
        await batch_payment.pay_batch(db_session, [ready.id, pending.id], users["comptable"])
    await db_session.rollback()

    reasons = excinfo.value.reasons
    assert list(reasons) == [str(pending.id)]
    assert excinfo.value.to_dict()["data"]["reasons"] == reasons
    assert await fund_ledger.get_balance(db_session, "USD") == Decimal("500")


@pytest.mark.asyncio
async def test_batch_requires_accountant(db_session, users, create_requisition, advance_to):
    req = await advance_to(await create_requisition("10"), Niveau.PAIEMENT)
    with pytest.raises(PermissionDenied):
        await batch_payment.pay_batch(db_session, [req.id], users["gm"])


@pytest.mark.asyncio
async def test_batch_rejects_empty_or_duplicate_selection(db_session, users, create_requisition):
    req = await create_requisition("10")
    with pytest.raises(ValidationError):
        await batch_payment.pay_batch(db_session, [], users["comptable"])
    with pytest.raises(ValidationError):
        await batch_payment.pay_batch(db_session, [req.id, req.id], users["comptable"])
