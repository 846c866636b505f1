import asyncio
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.core.config import settings
from app.core.errors import (
    BudgetExceeded,
    InsufficientFunds,
    InvalidTransition,
    PermissionDenied,
    RequisitionNotFound,
    ValidationError,
)
from app.models.fonds import MouvementFonds
from app.models.requisition import ActionKind, Niveau, Statut
from app.models.requisition_action import RequisitionAction
from app.models.user import User
from app.services import budget_checker, fund_ledger, workflow
from app.services.workflow import WorkflowState


def test_transition_table_follows_stage_order():
    order = [Niveau.EMETTEUR, Niveau.ANALYSTE, Niveau.CHALLENGER, Niveau.VALIDATEUR, Niveau.GM, Niveau.PAIEMENT, Niveau.TERMINE]
    for (niveau, action), target in workflow.TRANSITIONS.items():
        assert order.index(target) == order.index(niveau) + 1, (niveau, action, target)


def test_initiator_can_never_jump_to_general_manager():
    state = WorkflowState(Niveau.EMETTEUR, Statut.SOUMISE)
    for action in ActionKind:
        try:
            after = workflow.next_state(state, action)
        except InvalidTransition:
            continue
        assert after.niveau != Niveau.GM


def test_inconsistent_state_is_unrepresentable():
    with pytest.raises(InvalidTransition):
        WorkflowState(Niveau.TERMINE, Statut.EN_COURS)
    with pytest.raises(InvalidTransition):
        WorkflowState(Niveau.ANALYSTE, Statut.PAYEE)


def test_permission_table_exceptions():
    assert ActionKind.APPROVE in workflow.allowed_actions(Niveau.EMETTEUR, "analyste")
    assert ActionKind.APPROVE in workflow.allowed_actions(Niveau.CHALLENGER, "validateur")
    assert ActionKind.APPROVE in workflow.allowed_actions(Niveau.CHALLENGER, "pm")
    assert workflow.allowed_actions(Niveau.GM, "analyste") == frozenset()
    assert workflow.allowed_actions(Niveau.EMETTEUR, "gm") == frozenset()
    assert ActionKind.PAY in workflow.allowed_actions(Niveau.PAIEMENT, "comptable")


def test_rejection_policy_is_configurable():
    policy = workflow.build_rejection_policy(["analyste", "gm"])
    assert policy[Niveau.EMETTEUR] == WorkflowState(Niveau.TERMINE, Statut.ANNULEE)
    assert policy[Niveau.ANALYSTE] == WorkflowState(Niveau.EMETTEUR, Statut.A_CORRIGER)
    assert policy[Niveau.GM] == WorkflowState(Niveau.EMETTEUR, Statut.A_CORRIGER)
    assert policy[Niveau.CHALLENGER] == WorkflowState(Niveau.TERMINE, Statut.REFUSEE)


def test_action_aliases():
    assert workflow.parse_action("valider") == ActionKind.APPROVE
    assert workflow.parse_action("refuser") == ActionKind.REJECT
    assert workflow.parse_action("comment") == ActionKind.COMMENT
    with pytest.raises(ValidationError):
        workflow.parse_action("escalate")


@pytest.mark.asyncio
async def test_create_requisition_recomputes_line_totals(db_session, users):
    req = await workflow.create_requisition(
        db_session,
        users["emetteur"],
        objet="Carburant groupe électrogène",
        devise="cdf",
        lignes=[
            {"rubrique": "Carburant", "description": "Gasoil", "quantite": 3, "prix_unitaire": Decimal("2500"), "prix_total": Decimal("1")},
            {"rubrique": "Carburant", "description": "Huile", "quantite": 2, "prix_unitaire": Decimal("1000")},
        ],
    )
    await db_session.commit()

    assert req.numero.startswith(f"REQ-{datetime.now(timezone.utc).year}-")
    assert (req.niveau, req.statut) == (Niveau.EMETTEUR, Statut.SOUMISE)
    assert [ligne.prix_total for ligne in req.lignes] == [Decimal("7500"), Decimal("2000")]
    assert req.montant_cdf == Decimal("9500")
    assert req.montant_usd is None
    assert req.devise == "CDF"


@pytest.mark.asyncio
async def test_create_requisition_rejects_empty_amount(db_session, users):
    with pytest.raises(ValidationError):
        await workflow.create_requisition(db_session, users["emetteur"], objet="Vide", devise="USD", montant=0)


@pytest.mark.asyncio
async def test_analyst_approves_at_initiator_stage(db_session, users, create_requisition):
    req = await create_requisition()

    result = await workflow.submit_action(db_session, req.id, users["analyste"], "approve", "ok chef de service")
    await db_session.commit()

    assert result.niveau_apres == Niveau.ANALYSTE
    assert result.statut_apres == Statut.EN_COURS
    assert req.version == 2


@pytest.mark.asyncio
async def test_wrong_role_is_denied_and_nothing_changes(db_session, users, create_requisition):
    req = await create_requisition()

    with pytest.raises(PermissionDenied):
        await workflow.submit_action(db_session, req.id, users["gm"], "approve", "raccourci")
    await db_session.rollback()
    await db_session.refresh(req)

    assert (req.niveau, req.statut) == (Niveau.EMETTEUR, Statut.SOUMISE)
    count = await db_session.scalar(select(func.count()).select_from(RequisitionAction))
    assert count == 0


@pytest.mark.asyncio
async def test_initiator_only_acts_on_own_requisition(db_session, users, create_requisition):
    req = await create_requisition()
    other = User(id=uuid.uuid4(), email="autre@test.local", role="emetteur", active=True)
    with pytest.raises(PermissionDenied):
        await workflow.submit_action(db_session, req.id, other, "approve")
    await db_session.rollback()


@pytest.mark.asyncio
async def test_unknown_requisition(db_session, users):
    with pytest.raises(RequisitionNotFound):
        await workflow.submit_action(db_session, uuid.uuid4(), users["admin"], "approve")


@pytest.mark.asyncio
async def test_validator_stands_in_for_challenger(db_session, users, create_requisition, advance_to):
    req = await create_requisition()
    await advance_to(req, Niveau.CHALLENGER)

    result = await workflow.submit_action(db_session, req.id, users["pm"], "approve", "revue simplifiée")
    await db_session.commit()

    assert result.niveau_apres == Niveau.VALIDATEUR


@pytest.mark.asyncio
async def test_full_chain_and_payment(db_session, users, create_requisition, advance_to, fund):
    await fund("USD", "500")
    req = await create_requisition("100")
    await advance_to(req, Niveau.PAIEMENT)
    assert req.statut == Statut.VALIDEE

    result = await workflow.submit_action(db_session, req.id, users["comptable"], "approve", None, "cash")
    await db_session.commit()

    assert (result.niveau_apres, result.statut_apres) == (Niveau.TERMINE, Statut.PAYEE)
    assert result.action == ActionKind.PAY
    assert req.mode_paiement.value == "cash"
    assert await fund_ledger.get_balance(db_session, "USD") == Decimal("400")

    sorties = (
        await db_session.execute(select(MouvementFonds).where(MouvementFonds.type_mouvement == "sortie"))
    ).scalars().all()
    assert len(sorties) == 1
    assert sorties[0].requisition_id == req.id
    assert sorties[0].montant == Decimal("100")

    actions = await workflow.list_actions(db_session, req.id)
    assert [a.action for a in actions] == ["approve"] * 5 + ["pay"]
    assert actions[-1].niveau_avant == Niveau.PAIEMENT
    assert await fund_ledger.ledger_discrepancies(db_session) == []


@pytest.mark.asyncio
async def test_payment_with_insufficient_funds_leaves_requisition_unchanged(
    db_session, users, create_requisition, advance_to, fund
):
    await fund("USD", "50")
    req = await create_requisition("100")
    await advance_to(req, Niveau.PAIEMENT)

    with pytest.raises(InsufficientFunds) as excinfo:
        await workflow.submit_action(db_session, req.id, users["comptable"], "approve")
    await db_session.rollback()
    await db_session.refresh(req)

    assert excinfo.value.shortfalls["USD"]["disponible"] == Decimal("50")
    assert (req.niveau, req.statut) == (Niveau.PAIEMENT, Statut.VALIDEE)
    assert await fund_ledger.get_balance(db_session, "USD") == Decimal("50")
    actions = await workflow.list_actions(db_session, req.id)
    assert "pay" not in [a.action for a in actions]


@pytest.mark.asyncio
async def test_reject_requires_comment(db_session, users, create_requisition, advance_to):
    req = await create_requisition()
    await advance_to(req, Niveau.ANALYSTE)

    with pytest.raises(ValidationError):
        await workflow.submit_action(db_session, req.id, users["analyste"], "reject", "   ")
    await db_session.rollback()


@pytest.mark.asyncio
async def test_reject_at_analyst_returns_to_initiator_then_resubmits(db_session, users, create_requisition, advance_to):
    req = await create_requisition("100")
    await advance_to(req, Niveau.ANALYSTE)

    result = await workflow.submit_action(db_session, req.id, users["analyste"], "reject", "Devis manquant")
    await db_session.commit()
    assert (result.niveau_apres, result.statut_apres) == (Niveau.EMETTEUR, Statut.A_CORRIGER)

    await workflow.resubmit_requisition(
        db_session,
        users["emetteur"],
        req.id,
        lignes=[{"rubrique": "Fournitures", "description": "Ramettes + devis", "quantite": 2, "prix_unitaire": Decimal("40")}],
    )
    result = await workflow.submit_action(db_session, req.id, users["emetteur"], "approve", "Corrigée")
    await db_session.commit()

    assert req.montant_usd == Decimal("80")
    assert (result.niveau_apres, result.statut_apres) == (Niveau.ANALYSTE, Statut.EN_COURS)


@pytest.mark.asyncio
async def test_reject_at_later_stage_is_terminal(db_session, users, create_requisition, advance_to):
    req = await create_requisition()
    await advance_to(req, Niveau.CHALLENGER)

    result = await workflow.submit_action(db_session, req.id, users["challenger"], "refuser", "Hors périmètre")
    await db_session.commit()
    assert (result.niveau_apres, result.statut_apres) == (Niveau.TERMINE, Statut.REFUSEE)

    with pytest.raises(InvalidTransition):
        await workflow.submit_action(db_session, req.id, users["admin"], "approve")
    await db_session.rollback()

    # Administrative override: comments remain possible on closed requisitions.
    result = await workflow.submit_action(db_session, req.id, users["admin"], "comment", "Archivée")
    await db_session.commit()
    assert result.statut_apres == Statut.REFUSEE


@pytest.mark.asyncio
async def test_initiator_withdrawal_cancels(db_session, users, create_requisition):
    req = await create_requisition()
    result = await workflow.submit_action(db_session, req.id, users["emetteur"], "reject", "Plus nécessaire")
    await db_session.commit()
    assert (result.niveau_apres, result.statut_apres) == (Niveau.TERMINE, Statut.ANNULEE)


@pytest.mark.asyncio
async def test_comment_keeps_stage_and_logs(db_session, users, create_requisition, advance_to):
    req = await create_requisition()
    await advance_to(req, Niveau.CHALLENGER)
    version = req.version

    result = await workflow.submit_action(db_session, req.id, users["challenger"], "comment", "Besoin de précisions")
    await db_session.commit()

    assert (result.niveau_avant, result.niveau_apres) == (Niveau.CHALLENGER, Niveau.CHALLENGER)
    assert req.version == version
    actions = await workflow.list_actions(db_session, req.id)
    assert actions[-1].action == "comment"
    assert actions[-1].commentaire == "Besoin de précisions"


@pytest.mark.asyncio
async def test_stale_actor_gets_invalid_transition(db_session, async_session, users, create_requisition, advance_to):
    req = await create_requisition()
    await advance_to(req, Niveau.ANALYSTE)

    async with async_session() as other:
        stale = await workflow.get_requisition(other, req.id)
        assert stale.niveau == Niveau.ANALYSTE

        await workflow.submit_action(db_session, req.id, users["analyste"], "approve", "premier")
        await db_session.commit()

        with pytest.raises(InvalidTransition):
            await workflow.submit_action(other, req.id, users["analyste"], "approve", "second")
        await other.rollback()

    await db_session.refresh(req)
    assert req.niveau == Niveau.CHALLENGER
    count = await db_session.scalar(
        select(func.count()).select_from(RequisitionAction).where(RequisitionAction.niveau_avant == Niveau.ANALYSTE)
    )
    assert count == 1


@pytest.mark.asyncio
async def test_stale_initiator_edit_refused_once_review_started(db_session, async_session, users, create_requisition):
    req = await create_requisition("100")

    async with async_session() as other:
        stale = await workflow.get_requisition(other, req.id)
        assert stale.niveau == Niveau.EMETTEUR

        await workflow.submit_action(db_session, req.id, users["analyste"], "approve", "pré-validation")
        await db_session.commit()

        with pytest.raises(InvalidTransition):
            await workflow.resubmit_requisition(other, users["emetteur"], req.id, montant="99999", lignes=[])
        await other.rollback()

    await db_session.refresh(req)
    assert (req.niveau, req.statut) == (Niveau.ANALYSTE, Statut.EN_COURS)
    assert req.montant_usd == Decimal("100")
    assert [ligne.prix_total for ligne in req.lignes] == [Decimal("100")]


@pytest.mark.asyncio
async def test_initiator_edit_bumps_version(db_session, users, create_requisition):
    req = await create_requisition("100")

    await workflow.resubmit_requisition(db_session, users["emetteur"], req.id, objet="Achat de toner", montant="40", lignes=[])
    await db_session.commit()

    assert req.version == 2
    assert req.objet == "Achat de toner"
    assert req.montant_usd == Decimal("40")
    assert req.lignes == []


@pytest.mark.asyncio
async def test_concurrent_approvals_exactly_one_wins(is_sqlite, async_session, db_session, users, create_requisition, advance_to):
    if is_sqlite:
        pytest.skip("row-level concurrency needs TEST_DATABASE_URL (PostgreSQL)")
    req = await create_requisition()
    await advance_to(req, Niveau.ANALYSTE)

    sessions = [async_session(), async_session()]
    try:
        for s in sessions:
            await workflow.get_requisition(s, req.id)

        async def approve(s):
            try:
                await workflow.submit_action(s, req.id, users["analyste"], "approve", "go")
                await s.commit()
                return "ok"
            except InvalidTransition:
                await s.rollback()
                return "conflict"

        results = await asyncio.gather(*(approve(s) for s in sessions))
    finally:
        for s in sessions:
            await s.close()

    assert sorted(results) == ["conflict", "ok"]


@pytest.mark.asyncio
async def test_budget_advisory_returns_warnings(db_session, users, create_requisition, advance_to, monkeypatch):
    monkeypatch.setattr(settings, "budget_check_mode", "advisory")
    req = await create_requisition("100", rubrique="Rubrique inconnue")
    await advance_to(req, Niveau.ANALYSTE)

    result = await workflow.submit_action(db_session, req.id, users["analyste"], "approve")
    await db_session.commit()

    assert result.niveau_apres == Niveau.CHALLENGER
    assert result.warnings == [f"Rubrique inconnue ({budget_checker.month_of(req.created_at)}): category not found"]


@pytest.mark.asyncio
async def test_budget_enforce_blocks_overspend(db_session, users, create_requisition, advance_to, monkeypatch):
    monkeypatch.setattr(settings, "budget_check_mode", "enforce")
    mois = datetime.now(timezone.utc).strftime("%Y-%m")
    await budget_checker.create_envelope(db_session, rubrique="Fournitures", mois=mois, montant_prevu=Decimal("50"))
    await db_session.commit()
    req = await create_requisition("100")
    await advance_to(req, Niveau.ANALYSTE)

    with pytest.raises(BudgetExceeded) as excinfo:
        await workflow.submit_action(db_session, req.id, users["analyste"], "approve")
    await db_session.rollback()
    await db_session.refresh(req)

    assert Decimal(excinfo.value.data["Fournitures"]["details"]["remaining"]) == Decimal("50")
    assert req.niveau == Niveau.ANALYSTE


@pytest.mark.asyncio
async def test_gm_validation_consumes_budget_once(db_session, users, create_requisition, advance_to):
    mois = datetime.now(timezone.utc).strftime("%Y-%m")
    envelope = await budget_checker.create_envelope(
        db_session, rubrique="Fournitures", mois=mois, montant_prevu=Decimal("1000")
    )
    await db_session.commit()
    req = await create_requisition("280000", devise="CDF")
    await advance_to(req, Niveau.PAIEMENT)

    await db_session.refresh(envelope)
    assert envelope.montant_consomme == Decimal("100")
    assert req.budget_impacted is True
