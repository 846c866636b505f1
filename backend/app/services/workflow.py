"""Requisition approval state machine.

The whole transition graph lives in the tables below: who may act at which
stage (``PERMISSIONS``), where an approval leads (``TRANSITIONS``), where a
rejection leads (``rejection_policy``) and which status a stage implies
(``STATUS_AFTER_APPROVE``). ``submit_action`` is the only writer of
``niveau``/``statut``; it persists each change with a conditional UPDATE on
the expected stage, status and version, so a stale or concurrent actor gets
``InvalidTransition`` instead of silently overwriting.

Service functions flush but never commit. On any ``WorkflowError`` the caller
rolls the transaction back.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    BudgetExceeded,
    InvalidTransition,
    PermissionDenied,
    RequisitionNotFound,
    ValidationError,
)
from app.models.ligne_requisition import LigneRequisition
from app.models.requisition import ActionKind, ModePaiement, Niveau, Requisition, Statut
from app.models.requisition_action import RequisitionAction
from app.models.user import User
from app.models.workflow_setting import WorkflowSetting
from app.services import budget_checker, fund_ledger
from app.services.document_sequences import generate_document_number


logger = logging.getLogger("workflow_api.workflow")

AUTO_VALIDATION_COMMENT = "Validation automatique (délai dépassé)"
ADMIN_ROLE = "admin"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


VALID_STATES: dict[Niveau, frozenset[Statut]] = {
    Niveau.EMETTEUR: frozenset({Statut.SOUMISE, Statut.A_CORRIGER}),
    Niveau.ANALYSTE: frozenset({Statut.EN_COURS}),
    Niveau.CHALLENGER: frozenset({Statut.EN_COURS}),
    Niveau.VALIDATEUR: frozenset({Statut.EN_COURS}),
    Niveau.GM: frozenset({Statut.EN_COURS}),
    Niveau.PAIEMENT: frozenset({Statut.VALIDEE}),
    Niveau.TERMINE: frozenset({Statut.PAYEE, Statut.REFUSEE, Statut.ANNULEE}),
}

TERMINAL_STATUTS = frozenset({Statut.PAYEE, Statut.REFUSEE, Statut.ANNULEE})


@dataclass(frozen=True)
class WorkflowState:
    niveau: Niveau
    statut: Statut

    def __post_init__(self) -> None:
        if self.statut not in VALID_STATES.get(self.niveau, frozenset()):
            raise InvalidTransition(
                "État de réquisition incohérent",
                details=[f"statut {self.statut.value} impossible au niveau {self.niveau.value}"],
            )

    @property
    def terminal(self) -> bool:
        return self.statut in TERMINAL_STATUTS


_REVIEW = frozenset({ActionKind.APPROVE, ActionKind.REJECT, ActionKind.COMMENT})
_PAYMENT = frozenset({ActionKind.APPROVE, ActionKind.PAY, ActionKind.REJECT, ActionKind.COMMENT})

PERMISSIONS: dict[tuple[Niveau, str], frozenset[ActionKind]] = {
    (Niveau.EMETTEUR, "emetteur"): _REVIEW,
    # Department-head pre-approval is absorbed by the analyst.
    (Niveau.EMETTEUR, "analyste"): _REVIEW,
    (Niveau.ANALYSTE, "analyste"): _REVIEW,
    (Niveau.CHALLENGER, "challenger"): _REVIEW,
    # Single-level review chain: validator or PM may stand in for the challenger.
    (Niveau.CHALLENGER, "validateur"): _REVIEW,
    (Niveau.CHALLENGER, "pm"): _REVIEW,
    (Niveau.VALIDATEUR, "validateur"): _REVIEW,
    (Niveau.VALIDATEUR, "pm"): _REVIEW,
    (Niveau.GM, "gm"): _REVIEW,
    (Niveau.PAIEMENT, "comptable"): _PAYMENT,
}

TRANSITIONS: dict[tuple[Niveau, ActionKind], Niveau] = {
    (Niveau.EMETTEUR, ActionKind.APPROVE): Niveau.ANALYSTE,
    (Niveau.ANALYSTE, ActionKind.APPROVE): Niveau.CHALLENGER,
    (Niveau.CHALLENGER, ActionKind.APPROVE): Niveau.VALIDATEUR,
    (Niveau.VALIDATEUR, ActionKind.APPROVE): Niveau.GM,
    (Niveau.GM, ActionKind.APPROVE): Niveau.PAIEMENT,
    (Niveau.PAIEMENT, ActionKind.APPROVE): Niveau.TERMINE,
    (Niveau.PAIEMENT, ActionKind.PAY): Niveau.TERMINE,
}

STATUS_AFTER_APPROVE: dict[Niveau, Statut] = {
    Niveau.ANALYSTE: Statut.EN_COURS,
    Niveau.CHALLENGER: Statut.EN_COURS,
    Niveau.VALIDATEUR: Statut.EN_COURS,
    Niveau.GM: Statut.EN_COURS,
    Niveau.PAIEMENT: Statut.VALIDEE,
    Niveau.TERMINE: Statut.PAYEE,
}

# Stages the automatic sweep may advance. Payment always needs a person.
AUTO_VALIDATION_STAGES = (Niveau.ANALYSTE, Niveau.CHALLENGER, Niveau.VALIDATEUR, Niveau.GM)


def build_rejection_policy(reject_to_correct: Iterable[str]) -> dict[Niveau, WorkflowState]:
    to_correct = {Niveau(n) for n in reject_to_correct}
    policy: dict[Niveau, WorkflowState] = {
        Niveau.EMETTEUR: WorkflowState(Niveau.TERMINE, Statut.ANNULEE),
    }
    for niveau in (Niveau.ANALYSTE, Niveau.CHALLENGER, Niveau.VALIDATEUR, Niveau.GM, Niveau.PAIEMENT):
        if niveau in to_correct:
            policy[niveau] = WorkflowState(Niveau.EMETTEUR, Statut.A_CORRIGER)
        else:
            policy[niveau] = WorkflowState(Niveau.TERMINE, Statut.REFUSEE)
    return policy


def rejection_policy() -> dict[Niveau, WorkflowState]:
    return build_rejection_policy(settings.reject_to_correct_stages)


def allowed_actions(niveau: Niveau, role: str) -> frozenset[ActionKind]:
    if role == ADMIN_ROLE:
        return _PAYMENT if niveau == Niveau.PAIEMENT else _REVIEW
    return PERMISSIONS.get((niveau, role), frozenset())


def next_state(state: WorkflowState, action: ActionKind) -> WorkflowState:
    """Pure transition function over the tables above."""
    if action == ActionKind.COMMENT:
        return state
    if action == ActionKind.REJECT:
        target = rejection_policy().get(state.niveau)
        if target is None:
            raise InvalidTransition(f"Rejet impossible au niveau {state.niveau.value}")
        return target
    nxt = TRANSITIONS.get((state.niveau, action))
    if nxt is None:
        raise InvalidTransition(f"Action {action.value} impossible au niveau {state.niveau.value}")
    return WorkflowState(nxt, STATUS_AFTER_APPROVE[nxt])


@dataclass
class TransitionResult:
    requisition_id: uuid.UUID
    numero: str
    action: ActionKind
    niveau_avant: Niveau
    niveau_apres: Niveau
    statut_avant: Statut
    statut_apres: Statut
    action_id: int | None = None
    mouvement_id: int | None = None
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "requisitionId": str(self.requisition_id),
            "numero": self.numero,
            "action": self.action.value,
            "niveauAvant": self.niveau_avant.value,
            "niveauApres": self.niveau_apres.value,
            "statutAvant": self.statut_avant.value,
            "statutApres": self.statut_apres.value,
            "warnings": self.warnings,
        }


def parse_action(value: str | ActionKind) -> ActionKind:
    aliases = {"valider": ActionKind.APPROVE, "refuser": ActionKind.REJECT, "commenter": ActionKind.COMMENT, "payer": ActionKind.PAY}
    if isinstance(value, ActionKind):
        return value
    key = (value or "").strip().lower()
    if key in aliases:
        return aliases[key]
    try:
        return ActionKind(key)
    except ValueError:
        raise ValidationError(f"Action inconnue: {value}")


async def get_requisition(db: AsyncSession, requisition_id: uuid.UUID) -> Requisition:
    res = await db.execute(select(Requisition).where(Requisition.id == requisition_id))
    req = res.scalar_one_or_none()
    if req is None:
        raise RequisitionNotFound(requisition_id)
    return req


async def _conditional_transition(
    db: AsyncSession,
    req: Requisition,
    before: WorkflowState,
    after: WorkflowState,
    **values: Any,
) -> None:
    res = await db.execute(
        update(Requisition)
        .where(
            Requisition.id == req.id,
            Requisition.niveau == before.niveau,
            Requisition.statut == before.statut,
            Requisition.version == req.version,
        )
        .values(
            niveau=after.niveau,
            statut=after.statut,
            version=Requisition.version + 1,
            updated_at=_utcnow(),
            **values,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise InvalidTransition(
            "La réquisition a été modifiée entre-temps",
            details=[f"{req.numero}: état attendu {before.niveau.value}/{before.statut.value}"],
        )
    await db.refresh(req)


async def _record_action(
    db: AsyncSession,
    req: Requisition,
    user_id: uuid.UUID | None,
    action: ActionKind,
    commentaire: str | None,
    before: WorkflowState,
    after: WorkflowState,
) -> RequisitionAction:
    record = RequisitionAction(
        requisition_id=req.id,
        utilisateur_id=user_id,
        action=action.value,
        commentaire=commentaire,
        niveau_avant=before.niveau,
        niveau_apres=after.niveau,
        statut_avant=before.statut,
        statut_apres=after.statut,
        created_at=_utcnow(),
    )
    db.add(record)
    await db.flush()
    return record


async def _budget_warnings(db: AsyncSession, req: Requisition) -> list[str]:
    mode = (settings.budget_check_mode or "off").lower()
    if mode == "off":
        return []
    failures = await budget_checker.check_requisition(db, req)
    warnings = [f"{f.rubrique} ({f.mois}): {f.reason}" for f in failures]
    exceeded = [f for f in failures if f.reason == budget_checker.REASON_EXCEEDED]
    if mode == "enforce" and exceeded:
        raise BudgetExceeded(
            f"Budget dépassé pour {req.numero}",
            details=[f"{f.rubrique} ({f.mois}): {f.reason}" for f in exceeded],
            data={f.rubrique: f.as_dict() for f in exceeded},
        )
    if warnings:
        logger.warning("Budget check for %s: %s", req.numero, "; ".join(warnings))
    return warnings


async def _consume_budget(db: AsyncSession, req: Requisition) -> bool:
    if not settings.budget_consume_on_validation or req.budget_impacted:
        return False
    mois = budget_checker.month_of(req.created_at)
    for ligne in req.lignes:
        amount = budget_checker.normalize_amount(ligne.prix_total, req.devise)
        await budget_checker.record_consumption(db, ligne.rubrique, amount, mois)
    return True


def _check_permission(req: Requisition, state: WorkflowState, actor: User, action: ActionKind) -> None:
    if action not in allowed_actions(state.niveau, actor.role):
        raise PermissionDenied(
            "Action non autorisée",
            details=[f"Le rôle {actor.role} ne peut pas {action.value} au niveau {state.niveau.value}"],
        )
    # Initiators only act on their own requests.
    if actor.role == "emetteur" and req.emetteur_id != actor.id:
        raise PermissionDenied("Cette réquisition appartient à un autre émetteur")


async def submit_action(
    db: AsyncSession,
    requisition_id: uuid.UUID,
    actor: User | None,
    action: str | ActionKind,
    commentaire: str | None = None,
    mode_paiement: ModePaiement | str | None = None,
    *,
    settle: bool = True,
) -> TransitionResult:
    """Apply one reviewer action to a requisition.

    ``actor`` is None only for the automatic validation sweep, which skips the
    permission table. ``settle=False`` is used by batch payment, which has
    already debited the fund for the whole batch.
    """
    kind = parse_action(action)
    commentaire = (commentaire or "").strip() or None
    req = await get_requisition(db, requisition_id)
    before = WorkflowState(req.niveau, req.statut)
    is_admin = actor is not None and actor.role == ADMIN_ROLE

    if before.terminal:
        if not (is_admin and kind == ActionKind.COMMENT):
            raise InvalidTransition(
                "Réquisition clôturée",
                details=[f"{req.numero} est {before.statut.value}"],
            )
    elif actor is not None:
        _check_permission(req, before, actor, kind)

    if kind == ActionKind.REJECT and not commentaire:
        raise ValidationError("Un commentaire est obligatoire pour refuser")
    if kind == ActionKind.COMMENT and not commentaire:
        raise ValidationError("Le commentaire est vide")

    after = next_state(before, kind)
    user_id = actor.id if actor is not None else None
    warnings: list[str] = []
    extra: dict[str, Any] = {}
    movement = None

    if kind == ActionKind.COMMENT:
        record = await _record_action(db, req, user_id, kind, commentaire, before, after)
        logger.info("Comment on %s by %s", req.numero, user_id)
        return TransitionResult(req.id, req.numero, kind, before.niveau, after.niveau, before.statut, after.statut, action_id=record.id)

    if kind in (ActionKind.APPROVE, ActionKind.PAY):
        if before.niveau == Niveau.ANALYSTE:
            warnings = await _budget_warnings(db, req)
        if before.niveau == Niveau.PAIEMENT:
            kind = ActionKind.PAY
            if mode_paiement:
                extra["mode_paiement"] = ModePaiement(mode_paiement)
            if settle:
                # Raises before anything is written when the fund cannot cover it.
                movement = await fund_ledger.debit(
                    db,
                    req.devise,
                    req.montant,
                    f"Paiement réquisition {req.numero}",
                    requisition_id=req.id,
                    user_id=user_id,
                )

    await _conditional_transition(db, req, before, after, **extra)
    if before.niveau == Niveau.GM and await _consume_budget(db, req):
        req.budget_impacted = True
        await db.flush()
    record = await _record_action(
        db,
        req,
        user_id,
        kind,
        commentaire if actor is not None else (commentaire or AUTO_VALIDATION_COMMENT),
        before,
        after,
    )
    logger.info(
        "Requisition %s: %s %s/%s -> %s/%s by %s",
        req.numero,
        kind.value,
        before.niveau.value,
        before.statut.value,
        after.niveau.value,
        after.statut.value,
        user_id or "system",
    )
    return TransitionResult(
        req.id,
        req.numero,
        kind,
        before.niveau,
        after.niveau,
        before.statut,
        after.statut,
        action_id=record.id,
        mouvement_id=movement.id if movement is not None else None,
        warnings=warnings,
    )


def _build_lignes(lignes: Iterable[dict[str, Any]]) -> list[LigneRequisition]:
    out: list[LigneRequisition] = []
    for position, item in enumerate(lignes):
        rubrique = (item.get("rubrique") or "").strip()
        description = (item.get("description") or "").strip()
        if not rubrique or not description:
            raise ValidationError("Chaque ligne requiert une rubrique et une description")
        quantite = int(item.get("quantite") or 0)
        prix_unitaire = fund_ledger.to_decimal(item.get("prix_unitaire"))
        if quantite <= 0 or prix_unitaire <= 0:
            raise ValidationError(f"Quantité et prix unitaire doivent être positifs ({description})")
        out.append(
            LigneRequisition(
                position=position,
                rubrique=rubrique,
                description=description,
                quantite=quantite,
                prix_unitaire=prix_unitaire,
                # Recomputed, never taken from input.
                prix_total=(prix_unitaire * quantite).quantize(fund_ledger.CENT),
                site_id=item.get("site_id"),
            )
        )
    return out


def _amounts(devise: str, lignes: list[LigneRequisition], montant: Any) -> dict[str, Decimal | None]:
    code = fund_ledger.normalize_devise(devise)
    if code not in ("USD", "CDF"):
        raise ValidationError(f"Devise non supportée pour une réquisition: {code}")
    if lignes:
        total = sum((ligne.prix_total for ligne in lignes), Decimal("0"))
    else:
        total = fund_ledger.to_decimal(montant).quantize(fund_ledger.CENT)
    if total <= 0:
        raise ValidationError("Le montant de la réquisition doit être supérieur à 0")
    return {
        "montant_usd": total if code == "USD" else None,
        "montant_cdf": total if code == "CDF" else None,
    }


async def create_requisition(
    db: AsyncSession,
    actor: User,
    *,
    objet: str,
    devise: str,
    lignes: list[dict[str, Any]] | None = None,
    montant: Any = None,
    related_to: uuid.UUID | None = None,
) -> Requisition:
    objet = (objet or "").strip()
    if not objet:
        raise ValidationError("L'objet est requis")
    items = _build_lignes(lignes or [])
    amounts = _amounts(devise, items, montant)
    if related_to is not None:
        await get_requisition(db, related_to)

    numero = await generate_document_number(db, "REQ")
    now = _utcnow()
    req = Requisition(
        numero=numero,
        objet=objet,
        niveau=Niveau.EMETTEUR,
        statut=Statut.SOUMISE,
        version=1,
        emetteur_id=actor.id,
        service_id=actor.service_id,
        related_to=related_to,
        budget_impacted=False,
        created_at=now,
        updated_at=now,
        lignes=items,
        **amounts,
    )
    db.add(req)
    await db.flush()
    logger.info("Requisition %s created by %s", numero, actor.id)
    return req


async def resubmit_requisition(
    db: AsyncSession,
    actor: User,
    requisition_id: uuid.UUID,
    *,
    objet: str | None = None,
    devise: str | None = None,
    lignes: list[dict[str, Any]] | None = None,
    montant: Any = None,
) -> Requisition:
    """Edit a requisition still in the initiator's hands."""
    req = await get_requisition(db, requisition_id)
    if actor.role != ADMIN_ROLE and req.emetteur_id != actor.id:
        raise PermissionDenied("Seul l'émetteur peut modifier cette réquisition")
    if req.bordereau_id is not None:
        raise InvalidTransition("Réquisition déjà compilée dans un bordereau")
    state = WorkflowState(req.niveau, req.statut)
    if state.niveau != Niveau.EMETTEUR:
        raise InvalidTransition(
            "Réquisition non modifiable",
            details=[f"{req.numero} est au niveau {state.niveau.value}"],
        )

    values: dict[str, Any] = {}
    if objet is not None:
        if not objet.strip():
            raise ValidationError("L'objet est requis")
        values["objet"] = objet.strip()
    items: list[LigneRequisition] | None = None
    if lignes is not None or devise is not None or montant is not None:
        items = _build_lignes(lignes) if lignes is not None else None
        amounts = _amounts(
            devise or req.devise,
            items if items is not None else list(req.lignes),
            montant if montant is not None else req.montant,
        )
        values.update(amounts)

    # Applied only while uncompiled and still at the initiator stage and version read above.
    res = await db.execute(
        update(Requisition)
        .where(
            Requisition.id == req.id,
            Requisition.niveau == Niveau.EMETTEUR,
            Requisition.statut.in_((Statut.SOUMISE, Statut.A_CORRIGER)),
            Requisition.version == req.version,
            Requisition.bordereau_id.is_(None),
        )
        .values(version=Requisition.version + 1, updated_at=_utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise InvalidTransition(
            "La réquisition a été modifiée entre-temps",
            details=[f"{req.numero}: modification refusée, état ou version changés"],
        )
    await db.refresh(req)
    if lignes is not None:
        req.lignes = items
        await db.flush()
    logger.info("Requisition %s edited by %s", req.numero, actor.id)
    return req


async def list_requisitions(
    db: AsyncSession,
    *,
    niveau: Niveau | None = None,
    statut: Statut | None = None,
    limit: int = 200,
) -> list[Requisition]:
    stmt = select(Requisition)
    if niveau is not None:
        stmt = stmt.where(Requisition.niveau == niveau)
    if statut is not None:
        stmt = stmt.where(Requisition.statut == statut)
    res = await db.execute(stmt.order_by(Requisition.created_at.desc()).limit(limit))
    return list(res.scalars().all())


async def list_actions(db: AsyncSession, requisition_id: uuid.UUID) -> list[RequisitionAction]:
    await get_requisition(db, requisition_id)
    res = await db.execute(
        select(RequisitionAction)
        .where(RequisitionAction.requisition_id == requisition_id)
        .order_by(RequisitionAction.created_at, RequisitionAction.id)
    )
    return list(res.scalars().all())


async def get_auto_validation_delays(db: AsyncSession) -> dict[str, int]:
    res = await db.execute(select(WorkflowSetting))
    return {row.niveau: row.delai_minutes for row in res.scalars().all()}


async def set_auto_validation_delays(db: AsyncSession, delays: dict[str, int]) -> dict[str, int]:
    for key, minutes in delays.items():
        try:
            niveau = Niveau(key)
        except ValueError:
            raise ValidationError(f"Niveau inconnu: {key}")
        if niveau not in AUTO_VALIDATION_STAGES:
            raise ValidationError(f"Validation automatique impossible au niveau {key}")
        if minutes is None or int(minutes) < 0:
            raise ValidationError(f"Délai invalide pour {key}")
        row = await db.get(WorkflowSetting, niveau.value)
        if row is None:
            db.add(WorkflowSetting(niveau=niveau.value, delai_minutes=int(minutes), updated_at=_utcnow()))
        else:
            row.delai_minutes = int(minutes)
            row.updated_at = _utcnow()
    await db.flush()
    return await get_auto_validation_delays(db)


async def run_auto_validation(db: AsyncSession, now: datetime | None = None) -> list[TransitionResult]:
    """Approve requisitions that waited longer than their stage's delay.

    Each approval is the same conditional update a reviewer would issue, so a
    requisition moved by someone else in the meantime is skipped.
    """
    now = now or _utcnow()
    delays = await get_auto_validation_delays(db)
    results: list[TransitionResult] = []
    for niveau in AUTO_VALIDATION_STAGES:
        minutes = delays.get(niveau.value) or 0
        if minutes <= 0:
            continue
        cutoff = now - timedelta(minutes=minutes)
        res = await db.execute(
            select(Requisition.id)
            .where(
                Requisition.niveau == niveau,
                Requisition.statut == Statut.EN_COURS,
                Requisition.updated_at < cutoff,
            )
            .order_by(Requisition.updated_at)
        )
        for requisition_id in res.scalars().all():
            try:
                results.append(
                    await submit_action(db, requisition_id, None, ActionKind.APPROVE, AUTO_VALIDATION_COMMENT)
                )
            except (InvalidTransition, BudgetExceeded) as exc:
                logger.warning("Auto-validation skipped %s: %s", requisition_id, exc.message)
    if results:
        logger.info("Auto-validation advanced %s requisition(s)", len(results))
    return results
