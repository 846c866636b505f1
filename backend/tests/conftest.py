import os
import sys
import uuid
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

PROJECT_ROOT = Path(__file__).resolve().parents[2]
BACKEND_ROOT = PROJECT_ROOT / "backend"
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from app.db.base import Base  # noqa: E402
from app.models import audit_log as _audit_log  # noqa: F401,E402
from app.models import bordereau as _bordereau  # noqa: F401,E402
from app.models import budget as _budget  # noqa: F401,E402
from app.models import document_sequence as _document_sequence  # noqa: F401,E402
from app.models import fonds as _fonds  # noqa: F401,E402
from app.models import ligne_requisition as _ligne_requisition  # noqa: F401,E402
from app.models import requisition as _requisition  # noqa: F401,E402
from app.models import requisition_action as _requisition_action  # noqa: F401,E402
from app.models import user as _user  # noqa: F401,E402
from app.models import workflow_setting as _workflow_setting  # noqa: F401,E402
from app.models.requisition import Niveau  # noqa: E402
from app.models.user import User  # noqa: E402
from app.services import fund_ledger, workflow  # noqa: E402

# Reviewer role that approves at each stage on the happy path.
STAGE_ROLES = {
    Niveau.EMETTEUR: "emetteur",
    Niveau.ANALYSTE: "analyste",
    Niveau.CHALLENGER: "challenger",
    Niveau.VALIDATEUR: "validateur",
    Niveau.GM: "gm",
}
STAGE_ORDER = [Niveau.EMETTEUR, Niveau.ANALYSTE, Niveau.CHALLENGER, Niveau.VALIDATEUR, Niveau.GM, Niveau.PAIEMENT]


@pytest.fixture
def test_database_url(tmp_path) -> str:
    url = os.environ.get("TEST_DATABASE_URL")
    if url:
        return url
    return f"sqlite+aiosqlite:///{tmp_path / 'workflow.db'}"


@pytest_asyncio.fixture
async def async_engine(test_database_url: str) -> AsyncEngine:
    engine = create_async_engine(test_database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def async_session(async_engine: AsyncEngine):
    return async_sessionmaker(bind=async_engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db_session(async_session):
    session: AsyncSession = async_session()
    try:
        await fund_ledger.seed_funds(session, ["USD", "CDF"])
        await session.commit()
        yield session
    finally:
        await session.close()


@pytest.fixture
def is_sqlite(test_database_url: str) -> bool:
    return test_database_url.startswith("sqlite")


def make_user(role: str, **kwargs) -> User:
    return User(id=uuid.uuid4(), email=f"{role}-{uuid.uuid4().hex[:6]}@test.local", role=role, active=True, **kwargs)


@pytest.fixture
def users() -> dict[str, User]:
    return {
        role: make_user(role)
        for role in ("emetteur", "analyste", "challenger", "validateur", "pm", "gm", "comptable", "compilateur", "admin")
    }


@pytest.fixture
def create_requisition(db_session: AsyncSession, users):
    async def _create(montant: str = "100", devise: str = "USD", rubrique: str = "Fournitures", emetteur=None):
        req = await workflow.create_requisition(
            db_session,
            emetteur or users["emetteur"],
            objet="Achat de fournitures",
            devise=devise,
            lignes=[
                {
                    "rubrique": rubrique,
                    "description": "Ramettes de papier",
                    "quantite": 1,
                    "prix_unitaire": Decimal(montant),
                }
            ],
        )
        await db_session.commit()
        return req

    return _create


@pytest.fixture
def advance_to(db_session: AsyncSession, users):
    """Approve a requisition stage by stage until it reaches ``target``."""

    async def _advance(req, target: Niveau):
        while req.niveau != target:
            if req.niveau not in STAGE_ROLES:
                raise AssertionError(f"cannot advance past {req.niveau}")
            actor = users[STAGE_ROLES[req.niveau]]
            if req.niveau == Niveau.EMETTEUR and req.emetteur_id != actor.id:
                actor = users["admin"]
            await workflow.submit_action(db_session, req.id, actor, "approve", "ok")
            await db_session.commit()
        return req

    return _advance


@pytest.fixture
def fund(db_session: AsyncSession):
    async def _fund(devise: str, montant: str):
        await fund_ledger.credit(db_session, devise, Decimal(montant), "Solde initial")
        await db_session.commit()

    return _fund
