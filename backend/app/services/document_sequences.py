from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ValidationError
from app.models.document_sequence import DocumentSequence


MAX_COUNTER = 9999


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def generate_document_number(db: AsyncSession, doc_type: str) -> str:
    """Next number for ``doc_type`` in the current year, e.g. ``REQ-2026-0042``.

    The counter row is locked for the rest of the transaction so two writers
    never hand out the same number.
    """
    year = _utcnow().year
    stmt = (
        select(DocumentSequence)
        .where(DocumentSequence.doc_type == doc_type, DocumentSequence.year == year)
        .with_for_update()
    )
    res = await db.execute(stmt)
    seq = res.scalar_one_or_none()
    if not seq:
        seq = DocumentSequence(doc_type=doc_type, year=year, counter=1, updated_at=_utcnow())
        db.add(seq)
    else:
        if seq.counter >= MAX_COUNTER:
            raise ValidationError(f"Capacité annuelle atteinte pour {doc_type}")
        seq.counter += 1
        seq.updated_at = _utcnow()
    await db.flush()
    return f"{doc_type}-{year}-{seq.counter:04d}"
