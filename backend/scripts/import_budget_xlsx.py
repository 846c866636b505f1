from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from app.db.session import SessionLocal  # noqa: E402
from app.core.errors import ValidationError  # noqa: E402
from app.services.budget_checker import check_month, import_envelopes_from_excel  # noqa: E402


def _parse_month(value: str) -> str:
    try:
        return check_month(value)
    except ValidationError as exc:
        raise argparse.ArgumentTypeError(f"Mois invalide '{value}' (attendu YYYY-MM).") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Importer les enveloppes budgétaires d'un fichier Excel.")
    parser.add_argument("file", help="Chemin du fichier .xlsx")
    parser.add_argument("--mois", type=_parse_month, required=True, help="Mois ciblé, format YYYY-MM")
    parser.add_argument("--annee", type=int, default=None, help="Par défaut l'année du mois")
    return parser


async def main() -> None:
    args = build_parser().parse_args()
    content = Path(args.file).read_bytes()
    annee = args.annee or int(args.mois[:4])
    async with SessionLocal() as session:
        count = await import_envelopes_from_excel(session, content, args.mois, annee)
        await session.commit()
    print(f"Import termine pour {args.mois}: {count} ligne(s).")


if __name__ == "__main__":
    asyncio.run(main())
