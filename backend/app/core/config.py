from __future__ import annotations

import logging
from decimal import Decimal
from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger("workflow_config")


def _find_env_file() -> str | None:
    # Look for .env in current working directory or any parent of this file.
    cwd_env = Path.cwd() / ".env"
    if cwd_env.is_file():
        return str(cwd_env)
    here = Path(__file__).resolve()
    for parent in [here.parent, *here.parents]:
        candidate = parent / ".env"
        if candidate.is_file():
            return str(candidate)
    return None


_ENV_FILE_PATH = _find_env_file()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=_ENV_FILE_PATH, extra="ignore")

    # App
    env: str = "dev"
    log_level: str = "INFO"

    # DB
    database_url: str = "sqlite+aiosqlite:///./requisitions.db"

    # JWT (issued by the identity provider)
    jwt_secret: str = "change-me"
    jwt_issuer: str = "requisitions-identity"
    jwt_audience: str = "requisitions-api"
    access_token_expire_minutes: int = 15

    # CORS
    cors_origins: str = Field(default="", alias="CORS_ORIGINS")

    # Ledger
    currencies: list[str] = ["USD", "CDF"]
    reference_currency: str = "USD"
    # Units of each currency for one unit of the reference currency.
    exchange_rates: dict[str, Decimal] = {"CDF": Decimal("2800")}

    # Workflow
    budget_check_mode: str = "advisory"  # off/advisory/enforce
    budget_consume_on_validation: bool = True
    reject_to_correct_stages: list[str] = ["analyste"]

    # Auto-validation sweep
    auto_validation_enabled: bool = False
    auto_validation_interval_minutes: int = 5

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()  # singleton

if getattr(settings, "env", "dev").lower() == "dev":
    if _ENV_FILE_PATH:
        logger.info("Loaded .env from %s", _ENV_FILE_PATH)
    else:
        logger.info("No .env found; relying on environment variables only")
