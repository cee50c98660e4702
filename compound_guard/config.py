import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Explicitly load .env from the project root so it works regardless of CWD
_PROJECT_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(_PROJECT_ROOT / ".env")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    """
    All configuration for Compound-Guard, read from environment variables.

    COMPOUND_FAIL_CLOSED_EXTERNAL_CHECKS is the process-wide fail-closed flag:
    when true, external lookup failures block verification instead of warning.
    """

    environment: Literal["local", "test", "production"] = Field(
        default_factory=lambda: os.getenv("COMPOUND_ENV", "local")  # type: ignore[arg-type]
    )
    project_root: Path = Field(default_factory=lambda: _PROJECT_ROOT)
    db_path: Path = Field(
        default_factory=lambda: Path(os.getenv("COMPOUND_DB_PATH", "data/compound_guard.db"))
    )

    # Safety policy
    fail_closed_external_checks: bool = Field(
        default_factory=lambda: _env_flag("COMPOUND_FAIL_CLOSED_EXTERNAL_CHECKS", "true")
    )
    low_stock_warning_multiplier: float = Field(
        default_factory=lambda: float(os.getenv("COMPOUND_LOW_STOCK_WARNING_MULTIPLIER", "1.25"))
    )
    max_iterations: int = Field(
        default_factory=lambda: int(os.getenv("COMPOUND_MAX_ITERATIONS", "3"))
    )

    # External clinical / reference sources
    external_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("COMPOUND_EXTERNAL_TIMEOUT_SECONDS", "5"))
    )
    openfda_api_key: Optional[str] = Field(
        default_factory=lambda: os.getenv("OPENFDA_API_KEY") or None
    )
    openfda_base_url: str = Field(
        default_factory=lambda: os.getenv("COMPOUND_OPENFDA_BASE_URL", "https://api.fda.gov")
    )
    rxnav_base_url: str = Field(
        default_factory=lambda: os.getenv("COMPOUND_RXNAV_BASE_URL", "https://rxnav.nlm.nih.gov/REST")
    )
    dailymed_base_url: str = Field(
        default_factory=lambda: os.getenv(
            "COMPOUND_DAILYMED_BASE_URL", "https://dailymed.nlm.nih.gov/dailymed/services/v2"
        )
    )

    # AI review backend
    ai_backend: Literal["openai", "local", "none"] = Field(
        default_factory=lambda: os.getenv("COMPOUND_AI_BACKEND", "openai")  # type: ignore[arg-type]
    )
    ai_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("COMPOUND_AI_TIMEOUT_SECONDS", "8"))
    )
    openai_api_key: Optional[str] = Field(
        default_factory=lambda: os.getenv("OPENAI_API_KEY") or None
    )
    openai_model: str = Field(
        default_factory=lambda: os.getenv("COMPOUND_OPENAI_MODEL", "gpt-4.1-mini")
    )
    # Local HuggingFace model path (used when COMPOUND_AI_BACKEND=local)
    local_review_model: Optional[str] = Field(
        default_factory=lambda: os.getenv("COMPOUND_LOCAL_REVIEW_MODEL")
    )

    # Sign-off
    signing_intent_ttl_minutes: int = Field(
        default_factory=lambda: int(os.getenv("COMPOUND_SIGNING_INTENT_TTL_MINUTES", "10"))
    )
    require_signing_intent: bool = Field(
        default_factory=lambda: _env_flag("COMPOUND_REQUIRE_SIGNING_INTENT", "true")
    )
    pin_max_attempts: int = Field(
        default_factory=lambda: int(os.getenv("COMPOUND_PIN_MAX_ATTEMPTS", "5"))
    )
    pin_lockout_minutes: int = Field(
        default_factory=lambda: int(os.getenv("COMPOUND_PIN_LOCKOUT_MINUTES", "15"))
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached Settings singleton. Import this instead of instantiating Settings directly."""
    return Settings()
