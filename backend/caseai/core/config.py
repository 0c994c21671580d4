"""
Process configuration.

Values come from the environment (optionally a .env file at the repository
root) and are read exactly once, by load_settings(). Services receive the
resulting objects through their constructors and never touch os.environ.

Environment variables:
- DATABASE_URL: SQLAlchemy async URL (default: sqlite+aiosqlite:///./caseai.db)
- LOG_LEVEL / LOG_JSON: logging setup
- OPENROUTER_API_KEY / OPENROUTER_BASE_URL: provider credentials and endpoint
- DEFAULT_MODEL / FALLBACK_MODEL: production model and optional fallback
- JUDGE_MODEL: model used by the judge evaluator (defaults to DEFAULT_MODEL)
- TEMPERATURE / MAX_TOKENS: default sampling parameters
- MAX_RETRY_ATTEMPTS: attempts against the primary model
- REQUEST_TIMEOUT_MS: overall deadline for one model invocation
- JUDGE_PASS_THRESHOLD / JUDGE_REVIEW_THRESHOLD: verdict bands
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from caseai.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL_ID = "x-ai/grok-beta"


class ModelClientConfig(BaseModel):
    """Configuration bundle for one ModelClient instance."""

    model_id: str = DEFAULT_MODEL_ID
    provider: str = "openrouter"
    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(4000, gt=0)
    top_p: float = Field(1.0, ge=0.0, le=1.0)
    frequency_penalty: float = Field(0.0, ge=-2.0, le=2.0)
    presence_penalty: float = Field(0.0, ge=-2.0, le=2.0)
    timeout_seconds: float = Field(30.0, gt=0.0)
    # Per-HTTP-request timeout; None means each attempt may use the whole deadline.
    attempt_timeout_seconds: Optional[float] = Field(None, gt=0.0)
    retry_attempts: int = Field(3, ge=1)
    backoff_base_seconds: float = Field(1.0, ge=0.0)
    backoff_max_seconds: float = Field(10.0, ge=0.0)
    fallback_model_id: Optional[str] = None
    site_url: str = "http://localhost:3001"
    app_name: str = "ai-case-management"


class JudgeConfig(BaseModel):
    pass_threshold: float = 7.0
    review_threshold: float = 5.0
    default_rubric_version: str = "1.0"
    dataset_concurrency: int = Field(4, ge=1)


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///./caseai.db"
    log_level: str = "INFO"
    log_json: bool = True
    model: ModelClientConfig = Field(default_factory=ModelClientConfig)
    judge_model: ModelClientConfig = Field(default_factory=ModelClientConfig)
    judge: JudgeConfig = Field(default_factory=JudgeConfig)


def _load_env_file() -> None:
    env_path = Path(__file__).resolve().parents[3] / ".env"
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("env_loaded", env_path=str(env_path))


def _float_env(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)) or default)


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)) or default)


def load_settings() -> Settings:
    """Build Settings from the environment."""
    _load_env_file()

    api_key = os.getenv("OPENROUTER_API_KEY")
    if not api_key:
        logger.warning("openrouter_api_key_missing", message="Model calls will fail until OPENROUTER_API_KEY is set")

    timeout_seconds = _int_env("REQUEST_TIMEOUT_MS", 30000) / 1000.0
    model = ModelClientConfig(
        model_id=os.getenv("DEFAULT_MODEL", DEFAULT_MODEL_ID),
        api_key=api_key,
        base_url=os.getenv("OPENROUTER_BASE_URL", DEFAULT_BASE_URL),
        temperature=_float_env("TEMPERATURE", 0.7),
        max_tokens=_int_env("MAX_TOKENS", 4000),
        retry_attempts=_int_env("MAX_RETRY_ATTEMPTS", 3),
        timeout_seconds=timeout_seconds,
        fallback_model_id=os.getenv("FALLBACK_MODEL") or None,
        site_url=os.getenv("OPENROUTER_SITE_URL", "http://localhost:3001"),
        app_name=os.getenv("OPENROUTER_APP_NAME", "ai-case-management"),
    )
    judge_model = model.model_copy(
        update={
            "model_id": os.getenv("JUDGE_MODEL") or model.model_id,
            "temperature": 0.1,
            "max_tokens": 2000,
            "fallback_model_id": None,
        }
    )

    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./caseai.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_json=os.getenv("LOG_JSON", "true").lower() == "true",
        model=model,
        judge_model=judge_model,
        judge=JudgeConfig(
            pass_threshold=_float_env("JUDGE_PASS_THRESHOLD", 7.0),
            review_threshold=_float_env("JUDGE_REVIEW_THRESHOLD", 5.0),
        ),
    )
