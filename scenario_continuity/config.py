"""Runtime configuration, read from the environment (and .env)."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from scenario_continuity.llm import LLM, HttpLLM, ProviderFormat, UnconfiguredLLM

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent.parent
DEFAULT_DATA_DIR = ROOT_DIR / "data"


class EvaluationSettings(BaseModel):
    data_dir: Path = DEFAULT_DATA_DIR

    llm_provider_url: str = ""
    llm_api_key: str = ""
    llm_provider_format: ProviderFormat = "koboldcpp"
    llm_model: str = ""
    llm_timeout: float = Field(default=120.0, gt=0)

    max_paths: int = Field(default=100, ge=1)
    max_concurrency: int = Field(default=4, ge=1)
    path_timeout: float = Field(default=60.0, gt=0)
    scene_timeout: float = Field(default=30.0, gt=0)
    judge_max_attempts: int = Field(default=2, ge=1)
    max_finished_operations: int = Field(default=200, ge=1)

    log_level: str = "INFO"


# env var → settings field
_ENV_FIELDS = {
    "DATA_DIR": "data_dir",
    "LLM_PROVIDER_URL": "llm_provider_url",
    "LLM_API_KEY": "llm_api_key",
    "LLM_PROVIDER_FORMAT": "llm_provider_format",
    "LLM_MODEL": "llm_model",
    "LLM_TIMEOUT": "llm_timeout",
    "CONTINUITY_MAX_PATHS": "max_paths",
    "CONTINUITY_MAX_CONCURRENCY": "max_concurrency",
    "CONTINUITY_PATH_TIMEOUT": "path_timeout",
    "CONTINUITY_SCENE_TIMEOUT": "scene_timeout",
    "CONTINUITY_JUDGE_ATTEMPTS": "judge_max_attempts",
    "CONTINUITY_MAX_FINISHED_OPERATIONS": "max_finished_operations",
    "LOG_LEVEL": "log_level",
}


def load_settings(env_file: Path | None = None, **overrides) -> EvaluationSettings:
    """Build settings from environment variables, then explicit overrides.

    Unset or empty variables keep the model defaults. Pydantic coerces the
    string values and rejects out-of-range numbers with a ValidationError.
    """
    load_dotenv(env_file or ROOT_DIR / ".env")
    values: dict = {}
    for env_name, field in _ENV_FIELDS.items():
        raw = os.getenv(env_name, "")
        if raw:
            values[field] = raw
    values.update({k: v for k, v in overrides.items() if v is not None})
    return EvaluationSettings.model_validate(values)


def build_llm(settings: EvaluationSettings) -> LLM:
    """HttpLLM for the configured provider, or UnconfiguredLLM if none is set."""
    if not settings.llm_provider_url:
        logger.warning("LLM_PROVIDER_URL is not set; judge calls will fail")
        return UnconfiguredLLM()
    return HttpLLM(
        provider_url=settings.llm_provider_url,
        api_key=settings.llm_api_key,
        provider_format=settings.llm_provider_format,
        model=settings.llm_model,
        timeout=settings.llm_timeout,
    )
