from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Mapping, Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_DB_PATH = PROJECT_ROOT / "data" / "pipeline.sqlite"
DEFAULT_SCRAPING_API_URL = "https://app.scrapingbee.com/api/v1/"
DEFAULT_SEARCH_API_URL = "https://www.googleapis.com/customsearch/v1"
DEFAULT_PERPLEXITY_API_URL = "https://api.perplexity.ai/chat/completions"

RUN_REQUIRED_ENVS = ("OPENAI_API_KEY",)


class Settings(BaseModel):
    openai_api_key: str = ""
    openai_base_url: str | None = None
    query_model: str = "gpt-4o"
    scoring_model: str = "gpt-4o-mini"
    perplexity_api_key: str = ""
    perplexity_api_url: str = DEFAULT_PERPLEXITY_API_URL
    perplexity_model: str = "sonar"
    scraping_api_key: str = ""
    scraping_api_url: str = DEFAULT_SCRAPING_API_URL
    fetch_backend: Literal["auto", "api", "local"] = "auto"
    search_api_key: str = ""
    search_engine_id: str = ""
    search_api_url: str = DEFAULT_SEARCH_API_URL
    db_path: Path = Field(default=DEFAULT_DB_PATH)
    batch_size: int = Field(default=3, ge=1)
    max_cycles: int = Field(default=5, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    stale_after_seconds: float = Field(default=300.0, gt=0.0)
    poll_interval_seconds: float = Field(default=3600.0, gt=0.0)
    inter_job_delay_seconds: float = Field(default=2.0, ge=0.0)
    inter_citation_delay_seconds: float = Field(default=1.0, ge=0.0)
    citation_budget_seconds: float = Field(default=300.0, gt=0.0)
    authority_spacing_seconds: float = Field(default=5.0, ge=0.0)
    eeat_proxy_threshold: int = Field(default=8, ge=1, le=11)
    request_timeout_seconds: float = 20.0
    user_agent: str = "Mozilla/5.0 (compatible; citation-pipeline/0.1)"
    log_level: str = "INFO"
    log_file: Path | None = None

    @field_validator("scraping_api_url", "search_api_url", "perplexity_api_url")
    @classmethod
    def _validate_api_url(cls, value: str) -> str:
        if not value.startswith(("https://", "http://")):
            raise ValueError("API URLs must use http:// or https://")
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        upper = value.upper()
        if upper not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown LOG_LEVEL: {value}")
        return upper

    @property
    def resolved_fetch_backend(self) -> str:
        if self.fetch_backend != "auto":
            return self.fetch_backend
        return "api" if self.scraping_api_key else "local"

    @property
    def search_enabled(self) -> bool:
        return bool(self.search_api_key and self.search_engine_id)


def _env_value(environ: Mapping[str, str], key: str) -> str:
    return environ.get(key, "").strip()


def missing_envs(required: Sequence[str], environ: Mapping[str, str] | None = None) -> list[str]:
    source = os.environ if environ is None else environ
    return [key for key in required if not _env_value(source, key)]


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    source = os.environ if environ is None else environ
    log_file = _env_value(source, "LOG_FILE")
    payload = {
        "openai_api_key": _env_value(source, "OPENAI_API_KEY"),
        "openai_base_url": _env_value(source, "OPENAI_BASE_URL") or None,
        "query_model": _env_value(source, "QUERY_MODEL") or "gpt-4o",
        "scoring_model": _env_value(source, "SCORING_MODEL") or "gpt-4o-mini",
        "perplexity_api_key": _env_value(source, "PERPLEXITY_API_KEY"),
        "perplexity_api_url": _env_value(source, "PERPLEXITY_API_URL") or DEFAULT_PERPLEXITY_API_URL,
        "perplexity_model": _env_value(source, "PERPLEXITY_MODEL") or "sonar",
        "scraping_api_key": _env_value(source, "SCRAPINGBEE_API_KEY"),
        "scraping_api_url": _env_value(source, "SCRAPING_API_URL") or DEFAULT_SCRAPING_API_URL,
        "fetch_backend": _env_value(source, "FETCH_BACKEND") or "auto",
        "search_api_key": _env_value(source, "GOOGLE_SEARCH_API_KEY"),
        "search_engine_id": _env_value(source, "GOOGLE_SEARCH_ENGINE_ID"),
        "db_path": Path(_env_value(source, "PIPELINE_DB_PATH") or DEFAULT_DB_PATH),
        "batch_size": int(_env_value(source, "BATCH_SIZE") or "3"),
        "max_cycles": int(_env_value(source, "MAX_CYCLES") or "5"),
        "max_attempts": int(_env_value(source, "MAX_ATTEMPTS") or "3"),
        "stale_after_seconds": float(_env_value(source, "STALE_AFTER_SECONDS") or "300"),
        "poll_interval_seconds": float(_env_value(source, "POLL_INTERVAL_SECONDS") or "3600"),
        "inter_job_delay_seconds": float(_env_value(source, "INTER_JOB_DELAY_SECONDS") or "2"),
        "inter_citation_delay_seconds": float(
            _env_value(source, "INTER_CITATION_DELAY_SECONDS") or "1"
        ),
        "citation_budget_seconds": float(_env_value(source, "CITATION_BUDGET_SECONDS") or "300"),
        "authority_spacing_seconds": float(_env_value(source, "AUTHORITY_SPACING_SECONDS") or "5"),
        "eeat_proxy_threshold": int(_env_value(source, "EEAT_PROXY_THRESHOLD") or "8"),
        "request_timeout_seconds": float(_env_value(source, "REQUEST_TIMEOUT_SECONDS") or "20"),
        "user_agent": _env_value(source, "USER_AGENT")
        or "Mozilla/5.0 (compatible; citation-pipeline/0.1)",
        "log_level": _env_value(source, "LOG_LEVEL") or "INFO",
        "log_file": Path(log_file) if log_file else None,
    }
    try:
        return Settings(**payload)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc


def assert_required_envs(required: Sequence[str], environ: Mapping[str, str] | None = None) -> None:
    missing = missing_envs(required, environ)
    if missing:
        keys = ", ".join(missing)
        raise ValueError(f"Missing required environment variables: {keys}")


def mask_secret(value: str, visible_prefix: int = 3, visible_suffix: int = 2) -> str:
    if not value:
        return ""
    if len(value) <= visible_prefix + visible_suffix:
        return "*" * len(value)
    hidden = "*" * (len(value) - visible_prefix - visible_suffix)
    return f"{value[:visible_prefix]}{hidden}{value[-visible_suffix:]}"
