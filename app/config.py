"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from app.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)


@dataclass(frozen=True)
class Settings:
  """Typed settings for the subscription build engine."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  auto_create_tables: bool
  llm_base_url: str | None
  llm_api_key: str | None
  llm_model: str
  llm_audit_enabled: bool
  tavily_api_key: str | None
  search_max_results: int
  rsshub_base_url: str
  max_concurrent_resources: int
  max_selected_resources: int
  discover_wait_seconds: float
  discover_poll_seconds: float
  discovery_max_iterations: int
  generation_max_iterations: int
  review_max_iterations: int
  validate_max_attempts: int
  sandbox_enabled: bool
  sandbox_python: str
  sandbox_timeout_seconds: float
  sandbox_max_fetches: int
  sandbox_max_response_bytes: int
  fetch_timeout_seconds: float
  materialize_url: str | None


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    raise ValueError("SUBSCRIBE_ALLOWED_ORIGINS must be set to one or more origins.")

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("SUBSCRIBE_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("SUBSCRIBE_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None, *, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("SUBSCRIBE_ENV", "development").lower()

  # Toggle verbose error output and diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("SUBSCRIBE_DEBUG"))

  log_max_bytes = _positive_int("SUBSCRIBE_LOG_MAX_BYTES", "5242880")  # 5MB default

  log_backup_count = int(os.getenv("SUBSCRIBE_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("SUBSCRIBE_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Allow opt-in logging of 4xx HTTPExceptions for diagnostics.
  log_http_4xx = _parse_bool(os.getenv("SUBSCRIBE_LOG_HTTP_4XX"))

  # Concurrency and selection limits for the generate phase.
  max_concurrent_resources = _positive_int("SUBSCRIBE_MAX_CONCURRENT_RESOURCES", "5")
  max_selected_resources = _positive_int("SUBSCRIBE_MAX_SELECTED_RESOURCES", "5")

  # Bounded wait used when a second runner finds discovery already in flight.
  discover_wait_seconds = _positive_float("SUBSCRIBE_DISCOVER_WAIT_SECONDS", "300")
  discover_poll_seconds = _positive_float("SUBSCRIBE_DISCOVER_POLL_SECONDS", "5")
  if discover_poll_seconds > discover_wait_seconds:
    raise ValueError("SUBSCRIBE_DISCOVER_POLL_SECONDS must not exceed SUBSCRIBE_DISCOVER_WAIT_SECONDS.")

  # Agent loop iteration caps.
  discovery_max_iterations = _positive_int("SUBSCRIBE_DISCOVERY_MAX_ITERATIONS", "32")
  generation_max_iterations = _positive_int("SUBSCRIBE_GENERATION_MAX_ITERATIONS", "32")
  review_max_iterations = _positive_int("SUBSCRIBE_REVIEW_MAX_ITERATIONS", "6")
  validate_max_attempts = _positive_int("SUBSCRIBE_VALIDATE_MAX_ATTEMPTS", "3")

  # Sandbox ceilings for collection scripts.
  sandbox_timeout_seconds = _positive_float("SUBSCRIBE_SANDBOX_TIMEOUT_SECONDS", "30")
  sandbox_max_fetches = _positive_int("SUBSCRIBE_SANDBOX_MAX_FETCHES", "5")
  sandbox_max_response_bytes = _positive_int("SUBSCRIBE_SANDBOX_MAX_RESPONSE_BYTES", str(5 * 1024 * 1024))

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("SUBSCRIBE_ALLOWED_ORIGINS", "http://localhost:3000")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=log_http_4xx,
    pg_dsn=os.getenv("SUBSCRIBE_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("SUBSCRIBE_PG_CONNECT_TIMEOUT", "5"),
    auto_create_tables=_parse_bool(os.getenv("SUBSCRIBE_AUTO_CREATE_TABLES")),
    llm_base_url=_optional_str(os.getenv("SUBSCRIBE_LLM_BASE_URL")),
    llm_api_key=_optional_str(os.getenv("SUBSCRIBE_LLM_API_KEY")) or _optional_str(os.getenv("OPENAI_API_KEY")),
    llm_model=(os.getenv("SUBSCRIBE_LLM_MODEL") or "gpt-4o-mini").strip(),
    llm_audit_enabled=_parse_bool(os.getenv("SUBSCRIBE_LLM_AUDIT_ENABLED"), default=True),
    tavily_api_key=_optional_str(os.getenv("TAVILY_API_KEY")),
    search_max_results=_positive_int("SUBSCRIBE_SEARCH_MAX_RESULTS", "5"),
    rsshub_base_url=(os.getenv("SUBSCRIBE_RSSHUB_BASE_URL") or "https://rsshub.app").strip().rstrip("/"),
    max_concurrent_resources=max_concurrent_resources,
    max_selected_resources=max_selected_resources,
    discover_wait_seconds=discover_wait_seconds,
    discover_poll_seconds=discover_poll_seconds,
    discovery_max_iterations=discovery_max_iterations,
    generation_max_iterations=generation_max_iterations,
    review_max_iterations=review_max_iterations,
    validate_max_attempts=validate_max_attempts,
    sandbox_enabled=_parse_bool(os.getenv("SUBSCRIBE_SANDBOX_ENABLED"), default=True),
    sandbox_python=(os.getenv("SUBSCRIBE_SANDBOX_PYTHON") or "python3").strip(),
    sandbox_timeout_seconds=sandbox_timeout_seconds,
    sandbox_max_fetches=sandbox_max_fetches,
    sandbox_max_response_bytes=sandbox_max_response_bytes,
    fetch_timeout_seconds=_positive_float("SUBSCRIBE_FETCH_TIMEOUT_SECONDS", "15"),
    materialize_url=_optional_str(os.getenv("SUBSCRIBE_MATERIALIZE_URL")),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  # Keep database configuration isolated so offline scripts don't require unrelated env vars.
  debug = _parse_bool(os.getenv("SUBSCRIBE_DEBUG"))
  pg_connect_timeout = int(os.getenv("SUBSCRIBE_PG_CONNECT_TIMEOUT", "5"))
  if pg_connect_timeout <= 0:
    raise ValueError("SUBSCRIBE_PG_CONNECT_TIMEOUT must be a positive integer.")

  pg_dsn = os.getenv("SUBSCRIBE_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
