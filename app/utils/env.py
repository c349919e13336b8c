"""Local .env loading for development configuration."""

from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv


def default_env_path() -> Path:
  """Return the default .env path at the repo root."""

  return Path(__file__).resolve().parents[2] / ".env"


def load_env_file(path: Path, *, override: bool = False) -> bool:
  """Load key=value pairs from a .env file into the process environment."""

  if not path.is_file():
    return False

  return load_dotenv(path, override=override, encoding="utf-8")
