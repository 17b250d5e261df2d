"""Runtime configuration and environment loading."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_SETTINGS: "Settings | None" = None

EMBEDDING_BACKENDS = {"sentence-transformers", "openai"}


def reset_settings() -> None:
    """Reset cached settings. Call after changing environment variables."""
    global _SETTINGS
    _SETTINGS = None


@dataclass(frozen=True)
class Settings:
    llm_api_key: str
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"
    llm_max_tokens: int = 1024
    llm_temperature: float = 0.2
    llm_timeout: float = 60.0
    openai_api_key: str | None = None
    database_url: str | None = None
    storage_dir: str = "var/medassist-files"
    embedding_backend: str = "sentence-transformers"
    embedding_model: str = "thenlper/gte-small"
    embedding_dim: int = 384
    match_threshold: float = 0.8
    match_limit: int = 5
    max_section_length: int = 2500
    embed_concurrency: int = 4
    log_level: str = "INFO"


def load_env_file(path: str, *, override: bool = False) -> None:
    """Load key=value pairs from a .env-style file into os.environ.

    Keeps existing env values unless override=True.
    """
    env_path = Path(path)
    if not env_path.exists():
        return

    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip("'").strip('"')
        if not override and key in os.environ:
            continue
        os.environ[key] = value


def _optional_env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name, "").strip()
    return value or default


def _int_env(name: str, default: int) -> int:
    raw = _optional_env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer, got '{raw}'.") from exc


def _float_env(name: str, default: float) -> float:
    raw = _optional_env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number, got '{raw}'.") from exc


def get_settings() -> Settings:
    """Load settings from the env file and environment variables."""
    global _SETTINGS
    if _SETTINGS is not None:
        return _SETTINGS

    env_file = os.getenv("MEDASSIST_ENV_FILE", ".env")
    load_env_file(env_file)

    openai_api_key = _optional_env("OPENAI_API_KEY")
    llm_api_key = _optional_env("LLM_API_KEY", openai_api_key)
    if not llm_api_key:
        raise ValueError("Missing required environment variable: LLM_API_KEY (or OPENAI_API_KEY)")

    embedding_backend = _optional_env("EMBEDDING_BACKEND", "sentence-transformers").lower()
    if embedding_backend not in EMBEDDING_BACKENDS:
        valid = ", ".join(sorted(EMBEDDING_BACKENDS))
        raise ValueError(f"Invalid EMBEDDING_BACKEND '{embedding_backend}'. Must be one of: {valid}")
    if embedding_backend == "openai" and not openai_api_key:
        raise ValueError("OPENAI_API_KEY is required when EMBEDDING_BACKEND is 'openai'.")

    if embedding_backend == "openai":
        default_model, default_dim = "text-embedding-3-small", 1536
    else:
        default_model, default_dim = "thenlper/gte-small", 384

    threshold = _float_env("MATCH_THRESHOLD", 0.8)
    if not -1.0 <= threshold <= 1.0:
        raise ValueError(f"MATCH_THRESHOLD must be within [-1, 1], got {threshold}.")

    _SETTINGS = Settings(
        llm_api_key=llm_api_key,
        llm_base_url=_optional_env("LLM_BASE_URL", "https://api.openai.com/v1"),
        llm_model=_optional_env("LLM_MODEL", "gpt-4o-mini"),
        llm_max_tokens=_int_env("LLM_MAX_TOKENS", 1024),
        llm_temperature=_float_env("LLM_TEMPERATURE", 0.2),
        llm_timeout=_float_env("LLM_TIMEOUT", 60.0),
        openai_api_key=openai_api_key,
        database_url=_optional_env("DATABASE_URL"),
        storage_dir=_optional_env("STORAGE_DIR", "var/medassist-files"),
        embedding_backend=embedding_backend,
        embedding_model=_optional_env("EMBEDDING_MODEL", default_model),
        embedding_dim=_int_env("EMBEDDING_DIM", default_dim),
        match_threshold=threshold,
        match_limit=max(1, _int_env("MATCH_LIMIT", 5)),
        max_section_length=max(1, _int_env("MAX_SECTION_LENGTH", 2500)),
        embed_concurrency=max(1, _int_env("EMBED_CONCURRENCY", 4)),
        log_level=_optional_env("LOG_LEVEL", "INFO").upper(),
    )
    return _SETTINGS
