# config.py

import os
from typing import List, Optional

_BACKEND_DIR = os.path.dirname(os.path.abspath(__file__))

DEFAULT_MODELS = (
    "gpt-4o-mini",
    "gpt-4.1-mini",
    "gpt-4o",
    "gpt-4.1",
    "gpt-5.1",
)


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_flag(name: str) -> bool:
    return _env(name).lower() in ("1", "true", "yes", "on")


def candidate_models() -> List[str]:
    """Ordered fallback chain. Cheaper / more available models go first."""
    models = [name.strip() for name in _env("NAT_MODELS").split(",") if name.strip()]
    return models or list(DEFAULT_MODELS)


def openai_api_key() -> str:
    return _env("OPENAI_API_KEY")


def openai_base_url() -> Optional[str]:
    return _env("OPENAI_BASE_URL") or None


def llm_timeout_secs() -> float:
    return _env_float("NAT_LLM_TIMEOUT_SECS", 30.0)


def fallback_backoff_secs() -> float:
    return _env_float("NAT_FALLBACK_BACKOFF_SECS", 1.0)


def temperature() -> float:
    return _env_float("NAT_TEMPERATURE", 0.7)


def max_tokens() -> int:
    return int(_env_float("NAT_MAX_TOKENS", 1024))


def is_offline() -> bool:
    return _env_flag("NAT_OFFLINE")


def storage_dir() -> str:
    return os.path.abspath(_env("NAT_STORAGE_DIR", os.path.join(_BACKEND_DIR, "..", "storage")))


def upload_dir() -> str:
    return os.path.abspath(_env("NAT_UPLOAD_DIR", os.path.join(storage_dir(), "uploads")))


def error_log_path() -> str:
    return os.path.abspath(_env("NAT_ERROR_LOG", os.path.join(storage_dir(), "error.log")))


def database_url() -> Optional[str]:
    return _env("DATABASE_URL") or _env("POSTGRES_URL") or None


def sqlite_path() -> str:
    return os.path.join(storage_dir(), "nat.db")


def local_user() -> str:
    # Single local principal until real authentication exists.
    return _env("NAT_LOCAL_USER", "local-user-principal")


def port() -> int:
    return int(_env_float("PORT", 3002))
