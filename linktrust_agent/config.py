"""
Environment configuration for the LinkTrust agent.

- Loads .env from the repository root (never overriding real environment).
- Every provider credential is optional; absence degrades that provider.
- Thresholds that drive fast paths and typosquatting are configurable so
  they can be calibrated without code changes.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

from .scoring import FastPathThresholds
from .typosquat import TyposquatThresholds


_HERE = Path(__file__).resolve()
_REPO_ROOT = _HERE.parents[1]

DEFAULT_SQLITE_PATH = "linktrust.db"
DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "llama2"
DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 LinkTrustAgent/1.0"
)


def load_linktrust_env() -> None:
    """Load .env from the repo root. Safe to call multiple times."""
    load_dotenv(_REPO_ROOT / ".env", override=False)


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _database_url() -> str:
    url = _env_str("LINKTRUST_DB_URL") or _env_str("DATABASE_URL")
    if url:
        return url
    path = _env_str("LINKTRUST_DB_PATH") or DEFAULT_SQLITE_PATH
    return f"sqlite:///{path}"


@dataclass(frozen=True)
class ProviderKeys:
    google_safe_browsing: str = ""
    virustotal: str = ""
    urlvoid: str = ""
    phishtank: str = ""


@dataclass(frozen=True)
class Settings:
    database_url: str = f"sqlite:///{DEFAULT_SQLITE_PATH}"
    cache_ttl_hours: float = 24.0
    ai_cache_ttl_hours: float = 12.0

    ai_provider: str = "ollama"
    ollama_url: str = DEFAULT_OLLAMA_URL
    ollama_model: str = DEFAULT_OLLAMA_MODEL
    gemini_api_key: str = ""
    gemini_model: str = DEFAULT_GEMINI_MODEL
    model_check_interval_s: float = 300.0
    allow_ai_without_auth: bool = False

    provider_keys: ProviderKeys = field(default_factory=ProviderKeys)
    provider_timeout_s: float = 10.0
    user_agent: str = BROWSER_USER_AGENT

    max_links: int = 100
    max_polls: int = 60
    job_retention_s: float = 600.0
    cors_origins: tuple[str, ...] = ("http://localhost:3000",)

    fast_path: FastPathThresholds = field(default_factory=FastPathThresholds)
    typosquat: TyposquatThresholds = field(default_factory=TyposquatThresholds)

    @property
    def cache_ttl_s(self) -> float:
        return self.cache_ttl_hours * 3600

    @property
    def ai_cache_ttl_s(self) -> float:
        return self.ai_cache_ttl_hours * 3600

    @classmethod
    def from_env(cls) -> "Settings":
        load_linktrust_env()

        origins_raw = _env_str("LINKTRUST_CORS_ORIGINS")
        origins = tuple(o.strip() for o in origins_raw.split(",") if o.strip()) or ("http://localhost:3000",)

        fast_defaults = FastPathThresholds()
        typo_defaults = TyposquatThresholds()

        return cls(
            database_url=_database_url(),
            cache_ttl_hours=_env_float("LINKTRUST_CACHE_TTL_HOURS", 24.0),
            ai_cache_ttl_hours=_env_float("LINKTRUST_AI_CACHE_TTL_HOURS", 12.0),
            ai_provider=_env_str("LINKTRUST_AI_PROVIDER", "ollama").lower(),
            ollama_url=_env_str("OLLAMA_URL", DEFAULT_OLLAMA_URL).rstrip("/"),
            ollama_model=_env_str("OLLAMA_MODEL", DEFAULT_OLLAMA_MODEL),
            gemini_api_key=_env_str("GEMINI_API_KEY"),
            gemini_model=_env_str("GEMINI_MODEL", DEFAULT_GEMINI_MODEL),
            model_check_interval_s=_env_float("LINKTRUST_MODEL_CHECK_INTERVAL_S", 300.0),
            allow_ai_without_auth=_env_bool("LINKTRUST_ALLOW_AI_WITHOUT_AUTH"),
            provider_keys=ProviderKeys(
                google_safe_browsing=_env_str("GOOGLE_SAFE_BROWSING_API_KEY"),
                virustotal=_env_str("VIRUSTOTAL_API_KEY"),
                urlvoid=_env_str("URLVOID_API_KEY"),
                phishtank=_env_str("PHISHTANK_API_KEY"),
            ),
            provider_timeout_s=_env_float("LINKTRUST_PROVIDER_TIMEOUT_S", 10.0),
            user_agent=_env_str("LINKTRUST_USER_AGENT", BROWSER_USER_AGENT),
            max_links=max(1, _env_int("LINKTRUST_MAX_LINKS", 100)),
            max_polls=max(1, _env_int("LINKTRUST_MAX_POLLS", 60)),
            job_retention_s=_env_float("LINKTRUST_JOB_RETENTION_S", 600.0),
            cors_origins=origins,
            fast_path=FastPathThresholds(
                dangerous_max=_env_float("LINKTRUST_FAST_DANGEROUS_MAX", fast_defaults.dangerous_max),
                safe_min=_env_float("LINKTRUST_FAST_SAFE_MIN", fast_defaults.safe_min),
                safe_external_min=_env_float("LINKTRUST_FAST_SAFE_EXTERNAL_MIN", fast_defaults.safe_external_min),
                safe_external_confidence=_env_float(
                    "LINKTRUST_FAST_SAFE_EXTERNAL_CONFIDENCE", fast_defaults.safe_external_confidence
                ),
            ),
            typosquat=TyposquatThresholds(
                pattern_min=_env_float("LINKTRUST_TYPO_PATTERN_MIN", typo_defaults.pattern_min),
                strong_min=_env_float("LINKTRUST_TYPO_STRONG_MIN", typo_defaults.strong_min),
                weak_min=_env_float("LINKTRUST_TYPO_WEAK_MIN", typo_defaults.weak_min),
            ),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
