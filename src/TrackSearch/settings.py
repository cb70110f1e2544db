# === NAVMAP v1 ===
# {
#   "module": "TrackSearch.settings",
#   "purpose": "Pydantic v2 settings for ingestion, adapters and the hybrid index.",
#   "sections": [
#     {"id": "loglevel", "name": "LogLevel", "anchor": "class-loglevel", "kind": "class"},
#     {"id": "logformat", "name": "LogFormat", "anchor": "class-logformat", "kind": "class"},
#     {"id": "appcfg", "name": "AppCfg", "anchor": "class-appcfg", "kind": "class"},
#     {"id": "indexcfg", "name": "IndexCfg", "anchor": "class-indexcfg", "kind": "class"},
#     {"id": "adapterscfg", "name": "AdaptersCfg", "anchor": "class-adapterscfg", "kind": "class"},
#     {"id": "ingestioncfg", "name": "IngestionCfg", "anchor": "class-ingestioncfg", "kind": "class"},
#     {"id": "settings", "name": "Settings", "anchor": "class-settings", "kind": "class"},
#     {"id": "load-settings", "name": "load_settings", "anchor": "function-load-settings", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""
Typed settings for TrackSearch.

Each section is a ``BaseSettings`` model with its own environment prefix so a
deployment can override any value without a config file:

- ``TRACKSEARCH_`` for :class:`AppCfg` (logging)
- ``TRACKSEARCH_INDEX_`` for :class:`IndexCfg` (vector store)
- ``TRACKSEARCH_ADAPTERS_`` for :class:`AdaptersCfg` (external services)
- ``TRACKSEARCH_INGESTION_`` for :class:`IngestionCfg` (orchestrator)

:class:`Settings` aggregates the sections and :func:`load_settings` applies
per-section keyword overrides on top of the environment.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ============================================================================
# Enums for validated choices
# ============================================================================


class LogLevel(str, Enum):
    """Supported logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class LogFormat(str, Enum):
    """Supported log output formats."""

    CONSOLE = "console"
    JSON = "json"


# ============================================================================
# Global configuration (AppCfg)
# ============================================================================


class AppCfg(BaseSettings):
    """Global application-level configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TRACKSEARCH_",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: LogLevel = Field(LogLevel.INFO, description="Root logging level")
    log_format: LogFormat = Field(
        LogFormat.CONSOLE, description="Pretty console or structured JSON"
    )
    events_path: Path | None = Field(
        None, description="Append ingestion events to this JSONL file (default: log only)"
    )

    @field_validator("events_path", mode="before")
    @classmethod
    def expand_paths(cls, v: Any) -> Any:
        """Expand user home and make absolute."""
        if v is None or v == "":
            return None
        return Path(v).expanduser().resolve()


# ============================================================================
# Vector store configuration (IndexCfg)
# ============================================================================


class IndexCfg(BaseSettings):
    """Qdrant connection and collection layout."""

    model_config = SettingsConfigDict(
        env_prefix="TRACKSEARCH_INDEX_",
        case_sensitive=False,
        extra="ignore",
    )

    url: str | None = Field(
        "http://localhost:6333", description="Qdrant URL; None together with location=':memory:' for tests"
    )
    location: str | None = Field(None, description="Qdrant local location (e.g. ':memory:')")
    api_key: str | None = Field(None, description="Qdrant API key")
    timeout_s: int = Field(30, ge=1, description="Qdrant request timeout")
    collection: str = Field("tracks", description="Collection name")
    dense_vector_name: str = Field("interpretation_embedding")
    sparse_vector_name: str = Field("text_sparse")
    dense_dim: int = Field(4096, ge=1, description="Dense embedding dimension")
    dense_datatype: str = Field("float16", description="Dense vector storage datatype")
    hnsw_m: int = Field(16, ge=4)
    hnsw_ef_construct: int = Field(200, ge=4)
    rrf_k: float = Field(60.0, gt=0, description="Reciprocal rank fusion constant")
    prefetch_limit: int = Field(100, ge=1, description="Candidates fetched per list before fusion")

    @field_validator("dense_datatype")
    @classmethod
    def validate_datatype(cls, v: str) -> str:
        """Restrict the datatype to values Qdrant supports for dense vectors."""
        normalized = v.lower()
        if normalized not in {"float32", "float16", "uint8"}:
            raise ValueError(f"dense_datatype must be float32, float16 or uint8, got {v!r}")
        return normalized


# ============================================================================
# External service configuration (AdaptersCfg)
# ============================================================================


class AdaptersCfg(BaseSettings):
    """Endpoints, credentials and client-side rates for external services."""

    model_config = SettingsConfigDict(
        env_prefix="TRACKSEARCH_ADAPTERS_",
        case_sensitive=False,
        extra="ignore",
    )

    timeout_s: float = Field(30.0, gt=0, description="Default HTTP timeout")
    user_agent: str = Field("TrackSearch/0.1", description="User-Agent header")

    audio_features_url: str = Field("https://api.reccobeats.com/v1")
    audio_features_timeout_s: float = Field(10.0, gt=0)

    lyrics_url: str = Field("https://api.musixmatch.com/ws/1.1")
    lyrics_api_key: str | None = Field(None, description="Musixmatch API key")
    lyrics_timeout_s: float = Field(10.0, gt=0)

    llm_url: str = Field("https://api.anthropic.com/v1")
    llm_api_key: str | None = Field(None, description="Anthropic API key")
    llm_api_version: str = Field("2023-06-01")
    llm_model: str = Field("claude-sonnet-4-5-20250929", description="Interpretation model")
    llm_description_model: str = Field(
        "claude-haiku-4-5-20251001", description="Short description and query expansion model"
    )
    llm_timeout_s: float = Field(60.0, gt=0)
    interpretation_max_tokens: int = Field(1024, ge=16)
    description_max_tokens: int = Field(150, ge=16)
    expansion_max_tokens: int = Field(200, ge=16)

    embedding_url: str = Field("http://localhost:8080")
    embedding_timeout_s: float = Field(30.0, gt=0)
    embedding_instruction: str = Field(
        "Instruct: Given a music search query, retrieve relevant song interpretations\nQuery:",
        description="Instruction prefixed to query text before embedding",
    )

    rates: dict[str, str] = Field(
        default_factory=lambda: {
            "reccobeats": "5/second",
            "musixmatch": "2/second",
            "anthropic": "50/minute",
            "tei": "20/second",
        },
        description="Client-side rate per service, e.g. '10/second'",
    )
    max_rate_wait_s: float = Field(
        5.0, ge=0, description="Longest a request waits for a rate slot before failing"
    )

    @field_validator("rates")
    @classmethod
    def validate_rates(cls, v: dict[str, str]) -> dict[str, str]:
        """Ensure every rate looks like ``N/unit``."""
        pattern = re.compile(r"^\s*\d+\s*/\s*(second|minute|hour|day)\s*$", re.IGNORECASE)
        for service, rate in v.items():
            if not pattern.match(rate):
                raise ValueError(f"Invalid rate for {service!r}: {rate!r} (expected 'N/second')")
        return v


# ============================================================================
# Orchestrator configuration (IngestionCfg)
# ============================================================================


class IngestionCfg(BaseSettings):
    """Ledger location, retry policy, idempotency and concurrency limits."""

    model_config = SettingsConfigDict(
        env_prefix="TRACKSEARCH_INGESTION_",
        case_sensitive=False,
        extra="ignore",
    )

    ledger_path: Path = Field(
        Path("state/ingestion.sqlite"), description="SQLite step ledger location"
    )
    max_attempts: int = Field(5, ge=1, description="Attempts per run before failing")
    backoff_schedule_s: tuple[float, ...] = Field(
        (300.0, 900.0, 3600.0, 14400.0),
        description="Wait before attempt 2, 3, ...; the last value repeats",
    )
    max_retry_after_s: float = Field(
        14400.0, gt=0, description="Cap applied to server-provided Retry-After"
    )
    idempotency_window_s: float = Field(86400.0, ge=0)
    max_concurrent_runs: int = Field(10, ge=1)
    throttle_limit: int = Field(10, ge=1, description="Run starts per throttle period")
    throttle_period_s: float = Field(60.0, gt=0)
    throttle_max_wait_s: float | None = Field(
        None, ge=0, description="Longest a run start waits for a throttle slot (None: no limit)"
    )
    skip_already_indexed: bool = Field(False)

    @field_validator("ledger_path", mode="before")
    @classmethod
    def expand_paths(cls, v: Any) -> Any:
        """Expand user home and make absolute."""
        if isinstance(v, str):
            v = Path(v)
        if isinstance(v, Path) and str(v) != ":memory:":
            return v.expanduser().resolve()
        return v

    @field_validator("backoff_schedule_s")
    @classmethod
    def validate_backoff(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        """Require a non-empty, non-negative, monotonically increasing schedule."""
        if not v:
            raise ValueError("backoff_schedule_s must contain at least one delay")
        if any(delay < 0 for delay in v):
            raise ValueError("backoff delays must be non-negative")
        if any(later < earlier for earlier, later in zip(v, v[1:])):
            raise ValueError(f"backoff_schedule_s must be increasing, got {v}")
        return v


# ============================================================================
# Root aggregation
# ============================================================================


class Settings(BaseModel):
    """Aggregated configuration for every TrackSearch component."""

    app: AppCfg = Field(default_factory=AppCfg)
    index: IndexCfg = Field(default_factory=IndexCfg)
    adapters: AdaptersCfg = Field(default_factory=AdaptersCfg)
    ingestion: IngestionCfg = Field(default_factory=IngestionCfg)

    def model_dump_redacted(self, **kwargs: Any) -> dict[str, Any]:
        """Dump config with sensitive fields redacted."""
        result = self.model_dump(**kwargs)
        pattern = re.compile(r"(?i)(token|secret|password|api[_-]?key)")

        def redact_dict(d: dict[str, Any]) -> dict[str, Any]:
            for key, val in d.items():
                if pattern.search(key) and val is not None:
                    d[key] = "***REDACTED***"
                elif isinstance(val, dict):
                    redact_dict(val)
            return d

        return redact_dict(result)


def load_settings(**overrides: dict[str, Any]) -> Settings:
    """Build :class:`Settings` from the environment plus section overrides.

    Example:
        >>> cfg = load_settings(index={"location": ":memory:", "dense_dim": 8})
        >>> cfg.index.dense_dim
        8
    """

    sections = {
        "app": AppCfg,
        "index": IndexCfg,
        "adapters": AdaptersCfg,
        "ingestion": IngestionCfg,
    }
    unknown = set(overrides) - set(sections)
    if unknown:
        raise ValueError(f"Unknown settings sections: {sorted(unknown)}")
    built = {name: cls(**overrides.get(name, {})) for name, cls in sections.items()}
    return Settings(**built)


__all__ = [
    "Settings",
    "AppCfg",
    "IndexCfg",
    "AdaptersCfg",
    "IngestionCfg",
    "LogLevel",
    "LogFormat",
    "load_settings",
]
