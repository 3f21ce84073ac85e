"""Workspace configuration.

Values come from environment variables with defaults that work for a local
checkout; CLI flags override them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return value.strip() if value and value.strip() else default


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.strip() if value and value.strip() else None


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class CatalogConfig:
    json_location: str = field(
        default_factory=lambda: _env_str("TM_CATALOG_JSON", "datasets/seed.json"),
    )
    csv_location: Optional[str] = field(
        default_factory=lambda: _env_optional("TM_CATALOG_CSV") or "datasets/codes.csv",
    )
    fetch_timeout: float = field(
        default_factory=lambda: _env_float("TM_CATALOG_FETCH_TIMEOUT", 15.0),
    )
    fetch_attempts: int = field(
        default_factory=lambda: _env_int("TM_CATALOG_FETCH_ATTEMPTS", 3),
    )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LlmConfig:
    model: str = field(default_factory=lambda: _env_str("TM_LLM_MODEL", "gpt-4o-mini"))
    temperature: float = field(default_factory=lambda: _env_float("TM_LLM_TEMPERATURE", 0.0))
    timeout: int = field(default_factory=lambda: _env_int("TM_LLM_TIMEOUT", 60))
    max_per_system: int = field(default_factory=lambda: _env_int("TM_SUGGEST_MAX_PER_SYSTEM", 6))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class WorkspaceConfig:
    data_dir: str = field(default_factory=lambda: _env_str("TM_DATA_DIR", ".terminology_workspace"))
    log_level: str = field(default_factory=lambda: _env_str("TM_LOG_LEVEL", "WARNING"))
    log_json: bool = field(default_factory=lambda: _env_bool("TM_LOG_JSON", default=False))
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    llm: LlmConfig = field(default_factory=LlmConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def get_config() -> WorkspaceConfig:
    return WorkspaceConfig()
