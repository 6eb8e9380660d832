# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

from .errors import DefinitionError

SECRET_ENV_PREFIX = "FLOWCI_SECRET_"


def _int(env: Mapping[str, str], name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise DefinitionError(f"{name} must be an integer, got {raw!r}") from None
    if minimum is not None and value < minimum:
        raise DefinitionError(f"{name} must be at least {minimum}, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise DefinitionError(f"{name} must be a number, got {raw!r}") from None


def default_concurrency() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class Settings:
    """Engine settings. CLI options override these via with_overrides()."""
    home: Path
    cache_dir: Path
    artifact_dir: Path
    journal: Optional[Path]
    concurrency: int
    grace_period: float = 10.0
    poll_interval: float = 0.2
    artifact_retention_days: int = 90

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> Settings:
        env = os.environ if env is None else env
        home = Path(env.get("FLOWCI_HOME", ".flowci"))
        journal = env.get("FLOWCI_JOURNAL")
        return cls(
            home=home,
            cache_dir=Path(env.get("FLOWCI_CACHE_DIR") or home / "cache"),
            artifact_dir=Path(env.get("FLOWCI_ARTIFACT_DIR") or home / "artifacts"),
            journal=Path(journal) if journal else home / "journal.jsonl",
            concurrency=_int(env, "FLOWCI_CONCURRENCY", default_concurrency(), minimum=1),
            grace_period=_float(env, "FLOWCI_GRACE_PERIOD", 10.0),
            poll_interval=_float(env, "FLOWCI_POLL_INTERVAL", 0.2),
            artifact_retention_days=_int(env, "FLOWCI_ARTIFACT_RETENTION_DAYS", 90, minimum=1),
        )

    def with_overrides(self, **values) -> Settings:
        """Replace the fields given explicitly (None means keep)."""
        return replace(self, **{k: v for k, v in values.items() if v is not None})


def secrets_from_env(env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """FLOWCI_SECRET_TOKEN=... -> {"TOKEN": ...}"""
    env = os.environ if env is None else env
    return {
        k[len(SECRET_ENV_PREFIX):]: v
        for k, v in env.items()
        if k.startswith(SECRET_ENV_PREFIX) and len(k) > len(SECRET_ENV_PREFIX)
    }
