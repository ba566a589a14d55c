"""Shared engine configuration.

Centralises reading of ~/.scraperflow/configuration.json so that the CLI,
the run controller and embedding applications share one implementation.
Environment variables (``SCRAPERFLOW_*``) override file values.

Example configuration.json::

    {
      "engine": {"concurrency": 8, "default_max_retries": 1},
      "storage_path": "/var/lib/scraperflow"
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from scraperflow.graph.node import RetryPolicy

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

DEFAULT_HOME = Path.home() / ".scraperflow"
CONFIG_FILE = DEFAULT_HOME / "configuration.json"


def get_config_file() -> Path:
    return Path(os.environ.get("SCRAPERFLOW_CONFIG", CONFIG_FILE))


def get_scraperflow_config() -> dict[str, Any]:
    """Load configuration from disk; missing or corrupt files yield ``{}``."""
    path = get_config_file()
    if not path.exists():
        return {}
    return _read_config(path)


def _read_config(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config {path}: {e}")
        return {}


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineConfig:
    """Scheduler and storage settings."""

    concurrency: int = 4
    default_max_retries: int = 0
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0
    jitter: float = 0.1
    node_timeout_seconds: float | None = None
    run_timeout_seconds: float | None = None
    cancel_grace_seconds: float = 5.0
    seed: int = 0
    storage_path: Path = field(default_factory=lambda: DEFAULT_HOME)

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.cancel_grace_seconds < 0:
            raise ValueError("cancel_grace_seconds must be >= 0")

    @property
    def default_retry(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.default_max_retries,
            backoff_base_seconds=self.backoff_base_seconds,
            backoff_max_seconds=self.backoff_max_seconds,
            jitter=self.jitter,
        )

    def with_overrides(self, **overrides: Any) -> "EngineConfig":
        """Return a copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


_ENV_PREFIX = "SCRAPERFLOW_"


def _coerce(name: str, raw: Any) -> Any:
    if raw is None or raw == "":
        return None
    if name == "storage_path":
        return Path(raw).expanduser()
    if name in ("concurrency", "default_max_retries", "seed"):
        return int(raw)
    return float(raw)


def load_config(path: Path | None = None) -> EngineConfig:
    """
    Build an EngineConfig from the config file and environment.

    Precedence: environment > file > defaults.
    """
    data = get_scraperflow_config() if path is None else _read_config(path)

    values: dict[str, Any] = {}
    engine_section = data.get("engine", {})
    if data.get("storage_path"):
        engine_section = {**engine_section, "storage_path": data["storage_path"]}

    for f in fields(EngineConfig):
        raw = os.environ.get(_ENV_PREFIX + f.name.upper(), engine_section.get(f.name))
        try:
            value = _coerce(f.name, raw)
            if value is not None:
                # range checks live in __post_init__
                EngineConfig(**{f.name: value})
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid value for {f.name}: {raw!r}")
            continue
        if value is not None:
            values[f.name] = value

    return EngineConfig(**values)

