"""Gateway configuration.

This module centralizes connection settings and preflight thresholds.
Defaults live in the constants below; a YAML file (see config/gateway.yaml)
and environment variables override them.

Precedence (lowest to highest):
    - module constants
    - YAML file passed to `load_settings`
    - environment variables CMAP_API_KEY, CMAP_BASE_URL
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

# ============================================================================
# CONNECTION DEFAULTS
# ============================================================================

DEFAULT_BASE_URL = "https://simonscmap.com"
DEFAULT_QUERY_PATH = "/api/data/query"
DEFAULT_TIMEOUT_SEC = 300.0  # wide bounding boxes can take minutes
DEFAULT_CATALOG_QUERY = "SELECT * FROM dbo.udfCatalog()"
DEFAULT_CATALOG_TTL_SEC: Optional[float] = None  # None: keep until refreshed

# ============================================================================
# PREFLIGHT THRESHOLDS (rows)
# ============================================================================

DEFAULT_WARN_ROWS = 1_000_000
ABORT_MULTIPLIER = 10  # abort advice at this multiple of the warn threshold

DEFAULT_CONFIG_PATH = Path("config/gateway.yaml")

ENV_API_KEY = "CMAP_API_KEY"
ENV_BASE_URL = "CMAP_BASE_URL"


@dataclass(frozen=True)
class GatewaySettings:
    """Resolved settings for one gateway session."""

    base_url: str = DEFAULT_BASE_URL
    query_path: str = DEFAULT_QUERY_PATH
    api_key: Optional[str] = None
    timeout_sec: float = DEFAULT_TIMEOUT_SEC
    warn_rows: int = DEFAULT_WARN_ROWS
    abort_rows: Optional[int] = None
    catalog_query: str = DEFAULT_CATALOG_QUERY
    catalog_ttl_sec: Optional[float] = DEFAULT_CATALOG_TTL_SEC

    def __post_init__(self) -> None:
        if self.timeout_sec <= 0:
            raise ValueError(f"timeout_sec must be positive, got {self.timeout_sec}")
        if self.warn_rows < 0:
            raise ValueError(f"warn_rows must be non-negative, got {self.warn_rows}")
        if self.abort_rows is not None and self.abort_rows < self.warn_rows:
            raise ValueError("abort_rows must not be below warn_rows")

    @property
    def effective_abort_rows(self) -> int:
        if self.abort_rows is not None:
            return self.abort_rows
        return self.warn_rows * ABORT_MULTIPLIER


def _coerce(data: Dict[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in fields(GatewaySettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown settings keys: {', '.join(unknown)}")
    out = dict(data)
    if "timeout_sec" in out:
        out["timeout_sec"] = float(out["timeout_sec"])
    if "warn_rows" in out:
        out["warn_rows"] = int(out["warn_rows"])
    if out.get("abort_rows") is not None:
        out["abort_rows"] = int(out["abort_rows"])
    if out.get("catalog_ttl_sec") is not None:
        out["catalog_ttl_sec"] = float(out["catalog_ttl_sec"])
    return out


def load_settings(
    config_path: Optional[Path] = None, *, env: Optional[Dict[str, str]] = None
) -> GatewaySettings:
    """Load settings from YAML (optional) and apply environment overrides.

    Args:
        config_path: YAML file with a top-level `gateway:` mapping. When None,
            `config/gateway.yaml` is used if it exists.
        env: Environment mapping (defaults to `os.environ`).

    Returns:
        GatewaySettings with all overrides applied.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
        ValueError: If the YAML contains unknown keys or invalid values.

    Examples:
        >>> settings = load_settings(env={"CMAP_API_KEY": "abc"})
        >>> settings.api_key
        'abc'
    """
    env = os.environ if env is None else env
    data: Dict[str, Any] = {}

    path = config_path
    if path is None and DEFAULT_CONFIG_PATH.exists():
        path = DEFAULT_CONFIG_PATH
    if path is not None:
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with path.open("r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        data = loaded.get("gateway", {}) or {}

    settings = GatewaySettings(**_coerce(data))

    overrides: Dict[str, Any] = {}
    if env.get(ENV_API_KEY):
        overrides["api_key"] = env[ENV_API_KEY]
    if env.get(ENV_BASE_URL):
        overrides["base_url"] = env[ENV_BASE_URL]
    if overrides:
        settings = replace(settings, **overrides)
    return settings


__all__ = ["GatewaySettings", "load_settings"]
