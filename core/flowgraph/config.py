"""Shared flowgraph configuration utilities.

Centralises reading of ~/.flowgraph/configuration.json so that the CLI,
the graph runtime and embedding applications share one implementation.
Environment variables override file values.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWGRAPH_CONFIG_FILE = Path.home() / ".flowgraph" / "configuration.json"

DEFAULT_START_MARKER = "start"


def get_flowgraph_config() -> dict[str, Any]:
    """Load flowgraph configuration from ~/.flowgraph/configuration.json."""
    if not FLOWGRAPH_CONFIG_FILE.exists():
        return {}
    try:
        with open(FLOWGRAPH_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


def _env_flag(name: str) -> bool | None:
    value = os.environ.get(name)
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_log_level() -> str:
    """Return the configured log level, defaulting to INFO."""
    return os.environ.get("FLOWGRAPH_LOG_LEVEL") or get_flowgraph_config().get("logging", {}).get(
        "level", "INFO"
    )


def get_log_format() -> str:
    """Return the configured log format ("json", "human" or "auto")."""
    return os.environ.get("FLOWGRAPH_LOG_FORMAT") or get_flowgraph_config().get(
        "logging", {}
    ).get("format", "auto")


def get_start_marker() -> str:
    """Return the function key/name that marks entry nodes."""
    return os.environ.get("FLOWGRAPH_START_MARKER") or get_flowgraph_config().get(
        "start_marker", DEFAULT_START_MARKER
    )


def get_strict_templates() -> bool:
    """Return whether missing template members should fail binding."""
    flag = _env_flag("FLOWGRAPH_STRICT_TEMPLATES")
    if flag is not None:
        return flag
    return bool(get_flowgraph_config().get("templates", {}).get("strict", False))


# ---------------------------------------------------------------------------
# FlowConfig
# ---------------------------------------------------------------------------


@dataclass
class FlowConfig:
    """Runtime configuration loaded from ~/.flowgraph/configuration.json."""

    log_level: str = field(default_factory=get_log_level)
    log_format: str = field(default_factory=get_log_format)
    start_marker: str = field(default_factory=get_start_marker)
    strict_templates: bool = field(default_factory=get_strict_templates)
