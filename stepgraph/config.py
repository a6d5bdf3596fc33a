"""Shared stepgraph configuration utilities.

Centralises reading of ~/.stepgraph/configuration.json and the STEPGRAPH_*
environment overrides so the scheduler, the CLI and embedding services share
one implementation.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stepgraph.graph.node import NodeErrorPolicy

logger = logging.getLogger(__name__)

DEFAULT_RECURSION_LIMIT = 25

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

STEPGRAPH_HOME = Path.home() / ".stepgraph"
STEPGRAPH_CONFIG_FILE = STEPGRAPH_HOME / "configuration.json"


def get_stepgraph_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from ~/.stepgraph/configuration.json (or ``path``)."""
    config_file = path or STEPGRAPH_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {config_file}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_recursion_limit() -> int:
    """Return the default recursion limit (env > file > built-in)."""
    env_value = os.environ.get("STEPGRAPH_RECURSION_LIMIT")
    if env_value:
        try:
            limit = int(env_value)
        except ValueError:
            logger.warning(f"STEPGRAPH_RECURSION_LIMIT is not an integer: {env_value!r}")
        else:
            if limit > 0:
                return limit
            logger.warning(f"STEPGRAPH_RECURSION_LIMIT must be positive, got {limit}")
    limit = get_stepgraph_config().get("engine", {}).get("recursion_limit")
    if isinstance(limit, int) and limit > 0:
        return limit
    return DEFAULT_RECURSION_LIMIT


def get_node_error_policy() -> NodeErrorPolicy:
    """Return the default node error policy (env > file > fail_run)."""
    raw = os.environ.get("STEPGRAPH_NODE_ERROR_POLICY") or get_stepgraph_config().get(
        "engine", {}
    ).get("node_error_policy")
    if raw:
        try:
            return NodeErrorPolicy(raw)
        except ValueError:
            logger.warning(f"Unknown node_error_policy {raw!r}, using fail_run")
    return NodeErrorPolicy.FAIL_RUN


def get_storage_path() -> Path:
    """Return the base directory for the file checkpoint backend."""
    raw = os.environ.get("STEPGRAPH_STORAGE_PATH") or get_stepgraph_config().get(
        "storage", {}
    ).get("path")
    return Path(raw).expanduser() if raw else STEPGRAPH_HOME / "threads"


def get_log_level() -> str:
    return os.environ.get("STEPGRAPH_LOG_LEVEL") or get_stepgraph_config().get(
        "logging", {}
    ).get("level", "INFO")


def get_log_format() -> str:
    return os.environ.get("STEPGRAPH_LOG_FORMAT") or get_stepgraph_config().get(
        "logging", {}
    ).get("format", "auto")


# ---------------------------------------------------------------------------
# EngineConfig - shared across embedding applications
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine defaults loaded from ~/.stepgraph/configuration.json and env."""

    recursion_limit: int = field(default_factory=get_recursion_limit)
    node_error_policy: NodeErrorPolicy = field(default_factory=get_node_error_policy)
    storage_path: Path = field(default_factory=get_storage_path)
    log_level: str = field(default_factory=get_log_level)
    log_format: str = field(default_factory=get_log_format)
