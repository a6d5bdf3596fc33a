"""
Tests for configuration loading: file, env overrides and defaults.
"""

import json
from pathlib import Path

import pytest

from stepgraph import config
from stepgraph.config import (
    DEFAULT_RECURSION_LIMIT,
    EngineConfig,
    get_log_format,
    get_log_level,
    get_node_error_policy,
    get_recursion_limit,
    get_stepgraph_config,
    get_storage_path,
)
from stepgraph.graph.node import NodeErrorPolicy
from stepgraph.graph.scheduler import RunConfig


@pytest.fixture
def config_file(monkeypatch, tmp_path):
    """Point the loader at a writable config file and return a writer."""
    path = tmp_path / "configuration.json"
    monkeypatch.setattr(config, "STEPGRAPH_CONFIG_FILE", path)

    def write(data):
        path.write_text(json.dumps(data) if not isinstance(data, str) else data)
        return path

    return write


def test_defaults_without_file_or_env(tmp_path):
    assert get_stepgraph_config() == {}
    assert get_recursion_limit() == DEFAULT_RECURSION_LIMIT
    assert get_node_error_policy() == NodeErrorPolicy.FAIL_RUN
    assert get_storage_path() == tmp_path / ".stepgraph" / "threads"
    assert get_log_level() == "INFO"
    assert get_log_format() == "auto"


def test_values_from_file(config_file):
    config_file(
        {
            "engine": {"recursion_limit": 40, "node_error_policy": "skip_writes"},
            "storage": {"path": "/var/lib/stepgraph"},
            "logging": {"level": "DEBUG", "format": "json"},
        }
    )

    assert get_recursion_limit() == 40
    assert get_node_error_policy() == NodeErrorPolicy.SKIP_WRITES
    assert get_storage_path() == Path("/var/lib/stepgraph")
    assert get_log_level() == "DEBUG"
    assert get_log_format() == "json"


def test_env_overrides_file(config_file, monkeypatch, tmp_path):
    config_file({"engine": {"recursion_limit": 40, "node_error_policy": "skip_writes"}})
    monkeypatch.setenv("STEPGRAPH_RECURSION_LIMIT", "7")
    monkeypatch.setenv("STEPGRAPH_NODE_ERROR_POLICY", "abort_step")
    monkeypatch.setenv("STEPGRAPH_STORAGE_PATH", str(tmp_path / "elsewhere"))
    monkeypatch.setenv("STEPGRAPH_LOG_LEVEL", "WARNING")

    assert get_recursion_limit() == 7
    assert get_node_error_policy() == NodeErrorPolicy.ABORT_STEP
    assert get_storage_path() == tmp_path / "elsewhere"
    assert get_log_level() == "WARNING"


@pytest.mark.parametrize("value", ["ten", "0", "-3"])
def test_invalid_env_recursion_limit_falls_back(config_file, monkeypatch, value):
    config_file({"engine": {"recursion_limit": 12}})
    monkeypatch.setenv("STEPGRAPH_RECURSION_LIMIT", value)
    assert get_recursion_limit() == 12


def test_unknown_error_policy_falls_back(monkeypatch):
    monkeypatch.setenv("STEPGRAPH_NODE_ERROR_POLICY", "explode")
    assert get_node_error_policy() == NodeErrorPolicy.FAIL_RUN


def test_malformed_file_is_ignored(config_file):
    config_file("{not json")
    assert get_stepgraph_config() == {}
    assert get_recursion_limit() == DEFAULT_RECURSION_LIMIT


def test_non_object_file_is_ignored(config_file):
    config_file([1, 2, 3])
    assert get_stepgraph_config() == {}


def test_explicit_path(tmp_path):
    path = tmp_path / "other.json"
    path.write_text(json.dumps({"engine": {"recursion_limit": 3}}))
    assert get_stepgraph_config(path) == {"engine": {"recursion_limit": 3}}


def test_engine_config_reads_at_construction(monkeypatch):
    monkeypatch.setenv("STEPGRAPH_RECURSION_LIMIT", "9")
    engine = EngineConfig()
    monkeypatch.setenv("STEPGRAPH_RECURSION_LIMIT", "11")

    assert engine.recursion_limit == 9
    assert EngineConfig().recursion_limit == 11


def test_run_config_from_engine_config():
    engine = EngineConfig(recursion_limit=6, node_error_policy=NodeErrorPolicy.SKIP_WRITES)
    run_config = RunConfig.from_engine_config(engine, max_concurrency=2)

    assert run_config.recursion_limit == 6
    assert run_config.node_error_policy == NodeErrorPolicy.SKIP_WRITES
    assert run_config.max_concurrency == 2


def test_run_config_overrides_win():
    engine = EngineConfig(recursion_limit=6)
    assert RunConfig.from_engine_config(engine, recursion_limit=2).recursion_limit == 2


def test_run_config_rejects_non_positive_limit():
    with pytest.raises(ValueError):
        RunConfig(recursion_limit=0)
