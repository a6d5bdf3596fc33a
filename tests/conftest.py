import pytest

from stepgraph import config


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep the developer's ~/.stepgraph and STEPGRAPH_* env out of tests."""
    for name in (
        "STEPGRAPH_RECURSION_LIMIT",
        "STEPGRAPH_NODE_ERROR_POLICY",
        "STEPGRAPH_STORAGE_PATH",
        "STEPGRAPH_LOG_LEVEL",
        "STEPGRAPH_LOG_FORMAT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config, "STEPGRAPH_CONFIG_FILE", tmp_path / "no-config.json")
    monkeypatch.setattr(config, "STEPGRAPH_HOME", tmp_path / ".stepgraph")
