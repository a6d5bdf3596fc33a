"""
Tests for the read-only inspection CLI.
"""

import asyncio
import json
import logging

import pytest

from stepgraph.cli import main
from stepgraph.graph.channel import ChannelSpec
from stepgraph.graph.edge import EdgeSpec, GraphSpec
from stepgraph.graph.node import NodeSpec
from stepgraph.graph.scheduler import StepScheduler
from stepgraph.storage.checkpoint_store import FileCheckpointStore


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def store_path(tmp_path):
    """A store with a finished thread 'done' and a paused thread 'waiting'."""
    graph = GraphSpec(
        id="cli",
        channels=[ChannelSpec(name="count", reducer="add", default=0)],
        nodes=[
            NodeSpec(id="inc", reads=["count"], writes=["count"]),
            NodeSpec(id="ship", reads=["count"], writes=["count"]),
        ],
        edges=[EdgeSpec(id="inc-ship", source="inc", target="ship")],
        entry_nodes=["inc"],
    )

    async def populate():
        nodes = {"inc": lambda s: {"count": 1}, "ship": lambda s: {"count": 10}}
        store = FileCheckpointStore(tmp_path)
        await StepScheduler(graph, store, nodes=nodes).run("done", {})
        paused = graph.model_copy(update={"interrupt_before": ["ship"]})
        await StepScheduler(paused, store, nodes=nodes).run("waiting", {})

    asyncio.run(populate())
    return str(tmp_path)


def run_cli(capsys, *args):
    code = main(["--log-level", "WARNING", *args])
    captured = capsys.readouterr()
    return code, captured.out, captured.err


def test_threads(capsys, store_path):
    code, out, _ = run_cli(capsys, "threads", store_path)
    assert code == 0
    assert json.loads(out) == ["done", "waiting"]


def test_history(capsys, store_path):
    code, out, _ = run_cli(capsys, "history", store_path, "done")
    assert code == 0
    summaries = json.loads(out)
    assert [s["step"] for s in summaries] == [-1, 0, 1]
    assert summaries[0]["source"] == "input"


def test_show_latest_and_step(capsys, store_path):
    code, out, _ = run_cli(capsys, "show", store_path, "done")
    assert code == 0
    latest = json.loads(out)
    assert latest["step"] == 1
    assert latest["channel_values"] == {"count": 11}
    assert latest["next_nodes"] == []

    code, out, _ = run_cli(capsys, "show", store_path, "done", "--step", "0")
    assert code == 0
    assert json.loads(out)["channel_values"] == {"count": 1}


def test_interrupt(capsys, store_path):
    code, out, _ = run_cli(capsys, "interrupt", store_path, "waiting")
    assert code == 0
    interrupt = json.loads(out)
    assert interrupt["step"] == 1
    assert interrupt["guarded_nodes"] == ["ship"]


@pytest.mark.parametrize(
    "args, message",
    [
        (["history", "{path}", "missing"], "No checkpoints"),
        (["show", "{path}", "done", "--step", "7"], "step 7"),
        (["show", "{path}", "missing"], "latest"),
        (["interrupt", "{path}", "done"], "no pending interrupt"),
        (["show", "{path}", "../escape"], "Invalid thread ID"),
    ],
)
def test_missing_items_exit_with_error(capsys, store_path, args, message):
    args = [a.format(path=store_path) for a in args]
    code, out, err = run_cli(capsys, *args)
    assert code == 1
    assert out == ""
    assert message in err


def test_default_store_path(capsys, monkeypatch, tmp_path):
    monkeypatch.setenv("STEPGRAPH_STORAGE_PATH", str(tmp_path / "nowhere"))
    code, out, _ = run_cli(capsys, "threads", "-")
    assert code == 0
    assert json.loads(out) == []
