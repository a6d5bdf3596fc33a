"""
Tests for checkpoint persistence backends.
"""

import gc
import json
from datetime import datetime, timedelta

import pytest

from stepgraph.schemas.checkpoint import Checkpoint, CheckpointSource
from stepgraph.schemas.interrupt import Interrupt, PendingTask
from stepgraph.storage.checkpoint_store import FileCheckpointStore, InMemoryCheckpointStore


def make_checkpoint(thread_id, step, **values):
    return Checkpoint.create(
        thread_id=thread_id,
        step=step,
        channel_values={"counter": step, **values},
        channel_versions={"counter": step + 1},
        next_nodes=["a"],
        source=CheckpointSource.INPUT if step < 0 else CheckpointSource.LOOP,
    )


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryCheckpointStore()
    return FileCheckpointStore(tmp_path / "threads")


@pytest.mark.asyncio
async def test_new_thread_has_no_checkpoint(store):
    assert await store.load_latest("t1") is None
    assert await store.load("t1", 0) is None
    assert await store.list_checkpoints("t1") == []


@pytest.mark.asyncio
async def test_save_and_load(store):
    for step in (-1, 0, 1):
        await store.save("t1", make_checkpoint("t1", step))

    latest = await store.load_latest("t1")
    assert latest.step == 1
    assert latest.channel_values == {"counter": 1}
    assert latest.next_nodes == ["a"]

    first = await store.load("t1", 0)
    assert first.step == 0
    assert first.channel_versions == {"counter": 1}

    summaries = await store.list_checkpoints("t1")
    assert [s.step for s in summaries] == [-1, 0, 1]
    assert summaries[0].source == CheckpointSource.INPUT


@pytest.mark.asyncio
async def test_duplicate_step_is_rejected(store):
    await store.save("t1", make_checkpoint("t1", 0))
    with pytest.raises(ValueError, match="already has a checkpoint"):
        await store.save("t1", make_checkpoint("t1", 0, extra="x"))
    assert (await store.load_latest("t1")).channel_values == {"counter": 0}


@pytest.mark.asyncio
async def test_threads_are_isolated(store):
    await store.save("t1", make_checkpoint("t1", 0))
    await store.save("t2", make_checkpoint("t2", 0, other=True))

    assert (await store.load_latest("t1")).channel_values == {"counter": 0}
    assert (await store.load_latest("t2")).channel_values == {"counter": 0, "other": True}
    assert store.threads() == ["t1", "t2"]


@pytest.mark.asyncio
async def test_delete_thread(store):
    await store.save("t1", make_checkpoint("t1", 0))
    await store.save_interrupt("t1", Interrupt.create("t1", 1, []))

    assert await store.delete_thread("t1") is True
    assert await store.load_latest("t1") is None
    assert await store.load_interrupt("t1") is None
    assert await store.delete_thread("t1") is False


@pytest.mark.asyncio
async def test_interrupt_roundtrip(store):
    interrupt = Interrupt.create(
        "t1",
        step=3,
        pending_tasks=[
            PendingTask(node_id="publish", step=3, inputs={"draft": "v1"}, guarded=True),
            PendingTask(node_id="audit", step=3, inputs={}),
        ],
        checkpoint_id="cp_loop_s2_abcd1234",
    )
    await store.save_interrupt("t1", interrupt)

    loaded = await store.load_interrupt("t1")
    assert loaded.interrupt_id == interrupt.interrupt_id
    assert loaded.guarded_nodes == ["publish"]
    assert loaded.get_task("publish").inputs == {"draft": "v1"}
    assert loaded.get_task("missing") is None

    assert await store.delete_interrupt("t1") is True
    assert await store.load_interrupt("t1") is None
    assert await store.delete_interrupt("t1") is False


@pytest.mark.asyncio
async def test_prune_keeps_latest(store):
    old = (datetime.now() - timedelta(days=30)).isoformat()
    for step in range(3):
        checkpoint = make_checkpoint("t1", step).model_copy(update={"created_at": old})
        await store.save("t1", checkpoint)

    removed = await store.prune("t1", max_age_days=7)

    assert removed == 2
    remaining = await store.list_checkpoints("t1")
    assert [s.step for s in remaining] == [2]
    assert (await store.load_latest("t1")).step == 2


@pytest.mark.asyncio
async def test_prune_keeps_recent(store):
    for step in range(3):
        await store.save("t1", make_checkpoint("t1", step))
    assert await store.prune("t1", max_age_days=7) == 0
    assert len(await store.list_checkpoints("t1")) == 3


@pytest.mark.asyncio
async def test_memory_store_returns_copies():
    store = InMemoryCheckpointStore()
    await store.save("t1", make_checkpoint("t1", 0, items=["a"]))

    loaded = await store.load_latest("t1")
    loaded.channel_values["items"].append("b")

    assert (await store.load_latest("t1")).channel_values["items"] == ["a"]


class TestFileCheckpointStore:
    @pytest.mark.asyncio
    async def test_survives_new_instance(self, tmp_path):
        await FileCheckpointStore(tmp_path).save("t1", make_checkpoint("t1", 0))

        reopened = FileCheckpointStore(tmp_path)
        latest = await reopened.load_latest("t1")
        assert latest.step == 0
        assert latest.channel_values == {"counter": 0}

    @pytest.mark.asyncio
    async def test_layout_and_no_temp_files(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        checkpoint = make_checkpoint("t1", 0)
        await store.save("t1", checkpoint)

        checkpoints_dir = tmp_path / "t1" / "checkpoints"
        assert (checkpoints_dir / "index.json").exists()
        assert (checkpoints_dir / "latest.json").exists()
        assert (checkpoints_dir / f"{checkpoint.checkpoint_id}.json").exists()
        assert not list(tmp_path.rglob("*.tmp"))

    @pytest.mark.asyncio
    async def test_orphan_file_is_not_latest(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        await store.save("t1", make_checkpoint("t1", 0))

        # A checkpoint file written without an index entry (crash in between)
        orphan = make_checkpoint("t1", 1)
        (tmp_path / "t1" / "checkpoints" / f"{orphan.checkpoint_id}.json").write_text(
            orphan.model_dump_json()
        )

        assert (await store.load_latest("t1")).step == 0

    @pytest.mark.asyncio
    async def test_latest_reads_only_the_pointer(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        for step in range(3):
            await store.save("t1", make_checkpoint("t1", step))

        checkpoints_dir = tmp_path / "t1" / "checkpoints"
        pointer = json.loads((checkpoints_dir / "latest.json").read_text())
        assert pointer["step"] == 2

        (checkpoints_dir / "index.json").write_text("{not json")
        latest = await store.load_latest("t1")
        assert latest.step == 2
        assert latest.checkpoint_id == pointer["checkpoint_id"]

    @pytest.mark.asyncio
    async def test_index_is_repaired_from_pointer(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        await store.save("t1", make_checkpoint("t1", 0))

        # Checkpoint and pointer written, index update lost
        checkpoints_dir = tmp_path / "t1" / "checkpoints"
        index_before = (checkpoints_dir / "index.json").read_text()
        await store.save("t1", make_checkpoint("t1", 1))
        (checkpoints_dir / "index.json").write_text(index_before)

        assert (await store.load_latest("t1")).step == 1
        assert (await store.load("t1", 1)).step == 1
        with pytest.raises(ValueError, match="already has a checkpoint"):
            await store.save("t1", make_checkpoint("t1", 1))

        await store.save("t1", make_checkpoint("t1", 2))
        assert [s.step for s in await store.list_checkpoints("t1")] == [0, 1, 2]
        index = json.loads((checkpoints_dir / "index.json").read_text())
        assert [c["step"] for c in index["checkpoints"]] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_index_locks_are_released(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        for i in range(4):
            await store.save(f"t{i}", make_checkpoint(f"t{i}", 0))
            await store.load_latest(f"t{i}")

        gc.collect()
        assert len(store._index_locks) == 0

    @pytest.mark.parametrize(
        "thread_id",
        ["", "   ", "../escape", "a/b", "a\\b", ".hidden", "bad\x00id", "a:b", "$(rm)"],
    )
    def test_rejects_unsafe_thread_ids(self, tmp_path, thread_id):
        with pytest.raises(ValueError):
            FileCheckpointStore(tmp_path).thread_dir(thread_id)

    def test_threads_on_missing_base(self, tmp_path):
        assert FileCheckpointStore(tmp_path / "nope").threads() == []
