"""
Tests for the channel store: snapshots, buffered writes, and atomic commit.
"""

import pytest

from stepgraph.errors import ReducerConflict
from stepgraph.graph.channel import ChannelSpec, ChannelStore
from stepgraph.graph.reducers import add, append, overwrite, resolve_reducer, union


def make_store():
    return ChannelStore(
        [
            ChannelSpec(name="log", reducer="append"),
            ChannelSpec(name="status", reducer="overwrite", default="new"),
            ChannelSpec(name="tags", reducer="union"),
            ChannelSpec(name="total", reducer="add", default=0),
        ]
    )


class TestReducers:
    def test_overwrite_returns_write(self):
        assert overwrite("old", "new") == "new"

    def test_append_extends_with_sequences(self):
        assert append(["a"], "b") == ["a", "b"]
        assert append(["a"], ["b", "c"]) == ["a", "b", "c"]
        assert append(None, ("x",)) == ["x"]

    def test_append_does_not_mutate_current(self):
        current = ["a"]
        append(current, "b")
        assert current == ["a"]

    def test_union_keeps_first_seen_order(self):
        assert union(["b", "a"], ["a", "c", "b"]) == ["b", "a", "c"]
        assert union([], {"z", "y"}) == sorted(["z", "y"], key=repr)

    def test_add_accumulates(self):
        assert add(None, 3) == 3
        assert add(2, 3) == 5

    def test_resolve_reducer(self):
        assert resolve_reducer(None) is overwrite
        assert resolve_reducer("append") is append
        assert resolve_reducer(max) is max
        with pytest.raises(ValueError, match="Unknown reducer"):
            resolve_reducer("median")


class TestChannelSpec:
    def test_initial_values(self):
        assert ChannelSpec(name="log", reducer="append").initial_value() == []
        assert ChannelSpec(name="flag", default=False).initial_value() is False
        assert ChannelSpec(name="x").initial_value() is None

    def test_default_is_copied(self):
        spec = ChannelSpec(name="cfg", default={"k": 1})
        value = spec.initial_value()
        value["k"] = 2
        assert spec.initial_value() == {"k": 1}

    def test_reducer_name(self):
        assert ChannelSpec(name="a").reducer_name == "overwrite"
        assert ChannelSpec(name="b", reducer="union").reducer_name == "union"
        assert ChannelSpec(name="c", reducer=max).reducer_name == "max"


class TestChannelStore:
    def test_read_is_immutable_snapshot(self):
        store = make_store()
        store.propose("log", {"entry": 1}, order=0)
        store.commit(step=0)

        snapshot = store.read(["log"])
        with pytest.raises(TypeError):
            snapshot["log"] = []  # type: ignore[index]

        # Mutating nested values must not leak back into the store
        snapshot["log"][0]["entry"] = 99
        assert store.read(["log"])["log"] == [{"entry": 1}]

    def test_read_unknown_channel(self):
        with pytest.raises(KeyError):
            make_store().read(["missing"])

    def test_propose_unknown_channel(self):
        with pytest.raises(KeyError):
            make_store().propose("missing", 1)

    def test_writes_invisible_until_commit(self):
        store = make_store()
        store.propose("status", "running", order=0)
        assert store.read(["status"])["status"] == "new"
        assert store.has_pending

        store.commit(step=0)
        assert store.read(["status"])["status"] == "running"
        assert not store.has_pending

    def test_commit_merges_in_declaration_order(self):
        store = make_store()
        # Proposed out of order, as tasks would finish
        store.propose("log", "third", order=2)
        store.propose("log", "first", order=0)
        store.propose("log", "second", order=1)
        store.propose("status", "from-2", order=2)
        store.propose("status", "from-0", order=0)

        store.commit(step=0)
        values = store.values()
        assert values["log"] == ["first", "second", "third"]
        # Last writer by declaration order wins
        assert values["status"] == "from-2"

    def test_same_node_writes_keep_proposal_order(self):
        store = make_store()
        store.propose("log", "a", order=1)
        store.propose("log", "b", order=1)
        store.commit(step=0)
        assert store.values()["log"] == ["a", "b"]

    def test_versions_bump_only_on_change(self):
        store = make_store()
        store.propose("status", "new", order=0)  # Same as default
        store.propose("total", 5, order=0)
        changed = store.commit(step=0)

        assert changed == {"total"}
        assert store.versions()["status"] == 0
        assert store.versions()["total"] == 1

    def test_reducer_conflict_leaves_store_untouched(self):
        def strict(current, write):
            if write < 0:
                raise ValueError("negative")
            return write

        store = ChannelStore(
            [
                ChannelSpec(name="log", reducer="append"),
                ChannelSpec(name="level", reducer=strict, default=0),
            ]
        )
        store.propose("log", "entry", order=0)
        store.propose("level", -1, order=1)

        with pytest.raises(ReducerConflict) as exc_info:
            store.commit(step=3)

        assert exc_info.value.channel == "level"
        assert exc_info.value.step == 3
        assert store.values() == {"log": [], "level": 0}
        assert store.versions() == {"log": 0, "level": 0}
        assert not store.has_pending

    def test_discard_drops_pending_writes(self):
        store = make_store()
        store.propose("log", "lost", order=0)
        store.discard()
        assert store.commit(step=0) == set()
        assert store.values()["log"] == []

    def test_restore_from_checkpoint_values(self):
        store = make_store()
        store.restore(
            {"log": ["x"], "status": "done", "tags": ["t"], "total": 4, "stale": 1},
            {"log": 1, "status": 2, "tags": 1, "total": 3},
        )
        assert store.values() == {"log": ["x"], "status": "done", "tags": ["t"], "total": 4}
        assert store.versions() == {"log": 1, "status": 2, "tags": 1, "total": 3}
        assert "stale" not in store
        assert store.names == ["log", "status", "tags", "total"]
