"""
Unit tests for the dependency graph engine: acyclicity and unblocking.
"""
import asyncio
import random
from datetime import datetime, timedelta

import pytest

from hollon_orchestrator.engine import DependencyGraphEngine, find_cycle
from hollon_orchestrator.errors import CircularDependency, NotFound
from hollon_orchestrator.orchestrator_types import Task, TaskStatus

S = TaskStatus


@pytest.fixture
def deps(store):
    return DependencyGraphEngine(store)


async def save_all(store, *tasks):
    await store.save_many(list(tasks))


class TestAddDependencies:

    async def test_adds_edges(self, store, deps):
        """Edges are stored on the dependent task."""
        await save_all(store, Task(id="a", title="a"), Task(id="b", title="b"))
        task = await deps.add_dependencies("b", ["a"])
        assert task.dependencies == ["a"]
        assert (await store.get("b")).dependencies == ["a"]

    async def test_duplicate_edges_not_repeated(self, store, deps):
        """Adding an existing edge again is a no-op."""
        await save_all(store, Task(id="a", title="a"), Task(id="b", title="b"))
        await deps.add_dependencies("b", ["a"])
        await deps.add_dependencies("b", ["a"])
        assert (await store.get("b")).dependencies == ["a"]

    async def test_self_loop_rejected(self, store, deps):
        """A task cannot depend on itself."""
        await store.save(Task(id="a", title="a"))
        with pytest.raises(CircularDependency) as exc:
            await deps.add_dependencies("a", ["a"])
        assert exc.value.context["cycle"] == ["a", "a"]
        assert (await store.get("a")).dependencies == []

    async def test_transitive_cycle_rejected(self, store, deps):
        """An edge closing a longer loop is rejected and the loop is reported."""
        await save_all(
            store,
            Task(id="a", title="a"),
            Task(id="b", title="b", dependencies=["a"]),
            Task(id="c", title="c", dependencies=["b"]),
        )
        with pytest.raises(CircularDependency) as exc:
            await deps.add_dependencies("a", ["c"])
        assert set(exc.value.context["cycle"]) == {"a", "b", "c"}
        assert (await store.get("a")).dependencies == []

    async def test_missing_dependency(self, store, deps):
        """Depending on an unknown task raises NotFound."""
        await store.save(Task(id="a", title="a"))
        with pytest.raises(NotFound) as exc:
            await deps.add_dependencies("a", ["ghost"])
        assert exc.value.context["missing"] == ["ghost"]

    async def test_concurrent_inserts_cannot_close_a_cycle(self, store, deps):
        """a->b and b->a submitted together: exactly one wins."""
        await save_all(store, Task(id="a", title="a"), Task(id="b", title="b"))
        results = await asyncio.gather(
            deps.add_dependencies("a", ["b"]),
            deps.add_dependencies("b", ["a"]),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], CircularDependency)
        assert find_cycle(await store.dependency_graph()) is None

    async def test_random_inserts_keep_graph_acyclic(self, store, deps):
        """Accepted random edges never leave a cycle behind."""
        rng = random.Random(42)
        ids = [f"n{i}" for i in range(15)]
        await store.save_many([Task(id=i, title=i) for i in ids])
        for _ in range(120):
            src, dst = rng.sample(ids, 2)
            try:
                await deps.add_dependencies(src, [dst])
            except CircularDependency:
                pass
            assert find_cycle(await store.dependency_graph()) is None

    async def test_remove_dependency(self, store, deps):
        """A removed edge no longer appears on the dependent."""
        await save_all(store, Task(id="a", title="a"), Task(id="b", title="b", dependencies=["a"]))
        await deps.remove_dependency("b", "a")
        assert (await store.get("b")).dependencies == []


class TestWriteEdges:

    async def test_batch_checked_as_a_whole(self, store, deps):
        """A batch is rejected when its edges only form a cycle together."""
        await save_all(store, Task(id="a", title="a"), Task(id="b", title="b"))
        with pytest.raises(CircularDependency):
            await deps.write_edges({"a": ["b"], "b": ["a"]})
        graph = await store.dependency_graph()
        assert graph == {"a": [], "b": []}

    async def test_batch_written(self, store, deps):
        """A valid batch lands in one write."""
        await save_all(store, Task(id="a", title="a"), Task(id="b", title="b"), Task(id="c", title="c"))
        await deps.write_edges({"b": ["a"], "c": ["a", "b"], "a": []})
        graph = await store.dependency_graph()
        assert graph["b"] == ["a"]
        assert graph["c"] == ["a", "b"]


class TestUnblockDependents:

    async def _chain(self, store):
        """A <- B <- C, A and B both required by D."""
        await save_all(
            store,
            Task(id="A", title="A", status=S.IN_PROGRESS),
            Task(id="B", title="B", status=S.BLOCKED, dependencies=["A"]),
            Task(id="C", title="C", status=S.BLOCKED, dependencies=["B"]),
            Task(id="D", title="D", status=S.BLOCKED, dependencies=["A", "B"]),
        )

    async def _complete(self, store, task_id):
        task = await store.get(task_id)
        task.status = S.COMPLETED
        await store.save(task)

    async def test_chain_unblocks_one_level_at_a_time(self, store, deps):
        """Completing a task only releases its direct dependents."""
        await self._chain(store)

        await self._complete(store, "A")
        assert await deps.unblock_dependents("A") == ["B"]
        assert (await store.get("C")).status == S.BLOCKED
        assert (await store.get("D")).status == S.BLOCKED

        await self._complete(store, "B")
        assert sorted(await deps.unblock_dependents("B")) == ["C", "D"]
        assert (await store.get("C")).status == S.READY
        assert (await store.get("D")).blocked_reason is None

    async def test_duplicate_events_are_idempotent(self, store, deps):
        """Replaying a completion event releases nothing new."""
        await self._chain(store)
        await self._complete(store, "A")
        first, second = await asyncio.gather(deps.unblock_dependents("A"), deps.unblock_dependents("A"))
        assert sorted(first + second) == ["B"]
        assert await deps.unblock_dependents("A") == []

    async def test_backing_off_task_stays_blocked(self, store, deps):
        """A task inside its backoff window is only released once the window passes."""
        now = datetime(2024, 1, 1, 12, 0)
        await save_all(
            store,
            Task(id="A", title="A", status=S.COMPLETED),
            Task(id="B", title="B", status=S.BLOCKED, dependencies=["A"], blocked_until=now + timedelta(minutes=5)),
        )
        assert await deps.unblock_dependents("A", now=now) == []
        assert await deps.unblock_dependents("A", now=now + timedelta(minutes=6)) == ["B"]

    async def test_dependency_free_blocked_leaf_is_released(self, store, deps):
        """A blocked leaf with no dependencies left goes back to ready."""
        await save_all(
            store,
            Task(id="A", title="A", status=S.COMPLETED),
            Task(id="orphan", title="orphan", status=S.BLOCKED),
        )
        assert await deps.unblock_dependents("A") == ["orphan"]

    async def test_blocked_parent_is_left_to_propagation(self, store, deps):
        """Blocked parents are re-derived from children, not unblocked here."""
        await save_all(
            store,
            Task(id="A", title="A", status=S.COMPLETED),
            Task(id="parent", title="parent", status=S.BLOCKED),
            Task(id="child", title="child", parent_id="parent", depth=1, status=S.FAILED),
        )
        assert await deps.unblock_dependents("A") == []
        assert (await store.get("parent")).status == S.BLOCKED

    async def test_unknown_task_is_harmless(self, deps):
        """Unblocking from an unknown id does nothing."""
        assert await deps.unblock_dependents("ghost") == []
