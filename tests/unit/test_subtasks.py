"""
Unit tests for SubtaskCreationService: hierarchy limits and inheritance.
"""
import pytest

from hollon_orchestrator.engine import StatusPropagationEngine, SubtaskCreationService
from hollon_orchestrator.errors import CountExceeded, DepthExceeded, NotFound
from hollon_orchestrator.orchestrator_types import SubtaskDefinition, Task, TaskPriority, TaskStatus


@pytest.fixture
def service(store):
    return SubtaskCreationService(store, StatusPropagationEngine(store))


def defs(*titles):
    return [SubtaskDefinition(title=t) for t in titles]


async def make_chain(store, length):
    """root -> c1 -> ... ; returns the ids from root to leaf."""
    ids = []
    parent_id = None
    for depth in range(length):
        task_id = f"t{depth}"
        await store.save(Task(id=task_id, title=task_id, parent_id=parent_id, depth=depth, status=TaskStatus.READY))
        ids.append(task_id)
        parent_id = task_id
    return ids


class TestCalculateDepth:

    async def test_root_is_zero(self, store, service):
        """A root task sits at depth zero."""
        await store.save(Task(id="root", title="root"))
        assert await service.calculate_depth("root") == 0

    async def test_counts_parent_hops(self, store, service):
        """Depth is the number of parent hops."""
        ids = await make_chain(store, 4)
        assert [await service.calculate_depth(i) for i in ids] == [0, 1, 2, 3]

    async def test_missing_task(self, service):
        """Unknown tasks are reported, not guessed."""
        with pytest.raises(NotFound):
            await service.calculate_depth("ghost")


class TestCreateSubtasks:

    async def test_children_inherit_scope(self, store, service):
        """Children inherit organization, project and directory."""
        parent = Task(
            id="p",
            title="Parent",
            status=TaskStatus.READY,
            priority=TaskPriority.P1,
            organization_id="org",
            project_id="proj",
            working_directory="/repo",
            assigned_member_id="m_owner",
        )
        await store.save(parent)

        result = await service.create_subtasks(
            "p",
            [SubtaskDefinition(title="A"), SubtaskDefinition(title="B", priority=TaskPriority.P4)],
            creator_id="m_owner",
        )

        assert result.success is True
        assert result.requested == 2
        assert result.errors == []
        a, b = result.created
        for child in (a, b):
            assert child.parent_id == "p"
            assert child.depth == 1
            assert child.status == TaskStatus.READY
            assert child.organization_id == "org"
            assert child.project_id == "proj"
            assert child.working_directory == "/repo"
            assert child.reviewer_id == "m_owner"
            assert child.creator_id == "m_owner"
            assert child.assigned_member_id is None
        assert a.priority == TaskPriority.P1
        assert b.priority == TaskPriority.P4
        assert [c.id for c in await service.get_subtasks("p")] == [a.id, b.id]

    async def test_team_scope_is_inherited(self, store, service):
        """Children of a team task stay with the team."""
        await store.save(Task(id="p", title="p", assigned_team_id="team_core", status=TaskStatus.READY))
        result = await service.create_subtasks("p", defs("x"))
        assert result.created[0].assigned_team_id == "team_core"

    async def test_depth_limit_rejects_fourth_level(self, store, service):
        """No children below the third level."""
        ids = await make_chain(store, 4)
        with pytest.raises(DepthExceeded):
            await service.create_subtasks(ids[-1], defs("too deep"))
        assert await store.get_children(ids[-1]) == []

    async def test_depth_limit_holds_without_chain_walk(self, store, service):
        """The depth limit holds when the stored depth is trusted."""
        ids = await make_chain(store, 4)
        with pytest.raises(DepthExceeded):
            await service.create_subtasks(ids[-1], defs("too deep"), validate_depth=False)

    async def test_third_level_is_allowed(self, store, service):
        """Children may be created down to the third level."""
        ids = await make_chain(store, 3)
        result = await service.create_subtasks(ids[-1], defs("leaf"))
        assert result.created[0].depth == 3

    async def test_ten_children_allowed(self, store, service):
        """A parent may have ten children."""
        await store.save(Task(id="p", title="p", status=TaskStatus.READY))
        result = await service.create_subtasks("p", defs(*[f"c{i}" for i in range(10)]))
        assert result.success
        assert len(result.created) == 10

    async def test_eleventh_child_rejected(self, store, service):
        """The eleventh child is rejected."""
        await store.save(Task(id="p", title="p", status=TaskStatus.READY))
        with pytest.raises(CountExceeded) as exc:
            await service.create_subtasks("p", defs(*[f"c{i}" for i in range(11)]))
        assert exc.value.context["requested"] == 11
        assert await store.count_children("p") == 0

    async def test_count_includes_existing_children(self, store, service):
        """Existing children count toward the limit."""
        await store.save(Task(id="p", title="p", status=TaskStatus.READY))
        await service.create_subtasks("p", defs(*[f"c{i}" for i in range(8)]))
        with pytest.raises(CountExceeded):
            await service.create_subtasks("p", defs("x", "y", "z"))
        assert await store.count_children("p") == 8

    async def test_count_check_can_be_skipped(self, store, service):
        """The count limit can be turned off per call."""
        await store.save(Task(id="p", title="p", status=TaskStatus.READY))
        result = await service.create_subtasks("p", defs(*[f"c{i}" for i in range(11)]), validate_count=False)
        assert len(result.created) == 11

    async def test_partial_failure_is_reported(self, store, service):
        """A bad definition is reported while the rest are created."""
        await store.save(Task(id="p", title="p", status=TaskStatus.READY))
        result = await service.create_subtasks("p", defs("ok", "  ", "also ok"))
        assert result.success is False
        assert len(result.created) == 2
        assert len(result.errors) == 1
        assert "title must not be empty" in result.errors[0]

    async def test_missing_parent(self, service):
        """Children need an existing parent."""
        with pytest.raises(NotFound):
            await service.create_subtasks("ghost", defs("x"))


class TestCanCreateMore:

    async def test_allowed(self, store, service):
        """A shallow parent with room can take more children."""
        await store.save(Task(id="p", title="p"))
        verdict = await service.can_create_more("p")
        assert verdict.can_create is True
        assert verdict.current_depth == 0
        assert verdict.current_count == 0

    async def test_depth_reason(self, store, service):
        """A parent at the depth limit reports why."""
        ids = await make_chain(store, 4)
        verdict = await service.can_create_more(ids[-1])
        assert verdict.can_create is False
        assert verdict.reason.startswith("Maximum depth (3) reached")

    async def test_count_reason(self, store, service):
        """A full parent reports why."""
        await store.save(Task(id="p", title="p", status=TaskStatus.READY))
        await service.create_subtasks("p", defs(*[f"c{i}" for i in range(10)]))
        verdict = await service.can_create_more("p")
        assert verdict.can_create is False
        assert verdict.current_count == 10
        assert verdict.reason.startswith("Maximum subtasks (10) reached")

    async def test_missing_task(self, service):
        """Unknown tasks are reported, not guessed."""
        verdict = await service.can_create_more("ghost")
        assert verdict.can_create is False


class TestSubtaskTree:

    async def test_nested_view(self, store, service):
        """The tree view nests children under their parents."""
        await store.save(Task(id="p", title="p", status=TaskStatus.READY))
        first = await service.create_subtasks("p", defs("a", "b"))
        await service.create_subtasks(first.created[0].id, defs("a1"))

        tree = await service.get_subtask_tree("p")
        assert tree["task"].id == "p"
        assert [n["task"].title for n in tree["children"]] == ["a", "b"]
        assert [n["task"].title for n in tree["children"][0]["children"]] == ["a1"]
        assert tree["children"][1]["children"] == []
