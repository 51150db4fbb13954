"""
Hollon Orchestrator - SQLite Task Store
=======================================
Durable TaskStore backed by aiosqlite.

Layout:
    tasks              indexed columns + the full record as JSON
    task_dependencies  (task_id, depends_on_id) edges, the inverse view for
                       dependents / blocked-dependents queries
    teams              team record as JSON

Each ``save_many`` runs in one transaction so a batch never leaves
half-written dependency edges behind.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional

import aiosqlite

from .config import HierarchyLimits
from .orchestrator_types import Task, TaskStatus, Team, dict_to_task, dict_to_team, task_to_dict, team_to_dict
from .task_store import TaskStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _sqlite_connection(db_path: str):
    """Open SQLite connection with WAL mode enabled for better concurrency."""
    async with aiosqlite.connect(db_path) as db:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA busy_timeout=5000")
        yield db


class SqliteTaskStore(TaskStore):
    """TaskStore persisted to a single SQLite file."""

    def __init__(self, db_path: str, limits: Optional[HierarchyLimits] = None):
        super().__init__(limits)
        self.db_path = db_path

    async def init(self) -> None:
        """Create tables and indexes if they don't exist."""
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    parent_id TEXT,
                    status TEXT NOT NULL,
                    assigned_member_id TEXT,
                    depth INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    task_json TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS task_dependencies (
                    task_id TEXT NOT NULL,
                    depends_on_id TEXT NOT NULL,
                    PRIMARY KEY (task_id, depends_on_id)
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS teams (
                    id TEXT PRIMARY KEY,
                    team_json TEXT NOT NULL
                )
            """)
            await db.execute("CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks(parent_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_tasks_member ON tasks(assigned_member_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_deps_target ON task_dependencies(depends_on_id)")
            await db.commit()
        logger.info(f"Task store initialized at {self.db_path} (SQLite + WAL mode)")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _select(self, sql: str, params: tuple = ()) -> List[Task]:
        async with _sqlite_connection(self.db_path) as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
        return [dict_to_task(json.loads(row[0])) for row in rows]

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    async def get(self, task_id: str) -> Optional[Task]:
        tasks = await self._select("SELECT task_json FROM tasks WHERE id = ?", (task_id,))
        return tasks[0] if tasks else None

    async def get_many(self, task_ids: Iterable[str]) -> List[Task]:
        ids = list(task_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        found = await self._select(
            f"SELECT task_json FROM tasks WHERE id IN ({placeholders})", tuple(ids)
        )
        by_id = {t.id: t for t in found}
        return [by_id[tid] for tid in ids if tid in by_id]

    async def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        if status is None:
            return await self._select("SELECT task_json FROM tasks ORDER BY created_at, rowid")
        return await self._select(
            "SELECT task_json FROM tasks WHERE status = ? ORDER BY created_at, rowid", (status.value,)
        )

    async def _write(self, tasks: List[Task]) -> None:
        async with _sqlite_connection(self.db_path) as db:
            try:
                for task in tasks:
                    await db.execute("""
                        INSERT OR REPLACE INTO tasks
                        (id, parent_id, status, assigned_member_id, depth, created_at, task_json)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                    """, (
                        task.id, task.parent_id, task.status.value, task.assigned_member_id,
                        task.depth, task.created_at.isoformat(), json.dumps(task_to_dict(task)),
                    ))
                    await db.execute("DELETE FROM task_dependencies WHERE task_id = ?", (task.id,))
                    await db.executemany(
                        "INSERT INTO task_dependencies (task_id, depends_on_id) VALUES (?, ?)",
                        [(task.id, dep) for dep in dict.fromkeys(task.dependencies)],
                    )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        logger.debug(f"💾 Saved {len(tasks)} task(s)")

    async def delete(self, task_id: str) -> None:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            await db.execute("DELETE FROM task_dependencies WHERE task_id = ?", (task_id,))
            await db.commit()

    # -------------------------------------------------------------------------
    # Graph-shaped queries
    # -------------------------------------------------------------------------

    async def get_children(self, parent_id: str) -> List[Task]:
        return await self._select(
            "SELECT task_json FROM tasks WHERE parent_id = ? ORDER BY created_at, rowid", (parent_id,)
        )

    async def count_children(self, parent_id: str) -> int:
        async with _sqlite_connection(self.db_path) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM tasks WHERE parent_id = ?", (parent_id,))
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def get_blocked(self, parent_id: Optional[str] = None) -> List[Task]:
        if parent_id is None:
            return await self._select(
                "SELECT task_json FROM tasks WHERE status = ?", (TaskStatus.BLOCKED.value,)
            )
        return await self._select(
            "SELECT task_json FROM tasks WHERE status = ? AND parent_id = ?",
            (TaskStatus.BLOCKED.value, parent_id),
        )

    async def get_dependents(self, task_id: str) -> List[Task]:
        return await self._select("""
            SELECT t.task_json FROM tasks t
            JOIN task_dependencies d ON d.task_id = t.id
            WHERE d.depends_on_id = ?
        """, (task_id,))

    async def get_blocked_dependents(self, task_id: str) -> List[Task]:
        return await self._select("""
            SELECT t.task_json FROM tasks t
            JOIN task_dependencies d ON d.task_id = t.id
            WHERE d.depends_on_id = ? AND t.status = ?
        """, (task_id, TaskStatus.BLOCKED.value))

    async def dependency_graph(self) -> Dict[str, List[str]]:
        async with _sqlite_connection(self.db_path) as db:
            cursor = await db.execute("SELECT id FROM tasks")
            graph: Dict[str, List[str]] = {row[0]: [] for row in await cursor.fetchall()}
            cursor = await db.execute("SELECT task_id, depends_on_id FROM task_dependencies")
            for task_id, depends_on_id in await cursor.fetchall():
                graph.setdefault(task_id, []).append(depends_on_id)
        return graph

    async def tasks_assigned_to(self, member_id: str) -> List[Task]:
        return await self._select(
            "SELECT task_json FROM tasks WHERE assigned_member_id = ?", (member_id,)
        )

    # -------------------------------------------------------------------------
    # Teams
    # -------------------------------------------------------------------------

    async def get_team(self, team_id: str) -> Optional[Team]:
        async with _sqlite_connection(self.db_path) as db:
            cursor = await db.execute("SELECT team_json FROM teams WHERE id = ?", (team_id,))
            row = await cursor.fetchone()
        return dict_to_team(json.loads(row[0])) if row else None

    async def save_team(self, team: Team) -> Team:
        async with _sqlite_connection(self.db_path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO teams (id, team_json) VALUES (?, ?)",
                (team.id, json.dumps(team_to_dict(team))),
            )
            await db.commit()
        return team
