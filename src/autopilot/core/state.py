"""Persistent state management using SQLite."""

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Optional
from dataclasses import dataclass

import aiosqlite

from .models import Job, FunctionDefinition


@dataclass
class JobRunRecord:
    """One execution of a scheduled job."""
    id: int
    job_id: str
    trigger_type: str
    reason: Optional[str]
    context_id: Optional[int]
    status: str
    error: Optional[str]
    started_at: float
    finished_at: float


class StateManager:
    """Manages persistent state in SQLite for restart resilience."""

    def __init__(self, db_path: str = "./data/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database and create tables."""
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row

        await self._db.executescript("""
            -- Scheduler job table, timers are recomputed from it
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                job_json TEXT NOT NULL,
                updated_at REAL NOT NULL
            );

            -- Function library
            CREATE TABLE IF NOT EXISTS functions (
                name TEXT PRIMARY KEY,
                definition_json TEXT NOT NULL,
                updated_at REAL NOT NULL
            );

            -- Durable key/value store for workflows
            CREATE TABLE IF NOT EXISTS persistent_state (
                key TEXT PRIMARY KEY,
                value_json TEXT,
                saved_at REAL NOT NULL
            );

            -- Job execution history
            CREATE TABLE IF NOT EXISTS job_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                reason TEXT,
                context_id INTEGER,
                status TEXT NOT NULL,
                error TEXT,
                started_at REAL NOT NULL,
                finished_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_job_runs_job ON job_runs(job_id, started_at);
        """)
        await self._db.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    # ==================== Jobs ====================

    async def save_job(self, job: Job) -> None:
        """Insert or replace a job record."""
        async with self._lock:
            await self._db.execute("""
                INSERT OR REPLACE INTO jobs (id, job_json, updated_at)
                VALUES (?, ?, ?)
            """, (job.id, job.model_dump_json(by_alias=True), time.time()))
            await self._db.commit()

    async def delete_job(self, job_id: str) -> bool:
        """Delete a job record."""
        async with self._lock:
            result = await self._db.execute(
                "DELETE FROM jobs WHERE id = ?",
                (job_id,)
            )
            await self._db.commit()
            return result.rowcount > 0

    async def clear_jobs(self) -> int:
        """Delete every job record."""
        async with self._lock:
            result = await self._db.execute("DELETE FROM jobs")
            await self._db.commit()
            return result.rowcount

    async def load_jobs(self) -> list[Job]:
        """Load all persisted jobs."""
        cursor = await self._db.execute("SELECT job_json FROM jobs ORDER BY rowid")
        rows = await cursor.fetchall()
        return [Job.model_validate_json(row["job_json"]) for row in rows]

    # ==================== Functions ====================

    async def save_function(self, definition: FunctionDefinition) -> None:
        """Insert or replace a function definition."""
        async with self._lock:
            await self._db.execute("""
                INSERT OR REPLACE INTO functions (name, definition_json, updated_at)
                VALUES (?, ?, ?)
            """, (definition.name, json.dumps(definition.to_dict()), time.time()))
            await self._db.commit()

    async def delete_function(self, name: str) -> bool:
        """Delete a function definition."""
        async with self._lock:
            result = await self._db.execute(
                "DELETE FROM functions WHERE name = ?",
                (name,)
            )
            await self._db.commit()
            return result.rowcount > 0

    async def load_functions(self) -> list[FunctionDefinition]:
        """Load all persisted function definitions."""
        cursor = await self._db.execute("SELECT definition_json FROM functions ORDER BY rowid")
        rows = await cursor.fetchall()
        return [
            FunctionDefinition.model_validate(json.loads(row["definition_json"]))
            for row in rows
        ]

    # ==================== Persistent key/value ====================

    async def put_value(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value under key."""
        async with self._lock:
            await self._db.execute("""
                INSERT OR REPLACE INTO persistent_state (key, value_json, saved_at)
                VALUES (?, ?, ?)
            """, (key, json.dumps(value), time.time()))
            await self._db.commit()

    async def get_value(self, key: str) -> Optional[Any]:
        """Get a stored value, or None."""
        cursor = await self._db.execute(
            "SELECT value_json FROM persistent_state WHERE key = ?",
            (key,)
        )
        row = await cursor.fetchone()
        if not row or row["value_json"] is None:
            return None
        return json.loads(row["value_json"])

    async def delete_value(self, key: str) -> bool:
        """Delete a stored value."""
        async with self._lock:
            result = await self._db.execute(
                "DELETE FROM persistent_state WHERE key = ?",
                (key,)
            )
            await self._db.commit()
            return result.rowcount > 0

    async def list_value_keys(self, prefix: str = "") -> list[str]:
        """List stored keys starting with prefix."""
        cursor = await self._db.execute(
            "SELECT key FROM persistent_state WHERE key LIKE ? ORDER BY key",
            (f"{prefix}%",)
        )
        rows = await cursor.fetchall()
        return [row["key"] for row in rows]

    # ==================== Run history ====================

    async def record_job_run(
        self,
        job_id: str,
        trigger_type: str,
        status: str,
        started_at: float,
        reason: Optional[str] = None,
        context_id: Optional[int] = None,
        error: Optional[str] = None,
    ) -> int:
        """Append a job run to the history."""
        async with self._lock:
            cursor = await self._db.execute("""
                INSERT INTO job_runs
                (job_id, trigger_type, reason, context_id, status, error, started_at, finished_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                job_id,
                trigger_type,
                reason,
                context_id,
                status,
                error,
                started_at,
                time.time(),
            ))
            await self._db.commit()
            return cursor.lastrowid

    async def get_job_runs(self, job_id: str, limit: int = 50) -> list[JobRunRecord]:
        """Most recent runs of a job, newest first."""
        cursor = await self._db.execute("""
            SELECT * FROM job_runs
            WHERE job_id = ?
            ORDER BY started_at DESC, id DESC
            LIMIT ?
        """, (job_id, limit))
        rows = await cursor.fetchall()
        return [
            JobRunRecord(
                id=row["id"],
                job_id=row["job_id"],
                trigger_type=row["trigger_type"],
                reason=row["reason"],
                context_id=row["context_id"],
                status=row["status"],
                error=row["error"],
                started_at=row["started_at"],
                finished_at=row["finished_at"],
            )
            for row in rows
        ]

    async def cleanup_old_runs(self, keep_hours: int = 24 * 7) -> int:
        """Remove run history older than keep_hours."""
        async with self._lock:
            cutoff = time.time() - (keep_hours * 3600)
            result = await self._db.execute(
                "DELETE FROM job_runs WHERE started_at < ?",
                (cutoff,)
            )
            await self._db.commit()
            return result.rowcount
