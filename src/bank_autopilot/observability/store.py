"""SQLite-based run history store."""

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite

from .models import RunRecord, RunStatus, RunTrigger


class RunStore:
    """Async SQLite store for recipe run history.

    Keeps one row per playback so that last-run status can be reported
    per recipe and failures can be diagnosed after the fact.
    """

    def __init__(self, db_path: Path | None = None):
        """Initialize RunStore.

        Args:
            db_path: Path to SQLite database. Defaults to the configured database path.
        """
        if db_path is None:
            from ..config import settings

            db_path = settings.get_database_path()
        self.db_path = db_path
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create schema if not exists."""
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA journal_mode = WAL")
                await db.execute("PRAGMA busy_timeout = 5000")

                await db.execute("""
                    CREATE TABLE IF NOT EXISTS automation_runs (
                        run_id TEXT PRIMARY KEY,
                        recipe_id TEXT NOT NULL,
                        recipe_name TEXT NOT NULL,
                        trigger TEXT NOT NULL,
                        status TEXT NOT NULL,
                        started_at TEXT NOT NULL,
                        completed_at TEXT,
                        steps_completed INTEGER DEFAULT 0,
                        total_steps INTEGER DEFAULT 0,
                        failed_step INTEGER,
                        scraping_method TEXT,
                        scrape_outcome TEXT,
                        transaction_count INTEGER DEFAULT 0,
                        error TEXT
                    )
                """)

                await db.execute("CREATE INDEX IF NOT EXISTS idx_runs_recipe ON automation_runs(recipe_id)")
                await db.execute("CREATE INDEX IF NOT EXISTS idx_runs_started_at ON automation_runs(started_at)")
                await db.commit()

            self._initialized = True

    async def create_run(self, run: RunRecord) -> None:
        """Insert a new run record."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO automation_runs (
                    run_id, recipe_id, recipe_name, trigger, status, started_at, completed_at,
                    steps_completed, total_steps, failed_step, scraping_method, scrape_outcome,
                    transaction_count, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    run.run_id,
                    run.recipe_id,
                    run.recipe_name,
                    run.trigger.value,
                    run.status.value,
                    run.started_at.isoformat(),
                    run.completed_at.isoformat() if run.completed_at else None,
                    run.steps_completed,
                    run.total_steps,
                    run.failed_step,
                    run.scraping_method,
                    run.scrape_outcome,
                    run.transaction_count,
                    run.error,
                ),
            )
            await db.commit()

    async def finish_run(self, run: RunRecord) -> None:
        """Write the terminal state of a run."""
        await self.initialize()

        completed_at = run.completed_at or datetime.now(UTC)
        error = run.error[:2000] if run.error else None

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE automation_runs
                SET status = ?, completed_at = ?, steps_completed = ?, total_steps = ?,
                    failed_step = ?, scraping_method = ?, scrape_outcome = ?,
                    transaction_count = ?, error = ?
                WHERE run_id = ?
            """,
                (
                    run.status.value,
                    completed_at.isoformat(),
                    run.steps_completed,
                    run.total_steps,
                    run.failed_step,
                    run.scraping_method,
                    run.scrape_outcome,
                    run.transaction_count,
                    error,
                    run.run_id,
                ),
            )
            await db.commit()

    async def get_run(self, run_id: str) -> RunRecord | None:
        """Get a single run by ID."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM automation_runs WHERE run_id = ?", (run_id,)) as cursor:
                row = await cursor.fetchone()
                if row:
                    return self._row_to_run(row)
        return None

    async def get_history(
        self,
        limit: int = 50,
        recipe_id: str | None = None,
        status: RunStatus | None = None,
    ) -> list[RunRecord]:
        """Get run history, newest first, with optional filtering."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row

            query = "SELECT * FROM automation_runs"
            params: list = []
            conditions = []

            if recipe_id:
                conditions.append("recipe_id = ?")
                params.append(recipe_id)

            if status:
                conditions.append("status = ?")
                params.append(status.value)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY started_at DESC LIMIT ?"
            params.append(limit)

            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_run(row) for row in rows]

    async def cleanup_old_runs(self, days: int = 90) -> int:
        """Delete finished runs older than N days. Returns count deleted."""
        await self.initialize()

        cutoff = (datetime.now(UTC) - timedelta(days=days)).isoformat()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM automation_runs WHERE started_at < ? AND status != ?",
                (cutoff, RunStatus.RUNNING.value),
            )
            await db.commit()
            return cursor.rowcount

    @staticmethod
    def _row_to_run(row: aiosqlite.Row) -> RunRecord:
        return RunRecord(
            run_id=row["run_id"],
            recipe_id=row["recipe_id"],
            recipe_name=row["recipe_name"],
            trigger=RunTrigger(row["trigger"]),
            status=RunStatus(row["status"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
            steps_completed=row["steps_completed"],
            total_steps=row["total_steps"],
            failed_step=row["failed_step"],
            scraping_method=row["scraping_method"],
            scrape_outcome=row["scrape_outcome"],
            transaction_count=row["transaction_count"],
            error=row["error"],
        )
