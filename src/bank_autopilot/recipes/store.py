"""SQLite-backed recipe storage.

Recipes live in the ``export_recipes`` table. Steps are stored as an opaque
JSON array and only interpreted by the recorder and the playback engine.
"""

import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from .models import Recipe, ScrapingMethod, steps_from_json, steps_to_json

logger = logging.getLogger(__name__)


class RecipeStore:
    """Async SQLite store for export recipes."""

    def __init__(self, db_path: Path | None = None):
        """Initialize RecipeStore.

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
                    CREATE TABLE IF NOT EXISTS export_recipes (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        url TEXT NOT NULL,
                        institution TEXT,
                        account_id TEXT,
                        steps TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        last_run_at TEXT,
                        last_scraping_method TEXT
                    )
                """)
                await db.execute("CREATE INDEX IF NOT EXISTS idx_recipes_name ON export_recipes(name)")
                await db.commit()

            self._initialized = True

    async def list_all(self) -> list[Recipe]:
        """All recipes ordered by name."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM export_recipes ORDER BY name COLLATE NOCASE, id") as cursor:
                rows = await cursor.fetchall()

        recipes = []
        for row in rows:
            try:
                recipes.append(self._row_to_recipe(row))
            except ValueError as e:
                logger.warning(f"Skipping unreadable recipe {row['id']}: {e}")
        return recipes

    async def get(self, recipe_id: str) -> Recipe | None:
        """Get a single recipe by ID."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM export_recipes WHERE id = ?", (recipe_id,)) as cursor:
                row = await cursor.fetchone()
                if row:
                    return self._row_to_recipe(row)
        return None

    async def create(self, recipe: Recipe) -> Recipe:
        """Insert a new recipe."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO export_recipes (
                    id, name, url, institution, account_id, steps,
                    created_at, updated_at, last_run_at, last_scraping_method
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    recipe.id,
                    recipe.name,
                    recipe.start_url,
                    recipe.institution,
                    recipe.account_id,
                    steps_to_json(recipe.steps),
                    recipe.created_at.isoformat(),
                    recipe.updated_at.isoformat(),
                    recipe.last_run_at.isoformat() if recipe.last_run_at else None,
                    recipe.last_scraping_method.value if recipe.last_scraping_method else None,
                ),
            )
            await db.commit()

        logger.info(f"Created recipe '{recipe.name}' ({recipe.id}) with {len(recipe.steps)} steps")
        return recipe

    async def update(self, recipe: Recipe) -> Recipe:
        """Replace name, URL, ownership and steps of an existing recipe."""
        await self.initialize()

        updated = recipe.model_copy(update={"updated_at": datetime.now(UTC)})
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE export_recipes
                SET name = ?, url = ?, institution = ?, account_id = ?, steps = ?, updated_at = ?
                WHERE id = ?
            """,
                (
                    updated.name,
                    updated.start_url,
                    updated.institution,
                    updated.account_id,
                    steps_to_json(updated.steps),
                    updated.updated_at.isoformat(),
                    updated.id,
                ),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise KeyError(f"Recipe not found: {recipe.id}")

        return updated

    async def delete(self, recipe_id: str) -> bool:
        """Delete a recipe. Returns False if it did not exist."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM export_recipes WHERE id = ?", (recipe_id,))
            await db.commit()
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted recipe {recipe_id}")
        return deleted

    async def mark_run(self, recipe_id: str, when: datetime, method: ScrapingMethod | None) -> None:
        """Record a completed run and the scraping method it used."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE export_recipes
                SET last_run_at = ?, last_scraping_method = COALESCE(?, last_scraping_method)
                WHERE id = ?
            """,
                (when.isoformat(), method.value if method else None, recipe_id),
            )
            await db.commit()

    @staticmethod
    def _row_to_recipe(row: aiosqlite.Row) -> Recipe:
        return Recipe(
            id=row["id"],
            name=row["name"],
            start_url=row["url"],
            institution=row["institution"],
            account_id=row["account_id"],
            steps=steps_from_json(row["steps"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            last_run_at=datetime.fromisoformat(row["last_run_at"]) if row["last_run_at"] else None,
            last_scraping_method=ScrapingMethod(row["last_scraping_method"]) if row["last_scraping_method"] else None,
        )
