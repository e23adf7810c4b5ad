"""MCP server exposing recipe runs, the schedule and run history as tools."""

import functools
import json
import logging
from contextlib import asynccontextmanager

from fastmcp import FastMCP

from .config import settings
from .engine import create_engine
from .exceptions import PlaybackBusyError, ScheduleConfigError
from .observability import RunStatus, RunStore, RunTrigger, setup_structured_logging
from .recipes.models import ScheduleConfig
from .recipes.store import RecipeStore
from .scheduler import RecipeScheduler, cron_for_interval, persist_schedule

logger = logging.getLogger("bank_autopilot")
logger.setLevel(getattr(logging, settings.server.logging_level.upper()))


def serve() -> FastMCP:
    """Create the MCP server; the scheduler is armed for the server's lifetime."""
    setup_structured_logging(settings.server.logging_level)

    db_path = settings.get_database_path()
    store = RecipeStore(db_path=db_path)
    run_store = RunStore(db_path=db_path)
    # No interactive channel here: recipes with sensitive fields end incomplete
    engine = create_engine(settings, store=store)
    scheduler = RecipeScheduler(
        engine,
        store,
        settings.schedule,
        on_config_change=functools.partial(persist_schedule, settings),
    )

    @asynccontextmanager
    async def lifespan(_server: FastMCP):
        scheduler.init_from_settings()
        try:
            yield
        finally:
            await scheduler.stop()

    server = FastMCP("bank_autopilot", lifespan=lifespan)

    @server.tool()
    async def recipe_list() -> str:
        """
        List saved recipes.

        Returns:
            JSON list of recipes with step counts and last run details
        """
        recipes = await store.list_all()
        return json.dumps(
            {
                "recipes": [
                    {
                        "id": r.id,
                        "name": r.name,
                        "institution": r.institution,
                        "account_id": r.account_id,
                        "start_url": r.start_url,
                        "steps": len(r.steps),
                        "sensitive_steps": r.sensitive_step_count,
                        "last_run_at": r.last_run_at.isoformat() if r.last_run_at else None,
                        "last_scraping_method": r.last_scraping_method.value if r.last_scraping_method else None,
                    }
                    for r in recipes
                ],
                "count": len(recipes),
            },
            indent=2,
        )

    @server.tool()
    async def recipe_run(recipe_id: str) -> str:
        """
        Replay one recipe and extract its transactions.

        Args:
            recipe_id: ID of the recipe (see recipe_list)

        Returns:
            JSON run report including the extracted transactions
        """
        recipe = await store.get(recipe_id)
        if recipe is None:
            return f"Error: Recipe '{recipe_id}' not found"
        try:
            report = await engine.run_recipe(recipe, trigger=RunTrigger.MANUAL)
        except PlaybackBusyError as e:
            return f"Error: {e}"
        data = report.to_dict()
        data["transactions"] = [t.model_dump(mode="json", exclude_none=True) for t in report.transactions]
        return json.dumps(data, indent=2)

    @server.tool()
    async def run_all_now() -> str:
        """
        Run every recipe once, in name order. No-op if a batch is already running.

        Returns:
            JSON batch summary
        """
        batch = await scheduler.run_all_now(trigger=RunTrigger.RUN_ALL)
        if batch is None:
            return json.dumps({"success": False, "message": "A batch is already running", **scheduler.get_status()})
        return json.dumps(batch.to_dict(), indent=2)

    @server.tool()
    async def run_cancel() -> str:
        """
        Cancel the recipe run in progress by closing its browser.

        Returns:
            JSON with whether a run was cancelled
        """
        cancelled = await engine.cancel()
        return json.dumps({"success": cancelled, "message": "Run cancelled" if cancelled else "Nothing is running"})

    @server.tool()
    async def scheduler_status() -> str:
        """
        Current schedule and batch state.

        Returns:
            JSON with is_running, current_recording_name, last_run_at, cron_expression and enabled
        """
        return json.dumps(scheduler.get_status(), indent=2)

    @server.tool()
    async def scheduler_configure(
        enabled: bool,
        cron_expression: str | None = None,
        interval: str | None = None,
    ) -> str:
        """
        Change the batch schedule and persist it.

        Args:
            enabled: Whether scheduled runs are on
            cron_expression: Five-field cron expression
            interval: Preset instead of a cron expression (hourly, every_4_hours, every_6_hours,
                every_12_hours, daily, weekly)

        Returns:
            JSON scheduler status after the change
        """
        try:
            expression = cron_for_interval(interval) if interval else cron_expression or scheduler.cron_expression
            status = await scheduler.apply_config(ScheduleConfig(cron_expression=expression, enabled=enabled))
        except ScheduleConfigError as e:
            return f"Error: {e}"
        return json.dumps(status, indent=2)

    @server.tool()
    async def run_history(
        limit: int = 20,
        recipe_id: str | None = None,
        status_filter: str | None = None,
    ) -> str:
        """
        List recent recipe runs with optional filtering.

        Args:
            limit: Maximum number of runs to return (default 20)
            recipe_id: Only runs of this recipe
            status_filter: Optional status filter (running, succeeded, incomplete, failed, cancelled)

        Returns:
            JSON list of recent runs
        """
        status = None
        if status_filter:
            try:
                status = RunStatus(status_filter)
            except ValueError:
                return f"Error: Invalid status '{status_filter}'. Use: {', '.join(s.value for s in RunStatus)}"

        runs = await run_store.get_history(limit=limit, recipe_id=recipe_id, status=status)
        return json.dumps(
            {
                "runs": [
                    {
                        "run_id": r.run_id[:8],
                        "recipe": r.recipe_name,
                        "trigger": r.trigger.value,
                        "status": r.status.value,
                        "steps": f"{r.steps_completed}/{r.total_steps}",
                        "failed_step": r.failed_step,
                        "method": r.scraping_method,
                        "transactions": r.transaction_count,
                        "started": r.started_at.isoformat(),
                        "duration_sec": round(r.duration_seconds, 1) if r.duration_seconds else None,
                        "error": r.error,
                    }
                    for r in runs
                ],
                "count": len(runs),
            },
            indent=2,
        )

    return server


def main() -> None:
    """Entry point for MCP server."""
    transport = settings.server.transport
    server_instance = serve()

    if transport == "stdio":
        server_instance.run(transport="stdio")
    elif transport in ("streamable-http", "sse"):
        logger.info(f"Starting bank-autopilot MCP server (transport: {transport})")
        logger.info(f"HTTP server at http://{settings.server.host}:{settings.server.port}/mcp")
        server_instance.run(transport=transport, host=settings.server.host, port=settings.server.port)
    else:
        raise ValueError(f"Unknown transport: {transport}")


if __name__ == "__main__":
    main()
