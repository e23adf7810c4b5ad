"""CLI interface for bank-autopilot."""

import asyncio
import functools
import json

import anyio
import typer

from .config import settings
from .exceptions import AutopilotError, ScheduleConfigError
from .recipes.models import InputStep, Recipe, ScheduleConfig

app = typer.Typer(help="Record bank export flows once, replay them on a schedule")


async def _prompt_sensitive(step: InputStep) -> str:
    label = step.field_label or step.identification.describe()
    prompt = functools.partial(typer.prompt, f"Value for '{label}'", hide_input=True)
    return await anyio.to_thread.run_sync(prompt)


def _store():
    from .recipes.store import RecipeStore

    return RecipeStore(db_path=settings.get_database_path())


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


@app.command()
def record(
    url: str = typer.Argument(..., help="Page to start recording from"),
    name: str = typer.Option(..., "--name", "-n", help="Recipe name"),
    account: str = typer.Option(None, "--account", "-a", help="Account the transactions belong to"),
    institution: str = typer.Option(None, "--institution", "-i", help="Bank name, used for column mappings"),
) -> None:
    """Record a new recipe in a visible browser window."""
    from .browser import CDPBrowserSession
    from .recipes.recorder import InteractionRecorder

    async def _record() -> Recipe | None:
        session = await CDPBrowserSession.launch(settings, headless=False)
        try:
            recorder = InteractionRecorder(
                session,
                on_step=lambda step: print(f"  [{step.type}] {step.identification.describe() if step.identification else step.value}"),
            )
            await recorder.start(url)
            print("Recording. Perform the export flow in the browser, then press Enter here.")
            await anyio.to_thread.run_sync(input)
            steps = await recorder.stop()
        finally:
            await session.close()

        if not steps:
            return None
        recipe = Recipe(name=name, start_url=url, account_id=account, institution=institution, steps=steps)
        return await _store().create(recipe)

    try:
        recipe = asyncio.run(_record())
    except AutopilotError as e:
        print(f"Error: {e}")
        raise typer.Exit(1) from e

    if recipe is None:
        print("No steps were captured; nothing saved.")
        raise typer.Exit(1)
    print(f"Saved recipe '{recipe.name}' ({recipe.id}) with {len(recipe.steps)} steps")
    if recipe.sensitive_step_count:
        print(f"{recipe.sensitive_step_count} sensitive field(s) will be asked for at playback")


@app.command()
def play(
    recipe_id: str = typer.Argument(..., help="Recipe ID"),
    headless: bool = typer.Option(None, "--headless/--headed", help="Override browser.headless"),
) -> None:
    """Replay one recipe and extract its transactions."""
    from .engine import create_engine

    async def _play() -> dict | None:
        store = _store()
        recipe = await store.get(recipe_id)
        if recipe is None:
            return None
        engine = create_engine(settings, sensitive_values=_prompt_sensitive, headless=headless, store=store)
        report = await engine.run_recipe(recipe)
        return report.to_dict()

    result = asyncio.run(_play())
    if result is None:
        print(f"Error: Recipe '{recipe_id}' not found")
        raise typer.Exit(1)
    _print_json(result)


@app.command("run-all")
def run_all() -> None:
    """Replay every recipe once, in name order."""
    from .engine import create_engine
    from .scheduler import RecipeScheduler

    async def _run_all() -> dict:
        store = _store()
        engine = create_engine(settings, sensitive_values=_prompt_sensitive, store=store)
        scheduler = RecipeScheduler(engine, store, settings.schedule)
        batch = await scheduler.run_all_now()
        return batch.to_dict() if batch else {}

    _print_json(asyncio.run(_run_all()))


@app.command()
def recipes() -> None:
    """List saved recipes."""
    items = asyncio.run(_store().list_all())
    if not items:
        print("No recipes saved. Use 'bank-autopilot record URL --name NAME' to create one.")
        return
    for recipe in items:
        last = recipe.last_run_at.isoformat(timespec="minutes") if recipe.last_run_at else "never"
        method = recipe.last_scraping_method.value if recipe.last_scraping_method else "-"
        print(f"{recipe.id}  {recipe.name:<30} {len(recipe.steps):>3} steps  last run: {last} ({method})")


@app.command()
def delete(recipe_id: str = typer.Argument(..., help="Recipe ID")) -> None:
    """Delete a recipe."""
    if not asyncio.run(_store().delete(recipe_id)):
        print(f"Error: Recipe '{recipe_id}' not found")
        raise typer.Exit(1)
    print(f"Deleted recipe {recipe_id}")


@app.command()
def schedule(
    cron: str = typer.Option(None, "--cron", help="Five-field cron expression"),
    interval: str = typer.Option(None, "--interval", help="Preset: hourly, every_4_hours, every_6_hours, every_12_hours, daily, weekly"),
    disable: bool = typer.Option(False, "--disable", help="Turn scheduled runs off"),
) -> None:
    """Show or change the batch schedule."""
    from .scheduler import cron_for_interval, persist_schedule, validate_cron

    if cron is None and interval is None and not disable:
        print(f"Enabled: {settings.schedule.enabled}")
        print(f"Cron: {settings.schedule.cron_expression}")
        return

    try:
        expression = cron_for_interval(interval) if interval else validate_cron(cron or settings.schedule.cron_expression)
    except ScheduleConfigError as e:
        print(f"Error: {e}")
        raise typer.Exit(1) from e

    persist_schedule(settings, ScheduleConfig(cron_expression=expression, enabled=not disable))
    state = "disabled" if disable else "enabled"
    print(f"Schedule {state}: {expression}")


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum number of runs"),
    recipe_id: str = typer.Option(None, "--recipe", "-r", help="Only runs of this recipe"),
) -> None:
    """Show recent recipe runs."""
    from .observability import RunStore

    runs = asyncio.run(RunStore(db_path=settings.get_database_path()).get_history(limit=limit, recipe_id=recipe_id))
    for run in runs:
        steps = f"{run.steps_completed}/{run.total_steps}"
        print(f"{run.started_at.isoformat(timespec='seconds')}  {run.recipe_name:<30} {run.status.value:<10} {steps:>7}  {run.transaction_count} txns")


@app.command()
def serve() -> None:
    """Run the scheduler until interrupted."""
    from .engine import create_engine
    from .observability import setup_structured_logging
    from .scheduler import RecipeScheduler, persist_schedule

    setup_structured_logging(settings.server.logging_level)

    async def _serve() -> None:
        store = _store()
        engine = create_engine(settings, store=store)
        scheduler = RecipeScheduler(
            engine,
            store,
            settings.schedule,
            on_config_change=functools.partial(persist_schedule, settings),
        )
        if not scheduler.init_from_settings():
            print("Scheduling is disabled. Enable it with 'bank-autopilot schedule --interval daily'.")
            return
        print(f"Scheduler running with '{scheduler.cron_expression}'. Press Ctrl+C to stop.")
        try:
            await asyncio.Event().wait()
        finally:
            await scheduler.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        print("Stopped.")


@app.command()
def config() -> None:
    """Show current configuration."""
    print(f"Vision provider: {settings.scraper.vision_provider}")
    print(f"Vision model: {settings.scraper.vision_model or settings.llm.model_name}")
    print(f"LLM provider: {settings.llm.provider}")
    print(f"Headless: {settings.browser.headless}")
    print(f"Profile dir: {settings.browser.get_user_data_dir()}")
    print(f"Proxy: {settings.browser.proxy_server or '(none)'}")
    print(f"Retry attempts: {settings.playback.retry_attempts}")
    print(f"Schedule: {settings.schedule.cron_expression} ({'enabled' if settings.schedule.enabled else 'disabled'})")
    print(f"Database: {settings.get_database_path()}")
    print(f"Results: {settings.get_results_dir()}")


if __name__ == "__main__":
    app()
