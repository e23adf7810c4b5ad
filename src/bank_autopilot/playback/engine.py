"""Playback engine: replays a recipe against a browser session.

The run is an explicit state machine (see ``state.PlaybackPhase``):

    idle -> loading_start_url -> executing_step[i] -> (waiting_for_settle) -> executing_step[i+1]
         -> ... -> all_steps_done -> succeeded | incomplete | cancelled

Steps run strictly in recorded order. A step whose element cannot be resolved
after the configured attempts halts the run as "incomplete"; earlier steps
are not rolled back. Closing the browser session cancels the run at the next
suspension point.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from ..browser import BrowserSession, SessionEvent
from ..config import PlaybackSettings
from ..exceptions import AutopilotError, BrowserError, NavigationTimeout, PlaybackBusyError, PlaybackCancelled, ResolutionFailure
from ..recipes.models import ClickStep, InputStep, NavigationStep, Recipe, RecordingStep, SelectStep
from ..resolver import ElementHandle, ElementResolver
from .actions import click_script, input_script, select_script
from .clock import Clock, SystemClock
from .state import PlaybackPhase, PlaybackState

logger = logging.getLogger(__name__)

SensitiveValueProvider = Callable[[InputStep], Awaitable[str]]

# Element kind each step type acts on; clicks use the recorded role
_EXPECTED_ROLE = {"input": "input", "select": "select"}


class PlaybackStatus(str, Enum):
    SUCCESS = "success"
    INCOMPLETE = "incomplete"
    CANCELLED = "cancelled"


@dataclass
class PlaybackResult:
    """Outcome of a playback run."""

    status: PlaybackStatus
    steps_completed: int = 0
    total_steps: int = 0
    failed_step: int | None = None
    error: str | None = None
    attempted_strategies: list[str] = field(default_factory=list)
    phases: list[PlaybackPhase] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == PlaybackStatus.SUCCESS


class PlaybackEngine:
    """Replays recipes one at a time.

    Args:
        playback_settings: Retry and timing configuration.
        clock: Time source for every wait; defaults to the system clock.
        sensitive_values: Supplies values for sensitive input steps at playback time.
        resolver_factory: Builds the element resolver for a session.
    """

    def __init__(
        self,
        playback_settings: PlaybackSettings | None = None,
        clock: Clock | None = None,
        sensitive_values: SensitiveValueProvider | None = None,
        resolver_factory: Callable[[BrowserSession], ElementResolver] = ElementResolver,
    ):
        self.settings = playback_settings or PlaybackSettings()
        self.clock = clock or SystemClock()
        self.sensitive_values = sensitive_values
        self.resolver_factory = resolver_factory
        self._state: PlaybackState | None = None

    @property
    def state(self) -> PlaybackState | None:
        """The active playback, or None when idle."""
        return self._state

    async def play(self, recipe: Recipe, session: BrowserSession) -> PlaybackResult:
        """Replay every step of ``recipe`` in order."""
        if self._state is not None:
            raise PlaybackBusyError(f"Playback of {self._state.recipe_id} is already running")

        steps = list(recipe.steps)
        state = PlaybackState(recipe_id=recipe.id, total_steps=len(steps))
        self._state = state
        resolver = self.resolver_factory(session)
        load_signal = asyncio.Event()
        unsubscribe = session.events.on(SessionEvent.DID_FINISH_LOAD, lambda _payload: load_signal.set())
        completed = 0

        try:
            state.transition(PlaybackPhase.LOADING_START_URL)
            logger.info(f"Playing '{recipe.name}' ({len(steps)} steps) from {recipe.start_url}")
            load_signal.clear()
            try:
                await session.navigate(recipe.start_url)
            except BrowserError as e:
                self._check_open(session)
                return self._stop(state, PlaybackPhase.INCOMPLETE, completed, error=f"Start URL failed to load: {e}")
            await self._wait_for_load(session, load_signal, "start URL")
            await self._pause(session, self.settings.start_url_settle_delay)

            for index, step in enumerate(steps):
                state.current_step = index + 1
                state.transition(PlaybackPhase.EXECUTING_STEP)
                url_before = await self._page_url(session)
                load_signal.clear()

                try:
                    await self._execute_step(index, step, session, resolver)
                except PlaybackCancelled:
                    raise
                except ResolutionFailure as e:
                    logger.warning(f"Step {index + 1}/{len(steps)} failed: {e}")
                    return self._stop(
                        state,
                        PlaybackPhase.INCOMPLETE,
                        completed,
                        failed_step=index + 1,
                        error=str(e),
                        attempted=e.attempted,
                    )
                except AutopilotError as e:
                    self._check_open(session)
                    url_now = await self._page_url(session)
                    if url_now is not None and url_now == url_before:
                        logger.warning(f"Step {index + 1}/{len(steps)} failed: {e}")
                        return self._stop(state, PlaybackPhase.INCOMPLETE, completed, failed_step=index + 1, error=str(e))
                    logger.info(f"Step {index + 1} raised after the page navigated away; treating as done: {e}")

                url_after = await self._page_url(session)
                if url_after is None or url_after != url_before:
                    state.transition(PlaybackPhase.WAITING_FOR_SETTLE)
                    await self._wait_for_load(session, load_signal, f"step {index + 1}")
                    await self._pause(session, self.settings.hydration_settle_delay)

                completed = index + 1
                if completed < len(steps):
                    await self._pause(session, self.settings.step_pause)

            state.transition(PlaybackPhase.ALL_STEPS_DONE)
            state.transition(PlaybackPhase.SUCCEEDED)
            logger.info(f"Playback of '{recipe.name}' completed all {len(steps)} steps")
            return self._result(state, PlaybackStatus.SUCCESS, completed)

        except PlaybackCancelled as e:
            logger.warning(f"Playback of '{recipe.name}' cancelled: {e}")
            state.transition(PlaybackPhase.CANCELLED)
            return self._result(state, PlaybackStatus.CANCELLED, completed, failed_step=state.current_step or None, error=str(e))

        finally:
            unsubscribe()
            self._state = None

    # --- Steps ---

    async def _execute_step(self, index: int, step: RecordingStep, session: BrowserSession, resolver: ElementResolver) -> None:
        if isinstance(step, NavigationStep):
            logger.info(f"Step {index + 1}: navigate to {step.url}")
            await session.navigate(step.url)
            return

        handle = await self._resolve_with_retry(index, step, session, resolver)
        target = step.identification.describe()

        if isinstance(step, ClickStep):
            logger.info(f"Step {index + 1}: click '{target}'")
            await self._run_action(session, click_script(handle))
            await self._pause(session, self.settings.click_settle_delay)

        elif isinstance(step, InputStep):
            if step.is_sensitive:
                logger.info(f"Step {index + 1}: sensitive input '{step.field_label or target}', awaiting value")
                value = await self._sensitive_value(step)
                self._check_open(session)
                await self._run_action(session, input_script(handle, value))
            else:
                logger.info(f"Step {index + 1}: input into '{target}'")
                await self._run_action(session, input_script(handle, step.value or ""))
            await self._pause(session, self.settings.input_settle_delay)

        elif isinstance(step, SelectStep):
            logger.info(f"Step {index + 1}: select '{step.value}' in '{target}'")
            await self._run_action(session, select_script(handle, step.value))
            await self._pause(session, self.settings.select_settle_delay)

    async def _resolve_with_retry(
        self,
        index: int,
        step: RecordingStep,
        session: BrowserSession,
        resolver: ElementResolver,
    ) -> ElementHandle:
        attempts = self.settings.retry_attempts
        expected_role = _EXPECTED_ROLE.get(step.type)
        attempted: list[str] = []

        for attempt in range(1, attempts + 1):
            self._check_open(session)
            result = await resolver.resolve(step.identification, expected_role=expected_role)
            if result.found:
                if attempt > 1:
                    logger.info(f"Step {index + 1}: found on attempt {attempt} via {result.strategy}")
                if result.ambiguous:
                    logger.warning(f"Step {index + 1}: several elements matched via {result.strategy}; using the first")
                return result.element

            attempted = result.attempted
            if attempt < attempts:
                delay = self.settings.retry_delay * attempt
                logger.info(f"Step {index + 1}: element not found (attempt {attempt}/{attempts}), retrying in {delay:.1f}s")
                await self._pause(session, delay)

        raise ResolutionFailure(
            f"Step {index + 1} ({step.type} '{step.identification.describe()}') not found after {attempts} attempts; "
            f"tried {', '.join(attempted) or 'no applicable strategy'}",
            step_index=index + 1,
            attempted=attempted,
        )

    async def _sensitive_value(self, step: InputStep) -> str:
        if self.sensitive_values is None:
            raise AutopilotError(f"No value provider for sensitive field '{step.field_label or 'unknown'}'")
        return await self.sensitive_values(step)

    async def _run_action(self, session: BrowserSession, script: str) -> None:
        self._check_open(session)
        try:
            outcome = await session.evaluate(script)
        except BrowserError:
            self._check_open(session)
            raise
        if isinstance(outcome, dict) and not outcome.get("ok", False):
            raise BrowserError(f"Action failed: {outcome.get('error', 'unknown error')}")

    # --- Waiting ---

    async def _wait_for_load(self, session: BrowserSession, load_signal: asyncio.Event, context: str) -> None:
        """Wait for the page's load signal, bounded by the navigation timeout.

        A missed signal is logged as a navigation timeout and playback carries on.
        """
        loaded = await self.clock.wait_for(load_signal, self.settings.navigation_timeout)
        self._check_open(session)
        if not loaded:
            timeout = NavigationTimeout(f"No load signal within {self.settings.navigation_timeout:.0f}s after {context}")
            logger.warning(f"{timeout}; continuing")

    async def _pause(self, session: BrowserSession, seconds: float) -> None:
        await self.clock.sleep(seconds)
        self._check_open(session)

    async def _page_url(self, session: BrowserSession) -> str | None:
        """The current URL, or None while the page is between documents."""
        try:
            return await session.current_url()
        except BrowserError as e:
            self._check_open(session)
            logger.debug(f"Page URL unavailable, assuming navigation in progress: {e}")
            return None

    @staticmethod
    def _check_open(session: BrowserSession) -> None:
        if session.is_closed:
            raise PlaybackCancelled("Browser session was closed")

    # --- Results ---

    def _stop(
        self,
        state: PlaybackState,
        phase: PlaybackPhase,
        completed: int,
        failed_step: int | None = None,
        error: str | None = None,
        attempted: list[str] | None = None,
    ) -> PlaybackResult:
        state.transition(phase)
        status = PlaybackStatus.INCOMPLETE if phase == PlaybackPhase.INCOMPLETE else PlaybackStatus.CANCELLED
        return self._result(state, status, completed, failed_step=failed_step, error=error, attempted=attempted)

    @staticmethod
    def _result(
        state: PlaybackState,
        status: PlaybackStatus,
        completed: int,
        failed_step: int | None = None,
        error: str | None = None,
        attempted: list[str] | None = None,
    ) -> PlaybackResult:
        return PlaybackResult(
            status=status,
            steps_completed=completed,
            total_steps=state.total_steps,
            failed_step=failed_step,
            error=error,
            attempted_strategies=list(attempted or []),
            phases=list(state.history),
        )
