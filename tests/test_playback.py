"""Tests for the playback engine and its state machine."""

import asyncio

import pytest
from conftest import FakeBrowserSession, FakeClock, candidate

from bank_autopilot.config import PlaybackSettings
from bank_autopilot.exceptions import BrowserError, PlaybackBusyError, PlaybackStateError
from bank_autopilot.playback import PlaybackEngine, PlaybackPhase, PlaybackState, PlaybackStatus
from bank_autopilot.recipes.models import ClickStep, ElementIdentification, InputStep, NavigationStep, Recipe, SelectStep

START_URL = "https://bank.example/login"

LOGIN_PAGE = {
    "candidates": [
        candidate("r1", "input", "", placeholder="Username"),
        candidate("r2", "input", "", placeholder="Password", type="password"),
        candidate("r3", "button", "Sign in"),
        candidate("r4", "button", "Download"),
        candidate("r5", "select", "", ariaLabel="Date range"),
    ]
}


def _click(text: str) -> ClickStep:
    return ClickStep(identification=ElementIdentification(text=text, role="button"))


def _recipe(*steps) -> Recipe:
    return Recipe(name="Checking export", start_url=START_URL, steps=list(steps))


def _refs(session: FakeBrowserSession) -> list[str]:
    return [params["ref"] for _kind, params in session.actions]


class UnloadingSession(FakeBrowserSession):
    """Reading the URL fails while the page is swapping documents."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.url_failures = 0

    async def current_url(self) -> str:
        if self.url_failures:
            self.url_failures -= 1
            raise BrowserError("Execution context was destroyed")
        return await super().current_url()


@pytest.fixture
def session() -> FakeBrowserSession:
    return FakeBrowserSession(snapshot=LOGIN_PAGE)


class TestPlaybackState:
    def test_happy_transitions(self):
        state = PlaybackState(recipe_id="r", total_steps=1)
        for phase in (
            PlaybackPhase.LOADING_START_URL,
            PlaybackPhase.EXECUTING_STEP,
            PlaybackPhase.WAITING_FOR_SETTLE,
            PlaybackPhase.ALL_STEPS_DONE,
            PlaybackPhase.SUCCEEDED,
        ):
            state.transition(phase)
        assert state.is_terminal

    def test_terminal_phases_are_final(self):
        state = PlaybackState(recipe_id="r", total_steps=1)
        state.transition(PlaybackPhase.LOADING_START_URL)
        state.transition(PlaybackPhase.INCOMPLETE)
        with pytest.raises(PlaybackStateError):
            state.transition(PlaybackPhase.EXECUTING_STEP)

    def test_cannot_skip_start_url(self):
        state = PlaybackState(recipe_id="r", total_steps=1)
        with pytest.raises(PlaybackStateError):
            state.transition(PlaybackPhase.EXECUTING_STEP)


class TestPlayback:
    async def test_login_and_export(self, session):
        """Steps run in recorded order; the sensitive value comes from the provider."""
        asked = []

        async def provide(step):
            asked.append(step.field_label)
            return "s3cret"

        def on_action(kind, params):
            if params["ref"] == "r3":
                session.load("https://bank.example/accounts")

        session.on_action = on_action
        engine = PlaybackEngine(clock=FakeClock(), sensitive_values=provide)
        recipe = _recipe(
            InputStep(identification=ElementIdentification(placeholder="Username"), value="john"),
            InputStep(identification=ElementIdentification(placeholder="Password"), is_sensitive=True, field_label="password"),
            _click("Sign in"),
            _click("Download"),
        )

        result = await engine.play(recipe, session)

        assert result.status == PlaybackStatus.SUCCESS
        assert result.steps_completed == 4
        assert result.failed_step is None
        assert _refs(session) == ["r1", "r2", "r3", "r4"]
        assert session.actions[0] == ("input", {"ref": "r1", "frame": 0, "value": "john"})
        assert session.actions[1][1]["value"] == "s3cret"
        assert asked == ["password"]
        assert session.navigations == [START_URL]
        assert engine.state is None

    async def test_phase_history(self, session):
        session.on_action = lambda kind, params: session.load(f"https://bank.example/page-{len(session.actions)}")
        result = await PlaybackEngine(clock=FakeClock()).play(_recipe(_click("Sign in"), _click("Download")), session)

        assert result.phases == [
            PlaybackPhase.IDLE,
            PlaybackPhase.LOADING_START_URL,
            PlaybackPhase.EXECUTING_STEP,
            PlaybackPhase.WAITING_FOR_SETTLE,
            PlaybackPhase.EXECUTING_STEP,
            PlaybackPhase.WAITING_FOR_SETTLE,
            PlaybackPhase.ALL_STEPS_DONE,
            PlaybackPhase.SUCCEEDED,
        ]

    async def test_waits_between_steps(self, session):
        clock = FakeClock()
        await PlaybackEngine(clock=clock).play(_recipe(_click("Sign in"), _click("Download")), session)

        # start settle, click settle, step pause, click settle
        assert clock.sleeps == [2.0, 1.5, 0.5, 1.5]
        assert clock.waits == [15.0]

    async def test_settle_after_navigation(self, session):
        clock = FakeClock()
        session.on_action = lambda kind, params: session.load("https://bank.example/accounts")
        await PlaybackEngine(clock=clock).play(_recipe(_click("Sign in")), session)

        assert clock.sleeps == [2.0, 1.5, 2.0]
        assert clock.waits == [15.0, 15.0]

    async def test_retry_with_backoff(self, session):
        """The element shows up on the third attempt."""
        session.snapshot_sequence = [{"candidates": []}, {"candidates": []}]
        clock = FakeClock()

        result = await PlaybackEngine(clock=clock).play(_recipe(_click("Download")), session)

        assert result.success
        assert session.snapshot_calls == 3
        assert clock.sleeps == [2.0, 1.0, 2.0, 1.5]

    async def test_retry_attempts_configurable(self, session):
        session.snapshot = {"candidates": []}
        engine = PlaybackEngine(PlaybackSettings(retry_attempts=5, retry_delay=0.5), clock=FakeClock())

        await engine.play(_recipe(_click("Download")), session)

        assert session.snapshot_calls == 5

    async def test_missing_element_is_incomplete(self):
        """The run halts at the missing step; earlier steps stay done."""
        session = FakeBrowserSession(snapshot={"candidates": [candidate("r3", "button", "Sign in")]})
        recipe = _recipe(_click("Sign in"), _click("Export"), _click("Download"))

        result = await PlaybackEngine(clock=FakeClock()).play(recipe, session)

        assert result.status == PlaybackStatus.INCOMPLETE
        assert result.steps_completed == 1
        assert result.failed_step == 2
        assert "Export" in result.error
        assert result.attempted_strategies == ["text_role", "fuzzy_text", "partial_text"]
        assert _refs(session) == ["r3"]
        assert result.phases[-1] == PlaybackPhase.INCOMPLETE
        assert session.snapshot_calls == 4

    async def test_navigation_timeout_continues(self, session):
        """A missing load signal is logged; playback carries on."""
        session.auto_load = False
        clock = FakeClock(load_wait_result=False)
        session.on_action = lambda kind, params: session.load("https://bank.example/accounts")

        result = await PlaybackEngine(clock=clock).play(_recipe(_click("Sign in"), _click("Download")), session)

        assert result.success
        assert result.steps_completed == 2

    async def test_start_url_failure_is_incomplete(self, session):
        session.fail_urls = {START_URL}

        result = await PlaybackEngine(clock=FakeClock()).play(_recipe(_click("Download")), session)

        assert result.status == PlaybackStatus.INCOMPLETE
        assert result.steps_completed == 0
        assert "Start URL failed to load" in result.error
        assert session.actions == []

    async def test_failed_action_is_incomplete(self, session):
        session.action_results = {"r4": {"ok": False, "error": "element no longer in page"}}

        result = await PlaybackEngine(clock=FakeClock()).play(_recipe(_click("Download")), session)

        assert result.status == PlaybackStatus.INCOMPLETE
        assert result.failed_step == 1
        assert "element no longer in page" in result.error

    async def test_action_error_after_navigation_counts_as_done(self, session):
        """The page unloading under the action script is how a submit looks."""
        session.action_results = {"r3": {"ok": False, "error": "Execution context was destroyed"}}
        session.on_action = lambda kind, params: session.load("https://bank.example/accounts")

        result = await PlaybackEngine(clock=FakeClock()).play(_recipe(_click("Sign in")), session)

        assert result.success

    async def test_unreadable_url_after_click_waits_for_load(self):
        session = UnloadingSession(snapshot=LOGIN_PAGE)

        def after_click(kind, params):
            if params["ref"] == "r3":
                session.url_failures = 1
                session.load("https://bank.example/accounts")

        session.on_action = after_click
        clock = FakeClock()

        result = await PlaybackEngine(clock=clock).play(_recipe(_click("Sign in"), _click("Download")), session)

        assert result.success
        assert result.steps_completed == 2
        assert result.phases.count(PlaybackPhase.WAITING_FOR_SETTLE) == 1
        assert clock.waits == [15.0, 15.0]
        assert _refs(session) == ["r3", "r4"]

    async def test_sensitive_without_provider_is_incomplete(self, session):
        recipe = _recipe(InputStep(identification=ElementIdentification(placeholder="Password"), is_sensitive=True))

        result = await PlaybackEngine(clock=FakeClock()).play(recipe, session)

        assert result.status == PlaybackStatus.INCOMPLETE
        assert "No value provider" in result.error
        assert session.actions == []

    async def test_select_and_navigation_steps(self, session):
        recipe = _recipe(
            SelectStep(identification=ElementIdentification(aria_label="Date range"), value="last_90_days"),
            NavigationStep(url="https://bank.example/activity"),
        )

        result = await PlaybackEngine(clock=FakeClock()).play(recipe, session)

        assert result.success
        assert session.actions == [("select", {"ref": "r5", "frame": 0, "value": "last_90_days"})]
        assert session.navigations == [START_URL, "https://bank.example/activity"]

    async def test_closing_session_cancels(self, session):
        def close_page(kind, params):
            session._closed = True

        session.on_action = close_page

        result = await PlaybackEngine(clock=FakeClock()).play(_recipe(_click("Sign in"), _click("Download")), session)

        assert result.status == PlaybackStatus.CANCELLED
        assert result.steps_completed == 0
        assert result.failed_step == 1
        assert result.phases[-1] == PlaybackPhase.CANCELLED
        assert _refs(session) == ["r3"]

    async def test_one_playback_at_a_time(self, session):
        engine = PlaybackEngine(clock=FakeClock())
        recipe = _recipe(_click("Download"))

        first = asyncio.create_task(engine.play(recipe, session))
        await asyncio.sleep(0)
        assert engine.state is not None
        assert engine.state.phase == PlaybackPhase.LOADING_START_URL

        with pytest.raises(PlaybackBusyError):
            await engine.play(recipe, FakeBrowserSession(snapshot=LOGIN_PAGE))

        assert (await first).success
        assert engine.state is None

    async def test_empty_recipe_succeeds(self, session):
        result = await PlaybackEngine(clock=FakeClock()).play(_recipe(), session)

        assert result.success
        assert result.total_steps == 0
        assert PlaybackPhase.EXECUTING_STEP not in result.phases
