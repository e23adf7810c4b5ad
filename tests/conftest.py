"""Pytest configuration and fixtures for bank-autopilot tests."""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from bank_autopilot.browser import SessionEvent, SessionEvents
from bank_autopilot.exceptions import BrowserError
from bank_autopilot.scraper.scroll import ROW_COUNT_SCRIPT


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "e2e: End-to-end tests requiring a real browser")
    config.addinivalue_line("markers", "integration: Integration tests with a real browser but faked services")
    config.addinivalue_line("markers", "slow: Tests that take longer to run")


class FakeClock:
    """Clock that never waits. Records every sleep and every load wait."""

    def __init__(self, start: datetime | None = None, load_wait_result: bool | None = None):
        self.current = start or datetime(2026, 3, 2, 5, 30, tzinfo=UTC)
        self.sleeps: list[float] = []
        self.waits: list[float] = []
        self.load_wait_result = load_wait_result
        self.on_sleep = None

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=max(seconds, 0))
        if self.on_sleep is not None:
            self.on_sleep(seconds)
        await asyncio.sleep(0)

    async def wait_for(self, event: asyncio.Event, timeout: float) -> bool:
        self.waits.append(timeout)
        await asyncio.sleep(0)
        if self.load_wait_result is not None:
            return self.load_wait_result
        return event.is_set()


def _script_params(script: str) -> dict[str, Any]:
    """Pull the JSON argument out of an ``(function(params) {...})({...})`` script."""
    tail = script.rstrip().rsplit("})(", 1)[1]
    return json.loads(tail[: tail.rfind(")")])


class FakeBrowserSession:
    """Scripted ``BrowserSession``.

    The page is described by plain data: a snapshot for the resolver, raw rows
    for DOM extraction and page metrics for scrolling. Actions are recorded;
    ``on_action`` lets a test simulate what the page does in response.
    """

    def __init__(
        self,
        url: str = "about:blank",
        snapshot: dict | None = None,
        rows: list[dict] | None = None,
        metrics: dict | None = None,
    ):
        self.events = SessionEvents()
        self.url = url
        self.snapshot = snapshot or {"candidates": []}
        self.snapshot_sequence: list[dict] = []
        self.rows = rows or []
        self.metrics = metrics or {"scrollHeight": 800, "clientHeight": 800, "rows": len(self.rows)}
        self.row_counts: list[int] = []
        self.auto_load = True
        self.fail_urls: set[str] = set()
        self.action_results: dict[str, dict] = {}
        self.on_action = None
        self.on_snapshot = None

        self.navigations: list[str] = []
        self.actions: list[tuple[str, dict]] = []
        self.scripts: list[str] = []
        self.bindings: list[str] = []
        self.init_scripts: dict[str, str] = {}
        self.screenshots_taken = 0
        self.snapshot_calls = 0
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _require_open(self) -> None:
        if self._closed:
            raise BrowserError("Browser session is closed")

    def load(self, url: str) -> None:
        """Simulate the page navigating on its own (e.g. after a click)."""
        self.url = url
        self.events.emit(SessionEvent.DID_NAVIGATE, {"url": url})
        if self.auto_load:
            self.events.emit(SessionEvent.DID_FINISH_LOAD, {"url": url})

    async def navigate(self, url: str) -> None:
        self._require_open()
        if url in self.fail_urls:
            raise BrowserError(f"Navigation failed: net::ERR_NAME_NOT_RESOLVED ({url})")
        self.navigations.append(url)
        self.load(url)

    async def evaluate(self, script: str) -> Any:
        self._require_open()
        self.scripts.append(script)

        if "__autopilotRefCounter" in script:
            self.snapshot_calls += 1
            if self.on_snapshot is not None:
                self.on_snapshot(_script_params(script))
            if self.snapshot_sequence:
                return self.snapshot_sequence.pop(0)
            return self.snapshot

        if "element no longer in page" in script:
            params = _script_params(script)
            if "el.click()" in script:
                kind = "click"
            elif "setter.call" in script:
                kind = "input"
            else:
                kind = "select"
            self.actions.append((kind, params))
            if self.on_action is not None:
                self.on_action(kind, params)
            return self.action_results.get(params["ref"], {"ok": True})

        if "isHeader" in script:
            return self.rows
        if "scrollHeight" in script:
            return self.metrics
        if script == ROW_COUNT_SCRIPT:
            if self.row_counts:
                return self.row_counts.pop(0)
            return self.metrics.get("rows", 0)
        return None

    async def capture_screenshot(self) -> bytes:
        self._require_open()
        self.screenshots_taken += 1
        return b"\x89PNG fake " + str(self.screenshots_taken).encode()

    async def current_url(self) -> str:
        self._require_open()
        return self.url

    async def add_init_script(self, source: str) -> str:
        identifier = str(len(self.init_scripts) + 1)
        self.init_scripts[identifier] = source
        return identifier

    async def remove_init_script(self, identifier: str) -> None:
        self.init_scripts.pop(identifier, None)

    async def add_binding(self, name: str) -> None:
        self.bindings.append(name)

    async def close(self) -> None:
        self._closed = True

    def emit_binding(self, name: str, payload: dict | str) -> None:
        raw = payload if isinstance(payload, str) else json.dumps(payload)
        self.events.emit(SessionEvent.BINDING_CALLED, {"name": name, "payload": raw})


def candidate(ref: str, tag: str = "button", text: str = "", **extra: Any) -> dict[str, Any]:
    """Build one snapshot candidate in the page script's wire format."""
    data = {"ref": ref, "frame": 0, "tag": tag, "text": text, "visible": True, "rect": {"x": 0, "y": 0, "width": 80, "height": 24}}
    data.update(extra)
    return data


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_session() -> FakeBrowserSession:
    return FakeBrowserSession()
