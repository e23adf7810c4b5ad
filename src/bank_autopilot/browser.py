"""Browser session capability used by the recorder, playback engine and scraper.

``BrowserSession`` is the narrow surface the engine depends on. ``CDPBrowserSession``
implements it on top of browser-use's CDP-based session. Commands are sent
session-scoped (with ``session_id``) so they bypass browser-use's watchdogs, and
the Page and Runtime domains are enabled before use.

CDP event handlers are registered once per client and fanned out to Python
listeners, which can be removed individually.
"""

import base64
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .exceptions import BrowserError

if TYPE_CHECKING:
    from browser_use.browser.session import BrowserSession as BUBrowserSession

    from .config import AppSettings

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], None]


class SessionEvent(str, Enum):
    """Events a browser session publishes."""

    DID_FINISH_LOAD = "did_finish_load"
    DID_NAVIGATE = "did_navigate"
    CONSOLE_MESSAGE = "console_message"
    DOWNLOAD = "download"
    BINDING_CALLED = "binding_called"


class SessionEvents:
    """Minimal synchronous event emitter.

    Listener exceptions are logged and never reach the emitter, so one bad
    subscriber cannot break event delivery for the others.
    """

    def __init__(self) -> None:
        self._listeners: dict[SessionEvent, list[Listener]] = {event: [] for event in SessionEvent}

    def on(self, event: SessionEvent, listener: Listener) -> Callable[[], None]:
        """Subscribe to an event. Returns a callable that removes the subscription."""
        self._listeners[event].append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners[event].remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def emit(self, event: SessionEvent, payload: dict[str, Any] | None = None) -> None:
        for listener in list(self._listeners[event]):
            try:
                listener(payload or {})
            except Exception as e:
                logger.warning(f"Listener for {event.value} failed: {e}")

    def listener_count(self, event: SessionEvent) -> int:
        return len(self._listeners[event])


@runtime_checkable
class BrowserSession(Protocol):
    """A controllable, scriptable page host."""

    events: SessionEvents

    @property
    def is_closed(self) -> bool: ...

    async def navigate(self, url: str) -> None: ...

    async def evaluate(self, script: str) -> Any: ...

    async def capture_screenshot(self) -> bytes: ...

    async def current_url(self) -> str: ...

    async def add_init_script(self, source: str) -> str: ...

    async def remove_init_script(self, identifier: str) -> None: ...

    async def add_binding(self, name: str) -> None: ...

    async def close(self) -> None: ...


class CDPBrowserSession:
    """``BrowserSession`` backed by a browser-use session and raw CDP commands."""

    def __init__(self, browser_session: "BUBrowserSession"):
        self._browser_session = browser_session
        self._session_id: str | None = None
        self._closed = False
        self.events = SessionEvents()

    @classmethod
    async def launch(cls, app_settings: "AppSettings", headless: bool | None = None) -> "CDPBrowserSession":
        """Start a browser with the persistent profile and attach to its first tab.

        The profile directory keeps cookies, so a login performed during one
        navigation carries through the rest of the run.
        """
        from browser_use import BrowserProfile
        from browser_use.browser.profile import ProxySettings
        from browser_use.browser.session import BrowserSession as BUBrowserSession

        proxy = None
        if app_settings.browser.proxy_server:
            proxy = ProxySettings(server=app_settings.browser.proxy_server, bypass=app_settings.browser.proxy_bypass)
        profile = BrowserProfile(
            headless=app_settings.browser.headless if headless is None else headless,
            user_data_dir=str(app_settings.browser.get_user_data_dir()),
            proxy=proxy,
        )

        browser_session = BUBrowserSession(browser_profile=profile)
        try:
            await browser_session.start()
        except Exception as e:
            raise BrowserError(f"Failed to start browser: {e}") from e

        session = cls(browser_session)
        try:
            await session.attach()
        except Exception:
            await browser_session.stop()
            raise
        return session

    async def attach(self) -> None:
        """Enable the CDP domains and register event handlers."""
        cdp_session = await self._browser_session.get_or_create_cdp_session()
        self._session_id = cdp_session.session_id
        cdp_client = self._browser_session.cdp_client

        for domain in (cdp_client.send.Page, cdp_client.send.Runtime):
            try:
                await domain.enable(session_id=self._session_id)
            except Exception as e:
                # May already be enabled by the session manager
                logger.debug(f"Domain enable: {e}")

        cdp_client.register.Page.loadEventFired(self._on_load_event_fired)
        cdp_client.register.Page.frameNavigated(self._on_frame_navigated)
        cdp_client.register.Page.navigatedWithinDocument(self._on_navigated_within_document)
        cdp_client.register.Page.downloadWillBegin(self._on_download_will_begin)
        cdp_client.register.Runtime.consoleAPICalled(self._on_console_api_called)
        cdp_client.register.Runtime.bindingCalled(self._on_binding_called)
        logger.debug(f"Attached to CDP session {self._session_id[-8:]}")

    # --- Commands ---

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _require_open(self) -> str:
        if self._closed or self._session_id is None:
            raise BrowserError("Browser session is closed")
        return self._session_id

    async def _send(self, command: Callable[..., Awaitable[dict]], params: dict[str, Any]) -> dict:
        """Send one session-scoped CDP command; transport failures surface as BrowserError."""
        session_id = self._require_open()
        try:
            return await command(params=params, session_id=session_id)
        except Exception as e:
            raise BrowserError(f"CDP command failed: {e}") from e

    async def navigate(self, url: str) -> None:
        result = await self._send(self._browser_session.cdp_client.send.Page.navigate, {"url": url, "transitionType": "typed"})
        if result.get("errorText"):
            raise BrowserError(f"Navigation to {url} failed: {result['errorText']}")

    async def evaluate(self, script: str) -> Any:
        result = await self._send(
            self._browser_session.cdp_client.send.Runtime.evaluate,
            {"expression": script, "returnByValue": True, "awaitPromise": True},
        )
        if result.get("exceptionDetails"):
            details = result["exceptionDetails"]
            message = details.get("exception", {}).get("description") or details.get("text", "Unknown error")
            raise BrowserError(f"Script evaluation failed: {message}")
        return result.get("result", {}).get("value")

    async def capture_screenshot(self) -> bytes:
        result = await self._send(self._browser_session.cdp_client.send.Page.captureScreenshot, {"format": "png"})
        data = result.get("data")
        if not data:
            raise BrowserError("Screenshot returned no data")
        return base64.b64decode(data)

    async def current_url(self) -> str:
        value = await self.evaluate("window.location.href")
        return str(value or "")

    async def add_init_script(self, source: str) -> str:
        result = await self._send(self._browser_session.cdp_client.send.Page.addScriptToEvaluateOnNewDocument, {"source": source})
        return str(result.get("identifier", ""))

    async def remove_init_script(self, identifier: str) -> None:
        if self._closed or not identifier:
            return
        await self._send(self._browser_session.cdp_client.send.Page.removeScriptToEvaluateOnNewDocument, {"identifier": identifier})

    async def add_binding(self, name: str) -> None:
        await self._send(self._browser_session.cdp_client.send.Runtime.addBinding, {"name": name})

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._browser_session.stop()
        except Exception as e:
            logger.warning(f"Error stopping browser session: {e}")

    # --- CDP event handlers (synchronous callbacks) ---

    def _is_ours(self, session_id: str | None) -> bool:
        return session_id is None or session_id == self._session_id

    def _on_load_event_fired(self, event: dict, session_id: str | None) -> None:
        if self._is_ours(session_id):
            self.events.emit(SessionEvent.DID_FINISH_LOAD, {"timestamp": event.get("timestamp")})

    def _on_frame_navigated(self, event: dict, session_id: str | None) -> None:
        frame = event.get("frame", {})
        # Only the top-level frame counts as a page navigation
        if self._is_ours(session_id) and not frame.get("parentId"):
            self.events.emit(SessionEvent.DID_NAVIGATE, {"url": frame.get("url", ""), "in_page": False})

    def _on_navigated_within_document(self, event: dict, session_id: str | None) -> None:
        if self._is_ours(session_id):
            self.events.emit(SessionEvent.DID_NAVIGATE, {"url": event.get("url", ""), "in_page": True})

    def _on_download_will_begin(self, event: dict, session_id: str | None) -> None:
        if self._is_ours(session_id):
            self.events.emit(
                SessionEvent.DOWNLOAD,
                {"url": event.get("url", ""), "suggested_filename": event.get("suggestedFilename", "")},
            )

    def _on_console_api_called(self, event: dict, session_id: str | None) -> None:
        if not self._is_ours(session_id):
            return
        parts = [str(arg.get("value", arg.get("description", ""))) for arg in event.get("args", [])]
        self.events.emit(SessionEvent.CONSOLE_MESSAGE, {"level": event.get("type", "log"), "text": " ".join(parts)})

    def _on_binding_called(self, event: dict, session_id: str | None) -> None:
        if self._is_ours(session_id):
            self.events.emit(SessionEvent.BINDING_CALLED, {"name": event.get("name", ""), "payload": event.get("payload", "")})
