"""Interaction recorder: turns a live user session into recorded steps.

The capture script runs inside the page and reports each click, input and
select through a CDP runtime binding (``Runtime.addBinding``). Every payload is
a JSON step that is validated on arrival against the step union. Payloads
that fail validation are logged and dropped.

Key behaviours:
- The script is installed for every new document and injected immediately,
  then re-injected on every navigation (including in-page history changes).
  A window flag makes repeated injection a no-op.
- Clicks and inputs inside the recorder's own overlays are ignored in the page.
- Password fields never leave the page: the value is sent as ``[REDACTED]``
  and the step is marked sensitive.
- Consecutive input events on the same element within the debounce window
  collapse into the latest one, host-side, using the page's timestamps.
"""

import asyncio
import json
import logging
from collections.abc import Callable

from pydantic import ValidationError

from ..browser import BrowserSession, SessionEvent
from ..exceptions import BrowserError
from .models import STEP_ADAPTER, InputStep, RecordingStep

logger = logging.getLogger(__name__)

BINDING_NAME = "__bankAutopilotEmit"
RECORDER_FLAG = "__bankAutopilotRecorder"
CONTROL_SELECTOR = "#recording-controls, #playback-controls"

DEBOUNCE_MS = 1000
MAX_TEXT_LENGTH = 100
NEARBY_LABEL_DISTANCE = 200

CAPTURE_SCRIPT = r"""
(function() {
  if (window.%(flag)s) return;
  window.%(flag)s = true;

  const BINDING = '%(binding)s';
  const CONTROL_SELECTOR = '%(controls)s';
  const CLICKABLE = 'button, a, input, select, textarea, label, summary, [role], [onclick]';

  function identify(el) {
    const rect = el.getBoundingClientRect();
    let text = (el.textContent || '').trim();
    if (text.length > %(max_text)d) text = text.substring(0, %(max_text)d);

    let ariaLabel = el.getAttribute('aria-label');
    const labelledBy = el.getAttribute('aria-labelledby');
    if (!ariaLabel && labelledBy) {
      const ref = document.getElementById(labelledBy);
      ariaLabel = ref ? (ref.textContent || '').trim() : null;
    }

    const nearbyLabels = [];
    document.querySelectorAll('label').forEach(function(label) {
      const labelRect = label.getBoundingClientRect();
      const distance = Math.abs(labelRect.top - rect.top) + Math.abs(labelRect.left - rect.left);
      if (distance < %(nearby)d) nearbyLabels.push((label.textContent || '').trim());
    });
    if (el.id) {
      const associated = document.querySelector('label[for="' + CSS.escape(el.id) + '"]');
      if (associated) nearbyLabels.push((associated.textContent || '').trim());
    }

    return {
      text: text,
      ariaLabel: ariaLabel,
      placeholder: el.getAttribute('placeholder'),
      title: el.getAttribute('title'),
      role: el.getAttribute('role') || el.tagName.toLowerCase(),
      tagName: el.tagName.toLowerCase(),
      inputType: (el.getAttribute('type') || '').toLowerCase() || null,
      nearbyLabels: nearbyLabels.filter(function(l) { return l && l.length > 0; }),
      coordinates: {x: rect.left + rect.width / 2, y: rect.top + rect.height / 2},
      viewport: {width: window.innerWidth, height: window.innerHeight, scrollX: window.scrollX, scrollY: window.scrollY}
    };
  }

  function emit(step) {
    step.timestamp = Date.now();
    try {
      window[BINDING](JSON.stringify(step));
    } catch (e) {
      // binding missing after teardown
    }
  }

  function isControl(el) {
    return !!(el && el.closest && el.closest(CONTROL_SELECTOR));
  }

  function isSensitive(el) {
    return el.tagName === 'INPUT' && (el.type || '').toLowerCase() === 'password';
  }

  function fieldLabel(el) {
    return el.getAttribute('placeholder') || el.getAttribute('name') || el.getAttribute('aria-label') || null;
  }

  function onClick(event) {
    const target = event.target instanceof Element ? event.target : null;
    if (!target || isControl(target)) return;
    const el = target.closest(CLICKABLE) || target;
    if (el.tagName === 'SELECT') return;
    emit({type: 'click', identification: identify(el)});
  }

  function onInput(event) {
    const el = event.target;
    if (!el || !(el.tagName === 'INPUT' || el.tagName === 'TEXTAREA') || isControl(el)) return;
    const sensitive = isSensitive(el);
    emit({
      type: 'input',
      identification: identify(el),
      value: sensitive ? '[REDACTED]' : el.value,
      isSensitive: sensitive,
      fieldLabel: sensitive ? fieldLabel(el) : null
    });
  }

  function onChange(event) {
    const el = event.target;
    if (!el || el.tagName !== 'SELECT' || isControl(el)) return;
    emit({type: 'select', identification: identify(el), value: el.value});
  }

  document.addEventListener('click', onClick, true);
  document.addEventListener('input', onInput, true);
  document.addEventListener('change', onChange, true);

  window.%(flag)sTeardown = function() {
    document.removeEventListener('click', onClick, true);
    document.removeEventListener('input', onInput, true);
    document.removeEventListener('change', onChange, true);
    window.%(flag)s = false;
  };
})();
""" % {
    "flag": RECORDER_FLAG,
    "binding": BINDING_NAME,
    "controls": CONTROL_SELECTOR,
    "max_text": MAX_TEXT_LENGTH,
    "nearby": NEARBY_LABEL_DISTANCE,
}

TEARDOWN_SCRIPT = f"window.{RECORDER_FLAG}Teardown && window.{RECORDER_FLAG}Teardown()"


def _same_element(a: RecordingStep, b: RecordingStep) -> bool:
    if a.identification is None or b.identification is None:
        return False
    return a.identification.model_dump(exclude={"viewport"}) == b.identification.model_dump(exclude={"viewport"})


class StepCollector:
    """Ordered step buffer with input debouncing."""

    def __init__(self, debounce_ms: int = DEBOUNCE_MS):
        self.debounce_ms = debounce_ms
        self._steps: list[RecordingStep] = []

    def add(self, step: RecordingStep) -> bool:
        """Append a step. Returns False when it replaced the previous input instead."""
        if isinstance(step, InputStep) and self._steps:
            last = self._steps[-1]
            if isinstance(last, InputStep) and _same_element(last, step) and step.timestamp - last.timestamp <= self.debounce_ms:
                self._steps[-1] = step
                return False
        self._steps.append(step)
        return True

    @property
    def steps(self) -> list[RecordingStep]:
        return list(self._steps)

    def __len__(self) -> int:
        return len(self._steps)


class InteractionRecorder:
    """Records user interactions in a browser session as ``RecordingStep`` objects."""

    def __init__(
        self,
        session: BrowserSession,
        debounce_ms: int = DEBOUNCE_MS,
        on_step: Callable[[RecordingStep], None] | None = None,
    ):
        self.session = session
        self.on_step = on_step
        self._collector = StepCollector(debounce_ms=debounce_ms)
        self._unsubscribers: list[Callable[[], None]] = []
        self._pending_tasks: set[asyncio.Task] = set()
        self._init_script_id: str | None = None
        self._recording = False
        self.start_url: str | None = None

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def steps(self) -> list[RecordingStep]:
        return self._collector.steps

    async def start(self, url: str) -> None:
        """Load the page and begin capturing interactions."""
        if self._recording:
            raise BrowserError("Recorder is already running")

        await self.session.add_binding(BINDING_NAME)
        self._unsubscribers.append(self.session.events.on(SessionEvent.BINDING_CALLED, self._on_binding_called))
        self._unsubscribers.append(self.session.events.on(SessionEvent.DID_NAVIGATE, self._on_navigated))
        self._init_script_id = await self.session.add_init_script(CAPTURE_SCRIPT)
        self._recording = True
        self.start_url = url

        await self.session.navigate(url)
        await self._inject()
        logger.info(f"Recording started at {url}")

    async def stop(self) -> list[RecordingStep]:
        """Remove all listeners and return the captured steps in order."""
        if not self._recording:
            return self.steps
        self._recording = False

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        if self._pending_tasks:
            await asyncio.gather(*list(self._pending_tasks), return_exceptions=True)
            self._pending_tasks.clear()

        if not self.session.is_closed:
            try:
                if self._init_script_id:
                    await self.session.remove_init_script(self._init_script_id)
                await self.session.evaluate(TEARDOWN_SCRIPT)
            except BrowserError as e:
                logger.debug(f"Recorder teardown skipped: {e}")
        self._init_script_id = None

        steps = self.steps
        logger.info(f"Recording stopped with {len(steps)} steps")
        return steps

    async def _inject(self) -> None:
        if not self._recording or self.session.is_closed:
            return
        try:
            await self.session.evaluate(CAPTURE_SCRIPT)
        except BrowserError as e:
            # Page may be mid-navigation; the new-document script covers it
            logger.debug(f"Capture script injection deferred: {e}")

    def _on_navigated(self, payload: dict) -> None:
        if not self._recording:
            return
        logger.debug(f"Re-injecting capture script after navigation to {payload.get('url', '')}")
        task = asyncio.get_running_loop().create_task(self._inject())
        self._pending_tasks.add(task)
        task.add_done_callback(self._pending_tasks.discard)

    def _on_binding_called(self, payload: dict) -> None:
        if not self._recording or payload.get("name") != BINDING_NAME:
            return
        self.handle_payload(payload.get("payload", ""))

    def handle_payload(self, raw: str) -> RecordingStep | None:
        """Validate one page event and add it to the sequence."""
        try:
            step = STEP_ADAPTER.validate_python(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Dropping malformed recorder event: {e}")
            return None

        self._collector.add(step)
        if step.is_sensitive:
            logger.debug(f"Captured sensitive {step.type} step (value withheld)")
        else:
            logger.debug(f"Captured {step.type} step on '{step.identification.describe() if step.identification else ''}'")
        if self.on_step is not None:
            self.on_step(step)
        return step
