"""Page snapshot for element resolution.

A single script evaluation collects every candidate element from the main
document and each same-origin iframe. Every candidate is stamped with a stable
``data-autopilot-ref`` attribute, so the Python-side waterfall can name an element
and the action scripts can find it again. Cross-origin frames are recorded as
inaccessible and otherwise skipped.
"""

import json
from dataclasses import dataclass, field
from typing import Any

REF_ATTR = "data-autopilot-ref"
FRAME_ATTR = "data-autopilot-frame"

CANDIDATE_SELECTOR = (
    "button, a, input, textarea, select, summary, label, "
    "[role], [aria-label], [title], [placeholder], [onclick], [tabindex]"
)

_SNAPSHOT_SCRIPT = r"""
(function(params) {
  const REF_ATTR = '%(ref_attr)s';
  const FRAME_ATTR = '%(frame_attr)s';
  const SELECTOR = '%(selector)s';
  window.__autopilotRefCounter = window.__autopilotRefCounter || 0;

  function refFor(el) {
    let ref = el.getAttribute(REF_ATTR);
    if (!ref) {
      window.__autopilotRefCounter += 1;
      ref = 'r' + window.__autopilotRefCounter;
      el.setAttribute(REF_ATTR, ref);
    }
    return ref;
  }

  function clean(value, limit) {
    return (value || '').replace(/\s+/g, ' ').trim().substring(0, limit || 200);
  }

  function isVisible(el, rect) {
    if (el.offsetParent !== null || el.tagName === 'BODY') return true;
    const view = el.ownerDocument.defaultView;
    return !!view && view.getComputedStyle(el).position === 'fixed' && rect.width > 0 && rect.height > 0;
  }

  function describe(el, frame) {
    const rect = el.getBoundingClientRect();
    return {
      ref: refFor(el),
      frame: frame,
      tag: el.tagName.toLowerCase(),
      type: (el.getAttribute('type') || '').toLowerCase(),
      role: (el.getAttribute('role') || '').toLowerCase(),
      text: clean(el.innerText || el.textContent),
      placeholder: clean(el.getAttribute('placeholder')),
      ariaLabel: clean(el.getAttribute('aria-label')),
      title: clean(el.getAttribute('title')),
      id: el.id || '',
      name: el.getAttribute('name') || '',
      visible: isVisible(el, rect),
      rect: {x: rect.left, y: rect.top, width: rect.width, height: rect.height}
    };
  }

  function collect(doc, frame, out) {
    doc.querySelectorAll(SELECTOR).forEach(function(el) {
      out.candidates.push(describe(el, frame));
    });
    doc.querySelectorAll('label').forEach(function(label) {
      const control = label.querySelector('input, textarea, select');
      out.labels.push({
        frame: frame,
        text: clean(label.textContent),
        forId: label.getAttribute('for') || '',
        controlRef: control ? refFor(control) : null
      });
    });
  }

  const out = {candidates: [], labels: [], frames: [], pointHit: null};
  collect(document, 0, out);

  let index = 0;
  document.querySelectorAll('iframe').forEach(function(iframe) {
    index += 1;
    iframe.setAttribute(FRAME_ATTR, String(index));
    let accessible = false;
    try {
      const doc = iframe.contentDocument;
      if (doc && doc.body) {
        collect(doc, index, out);
        accessible = true;
      }
    } catch (e) {
      accessible = false;
    }
    out.frames.push({index: index, accessible: accessible, src: iframe.src || ''});
  });

  if (params.point) {
    const x = params.point.x + (params.point.scrollX || 0) - window.scrollX;
    const y = params.point.y + (params.point.scrollY || 0) - window.scrollY;
    const inView = x >= 0 && y >= 0 && x <= window.innerWidth && y <= window.innerHeight;
    const hit = inView ? document.elementFromPoint(x, y) : null;
    if (hit && hit.tagName !== 'HTML' && hit.tagName !== 'BODY') {
      const firstRef = function(sel) {
        const child = hit.querySelector(sel);
        return child ? refFor(child) : null;
      };
      out.pointHit = describe(hit, 0);
      out.pointHit.children = {
        input: firstRef('input:not([type=button]):not([type=submit]):not([type=reset]), textarea'),
        select: firstRef('select'),
        button: firstRef('button, input[type=submit], input[type=button], [role=button]'),
        link: firstRef('a[href], [role=link]')
      };
    }
  }

  return out;
})(%(params)s)
"""


@dataclass(frozen=True, slots=True)
class Rect:
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0


@dataclass(frozen=True, slots=True)
class Candidate:
    """A live element as seen by the snapshot script."""

    ref: str
    frame: int = 0
    tag: str = ""
    input_type: str = ""
    role: str = ""
    text: str = ""
    placeholder: str = ""
    aria_label: str = ""
    title: str = ""
    element_id: str = ""
    name: str = ""
    visible: bool = True
    rect: Rect = field(default_factory=Rect)


@dataclass(frozen=True, slots=True)
class LabelInfo:
    text: str
    frame: int = 0
    for_id: str = ""
    control_ref: str | None = None


@dataclass(frozen=True, slots=True)
class FrameInfo:
    index: int
    accessible: bool
    src: str = ""


@dataclass(frozen=True, slots=True)
class PointHit:
    """Element under the recorded point, with the first descendant of each kind."""

    candidate: Candidate
    children: dict[str, str | None] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PageSnapshot:
    candidates: tuple[Candidate, ...] = ()
    labels: tuple[LabelInfo, ...] = ()
    frames: tuple[FrameInfo, ...] = ()
    point_hit: PointHit | None = None

    def in_frame(self, frame: int) -> list[Candidate]:
        return [c for c in self.candidates if c.frame == frame]

    def by_ref(self, ref: str, frame: int = 0) -> Candidate | None:
        for candidate in self.candidates:
            if candidate.ref == ref and candidate.frame == frame:
                return candidate
        return None

    @property
    def accessible_frames(self) -> list[int]:
        return [f.index for f in self.frames if f.accessible]


def build_snapshot_script(point: dict[str, float] | None = None) -> str:
    """Render the snapshot script, optionally with a point to hit-test."""
    return _SNAPSHOT_SCRIPT % {
        "ref_attr": REF_ATTR,
        "frame_attr": FRAME_ATTR,
        "selector": CANDIDATE_SELECTOR,
        "params": json.dumps({"point": point}),
    }


def _candidate_from_dict(data: dict[str, Any]) -> Candidate:
    rect = data.get("rect") or {}
    return Candidate(
        ref=str(data.get("ref", "")),
        frame=int(data.get("frame", 0) or 0),
        tag=str(data.get("tag", "")).lower(),
        input_type=str(data.get("type", "")).lower(),
        role=str(data.get("role", "")).lower(),
        text=str(data.get("text", "") or ""),
        placeholder=str(data.get("placeholder", "") or ""),
        aria_label=str(data.get("ariaLabel", "") or ""),
        title=str(data.get("title", "") or ""),
        element_id=str(data.get("id", "") or ""),
        name=str(data.get("name", "") or ""),
        visible=bool(data.get("visible", True)),
        rect=Rect(
            x=float(rect.get("x", 0) or 0),
            y=float(rect.get("y", 0) or 0),
            width=float(rect.get("width", 0) or 0),
            height=float(rect.get("height", 0) or 0),
        ),
    )


def parse_snapshot(raw: Any) -> PageSnapshot:
    """Convert the script's return value into a ``PageSnapshot``."""
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not isinstance(raw, dict):
        return PageSnapshot()

    candidates = tuple(_candidate_from_dict(c) for c in raw.get("candidates") or [] if isinstance(c, dict))
    labels = tuple(
        LabelInfo(
            text=str(label.get("text", "") or ""),
            frame=int(label.get("frame", 0) or 0),
            for_id=str(label.get("forId", "") or ""),
            control_ref=label.get("controlRef"),
        )
        for label in raw.get("labels") or []
        if isinstance(label, dict)
    )
    frames = tuple(
        FrameInfo(index=int(f.get("index", 0)), accessible=bool(f.get("accessible")), src=str(f.get("src", "") or ""))
        for f in raw.get("frames") or []
        if isinstance(f, dict)
    )

    point_hit = None
    hit = raw.get("pointHit")
    if isinstance(hit, dict):
        point_hit = PointHit(candidate=_candidate_from_dict(hit), children=dict(hit.get("children") or {}))

    return PageSnapshot(candidates=candidates, labels=labels, frames=frames, point_hit=point_hit)
