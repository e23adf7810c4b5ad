"""Strategy waterfall that maps an ``ElementIdentification`` onto a page snapshot.

Pure functions only: given the same snapshot and identification, the result is
the same element. Strategies run in a fixed order and the first one that
matches wins:

1. text_role      visible text or placeholder contains, or is contained by, the recorded text
2. aria_label     exact, then substring
3. placeholder    exact
4. title          exact
5. nearby_label   label text, then ``for`` or descendant control
6. fuzzy_text     best normalized Levenshtein similarity above 0.75
7. coordinates    element under the recorded point, or a descendant of the right kind
8. iframe         strategies 1-4 plus first visible input, per same-origin frame
9. partial_text   case-insensitive substring, both sides at least 3 characters

Hidden candidates (not laid out) are ignored everywhere except the coordinate
descendant search.
"""

from collections.abc import Callable
from dataclasses import dataclass, field

from ..recipes.models import ElementIdentification
from .similarity import normalize_text, similarity
from .snapshot import Candidate, PageSnapshot

FUZZY_THRESHOLD = 0.75
PARTIAL_MIN_LENGTH = 3

BUTTON_INPUT_TYPES = frozenset({"button", "submit", "reset", "image"})

STRATEGY_ORDER = (
    "text_role",
    "aria_label",
    "placeholder",
    "title",
    "nearby_label",
    "fuzzy_text",
    "coordinates",
    "iframe",
    "partial_text",
)


@dataclass(frozen=True, slots=True)
class ElementHandle:
    """Reference to a stamped live element, addressable by the action scripts."""

    ref: str
    frame: int = 0
    tag: str = ""


@dataclass(slots=True)
class ResolutionResult:
    """Outcome of one waterfall run."""

    element: ElementHandle | None = None
    strategy: str | None = None
    attempted: list[str] = field(default_factory=list)
    ambiguous: bool = False
    score: float | None = None

    @property
    def found(self) -> bool:
        return self.element is not None


@dataclass(frozen=True, slots=True)
class _Match:
    candidate: Candidate
    ambiguous: bool = False
    score: float | None = None


def normalize_role(role: str | None) -> str | None:
    if not role:
        return None
    role = role.strip().lower()
    if role == "a":
        return "link"
    if role == "textarea":
        return "input"
    return role or None


def matches_role(candidate: Candidate, role: str | None) -> bool:
    """Whether a candidate is of the expected kind (button, input, select, link, or a tag)."""
    if role is None:
        return True
    match role:
        case "button":
            return (
                candidate.tag == "button"
                or candidate.role == "button"
                or (candidate.tag == "input" and candidate.input_type in BUTTON_INPUT_TYPES)
            )
        case "input":
            return candidate.tag == "textarea" or (candidate.tag == "input" and candidate.input_type not in BUTTON_INPUT_TYPES)
        case "select":
            return candidate.tag == "select"
        case "link":
            return candidate.tag == "a" or candidate.role == "link"
        case _:
            return candidate.tag == role or candidate.role == role


def _fuzzy_pool(candidate: Candidate, role: str | None) -> bool:
    match role:
        case "button":
            return matches_role(candidate, "button") or candidate.tag == "a"
        case "input":
            return candidate.tag in ("input", "textarea")
        case _:
            return candidate.tag in ("button", "a", "input") or candidate.role == "button"


def _pick(matches: list[Candidate], exact: Callable[[Candidate], bool]) -> _Match | None:
    """Prefer a unique match, then a unique exact match, otherwise the first (flagged ambiguous)."""
    if not matches:
        return None
    if len(matches) == 1:
        return _Match(matches[0])
    exact_matches = [c for c in matches if exact(c)]
    if len(exact_matches) == 1:
        return _Match(exact_matches[0])
    first = exact_matches[0] if exact_matches else matches[0]
    return _Match(first, ambiguous=True)


def _visible(candidates: list[Candidate]) -> list[Candidate]:
    return [c for c in candidates if c.visible]


# --- Individual strategies ---
#
# Each returns a match or None. Whether a strategy is attempted at all is
# decided by ``_applicable``.


def by_text_and_role(ident: ElementIdentification, role: str | None, pool: list[Candidate]) -> _Match | None:
    text = normalize_text(ident.text)
    matches = []
    for c in _visible(pool):
        if not matches_role(c, role):
            continue
        el_text = normalize_text(c.text)
        if el_text and (text in el_text or el_text in text):
            matches.append(c)
        elif c.placeholder and text in c.placeholder:
            matches.append(c)
    return _pick(matches, lambda c: normalize_text(c.text) == text or c.placeholder == text)


def by_aria_label(ident: ElementIdentification, pool: list[Candidate]) -> _Match | None:
    aria = normalize_text(ident.aria_label)
    visible = [c for c in _visible(pool) if c.aria_label]
    exact = [c for c in visible if c.aria_label == aria]
    if exact:
        return _pick(exact, lambda c: True)
    return _pick([c for c in visible if aria in c.aria_label], lambda c: False)


def by_placeholder(ident: ElementIdentification, pool: list[Candidate]) -> _Match | None:
    placeholder = normalize_text(ident.placeholder)
    return _pick([c for c in _visible(pool) if c.placeholder == placeholder], lambda c: True)


def by_title(ident: ElementIdentification, pool: list[Candidate]) -> _Match | None:
    title = normalize_text(ident.title)
    return _pick([c for c in _visible(pool) if c.title == title], lambda c: True)


def by_nearby_label(ident: ElementIdentification, snapshot: PageSnapshot) -> _Match | None:
    main_frame = _visible(snapshot.in_frame(0))
    for label_text in ident.nearby_labels:
        targets: list[Candidate] = []
        for label in snapshot.labels:
            if label.frame != 0 or label_text not in label.text:
                continue
            target = None
            if label.for_id:
                target = next((c for c in main_frame if c.element_id == label.for_id), None)
            if target is None and label.control_ref:
                target = next((c for c in main_frame if c.ref == label.control_ref), None)
            if target is not None and target not in targets:
                targets.append(target)
        if targets:
            return _Match(targets[0], ambiguous=len(targets) > 1)
    return None


def by_fuzzy_text(ident: ElementIdentification, role: str | None, pool: list[Candidate]) -> _Match | None:
    target = normalize_text(ident.text).lower()
    best: Candidate | None = None
    best_score = FUZZY_THRESHOLD
    for c in _visible(pool):
        if not _fuzzy_pool(c, role):
            continue
        texts = [t for t in (normalize_text(c.text).lower(), c.placeholder.lower(), c.aria_label.lower()) if t]
        for text in texts:
            score = similarity(target, text)
            if score > best_score:
                best_score = score
                best = c
    if best is None:
        return None
    return _Match(best, score=best_score)


def by_coordinates(role: str | None, snapshot: PageSnapshot) -> _Match | None:
    hit = snapshot.point_hit
    if hit is None:
        return None
    if role not in ("input", "select", "button", "link") or matches_role(hit.candidate, role):
        return _Match(hit.candidate)

    # Wrong kind under the point: look inside it, hidden descendants included
    child_ref = hit.children.get(role)
    if child_ref:
        child = snapshot.by_ref(child_ref, frame=0)
        if child is not None:
            return _Match(child)
        return _Match(Candidate(ref=child_ref, frame=0, tag=role))
    return None


def by_iframe(ident: ElementIdentification, role: str | None, snapshot: PageSnapshot) -> _Match | None:
    for frame in snapshot.accessible_frames:
        pool = snapshot.in_frame(frame)
        match = None
        if ident.text and role:
            match = by_text_and_role(ident, role, pool)
        if match is None and ident.aria_label:
            match = by_aria_label(ident, pool)
        if match is None and ident.placeholder:
            match = by_placeholder(ident, pool)
        if match is None and ident.title:
            match = by_title(ident, pool)
        if match is None and role == "input":
            first_input = next((c for c in _visible(pool) if matches_role(c, "input")), None)
            if first_input is not None:
                match = _Match(first_input)
        if match is not None:
            return match
    return None


def by_partial_text(ident: ElementIdentification, pool: list[Candidate]) -> _Match | None:
    text = normalize_text(ident.text).lower()
    if len(text) < PARTIAL_MIN_LENGTH:
        return None
    matches = []
    for c in _visible(pool):
        el_text = normalize_text(c.text).lower()
        if len(el_text) < PARTIAL_MIN_LENGTH:
            continue
        if text in el_text or el_text in text:
            matches.append(c)
    return _pick(matches, lambda c: normalize_text(c.text).lower() == text)


def _applicable(name: str, ident: ElementIdentification, role: str | None, snapshot: PageSnapshot) -> bool:
    match name:
        case "text_role":
            return bool(ident.text and role)
        case "aria_label":
            return bool(ident.aria_label)
        case "placeholder":
            return bool(ident.placeholder)
        case "title":
            return bool(ident.title)
        case "nearby_label":
            return bool(ident.nearby_labels)
        case "fuzzy_text":
            return bool(ident.text)
        case "coordinates":
            return ident.coordinates is not None
        case "iframe":
            return bool(snapshot.accessible_frames)
        case "partial_text":
            return bool(ident.text)
    return False


def run_waterfall(ident: ElementIdentification, snapshot: PageSnapshot, expected_role: str | None = None) -> ResolutionResult:
    """Try each strategy in order and return the first match.

    Args:
        ident: Fingerprint captured at recording time.
        snapshot: Current page state.
        expected_role: Kind of element the step acts on; defaults to the recorded role.

    Returns:
        ResolutionResult. When nothing matched, ``element`` is None and
        ``attempted`` lists every strategy that was tried, in order.
    """
    role = normalize_role(expected_role) or normalize_role(ident.role)
    main_frame = snapshot.in_frame(0)
    result = ResolutionResult()

    runners: dict[str, Callable[[], _Match | None]] = {
        "text_role": lambda: by_text_and_role(ident, role, main_frame),
        "aria_label": lambda: by_aria_label(ident, main_frame),
        "placeholder": lambda: by_placeholder(ident, main_frame),
        "title": lambda: by_title(ident, main_frame),
        "nearby_label": lambda: by_nearby_label(ident, snapshot),
        "fuzzy_text": lambda: by_fuzzy_text(ident, role, main_frame),
        "coordinates": lambda: by_coordinates(role, snapshot),
        "iframe": lambda: by_iframe(ident, role, snapshot),
        "partial_text": lambda: by_partial_text(ident, main_frame),
    }

    for name in STRATEGY_ORDER:
        if not _applicable(name, ident, role, snapshot):
            continue
        result.attempted.append(name)
        match = runners[name]()
        if match is not None:
            c = match.candidate
            result.element = ElementHandle(ref=c.ref, frame=c.frame, tag=c.tag)
            result.strategy = name
            result.ambiguous = match.ambiguous
            result.score = match.score
            return result

    return result
