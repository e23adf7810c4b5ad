"""Playback state machine."""

from dataclasses import dataclass, field
from enum import Enum

from ..exceptions import PlaybackStateError


class PlaybackPhase(str, Enum):
    IDLE = "idle"
    LOADING_START_URL = "loading_start_url"
    EXECUTING_STEP = "executing_step"
    WAITING_FOR_SETTLE = "waiting_for_settle"
    ALL_STEPS_DONE = "all_steps_done"
    SUCCEEDED = "succeeded"
    INCOMPLETE = "incomplete"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset({PlaybackPhase.SUCCEEDED, PlaybackPhase.INCOMPLETE, PlaybackPhase.CANCELLED})

_STOPPABLE = {PlaybackPhase.INCOMPLETE, PlaybackPhase.CANCELLED}

ALLOWED_TRANSITIONS: dict[PlaybackPhase, frozenset[PlaybackPhase]] = {
    PlaybackPhase.IDLE: frozenset({PlaybackPhase.LOADING_START_URL}),
    PlaybackPhase.LOADING_START_URL: frozenset({PlaybackPhase.EXECUTING_STEP, PlaybackPhase.ALL_STEPS_DONE, *_STOPPABLE}),
    PlaybackPhase.EXECUTING_STEP: frozenset(
        {PlaybackPhase.EXECUTING_STEP, PlaybackPhase.WAITING_FOR_SETTLE, PlaybackPhase.ALL_STEPS_DONE, *_STOPPABLE}
    ),
    PlaybackPhase.WAITING_FOR_SETTLE: frozenset({PlaybackPhase.EXECUTING_STEP, PlaybackPhase.ALL_STEPS_DONE, *_STOPPABLE}),
    PlaybackPhase.ALL_STEPS_DONE: frozenset({PlaybackPhase.SUCCEEDED, PlaybackPhase.CANCELLED}),
    PlaybackPhase.SUCCEEDED: frozenset(),
    PlaybackPhase.INCOMPLETE: frozenset(),
    PlaybackPhase.CANCELLED: frozenset(),
}


@dataclass
class PlaybackState:
    """Progress of the one active playback.

    ``current_step`` is 1-based; 0 means no step has started yet.
    """

    recipe_id: str
    total_steps: int
    current_step: int = 0
    phase: PlaybackPhase = PlaybackPhase.IDLE
    history: list[PlaybackPhase] = field(default_factory=lambda: [PlaybackPhase.IDLE])

    def transition(self, to: PlaybackPhase) -> None:
        if to not in ALLOWED_TRANSITIONS[self.phase]:
            raise PlaybackStateError(f"Illegal playback transition {self.phase.value} -> {to.value}")
        self.phase = to
        self.history.append(to)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES
