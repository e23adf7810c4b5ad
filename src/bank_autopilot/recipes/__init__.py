"""Recipes: recorded, replayable bank export flows.

A recipe is the ordered list of clicks, inputs and selects a user performed to
reach a bank's transaction listing, plus the start URL. Recipes are recorded
once with ``InteractionRecorder`` and replayed by the playback engine.
"""

from .models import (
    REDACTED,
    ClickStep,
    ElementIdentification,
    InputStep,
    NavigationStep,
    Recipe,
    RecordingStep,
    ScheduleConfig,
    ScrapedTransaction,
    ScrapingMethod,
    SelectStep,
    steps_from_json,
    steps_to_json,
)
from .recorder import InteractionRecorder, StepCollector
from .store import RecipeStore

__all__ = [
    "REDACTED",
    "ClickStep",
    "ElementIdentification",
    "InputStep",
    "InteractionRecorder",
    "NavigationStep",
    "Recipe",
    "RecipeStore",
    "RecordingStep",
    "ScheduleConfig",
    "ScrapedTransaction",
    "ScrapingMethod",
    "SelectStep",
    "StepCollector",
    "steps_from_json",
    "steps_to_json",
]
