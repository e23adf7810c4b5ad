"""Data models for recorded recipes and extracted transactions.

These models sit on the boundary between the in-page capture script, the
recipe database and the finance ledger, so they are validated strictly and
serialized with camelCase aliases (``ariaLabel``, ``isSensitive``, ``startUrl``).
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

REDACTED = "[REDACTED]"

_IDENTIFYING_FIELDS = ("text", "aria_label", "placeholder", "title", "coordinates")


class BoundaryModel(BaseModel):
    """Base for models exchanged with the page and the database."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Coordinates(BoundaryModel):
    """Element centre in viewport pixels at capture time."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    x: float
    y: float


class Viewport(BoundaryModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    width: float
    height: float
    scroll_x: float = 0
    scroll_y: float = 0


class ElementIdentification(BoundaryModel):
    """Fingerprint of a DOM element captured at recording time.

    Immutable once captured. At least one of text, aria label, placeholder,
    title or coordinates must be present.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="ignore")

    text: str | None = None
    aria_label: str | None = None
    placeholder: str | None = None
    title: str | None = None
    role: str | None = None
    tag_name: str | None = None
    input_type: str | None = None
    nearby_labels: tuple[str, ...] = ()
    coordinates: Coordinates | None = None
    viewport: Viewport | None = None

    @field_validator("text", "aria_label", "placeholder", "title", "role", "tag_name", "input_type", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value

    @field_validator("nearby_labels", mode="before")
    @classmethod
    def _clean_labels(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(str(v).strip() for v in value if v and str(v).strip())
        return value

    @model_validator(mode="after")
    def _require_identifying_attribute(self) -> ElementIdentification:
        if all(getattr(self, name) is None for name in _IDENTIFYING_FIELDS):
            raise ValueError("identification needs at least one of text, ariaLabel, placeholder, title or coordinates")
        return self

    def describe(self) -> str:
        """Short human-readable label for logs."""
        for value in (self.text, self.aria_label, self.placeholder, self.title):
            if value:
                return value[:60]
        if self.coordinates:
            return f"@({self.coordinates.x:.0f},{self.coordinates.y:.0f})"
        return "<unknown>"


class _StepBase(BoundaryModel):
    value: str | None = None
    is_sensitive: bool = False
    field_label: str | None = None
    timestamp: int = Field(default=0, description="Milliseconds since the epoch, page clock")

    @model_validator(mode="before")
    @classmethod
    def _redact_sensitive_value(cls, data: Any) -> Any:
        if isinstance(data, dict) and (data.get("is_sensitive") or data.get("isSensitive")):
            data = dict(data)
            data.pop("is_sensitive", None)
            data["isSensitive"] = True
            data.pop("value", None)
            data["value"] = REDACTED
        return data


class ClickStep(_StepBase):
    type: Literal["click"] = "click"
    identification: ElementIdentification


class InputStep(_StepBase):
    type: Literal["input"] = "input"
    identification: ElementIdentification


class SelectStep(_StepBase):
    type: Literal["select"] = "select"
    identification: ElementIdentification


class NavigationStep(_StepBase):
    """Explicit navigation to a URL; targets no element."""

    type: Literal["navigation"] = "navigation"
    url: str
    identification: ElementIdentification | None = None


RecordingStep = Annotated[ClickStep | InputStep | SelectStep | NavigationStep, Field(discriminator="type")]

STEP_ADAPTER: TypeAdapter[RecordingStep] = TypeAdapter(RecordingStep)
STEPS_ADAPTER: TypeAdapter[list[RecordingStep]] = TypeAdapter(list[RecordingStep])


def steps_to_json(steps: list[RecordingStep]) -> str:
    """Serialize steps to the persisted JSON array."""
    return STEPS_ADAPTER.dump_json(steps, by_alias=True, exclude_none=True).decode("utf-8")


def steps_from_json(raw: str | bytes | None) -> list[RecordingStep]:
    """Load steps from the persisted JSON array."""
    if not raw:
        return []
    return STEPS_ADAPTER.validate_json(raw)


class ScrapingMethod(str, Enum):
    """How transactions were extracted from the final page."""

    DOM = "dom"
    VISION = "vision"


def _new_recipe_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Recipe(BoundaryModel):
    """A named, ordered sequence of recorded steps plus a start URL."""

    id: str = Field(default_factory=_new_recipe_id)
    name: str
    start_url: str
    account_id: str | None = None
    institution: str | None = None
    steps: list[RecordingStep] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    last_run_at: datetime | None = None
    last_scraping_method: ScrapingMethod | None = None

    @field_validator("name", "start_url")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @property
    def sensitive_step_count(self) -> int:
        return sum(1 for step in self.steps if step.is_sensitive)


class ScrapedTransaction(BoundaryModel):
    """One extracted transaction row, ready for the ledger.

    ``amount`` is a signed decimal string; negative values are expenses.
    """

    date: str = ""
    description: str = ""
    amount: str = ""
    balance: str | None = None
    category: str | None = None
    index: int = Field(ge=1)
    confidence: int = Field(ge=0, le=100)


class ScheduleConfig(BoundaryModel):
    """Process-wide schedule: a five-field cron expression and an on/off switch."""

    cron_expression: str = "0 6 * * *"
    enabled: bool = False
