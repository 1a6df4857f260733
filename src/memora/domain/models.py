"""
Domain models for decks, notes, cards and review events.

Cards and review events are plain frozen dataclasses with no I/O. Deck
configuration is a pydantic model so invalid settings are rejected the moment
they are written, long before the scheduling function could see them.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from memora.domain.constants import (
    DEFAULT_EASY_BONUS,
    DEFAULT_EASY_INTERVAL,
    DEFAULT_GRADUATING_INTERVAL,
    DEFAULT_HARD_MULTIPLIER,
    DEFAULT_INTERVAL_MODIFIER,
    DEFAULT_LEARNING_STEPS,
    DEFAULT_MAXIMUM_EASE,
    DEFAULT_MAXIMUM_INTERVAL,
    DEFAULT_MINIMUM_EASE,
    DEFAULT_NEW_CARDS_PER_DAY,
    DEFAULT_RELEARNING_STEPS,
    DEFAULT_REQUEST_RETENTION,
    DEFAULT_STARTING_EASE,
    FSRS_DEFAULT_WEIGHTS,
    FSRS_WEIGHT_COUNT,
    MAX_REQUEST_RETENTION,
    MIN_REQUEST_RETENTION,
)
from memora.domain.errors import CorruptStateError, InvalidConfigurationError


class CardQueue(IntEnum):
    NEW = 0
    LEARNING = 1
    REVIEW = 2
    RELEARNING = 3

    @property
    def is_learning(self) -> bool:
        return self in (CardQueue.LEARNING, CardQueue.RELEARNING)


class Rating(IntEnum):
    """Answer buttons, numbered like Anki's revlog (1=Again .. 4=Easy)."""

    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4

    @classmethod
    def parse(cls, value: Any) -> Rating:
        """Accept an int (1-4), a Rating, or a case-insensitive name."""
        if isinstance(value, Rating):
            return value
        if isinstance(value, str) and not value.isdigit():
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown rating: {value!r}") from None
        return cls(int(value))


class CardType(str, Enum):
    RECOGNITION = "recognition"  # word -> meaning
    PRODUCTION = "production"  # meaning -> word
    LISTENING = "listening"  # audio -> word


def note_card_types() -> tuple[CardType, ...]:
    """The fixed set of cards every note fans out into."""
    return (CardType.RECOGNITION, CardType.PRODUCTION, CardType.LISTENING)


class SchedulingModel(str, Enum):
    SM2 = "sm2"
    FSRS = "fsrs"


class SyncState(str, Enum):
    """Per-row replication state: synced -> locally_modified -> pushing -> synced | push_failed."""

    SYNCED = "synced"
    LOCALLY_MODIFIED = "locally_modified"
    PUSHING = "pushing"
    PUSH_FAILED = "push_failed"


class DeckConfig(BaseModel):
    """Per-deck scheduling settings. Immutable; replace the whole model to change it."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    new_cards_per_day: int = Field(default=DEFAULT_NEW_CARDS_PER_DAY, ge=0)
    learning_steps: tuple[float, ...] = DEFAULT_LEARNING_STEPS
    relearning_steps: tuple[float, ...] = DEFAULT_RELEARNING_STEPS
    graduating_interval: int = Field(default=DEFAULT_GRADUATING_INTERVAL, ge=1)
    easy_interval: int = Field(default=DEFAULT_EASY_INTERVAL, ge=1)
    starting_ease: float = DEFAULT_STARTING_EASE
    minimum_ease: float = Field(default=DEFAULT_MINIMUM_EASE, gt=0)
    maximum_ease: float = DEFAULT_MAXIMUM_EASE
    interval_modifier: float = Field(default=DEFAULT_INTERVAL_MODIFIER, gt=0)
    hard_multiplier: float = Field(default=DEFAULT_HARD_MULTIPLIER, gt=0)
    easy_bonus: float = Field(default=DEFAULT_EASY_BONUS, gt=0)
    maximum_interval: int = Field(default=DEFAULT_MAXIMUM_INTERVAL, ge=1)

    scheduling_model: SchedulingModel = SchedulingModel.SM2
    request_retention: float = Field(
        default=DEFAULT_REQUEST_RETENTION, ge=MIN_REQUEST_RETENTION, le=MAX_REQUEST_RETENTION
    )
    weights: tuple[float, ...] | None = None

    @field_validator("learning_steps", "relearning_steps", mode="before")
    @classmethod
    def parse_steps(cls, v: Any) -> Any:
        # Steps may arrive as a space separated string ("1 10").
        if isinstance(v, str):
            return tuple(float(s) for s in v.split())
        return v

    @field_validator("learning_steps", "relearning_steps")
    @classmethod
    def check_steps(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        if not v:
            raise ValueError("step list must not be empty")
        if any(step <= 0 for step in v):
            raise ValueError("steps must be positive durations in minutes")
        return v

    @field_validator("weights")
    @classmethod
    def check_weights(cls, v: tuple[float, ...] | None) -> tuple[float, ...] | None:
        if v is not None and len(v) != FSRS_WEIGHT_COUNT:
            raise ValueError(f"weights must have {FSRS_WEIGHT_COUNT} elements, got {len(v)}")
        return v

    @model_validator(mode="after")
    def check_ease_bounds(self) -> DeckConfig:
        if self.minimum_ease > self.maximum_ease:
            raise ValueError("minimum_ease must not exceed maximum_ease")
        if not self.minimum_ease <= self.starting_ease <= self.maximum_ease:
            raise ValueError("starting_ease must lie within [minimum_ease, maximum_ease]")
        return self

    @property
    def fsrs_weights(self) -> tuple[float, ...]:
        return self.weights if self.weights is not None else FSRS_DEFAULT_WEIGHTS

    @classmethod
    def parse(cls, data: dict[str, Any] | None = None, **overrides: Any) -> DeckConfig:
        """Validate raw settings, raising InvalidConfigurationError instead of ValidationError."""
        payload = {**(data or {}), **overrides}
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise InvalidConfigurationError(str(e)) from e


@dataclass(frozen=True)
class Deck:
    id: str
    name: str
    config: DeckConfig = field(default_factory=DeckConfig)
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Note:
    """Note content is opaque to the scheduler; fields are stored as given."""

    id: str
    deck_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Card:
    """
    The atomic schedulable unit.

    A card is a derived cache: its scheduling fields can always be rebuilt by
    replaying the card's review events from the New state.

    Attributes:
        queue: Coarse scheduling phase.
        ease_factor / interval / repetitions: SM-2 progress.
        stability / difficulty: FSRS progress (None while the deck runs SM-2).
        learning_step: Index into the learning or relearning steps.
        due_timestamp: Authoritative while in Learning/Relearning.
        next_review_at: Authoritative while in Review.
    """

    id: str
    note_id: str
    deck_id: str
    card_type: CardType = CardType.RECOGNITION
    queue: CardQueue = CardQueue.NEW
    ease_factor: float = DEFAULT_STARTING_EASE
    interval: int = 0
    repetitions: int = 0
    stability: float | None = None
    difficulty: float | None = None
    lapses: int = 0
    learning_step: int = 0
    due_timestamp: datetime | None = None
    next_review_at: date | None = None
    last_reviewed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def check_invariants(self) -> None:
        """Raise CorruptStateError if the pointer/queue invariants do not hold."""
        if self.queue == CardQueue.NEW:
            if self.repetitions != 0:
                raise CorruptStateError(f"card {self.id}: New card with repetitions={self.repetitions}")
            if self.due_timestamp is not None or self.next_review_at is not None:
                raise CorruptStateError(f"card {self.id}: New card has a due pointer")
        elif self.queue.is_learning:
            if self.due_timestamp is None or self.next_review_at is not None:
                raise CorruptStateError(f"card {self.id}: learning card must only carry due_timestamp")
        elif self.queue == CardQueue.REVIEW:
            if self.next_review_at is None or self.due_timestamp is not None:
                raise CorruptStateError(f"card {self.id}: review card must only carry next_review_at")
            if self.interval < 1:
                raise CorruptStateError(f"card {self.id}: review interval {self.interval} < 1")

    def scheduling_state(self) -> tuple:
        """Fields owned by the scheduling function, used to compare replays."""
        return (
            self.queue,
            self.ease_factor,
            self.interval,
            self.repetitions,
            self.stability,
            self.difficulty,
            self.lapses,
            self.learning_step,
            self.due_timestamp,
            self.next_review_at,
            self.last_reviewed_at,
        )

    def reset(self) -> Card:
        """Return this card's pristine New state, keeping identity."""
        return replace(
            self,
            queue=CardQueue.NEW,
            ease_factor=DEFAULT_STARTING_EASE,
            interval=0,
            repetitions=0,
            stability=None,
            difficulty=None,
            lapses=0,
            learning_step=0,
            due_timestamp=None,
            next_review_at=None,
            last_reviewed_at=None,
        )


@dataclass(frozen=True)
class ReviewEvent:
    """
    One rating submission. Append-only; the sole audit trail for card state.

    Attributes:
        reviewed_at: Timezone-aware instant of the rating.
        time_spent_ms: Time the learner spent before answering.
        recording_ref: Opaque reference to an uploaded pronunciation recording.
    """

    id: str
    card_id: str
    rating: Rating
    reviewed_at: datetime
    session_id: str | None = None
    time_spent_ms: int | None = None
    user_answer: str | None = None
    recording_ref: str | None = None

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.reviewed_at, self.id)


@dataclass(frozen=True)
class CardCheckpoint:
    """Snapshot of a card after `event_count` events, the last at `checkpoint_at`."""

    card_id: str
    checkpoint_at: datetime
    last_event_id: str
    event_count: int
    state: Card


@dataclass(frozen=True)
class QueueCounts:
    new: int = 0
    learning: int = 0
    review: int = 0

    @property
    def total(self) -> int:
        return self.new + self.learning + self.review
