from memora.domain.scheduling.preview import IntervalPreview, format_interval, preview_intervals
from memora.domain.scheduling.replay import (
    VerifyResult,
    initial_card,
    is_checkpoint_stale,
    make_checkpoint,
    order_events,
    replay,
    verify_card,
)
from memora.domain.scheduling.scheduler import schedule

__all__ = [
    "IntervalPreview",
    "VerifyResult",
    "format_interval",
    "initial_card",
    "is_checkpoint_stale",
    "make_checkpoint",
    "order_events",
    "preview_intervals",
    "replay",
    "schedule",
    "verify_card",
]
