"""Centralized constants for the memora engine.

All magic numbers and scheduling defaults live here so every layer
imports from a single source of truth.
"""

# ---------- Deck defaults (SM-2) ----------
DEFAULT_NEW_CARDS_PER_DAY = 20
DEFAULT_LEARNING_STEPS = (1.0, 10.0)  # minutes
DEFAULT_RELEARNING_STEPS = (10.0,)  # minutes
DEFAULT_GRADUATING_INTERVAL = 1  # days
DEFAULT_EASY_INTERVAL = 4  # days
DEFAULT_STARTING_EASE = 2.5
DEFAULT_MINIMUM_EASE = 1.3
DEFAULT_MAXIMUM_EASE = 3.0
DEFAULT_INTERVAL_MODIFIER = 1.0
DEFAULT_HARD_MULTIPLIER = 1.2
DEFAULT_EASY_BONUS = 1.3
DEFAULT_MAXIMUM_INTERVAL = 36500  # ~100 years

# ---------- SM-2 ease adjustments ----------
EASE_PENALTY_AGAIN = 0.20
EASE_PENALTY_HARD = 0.15
EASE_BONUS_EASY = 0.15
EASE_PRECISION = 4  # decimal places kept on ease_factor
MIN_HARD_STEP_MINUTES = 1.0

# ---------- FSRS ----------
DEFAULT_REQUEST_RETENTION = 0.9
MIN_REQUEST_RETENTION = 0.7
MAX_REQUEST_RETENTION = 0.97
FSRS_WEIGHT_COUNT = 21
FSRS_DEFAULT_WEIGHTS = (
    0.212, 1.2931, 2.3065, 8.2956,  # w0-w3: initial stability per grade
    6.4133, 0.8334, 3.0194, 0.001,  # w4-w7: difficulty
    1.8722, 0.1666, 0.796, 1.4835,  # w8-w11: stability after recall / forget
    0.0614, 0.2629, 1.6483, 0.6014,  # w12-w15
    1.8729, 0.5425, 0.0912, 0.0658,  # w16-w19: easy bonus + short-term
    0.1542,  # w20: forgetting curve decay
)
FSRS_MIN_STABILITY = 0.001
FSRS_MIN_DIFFICULTY = 1.0
FSRS_MAX_DIFFICULTY = 10.0
FSRS_PRECISION = 6  # decimal places kept on stability / difficulty

# ---------- Replay ----------
CHECKPOINT_EVERY = 10  # events between stored checkpoints

# ---------- Sync / HTTP ----------
REQUEST_TIMEOUT = 30.0
DEFAULT_SYNC_INTERVAL = 60.0  # seconds
DEFAULT_MAX_BACKOFF = 900.0  # seconds
BACKOFF_BASE = 2.0  # seconds
DEFAULT_MAX_RESYNC_ATTEMPTS = 3
PUSH_BATCH_SIZE = 100
SYNCED_EVENT_RETENTION_DAYS = 7
EPOCH_CURSOR = "1970-01-01T00:00:00+00:00"
