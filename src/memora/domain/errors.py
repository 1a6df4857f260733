"""
Error taxonomy for the scheduling engine and its offline mirror.

Only ServerUnavailableError and the not-found / permission errors are ever
meant to reach a user. Everything else signals a bug or a corrupt mirror.
"""


class MemoraError(Exception):
    """Base class for every error raised by memora."""


class InvalidConfigurationError(MemoraError, ValueError):
    """A deck configuration was rejected at write time."""


class SchedulingInvariantError(MemoraError, AssertionError):
    """The scheduling function was handed a configuration it should never see.

    This is a configuration-integrity bug, not a user error.
    """


class CorruptStateError(MemoraError):
    """A card record violates its structural invariants."""


class MirrorCorruptError(MemoraError):
    """The local mirror is structurally inconsistent and could not be repaired."""


class ServerUnavailableError(MemoraError):
    """The authoritative server could not be reached. Offline study continues."""


class DeckNotFoundError(MemoraError, LookupError):
    pass


class CardNotFoundError(MemoraError, LookupError):
    pass


class PermissionDeniedError(MemoraError):
    pass


class RequestRejectedError(MemoraError):
    """The server understood the request but refused it (other 4xx responses)."""
