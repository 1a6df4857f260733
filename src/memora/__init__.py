"""memora: spaced-repetition scheduling with an offline-capable mirror."""

from memora.consts import VERSION

__version__ = VERSION
