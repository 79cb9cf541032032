"""mnemos: spaced-repetition scheduling and study-session core."""

from mnemos.consts import VERSION

__version__ = VERSION
