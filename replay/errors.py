"""Errors raised while loading and replaying a session.

- BootstrapError: the session cannot be loaded at all (fatal for that load).
- FetchError: a request to the timing service failed after retries.
- DataGapError: a single lap record is unusable and gets dropped.
"""


class ReplayError(Exception):
    """Base class for replay errors."""


class BootstrapError(ReplayError):
    """Session not found, or no drivers returned for it."""


class FetchError(ReplayError):
    """A data request failed after all retries."""


class DataGapError(ReplayError):
    """A lap record has no parseable start timestamp."""
