"""Exception hierarchy for the recurrence and reminder engine."""

from __future__ import annotations


class SteepleError(Exception):
    """Base class for every error raised by steeple."""


class ConfigurationError(SteepleError):
    """Invalid series, rule, reminder or settings parameters.

    Raised at construction time so bad rows fail fast instead of
    surfacing halfway through an expansion or a reminder tick.
    """


class ResolutionError(SteepleError):
    """The recipient resolver could not produce an audience."""


class DispatchError(SteepleError):
    """A message provider rejected or failed to deliver a message."""


class DatastoreError(SteepleError):
    """The backing datastore returned an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DuplicateDispatch(SteepleError):
    """A dispatch with the same composite identity already exists.

    This is the uniqueness-constraint signal from the log store, not a
    failure: the caller reports the attempt as skipped.
    """

    def __init__(self, identity: tuple[str, str, str]) -> None:
        super().__init__("dispatch already recorded for %s/%s/%s" % identity)
        self.identity = identity
