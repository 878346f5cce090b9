"""Domain exceptions. Provider failures live in replywatch.providers.base."""

from __future__ import annotations


class ReplyWatchError(Exception):
    """Base class for domain errors raised by the service layer."""


class NotFoundError(ReplyWatchError):
    """Referenced row does not exist."""


class JobStateError(ReplyWatchError):
    """Requested transition is not legal from the job's current status."""


class ReviewStateError(ReplyWatchError):
    """Review action is not allowed for the dead-letter entry's current status."""
