"""
StudyDesk – Error taxonomy
===========================
Every failure the scheduling core reports derives from ``StudyError`` so
callers can catch the whole family at once.
"""

from __future__ import annotations


class StudyError(Exception):
    """Base class for all study-core errors."""


class NotAuthenticated(StudyError):
    """The request carries no user identity."""


class NotFound(StudyError):
    """A card, group, or project does not exist (or is not visible)."""


class VersionConflict(StudyError):
    """A compare-and-swap write targeted a stale record.

    *key* identifies the record: a card id, or a user id for timer state.
    """

    def __init__(
        self, key: int | str, expected: int | None, actual: int | None, what: str = "card"
    ) -> None:
        super().__init__(
            f"{what} {key} changed elsewhere (expected version {expected}, found {actual})"
        )
        self.key = key
        self.expected = expected
        self.actual = actual


class ValidationError(StudyError, ValueError):
    """Malformed input: unknown rating, bad timer transition, etc."""


class TransientStoreError(StudyError):
    """The backing store failed in a way that may succeed on retry."""
