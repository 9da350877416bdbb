"""Exception hierarchy for the habits backend.

Routers translate these into HTTP responses in ``main``; the core modules
raise them and never build responses themselves.
"""

from __future__ import annotations

from typing import Any, Optional


class HabitsError(Exception):
    """Base exception for all habits backend errors."""


class RuleParseError(HabitsError):
    """A recurrence rule string could not be parsed.

    Only the strict parser raises this; ``parse_rule`` recovers from it by
    treating the rule as absent.
    """


class NotFoundError(HabitsError):
    """A todo instance or recurrence pattern does not exist.

    Should result in HTTP 404 Not Found response.
    """

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class StoreError(HabitsError):
    """The document store failed to perform an operation.

    ``action`` is the user-facing verb ("load", "add", "update", "delete").
    Should result in HTTP 503 Service Unavailable response.
    """

    def __init__(self, action: str, message: str) -> None:
        self.action = action
        super().__init__(message)


class BatchCommitError(StoreError):
    """An atomic write batch failed and was rolled back in full.

    ``action`` is the verb the caller gave the batch, so a failed series edit
    reads "update" and a failed cascade reads "delete".
    """


class RefreshError(HabitsError):
    """At least one pattern failed to materialize during a refresh.

    ``first_error`` is the earliest failure in pattern order; ``outcome``
    holds the per-pattern results of the patterns that succeeded, which are
    not rolled back.
    """

    def __init__(self, first_error: BaseException, outcome: Optional[Any] = None) -> None:
        self.first_error = first_error
        self.outcome = outcome
        super().__init__(f"refresh failed: {first_error}")
