"""Error taxonomy.

Objective:
    Name every failure the classification engine knows how to tolerate, so
    callers can decide per failure kind whether to degrade, skip, or abort.

Hierarchy:
    - :class:`EmailAssistantError`
        - :class:`JudgmentError` (AI layer, always non-fatal)
            - :class:`AdapterUnavailable`
            - :class:`AdapterTimeout`
            - :class:`MalformedResponse`
        - :class:`ProfileCorrupt` (per rule file; run-fatal only when nothing
          usable is left)
        - :class:`RuleConfigError` (skip the rule, warn)
        - :class:`ProviderError` (fatal for one email's action, never the batch)
"""

from typing import Optional


class EmailAssistantError(Exception):
    """Base class for all errors raised by this package."""


class JudgmentError(EmailAssistantError):
    """The AI judgment could not be obtained.

    Attributes:
        kind: Short failure kind recorded on :class:`~email_assistant.models.JudgmentFailure`.
    """

    kind = "unavailable"


class AdapterUnavailable(JudgmentError):
    """The reasoning service could not be reached or refused the request."""

    kind = "unavailable"


class AdapterTimeout(JudgmentError):
    """The reasoning service did not answer within the per-call timeout."""

    kind = "timeout"


class MalformedResponse(JudgmentError):
    """The reasoning service answered, but not in the Suggestion shape."""

    kind = "malformed"


class ProfileCorrupt(EmailAssistantError):
    """A profile file could not be parsed.

    Args:
        path: File that failed to load (``None`` when the whole profile is unusable).
        reason: Human readable parse error.
    """

    def __init__(self, path: Optional[object], reason: str) -> None:
        self.path = path
        self.reason = reason
        where = f"{path}: " if path is not None else ""
        super().__init__(f"{where}{reason}")


class RuleConfigError(EmailAssistantError):
    """A rule cannot be evaluated (empty condition, unknown field, bad pattern)."""


class ProviderError(EmailAssistantError):
    """The mail provider failed to read or modify a message.

    Args:
        message: Description of the failed operation.
        status_code: HTTP status code when the failure came from an HTTP API.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
