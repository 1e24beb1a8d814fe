"""Provider collaborator interface.

A provider is the only component that talks to a mailbox. The core never
imports a concrete provider; it receives an :class:`EmailProvider`.

Every method raises :class:`~email_assistant.errors.ProviderError` on failure.
"""

from abc import ABC, abstractmethod
from typing import Iterable

from ..config import CLASSIFIED_LABEL, NEEDS_REPLY_LABEL
from ..models import Decision, Email, TerminalAction


class EmailProvider(ABC):
    """Mailbox operations used by the orchestrator, learner and CLI."""

    @abstractmethod
    def fetch(self, limit: int) -> list[Email]:
        """Return up to ``limit`` inbox messages, newest first."""

    @abstractmethod
    def get_message(self, email_id: str) -> Email:
        """Return the current state of one message."""

    @abstractmethod
    def add_label(self, email_id: str, label: str) -> None:
        ...

    @abstractmethod
    def archive(self, email_id: str) -> None:
        ...

    @abstractmethod
    def delete(self, email_id: str) -> None:
        """Move a message to the trash."""

    @abstractmethod
    def mark_spam(self, email_id: str) -> None:
        ...

    @abstractmethod
    def unspam(self, email_id: str) -> None:
        """Move a message out of spam, back to the inbox."""

    @abstractmethod
    def list_labels(self) -> list[str]:
        ...

    @abstractmethod
    def delete_label(self, label: str) -> None:
        ...

    @abstractmethod
    def count_labeled(self, label: str) -> int:
        """Number of messages currently carrying ``label``."""

    def add_labels(self, email_id: str, labels: Iterable[str]) -> None:
        """Add several labels. Providers with a batch call override this."""
        for label in labels:
            self.add_label(email_id, label)

    def apply(self, email_id: str, decision: Decision) -> None:
        """
        Apply a decision: labels first, then the terminal action.

        The ``Classified`` marker (and ``Needs-Reply`` when set) is added with
        the content labels.

        Args:
            email_id: Message ID.
            decision: Resolved decision.
        """
        labels = sorted(decision.labels) + [CLASSIFIED_LABEL]
        if decision.needs_reply:
            labels.append(NEEDS_REPLY_LABEL)
        self.add_labels(email_id, labels)

        if decision.action == TerminalAction.ARCHIVE:
            self.archive(email_id)
        elif decision.action == TerminalAction.DELETE:
            self.delete(email_id)
        elif decision.action == TerminalAction.SPAM:
            self.mark_spam(email_id)
