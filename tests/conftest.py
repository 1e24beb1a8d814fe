"""
Shared fixtures for the test suite.
"""

from typing import Optional

import pytest

from email_assistant.config import Settings
from email_assistant.models import (
    Condition,
    ConditionOp,
    Email,
    Rule,
    RuleAction,
)


class FakeService:
    """Reasoning service returning canned answers and recording prompts."""

    def __init__(self, responses=None, error: Optional[Exception] = None) -> None:
        self.responses = list(responses or [])
        self.error = error
        self.calls = []

    def complete(self, prompt, system=None, timeout=None, max_tokens=900):
        self.calls.append({"prompt": prompt, "system": system, "timeout": timeout})
        if self.error is not None:
            raise self.error
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0] if self.responses else ""


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary config directory."""
    return Settings(
        config_dir=tmp_path / "config",
        groq_api_key="test-api-key",
        max_concurrency=2,
        _env_file=None,
    )


@pytest.fixture
def make_email():
    """Factory for inbox emails."""

    def _make(
        email_id: str = "msg-1",
        sender: str = "Alice <alice@example.com>",
        subject: str = "Hello",
        body: str = "Hi there",
        recipients: tuple = ("me@example.com",),
        labels: frozenset = frozenset({"INBOX"}),
    ) -> Email:
        return Email(
            id=email_id,
            sender=sender,
            recipients=recipients,
            subject=subject,
            body=body,
            labels=labels,
        )

    return _make


def make_rule(
    name: str,
    field: str,
    value: str,
    action,
    op: ConditionOp = ConditionOp.CONTAINS,
) -> Rule:
    """Build a single-condition rule; ``action`` is a RuleAction or rule-file string."""
    if not isinstance(action, RuleAction):
        action = RuleAction.model_validate(action)
    return Rule(name=name, condition=Condition(field=field, op=op, value=value), action=action)
