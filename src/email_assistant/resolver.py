"""Decision resolution.

Objective:
    Merge rule results and the AI judgment for one email into a single
    :class:`~email_assistant.models.Decision`.

Precedence policy (user-authored rules are ground truth):
    1. The first matching rule, in declared order, with a terminal action
       (archive/delete/spam) decides the action.
    2. Label actions of every matching rule are unioned.
    3. With a :class:`~email_assistant.models.Suggestion`, its labels are added
       (rule labels are never removed), its ``needs_reply`` is copied, and its
       action is used only when no rule supplied one.
    4. With a :class:`~email_assistant.models.JudgmentFailure`, the decision is
       built from rules alone and marked ``rule``.
    5. ``source`` is ``merged`` when rules fired and a suggestion exists,
       ``ai`` when only the suggestion exists, ``rule`` otherwise.

Guarded rules (``"and": "archive"`` in rule files) fire only when the
suggestion proposes exactly the guarded action.
"""

import logging
from typing import Iterable, Iterator, Optional

from .models import (
    Attribution,
    Condition,
    Decision,
    DecisionSource,
    Email,
    JudgmentResult,
    Rule,
    RuleResult,
    Suggestion,
    TerminalAction,
)

logger = logging.getLogger(__name__)


def _required_actions(condition: Optional[Condition]) -> Iterator[TerminalAction]:
    if condition is None:
        return
    if condition.requires_action is not None:
        yield condition.requires_action
    yield from _required_actions(condition.and_)
    yield from _required_actions(condition.or_)


def _guard_passes(rule: Rule, suggestion: Optional[Suggestion]) -> bool:
    for required in _required_actions(rule.condition):
        if suggestion is None or suggestion.action != required:
            return False
    return True


def fired_rules(
    rule_results: Iterable[RuleResult], suggestion: Optional[Suggestion]
) -> list[Rule]:
    """Rules that matched and whose guards pass, in declared order."""
    return [
        result.rule
        for result in rule_results
        if result.matched and _guard_passes(result.rule, suggestion)
    ]


def resolve(
    email: Email,
    rule_results: Iterable[RuleResult],
    judgment: JudgmentResult,
) -> Decision:
    """
    Produce the final decision for one email.

    Args:
        email: Email being classified.
        rule_results: Output of :func:`email_assistant.rules.evaluate`.
        judgment: Suggestion or failure from the AI judgment adapter.

    Returns:
        Decision: Resolved decision.
    """
    suggestion = judgment if isinstance(judgment, Suggestion) else None
    if suggestion is None:
        logger.debug(
            "No AI suggestion for %s (%s); resolving from rules only",
            email.id,
            getattr(judgment, "kind", "unknown"),
        )

    fired = fired_rules(rule_results, suggestion)

    terminal_rule = next((rule for rule in fired if rule.action.is_terminal), None)
    rule_labels = [rule.action.label for rule in fired if rule.action.label]

    labels: dict[str, str] = {}
    for label in rule_labels:
        labels.setdefault(label.lower(), label)

    action = terminal_rule.action.terminal if terminal_rule else None
    action_source = Attribution.RULE if terminal_rule else None
    needs_reply = False

    if suggestion is not None:
        for label in sorted(suggestion.labels):
            labels.setdefault(label.lower(), label)
        needs_reply = suggestion.needs_reply
        if action is None and suggestion.action is not None:
            action = suggestion.action
            action_source = Attribution.AI

    if suggestion is None:
        source = DecisionSource.RULE
    elif fired:
        source = DecisionSource.MERGED
    else:
        source = DecisionSource.AI

    if terminal_rule is not None and suggestion is not None and suggestion.action not in (None, action):
        logger.info(
            "Rule '%s' overrides AI action %s with %s (email_id=%s)",
            terminal_rule.name,
            suggestion.action.value,
            action.value,
            email.id,
        )

    return Decision(
        labels=frozenset(labels.values()),
        action=action,
        needs_reply=needs_reply,
        source=source,
        rule_labels=frozenset(rule_labels),
        action_source=action_source,
        matched_rules=tuple(rule.name for rule in fired),
    )
