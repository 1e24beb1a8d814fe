"""Deterministic rule matching.

Objective:
    Evaluate user-authored :class:`~email_assistant.models.Rule` conditions
    against one :class:`~email_assistant.models.Email` and report, for every
    rule, whether it matched.

Core strategy:
    - Extract the named field as a lowercased string.
    - Apply the operator: substring containment, exact equality, or a
      case-insensitive regex search.
    - Recurse into ``and``/``or`` sub-conditions.
    - Evaluate every rule in declared order; never stop at the first match.

High-level call tree:
    - :func:`evaluate`
        - :func:`condition_matches`
            - :func:`extract_field`

Operational notes:
    - Configuration problems (empty condition, unknown field, invalid pattern)
      raise :class:`~email_assistant.errors.RuleConfigError` from
      :func:`condition_matches`; :func:`evaluate` turns them into a warning on
      the :class:`~email_assistant.models.RuleResult` and treats the rule as
      not matched.
    - No I/O. Results depend only on the email and the rules.
"""

import logging
import re
from functools import lru_cache
from typing import Callable, Iterable

from .errors import RuleConfigError
from .models import Condition, ConditionOp, Email, Rule, RuleResult

logger = logging.getLogger(__name__)

_FIELD_EXTRACTORS: dict[str, Callable[[Email], str]] = {
    "from": lambda email: email.sender,
    "to": lambda email: ", ".join(email.recipients),
    "subject": lambda email: email.subject,
    "body": lambda email: email.body,
    "labels": lambda email: ", ".join(sorted(email.labels)),
    "domain": lambda email: email.sender_domain or "",
}

SUPPORTED_FIELDS = tuple(_FIELD_EXTRACTORS)


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise RuleConfigError(f"invalid pattern {pattern!r}: {e}") from e


def extract_field(email: Email, field: str) -> str:
    """Return the lowercased string value of ``field``.

    Args:
        email: Email to read.
        field: One of :data:`SUPPORTED_FIELDS`.

    Returns:
        str: Lowercased field value.

    Raises:
        RuleConfigError: If the field is unknown.
    """
    extractor = _FIELD_EXTRACTORS.get(field)
    if extractor is None:
        raise RuleConfigError(
            f"unknown field {field!r} (expected one of {', '.join(SUPPORTED_FIELDS)})"
        )
    return extractor(email).lower()


def condition_matches(email: Email, condition: Condition) -> bool:
    """Evaluate a condition tree against an email.

    Args:
        email: Email to test.
        condition: Condition tree.

    Returns:
        bool: True if the condition matches.

    Raises:
        RuleConfigError: If any node of the tree is empty or invalid.
    """
    if not condition.field:
        raise RuleConfigError("condition has no field")
    if condition.op is None:
        raise RuleConfigError(
            f"condition on {condition.field!r} has no operator (expected contains, equals or matches)"
        )

    haystack = extract_field(email, condition.field)
    needle = condition.value.lower()

    if condition.op == ConditionOp.CONTAINS:
        matched = needle in haystack
    elif condition.op == ConditionOp.EQUALS:
        matched = haystack.strip() == needle.strip()
    else:
        matched = _compile(condition.value).search(haystack) is not None

    # Sub-trees are always evaluated so a broken branch is reported for every email.
    if condition.and_ is not None:
        both = condition_matches(email, condition.and_)
        matched = matched and both
    if condition.or_ is not None:
        either = condition_matches(email, condition.or_)
        matched = matched or either
    return matched


def evaluate(email: Email, rules: Iterable[Rule]) -> list[RuleResult]:
    """Evaluate every rule against an email, in declared order.

    Args:
        email: Email to classify.
        rules: Ordered rules.

    Returns:
        list[RuleResult]: One result per rule, same order as ``rules``.
    """
    results = []
    for rule in rules:
        try:
            matched = condition_matches(email, rule.condition)
        except RuleConfigError as e:
            warning = f"rule '{rule.name}' skipped: {e}"
            logger.warning("%s (email_id=%s)", warning, email.id)
            results.append(RuleResult(rule=rule, matched=False, warning=warning))
            continue

        if matched:
            logger.debug("Rule '%s' matched email %s", rule.name, email.id)
        results.append(RuleResult(rule=rule, matched=matched))
    return results
