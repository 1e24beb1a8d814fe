"""
Tests for decision resolution.
"""

from conftest import make_rule
from email_assistant.models import (
    Attribution,
    Condition,
    DecisionSource,
    JudgmentFailure,
    Rule,
    RuleAction,
    Suggestion,
    TerminalAction,
)
from email_assistant.resolver import resolve
from email_assistant.rules import evaluate


def _decide(email, rules, judgment):
    return resolve(email, evaluate(email, rules), judgment)


class TestPrecedence:
    """Tests for terminal-action precedence."""

    def test_rule_action_beats_ai_action(self, make_email):
        """A matching rule's terminal action overrides the AI's."""
        email = make_email(sender="promo@shop.example")
        rules = [make_rule("shop promos", "domain", "shop.example", "delete")]
        suggestion = Suggestion(labels=frozenset({"Shopping"}), action=TerminalAction.ARCHIVE)

        decision = _decide(email, rules, suggestion)

        assert decision.action == TerminalAction.DELETE
        assert decision.action_source == Attribution.RULE
        assert decision.source == DecisionSource.MERGED

    def test_first_terminal_rule_wins(self, make_email):
        """Conflicting terminal rules resolve to the first one declared."""
        email = make_email(subject="Weekly newsletter")
        rules = [
            make_rule("archive newsletters", "subject", "newsletter", "archive"),
            make_rule("delete weekly", "subject", "weekly", "delete"),
        ]

        decision = _decide(email, rules, JudgmentFailure(kind="timeout"))

        assert decision.action == TerminalAction.ARCHIVE
        assert decision.matched_rules == ("archive newsletters", "delete weekly")

    def test_ai_action_used_when_no_rule_action(self, make_email):
        """The AI action applies when rules only add labels."""
        email = make_email(subject="Team sync")
        rules = [make_rule("team", "subject", "team", {"label": "Work"})]
        suggestion = Suggestion(action=TerminalAction.ARCHIVE)

        decision = _decide(email, rules, suggestion)

        assert decision.action == TerminalAction.ARCHIVE
        assert decision.action_source == Attribution.AI


class TestLabels:
    """Tests for label union."""

    def test_rule_and_ai_labels_are_unioned(self, make_email):
        """Rule labels are never removed by the AI."""
        email = make_email(subject="Quarterly report")
        rules = [make_rule("reports", "subject", "report", {"label": "Work"})]
        suggestion = Suggestion(labels=frozenset({"Finance"}))

        decision = _decide(email, rules, suggestion)

        assert decision.labels == frozenset({"Work", "Finance"})
        assert decision.rule_labels == frozenset({"Work"})

    def test_duplicate_labels_keep_rule_casing(self, make_email):
        """Labels differing only in case are merged, rule spelling first."""
        email = make_email(subject="Team sync")
        rules = [make_rule("team", "subject", "team", {"label": "work"})]
        suggestion = Suggestion(labels=frozenset({"Work"}))

        decision = _decide(email, rules, suggestion)

        assert decision.labels == frozenset({"work"})


class TestDegradation:
    """Tests for AI failure handling."""

    def test_failure_resolves_from_rules_only(self, make_email):
        """A failed judgment yields a rule decision without needs_reply."""
        email = make_email(subject="Invoice")
        rules = [make_rule("invoices", "subject", "invoice", {"label": "Finance"})]

        decision = _decide(email, rules, JudgmentFailure(kind="unavailable", message="down"))

        assert decision.source == DecisionSource.RULE
        assert decision.labels == frozenset({"Finance"})
        assert decision.needs_reply is False

    def test_failure_without_rules_is_empty_rule_decision(self, make_email):
        """No rules and no AI means an empty decision marked as rule."""
        decision = _decide(make_email(), [], JudgmentFailure(kind="malformed"))

        assert decision.source == DecisionSource.RULE
        assert decision.labels == frozenset()
        assert decision.action is None

    def test_guarded_rule_needs_matching_suggestion(self, make_email):
        """A rule guarded on "archive" only fires when the AI suggests archive."""
        email = make_email(sender="deals@promo.example")
        rule = Rule(
            name="promo deletes",
            condition=Condition.model_validate(
                {"field": "from", "contains": "promo", "and": "archive"}
            ),
            action=RuleAction.delete(),
        )

        archived = _decide(email, [rule], Suggestion(action=TerminalAction.ARCHIVE))
        kept = _decide(email, [rule], Suggestion())
        failed = _decide(email, [rule], JudgmentFailure(kind="timeout"))

        assert archived.action == TerminalAction.DELETE
        assert kept.action is None
        assert kept.source == DecisionSource.AI
        assert failed.action is None


class TestScenarios:
    """End-to-end resolution scenarios."""

    def test_delete_by_rule_regardless_of_ai(self, make_email):
        """A delete rule wins even when the AI wants to keep and label the email."""
        email = make_email(sender="spammy@junk.example", subject="You won")
        rules = [make_rule("junk domain", "domain", "junk.example", "delete")]
        suggestion = Suggestion(labels=frozenset({"Personal"}), needs_reply=True)

        decision = _decide(email, rules, suggestion)

        assert decision.action == TerminalAction.DELETE
        assert decision.source == DecisionSource.MERGED

    def test_ai_only_newsletter_archive(self, make_email):
        """No rule matches: the AI's Newsletter/archive is used as is."""
        email = make_email(sender="news@site.example", subject="This week")
        suggestion = Suggestion(
            labels=frozenset({"Newsletter"}), action=TerminalAction.ARCHIVE, confidence=0.9
        )

        decision = _decide(email, [], suggestion)

        assert decision.source == DecisionSource.AI
        assert decision.labels == frozenset({"Newsletter"})
        assert decision.action == TerminalAction.ARCHIVE

    def test_merged_work_and_followup(self, make_email):
        """Rule label Work plus AI label FollowUp and needs_reply."""
        email = make_email(sender="boss@corp.example", subject="Budget")
        rules = [make_rule("corp", "domain", "corp.example", {"label": "Work"})]
        suggestion = Suggestion(labels=frozenset({"FollowUp"}), needs_reply=True)

        decision = _decide(email, rules, suggestion)

        assert decision.source == DecisionSource.MERGED
        assert decision.labels == frozenset({"Work", "FollowUp"})
        assert decision.needs_reply is True
        assert decision.action is None
