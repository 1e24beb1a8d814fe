"""
Tests for the correction learner.
"""

from unittest.mock import MagicMock

import pytest

from conftest import FakeService, make_rule
from email_assistant.errors import AdapterTimeout, ProviderError
from email_assistant.learner import (
    CorrectionLearner,
    correction_log_line,
    extract_profile_update,
    summarize_corrections,
)
from email_assistant.models import (
    Attribution,
    Correction,
    Decision,
    DecisionSource,
    DivergenceKind,
    NoChange,
    ObservedState,
    Prediction,
    Profile,
    ProfileUpdate,
    TerminalAction,
)
from email_assistant.predictions import PredictionStore
from email_assistant.profile_store import DEFAULT_PROFILE, section_text


def _ai_correction(email_id="msg-1", predicted=("Work",), actual=("Personal",)):
    return Correction(
        email_id=email_id,
        sender="friend@example.com",
        subject="Dinner?",
        decision=Decision(labels=frozenset(predicted), source=DecisionSource.AI),
        actual=ObservedState(labels=frozenset(actual)),
    )


def _rule_correction():
    return Correction(
        email_id="msg-9",
        sender="deals@shop.example",
        subject="Sale",
        decision=Decision(
            action=TerminalAction.DELETE,
            action_source=Attribution.RULE,
            source=DecisionSource.RULE,
            matched_rules=("shop deletes",),
        ),
        actual=ObservedState(action=None),
    )


@pytest.fixture
def profile():
    return Profile(text=DEFAULT_PROFILE)


class TestDivergences:
    """Tests for divergence attribution on Correction."""

    def test_rule_label_removal_is_rule_attributed(self):
        """Removing a label a rule added is attributed to the rule."""
        correction = Correction(
            email_id="m",
            decision=Decision(
                labels=frozenset({"Work"}),
                rule_labels=frozenset({"Work"}),
                source=DecisionSource.RULE,
            ),
            actual=ObservedState(),
        )

        [divergence] = correction.divergences

        assert divergence.kind == DivergenceKind.UNWANTED_LABEL
        assert divergence.attribution == Attribution.RULE

    def test_label_comparison_is_case_insensitive(self):
        """Labels differing only in case do not diverge."""
        correction = _ai_correction(predicted=("work",), actual=("Work",))
        assert correction.divergences == []

    def test_fingerprint_is_stable(self):
        """Equal corrections share a fingerprint; different ones do not."""
        assert _ai_correction().fingerprint == _ai_correction().fingerprint
        assert _ai_correction().fingerprint != _ai_correction(actual=("Family",)).fingerprint
        assert len(_ai_correction().fingerprint) == 12


class TestLearn:
    """Tests for CorrectionLearner.learn."""

    def test_updates_guidance_and_records_corrections(self, settings, profile):
        """AI corrections update Learned Guidance and are logged with a marker."""
        service = FakeService(["- Emails from friend@example.com are Personal"])
        learner = CorrectionLearner(settings, service=service)
        correction = _ai_correction()

        outcome = learner.learn([correction], profile)

        assert isinstance(outcome, ProfileUpdate)
        assert outcome.guidance_updated is True
        assert outcome.applied == [correction]
        text = outcome.profile.text
        assert section_text(text, "Learned Guidance") == "- Emails from friend@example.com are Personal"
        assert f"[correction:{correction.fingerprint}]" in section_text(text, "Learned Corrections")
        assert "Labels the user added" in service.calls[0]["prompt"]
        assert service.calls[0]["timeout"] == settings.learning_timeout_seconds

    def test_second_run_is_no_change(self, settings, profile):
        """Learning the same correction twice changes nothing the second time."""
        service = FakeService(["- friends are Personal"])
        learner = CorrectionLearner(settings, service=service)

        first = learner.learn([_ai_correction()], profile)
        second = learner.learn([_ai_correction()], first.profile)

        assert isinstance(first, ProfileUpdate)
        assert isinstance(second, NoChange)
        assert len(service.calls) == 1

    def test_no_update_needed_keeps_guidance(self, settings, profile):
        """NO_UPDATE_NEEDED records the correction but keeps the guidance."""
        learner = CorrectionLearner(settings, service=FakeService(["NO_UPDATE_NEEDED"]))

        outcome = learner.learn([_ai_correction()], profile)

        assert isinstance(outcome, ProfileUpdate)
        assert outcome.guidance_updated is False
        assert section_text(outcome.profile.text, "Learned Guidance") == ""
        assert "[correction:" in outcome.profile.text

    def test_rule_attributable_corrections_are_reported(self, settings, profile):
        """Corrections against rules are reported, not learned."""
        service = FakeService(["- anything"])
        learner = CorrectionLearner(settings, service=service)
        correction = _rule_correction()

        outcome = learner.learn([correction], profile)

        assert isinstance(outcome, NoChange)
        assert outcome.reported == [correction]
        assert service.calls == []

    def test_service_failure_leaves_corrections_unresolved(self, settings, profile):
        """A failing reasoning service returns NoChange with unresolved corrections."""
        learner = CorrectionLearner(settings, service=FakeService(error=AdapterTimeout("slow")))
        correction = _ai_correction()

        outcome = learner.learn([correction], profile)

        assert isinstance(outcome, NoChange)
        assert outcome.unresolved == [correction]

    def test_no_corrections(self, settings, profile):
        """An empty batch is a NoChange."""
        learner = CorrectionLearner(settings, service=FakeService())
        assert isinstance(learner.learn([], profile), NoChange)

    def test_never_touches_rules(self, settings, profile):
        """Structured rules are carried over untouched."""
        rules = (make_rule("r", "subject", "x", "archive"),)
        learner = CorrectionLearner(settings, service=FakeService(["- new"]))

        outcome = learner.learn([_ai_correction()], profile.model_copy(update={"rules": rules}))

        assert outcome.profile.rules == rules


class TestExtractProfileUpdate:
    """Tests for extract_profile_update."""

    def test_no_update(self):
        assert extract_profile_update("NO_UPDATE_NEEDED") is None
        assert extract_profile_update("") is None

    def test_strips_fences_and_headings(self):
        """Headings cannot introduce new sections and markers are removed."""
        response = "```markdown\n## Learned Corrections\n- x [correction:abcdefabcdef]\n```"

        body = extract_profile_update(response)

        assert "##" not in body
        assert "[correction:" not in body
        assert body.startswith("- Learned Corrections")

    def test_keeps_only_guidance_section_when_repeated(self):
        """If the whole profile comes back, only the guidance section is kept."""
        response = "# Profile\n\n## Learned Guidance\n- a\n- b\n\n## Learned Corrections\n- c\n"
        assert extract_profile_update(response) == "- a\n- b"


def test_summarize_groups_by_kind():
    """Divergences are grouped under one heading per kind."""
    summary = summarize_corrections([_ai_correction()])

    assert "### Labels the user removed" in summary
    assert "### Labels the user added" in summary
    assert "'Personal'" in summary


def test_correction_log_line_for_spam():
    """Spam corrections use the spam wording."""
    correction = Correction(
        email_id="m",
        sender="x@y.example",
        subject="Win",
        decision=Decision(source=DecisionSource.AI),
        actual=ObservedState(action=TerminalAction.SPAM),
    )

    line = correction_log_line(correction, "2024-01-02")

    assert line.startswith("- 2024-01-02: User marked email as spam (from: x@y.example")
    assert line.endswith(f"[correction:{correction.fingerprint}]")


class TestDetectCorrections:
    """Tests for CorrectionLearner.detect_corrections."""

    def test_detects_divergence_and_vanished(self, settings, make_email):
        """Changed emails become corrections; missing ones are vanished."""
        store = PredictionStore(settings.predictions_path)
        store.record(
            make_email("kept"), Decision(labels=frozenset({"Work"}), source=DecisionSource.AI)
        )
        store.record(
            make_email("changed"), Decision(labels=frozenset({"Work"}), source=DecisionSource.AI)
        )
        store.record(make_email("gone"), Decision(source=DecisionSource.AI))

        def get_message(email_id):
            if email_id == "gone":
                raise ProviderError("not found", status_code=404)
            if email_id == "changed":
                return make_email(email_id, labels=frozenset({"INBOX", "Personal", "Classified"}))
            return make_email(email_id, labels=frozenset({"INBOX", "Work", "Classified", "UNREAD"}))

        provider = MagicMock()
        provider.get_message.side_effect = get_message

        scan = CorrectionLearner(settings, service=FakeService()).detect_corrections(store, provider)

        assert [c.email_id for c in scan.corrections] == ["changed"]
        assert scan.vanished_ids == ["gone"]
        assert scan.corrections[0].actual.labels == frozenset({"Personal"})

    def test_other_provider_errors_are_warnings(self, settings, make_email):
        """Non-404 failures are reported and the prediction is kept."""
        store = PredictionStore(settings.predictions_path)
        store.record(make_email("m"), Decision(source=DecisionSource.AI))
        provider = MagicMock()
        provider.get_message.side_effect = ProviderError("throttled", status_code=429)

        scan = CorrectionLearner(settings, service=FakeService()).detect_corrections(store, provider)

        assert scan.corrections == []
        assert scan.vanished_ids == []
        assert len(scan.warnings) == 1

    def test_unexpected_errors_do_not_stop_the_scan(self, settings, make_email):
        """A malformed message is reported and the remaining predictions are still checked."""
        store = PredictionStore(settings.predictions_path)
        store.record(make_email("bad"), Decision(source=DecisionSource.AI))
        store.record(
            make_email("changed"), Decision(labels=frozenset({"Work"}), source=DecisionSource.AI)
        )

        def get_message(email_id):
            if email_id == "bad":
                raise ValueError("malformed message")
            return make_email(email_id, labels=frozenset({"INBOX", "Personal", "Classified"}))

        provider = MagicMock()
        provider.get_message.side_effect = get_message

        scan = CorrectionLearner(settings, service=FakeService()).detect_corrections(store, provider)

        assert [c.email_id for c in scan.corrections] == ["changed"]
        assert scan.vanished_ids == []
        assert scan.warnings == ["could not check bad: malformed message"]


class TestLearnFromAction:
    """Tests for CorrectionLearner.learn_from_action."""

    def test_spam_action_on_ai_prediction(self, settings, profile, make_email):
        """Marking an AI-kept email as spam is learned."""
        email = make_email()
        prediction = Prediction(
            email_id=email.id, decision=Decision(labels=frozenset(), source=DecisionSource.AI)
        )
        service = FakeService(["- alice@example.com sends spam"])
        learner = CorrectionLearner(settings, service=service)

        outcome = learner.learn_from_action(email, "spam", prediction, profile)

        assert isinstance(outcome, ProfileUpdate)
        assert "User marked email as spam" in outcome.profile.text

    def test_unspam_without_prediction(self, settings, profile, make_email):
        """Unspamming an email with no recorded decision is a false positive."""
        email = make_email(labels=frozenset({"SPAM"}))
        learner = CorrectionLearner(settings, service=FakeService(["NO_UPDATE_NEEDED"]))

        outcome = learner.learn_from_action(email, "unspam", None, profile)

        assert isinstance(outcome, ProfileUpdate)
        assert "User unmarked spam" in outcome.profile.text

    def test_label_already_present_is_no_change(self, settings, profile, make_email):
        """Adding a label the decision already had teaches nothing."""
        email = make_email()
        prediction = Prediction(
            email_id=email.id,
            decision=Decision(labels=frozenset({"Work"}), source=DecisionSource.AI),
        )
        learner = CorrectionLearner(settings, service=FakeService())

        outcome = learner.learn_from_action(email, "label:work", prediction, profile)

        assert isinstance(outcome, NoChange)

    def test_unknown_action(self, settings, profile, make_email):
        learner = CorrectionLearner(settings, service=FakeService())
        with pytest.raises(ValueError):
            learner.learn_from_action(make_email(), "forward", None, profile)
