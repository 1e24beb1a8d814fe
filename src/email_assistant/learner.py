"""Correction learning.

Objective:
    Turn user corrections (recorded decision vs. the state the user left the
    email in) into an updated profile, so later decisions follow the user's
    intent.

Core strategy:
    1. Drop corrections already recorded in ``## Learned Corrections``
       (matched by their ``[correction:<fingerprint>]`` marker).
    2. Report rule-attributable divergences instead of editing anything; rules
       are ground truth and only the user edits them.
    3. Summarize AI-attributable divergences by kind and ask the reasoning
       service for a revised ``## Learned Guidance`` section.
    4. Record every learned correction as a dated, fingerprinted line.

High-level call tree:
    - :class:`CorrectionLearner`
        - :meth:`CorrectionLearner.detect_corrections`
        - :meth:`CorrectionLearner.learn`
            - :func:`summarize_corrections`
            - :meth:`CorrectionLearner._propose_guidance`
                - :func:`extract_profile_update`
            - :func:`correction_log_line`
        - :meth:`CorrectionLearner.learn_from_action`

Operational notes:
    - The model's answer is inserted as text and never executed.
    - Structured rules are never modified here.
    - When the reasoning service fails, nothing is written and the corrections
      come back as unresolved, to be retried on the next run.
"""

import logging
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from .config import Settings
from .errors import JudgmentError, ProviderError
from .judgment import GroqReasoningService, ReasoningService, load_prompt, render_prompt, strip_code_fences
from .models import (
    Attribution,
    Correction,
    Decision,
    DecisionSource,
    DivergenceKind,
    Email,
    LearningOutcome,
    NoChange,
    ObservedState,
    Prediction,
    Profile,
    ProfileUpdate,
    TerminalAction,
)
from .predictions import PredictionStore
from .profile_store import (
    LEARNED_CORRECTIONS_SECTION,
    LEARNED_GUIDANCE_SECTION,
    append_to_section,
    replace_section,
    section_text,
)
from .providers.base import EmailProvider

logger = logging.getLogger(__name__)

NO_UPDATE_NEEDED = "NO_UPDATE_NEEDED"

_KIND_TITLES = {
    DivergenceKind.MISSING_LABEL: "Labels the user added",
    DivergenceKind.UNWANTED_LABEL: "Labels the user removed",
    DivergenceKind.WRONG_ACTION: "Actions the user changed",
    DivergenceKind.FALSE_NEEDS_REPLY: "Wrongly flagged as needing a reply",
    DivergenceKind.MISSED_NEEDS_REPLY: "Missed needs-reply",
}

_HEADING_LINE = re.compile(r"^\s*#{1,6}\s+(.*)$")
_MARKER = re.compile(r"\[correction:[^\]]*\]")


class CorrectionScan(BaseModel):
    """Result of comparing recorded decisions with the mailbox.

    Attributes:
        corrections: Emails whose state diverges from the recorded decision.
        vanished_ids: Recorded emails that no longer exist on the provider.
        warnings: Emails that could not be checked this run.
    """

    corrections: list[Correction] = Field(default_factory=list)
    vanished_ids: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


def _is_ai_attributable(correction: Correction) -> bool:
    return any(d.attribution == Attribution.AI for d in correction.divergences)


def _is_rule_attributable(correction: Correction) -> bool:
    return any(d.attribution == Attribution.RULE for d in correction.divergences)


def correction_log_line(correction: Correction, date: str) -> str:
    """
    Render the ``## Learned Corrections`` line for one correction.

    Args:
        correction: Learned correction.
        date: ``YYYY-MM-DD`` date.

    Returns:
        str: Bullet line ending with the fingerprint marker.
    """
    predicted = correction.decision.action
    actual = correction.actual.action
    sender = correction.sender or "unknown"

    if actual == TerminalAction.SPAM and predicted != TerminalAction.SPAM:
        text = f"User marked email as spam (from: {sender}, subject: {correction.subject})"
    elif predicted == TerminalAction.SPAM and actual != TerminalAction.SPAM:
        text = f"User unmarked spam (false positive, from: {sender}, subject: {correction.subject})"
    elif correction.decision.labels != correction.actual.labels:
        text = (
            f"User relabeled email (from: {sender}, "
            f"predicted: {sorted(correction.decision.labels)}, "
            f"actual: {sorted(correction.actual.labels)})"
        )
    else:
        changes = "; ".join(d.describe() for d in correction.divergences)
        text = f"User corrected email (from: {sender}, subject: {correction.subject}: {changes})"

    return f"- {date}: {text} [correction:{correction.fingerprint}]"


def summarize_corrections(corrections: Iterable[Correction]) -> str:
    """
    Group AI-attributable divergences by kind for the learning prompt.

    Args:
        corrections: Corrections to summarize.

    Returns:
        str: Markdown with one ``###`` group per divergence kind.
    """
    groups: dict[DivergenceKind, list[str]] = defaultdict(list)
    for correction in corrections:
        for divergence in correction.divergences:
            if divergence.attribution != Attribution.AI:
                continue
            groups[divergence.kind].append(
                f"- from: {correction.sender} | subject: {correction.subject} | "
                f"{divergence.describe()}"
            )

    blocks = []
    for kind in DivergenceKind:
        if groups.get(kind):
            blocks.append(f"### {_KIND_TITLES[kind]}\n" + "\n".join(groups[kind]))
    return "\n\n".join(blocks)


def extract_profile_update(response: str) -> Optional[str]:
    """
    Extract the proposed guidance body from a model answer.

    Code fences are removed; if the answer repeats the section heading only
    that section is kept. Headings are flattened to bullets and correction
    markers are stripped, so the proposal cannot add sections or forge
    learned-correction entries.

    Args:
        response: Raw model answer.

    Returns:
        Optional[str]: Guidance body, or None for ``NO_UPDATE_NEEDED`` or an
        empty answer.
    """
    if not response or NO_UPDATE_NEEDED in response:
        return None

    cleaned = strip_code_fences(response).strip()
    section = section_text(cleaned, LEARNED_GUIDANCE_SECTION)
    if section is not None:
        cleaned = section

    lines = []
    for line in cleaned.splitlines():
        heading = _HEADING_LINE.match(line)
        if heading:
            line = f"- {heading.group(1).strip()}"
        lines.append(_MARKER.sub("", line).rstrip())

    body = "\n".join(lines).strip()
    return body or None


class CorrectionLearner:
    """
    Learns profile guidance from user corrections.

    Attributes:
        settings: Application settings.
        service: Reasoning service asked for revised guidance.
    """

    def __init__(self, settings: Settings, service: Optional[ReasoningService] = None) -> None:
        self.settings = settings
        self.service = service or GroqReasoningService(settings)

    def detect_corrections(
        self, predictions: PredictionStore, provider: EmailProvider
    ) -> CorrectionScan:
        """
        Compare every recorded decision with the message's current state.

        Args:
            predictions: Recorded decisions.
            provider: Mail provider.

        Returns:
            CorrectionScan: Corrections found and vanished messages.
        """
        scan = CorrectionScan()

        for prediction in predictions.all():
            try:
                email = provider.get_message(prediction.email_id)
            except ProviderError as e:
                if e.status_code == 404:
                    scan.vanished_ids.append(prediction.email_id)
                    continue
                logger.warning(f"Could not check email {prediction.email_id}: {e}")
                scan.warnings.append(f"could not check {prediction.email_id}: {e}")
                continue
            except Exception as e:
                logger.exception(f"Unexpected error checking email {prediction.email_id}")
                scan.warnings.append(f"could not check {prediction.email_id}: {e}")
                continue

            correction = Correction(
                email_id=prediction.email_id,
                sender=prediction.sender,
                subject=prediction.subject,
                decision=prediction.decision,
                actual=ObservedState.from_email(email),
            )
            if correction.divergences:
                scan.corrections.append(correction)

        logger.info(
            "Checked %d recorded decisions: %d corrections, %d vanished",
            len(predictions),
            len(scan.corrections),
            len(scan.vanished_ids),
        )
        return scan

    def _propose_guidance(self, corrections: list[Correction], profile: Profile) -> Optional[str]:
        template = load_prompt("profile_update_prompt.md")
        prompt = render_prompt(
            template,
            {
                "section": LEARNED_GUIDANCE_SECTION,
                "corrections": summarize_corrections(corrections),
                "profile": profile.text.strip(),
                "guidance": section_text(profile.text, LEARNED_GUIDANCE_SECTION) or "",
            },
        )
        logger.debug(f"Profile update prompt:\n{prompt}")

        response = self.service.complete(
            prompt,
            timeout=self.settings.learning_timeout_seconds,
            max_tokens=2000,
        )
        logger.debug(f"Profile update response:\n{response}")
        return extract_profile_update(response)

    def learn(self, corrections: Iterable[Correction], profile: Profile) -> LearningOutcome:
        """
        Update the profile from a batch of corrections.

        Args:
            corrections: Corrections to learn from.
            profile: Current profile snapshot.

        Returns:
            LearningOutcome: :class:`ProfileUpdate` with the revised (unsaved)
            profile, or :class:`NoChange`.
        """
        known = profile.learned_fingerprints
        pending = []
        seen = set()
        for correction in corrections:
            fingerprint = correction.fingerprint
            if not correction.divergences or fingerprint in known or fingerprint in seen:
                continue
            seen.add(fingerprint)
            pending.append(correction)

        if not pending:
            return NoChange(reason="no new corrections")

        reported = [c for c in pending if _is_rule_attributable(c)]
        for correction in reported:
            logger.warning(
                "Correction contradicts rule %s for '%s'; review your rules",
                ", ".join(correction.decision.matched_rules) or "(unknown)",
                correction.subject,
            )

        learnable = [c for c in pending if _is_ai_attributable(c)]
        if not learnable:
            return NoChange(reason="only rule-attributable corrections", reported=reported)

        try:
            guidance = self._propose_guidance(learnable, profile)
        except JudgmentError as e:
            logger.warning(f"Profile update failed, corrections stay pending: {e}")
            return NoChange(
                reason=f"reasoning service failed: {e}",
                reported=reported,
                unresolved=learnable,
            )

        text = profile.text
        guidance_updated = False
        if guidance is not None and guidance != (section_text(text, LEARNED_GUIDANCE_SECTION) or ""):
            text = replace_section(text, LEARNED_GUIDANCE_SECTION, guidance)
            guidance_updated = True

        date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        for correction in learnable:
            text = append_to_section(text, LEARNED_CORRECTIONS_SECTION, correction_log_line(correction, date))

        logger.info(
            "Learned from %d corrections (guidance %s)",
            len(learnable),
            "updated" if guidance_updated else "unchanged",
        )
        return ProfileUpdate(
            profile=profile.with_text(text),
            applied=learnable,
            reported=reported,
            guidance_updated=guidance_updated,
        )

    def learn_from_action(
        self,
        email: Email,
        action: str,
        prediction: Optional[Prediction],
        profile: Profile,
    ) -> LearningOutcome:
        """
        Learn from an explicit user action.

        Args:
            email: Email state before the action.
            action: ``spam``, ``unspam`` or ``label:<name>``.
            prediction: Recorded decision for the email, if any.
            profile: Current profile snapshot.

        Returns:
            LearningOutcome: Result of :meth:`learn` on the derived correction.

        Raises:
            ValueError: If ``action`` is not recognized.
        """
        if prediction is not None:
            decision = prediction.decision
        else:
            observed = ObservedState.from_email(email)
            decision = Decision(
                labels=observed.labels,
                action=observed.action,
                needs_reply=observed.needs_reply,
                source=DecisionSource.AI,
                action_source=Attribution.AI if observed.action else None,
            )

        actual = ObservedState(
            labels=decision.labels,
            action=decision.action,
            needs_reply=decision.needs_reply,
        )
        if action == "spam":
            actual = actual.model_copy(update={"action": TerminalAction.SPAM})
        elif action == "unspam":
            if decision.action != TerminalAction.SPAM:
                decision = decision.model_copy(
                    update={"action": TerminalAction.SPAM, "action_source": Attribution.AI}
                )
            actual = actual.model_copy(update={"action": None})
        elif action.startswith("label:") and action[len("label:"):].strip():
            label = action[len("label:"):].strip()
            actual = actual.model_copy(update={"labels": actual.labels | {label}})
        else:
            raise ValueError(f"unknown action: {action!r}")

        correction = Correction(
            email_id=email.id,
            sender=email.sender,
            subject=email.subject,
            decision=decision,
            actual=actual,
        )
        if not correction.divergences:
            return NoChange(reason="action matches the recorded decision")
        return self.learn([correction], profile)
