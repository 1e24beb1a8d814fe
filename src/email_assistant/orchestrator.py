"""Workflow orchestrator.

Objective:
    Coordinate one invocation end to end:
    1) Load a fresh profile snapshot
    2) Detect user corrections and learn from them
    3) Fetch candidate emails, skipping those already decided
    4) Classify each email (rules + AI judgment, resolved) concurrently
    5) Apply decisions as they complete (unless running in dry-run mode)
    6) Persist the profile once, then predictions and the label registry

Responsibilities:
    - Compose the core components (profile store, judgment adapter, learner)
      with a mail provider.
    - Provide an imperative API used by the CLI: :meth:`EmailAssistant.run`,
      :meth:`EmailAssistant.learn`, :meth:`EmailAssistant.apply_user_action`,
      :meth:`EmailAssistant.delete`, :meth:`EmailAssistant.list_labels`,
      :meth:`EmailAssistant.cleanup_labels`.

High-level call tree:
    - :class:`EmailAssistant`
        - :meth:`EmailAssistant.run`
            - :meth:`ProfileStore.load`
            - :meth:`EmailAssistant._learn`
                - :meth:`CorrectionLearner.detect_corrections`
                - :meth:`CorrectionLearner.learn`
            - :meth:`EmailAssistant._classify_batch`
                - :meth:`EmailProvider.fetch`
                - per email, on a thread pool: :meth:`EmailAssistant.classify`
                    - :func:`email_assistant.rules.evaluate`
                    - :meth:`JudgmentAdapter.classify`
                    - :func:`email_assistant.resolver.resolve`
                - per completed email: :meth:`EmailAssistant._finish`
                    - :meth:`EmailProvider.apply`
            - :meth:`ProfileStore.save` (also when the batch raises)

Operational notes:
    - Workers share only the frozen :class:`~email_assistant.models.Profile`;
      provider calls and bookkeeping happen on the calling thread.
    - Cancellation: once ``cancel_event`` is set, no new AI calls are made and
      remaining emails resolve from rules only. ``KeyboardInterrupt`` sets the
      event and stops applying further decisions.
    - Any failure applying one email fails that email only; the batch continues.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Optional

from .config import Settings, get_settings
from .errors import ProviderError
from .judgment import JudgmentAdapter
from .labels import LabelManager
from .learner import CorrectionLearner
from .models import (
    Correction,
    Decision,
    Email,
    JudgmentFailure,
    LearningOutcome,
    ProcessingResult,
    Profile,
    ProfileUpdate,
    RunSummary,
)
from .predictions import PredictionStore
from .profile_store import ProfileStore
from .providers.base import EmailProvider
from .providers.outlook import OutlookProvider
from .resolver import resolve
from .rules import evaluate

logger = logging.getLogger(__name__)

USER_ACTIONS = ("spam", "unspam")


def describe_outcome(outcome: LearningOutcome) -> str:
    """One-line description of a learning outcome for the run summary."""
    if isinstance(outcome, ProfileUpdate):
        state = "updated" if outcome.guidance_updated else "unchanged"
        return f"learned from {len(outcome.applied)} corrections (guidance {state})"
    return outcome.reason


def _correction_warning(correction: Correction, prefix: str) -> str:
    changes = "; ".join(d.describe() for d in correction.divergences)
    return f"{prefix} '{correction.subject}' ({correction.email_id}): {changes}"


def validate_action(action: str) -> str:
    """Check a user action string (``spam``, ``unspam`` or ``label:<name>``).

    Raises:
        ValueError: If the action is not recognized.
    """
    if action in USER_ACTIONS:
        return action
    if action.startswith("label:") and action[len("label:"):].strip():
        return action
    raise ValueError(f"unknown action: {action!r}")


class EmailAssistant:
    """
    Orchestrates classification, application and learning.

    This class is glue: it connects the profile store, judgment adapter,
    learner and provider without embedding decision logic.

    Attributes:
        settings: Application settings.
        provider: Mail provider.
        adapter: AI judgment adapter.
        learner: Correction learner.
        store: Profile store.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        provider: Optional[EmailProvider] = None,
        adapter: Optional[JudgmentAdapter] = None,
        learner: Optional[CorrectionLearner] = None,
        store: Optional[ProfileStore] = None,
    ) -> None:
        """
        Initialize the assistant with its components.

        Args:
            settings: Application settings (loads from env if None).
            provider: Mail provider (Outlook if None).
            adapter: Judgment adapter (Groq-backed if None).
            learner: Correction learner (shares the adapter's service if None).
            store: Profile store.
        """
        self.settings = settings or get_settings()
        self.provider = provider or OutlookProvider(self.settings)
        self.adapter = adapter or JudgmentAdapter(self.settings)
        self.learner = learner or CorrectionLearner(self.settings, service=self.adapter.service)
        self.store = store or ProfileStore(self.settings)

    def _load_predictions(self) -> PredictionStore:
        return PredictionStore.load(self.settings.predictions_path)

    def _load_labels(self) -> LabelManager:
        return LabelManager.load(self.settings.labels_path)

    def classify(
        self,
        email: Email,
        profile: Profile,
        cancel_event: Optional[threading.Event] = None,
    ) -> tuple[Decision, list[str]]:
        """
        Decide labels and action for one email.

        Args:
            email: Email to classify.
            profile: Profile snapshot.
            cancel_event: When set, the AI is not called.

        Returns:
            tuple[Decision, list[str]]: Decision and non-fatal warnings.
        """
        rule_results = evaluate(email, profile.rules)
        warnings = [r.warning for r in rule_results if r.warning]

        if cancel_event is not None and cancel_event.is_set():
            judgment = JudgmentFailure(kind="skipped", message="run cancelled")
        else:
            judgment = self.adapter.classify(email, profile.text)

        if isinstance(judgment, JudgmentFailure):
            warnings.append(f"AI {judgment.kind}: {judgment.message}; decided by rules only")

        return resolve(email, rule_results, judgment), warnings

    def _learn(
        self, profile: Profile, predictions: PredictionStore, summary: RunSummary
    ) -> Profile:
        """Detect corrections, learn from them, and acknowledge consumed ones."""
        scan = self.learner.detect_corrections(predictions, self.provider)
        summary.warnings.extend(scan.warnings)
        for email_id in scan.vanished_ids:
            predictions.remove(email_id)

        outcome = self.learner.learn(scan.corrections, profile)
        summary.learning = describe_outcome(outcome)
        self._record_outcome(outcome, scan.corrections, predictions, summary)

        if isinstance(outcome, ProfileUpdate):
            return outcome.profile
        return profile

    def _record_outcome(
        self,
        outcome: LearningOutcome,
        corrections: list[Correction],
        predictions: PredictionStore,
        summary: RunSummary,
    ) -> None:
        for correction in outcome.reported:
            summary.warnings.append(_correction_warning(correction, "correction contradicts a rule on"))

        unresolved = set()
        if not isinstance(outcome, ProfileUpdate):
            for correction in outcome.unresolved:
                unresolved.add(correction.fingerprint)
                summary.warnings.append(_correction_warning(correction, "unresolved correction on"))

        for correction in corrections:
            if correction.fingerprint not in unresolved:
                predictions.acknowledge(correction)

    def _finish(
        self,
        email: Email,
        future: "Future[tuple[Decision, list[str]]]",
        dry_run: bool,
        predictions: PredictionStore,
        labels: LabelManager,
    ) -> ProcessingResult:
        """
        Apply one completed classification.

        Errors are caught and returned inside :class:`ProcessingResult` so
        that the batch continues with other emails.
        """
        try:
            decision, warnings = future.result()
        except Exception as e:
            logger.exception(f"Error classifying email {email.id}")
            return ProcessingResult(
                email_id=email.id,
                subject=email.subject,
                sender=email.sender_address,
                success=False,
                error=f"classification failed: {e}",
            )

        result = ProcessingResult(
            email_id=email.id,
            subject=email.subject,
            sender=email.sender_address,
            decision=decision,
            warnings=warnings,
        )

        if dry_run:
            logger.info(
                "[dry-run] %s -> labels=%s action=%s (%s)",
                email.subject[:50],
                sorted(decision.labels),
                decision.action.value if decision.action else "none",
                decision.source.value,
            )
            return result

        try:
            self.provider.apply(email.id, decision)
        except ProviderError as e:
            logger.error(f"Failed to apply decision to email {email.id}: {e}")
            result.success = False
            result.error = f"apply failed: {e}"
            return result
        except Exception as e:
            logger.exception(f"Unexpected error applying decision to email {email.id}")
            result.success = False
            result.error = f"apply failed: {e}"
            return result

        result.applied = True
        predictions.record(email, decision)
        labels.record_decision(decision)
        logger.info(
            "Applied %s to '%s' (labels=%s, action=%s)",
            decision.source.value,
            email.subject[:50],
            sorted(decision.labels),
            decision.action.value if decision.action else "none",
        )
        return result

    def _classify_batch(
        self,
        limit: Optional[int],
        dry_run: bool,
        cancel_event: threading.Event,
        profile: Profile,
        predictions: PredictionStore,
        labels: LabelManager,
        summary: RunSummary,
    ) -> None:
        """Fetch undecided emails, classify them concurrently and apply each result."""
        batch_size = limit or self.settings.scan_limit
        logger.info(f"Starting classification (batch_size={batch_size})")
        emails = [e for e in self.provider.fetch(batch_size) if not predictions.has(e.id)]

        if not emails:
            logger.info("No new emails to process")
            return

        logger.info(f"Processing {len(emails)} emails")
        if not dry_run:
            try:
                labels.mark_provider_labels(self.provider.list_labels())
            except ProviderError as e:
                logger.warning(f"Could not list provider labels: {e}")

        with ThreadPoolExecutor(max_workers=self.settings.max_concurrency) as executor:
            futures = {
                executor.submit(self.classify, email, profile, cancel_event): email
                for email in emails
            }
            try:
                for future in as_completed(futures):
                    summary.results.append(
                        self._finish(futures[future], future, dry_run, predictions, labels)
                    )
            except KeyboardInterrupt:
                logger.warning("Interrupted; no further decisions will be applied")
                cancel_event.set()
                for future in futures:
                    future.cancel()

    def run(
        self,
        limit: Optional[int] = None,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunSummary:
        """Run one scan: learn, classify, apply.

        Dry-run mode:
            Emails are classified but nothing is applied, learned or written.

        Args:
            limit: Maximum emails to fetch (``scan_limit`` if None).
            dry_run: If True, classify but don't apply or persist.
            cancel_event: Cancellation signal shared with the caller.

        Returns:
            RunSummary: Per-email results, warnings and the learning outcome.

        Raises:
            ProfileCorrupt: If no usable profile could be loaded.
            ProviderError: If fetching emails fails.
        """
        cancel_event = cancel_event or threading.Event()
        summary = RunSummary()

        profile = self.store.load()
        summary.warnings.extend(profile.warnings)
        loaded_text = profile.text

        predictions = self._load_predictions()
        labels = self._load_labels()

        if dry_run:
            summary.learning = "skipped (dry run)"
        elif len(predictions):
            profile = self._learn(profile, predictions, summary)

        try:
            self._classify_batch(limit, dry_run, cancel_event, profile, predictions, labels, summary)
        finally:
            # Mailbox changes already made must stay recorded even if the batch aborts.
            if not dry_run:
                if profile.text != loaded_text:
                    self.store.save(profile)
                predictions.save()
                labels.save()

        summary.cancelled = cancel_event.is_set()

        logger.info(
            "Completed: %d applied, %d failed (rule=%d, ai=%d, merged=%d)",
            summary.applied_count,
            summary.failed_count,
            summary.rule_count,
            summary.ai_count,
            summary.merged_count,
        )
        return summary

    def learn(self) -> RunSummary:
        """Detect corrections and learn from them, without classifying."""
        summary = RunSummary()
        profile = self.store.load()
        summary.warnings.extend(profile.warnings)
        predictions = self._load_predictions()

        if not len(predictions):
            summary.learning = "no recorded decisions"
            return summary

        updated = self._learn(profile, predictions, summary)
        if updated.text != profile.text:
            self.store.save(updated)
        predictions.save()
        return summary

    def apply_user_action(self, email_id: str, action: str) -> LearningOutcome:
        """
        Execute an explicit user action and learn from it.

        Args:
            email_id: Message ID.
            action: ``spam``, ``unspam`` or ``label:<name>``.

        Returns:
            LearningOutcome: What was learned.

        Raises:
            ValueError: If the action is unknown.
            ProviderError: If the provider call fails.
        """
        validate_action(action)
        profile = self.store.load()
        predictions = self._load_predictions()
        email = self.provider.get_message(email_id)

        if action == "spam":
            self.provider.mark_spam(email_id)
        elif action == "unspam":
            self.provider.unspam(email_id)
        else:
            self.provider.add_label(email_id, action[len("label:"):].strip())
        logger.info(f"Applied user action {action} to email {email_id}")

        outcome = self.learner.learn_from_action(email, action, predictions.get(email_id), profile)
        if isinstance(outcome, ProfileUpdate):
            self.store.save(outcome.profile)
            consumed = outcome.applied + outcome.reported
        else:
            consumed = outcome.reported

        for correction in consumed:
            predictions.acknowledge(correction)
        predictions.save()
        return outcome

    def delete(self, email_id: str) -> None:
        """Move a message to the trash (nothing is learned)."""
        self.provider.delete(email_id)
        logger.info(f"Deleted email {email_id}")

    def list_labels(self) -> tuple[list[str], list[str]]:
        """Return provider labels and the AI-introduced labels."""
        return sorted(self.provider.list_labels()), self._load_labels().llm_labels()

    def cleanup_labels(self) -> list[str]:
        """Delete unused AI labels and their profile subsections."""
        profile = self.store.load()
        labels = self._load_labels()

        removed, text = labels.cleanup(self.provider, profile.text)
        if text != profile.text:
            self.store.save(profile.with_text(text))
        labels.save()
        return removed
