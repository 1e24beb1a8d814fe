"""Pydantic data models used across the application.

Objective:
    Centralize all strongly-typed data structures representing:
    - Email snapshots supplied by a provider
    - The classification profile (free-text guidance + structured rules)
    - AI suggestions, rule results and resolved decisions
    - Recorded decisions, observed state and user corrections
    - Per-email processing results and the run summary

Design notes:
    - Snapshot models are frozen (``ConfigDict(frozen=True)``) so that a loaded
      :class:`Profile` can be shared by concurrent workers without copying.
    - Rule files use the compact ``{"field": "to", "contains": "x"}`` form;
      :class:`Condition` also accepts ``{"field", "op", "value"}``.
    - Label sets are serialized sorted so persisted files are stable.

High-level structure:
    - Input primitives: :class:`Email`
    - Rule primitives: :class:`Condition`, :class:`RuleAction`, :class:`Rule`,
      :class:`RuleFile`, :class:`Profile`
    - Classification primitives: :class:`Suggestion`, :class:`JudgmentFailure`,
      :class:`RuleResult`, :class:`Decision`
    - Learning primitives: :class:`Prediction`, :class:`ObservedState`,
      :class:`Divergence`, :class:`Correction`, :class:`ProfileUpdate`,
      :class:`NoChange`
    - Reporting primitives: :class:`ProcessingResult`, :class:`RunSummary`
"""

import hashlib
import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator

from .config import CLASSIFIED_LABEL, NEEDS_REPLY_LABEL
from .sanitizer import extract_address, extract_sender_domain


class TerminalAction(str, Enum):
    """Actions that move a message out of the inbox. At most one applies."""

    ARCHIVE = "archive"
    DELETE = "delete"
    SPAM = "spam"


class ConditionOp(str, Enum):
    """Operators a :class:`Condition` can apply to a field value."""

    CONTAINS = "contains"
    EQUALS = "equals"
    MATCHES = "matches"


class DecisionSource(str, Enum):
    """Which layer produced a :class:`Decision`."""

    RULE = "rule"
    AI = "ai"
    MERGED = "merged"


class Attribution(str, Enum):
    """Layer responsible for one part of a decision."""

    RULE = "rule"
    AI = "ai"


class DivergenceKind(str, Enum):
    """Ways the user's final state can differ from a recorded decision."""

    MISSING_LABEL = "missing_label"
    UNWANTED_LABEL = "unwanted_label"
    WRONG_ACTION = "wrong_action"
    FALSE_NEEDS_REPLY = "false_needs_reply"
    MISSED_NEEDS_REPLY = "missed_needs_reply"


SYSTEM_LABELS = frozenset(
    {
        "INBOX",
        "ARCHIVE",
        "SENT",
        "DRAFT",
        "TRASH",
        "SPAM",
        "STARRED",
        "IMPORTANT",
        "UNREAD",
        "CATEGORY_PERSONAL",
        "CATEGORY_SOCIAL",
        "CATEGORY_PROMOTIONS",
        "CATEGORY_UPDATES",
        "CATEGORY_FORUMS",
    }
)

_FINGERPRINT_RE = re.compile(r"\[correction:([0-9a-f]{12})\]")


def is_system_label(label: str) -> bool:
    """Return True for provider pseudo-labels and internal marker labels.

    Args:
        label: Label name as reported by the provider.

    Returns:
        bool: True if the label is not a user/AI content label.
    """
    if label in SYSTEM_LABELS:
        return True
    lowered = label.lower()
    return lowered in (CLASSIFIED_LABEL.lower(), NEEDS_REPLY_LABEL.lower())


def contains_label(labels: Iterable[str], label: str) -> bool:
    """True if ``label`` is among ``labels``, compared case-insensitively."""
    lowered = label.lower()
    return any(existing.lower() == lowered for existing in labels)


class Email(BaseModel):
    """
    Immutable snapshot of one message, as supplied by a provider.

    Attributes:
        id: Provider message ID.
        sender: Raw sender (``"Name <addr>"`` or bare address).
        recipients: Raw ``To`` recipients.
        subject: Subject line.
        body: Body content (plain text or HTML, see ``body_content_type``).
        body_content_type: ``text`` or ``html``.
        labels: Labels/categories plus provider pseudo-labels (INBOX, SPAM, ...).
        needs_reply: Thread-needs-reply flag reported by the provider.
    """

    id: str
    sender: str = ""
    recipients: tuple[str, ...] = ()
    subject: str = ""
    body: str = ""
    body_content_type: str = "text"
    labels: frozenset[str] = frozenset()
    needs_reply: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def sender_address(self) -> str:
        """Sender address lowercased, without display name."""
        return extract_address(self.sender)

    @property
    def sender_domain(self) -> Optional[str]:
        """Domain part of the sender address, or None."""
        return extract_sender_domain(self.sender_address)


class Condition(BaseModel):
    """
    Predicate over one field of an :class:`Email`.

    A condition can carry a nested ``and``/``or`` sub-condition. A string
    ``and`` (legacy rule files, e.g. ``"and": "archive"``) is read as a guard:
    the owning rule only fires when the AI suggests that terminal action.

    Attributes:
        field: Field name (from, to, subject, body, labels, domain); None means
            the condition is empty and can never match.
        op: Operator applied to the lowercased field value; None when the rule
            file names no operator, which makes the condition unusable.
        value: Operand.
        and_: Sub-condition that must also match.
        or_: Sub-condition that may match instead.
        requires_action: Guard on the AI-suggested terminal action.
    """

    field: Optional[str] = None
    op: Optional[ConditionOp] = None
    value: str = ""
    and_: Optional["Condition"] = Field(default=None, alias="and")
    or_: Optional["Condition"] = Field(default=None, alias="or")
    requires_action: Optional[TerminalAction] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)

        if "op" not in data:
            for op in ConditionOp:
                if op.value in data:
                    data["op"] = op.value
                    data["value"] = data.pop(op.value)
                    break

        guard = data.get("and")
        if isinstance(guard, str):
            data.pop("and")
            terminal_values = {a.value for a in TerminalAction}
            if guard.strip().lower() in terminal_values:
                data["requires_action"] = guard.strip().lower()

        if isinstance(data.get("field"), str):
            data["field"] = data["field"].strip().lower() or None

        return data

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize in the compact rule-file form."""
        out: dict[str, Any] = {}
        if self.field is not None:
            out["field"] = self.field
        if self.op is not None:
            out[self.op.value] = self.value
        if self.and_ is not None:
            out["and"] = self.and_.to_json_dict()
        elif self.requires_action is not None:
            out["and"] = self.requires_action.value
        if self.or_ is not None:
            out["or"] = self.or_.to_json_dict()
        return out


class RuleAction(BaseModel):
    """Either a terminal action or a label to add.

    Rule files spell it as ``"archive"``/``"delete"``/``"spam"`` or
    ``{"label": "<name>"}``.
    """

    terminal: Optional[TerminalAction] = None
    label: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _parse(cls, data: Any) -> Any:
        if isinstance(data, str):
            text = data.strip()
            if text.lower().startswith("label:"):
                return {"label": text.split(":", 1)[1].strip()}
            return {"terminal": text.lower()}
        return data

    @model_validator(mode="after")
    def _exactly_one(self) -> "RuleAction":
        if (self.terminal is None) == (not self.label):
            raise ValueError("action must be a terminal action or a non-empty label")
        return self

    @classmethod
    def archive(cls) -> "RuleAction":
        return cls(terminal=TerminalAction.ARCHIVE)

    @classmethod
    def delete(cls) -> "RuleAction":
        return cls(terminal=TerminalAction.DELETE)

    @classmethod
    def spam(cls) -> "RuleAction":
        return cls(terminal=TerminalAction.SPAM)

    @classmethod
    def add_label(cls, name: str) -> "RuleAction":
        return cls(label=name)

    @property
    def is_terminal(self) -> bool:
        return self.terminal is not None

    def to_json(self) -> Union[str, dict[str, str]]:
        if self.terminal is not None:
            return self.terminal.value
        return {"label": self.label or ""}


class Rule(BaseModel):
    """
    User-authored rule.

    Attributes:
        name: Display name.
        description: Optional free-text documentation.
        condition: Condition tree.
        action: Action applied when the condition matches.
        source_file: Rule file the rule was loaded from (not serialized).
    """

    name: str
    description: str = ""
    condition: Condition
    action: RuleAction
    source_file: Optional[str] = Field(default=None, exclude=True)

    model_config = ConfigDict(frozen=True)

    def to_json_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.description:
            out["description"] = self.description
        out["condition"] = self.condition.to_json_dict()
        out["action"] = self.action.to_json()
        return out


class RuleFile(BaseModel):
    """Content of one ``rules/*.json`` file."""

    rules: list[Rule] = Field(default_factory=list)


class Profile(BaseModel):
    """
    Classification profile snapshot: free-text guidance plus ordered rules.

    Attributes:
        text: Markdown guidance document sent to the model.
        rules: Rules in declared order.
        warnings: Non-fatal problems found while loading.
    """

    text: str = ""
    rules: tuple[Rule, ...] = ()
    warnings: tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)

    def with_text(self, text: str) -> "Profile":
        return self.model_copy(update={"text": text})

    @property
    def learned_fingerprints(self) -> set[str]:
        """Fingerprints of corrections already recorded in the text."""
        return set(_FINGERPRINT_RE.findall(self.text))


class Suggestion(BaseModel):
    """
    Structured output of the AI judgment.

    Attributes:
        labels: Suggested labels.
        action: Suggested terminal action.
        needs_reply: Whether the message expects a reply.
        confidence: Model-reported confidence in [0, 1].
    """

    labels: frozenset[str] = frozenset()
    action: Optional[TerminalAction] = None
    needs_reply: bool = False
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    model_config = ConfigDict(frozen=True)


class JudgmentFailure(BaseModel):
    """Why no :class:`Suggestion` is available for an email."""

    kind: Literal["unavailable", "timeout", "malformed", "skipped"]
    message: str = ""

    model_config = ConfigDict(frozen=True)


JudgmentResult = Union[Suggestion, JudgmentFailure]


class RuleResult(BaseModel):
    """Match result for one rule against one email."""

    rule: Rule
    matched: bool
    warning: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class Decision(BaseModel):
    """
    Final resolved outcome for one email.

    Attributes:
        labels: Labels to add.
        action: Terminal action, if any.
        needs_reply: Needs-reply flag.
        source: Which layers contributed.
        rule_labels: Labels contributed by rules.
        action_source: Layer that supplied ``action``.
        matched_rules: Names of rules that fired.
    """

    labels: frozenset[str] = frozenset()
    action: Optional[TerminalAction] = None
    needs_reply: bool = False
    source: DecisionSource
    rule_labels: frozenset[str] = frozenset()
    action_source: Optional[Attribution] = None
    matched_rules: tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True)

    @field_serializer("labels", "rule_labels")
    def _sorted_labels(self, value: frozenset[str]) -> list[str]:
        return sorted(value)


class Prediction(BaseModel):
    """A decision recorded at classification time."""

    email_id: str
    sender: str = ""
    subject: str = ""
    decision: Decision
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ObservedState(BaseModel):
    """
    The user's final state of an email, as observed on the provider.

    Attributes:
        labels: Content labels (system and marker labels removed).
        action: Terminal action implied by the pseudo-labels.
        needs_reply: Whether the needs-reply label is present.
    """

    labels: frozenset[str] = frozenset()
    action: Optional[TerminalAction] = None
    needs_reply: bool = False

    model_config = ConfigDict(frozen=True)

    @field_serializer("labels")
    def _sorted_labels(self, value: frozenset[str]) -> list[str]:
        return sorted(value)

    @classmethod
    def from_email(cls, email: Email) -> "ObservedState":
        """Derive observed state from provider labels.

        SPAM wins over TRASH; a message with neither and no INBOX label has
        been archived.
        """
        labels = email.labels
        if "SPAM" in labels:
            action: Optional[TerminalAction] = TerminalAction.SPAM
        elif "TRASH" in labels:
            action = TerminalAction.DELETE
        elif "INBOX" not in labels:
            action = TerminalAction.ARCHIVE
        else:
            action = None

        return cls(
            labels=frozenset(l for l in labels if not is_system_label(l)),
            action=action,
            needs_reply=contains_label(labels, NEEDS_REPLY_LABEL),
        )


class Divergence(BaseModel):
    """One difference between a recorded decision and the observed state."""

    kind: DivergenceKind
    label: Optional[str] = None
    predicted: Optional[str] = None
    actual: Optional[str] = None
    attribution: Attribution

    model_config = ConfigDict(frozen=True)

    def describe(self) -> str:
        if self.kind == DivergenceKind.MISSING_LABEL:
            return f"user added label '{self.label}'"
        if self.kind == DivergenceKind.UNWANTED_LABEL:
            return f"user removed label '{self.label}'"
        if self.kind == DivergenceKind.WRONG_ACTION:
            return f"action {self.predicted or 'none'} -> {self.actual or 'none'}"
        if self.kind == DivergenceKind.FALSE_NEEDS_REPLY:
            return "predicted needs-reply, user disagreed"
        return "user flagged needs-reply"


class Correction(BaseModel):
    """
    Divergence between a recorded decision and the user's final state.

    Attributes:
        email_id: Provider message ID.
        sender: Sender at classification time.
        subject: Subject at classification time.
        decision: Decision recorded at classification time.
        actual: Observed final state.
    """

    email_id: str
    sender: str = ""
    subject: str = ""
    decision: Decision
    actual: ObservedState

    @property
    def divergences(self) -> list[Divergence]:
        decision = self.decision
        actual = self.actual
        found: list[Divergence] = []

        for label in sorted(decision.labels):
            if not contains_label(actual.labels, label):
                from_rule = contains_label(decision.rule_labels, label)
                found.append(
                    Divergence(
                        kind=DivergenceKind.UNWANTED_LABEL,
                        label=label,
                        attribution=Attribution.RULE if from_rule else Attribution.AI,
                    )
                )

        for label in sorted(actual.labels):
            if not contains_label(decision.labels, label):
                found.append(
                    Divergence(
                        kind=DivergenceKind.MISSING_LABEL,
                        label=label,
                        attribution=Attribution.AI,
                    )
                )

        if decision.action != actual.action:
            found.append(
                Divergence(
                    kind=DivergenceKind.WRONG_ACTION,
                    predicted=decision.action.value if decision.action else None,
                    actual=actual.action.value if actual.action else None,
                    attribution=(
                        Attribution.RULE
                        if decision.action_source == Attribution.RULE
                        else Attribution.AI
                    ),
                )
            )

        if decision.needs_reply and not actual.needs_reply:
            found.append(
                Divergence(kind=DivergenceKind.FALSE_NEEDS_REPLY, attribution=Attribution.AI)
            )
        elif actual.needs_reply and not decision.needs_reply:
            found.append(
                Divergence(kind=DivergenceKind.MISSED_NEEDS_REPLY, attribution=Attribution.AI)
            )

        return found

    @property
    def fingerprint(self) -> str:
        """Stable 12-hex-digit identity of this correction."""
        payload = json.dumps(
            {
                "email_id": self.email_id,
                "divergences": [
                    [d.kind.value, d.label, d.predicted, d.actual]
                    for d in self.divergences
                ],
            },
            sort_keys=True,
        )
        return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:12]


class ProfileUpdate(BaseModel):
    """Learning produced a revised profile.

    Attributes:
        profile: Updated snapshot (not yet persisted).
        applied: Corrections recorded in the profile.
        reported: Rule-attributable corrections reported to the user.
        guidance_updated: Whether the learned guidance section changed.
    """

    profile: Profile
    applied: list[Correction] = Field(default_factory=list)
    reported: list[Correction] = Field(default_factory=list)
    guidance_updated: bool = False


class NoChange(BaseModel):
    """Learning left the profile untouched.

    Attributes:
        reason: Why nothing changed.
        reported: Rule-attributable corrections reported to the user.
        unresolved: Corrections that could not be learned this run.
    """

    reason: str = ""
    reported: list[Correction] = Field(default_factory=list)
    unresolved: list[Correction] = Field(default_factory=list)


LearningOutcome = Union[ProfileUpdate, NoChange]


class ProcessingResult(BaseModel):
    """
    Result of processing a single email.

    Attributes:
        email_id: Provider message ID.
        subject: Email subject.
        sender: Sender address.
        decision: Resolved decision (None if classification itself failed).
        applied: Whether the decision was applied on the provider.
        success: Whether processing succeeded.
        error: Error message if failed.
        warnings: Non-fatal problems (skipped rules, AI failures).
    """

    email_id: str
    subject: str = ""
    sender: str = ""
    decision: Optional[Decision] = None
    applied: bool = False
    success: bool = True
    error: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)


class RunSummary(BaseModel):
    """Outcome of one scan run, consumed by the CLI."""

    results: list[ProcessingResult] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    learning: Optional[str] = None
    cancelled: bool = False

    def count_source(self, source: DecisionSource) -> int:
        return sum(1 for r in self.results if r.decision and r.decision.source == source)

    @property
    def rule_count(self) -> int:
        return self.count_source(DecisionSource.RULE)

    @property
    def ai_count(self) -> int:
        return self.count_source(DecisionSource.AI)

    @property
    def merged_count(self) -> int:
        return self.count_source(DecisionSource.MERGED)

    @property
    def applied_count(self) -> int:
        return sum(1 for r in self.results if r.applied)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def all_warnings(self) -> list[str]:
        out = list(self.warnings)
        for result in self.results:
            out.extend(f"{result.email_id}: {w}" for w in result.warnings)
            if result.error:
                out.append(f"{result.email_id}: {result.error}")
        return out
