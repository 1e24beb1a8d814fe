"""Recorded decisions.

Every applied decision is stored so that a later run can compare it with the
state the user left the email in. ``predictions.json`` holds a single
``{"predictions": {<email_id>: Prediction}}`` object.
"""

import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from .models import Correction, Decision, Email, Prediction, contains_label
from .profile_store import atomic_write_text

logger = logging.getLogger(__name__)


class PredictionFile(BaseModel):
    """On-disk shape of ``predictions.json``."""

    predictions: dict[str, Prediction] = Field(default_factory=dict)


class PredictionStore:
    """
    Keyed store of recorded decisions.

    Attributes:
        path: Backing JSON file.
    """

    def __init__(self, path: Path, predictions: Optional[dict[str, Prediction]] = None) -> None:
        self.path = path
        self._predictions: dict[str, Prediction] = dict(predictions or {})

    @classmethod
    def load(cls, path: Path) -> "PredictionStore":
        """
        Load predictions from disk.

        A corrupt file is moved aside (``.corrupt`` suffix) and an empty store
        is returned, so the next save does not silently discard it.

        Args:
            path: ``predictions.json`` path.

        Returns:
            PredictionStore: Loaded store.
        """
        if not path.exists():
            return cls(path)

        try:
            data = PredictionFile.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            backup = path.with_name(path.name + ".corrupt")
            logger.warning(f"Predictions file unreadable, moving it to {backup.name}: {e}")
            path.replace(backup)
            return cls(path)

        return cls(path, data.predictions)

    def save(self) -> None:
        payload = PredictionFile(predictions=self._predictions)
        atomic_write_text(self.path, payload.model_dump_json(indent=2) + "\n")
        logger.debug("Saved %d predictions to %s", len(self._predictions), self.path)

    def __len__(self) -> int:
        return len(self._predictions)

    def has(self, email_id: str) -> bool:
        return email_id in self._predictions

    def get(self, email_id: str) -> Optional[Prediction]:
        return self._predictions.get(email_id)

    def all(self) -> list[Prediction]:
        return list(self._predictions.values())

    def record(self, email: Email, decision: Decision) -> Prediction:
        """Record the decision applied to ``email`` (replaces any older one)."""
        prediction = Prediction(
            email_id=email.id,
            sender=email.sender,
            subject=email.subject,
            decision=decision,
        )
        self._predictions[email.id] = prediction
        return prediction

    def remove(self, email_id: str) -> None:
        self._predictions.pop(email_id, None)

    def acknowledge(self, correction: Correction) -> None:
        """
        Align a recorded decision with the state the user chose.

        Called once a correction has been learned (or reported), so the same
        divergence is not detected again on the next run.

        Args:
            correction: Consumed correction.
        """
        prediction = self._predictions.get(correction.email_id)
        if prediction is None:
            return

        old = prediction.decision
        actual = correction.actual
        decision = old.model_copy(
            update={
                "labels": actual.labels,
                "action": actual.action,
                "needs_reply": actual.needs_reply,
                "rule_labels": frozenset(
                    label for label in old.rule_labels if contains_label(actual.labels, label)
                ),
                "action_source": old.action_source if old.action == actual.action else None,
            }
        )
        self._predictions[correction.email_id] = prediction.model_copy(
            update={"decision": decision}
        )
