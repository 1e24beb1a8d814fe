"""Registry of labels the AI introduced.

Labels suggested by the model are created on the provider as a side effect of
applying decisions. ``labels.json`` remembers which ones the AI introduced,
so ``labels cleanup`` can remove those that no longer carry any email,
together with their ``### <label>`` profile subsection.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import ProviderError
from .models import Decision
from .profile_store import atomic_write_text, remove_label_section
from .providers.base import EmailProvider

logger = logging.getLogger(__name__)


class LabelSource(str, Enum):
    PROVIDER = "provider"
    LLM = "llm"


class LabelInfo(BaseModel):
    name: str
    source: LabelSource = LabelSource.LLM
    email_count: int = 0


class LabelFile(BaseModel):
    labels: dict[str, LabelInfo] = Field(default_factory=dict)


class LabelManager:
    """
    Tracks AI-introduced labels.

    Attributes:
        path: Backing ``labels.json`` file.
    """

    def __init__(self, path: Path, labels: Optional[dict[str, LabelInfo]] = None) -> None:
        self.path = path
        self._labels: dict[str, LabelInfo] = dict(labels or {})

    @classmethod
    def load(cls, path: Path) -> "LabelManager":
        if not path.exists():
            return cls(path)
        try:
            data = LabelFile.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            logger.warning(f"Label registry unreadable, starting empty: {e}")
            return cls(path)
        return cls(path, data.labels)

    def save(self) -> None:
        payload = LabelFile(labels=self._labels)
        atomic_write_text(self.path, payload.model_dump_json(indent=2) + "\n")

    def _find(self, name: str) -> Optional[str]:
        lowered = name.lower()
        return next((key for key in self._labels if key.lower() == lowered), None)

    def record_decision(self, decision: Decision) -> None:
        """Count the AI-contributed labels of an applied decision."""
        rule_labels = {label.lower() for label in decision.rule_labels}
        for label in decision.labels:
            key = self._find(label)
            if key is not None:
                info = self._labels[key]
                self._labels[key] = info.model_copy(update={"email_count": info.email_count + 1})
            elif label.lower() not in rule_labels:
                self._labels[label] = LabelInfo(name=label, source=LabelSource.LLM, email_count=1)
                logger.debug("Registered AI label '%s'", label)

    def mark_provider_labels(self, names: list[str]) -> None:
        """Register labels that already existed on the provider."""
        for name in names:
            if self._find(name) is None:
                self._labels[name] = LabelInfo(name=name, source=LabelSource.PROVIDER)

    def llm_labels(self) -> list[str]:
        return sorted(info.name for info in self._labels.values() if info.source == LabelSource.LLM)

    def cleanup(self, provider: EmailProvider, profile_text: str) -> tuple[list[str], str]:
        """
        Remove AI labels that no longer carry any email.

        A label the provider does not know anymore counts as empty.

        Args:
            provider: Mail provider.
            profile_text: Current profile guidance text.

        Returns:
            tuple[list[str], str]: Removed label names and the updated profile text.
        """
        removed = []
        text = profile_text

        for name in self.llm_labels():
            try:
                count = provider.count_labeled(name)
            except ProviderError as e:
                logger.debug(f"Counting label '{name}' failed, treating it as gone: {e}")
                count = 0

            if count:
                continue

            try:
                provider.delete_label(name)
            except ProviderError as e:
                logger.debug(f"Provider did not delete label '{name}': {e}")

            key = self._find(name)
            if key is not None:
                del self._labels[key]
            text = remove_label_section(text, name)
            removed.append(name)
            logger.info("Removed unused AI label '%s'", name)

        return removed, text
