"""Persisted classification profile.

Objective:
    Own the on-disk profile: a free-text Markdown guidance document plus a
    directory of structured JSON rule files, read as one
    :class:`~email_assistant.models.Profile` snapshot.

Responsibilities:
    - Load the guidance document (or the built-in default) and every rule
      file, skipping corrupt rule files with a warning.
    - Write the guidance document and rule files atomically
      (temp file in the same directory, fsync, ``os.replace``).
    - Edit Markdown sections: replace a ``## section`` body, append a line to
      it, or drop a ``### label`` subsection.

High-level call tree:
    - :class:`ProfileStore`
        - :meth:`ProfileStore.load`
            - :meth:`ProfileStore.load_rule_file`
        - :meth:`ProfileStore.save` -> :func:`atomic_write_text`
        - :meth:`ProfileStore.append_rule` -> :func:`atomic_write_text`
        - :meth:`ProfileStore.rewrite_text`
            - :func:`replace_section`
    - :func:`append_to_section`, :func:`remove_label_section`

Operational notes:
    - One writer and one reader per invocation; there is no locking.
    - A run is aborted only when nothing usable loads: no rules, blank
      guidance, and at least one file failed.
"""

import contextlib
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .config import Settings
from .errors import ProfileCorrupt
from .models import Profile, Rule, RuleFile

logger = logging.getLogger(__name__)

LEARNED_GUIDANCE_SECTION = "Learned Guidance"
LEARNED_CORRECTIONS_SECTION = "Learned Corrections"

DEFAULT_PROFILE = """# Email Classification Profile

## Spam Patterns
- (Add patterns as you mark emails as spam)

## Important Signals
- Emails mentioning my name directly in body are important
- Replies to emails I sent are important

## Label Rules

## Learned Guidance

## Learned Corrections
"""

_SECTION_HEADING = re.compile(r"^##[ \t]", re.MULTILINE)


def atomic_write_text(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` so readers never see a partial file.

    Args:
        path: Destination file.
        content: Full new content.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def _section_bounds(text: str, section_id: str) -> Optional[tuple[int, int]]:
    heading = re.compile(rf"^##[ \t]+{re.escape(section_id)}[ \t]*$", re.MULTILINE)
    match = heading.search(text)
    if match is None:
        return None

    body_start = match.end()
    if text[body_start : body_start + 1] == "\n":
        body_start += 1

    following = _SECTION_HEADING.search(text, body_start)
    return body_start, following.start() if following else len(text)


def section_text(text: str, section_id: str) -> Optional[str]:
    """Return the body of ``## section_id`` (None if the section is absent)."""
    bounds = _section_bounds(text, section_id)
    if bounds is None:
        return None
    start, end = bounds
    return text[start:end].strip("\n")


def replace_section(text: str, section_id: str, new_body: str) -> str:
    """Replace the body of ``## section_id``, appending the section if missing.

    Args:
        text: Profile text.
        section_id: Section heading text (without ``## ``).
        new_body: New section body.

    Returns:
        str: Updated profile text.
    """
    body = new_body.strip("\n")
    bounds = _section_bounds(text, section_id)

    if bounds is None:
        if not text:
            prefix = ""
        elif text.endswith("\n\n"):
            prefix = text
        elif text.endswith("\n"):
            prefix = text + "\n"
        else:
            prefix = text + "\n\n"
        return f"{prefix}## {section_id}\n" + (f"{body}\n" if body else "")

    start, end = bounds
    if end == len(text):
        block = f"{body}\n" if body else ""
    else:
        block = f"{body}\n\n" if body else "\n"
    return text[:start] + block + text[end:]


def append_to_section(text: str, section_id: str, line: str) -> str:
    """Append one line to the end of ``## section_id``."""
    existing = section_text(text, section_id)
    if not existing or not existing.strip():
        return replace_section(text, section_id, line)
    return replace_section(text, section_id, f"{existing}\n{line}")


def remove_label_section(text: str, label: str) -> str:
    """Drop the ``### label`` subsection, up to the next heading.

    Args:
        text: Profile text.
        label: Label whose subsection is removed.

    Returns:
        str: Updated text (unchanged if the subsection does not exist).
    """
    heading = re.compile(rf"^###[ \t]+{re.escape(label)}[ \t]*$", re.MULTILINE)
    match = heading.search(text)
    if match is None:
        return text

    following = re.compile(r"^#{2,3}[ \t]", re.MULTILINE).search(text, match.end())
    end = following.start() if following else len(text)
    return text[: match.start()] + text[end:]


class ProfileStore:
    """
    Reads and writes the classification profile.

    Attributes:
        settings: Application settings (paths).
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @property
    def profile_path(self) -> Path:
        return self.settings.profile_path

    @property
    def rules_dir(self) -> Path:
        return self.settings.rules_dir

    @property
    def learned_rules_path(self) -> Path:
        return self.rules_dir / self.settings.learned_rules_file

    def _read_text(self) -> str:
        if not self.profile_path.exists():
            return DEFAULT_PROFILE
        try:
            return self.profile_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ProfileCorrupt(self.profile_path, str(e)) from e

    def rule_files(self) -> list[Path]:
        """Rule files in load order (sorted by name)."""
        if not self.rules_dir.is_dir():
            return []
        return sorted(p for p in self.rules_dir.glob("*.json") if p.is_file())

    def load_rule_file(self, path: Path) -> list[Rule]:
        """
        Parse one rule file.

        Args:
            path: ``rules/*.json`` file.

        Returns:
            list[Rule]: Rules in file order, tagged with their source file.

        Raises:
            ProfileCorrupt: If the file can't be read or doesn't match the
                ``{"rules": [...]}`` shape.
        """
        try:
            rule_file = RuleFile.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            raise ProfileCorrupt(path, str(e)) from e

        return [rule.model_copy(update={"source_file": path.name}) for rule in rule_file.rules]

    def load(self) -> Profile:
        """
        Load a fresh profile snapshot.

        Returns:
            Profile: Guidance text, rules in declared order, load warnings.

        Raises:
            ProfileCorrupt: If nothing usable could be loaded.
        """
        warnings: list[str] = []
        failed = False

        try:
            text = self._read_text()
        except ProfileCorrupt as e:
            logger.warning("Profile document unreadable: %s", e)
            warnings.append(f"profile document unreadable: {e.reason}")
            text = ""
            failed = True

        rules: list[Rule] = []
        files = self.rule_files()
        for path in files:
            try:
                rules.extend(self.load_rule_file(path))
            except ProfileCorrupt as e:
                logger.warning("Skipping corrupt rule file %s: %s", path.name, e.reason)
                warnings.append(f"rule file {path.name} skipped: {e.reason}")
                failed = True

        if failed and not rules and not text.strip():
            raise ProfileCorrupt(None, "no usable rules or guidance; " + "; ".join(warnings))

        logger.info("Loaded profile: %d rules from %d rule files", len(rules), len(files))
        return Profile(text=text, rules=tuple(rules), warnings=tuple(warnings))

    def save(self, profile: Profile) -> None:
        """Write the guidance document atomically. Rule files are left alone."""
        atomic_write_text(self.profile_path, profile.text)
        logger.debug("Saved profile to %s", self.profile_path)

    def append_rule(self, rule: Rule) -> Path:
        """
        Append a rule to the learned rules file.

        Args:
            rule: Rule to append.

        Returns:
            Path: File the rule was written to.

        Raises:
            ProfileCorrupt: If the existing file is corrupt (it is not overwritten).
        """
        path = self.learned_rules_path
        existing = self.load_rule_file(path) if path.exists() else []
        payload = {"rules": [r.to_json_dict() for r in [*existing, rule]]}
        atomic_write_text(path, json.dumps(payload, indent=2, ensure_ascii=False) + "\n")
        logger.info("Appended rule '%s' to %s", rule.name, path.name)
        return path

    def rewrite_text(self, section_id: str, new_text: str) -> str:
        """
        Replace one ``## section`` of the guidance document on disk.

        Args:
            section_id: Section heading text.
            new_text: New section body.

        Returns:
            str: The full updated guidance text.
        """
        updated = replace_section(self._read_text(), section_id, new_text)
        atomic_write_text(self.profile_path, updated)
        logger.info("Rewrote profile section '%s'", section_id)
        return updated
