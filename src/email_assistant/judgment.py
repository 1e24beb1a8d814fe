"""AI judgment adapter.

Objective:
    Ask an external reasoning service how an :class:`~email_assistant.models.Email`
    should be classified, given the free-text profile, and turn its answer into
    a :class:`~email_assistant.models.Suggestion`.

Core strategy:
    1. Sanitize the body into a short preview.
    2. Render the system prompt from a template on disk, embedding the profile.
    3. Call the reasoning service with a per-call timeout.
    4. Extract the first JSON object from the answer and validate its shape.

Failure handling:
    Every failure is returned as a :class:`~email_assistant.models.JudgmentFailure`
    value instead of being raised, so the resolver can fall back to rule-only
    decisions with a plain branch:

    - :class:`~email_assistant.errors.AdapterUnavailable` -> ``unavailable``
    - :class:`~email_assistant.errors.AdapterTimeout` -> ``timeout``
    - :class:`~email_assistant.errors.MalformedResponse` -> ``malformed``

High-level call tree:
    - :class:`JudgmentAdapter`
        - :meth:`JudgmentAdapter.classify`
            - :func:`email_assistant.sanitizer.body_preview`
            - :meth:`JudgmentAdapter._build_system_prompt`
                - :func:`load_prompt` / :func:`render_prompt`
            - :meth:`JudgmentAdapter._build_user_prompt`
            - :meth:`ReasoningService.complete`
            - :meth:`JudgmentAdapter._parse_response`
                - :func:`extract_first_json_object`
                - :func:`suggestion_from_payload`
    - :class:`GroqReasoningService` (default service)

Operational notes:
    - Prompt templates live in ``src/email_assistant/prompts/``.
    - The profile is read-only here; the adapter never writes state.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Optional, Protocol

from groq import APITimeoutError, Groq, GroqError

from .config import CLASSIFIED_LABEL, NEEDS_REPLY_LABEL, Settings
from .errors import AdapterTimeout, AdapterUnavailable, JudgmentError, MalformedResponse
from .models import Email, JudgmentFailure, JudgmentResult, Suggestion, TerminalAction
from .sanitizer import body_preview

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"

# Reason: Extremely large system prompts can increase the odds of
# incomplete/truncated model output.
MAX_SYSTEM_PROMPT_CHARS = 16000

FALLBACK_SYSTEM_PROMPT = """You are an email classifier. The user's classification profile is in <profile> tags.

<profile>
{profile}
</profile>

Classify the email given in <email> tags.
- labels: 1-3 short labels describing the email (e.g. "Work", "Finance", "Newsletter")
- action: "archive", "delete", "spam" or null to keep it in the inbox
- needs_reply: true if the email expects a response from the user
- confidence: number between 0 and 1

Output in valid JSON format only:
{"labels": ["Work"], "action": null, "needs_reply": false, "confidence": 0.8}
"""


class ReasoningService(Protocol):
    """Text-in, text-out reasoning collaborator."""

    def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        timeout: Optional[float] = None,
        max_tokens: int = 900,
    ) -> str:
        ...


class GroqReasoningService:
    """
    Reasoning service backed by Groq chat completions.

    The Groq client is created lazily so that commands which never call the
    model work without an API key.

    Attributes:
        settings: Application settings.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._client: Optional[Groq] = None

    @property
    def client(self) -> Groq:
        if self._client is None:
            if not self.settings.groq_api_key:
                raise AdapterUnavailable("GROQ_API_KEY is not configured")
            self._client = Groq(api_key=self.settings.groq_api_key, max_retries=1)
        return self._client

    def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        timeout: Optional[float] = None,
        max_tokens: int = 900,
    ) -> str:
        """Send one prompt and return the model's text answer.

        Args:
            prompt: User message.
            system: Optional system message.
            timeout: Per-call timeout in seconds.
            max_tokens: Completion token budget.

        Returns:
            str: Stripped response text.

        Raises:
            AdapterTimeout: If the call timed out.
            AdapterUnavailable: For any other API or connection failure.
        """
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        try:
            response = self.client.chat.completions.create(
                model=self.settings.groq_model,
                messages=messages,
                temperature=0,
                max_tokens=max_tokens,
                timeout=timeout,
            )
        except APITimeoutError as e:
            raise AdapterTimeout(f"Groq call timed out after {timeout}s") from e
        except GroqError as e:
            raise AdapterUnavailable(f"Groq call failed: {e}") from e

        return (response.choices[0].message.content or "").strip()


def load_prompt(name: str) -> str:
    """Read a prompt template from :data:`PROMPTS_DIR`."""
    return (PROMPTS_DIR / name).read_text(encoding="utf-8")


def render_prompt(template: str, replacements: dict[str, str]) -> str:
    """Substitute ``{placeholder}`` tokens without ``str.format``.

    Templates contain JSON examples, so only the known placeholders are
    replaced and every other brace is left alone.

    Args:
        template: Raw template text.
        replacements: Placeholder name -> value.

    Returns:
        str: Rendered template.
    """
    rendered = template
    for key, value in replacements.items():
        rendered = rendered.replace("{" + key + "}", value)
    return rendered


def strip_code_fences(text: str) -> str:
    """Remove Markdown code fences from a model response."""
    return re.sub(r"```[\w-]*", "", text)


def extract_first_json_object(response_text: str) -> Optional[str]:
    """Extract the first valid JSON object from a model response.

    Models are told to return raw JSON but may wrap it in prose or fences.
    The decoder is tried at every ``{`` in turn; if nothing decodes, a
    best-effort recovery of a truncated object is attempted.

    Args:
        response_text: Raw model response text.

    Returns:
        Optional[str]: JSON object string if found, else None.
    """
    if not response_text:
        return None

    cleaned = strip_code_fences(response_text)

    decoder = json.JSONDecoder()
    start = cleaned.find("{")
    while start != -1:
        try:
            _, end = decoder.raw_decode(cleaned[start:])
            return cleaned[start : start + end]
        except json.JSONDecodeError:
            start = cleaned.find("{", start + 1)

    return _recover_truncated_json(cleaned)


def _recover_truncated_json(text: str) -> Optional[str]:
    """Salvage a JSON object cut off mid-field.

    Trims back to the last comma/newline boundary and auto-closes braces
    until the candidate parses.
    """
    start = text.find("{")
    if start == -1:
        return None

    candidate = text[start:]

    for _ in range(200):
        snippet = candidate.strip()
        if len(snippet) < 2:
            return None

        missing = max(0, snippet.count("{") - snippet.count("}"))
        attempt = re.sub(r",\s*}\s*$", "}", snippet + ("}" * missing))

        try:
            json.loads(attempt)
            return attempt
        except json.JSONDecodeError:
            pass

        cut = max(candidate.rfind("\n"), candidate.rfind(","))
        candidate = candidate[:-1] if cut <= 0 else candidate[:cut]

    return None


def normalize_label(label: str) -> str:
    """Trim a label and capitalize its first letter."""
    label = label.strip()
    return label[:1].upper() + label[1:]


def _as_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise MalformedResponse(f"{key} must be a boolean, got {value!r}")


def _string_list(value: Any, key: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise MalformedResponse(f"{key} must be a list of strings")
    return value


def suggestion_from_payload(data: Any) -> Suggestion:
    """Validate a decoded JSON payload into a :class:`Suggestion`.

    Two shapes are accepted:

    - ``{"labels": [...], "action": "archive"|null, "needs_reply": bool, "confidence": 0.8}``
    - ``{"is_spam": bool, "archive": bool, "delete": bool, "theme": [...],
      "action": [...], "confidence": 0.8}`` where ``action`` lists action
      labels such as ``Newsletters`` or ``Needs-Reply``.

    Args:
        data: Decoded JSON value.

    Returns:
        Suggestion: Normalized suggestion.

    Raises:
        MalformedResponse: If the payload does not fit either shape.
    """
    if not isinstance(data, dict):
        raise MalformedResponse("response JSON is not an object")

    raw_labels = _string_list(data.get("labels"), "labels")
    raw_labels += _string_list(data.get("theme"), "theme")

    raw_action = data.get("action")
    if isinstance(raw_action, list):
        raw_labels += _string_list(raw_action, "action")
        raw_action = None

    action: Optional[TerminalAction] = None
    if isinstance(raw_action, str) and raw_action.strip().lower() not in ("", "none", "null"):
        try:
            action = TerminalAction(raw_action.strip().lower())
        except ValueError as e:
            raise MalformedResponse(f"unknown action {raw_action!r}") from e
    elif raw_action is not None and not isinstance(raw_action, str):
        raise MalformedResponse(f"action must be a string, got {raw_action!r}")
    elif _as_bool(data.get("is_spam"), "is_spam"):
        action = TerminalAction.SPAM
    elif _as_bool(data.get("delete"), "delete"):
        action = TerminalAction.DELETE
    elif _as_bool(data.get("archive"), "archive"):
        action = TerminalAction.ARCHIVE

    needs_reply = _as_bool(data.get("needs_reply"), "needs_reply")
    labels = set()
    for raw in raw_labels:
        label = normalize_label(raw)
        if not label or label.lower() == CLASSIFIED_LABEL.lower():
            continue
        if label.lower() == NEEDS_REPLY_LABEL.lower():
            needs_reply = True
            continue
        labels.add(label)

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = None
    else:
        confidence = min(1.0, max(0.0, float(confidence)))

    return Suggestion(
        labels=frozenset(labels),
        action=action,
        needs_reply=needs_reply,
        confidence=confidence,
    )


class JudgmentAdapter:
    """
    Classifies emails through a :class:`ReasoningService`.

    Safe to share across worker threads: it holds no per-email state.

    Attributes:
        settings: Application settings.
        service: Reasoning service used for completions.
    """

    def __init__(
        self, settings: Settings, service: Optional[ReasoningService] = None
    ) -> None:
        """
        Initialize the adapter.

        Args:
            settings: Application settings (timeouts, preview size).
            service: Reasoning service; defaults to :class:`GroqReasoningService`.
        """
        self.settings = settings
        self.service = service or GroqReasoningService(settings)

    def _load_system_prompt_template(self) -> str:
        return load_prompt("classification_prompt.md")

    def _build_system_prompt(self, profile_text: str) -> str:
        """
        Build the system prompt with the profile embedded.

        Falls back to an inline prompt if the template cannot be read.

        Args:
            profile_text: Free-text profile guidance.

        Returns:
            str: System prompt.
        """
        try:
            template = self._load_system_prompt_template()
        except OSError as e:
            logger.warning(f"Failed to load classification prompt file: {e}")
            template = FALLBACK_SYSTEM_PROMPT

        rendered = render_prompt(template, {"profile": profile_text.strip()})
        return rendered[:MAX_SYSTEM_PROMPT_CHARS]

    def _build_user_prompt(self, email: Email) -> str:
        """
        Build the user prompt carrying the email fields.

        Args:
            email: Email to classify.

        Returns:
            str: User prompt with the email wrapped in <email> tags.
        """
        email_data = {
            "from": email.sender,
            "to": list(email.recipients),
            "subject": email.subject,
            "body": body_preview(
                email.body,
                email.body_content_type,
                max_chars=self.settings.body_preview_chars,
            ),
        }

        return f"""Classify the following email:
<email>
{json.dumps(email_data, indent=2, ensure_ascii=False)}
</email>

Return a single JSON object only (no Markdown fences).
"""

    def _parse_response(self, response_text: str, email_id: str) -> Suggestion:
        """
        Parse a model response into a :class:`Suggestion`.

        Args:
            response_text: Raw model response.
            email_id: Email ID, for log context.

        Returns:
            Suggestion: Parsed suggestion.

        Raises:
            MalformedResponse: If no usable JSON object is present.
        """
        extracted = extract_first_json_object(response_text)
        if extracted is None:
            snippet = (response_text or "")[:300].replace("\n", "\\n")
            raise MalformedResponse(f"no JSON object in response: {snippet}")

        try:
            data = json.loads(extracted)
        except json.JSONDecodeError as e:
            raise MalformedResponse(f"invalid JSON in response: {e}") from e

        suggestion = suggestion_from_payload(data)
        logger.debug("Parsed suggestion for %s: %s", email_id, suggestion)
        return suggestion

    def classify(self, email: Email, profile_text: str) -> JudgmentResult:
        """
        Request a classification suggestion for one email.

        Args:
            email: Email to classify.
            profile_text: Current free-text profile.

        Returns:
            JudgmentResult: A :class:`Suggestion`, or a :class:`JudgmentFailure`
            describing why none is available.
        """
        system_prompt = self._build_system_prompt(profile_text)
        user_prompt = self._build_user_prompt(email)

        try:
            response_text = self.service.complete(
                user_prompt,
                system=system_prompt,
                timeout=self.settings.ai_timeout_seconds,
            )
            logger.debug(f"LLM response for {email.id}: {response_text}")
            suggestion = self._parse_response(response_text, email.id)
        except JudgmentError as e:
            logger.warning(
                "AI judgment failed; using rules only (email_id=%s, kind=%s, error=%s)",
                email.id,
                e.kind,
                str(e),
            )
            return JudgmentFailure(kind=e.kind, message=str(e))

        logger.info(
            "AI suggested %s%s for '%s'",
            sorted(suggestion.labels),
            f" + {suggestion.action.value}" if suggestion.action else "",
            email.subject[:50],
        )
        return suggestion
