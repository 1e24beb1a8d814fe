"""Email body sanitization and address helpers.

Objective:
    Turn raw message content (often HTML) into a compact plain-text preview
    that is safe to embed in a model prompt, and normalize sender strings for
    rule matching.

Responsibilities:
    - Strip non-content HTML elements (``<script>``, ``<style>``, metadata).
    - Convert HTML to markdown-ish text to preserve some structure.
    - Collapse links, URLs, quoted replies and whitespace.
    - Extract bare addresses and domains from ``"Name <addr>"`` strings.

High-level call tree:
    - :func:`body_preview`
        - :func:`html_to_markdown` (HTML input)
        - :func:`clean_text`
    - :func:`extract_address`
    - :func:`extract_sender_domain`

Security notes:
    The preview is embedded in prompts; dropping raw HTML and scripts keeps
    prompt-injection surface and token count down.
"""

import re
from email.utils import parseaddr
from typing import Optional

from bs4 import BeautifulSoup
from markdownify import markdownify as md

_DROPPED_ELEMENTS = ["script", "style", "head", "meta", "link", "title"]

# Applied in order by clean_text
_CLEANUP_PATTERNS = [
    (re.compile(r"<[^>]*>"), ""),
    (re.compile(r"!\[[^\]]*\]\([^)]*\)"), ""),
    (re.compile(r"\[([^\]]*)\]\([^)]*\)"), r"\1"),
    (re.compile(r"https?://\S+"), ""),
    (re.compile(r"^>.*$", flags=re.MULTILINE), ""),
    (re.compile(r"\|"), " "),
    (re.compile(r"-{3,}|={3,}|\*{3,}"), ""),
    (re.compile(r"[^\w\s.,!?@:;'\"$%&()/-]"), ""),
    (re.compile(r"\s+"), " "),
]


def html_to_markdown(html_content: str) -> str:
    """Convert HTML to markdown-like text.

    Args:
        html_content: Raw HTML string.

    Returns:
        str: Markdown formatted text.
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, "html.parser")
    for element in soup(_DROPPED_ELEMENTS):
        element.decompose()

    return md(str(soup), heading_style="ATX")


def clean_text(text: str) -> str:
    """Normalize text for prompting.

    Removes leftover tags, markdown images and links (keeping link text),
    bare URLs, quoted reply lines, table pipes, horizontal rules and unusual
    symbols, then collapses all whitespace to single spaces.

    Args:
        text: Raw text.

    Returns:
        str: Cleaned single-line text.
    """
    if not text:
        return ""

    for pattern, replacement in _CLEANUP_PATTERNS:
        text = pattern.sub(replacement, text)

    return text.strip()


def body_preview(body: str, content_type: str = "text", max_chars: int = 1000) -> str:
    """Build the body preview sent to the reasoning service.

    Args:
        body: Raw body content.
        content_type: ``html`` or ``text``.
        max_chars: Maximum preview length (an ellipsis is appended when cut).

    Returns:
        str: Sanitized, truncated preview.
    """
    if not body:
        return ""

    if content_type.lower() == "html":
        cleaned = clean_text(html_to_markdown(body))
    else:
        cleaned = clean_text(body)

    if len(cleaned) > max_chars:
        return cleaned[:max_chars] + "..."
    return cleaned


def extract_address(raw: str) -> str:
    """Extract the bare, lowercased address from a header value.

    ``"Jane Doe <Jane@Example.com>"`` -> ``"jane@example.com"``. Values without
    an address part are returned lowercased and stripped.

    Args:
        raw: Header value.

    Returns:
        str: Address, or an empty string.
    """
    if not raw:
        return ""
    _, address = parseaddr(raw)
    return (address or raw).strip().lower()


def extract_sender_domain(email_address: str) -> Optional[str]:
    """Extract the domain part from an email address.

    Args:
        email_address: Email address string.

    Returns:
        Optional[str]: Lowercased domain, or None if invalid.
    """
    if not email_address or email_address.count("@") != 1:
        return None

    domain = email_address.lower().split("@")[1].strip()
    return domain or None
