"""Email Assistant package.

Objective:
    Classify and organize emails by combining user-authored rules with an AI
    judgment, and refine the classification profile from user corrections.

Key modules:
    - :mod:`email_assistant.rules`:
        Deterministic condition matching.
    - :mod:`email_assistant.judgment`:
        Prompt construction, Groq calls, response parsing.
    - :mod:`email_assistant.resolver`:
        Merges rule results and the AI suggestion into a decision.
    - :mod:`email_assistant.profile_store`:
        Profile document and rule files on disk.
    - :mod:`email_assistant.learner`:
        Correction detection and profile learning.
    - :mod:`email_assistant.providers`:
        Mailbox access (Outlook via Microsoft Graph).
    - :mod:`email_assistant.orchestrator`:
        End-to-end workflow coordination.
    - :mod:`email_assistant.cli`:
        User-facing entrypoint.
"""

__version__ = "0.1.0"
