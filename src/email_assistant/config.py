"""Application configuration and settings.

Objective:
    Hold every runtime knob of the assistant in one place: where the profile
    and run state live, how the Groq model is called, batch concurrency and
    Graph sign-in.

Responsibilities:
    - Read settings from the environment and ``.env`` through
      :class:`Settings` (pydantic-settings).
    - Derive the on-disk layout of persisted state from ``config_dir``.

High-level call tree:
    - :func:`get_settings` -> returns :class:`Settings`
    - :class:`Settings`
        - :attr:`Settings.profile_path`
        - :attr:`Settings.rules_dir`
        - :attr:`Settings.predictions_path`
        - :attr:`Settings.labels_path`
        - :attr:`Settings.token_cache_path`

Operational notes:
    - ``Settings`` loads from ``.env`` by default via ``pydantic-settings``.
    - Components take a ``Settings`` instance in their constructor; only
      :class:`~email_assistant.orchestrator.EmailAssistant` and the CLI call
      :func:`get_settings` themselves.
"""

from pathlib import Path
from typing import Optional
import logging

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Marker label applied to every email the assistant has classified
CLASSIFIED_LABEL = "Classified"

# Label used to surface the needs-reply flag on the provider side
NEEDS_REPLY_LABEL = "Needs-Reply"

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "email-assistant"


class Settings(BaseSettings):
    """
    Runtime settings, one environment variable per field.

    Paths of persisted state are derived from ``config_dir`` rather than
    configured one by one.

    Attributes:
        config_dir: Directory holding profile.md, rules/, predictions and caches.
        groq_api_key: Groq API key for LLM access.
        groq_model: Groq model used for classification and profile updates.
        ai_timeout_seconds: Per-call timeout for classification requests.
        learning_timeout_seconds: Per-call timeout for profile update requests.
        max_concurrency: Worker threads used to classify a batch.
        scan_limit: Default number of emails fetched per scan.
        body_preview_chars: Body characters sent to the model.
        learned_rules_file: Rule file that receives appended rules.
        azure_client_id: Azure AD application client ID.
        azure_tenant_id: Azure AD tenant ID.
        outlook_account_username: Preferred cached account.
        log_level: Logging level.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Persisted state
    config_dir: Path = Field(
        default=DEFAULT_CONFIG_DIR,
        description="Directory containing profile.md, rules/*.json and run state",
    )
    learned_rules_file: str = Field(
        default="user.json",
        description="Rule file (inside rules/) that receives appended rules",
    )

    # Groq Configuration
    groq_api_key: Optional[str] = Field(default=None, description="Groq API key")
    groq_model: str = Field(
        default="openai/gpt-oss-120b", description="Groq model name"
    )
    ai_timeout_seconds: float = Field(
        default=60.0, gt=0, description="Timeout for one classification call"
    )
    learning_timeout_seconds: float = Field(
        default=90.0, gt=0, description="Timeout for one profile update call"
    )
    body_preview_chars: int = Field(
        default=1000, ge=100, le=12000, description="Body characters sent to the model"
    )

    # Processing Settings
    max_concurrency: int = Field(
        default=4, ge=1, le=32, description="Concurrent classification workers"
    )
    scan_limit: int = Field(
        default=50, ge=1, le=500, description="Emails fetched per scan"
    )

    # Azure AD Configuration
    azure_client_id: Optional[str] = Field(
        default=None, description="Azure AD application client ID"
    )
    azure_tenant_id: str = Field(
        default="consumers", description="Azure AD tenant ID (consumers for personal accounts)"
    )
    outlook_account_username: Optional[str] = Field(
        default=None,
        description=(
            "Preferred Outlook account username to select from the MSAL token cache. "
            "If omitted, the first cached account is used."
        ),
    )

    log_level: str = Field(default="INFO", description="Logging level")

    @property
    def profile_path(self) -> Path:
        """Free-text profile document."""
        return self.config_dir / "profile.md"

    @property
    def rules_dir(self) -> Path:
        """Directory of structured rule files."""
        return self.config_dir / "rules"

    @property
    def predictions_path(self) -> Path:
        """Recorded decisions used for correction detection."""
        return self.config_dir / "predictions.json"

    @property
    def labels_path(self) -> Path:
        """Registry of labels created from AI suggestions."""
        return self.config_dir / "labels.json"

    @property
    def token_cache_path(self) -> Path:
        """MSAL token cache."""
        return self.config_dir / "token_cache.json"


def get_settings() -> Settings:
    """
    Load and return application settings.

    Tests build :class:`Settings` directly (usually with ``_env_file=None``)
    instead of going through this helper.

    Returns:
        Settings: Application settings instance.

    Raises:
        ValidationError: If environment variables hold invalid values.
    """
    return Settings()
