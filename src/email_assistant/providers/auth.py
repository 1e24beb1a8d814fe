"""Microsoft Graph authentication.

Objective:
    Acquire and cache a delegated OAuth2 access token for the Outlook
    provider.

Responsibilities:
    - Manage the MSAL ``PublicClientApplication`` lifecycle.
    - Persist and reload the MSAL token cache (``token_cache.json`` in the
      config directory).
    - Run the interactive device-code flow when no cached token is usable.
    - Provide ready-to-use HTTP headers for Graph API calls.

High-level call tree:
    - :class:`GraphAuthenticator`
        - :meth:`GraphAuthenticator.get_auth_headers`
            - :meth:`GraphAuthenticator.get_access_token`
                - :meth:`GraphAuthenticator._get_app`
                    - :meth:`GraphAuthenticator._load_token_cache`
                - :meth:`GraphAuthenticator._acquire_silently`
                    - :meth:`GraphAuthenticator._select_account`
                - :meth:`GraphAuthenticator._acquire_by_device_code`
                - :meth:`GraphAuthenticator._save_token_cache`

Operational notes:
    - The device-code prompt is printed to stdout; the user completes it in a
      browser.
    - Authentication failures surface as
      :class:`~email_assistant.errors.ProviderError`.
"""

import logging
from typing import Optional

import msal

from ..config import Settings
from ..errors import ProviderError
from ..profile_store import atomic_write_text

logger = logging.getLogger(__name__)


class GraphAuthenticator:
    """
    Handles Microsoft Graph authentication using MSAL device-code flow.

    Attributes:
        settings: Application settings (client ID, tenant, cache path).
    """

    GRAPH_SCOPES = [
        "https://graph.microsoft.com/Mail.ReadWrite",
        "https://graph.microsoft.com/MailboxSettings.ReadWrite",
    ]

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._app: Optional[msal.PublicClientApplication] = None

    def _load_token_cache(self) -> msal.SerializableTokenCache:
        """
        Read the persisted MSAL cache.

        A missing or unreadable file yields an empty cache, so the next token
        request goes through the device-code flow.

        Returns:
            msal.SerializableTokenCache: Cache handed to the MSAL app.
        """
        cache = msal.SerializableTokenCache()
        path = self.settings.token_cache_path
        if not path.exists():
            logger.debug("Token cache %s does not exist yet", path)
            return cache

        try:
            cache.deserialize(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable token cache {path}: {e}")
        return cache

    def _save_token_cache(self, cache: msal.SerializableTokenCache) -> None:
        """Write the cache to disk if MSAL reports a change."""
        if not cache.has_state_changed:
            return
        try:
            atomic_write_text(self.settings.token_cache_path, cache.serialize())
        except OSError as e:
            logger.warning(f"Could not persist token cache: {e}")

    def _get_app(self) -> msal.PublicClientApplication:
        if self._app is None:
            client_id = self.settings.azure_client_id
            if not client_id:
                raise ProviderError("AZURE_CLIENT_ID is not configured")

            self._app = msal.PublicClientApplication(
                client_id=client_id,
                authority=f"https://login.microsoftonline.com/{self.settings.azure_tenant_id}",
                token_cache=self._load_token_cache(),
            )
        return self._app

    def _select_account(self, accounts: list[dict]) -> Optional[dict]:
        """Pick the cached account to use.

        ``settings.outlook_account_username`` selects an account by username
        (case-insensitive); without it the first cached account is used.

        Args:
            accounts: Accounts known to the MSAL cache.

        Returns:
            Optional[dict]: The account, or None when the cache is empty.

        Raises:
            ProviderError: If the configured username is not in the cache.
        """
        if not accounts:
            return None

        wanted = (self.settings.outlook_account_username or "").strip().lower()
        if not wanted:
            return accounts[0]

        matches = [a for a in accounts if str(a.get("username", "")).strip().lower() == wanted]
        if matches:
            return matches[0]

        cached = sorted(str(a.get("username")) for a in accounts if a.get("username"))
        raise ProviderError(
            f"OUTLOOK_ACCOUNT_USERNAME {wanted!r} is not signed in; cached accounts: {cached}"
        )

    def _acquire_silently(self, app: msal.PublicClientApplication) -> Optional[str]:
        """Return a cached (or refreshed) token for the selected account, if any."""
        account = self._select_account(app.get_accounts())
        if account is None:
            return None

        result = app.acquire_token_silent(scopes=self.GRAPH_SCOPES, account=account)
        if result and "access_token" in result:
            return result["access_token"]

        logger.debug(
            "No silent token for %s (%s); falling back to device code",
            account.get("username"),
            (result or {}).get("error", "no cached token"),
        )
        return None

    def _acquire_by_device_code(self, app: msal.PublicClientApplication) -> str:
        """Run the interactive device-code sign-in."""
        flow = app.initiate_device_flow(scopes=self.GRAPH_SCOPES)
        if "user_code" not in flow:
            reason = flow.get("error_description", "no user code returned")
            raise ProviderError(f"Could not start Outlook sign-in: {reason}")

        banner = "-" * 60
        print(f"\n{banner}\nSign in to Outlook to continue\n{banner}")
        print(f"{flow['message']}\n{banner}\n")

        result = app.acquire_token_by_device_flow(flow)
        if "access_token" not in result:
            reason = result.get("error_description", "no access token returned")
            logger.error(f"Outlook sign-in failed: {result.get('error', 'unknown')} - {reason}")
            raise ProviderError(f"Outlook sign-in failed: {reason}")

        logger.info("Signed in to Outlook")
        return result["access_token"]

    def get_access_token(self) -> str:
        """
        Return a Graph access token, signing in interactively when needed.

        The MSAL cache is tried first; the device-code flow only runs when it
        holds no usable token. Any cache change is written back to disk.

        Returns:
            str: Access token.

        Raises:
            ProviderError: If no client ID is configured or sign-in fails.
        """
        app = self._get_app()
        token = self._acquire_silently(app) or self._acquire_by_device_code(app)
        self._save_token_cache(app.token_cache)
        return token

    def get_auth_headers(self) -> dict[str, str]:
        """Headers with a Bearer token for Graph API requests."""
        return {
            "Authorization": f"Bearer {self.get_access_token()}",
            "Content-Type": "application/json",
        }
