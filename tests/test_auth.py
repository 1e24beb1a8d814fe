from unittest.mock import MagicMock, patch

import pytest

from email_assistant.errors import ProviderError
from email_assistant.providers.auth import GraphAuthenticator


def test_select_account_defaults_to_first_when_no_preferred_username() -> None:
    """Return the first cached account when no preference is configured."""

    settings = MagicMock()
    settings.outlook_account_username = None

    auth = GraphAuthenticator(settings)

    accounts = [
        {"username": "first@example.com"},
        {"username": "second@example.com"},
    ]

    assert auth._select_account(accounts) == accounts[0]
    assert auth._select_account([]) is None


def test_select_account_matches_preferred_username_case_insensitive() -> None:
    """Select the cached account matching the preferred username."""

    settings = MagicMock()
    settings.outlook_account_username = "Second@Example.com"

    auth = GraphAuthenticator(settings)

    accounts = [
        {"username": "first@example.com"},
        {"username": "second@example.com"},
    ]

    assert auth._select_account(accounts) == accounts[1]


def test_select_account_raises_when_preferred_username_missing() -> None:
    """Raise a clear error when the preferred username is not in cache."""

    settings = MagicMock()
    settings.outlook_account_username = "missing@example.com"

    auth = GraphAuthenticator(settings)

    with pytest.raises(ProviderError, match="OUTLOOK_ACCOUNT_USERNAME"):
        auth._select_account([{"username": "first@example.com"}])


def test_missing_client_id_is_a_provider_error(settings) -> None:
    """Without AZURE_CLIENT_ID no MSAL app is created."""
    auth = GraphAuthenticator(settings.model_copy(update={"azure_client_id": None}))

    with pytest.raises(ProviderError, match="AZURE_CLIENT_ID"):
        auth.get_access_token()


def test_silent_token_is_used_and_cache_saved(settings) -> None:
    """A cached account yields a token without the device flow."""
    auth = GraphAuthenticator(settings.model_copy(update={"azure_client_id": "client-id"}))

    with patch("email_assistant.providers.auth.msal.PublicClientApplication") as mock_app_cls:
        app = mock_app_cls.return_value
        app.get_accounts.return_value = [{"username": "me@example.com"}]
        app.acquire_token_silent.return_value = {"access_token": "cached-token"}
        app.token_cache.has_state_changed = False

        headers = auth.get_auth_headers()

    assert headers["Authorization"] == "Bearer cached-token"
    app.initiate_device_flow.assert_not_called()
