"""Tests for the Outlook (Microsoft Graph) provider."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from email_assistant.errors import ProviderError
from email_assistant.models import Decision, DecisionSource, TerminalAction
from email_assistant.providers.outlook import OutlookProvider

GRAPH_MESSAGE = {
    "id": "AQM+/=",
    "parentFolderId": "inbox-id",
    "subject": "Budget",
    "body": {"contentType": "HTML", "content": "<p>Numbers</p>"},
    "from": {"emailAddress": {"name": "Boss", "address": "boss@corp.example"}},
    "toRecipients": [{"emailAddress": {"name": "", "address": "me@example.com"}}],
    "isRead": False,
    "categories": ["Work"],
}


@pytest.fixture
def provider(settings):
    """Provider with mocked auth, requests and known folders."""
    provider = OutlookProvider(settings, auth=MagicMock())
    provider._make_request = MagicMock(return_value={})
    provider._folder_labels = {"inbox-id": "INBOX", "junk-id": "SPAM"}
    return provider


def test_fetch_uses_inbox_endpoint_and_builds_emails(provider) -> None:
    """Ensure fetch reads the inbox and converts Graph messages."""

    provider._make_request.return_value = {"value": [GRAPH_MESSAGE]}

    [email] = provider.fetch(5)

    args, kwargs = provider._make_request.call_args
    assert args[:2] == ("GET", "/me/mailFolders/inbox/messages")
    assert kwargs["params"]["$top"] == 5
    assert email.sender == "Boss <boss@corp.example>"
    assert email.recipients == ("me@example.com",)
    assert email.body_content_type == "html"
    assert email.labels == frozenset({"Work", "INBOX", "UNREAD"})


def test_fetch_skips_unparseable_messages(provider) -> None:
    provider._make_request.return_value = {"value": [{"subject": "no id"}, GRAPH_MESSAGE]}
    assert [e.id for e in provider.fetch(5)] == ["AQM+/="]


def test_junk_folder_becomes_spam_label(provider) -> None:
    """A message in Junk Email carries the SPAM pseudo-label."""

    provider._make_request.return_value = dict(GRAPH_MESSAGE, parentFolderId="junk-id", isRead=True)

    email = provider.get_message("AQM+/=")

    assert email.labels == frozenset({"Work", "SPAM"})
    args, _ = provider._make_request.call_args
    assert args[1] == "/me/messages/AQM%2B%2F%3D"


def test_add_labels_merges_categories_in_one_patch(provider) -> None:
    """Existing categories are kept and duplicates (any case) are skipped."""

    provider._make_request.side_effect = [{"id": "m1", "categories": ["Work"]}, {}]

    provider.add_labels("m1", ["work", "Classified"])

    patch_call = provider._make_request.call_args_list[1]
    assert patch_call.args == ("PATCH", "/me/messages/m1")
    assert patch_call.kwargs["json_data"] == {"categories": ["Work", "Classified"]}


def test_add_labels_without_changes_skips_patch(provider) -> None:
    provider._make_request.return_value = {"id": "m1", "categories": ["Work"]}

    provider.add_labels("m1", ["Work"])

    assert provider._make_request.call_count == 1


def test_apply_labels_then_moves(provider) -> None:
    """apply() sets categories and moves to the folder of the terminal action."""

    provider._make_request.side_effect = [{"id": "m1", "categories": []}, {}, {}]
    decision = Decision(
        labels=frozenset({"Promo"}),
        action=TerminalAction.SPAM,
        needs_reply=True,
        source=DecisionSource.AI,
    )

    provider.apply("m1", decision)

    patch_call, move_call = provider._make_request.call_args_list[1:]
    assert patch_call.kwargs["json_data"] == {"categories": ["Promo", "Classified", "Needs-Reply"]}
    assert move_call.args == ("POST", "/me/messages/m1/move")
    assert move_call.kwargs["json_data"] == {"destinationId": "junkemail"}


@pytest.mark.parametrize(
    "method,folder",
    [
        ("archive", "archive"),
        ("delete", "deleteditems"),
        ("mark_spam", "junkemail"),
        ("unspam", "inbox"),
    ],
)
def test_moves_use_well_known_folders(provider, method, folder) -> None:
    getattr(provider, method)("m1")
    assert provider._make_request.call_args.kwargs["json_data"] == {"destinationId": folder}


def test_delete_label_by_display_name(provider) -> None:
    """delete_label finds the master category case-insensitively."""

    provider._make_request.side_effect = [
        {"value": [{"id": "cat/1", "displayName": "Travel"}]},
        {},
    ]

    provider.delete_label("travel")

    assert provider._make_request.call_args.args == (
        "DELETE",
        "/me/outlook/masterCategories/cat%2F1",
    )


def test_delete_unknown_label_raises(provider) -> None:
    provider._make_request.return_value = {"value": []}

    with pytest.raises(ProviderError) as exc_info:
        provider.delete_label("Travel")

    assert exc_info.value.status_code == 404


def test_count_labeled_escapes_quotes(provider) -> None:
    provider._make_request.return_value = {"value": [{"id": "a"}, {"id": "b"}]}

    assert provider.count_labeled("Bob's") == 2
    params = provider._make_request.call_args.kwargs["params"]
    assert params["$filter"] == "categories/any(c:c eq 'Bob''s')"


def test_list_labels(provider) -> None:
    provider._make_request.return_value = {
        "value": [{"id": "1", "displayName": "Work"}, {"id": "2"}]
    }
    assert provider.list_labels() == ["Work"]


class TestMakeRequest:
    """Tests for HTTP handling in _make_request."""

    def _provider(self, settings):
        auth = MagicMock()
        auth.get_auth_headers.return_value = {"Authorization": "Bearer t"}
        return OutlookProvider(settings, auth=auth)

    def test_requests_immutable_ids(self, settings) -> None:
        """Every request asks Graph for immutable message IDs."""
        provider = self._provider(settings)

        with patch("email_assistant.providers.outlook.requests.request") as mock_request:
            mock_request.return_value.ok = True
            mock_request.return_value.status_code = 200
            mock_request.return_value.content = b'{"value": []}'
            mock_request.return_value.json.return_value = {"value": []}

            assert provider._make_request("GET", "/me/messages") == {"value": []}

        headers = mock_request.call_args.kwargs["headers"]
        assert headers["Prefer"] == 'IdType="ImmutableId"'
        assert mock_request.call_args.kwargs["url"] == "https://graph.microsoft.com/v1.0/me/messages"

    def test_http_error_becomes_provider_error(self, settings) -> None:
        """Non-2xx responses raise ProviderError with the status code."""
        provider = self._provider(settings)
        response = MagicMock(ok=False, status_code=404, text="not found")
        response.raise_for_status.side_effect = requests.HTTPError("404")

        with patch("email_assistant.providers.outlook.requests.request", return_value=response):
            with pytest.raises(ProviderError) as exc_info:
                provider._make_request("GET", "/me/messages/x", suppress_statuses={404})

        assert exc_info.value.status_code == 404

    def test_network_error_becomes_provider_error(self, settings) -> None:
        provider = self._provider(settings)

        with patch(
            "email_assistant.providers.outlook.requests.request",
            side_effect=requests.ConnectionError("offline"),
        ):
            with pytest.raises(ProviderError):
                provider._make_request("GET", "/me/messages")

    def test_no_content_returns_empty_dict(self, settings) -> None:
        provider = self._provider(settings)
        response = MagicMock(ok=True, status_code=204, content=b"")

        with patch("email_assistant.providers.outlook.requests.request", return_value=response):
            assert provider._make_request("DELETE", "/me/outlook/masterCategories/1") == {}

    def test_missing_well_known_folder_is_skipped(self, settings) -> None:
        """A 404 for a well-known folder leaves it out of the map."""
        provider = OutlookProvider(settings, auth=MagicMock())

        def fake_request(method, endpoint, params=None, json_data=None, suppress_statuses=None):
            if endpoint.endswith("/archive"):
                raise ProviderError("missing", status_code=404)
            return {"id": endpoint.rsplit("/", 1)[1] + "-id"}

        provider._make_request = MagicMock(side_effect=fake_request)

        assert provider._well_known_ids() == {
            "inbox-id": "INBOX",
            "deleteditems-id": "TRASH",
            "junkemail-id": "SPAM",
        }

    def test_invalid_json_becomes_provider_error(self, settings) -> None:
        """A 200 response whose body is not JSON is a provider failure."""
        provider = self._provider(settings)
        response = MagicMock(ok=True, status_code=200, content=b"<html>gateway</html>")
        response.json.side_effect = ValueError("Expecting value")

        with patch("email_assistant.providers.outlook.requests.request", return_value=response):
            with pytest.raises(ProviderError) as exc_info:
                provider._make_request("GET", "/me/messages/x")

        assert exc_info.value.status_code == 200


def test_malformed_message_payload_raises_provider_error(provider) -> None:
    """get_message reports a payload without an id as a provider failure."""
    provider._make_request.return_value = {"id": None, "subject": "no id"}

    with pytest.raises(ProviderError):
        provider.get_message("m1")
