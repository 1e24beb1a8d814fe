"""Outlook provider over Microsoft Graph.

Objective:
    Implement :class:`~email_assistant.providers.base.EmailProvider` with the
    Microsoft Graph Mail endpoints. Labels are Outlook categories; terminal
    actions are moves to well-known folders.

Responsibilities:
    - Issue authenticated HTTP requests to Graph (via :mod:`requests`).
    - Validate Graph messages (:class:`GraphMessage`) and convert them to core
      :class:`~email_assistant.models.Email` snapshots with pseudo-labels.
    - Merge categories on label changes; list/delete master categories.

High-level call tree:
    - :class:`OutlookProvider`
        - :meth:`OutlookProvider.fetch` / :meth:`OutlookProvider.get_message`
            - :meth:`OutlookProvider._to_email`
                - :meth:`OutlookProvider._well_known_ids`
        - :meth:`OutlookProvider.add_labels` (one PATCH per message)
        - :meth:`OutlookProvider._move` (archive, delete, mark_spam, unspam)
        - :meth:`OutlookProvider.list_labels` / :meth:`OutlookProvider.delete_label`
        - :meth:`OutlookProvider.count_labeled`
        - :meth:`OutlookProvider._make_request` (auth + error wrapping)

Graph endpoints used:
    - ``GET /me/mailFolders/inbox/messages``
    - ``GET /me/messages/{id}``
    - ``PATCH /me/messages/{id}`` (categories)
    - ``POST /me/messages/{id}/move``
    - ``GET /me/mailFolders/{well_known_name}``
    - ``GET /me/messages?$filter=categories/any(...)``
    - ``GET /me/outlook/masterCategories``
    - ``DELETE /me/outlook/masterCategories/{id}``

Operational notes:
    - Requests ask for immutable IDs so a message keeps its ID after a move;
      recorded decisions stay addressable.
    - ``requests`` failures are wrapped in
      :class:`~email_assistant.errors.ProviderError`.
"""

import logging
from typing import AbstractSet, Iterable, Optional
from urllib.parse import quote

import requests
from pydantic import BaseModel, ConfigDict, Field

from ..config import Settings
from ..errors import ProviderError
from ..models import Email
from .auth import GraphAuthenticator
from .base import EmailProvider

logger = logging.getLogger(__name__)

# Well-known folder name -> pseudo-label
WELL_KNOWN_FOLDERS = {
    "inbox": "INBOX",
    "archive": "ARCHIVE",
    "deleteditems": "TRASH",
    "junkemail": "SPAM",
}

MESSAGE_FIELDS = "id,parentFolderId,subject,body,from,sender,toRecipients,isRead,categories"


class EmailAddress(BaseModel):
    """Graph ``{"name": "...", "address": "..."}`` structure."""

    name: str = ""
    address: str = ""


class EmailRecipient(BaseModel):
    """Graph recipient wrapper (``{"emailAddress": {...}}``)."""

    email_address: EmailAddress = Field(alias="emailAddress")

    model_config = ConfigDict(populate_by_name=True)

    def formatted(self) -> str:
        address = self.email_address
        if address.name and address.name != address.address:
            return f"{address.name} <{address.address}>"
        return address.address


class EmailBody(BaseModel):
    content_type: str = Field(default="text", alias="contentType")
    content: str = ""

    model_config = ConfigDict(populate_by_name=True)


class GraphMessage(BaseModel):
    """Message resource as returned by Graph (subset of fields)."""

    id: str
    parent_folder_id: Optional[str] = Field(default=None, alias="parentFolderId")
    subject: Optional[str] = ""
    body: EmailBody = Field(default_factory=EmailBody)
    sender: Optional[EmailRecipient] = None
    from_recipient: Optional[EmailRecipient] = Field(default=None, alias="from")
    to_recipients: list[EmailRecipient] = Field(default_factory=list, alias="toRecipients")
    is_read: bool = Field(default=False, alias="isRead")
    categories: list[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class OutlookProvider(EmailProvider):
    """
    Outlook mailbox via Microsoft Graph.

    Attributes:
        settings: Application settings.
        auth: Graph API authenticator.
    """

    GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

    def __init__(self, settings: Settings, auth: Optional[GraphAuthenticator] = None) -> None:
        self.settings = settings
        self.auth = auth or GraphAuthenticator(settings)
        self._folder_labels: Optional[dict[str, str]] = None

    def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_data: Optional[dict] = None,
        suppress_statuses: Optional[AbstractSet[int]] = None,
    ) -> dict:
        """Make an authenticated request to Microsoft Graph.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE).
            endpoint: API endpoint path.
            params: Query parameters.
            json_data: JSON body data.
            suppress_statuses: Statuses logged at DEBUG instead of ERROR.

        Returns:
            dict: Response JSON data (``{}`` for 204).

        Raises:
            ProviderError: If the request fails.
        """
        url = f"{self.GRAPH_BASE_URL}{endpoint}"
        headers = self.auth.get_auth_headers()
        headers["Prefer"] = 'IdType="ImmutableId"'

        try:
            response = requests.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json_data,
                timeout=30,
            )
        except requests.RequestException as e:
            raise ProviderError(f"Graph request failed: {method} {endpoint}: {e}") from e

        if not response.ok:
            if suppress_statuses and response.status_code in suppress_statuses:
                logger.debug(
                    "Graph API expected non-2xx: %s - %s",
                    response.status_code,
                    response.text,
                )
            else:
                logger.error(f"Graph API error: {response.status_code} - {response.text}")
            try:
                response.raise_for_status()
            except requests.HTTPError as e:
                raise ProviderError(
                    f"Graph API error {response.status_code} for {method} {endpoint}",
                    status_code=response.status_code,
                ) from e

        if response.status_code == 204 or not response.content:
            return {}

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(
                f"Graph returned invalid JSON for {method} {endpoint}",
                status_code=response.status_code,
            ) from e

    def _well_known_ids(self) -> dict[str, str]:
        """Map well-known folder IDs to pseudo-labels (resolved once)."""
        if self._folder_labels is None:
            folder_labels = {}
            for name, label in WELL_KNOWN_FOLDERS.items():
                try:
                    folder = self._make_request(
                        "GET", f"/me/mailFolders/{name}", params={"$select": "id"},
                        suppress_statuses={404},
                    )
                except ProviderError as e:
                    if e.status_code != 404:
                        raise
                    logger.debug("Well-known folder %s not available", name)
                    continue
                if folder.get("id"):
                    folder_labels[folder["id"]] = label
            self._folder_labels = folder_labels
        return self._folder_labels

    def _to_email(self, message: GraphMessage) -> Email:
        labels = set(message.categories)
        folder_label = self._well_known_ids().get(message.parent_folder_id or "")
        if folder_label:
            labels.add(folder_label)
        if not message.is_read:
            labels.add("UNREAD")

        sender = message.from_recipient or message.sender
        return Email(
            id=message.id,
            sender=sender.formatted() if sender else "",
            recipients=tuple(r.formatted() for r in message.to_recipients),
            subject=message.subject or "",
            body=message.body.content,
            body_content_type=message.body.content_type.lower(),
            labels=frozenset(labels),
        )

    def fetch(self, limit: int) -> list[Email]:
        """
        Fetch the newest inbox messages.

        Args:
            limit: Maximum number of messages.

        Returns:
            list[Email]: Parsed messages; unparseable items are skipped.
        """
        params = {
            "$top": limit,
            "$select": MESSAGE_FIELDS,
            "$orderby": "receivedDateTime desc",
        }
        logger.debug(f"Fetching up to {limit} emails")
        response = self._make_request("GET", "/me/mailFolders/inbox/messages", params=params)

        emails = []
        for item in response.get("value", []):
            try:
                emails.append(self._to_email(GraphMessage.model_validate(item)))
            except ValueError as e:
                logger.warning(f"Failed to parse email: {e}")

        logger.debug(f"Fetched {len(emails)} emails")
        return emails

    def _get_graph_message(self, email_id: str) -> GraphMessage:
        safe_email_id = quote(email_id, safe="")
        data = self._make_request(
            "GET",
            f"/me/messages/{safe_email_id}",
            params={"$select": MESSAGE_FIELDS},
            suppress_statuses={404},
        )
        try:
            return GraphMessage.model_validate(data)
        except ValueError as e:
            raise ProviderError(f"Unexpected Graph payload for message {email_id}: {e}") from e

    def get_message(self, email_id: str) -> Email:
        return self._to_email(self._get_graph_message(email_id))

    def add_label(self, email_id: str, label: str) -> None:
        self.add_labels(email_id, [label])

    def add_labels(self, email_id: str, labels: Iterable[str]) -> None:
        """Merge ``labels`` into the message categories with a single PATCH."""
        current = self._get_graph_message(email_id).categories
        merged = list(current)
        lowered = {c.lower() for c in current}
        for label in labels:
            if label.lower() not in lowered:
                merged.append(label)
                lowered.add(label.lower())

        if merged == current:
            return

        safe_email_id = quote(email_id, safe="")
        self._make_request("PATCH", f"/me/messages/{safe_email_id}", json_data={"categories": merged})
        logger.debug(f"Set categories {merged} on email {email_id}")

    def _move(self, email_id: str, folder: str) -> None:
        safe_email_id = quote(email_id, safe="")
        self._make_request(
            "POST",
            f"/me/messages/{safe_email_id}/move",
            json_data={"destinationId": folder},
        )
        logger.debug(f"Moved email {email_id} to {folder}")

    def archive(self, email_id: str) -> None:
        self._move(email_id, "archive")

    def delete(self, email_id: str) -> None:
        self._move(email_id, "deleteditems")

    def mark_spam(self, email_id: str) -> None:
        self._move(email_id, "junkemail")

    def unspam(self, email_id: str) -> None:
        self._move(email_id, "inbox")

    def _master_categories(self) -> list[dict]:
        return self._make_request("GET", "/me/outlook/masterCategories").get("value", [])

    def list_labels(self) -> list[str]:
        return [c["displayName"] for c in self._master_categories() if c.get("displayName")]

    def delete_label(self, label: str) -> None:
        """
        Delete a master category by display name.

        Raises:
            ProviderError: If no category has that name, or the call fails.
        """
        for category in self._master_categories():
            if str(category.get("displayName", "")).lower() == label.lower():
                safe_id = quote(category["id"], safe="")
                self._make_request("DELETE", f"/me/outlook/masterCategories/{safe_id}")
                logger.debug(f"Deleted category '{label}'")
                return
        raise ProviderError(f"category not found: {label}", status_code=404)

    def count_labeled(self, label: str) -> int:
        """Count messages with category ``label`` (first page only, at most 100)."""
        escaped = label.replace("'", "''")
        params = {
            "$filter": f"categories/any(c:c eq '{escaped}')",
            "$select": "id",
            "$top": 100,
        }
        response = self._make_request("GET", "/me/messages", params=params)
        return len(response.get("value", []))
