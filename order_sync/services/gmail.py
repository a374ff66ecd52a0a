"""
Gmail REST API mailbox source.

Authenticates with an OAuth refresh token, lists message ids with an
`after:<epoch>` query, and fetches full messages in the `format=full`
payload shape.
"""

import base64
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from order_sync.config import settings
from order_sync.core.exceptions import AuthenticationFailure, MailboxUnavailable
from order_sync.core.logging import get_logger
from order_sync.core.models import MailboxKey, Message
from order_sync.services.mailbox import MailboxSource, is_real_attachment

log = get_logger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
PAGE_SIZE = 100


def decode_base64url(data: str) -> str:
    """Decode a Gmail base64url body part."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (ValueError, TypeError):
        return ""


def extract_body(payload: dict[str, Any]) -> str:
    """Plain-text body from a Gmail payload, falling back to stripped HTML."""
    if payload.get("mimeType") == "text/plain" and payload.get("body", {}).get("data"):
        return decode_base64url(payload["body"]["data"])

    parts = payload.get("parts") or []
    for part in parts:
        if part.get("mimeType") == "text/plain" and part.get("body", {}).get("data"):
            return decode_base64url(part["body"]["data"])

    for part in parts:
        if part.get("parts"):
            nested = extract_body(part)
            if nested:
                return nested

    for part in parts:
        if part.get("mimeType") == "text/html" and part.get("body", {}).get("data"):
            return Message.strip_html(decode_base64url(part["body"]["data"]))

    if payload.get("mimeType") == "text/html" and payload.get("body", {}).get("data"):
        return Message.strip_html(decode_base64url(payload["body"]["data"]))

    return ""


def has_attachments(payload: dict[str, Any]) -> bool:
    """True if any part carries a real (non-inline-image) attachment."""
    for part in payload.get("parts") or []:
        if part.get("body", {}).get("attachmentId") and is_real_attachment(part.get("filename")):
            return True
        if part.get("parts") and has_attachments(part):
            return True
    return False


class GmailClient(MailboxSource):
    """Gmail API client for one connected account."""

    def __init__(
        self,
        key: MailboxKey,
        refresh_token: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        super().__init__(key)
        self.refresh_token = refresh_token or settings.gmail_refresh_token
        self.client_id = client_id or settings.gmail_client_id
        self.client_secret = client_secret or settings.gmail_client_secret
        self.timeout = timeout or settings.fetch_timeout_seconds
        self._client = httpx.Client(timeout=self.timeout, transport=transport)
        self._access_token: str | None = None

    def open(self) -> None:
        """Exchange the refresh token for an access token."""
        if not self.refresh_token:
            raise AuthenticationFailure(f"Gmail not connected for {self.key.mailbox}")

        try:
            response = self._client.post(TOKEN_URL, data={
                "refresh_token": self.refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            })
        except httpx.RequestError as e:
            raise MailboxUnavailable(f"Failed to reach Google token endpoint: {e}") from e

        try:
            data = response.json() if response.content else {}
        except ValueError as e:
            raise MailboxUnavailable(f"Google token endpoint returned invalid JSON: {e}") from e
        if response.status_code >= 400 or data.get("error"):
            error = data.get("error_description") or data.get("error") or response.status_code
            log.error("gmail_token_refresh_failed", mailbox=self.key.mailbox, error=str(error))
            raise AuthenticationFailure(f"Token refresh failed: {error}")

        self._access_token = data["access_token"]
        log.info("gmail_token_refreshed", mailbox=self.key.mailbox)

    def close(self) -> None:
        self._client.close()

    def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self._access_token:
            raise MailboxUnavailable("Gmail client is not authenticated")

        try:
            response = self._client.get(
                f"{API_BASE}/{path}",
                params=params,
                headers={"Authorization": f"Bearer {self._access_token}"},
            )
            response.raise_for_status()
            return response.json()

        except ValueError as e:
            log.error("gmail_invalid_json", path=path, error=str(e))
            raise MailboxUnavailable(f"Gmail returned invalid JSON for {path}: {e}") from e

        except httpx.HTTPStatusError as e:
            log.error("gmail_http_error", status=e.response.status_code, path=path)
            if e.response.status_code == 401:
                raise AuthenticationFailure(f"Gmail rejected access token: {e}") from e
            raise MailboxUnavailable(f"Gmail API error: {e}") from e

        except httpx.RequestError as e:
            log.error("gmail_request_error", error=str(e), path=path)
            raise MailboxUnavailable(f"Failed to reach Gmail API: {e}") from e

    def list_message_ids(self, since: datetime) -> list[str]:
        """All message ids after `since`, following page tokens, oldest first."""
        query = f"after:{int(since.timestamp())}"
        ids: list[str] = []
        page_token = None

        while True:
            params: dict[str, Any] = {"q": query, "maxResults": PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            data = self._get("messages", params)
            ids.extend(item["id"] for item in data.get("messages") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        # Gmail lists newest first
        ids.reverse()
        log.info("gmail_listed", query=query, count=len(ids))
        return ids

    def fetch_message(self, provider_message_id: str) -> Message:
        data = self._get(f"messages/{provider_message_id}", {"format": "full"})
        try:
            return self._parse_message(provider_message_id, data)
        except Exception as e:
            log.error("gmail_parse_error", provider_message_id=provider_message_id, error=str(e))
            raise MailboxUnavailable(f"Unparseable message {provider_message_id}: {e}") from e

    def _parse_message(self, provider_message_id: str, data: dict[str, Any]) -> Message:
        payload = data.get("payload") or {}
        headers = {
            header["name"].lower(): header["value"]
            for header in payload.get("headers") or []
        }

        message_date = None
        if headers.get("date"):
            try:
                message_date = parsedate_to_datetime(headers["date"])
            except (TypeError, ValueError):
                log.warning("gmail_unparseable_date", date=headers["date"])
        if message_date is None and data.get("internalDate"):
            message_date = datetime.fromtimestamp(int(data["internalDate"]) / 1000).astimezone()

        return Message(
            organization_id=self.key.organization_id,
            mailbox=self.key.mailbox,
            provider_message_id=provider_message_id,
            sender=headers.get("from", ""),
            recipient=headers.get("to", ""),
            subject=headers.get("subject", ""),
            body=extract_body(payload),
            message_date=message_date,
            has_attachment=has_attachments(payload),
        )
