"""
IMAP mailbox source.
"""

import imaplib
from datetime import datetime
from email import message_from_bytes
from email.header import decode_header as email_decode_header
from email.utils import parsedate_to_datetime

from order_sync.config import settings
from order_sync.core.exceptions import AuthenticationFailure, MailboxUnavailable
from order_sync.core.logging import get_logger
from order_sync.core.models import MailboxKey, Message
from order_sync.services.mailbox import MailboxSource, is_real_attachment

log = get_logger(__name__)


def decode_text(payload: bytes, charset: str | None) -> str:
    """Decode with the declared charset, falling back to utf-8 for unknown ones."""
    try:
        return payload.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


class IMAPClient(MailboxSource):
    """IMAP client addressing messages by UID."""

    def __init__(
        self,
        key: MailboxKey,
        host: str | None = None,
        password: str | None = None,
        folder: str = "INBOX",
        timeout: float | None = None,
    ):
        super().__init__(key)
        self.host = host or settings.imap_host
        self.email = key.mailbox
        self.password = password or settings.imap_password
        self.folder = folder
        self.timeout = timeout or settings.fetch_timeout_seconds
        self._conn: imaplib.IMAP4_SSL | None = None
        self.uidvalidity = ""

    def open(self) -> None:
        """Connect and authenticate to IMAP server."""
        log.info("imap_connecting", host=self.host, email=self.email)
        conn = None
        try:
            conn = imaplib.IMAP4_SSL(self.host, timeout=self.timeout)
            conn.login(self.email, self.password)
            conn.select(self.folder, readonly=True)
            _, validity = conn.response("UIDVALIDITY")
            self.uidvalidity = validity[0].decode() if validity and validity[0] else "0"
            self._conn = conn  # Only set if login succeeds
            log.info("imap_connected", uidvalidity=self.uidvalidity)
        except imaplib.IMAP4.error as e:
            self._logout(conn)
            log.error("imap_auth_failed", email=self.email, error=str(e))
            raise AuthenticationFailure(f"IMAP login rejected for {self.email}: {e}") from e
        except OSError as e:
            self._logout(conn)
            raise MailboxUnavailable(f"IMAP server unreachable: {e}") from e

    def close(self) -> None:
        """Close IMAP connection."""
        if self._conn:
            self._logout(self._conn)
            self._conn = None
            log.info("imap_disconnected")

    @staticmethod
    def _logout(conn: imaplib.IMAP4_SSL | None) -> None:
        if conn is None:
            return
        try:
            conn.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            log.debug("imap_logout_failed", error=str(e))

    def list_message_ids(self, since: datetime) -> list[str]:
        """
        Provider ids (`uidvalidity:uid`) of messages since a date.

        UIDs are only unique within one UIDVALIDITY epoch, so the epoch is
        part of the id.

        IMAP SINCE has day granularity, so the result may include messages
        from earlier the same day; the message store drops those.
        """
        if not self._conn:
            raise MailboxUnavailable("Not connected to IMAP server")

        date_str = since.strftime("%d-%b-%Y")
        try:
            status, data = self._conn.uid("SEARCH", None, f"(SINCE {date_str})")
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxUnavailable(f"IMAP search failed: {e}") from e

        if status != "OK":
            raise MailboxUnavailable(f"IMAP search returned {status}")

        uids = [f"{self.uidvalidity}:{uid.decode()}" for uid in (data[0] or b"").split()]
        log.info("imap_listed", folder=self.folder, since=date_str, count=len(uids))
        return uids

    def fetch_message(self, provider_message_id: str) -> Message:
        """Fetch one message by provider id."""
        if not self._conn:
            raise MailboxUnavailable("Not connected to IMAP server")

        validity, _, uid = provider_message_id.rpartition(":")
        if validity != self.uidvalidity:
            raise MailboxUnavailable(
                f"UIDVALIDITY changed for {provider_message_id} (now {self.uidvalidity})"
            )

        try:
            status, msg_data = self._conn.uid("FETCH", uid, "(RFC822)")
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxUnavailable(f"IMAP fetch failed for {provider_message_id}: {e}") from e

        if status != "OK" or not msg_data or not isinstance(msg_data[0], tuple):
            raise MailboxUnavailable(f"IMAP fetch returned nothing for {provider_message_id}")

        try:
            msg = message_from_bytes(msg_data[0][1])
            return self._parse_message(msg, provider_message_id)
        except Exception as e:
            log.error("imap_parse_error", provider_message_id=provider_message_id, error=str(e))
            raise MailboxUnavailable(f"Unparseable message {provider_message_id}: {e}") from e

    def _decode_header(self, header: str) -> str:
        """Decode MIME-encoded email header like '=?UTF-8?B?...?='."""
        if not header:
            return ""
        decoded_parts = []
        for part, charset in email_decode_header(header):
            if isinstance(part, bytes):
                decoded_parts.append(decode_text(part, charset))
            else:
                decoded_parts.append(part)
        return "".join(decoded_parts).replace("\r\n", "").replace("\n", "")

    def _parse_message(self, msg, provider_message_id: str) -> Message:
        """Parse email message into a Message."""
        message_date = None
        date_str = msg.get("Date")
        if date_str:
            try:
                message_date = parsedate_to_datetime(date_str)
            except (TypeError, ValueError):
                log.warning("imap_unparseable_date", date=date_str)

        body_plain, body_html = self._get_body(msg)
        body = body_plain.strip() or Message.strip_html(body_html)

        has_attachment = False
        if msg.is_multipart():
            for part in msg.walk():
                disposition = part.get("Content-Disposition", "") or ""
                if "attachment" in disposition and is_real_attachment(part.get_filename()):
                    has_attachment = True
                    break

        return Message(
            organization_id=self.key.organization_id,
            mailbox=self.key.mailbox,
            provider_message_id=provider_message_id,
            sender=self._decode_header(msg.get("From", "")),
            recipient=self._decode_header(msg.get("To", "")),
            subject=self._decode_header(msg.get("Subject", "")),
            body=body,
            message_date=message_date,
            has_attachment=has_attachment,
        )

    def _get_body(self, msg) -> tuple[str, str]:
        """Extract plain text and HTML body from message."""
        text_plain = ""
        text_html = ""

        if msg.is_multipart():
            for part in msg.walk():
                content_type = part.get_content_type()
                disposition = part.get("Content-Disposition", "") or ""

                if "attachment" in disposition:
                    continue

                payload = part.get_payload(decode=True)
                if not payload:
                    continue

                text = decode_text(payload, part.get_content_charset())

                if content_type == "text/plain":
                    text_plain += text
                elif content_type == "text/html":
                    text_html += text
        else:
            payload = msg.get_payload(decode=True)
            if payload:
                text = decode_text(payload, msg.get_content_charset())
                if msg.get_content_type() == "text/plain":
                    text_plain = text
                elif msg.get_content_type() == "text/html":
                    text_html = text

        return text_plain, text_html
