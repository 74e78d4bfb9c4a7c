"""Gmail integration for the order calendar agent.

The client below is a thin boundary over the Gmail REST API: it lists the
unread order emails sent by an allow-list of senders, decodes their MIME
bodies into plain text and marks them read once fetched.  The helpers are
wrapped as a LangChain ``StructuredTool`` so the agent's model can request
the latest orders.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Union

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from langchain_core.tools import StructuredTool
from pydantic import BaseModel, ConfigDict, Field, validator

from integrations.google_auth import GoogleCredentials, GoogleIntegrationError

NO_DATA_FOUND = "No Data Found"
UNREAD_LABEL = "UNREAD"

_TAG_PATTERN = re.compile(r"<[^>]*>?")
_WHITESPACE_PATTERN = re.compile(r"[\r\n\s]+")


logger = logging.getLogger(__name__)


class GmailIntegrationError(GoogleIntegrationError):
    """Raised when the Gmail API rejects or fails a request."""


@dataclass
class EmailBody:
    """Decoded text alternatives of a message."""

    plain_text: str = ""
    html: str = ""


@dataclass
class EmailRecord:
    """Read-only snapshot of a Gmail message handed to the model."""

    id: str
    thread_id: Optional[str]
    snippet: str
    labels: List[str] = field(default_factory=list)
    subject: Optional[str] = None
    sender: Optional[str] = None
    date: Optional[str] = None
    body: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "threadId": self.thread_id,
            "snippet": self.snippet,
            "labels": self.labels,
            "subject": self.subject,
            "from": self.sender,
            "date": self.date,
            "body": {"plain": self.body},
        }


def decode_part_data(data: str) -> str:
    """Decode the base64url ``body.data`` of a Gmail message part."""

    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise GmailIntegrationError(f"Message part is not valid base64: {exc}") from exc
    return raw.decode("utf-8", errors="replace")


def strip_html_tags(html: str) -> str:
    return _TAG_PATTERN.sub("", html)


def flatten_text(text: Optional[str]) -> str:
    if not text:
        return ""
    return _WHITESPACE_PATTERN.sub(" ", text).strip()


def parse_email_body(payload: Dict[str, Any]) -> EmailBody:
    """Walk the MIME tree depth-first and keep the first plain and HTML parts.

    Parts are visited in document order. Later parts of an already seen type
    are ignored. When the message has no ``text/plain`` part the plain text is
    the HTML with its tags removed.
    """

    result = EmailBody()
    pending: List[Dict[str, Any]] = [payload]

    while pending:
        part = pending.pop()
        if not part:
            continue

        data = (part.get("body") or {}).get("data")
        mime_type = part.get("mimeType")
        if data and mime_type:
            if mime_type == "text/plain" and not result.plain_text:
                result.plain_text = decode_part_data(data)
            elif mime_type == "text/html" and not result.html:
                result.html = decode_part_data(data)

        children = part.get("parts") or []
        pending.extend(reversed(children))

    if not result.plain_text and result.html:
        result.plain_text = strip_html_tags(result.html)

    return result


def get_header(headers: Sequence[Dict[str, str]], name: str) -> Optional[str]:
    wanted = name.lower()
    for header in headers:
        if (header.get("name") or "").lower() == wanted:
            return header.get("value")
    return None


class GmailClient:
    """Small wrapper around the Gmail API used by the order tools."""

    def __init__(
        self,
        credentials: Optional[GoogleCredentials] = None,
        *,
        service: Any = None,
        user_id: str = "me",
    ):
        if credentials is None and service is None:
            raise GmailIntegrationError("GmailClient needs credentials or a prepared service.")
        self._credentials = credentials
        self._service = service
        self._user_id = user_id

    def _service_client(self):
        if self._service is None:
            credentials = self._credentials.ensure_valid()
            self._service = build("gmail", "v1", credentials=credentials, cache_discovery=False)
        return self._service

    def _messages(self):
        return self._service_client().users().messages()

    @staticmethod
    def build_query(
        *,
        since: date,
        senders: Sequence[str] = (),
        unread_only: bool = True,
    ) -> str:
        """Compose the Gmail search expression for candidate order emails."""

        clauses: List[str] = []
        senders = [sender.strip() for sender in senders if sender and sender.strip()]
        if len(senders) == 1:
            clauses.append(f"from:{senders[0]}")
        elif senders:
            clauses.append("(" + " OR ".join(f"from:{sender}" for sender in senders) + ")")
        clauses.append(f"after:{since.strftime('%Y/%m/%d')}")
        if unread_only:
            clauses.append("is:unread")
        return " ".join(clauses)

    def list_candidate_messages(
        self,
        *,
        since: Optional[date] = None,
        senders: Sequence[str] = (),
        max_results: int = 1,
        unread_only: bool = True,
    ) -> Union[List[str], str]:
        """Return matching message ids, or ``NO_DATA_FOUND`` when none match."""

        query = self.build_query(
            since=since or date.today(),
            senders=senders,
            unread_only=unread_only,
        )
        logger.info("Listing Gmail messages matching %r (limit=%s)", query, max_results)
        try:
            response = (
                self._messages()
                .list(userId=self._user_id, q=query, maxResults=max(max_results, 1))
                .execute()
            )
        except HttpError as exc:
            raise GmailIntegrationError(f"Gmail list request failed: {exc}") from exc

        ids = [item["id"] for item in response.get("messages") or [] if item.get("id")]
        if not ids:
            return NO_DATA_FOUND
        return ids

    def fetch_message(self, message_id: str) -> Optional[EmailRecord]:
        """Fetch a full message; ``None`` when the payload carries no headers."""

        if not message_id:
            raise GmailIntegrationError("message_id is required to fetch a message")
        try:
            data = (
                self._messages()
                .get(userId=self._user_id, id=message_id, format="full")
                .execute()
            )
        except HttpError as exc:
            raise GmailIntegrationError(f"Gmail get request failed for {message_id}: {exc}") from exc

        payload = data.get("payload") or {}
        headers = payload.get("headers")
        if not headers:
            logger.warning("Gmail message %s has no headers; skipping", message_id)
            return None

        body = parse_email_body(payload)
        return EmailRecord(
            id=data.get("id", message_id),
            thread_id=data.get("threadId"),
            snippet=data.get("snippet", ""),
            labels=list(data.get("labelIds") or []),
            subject=get_header(headers, "Subject"),
            sender=get_header(headers, "From"),
            date=get_header(headers, "Date"),
            body=flatten_text(body.plain_text),
        )

    def mark_read(self, message_id: str) -> None:
        """Remove the unread marker. Marking a read message again is a no-op."""

        try:
            (
                self._messages()
                .modify(
                    userId=self._user_id,
                    id=message_id,
                    body={"removeLabelIds": [UNREAD_LABEL]},
                )
                .execute()
            )
        except HttpError as exc:
            raise GmailIntegrationError(f"Gmail modify request failed for {message_id}: {exc}") from exc

    def fetch_latest_orders(
        self,
        *,
        senders: Sequence[str],
        max_results: int = 1,
        since: Optional[date] = None,
    ) -> Union[List[EmailRecord], str]:
        """Fetch today's unread order emails, then mark them read.

        Nothing is marked read until every message has been fetched, so a
        failed batch leaves the whole batch unread for the next run.
        """

        ids = self.list_candidate_messages(
            since=since,
            senders=senders,
            max_results=max_results,
        )
        if ids == NO_DATA_FOUND:
            return NO_DATA_FOUND

        fetched = [self.fetch_message(message_id) for message_id in ids]
        for message_id in ids:
            self.mark_read(message_id)
        records: List[EmailRecord] = [record for record in fetched if record is not None]
        logger.info("Fetched %s Gmail order message(s)", len(records))
        return records


def create_gmail_tools(
    client: GmailClient,
    *,
    default_senders: Sequence[str] = (),
) -> List[StructuredTool]:
    """Create the LangChain tool that exposes the order inbox."""

    class GetLatestGmailInput(BaseModel):
        """Schema for fetching the latest order emails."""

        model_config = ConfigDict(populate_by_name=True)

        max_results: int = Field(
            default=1,
            alias="maxResults",
            ge=1,
            le=50,
            description="Maximum number of emails to fetch.",
        )
        from_: Optional[str] = Field(
            default=None,
            alias="from",
            description="Only fetch emails sent by this address.",
        )

        @validator("from_", pre=True)
        def _blank_as_none(cls, value):  # type: ignore[override]
            if isinstance(value, str) and not value.strip():
                return None
            return value

    def get_latest_gmail(max_results: int = 1, from_: Optional[str] = None) -> str:
        senders = [from_] if from_ else list(default_senders)
        result = client.fetch_latest_orders(senders=senders, max_results=max_results)
        if result == NO_DATA_FOUND:
            return NO_DATA_FOUND
        return json.dumps([record.as_dict() for record in result], ensure_ascii=False)

    return [
        StructuredTool.from_function(
            get_latest_gmail,
            name="get-latest-gmail",
            description=(
                "Fetch the latest unread order emails received today from Gmail. "
                "You can optionally specify `maxResults` and a `from` email address."
            ),
            args_schema=GetLatestGmailInput,
        ),
    ]


__all__ = [
    "EmailBody",
    "EmailRecord",
    "GmailClient",
    "GmailIntegrationError",
    "NO_DATA_FOUND",
    "create_gmail_tools",
    "flatten_text",
    "get_header",
    "parse_email_body",
    "strip_html_tags",
]
