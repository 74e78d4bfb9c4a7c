"""Tests for integrations/gmail.py"""

import json
from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

import httplib2
import pytest
from googleapiclient.errors import HttpError

from integrations.gmail import (
    NO_DATA_FOUND,
    GmailClient,
    GmailIntegrationError,
    create_gmail_tools,
    flatten_text,
    get_header,
    parse_email_body,
    strip_html_tags,
)
from tests.fakes import FakeGmailService, gmail_message, text_part


def _http_error(status=500):
    return HttpError(httplib2.Response({"status": str(status)}), b"backend error")


class TestParseEmailBody:
    def test_single_plain_part(self):
        body = parse_email_body(text_part("text/plain", "Lunch for 12"))
        assert body.plain_text == "Lunch for 12"
        assert body.html == ""

    def test_html_only_falls_back_to_stripped_tags(self):
        html = '<div class="order"><p>Deliver <b>bagels</b> at 8am</p><br/></div>'
        body = parse_email_body({"mimeType": "multipart/mixed", "parts": [text_part("text/html", html)]})
        assert body.html == html
        assert body.plain_text == strip_html_tags(html)
        assert body.plain_text == "Deliver bagels at 8am"

    def test_first_part_of_each_type_wins_in_document_order(self):
        payload = {
            "mimeType": "multipart/mixed",
            "parts": [
                {
                    "mimeType": "multipart/alternative",
                    "parts": [
                        text_part("text/plain", "first plain"),
                        text_part("text/html", "<p>first html</p>"),
                    ],
                },
                text_part("text/plain", "second plain"),
                text_part("text/html", "<p>second html</p>"),
            ],
        }
        body = parse_email_body(payload)
        assert body.plain_text == "first plain"
        assert body.html == "<p>first html</p>"

    def test_parts_without_data_are_skipped(self):
        payload = {
            "mimeType": "multipart/mixed",
            "parts": [
                {"mimeType": "text/plain", "body": {"size": 0}},
                {"mimeType": "application/pdf", "body": {"attachmentId": "att-1"}},
                text_part("text/plain", "real body"),
            ],
        }
        assert parse_email_body(payload).plain_text == "real body"

    def test_decodes_unpadded_base64url(self):
        body = parse_email_body(text_part("text/plain", "café ✓ ~~~???"))
        assert body.plain_text == "café ✓ ~~~???"

    def test_empty_payload(self):
        body = parse_email_body({})
        assert body.plain_text == ""
        assert body.html == ""


class TestHelpers:
    def test_flatten_text_collapses_whitespace(self):
        assert flatten_text("  Order:\r\n\r\n  20   sandwiches\t\n") == "Order: 20 sandwiches"

    def test_flatten_text_handles_none(self):
        assert flatten_text(None) == ""

    def test_get_header_is_case_insensitive(self):
        headers = [{"name": "SUBJECT", "value": "Hi"}, {"name": "From", "value": "a@b.c"}]
        assert get_header(headers, "subject") == "Hi"
        assert get_header(headers, "Date") is None


class TestBuildQuery:
    def test_single_sender(self):
        query = GmailClient.build_query(since=date(2025, 9, 26), senders=["orders@example.com"])
        assert query == "from:orders@example.com after:2025/09/26 is:unread"

    def test_multiple_senders_are_grouped(self):
        query = GmailClient.build_query(
            since=date(2025, 9, 6),
            senders=["a@example.com", " ", "b@example.com"],
            unread_only=False,
        )
        assert query == "(from:a@example.com OR from:b@example.com) after:2025/09/06"

    def test_no_senders(self):
        assert GmailClient.build_query(since=date(2025, 1, 2)) == "after:2025/01/02 is:unread"


class TestGmailClient:
    def test_requires_credentials_or_service(self):
        with pytest.raises(GmailIntegrationError):
            GmailClient()

    def test_list_returns_matching_ids(self, gmail_client, gmail_service):
        ids = gmail_client.list_candidate_messages(senders=["orders@example.com"], max_results=5)
        assert ids == ["m-1"]
        assert gmail_service.queries[-1].startswith("from:orders@example.com after:")

    def test_list_returns_sentinel_when_nothing_matches_today(self):
        old = gmail_message(
            "m-old",
            sender="orders@example.com",
            subject="Old order",
            received=datetime.now(timezone.utc) - timedelta(days=3),
            payload=text_part("text/plain", "old"),
        )
        client = GmailClient(service=FakeGmailService([old]))
        result = client.list_candidate_messages(since=date.today(), senders=["orders@example.com"])
        assert result is NO_DATA_FOUND

    def test_list_sentinel_on_empty_mailbox(self):
        client = GmailClient(service=FakeGmailService())
        assert client.list_candidate_messages(since=date.today()) == NO_DATA_FOUND

    def test_list_wraps_http_errors(self):
        service = MagicMock()
        service.users.return_value.messages.return_value.list.return_value.execute.side_effect = _http_error(503)
        client = GmailClient(service=service)
        with pytest.raises(GmailIntegrationError, match="list request failed"):
            client.list_candidate_messages()

    def test_fetch_message_builds_record(self, gmail_client):
        record = gmail_client.fetch_message("m-1")
        assert record.id == "m-1"
        assert record.thread_id == "thread-m-1"
        assert record.subject == "Team lunch for 20"
        assert record.sender == "Orders Desk <orders@example.com>"
        assert "UNREAD" in record.labels
        assert record.body == "Please deliver lunch for 20 today at noon. Guest: chef@example.com"
        payload = record.as_dict()
        assert payload["threadId"] == "thread-m-1"
        assert payload["body"] == {"plain": record.body}

    def test_fetch_message_without_headers_returns_none(self):
        service = MagicMock()
        service.users.return_value.messages.return_value.get.return_value.execute.return_value = {
            "id": "m-2",
            "payload": {"mimeType": "text/plain"},
        }
        assert GmailClient(service=service).fetch_message("m-2") is None

    def test_fetch_message_wraps_http_errors(self):
        service = MagicMock()
        service.users.return_value.messages.return_value.get.return_value.execute.side_effect = _http_error(404)
        with pytest.raises(GmailIntegrationError):
            GmailClient(service=service).fetch_message("missing")

    def test_mark_read_is_idempotent(self, gmail_client, gmail_service):
        gmail_client.mark_read("m-1")
        assert not gmail_service.is_unread("m-1")
        gmail_client.mark_read("m-1")
        assert not gmail_service.is_unread("m-1")
        assert gmail_service.modified == ["m-1", "m-1"]

    def test_fetch_latest_orders_marks_each_message_read(self, gmail_client, gmail_service):
        records = gmail_client.fetch_latest_orders(senders=["orders@example.com"], max_results=3)
        assert [record.id for record in records] == ["m-1"]
        assert not gmail_service.is_unread("m-1")

        assert gmail_client.fetch_latest_orders(senders=["orders@example.com"]) == NO_DATA_FOUND

    def test_failed_batch_leaves_every_message_unread(self, order_email):
        class FlakyGmail(FakeGmailService):
            def get(self, userId, id, format="full"):
                if id == "m-2":
                    raise _http_error(500)
                return super().get(userId, id, format)

        second = gmail_message(
            "m-2",
            sender="orders@example.com",
            subject="Dinner for 8",
            payload=text_part("text/plain", "Dinner for 8 tomorrow."),
        )
        service = FlakyGmail([order_email, second])
        client = GmailClient(service=service)

        with pytest.raises(GmailIntegrationError):
            client.fetch_latest_orders(senders=["orders@example.com"], max_results=5)
        assert service.is_unread("m-1")
        assert service.is_unread("m-2")
        assert service.modified == []


class TestGetLatestGmailTool:
    @pytest.fixture
    def tool(self, gmail_client):
        (tool,) = create_gmail_tools(gmail_client, default_senders=["orders@example.com"])
        return tool

    def test_tool_metadata(self, tool):
        assert tool.name == "get-latest-gmail"
        schema = tool.args_schema.model_json_schema()
        assert set(schema["properties"]) == {"maxResults", "from"}
        assert schema.get("required", []) == []

    def test_returns_json_records(self, tool, gmail_service):
        output = tool.func(max_results=2)
        records = json.loads(output)
        assert records[0]["subject"] == "Team lunch for 20"
        assert records[0]["from"] == "Orders Desk <orders@example.com>"
        assert "from:orders@example.com" in gmail_service.queries[-1]

    def test_from_overrides_default_senders(self, tool, gmail_service):
        assert tool.func(max_results=1, from_="someone@else.com") == NO_DATA_FOUND
        assert gmail_service.queries[-1].startswith("from:someone@else.com ")

    def test_schema_accepts_aliases_and_rejects_bad_limits(self, tool):
        parsed = tool.args_schema.model_validate({"maxResults": 3, "from": " "})
        assert parsed.max_results == 3
        assert parsed.from_ is None
        with pytest.raises(ValueError):
            tool.args_schema.model_validate({"maxResults": 0})
