"""Shared fixtures for the order agent tests.

Gateways run against the in-memory services in ``tests.fakes``; nothing here
talks to Google or to a model provider.
"""

from datetime import datetime, timezone

import pytest

from integrations.gmail import GmailClient
from integrations.google_calendar import GoogleCalendarClient
from order_agent.config import AgentSettings
from tests.fakes import FakeCalendarService, FakeGmailService, gmail_message, text_part


ORDER_SENDER = "orders@example.com"


# --- Mailbox fixtures ---------------------------------------------------------


@pytest.fixture
def order_email():
    """An unread catering order received now from the allow-listed sender."""
    return gmail_message(
        "m-1",
        sender=f"Orders Desk <{ORDER_SENDER}>",
        subject="Team lunch for 20",
        received=datetime.now(timezone.utc),
        payload={
            "mimeType": "multipart/alternative",
            "parts": [
                text_part("text/plain", "Please deliver lunch for 20 today at noon.\nGuest: chef@example.com"),
                text_part("text/html", "<p>Please deliver lunch for 20 today at noon.</p>"),
            ],
        },
    )


@pytest.fixture
def gmail_service(order_email):
    return FakeGmailService([order_email])


@pytest.fixture
def gmail_client(gmail_service):
    return GmailClient(service=gmail_service)


# --- Calendar fixtures --------------------------------------------------------


@pytest.fixture
def calendar_service():
    return FakeCalendarService()


@pytest.fixture
def calendar_client(calendar_service):
    return GoogleCalendarClient(service=calendar_service)


# --- Settings -----------------------------------------------------------------


@pytest.fixture
def settings():
    return AgentSettings(
        allowed_senders=[ORDER_SENDER],
        excluded_attendees=[ORDER_SENDER],
        time_zone="UTC",
        max_iterations=8,
        oracle_timeout=5.0,
        tool_timeout=5.0,
    )
