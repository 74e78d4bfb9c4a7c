"""Tests for order_agent/config.py and order_agent/prompts.py"""

from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from order_agent.config import AgentSettings
from order_agent.prompts import build_system_prompt


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "ORDER_AGENT_MODEL",
        "ORDER_AGENT_BASE_URL",
        "ORDER_AGENT_API_KEY",
        "ORDER_AGENT_TEMPERATURE",
        "ORDER_AGENT_MAX_ITERATIONS",
        "ORDER_AGENT_MAX_DURATION",
        "ORDER_AGENT_ORACLE_TIMEOUT",
        "ORDER_AGENT_TOOL_TIMEOUT",
        "ORDER_AGENT_CALENDAR_ID",
        "ORDER_AGENT_ALLOWED_SENDERS",
        "ORDER_AGENT_EXCLUDED_ATTENDEES",
        "ORDER_AGENT_TIMEZONE",
        "ORDER_AGENT_DEDUPLICATE_EVENTS",
    ):
        monkeypatch.delenv(name, raising=False)


class TestAgentSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("ORDER_AGENT_TIMEZONE", "UTC")
        settings = AgentSettings.from_env()
        assert settings.model_name == "openai/gpt-oss-120b"
        assert settings.max_iterations == 10
        assert settings.deduplicate_events is True
        assert settings.allowed_senders == []
        assert settings.calendar_id == "primary"

    def test_sender_lists(self, monkeypatch):
        monkeypatch.setenv("ORDER_AGENT_ALLOWED_SENDERS", "a@example.com, b@example.com,,")
        settings = AgentSettings.from_env()
        assert settings.allowed_senders == ["a@example.com", "b@example.com"]
        assert settings.excluded_attendees == ["a@example.com", "b@example.com"]

    def test_explicit_exclusions_override_senders(self, monkeypatch):
        monkeypatch.setenv("ORDER_AGENT_ALLOWED_SENDERS", "a@example.com")
        monkeypatch.setenv("ORDER_AGENT_EXCLUDED_ATTENDEES", "")
        assert AgentSettings.from_env().excluded_attendees == []

    def test_numbers_and_flags(self, monkeypatch):
        monkeypatch.setenv("ORDER_AGENT_MAX_ITERATIONS", "4")
        monkeypatch.setenv("ORDER_AGENT_TOOL_TIMEOUT", "2.5")
        monkeypatch.setenv("ORDER_AGENT_DEDUPLICATE_EVENTS", "off")
        monkeypatch.setenv("ORDER_AGENT_BASE_URL", "https://api.groq.com/openai/v1")
        settings = AgentSettings.from_env()
        assert settings.max_iterations == 4
        assert settings.tool_timeout == 2.5
        assert settings.deduplicate_events is False
        assert settings.base_url == "https://api.groq.com/openai/v1"

    def test_invalid_number_falls_back(self, monkeypatch, caplog):
        monkeypatch.setenv("ORDER_AGENT_MAX_ITERATIONS", "lots")
        settings = AgentSettings.from_env()
        assert settings.max_iterations == 10
        assert "ORDER_AGENT_MAX_ITERATIONS" in caplog.text

    def test_iterations_floor(self, monkeypatch):
        monkeypatch.setenv("ORDER_AGENT_MAX_ITERATIONS", "0")
        assert AgentSettings.from_env().max_iterations == 1


class TestSystemPrompt:
    def test_includes_time_and_zone(self):
        now = datetime(2025, 9, 26, 8, 30, 15, 999, tzinfo=ZoneInfo("America/Toronto"))
        prompt = build_system_prompt("America/Toronto", now=now)
        assert "Current date and time: 2025-09-26T08:30:15-04:00" in prompt
        assert "Current time zone: America/Toronto" in prompt
        assert "get-events" in prompt
