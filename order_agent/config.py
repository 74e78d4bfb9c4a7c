"""Runtime configuration for the order agent, read from the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


logger = logging.getLogger(__name__)


def _parse_list(raw: Optional[str]) -> List[str]:
    return [token.strip() for token in (raw or "").split(",") if token.strip()]


def _parse_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_number(name: str, default, cast=float):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Invalid value %r for %s; falling back to %s", raw, name, default)
        return default


def local_time_zone() -> str:
    """Best effort IANA name of the host's zone, ``UTC`` when unknown."""

    configured = os.getenv("TZ")
    if configured and "/" in configured:
        return configured
    tzinfo = datetime.now().astimezone().tzinfo
    key = getattr(tzinfo, "key", None)
    return key or "UTC"


@dataclass
class AgentSettings:
    """Model, budget and integration settings for one agent process."""

    model_name: str = "openai/gpt-oss-120b"
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    temperature: float = 0.0
    max_iterations: int = 10
    max_duration: float = 300.0
    oracle_timeout: float = 120.0
    tool_timeout: float = 60.0
    allowed_senders: List[str] = field(default_factory=list)
    excluded_attendees: List[str] = field(default_factory=list)
    calendar_id: str = "primary"
    time_zone: str = "UTC"
    deduplicate_events: bool = True

    @classmethod
    def from_env(cls) -> "AgentSettings":
        """Build settings from ``ORDER_AGENT_*`` environment variables."""

        allowed_senders = _parse_list(os.getenv("ORDER_AGENT_ALLOWED_SENDERS"))
        excluded_raw = os.getenv("ORDER_AGENT_EXCLUDED_ATTENDEES")
        excluded = _parse_list(excluded_raw) if excluded_raw is not None else list(allowed_senders)
        if not allowed_senders:
            logger.warning(
                "ORDER_AGENT_ALLOWED_SENDERS is empty; the inbox search will not filter by sender."
            )

        return cls(
            model_name=os.getenv("ORDER_AGENT_MODEL", cls.model_name),
            base_url=os.getenv("ORDER_AGENT_BASE_URL") or None,
            api_key=os.getenv("ORDER_AGENT_API_KEY") or None,
            temperature=_parse_number("ORDER_AGENT_TEMPERATURE", cls.temperature),
            max_iterations=max(_parse_number("ORDER_AGENT_MAX_ITERATIONS", cls.max_iterations, int), 1),
            max_duration=_parse_number("ORDER_AGENT_MAX_DURATION", cls.max_duration),
            oracle_timeout=_parse_number("ORDER_AGENT_ORACLE_TIMEOUT", cls.oracle_timeout),
            tool_timeout=_parse_number("ORDER_AGENT_TOOL_TIMEOUT", cls.tool_timeout),
            allowed_senders=allowed_senders,
            excluded_attendees=excluded,
            calendar_id=os.getenv("ORDER_AGENT_CALENDAR_ID", cls.calendar_id),
            time_zone=os.getenv("ORDER_AGENT_TIMEZONE") or local_time_zone(),
            deduplicate_events=_parse_bool(os.getenv("ORDER_AGENT_DEDUPLICATE_EVENTS"), True),
        )


__all__ = ["AgentSettings", "local_time_zone"]
