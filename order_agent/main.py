"""Order calendar agent.

Wires the Gmail and Google Calendar tools into the LangGraph loop and runs
it from the command line, either interactively, once, or on a fixed
interval.  The sections below follow the order in which the pieces are
assembled.
"""

# --- Model Setup -----------------------------------------------------------
from __future__ import annotations

import argparse
import itertools
import logging
import os
import time
from typing import List, Optional, Sequence

from langchain_core.language_models import BaseChatModel
from langchain_core.tools import BaseTool
from langchain_openai import ChatOpenAI
from langgraph.checkpoint.base import BaseCheckpointSaver

from integrations.gmail import GmailClient, create_gmail_tools
from integrations.google_auth import GoogleCredentials, GoogleIntegrationError
from integrations.google_calendar import GoogleCalendarClient, create_calendar_tools
from order_agent.config import AgentSettings
from order_agent.graph import OrderAgent
from order_agent.prompts import DEFAULT_ORDER_REQUEST, build_system_prompt
from order_agent.registry import ToolRegistry

EXIT_WORD = "bye"


logger = logging.getLogger(__name__)


def initialize_llm(settings: AgentSettings) -> BaseChatModel:
    """Create the chat model that decides which tool to call next.

    Any OpenAI compatible endpoint works; set ``ORDER_AGENT_BASE_URL`` to use
    a hosted open-weights provider instead of OpenAI itself.
    """

    return ChatOpenAI(
        model=settings.model_name,
        temperature=settings.temperature,
        api_key=settings.api_key,
        base_url=settings.base_url,
        timeout=settings.oracle_timeout,
    )


# --- Tool Setup ------------------------------------------------------------
def initialize_tools(
    settings: AgentSettings,
    *,
    gmail_client: Optional[GmailClient] = None,
    calendar_client: Optional[GoogleCalendarClient] = None,
) -> List[BaseTool]:
    """Build the three order tools, loading Google credentials when needed."""

    if gmail_client is None or calendar_client is None:
        credentials = GoogleCredentials.from_env()
        gmail_client = gmail_client or GmailClient(credentials)
        calendar_client = calendar_client or GoogleCalendarClient(
            credentials, calendar_id=settings.calendar_id
        )

    tools: List[BaseTool] = []
    tools.extend(create_gmail_tools(gmail_client, default_senders=settings.allowed_senders))
    tools.extend(
        create_calendar_tools(
            calendar_client,
            excluded_attendees=settings.excluded_attendees,
            deduplicate=settings.deduplicate_events,
            default_time_zone=settings.time_zone,
        )
    )
    return tools


# --- Agent Registration ----------------------------------------------------
def build_order_agent(
    settings: AgentSettings,
    *,
    llm: Optional[BaseChatModel] = None,
    gmail_client: Optional[GmailClient] = None,
    calendar_client: Optional[GoogleCalendarClient] = None,
    checkpointer: Optional[BaseCheckpointSaver] = None,
) -> OrderAgent:
    """Assemble the registry, bind its tools to the model and compile the loop."""

    registry = ToolRegistry(
        initialize_tools(settings, gmail_client=gmail_client, calendar_client=calendar_client)
    )
    llm = llm or initialize_llm(settings)
    oracle = llm.bind_tools(registry.tools)

    return OrderAgent(
        oracle,
        registry,
        system_prompt=lambda: build_system_prompt(settings.time_zone),
        max_iterations=settings.max_iterations,
        max_duration=settings.max_duration,
        oracle_timeout=settings.oracle_timeout,
        tool_timeout=settings.tool_timeout,
        checkpointer=checkpointer,
    )


# --- Execution -------------------------------------------------------------
def interactive_loop(agent: OrderAgent, thread_id: str) -> None:
    """Prompt for requests until the user types ``bye``.

    An empty line sends the default order check.
    """

    while True:
        try:
            question = input("YOU: ").strip()
        except EOFError:
            break
        if question.lower() == EXIT_WORD:
            break
        print("AI: ", agent.ask(thread_id, question or DEFAULT_ORDER_REQUEST))


def poll(agent: OrderAgent, thread_id: str, interval: float) -> None:
    """Run the default order check every ``interval`` seconds.

    Each check runs on its own thread (``<thread_id>-<n>``) so the history
    replayed to the model does not grow from one check to the next.
    """

    for cycle in itertools.count(1):
        result = agent.run(f"{thread_id}-{cycle}", DEFAULT_ORDER_REQUEST)
        print("AI: ", result.answer)
        time.sleep(interval)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Schedule catering orders from Gmail onto Google Calendar."
    )
    parser.add_argument("--thread-id", default="1", help="Conversation thread to use.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run the default order check once.")
    mode.add_argument(
        "--poll-interval",
        type=float,
        metavar="SECONDS",
        help="Repeat the default order check on this interval.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Entry point used by ``python -m order_agent.main``."""

    args = parse_args(argv)
    logging.basicConfig(
        level=os.getenv("ORDER_AGENT_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = AgentSettings.from_env()
    try:
        agent = build_order_agent(settings)
    except GoogleIntegrationError as exc:
        raise SystemExit(f"Google integration is not configured: {exc}") from exc

    if args.once:
        print("AI: ", agent.ask(args.thread_id, DEFAULT_ORDER_REQUEST))
    elif args.poll_interval:
        poll(agent, args.thread_id, args.poll_interval)
    else:
        interactive_loop(agent, args.thread_id)


if __name__ == "__main__":
    main()
