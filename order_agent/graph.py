"""LangGraph workflow that drives the order agent.

The graph has two nodes.  ``assistant`` hands the whole conversation to the
model and appends its reply; when the reply requests tools the graph moves to
``tools``, which runs every requested call through the registry and appends
one result per call id before handing control back to ``assistant``.  A reply
without tool calls ends the request and its text is the answer.

Each request runs under a budget (model calls and wall-clock time) and an
optional cancellation token.  Whatever stops a request, every tool call the
model asked for is answered with a tool message, so a thread's history can
always be replayed to the model on the next request.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import (
    Annotated,
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    TypedDict,
    Union,
)

from langchain_core.messages import (
    AIMessage,
    AnyMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_core.runnables import RunnableConfig
from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.memory import MemorySaver
from langgraph.errors import GraphRecursionError
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages

from order_agent.registry import ToolCallRequest, ToolRegistry

COULD_NOT_COMPLETE = (
    "I could not complete the request within the allowed number of steps. "
    "Some actions may already have been carried out."
)
CANCELLED = "The request was cancelled before it completed."
ORACLE_FAILED = (
    "I could not complete the request because the language model did not respond."
)

STATUS_AWAITING = "awaiting-oracle"
STATUS_DISPATCHING = "dispatching-tools"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_EXHAUSTED = "exhausted"
STATUS_FAILED = "failed"

SYSTEM_MESSAGE_ID = "order-agent-system-prompt"


logger = logging.getLogger(__name__)


# --- State definition -------------------------------------------------------
class OrderAgentState(TypedDict, total=False):
    """Conversation state persisted per thread id."""

    messages: Annotated[List[AnyMessage], add_messages]
    iterations: int
    status: str


@dataclass
class AgentResult:
    """Outcome of one request: the answer text and the full conversation."""

    status: str
    answer: str
    messages: List[BaseMessage] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.status == STATUS_COMPLETED


class CancellationToken:
    """Flag checked between steps; once set no further model or tool calls start."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class RunControl:
    cancel_token: CancellationToken
    deadline: Optional[float] = None

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline


# --- Message helpers --------------------------------------------------------
def message_text(message: Any) -> str:
    """Normalize message content (plain or block list) into a string."""

    content = getattr(message, "content", message)
    if isinstance(content, list):
        texts = [
            item.get("text") if isinstance(item, dict) else str(item)
            for item in content
        ]
        return " ".join(text for text in texts if text)
    if content is None:
        return ""
    return str(content)


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def tool_call_ids(messages: Sequence[BaseMessage]) -> Set[str]:
    """Ids of every tool call already requested in ``messages``."""

    return {call.id for message in messages for call in pending_calls(message) if call.id}


def normalize_response(response: Any, taken_ids: Iterable[str] = ()) -> AIMessage:
    """Coerce model output into an ``AIMessage`` whose tool calls have unique ids.

    Ids are unique within the reply and against ``taken_ids``, the ids
    already used earlier in the thread; providers that restart their
    numbering on every request get fresh ids for the colliding calls.
    """

    if not isinstance(response, AIMessage):
        logger.warning("Model returned %s instead of AIMessage", type(response).__name__)
        return AIMessage(content=message_text(response))

    seen = set(taken_ids)
    changed = False

    def _with_id(call: Dict[str, Any]) -> Dict[str, Any]:
        nonlocal changed
        call = dict(call)
        if not call.get("id") or call["id"] in seen:
            call["id"] = _new_call_id()
            changed = True
        seen.add(call["id"])
        return call

    tool_calls = [_with_id(call) for call in response.tool_calls]
    invalid_calls = [_with_id(call) for call in response.invalid_tool_calls]
    if not changed:
        return response
    return response.model_copy(
        update={"tool_calls": tool_calls, "invalid_tool_calls": invalid_calls}
    )


def pending_calls(message: BaseMessage) -> List[ToolCallRequest]:
    """Tool calls requested by ``message``, malformed ones included."""

    if not isinstance(message, AIMessage):
        return []
    calls = [ToolCallRequest.from_tool_call(call) for call in message.tool_calls]
    calls.extend(ToolCallRequest.from_tool_call(call) for call in message.invalid_tool_calls)
    return calls


def _close_pending(calls: List[ToolCallRequest], reason: str) -> List[ToolMessage]:
    return [
        ToolMessage(
            content=f"Not executed: {reason}.",
            tool_call_id=call.id,
            name=call.name or None,
            status="error",
        )
        for call in calls
    ]


def _call_with_timeout(func: Callable[[Any], Any], argument: Any, timeout: Optional[float]) -> Any:
    if not timeout:
        return func(argument)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="order-agent-oracle")
    try:
        return executor.submit(func, argument).result(timeout=timeout)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


# --- Graph construction -----------------------------------------------------
def build_order_graph(
    oracle: Any,
    registry: ToolRegistry,
    *,
    run_control: Callable[[RunnableConfig], RunControl],
    max_iterations: int = 10,
    oracle_timeout: Optional[float] = None,
    tool_timeout: Optional[float] = None,
    checkpointer: Optional[BaseCheckpointSaver] = None,
):
    """Assemble and compile the assistant/tools loop.

    ``oracle`` is anything with ``invoke(messages) -> AIMessage``, usually a
    chat model with the registry's tools bound.  ``run_control`` resolves the
    cancellation token and deadline of the request a node is running for.
    """

    workflow = StateGraph(OrderAgentState)

    def assistant(state: OrderAgentState, config: RunnableConfig) -> Dict[str, Any]:
        control = run_control(config)
        iterations = state.get("iterations", 0)

        if control.cancel_token.cancelled:
            logger.info("Request cancelled before model call %s", iterations + 1)
            return {"messages": [AIMessage(content=CANCELLED)], "status": STATUS_CANCELLED}
        if control.expired():
            logger.warning("Request ran out of time before model call %s", iterations + 1)
            return {"messages": [AIMessage(content=COULD_NOT_COMPLETE)], "status": STATUS_EXHAUSTED}

        try:
            response = _call_with_timeout(oracle.invoke, list(state["messages"]), oracle_timeout)
        except FutureTimeoutError:
            logger.error("Model call timed out after %ss", oracle_timeout)
            return {
                "messages": [AIMessage(content=ORACLE_FAILED)],
                "iterations": iterations + 1,
                "status": STATUS_FAILED,
            }
        except Exception:  # noqa: BLE001
            logger.exception("Model call failed")
            return {
                "messages": [AIMessage(content=ORACLE_FAILED)],
                "iterations": iterations + 1,
                "status": STATUS_FAILED,
            }

        message = normalize_response(response, tool_call_ids(state["messages"]))
        iterations += 1
        calls = pending_calls(message)
        if not calls:
            logger.info("Model answered after %s call(s)", iterations)
            return {"messages": [message], "iterations": iterations, "status": STATUS_COMPLETED}

        logger.info(
            "Model requested %s tool call(s): %s",
            len(calls),
            ", ".join(call.name for call in calls),
        )
        if iterations >= max_iterations or control.expired():
            logger.warning("Step budget exhausted after %s model call(s)", iterations)
            return {
                "messages": [
                    message,
                    *_close_pending(calls, "the step budget for this request is exhausted"),
                    AIMessage(content=COULD_NOT_COMPLETE),
                ],
                "iterations": iterations,
                "status": STATUS_EXHAUSTED,
            }
        return {"messages": [message], "iterations": iterations, "status": STATUS_DISPATCHING}

    def tools(state: OrderAgentState, config: RunnableConfig) -> Dict[str, Any]:
        control = run_control(config)
        calls = pending_calls(state["messages"][-1])

        if control.cancel_token.cancelled:
            logger.info("Request cancelled before dispatching %s tool call(s)", len(calls))
            return {
                "messages": [
                    *_close_pending(calls, "the request was cancelled"),
                    AIMessage(content=CANCELLED),
                ],
                "status": STATUS_CANCELLED,
            }

        results = registry.dispatch(calls, timeout=tool_timeout)
        messages = [
            ToolMessage(
                content=results[call.id].content,
                tool_call_id=call.id,
                name=call.name or None,
                status="error" if results[call.id].is_error else "success",
            )
            for call in calls
        ]
        return {"messages": messages, "status": STATUS_AWAITING}

    def route_after_assistant(state: OrderAgentState) -> str:
        return "tools" if state.get("status") == STATUS_DISPATCHING else END

    def route_after_tools(state: OrderAgentState) -> str:
        return END if state.get("status") == STATUS_CANCELLED else "assistant"

    workflow.add_node("assistant", assistant)
    workflow.add_node("tools", tools)

    workflow.set_entry_point("assistant")
    workflow.add_conditional_edges("assistant", route_after_assistant, {"tools": "tools", END: END})
    workflow.add_conditional_edges("tools", route_after_tools, {"assistant": "assistant", END: END})

    return workflow.compile(checkpointer=checkpointer)


# --- Agent ------------------------------------------------------------------
class OrderAgent:
    """Conversation entry point: one request in, one answer out, per thread id."""

    def __init__(
        self,
        oracle: Any,
        registry: ToolRegistry,
        *,
        system_prompt: Union[str, Callable[[], str]],
        max_iterations: int = 10,
        max_duration: Optional[float] = 300.0,
        oracle_timeout: Optional[float] = 120.0,
        tool_timeout: Optional[float] = 60.0,
        checkpointer: Optional[BaseCheckpointSaver] = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.registry = registry
        self.max_iterations = max_iterations
        self.max_duration = max_duration
        self._system_prompt = system_prompt
        self._controls: Dict[str, RunControl] = {}
        self._lock = threading.Lock()
        self.graph = build_order_graph(
            oracle,
            registry,
            run_control=self._control_for,
            max_iterations=max_iterations,
            oracle_timeout=oracle_timeout,
            tool_timeout=tool_timeout,
            checkpointer=checkpointer or MemorySaver(),
        )

    def _control_for(self, config: RunnableConfig) -> RunControl:
        thread_id = str(config["configurable"]["thread_id"])
        return self._controls[thread_id]

    def _config(self, thread_id: str) -> RunnableConfig:
        return {
            "configurable": {"thread_id": thread_id},
            # Two supersteps per model call, plus headroom; the step budget trips first.
            "recursion_limit": 2 * self.max_iterations + 4,
        }

    def _render_system_prompt(self) -> str:
        if callable(self._system_prompt):
            return self._system_prompt()
        return self._system_prompt

    def history(self, thread_id: str) -> List[BaseMessage]:
        snapshot = self.graph.get_state(self._config(thread_id))
        return list(snapshot.values.get("messages", []))

    def run(
        self,
        thread_id: str,
        request: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AgentResult:
        """Process one user request on ``thread_id`` and return its outcome."""

        thread_id = str(thread_id)
        config = self._config(thread_id)
        deadline = time.monotonic() + self.max_duration if self.max_duration else None
        control = RunControl(cancel_token=cancel_token or CancellationToken(), deadline=deadline)

        with self._lock:
            if thread_id in self._controls:
                raise RuntimeError(f"Thread {thread_id} already has a request in flight")
            self._controls[thread_id] = control

        try:
            # add_messages replaces by id, so the thread keeps one system
            # message whose date and time are current for this request.
            history = self.history(thread_id)
            system_id = SYSTEM_MESSAGE_ID
            if history and isinstance(history[0], SystemMessage) and history[0].id:
                system_id = history[0].id
            opening: List[BaseMessage] = [
                SystemMessage(content=self._render_system_prompt(), id=system_id),
                HumanMessage(content=request),
            ]

            logger.info("Running request on thread %s", thread_id)
            try:
                final_state = self.graph.invoke(
                    {"messages": opening, "iterations": 0, "status": STATUS_AWAITING},
                    config,
                )
            except GraphRecursionError:
                logger.error("Thread %s hit the graph recursion limit", thread_id)
                return AgentResult(
                    status=STATUS_EXHAUSTED,
                    answer=COULD_NOT_COMPLETE,
                    messages=self.history(thread_id),
                )
        finally:
            with self._lock:
                self._controls.pop(thread_id, None)

        messages = list(final_state.get("messages", []))
        status = final_state.get("status", STATUS_COMPLETED)
        answer = message_text(messages[-1]) if messages else ""
        logger.info("Thread %s finished with status %s", thread_id, status)
        return AgentResult(status=status, answer=answer, messages=messages)

    def ask(self, thread_id: str, request: str) -> str:
        """Return only the final answer text for ``request``."""

        return self.run(thread_id, request).answer


__all__ = [
    "AgentResult",
    "CANCELLED",
    "COULD_NOT_COMPLETE",
    "CancellationToken",
    "ORACLE_FAILED",
    "OrderAgent",
    "OrderAgentState",
    "STATUS_CANCELLED",
    "STATUS_COMPLETED",
    "STATUS_EXHAUSTED",
    "STATUS_FAILED",
    "build_order_graph",
    "message_text",
    "normalize_response",
    "pending_calls",
    "tool_call_ids",
]
