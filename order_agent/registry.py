"""Tool registry used by the order agent's dispatch step.

The model decides which tool to call and with which arguments, so nothing it
sends is trusted: arguments are parsed against each tool's pydantic schema
here, and every failure (unknown tool, bad arguments, gateway error, timeout)
comes back as result text the model can read and correct, never as an
exception escaping into the loop.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from langchain_core.tools import BaseTool
from pydantic import BaseModel, ValidationError

from integrations.google_auth import GoogleIntegrationError


logger = logging.getLogger(__name__)


class ToolError(Exception):
    """Base class for failures reported back to the model as tool output."""

    kind = "Tool error"

    def as_text(self, tool_name: str) -> str:
        return f"{self.kind} in {tool_name}: {self}"


class ToolValidationError(ToolError):
    """The requested tool is unknown or its arguments do not fit the schema."""

    kind = "Invalid arguments"


class ToolExecutionError(ToolError):
    """The tool ran but its gateway or body failed."""

    kind = "Execution failed"


@dataclass(frozen=True)
class ToolResult:
    content: str
    is_error: bool = False


@dataclass(frozen=True)
class ToolCallRequest:
    """One tool invocation requested by the model."""

    id: str
    name: str
    args: Any

    @classmethod
    def from_tool_call(cls, call: Mapping[str, Any]) -> "ToolCallRequest":
        return cls(id=call["id"], name=call.get("name") or "", args=call.get("args"))


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "arguments"
        problems.append(f"{location}: {error.get('msg')}")
    return "; ".join(problems)


class ToolRegistry:
    """Fixed, read-only mapping from tool name to LangChain tool."""

    def __init__(self, tools: Iterable[BaseTool]):
        registry: Dict[str, BaseTool] = {}
        for tool in tools:
            if tool.name in registry:
                raise ValueError(f"Duplicate tool name: {tool.name}")
            registry[tool.name] = tool
        self._tools = MappingProxyType(registry)
        logger.info("Tool registry loaded: %s", ", ".join(self._tools))

    @property
    def tools(self) -> List[BaseTool]:
        return list(self._tools.values())

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def parse_arguments(self, name: str, raw_args: Any) -> Dict[str, Any]:
        """Validate ``raw_args`` against the tool schema and return call kwargs."""

        tool = self._tools.get(name)
        if tool is None:
            raise ToolValidationError(
                f"unknown tool '{name}'. Available tools: {', '.join(self._tools)}"
            )

        if raw_args is None or raw_args == "":
            raw_args = {}
        if isinstance(raw_args, str):
            try:
                raw_args = json.loads(raw_args)
            except json.JSONDecodeError as exc:
                raise ToolValidationError(f"arguments are not valid JSON: {exc.msg}") from exc
        if not isinstance(raw_args, dict):
            raise ToolValidationError("arguments must be a JSON object")

        schema = tool.args_schema
        if not (isinstance(schema, type) and issubclass(schema, BaseModel)):
            return dict(raw_args)
        try:
            parsed = schema.model_validate(raw_args)
        except ValidationError as exc:
            raise ToolValidationError(_format_validation_error(exc)) from exc
        return {field_name: getattr(parsed, field_name) for field_name in type(parsed).model_fields}

    def invoke(self, name: str, raw_args: Any) -> ToolResult:
        """Run one tool. Failures are returned as error results, never raised."""

        try:
            kwargs = self.parse_arguments(name, raw_args)
        except ToolValidationError as exc:
            logger.warning("Rejected call to %s: %s", name, exc)
            return ToolResult(exc.as_text(name), is_error=True)

        tool = self._tools[name]
        logger.info("Calling tool %s", name)
        try:
            output = tool.func(**kwargs)
        except GoogleIntegrationError as exc:
            logger.error("Tool %s failed against Google: %s", name, exc)
            return ToolResult(ToolExecutionError(str(exc)).as_text(name), is_error=True)
        except Exception as exc:  # noqa: BLE001 - reported to the model as tool output
            logger.exception("Tool %s raised unexpectedly", name)
            return ToolResult(ToolExecutionError(repr(exc)).as_text(name), is_error=True)

        if not isinstance(output, str):
            output = json.dumps(output, default=str, ensure_ascii=False)
        return ToolResult(output)

    def dispatch(
        self,
        calls: Sequence[ToolCallRequest],
        *,
        timeout: Optional[float] = None,
    ) -> Dict[str, ToolResult]:
        """Run independent calls concurrently and pair each result with its call id."""

        if not calls:
            return {}

        executor = ThreadPoolExecutor(
            max_workers=len(calls),
            thread_name_prefix="order-agent-tool",
        )
        try:
            futures = {
                call.id: executor.submit(self.invoke, call.name, call.args) for call in calls
            }
            wait(futures.values(), timeout=timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        results: Dict[str, ToolResult] = {}
        for call in calls:
            future = futures[call.id]
            if future.done() and not future.cancelled():
                results[call.id] = future.result()
            else:
                logger.error("Tool %s (%s) timed out after %ss", call.name, call.id, timeout)
                results[call.id] = ToolResult(
                    ToolExecutionError(
                        f"timed out after {timeout} seconds; the call was not cancelled "
                        "and may still complete, so check its effect before retrying"
                    ).as_text(call.name),
                    is_error=True,
                )
        return results


__all__ = [
    "ToolCallRequest",
    "ToolError",
    "ToolExecutionError",
    "ToolRegistry",
    "ToolResult",
    "ToolValidationError",
]
