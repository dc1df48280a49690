"""Tool registry and executor."""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field, model_validator

from colloquy.exceptions import ToolExecutionError, ToolNotFoundError, TurnCancelledError
from colloquy.llm import ToolCall
from colloquy.logging import get_logger
from colloquy.tracing import NullSpan, NullTracer, Span, Tracer

log = get_logger(__name__)

DEFAULT_TOOL_TIMEOUT_SECONDS = 30.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ToolResult(BaseModel):
    """Result from tool execution."""

    tool_call_id: str = ""
    content: str = ""
    success: bool = True
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _ensure_failure_content(self) -> "ToolResult":
        """Ensure failed results always describe what went wrong."""
        if not self.success and not (self.content or "").strip():
            self.content = str(self.metadata.get("error_message") or "Tool execution failed")
        return self


ToolHandler = Callable[[dict[str, Any]], Awaitable[ToolResult | str] | ToolResult | str]


@dataclass
class ToolDefinition:
    """A tool the model can call: schema for the model, handler for us."""

    name: str
    description: str
    handler: ToolHandler
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    timeout_seconds: float | None = None

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for the model (no handler)."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Check required arguments declared in the parameter schema.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = self.parameters.get("required", []) or []
        for name in required:
            if name not in arguments:
                raise ToolExecutionError(self.name, f"Missing required argument: {name}")


class ToolRegistry:
    """Registry of tool definitions keyed by name."""

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        """Register a tool. Re-registering a name overwrites it."""
        name = (tool.name or "").strip()
        if not name:
            raise ValueError("Tool name cannot be empty")
        if name in self._tools:
            log.warning("Tool already registered, overwriting", tool=name)
        self._tools[name] = tool
        log.info("Registered tool", tool=name)

    def unregister(self, name: str) -> None:
        """Remove a tool if present."""
        if self._tools.pop(name, None) is not None:
            log.info("Unregistered tool", tool=name)

    def has_tool(self, name: str) -> bool:
        return bool(name) and name in self._tools

    def get(self, name: str) -> ToolDefinition | None:
        """Get a tool by name, or None."""
        if not name:
            return None
        return self._tools.get(name)

    def list_tools(self) -> list[ToolDefinition]:
        """List registered tools in registration order."""
        return list(self._tools.values())

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions for the model.

        Returns:
            List of function-style definitions
        """
        return [tool.get_definition() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)


class ToolExecutor:
    """Executes tool calls, turning every failure into a failed ToolResult."""

    def __init__(
        self,
        registry: ToolRegistry,
        default_timeout: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
        tracer: Tracer | None = None,
    ):
        self.registry = registry
        self.default_timeout = default_timeout
        self.tracer = tracer or NullTracer()

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised during shutdown", error=str(e))

    @staticmethod
    async def _invoke(tool: ToolDefinition, arguments: dict[str, Any]) -> ToolResult | str:
        outcome = tool.handler(arguments)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    async def _run_handler(
        self,
        tool: ToolDefinition,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None,
    ) -> ToolResult | str:
        """Run a handler bounded by its timeout and the abort signal."""
        timeout_seconds = max(0.001, float(tool.timeout_seconds or self.default_timeout))
        execute_task = asyncio.create_task(self._invoke(tool, arguments))
        abort_wait_task: asyncio.Task[bool] | None = None
        try:
            waiters: set[asyncio.Task[Any]] = {execute_task}
            if abort_event is not None:
                abort_wait_task = asyncio.create_task(abort_event.wait())
                waiters.add(abort_wait_task)
            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                return execute_task.result()

            await self._cancel_task(execute_task)
            if abort_wait_task is not None and abort_wait_task in done:
                raise TurnCancelledError(f"tool '{tool.name}'")

            timeout_label = int(timeout_seconds) if float(timeout_seconds).is_integer() else timeout_seconds
            raise ToolExecutionError(tool.name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        finally:
            await self._cancel_task(abort_wait_task)

    async def execute(
        self,
        tool_call: ToolCall,
        *,
        span: Span | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Execute a tool call.

        Unknown tools, argument errors, timeouts and handler exceptions all
        come back as ``ToolResult(success=False)``. Only cancellation escapes.
        """
        started = time.perf_counter()
        tool_span = self.tracer.start_span(
            "tool.execute",
            parent=span or NullSpan(),
            tags={"tool.name": tool_call.name, "tool.call_id": tool_call.id},
        )
        try:
            if abort_event is not None and abort_event.is_set():
                raise TurnCancelledError(f"tool '{tool_call.name}'")

            tool = self.registry.get(tool_call.name)
            if tool is None:
                error = ToolNotFoundError(tool_call.name)
                log.error("Tool not found", tool=tool_call.name, call_id=tool_call.id)
                result = self._failure(tool_call, str(error), error, started)
                self._tag_result(tool_span, result)
                return result

            log.info("Executing tool", tool=tool_call.name, call_id=tool_call.id)
            try:
                arguments = dict(tool_call.arguments or {})
                tool.validate_arguments(arguments)
                outcome = await self._run_handler(tool, arguments, abort_event)
            except (TurnCancelledError, asyncio.CancelledError):
                raise
            except Exception as e:
                log.error("Tool execution failed", tool=tool_call.name, error=str(e))
                result = self._failure(tool_call, f"Tool execution failed: {e}", e, started)
                self._tag_result(tool_span, result)
                return result

            result = self._normalize(tool_call, outcome, started)
            if result.success:
                log.info(
                    "Tool executed",
                    tool=tool_call.name,
                    execution_time_ms=result.metadata["execution_time_ms"],
                )
            else:
                log.warning("Tool reported failure", tool=tool_call.name, content=result.content)
            self._tag_result(tool_span, result)
            return result
        except BaseException as e:
            tool_span.record_error(e)
            raise
        finally:
            tool_span.end()

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 3)

    def _normalize(self, tool_call: ToolCall, outcome: Any, started: float) -> ToolResult:
        """Coerce handler output into a ToolResult bound to this call."""
        if isinstance(outcome, ToolResult):
            metadata = dict(outcome.metadata)
            metadata.setdefault("execution_time_ms", self._elapsed_ms(started))
            return outcome.model_copy(update={"tool_call_id": tool_call.id, "metadata": metadata})
        if outcome is None:
            content = ""
        else:
            content = outcome if isinstance(outcome, str) else str(outcome)
        return ToolResult(
            tool_call_id=tool_call.id,
            content=content,
            success=True,
            metadata={"execution_time_ms": self._elapsed_ms(started)},
        )

    def _failure(
        self,
        tool_call: ToolCall,
        content: str,
        error: BaseException,
        started: float,
    ) -> ToolResult:
        error_name = "ToolNotFound" if isinstance(error, ToolNotFoundError) else type(error).__name__
        return ToolResult(
            tool_call_id=tool_call.id,
            content=content,
            success=False,
            metadata={
                "error": error_name,
                "error_message": str(error),
                "execution_time_ms": self._elapsed_ms(started),
            },
        )

    @staticmethod
    def _tag_result(span: Span, result: ToolResult) -> None:
        span.set_tags({
            "tool.success": result.success,
            "tool.execution_time_ms": result.metadata.get("execution_time_ms", 0),
        })
        if not result.success:
            span.set_tag("tool.error", result.metadata.get("error", ""))
