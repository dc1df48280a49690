"""Bounded provider/tool round-trips for one turn."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Literal

from colloquy.context import ContextBudgetManager, ManagedContext
from colloquy.exceptions import ConfigurationError, ToolLoopExhaustedError
from colloquy.llm import Message, ToolCall
from colloquy.llm.retry import RetryingProviderClient
from colloquy.logging import get_logger
from colloquy.tools.registry import ToolExecutor, ToolResult
from colloquy.tracing import NullSpan, NullTracer, Span, Tracer

log = get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 10

ExhaustionPolicy = Literal["return_last", "raise"]


class LoopState(str, Enum):
    """Tool loop states."""

    AWAITING_RESPONSE = "awaiting_response"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class LoopOutcome:
    """What a turn's tool loop produced."""

    message: Message
    state: LoopState
    iterations: int
    context: ManagedContext
    tool_results: list[ToolResult] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    truncations: int = 0
    messages_truncated: int = 0


def tool_result_message(tool_call: ToolCall, result: ToolResult) -> Message:
    """Build the history message that feeds a tool result back to the model.

    Tool results are sent with the user role; the model sees them as the
    next thing the user says.
    """
    return Message.user(
        result.content,
        metadata={
            "tool_call_id": tool_call.id,
            "tool_name": tool_call.name,
            "tool_success": result.success,
        },
    )


class ToolInvocationLoop:
    """Drives provider calls interleaved with tool execution.

    States: AWAITING_RESPONSE -> (DONE | EXECUTING_TOOLS -> AWAITING_RESPONSE)
    until the model stops asking for tools or ``max_iterations`` provider calls
    have been made, in which case the loop ends ABORTED.
    """

    def __init__(
        self,
        client: RetryingProviderClient,
        context_manager: ContextBudgetManager,
        executor: ToolExecutor | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        on_exhausted: ExhaustionPolicy = "return_last",
        tracer: Tracer | None = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if on_exhausted not in ("return_last", "raise"):
            raise ValueError(f"Unknown exhaustion policy: {on_exhausted}")
        self.client = client
        self.context_manager = context_manager
        self.executor = executor
        self.max_iterations = max_iterations
        self.on_exhausted = on_exhausted
        self.tracer = tracer or NullTracer()

    def _tool_definitions(self) -> list[dict[str, Any]] | None:
        if self.executor is None:
            return None
        if not self.client.provider.capabilities().supports_tools:
            return None
        return self.executor.registry.get_definitions() or None

    async def run(
        self,
        system_prompt: str,
        history: list[Message] | tuple[Message, ...],
        record: Callable[[Message], None],
        *,
        max_response_tokens: int,
        temperature: float | None = None,
        span: Span | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> LoopOutcome:
        """Run the loop for one turn.

        Args:
            system_prompt: System prompt for every request
            history: Conversation history including the new user message
            record: Appends a message to the owned conversation
            max_response_tokens: Response budget per request
            temperature: Optional sampling override
            span: Parent span
            abort_event: Cancellation signal

        Returns:
            LoopOutcome with the turn's final assistant message

        Raises:
            ConfigurationError: tools requested but no executor configured
            ToolLoopExhaustedError: cap reached under the ``raise`` policy
        """
        span = span or NullSpan()
        working_history = list(history)
        tools = self._tool_definitions()
        max_context_tokens = self.client.provider.capabilities().max_context_tokens

        state = LoopState.AWAITING_RESPONSE
        iterations = 0
        tool_results: list[ToolResult] = []
        input_tokens = 0
        output_tokens = 0
        truncations = 0
        messages_truncated = 0

        while True:
            context = await self.context_manager.prepare(
                system_prompt,
                working_history,
                max_context_tokens,
                max_response_tokens,
                span=span,
                abort_event=abort_event,
            )
            if context.was_truncated:
                truncations += 1
                messages_truncated += context.messages_removed

            iterations += 1
            iteration_span = self.tracer.start_span(
                "tool_loop.iteration",
                parent=span,
                tags={"loop.iteration": iterations, "loop.state": state.value},
            )
            try:
                response = await self.client.complete(
                    context,
                    tools,
                    span=iteration_span,
                    abort_event=abort_event,
                    temperature=temperature,
                    max_tokens=max_response_tokens,
                )
            except BaseException as e:
                iteration_span.record_error(e)
                iteration_span.end()
                raise

            input_tokens += int(response.metadata.get("input_tokens", 0) or 0)
            output_tokens += int(response.metadata.get("output_tokens", 0) or 0)
            tool_calls = response.tool_calls
            iteration_span.set_tag("loop.tool_calls", len(tool_calls))

            if not tool_calls:
                state = LoopState.DONE
                iteration_span.set_tag("loop.state", state.value)
                iteration_span.end()
                break

            if self.executor is None:
                iteration_span.end()
                raise ConfigurationError(
                    "Model requested tool calls "
                    f"({', '.join(tc.name for tc in tool_calls)}) but no tool executor is configured"
                )

            if iterations >= self.max_iterations:
                state = LoopState.ABORTED
                iteration_span.set_tag("loop.state", state.value)
                iteration_span.end()
                log.warning(
                    "Tool loop reached iteration cap",
                    max_iterations=self.max_iterations,
                    pending_tool_calls=[tc.name for tc in tool_calls],
                )
                if self.on_exhausted == "raise":
                    raise ToolLoopExhaustedError(self.max_iterations, last_message=response)
                break

            state = LoopState.EXECUTING_TOOLS
            iteration_span.set_tag("loop.state", state.value)
            try:
                for tool_call in tool_calls:
                    result = await self.executor.execute(
                        tool_call,
                        span=iteration_span,
                        abort_event=abort_event,
                    )
                    tool_results.append(result)
                    message = tool_result_message(tool_call, result)
                    record(message)
                    working_history.append(message)
            except BaseException as e:
                iteration_span.record_error(e)
                raise
            finally:
                iteration_span.end()

            state = LoopState.AWAITING_RESPONSE

        span.set_tags({"loop.iterations": iterations, "loop.final_state": state.value})
        return LoopOutcome(
            message=response,
            state=state,
            iterations=iterations,
            context=context,
            tool_results=tool_results,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            truncations=truncations,
            messages_truncated=messages_truncated,
        )
