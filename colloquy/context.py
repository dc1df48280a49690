"""Context-window budgeting for outbound provider requests.

The manager never touches stored conversation history. It derives a separate
outbound view (system message first, then as much recent history as fits) and
reports how the context window is partitioned.
"""

import asyncio
from dataclasses import dataclass
from typing import Protocol

from colloquy.exceptions import BudgetConfigurationError, TurnCancelledError
from colloquy.llm import Message
from colloquy.logging import get_logger
from colloquy.tracing import NullSpan, Span

log = get_logger(__name__)

DEFAULT_BUFFER_FRACTION = 0.1
DEFAULT_TRUNCATION_THRESHOLD = 0.9


class TokenEstimator(Protocol):
    """Anything that can approximate the token cost of a message sequence."""

    async def estimate_tokens(self, messages: list[Message]) -> int: ...


@dataclass(frozen=True)
class TokenBudget:
    """Breakdown of the context window."""

    system_prompt_tokens: int
    max_response_tokens: int
    safety_buffer_tokens: int
    history_available_tokens: int
    total_tokens: int


@dataclass(frozen=True)
class ManagedContext:
    """Outbound view for one provider request plus its token accounting."""

    messages: tuple[Message, ...]
    estimated_tokens: int
    max_context_tokens: int
    available_tokens: int
    utilization: float
    was_truncated: bool
    messages_removed: int
    token_budget: TokenBudget

    @property
    def history(self) -> tuple[Message, ...]:
        """Outbound messages without the leading system message."""
        return self.messages[1:]


class ContextBudgetManager:
    """Keeps outbound requests inside the provider's context window."""

    def __init__(
        self,
        estimator: TokenEstimator,
        buffer_fraction: float = DEFAULT_BUFFER_FRACTION,
        truncation_threshold: float = DEFAULT_TRUNCATION_THRESHOLD,
    ):
        if not 0.0 <= buffer_fraction < 1.0:
            raise ValueError(f"buffer_fraction must be in [0, 1), got {buffer_fraction}")
        if not 0.0 < truncation_threshold <= 1.0:
            raise ValueError(f"truncation_threshold must be in (0, 1], got {truncation_threshold}")
        self.estimator = estimator
        self.buffer_fraction = buffer_fraction
        self.truncation_threshold = truncation_threshold

    async def _estimate(
        self,
        messages: list[Message],
        abort_event: asyncio.Event | None,
    ) -> int:
        if abort_event is not None and abort_event.is_set():
            raise TurnCancelledError("token estimation")
        return int(await self.estimator.estimate_tokens(messages))

    def compute_budget(
        self,
        system_tokens: int,
        max_context_tokens: int,
        max_response_tokens: int,
    ) -> TokenBudget:
        """Partition the context window.

        Raises:
            BudgetConfigurationError: if nothing is left for history
        """
        reserved = system_tokens + max_response_tokens
        buffer_tokens = int(max_context_tokens * self.buffer_fraction)
        history_available = max_context_tokens - reserved - buffer_tokens
        if history_available <= 0:
            raise BudgetConfigurationError(
                system_tokens=system_tokens,
                max_response_tokens=max_response_tokens,
                buffer_tokens=buffer_tokens,
                max_context_tokens=max_context_tokens,
            )
        return TokenBudget(
            system_prompt_tokens=system_tokens,
            max_response_tokens=max_response_tokens,
            safety_buffer_tokens=buffer_tokens,
            history_available_tokens=history_available,
            total_tokens=max_context_tokens,
        )

    async def prepare(
        self,
        system_prompt: str,
        history: list[Message] | tuple[Message, ...],
        max_context_tokens: int,
        max_response_tokens: int,
        *,
        span: Span | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> ManagedContext:
        """Build the outbound view for one provider request.

        Args:
            system_prompt: System prompt, always sent first
            history: Full conversation history (not modified)
            max_context_tokens: Provider context window
            max_response_tokens: Tokens reserved for the reply
            span: Optional parent span for tagging
            abort_event: Cancellation signal

        Returns:
            ManagedContext with the possibly-truncated view

        Raises:
            BudgetConfigurationError: if the reservation already exceeds the window
        """
        span = span or NullSpan()
        history = list(history)
        system_message = Message.system(system_prompt)

        system_tokens = await self._estimate([system_message], abort_event)
        budget = self.compute_budget(system_tokens, max_context_tokens, max_response_tokens)

        outbound = [system_message, *history]
        current_tokens = await self._estimate(outbound, abort_event)

        total_budget = system_tokens + max_response_tokens + budget.history_available_tokens
        threshold = int(total_budget * self.truncation_threshold)
        needs_truncation = current_tokens > threshold

        messages_removed = 0
        if needs_truncation:
            outbound = await self._truncate(
                system_message,
                history,
                budget.history_available_tokens,
                abort_event,
            )
            messages_removed = len(history) - (len(outbound) - 1)
            current_tokens = await self._estimate(outbound, abort_event)
            log.info(
                "Truncated outbound context",
                removed=messages_removed,
                kept=len(outbound) - 1,
                estimated_tokens=current_tokens,
                history_available=budget.history_available_tokens,
            )

        context = ManagedContext(
            messages=tuple(outbound),
            estimated_tokens=current_tokens,
            max_context_tokens=max_context_tokens,
            available_tokens=max_context_tokens - current_tokens,
            utilization=(current_tokens / max_context_tokens) if max_context_tokens else 0.0,
            was_truncated=needs_truncation,
            messages_removed=messages_removed,
            token_budget=budget,
        )
        span.set_tags({
            "context.estimated_tokens": context.estimated_tokens,
            "context.utilization": round(context.utilization, 4),
            "context.was_truncated": context.was_truncated,
            "context.messages_removed": context.messages_removed,
        })
        return context

    async def _truncate(
        self,
        system_message: Message,
        history: list[Message],
        available_tokens: int,
        abort_event: asyncio.Event | None,
    ) -> list[Message]:
        """Keep the system message plus the newest messages that fit."""
        window: list[Message] = []
        for message in reversed(history):
            candidate = [message, *window]
            tokens = await self._estimate([system_message, *candidate], abort_event)
            if tokens > available_tokens:
                break
            window = candidate
        return [system_message, *window]
