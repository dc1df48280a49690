"""Retry/backoff layer wrapped around every provider call."""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from colloquy.config import RetryConfig
from colloquy.context import ManagedContext
from colloquy.exceptions import TurnCancelledError, classify_failure, is_retryable
from colloquy.llm import LLMProvider, Message
from colloquy.logging import get_logger
from colloquy.tracing import NullSpan, NullTracer, Span, Tracer

log = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with optional jitter."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 60.0
    jitter: bool = True
    max_jitter: float = 0.3

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            initial_delay=config.initial_delay,
            backoff_factor=config.backoff_factor,
            max_delay=config.max_delay,
            jitter=config.jitter,
            max_jitter=config.max_jitter,
        )

    def compute_delay(
        self,
        attempt: int,
        retry_after: float | None = None,
        jitter_sample: float | None = None,
    ) -> float:
        """Delay in seconds before the retry that follows ``attempt``.

        Args:
            attempt: 1-based number of the attempt that just failed
            retry_after: Server-suggested delay; wins over the exponential value
            jitter_sample: Value in [0, 1) scaling the jitter; random when omitted

        Returns:
            Delay, never above ``max_delay``
        """
        if retry_after is not None:
            return min(max(0.0, float(retry_after)), self.max_delay)

        try:
            delay = self.initial_delay * (self.backoff_factor ** max(0, attempt - 1))
        except OverflowError:
            delay = self.max_delay
        delay = min(delay, self.max_delay)

        if self.jitter and self.max_jitter > 0:
            sample = random.random() if jitter_sample is None else jitter_sample
            delay *= 1 + sample * self.max_jitter
        return min(delay, self.max_delay)


class RetryingProviderClient:
    """Wraps ``LLMProvider.complete`` with bounded retry and backoff.

    Rate limits, server errors and transport failures are retried; anything
    else (authentication, malformed requests, cancellation) propagates on the
    first occurrence. When attempts run out the last error is re-raised.
    """

    def __init__(
        self,
        provider: LLMProvider,
        policy: RetryPolicy | None = None,
        tracer: Tracer | None = None,
        sleep: SleepFunc | None = None,
    ):
        self.provider = provider
        self.policy = policy or RetryPolicy()
        self.tracer = tracer or NullTracer()
        self._sleep_fn: SleepFunc = sleep or asyncio.sleep
        self.last_attempts = 0

    @staticmethod
    async def _race_abort(
        awaitable: Awaitable[Any],
        abort_event: asyncio.Event | None,
        stage: str,
    ) -> Any:
        """Await ``awaitable`` unless the abort event fires first."""
        if abort_event is None:
            return await awaitable
        if abort_event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise TurnCancelledError(stage)

        work = asyncio.ensure_future(awaitable)
        abort_wait = asyncio.create_task(abort_event.wait())
        try:
            done, _ = await asyncio.wait({work, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
            if work in done:
                return work.result()
            work.cancel()
            try:
                await work
            except asyncio.CancelledError:
                pass
            except Exception as e:
                log.debug("Aborted call raised during shutdown", stage=stage, error=str(e))
            raise TurnCancelledError(stage)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            abort_wait.cancel()

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(exc, "retry_after", None)
        return self.policy.compute_delay(retry_state.attempt_number, retry_after=retry_after)

    async def complete(
        self,
        context: ManagedContext,
        tools: list[dict[str, Any]] | None = None,
        *,
        span: Span | None = None,
        abort_event: asyncio.Event | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Message:
        """Complete one logical request, retrying transient failures.

        Args:
            context: Outbound view to send
            tools: Tool definitions offered to the model
            span: Parent span
            abort_event: Cancellation signal (also interrupts backoff sleeps)
            temperature: Optional sampling override
            max_tokens: Optional response budget override

        Returns:
            Assistant message from the provider
        """
        call_span = self.tracer.start_span(
            "provider.complete",
            parent=span or NullSpan(),
            tags={
                "provider.message_count": len(context.messages),
                "provider.estimated_tokens": context.estimated_tokens,
                "provider.tool_count": len(tools or []),
                "retry.max_attempts": self.policy.max_attempts,
            },
        )
        self.last_attempts = 0

        async def _sleep(delay: float) -> None:
            await self._race_abort(self._sleep_fn(delay), abort_event, "retry backoff")

        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            classification = classify_failure(exc) if exc else "unknown"
            log.warning(
                "Retrying provider call",
                attempt=retry_state.attempt_number,
                delay_s=round(delay, 3),
                classification=classification,
                error=str(exc),
            )
            call_span.add_event(
                "provider.retry",
                {
                    "retry.attempt": retry_state.attempt_number,
                    "retry.delay_s": round(delay, 3),
                    "retry.classification": classification,
                },
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(is_retryable),
            before_sleep=_before_sleep,
            sleep=_sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    self.last_attempts = number
                    try:
                        message = await self._race_abort(
                            self.provider.complete(
                                list(context.messages),
                                tools=tools,
                                temperature=temperature,
                                max_tokens=max_tokens,
                            ),
                            abort_event,
                            "provider call",
                        )
                    except Exception as e:
                        classification = classify_failure(e)
                        call_span.add_event(
                            "provider.attempt",
                            {
                                "retry.attempt": number,
                                "retry.outcome": "failure",
                                "retry.classification": classification,
                            },
                        )
                        if not is_retryable(e):
                            log.error(
                                "Provider call failed",
                                attempt=number,
                                classification=classification,
                                error=str(e),
                            )
                        elif number >= self.policy.max_attempts:
                            log.error(
                                "Provider retries exhausted",
                                attempts=number,
                                classification=classification,
                                error=str(e),
                            )
                        raise
                    call_span.add_event(
                        "provider.attempt",
                        {"retry.attempt": number, "retry.outcome": "success"},
                    )
        except BaseException as e:
            call_span.set_tag("retry.attempts", self.last_attempts)
            call_span.record_error(e)
            call_span.end()
            raise

        call_span.set_tags({
            "retry.attempts": self.last_attempts,
            "provider.input_tokens": message.metadata.get("input_tokens", 0),
            "provider.output_tokens": message.metadata.get("output_tokens", 0),
            "provider.tool_calls": len(message.tool_calls),
        })
        call_span.end()
        return message
