"""Top-level dialogue orchestrator."""

import asyncio
from datetime import UTC, datetime

from colloquy.config import Config, get_config
from colloquy.context import ContextBudgetManager
from colloquy.exceptions import ConfigurationError, ValidationError
from colloquy.llm import LLMProvider, Message, create_provider
from colloquy.llm.retry import RetryingProviderClient, RetryPolicy
from colloquy.logging import get_logger
from colloquy.session import Conversation, ConversationStore, SqliteConversationStore
from colloquy.tool_loop import DEFAULT_MAX_ITERATIONS, ExhaustionPolicy, LoopOutcome, ToolInvocationLoop
from colloquy.tools.registry import ToolExecutor, ToolRegistry
from colloquy.tracing import NullTracer, Tracer

log = get_logger(__name__)


def _preview(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class Orchestrator:
    """Runs turns of one conversation against a provider.

    One instance owns exactly one conversation at a time. Turns must not
    overlap: callers serialize ``send_message`` calls.
    """

    def __init__(
        self,
        provider: LLMProvider,
        store: ConversationStore,
        *,
        tool_registry: ToolRegistry | None = None,
        tool_executor: ToolExecutor | None = None,
        context_manager: ContextBudgetManager | None = None,
        retry_policy: RetryPolicy | None = None,
        tracer: Tracer | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int = 4096,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        on_exhausted: ExhaustionPolicy = "return_last",
        auto_save: bool = True,
    ):
        if provider is None:
            raise ConfigurationError("An LLM provider is required")
        if store is None:
            raise ConfigurationError("A conversation store is required")

        self.provider = provider
        self.store = store
        self.tracer = tracer or NullTracer()
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.auto_save = auto_save
        self.default_system_prompt = system_prompt

        if tool_executor is None and tool_registry is not None:
            tool_executor = ToolExecutor(tool_registry, tracer=self.tracer)
        self.tool_executor = tool_executor

        self.context_manager = context_manager or ContextBudgetManager(provider)
        self.client = RetryingProviderClient(provider, policy=retry_policy, tracer=self.tracer)
        self.tool_loop = ToolInvocationLoop(
            self.client,
            self.context_manager,
            executor=self.tool_executor,
            max_iterations=max_iterations,
            on_exhausted=on_exhausted,
            tracer=self.tracer,
        )

        self._conversation: Conversation = self._fresh_conversation(system_prompt)

    @classmethod
    def from_config(
        cls,
        config: Config | None = None,
        *,
        provider: LLMProvider | None = None,
        store: ConversationStore | None = None,
        tool_registry: ToolRegistry | None = None,
        tracer: Tracer | None = None,
    ) -> "Orchestrator":
        """Build an orchestrator from configuration.

        Explicit collaborators win over what the config would construct.
        """
        cfg = config or get_config()
        provider = provider or create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            api_key=cfg.model.api_key or None,
            base_url=cfg.model.base_url or None,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            max_context_tokens=cfg.model.max_context_tokens,
        )
        store = store or SqliteConversationStore(cfg.session.path)
        executor = None
        if tool_registry is not None:
            executor = ToolExecutor(
                tool_registry,
                default_timeout=cfg.tools.timeout_seconds,
                tracer=tracer,
            )
        return cls(
            provider,
            store,
            tool_executor=executor,
            context_manager=ContextBudgetManager(
                provider,
                buffer_fraction=cfg.context.buffer_fraction,
                truncation_threshold=cfg.context.truncation_threshold,
            ),
            retry_policy=RetryPolicy.from_config(cfg.retry),
            tracer=tracer,
            system_prompt=cfg.conversation.default_system_prompt,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            max_iterations=cfg.tool_loop.max_iterations,
            on_exhausted=cfg.tool_loop.on_exhausted,
            auto_save=cfg.session.auto_save,
        )

    def _fresh_conversation(self, system_prompt: str | None) -> Conversation:
        capabilities = self.provider.capabilities()
        return Conversation.new(
            system_prompt=system_prompt or self.default_system_prompt,
            metadata={
                "provider": type(self.provider).__name__,
                "max_context_tokens": capabilities.max_context_tokens,
                "supports_tools": capabilities.supports_tools,
            },
        )

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def conversation_id(self) -> str:
        return self._conversation.id

    def get_conversation_metadata(self) -> dict:
        return dict(self._conversation.metadata)

    def start_new_conversation(self, system_prompt: str | None = None) -> Conversation:
        """Replace the owned conversation with a fresh one. No network call."""
        self._conversation = self._fresh_conversation(system_prompt)
        log.info("Started new conversation", conversation_id=self._conversation.id)
        return self._conversation

    async def load_conversation(self, conversation_id: str) -> bool:
        """Load a stored conversation and make it the owned one.

        Returns:
            True if found and loaded, False otherwise
        """
        conversation = await self.store.load(conversation_id)
        if conversation is None:
            log.warning("Conversation not found", conversation_id=conversation_id)
            return False

        self._conversation = conversation
        log.info(
            "Loaded conversation",
            conversation_id=conversation_id,
            message_count=len(conversation.messages),
        )
        return True

    def get_history(self, limit: int | None = None) -> list[Message]:
        """Return conversation history, optionally only the newest ``limit`` messages.

        Raises:
            ValueError: negative limit
        """
        messages = list(self._conversation.messages)
        if limit is None:
            return messages
        if limit < 0:
            raise ValueError(f"limit must be non-negative, got {limit}")
        return messages[-limit:] if limit else []

    def _append(self, message: Message) -> None:
        self._conversation = self._conversation.with_message(message)

    def _accumulate_stats(self, outcome: LoopOutcome) -> None:
        meta = self._conversation.metadata
        context = outcome.context
        self._conversation = self._conversation.with_metadata(
            total_input_tokens=int(meta.get("total_input_tokens", 0)) + outcome.input_tokens,
            total_output_tokens=int(meta.get("total_output_tokens", 0)) + outcome.output_tokens,
            turn_count=int(meta.get("turn_count", 0)) + 1,
            truncation_count=int(meta.get("truncation_count", 0)) + outcome.truncations,
            messages_truncated_total=(
                int(meta.get("messages_truncated_total", 0)) + outcome.messages_truncated
            ),
            tool_calls_total=int(meta.get("tool_calls_total", 0)) + len(outcome.tool_results),
            last_context_utilization=round(context.utilization, 4),
            last_estimated_tokens=context.estimated_tokens,
            last_loop_state=outcome.state.value,
            last_iterations=outcome.iterations,
        )

    async def _save(self) -> None:
        if not self.auto_save:
            return
        self._conversation = self._conversation.with_metadata(
            message_count=len(self._conversation.messages),
            last_updated=datetime.now(UTC).isoformat(),
        )
        await self.store.save(self._conversation)

    async def send_message(
        self,
        content: str,
        *,
        abort_event: asyncio.Event | None = None,
    ) -> Message:
        """Run one turn and return the assistant's reply.

        Args:
            content: User message text
            abort_event: Cancellation signal threaded through the whole turn

        Returns:
            Final assistant message (also appended to history)

        Raises:
            ValidationError: blank content
            ConfigurationError: impossible budget or missing tool executor
            ProviderError: fatal or exhausted provider failures
            TurnCancelledError: abort_event was set mid-turn
        """
        if content is None or not str(content).strip():
            raise ValidationError("Message content cannot be empty")

        log.info(
            "Sending user message",
            conversation_id=self._conversation.id,
            preview=_preview(content),
        )

        turn_span = self.tracer.start_span(
            "orchestrator.send_message",
            tags={
                "conversation.id": self._conversation.id,
                "conversation.message_count": len(self._conversation.messages),
            },
        )
        if turn_span.trace_id:
            self._conversation = self._conversation.with_trace_id(turn_span.trace_id)

        self._append(Message.user(content))

        try:
            outcome = await self.tool_loop.run(
                self._conversation.system_prompt,
                self._conversation.messages,
                self._append,
                max_response_tokens=self.max_tokens,
                temperature=self.temperature,
                span=turn_span,
                abort_event=abort_event,
            )
        except asyncio.CancelledError as e:
            turn_span.record_error(e)
            turn_span.end()
            raise
        except Exception as e:
            log.error(
                "Error during message exchange",
                conversation_id=self._conversation.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            turn_span.record_error(e)
            turn_span.end()
            await self._save_after_failure()
            raise

        reply = outcome.message
        self._append(reply)
        self._accumulate_stats(outcome)
        try:
            await self._save()
        except BaseException as e:
            turn_span.record_error(e)
            raise
        finally:
            turn_span.set_tags({
                "turn.loop_state": outcome.state.value,
                "turn.iterations": outcome.iterations,
                "turn.input_tokens": outcome.input_tokens,
                "turn.output_tokens": outcome.output_tokens,
            })
            turn_span.end()

        log.info(
            "Received assistant response",
            conversation_id=self._conversation.id,
            preview=_preview(reply.content),
            loop_state=outcome.state.value,
            iterations=outcome.iterations,
        )
        return reply

    async def _save_after_failure(self) -> None:
        """Persist what an aborted turn left behind without masking its error."""
        try:
            await self._save()
        except Exception as e:
            log.error(
                "Failed to save conversation after aborted turn",
                conversation_id=self._conversation.id,
                error=str(e),
            )
