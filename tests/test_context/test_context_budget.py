import asyncio

import pytest

from colloquy.context import ContextBudgetManager
from colloquy.exceptions import BudgetConfigurationError, ConfigurationError, TurnCancelledError
from colloquy.llm import Message, MessageRole


class RoleEstimator:
    """Deterministic estimator: fixed cost per system message and per history message."""

    def __init__(self, system_tokens: int, message_tokens: int):
        self.system_tokens = system_tokens
        self.message_tokens = message_tokens
        self.calls: list[list[Message]] = []

    async def estimate_tokens(self, messages: list[Message]) -> int:
        self.calls.append(list(messages))
        return sum(
            self.system_tokens if msg.role == MessageRole.SYSTEM else self.message_tokens
            for msg in messages
        )


class ContentEstimator:
    """Token cost taken from a per-content table (system messages use ``system``)."""

    def __init__(self, system_tokens: int, table: dict[str, int]):
        self.system_tokens = system_tokens
        self.table = table

    async def estimate_tokens(self, messages: list[Message]) -> int:
        return sum(
            self.system_tokens if msg.role == MessageRole.SYSTEM else self.table[msg.content]
            for msg in messages
        )


def _history(count: int, prefix: str = "message") -> list[Message]:
    messages = []
    for idx in range(count):
        if idx % 2 == 0:
            messages.append(Message.user(f"{prefix} {idx}"))
        else:
            messages.append(Message.assistant(f"{prefix} {idx}"))
    return messages


@pytest.mark.asyncio
async def test_short_history_is_sent_unchanged():
    manager = ContextBudgetManager(RoleEstimator(system_tokens=10, message_tokens=5))
    history = [Message.user("Hello"), Message.assistant("Hi there!")]

    result = await manager.prepare("You are a helpful assistant.", history, 1000, 50)

    assert result.was_truncated is False
    assert result.messages_removed == 0
    assert len(result.messages) == 3
    assert result.messages[0].role == MessageRole.SYSTEM
    assert list(result.messages[1:]) == history
    assert result.estimated_tokens == 20
    assert result.utilization == pytest.approx(0.02)
    assert result.available_tokens == 980


@pytest.mark.asyncio
async def test_long_history_truncates_oldest_messages_and_keeps_recent_verbatim():
    manager = ContextBudgetManager(RoleEstimator(system_tokens=50, message_tokens=200))
    history = _history(6)

    result = await manager.prepare("System", history, 1000, 100)

    # history_available = 1000 - 50 - 100 - 100 = 750 -> system + 3 messages fit
    assert result.was_truncated is True
    assert result.messages_removed == 3
    assert result.messages[0].role == MessageRole.SYSTEM
    assert list(result.messages[1:]) == history[-3:]
    assert result.messages[-2] is history[-2]
    assert result.messages[-1] is history[-1]
    assert result.estimated_tokens == 650
    assert result.available_tokens == 350
    assert result.utilization == pytest.approx(0.65)


@pytest.mark.asyncio
async def test_truncation_never_touches_the_input_history():
    manager = ContextBudgetManager(RoleEstimator(system_tokens=50, message_tokens=200))
    history = _history(6)
    snapshot = list(history)

    await manager.prepare("System", history, 1000, 100)

    assert history == snapshot


@pytest.mark.asyncio
async def test_history_below_threshold_is_not_truncated_even_if_large():
    # 50 + 6 * 100 = 650 <= 0.9 * (150 + 750) = 810
    manager = ContextBudgetManager(RoleEstimator(system_tokens=50, message_tokens=100))

    result = await manager.prepare("System", _history(6), 1000, 100)

    assert result.was_truncated is False
    assert len(result.messages) == 7


@pytest.mark.asyncio
async def test_reservation_exceeding_window_raises_configuration_error():
    manager = ContextBudgetManager(RoleEstimator(system_tokens=60, message_tokens=1))

    with pytest.raises(BudgetConfigurationError) as exc_info:
        await manager.prepare("Very long system prompt", [], 100, 50)

    assert isinstance(exc_info.value, ConfigurationError)
    assert exc_info.value.buffer_tokens == 10


@pytest.mark.asyncio
async def test_reservation_exactly_filling_window_raises():
    manager = ContextBudgetManager(RoleEstimator(system_tokens=40, message_tokens=1))

    with pytest.raises(BudgetConfigurationError):
        await manager.prepare("System", [], 100, 50)


@pytest.mark.parametrize(
    ("system_tokens", "response_tokens", "max_context"),
    [(10, 50, 1000), (0, 0, 10), (400, 400, 1000), (1, 1, 3), (5000, 100_000, 200_000)],
)
def test_budget_leaves_positive_history_room_when_reservation_fits(
    system_tokens: int, response_tokens: int, max_context: int
):
    manager = ContextBudgetManager(RoleEstimator(0, 0))

    budget = manager.compute_budget(system_tokens, max_context, response_tokens)

    assert budget.history_available_tokens > 0
    assert budget.history_available_tokens == (
        budget.total_tokens
        - budget.system_prompt_tokens
        - budget.max_response_tokens
        - budget.safety_buffer_tokens
    )


@pytest.mark.asyncio
async def test_token_budget_reports_partition():
    manager = ContextBudgetManager(RoleEstimator(system_tokens=50, message_tokens=50))

    result = await manager.prepare("System", [Message.user("Hello")], 1000, 200)

    assert result.token_budget.system_prompt_tokens == 50
    assert result.token_budget.max_response_tokens == 200
    assert result.token_budget.safety_buffer_tokens == 100
    assert result.token_budget.history_available_tokens == 650
    assert result.token_budget.total_tokens == 1000


@pytest.mark.asyncio
async def test_most_recent_message_too_large_yields_system_only_view():
    estimator = ContentEstimator(system_tokens=50, table={"old": 10, "huge": 5000})
    manager = ContextBudgetManager(estimator)
    history = [Message.user("old"), Message.assistant("huge")]

    result = await manager.prepare("System", history, 1000, 100)

    assert result.was_truncated is True
    assert len(result.messages) == 1
    assert result.messages[0].role == MessageRole.SYSTEM
    assert result.messages_removed == 2
    assert result.estimated_tokens == 50


@pytest.mark.asyncio
async def test_truncation_stops_at_first_message_that_does_not_fit():
    # "middle" does not fit, so "oldest" is dropped too even though it would fit.
    estimator = ContentEstimator(
        system_tokens=50,
        table={"oldest": 1, "middle": 700, "recent": 600},
    )
    manager = ContextBudgetManager(estimator)
    history = [Message.user("oldest"), Message.assistant("middle"), Message.user("recent")]

    result = await manager.prepare("System", history, 1000, 100)

    assert result.was_truncated is True
    assert [msg.content for msg in result.messages[1:]] == ["recent"]
    assert result.messages_removed == 2


@pytest.mark.asyncio
async def test_system_prompt_always_first_and_preserved():
    manager = ContextBudgetManager(RoleEstimator(system_tokens=50, message_tokens=300))
    prompt = "You are a helpful assistant with specific instructions."

    result = await manager.prepare(prompt, _history(10), 2000, 100)

    assert result.messages[0].role == MessageRole.SYSTEM
    assert result.messages[0].content == prompt
    assert result.messages_removed >= 0
    assert len(result.messages) <= 11


@pytest.mark.asyncio
async def test_prepare_raises_when_abort_event_already_set():
    manager = ContextBudgetManager(RoleEstimator(system_tokens=10, message_tokens=5))
    abort_event = asyncio.Event()
    abort_event.set()

    with pytest.raises(TurnCancelledError):
        await manager.prepare("System", [Message.user("hi")], 1000, 50, abort_event=abort_event)


def test_invalid_fractions_are_rejected():
    with pytest.raises(ValueError):
        ContextBudgetManager(RoleEstimator(0, 0), buffer_fraction=1.0)
    with pytest.raises(ValueError):
        ContextBudgetManager(RoleEstimator(0, 0), truncation_threshold=0.0)
