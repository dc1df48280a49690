"""Provider abstraction and the message types exchanged with it."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime:
    """Parse a stored timestamp, tolerating missing or naive values."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        parsed = datetime.fromisoformat(value.strip())
    else:
        return _utcnow()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class MessageRole(str, Enum):
    """Conversation roles."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class ToolCall:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "arguments": dict(self.arguments),
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        """Create from dictionary."""
        arguments = data.get("arguments") or {}
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            arguments=arguments if isinstance(arguments, dict) else {"raw": arguments},
            timestamp=parse_timestamp(data.get("timestamp")),
        )


def to_jsonable(value: Any) -> Any:
    """Convert metadata values into JSON-friendly structures."""
    if isinstance(value, ToolCall):
        return value.to_dict()
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


@dataclass(frozen=True)
class Message:
    """A message in the conversation. Immutable once created."""

    role: MessageRole
    content: str
    timestamp: datetime = field(default_factory=_utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def tool_calls(self) -> list[ToolCall]:
        """Tool calls requested by this message (assistant messages only)."""
        raw = self.metadata.get("tool_calls") or []
        calls: list[ToolCall] = []
        for item in raw:
            # Handle both ToolCall objects and dicts restored from storage
            if isinstance(item, ToolCall):
                calls.append(item)
            elif isinstance(item, dict):
                calls.append(ToolCall.from_dict(item))
        return calls

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "metadata": to_jsonable(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Create from dictionary."""
        return cls(
            role=MessageRole(str(data.get("role", "user")).lower()),
            content=str(data.get("content") or ""),
            timestamp=parse_timestamp(data.get("timestamp")),
            metadata=dict(data.get("metadata") or {}),
        )

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=MessageRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str, metadata: dict[str, Any] | None = None) -> "Message":
        return cls(role=MessageRole.USER, content=content, metadata=metadata or {})

    @classmethod
    def assistant(cls, content: str, metadata: dict[str, Any] | None = None) -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=content, metadata=metadata or {})


@dataclass(frozen=True)
class ProviderCapabilities:
    """What a provider supports."""

    max_context_tokens: int
    supports_tools: bool = True
    supports_streaming: bool = False
    supports_vision: bool = False


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Message:
        """Send messages to the model and return its assistant message.

        Tool-call requests are carried in ``metadata["tool_calls"]`` and
        usage in ``metadata["input_tokens"]`` / ``metadata["output_tokens"]``.
        """
        pass

    @abstractmethod
    def capabilities(self) -> ProviderCapabilities:
        pass

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        pass

    async def estimate_tokens(self, messages: list[Message]) -> int:
        """Estimate token usage of a message sequence."""
        return sum(self.count_tokens(msg.content or "") for msg in messages)

    async def close(self) -> None:
        """Release provider resources."""
        return None


def create_provider(
    provider: str = "ollama",
    model: str = "llama3.2",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    max_context_tokens: int = 65536,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (currently ``ollama``)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens
        max_context_tokens: Context window the provider advertises

    Returns:
        Configured LLMProvider instance
    """
    name = (provider or "").strip().lower()
    if name == "ollama":
        from colloquy.llm.ollama import OLLAMA_NATIVE_BASE_URL, OllamaProvider

        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            max_context_tokens=max_context_tokens,
            api_key=api_key,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'ollama' or pass a provider instance.")


__all__ = [
    "LLMProvider",
    "Message",
    "MessageRole",
    "ProviderCapabilities",
    "ToolCall",
    "create_provider",
]
