"""Colloquy - multi-turn LLM dialogue orchestration with tools and retries."""

__version__ = "0.1.0"

from colloquy.config import Config
from colloquy.llm import LLMProvider, Message, MessageRole, ProviderCapabilities, ToolCall
from colloquy.orchestrator import Orchestrator
from colloquy.session import Conversation, ConversationStore, SqliteConversationStore
from colloquy.tools.registry import ToolDefinition, ToolExecutor, ToolRegistry, ToolResult

__all__ = [
    "Config",
    "Conversation",
    "ConversationStore",
    "LLMProvider",
    "Message",
    "MessageRole",
    "Orchestrator",
    "ProviderCapabilities",
    "SqliteConversationStore",
    "ToolCall",
    "ToolDefinition",
    "ToolExecutor",
    "ToolRegistry",
    "ToolResult",
    "__version__",
]
