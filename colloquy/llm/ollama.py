"""Ollama provider - direct HTTP calls to the Ollama chat API."""

import json
import uuid
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from colloquy.exceptions import NetworkError, ProviderError, error_from_status
from colloquy.llm import LLMProvider, Message, MessageRole, ProviderCapabilities, ToolCall
from colloquy.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header (delta seconds or HTTP date) into seconds."""
    if not value:
        return None
    raw = value.strip()
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        max_context_tokens: int = 65536,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            max_context_tokens: Context window requested via ``num_ctx``
            api_key: Optional API key (Ollama usually doesn't need one locally)
            client: Optional preconfigured HTTP client, left open by ``close()``
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_context_tokens = max_context_tokens
        self.api_key = api_key

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=120.0,
            follow_redirects=True,
        )

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Ollama format."""
        result = []
        for msg in messages:
            entry: dict[str, Any] = {"role": msg.role.value, "content": msg.content or ""}
            if msg.role == MessageRole.ASSISTANT and msg.has_tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": tc.name, "arguments": tc.arguments}}
                    for tc in msg.tool_calls
                ]
            result.append(entry)
        return result

    def _convert_tools(self, tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Convert tool definitions to Ollama format."""
        result = []
        for tool in tools:
            name = tool.get("name")
            if not name:
                continue
            result.append({
                "type": "function",
                "function": {
                    "name": name,
                    "description": tool.get("description") or "",
                    "parameters": tool.get("parameters") or {},
                },
            })
        return result

    def _parse_tool_calls(self, raw_calls: list[dict[str, Any]]) -> list[ToolCall]:
        """Extract tool calls from an Ollama response message."""
        tool_calls = []
        for tc in raw_calls:
            function = tc.get("function", {}) or {}
            arguments = function.get("arguments", {})
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except json.JSONDecodeError:
                    arguments = {"raw": arguments}
            call_id = tc.get("id") or uuid.uuid4().hex[:8]
            tool_calls.append(ToolCall(
                id=f"ollama_call_{call_id}",
                name=function.get("name", ""),
                arguments=arguments if isinstance(arguments, dict) else {"raw": arguments},
            ))
        return tool_calls

    async def complete(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Message:
        """Generate a completion."""
        url = f"{self.base_url}/api/chat"

        options: dict[str, Any] = {
            "num_ctx": self.max_context_tokens,
            "temperature": self.temperature if temperature is None else temperature,
        }
        if max_tokens or self.max_tokens:
            options["num_predict"] = max_tokens or self.max_tokens

        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": False,
            "options": options,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        log.debug("Calling Ollama", model=self.model, url=url, msg_count=len(messages))
        try:
            response = await self.client.post(url, json=body, headers=headers)
        except httpx.TransportError as e:
            raise NetworkError(f"Ollama transport error: {e}") from e

        log.debug("Ollama response status", status=response.status_code)

        if not response.is_success:
            raise error_from_status(
                response.status_code,
                f"Ollama API error {response.status_code}: {response.text}",
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise ProviderError(f"Ollama response decode error: {e}") from e

        message = data.get("message", {}) or {}
        metadata: dict[str, Any] = {
            "model": data.get("model", self.model),
            "input_tokens": int(data.get("prompt_eval_count", 0) or 0),
            "output_tokens": int(data.get("eval_count", 0) or 0),
            "stop_reason": data.get("done_reason", "unknown"),
        }
        tool_calls = self._parse_tool_calls(message.get("tool_calls") or [])
        if tool_calls:
            metadata["tool_calls"] = tool_calls

        return Message.assistant(message.get("content", "") or "", metadata=metadata)

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            max_context_tokens=self.max_context_tokens,
            supports_tools=True,
            supports_streaming=False,
        )

    def count_tokens(self, text: str) -> int:
        """Count tokens (rough estimate for Ollama models)."""
        # ~1 token per 4 characters for English
        return len(text) // 4

    async def close(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._owns_client:
            await self.client.aclose()
