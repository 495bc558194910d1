"""OpenAI-compatible chat-completions provider over httpx.

One implementation covers DeepSeek, OpenRouter, OpenAI, OpenCode and any
local server that speaks /chat/completions. Failures are raised as
ProviderError with the HTTP status so the fallback executor can classify
them.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any

import httpx

from talon.agent.errors import ProviderError
from talon.agent.models import Message
from talon.agent.schemas import CallOptions, Completion, TokenUsage, ToolCall
from talon.config import ProviderSettings, Settings

logger = logging.getLogger(__name__)

BASE_URLS: dict[str, str] = {
    "deepseek": "https://api.deepseek.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1",
    "opencode": "https://opencode.ai/zen/v1",
}
DEFAULT_CUSTOM_BASE_URL = "http://localhost:11434/v1"

DEFAULT_MODELS: dict[str, str] = {
    "deepseek": "deepseek-chat",
    "openrouter": "deepseek/deepseek-chat-v3-0324",
    "openai": "gpt-4o-mini",
    "anthropic": "claude-sonnet-4-5",
    "opencode": "big-pickle",
}


class OpenAICompatibleProvider:
    """Provider contract implementation for OpenAI-style APIs."""

    def __init__(
        self,
        provider_id: str,
        base_url: str,
        api_key: str = "",
        default_model: str = "",
        extra_headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.provider_id = provider_id
        self.default_model = default_model
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._extra_headers = extra_headers or {}
        self._timeout = timeout or httpx.Timeout(connect=10.0, read=120.0, write=10.0, pool=10.0)
        self._http = client
        self._owns_client = client is None

    async def start(self) -> None:
        """Create the httpx client with auth headers."""
        if self._http is not None:
            return
        headers = {"content-type": "application/json", **self._extra_headers}
        if self._api_key:
            headers["authorization"] = f"Bearer {self._api_key}"
        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._timeout,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        logger.info("httpx client initialized for %s (%s)", self.provider_id, self._base_url)

    async def close(self) -> None:
        if self._http and self._owns_client:
            await self._http.aclose()
        self._http = None

    def build_payload(self, messages: Sequence[Message], options: CallOptions) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": options.model or self.default_model,
            "messages": [m.to_dict() for m in messages],
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
        }
        if options.tools:
            payload["tools"] = options.tools
            payload["tool_choice"] = "auto"
        return payload

    async def call(self, messages: Sequence[Message], options: CallOptions) -> Completion:
        if self._http is None:
            await self.start()
        payload = self.build_payload(messages, options)
        logger.debug(
            "LLM chat request: provider=%s model=%s messages=%d",
            self.provider_id, payload["model"], len(messages),
        )

        try:
            response = await self._http.post("/chat/completions", json=payload)
        except httpx.TimeoutException:
            raise
        except httpx.HTTPError as e:
            raise ProviderError(
                f"HTTP error: {e}", provider_id=self.provider_id
            ) from e

        if response.status_code != 200:
            raise self._error_from_response(response)

        return parse_completion(response.json())

    def _error_from_response(self, response: httpx.Response) -> ProviderError:
        try:
            body = response.json()
            error = body.get("error", {})
            if isinstance(error, dict):
                message = error.get("message") or error.get("type") or str(body)
            else:
                message = str(error)
        except ValueError:
            message = response.text[:500]

        retry_after: float | None = None
        header = response.headers.get("retry-after")
        if header:
            try:
                retry_after = min(float(header), 300.0)
            except ValueError:
                retry_after = None

        return ProviderError(
            f"{self.provider_id} API error ({response.status_code}): {message}",
            provider_id=self.provider_id,
            status_code=response.status_code,
            retry_after=retry_after,
        )


def parse_completion(data: dict[str, Any]) -> Completion:
    """Parse a chat-completions response body."""
    choices = data.get("choices") or [{}]
    choice = choices[0]
    message = choice.get("message") or {}

    tool_calls: list[ToolCall] = []
    for tc in message.get("tool_calls") or []:
        if tc.get("type", "function") != "function":
            continue
        function = tc.get("function") or {}
        raw_args = function.get("arguments") or "{}"
        try:
            arguments = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
        except json.JSONDecodeError:
            logger.warning("Malformed tool arguments for %s: %r", function.get("name"), raw_args[:200])
            arguments = {}
        if not isinstance(arguments, dict):
            arguments = {"value": arguments}
        tool_calls.append(ToolCall(id=tc.get("id", ""), name=function.get("name", ""), arguments=arguments))

    usage = data.get("usage") or {}
    return Completion(
        content=message.get("content") or "",
        finish_reason=choice.get("finish_reason"),
        tool_calls=tool_calls,
        usage=TokenUsage(
            input=usage.get("prompt_tokens", 0) or 0,
            output=usage.get("completion_tokens", 0) or 0,
        ),
    )


def create_provider(
    provider_id: str,
    conf: ProviderSettings,
    settings: Settings,
) -> OpenAICompatibleProvider:
    """Provider factory used by ModelRouter.from_settings()."""
    base_url = conf.base_url or BASE_URLS.get(provider_id, DEFAULT_CUSTOM_BASE_URL)
    default_model = conf.models[0] if conf.models else DEFAULT_MODELS.get(provider_id, "llama3.1")
    headers: dict[str, str] = {}
    if provider_id == "openrouter":
        headers = {"HTTP-Referer": "https://github.com/talon-agent", "X-Title": settings.agent_name}
    timeout = httpx.Timeout(
        connect=settings.api_timeout_connect,
        read=settings.api_timeout_read,
        write=10.0,
        pool=10.0,
    )
    return OpenAICompatibleProvider(
        provider_id=provider_id,
        base_url=base_url,
        api_key=conf.api_key,
        default_model=default_model,
        extra_headers=headers,
        timeout=timeout,
    )
