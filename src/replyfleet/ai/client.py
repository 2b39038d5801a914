"""Chat endpoint clients — OpenAI-compatible over httpx, plus Anthropic."""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import anthropic
import httpx

from replyfleet.config import get_config
from replyfleet.db.models import AIConfig
from replyfleet.utils.errors import AIError
from replyfleet.utils.logger import get_logger

logger = get_logger("replyfleet.ai.client")

Message = dict[str, str]


class ChatBackend(Protocol):
    async def complete(self, messages: list[Message], ai: AIConfig) -> str: ...

    async def aclose(self) -> None: ...


class ChatClient:
    """Client for any OpenAI-compatible ``/chat/completions`` endpoint.

    Transport errors and 5xx responses are retried with exponential backoff;
    4xx responses fail immediately.
    """

    def __init__(
        self,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(headers=headers, transport=transport)

    async def complete(self, messages: list[Message], ai: AIConfig) -> str:
        """Send a chat request and return the reply text.

        Args:
            messages: ``[{"role": ..., "content": ...}]`` list, system first.
            ai: Endpoint, model and sampling settings.

        Returns:
            The stripped content of the first choice.

        Raises:
            AIError: With kind ``timeout``, ``transport``, ``status`` or ``empty``.
        """
        url = ai.endpoint.rstrip("/") + "/chat/completions"
        payload = {
            "model": ai.model,
            "messages": messages,
            "temperature": ai.temperature,
            "max_tokens": ai.max_tokens,
        }
        attempts = max(ai.max_retries, 0) + 1
        last_error: AIError | None = None

        for attempt in range(attempts):
            if attempt:
                await asyncio.sleep(ai.retry_backoff_s * (2 ** (attempt - 1)))
            try:
                resp = await self._client.post(
                    url, json=payload, timeout=ai.request_timeout_s
                )
            except httpx.TimeoutException as e:
                last_error = AIError("timeout", f"Request timed out: {e}")
                logger.warning(f"AI request timeout (attempt {attempt + 1}/{attempts})")
                continue
            except httpx.TransportError as e:
                last_error = AIError("transport", f"Transport error: {e}")
                logger.warning(f"AI transport error (attempt {attempt + 1}/{attempts}): {e}")
                continue

            if resp.status_code >= 500:
                last_error = AIError("status", f"HTTP {resp.status_code}")
                logger.warning(f"AI endpoint returned {resp.status_code}")
                continue
            if resp.status_code >= 400:
                raise AIError("status", f"HTTP {resp.status_code}: {resp.text[:200]}")

            return _extract_content(resp)

        assert last_error is not None
        raise last_error

    async def list_models(self, ai: AIConfig) -> list[str]:
        """Fetch model ids from ``GET {endpoint}/models``."""
        url = ai.endpoint.rstrip("/") + "/models"
        try:
            resp = await self._client.get(url, timeout=ai.request_timeout_s)
        except httpx.TimeoutException as e:
            raise AIError("timeout", str(e)) from e
        except httpx.TransportError as e:
            raise AIError("transport", str(e)) from e
        if resp.status_code >= 400:
            raise AIError("status", f"HTTP {resp.status_code}")
        data = resp.json().get("data") or []
        return [m.get("id", "") for m in data if isinstance(m, dict)]

    async def aclose(self) -> None:
        await self._client.aclose()


def _extract_content(resp: httpx.Response) -> str:
    try:
        data: dict[str, Any] = resp.json()
        content = data["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise AIError("empty", f"Malformed response: {e}") from e
    if not content or not str(content).strip():
        raise AIError("empty", "Empty completion")
    return str(content).strip()


class AnthropicChatClient:
    """Chat backend for the ``anthropic`` provider."""

    def __init__(self, api_key: str | None = None) -> None:
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    async def complete(self, messages: list[Message], ai: AIConfig) -> str:
        system = "\n".join(m["content"] for m in messages if m["role"] == "system")
        turns = [m for m in messages if m["role"] != "system"]
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(
                    model=ai.model,
                    max_tokens=ai.max_tokens,
                    temperature=ai.temperature,
                    system=system,
                    messages=turns,
                ),
                timeout=ai.request_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise AIError("timeout", "Anthropic API timeout") from e
        except anthropic.APIStatusError as e:
            raise AIError("status", f"HTTP {e.status_code}") from e
        except anthropic.APIError as e:
            raise AIError("transport", str(e)) from e

        if not response.content or not response.content[0].text.strip():
            raise AIError("empty", "Empty response from Anthropic API")
        return response.content[0].text.strip()

    async def aclose(self) -> None:
        await self._client.close()


def make_chat_client(ai: AIConfig) -> ChatBackend:
    """Build the backend for an AI config's provider."""
    cfg = get_config()
    if ai.provider == "anthropic":
        return AnthropicChatClient(api_key=cfg.anthropic_api_key or None)
    return ChatClient(api_key=cfg.ai_api_key or None)


async def probe_endpoint(ai: AIConfig) -> tuple[bool, str]:
    """Probe the configured endpoint.

    Returns:
        ``(ok, detail)`` where detail names the models found or the error.
    """
    if ai.provider == "anthropic":
        return bool(get_config().anthropic_api_key), "Anthropic API key configured"
    client = ChatClient(api_key=get_config().ai_api_key or None)
    try:
        models = await client.list_models(ai)
    except AIError as e:
        return False, f"{e.kind}: {e}"
    finally:
        await client.aclose()
    return True, f"{len(models)} model(s): {', '.join(models[:5])}"
