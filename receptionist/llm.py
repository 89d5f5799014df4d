"""Language-model clients used by the fallback reasoner.

``HttpLanguageModelClient`` talks to any OpenAI-compatible
``/chat/completions`` endpoint over httpx.  ``ScriptedLanguageModelClient``
replays canned responses and is what the tests (and local demos without an
API key) use.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Union

import httpx

from receptionist.errors import FallbackTimeoutError, FallbackUnavailableError

log = logging.getLogger("receptionist.llm")


class LanguageModelClient(ABC):
    """One request/response exchange with a chat model."""

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, str]],
        max_tokens: int = 400,
        temperature: float = 0.2,
    ) -> str:
        """Return the assistant message text.

        Raises:
            FallbackTimeoutError: the service did not answer in time.
            FallbackUnavailableError: transport error or non-2xx status.
        """

    async def close(self) -> None:
        return None


class HttpLanguageModelClient(LanguageModelClient):
    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout_seconds: float = 2.5,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = base_url.rstrip("/") + "/chat/completions"
        self._model = model
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    async def complete(
        self,
        messages: list[dict[str, str]],
        max_tokens: int = 400,
        temperature: float = 0.2,
    ) -> str:
        payload = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        try:
            resp = await self._client.post(self._url, json=payload, headers=self._headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as exc:
            raise FallbackTimeoutError(f"Language model timed out: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise FallbackUnavailableError(
                f"Language model returned status {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise FallbackUnavailableError(f"Language model request failed: {exc}") from exc

        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise FallbackUnavailableError("Language model response had no message") from exc

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


Scripted = Union[str, BaseException]


class ScriptedLanguageModelClient(LanguageModelClient):
    """Replays responses in order.  An exception in the script is raised instead.

    ``delay`` makes every call sleep first (for timeout tests).
    """

    def __init__(self, responses: Optional[list[Scripted]] = None, delay: float = 0.0) -> None:
        self._responses: list[Scripted] = list(responses or [])
        self.delay = delay
        self.calls: list[list[dict[str, str]]] = []

    def queue(self, *responses: Scripted) -> None:
        self._responses.extend(responses)

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def complete(
        self,
        messages: list[dict[str, str]],
        max_tokens: int = 400,
        temperature: float = 0.2,
    ) -> str:
        self.calls.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self._responses:
            raise FallbackUnavailableError("No scripted response left")
        item: Any = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item
