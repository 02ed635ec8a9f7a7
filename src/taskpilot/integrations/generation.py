"""Text-generation service client: raw prompt in, raw text out."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import httpx

from taskpilot.errors import TaskPilotError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_TIMEOUT_SECONDS = 60.0
SYSTEM_MESSAGE = "You are a helpful assistant."


class GenerationServiceError(TaskPilotError):
    """A completion request failed. ``category`` says how."""

    def __init__(self, message: str, status_code: int | None = None, category: str = "http"):
        self.status_code = status_code
        self.category = category
        super().__init__(message)


@runtime_checkable
class GenerationService(Protocol):
    async def complete(self, prompt: str) -> str: ...


def _category_for_status(status_code: int) -> str:
    if status_code in (401, 403):
        return "auth"
    if status_code == 429:
        return "rate_limit"
    if status_code >= 500:
        return "server"
    return "http"


class OpenAIChatService:
    """Client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("An API key is required for the generation service")
        self.model = model
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def complete(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_MESSAGE},
                {"role": "user", "content": prompt},
            ],
        }
        try:
            response = await self._client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("Generation request timed out: %s", exc)
            raise GenerationServiceError("Generation request timed out", category="timeout") from exc
        except httpx.HTTPError as exc:
            logger.warning("Generation request failed: %s", exc)
            raise GenerationServiceError(str(exc), category="transport") from exc

        if not response.is_success:
            logger.error(
                "Error from generation service: %s - %s", response.status_code, response.text
            )
            raise GenerationServiceError(
                f"Error from generation service: {response.status_code}",
                status_code=response.status_code,
                category=_category_for_status(response.status_code),
            )

        try:
            return response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise GenerationServiceError(
                "Malformed response from generation service",
                status_code=response.status_code,
                category="malformed",
            ) from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> OpenAIChatService:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()
