from __future__ import annotations

import httpx

from job_monitor.config import Settings
from job_monitor.log import get_logger

log = get_logger(__name__)


class ScoringError(Exception):
    pass


class MistralClient:
    """Sends one scoring prompt to the chat-completions API and returns the raw body."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "mistral-small-latest",
        api_url: str = "https://api.mistral.ai/v1/chat/completions",
        max_tokens: int = 4000,
        temperature: float = 0.1,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.model = model
        self.api_url = api_url
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=30.0),
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "MistralClient":
        return cls(
            settings.mistral_api_key,
            model=settings.mistral_model,
            api_url=settings.mistral_api_url,
            max_tokens=settings.mistral_max_tokens,
            temperature=settings.mistral_temperature,
            timeout_seconds=settings.scoring_timeout_seconds,
        )

    def build_request(self, prompt: str) -> dict:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "stream": False,
            "response_format": {"type": "json_object"},
        }

    async def complete(self, prompt: str) -> str:
        try:
            response = await self._client.post(self.api_url, json=self.build_request(prompt))
        except httpx.HTTPError as exc:
            raise ScoringError(f"scoring request failed: {exc}") from exc

        if response.is_error:
            raise ScoringError(
                f"scoring request returned HTTP {response.status_code}: {response.text[:500]}"
            )
        body = response.text
        if not body.strip():
            raise ScoringError("scoring response body was empty")
        log.debug("scoring response %d chars", len(body))
        return body

    async def aclose(self) -> None:
        await self._client.aclose()
