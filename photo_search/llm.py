"""Chat-completion client for OpenAI-compatible endpoints."""

import logging

import httpx

from config import LLM_API_KEY, LLM_BASE_URL, LLM_MODEL
from errors import ParseError

logger = logging.getLogger(__name__)


class ChatCompletionClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float = 3.0,
    ):
        self._base_url = (base_url if base_url is not None else LLM_BASE_URL).rstrip("/")
        self._api_key = api_key if api_key is not None else LLM_API_KEY
        self.model = model or LLM_MODEL
        self._http = httpx.Client(timeout=timeout)

    @property
    def configured(self) -> bool:
        return bool(self._base_url and self._api_key)

    def complete(self, prompt: str, max_tokens: int = 500, temperature: float = 0.1) -> str:
        """Send one user message and return the assistant's text.

        Raises:
            ParseError: endpoint unconfigured, unreachable, non-2xx, or malformed.
        """
        if not self.configured:
            raise ParseError("LLM endpoint is not configured")
        try:
            resp = self._http.post(
                f"{self._base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={
                    "model": self.model,
                    "messages": [{"role": "user", "content": prompt}],
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                },
            )
        except httpx.HTTPError as e:
            raise ParseError(f"LLM request failed: {e}") from e

        if resp.status_code != 200:
            raise ParseError(f"LLM API error {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ParseError(f"Malformed LLM response: {e}") from e

    def close(self) -> None:
        self._http.close()
