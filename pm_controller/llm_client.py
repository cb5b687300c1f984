"""
LLM Completion Client

Thin async client for an OpenAI-compatible /chat/completions endpoint.
Transient failures (timeouts, connection errors, 429 and 5xx) are retried
with exponential backoff; other HTTP errors fail fast.
"""

import asyncio
import logging
from typing import Optional, Dict, Any, List

import httpx

logger = logging.getLogger("llm_client")


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
LLM_TIMEOUT = 120.0
LLM_MAX_RETRIES = 3
LLM_RETRY_BACKOFF_BASE = 1.0  # seconds, doubles each retry
DEFAULT_TEMPERATURE = 0.7
SPECIALIST_TEMPERATURE = 0.5
DEFAULT_MAX_TOKENS = 4000
RETRYABLE_STATUS = frozenset([429, 500, 502, 503, 504])


class CompletionError(Exception):
    """The completion API could not produce a response."""


class CompletionClient:
    """Chat completion client with retry and backoff."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4-turbo-preview",
        timeout: float = LLM_TIMEOUT,
        max_retries: int = LLM_MAX_RETRIES,
        backoff_base: float = LLM_RETRY_BACKOFF_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> str:
        """
        Send a chat completion request and return the assistant text.

        Raises CompletionError when no usable response is obtained.
        """
        if not self.is_configured:
            raise CompletionError("LLM API key is not configured")

        url = f"{self.base_url}/chat/completions"
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    response = await client.post(url, json=payload, headers=headers)
                    response.raise_for_status()
                    data = response.json()
                return self._extract_text(data)

            except httpx.TimeoutException as e:
                last_error = e
                logger.warning(f"LLM timeout on attempt {attempt + 1}/{self.max_retries}: {e}")

            except httpx.ConnectError as e:
                last_error = e
                logger.warning(f"LLM connection error on attempt {attempt + 1}/{self.max_retries}: {e}")

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status not in RETRYABLE_STATUS:
                    logger.error(f"LLM API error {status}: {e.response.text[:200]}")
                    raise CompletionError(f"LLM API returned {status}") from e
                last_error = e
                logger.warning(f"LLM API {status} on attempt {attempt + 1}/{self.max_retries}")

            if attempt < self.max_retries - 1:
                backoff = self.backoff_base * (2 ** attempt)
                logger.info(f"Retrying LLM call in {backoff}s...")
                await asyncio.sleep(backoff)

        raise CompletionError(f"LLM unreachable after {self.max_retries} attempts: {last_error}")

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> str:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise CompletionError(f"Malformed completion response: {e}") from e
        return (content or "").strip()

    async def pm_chat(self, system_prompt: str, user_message: str) -> str:
        """Project manager conversation turn."""
        return await self.chat([
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ])

    async def specialist_chat(self, system_prompt: str, context: str, task: str) -> str:
        """Specialist agent turn: lower temperature, context and task combined."""
        return await self.chat(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": f"Context:\n{context}\n\nTask:\n{task}"},
            ],
            temperature=SPECIALIST_TEMPERATURE,
        )
