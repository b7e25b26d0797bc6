"""
Client for the chat-completion endpoint used by conversation analysis.

Any OpenAI-compatible API works (Groq by default). One call per analysis
pass, no retries: a failed pass leaves the conversation flagged for analysis
so the next schedule picks it up again.
"""

import logging
import time
from typing import Optional

from openai import APIError, APITimeoutError, AsyncOpenAI

from omnicrm.config import Settings
from omnicrm.metrics import completion_latency_seconds

logger = logging.getLogger(__name__)


class CompletionClient:
    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
    ):
        self.model = model
        self._client: Optional[AsyncOpenAI] = None
        if api_key:
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=timeout,
                max_retries=0,
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> "CompletionClient":
        return cls(
            api_key=settings.COMPLETION_API_KEY,
            model=settings.COMPLETION_MODEL,
            base_url=settings.COMPLETION_BASE_URL,
            timeout=settings.COMPLETION_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return self._client is not None

    async def complete(self, system: str, user: str) -> Optional[str]:
        """
        Run one JSON-mode chat completion.

        Returns:
            The stripped message content, or None when the client is not
            configured, the call failed, or the response had no content
        """
        if self._client is None:
            logger.warning("COMPLETION_API_KEY not set. Skipping conversation analysis.")
            return None

        started = time.perf_counter()
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                temperature=0,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
        except APITimeoutError:
            logger.error(f"Completion request timed out (model={self.model})")
            return None
        except APIError as e:
            logger.error(f"Completion request failed (model={self.model}): {e}")
            return None
        finally:
            completion_latency_seconds.observe(time.perf_counter() - started)

        if not response.choices:
            return None
        content = response.choices[0].message.content
        return content.strip() if content else None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
