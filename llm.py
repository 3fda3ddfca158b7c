"""
llm.py — Cogniflux · Groq completion client
===========================================
Thin wrapper over `AsyncGroq` for the two LLM calls the service makes:
the adaptive chat reply and the end-of-session report.

The `AsyncGroq` handle is owned by a `CompletionClient` instance that the
server builds once and injects into the route handlers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Iterable, Mapping, Optional

from groq import APIError, AsyncGroq

from config import GroqConfig
from live_memory import CognitiveState
from prompts import Persona, build_report_prompt, build_system_prompt

log = logging.getLogger("cogniflux.llm")


class CompletionError(RuntimeError):
    """The LLM call did not produce a usable completion."""


class CompletionClient:
    def __init__(
        self,
        api_key: Optional[str],
        config: GroqConfig,
        client: Optional[AsyncGroq] = None,
    ) -> None:
        self._api_key = api_key
        self.config = config
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(self._api_key)

    def _get_client(self) -> AsyncGroq:
        if self._client is None:
            if not self._api_key:
                raise CompletionError("GROQ_API_KEY is not set")
            self._client = AsyncGroq(api_key=self._api_key)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate_reply(
        self,
        message: str,
        state: CognitiveState,
        persona: Persona,
        image_base64: Optional[str] = None,
    ) -> str:
        """Answer `message` in the voice of `persona`, adapted to `state`."""
        user_content: Any = message
        model = self.config.model
        if image_base64:
            model = self.config.vision_model
            user_content = [
                {"type": "text", "text": message},
                {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{image_base64}"}},
            ]

        messages = [
            {"role": "system", "content": build_system_prompt(state, persona)},
            {"role": "user", "content": user_content},
        ]
        log.info(
            "event=chat_completion_start persona=%s model=%s confusion=%s level=%s image=%s",
            persona.key, model, state.confusion_score, state.user_level, bool(image_base64),
        )
        return await self._complete(model, messages, purpose="chat")

    async def generate_session_report(self, messages: Iterable[Mapping[str, str]]) -> str:
        """Summarise a finished conversation as a Markdown report."""
        prompt = build_report_prompt(messages)
        return await self._complete(
            self.config.model,
            [{"role": "user", "content": prompt}],
            purpose="report",
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _sampling_kwargs(self) -> dict:
        kwargs: dict = {}
        if self.config.temperature is not None:
            kwargs["temperature"] = self.config.temperature
        if self.config.top_p is not None:
            kwargs["top_p"] = self.config.top_p
        if self.config.max_tokens is not None:
            kwargs["max_tokens"] = self.config.max_tokens
        return kwargs

    async def _complete(self, model: str, messages: list[dict], purpose: str) -> str:
        client = self._get_client()
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=model,
                    messages=messages,
                    stream=False,
                    **self._sampling_kwargs(),
                ),
                timeout=self.config.timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            log.warning(
                "event=completion_timeout purpose=%s model=%s timeout_sec=%.1f",
                purpose, model, self.config.timeout_sec,
            )
            raise CompletionError(f"{purpose} completion timed out") from exc
        except asyncio.CancelledError:
            raise
        except APIError as exc:
            log.warning("event=completion_error purpose=%s model=%s error=%s", purpose, model, exc)
            raise CompletionError(f"{purpose} completion failed: {exc}") from exc

        text = ""
        if response.choices:
            text = (response.choices[0].message.content or "").strip()
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if not text:
            log.warning("event=completion_empty purpose=%s model=%s", purpose, model)
            raise CompletionError(f"{purpose} completion was empty")

        log.info(
            "event=completion_done purpose=%s model=%s len=%d latency_ms=%.0f",
            purpose, model, len(text), elapsed_ms,
        )
        return text
