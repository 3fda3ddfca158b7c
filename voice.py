"""
voice.py — Cogniflux · ElevenLabs text-to-speech
================================================
Turns a chat reply into audio.  The voice is chosen by persona; the voice
settings are chosen from the cognitive state so a struggling user hears a
calmer, steadier delivery and an expert hears a livelier one.

Voice settings table
--------------------
  confusion=high OR "frustration" signal  → stability 0.85  similarity 0.80  style 0.0
  level=expert                            → stability 0.40  similarity 0.70  style 0.2
  otherwise / no state                    → stability 0.50  similarity 0.75  style 0.0
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Optional

import httpx

from config import ElevenLabsConfig
from live_memory import SIGNAL_FRUSTRATION, CognitiveState
from prompts import DEFAULT_PERSONA

log = logging.getLogger("cogniflux.voice")

VOICE_MAP: dict[str, str] = {
    "atlas":  "21m00Tcm4TlvDq8ikWAM",   # Rachel (balanced)
    "sage":   "ErXwobaYiN019PkySvjV",   # Antoni (calm / wise)
    "cipher": "TxGEqnHWrfWFTfGW9XjX",   # Josh (deep / tech)
}


class MissingCredentialsError(RuntimeError):
    """The integration has no API key configured."""


class SpeechSynthesisError(RuntimeError):
    """ElevenLabs rejected the request."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"ElevenLabs returned {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


@dataclass(frozen=True)
class VoiceSettings:
    stability:         float = 0.5
    similarity_boost:  float = 0.75
    style:             float = 0.0
    use_speaker_boost: bool  = True


CALM_SETTINGS    = VoiceSettings(stability=0.85, similarity_boost=0.8, style=0.0)
DYNAMIC_SETTINGS = VoiceSettings(stability=0.4, similarity_boost=0.7, style=0.2)
DEFAULT_SETTINGS = VoiceSettings()


def select_voice_id(persona: Optional[str]) -> str:
    return VOICE_MAP.get(persona or DEFAULT_PERSONA, VOICE_MAP[DEFAULT_PERSONA])


def select_voice_settings(state: Optional[CognitiveState]) -> VoiceSettings:
    if state is None:
        return DEFAULT_SETTINGS
    if state.confusion_score == "high" or SIGNAL_FRUSTRATION in state.detected_signals:
        return CALM_SETTINGS
    if state.user_level == "expert":
        return DYNAMIC_SETTINGS
    return DEFAULT_SETTINGS


class SpeechClient:
    def __init__(
        self,
        api_key: Optional[str],
        config: ElevenLabsConfig,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self.config = config
        self.http = http or httpx.AsyncClient()

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def close(self) -> None:
        await self.http.aclose()

    async def synthesize(
        self,
        text: str,
        state: Optional[CognitiveState] = None,
        persona: Optional[str] = None,
    ) -> bytes:
        """Return the rendered audio (MPEG) for `text`."""
        if not self._api_key:
            log.warning("event=tts_skipped reason=missing_api_key")
            raise MissingCredentialsError("ELEVENLABS_API_KEY is not set")

        voice_id = select_voice_id(persona)
        settings = select_voice_settings(state)
        url = f"{self.config.base_url.rstrip('/')}/v1/text-to-speech/{voice_id}"

        log.info(
            "event=tts_start voice=%s model=%s stability=%.2f style=%.2f text_len=%d",
            voice_id, self.config.model, settings.stability, settings.style, len(text),
        )
        response = await self.http.post(
            url,
            headers={"Content-Type": "application/json", "xi-api-key": self._api_key},
            json={
                "text": text,
                "model_id": self.config.model,
                "voice_settings": asdict(settings),
            },
            timeout=self.config.timeout_sec,
        )
        if response.status_code >= 400:
            log.error("event=tts_failed status=%d body=%.200s", response.status_code, response.text)
            raise SpeechSynthesisError(response.status_code, response.text)

        audio = response.content
        log.info("event=tts_done voice=%s bytes=%d", voice_id, len(audio))
        return audio
