"""
config.py — Cogniflux · Runtime Configuration
=============================================
Pydantic models for every tunable parameter across the vendor integrations.
Serialises to / deserialises from JSON.  Used by:
  • server.py  — GET/PUT /config endpoints, builds the vendor clients
  • llm.py, voice.py, telemetry.py, events.py — read their own section

Secrets never live in the JSON file; they are read from the environment
(see `Credentials`).
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

log = logging.getLogger("cogniflux.config")

DEFAULT_CONFIG_PATH = "cogniflux_config.json"


# ---------------------------------------------------------------------------
# Per-service config sections
# ---------------------------------------------------------------------------

class GroqConfig(BaseModel):
    """Groq LLM parameters (passed to AsyncGroq chat.completions.create)."""
    model: str = Field(default="llama-3.3-70b-versatile", description="Groq model ID for text chat")
    vision_model: str = Field(
        default="meta-llama/llama-4-scout-17b-16e-instruct",
        description="Groq model ID used when the user attaches an image",
    )
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="Nucleus sampling")
    max_tokens: Optional[int] = Field(default=None, ge=1, description="Max response tokens")
    timeout_sec: float = Field(default=30.0, gt=0.0, le=300.0, description="Per-request deadline")


class ElevenLabsConfig(BaseModel):
    """ElevenLabs TTS parameters (REST text-to-speech)."""
    model: str = Field(default="eleven_monolingual_v1", description="TTS model")
    base_url: str = Field(default="https://api.elevenlabs.io", description="API origin")
    timeout_sec: float = Field(default=30.0, gt=0.0, le=300.0, description="Per-request deadline")


class DatadogConfig(BaseModel):
    """Datadog metrics + log intake parameters."""
    site: str = Field(default="datadoghq.com", description="Datadog site (datadoghq.com, datadoghq.eu, ...)")
    env: str = Field(default="hackathon", description="Value of the env: tag")
    service: str = Field(default="cognitive-engine", description="Service name on alert logs")
    source: str = Field(default="cogniflux-ai", description="ddsource on alert logs")
    hostname: str = Field(default="cogniflux-api", description="Hostname on alert logs")
    timeout_sec: float = Field(default=5.0, gt=0.0, le=60.0, description="Per-request deadline")


class ConfluentConfig(BaseModel):
    """Confluent Cloud Kafka REST producer parameters."""
    topic: str = Field(default="cognitive-events", description="Topic for cognitive events")
    context_chars: int = Field(default=50, ge=0, le=1000, description="Message snippet length kept in events")
    timeout_sec: float = Field(default=5.0, gt=0.0, le=60.0, description="Per-request deadline")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class CognifluxConfig(BaseModel):
    """Complete runtime configuration for the chat service."""
    groq: GroqConfig = Field(default_factory=GroqConfig)
    elevenlabs: ElevenLabsConfig = Field(default_factory=ElevenLabsConfig)
    datadog: DatadogConfig = Field(default_factory=DatadogConfig)
    confluent: ConfluentConfig = Field(default_factory=ConfluentConfig)
    default_persona: str = Field(default="atlas", description="Persona used when the client sends none")

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "CognifluxConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s — using defaults", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "CognifluxConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"groq": {"temperature": 0.7}}
        only changes groq.temperature, leaving everything else intact.
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return CognifluxConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


# ---------------------------------------------------------------------------
# Secrets (from environment)
# ---------------------------------------------------------------------------

class Credentials(BaseModel):
    """Vendor credentials.  Every field is optional; a missing one disables
    (or mocks) the matching integration instead of failing startup."""
    groq_api_key: Optional[str] = None
    elevenlabs_api_key: Optional[str] = None
    datadog_api_key: Optional[str] = None
    datadog_site: Optional[str] = None
    confluent_rest_endpoint: Optional[str] = None
    confluent_cluster_id: Optional[str] = None
    confluent_api_key: Optional[str] = None
    confluent_api_secret: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Credentials":
        def _get(name: str) -> Optional[str]:
            return os.getenv(name) or None

        return cls(
            groq_api_key=_get("GROQ_API_KEY"),
            elevenlabs_api_key=_get("ELEVENLABS_API_KEY"),
            datadog_api_key=_get("DATADOG_API_KEY"),
            datadog_site=_get("DATADOG_SITE"),
            confluent_rest_endpoint=_get("CONFLUENT_REST_ENDPOINT"),
            confluent_cluster_id=_get("CONFLUENT_CLUSTER_ID"),
            confluent_api_key=_get("CONFLUENT_API_KEY"),
            confluent_api_secret=_get("CONFLUENT_API_SECRET"),
        )
