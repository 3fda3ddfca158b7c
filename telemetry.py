"""
telemetry.py — Cogniflux · Datadog metrics and alert logs
=========================================================
Ships per-exchange telemetry to Datadog over its HTTP intake APIs.

  cogniflux.cognitive_load   gauge  0=low 1=medium 2=high   tags user_level, env
  cogniflux.response_time    gauge  ms                      tags model
  cogniflux.chat_error       count  1                       tags kind, env

High-load exchanges (confusion=high or a "frustration" signal) also emit a
warn-status log so Datadog monitors can alert on them.

Everything here is fire-and-forget: failures are logged, never raised.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

import httpx

from config import DatadogConfig
from live_memory import SIGNAL_FRUSTRATION, CognitiveState

log = logging.getLogger("cogniflux.telemetry")

CONFUSION_VALUES: dict[str, int] = {"low": 0, "medium": 1, "high": 2}


def confusion_value(state: CognitiveState) -> int:
    return CONFUSION_VALUES.get(state.confusion_score, 0)


def is_high_load(state: CognitiveState) -> bool:
    return state.confusion_score == "high" or SIGNAL_FRUSTRATION in state.detected_signals


class DatadogTelemetry:
    def __init__(
        self,
        api_key: Optional[str],
        config: DatadogConfig,
        site: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._site_override = site
        self.config = config
        self.http = http or httpx.AsyncClient()

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    @property
    def site(self) -> str:
        return self._site_override or self.config.site

    async def close(self) -> None:
        await self.http.aclose()

    # ------------------------------------------------------------------

    def build_series(self, state: CognitiveState, response_time_ms: float, model: str, now: int) -> dict:
        return {
            "series": [
                {
                    "metric": "cogniflux.cognitive_load",
                    "points": [[now, confusion_value(state)]],
                    "type":   "gauge",
                    "tags":   [f"user_level:{state.user_level}", f"env:{self.config.env}"],
                },
                {
                    "metric": "cogniflux.response_time",
                    "points": [[now, response_time_ms]],
                    "type":   "gauge",
                    "tags":   [f"model:{model}"],
                },
            ],
        }

    def build_alert_log(self, state: CognitiveState, message: str) -> dict:
        return {
            "ddsource": self.config.source,
            "ddtags":   f"env:{self.config.env}",
            "hostname": self.config.hostname,
            "message":  f"High Cognitive Load Detected: User is {state.user_level}",
            "service":  self.config.service,
            "status":   "warn",
            "structured_data": {
                "user_message":    message,
                "signals":         list(state.detected_signals),
                "confusion_score": state.confusion_score,
            },
        }

    async def send(self, state: CognitiveState, message: str, response_time_ms: float, model: str) -> None:
        """Post the exchange metrics, plus an alert log for high-load exchanges."""
        if not self._api_key:
            log.info("event=telemetry_skipped reason=missing_api_key confusion=%s", state.confusion_score)
            return

        now = int(time.time())
        try:
            await self._post(
                f"https://api.{self.site}/api/v1/series",
                self.build_series(state, response_time_ms, model, now),
            )
        except Exception as exc:
            log.error("event=telemetry_failed target=series error=%s", exc)

        if not is_high_load(state):
            return
        # A rejected series call must not suppress the alert log
        try:
            await self._post(
                f"https://http-intake.logs.{self.site}/api/v2/logs",
                [self.build_alert_log(state, message)],
            )
            log.info("event=telemetry_alert_sent level=%s", state.user_level)
        except Exception as exc:
            log.error("event=telemetry_failed target=logs error=%s", exc)

    async def send_failure(self, kind: str) -> None:
        """Count a failed chat exchange."""
        if not self._api_key:
            log.info("event=telemetry_skipped reason=missing_api_key kind=%s", kind)
            return

        body = {
            "series": [{
                "metric": "cogniflux.chat_error",
                "points": [[int(time.time()), 1]],
                "type":   "count",
                "tags":   [f"kind:{kind}", f"env:{self.config.env}"],
            }],
        }
        try:
            await self._post(f"https://api.{self.site}/api/v1/series", body)
        except Exception as exc:
            log.error("event=telemetry_failed kind=%s error=%s", kind, exc)

    async def _post(self, url: str, body) -> None:
        response = await self.http.post(
            url,
            headers={"Content-Type": "application/json", "DD-API-KEY": self._api_key or ""},
            json=body,
            timeout=self.config.timeout_sec,
        )
        response.raise_for_status()
