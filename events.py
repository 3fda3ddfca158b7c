"""
events.py — Cogniflux · Cognitive event publisher
=================================================
Publishes one record per chat exchange to the `cognitive-events` topic on
Confluent Cloud (the "collective memory" stream), through the Kafka REST v3
produce endpoint:

    POST {rest_endpoint}/kafka/v3/clusters/{cluster_id}/topics/{topic}/records

Records are keyed by user level.  Only a short snippet of the user message
is kept.  Without credentials the event is logged locally instead.

Fire-and-forget: failures are logged, never raised.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from config import ConfluentConfig
from live_memory import CognitiveState

log = logging.getLogger("cogniflux.events")


class CognitiveEventPublisher:
    def __init__(
        self,
        config: ConfluentConfig,
        rest_endpoint: Optional[str] = None,
        cluster_id: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config
        self._rest_endpoint = rest_endpoint
        self._cluster_id = cluster_id
        self._auth = (api_key, api_secret) if api_key and api_secret else None
        self.http = http or httpx.AsyncClient()

    @property
    def configured(self) -> bool:
        return bool(self._rest_endpoint and self._cluster_id and self._auth)

    async def close(self) -> None:
        await self.http.aclose()

    def build_event(self, state: CognitiveState, message: str, now: Optional[datetime] = None) -> dict:
        ts = now or datetime.now(timezone.utc)
        return {
            "timestamp":      ts.isoformat(),
            "confusionScore": state.confusion_score,
            "userLevel":      state.user_level,
            "signals":        list(state.detected_signals),
            "context":        message[: self.config.context_chars],
        }

    def records_url(self) -> str:
        return (
            f"{(self._rest_endpoint or '').rstrip('/')}/kafka/v3/clusters/"
            f"{self._cluster_id}/topics/{self.config.topic}/records"
        )

    async def publish(self, state: CognitiveState, message: str) -> None:
        event = self.build_event(state, message)
        if not self.configured:
            log.info("event=cognitive_event_mock topic=%s payload=%s", self.config.topic, event)
            return

        record = {
            "key":   {"type": "STRING", "data": state.user_level},
            "value": {"type": "JSON", "data": event},
        }
        try:
            response = await self.http.post(
                self.records_url(),
                json=record,
                auth=self._auth,
                timeout=self.config.timeout_sec,
            )
            response.raise_for_status()
        except Exception as exc:
            log.error("event=cognitive_event_failed topic=%s error=%s", self.config.topic, exc)
            return

        log.info(
            "event=cognitive_event_sent topic=%s key=%s confusion=%s",
            self.config.topic, state.user_level, state.confusion_score,
        )
