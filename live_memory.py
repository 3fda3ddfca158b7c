"""
live_memory.py — Cogniflux · Live Memory Signal Classifier
==========================================================
Maps the interaction signals reported by the chat client into a small
cognitive state: how confused the user appears and how experienced they
seem.  The state travels with every chat exchange — it is embedded in the
LLM prompt, picks the TTS voice settings and is shipped to telemetry.

Rules
-----
  • 2+ "rephrase"  OR  any "frustration"  → confusion=high,   level=beginner
  • exactly one "rephrase"                 → confusion=medium
  • "quick_reply" anywhere                 → level=expert (wins over beginner)
  • everything else                        → confusion=low,    level=intermediate

Unknown tags are echoed back in `detected_signals` and otherwise ignored.
The classifier is pure: no I/O, no shared state, never raises.
"""

from __future__ import annotations

from typing import Literal, Sequence

from pydantic import BaseModel, ConfigDict, Field

ConfusionScore = Literal["low", "medium", "high"]
UserLevel = Literal["beginner", "intermediate", "expert"]

SIGNAL_REPHRASE    = "rephrase"
SIGNAL_FRUSTRATION = "frustration"
SIGNAL_QUICK_REPLY = "quick_reply"


class CognitiveState(BaseModel):
    """Inferred cognitive state for one chat exchange.

    Serialised with camelCase keys (`confusionScore`, `userLevel`,
    `detectedSignals`) to match the chat client; snake_case is accepted on
    input too.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    confusion_score: ConfusionScore = Field(default="low", alias="confusionScore")
    user_level: UserLevel = Field(default="intermediate", alias="userLevel")
    detected_signals: tuple[str, ...] = Field(default=(), alias="detectedSignals")

    @property
    def is_active(self) -> bool:
        """True when at least one signal was reported ("active" memory mode)."""
        return len(self.detected_signals) > 0

    def to_wire(self) -> dict:
        return {
            "confusionScore":  self.confusion_score,
            "userLevel":       self.user_level,
            "detectedSignals": list(self.detected_signals),
        }


def compute_live_memory(signals: Sequence[str]) -> CognitiveState:
    """Classify a signal history into a `CognitiveState`.

    Matching is exact (case-sensitive, untrimmed).  The quick_reply check
    runs last and overrides the level chosen by the confusion rules, so
    ["frustration", "quick_reply"] yields high / expert.
    """
    rephrase_count    = sum(1 for s in signals if s == SIGNAL_REPHRASE)
    frustration_count = sum(1 for s in signals if s == SIGNAL_FRUSTRATION)

    confusion_score: ConfusionScore = "low"
    user_level: UserLevel = "intermediate"

    if rephrase_count >= 2 or frustration_count >= 1:
        confusion_score = "high"
        user_level = "beginner"
    elif rephrase_count == 1:
        confusion_score = "medium"

    # TODO: product review: quick_reply overrides the beginner level even under high confusion
    if SIGNAL_QUICK_REPLY in signals:
        user_level = "expert"

    return CognitiveState(
        confusion_score=confusion_score,
        user_level=user_level,
        detected_signals=tuple(signals),
    )


def fallback_state() -> CognitiveState:
    """Neutral state returned to the client when a chat exchange fails."""
    return CognitiveState(confusion_score="medium", user_level="intermediate", detected_signals=())
