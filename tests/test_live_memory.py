from __future__ import annotations

import pytest
from pydantic import ValidationError

from live_memory import CognitiveState, compute_live_memory, fallback_state


def test_empty_signals_is_low_intermediate():
    state = compute_live_memory([])
    assert state.to_wire() == {
        "confusionScore": "low",
        "userLevel": "intermediate",
        "detectedSignals": [],
    }


@pytest.mark.parametrize(
    "signals, confusion, level",
    [
        (["rephrase"], "medium", "intermediate"),
        (["rephrase", "rephrase"], "high", "beginner"),
        (["rephrase", "rephrase", "rephrase"], "high", "beginner"),
        (["frustration"], "high", "beginner"),
        (["rephrase", "frustration"], "high", "beginner"),
        (["rephrase", "quick_reply"], "medium", "expert"),
        (["frustration", "quick_reply"], "high", "expert"),
        (["quick_reply", "rephrase", "rephrase"], "high", "expert"),
        (["quick_reply"], "low", "expert"),
        (["unknown_tag"], "low", "intermediate"),
    ],
)
def test_classification_rules(signals, confusion, level):
    state = compute_live_memory(signals)
    assert state.confusion_score == confusion
    assert state.user_level == level


def test_matching_is_exact_and_case_sensitive():
    state = compute_live_memory(["Rephrase", " rephrase", "FRUSTRATION", "quick-reply"])
    assert state.confusion_score == "low"
    assert state.user_level == "intermediate"


def test_unknown_tags_are_echoed():
    state = compute_live_memory(["unknown_tag"])
    assert list(state.detected_signals) == ["unknown_tag"]


def test_detected_signals_preserve_order_and_duplicates():
    signals = ["quick_reply", "rephrase", "typing_pause", "rephrase", "quick_reply"]
    state = compute_live_memory(signals)
    assert list(state.detected_signals) == signals
    assert signals == ["quick_reply", "rephrase", "typing_pause", "rephrase", "quick_reply"]


def test_classifier_is_idempotent():
    signals = ["rephrase", "frustration", "quick_reply"]
    assert compute_live_memory(signals) == compute_live_memory(signals)


def test_accepts_tuples():
    state = compute_live_memory(("rephrase",))
    assert state.confusion_score == "medium"
    assert state.detected_signals == ("rephrase",)


def test_state_is_immutable():
    state = compute_live_memory(["rephrase"])
    with pytest.raises(ValidationError):
        state.confusion_score = "low"


def test_state_parses_camel_and_snake_case():
    camel = CognitiveState.model_validate(
        {"confusionScore": "high", "userLevel": "expert", "detectedSignals": ["frustration"]}
    )
    snake = CognitiveState.model_validate(
        {"confusion_score": "high", "user_level": "expert", "detected_signals": ["frustration"]}
    )
    assert camel == snake
    assert camel.is_active


def test_state_rejects_unknown_levels():
    with pytest.raises(ValidationError):
        CognitiveState.model_validate({"confusionScore": "extreme"})


def test_fallback_state_is_neutral():
    assert fallback_state().to_wire() == {
        "confusionScore": "medium",
        "userLevel": "intermediate",
        "detectedSignals": [],
    }
