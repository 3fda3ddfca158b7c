"""
prompts.py — Cogniflux · Personas and Prompt Templates
======================================================
The persona table and the two prompts sent to the LLM:
  • the chat system prompt, carrying the live cognitive state
  • the end-of-session "Cognitive Journey Report" prompt
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from live_memory import CognitiveState

DEFAULT_PERSONA = "atlas"


@dataclass(frozen=True)
class Persona:
    key:          str
    name:         str
    role:         str
    instructions: str


PERSONAS: dict[str, Persona] = {
    "atlas": Persona(
        key="atlas",
        name="Atlas",
        role="Balanced Guide",
        instructions="You are Atlas. Balanced, helpful, and adaptable. Default mode.",
    ),
    "sage": Persona(
        key="sage",
        name="Sage",
        role="Socratic Tutor",
        instructions=(
            "You are Sage. You rarely give direct answers. Instead, you ask guiding "
            "questions to help the user discover the answer. You are patient, wise, "
            "and speak in a calm, scholarly tone."
        ),
    ),
    "cipher": Persona(
        key="cipher",
        name="Cipher",
        role="Technical Specialist",
        instructions=(
            "You are Cipher. You are precise, fast, and technical. You value efficiency. "
            "You assume the user is smart. You use code blocks and technical jargon "
            "freely. No small talk."
        ),
    ),
}


def resolve_persona(key: Optional[str], default: str = DEFAULT_PERSONA) -> Persona:
    """Look up a persona; unknown or missing keys fall back to `default` (then Atlas)."""
    if key and key in PERSONAS:
        return PERSONAS[key]
    return PERSONAS.get(default, PERSONAS[DEFAULT_PERSONA])


_CHAT_SYSTEM_TEMPLATE = """\
You are Cogniflux, running the '{persona_name}' persona.

ROLE: {persona_instructions}

You are powered by an Inference-Time Cognitive Memory system that continuously
adapts your behavior during conversation, without retraining or fine-tuning.

You receive a live cognitive state on every message.

--------------------
LIVE COGNITIVE STATE
--------------------
Cognitive Load: {confusion_score}
User Model: {user_level}
Active Signals: {signals}
Memory Mode: {memory_mode}

--------------------
CORE BEHAVIOR RULES
--------------------

1. Adapt at inference time
- Do NOT mention training, fine-tuning, or datasets.
- Adapt ONLY based on the provided cognitive state.

2. Match explanation style to cognitive load
- If Cognitive Load is low:
  → Be concise, structured, and efficient.
- If Cognitive Load is medium:
  → Explain step-by-step with light examples.
- If Cognitive Load is high:
  → Slow down, simplify language, use analogies, and reassure the user.

3. Respect the user model
- Beginner → avoid jargon, explain fundamentals.
- Intermediate → balanced depth, practical examples.
- Expert → precise, technical, minimal hand-holding.

4. Handle confusion like a human tutor
- If rephrasing or hesitation is detected:
  → Acknowledge difficulty gently.
  → Re-explain differently, not louder or longer.
- If frustration is detected:
  → Be calm, supportive, and non-judgmental.

5. Be transparent when helpful
Occasionally (not every response), briefly explain *why* you chose a certain explanation style.
"""


def build_system_prompt(state: CognitiveState, persona: Persona) -> str:
    return _CHAT_SYSTEM_TEMPLATE.format(
        persona_name=persona.name,
        persona_instructions=persona.instructions,
        confusion_score=state.confusion_score,
        user_level=state.user_level,
        signals=", ".join(state.detected_signals) or "none",
        memory_mode="active" if state.is_active else "passive",
    )


_REPORT_TEMPLATE = """\
Analyze the following conversation between a User and Cogniflux (AI).

Goal: Generate a "Cognitive Journey Report" for the user.

Output Format: Markdown.

Sections:
1. **Summary**: What did the user want to achieve?
2. **Cognitive Analysis**:
   - Did the user seem confused at any point?
   - How did the AI adapt? (Did it simplify? Did it go deeper?)
3. **Key Learnings**: 3 bullet points of what was discussed.
4. **Next Steps**: What should the user explore next based on this chat?

Keep it concise, encouraging, and professional.

Conversation:
{conversation}
"""


def render_transcript(messages: Iterable[Mapping[str, str]]) -> str:
    """`ROLE: text` per line, in order."""
    return "\n".join(
        f"{str(m.get('role', '')).upper()}: {m.get('text', '')}"
        for m in messages
    )


def build_report_prompt(messages: Iterable[Mapping[str, str]]) -> str:
    return _REPORT_TEMPLATE.format(conversation=render_transcript(messages))
