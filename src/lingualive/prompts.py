"""Prompt templates for the voice tutor."""

from __future__ import annotations

from .models import SessionConfig

TUTOR_PROMPT = (
    "You are a native {language} tutor. The student is at {proficiency} level. "
    "Mode: {mode}. Keep responses brief and conversational. "
    "Provide gentle corrections for mistakes."
)


def build_system_prompt(config: SessionConfig) -> str:
    return TUTOR_PROMPT.format(
        language=config.language,
        proficiency=config.proficiency,
        mode=config.mode,
    )
