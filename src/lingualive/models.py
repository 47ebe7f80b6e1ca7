"""Data models for LinguaLive."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

import numpy as np

from .errors import SessionError


class Speaker(str, Enum):
    USER = "user"
    AGENT = "agent"


class Language(str, Enum):
    ENGLISH = "English"
    SPANISH = "Spanish"
    FRENCH = "French"
    GERMAN = "German"
    JAPANESE = "Japanese"
    MANDARIN = "Mandarin Chinese"
    KOREAN = "Korean"
    ITALIAN = "Italian"
    PORTUGUESE = "Portuguese"


class Proficiency(str, Enum):
    BEGINNER = "Beginner"
    INTERMEDIATE = "Intermediate"
    ADVANCED = "Advanced"


class PracticeMode(str, Enum):
    FREE_TALK = "Free Talk"
    ROLE_PLAY = "Role Play"
    GRAMMAR_FOCUS = "Grammar Focus"


class VoiceName(str, Enum):
    PUCK = "Puck"
    CHARON = "Charon"
    KORE = "Kore"
    FENRIR = "Fenrir"
    ZEPHYR = "Zephyr"


@dataclass
class SessionConfig:
    """Parameters passed through to the remote agent; never interpreted here."""

    language: str = Language.SPANISH.value
    proficiency: str = Proficiency.BEGINNER.value
    voice: str = VoiceName.ZEPHYR.value
    mode: str = PracticeMode.FREE_TALK.value


@dataclass
class AudioFrame:
    samples: np.ndarray
    sample_rate_hz: int


@dataclass
class AudioChunk:
    samples: np.ndarray
    sample_rate_hz: int
    duration: float


@dataclass
class EncodedAudio:
    mime_type: str
    data: bytes


@dataclass(frozen=True)
class TranscriptEvent:
    speaker: Speaker
    text: str
    is_final: bool = False


@dataclass(frozen=True)
class Message:
    id: str
    speaker: Speaker
    text: str
    created_at: datetime
    is_final: bool = False


@dataclass
class SessionRecord:
    config: SessionConfig
    messages: List[Message]
    started_at: datetime
    ended_at: datetime
    error: Optional[SessionError] = None


@dataclass
class SessionStats:
    frames_sent: int = 0
    frames_dropped: int = 0
    chunks_played: int = 0
    chunks_dropped: int = 0
    events_dropped: int = 0
