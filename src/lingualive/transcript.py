"""Fold partial transcripts into messages."""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional, Tuple

from .models import Message, Speaker, TranscriptEvent


def _new_message_id() -> str:
    return uuid.uuid4().hex[:12]


class TranscriptAggregator:
    """Ordered message list built from speaker-tagged text fragments.

    ``messages`` is an immutable tuple replaced after every change, so
    readers on other threads always see a complete snapshot.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self._clock = clock
        self._messages: Tuple[Message, ...] = ()

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self._messages

    def _open_message(self) -> Optional[Message]:
        if self._messages and not self._messages[-1].is_final:
            return self._messages[-1]
        return None

    def append(self, event: TranscriptEvent) -> Message:
        current = self._open_message()
        if current is not None and current.speaker == event.speaker:
            updated = replace(
                current, text=current.text + event.text, is_final=event.is_final
            )
            self._messages = self._messages[:-1] + (updated,)
            return updated

        message = Message(
            id=_new_message_id(),
            speaker=Speaker(event.speaker),
            text=event.text,
            created_at=self._clock(),
            is_final=event.is_final,
        )
        self._messages = self._messages + (message,)
        return message

    def finalize(self, speaker: Optional[Speaker] = None) -> Optional[Message]:
        """Close the open message, if any (and if it belongs to ``speaker``)."""
        current = self._open_message()
        if current is None or (speaker is not None and current.speaker != speaker):
            return None
        closed = replace(current, is_final=True)
        self._messages = self._messages[:-1] + (closed,)
        return closed

    def clear(self) -> None:
        self._messages = ()
