"""Gapless playback scheduling on the output device clock."""

from __future__ import annotations

import logging
import threading
from typing import Callable, FrozenSet, Optional, Protocol, Set

import numpy as np

from . import codec
from .models import AudioChunk

logger = logging.getLogger("lingualive")


class Node(Protocol):
    def stop(self) -> None: ...


class Graph(Protocol):
    sample_rate_hz: int

    def current_time(self) -> float: ...

    def schedule(
        self,
        samples: np.ndarray,
        start_time: float,
        on_ended: Optional[Callable[[], None]] = None,
    ) -> Node: ...


class PlaybackHandle:
    """One scheduled chunk on the output graph."""

    def __init__(self, start_time: float, duration: float, generation: int) -> None:
        self.start_time = start_time
        self.duration = duration
        self.generation = generation
        self.node: Optional[Node] = None

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    def stop(self) -> None:
        if self.node is not None:
            self.node.stop()

    def __repr__(self) -> str:
        return (
            f"PlaybackHandle(start={self.start_time:.3f}, "
            f"duration={self.duration:.3f}, generation={self.generation})"
        )


class PlaybackScheduler:
    """Schedules agent audio back to back and cancels it on barge-in.

    ``enqueue`` runs on the network side, completion callbacks arrive from the
    audio device; both mutate the timeline under one lock. A completion
    callback from an older generation (before ``cancel_all``) is ignored.
    ``on_speaking_changed`` fires on transitions only, outside the lock.
    """

    def __init__(
        self,
        graph: Graph,
        max_lookahead_s: Optional[float] = 30.0,
        on_speaking_changed: Optional[Callable[[bool], None]] = None,
    ) -> None:
        self._graph = graph
        self.max_lookahead_s = max_lookahead_s
        self._on_speaking_changed = on_speaking_changed
        self._lock = threading.RLock()
        self._active: Set[PlaybackHandle] = set()
        self._generation = 0
        self._next_start_time = graph.current_time()
        self._speaking = False
        self._closed = False
        self.chunks_played = 0
        self.chunks_dropped = 0

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    @property
    def next_start_time(self) -> float:
        with self._lock:
            return self._next_start_time

    @property
    def active_handles(self) -> FrozenSet[PlaybackHandle]:
        with self._lock:
            return frozenset(self._active)

    def enqueue_payload(
        self,
        data: bytes,
        mime_type: Optional[str] = None,
        default_rate_hz: int = 24000,
        channels: int = 1,
    ) -> Optional[PlaybackHandle]:
        """Decode a wire payload and enqueue it. Raises ``CodecError``."""
        source_rate = codec.parse_mime_rate(mime_type, default_rate_hz)
        chunk = codec.decode(
            data,
            self._graph.sample_rate_hz,
            channels=channels,
            source_sample_rate_hz=source_rate,
        )
        return self.enqueue(chunk)

    def enqueue(self, chunk: AudioChunk) -> Optional[PlaybackHandle]:
        samples = chunk.samples
        duration = chunk.duration
        if chunk.sample_rate_hz != self._graph.sample_rate_hz:
            samples = codec.resample_linear(
                samples, chunk.sample_rate_hz, self._graph.sample_rate_hz
            )
            duration = samples.size / float(self._graph.sample_rate_hz)
        if samples.size == 0:
            return None

        with self._lock:
            if self._closed:
                return None
            now = self._graph.current_time()
            start_at = max(self._next_start_time, now)
            if self.max_lookahead_s is not None and start_at - now > self.max_lookahead_s:
                self.chunks_dropped += 1
                logger.warning(
                    "Dropping %.3fs chunk: schedule is %.2fs ahead of the device clock",
                    duration,
                    start_at - now,
                )
                return None

            handle = PlaybackHandle(start_at, duration, self._generation)
            handle.node = self._graph.schedule(
                samples, start_at, on_ended=lambda: self._on_ended(handle)
            )
            self._next_start_time = start_at + duration
            self._active.add(handle)
            started = not self._speaking
            self._speaking = True

        logger.debug("Scheduled %r", handle)
        if started:
            self._emit(True)
        return handle

    def _on_ended(self, handle: PlaybackHandle) -> None:
        with self._lock:
            if handle.generation != self._generation or handle not in self._active:
                return
            self._active.discard(handle)
            self.chunks_played += 1
            drained = not self._active
            if drained:
                self._speaking = False
        if drained:
            self._emit(False)

    def cancel_all(self) -> int:
        """Stop every scheduled chunk and restart the timeline at "now"."""
        with self._lock:
            handles = list(self._active)
            self._active.clear()
            self._generation += 1
            for handle in handles:
                handle.stop()
            self._next_start_time = self._graph.current_time()
            was_speaking = self._speaking
            self._speaking = False

        if handles:
            logger.info("Cancelled %s scheduled chunks", len(handles))
        if was_speaking:
            self._emit(False)
        return len(handles)

    def close(self) -> None:
        self.cancel_all()
        with self._lock:
            self._closed = True

    def _emit(self, speaking: bool) -> None:
        if self._on_speaking_changed is not None:
            self._on_speaking_changed(speaking)
