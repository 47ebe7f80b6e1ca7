"""Microphone capture pipeline."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Protocol

import numpy as np

from . import codec
from .errors import DeviceError
from .models import AudioFrame, EncodedAudio

logger = logging.getLogger("lingualive")

FrameSink = Callable[[EncodedAudio], None]


class InputStream(Protocol):
    sample_rate_hz: int
    on_failure: Optional[Callable[[DeviceError], None]]

    def start(self, callback: Callable[[np.ndarray], None]) -> None: ...

    def close(self) -> None: ...


class CapturePipeline:
    """Encodes every microphone block and hands it to a sink.

    Blocks arrive on the audio subsystem's thread. Nothing is buffered here:
    the sink decides whether a frame is sent or dropped.
    """

    def __init__(self, wire_sample_rate_hz: int = 16000) -> None:
        self.wire_sample_rate_hz = wire_sample_rate_hz
        self.frames_captured = 0
        self._stream: Optional[InputStream] = None
        self._sink: Optional[FrameSink] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._stream is not None

    def start(self, stream: InputStream, on_frame: FrameSink) -> None:
        with self._lock:
            if self._stream is not None:
                raise RuntimeError("Capture pipeline is already running.")
            self._stream = stream
            self._sink = on_frame
        stream.start(self._on_block)
        logger.info("Capture started at %s Hz", stream.sample_rate_hz)

    def _on_block(self, samples: np.ndarray) -> None:
        with self._lock:
            stream = self._stream
            sink = self._sink
        if stream is None or sink is None:
            return
        frame = AudioFrame(samples=samples, sample_rate_hz=stream.sample_rate_hz)
        self.frames_captured += 1
        sink(self.encode_frame(frame))

    def encode_frame(self, frame: AudioFrame) -> EncodedAudio:
        samples = codec.resample_linear(
            np.asarray(frame.samples, dtype=np.float32).reshape(-1),
            frame.sample_rate_hz,
            self.wire_sample_rate_hz,
        )
        return codec.encode(samples, self.wire_sample_rate_hz)

    def stop(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
            self._sink = None
        if stream is None:
            return
        stream.close()
        logger.info("Capture stopped after %s frames", self.frames_captured)
