"""Audio device access: discovery, microphone streams and the output graph."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .errors import DeviceError, EnvironmentUnavailableError, MicrophonePermissionError

logger = logging.getLogger("lingualive")

BlockCallback = Callable[[np.ndarray], None]
FailureCallback = Callable[[DeviceError], None]


def _import_sounddevice():
    try:
        import sounddevice as sd
    except (ImportError, OSError) as exc:  # pragma: no cover - environment-dependent
        raise EnvironmentUnavailableError(
            "sounddevice with a working PortAudio library is required for audio I/O."
        ) from exc
    return sd


def list_input_devices() -> List[Dict[str, Any]]:
    sd = _import_sounddevice()
    devices = sd.query_devices()
    return [d for d in devices if d.get("max_input_channels", 0) > 0]


def list_output_devices() -> List[Dict[str, Any]]:
    sd = _import_sounddevice()
    devices = sd.query_devices()
    return [d for d in devices if d.get("max_output_channels", 0) > 0]


def select_preferred_device(
    candidates: List[Dict[str, Any]],
    prefer_name: Optional[str] = None,
    default_index: Optional[int] = None,
) -> Dict[str, Any]:
    if not candidates:
        raise EnvironmentUnavailableError("No audio devices found.")
    if prefer_name:
        preferred = [
            d for d in candidates if prefer_name.lower() in d.get("name", "").lower()
        ]
        if preferred:
            return preferred[0]
        logger.warning("No device matches %r; using default.", prefer_name)

    if default_index is not None:
        for device in candidates:
            if device.get("index") == default_index:
                return device

    return candidates[0]


def _default_index(sd, kind: int) -> Optional[int]:
    try:
        index = sd.default.device[kind]
    except (AttributeError, IndexError, TypeError):  # pragma: no cover - environment-dependent
        return None
    if index is None or index < 0:
        return None
    return int(index)


def find_input_device(prefer_name: Optional[str] = None) -> Dict[str, Any]:
    sd = _import_sounddevice()
    return select_preferred_device(
        list_input_devices(), prefer_name=prefer_name, default_index=_default_index(sd, 0)
    )


def find_output_device(prefer_name: Optional[str] = None) -> Dict[str, Any]:
    sd = _import_sounddevice()
    return select_preferred_device(
        list_output_devices(), prefer_name=prefer_name, default_index=_default_index(sd, 1)
    )


def _device_rate(device: Dict[str, Any], fallback: int) -> int:
    rate = device.get("default_samplerate")
    return int(rate) if rate else fallback


class SoundDeviceInputStream:
    """Microphone stream delivering mono float32 blocks to one callback.

    The stream is opened at ``sample_rate_hz`` when the device accepts it and
    at the device's native rate otherwise; ``sample_rate_hz`` reflects the
    rate actually delivered.
    ``on_failure`` is called from the audio thread if the stream stops without
    being closed.
    """

    def __init__(
        self,
        device: Dict[str, Any],
        sample_rate_hz: int,
        frame_size: int,
    ) -> None:
        self.device = device
        self.sample_rate_hz = sample_rate_hz
        self.frame_size = frame_size
        self.on_failure: Optional[FailureCallback] = None
        self._callback: Optional[BlockCallback] = None
        self._stream = None
        self._closed = False
        self._open()

    def _open(self) -> None:
        sd = _import_sounddevice()
        rates = [self.sample_rate_hz]
        native = _device_rate(self.device, self.sample_rate_hz)
        if native != self.sample_rate_hz:
            rates.append(native)

        last_exc: Optional[Exception] = None
        for rate in rates:
            blocksize = max(1, int(round(self.frame_size * rate / float(self.sample_rate_hz))))
            try:
                self._stream = sd.InputStream(
                    samplerate=rate,
                    channels=1,
                    dtype="float32",
                    blocksize=blocksize,
                    device=self.device.get("index"),
                    callback=self._on_block,
                    finished_callback=self._on_finished,
                )
            except sd.PortAudioError as exc:
                logger.debug("Input open at %s Hz failed: %s", rate, exc)
                last_exc = exc
                continue
            self.sample_rate_hz = rate
            self.frame_size = blocksize
            return
        raise MicrophonePermissionError(
            f"Microphone access failed for {self.device.get('name', 'input device')}.",
            reason=str(last_exc) if last_exc else None,
        )

    def _on_block(self, indata, _frames, _time, status) -> None:
        if status:
            logger.debug("Input status: %s", status)
        callback = self._callback
        if callback is None:
            return
        callback(np.array(indata[:, 0], dtype=np.float32))

    def _on_finished(self) -> None:
        if self._closed:
            return
        error = DeviceError(
            f"Microphone stream stopped: {self.device.get('name', 'input device')}."
        )
        logger.warning("%s", error)
        if self.on_failure is not None:
            self.on_failure(error)

    def start(self, callback: BlockCallback) -> None:
        if self._closed or self._stream is None:
            raise DeviceError("Input stream is closed.")
        self._callback = callback
        try:
            self._stream.start()
        except Exception as exc:
            raise DeviceError("Could not start the microphone stream.", reason=str(exc)) from exc

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._callback = None
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:  # pragma: no cover - environment-dependent
            logger.debug("Input stream close failed: %s", exc)


class _Voice:
    __slots__ = ("samples", "start_frame", "position", "on_ended", "stopped")

    def __init__(self, samples: np.ndarray, start_frame: int, on_ended) -> None:
        self.samples = samples
        self.start_frame = start_frame
        self.position = 0
        self.on_ended = on_ended
        self.stopped = False


class OutputNode:
    """A scheduled buffer on an :class:`OutputGraph`."""

    def __init__(self, graph: "OutputGraph", voice: _Voice) -> None:
        self._graph = graph
        self._voice = voice

    def stop(self) -> None:
        self._graph._stop_voice(self._voice)


class OutputGraph:
    """Mixes scheduled buffers onto a running frame clock.

    ``current_time()`` is the device's own clock: the number of frames rendered
    so far divided by the sample rate. ``render()`` is the whole audio path and
    is driven by the device callback; it can also be called directly.
    """

    def __init__(self, sample_rate_hz: int, analyser_size: int = 256) -> None:
        self.sample_rate_hz = sample_rate_hz
        self.analyser_size = analyser_size
        self._lock = threading.Lock()
        self._voices: List[_Voice] = []
        self._frames_rendered = 0
        self._tap = np.zeros(analyser_size, dtype=np.float32)
        self._closed = False
        self.on_failure: Optional[FailureCallback] = None

    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / float(self.sample_rate_hz)

    def schedule(
        self,
        samples: np.ndarray,
        start_time: float,
        on_ended: Optional[Callable[[], None]] = None,
    ) -> OutputNode:
        voice = _Voice(
            np.asarray(samples, dtype=np.float32).reshape(-1),
            int(round(start_time * self.sample_rate_hz)),
            on_ended,
        )
        with self._lock:
            if self._closed:
                raise DeviceError("Output graph is closed.")
            self._voices.append(voice)
        return OutputNode(self, voice)

    def _stop_voice(self, voice: _Voice) -> None:
        with self._lock:
            voice.stopped = True
            if voice in self._voices:
                self._voices.remove(voice)

    def render(self, frames: int) -> np.ndarray:
        out = np.zeros(frames, dtype=np.float32)
        finished: List[_Voice] = []
        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frames
            for voice in self._voices:
                # late buffers start at the head of this block, never mid-buffer
                if voice.position == 0 and voice.start_frame < block_start:
                    voice.start_frame = block_start
                begin = voice.start_frame + voice.position
                if begin >= block_end:
                    continue
                count = min(block_end - begin, voice.samples.size - voice.position)
                if count > 0:
                    dst = begin - block_start
                    out[dst:dst + count] += voice.samples[voice.position:voice.position + count]
                    voice.position += count
                if voice.position >= voice.samples.size:
                    finished.append(voice)
            for voice in finished:
                self._voices.remove(voice)
            self._frames_rendered = block_end
            np.clip(out, -1.0, 1.0, out=out)
            if frames >= self.analyser_size:
                self._tap = out[-self.analyser_size:].copy()
            else:
                self._tap = np.concatenate([self._tap[frames:], out])

        for voice in finished:
            if voice.on_ended is not None and not voice.stopped:
                voice.on_ended()
        return out

    def report_failure(self, error: DeviceError) -> None:
        """Hand a device failure to ``on_failure``; ignored once closed."""
        with self._lock:
            if self._closed:
                return
            callback = self.on_failure
        logger.warning("Output device failed: %s", error)
        if callback is not None:
            callback(error)

    def analyser_samples(self) -> np.ndarray:
        with self._lock:
            return self._tap.copy()

    @property
    def active_voices(self) -> int:
        with self._lock:
            return len(self._voices)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            for voice in self._voices:
                voice.stopped = True
            self._voices.clear()
            self._tap = np.zeros(self.analyser_size, dtype=np.float32)


class SoundDeviceOutputGraph(OutputGraph):
    def __init__(self, device: Dict[str, Any], sample_rate_hz: int) -> None:
        super().__init__(sample_rate_hz)
        self.device = device
        self._stream = None
        self._open()

    def _open(self) -> None:
        sd = _import_sounddevice()
        rates = [self.sample_rate_hz]
        native = _device_rate(self.device, self.sample_rate_hz)
        if native != self.sample_rate_hz:
            rates.append(native)

        last_exc: Optional[Exception] = None
        for rate in rates:
            self.sample_rate_hz = rate
            try:
                self._stream = sd.OutputStream(
                    samplerate=rate,
                    channels=1,
                    dtype="float32",
                    device=self.device.get("index"),
                    callback=self._on_output,
                    finished_callback=self._on_finished,
                )
                self._stream.start()
            except sd.PortAudioError as exc:
                logger.debug("Output open at %s Hz failed: %s", rate, exc)
                last_exc = exc
                self._stream = None
                continue
            return
        raise DeviceError(
            f"Could not open {self.device.get('name', 'output device')}.",
            reason=str(last_exc) if last_exc else None,
        )

    def _on_output(self, outdata, frames, _time, status) -> None:
        if status:
            logger.debug("Output status: %s", status)
        outdata[:, 0] = self.render(frames)

    def _on_finished(self) -> None:
        self.report_failure(
            DeviceError(f"Output stream stopped: {self.device.get('name', 'output device')}.")
        )

    def close(self) -> None:
        super().close()
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:  # pragma: no cover - environment-dependent
            logger.debug("Output stream close failed: %s", exc)


class SoundDeviceAccess:
    """Device access backed by PortAudio through ``sounddevice``."""

    def __init__(
        self,
        input_device_name: Optional[str] = None,
        output_device_name: Optional[str] = None,
    ) -> None:
        self.input_device_name = input_device_name
        self.output_device_name = output_device_name

    def ensure_available(self) -> None:
        if not list_input_devices():
            raise EnvironmentUnavailableError("No input device available.")
        if not list_output_devices():
            raise EnvironmentUnavailableError("No output device available.")

    def acquire_input_stream(self, sample_rate_hz: int, frame_size: int) -> SoundDeviceInputStream:
        device = find_input_device(self.input_device_name)
        logger.info("Using input device: %s", device.get("name"))
        return SoundDeviceInputStream(device, sample_rate_hz, frame_size)

    def open_output_graph(self, sample_rate_hz: int) -> SoundDeviceOutputGraph:
        device = find_output_device(self.output_device_name)
        logger.info("Using output device: %s", device.get("name"))
        return SoundDeviceOutputGraph(device, sample_rate_hz)
