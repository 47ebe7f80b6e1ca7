"""Live session state machine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple

import numpy as np

from . import codec
from .capture import CapturePipeline, InputStream
from .config import EngineConfig, validate_agent_config
from .devices import SoundDeviceAccess
from .errors import (
    CodecError,
    DeviceError,
    EnvironmentUnavailableError,
    LiveSessionError,
    SessionError,
    TransportError,
)
from .models import (
    EncodedAudio,
    Message,
    SessionConfig,
    SessionRecord,
    SessionStats,
    Speaker,
    TranscriptEvent,
)
from .playback import PlaybackScheduler
from .prompts import build_system_prompt
from .transcript import TranscriptAggregator
from .transport import (
    AudioPayload,
    Channel,
    ChannelClosed,
    ChannelFactory,
    ChannelSetup,
    InboundEvent,
    Interrupted,
    MalformedMessage,
    TurnComplete,
    open_websocket_channel,
)
from .volume import VolumeMeter

logger = logging.getLogger("lingualive")


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class OutputGraph(Protocol):
    sample_rate_hz: int
    on_failure: Optional[Callable[[DeviceError], None]]

    def current_time(self) -> float: ...

    def schedule(self, samples: np.ndarray, start_time: float, on_ended=None): ...

    def analyser_samples(self) -> np.ndarray: ...

    def close(self) -> None: ...


class DeviceAccess(Protocol):
    def ensure_available(self) -> None: ...

    def acquire_input_stream(self, sample_rate_hz: int, frame_size: int) -> InputStream: ...

    def open_output_graph(self, sample_rate_hz: int) -> OutputGraph: ...


class _ActiveSession:
    """Everything one ``connect()`` acquires; released as a unit."""

    def __init__(self, config: SessionConfig) -> None:
        self.config = config
        self.started_at = datetime.now()
        self.input_stream: Optional[InputStream] = None
        self.graph: Optional[OutputGraph] = None
        self.scheduler: Optional[PlaybackScheduler] = None
        self.channel: Optional[Channel] = None
        self.capture: Optional[CapturePipeline] = None
        self.outbound: Optional[asyncio.Queue] = None
        self.tasks: List[asyncio.Task] = []

    def release(self) -> None:
        tasks, self.tasks = self.tasks, []
        for task in tasks:
            task.cancel()
        if self.channel is not None:
            self.channel.close()
        if self.capture is not None and self.capture.running:
            self.capture.stop()
        elif self.input_stream is not None:
            self.input_stream.close()
        if self.scheduler is not None:
            self.scheduler.close()
        if self.graph is not None:
            self.graph.close()


class LiveSession:
    """One spoken conversation with the remote agent at a time.

    All state transitions run on the event loop that called ``connect()``.
    Microphone frames and playback completions arrive on audio threads and
    are posted to that loop or handled under the scheduler's lock. The
    ``is_*``, ``volume``, ``messages`` and ``last_error`` properties are plain
    snapshots, safe to read from anywhere.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        device_access: Optional[DeviceAccess] = None,
        channel_factory: Optional[ChannelFactory] = None,
        on_session_finished: Optional[Callable[[SessionRecord], None]] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self._devices = device_access or SoundDeviceAccess(
            self.config.input_device_name, self.config.output_device_name
        )
        self._channel_factory = channel_factory or open_websocket_channel
        self._on_session_finished = on_session_finished
        self._state = ConnectionState.IDLE
        self._active: Optional[_ActiveSession] = None
        self._last_error: Optional[SessionError] = None
        self._transcript = TranscriptAggregator()
        self._stats = SessionStats()
        self._volume = 0.0
        self._released_channel: Optional[Channel] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def is_connecting(self) -> bool:
        return self._state is ConnectionState.CONNECTING

    @property
    def is_speaking(self) -> bool:
        record = self._active
        return bool(record and record.scheduler and record.scheduler.is_speaking)

    @property
    def volume(self) -> float:
        return self._volume if self.is_connected else 0.0

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self._transcript.messages

    @property
    def last_error(self) -> Optional[SessionError]:
        return self._last_error

    @property
    def stats(self) -> SessionStats:
        stats = replace(self._stats)
        record = self._active
        if record is not None and record.scheduler is not None:
            stats.chunks_played += record.scheduler.chunks_played
            stats.chunks_dropped += record.scheduler.chunks_dropped
        return stats

    async def connect(self, session_config: Optional[SessionConfig] = None) -> bool:
        """Open a session; returns ``False`` with ``last_error`` set on failure."""
        if self._active is not None:
            logger.info("Replacing the active session")
            self.disconnect()

        record = _ActiveSession(session_config or self.config.session)
        self._active = record
        self._last_error = None
        self._transcript.clear()
        self._stats = SessionStats()
        self._state = ConnectionState.CONNECTING
        logger.info(
            "Connecting: language=%s proficiency=%s mode=%s voice=%s",
            record.config.language,
            record.config.proficiency,
            record.config.mode,
            record.config.voice,
        )

        loop = asyncio.get_running_loop()
        audio = self.config.audio
        try:
            self._check_environment()
            api_key = validate_agent_config(self.config.agent)

            stream = await loop.run_in_executor(
                None,
                self._devices.acquire_input_stream,
                audio.input_sample_rate_hz,
                audio.frame_size,
            )
            if self._active is not record:
                stream.close()
                return False
            record.input_stream = stream
            stream.on_failure = self._failure_sink(loop, record)

            record.graph = self._devices.open_output_graph(audio.output_sample_rate_hz)
            record.graph.on_failure = self._failure_sink(loop, record)
            record.scheduler = PlaybackScheduler(
                record.graph,
                max_lookahead_s=self.config.playback.max_lookahead_s,
                on_speaking_changed=self._log_speaking,
            )

            channel = await self._channel_factory(self._channel_setup(record.config, api_key))
            if self._active is not record:
                channel.close()
                return False
            record.channel = channel

            self._state = ConnectionState.CONNECTED
            record.outbound = asyncio.Queue(maxsize=self.config.playback.outbound_queue_size)
            record.capture = CapturePipeline(audio.input_sample_rate_hz)
            record.capture.start(record.input_stream, self._frame_sink(loop, record))
        except LiveSessionError as exc:
            if self._active is record:
                self._fail(exc)
            return False
        except BaseException:
            if self._active is record:
                self.disconnect()
            raise

        meter = VolumeMeter(record.graph.analyser_samples)
        record.tasks = [
            loop.create_task(self._send_loop(record)),
            loop.create_task(self._receive_loop(record)),
            loop.create_task(
                meter.run(
                    lambda level: self._set_volume(record, level),
                    self.config.playback.meter_interval_s,
                )
            ),
        ]
        logger.info("Session connected")
        return True

    def disconnect(self) -> None:
        """Release everything the current session holds. Safe to repeat."""
        self._teardown(None)

    async def aclose(self) -> None:
        """Disconnect and wait for the channel's closing handshake."""
        self.disconnect()
        channel, self._released_channel = self._released_channel, None
        if channel is not None:
            await channel.wait_closed()

    def _teardown(self, error: Optional[SessionError]) -> None:
        record, self._active = self._active, None
        if record is None:
            self._state = ConnectionState.IDLE
            return

        self._state = ConnectionState.CLOSING
        record.release()
        if record.channel is not None:
            self._released_channel = record.channel
        if record.scheduler is not None:
            self._stats.chunks_played += record.scheduler.chunks_played
            self._stats.chunks_dropped += record.scheduler.chunks_dropped
        self._transcript.finalize()
        self._volume = 0.0
        self._state = ConnectionState.IDLE
        logger.info(
            "Session closed: sent=%s dropped_frames=%s messages=%s",
            self._stats.frames_sent,
            self._stats.frames_dropped,
            len(self._transcript.messages),
        )

        if self._on_session_finished is None or not self._transcript.messages:
            return
        finished = SessionRecord(
            config=record.config,
            messages=list(self._transcript.messages),
            started_at=record.started_at,
            ended_at=datetime.now(),
            error=error,
        )
        try:
            self._on_session_finished(finished)
        except Exception:
            logger.exception("Session finished hook failed")

    def _fail(self, exc: LiveSessionError, record: Optional[_ActiveSession] = None) -> None:
        if record is not None and record is not self._active:
            return
        error = exc.to_session_error()
        logger.error("Session failed (%s): %s %s", error.kind.value, error.message, error.reason or "")
        self._last_error = error
        self._teardown(error)

    def _check_environment(self) -> None:
        agent = self.config.agent
        if agent.endpoint.startswith("ws://") and not agent.allow_insecure:
            raise EnvironmentUnavailableError(
                "A secure transport (wss://) is required for microphone streaming."
            )
        self._devices.ensure_available()

    def _channel_setup(self, config: SessionConfig, api_key: str) -> ChannelSetup:
        agent = self.config.agent
        audio = self.config.audio
        return ChannelSetup(
            api_key=api_key,
            model=agent.model,
            endpoint=agent.endpoint,
            voice=config.voice,
            system_prompt=build_system_prompt(config),
            input_sample_rate_hz=audio.input_sample_rate_hz,
            output_sample_rate_hz=audio.output_sample_rate_hz,
            channels=audio.channels,
            open_timeout_s=agent.open_timeout_s,
        )

    def _frame_sink(self, loop: asyncio.AbstractEventLoop, record: _ActiveSession):
        def sink(frame: EncodedAudio) -> None:
            try:
                loop.call_soon_threadsafe(self._offer_frame, record, frame)
            except RuntimeError:
                logger.debug("Event loop closed; frame dropped")

        return sink

    def _failure_sink(self, loop: asyncio.AbstractEventLoop, record: _ActiveSession):
        def sink(error: DeviceError) -> None:
            try:
                loop.call_soon_threadsafe(self._fail, error, record)
            except RuntimeError:
                logger.debug("Event loop closed; device failure not reported")

        return sink

    def _offer_frame(self, record: _ActiveSession, frame: EncodedAudio) -> None:
        if record is not self._active or record.outbound is None:
            return
        if record.outbound.full():
            record.outbound.get_nowait()
            self._stats.frames_dropped += 1
        record.outbound.put_nowait(frame)

    async def _send_loop(self, record: _ActiveSession) -> None:
        while True:
            frame = await record.outbound.get()
            try:
                await record.channel.send_audio(frame)
            except LiveSessionError as exc:
                self._fail(exc, record)
                return
            self._stats.frames_sent += 1

    async def _receive_loop(self, record: _ActiveSession) -> None:
        try:
            async for event in record.channel.events():
                self._handle_event(record, event)
                if record is not self._active:
                    return
        except LiveSessionError as exc:
            self._fail(exc, record)
            return
        self._fail(TransportError("Channel ended without a close signal."), record)

    def _handle_event(self, record: _ActiveSession, event: InboundEvent) -> None:
        if isinstance(event, AudioPayload):
            try:
                record.scheduler.enqueue_payload(
                    codec.b64decode_audio(event.data),
                    event.mime_type,
                    default_rate_hz=self.config.audio.output_sample_rate_hz,
                    channels=self.config.audio.channels,
                )
            except CodecError as exc:
                self._stats.chunks_dropped += 1
                logger.warning("Dropped audio chunk: %s", exc)
        elif isinstance(event, TranscriptEvent):
            self._transcript.append(event)
        elif isinstance(event, TurnComplete):
            self._transcript.finalize(Speaker.AGENT)
            logger.debug("Agent turn complete")
        elif isinstance(event, Interrupted):
            cancelled = record.scheduler.cancel_all()
            logger.info("Barge-in: %s chunks cancelled", cancelled)
        elif isinstance(event, ChannelClosed):
            self._fail(
                TransportError("Connection to the voice agent was closed.", reason=event.reason),
                record,
            )
        elif isinstance(event, MalformedMessage):
            self._stats.events_dropped += 1
            logger.warning("Dropped malformed message: %s", event.error)

    def _set_volume(self, record: _ActiveSession, level: float) -> None:
        if record is self._active:
            self._volume = level

    @staticmethod
    def _log_speaking(speaking: bool) -> None:
        logger.debug("Agent %s speaking", "started" if speaking else "finished")
