"""Bidirectional channel to the remote voice agent."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from . import codec
from .errors import ProtocolError, TransportError
from .models import EncodedAudio, Speaker, TranscriptEvent

logger = logging.getLogger("lingualive")


@dataclass(frozen=True)
class AudioPayload:
    mime_type: Optional[str]
    data: str


@dataclass(frozen=True)
class TurnComplete:
    pass


@dataclass(frozen=True)
class Interrupted:
    pass


@dataclass(frozen=True)
class ChannelClosed:
    reason: Optional[str] = None
    error: bool = False


@dataclass(frozen=True)
class MalformedMessage:
    error: ProtocolError


InboundEvent = Union[
    AudioPayload, TranscriptEvent, TurnComplete, Interrupted, ChannelClosed, MalformedMessage
]


@dataclass
class ChannelSetup:
    api_key: str
    model: str
    endpoint: str
    voice: str
    system_prompt: str
    input_sample_rate_hz: int = 16000
    output_sample_rate_hz: int = 24000
    channels: int = 1
    open_timeout_s: float = 15.0


class Channel(Protocol):
    async def send_audio(self, audio: EncodedAudio) -> None: ...

    def events(self) -> AsyncIterator[InboundEvent]: ...

    def close(self) -> None: ...

    async def wait_closed(self) -> None: ...


ChannelFactory = Callable[[ChannelSetup], Awaitable[Channel]]

_IGNORED_KEYS = frozenset(
    {
        "setupComplete",
        "usageMetadata",
        "toolCall",
        "toolCallCancellation",
        "sessionResumptionUpdate",
        "goAway",
    }
)
_TRANSCRIPTION_KEYS = (
    ("inputTranscription", Speaker.USER),
    ("outputTranscription", Speaker.AGENT),
)


def build_setup_message(setup: ChannelSetup) -> Dict[str, Any]:
    return {
        "setup": {
            "model": setup.model,
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": setup.voice}}
                },
            },
            "systemInstruction": {"parts": [{"text": setup.system_prompt}]},
            "inputAudioTranscription": {},
            "outputAudioTranscription": {},
        }
    }


def build_audio_message(audio: EncodedAudio) -> Dict[str, Any]:
    return {
        "realtimeInput": {
            "audio": {"mimeType": audio.mime_type, "data": codec.b64encode_audio(audio)}
        }
    }


def _expect_dict(value: Any, label: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ProtocolError(f"{label} must be an object, got {type(value).__name__}.")
    return value


def _parse_server_content(content: Dict[str, Any]) -> List[InboundEvent]:
    events: List[InboundEvent] = []

    for key, speaker in _TRANSCRIPTION_KEYS:
        if key not in content:
            continue
        transcription = _expect_dict(content[key], key)
        text = transcription.get("text", "")
        if not isinstance(text, str):
            raise ProtocolError(f"{key}.text must be a string.")
        events.append(
            TranscriptEvent(
                speaker=speaker,
                text=text,
                is_final=bool(transcription.get("finished", False)),
            )
        )

    model_turn = content.get("modelTurn")
    if model_turn is not None:
        parts = _expect_dict(model_turn, "modelTurn").get("parts") or []
        if not isinstance(parts, list):
            raise ProtocolError("modelTurn.parts must be a list.")
        for part in parts:
            inline = _expect_dict(part, "modelTurn part").get("inlineData")
            if inline is None:
                continue
            inline = _expect_dict(inline, "inlineData")
            data = inline.get("data")
            if not isinstance(data, str):
                raise ProtocolError("inlineData.data must be a base64 string.")
            events.append(AudioPayload(mime_type=inline.get("mimeType"), data=data))

    if content.get("interrupted"):
        events.append(Interrupted())
    if content.get("turnComplete"):
        events.append(TurnComplete())
    return events


def parse_server_message(message: Any) -> List[InboundEvent]:
    """Translate one decoded server message into inbound events.

    Raises ``ProtocolError`` when the message has no recognised shape.
    """
    message = _expect_dict(message, "Server message")
    events: List[InboundEvent] = []
    recognised = False

    if "serverContent" in message:
        recognised = True
        events.extend(_parse_server_content(_expect_dict(message["serverContent"], "serverContent")))

    ignored = _IGNORED_KEYS.intersection(message)
    if ignored:
        recognised = True
        if "goAway" in message:
            logger.warning("Agent announced disconnect: %s", message["goAway"])

    if not recognised:
        raise ProtocolError(f"Unrecognised server message keys: {sorted(message)}")
    return events


def _close_reason(source: Any) -> Optional[str]:
    frame = getattr(source, "rcvd", None)
    if frame is not None:
        reason = getattr(frame, "reason", "")
        return f"{frame.code} {reason}".strip()
    code = getattr(source, "close_code", None)
    reason = getattr(source, "close_reason", None)
    if code is None and not reason:
        return None
    return f"{code} {reason or ''}".strip()


class WebSocketChannel:
    """Gemini Live style JSON channel over a websocket."""

    def __init__(self, connection) -> None:
        self._connection = connection
        self._closing = False
        self._close_task: Optional[asyncio.Future] = None

    @classmethod
    async def open(cls, setup: ChannelSetup) -> "WebSocketChannel":
        url = f"{setup.endpoint}?key={setup.api_key}"
        try:
            connection = await websockets.connect(
                url, max_size=None, open_timeout=setup.open_timeout_s
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise TransportError("Could not reach the voice agent.", reason=str(exc)) from exc

        channel = cls(connection)
        try:
            await connection.send(json.dumps(build_setup_message(setup)))
            await asyncio.wait_for(channel._await_setup_complete(), setup.open_timeout_s)
        except ConnectionClosed as exc:
            raise TransportError(
                "Voice agent closed the connection during setup.", reason=_close_reason(exc)
            ) from exc
        except asyncio.TimeoutError as exc:
            await connection.close()
            raise TransportError("Timed out waiting for the voice agent.") from exc
        logger.info("Channel open: %s", setup.model)
        return channel

    async def _await_setup_complete(self) -> None:
        while True:
            raw = await self._connection.recv()
            try:
                message = json.loads(raw)
            except ValueError:
                logger.debug("Ignoring non-JSON frame during setup")
                continue
            if isinstance(message, dict) and "setupComplete" in message:
                return
            logger.debug("Ignoring pre-setup message: %s", message)

    async def send_audio(self, audio: EncodedAudio) -> None:
        if self._closing:
            return
        try:
            await self._connection.send(json.dumps(build_audio_message(audio)))
        except ConnectionClosed as exc:
            raise TransportError(
                "Channel closed while sending audio.", reason=_close_reason(exc)
            ) from exc

    async def events(self) -> AsyncIterator[InboundEvent]:
        try:
            async for raw in self._connection:
                try:
                    parsed = parse_server_message(json.loads(raw))
                except ValueError as exc:
                    yield MalformedMessage(ProtocolError("Server message is not JSON.", reason=str(exc)))
                    continue
                except ProtocolError as exc:
                    yield MalformedMessage(exc)
                    continue
                for event in parsed:
                    yield event
        except ConnectionClosed as exc:
            if not self._closing:
                yield ChannelClosed(reason=_close_reason(exc), error=True)
            return
        if not self._closing:
            yield ChannelClosed(reason=_close_reason(self._connection), error=False)

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; channel close skipped")
            return
        self._close_task = loop.create_task(self._connection.close())

    async def wait_closed(self) -> None:
        if self._close_task is not None:
            await self._close_task


async def open_websocket_channel(setup: ChannelSetup) -> Channel:
    return await WebSocketChannel.open(setup)
