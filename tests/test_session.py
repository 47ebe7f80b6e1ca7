import asyncio
import base64
import logging
import threading

import numpy as np

from lingualive import codec
from lingualive.config import AgentConfig, EngineConfig
from lingualive.devices import OutputGraph
from lingualive.errors import (
    DeviceError,
    ErrorKind,
    MicrophonePermissionError,
    ProtocolError,
    TransportError,
)
from lingualive.models import SessionConfig, Speaker, TranscriptEvent
from lingualive.session import ConnectionState, LiveSession
from lingualive.transport import (
    AudioPayload,
    ChannelClosed,
    Interrupted,
    MalformedMessage,
    TurnComplete,
)


class FakeInputStream:
    sample_rate_hz = 16000

    def __init__(self):
        self.callback = None
        self.closed = False
        self.on_failure = None

    def start(self, callback):
        self.callback = callback

    def close(self):
        self.closed = True

    def emit(self, samples):
        if self.callback is not None:
            self.callback(np.asarray(samples, dtype=np.float32))

    def fail_from_audio_thread(self, error):
        worker = threading.Thread(target=self.on_failure, args=(error,))
        worker.start()
        worker.join()


class LostOutputGraph(OutputGraph):
    def schedule(self, samples, start_time, on_ended=None):
        raise DeviceError("Output device was lost.")


class FakeDevices:
    def __init__(self, deny=False, graph_cls=OutputGraph):
        self.deny = deny
        self.graph_cls = graph_cls
        self.streams = []
        self.graphs = []

    def ensure_available(self):
        pass

    def acquire_input_stream(self, sample_rate_hz, frame_size):
        if self.deny:
            raise MicrophonePermissionError("Microphone access denied.")
        stream = FakeInputStream()
        self.streams.append(stream)
        return stream

    def open_output_graph(self, sample_rate_hz):
        graph = self.graph_cls(sample_rate_hz)
        self.graphs.append(graph)
        return graph


class FakeChannel:
    def __init__(self):
        self.sent = []
        self.close_calls = 0
        self.inbox = asyncio.Queue()
        self.waited = False

    async def send_audio(self, audio):
        self.sent.append(audio)

    async def events(self):
        while True:
            event = await self.inbox.get()
            if isinstance(event, Exception):
                raise event
            yield event

    def close(self):
        self.close_calls += 1

    async def wait_closed(self):
        self.waited = True


class FakeChannelFactory:
    def __init__(self, gate=None):
        self.setups = []
        self.channels = []
        self.gate = gate
        self.called = None

    async def __call__(self, setup):
        self.setups.append(setup)
        if self.called is not None:
            self.called.set()
        if self.gate is not None:
            await self.gate.wait()
        channel = FakeChannel()
        self.channels.append(channel)
        return channel


def _config(**agent):
    agent.setdefault("api_key", "test-key")
    return EngineConfig(agent=AgentConfig(**agent))


def _audio_payload(seconds=0.5, rate=24000):
    data = codec.encode(np.full(int(seconds * rate), 0.2, dtype=np.float32), rate).data
    return AudioPayload("audio/pcm;rate=24000", base64.b64encode(data).decode("ascii"))


async def _settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


def _session(devices=None, factory=None, **agent):
    return LiveSession(
        _config(**agent),
        device_access=devices or FakeDevices(),
        channel_factory=factory or FakeChannelFactory(),
    )


def test_connect_wires_capture_to_channel():
    async def scenario():
        devices = FakeDevices()
        factory = FakeChannelFactory()
        session = _session(devices, factory)

        assert await session.connect(SessionConfig(language="French", voice="Kore"))
        assert session.is_connected
        assert session.state is ConnectionState.CONNECTED
        setup = factory.setups[0]
        assert setup.voice == "Kore"
        assert "native French tutor" in setup.system_prompt

        devices.streams[0].emit(np.zeros(4096))
        await _settle()
        channel = factory.channels[0]
        assert len(channel.sent) == 1
        assert channel.sent[0].mime_type == "audio/pcm;rate=16000"
        assert session.stats.frames_sent == 1
        session.disconnect()

    asyncio.run(scenario())


def test_inbound_audio_and_barge_in():
    async def scenario():
        factory = FakeChannelFactory()
        session = _session(factory=factory)
        await session.connect()
        channel = factory.channels[0]

        await channel.inbox.put(_audio_payload())
        await channel.inbox.put(_audio_payload())
        await _settle()
        assert session.is_speaking

        await channel.inbox.put(Interrupted())
        await _settle()
        assert not session.is_speaking
        assert session.is_connected
        session.disconnect()

    asyncio.run(scenario())


def test_transcripts_are_folded_and_turn_complete_closes_agent_message():
    async def scenario():
        factory = FakeChannelFactory()
        session = _session(factory=factory)
        await session.connect()
        channel = factory.channels[0]

        for event in (
            TranscriptEvent(Speaker.USER, "Hel", False),
            TranscriptEvent(Speaker.USER, "lo", True),
            TranscriptEvent(Speaker.AGENT, "Hi", False),
            TurnComplete(),
            TranscriptEvent(Speaker.AGENT, "Again", False),
        ):
            await channel.inbox.put(event)
        await _settle()

        texts = [(m.speaker, m.text, m.is_final) for m in session.messages]
        assert texts == [
            (Speaker.USER, "Hello", True),
            (Speaker.AGENT, "Hi", True),
            (Speaker.AGENT, "Again", False),
        ]
        session.disconnect()
        assert session.messages[-1].is_final

    asyncio.run(scenario())


def test_second_connect_tears_down_first_session():
    async def scenario():
        devices = FakeDevices()
        factory = FakeChannelFactory()
        session = _session(devices, factory)

        await session.connect()
        await session.connect()

        assert len(factory.channels) == 2
        assert factory.channels[0].close_calls == 1
        assert factory.channels[1].close_calls == 0
        assert devices.streams[0].closed
        assert not devices.streams[1].closed
        assert devices.graphs[0].active_voices == 0
        assert session.is_connected
        session.disconnect()

    asyncio.run(scenario())


def test_disconnect_twice_is_safe():
    async def scenario():
        devices = FakeDevices()
        factory = FakeChannelFactory()
        session = _session(devices, factory)
        await session.connect()

        session.disconnect()
        session.disconnect()

        assert session.state is ConnectionState.IDLE
        assert factory.channels[0].close_calls == 1
        assert devices.streams[0].closed
        assert session.last_error is None
        assert session.volume == 0.0

    asyncio.run(scenario())


def test_disconnect_during_connect_releases_everything():
    async def scenario():
        gate = asyncio.Event()
        factory = FakeChannelFactory(gate=gate)
        factory.called = asyncio.Event()
        devices = FakeDevices()
        session = _session(devices, factory)

        task = asyncio.create_task(session.connect())
        await factory.called.wait()
        assert session.is_connecting

        session.disconnect()
        gate.set()
        assert await task is False

        assert session.state is ConnectionState.IDLE
        assert devices.streams[0].closed
        assert factory.channels[0].close_calls == 1
        assert session.last_error is None

    asyncio.run(scenario())


def test_transport_error_tears_down_and_records_one_error(caplog):
    async def scenario():
        devices = FakeDevices()
        factory = FakeChannelFactory()
        session = _session(devices, factory)
        await session.connect()
        channel = factory.channels[0]

        await channel.inbox.put(_audio_payload(seconds=2.0))
        await _settle()
        assert session.is_speaking

        await channel.inbox.put(TransportError("socket reset", reason="1006"))
        await _settle()
        return session, devices, channel

    with caplog.at_level(logging.ERROR, logger="lingualive"):
        session, devices, channel = asyncio.run(scenario())

    assert not session.is_connected
    assert not session.is_speaking
    assert devices.streams[0].closed
    assert devices.graphs[0].active_voices == 0
    assert channel.close_calls == 1
    assert session.last_error.kind is ErrorKind.TRANSPORT
    assert session.last_error.reason == "1006"
    failures = [r for r in caplog.records if "Session failed" in r.getMessage()]
    assert len(failures) == 1


def test_remote_close_is_reported_with_reason():
    async def scenario():
        factory = FakeChannelFactory()
        session = _session(factory=factory)
        await session.connect()
        await factory.channels[0].inbox.put(ChannelClosed(reason="1007 API key not valid", error=True))
        await _settle()
        return session

    session = asyncio.run(scenario())
    assert session.state is ConnectionState.IDLE
    assert session.last_error.kind is ErrorKind.TRANSPORT
    assert session.last_error.reason == "1007 API key not valid"


def test_non_fatal_errors_keep_session_alive():
    async def scenario():
        factory = FakeChannelFactory()
        session = _session(factory=factory)
        await session.connect()
        channel = factory.channels[0]

        await channel.inbox.put(MalformedMessage(ProtocolError("unknown shape")))
        await channel.inbox.put(AudioPayload("audio/pcm;rate=24000", base64.b64encode(b"\x01").decode()))
        await _settle()

        assert session.is_connected
        assert session.last_error is None
        stats = session.stats
        assert stats.events_dropped == 1
        assert stats.chunks_dropped == 1
        session.disconnect()

    asyncio.run(scenario())


def test_insecure_endpoint_fails_before_touching_devices():
    async def scenario():
        devices = FakeDevices()
        factory = FakeChannelFactory()
        session = _session(devices, factory, endpoint="ws://localhost:9000/ws")
        assert await session.connect() is False
        return session, devices, factory

    session, devices, factory = asyncio.run(scenario())
    assert session.last_error.kind is ErrorKind.ENVIRONMENT
    assert devices.streams == []
    assert factory.setups == []
    assert session.state is ConnectionState.IDLE


def test_missing_api_key_is_configuration_error(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("API_KEY", raising=False)

    async def scenario():
        devices = FakeDevices()
        session = LiveSession(
            EngineConfig(), device_access=devices, channel_factory=FakeChannelFactory()
        )
        await session.connect()
        return session, devices

    session, devices = asyncio.run(scenario())
    assert session.last_error.kind is ErrorKind.CONFIGURATION
    assert devices.streams == []


def test_permission_denied_is_recorded():
    async def scenario():
        devices = FakeDevices(deny=True)
        factory = FakeChannelFactory()
        session = _session(devices, factory)
        await session.connect()
        return session, devices, factory

    session, devices, factory = asyncio.run(scenario())
    assert session.last_error.kind is ErrorKind.PERMISSION
    assert devices.graphs == []
    assert factory.setups == []
    assert not session.is_connected


def test_reconnect_clears_previous_error():
    async def scenario():
        factory = FakeChannelFactory()
        session = _session(factory=factory)
        await session.connect()
        await factory.channels[0].inbox.put(TransportError("dropped"))
        await _settle()
        assert session.last_error is not None

        assert await session.connect()
        assert session.last_error is None
        session.disconnect()

    asyncio.run(scenario())


def test_finished_session_is_handed_off():
    records = []

    async def scenario():
        factory = FakeChannelFactory()
        session = LiveSession(
            _config(),
            device_access=FakeDevices(),
            channel_factory=factory,
            on_session_finished=records.append,
        )
        await session.connect(SessionConfig(language="German"))
        await factory.channels[0].inbox.put(TranscriptEvent(Speaker.USER, "Guten Tag", True))
        await _settle()
        session.disconnect()

    asyncio.run(scenario())
    assert len(records) == 1
    assert records[0].config.language == "German"
    assert records[0].messages[0].text == "Guten Tag"
    assert records[0].error is None


def test_volume_is_zero_when_idle():
    session = _session()
    assert not session.is_connected
    assert session.volume == 0.0


def test_output_device_lost_during_playback_ends_session():
    async def scenario():
        devices = FakeDevices(graph_cls=LostOutputGraph)
        factory = FakeChannelFactory()
        session = _session(devices, factory)
        await session.connect()
        await factory.channels[0].inbox.put(_audio_payload())
        await _settle()
        return session, devices, factory.channels[0]

    session, devices, channel = asyncio.run(scenario())
    assert not session.is_connected
    assert session.last_error.kind is ErrorKind.DEVICE
    assert session.last_error.message == "Output device was lost."
    assert devices.streams[0].closed
    assert channel.close_calls == 1


def test_microphone_stopping_mid_session_ends_session():
    async def scenario():
        devices = FakeDevices()
        factory = FakeChannelFactory()
        session = _session(devices, factory)
        await session.connect()
        devices.streams[0].fail_from_audio_thread(DeviceError("Microphone stream stopped."))
        await _settle()
        return session, devices, factory.channels[0]

    session, devices, channel = asyncio.run(scenario())
    assert session.state is ConnectionState.IDLE
    assert session.last_error.kind is ErrorKind.DEVICE
    assert devices.streams[0].closed
    assert channel.close_calls == 1


def test_output_stream_stopping_mid_session_ends_session():
    async def scenario():
        devices = FakeDevices()
        session = _session(devices)
        await session.connect()
        graph = devices.graphs[0]
        worker = threading.Thread(
            target=graph.report_failure, args=(DeviceError("Output stream stopped."),)
        )
        worker.start()
        worker.join()
        await _settle()
        return session, devices

    session, devices = asyncio.run(scenario())
    assert not session.is_connected
    assert session.last_error.kind is ErrorKind.DEVICE
    assert devices.streams[0].closed


def test_device_failure_after_disconnect_is_ignored():
    async def scenario():
        devices = FakeDevices()
        session = _session(devices)
        await session.connect()
        session.disconnect()
        devices.streams[0].fail_from_audio_thread(DeviceError("late"))
        devices.graphs[0].report_failure(DeviceError("late"))
        await _settle()
        return session

    session = asyncio.run(scenario())
    assert session.last_error is None
    assert session.state is ConnectionState.IDLE


def test_aclose_waits_for_channel_close():
    async def scenario():
        factory = FakeChannelFactory()
        session = _session(factory=factory)
        await session.connect()
        await session.aclose()
        return session, factory.channels[0]

    session, channel = asyncio.run(scenario())
    assert session.state is ConnectionState.IDLE
    assert channel.close_calls == 1
    assert channel.waited


def test_aclose_after_failure_waits_for_released_channel():
    async def scenario():
        factory = FakeChannelFactory()
        session = _session(factory=factory)
        await session.connect()
        await factory.channels[0].inbox.put(TransportError("dropped"))
        await _settle()
        assert not session.is_connected
        await session.aclose()
        return factory.channels[0]

    channel = asyncio.run(scenario())
    assert channel.close_calls == 1
    assert channel.waited


def test_failing_finished_hook_keeps_error():
    def broken_hook(record):
        raise RuntimeError("history store unavailable")

    async def scenario():
        factory = FakeChannelFactory()
        session = LiveSession(
            _config(),
            device_access=FakeDevices(),
            channel_factory=factory,
            on_session_finished=broken_hook,
        )
        await session.connect()
        channel = factory.channels[0]
        await channel.inbox.put(TranscriptEvent(Speaker.USER, "Hola", True))
        await channel.inbox.put(TransportError("dropped", reason="1006"))
        await _settle()
        return session

    session = asyncio.run(scenario())
    assert session.state is ConnectionState.IDLE
    assert session.last_error.kind is ErrorKind.TRANSPORT
    assert session.last_error.reason == "1006"
