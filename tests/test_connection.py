"""End-to-end tests for the ConnectionBridge over in-memory transports."""

import asyncio
import base64
import json

import pytest
import websockets

from streambridge.bridge import ConnectionBridge, StreamBridge
from streambridge.config import BridgeConfig
from streambridge.core.errors import ConnectError
from streambridge.core.events import ErrorEvent, RawMessage, Side, ToolCall
from streambridge.session import SessionState
from streambridge.transports.base import BaseTransport

_CLOSE = object()


class PeerReset(ConnectionResetError):
    """Socket failure carrying a numeric close code."""

    code = 1006


class FakeTransport(BaseTransport):
    """In-memory WebSocket: tests feed inbound messages and inspect what was sent."""

    def __init__(self, connected: bool = False) -> None:
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.connected = connected
        self.connect_kwargs: dict = {}
        self.connect_error: Exception | None = None
        self.disconnects = 0
        self.gate: asyncio.Event | None = None
        self.send_error: Exception | None = None

    async def connect(self, **kwargs) -> None:
        if self.connect_error:
            raise self.connect_error
        self.connect_kwargs = kwargs
        self.connected = True

    async def send(self, data: bytes | str) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.send_error:
            raise self.send_error
        if not self.connected:
            raise ConnectionResetError("socket closed")
        self.sent.append(data)

    async def recv(self) -> bytes | str:
        item = await self.inbox.get()
        if item is _CLOSE:
            self.connected = False
            raise websockets.exceptions.ConnectionClosed(None, None)
        if isinstance(item, Exception):
            raise item
        return item

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnects += 1

    def is_connected(self) -> bool:
        return self.connected

    def feed(self, message) -> None:
        self.inbox.put_nowait(json.dumps(message) if isinstance(message, dict) else message)

    def hang_up(self) -> None:
        self.inbox.put_nowait(_CLOSE)

    def messages(self) -> list[dict]:
        return [json.loads(m) for m in self.sent]

    def of_type(self, key: str, value: str) -> list[dict]:
        return [m for m in self.messages() if m.get(key) == value]


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def start_frame(stream_sid: str = "abc") -> dict:
    return {
        "event": "start",
        "streamSid": stream_sid,
        "start": {"streamSid": stream_sid, "callSid": "CA1", "tracks": ["inbound"]},
    }


def media_frame(timestamp: int, audio: bytes = b"\xff" * 160, stream_sid: str = "abc") -> dict:
    return {
        "event": "media",
        "streamSid": stream_sid,
        "media": {"track": "inbound", "timestamp": str(timestamp), "payload": b64(audio)},
    }


def audio_delta(item_id: str, audio: bytes) -> dict:
    return {"type": "response.audio.delta", "item_id": item_id, "delta": b64(audio)}


def make_config(**overrides) -> BridgeConfig:
    data = {
        "telephony": {"type": "signalwire"},
        "realtime": {"greet_on_connect": False},
        "limits": {"read_timeout": 0.05, "drain_timeout": 0.2},
    }
    for section, values in overrides.items():
        data.setdefault(section, {}).update(values)
    return BridgeConfig.from_dict(data)


async def eventually(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def gateway():
    return FakeTransport(connected=True)


@pytest.fixture
def realtime():
    return FakeTransport()


def make_bridge(gateway_transport, realtime_transport, session_config=None, **overrides) -> ConnectionBridge:
    return ConnectionBridge(
        gateway_transport,
        config=make_config(**overrides),
        session_config=session_config,
        realtime_transport=realtime_transport,
    )


async def start_bridge(bridge: ConnectionBridge) -> asyncio.Task:
    await bridge.connect("sk-test")
    return asyncio.create_task(bridge.run())


class TestConnect:

    @pytest.mark.asyncio
    async def test_connect_passes_credentials(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        connected = []
        bridge.on("connected", connected.append)
        await bridge.connect({"api_key": "sk-dict"})
        assert realtime.connect_kwargs == {"api_key": "sk-dict"}
        assert bridge.state is SessionState.NEGOTIATING_FORMAT
        assert connected == [bridge.session]
        await bridge.close()

    @pytest.mark.asyncio
    async def test_connect_failure(self, gateway, realtime):
        realtime.connect_error = OSError("connection refused")
        bridge = make_bridge(gateway, realtime)
        errors, disconnected = [], []
        bridge.on("error", errors.append)
        bridge.on("disconnected", disconnected.append)

        with pytest.raises(ConnectError):
            await bridge.connect("sk-test")

        assert bridge.state is SessionState.CLOSED
        assert len(errors) == 1
        assert errors[0].code == "connect_error"
        assert errors[0].recoverable is False
        assert len(disconnected) == 1
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_run_requires_connect(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        with pytest.raises(RuntimeError):
            await bridge.run()


class TestNegotiation:

    @pytest.mark.asyncio
    async def test_start_negotiates_once(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        negotiated = []
        bridge.on("media_format_negotiated", negotiated.append)
        task = await start_bridge(bridge)

        gateway.feed(start_frame("abc"))
        await eventually(lambda: realtime.of_type("type", "session.update"))

        assert bridge.state is SessionState.ACTIVE
        assert bridge.session.stream_sid == "abc"
        assert bridge.session.call_sid == "CA1"
        updates = realtime.of_type("type", "session.update")
        assert len(updates) == 1
        assert updates[0]["session"]["input_audio_format"] == "g711_ulaw"
        assert updates[0]["session"]["output_audio_format"] == "g711_ulaw"
        assert len(negotiated) == 1

        # A repeated start does not renegotiate
        gateway.feed(start_frame("abc"))
        gateway.hang_up()
        await asyncio.wait_for(task, 2)
        assert len(realtime.of_type("type", "session.update")) == 1

    @pytest.mark.asyncio
    async def test_session_config_is_merged(self, gateway, realtime):
        session_config = {"voice": "alloy", "input_audio_format": "pcm16", "output_audio_format": "pcm16"}
        bridge = make_bridge(gateway, realtime, session_config=session_config)
        task = await start_bridge(bridge)

        gateway.feed(start_frame())
        await eventually(lambda: realtime.of_type("type", "session.update"))
        update = realtime.of_type("type", "session.update")[0]["session"]
        assert update == {"voice": "alloy", "input_audio_format": "pcm16", "output_audio_format": "pcm16"}
        assert bridge.session.audio_format.value == "pcm16"

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_greeting_follows_session_update(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime, realtime={"greet_on_connect": True})
        task = await start_bridge(bridge)

        gateway.feed(start_frame())
        await eventually(lambda: len(realtime.sent) >= 2)
        assert [m["type"] for m in realtime.messages()] == ["session.update", "response.create"]

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_mismatched_formats_end_session(self, gateway, realtime):
        bridge = make_bridge(
            gateway,
            realtime,
            session_config={"input_audio_format": "pcm16", "output_audio_format": "g711_ulaw"},
        )
        errors = []
        bridge.on("error", errors.append)
        task = await start_bridge(bridge)

        gateway.feed(start_frame())
        await asyncio.wait_for(task, 2)

        assert bridge.state is SessionState.CLOSED
        assert [e.code for e in errors] == ["unsupported_format"]
        assert realtime.of_type("type", "session.update") == []


class TestAudioFlow:

    @pytest.mark.asyncio
    async def test_caller_audio_forwarded(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        task = await start_bridge(bridge)

        gateway.feed(start_frame())
        gateway.feed(media_frame(20, b"\x7f" * 160))
        await eventually(lambda: realtime.of_type("type", "input_audio_buffer.append"))

        append = realtime.of_type("type", "input_audio_buffer.append")[0]
        assert base64.b64decode(append["audio"]) == b"\x7f" * 160
        assert bridge.session.audio_bytes_in == 160

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_audio_before_start_dropped(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        task = await start_bridge(bridge)

        gateway.feed(media_frame(0))
        gateway.feed(start_frame())
        await eventually(lambda: bridge.state is SessionState.ACTIVE)

        assert realtime.of_type("type", "input_audio_buffer.append") == []
        assert bridge.session.frames_dropped == 1

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_assistant_audio_followed_by_mark(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        task = await start_bridge(bridge)

        gateway.feed(start_frame("abc"))
        await eventually(lambda: bridge.state is SessionState.ACTIVE)
        realtime.feed(audio_delta("item_1", b"\x01" * 800))
        await eventually(lambda: len(gateway.sent) >= 2)

        media, mark = gateway.messages()[:2]
        assert media["event"] == "media"
        assert media["streamSid"] == "abc"
        assert base64.b64decode(media["media"]["payload"]) == b"\x01" * 800
        assert mark == {"event": "mark", "streamSid": "abc", "mark": {"name": "item_1:1"}}
        assert bridge.session.output_ms_since_checkpoint == 100

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_malformed_frames_dropped(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        errors = []
        bridge.on("error", errors.append)
        task = await start_bridge(bridge)

        gateway.feed(start_frame())
        gateway.feed("{not json")
        gateway.feed({"event": "media", "media": {"timestamp": "20"}})
        realtime.feed({"type": "response.audio.delta", "item_id": "item_1", "delta": "%%%"})
        gateway.feed(media_frame(40))
        await eventually(lambda: realtime.of_type("type", "input_audio_buffer.append"))
        await eventually(lambda: bridge.session.frames_dropped == 3)

        assert bridge.state is SessionState.ACTIVE
        assert {e.code for e in errors} == {"malformed_frame"}
        assert all(e.recoverable for e in errors)
        assert gateway.of_type("event", "media") == []

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_wrongly_typed_fields_dropped(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        errors = []
        bridge.on("error", errors.append)
        task = await start_bridge(bridge)

        gateway.feed(start_frame())
        gateway.feed({"event": "media", "media": {"timestamp": "20", "payload": 123}})
        gateway.feed({"event": "mark", "mark": {"name": ["item_1:1"]}})
        realtime.feed({"type": "input_audio_buffer.speech_started", "audio_start_ms": "soon"})
        realtime.feed({"type": "error", "error": "rate limited"})
        realtime.feed({"type": "response.audio.delta", "item_id": 7, "delta": b64(b"\x01" * 160)})
        await eventually(lambda: bridge.session.frames_dropped == 5)
        gateway.feed(media_frame(40))
        await eventually(lambda: realtime.of_type("type", "input_audio_buffer.append"))

        assert bridge.state is SessionState.ACTIVE
        assert len(errors) == 5
        assert {e.code for e in errors} == {"malformed_frame"}
        assert all(e.recoverable for e in errors)

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_unmapped_messages_not_forwarded(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        seen = []
        bridge.on("*", lambda topic, payload: seen.append((topic, payload)))
        task = await start_bridge(bridge)

        gateway.feed({"event": "connected", "protocol": "Call"})
        gateway.feed(start_frame())
        gateway.feed({"event": "dtmf", "dtmf": {"digit": "1"}})
        realtime.feed({"type": "session.created", "session": {}})
        realtime.feed({"type": "response.text.delta", "delta": "hi"})
        await eventually(lambda: len([t for t, _ in seen if t == "raw"]) == 4 and realtime.sent)
        await asyncio.sleep(0.05)

        wire = [p for t, p in seen if t == "wire"]
        unmapped = [p for t, p in seen if t == "raw"]
        assert len(wire) == 5
        assert {p["side"] for p in wire} == {Side.TELEPHONY, Side.REALTIME}
        assert all(isinstance(p, RawMessage) for p in unmapped)
        assert sorted(p.message_type for p in unmapped) == [
            "connected", "dtmf", "response.text.delta", "session.created"
        ]

        assert gateway.sent == []
        assert [m["type"] for m in realtime.messages()] == ["session.update"]

        gateway.hang_up()
        await asyncio.wait_for(task, 2)


class TestBargeIn:

    async def _speak(self, bridge, gateway, realtime) -> None:
        """Caller clock at 1000ms, then 200ms of assistant audio, then clock at 1120ms."""
        gateway.feed(start_frame("abc"))
        gateway.feed(media_frame(1000))
        await eventually(lambda: bridge.session.audio_bytes_in == 160)
        realtime.feed(audio_delta("item_1", b"\x01" * 1600))
        await eventually(lambda: gateway.of_type("event", "mark"))
        gateway.feed(media_frame(1120))
        await eventually(lambda: bridge.session.audio_bytes_in == 320)

    @pytest.mark.asyncio
    async def test_speech_started_truncates_and_clears(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        speech = []
        bridge.on("speech_started", speech.append)
        task = await start_bridge(bridge)
        await self._speak(bridge, gateway, realtime)

        realtime.feed({"type": "input_audio_buffer.speech_started", "audio_start_ms": 1100})
        await eventually(lambda: realtime.of_type("type", "conversation.item.truncate"))
        await eventually(lambda: gateway.of_type("event", "clear"))

        truncates = realtime.of_type("type", "conversation.item.truncate")
        assert truncates == [
            {"type": "conversation.item.truncate", "item_id": "item_1", "content_index": 0, "audio_end_ms": 120}
        ]
        assert gateway.of_type("event", "clear") == [{"event": "clear", "streamSid": "abc"}]

        # Second indicator with nothing in flight is a no-op
        realtime.feed({"type": "input_audio_buffer.speech_started", "audio_start_ms": 1200})
        await eventually(lambda: len(speech) == 2)
        await asyncio.sleep(0.05)
        assert len(realtime.of_type("type", "conversation.item.truncate")) == 1
        assert len(gateway.of_type("event", "clear")) == 1

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_no_truncate_after_playback_finished(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        speech = []
        bridge.on("speech_started", speech.append)
        task = await start_bridge(bridge)
        await self._speak(bridge, gateway, realtime)

        gateway.feed({"event": "mark", "streamSid": "abc", "mark": {"name": "item_1:1"}})
        await eventually(lambda: not bridge.session.interruption.is_speaking)
        realtime.feed({"type": "input_audio_buffer.speech_started"})
        await eventually(lambda: len(speech) == 1)
        await asyncio.sleep(0.05)

        assert realtime.of_type("type", "conversation.item.truncate") == []
        assert gateway.of_type("event", "clear") == []

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_barge_in_disabled(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime, barge_in={"enabled": False})
        speech = []
        bridge.on("speech_started", speech.append)
        task = await start_bridge(bridge)
        await self._speak(bridge, gateway, realtime)

        realtime.feed({"type": "input_audio_buffer.speech_started"})
        await eventually(lambda: len(speech) == 1)
        await asyncio.sleep(0.05)
        assert realtime.of_type("type", "conversation.item.truncate") == []

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_manual_interrupt(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        task = await start_bridge(bridge)
        await self._speak(bridge, gateway, realtime)

        assert await bridge.interrupt() is True
        assert await bridge.interrupt() is False
        await eventually(lambda: realtime.of_type("type", "conversation.item.truncate"))
        assert realtime.of_type("type", "conversation.item.truncate")[0]["audio_end_ms"] == 120

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_late_audio_of_truncated_item_dropped(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        task = await start_bridge(bridge)
        await self._speak(bridge, gateway, realtime)
        assert await bridge.interrupt() is True
        await eventually(lambda: gateway.of_type("event", "clear"))
        sent_before = len(gateway.sent)

        # Already in flight from the realtime API when the truncate went out
        realtime.feed(audio_delta("item_1", b"\x01" * 800))
        await eventually(lambda: bridge.session.frames_dropped == 1)
        assert len(gateway.sent) == sent_before
        assert bridge.session.interruption.is_speaking is False

        realtime.feed(audio_delta("item_2", b"\x02" * 800))
        await eventually(lambda: len(gateway.sent) == sent_before + 2)
        media, mark = gateway.messages()[-2:]
        assert media["event"] == "media"
        assert mark["mark"]["name"].startswith("item_2:")

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_stale_mark_echo_does_not_end_new_segment(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        echoes = []
        bridge.on("mark", echoes.append)
        task = await start_bridge(bridge)
        await self._speak(bridge, gateway, realtime)
        assert await bridge.interrupt() is True

        realtime.feed(audio_delta("item_2", b"\x02" * 800))
        await eventually(lambda: len(gateway.of_type("event", "mark")) == 2)
        # The gateway echoes the mark cleared by the barge-in
        gateway.feed({"event": "mark", "streamSid": "abc", "mark": {"name": "item_1:1"}})
        await eventually(lambda: len(echoes) == 1)
        assert bridge.session.interruption.is_speaking is True

        speech = []
        bridge.on("speech_started", speech.append)
        realtime.feed({"type": "input_audio_buffer.speech_started"})
        await eventually(lambda: len(speech) == 1)
        await eventually(lambda: len(realtime.of_type("type", "conversation.item.truncate")) == 2)

        assert realtime.of_type("type", "conversation.item.truncate")[1]["item_id"] == "item_2"

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_local_vad_barge_in(self, gateway, realtime):
        bridge = make_bridge(
            gateway,
            realtime,
            barge_in={"local_vad": True, "energy_threshold": 1000, "min_speech_frames": 2},
        )
        task = await start_bridge(bridge)
        await self._speak(bridge, gateway, realtime)

        loud = b"\x80" * 160
        gateway.feed(media_frame(1140, loud))
        gateway.feed(media_frame(1160, loud))
        await eventually(lambda: realtime.of_type("type", "conversation.item.truncate"))
        assert realtime.of_type("type", "conversation.item.truncate")[0]["audio_end_ms"] == 160

        gateway.hang_up()
        await asyncio.wait_for(task, 2)


class TestEvents:

    @pytest.mark.asyncio
    async def test_tool_events(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        starts, ends = [], []
        bridge.on("tool_start", starts.append)
        bridge.on("tool_end", ends.append)
        task = await start_bridge(bridge)

        item = {"type": "function_call", "call_id": "call_1", "name": "lookup", "arguments": "{}"}
        realtime.feed({"type": "response.output_item.added", "item": item})
        realtime.feed({"type": "response.output_item.done", "item": item})
        await eventually(lambda: ends)

        assert isinstance(starts[0], ToolCall)
        assert starts[0].name == "lookup"
        assert ends[0].tool_call_id == "call_1"

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_realtime_error_is_published(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        errors = []
        bridge.on("error", errors.append)
        task = await start_bridge(bridge)

        realtime.feed({"type": "error", "error": {"code": "invalid_value", "message": "bad"}})
        await eventually(lambda: errors)
        assert isinstance(errors[0], ErrorEvent)
        assert errors[0].code == "invalid_value"
        assert bridge.state is SessionState.NEGOTIATING_FORMAT

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_decorator_and_off(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        received = []

        @bridge.on("start")
        def on_start(event):
            received.append(event.stream_sid)

        def unused(event):
            received.append("unused")

        bridge.on("start", unused)
        bridge.off("start", unused)
        task = await start_bridge(bridge)

        gateway.feed(start_frame("xyz"))
        await eventually(lambda: received)
        assert received == ["xyz"]

        gateway.hang_up()
        await asyncio.wait_for(task, 2)


class TestSendEvent:

    @pytest.mark.asyncio
    async def test_send_dict(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        task = await start_bridge(bridge)

        await bridge.send_event({"type": "response.create", "response": {"instructions": "Say hi"}})
        await eventually(lambda: realtime.sent)
        assert realtime.messages()[0]["response"]["instructions"] == "Say hi"

        gateway.hang_up()
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_send_when_not_connected_is_dropped(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        await bridge.send_event({"type": "response.create"})
        assert realtime.sent == []
        assert bridge.state is SessionState.CONNECTING


class TestClose:

    @pytest.mark.asyncio
    async def test_gateway_hang_up_closes_session(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        disconnected = []
        bridge.on("disconnected", disconnected.append)
        task = await start_bridge(bridge)

        gateway.feed(start_frame())
        await eventually(lambda: realtime.sent)
        gateway.hang_up()
        await asyncio.wait_for(task, 2)

        assert bridge.state is SessionState.CLOSED
        assert bridge.session.close_reason == "telephony_closed"
        assert realtime.disconnects == 1
        assert gateway.disconnects == 1
        assert disconnected == [bridge.session]

        # Nothing is written once closed
        sent_gateway, sent_realtime = len(gateway.sent), len(realtime.sent)
        realtime.feed(audio_delta("item_1", b"\x01" * 160))
        await bridge.send_event({"type": "response.create"})
        await asyncio.sleep(0.05)
        assert len(gateway.sent) == sent_gateway
        assert len(realtime.sent) == sent_realtime

    @pytest.mark.asyncio
    async def test_stop_frame_closes_session(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        task = await start_bridge(bridge)

        gateway.feed(start_frame())
        gateway.feed({"event": "stop", "streamSid": "abc", "stop": {}})
        await asyncio.wait_for(task, 2)

        assert bridge.state is SessionState.CLOSED
        assert bridge.session.close_reason == "stop"

    @pytest.mark.asyncio
    async def test_realtime_close_closes_session(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        task = await start_bridge(bridge)

        realtime.hang_up()
        await asyncio.wait_for(task, 2)
        assert bridge.state is SessionState.CLOSED
        assert bridge.session.close_reason == "realtime_closed"
        assert gateway.disconnects == 1

    @pytest.mark.asyncio
    async def test_terminate(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        disconnected = []
        bridge.on("disconnected", disconnected.append)
        task = await start_bridge(bridge)

        await bridge.terminate()
        await asyncio.wait_for(task, 2)
        await bridge.close()

        assert bridge.state is SessionState.CLOSED
        assert bridge.session.close_reason == "terminated"
        assert len(disconnected) == 1

    @pytest.mark.asyncio
    async def test_backpressure_closes_session(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime, limits={"outbound_queue_size": 2})
        errors = []
        bridge.on("error", errors.append)
        # The realtime peer stops reading
        realtime.gate = asyncio.Event()
        task = await start_bridge(bridge)

        gateway.feed(start_frame())
        for i in range(6):
            gateway.feed(media_frame(20 * i))
        await asyncio.wait_for(task, 2)

        assert bridge.state is SessionState.CLOSED
        assert [e.code for e in errors] == ["backpressure_exceeded"]
        assert bridge.session.close_reason == "backpressure_exceeded"

    @pytest.mark.asyncio
    async def test_read_failure_closes_with_io_error(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        errors = []
        bridge.on("error", errors.append)
        task = await start_bridge(bridge)

        realtime.feed(PeerReset("connection reset by peer"))
        await asyncio.wait_for(task, 2)

        assert bridge.state is SessionState.CLOSED
        assert bridge.session.close_reason == "io_error"
        assert [e.code for e in errors] == ["io_error"]
        assert gateway.disconnects == 1

    @pytest.mark.asyncio
    async def test_write_failure_closes_with_io_error(self, gateway, realtime):
        bridge = make_bridge(gateway, realtime)
        errors = []
        bridge.on("error", errors.append)
        task = await start_bridge(bridge)
        realtime.send_error = PeerReset("broken pipe")

        gateway.feed(start_frame())
        await asyncio.wait_for(task, 2)

        assert bridge.session.close_reason == "io_error"
        assert [e.code for e in errors] == ["io_error"]


class TestStreamBridge:

    @pytest.mark.asyncio
    async def test_handle_connection(self, gateway, realtime):
        app = StreamBridge(make_config())
        seen = []
        app.on("start", lambda event: seen.append(event.stream_sid))

        gateway.feed(start_frame("abc"))
        gateway.feed({"event": "stop", "streamSid": "abc"})
        await asyncio.wait_for(app.handle_connection(gateway, realtime_transport=realtime), 2)

        assert seen == ["abc"]
        assert app.sessions.all_sessions == []
        assert realtime.of_type("type", "session.update")

    @pytest.mark.asyncio
    async def test_connect_failure_is_contained(self, gateway, realtime, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        realtime.connect_error = OSError("refused")
        app = StreamBridge(make_config())
        errors = []
        app.on("error", errors.append)

        await app.handle_connection(gateway, realtime_transport=realtime)

        assert len(errors) == 1
        assert gateway.disconnects == 1
        assert app.sessions.active_count == 0
