"""StreamBridge - connection bridge between a telephony media stream and the realtime API.

The ConnectionBridge owns both WebSockets of one call. It runs two read
loops concurrently:
1. telephony -> realtime: Gateway frame -> Translator -> Codec -> Realtime WebSocket
2. realtime -> telephony: Realtime event -> Translator -> Codec -> Gateway WebSocket

Writes go through one bounded outbox per socket, so a slow peer never
blocks the opposite loop. Every raw message, translated event and error is
published on the session's event bus.

StreamBridge is the application-level entry point: it accepts gateway
connections and runs one ConnectionBridge per call.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import websockets
from loguru import logger

from streambridge.audio.policy import AudioFormatPolicy
from streambridge.config import BridgeConfig, load_config
from streambridge.core import bus as topics
from streambridge.core.bus import EventBus, Handler
from streambridge.core.errors import (
    BackpressureExceededError,
    BridgeError,
    ConnectError,
    MalformedFrameError,
    UnsupportedFormatError,
)
from streambridge.core.events import (
    AnyEvent,
    AudioFormat,
    AudioFrame,
    ErrorEvent,
    FormatNegotiated,
    Mark,
    ResponseCreate,
    Side,
    SpeechStarted,
    StreamStarted,
    StreamStopped,
    ToolCall,
)
from streambridge.serializers.realtime import RealtimeSerializer
from streambridge.serializers.twilio import create_telephony_serializer
from streambridge.session import BargeInDetector, BridgeSession, SessionState, SessionStore
from streambridge.transports.base import BaseTransport, BoundedSender
from streambridge.transports.websocket import (
    RealtimeClientTransport,
    WebSocketServer,
    WebSocketServerTransport,
)
from streambridge.translator import ProtocolTranslator
from streambridge.webhook import webhook_handler

# Socket-level failures that end a session when connecting
_CONNECT_ERRORS = (OSError, asyncio.TimeoutError, ValueError, websockets.exceptions.WebSocketException)


class ConnectionBridge:
    """Bridges one gateway media stream to one realtime API session.

    Usage:
        bridge = ConnectionBridge(gateway_transport, config={"audio_format": "pcm16"})

        @bridge.on("*")
        async def log_everything(topic, payload):
            ...

        await bridge.connect("sk-...")
        await bridge.run()
    """

    def __init__(
        self,
        telephony_transport: BaseTransport,
        config: BridgeConfig | dict | str | Path | None = None,
        policy: AudioFormatPolicy | None = None,
        session_config: dict[str, Any] | None = None,
        realtime_transport: BaseTransport | None = None,
    ) -> None:
        self.config = load_config(config)
        self.policy = policy or AudioFormatPolicy(self.config.audio.format)
        self.session_config = dict(self.config.agent if session_config is None else session_config)

        detector = None
        if self.config.barge_in.local_vad:
            detector = BargeInDetector(
                energy_threshold=self.config.barge_in.energy_threshold,
                min_speech_frames=self.config.barge_in.min_speech_frames,
            )
        self.session = BridgeSession(barge_in_detector=detector)
        self.bus = EventBus()

        self.telephony = telephony_transport
        self.realtime = realtime_transport or RealtimeClientTransport(
            url=self.config.realtime.url,
            model=self.config.realtime.model,
            open_timeout=self.config.realtime.open_timeout,
        )
        self.translator = ProtocolTranslator(
            telephony=create_telephony_serializer(self.config.telephony.type),
            realtime=RealtimeSerializer(),
            audio_format=self.policy.default_format,
        )

        limit = self.config.limits.outbound_queue_size
        self._telephony_out = BoundedSender(self.telephony, Side.TELEPHONY.value, limit)
        self._realtime_out = BoundedSender(self.realtime, Side.REALTIME.value, limit)

        self._reader_tasks: list[asyncio.Task] = []
        self._writer_tasks: list[asyncio.Task] = []
        self._closing = False
        self._closed = asyncio.Event()
        self._error_reported = False

    # ------------------------------------------------------------------
    # Subscription API
    # ------------------------------------------------------------------

    def on(self, topic: str | Any, handler: Handler | None = None) -> Any:
        """Subscribe to a topic, or to every topic with ``"*"``.

        Usable directly (``bridge.on("error", fn)``) or as a decorator
        (``@bridge.on("connected")``).
        """
        if handler is None:
            def decorator(fn: Handler) -> Handler:
                return self.bus.subscribe(topic, fn)
            return decorator
        return self.bus.subscribe(topic, handler)

    def off(self, topic: str | Any, handler: Handler) -> None:
        self.bus.unsubscribe(topic, handler)

    @property
    def state(self) -> SessionState:
        return self.session.state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, credentials: str | dict[str, Any] | None = None) -> None:
        """Open the realtime connection for this call.

        Raises:
            ConnectError: The connection failed. The error has been published
                once on ``error`` and the session is CLOSED.
        """
        if isinstance(credentials, dict):
            api_key = credentials.get("api_key", "")
        else:
            api_key = credentials or ""
        api_key = api_key or self.config.api_key

        self.session.transition(SessionState.NEGOTIATING_FORMAT)
        try:
            await self.realtime.connect(api_key=api_key)
        except _CONNECT_ERRORS as e:
            error = ConnectError(f"Could not connect to realtime API: {e}")
            await self._report_error(error)
            await self.close("connect_error")
            raise error from e

        self._writer_tasks = [
            asyncio.create_task(self._telephony_out.run()),
            asyncio.create_task(self._realtime_out.run()),
        ]
        logger.info(f"Session {self.session.session_id}: realtime connected, awaiting stream start")
        await self.bus.publish(topics.CONNECTED, self.session)

    async def run(self) -> None:
        """Pump both directions until either side closes, then close the session."""
        if self.session.state is SessionState.CONNECTING:
            raise RuntimeError("connect() must succeed before run()")
        if self.session.is_closed:
            return

        self._reader_tasks = [
            asyncio.create_task(self._telephony_loop()),
            asyncio.create_task(self._realtime_loop()),
        ]
        done, _ = await asyncio.wait(
            self._reader_tasks + self._writer_tasks,
            return_when=asyncio.FIRST_COMPLETED,
        )

        reason = "normal"
        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                reason = exc.code if isinstance(exc, BridgeError) else "io_error"
                await self._report_error(exc)
            elif isinstance(task.result(), str):
                reason = task.result()

        await self.close(reason)

    async def terminate(self) -> None:
        """Explicitly end the session (e.g. the application hangs up)."""
        await self.close("terminated")

    async def close(self, reason: str = "normal") -> None:
        """Tear the session down: drain or discard pending frames, close both sockets.

        Safe to call more than once and from any task; later calls wait for
        the first to finish.
        """
        if self._closing:
            await self._closed.wait()
            return
        self._closing = True
        self.session.close_reason = reason
        self.session.transition(SessionState.CLOSING)
        logger.info(f"Session {self.session.session_id} closing ({reason})")

        current = asyncio.current_task()
        readers = [t for t in self._reader_tasks if t is not current and not t.done()]
        for task in readers:
            task.cancel()

        # Queued frames get a bounded chance to drain
        for sender in (self._telephony_out, self._realtime_out):
            sender.close()
        writers = [t for t in self._writer_tasks if not t.done()]
        if writers:
            _, pending = await asyncio.wait(writers, timeout=self.config.limits.drain_timeout)
            for task in pending:
                task.cancel()
        for sender in (self._telephony_out, self._realtime_out):
            dropped = sender.discard()
            if dropped:
                logger.warning(f"Discarded {dropped} pending {sender.side} frames on close")

        await asyncio.gather(*readers, *self._writer_tasks, return_exceptions=True)

        for transport in (self.realtime, self.telephony):
            try:
                await transport.disconnect()
            except Exception as e:
                logger.debug(f"Disconnect failed: {e}")

        self.session.transition(SessionState.CLOSED)
        self._closed.set()
        logger.info(
            f"Session ended: {self.session.session_id} "
            f"(duration: {self.session.duration_ms}ms, "
            f"in: {self.session.audio_bytes_in}B, out: {self.session.audio_bytes_out}B, "
            f"dropped: {self.session.frames_dropped})"
        )
        await self.bus.publish(topics.DISCONNECTED, self.session)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    # ------------------------------------------------------------------
    # Outbound API
    # ------------------------------------------------------------------

    async def send_event(self, event: AnyEvent | dict[str, Any]) -> None:
        """Best-effort write of a client event to the realtime API.

        Accepts a StreamBridge event or a raw client event dict. When the
        realtime side is not connected the event is logged and dropped.
        """
        if self.session.is_closed or not self.realtime.is_connected():
            logger.warning(f"Realtime API not connected; dropping {self._describe(event)}")
            return

        if isinstance(event, dict):
            wire = json.dumps(event)
        else:
            wire = await self.translator.to_realtime(event)
            if wire is None:
                logger.warning(f"No realtime mapping for {self._describe(event)}; dropped")
                return

        try:
            self._realtime_out.put(wire)
        except BackpressureExceededError as e:
            await self._report_error(e)
            await self.close(e.code)

    async def interrupt(self) -> bool:
        """Barge in on behalf of the application. Returns True if audio was cleared."""
        return await self._barge_in("manual")

    # ------------------------------------------------------------------
    # Read loops
    # ------------------------------------------------------------------

    async def _read(self, transport: BaseTransport, side: Side) -> bytes | str | None:
        """Next message from ``transport``, or None once the session or socket closed.

        The wait is sliced by the read timeout so a closed session always
        unblocks this loop within one interval.
        """
        while not self.session.is_closed:
            try:
                return await asyncio.wait_for(
                    transport.recv(), timeout=self.config.limits.read_timeout
                )
            except asyncio.TimeoutError:
                continue
            except websockets.exceptions.ConnectionClosed as e:
                logger.info(f"{side.value} socket closed: {e}")
                return None
        return None

    async def _telephony_loop(self) -> str:
        while True:
            raw = await self._read(self.telephony, Side.TELEPHONY)
            if raw is None:
                return "telephony_closed"
            await self.bus.publish(topics.WIRE, {"side": Side.TELEPHONY, "message": raw})

            events = await self._translate(self.translator.from_telephony, raw, Side.TELEPHONY)
            for event in events:
                await self._handle_telephony_event(event)
                if isinstance(event, StreamStopped):
                    return "stop"

    async def _realtime_loop(self) -> str:
        while True:
            raw = await self._read(self.realtime, Side.REALTIME)
            if raw is None:
                return "realtime_closed"
            await self.bus.publish(topics.WIRE, {"side": Side.REALTIME, "message": raw})

            events = await self._translate(self.translator.from_realtime, raw, Side.REALTIME)
            for event in events:
                await self._handle_realtime_event(event)

    async def _translate(self, parse, raw: bytes | str, side: Side) -> list[AnyEvent]:
        try:
            return await parse(raw)
        except (MalformedFrameError, UnsupportedFormatError) as e:
            self.session.frames_dropped += 1
            logger.warning(f"Dropped malformed {side.value} frame: {e}")
            await self.bus.publish(
                topics.ERROR,
                ErrorEvent(
                    side=side,
                    call_id=self.session.call_id,
                    code=e.code,
                    message=str(e),
                    recoverable=True,
                ),
            )
            return []

    # ------------------------------------------------------------------
    # Telephony -> realtime
    # ------------------------------------------------------------------

    async def _handle_telephony_event(self, event: AnyEvent) -> None:
        if isinstance(event, AudioFrame):
            await self._on_caller_audio(event)
        elif isinstance(event, StreamStarted):
            self.session.stream_sid = event.stream_sid
            self.session.call_sid = event.call_id
            self.session.custom_parameters = event.custom_parameters
            logger.info(f"Stream started: {event.stream_sid} (call {event.call_id or '-'})")
            await self.bus.publish(event.event_type, event)
            await self._negotiate()
            return
        elif isinstance(event, Mark):
            self.session.interruption.acknowledge(event.name)
        elif isinstance(event, StreamStopped):
            logger.info(f"Stream stopped: {self.session.stream_sid}")

        await self.bus.publish(event.event_type, event)

    async def _on_caller_audio(self, frame: AudioFrame) -> None:
        if not self.session.is_active:
            self.session.frames_dropped += 1
            logger.debug("Dropping caller audio received before format negotiation")
            return

        self.session.audio_bytes_in += len(frame.data)
        if frame.timestamp_ms is not None:
            self.session.interruption.on_media_timestamp(frame.timestamp_ms)

        detector = self.session.barge_in_detector
        if (
            detector
            and self.config.barge_in.enabled
            and self.session.interruption.is_speaking
            and detector.check(frame.data)
        ):
            await self._barge_in("local_vad")

        wire = await self.translator.forward(frame)
        if wire is not None:
            self._realtime_out.put(wire)

    async def _negotiate(self) -> None:
        """Resolve the audio format and send it to the realtime API (once per session)."""
        if self.session.state is not SessionState.NEGOTIATING_FORMAT:
            logger.warning(f"Ignoring repeated stream start in state {self.session.state.value}")
            return

        session_config = self.policy.resolve(self.session_config)
        audio_format = AudioFormat(session_config["input_audio_format"])
        self.session.negotiate(audio_format)
        self.translator.set_format(audio_format)

        negotiated = FormatNegotiated(
            call_id=self.session.call_id,
            input_format=audio_format,
            output_format=audio_format,
            session=session_config,
        )
        wire = await self.translator.to_realtime(negotiated)
        if wire is not None:
            self._realtime_out.put(wire)
        self.session.transition(SessionState.ACTIVE)
        logger.info(f"Session {self.session.session_id} active ({audio_format.value})")
        await self.bus.publish(negotiated.event_type, negotiated)

        if self.config.realtime.greet_on_connect:
            await self.send_event(ResponseCreate(call_id=self.session.call_id))

    # ------------------------------------------------------------------
    # Realtime -> telephony
    # ------------------------------------------------------------------

    async def _handle_realtime_event(self, event: AnyEvent) -> None:
        event.call_id = self.session.call_id

        if isinstance(event, AudioFrame):
            await self._on_assistant_audio(event)
        elif isinstance(event, SpeechStarted):
            await self.bus.publish(event.event_type, event)
            if self.config.barge_in.enabled:
                await self._barge_in("speech_started")
            return
        elif isinstance(event, ToolCall):
            await self.bus.publish(event.event_type, event)
            await self.bus.publish(
                topics.TOOL_START if event.phase == "start" else topics.TOOL_END, event
            )
            return
        elif isinstance(event, ErrorEvent):
            logger.warning(f"Realtime API error [{event.code}]: {event.message}")

        await self.bus.publish(event.event_type, event)

    async def _on_assistant_audio(self, frame: AudioFrame) -> None:
        if not self.session.is_active or not self.session.stream_sid:
            self.session.frames_dropped += 1
            logger.debug("Dropping AI audio: no active media stream")
            return

        interruption = self.session.interruption
        if interruption.is_truncated(frame.item_id):
            # Late delta of an item the caller already interrupted
            self.session.frames_dropped += 1
            logger.debug(f"Dropping AI audio for truncated item {frame.item_id}")
            return

        was_speaking = interruption.is_speaking
        mark = interruption.on_output_audio(frame.item_id, len(frame.data))
        if not was_speaking and self.session.barge_in_detector:
            self.session.barge_in_detector.reset()

        wire = await self.translator.forward(frame)
        if wire is None:
            return
        self._telephony_out.put(wire)
        mark_wire = await self.translator.to_telephony(Mark(call_id=self.session.call_id, name=mark.name))
        if mark_wire is not None:
            self._telephony_out.put(mark_wire)
        self.session.audio_bytes_out += len(frame.data)

    async def _barge_in(self, source: str) -> bool:
        interruption = self.session.interruption.interrupt(self.session.call_id)
        if interruption is None:
            return False

        # AI audio still queued for the gateway is dropped with the rest
        dropped = self._telephony_out.discard()
        logger.debug(f"Barge-in ({source}): dropped {dropped} queued telephony frames")

        clear_wire = await self.translator.to_telephony(interruption.clear)
        if clear_wire is not None:
            self._telephony_out.put(clear_wire)
        truncate_wire = await self.translator.to_realtime(interruption.truncate)
        if truncate_wire is not None:
            self._realtime_out.put(truncate_wire)

        await self.bus.publish(interruption.clear.event_type, interruption.clear)
        await self.bus.publish(interruption.truncate.event_type, interruption.truncate)
        return True

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    async def _report_error(self, exc: BaseException) -> None:
        """Publish a connection-level error on ``error``, once per session."""
        if self._error_reported:
            logger.debug(f"Suppressing further session error: {exc}")
            return
        self._error_reported = True
        code = exc.code if isinstance(exc, BridgeError) else "io_error"
        logger.error(f"Session {self.session.session_id} failed [{code}]: {exc}")
        await self.bus.publish(
            topics.ERROR,
            ErrorEvent(
                call_id=self.session.call_id,
                code=code,
                message=str(exc),
                recoverable=False,
            ),
        )

    @staticmethod
    def _describe(event: AnyEvent | dict[str, Any]) -> str:
        if isinstance(event, dict):
            return str(event.get("type", "event"))
        return event.event_type.value


class StreamBridge:
    """Accepts gateway media streams and bridges each call to the realtime API.

    Usage (config-driven):
        bridge = StreamBridge("bridge.yaml")
        bridge.run()

    Usage (programmatic):
        bridge = StreamBridge({"telephony": "signalwire", "audio_format": "pcm16"})

        @bridge.on("*")
        async def log_event(topic, payload):
            print(topic, payload)

        bridge.run()
    """

    def __init__(
        self,
        config: BridgeConfig | dict | str | Path | None = None,
        policy: AudioFormatPolicy | None = None,
    ) -> None:
        self.config = load_config(config)
        self.policy = policy or AudioFormatPolicy(self.config.audio.format)
        self.sessions = SessionStore()
        self._handlers: list[tuple[Any, Handler]] = []
        self._server: WebSocketServer | None = None

    def on(self, topic: str | Any, handler: Handler | None = None) -> Any:
        """Register a handler on every call's bus (``"*"`` for all topics)."""
        if handler is None:
            def decorator(fn: Handler) -> Handler:
                self._handlers.append((topic, fn))
                return fn
            return decorator
        self._handlers.append((topic, handler))
        return handler

    def create_bridge(self, telephony_transport: BaseTransport, **kwargs: Any) -> ConnectionBridge:
        bridge = ConnectionBridge(telephony_transport, config=self.config, policy=self.policy, **kwargs)
        for topic, handler in self._handlers:
            bridge.on(topic, handler)
        return bridge

    async def handle_connection(self, telephony_transport: BaseTransport, **kwargs: Any) -> None:
        """Bridge one accepted gateway connection until the call ends."""
        bridge = self.create_bridge(telephony_transport, **kwargs)
        self.sessions.add(bridge.session)
        try:
            await bridge.connect(self.config.api_key)
            await bridge.run()
        except ConnectError:
            logger.error(f"Call {bridge.session.session_id} not bridged: realtime connection failed")
        finally:
            await bridge.close()
            self.sessions.remove(bridge.session.session_id)

    # ------------------------------------------------------------------
    # Main run loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Start the bridge server (blocking)."""
        logger.info(f"StreamBridge starting: telephony={self.config.telephony.type}")
        try:
            asyncio.run(self.run_async())
        except KeyboardInterrupt:
            logger.info("StreamBridge stopped by user")

    async def run_async(self) -> None:
        """Start the bridge server (async)."""
        telephony = self.config.telephony
        self._server = WebSocketServer(
            host=telephony.listen_host,
            port=telephony.listen_port,
            path=telephony.listen_path,
            handler=self._on_gateway_connection,
            http_handler=webhook_handler(self.config) if telephony.public_url else None,
        )
        await self._server.serve_forever()

    async def _on_gateway_connection(self, transport: WebSocketServerTransport) -> None:
        await self.handle_connection(transport)
