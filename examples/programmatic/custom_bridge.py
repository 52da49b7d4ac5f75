"""Example: Programmatic bridge with custom event handlers.

This example shows how to subscribe to StreamBridge's per-call events -
useful for logging, analytics, or reacting to the model's tool calls.

Usage:
    export OPENAI_API_KEY=sk-...
    python custom_bridge.py
"""

from streambridge import BridgeConfig, BridgeSession, StreamBridge, ToolCall, Truncate


# Create the bridge with programmatic config
bridge = StreamBridge(BridgeConfig.from_dict({
    "telephony": "signalwire",
    "listen_port": 8765,
    "public_url": "wss://example.ngrok.app/media-stream",
    "audio_format": "pcm16",
    "agent": {
        "instructions": "You are a friendly receptionist. Keep answers short.",
        "voice": "alloy",
        "turn_detection": {"type": "server_vad"},
    },
}))


@bridge.on("connected")
async def handle_connected(session: BridgeSession):
    """Called once the realtime API connection is open for a new call."""
    print(f"=== New call ===")
    print(f"  Session: {session.session_id}")


@bridge.on("truncate")
async def handle_barge_in(event: Truncate):
    """Called when the caller interrupts the assistant."""
    print(f"Caller barged in: {event.item_id} heard up to {event.audio_end_ms}ms")


@bridge.on("tool_end")
async def handle_tool(call: ToolCall):
    """Called when the model has finished emitting a function call."""
    print(f"Tool call: {call.name}({call.arguments})")


@bridge.on("disconnected")
async def handle_call_end(session: BridgeSession):
    """Called when a call ends."""
    print(f"=== Call ended ===")
    print(f"  Session: {session.session_id}")
    print(f"  Duration: {session.duration_ms}ms")
    print(f"  Reason: {session.close_reason}")


if __name__ == "__main__":
    print("StreamBridge custom bridge starting...")
    print("Webhook on http://0.0.0.0:8765/incoming-call")
    print("Media stream on ws://0.0.0.0:8765/media-stream")
    bridge.run()
