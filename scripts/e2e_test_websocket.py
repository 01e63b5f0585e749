import asyncio
import sys
import json
import websockets
import os
from dotenv import load_dotenv

# Load environment variables from backend/.env if available
load_dotenv(os.path.join(os.path.dirname(__file__), '../backend/.env'))

START_CONFIG = {
    "format": "panel",
    "resolution": "Remote work is better than office work",
    "user_stance": "Remote work improves productivity",
    "moderator_style": "neutral",
    "ai_panelists": [{"name": "Dr. Chen", "archetype": "analyst"}],
}

# ブラウザ側SDKのふりをして送るイベント
SCRIPTED_EVENTS = [
    {"type": "speech-start"},
    {"type": "message", "message": {"type": "transcript", "role": "assistant",
                                    "transcriptType": "final", "transcript": "Welcome to the panel."}},
    {"type": "message", "message": {"type": "transfer-update", "destination": {"assistantName": "Dr. Chen"}}},
    {"type": "speech-end"},
    {"type": "message", "message": {"type": "transcript", "role": "user",
                                    "transcriptType": "partial", "transcript": "I disagree"}},
]


async def recv_until(websocket, predicate, timeout=10.0):
    while True:
        data = json.loads(await asyncio.wait_for(websocket.recv(), timeout=timeout))
        if data.get("type") == "error":
            print(f"❌ Error Received: {data.get('message')}")
            sys.exit(1)
        if predicate(data):
            return data


async def e2e_test():
    # Use remote URL if provided, otherwise localhost
    backend_url = os.getenv("BACKEND_URL", "ws://localhost:8005")
    if backend_url.startswith("http"):
        backend_url = backend_url.replace("http", "ws")

    uri = f"{backend_url}/ws"
    print(f"🔌 Connecting to {uri}...")

    try:
        async with websockets.connect(uri) as websocket:
            print("✅ Connected!")
            initial = await recv_until(websocket, lambda d: d.get("type") == "snapshot")
            print(f"📥 Initial status: {initial['data']['status']}")

            # 1. start → backend asks the "browser" to start the call
            await websocket.send(json.dumps({"type": "start", "data": START_CONFIG}))
            await recv_until(websocket, lambda d: d.get("type") == "command" and d.get("command") == "start")
            print("📤 Acknowledging call start")
            await websocket.send(json.dumps({"type": "event", "data": {"type": "call-start", "callId": "e2e-call"}}))
            await recv_until(websocket, lambda d: d.get("type") == "started")

            # 2. replay events
            for event in SCRIPTED_EVENTS:
                await websocket.send(json.dumps({"type": "event", "data": event}))
            await asyncio.sleep(0.5)
            snapshot = await recv_until(websocket, lambda d: d.get("type") == "snapshot")
            speaker = snapshot["data"]["speaker"]["current_speaker"]
            print(f"🎯 Current speaker: {speaker}")
            if speaker != "user":
                print("❌ Expected the user to hold the floor")
                sys.exit(1)

            # 3. stop → acknowledge call end
            await websocket.send(json.dumps({"type": "stop"}))
            await recv_until(websocket, lambda d: d.get("type") == "command" and d.get("command") == "stop")
            await websocket.send(json.dumps({"type": "event", "data": {"type": "call-end"}}))
            await recv_until(websocket, lambda d: d.get("type") == "snapshot" and d["data"]["status"] == "inactive")

            print("🎉 E2E Test Passed!")

    except Exception as e:
        print(f"❌ Test Failed: {e}")
        sys.exit(1)

if __name__ == "__main__":
    asyncio.run(e2e_test())
