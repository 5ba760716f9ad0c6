import json

import pytest

from call_errors import AlreadyInRoomError, MediaAccessError, NotInRoomError
from flask_call_app.app import ConnectorBridge, UiChannel, create_app


class StubConnector:
    def __init__(self):
        self.room_id = None
        self.audio_muted = False
        self.video_off = False
        self.screen_sharing = False
        self.deny = False
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def join_room(self, room_id, name=None):
        if room_id == "bad/id":
            raise ValueError("invalid room id")
        if self.deny:
            raise MediaAccessError("Permission denied")
        if self.room_id is not None:
            raise AlreadyInRoomError(self.room_id)
        self.room_id = room_id

    def _require_room(self):
        if self.room_id is None:
            raise NotInRoomError()

    async def toggle_audio(self):
        self._require_room()
        self.audio_muted = not self.audio_muted
        return self.audio_muted

    async def toggle_video(self):
        self._require_room()
        self.video_off = not self.video_off
        return self.video_off

    async def toggle_screen_share(self):
        self._require_room()
        self.screen_sharing = not self.screen_sharing
        return self.screen_sharing

    async def hang_up(self):
        self.room_id = None

    def snapshot(self):
        return {"roomId": self.room_id, "audioMuted": self.audio_muted, "peers": []}


@pytest.fixture
def bridge():
    bridge = ConnectorBridge(StubConnector())
    bridge.start()
    yield bridge
    bridge.shutdown()


@pytest.fixture
def client(bridge):
    return create_app(bridge).test_client()


def test_bridge_runs_connector_on_its_loop(bridge):
    assert bridge.connector.started
    assert bridge.snapshot()["roomId"] is None


def test_join_and_state(client):
    resp = client.post("/join", json={"roomId": "r1", "name": "Ann"})
    assert resp.status_code == 200
    assert resp.get_json()["roomId"] == "r1"
    assert client.get("/state").get_json()["roomId"] == "r1"


def test_join_errors(client, bridge):
    assert client.post("/join", json={"roomId": " "}).status_code == 400
    assert client.post("/join", json={}).status_code == 400

    resp = client.post("/join", json={"roomId": "bad/id"})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "invalid room id"

    bridge.connector.deny = True
    resp = client.post("/join", json={"roomId": "r1"})
    assert resp.status_code == 403
    assert resp.get_json()["status"] == "error"

    bridge.connector.deny = False
    assert client.post("/join", json={"roomId": "r1"}).status_code == 200
    assert client.post("/join", json={"roomId": "r2"}).status_code == 409


def test_controls(client):
    assert client.post("/toggle-audio").status_code == 409

    client.post("/join", json={"roomId": "r1"})
    assert client.post("/toggle-audio").get_json()["audioMuted"] is True
    assert client.post("/toggle-video").get_json()["videoOff"] is True
    assert client.post("/screen-share").get_json()["screenSharing"] is True
    assert client.post("/screen-share").get_json()["screenSharing"] is False

    assert client.post("/hang-up").get_json() == {"status": "ok"}
    assert client.get("/state").get_json()["roomId"] is None


def test_shutdown_stops_connector():
    stub = StubConnector()
    ConnectorBridge(stub).shutdown()
    assert stub.stopped


class FakeSock:
    def __init__(self):
        self.sent = []

    def send(self, data):
        self.sent.append(json.loads(data))


def test_ui_channel_posts_events():
    ui = UiChannel()
    ui.post("status", "dropped")          # nobody attached yet
    sock = FakeSock()
    ui.set_sock(sock)
    ui.post("peer-state", {"peerId": "p1", "state": "connected"})
    assert sock.sent == [
        {"kind": "status", "data": "WebSocket connected to backend."},
        {"kind": "peer-state", "data": {"peerId": "p1", "state": "connected"}},
    ]
    ui.set_sock(None)
    ui.post("status", "after")
    assert len(sock.sent) == 2
