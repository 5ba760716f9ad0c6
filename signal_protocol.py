# signal_protocol.py
# --------------------------------------------------------------------
# Message kinds and the JSON envelope spoken between client and relay
# --------------------------------------------------------------------

import json

CONNECTED = "connected"
JOIN_ROOM = "join-room"
LEAVE_ROOM = "leave-room"
EXISTING_USERS = "existing-users"
USER_JOINED = "user-joined"
ROOM_USERS = "room-users"
USER_LEFT = "user-left"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
TOGGLE_AUDIO = "user-toggle-audio"
TOGGLE_VIDEO = "user-toggle-video"

# kind -> key holding the forwarded payload
FORWARD_KINDS = {OFFER: "offer", ANSWER: "answer", ICE_CANDIDATE: "candidate"}
# kind -> key holding the toggle flag
TOGGLE_KINDS = {TOGGLE_AUDIO: "muted", TOGGLE_VIDEO: "videoOff"}


def encode(kind, data=None) -> str:
    return json.dumps({"type": kind, "data": data})


def decode(raw):
    """Return ``(kind, data)``, or ``(None, None)`` for anything unusable."""
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        return None, None
    if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
        return None, None
    return msg["type"], msg.get("data")
