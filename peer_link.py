# peer_link.py
# --------------------------------------------------------------------
# One PeerLink per remote participant: the aiortc session object, its
# rendering target and the negotiation state observed for it
# --------------------------------------------------------------------

import asyncio, enum, logging
from aiortc import RTCSessionDescription
from aiortc.contrib.media import MediaRelay
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from call_errors import NegotiationError
from room_store import DEFAULT_NAME

logger = logging.getLogger(__name__)


class LinkState(enum.Enum):
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


# session connectionState -> link state; "new" and "connecting" stay NEGOTIATING
_OBSERVED = {
    "connected": LinkState.CONNECTED,
    "disconnected": LinkState.DISCONNECTED,
    "failed": LinkState.FAILED,
    "closed": LinkState.CLOSED,
}


def description_to_dict(description):
    return {"sdp": description.sdp, "type": description.type}


def description_from_dict(blob):
    return RTCSessionDescription(sdp=blob["sdp"], type=blob["type"])


def candidate_to_dict(candidate):
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data):
    sdp = data["candidate"]
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


class PeerLink:
    """
    Session with a single remote participant.

    Negotiation steps on the same link run one at a time; a failing step
    raises `NegotiationError` and leaves `state` where it was.
    """

    def __init__(self, peer_id, session, view, name=DEFAULT_NAME, initiator=False, relay=None):
        self.peer_id = peer_id
        self.session = session
        self.view = view
        self.name = name
        self.initiator = initiator
        self.state = LinkState.NEGOTIATING
        self.connection_state = "new"
        self.audio_muted = False
        self.video_off = False
        self.relay = relay if relay is not None else MediaRelay()
        self.sources = {}     # kind -> local capture track fed to this link
        self._outgoing = {}   # kind -> relay subscription on the session
        self._retired = []
        self._lock = asyncio.Lock()

    def observe(self, connection_state):
        self.connection_state = connection_state
        if self.state is not LinkState.CLOSED:
            self.state = _OBSERVED.get(connection_state, LinkState.NEGOTIATING)
        return self.state

    def _subscribe(self, source):
        # every link reads its own copy; capture tracks are shared by all links
        track = self.relay.subscribe(source, buffered=False)
        self.sources[source.kind] = source
        self._outgoing[source.kind] = track
        return track

    def attach(self, sources):
        for source in sources:
            self.session.addTrack(self._subscribe(source))

    async def create_offer(self):
        async with self._lock:
            try:
                await self.session.setLocalDescription(await self.session.createOffer())
            except Exception as e:
                raise NegotiationError(self.peer_id, "offer", e) from e
            return description_to_dict(self.session.localDescription)

    async def accept_offer(self, blob):
        async with self._lock:
            try:
                await self.session.setRemoteDescription(description_from_dict(blob))
                await self.session.setLocalDescription(await self.session.createAnswer())
            except Exception as e:
                raise NegotiationError(self.peer_id, "answer", e) from e
            return description_to_dict(self.session.localDescription)

    async def accept_answer(self, blob):
        async with self._lock:
            try:
                await self.session.setRemoteDescription(description_from_dict(blob))
            except Exception as e:
                raise NegotiationError(self.peer_id, "remote answer", e) from e

    async def add_candidate(self, data):
        if not isinstance(data, dict) or not data.get("candidate"):
            logger.debug(f"End of candidates from {self.peer_id}")
            return
        async with self._lock:
            try:
                await self.session.addIceCandidate(candidate_from_dict(data))
            except Exception as e:
                raise NegotiationError(self.peer_id, "candidate", e) from e

    def replace_video(self, source):
        """Point the video sender at another capture track without renegotiating."""
        current = self._outgoing.get("video")
        sender = next((s for s in self.session.getSenders() if current is not None and s.track is current), None)
        if sender is None:
            return False
        # the sender may still be waiting on the previous subscription; stop the one before it
        for track in self._retired:
            track.stop()
        self._retired = [current]
        sender.replaceTrack(self._subscribe(source))
        return True

    async def close(self):
        self.state = LinkState.CLOSED
        await self.session.close()
        for track in [*self._outgoing.values(), *self._retired]:
            track.stop()
        self._retired = []
        await self.view.stop()

    def to_dict(self):
        return {
            "peerId": self.peer_id,
            "name": self.name,
            "state": self.state.value,
            "connectionState": self.connection_state,
            "audioMuted": self.audio_muted,
            "videoOff": self.video_off,
        }
