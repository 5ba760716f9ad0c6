# peer_connector.py
# --------------------------------------------------------------------
# Multi-party call logic: one signalling channel to the relay and one
# PeerLink (aiortc session) per remote participant in the room
# --------------------------------------------------------------------

import asyncio, logging
from dataclasses import dataclass
from typing import Optional
import websockets
from websockets.exceptions import ConnectionClosed
from aiortc import MediaStreamTrack, RTCPeerConnection
from aiortc.contrib.media import MediaRelay

import call_config
import signal_protocol as proto
from call_errors import AlreadyInRoomError, MediaAccessError, NegotiationError, NotInRoomError
from local_media import CaptureDevices, LocalStream, RemoteView
from peer_link import PeerLink, candidate_to_dict
from room_store import DEFAULT_NAME

logger = logging.getLogger(__name__)


def default_session_factory():
    return RTCPeerConnection(call_config.RTC_CONFIGURATION)


@dataclass
class LocalSession:
    room_id: str
    name: str
    stream: LocalStream
    audio_muted: bool = False
    video_off: bool = False
    screen_track: Optional[MediaStreamTrack] = None

    @property
    def screen_sharing(self):
        return self.screen_track is not None

    def video_source(self):
        if self.screen_track is not None:
            return self.screen_track
        return self.stream.video


class CallConnector:
    def __init__(self, signal_url=call_config.SIGNAL_URL, devices=None,
                 session_factory=default_session_factory, on_event=None):
        self.signal_url = signal_url
        self.devices = devices if devices is not None else CaptureDevices()
        self.session_factory = session_factory
        self.on_event = on_event
        self.session: Optional[LocalSession] = None
        self.media_relay = MediaRelay()   # fans each capture track out to every link
        self.links = {}       # remote connection id -> PeerLink
        self.roster = {}      # remote connection id -> display name
        self.room_size = 0
        self.connection_id = None
        self.ws = None
        self._connected = asyncio.Event()
        self._channel = None

    # ───────────────────────────── channel ──────────────────────────────
    async def start(self, timeout=call_config.CONNECT_TIMEOUT):
        """Open the signalling channel and wait for the relay to assign our id."""
        if self._connected.is_set():
            return
        self._channel = asyncio.create_task(self._run())
        waiter = asyncio.create_task(self._connected.wait())
        try:
            await asyncio.wait({waiter, self._channel}, timeout=timeout,
                               return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if not self._connected.is_set():
            await self._close_channel()
            raise ConnectionError(f"could not reach signalling server at {self.signal_url}")

    async def stop(self):
        await self.hang_up(reconnect=False)
        await self._close_channel()

    async def _close_channel(self):
        channel, self._channel = self._channel, None
        if self.ws is not None:
            await self.ws.close()
        if channel is not None:
            channel.cancel()
            await asyncio.gather(channel, return_exceptions=True)

    async def _run(self):
        self._post("status", f"Connecting to signalling server {self.signal_url} …")
        try:
            async with websockets.connect(self.signal_url, max_size=call_config.MAX_MSG_BYTES) as ws:
                self.ws = ws
                handlers = self._dispatch_table()
                async for raw in ws:
                    kind, data = proto.decode(raw)
                    handler = handlers.get(kind)
                    if handler is None:
                        logger.debug(f"Ignoring {kind!r} message")
                        continue
                    await handler(data)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.warning(f"Signalling error: {e}")
            self._post("status", f"Signalling error: {e}")
        except Exception as e:
            logger.exception("Signalling handler failed")
            self._post("status", f"Signalling error: {e}")
        finally:
            self.ws = None
            self.connection_id = None
            self._connected.clear()
            self._post("status", "Signalling connection closed")

    def _dispatch_table(self):
        return {
            proto.CONNECTED: self._on_connected,
            proto.EXISTING_USERS: self._on_existing_users,
            proto.USER_JOINED: self._on_user_joined,
            proto.ROOM_USERS: self._on_room_users,
            proto.USER_LEFT: self._on_user_left,
            proto.OFFER: self._on_offer,
            proto.ANSWER: self._on_answer,
            proto.ICE_CANDIDATE: self._on_ice_candidate,
            proto.TOGGLE_AUDIO: self._on_toggle_audio,
            proto.TOGGLE_VIDEO: self._on_toggle_video,
        }

    async def _send(self, kind, data):
        """Send one message to the relay; returns False when it was dropped."""
        if self.ws is None:
            logger.debug(f"Signalling channel closed, dropping {kind}")
            return False
        try:
            await self.ws.send(proto.encode(kind, data))
        except ConnectionClosed:
            logger.warning(f"Signalling channel closed while sending {kind}")
            return False
        return True

    # ──────────────────────────── join / leave ──────────────────────────
    async def join_room(self, room_id, name=None):
        if self.session is not None:
            raise AlreadyInRoomError(self.session.room_id)
        room_id = (room_id or "").strip()
        if not room_id:
            raise ValueError("room id required")
        name = (name or "").strip() or DEFAULT_NAME

        self._post("status", "Joining room…")
        try:
            stream = self.devices.open_camera()
        except MediaAccessError as e:
            logger.error(f"Error joining room {room_id}: {e}")
            self._post("status", "Error accessing camera/microphone")
            raise
        if not self._connected.is_set():
            try:
                await self.start()
            except ConnectionError:
                stream.stop()
                raise

        self.session = LocalSession(room_id=room_id, name=name, stream=stream)
        if not await self._send(proto.JOIN_ROOM, {"roomId": room_id, "userData": {"name": name}}):
            self.session = None
            stream.stop()
            self._post("status", "Lost connection to signalling server")
            raise ConnectionError(f"join for room {room_id} was not delivered")
        logger.info(f"Joined room {room_id} as {name}")
        self._post("status", f"Joined room: {room_id} as {name}")
        self._post_local_state()

    async def hang_up(self, reconnect=True):
        """Tear the call down completely, then start over on a fresh channel."""
        session, self.session = self.session, None
        if session is not None:
            if session.screen_track is not None:
                session.screen_track.stop()
            session.stream.stop()
        links = list(self.links.values())
        self.links.clear()
        for link in links:
            await link.close()
            self._post("peer-removed", {"peerId": link.peer_id})
        self.roster.clear()
        self.room_size = 0
        if session is not None:
            logger.info(f"Left room {session.room_id}")
            self._post("status", "Call ended")
            self._post_local_state()
        if reconnect:
            await self._close_channel()
            await self.start()

    # ───────────────────────────── handlers ─────────────────────────────
    async def _on_connected(self, data):
        if isinstance(data, dict) and isinstance(data.get("connectionId"), str):
            self.connection_id = data["connectionId"]
            logger.info(f"Signalling connected as {self.connection_id}")
            self._connected.set()

    async def _on_existing_users(self, users):
        if self.session is None or not isinstance(users, list):
            return
        logger.info(f"Existing users in room: {len(users)}")
        for user in users:
            peer_id, name = self._parse_user(user)
            if peer_id is None:
                continue
            self.roster[peer_id] = name
            if peer_id not in self.links:
                # they saw our user-joined and will send the offer
                self._create_link(peer_id, name, initiator=False)

    async def _on_user_joined(self, user):
        if self.session is None:
            return
        peer_id, name = self._parse_user(user)
        if peer_id is None:
            return
        self.roster[peer_id] = name
        if peer_id in self.links:
            return
        logger.info(f"New user joined: {peer_id} ({name})")
        link = self._create_link(peer_id, name, initiator=True)
        try:
            offer = await link.create_offer()
        except NegotiationError as e:
            logger.error(f"Error creating offer: {e}")
            return
        if self.links.get(peer_id) is link:
            await self._send(proto.OFFER, {"offer": offer, "target": peer_id})

    async def _on_room_users(self, users):
        if not isinstance(users, list):
            return
        self.room_size = len(users)
        for user in users:
            peer_id, name = self._parse_user(user)
            if peer_id in self.roster:
                self.roster[peer_id] = name
        self._post("room-users", {"count": self.room_size})

    async def _on_user_left(self, peer_id):
        if not isinstance(peer_id, str):
            return
        logger.info(f"User left: {peer_id}")
        self.roster.pop(peer_id, None)
        await self._remove_link(peer_id)

    async def _on_offer(self, data):
        if self.session is None or not isinstance(data, dict):
            return
        sender = data.get("sender")
        if not isinstance(sender, str) or sender == self.connection_id:
            return
        logger.info(f"Received offer from: {sender}")
        link = self.links.get(sender)
        if link is None:
            link = self._create_link(sender, self.roster.get(sender, DEFAULT_NAME), initiator=False)
        try:
            answer = await link.accept_offer(data.get("offer"))
        except NegotiationError as e:
            logger.error(f"Error handling offer: {e}")
            return
        if self.links.get(sender) is link:
            await self._send(proto.ANSWER, {"answer": answer, "target": sender})

    async def _on_answer(self, data):
        link = self._link_for(data, "answer")
        if link is None:
            return
        try:
            await link.accept_answer(data.get("answer"))
        except NegotiationError as e:
            logger.error(f"Error handling answer: {e}")

    async def _on_ice_candidate(self, data):
        link = self._link_for(data, "ice-candidate")
        if link is None:
            return
        try:
            await link.add_candidate(data.get("candidate"))
        except NegotiationError as e:
            logger.error(f"Error handling ICE candidate: {e}")

    async def _on_toggle_audio(self, data):
        link = self._toggled_link(data)
        if link is not None:
            link.audio_muted = bool(data.get("muted"))
            self._post("remote-audio", {"peerId": link.peer_id, "muted": link.audio_muted})

    async def _on_toggle_video(self, data):
        link = self._toggled_link(data)
        if link is not None:
            link.video_off = bool(data.get("videoOff"))
            self._post("remote-video", {"peerId": link.peer_id, "videoOff": link.video_off})

    def _parse_user(self, user):
        if not isinstance(user, dict):
            return None, None
        peer_id = user.get("connectionId")
        if not isinstance(peer_id, str) or peer_id == self.connection_id:
            return None, None
        name = user.get("name")
        return peer_id, name if isinstance(name, str) and name else DEFAULT_NAME

    def _link_for(self, data, kind):
        if not isinstance(data, dict):
            return None
        link = self.links.get(data.get("sender"))
        if link is None:
            logger.info(f"Ignoring {kind} from unknown peer {data.get('sender')}")
        return link

    def _toggled_link(self, data):
        if not isinstance(data, dict):
            return None
        return self.links.get(data.get("userId"))

    # ──────────────────────────── peer links ────────────────────────────
    def _create_link(self, peer_id, name, initiator):
        link = PeerLink(peer_id, self.session_factory(), RemoteView(peer_id), name=name,
                        initiator=initiator, relay=self.media_relay)
        self.links[peer_id] = link
        self._wire_session(link)
        link.attach(self._outgoing_tracks())
        self._post("peer-added", link.to_dict())
        return link

    def _outgoing_tracks(self):
        session = self.session
        return [t for t in (session.stream.audio, session.video_source()) if t is not None]

    def _wire_session(self, link):
        pc = link.session

        @pc.on("track")
        async def _track(track):
            if self.links.get(link.peer_id) is not link:
                return
            logger.info(f"Received remote {track.kind} from: {link.peer_id}")
            await link.view.add_track(track)
            self._post("remote-track", {"peerId": link.peer_id, "kind": track.kind})

        @pc.on("connectionstatechange")
        def _state():
            link.observe(pc.connectionState)
            logger.info(f"Connection state with {link.peer_id}: {pc.connectionState}")
            self._post("peer-state", link.to_dict())

        # aiortc puts its candidates in the SDP; other session objects trickle them
        @pc.on("icecandidate")
        async def _candidate(candidate):
            if candidate is not None and self.links.get(link.peer_id) is link:
                await self._send(proto.ICE_CANDIDATE, {
                    "candidate": candidate_to_dict(candidate),
                    "target": link.peer_id,
                })

    async def _remove_link(self, peer_id):
        link = self.links.pop(peer_id, None)
        if link is None:
            return
        await link.close()
        self._post("peer-removed", {"peerId": peer_id})

    # ─────────────────────────── media control ──────────────────────────
    async def toggle_audio(self):
        session = self._require_session()
        track = session.stream.audio
        if track is not None:
            track.enabled = not track.enabled
            session.audio_muted = not track.enabled
            await self._send(proto.TOGGLE_AUDIO, {"roomId": session.room_id, "muted": session.audio_muted})
            self._post_local_state()
        return session.audio_muted

    async def toggle_video(self):
        session = self._require_session()
        track = session.stream.video
        if track is not None:
            track.enabled = not track.enabled
            session.video_off = not track.enabled
            await self._send(proto.TOGGLE_VIDEO, {"roomId": session.room_id, "videoOff": session.video_off})
            self._post_local_state()
        return session.video_off

    async def toggle_screen_share(self):
        session = self._require_session()
        if session.screen_sharing:
            self.stop_screen_share()
            return False
        try:
            screen = self.devices.open_screen()
        except MediaAccessError as e:
            logger.error(f"Error sharing screen: {e}")
            raise
        session.screen_track = screen
        self._switch_video(screen)
        # the capture can also be ended from outside (window closed, device gone)
        screen.on("ended", lambda: self.stop_screen_share(screen))
        self._post("status", "Screen sharing started")
        self._post_local_state()
        return True

    def stop_screen_share(self, track=None):
        session = self.session
        if session is None or session.screen_track is None:
            return
        if track is not None and track is not session.screen_track:
            return
        screen, session.screen_track = session.screen_track, None
        self._switch_video(session.stream.video)
        screen.stop()
        self._post("status", "Screen sharing stopped")
        self._post_local_state()

    def _switch_video(self, track):
        for link in self.links.values():
            link.replace_video(track)

    def _require_session(self) -> LocalSession:
        if self.session is None:
            raise NotInRoomError()
        return self.session

    # ───────────────────────────── reporting ────────────────────────────
    def snapshot(self):
        session = self.session
        return {
            "connectionId": self.connection_id,
            "connected": self._connected.is_set(),
            "roomId": session.room_id if session else None,
            "name": session.name if session else None,
            "audioMuted": session.audio_muted if session else False,
            "videoOff": session.video_off if session else False,
            "screenSharing": session.screen_sharing if session else False,
            "roomSize": self.room_size,
            "peers": [link.to_dict() for link in self.links.values()],
        }

    def _post_local_state(self):
        snap = self.snapshot()
        self._post("local-state", {k: snap[k] for k in ("roomId", "audioMuted", "videoOff", "screenSharing")})

    def _post(self, kind, data=""):
        if self.on_event is not None:
            self.on_event(kind, data)
