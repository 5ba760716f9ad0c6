# server.py
# --------------------------------------------------------------------
# Signalling relay: room membership plus point-to-point forwarding of
# offer / answer / ice-candidate messages. No media passes through here.
# --------------------------------------------------------------------

import argparse, asyncio, logging, secrets
import websockets
from websockets.exceptions import ConnectionClosed

import call_config
import signal_protocol as proto
from call_errors import RelayDeliveryMiss
from room_store import DEFAULT_NAME, Participant, RoomStore

logger = logging.getLogger(__name__)


class SignalRouter:
    def __init__(self, store: RoomStore):
        self.store = store
        self.connections = {}  # connection id -> websocket
        self._handlers = {
            proto.JOIN_ROOM: self._on_join,
            proto.LEAVE_ROOM: self._on_leave,
            proto.OFFER: self._on_forward,
            proto.ANSWER: self._on_forward,
            proto.ICE_CANDIDATE: self._on_forward,
            proto.TOGGLE_AUDIO: self._on_toggle,
            proto.TOGGLE_VIDEO: self._on_toggle,
        }

    # ───────────────────────────── channel ──────────────────────────────
    async def handler(self, ws):
        cid = await self.register(ws)
        try:
            async for raw in ws:
                await self.dispatch(cid, raw)
        except ConnectionClosed:
            pass
        finally:
            await self.unregister(cid)

    async def register(self, ws) -> str:
        cid = secrets.token_hex(8)
        self.connections[cid] = ws
        logger.info(f"Peer connected: {cid}")
        await self._deliver([cid], proto.CONNECTED, {"connectionId": cid})
        return cid

    async def unregister(self, cid):
        self.connections.pop(cid, None)
        logger.info(f"Peer disconnected: {cid}")
        await self.leave(cid)

    async def dispatch(self, cid, raw):
        kind, data = proto.decode(raw)
        handler = self._handlers.get(kind)
        if handler is None:
            logger.debug(f"Dropping unknown message {kind!r} from {cid}")
            return
        await handler(kind, cid, data)

    # ──────────────────────────── operations ────────────────────────────
    async def join(self, cid, room_id, user_data=None):
        name = (user_data or {}).get("name") or DEFAULT_NAME
        if not isinstance(name, str):
            name = DEFAULT_NAME
        participant = Participant(connection_id=cid, room_id=room_id, name=name)
        self.store.add(participant)
        members = self.store.members(room_id)
        existing = [p.to_dict() for p in members if p.connection_id != cid]
        others = [p.connection_id for p in members if p.connection_id != cid]
        logger.info(f"User {cid} joined room {room_id} ({len(members)} in room)")

        await self._deliver([cid], proto.EXISTING_USERS, existing)
        await self._deliver(others, proto.USER_JOINED, participant.to_dict())
        await self._deliver([p.connection_id for p in members], proto.ROOM_USERS,
                            [p.to_dict() for p in members])

    async def forward(self, kind, cid, data):
        key = proto.FORWARD_KINDS[kind]
        target = data.get("target")
        if not isinstance(target, str):
            logger.debug(f"Dropping {kind} from {cid}: no target")
            return
        await self._deliver([target], kind, {key: data.get(key), "sender": cid})

    async def toggle_notify(self, kind, cid, data):
        key = proto.TOGGLE_KINDS[kind]
        room_id = data.get("roomId")
        if not isinstance(room_id, str):
            return
        targets = [p.connection_id for p in self.store.members(room_id) if p.connection_id != cid]
        await self._deliver(targets, kind, {"userId": cid, key: bool(data.get(key))})

    async def leave(self, cid, room_id=None):
        room_ids = [room_id] if room_id is not None else self.store.rooms_of(cid)
        for rid in room_ids:
            if self.store.remove(rid, cid) is None:
                continue
            members = self.store.members(rid)
            logger.info(f"User {cid} left room {rid} ({len(members)} remaining)")
            if not members:
                continue
            remaining = [p.connection_id for p in members]
            await self._deliver(remaining, proto.USER_LEFT, cid)
            await self._deliver(remaining, proto.ROOM_USERS, [p.to_dict() for p in members])

    # ──────────────────────────── handlers ──────────────────────────────
    async def _on_join(self, kind, cid, data):
        if not isinstance(data, dict):
            return
        room_id = data.get("roomId")
        user_data = data.get("userData")
        if not isinstance(room_id, str) or not room_id.strip():
            logger.debug(f"Dropping join from {cid}: bad room id")
            return
        await self.join(cid, room_id.strip(), user_data if isinstance(user_data, dict) else None)

    async def _on_leave(self, kind, cid, data):
        room_id = data.get("roomId") if isinstance(data, dict) else None
        await self.leave(cid, room_id if isinstance(room_id, str) else None)

    async def _on_forward(self, kind, cid, data):
        if isinstance(data, dict):
            await self.forward(kind, cid, data)

    async def _on_toggle(self, kind, cid, data):
        if isinstance(data, dict):
            await self.toggle_notify(kind, cid, data)

    # ──────────────────────────── delivery ──────────────────────────────
    async def send(self, cid, kind, data):
        ws = self.connections.get(cid)
        if ws is None:
            raise RelayDeliveryMiss(cid)
        try:
            await ws.send(proto.encode(kind, data))
        except ConnectionClosed:
            raise RelayDeliveryMiss(cid) from None

    async def _deliver(self, cids, kind, data):
        for cid in cids:
            try:
                await self.send(cid, kind, data)
            except RelayDeliveryMiss as e:
                logger.debug(f"Dropped {kind}: {e}")


async def serve(host, port, store=None):
    router = SignalRouter(store if store is not None else RoomStore())
    server = await websockets.serve(
        router.handler, host, port,
        ping_interval=call_config.PING_INTERVAL,
        max_size=call_config.MAX_MSG_BYTES,
    )
    return server, router


async def run(host, port):
    server, _router = await serve(host, port)
    logger.info(f"Signalling server listening on {host}:{port} …")
    async with server:
        await asyncio.Future()        # run forever


def main():
    parser = argparse.ArgumentParser(description="Video call signalling relay")
    parser.add_argument("--host", default=call_config.SIGNAL_HOST)
    parser.add_argument("--port", type=int, default=call_config.SIGNAL_PORT)
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()

    call_config.configure_logging(args.log_level)
    try:
        asyncio.run(run(args.host, args.port))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
