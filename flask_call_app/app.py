"""
Local control surface for the video call connector.

This module exposes `CallConnector` over HTTP: action routes (join, mute,
camera, screen share, hang up) are plain POSTs, and a Flask-Sock WebSocket
at `/ws` streams connector events (peer added/removed, connection states,
remote mute badges) back to whatever front end is attached. The connector
keeps its own asyncio event loop in a separate thread.
"""
import argparse
import asyncio
import json
import logging
import threading

from flask import Flask, jsonify, request
from flask_sock import Sock
from simple_websocket import ConnectionClosed

import call_config
from call_errors import AlreadyInRoomError, MediaAccessError, NotInRoomError
from peer_connector import CallConnector

logger = logging.getLogger(__name__)

ACTION_TIMEOUT = 30


class UiChannel:
    """
    Holds the Flask-Sock WebSocket of the attached front end and relays
    connector events to it as JSON ``{"kind": ..., "data": ...}``.
    """
    def __init__(self):
        self.sock = None
        self._lock = threading.Lock()

    def set_sock(self, sock):
        """
        Sets the WebSocket connection used for UI updates.

        Args:
            sock: The Flask-Sock WebSocket, or None once the client has gone.
        """
        with self._lock:
            self.sock = sock
        if sock:
            self.post("status", "WebSocket connected to backend.")

    def post(self, kind, data=""):
        """
        Sends one event to the front end; events are dropped while no
        front end is attached.

        Args:
            kind: The type of event (e.g. 'status', 'peer-state').
            data: The JSON-serialisable payload.
        """
        with self._lock:
            sock = self.sock
            if sock is None:
                logger.debug(f"No UI socket: kind={kind!r} data={data!r}")
                return
            try:
                sock.send(json.dumps({"kind": kind, "data": data}))
            except ConnectionClosed:
                logger.info("UI socket closed while posting")
                self.sock = None


class ConnectorBridge:
    """
    Runs a `CallConnector` on a dedicated asyncio loop thread and lets
    Flask's request threads call into it.
    """
    def __init__(self, connector):
        self.connector = connector
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self._thread.start()

    def call(self, coro_fn, *args, timeout=ACTION_TIMEOUT):
        """
        Runs ``coro_fn(*args)`` on the connector loop and blocks for its result.
        Exceptions raised by the coroutine are re-raised in the caller.
        """
        future = asyncio.run_coroutine_threadsafe(coro_fn(*args), self.loop)
        return future.result(timeout)

    def snapshot(self):
        async def _snapshot():
            return self.connector.snapshot()
        return self.call(_snapshot)

    def start(self):
        self.call(self.connector.start)

    def shutdown(self):
        try:
            self.call(self.connector.stop)
        finally:
            self.loop.call_soon_threadsafe(self.loop.stop)
            self._thread.join(timeout=5)


def _error(message, code):
    return jsonify({"status": "error", "message": message}), code


def create_app(bridge, ui=None):
    """
    Builds the Flask application around a running `ConnectorBridge`.

    Args:
        bridge: The bridge whose connector the routes drive.
        ui: The `UiChannel` receiving connector events, if any.
    """
    app = Flask(__name__)
    sock = Sock(app)
    ui = ui if ui is not None else UiChannel()

    @app.errorhandler(ValueError)
    def _bad_request(e):
        return _error(str(e), 400)

    @app.errorhandler(NotInRoomError)
    def _not_in_room(e):
        return _error(str(e), 409)

    @app.errorhandler(MediaAccessError)
    def _media_denied(e):
        return _error(str(e), 403)

    # --- State ---
    @app.route('/state')
    def state():
        """Returns the connector snapshot: room, flags and one entry per peer."""
        return jsonify(bridge.snapshot())

    # --- Action Routes (HTTP POST) ---
    @app.route('/join', methods=['POST'])
    def join_route():
        """
        Joins a room.
        Expects JSON: {"roomId": "...", "name": "..."} (name optional).
        Returns the connector snapshot, 400 without a room id, 403 when the
        camera or microphone cannot be opened, 409 when already in a room.
        """
        data = request.get_json(silent=True) or {}
        room_id = data.get('roomId')
        if not isinstance(room_id, str) or not room_id.strip():
            return _error("Please enter a room ID", 400)
        name = data.get('name') if isinstance(data.get('name'), str) else None
        try:
            bridge.call(bridge.connector.join_room, room_id, name)
        except AlreadyInRoomError as e:
            return _error(str(e), 409)
        except ConnectionError as e:
            return _error(str(e), 502)
        return jsonify(bridge.snapshot())

    @app.route('/toggle-audio', methods=['POST'])
    def toggle_audio_route():
        muted = bridge.call(bridge.connector.toggle_audio)
        return jsonify({"status": "ok", "audioMuted": muted})

    @app.route('/toggle-video', methods=['POST'])
    def toggle_video_route():
        video_off = bridge.call(bridge.connector.toggle_video)
        return jsonify({"status": "ok", "videoOff": video_off})

    @app.route('/screen-share', methods=['POST'])
    def screen_share_route():
        """Starts screen sharing, or stops it when already sharing."""
        sharing = bridge.call(bridge.connector.toggle_screen_share)
        return jsonify({"status": "ok", "screenSharing": sharing})

    @app.route('/hang-up', methods=['POST'])
    def hang_up_route():
        """Leaves the call and reconnects the signalling channel fresh."""
        try:
            bridge.call(bridge.connector.hang_up)
        except ConnectionError as e:
            return _error(str(e), 502)
        return jsonify({"status": "ok"})

    # --- WebSocket Route ---
    @sock.route('/ws')
    def ws_events(ws):
        """
        Streams connector events to the front end. Incoming frames are only
        used for a JSON ping/pong keep-alive.
        """
        logger.info("UI WebSocket connection established.")
        ui.set_sock(ws)
        try:
            while True:
                data = ws.receive(timeout=None)
                if data is None:
                    break
                try:
                    msg = json.loads(data)
                except json.JSONDecodeError:
                    continue
                if isinstance(msg, dict) and msg.get("type") == "ping":
                    ui.post("pong", "PONG from server")
        except ConnectionClosed:
            logger.info("UI WebSocket closed by client.")
        finally:
            ui.set_sock(None)

    return app


def main():
    parser = argparse.ArgumentParser(description='Video call control surface')
    parser.add_argument('--port', type=int, default=call_config.UI_PORT, help='Port to run the server on')
    parser.add_argument('--signal-url', default=call_config.SIGNAL_URL, help='Signalling relay URL')
    parser.add_argument('--log-level', default=None)
    args = parser.parse_args()

    call_config.configure_logging(args.log_level)
    ui = UiChannel()
    bridge = ConnectorBridge(CallConnector(args.signal_url, on_event=ui.post))
    try:
        bridge.start()
    except ConnectionError as e:
        logger.warning(f"{e}; will retry on join")
    app = create_app(bridge, ui)
    try:
        # Flask's built-in server is fine for a single local front end.
        app.run(host='127.0.0.1', port=args.port, debug=False, use_reloader=False)
    finally:
        bridge.shutdown()


if __name__ == '__main__':
    main()
