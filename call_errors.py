"""
Error types shared by the relay and the call connector.

Nothing in this project retries automatically: `MediaAccessError` aborts a
join, `NegotiationError` is logged against a single peer, and
`RelayDeliveryMiss` never leaves the relay.
"""


class CallError(Exception):
    pass


class MediaAccessError(CallError):
    """A capture device (camera, microphone or screen) was denied or is missing."""


class NegotiationError(CallError):
    """One offer/answer/candidate step failed for a single peer."""

    def __init__(self, peer_id, step, cause=None):
        self.peer_id = peer_id
        self.step = step
        message = f"{step} failed for peer {peer_id}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class RelayDeliveryMiss(CallError):
    """The relay had no open connection for the addressed target."""

    def __init__(self, connection_id):
        self.connection_id = connection_id
        super().__init__(f"no connection {connection_id!r}")


class AlreadyInRoomError(CallError):
    def __init__(self, room_id):
        self.room_id = room_id
        super().__init__(f"already in room {room_id!r}, hang up first")


class NotInRoomError(CallError):
    def __init__(self):
        super().__init__("not in a room")
