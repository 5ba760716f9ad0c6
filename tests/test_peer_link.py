import pytest
from aiortc import AudioStreamTrack, RTCIceCandidate, VideoStreamTrack

from call_errors import NegotiationError
from fakes import FakeSession
from local_media import RemoteView
from peer_link import LinkState, PeerLink, candidate_from_dict, candidate_to_dict


def make_link(session=None):
    return PeerLink("peer-1", session or FakeSession(), RemoteView("peer-1"), name="Bob")


def test_observe_maps_connection_states():
    link = make_link()
    assert link.state is LinkState.NEGOTIATING
    assert link.observe("connecting") is LinkState.NEGOTIATING
    assert link.observe("connected") is LinkState.CONNECTED
    assert link.observe("disconnected") is LinkState.DISCONNECTED
    assert link.observe("failed") is LinkState.FAILED
    assert link.connection_state == "failed"


async def test_closed_is_final():
    link = make_link()
    await link.close()
    assert link.state is LinkState.CLOSED
    assert link.session.closed
    assert link.observe("connected") is LinkState.CLOSED


async def test_offer_answer_exchange():
    a, b = make_link(), make_link()
    offer = await a.create_offer()
    assert offer["type"] == "offer"
    answer = await b.accept_offer(offer)
    assert answer["type"] == "answer"
    await a.accept_answer(answer)
    assert a.session.connectionState == "connected"
    assert b.session.connectionState == "connected"


async def test_failed_step_raises_negotiation_error_and_keeps_state():
    class BrokenSession(FakeSession):
        async def createOffer(self):
            raise RuntimeError("boom")

    link = make_link(BrokenSession())
    with pytest.raises(NegotiationError) as err:
        await link.create_offer()
    assert err.value.peer_id == "peer-1"
    assert link.state is LinkState.NEGOTIATING


async def test_garbage_remote_descriptions_are_negotiation_errors():
    link = make_link()
    with pytest.raises(NegotiationError):
        await link.accept_answer(None)
    with pytest.raises(NegotiationError):
        await link.accept_offer({"sdp": "v=0", "type": "bogus"})


async def test_candidates():
    link = make_link()
    candidate = RTCIceCandidate(component=1, foundation="abc", ip="198.51.100.7", port=5000,
                                priority=100, protocol="udp", type="host", sdpMid="0", sdpMLineIndex=0)
    data = candidate_to_dict(candidate)
    assert data["candidate"].startswith("candidate:")

    await link.add_candidate(data)
    received = link.session.candidates[0]
    assert (received.ip, received.port, received.sdpMid) == ("198.51.100.7", 5000, "0")

    # end-of-candidates markers are not handed to the session
    await link.add_candidate({"candidate": ""})
    await link.add_candidate(None)
    assert len(link.session.candidates) == 1

    with pytest.raises(NegotiationError):
        await link.add_candidate({"candidate": "candidate:garbage"})


def test_candidate_from_dict_accepts_bare_attribute():
    candidate = candidate_from_dict({"candidate": "1 1 udp 100 192.0.2.1 9 typ host", "sdpMid": "1"})
    assert candidate.ip == "192.0.2.1"
    assert candidate.sdpMid == "1"


async def test_links_send_relay_subscriptions():
    mic, camera = AudioStreamTrack(), VideoStreamTrack()
    first, second = make_link(), make_link()
    first.attach([mic, camera])
    second.attach([mic, camera])
    assert first.sources == {"audio": mic, "video": camera}
    sent = first.session.video_sender().track
    assert sent is not camera and sent.kind == "video"
    assert sent is not second.session.video_sender().track


async def test_replace_video_swaps_only_the_video_sender():
    link = make_link()
    mic, camera, screen = AudioStreamTrack(), VideoStreamTrack(), VideoStreamTrack()
    link.attach([mic, camera])
    audio = link.session.senders[0].track
    before = link.session.video_sender().track

    assert link.replace_video(screen)
    assert link.sources["video"] is screen
    assert link.session.senders[0].track is audio
    assert link.session.video_sender().track is not before
    # the previous subscription lives on until the next switch
    assert before.readyState == "live"
    link.replace_video(camera)
    assert before.readyState == "ended"

    empty = make_link()
    assert not empty.replace_video(screen)


async def test_close_releases_subscriptions():
    link = make_link()
    link.attach([AudioStreamTrack(), VideoStreamTrack()])
    sent = [s.track for s in link.session.senders]
    link.replace_video(VideoStreamTrack())
    sent.append(link.session.video_sender().track)
    await link.close()
    assert all(track.readyState == "ended" for track in sent)


def test_to_dict():
    link = make_link()
    link.audio_muted = True
    assert link.to_dict() == {
        "peerId": "peer-1",
        "name": "Bob",
        "state": "negotiating",
        "connectionState": "new",
        "audioMuted": True,
        "videoOff": False,
    }
