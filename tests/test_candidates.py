# tests/test_candidates.py
import pytest

from fakes import candidate_blob
from nat.candidates import (
    CandidateEnvelope,
    CandidateError,
    DescriptionError,
    candidate_from_blob,
    candidate_to_blob,
    candidates_from_sdp,
    description_from_blob,
    path_key,
)

SDP = (
    "v=0\r\n"
    "o=- 1 1 IN IP4 0.0.0.0\r\n"
    "s=-\r\n"
    "m=audio 9 UDP/TLS/RTP/SAVPF 0\r\n"
    "a=candidate:9 1 udp 100 10.9.9.9 9 typ host\r\n"
    "a=mid:audio\r\n"
    "m=application 9 UDP/DTLS/SCTP webrtc-datachannel\r\n"
    "a=mid:1\r\n"
    "a=candidate:1 1 udp 2130706431 192.168.1.10 50000 typ host\r\n"
    "a=candidate:2 1 udp 1694498815 203.0.113.7 61000 typ srflx raddr 192.168.1.10 rport 50000\r\n"
    "a=end-of-candidates\r\n"
)


def test_candidate_blob_parses_with_or_without_prefix():
    with_prefix = candidate_from_blob(candidate_blob())
    bare = candidate_from_blob({"candidate": "a=candidate:1 1 udp 2130706431 192.168.1.10 50000 typ host", "sdpMLineIndex": 0})

    for c in (with_prefix, bare):
        assert c.ip == "192.168.1.10" and c.port == 50000 and c.type == "host"
    assert with_prefix.sdpMid == "0"
    assert bare.sdpMid is None and bare.sdpMLineIndex == 0


def test_candidate_blob_survives_reencoding():
    blob = candidate_to_blob(candidate_from_blob(candidate_blob("203.0.113.7", 61000)))
    assert blob["candidate"].startswith("candidate:")
    assert path_key(blob) == path_key(candidate_blob("203.0.113.7", 61000))


@pytest.mark.parametrize(
    "blob",
    [
        None,
        "candidate:1 1 udp 1 1.2.3.4 5 typ host",
        {"candidate": "", "sdpMid": "0"},
        {"candidate": "candidate:1 1 udp", "sdpMid": "0"},
        {"candidate": "candidate:1 1 udp 2130706431 192.168.1.10 50000 typ host"},
    ],
)
def test_malformed_candidates_are_rejected(blob):
    with pytest.raises(CandidateError):
        candidate_from_blob(blob)


def test_path_key_ignores_foundation_and_priority():
    a = {"candidate": "candidate:1 1 udp 2130706431 192.168.1.10 50000 typ host", "sdpMid": "0"}
    b = {"candidate": "candidate:7 1 UDP 12345 192.168.1.10 50000 typ host", "sdpMid": "0"}
    c = {"candidate": "candidate:7 1 udp 12345 192.168.1.10 50001 typ host", "sdpMid": "0"}

    assert path_key(a) == path_key(b) == (1, "udp", "192.168.1.10", 50000, "host")
    assert path_key(a) != path_key(c)


def test_candidates_are_pulled_from_every_media_section():
    blobs = candidates_from_sdp(SDP)

    assert [b["sdpMid"] for b in blobs] == ["audio", "1", "1"]
    assert [b["sdpMLineIndex"] for b in blobs] == [0, 1, 1]
    assert blobs[2]["candidate"].startswith("candidate:2 1 udp")
    assert candidates_from_sdp("v=0\r\ns=-\r\n") == []


def test_envelope_record_uses_from_key():
    env = CandidateEnvelope(candidate=candidate_blob(), sender="user_a", timestamp=5)
    record = env.to_record()

    assert record["from"] == "user_a"
    assert CandidateEnvelope.from_record(record) == env


@pytest.mark.parametrize(
    "record",
    [
        [],
        {"candidate": candidate_blob()},
        {"candidate": "text", "from": "user_a"},
        {"candidate": candidate_blob(), "from": "user_a", "timestamp": "soon"},
    ],
)
def test_bad_envelopes_are_rejected(record):
    with pytest.raises(CandidateError):
        CandidateEnvelope.from_record(record)


def test_description_validation():
    offer = description_from_blob({"type": "offer", "sdp": SDP}, expected_type="offer")
    assert offer.type == "offer" and offer.sdp == SDP

    for blob in (
        None,
        {"type": "pranswer", "sdp": SDP},
        {"type": "offer", "sdp": ""},
        {"type": "offer", "sdp": 42},
    ):
        with pytest.raises(DescriptionError):
            description_from_blob(blob)
    with pytest.raises(DescriptionError):
        description_from_blob({"type": "answer", "sdp": SDP}, expected_type="offer")
