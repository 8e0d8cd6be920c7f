# nat/candidates.py
"""
Relay-side envelopes for ICE candidates and session descriptions.

Blobs travel through the relay as plain JSON-able dicts in the shape browsers
use (``RTCIceCandidateInit`` / ``RTCSessionDescriptionInit``), so either side
of a pairing could be a browser tab.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import aioice
from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

CANDIDATE_PREFIX = "candidate:"
DESCRIPTION_TYPES = ("offer", "answer")

PathKey = Tuple[int, str, str, int, str]


class CandidateError(ValueError):
    pass


class DescriptionError(ValueError):
    pass


@dataclass(frozen=True)
class CandidateEnvelope:
    candidate: Dict[str, Any]
    sender: str
    timestamp: int

    def to_record(self) -> Dict[str, Any]:
        return {"candidate": dict(self.candidate), "from": self.sender, "timestamp": self.timestamp}

    @classmethod
    def from_record(cls, record: Any) -> "CandidateEnvelope":
        if not isinstance(record, dict):
            raise CandidateError(f"candidate record must be an object, got {type(record).__name__}")
        blob = record.get("candidate")
        sender = record.get("from")
        if not isinstance(blob, dict) or not isinstance(sender, str):
            raise CandidateError("candidate record needs 'candidate' and 'from'")
        try:
            timestamp = int(record.get("timestamp") or 0)
        except (TypeError, ValueError) as e:
            raise CandidateError(f"bad candidate timestamp: {e}") from e
        return cls(candidate=blob, sender=sender, timestamp=timestamp)


# ---------------- candidates ----------------
def _sdp_attribute(blob: Any) -> str:
    if not isinstance(blob, dict):
        raise CandidateError("candidate blob must be an object")
    line = blob.get("candidate")
    if not isinstance(line, str) or not line.strip():
        raise CandidateError("empty candidate (end-of-candidates marker)")
    line = line.strip()
    if line.startswith("a="):
        line = line[2:]
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX):]
    return line


def candidate_to_blob(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_blob(blob: Any) -> RTCIceCandidate:
    attr = _sdp_attribute(blob)
    mid = blob.get("sdpMid")
    index = blob.get("sdpMLineIndex")
    if mid is None and index is None:
        raise CandidateError("candidate needs sdpMid or sdpMLineIndex")
    try:
        candidate = candidate_from_sdp(attr)
    except (ValueError, IndexError, AssertionError) as e:
        raise CandidateError(f"unparseable candidate {attr!r}: {e}") from e
    candidate.sdpMid = mid
    candidate.sdpMLineIndex = index
    return candidate


def path_key(blob: Any) -> PathKey:
    """Identity of the network path a candidate proposes."""
    attr = _sdp_attribute(blob)
    try:
        c = aioice.Candidate.from_sdp(attr)
    except (ValueError, IndexError) as e:
        raise CandidateError(f"unparseable candidate {attr!r}: {e}") from e
    return (c.component, c.transport.lower(), c.host, c.port, c.type)


def candidates_from_sdp(sdp: str) -> List[Dict[str, Any]]:
    """Pull every ``a=candidate`` line out of a description, tagged with its media section."""
    sections: List[List[str]] = []
    for raw in sdp.splitlines():
        line = raw.strip()
        if line.startswith("m="):
            sections.append([])
        elif sections:
            sections[-1].append(line)

    out: List[Dict[str, Any]] = []
    for index, lines in enumerate(sections):
        mid: Optional[str] = None
        for line in lines:
            if line.startswith("a=mid:"):
                mid = line[len("a=mid:"):]
        for line in lines:
            if line.startswith("a=" + CANDIDATE_PREFIX):
                out.append({"candidate": line[2:], "sdpMid": mid, "sdpMLineIndex": index})
    return out


# ---------------- descriptions ----------------
def description_to_blob(description: RTCSessionDescription) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def description_from_blob(blob: Any, expected_type: Optional[str] = None) -> RTCSessionDescription:
    if not isinstance(blob, dict):
        raise DescriptionError("description must be an object")
    kind, sdp = blob.get("type"), blob.get("sdp")
    if kind not in DESCRIPTION_TYPES:
        raise DescriptionError(f"unsupported description type {kind!r}")
    if expected_type and kind != expected_type:
        raise DescriptionError(f"expected {expected_type}, got {kind}")
    if not isinstance(sdp, str) or not sdp.startswith("v="):
        raise DescriptionError("description sdp is missing or malformed")
    return RTCSessionDescription(sdp=sdp, type=kind)
