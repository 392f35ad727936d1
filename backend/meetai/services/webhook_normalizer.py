"""Signature verification and canonical extraction of video-provider call events.

The provider has changed its event shapes over time, so each field is read
through an ordered tuple of named strategies; the first one that yields a
value wins and a field with no match is simply absent.
"""

from __future__ import annotations

import hashlib
import math
import hmac
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

Payload = Dict[str, Any]
Strategy = Tuple[str, Callable[[Payload], Any]]


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """Constant-time check of an HMAC-SHA256 hex digest over the raw body."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature.strip().encode("utf-8"), expected.encode("utf-8"))


def sign_body(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class RecordingMeta:
    url: Optional[str]
    format: Optional[str] = None
    size: Optional[int] = None
    duration: Optional[float] = None


@dataclass(frozen=True)
class CallEvent:
    type: str
    call_id: Optional[str] = None
    duration: Optional[float] = None
    participants_count: Optional[int] = None
    transcript_url: Optional[str] = None
    recording: Optional[RecordingMeta] = None
    participant_user_id: Optional[str] = None


def _dig(payload: Any, *path: str) -> Any:
    node = payload
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    return value if isinstance(value, (int, float)) else None


def _nonzero(value: Any) -> Optional[float]:
    number = _number(value)
    return number if number else None


def _whole(value: Optional[float]) -> Optional[int]:
    return int(value) if value is not None and math.isfinite(value) else None


def _string(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _count(value: Any) -> Optional[int]:
    return len(value) if isinstance(value, list) else None


def _cid_id(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value:
        return None
    kind, _, ident = value.partition(":")
    return ident or kind


CALL_ID_STRATEGIES: Sequence[Strategy] = (
    ("call.id", lambda p: _string(_dig(p, "call", "id"))),
    ("call_cid", lambda p: _cid_id(p.get("call_cid"))),
    ("call.cid", lambda p: _cid_id(_dig(p, "call", "cid"))),
)

DURATION_STRATEGIES: Sequence[Strategy] = (
    ("call.session.duration_seconds", lambda p: _nonzero(_dig(p, "call", "session", "duration_seconds"))),
    ("duration", lambda p: _number(p.get("duration"))),
    ("duration_seconds", lambda p: _number(p.get("duration_seconds"))),
)

PARTICIPANTS_STRATEGIES: Sequence[Strategy] = (
    ("call.session.participants", lambda p: _count(_dig(p, "call", "session", "participants"))),
    ("call.participants", lambda p: _count(_dig(p, "call", "participants"))),
    ("participants_count", lambda p: _whole(_number(p.get("participants_count")))),
)

TRANSCRIPT_URL_STRATEGIES: Sequence[Strategy] = (
    ("transcription.url", lambda p: _string(_dig(p, "transcription", "url"))),
    ("call_transcription.url", lambda p: _string(_dig(p, "call_transcription", "url"))),
)

RECORDING_STRATEGIES: Sequence[Strategy] = (
    ("recording", lambda p: p.get("recording") if isinstance(p.get("recording"), dict) else None),
    ("call_recording", lambda p: p.get("call_recording") if isinstance(p.get("call_recording"), dict) else None),
)

PARTICIPANT_STRATEGIES: Sequence[Strategy] = (
    ("participant.user_id", lambda p: _string(_dig(p, "participant", "user_id"))),
    ("participant.user.id", lambda p: _string(_dig(p, "participant", "user", "id"))),
)


def first_match(strategies: Sequence[Strategy], payload: Payload) -> Any:
    for _name, extract in strategies:
        value = extract(payload)
        if value is not None:
            return value
    return None


def _recording(payload: Payload) -> Optional[RecordingMeta]:
    raw = first_match(RECORDING_STRATEGIES, payload)
    if raw is None:
        return None
    size = raw.get("size")
    return RecordingMeta(
        url=_string(raw.get("url")),
        format=_string(raw.get("format")),
        size=size if isinstance(size, int) and not isinstance(size, bool) else None,
        duration=_number(raw.get("duration")),
    )


CALL_STARTED_TYPES = frozenset({"call.session_started", "call.started"})
CALL_ENDED_TYPES = frozenset({"call.session_ended", "call.ended"})
TRANSCRIPTION_READY_TYPES = frozenset({"call.transcription_ready"})
RECORDING_READY_TYPES = frozenset({"call.recording_ready"})


def normalize_event(payload: Payload) -> CallEvent:
    if not isinstance(payload, dict):
        raise ValueError("webhook body must be a JSON object")
    event_type = str(payload.get("type") or "")
    kwargs: Dict[str, Any] = {
        "type": event_type,
        "call_id": first_match(CALL_ID_STRATEGIES, payload),
        "participant_user_id": first_match(PARTICIPANT_STRATEGIES, payload),
    }
    if event_type in CALL_ENDED_TYPES:
        kwargs["duration"] = first_match(DURATION_STRATEGIES, payload)
        kwargs["participants_count"] = first_match(PARTICIPANTS_STRATEGIES, payload)
    elif event_type in TRANSCRIPTION_READY_TYPES:
        kwargs["transcript_url"] = first_match(TRANSCRIPT_URL_STRATEGIES, payload)
    elif event_type in RECORDING_READY_TYPES:
        kwargs["recording"] = _recording(payload)
    return CallEvent(**kwargs)
