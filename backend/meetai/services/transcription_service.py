"""Transcript retrieval from the video provider and artifact assembly."""

from __future__ import annotations

from typing import Any, List, Optional, Tuple
import json
import logging

import requests

from meetai.models.artifacts import TranscriptArtifact, TranscriptEntry
from meetai.services.transcript_cleaner import clean_transcript, render_entries

logger = logging.getLogger("meetai.transcripts")

FETCH_FAILED_TRANSCRIPT = "Failed to fetch transcript from URL"
NO_TRANSCRIPT = "No transcript available"


class TranscriptFetchError(RuntimeError):
    pass


def fetch_transcript_from_url(url: str, timeout: float = 30.0) -> dict:
    """Download a transcript and normalise it to ``{"text", "entries"}``.

    The provider has shipped several shapes: a bare JSON string, a list of
    ``{speaker, text}`` segments, an object with ``text``/``transcript``, and
    JSONL with one segment per line.
    """
    logger.info("Fetching transcript from %s", url)
    try:
        resp = requests.get(url, timeout=timeout)
    except requests.RequestException as exc:
        raise TranscriptFetchError(f"Transcript request failed: {exc}") from exc
    if resp.status_code != 200:
        raise TranscriptFetchError(f"Failed to fetch transcript: {resp.status_code}")

    try:
        data: Any = resp.json()
    except ValueError:
        data = _parse_jsonl(resp.text)
    text, entries = normalize_transcript_payload(data)
    return {"text": text, "entries": [e.model_dump() for e in entries] if entries is not None else None}


def _parse_jsonl(body: str) -> Any:
    rows: List[Any] = []
    for line in body.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            rows.append(json.loads(line))
        except ValueError:
            # Not JSON at all; treat the body as plain text
            return body
    return rows


def normalize_transcript_payload(data: Any) -> Tuple[str, Optional[List[TranscriptEntry]]]:
    if isinstance(data, str):
        return data, None
    if isinstance(data, list):
        entries = [_entry(item) for item in data if isinstance(item, (dict, str))]
        return render_entries(entries), entries
    if isinstance(data, dict):
        for key in ("text", "transcript"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value, None
            if isinstance(value, list):
                return normalize_transcript_payload(value)
        return json.dumps(data), None
    return str(data), None


def _entry(item: Any) -> TranscriptEntry:
    if isinstance(item, str):
        return TranscriptEntry(speaker="", text=item)
    speaker = item.get("speaker") or item.get("speaker_id") or item.get("user_id") or ""
    time = item.get("time", item.get("start_ts", item.get("start")))
    if not isinstance(time, (int, float, str)):
        time = None
    return TranscriptEntry(speaker=str(speaker), text=str(item.get("text") or ""), time=time)


def build_transcript_artifact(raw: str, entries: Optional[List[TranscriptEntry]] = None) -> TranscriptArtifact:
    cleaned = clean_transcript(raw)
    cleaned_entries = None
    if entries is not None:
        cleaned_entries = [
            TranscriptEntry(speaker=e.speaker, text=clean_transcript(e.text), time=e.time) for e in entries
        ]
    return TranscriptArtifact(
        raw=raw,
        cleaned=cleaned,
        entries=cleaned_entries,
        char_count=len(cleaned),
    )
