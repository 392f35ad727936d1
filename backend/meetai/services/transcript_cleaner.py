"""Deterministic transcript normalisation and sentence-aligned chunking."""

from __future__ import annotations

import re
from typing import Iterable, List

from meetai.models.artifacts import TranscriptEntry


# Common filler words removed from transcripts
FILLER_WORDS = [
    "um",
    "uh",
    "like",
    "you know",
    "i mean",
    "so",
    "actually",
    "basically",
    "literally",
    "right",
    "okay so",
    "well",
]

DEFAULT_CHUNK_CHARS = 8000


def _filler_pattern(words: Iterable[str]) -> re.Pattern[str]:
    # Longest phrases first so "okay so" wins over "so"
    ordered = sorted(words, key=len, reverse=True)
    alternatives = "|".join(r"\s+".join(re.escape(part) for part in w.split()) for w in ordered)
    return re.compile(rf"\b(?:{alternatives})\b[,.]?\s*", re.IGNORECASE)


_FILLERS = _filler_pattern(FILLER_WORDS)
_WHITESPACE = re.compile(r"\s+")
_SPACE_BEFORE_PUNCT = re.compile(r"\s+([.,!?])")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")


def _clean_once(text: str) -> str:
    cleaned = _WHITESPACE.sub(" ", text)
    cleaned = _FILLERS.sub("", cleaned)
    cleaned = _WHITESPACE.sub(" ", cleaned)
    cleaned = _SPACE_BEFORE_PUNCT.sub(r"\1", cleaned)
    return cleaned.strip()


def clean_transcript(text: str) -> str:
    """Strip filler words, collapse whitespace and fix spacing before punctuation.

    Removing one filler can expose another ("you well know" -> "you know"),
    so the pass is repeated until the text stops changing. The result is a
    fixed point: cleaning it again returns it unchanged.
    """
    current = text or ""
    while True:
        nxt = _clean_once(current)
        if nxt == current:
            return nxt
        current = nxt


def _split_long_sentence(sentence: str, max_chars: int) -> List[str]:
    pieces: List[str] = []
    current = ""
    for word in sentence.split():
        if current and len(current) + 1 + len(word) > max_chars:
            pieces.append(current)
            current = word
        else:
            current = f"{current} {word}" if current else word
    if current:
        pieces.append(current)
    return pieces


def chunk_transcript(text: str, max_chars: int = DEFAULT_CHUNK_CHARS) -> List[str]:
    """Split text into sentence-aligned chunks of at most ``max_chars``.

    Sentences longer than the budget are split on word boundaries; a single
    word longer than the budget is kept whole. Joining the chunks with a
    space reproduces the input up to whitespace.
    """
    if not text or not text.strip():
        return []
    if max_chars <= 0:
        return [text]

    chunks: List[str] = []
    current = ""
    for sentence in _SENTENCE_BREAK.split(text.strip()):
        if not sentence:
            continue
        pieces = [sentence] if len(sentence) <= max_chars else _split_long_sentence(sentence, max_chars)
        for piece in pieces:
            if current and len(current) + 1 + len(piece) > max_chars:
                chunks.append(current)
                current = piece
            else:
                current = f"{current} {piece}" if current else piece
    if current.strip():
        chunks.append(current)

    return chunks or [text]


def render_entries(entries: Iterable[TranscriptEntry]) -> str:
    lines: List[str] = []
    for entry in entries:
        text = (entry.text or "").strip()
        if not text:
            continue
        speaker = (entry.speaker or "").strip()
        lines.append(f"{speaker}: {text}" if speaker else text)
    return "\n".join(lines)
