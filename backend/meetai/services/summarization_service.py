from __future__ import annotations

from typing import Any, Dict, List, Optional
import json
import logging
import re

from pydantic import ValidationError

from meetai.models.artifacts import Sentiment, SpeakerHighlight, SummaryArtifact
from meetai.services.llm.base import ChatTurn, LLMProvider
from meetai.services.transcript_cleaner import DEFAULT_CHUNK_CHARS, chunk_transcript

logger = logging.getLogger("meetai.summarization")


SUMMARY_SYSTEM_PROMPT = """You are an expert AI meeting assistant. Analyze the meeting transcript thoroughly and provide a comprehensive analysis.

Your response must be valid JSON with this exact structure:
{
  "summary": "A concise 2-3 sentence summary of the meeting",
  "keyPoints": ["Key point 1", "Key point 2", ...],
  "actionItems": ["Action item with owner if mentioned", ...],
  "decisionsMade": ["Decision 1", "Decision 2", ...],
  "sentiment": {
    "overall": "positive" | "neutral" | "negative",
    "confidence": 0.0 to 1.0
  },
  "speakerHighlights": [
    {"speaker": "Speaker name or role", "mainPoints": ["Point 1", "Point 2"]}
  ],
  "meetingNotes": "Formatted meeting notes in markdown style with headers and bullet points"
}

Guidelines:
- Extract action items with responsible persons if mentioned
- Identify all decisions made during the meeting
- Analyze overall sentiment (positive, neutral, or negative)
- If speaker names are identifiable, provide per-speaker highlights
- Create clean, professional meeting notes suitable for sharing"""

CHUNK_SYSTEM_PROMPT = (
    "Summarize this portion of a meeting transcript. Focus on key points, decisions, "
    "and action items. Keep it concise."
)

COMBINE_SYSTEM_PROMPT = """You are combining multiple meeting summary segments into one comprehensive analysis.

Your response must be valid JSON with this exact structure:
{
  "summary": "A concise 2-3 sentence summary of the entire meeting",
  "keyPoints": ["Key point 1", "Key point 2", ...],
  "actionItems": ["Action item with owner if mentioned", ...],
  "decisionsMade": ["Decision 1", "Decision 2", ...],
  "sentiment": {
    "overall": "positive" | "neutral" | "negative",
    "confidence": 0.0 to 1.0
  },
  "speakerHighlights": [
    {"speaker": "Speaker name or role", "mainPoints": ["Point 1", "Point 2"]}
  ],
  "meetingNotes": "Formatted meeting notes in markdown style"
}"""

PARTIAL_SEPARATOR = "\n\n---\n\n"


class SummarizationEngine:
    """Turns a cleaned transcript into a SummaryArtifact.

    Transcripts within ``chunk_chars`` are analysed with one structured
    request. Longer ones are chunked, each chunk summarised in plain text,
    and the joined partials analysed with a final structured request.
    Provider errors propagate so the caller can retry; an unparseable reply
    yields a degraded artifact instead.
    """

    def __init__(self, llm: LLMProvider, chunk_chars: int = DEFAULT_CHUNK_CHARS) -> None:
        self.llm = llm
        self.chunk_chars = chunk_chars

    def summarize(self, transcript: str) -> SummaryArtifact:
        text = (transcript or "").strip()
        if len(text) <= self.chunk_chars:
            return self._structured(SUMMARY_SYSTEM_PROMPT, f"Please analyze this meeting transcript:\n\n{text}")

        chunks = chunk_transcript(text, self.chunk_chars)
        logger.info("Summarizing %d transcript chunks (%d chars)", len(chunks), len(text))
        partials = [self._summarize_chunk(chunk, i, len(chunks)) for i, chunk in enumerate(chunks)]
        combined = PARTIAL_SEPARATOR.join(partials)
        return self._structured(
            COMBINE_SYSTEM_PROMPT,
            f"Combine these meeting summaries into one comprehensive analysis:\n\n{combined}",
        )

    def _summarize_chunk(self, chunk: str, index: int, total: int) -> str:
        messages: List[ChatTurn] = [
            {"role": "system", "content": CHUNK_SYSTEM_PROMPT},
            {"role": "user", "content": f"Transcript part {index + 1} of {total}:\n\n{chunk}"},
        ]
        return self.llm.complete(messages).strip()

    def _structured(self, system: str, user: str) -> SummaryArtifact:
        messages: List[ChatTurn] = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
        content = self.llm.complete(messages, json_mode=True)
        return parse_summary(content)


def degraded_summary(reason: str = "Failed to parse meeting summary") -> SummaryArtifact:
    return SummaryArtifact(
        summary=reason,
        sentiment=Sentiment(overall="neutral", confidence=0.0),
        parsed=False,
    )


def parse_summary(content: str) -> SummaryArtifact:
    data = _parse_json_lenient(content)
    if not isinstance(data, dict):
        logger.warning("Summary reply was not JSON (%d chars); storing degraded summary", len(content or ""))
        return degraded_summary()
    try:
        return SummaryArtifact(
            summary=str(data.get("summary") or "No summary available"),
            key_points=_string_list(data.get("keyPoints")),
            action_items=_string_list(data.get("actionItems")),
            # older prompts used the misspelled key
            decisions_made=_string_list(data.get("decisionsMade", data.get("decisonsMade"))),
            sentiment=_sentiment(data.get("sentiment")),
            speaker_highlights=_highlights(data.get("speakerHighlights")),
            meeting_notes=str(data.get("meetingNotes") or ""),
        )
    except ValidationError as exc:
        logger.warning("Summary reply failed validation: %s", exc)
        return degraded_summary()


def _parse_json_lenient(text: Optional[str]) -> Any:
    t = (text or "").strip()
    if not t:
        return None
    try:
        return json.loads(t)
    except ValueError:
        pass
    fenced = re.search(r"```(?:json)?\s*(.*?)```", t, re.DOTALL)
    if fenced:
        try:
            return json.loads(fenced.group(1).strip())
        except ValueError:
            pass
    # Try to extract the outermost {...} block
    start = t.find("{")
    end = t.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(t[start : end + 1])
        except ValueError:
            pass
    return None


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def _sentiment(value: Any) -> Sentiment:
    if not isinstance(value, dict):
        return Sentiment(overall="neutral", confidence=0.5)
    overall = str(value.get("overall", "neutral")).lower()
    if overall not in {"positive", "neutral", "negative"}:
        overall = "neutral"
    try:
        confidence = float(value.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.0
    return Sentiment(overall=overall, confidence=confidence)


def _highlights(value: Any) -> List[SpeakerHighlight]:
    if not isinstance(value, list):
        return []
    out: List[SpeakerHighlight] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        speaker = str(item.get("speaker") or "").strip()
        if not speaker:
            continue
        out.append(SpeakerHighlight(speaker=speaker, main_points=_string_list(item.get("mainPoints"))))
    return out


def summary_to_text(summary: Optional[SummaryArtifact]) -> str:
    """Plain-text rendering used as chat context."""
    if summary is None:
        return "No summary available."
    parts: List[str] = [summary.summary.strip()]
    sections: Dict[str, List[str]] = {
        "Key points": summary.key_points,
        "Action items": summary.action_items,
        "Decisions": summary.decisions_made,
    }
    for title, items in sections.items():
        if items:
            parts.append(title + ":\n" + "\n".join(f"- {i}" for i in items))
    if summary.meeting_notes.strip():
        parts.append("Notes:\n" + summary.meeting_notes.strip())
    return "\n\n".join(p for p in parts if p)
