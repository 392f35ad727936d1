"""Derived artifacts stored as JSON on the meeting row."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from meetai.models.base import utcnow


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class TranscriptEntry(_CamelModel):
    speaker: str = "Speaker"
    text: str = ""
    time: Optional[Union[float, str]] = None


class TranscriptArtifact(_CamelModel):
    raw: str
    cleaned: str
    entries: Optional[List[TranscriptEntry]] = None
    char_count: int = Field(default=0, alias="charCount")
    processed_at: datetime = Field(default_factory=utcnow, alias="processedAt")


class Sentiment(_CamelModel):
    overall: Literal["positive", "neutral", "negative"] = "neutral"
    confidence: float = 0.0

    @field_validator("confidence")
    @classmethod
    def _clamp(cls, v: float) -> float:
        return max(0.0, min(1.0, float(v)))


class SpeakerHighlight(_CamelModel):
    speaker: str
    main_points: List[str] = Field(default_factory=list, alias="mainPoints")


class SummaryArtifact(_CamelModel):
    summary: str = ""
    key_points: List[str] = Field(default_factory=list, alias="keyPoints")
    action_items: List[str] = Field(default_factory=list, alias="actionItems")
    decisions_made: List[str] = Field(default_factory=list, alias="decisionsMade")
    sentiment: Sentiment = Field(default_factory=Sentiment)
    speaker_highlights: List[SpeakerHighlight] = Field(default_factory=list, alias="speakerHighlights")
    meeting_notes: str = Field(default="", alias="meetingNotes")
    generated_at: datetime = Field(default_factory=utcnow, alias="generatedAt")
    # False when the provider reply could not be parsed
    parsed: bool = True


def load_transcript(value: Optional[str]) -> Optional[TranscriptArtifact]:
    if not value:
        return None
    return TranscriptArtifact.model_validate_json(value)


def load_summary(value: Optional[str]) -> Optional[SummaryArtifact]:
    if not value:
        return None
    return SummaryArtifact.model_validate_json(value)
