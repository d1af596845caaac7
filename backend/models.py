from typing import List, Optional, Literal
from pydantic import BaseModel, Field


class AudioActionRequest(BaseModel):
    """Body for POST /v1/conversations/{session_id}/audio"""
    action: Literal["start", "poll", "status"] = "start"
    max_attempts: Optional[int] = Field(default=None, ge=1, le=120)
    interval_ms: Optional[int] = Field(default=None, ge=0, le=60_000)
    deadline_seconds: Optional[float] = Field(default=None, gt=0)


class CorrelationRequest(BaseModel):
    external_job_id: str = Field(min_length=1)


class SegmentResult(BaseModel):
    """Per-turn outcome: done only when both extraction and upload succeeded."""
    turn_number: int
    speaker: str
    done: bool
    audio_url: Optional[str] = None
    error: Optional[str] = None


class SegmentSummary(BaseModel):
    success: bool
    extracted_count: int
    failed_count: int
    segments: List[SegmentResult] = []


class PipelineResponse(BaseModel):
    """Response format for a pipeline run"""
    outcome: str
    session_id: str
    chat_id: Optional[str] = None
    status: Optional[str] = None
    audio_url: Optional[str] = None
    summary: Optional[SegmentSummary] = None
    validation_issues: List[str] = []
    detail: Optional[str] = None


class StatusResponse(BaseModel):
    session_id: str
    found: bool
    chat_id: Optional[str] = None
    status: Optional[str] = None
    audio_url: Optional[str] = None


class CorrelationResponse(BaseModel):
    session_id: str
    chat_id: str
    captured_at: str


class TurnAudioClip(BaseModel):
    speaker: str
    audio_url: str
    audio_format: str = "mp3"
    duration_ms: Optional[int] = None
    status: str


class TurnAudioGroup(BaseModel):
    """All stored clips for one turn number."""
    turn_number: int
    clips: List[TurnAudioClip] = []


class ConversationAudioResponse(BaseModel):
    """Response for GET /v1/conversations/{session_id}/audio"""
    session_id: str
    audio_url: Optional[str] = None
    turns: List[TurnAudioGroup] = []
