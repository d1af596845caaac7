"""Framework-agnostic domain models for turn audio reconstruction.

Pydantic DTOs for the HTTP API live in models.py, with mappers at the
boundary. Everything here is plain dataclasses and enums.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union


@dataclass(frozen=True)
class ExplicitBounds:
    """Provider-measured turn bounds, in ms relative to the conversation start."""
    begin_ms: int
    end_ms: int


@dataclass(frozen=True)
class MeasuredDuration:
    """Turn duration derived from vocal analysis."""
    seconds: float


TimingEvidence = Union[ExplicitBounds, MeasuredDuration]

TimestampValue = Union[datetime, str, int, float, None]


@dataclass(frozen=True)
class Turn:
    """One utterance by a participant."""
    turn_number: int
    speaker: str
    timestamp: TimestampValue
    message: str = ""
    timing: Optional[TimingEvidence] = None


@dataclass(frozen=True)
class Segment:
    """A [start_ms, end_ms) slice of the full conversation audio for one turn."""
    turn_number: int
    speaker: str
    start_ms: int
    end_ms: int

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms


@dataclass
class ValidationReport:
    valid: bool
    issues: list[str] = field(default_factory=list)


@dataclass
class ConversationRecord:
    """A locally recorded conversation: its turns and when it started."""
    session_id: str
    started_at: Optional[datetime]
    turns: list[Turn] = field(default_factory=list)
    full_audio_ref: Optional[str] = None


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETE, JobStatus.FAILED)


@dataclass
class ReconstructionJob:
    """Provider-side reconstruction job as last observed."""
    external_job_id: str
    status: JobStatus
    result_url: Optional[str] = None
    expires_at_ms: Optional[int] = None

    def url_valid_at(self, now_ms: int) -> bool:
        if not self.result_url:
            return False
        return self.expires_at_ms is None or now_ms < self.expires_at_ms


class PollState(str, Enum):
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    PENDING = "PENDING"


@dataclass
class PollResult:
    state: PollState
    job: Optional[ReconstructionJob] = None
    attempts: int = 0


@dataclass(frozen=True)
class CorrelationRecord:
    session_id: str
    external_job_id: str
    captured_at: datetime


@dataclass(frozen=True)
class CandidateSession:
    """A recent provider-side session listed for correlation."""
    id: str
    start_timestamp_ms: int


@dataclass
class ExtractionResult:
    """Outcome of slicing one segment. Exactly one of file_path/error is set."""
    turn_number: int
    speaker: str
    file_path: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.file_path is not None and self.error is None


@dataclass
class ExtractionSummary:
    results: list[ExtractionResult] = field(default_factory=list)
    source_ref: Optional[str] = None
    download_error: Optional[str] = None
    # Set when the run was cancelled before the source audio was available.
    cancelled: bool = False

    @property
    def extracted_count(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed_count(self) -> int:
        return len(self.results) - self.extracted_count

    @property
    def success(self) -> bool:
        return self.extracted_count > 0


class ArtifactStatus(str, Enum):
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class UploadResult:
    """Outcome of persisting one turn artifact."""
    turn_number: int
    speaker: str
    status: ArtifactStatus
    reference: Optional[str] = None
    error: Optional[str] = None
    local_path: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == ArtifactStatus.COMPLETE


@dataclass(frozen=True)
class ArtifactIndexEntry:
    """One row of the persisted per-turn artifact index."""
    turn_number: int
    speaker: str
    reference: str
    status: ArtifactStatus
    audio_format: str = "mp3"
    duration_ms: Optional[int] = None


@dataclass
class SegmentOutcome:
    turn_number: int
    speaker: str
    done: bool
    reference: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PipelineSummary:
    segments: list[SegmentOutcome] = field(default_factory=list)

    @property
    def extracted_count(self) -> int:
        return sum(1 for s in self.segments if s.done)

    @property
    def failed_count(self) -> int:
        return len(self.segments) - self.extracted_count

    @property
    def success(self) -> bool:
        # An empty conversation is a valid, successful run.
        return self.extracted_count > 0 or not self.segments


class PipelineOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    NOT_FOUND = "NOT_FOUND"
    PENDING = "PENDING"
    PROVIDER_FAILURE = "PROVIDER_FAILURE"
    DOWNLOAD_FAILURE = "DOWNLOAD_FAILURE"
    INVALID_TIMESTAMPS = "INVALID_TIMESTAMPS"


@dataclass
class PipelineResult:
    outcome: PipelineOutcome
    session_id: str
    external_job_id: Optional[str] = None
    job_status: Optional[JobStatus] = None
    summary: Optional[PipelineSummary] = None
    full_audio_ref: Optional[str] = None
    validation_issues: list[str] = field(default_factory=list)
    detail: Optional[str] = None


@dataclass
class ConversationAudio:
    """Stored audio for a session: the full recording and the per-turn clips."""
    session_id: str
    full_audio_ref: Optional[str] = None
    artifacts: list[ArtifactIndexEntry] = field(default_factory=list)

    def by_turn(self) -> dict[int, list[ArtifactIndexEntry]]:
        grouped: dict[int, list[ArtifactIndexEntry]] = {}
        for entry in sorted(self.artifacts, key=lambda e: (e.turn_number, e.speaker)):
            grouped.setdefault(entry.turn_number, []).append(entry)
        return grouped
