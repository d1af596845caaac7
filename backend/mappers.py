"""Domain -> DTO mappers.

Converts pipeline results (domain dataclasses) into the Pydantic response
models served by the API.
"""

from domain.models import (
    ArtifactIndexEntry, ConversationAudio, CorrelationRecord, PipelineResult, PipelineSummary, SegmentOutcome,
)
from models import (
    ConversationAudioResponse, CorrelationResponse, PipelineResponse, SegmentResult, SegmentSummary,
    StatusResponse, TurnAudioClip, TurnAudioGroup,
)
from use_cases.reconstruct import ReconstructionStatus


def segment_to_dto(outcome: SegmentOutcome) -> SegmentResult:
    return SegmentResult(
        turn_number=outcome.turn_number,
        speaker=outcome.speaker,
        done=outcome.done,
        audio_url=outcome.reference,
        error=outcome.error,
    )


def summary_to_dto(summary: PipelineSummary) -> SegmentSummary:
    return SegmentSummary(
        success=summary.success,
        extracted_count=summary.extracted_count,
        failed_count=summary.failed_count,
        segments=[segment_to_dto(s) for s in summary.segments],
    )


def result_to_dto(result: PipelineResult) -> PipelineResponse:
    return PipelineResponse(
        outcome=result.outcome.value,
        session_id=result.session_id,
        chat_id=result.external_job_id,
        status=result.job_status.value if result.job_status else None,
        audio_url=result.full_audio_ref,
        summary=summary_to_dto(result.summary) if result.summary is not None else None,
        validation_issues=result.validation_issues,
        detail=result.detail,
    )


def status_to_dto(status: ReconstructionStatus) -> StatusResponse:
    job = status.job
    return StatusResponse(
        session_id=status.session_id,
        found=status.external_job_id is not None,
        chat_id=status.external_job_id,
        status=job.status.value if job else None,
        audio_url=job.result_url if job else None,
    )


def correlation_to_dto(record: CorrelationRecord) -> CorrelationResponse:
    return CorrelationResponse(
        session_id=record.session_id,
        chat_id=record.external_job_id,
        captured_at=record.captured_at.isoformat(),
    )


def clip_to_dto(entry: ArtifactIndexEntry) -> TurnAudioClip:
    return TurnAudioClip(
        speaker=entry.speaker,
        audio_url=entry.reference,
        audio_format=entry.audio_format,
        duration_ms=entry.duration_ms,
        status=entry.status.value,
    )


def conversation_audio_to_dto(audio: ConversationAudio) -> ConversationAudioResponse:
    return ConversationAudioResponse(
        session_id=audio.session_id,
        audio_url=audio.full_audio_ref,
        turns=[
            TurnAudioGroup(turn_number=turn_number, clips=[clip_to_dto(e) for e in entries])
            for turn_number, entries in audio.by_turn().items()
        ],
    )
