"""FastAPI app for conversation audio reconstruction.

POST /v1/conversations/{session_id}/audio mirrors the three actions of the
audio workflow: start (initiate, single status check), poll (wait for the
job and run extraction), status (non-blocking). GET on the same path
returns the stored full recording and per-turn clips grouped by turn.
"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request

from domain.errors import StorageError
from mappers import (
    conversation_audio_to_dto, correlation_to_dto, result_to_dto, status_to_dto, summary_to_dto,
)
from models import (
    AudioActionRequest, ConversationAudioResponse, CorrelationRequest, CorrelationResponse, SegmentSummary,
)
from use_cases.reconstruct import ReconstructConversationAudioUseCase, ReconstructRequest

logger = logging.getLogger(__name__)


def create_app(use_case: Optional[ReconstructConversationAudioUseCase] = None) -> FastAPI:
    from config import get_config

    cfg = get_config()
    if use_case is None:
        from config import create_use_case
        use_case = create_use_case(cfg)

    app = FastAPI(title="Conversation Audio Reconstruction")
    app.state.use_case = use_case

    def _use_case(request: Request) -> ReconstructConversationAudioUseCase:
        return request.app.state.use_case

    @app.get("/health")
    def health(request: Request):
        return {
            "status": "ok",
            "active_sessions": _use_case(request).locks.active(),
            "config": cfg.as_dict(),
        }

    @app.post("/v1/conversations/{session_id}/audio")
    def conversation_audio(session_id: str, body: AudioActionRequest, request: Request):
        uc = _use_case(request)

        if body.action == "status":
            return status_to_dto(uc.status(session_id))

        if body.action == "start":
            req = ReconstructRequest(session_id=session_id, poll=False)
        else:
            req = ReconstructRequest(
                session_id=session_id,
                poll=True,
                max_attempts=body.max_attempts or cfg.poll_max_attempts,
                interval_ms=body.interval_ms if body.interval_ms is not None else cfg.poll_interval_ms,
            )
        req.deadline_seconds = body.deadline_seconds

        logger.info(f"Audio {body.action} requested for session {session_id}")
        result = uc.execute(req)
        return result_to_dto(result)

    @app.get("/v1/conversations/{session_id}/audio", response_model=ConversationAudioResponse)
    def get_conversation_audio(session_id: str, request: Request):
        try:
            audio = _use_case(request).audio_index(session_id)
        except StorageError as e:
            logger.error(f"Could not read stored audio for {session_id}: {e}")
            raise HTTPException(status_code=503, detail="Conversation store unavailable")
        if audio is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return conversation_audio_to_dto(audio)

    @app.post("/v1/conversations/{session_id}/audio/retry-uploads", response_model=SegmentSummary)
    def retry_uploads(session_id: str, request: Request):
        return summary_to_dto(_use_case(request).retry_uploads(session_id))

    @app.put("/v1/conversations/{session_id}/correlation", response_model=CorrelationResponse)
    def record_correlation(session_id: str, body: CorrelationRequest, request: Request):
        try:
            record = _use_case(request).record_correlation(session_id, body.external_job_id)
        except StorageError as e:
            logger.error(f"Could not store correlation for {session_id}: {e}")
            raise HTTPException(status_code=503, detail="Correlation store unavailable")
        return correlation_to_dto(record)

    return app

