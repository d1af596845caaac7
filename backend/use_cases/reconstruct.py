"""ReconstructConversationAudioUseCase — orchestrates the turn audio pipeline.

Correlate session -> initiate/poll reconstruction -> compute segments ->
validate timestamps (advisory) -> download + extract -> upload -> summary.

Accepts all collaborators via dependency injection. Pipeline-level misses
(no correlation, job still pending, provider failure, download failure)
short-circuit into a typed PipelineResult; per-segment failures are carried
in the summary.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Optional, Union

from domain.cancellation import CancelToken
from domain.errors import StorageError
from domain.models import (
    ConversationAudio, ConversationRecord, ExtractionSummary, JobStatus, PipelineOutcome, PipelineResult,
    PipelineSummary, PollState, ReconstructionJob, Segment, SegmentOutcome, UploadResult,
)
from domain.timing import DEFAULT_TAIL_MS, calculate_turn_time_ranges, to_epoch_ms, validate_turn_timestamps
from ports.conversation_store import ConversationStorePort
from ports.progress import ProgressPort
from use_cases.correlate import SessionCorrelator
from use_cases.extract import SegmentExtractionEngine
from use_cases.persist import ArtifactPersistence
from use_cases.reconstruction_job import DEFAULT_INTERVAL_MS, DEFAULT_MAX_ATTEMPTS, ReconstructionJobClient

logger = logging.getLogger(__name__)


@dataclass
class ReconstructRequest:
    """All parameters for one pipeline run."""
    session_id: str
    poll: bool = True
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    interval_ms: int = DEFAULT_INTERVAL_MS
    deadline_seconds: Optional[float] = None
    cancel: Optional[CancelToken] = None


@dataclass
class PipelineRun:
    """Working state of a single run, passed between steps."""
    request: ReconstructRequest
    cancel: Optional[CancelToken] = None
    conversation: Optional[ConversationRecord] = None
    external_job_id: Optional[str] = None
    job: Optional[ReconstructionJob] = None
    segments: list[Segment] = field(default_factory=list)
    validation_issues: list[str] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.request.session_id

    def result(self, outcome: PipelineOutcome, **kwargs) -> PipelineResult:
        return PipelineResult(
            outcome=outcome,
            session_id=self.session_id,
            external_job_id=self.external_job_id,
            job_status=self.job.status if self.job else None,
            validation_issues=list(self.validation_issues),
            **kwargs,
        )


@dataclass
class ReconstructionStatus:
    session_id: str
    external_job_id: Optional[str] = None
    job: Optional[ReconstructionJob] = None


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class SessionLocks:
    """Per-session mutual exclusion. Entries are evicted once no run holds or waits on them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: dict[str, _LockEntry] = {}

    @contextmanager
    def hold(self, session_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(session_id, _LockEntry())
            entry.holders += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[session_id]

    def active(self) -> list[str]:
        with self._guard:
            return list(self._entries)


def _anchor_for(conversation: ConversationRecord) -> Optional[Union[datetime, int]]:
    if conversation.started_at is not None:
        return conversation.started_at
    parsed = [to_epoch_ms(t.timestamp) for t in conversation.turns]
    parsed = [ts for ts in parsed if ts is not None]
    return min(parsed) if parsed else None


def _describe(result: PipelineResult) -> str:
    if result.summary is None:
        return result.outcome.value
    return f"{result.outcome.value}, {result.summary.extracted_count} done, {result.summary.failed_count} failed"


class ReconstructConversationAudioUseCase:
    def __init__(
        self,
        conversations: ConversationStorePort,
        correlator: SessionCorrelator,
        jobs: ReconstructionJobClient,
        extractor: SegmentExtractionEngine,
        persistence: ArtifactPersistence,
        progress: ProgressPort,
        default_tail_ms: int = DEFAULT_TAIL_MS,
        strict_timestamps: bool = False,
    ):
        self._conversations = conversations
        self._correlator = correlator
        self._jobs = jobs
        self._extractor = extractor
        self._persistence = persistence
        self._progress = progress
        self._default_tail_ms = default_tail_ms
        self._strict_timestamps = strict_timestamps
        self._locks = SessionLocks()

    @property
    def locks(self) -> SessionLocks:
        return self._locks

    def execute(self, req: ReconstructRequest) -> PipelineResult:
        cancel = req.cancel
        if cancel is None and req.deadline_seconds is not None:
            cancel = CancelToken(deadline_seconds=req.deadline_seconds)
        with self._locks.hold(req.session_id):
            result = self._execute(PipelineRun(request=req, cancel=cancel))
            self._progress.report(req.session_id, "done", progress=1.0, detail=_describe(result))
        return result

    def _execute(self, run: PipelineRun) -> PipelineResult:
        sid = run.session_id
        logger.info(f"Processing audio for conversation: {sid}")

        # 1. Load the conversation record
        try:
            run.conversation = self._conversations.get_conversation(sid)
        except StorageError as e:
            logger.error(f"Could not read conversation {sid}: {e}")
            return run.result(PipelineOutcome.NOT_FOUND, detail=str(e))
        if run.conversation is None:
            return run.result(PipelineOutcome.NOT_FOUND, detail="No conversation record for session")
        if not run.conversation.turns:
            logger.info(f"Conversation {sid} has no turns, nothing to extract")
            return run.result(PipelineOutcome.COMPLETED, summary=PipelineSummary())

        # 2. Correlate to the provider's chat id
        self._progress.report(sid, "correlating")
        run.external_job_id = self._correlator.lookup(sid, run.conversation.started_at)
        if run.external_job_id is None:
            return run.result(
                PipelineOutcome.NOT_FOUND,
                detail="Could not find matching provider chat for session",
            )

        # 3. Reconstruction job
        self._progress.report(sid, "reconstructing", detail=run.external_job_id)
        blocked = self._await_reconstruction(run)
        if blocked is not None:
            return blocked

        url = self._jobs.fresh_result_url(run.job)
        if url is None:
            return run.result(PipelineOutcome.PENDING, detail="Signed audio URL expired")

        # 4. Segments
        anchor = _anchor_for(run.conversation)
        if anchor is None:
            return run.result(PipelineOutcome.INVALID_TIMESTAMPS, detail="No usable conversation start time")

        validation = validate_turn_timestamps(run.conversation.turns)
        run.validation_issues = validation.issues
        for issue in validation.issues:
            logger.warning(f"[{sid}] {issue}")
        if self._strict_timestamps and not validation.valid:
            return run.result(PipelineOutcome.INVALID_TIMESTAMPS, detail="Turn timestamps failed validation")

        run.segments = calculate_turn_time_ranges(run.conversation.turns, anchor, self._default_tail_ms)

        # 5. Download + extract
        self._progress.report(sid, "extracting", detail=f"{len(run.segments)} segments")
        extraction = self._extractor.run(
            sid, url, run.segments, run.cancel,
            on_source=lambda path: self._persistence.store_full_audio(sid, run.external_job_id, path),
        )
        if extraction.cancelled:
            return run.result(
                PipelineOutcome.PENDING,
                summary=self._summarize(extraction, []),
                detail="Cancelled before the audio was downloaded",
            )
        if extraction.download_error is not None:
            return run.result(
                PipelineOutcome.DOWNLOAD_FAILURE,
                summary=self._summarize(extraction, []),
                detail=extraction.download_error,
            )

        # 6. Upload
        self._progress.report(sid, "uploading", detail=f"{extraction.extracted_count} artifacts")
        uploads = self._persistence.upload_all(sid, extraction.results, run.cancel)

        summary = self._summarize(extraction, uploads)
        return run.result(PipelineOutcome.COMPLETED, summary=summary, full_audio_ref=extraction.source_ref)

    def _await_reconstruction(self, run: PipelineRun) -> Optional[PipelineResult]:
        """Drive the job to COMPLETE. Returns a result only when the pipeline must stop."""
        req = run.request
        run.job = self._jobs.initiate(run.external_job_id)

        if run.job is not None and run.job.status == JobStatus.FAILED:
            return run.result(PipelineOutcome.PROVIDER_FAILURE, detail="Audio reconstruction failed")
        if run.job is not None and run.job.status == JobStatus.COMPLETE and run.job.result_url:
            return None

        if not req.poll:
            return run.result(PipelineOutcome.PENDING, detail="Reconstruction in progress")

        polled = self._jobs.poll_until_terminal(
            run.external_job_id, req.max_attempts, req.interval_ms, run.cancel,
        )
        if polled.job is not None:
            run.job = polled.job
        if polled.state == PollState.FAILED:
            return run.result(PipelineOutcome.PROVIDER_FAILURE, detail="Audio reconstruction failed")
        if polled.state == PollState.PENDING:
            return run.result(
                PipelineOutcome.PENDING,
                detail=f"Reconstruction not finished after {polled.attempts} status checks",
            )
        return None

    @staticmethod
    def _summarize(extraction: ExtractionSummary, uploads: list[UploadResult]) -> PipelineSummary:
        by_turn = {(u.turn_number, u.speaker): u for u in uploads}
        outcomes: list[SegmentOutcome] = []
        for result in extraction.results:
            upload = by_turn.get((result.turn_number, result.speaker))
            if not result.ok:
                outcomes.append(SegmentOutcome(result.turn_number, result.speaker, False, error=result.error))
            elif upload is None or not upload.ok:
                error = upload.error if upload else "Not uploaded"
                outcomes.append(SegmentOutcome(result.turn_number, result.speaker, False, error=error))
            else:
                outcomes.append(SegmentOutcome(result.turn_number, result.speaker, True, reference=upload.reference))
        return PipelineSummary(segments=sorted(outcomes, key=lambda s: s.turn_number))

    def status(self, session_id: str) -> ReconstructionStatus:
        """Non-blocking check: correlate and read the job state once."""
        external_job_id = self._correlator.lookup(session_id)
        if external_job_id is None:
            return ReconstructionStatus(session_id)
        return ReconstructionStatus(session_id, external_job_id, self._jobs.initiate(external_job_id))

    def record_correlation(self, session_id: str, external_job_id: str):
        return self._correlator.record(session_id, external_job_id)

    def retry_uploads(self, session_id: str) -> PipelineSummary:
        """Re-upload clips retained by earlier failed uploads."""
        with self._locks.hold(session_id):
            uploads = self._persistence.retry_pending(session_id, self._extractor.artifact_dir(session_id))
        return PipelineSummary(segments=[
            SegmentOutcome(u.turn_number, u.speaker, u.ok, reference=u.reference, error=u.error)
            for u in uploads
        ])

    def audio_index(self, session_id: str) -> Optional[ConversationAudio]:
        """Stored audio for a session, or None when the conversation is unknown.

        Raises StorageError when the conversation store cannot be read.
        """
        conversation = self._conversations.get_conversation(session_id)
        if conversation is None:
            return None
        return ConversationAudio(
            session_id=session_id,
            full_audio_ref=conversation.full_audio_ref,
            artifacts=self._conversations.list_turn_artifacts(session_id),
        )
