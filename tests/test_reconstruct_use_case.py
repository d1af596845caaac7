"""End-to-end tests for the reconstruction pipeline use case, wired with in-memory fakes."""

import json
import threading

import pytest

from adapters.local.json_conversation_store import JsonFileConversationStore
from conftest import T0, FakeSlicer, at, job
from domain.cancellation import CancelToken
from domain.errors import ProviderError
from domain.models import CandidateSession, ConversationRecord, CorrelationRecord, JobStatus, PipelineOutcome, Turn
from domain.timing import to_epoch_ms
from use_cases.correlate import SessionCorrelator
from use_cases.extract import SegmentExtractionEngine
from use_cases.persist import ArtifactPersistence
from use_cases.reconstruct import ReconstructConversationAudioUseCase, ReconstructRequest
from use_cases.reconstruction_job import ReconstructionJobClient


@pytest.fixture
def session(conversations, correlations, mixed_turns):
    conversations.conversations["S1"] = ConversationRecord("S1", T0, mixed_turns)
    correlations.upsert(CorrelationRecord("S1", "chat-1", T0))
    return "S1"


class TestCompletedRun:
    def test_all_segments_done(self, use_case, session, provider, storage, slicer, conversations):
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]
        result = use_case.execute(ReconstructRequest(session))

        assert result.outcome == PipelineOutcome.COMPLETED
        assert result.external_job_id == "chat-1"
        assert result.job_status == JobStatus.COMPLETE
        assert result.summary.success
        assert result.summary.extracted_count == 4
        assert [s.turn_number for s in result.summary.segments] == [1, 2, 3, 4]
        assert all(s.reference.startswith("https://storage.test/conversations/S1/turns/") for s in result.summary.segments)
        assert [(c[0], c[1]) for c in sorted(slicer.calls)] == [(0.0, 1.8), (2.0, 1.5), (4.0, 3.0), (7.0, 2.0)]
        assert len(conversations.list_turn_artifacts("S1")) == 4

    def test_full_audio_archived(self, use_case, session, provider, storage, conversations):
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]
        result = use_case.execute(ReconstructRequest(session))

        assert result.full_audio_ref == "https://storage.test/conversations/S1/complete-audio-chat-1.mp4"
        assert storage.objects["conversations/S1/complete-audio-chat-1.mp4"] == b"full-audio"
        assert conversations.full_audio["S1"] == result.full_audio_ref

    def test_polls_until_complete(self, use_case, session, provider, sleeps):
        provider.statuses = [job(JobStatus.QUEUED), job(JobStatus.PROCESSING), job(JobStatus.COMPLETE, "https://audio/1")]
        result = use_case.execute(ReconstructRequest(session, max_attempts=5, interval_ms=100))

        assert result.outcome == PipelineOutcome.COMPLETED
        assert provider.status_calls == 3
        assert sleeps == [0.1]

    def test_progress_stages(self, use_case, session, provider, progress):
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]
        use_case.execute(ReconstructRequest(session))
        assert progress.stages == ["correlating", "reconstructing", "extracting", "uploading", "done"]

    def test_zero_turns_is_empty_success(self, use_case, conversations, provider):
        conversations.conversations["S2"] = ConversationRecord("S2", T0, [])
        result = use_case.execute(ReconstructRequest("S2"))

        assert result.outcome == PipelineOutcome.COMPLETED
        assert result.summary.segments == []
        assert result.summary.success
        assert provider.status_calls == 0

    def test_heuristic_correlation(self, use_case, conversations, provider, mixed_turns):
        conversations.conversations["S3"] = ConversationRecord("S3", T0, mixed_turns)
        provider.candidates = [CandidateSession("chat-near", to_epoch_ms(at(60_000)))]
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/near", job_id="chat-near")]
        result = use_case.execute(ReconstructRequest("S3"))

        assert result.outcome == PipelineOutcome.COMPLETED
        assert result.external_job_id == "chat-near"


class TestShortCircuits:
    def test_unknown_session_not_found(self, use_case, provider):
        result = use_case.execute(ReconstructRequest("missing"))
        assert result.outcome == PipelineOutcome.NOT_FOUND
        assert provider.status_calls == 0

    def test_no_correlation_not_found(self, use_case, conversations, provider, mixed_turns):
        conversations.conversations["S1"] = ConversationRecord("S1", T0, mixed_turns)
        result = use_case.execute(ReconstructRequest("S1"))
        assert result.outcome == PipelineOutcome.NOT_FOUND
        assert result.external_job_id is None

    def test_failed_job_is_provider_failure(self, use_case, session, provider, downloader):
        provider.statuses = [job(JobStatus.FAILED)]
        result = use_case.execute(ReconstructRequest(session))

        assert result.outcome == PipelineOutcome.PROVIDER_FAILURE
        assert result.job_status == JobStatus.FAILED
        assert downloader.calls == []

    def test_failed_while_polling(self, use_case, session, provider):
        provider.statuses = [job(JobStatus.PROCESSING), job(JobStatus.FAILED)]
        result = use_case.execute(ReconstructRequest(session, interval_ms=1))
        assert result.outcome == PipelineOutcome.PROVIDER_FAILURE

    def test_start_without_polling_is_pending(self, use_case, session, provider, downloader):
        provider.statuses = [job(JobStatus.PROCESSING)]
        result = use_case.execute(ReconstructRequest(session, poll=False))

        assert result.outcome == PipelineOutcome.PENDING
        assert provider.status_calls == 1
        assert downloader.calls == []

    def test_unreachable_provider_without_polling_is_pending(self, use_case, session, provider):
        provider.statuses = [ProviderError("connection refused")]
        result = use_case.execute(ReconstructRequest(session, poll=False))
        assert result.outcome == PipelineOutcome.PENDING
        assert result.job_status is None

    def test_poll_ceiling_is_pending(self, use_case, session, provider, sleeps):
        provider.statuses = [job(JobStatus.PROCESSING)]
        result = use_case.execute(ReconstructRequest(session, max_attempts=3, interval_ms=500))

        assert result.outcome == PipelineOutcome.PENDING
        assert result.job_status == JobStatus.PROCESSING
        # one initiate check plus three polled checks
        assert provider.status_calls == 4
        assert sleeps == [0.5, 0.5]

    def test_cancelled_request_is_pending(self, use_case, session, provider):
        provider.statuses = [job(JobStatus.PROCESSING)]
        token = CancelToken()
        token.cancel()
        result = use_case.execute(ReconstructRequest(session, cancel=token))
        assert result.outcome == PipelineOutcome.PENDING

    def test_cancelled_before_download_is_pending(self, use_case, session, provider, downloader, storage):
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]
        token = CancelToken()
        token.cancel()
        result = use_case.execute(ReconstructRequest(session, cancel=token))

        assert result.outcome == PipelineOutcome.PENDING
        assert result.detail == "Cancelled before the audio was downloaded"
        assert downloader.calls == []
        assert storage.put_calls == 0

    def test_deadline_caps_download_timeout(self, use_case, session, provider, downloader):
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]
        result = use_case.execute(ReconstructRequest(session, deadline_seconds=600))

        assert result.outcome == PipelineOutcome.COMPLETED
        assert 0 < downloader.timeouts[0] <= 600

    def test_expired_url_is_pending(self, use_case, session, provider):
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/stale", expires_at_ms=500)]
        result = use_case.execute(ReconstructRequest(session))
        assert result.outcome == PipelineOutcome.PENDING

    def test_download_failure(self, use_case, session, provider, downloader, slicer, storage):
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]
        downloader.failures = 10
        result = use_case.execute(ReconstructRequest(session))

        assert result.outcome == PipelineOutcome.DOWNLOAD_FAILURE
        assert result.detail == "HTTP 503"
        assert result.summary.failed_count == 4
        assert slicer.calls == []
        assert storage.put_calls == 0


class TestTimestamps:
    def test_validation_issues_are_advisory(self, use_case, conversations, correlations, provider):
        turns = [Turn(1, "agent", at(3000)), Turn(2, "user", at(1000))]
        conversations.conversations["S1"] = ConversationRecord("S1", T0, turns)
        correlations.upsert(CorrelationRecord("S1", "chat-1", T0))
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]

        result = use_case.execute(ReconstructRequest("S1"))
        assert result.outcome == PipelineOutcome.COMPLETED
        assert len(result.validation_issues) == 1

    def test_strict_mode_rejects_bad_timestamps(self, conversations, correlations, provider, engine,
                                                persistence, progress, sleeps, downloader):
        strict = ReconstructConversationAudioUseCase(
            conversations=conversations,
            correlator=SessionCorrelator(correlations, provider, conversations),
            jobs=ReconstructionJobClient(provider, sleep=sleeps.append, clock_ms=lambda: 1_000),
            extractor=engine,
            persistence=persistence,
            progress=progress,
            strict_timestamps=True,
        )
        turns = [Turn(1, "agent", at(3000)), Turn(2, "user", at(1000))]
        conversations.conversations["S1"] = ConversationRecord("S1", T0, turns)
        correlations.upsert(CorrelationRecord("S1", "chat-1", T0))
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]

        result = strict.execute(ReconstructRequest("S1"))
        assert result.outcome == PipelineOutcome.INVALID_TIMESTAMPS
        assert downloader.calls == []

    def test_missing_start_falls_back_to_earliest_turn(self, use_case, conversations, correlations, provider, slicer):
        turns = [Turn(1, "agent", at(1000)), Turn(2, "user", at(3000))]
        conversations.conversations["S1"] = ConversationRecord("S1", None, turns)
        correlations.upsert(CorrelationRecord("S1", "chat-1", T0))
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]

        result = use_case.execute(ReconstructRequest("S1"))
        assert result.outcome == PipelineOutcome.COMPLETED
        assert sorted(c[:2] for c in slicer.calls) == [(0.0, 2.0), (2.0, 2.0)]

    def test_no_usable_anchor(self, use_case, conversations, correlations, provider):
        turns = [Turn(1, "agent", "garbage")]
        conversations.conversations["S1"] = ConversationRecord("S1", None, turns)
        correlations.upsert(CorrelationRecord("S1", "chat-1", T0))
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]

        result = use_case.execute(ReconstructRequest("S1"))
        assert result.outcome == PipelineOutcome.INVALID_TIMESTAMPS


class TestUploads:
    def test_segment_done_only_when_uploaded(self, use_case, session, provider, storage):
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]
        storage.fail_paths = {"turn-2-"}
        result = use_case.execute(ReconstructRequest(session))

        assert result.outcome == PipelineOutcome.COMPLETED
        assert [s.done for s in result.summary.segments] == [True, False, True, True]
        assert "upload rejected" in result.summary.segments[1].error
        assert result.summary.success

    def test_extraction_failure_reported_per_segment(self, conversations, correlations, provider, persistence,
                                                     progress, sleeps, downloader, tmp_path, mixed_turns):
        use_case = ReconstructConversationAudioUseCase(
            conversations=conversations,
            correlator=SessionCorrelator(correlations, provider, conversations),
            jobs=ReconstructionJobClient(provider, sleep=sleeps.append, clock_ms=lambda: 1_000),
            extractor=SegmentExtractionEngine(FakeSlicer(fail_turns={3}), downloader, str(tmp_path)),
            persistence=persistence,
            progress=progress,
        )
        conversations.conversations["S1"] = ConversationRecord("S1", T0, mixed_turns)
        correlations.upsert(CorrelationRecord("S1", "chat-1", T0))
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]

        summary = use_case.execute(ReconstructRequest("S1")).summary
        assert summary.extracted_count == 3
        assert summary.segments[2].done is False
        assert "slice failed" in summary.segments[2].error

    def test_retry_uploads_after_outage(self, use_case, session, provider, storage, slicer):
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]
        storage.fail_paths = {"turn-2-", "turn-4-"}
        use_case.execute(ReconstructRequest(session))
        slices = len(slicer.calls)

        storage.fail_paths = set()
        summary = use_case.retry_uploads(session)

        assert [(s.turn_number, s.done) for s in summary.segments] == [(2, True), (4, True)]
        assert len(slicer.calls) == slices

    def test_retry_with_nothing_pending(self, use_case):
        assert use_case.retry_uploads("S1").segments == []


class TestStatusAndCorrelation:
    def test_status_reads_job_once(self, use_case, session, provider):
        provider.statuses = [job(JobStatus.PROCESSING)]
        status = use_case.status(session)
        assert status.external_job_id == "chat-1"
        assert status.job.status == JobStatus.PROCESSING
        assert provider.status_calls == 1

    def test_status_without_correlation(self, use_case):
        status = use_case.status("unknown")
        assert status.external_job_id is None
        assert status.job is None

    def test_record_correlation(self, use_case, correlations):
        record = use_case.record_correlation("S7", "chat-7")
        assert correlations.get("S7").external_job_id == "chat-7"
        assert record.session_id == "S7"


class TestSessionLocking:
    def test_lock_released_after_run(self, use_case, session, provider):
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]
        use_case.execute(ReconstructRequest(session))
        assert use_case.locks.active() == []

    def test_lock_released_after_short_circuit(self, use_case, progress):
        use_case.execute(ReconstructRequest("missing"))
        assert use_case.locks.active() == []
        assert progress.stages == ["done"]

    def test_same_session_runs_are_serialized(self, use_case, session, provider):
        entered = threading.Event()
        release = threading.Event()
        original = provider.get_reconstruction_status

        def blocking_status(external_job_id):
            entered.set()
            release.wait(timeout=5)
            return original(external_job_id)

        provider.get_reconstruction_status = blocking_status
        provider.statuses = [job(JobStatus.FAILED)]

        results = []
        first = threading.Thread(target=lambda: results.append(use_case.execute(ReconstructRequest(session))))
        first.start()
        assert entered.wait(timeout=5)
        entered.clear()

        second = threading.Thread(target=lambda: results.append(use_case.execute(ReconstructRequest(session))))
        second.start()
        # The second run waits on the session lock and never reaches the provider.
        assert not entered.wait(timeout=0.2)
        assert use_case.locks.active() == [session]

        release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert [r.outcome for r in results] == [PipelineOutcome.PROVIDER_FAILURE] * 2
        assert provider.status_calls == 2
        assert use_case.locks.active() == []

    def test_different_sessions_do_not_block(self, use_case):
        with use_case.locks.hold("A"):
            result = use_case.execute(ReconstructRequest("B"))
        assert result.outcome == PipelineOutcome.NOT_FOUND


class TestJsonConversationFiles:
    @pytest.fixture
    def conversation_dir(self, tmp_path):
        root = tmp_path / "conversations"
        root.mkdir()
        return root

    @pytest.fixture
    def file_use_case(self, conversation_dir, correlations, provider, engine, storage, progress, sleeps):
        store = JsonFileConversationStore(str(conversation_dir))
        return ReconstructConversationAudioUseCase(
            conversations=store,
            correlator=SessionCorrelator(correlations, provider, store),
            jobs=ReconstructionJobClient(provider, sleep=sleeps.append, clock_ms=lambda: 1_000),
            extractor=engine,
            persistence=ArtifactPersistence(storage, store),
            progress=progress,
        )

    def write(self, conversation_dir, doc):
        (conversation_dir / f"{doc['session_id']}.json").write_text(json.dumps(doc))

    def test_unparsable_start_falls_back_to_earliest_turn(self, file_use_case, conversation_dir, correlations,
                                                          provider, slicer):
        self.write(conversation_dir, {
            "session_id": "S1",
            "started_at": "03/04/2025 10:00",
            "turns": [
                {"turn_number": 1, "speaker": "agent", "timestamp": "2025-03-04T10:00:01+00:00"},
                {"turn_number": 2, "speaker": "user", "timestamp": "2025-03-04T10:00:03+00:00"},
            ],
        })
        correlations.upsert(CorrelationRecord("S1", "chat-1", T0))
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]

        result = file_use_case.execute(ReconstructRequest("S1"))
        assert result.outcome == PipelineOutcome.COMPLETED
        assert sorted(c[:2] for c in slicer.calls) == [(0.0, 2.0), (2.0, 2.0)]

    def test_malformed_turn_is_not_found(self, file_use_case, conversation_dir, provider):
        self.write(conversation_dir, {
            "session_id": "S1",
            "started_at": "2025-03-04T10:00:00Z",
            "turns": [{"turn_number": "first", "speaker": "agent"}],
        })
        result = file_use_case.execute(ReconstructRequest("S1"))

        assert result.outcome == PipelineOutcome.NOT_FOUND
        assert "Malformed turn" in result.detail
        assert provider.status_calls == 0

    def test_audio_index_reads_stored_clips(self, file_use_case, conversation_dir, correlations, provider):
        self.write(conversation_dir, {
            "session_id": "S1",
            "started_at": "2025-03-04T10:00:00Z",
            "turns": [{"turn_number": 1, "speaker": "agent", "timestamp": "2025-03-04T10:00:00Z",
                       "prosody": {"duration": 1.2}}],
        })
        correlations.upsert(CorrelationRecord("S1", "chat-1", T0))
        provider.statuses = [job(JobStatus.COMPLETE, "https://audio/1")]
        file_use_case.execute(ReconstructRequest("S1"))

        audio = file_use_case.audio_index("S1")
        assert audio.full_audio_ref == "https://storage.test/conversations/S1/complete-audio-chat-1.mp4"
        assert [(e.turn_number, e.speaker, e.duration_ms) for e in audio.artifacts] == [(1, "agent", 1200)]
        assert file_use_case.audio_index("nobody") is None
