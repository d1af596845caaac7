"""Pytest configuration, in-memory port fakes and fixtures."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest
from tenacity import wait_none

from domain.errors import DownloadError, ExtractionError, ProviderError, StorageError
from domain.models import (
    ArtifactIndexEntry, CandidateSession, ConversationRecord, CorrelationRecord,
    ExplicitBounds, JobStatus, MeasuredDuration, ReconstructionJob, Turn,
)
from ports.audio import AudioSlicingPort
from ports.conversation_store import ConversationStorePort
from ports.correlation_store import CorrelationStorePort
from ports.download import AudioDownloadPort
from ports.object_storage import ObjectStoragePort
from ports.progress import ProgressPort
from ports.voice_provider import VoiceProviderPort
from use_cases.correlate import SessionCorrelator
from use_cases.extract import SegmentExtractionEngine
from use_cases.persist import ArtifactPersistence
from use_cases.reconstruct import ReconstructConversationAudioUseCase
from use_cases.reconstruction_job import ReconstructionJobClient

T0 = datetime(2025, 3, 4, 10, 0, 0, tzinfo=timezone.utc)


def at(ms: int) -> datetime:
    return T0 + timedelta(milliseconds=ms)


def job(status: JobStatus, url: Optional[str] = None, expires_at_ms: Optional[int] = None,
        job_id: str = "chat-1") -> ReconstructionJob:
    return ReconstructionJob(job_id, status, result_url=url, expires_at_ms=expires_at_ms)


class FakeProvider(VoiceProviderPort):
    """Returns queued status responses in order; the last one repeats."""

    def __init__(self, statuses=None, candidates=None):
        self.statuses = list(statuses or [])
        self.candidates = list(candidates or [])
        self.list_calls = 0
        self.status_calls = 0
        self.list_error: Optional[Exception] = None

    def list_recent_sessions(self, limit: int = 50) -> list[CandidateSession]:
        self.list_calls += 1
        if self.list_error:
            raise self.list_error
        return self.candidates[:limit]

    def get_reconstruction_status(self, external_job_id: str) -> ReconstructionJob:
        self.status_calls += 1
        if not self.statuses:
            raise ProviderError("no status configured")
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, Exception):
            raise item
        return item


class FakeCorrelationStore(CorrelationStorePort):
    def __init__(self):
        self.records: dict[str, CorrelationRecord] = {}

    def get(self, session_id: str) -> Optional[CorrelationRecord]:
        return self.records.get(session_id)

    def upsert(self, record: CorrelationRecord) -> None:
        self.records[record.session_id] = record


class FakeConversationStore(ConversationStorePort):
    def __init__(self):
        self.conversations: dict[str, ConversationRecord] = {}
        self.full_audio: dict[str, str] = {}
        self.index: dict[str, dict[tuple, ArtifactIndexEntry]] = {}
        self.fail_index_for: set[int] = set()

    def get_conversation(self, session_id: str) -> Optional[ConversationRecord]:
        record = self.conversations.get(session_id)
        if record is not None and session_id in self.full_audio:
            return replace(record, full_audio_ref=self.full_audio[session_id])
        return record

    def set_full_audio_ref(self, session_id: str, reference: str) -> None:
        self.full_audio[session_id] = reference

    def upsert_turn_artifact(self, session_id: str, entry: ArtifactIndexEntry) -> None:
        if entry.turn_number in self.fail_index_for:
            raise StorageError("index unavailable")
        self.index.setdefault(session_id, {})[(entry.turn_number, entry.speaker)] = entry

    def list_turn_artifacts(self, session_id: str) -> list[ArtifactIndexEntry]:
        return sorted(self.index.get(session_id, {}).values(), key=lambda e: e.turn_number)


class FakeStorage(ObjectStoragePort):
    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.fail_paths: set[str] = set()
        self.put_calls = 0

    def put(self, path: str, data: bytes, content_type: str) -> str:
        self.put_calls += 1
        if any(fragment in path for fragment in self.fail_paths):
            raise StorageError(f"upload rejected: {path}")
        self.objects[path] = data
        self.content_types[path] = content_type
        return f"https://storage.test/{path}"

    def get(self, path: str) -> bytes:
        try:
            return self.objects[path]
        except KeyError:
            raise StorageError(f"missing: {path}")


class FakeSlicer(AudioSlicingPort):
    """Writes a small fake clip; turns listed in fail_turns raise ExtractionError."""

    def __init__(self, fail_turns=()):
        self.fail_turns = set(fail_turns)
        self.calls: list[tuple] = []
        self.inputs_existed: list[bool] = []

    def extract_segment(self, input_path, start_seconds, duration_seconds, output_path,
                        codec="libmp3lame", timeout=None):
        self.calls.append((start_seconds, duration_seconds, Path(output_path).name, codec))
        self.inputs_existed.append(Path(input_path).exists())
        turn_number = int(Path(output_path).name.split("-")[1])
        if turn_number in self.fail_turns:
            raise ExtractionError(f"slice failed for turn {turn_number}")
        Path(output_path).write_bytes(b"ID3" + f"{start_seconds}:{duration_seconds}".encode())
        return output_path


class FakeDownloader(AudioDownloadPort):
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls: list[str] = []
        self.destinations: list[str] = []
        self.timeouts: list[Optional[float]] = []
        self.on_download = None

    def download(self, url: str, destination: str, timeout: Optional[float] = None) -> int:
        self.calls.append(url)
        self.destinations.append(destination)
        self.timeouts.append(timeout)
        if self.on_download is not None:
            self.on_download()
        if self.failures > 0:
            self.failures -= 1
            raise DownloadError("HTTP 503")
        Path(destination).write_bytes(b"full-audio")
        return 10


class RecordingProgress(ProgressPort):
    def __init__(self):
        self.stages: list[str] = []

    def report(self, session_id, stage, progress=0.0, detail=None):
        self.stages.append(stage)


@pytest.fixture
def scenario_a_turns() -> list[Turn]:
    return [
        Turn(1, "agent", at(2500), "Hi there", MeasuredDuration(1.8)),
        Turn(2, "user", at(5000), "Hello", MeasuredDuration(2.3)),
    ]


@pytest.fixture
def mixed_turns() -> list[Turn]:
    return [
        Turn(1, "agent", at(0), "Welcome", ExplicitBounds(0, 1800)),
        Turn(2, "user", at(2000), "Thanks", MeasuredDuration(1.5)),
        Turn(3, "agent", at(4000), "First question"),
        Turn(4, "user", at(7000), "My answer"),
    ]


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def correlations() -> FakeCorrelationStore:
    return FakeCorrelationStore()


@pytest.fixture
def conversations() -> FakeConversationStore:
    return FakeConversationStore()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def slicer() -> FakeSlicer:
    return FakeSlicer()


@pytest.fixture
def downloader() -> FakeDownloader:
    return FakeDownloader()


@pytest.fixture
def progress() -> RecordingProgress:
    return RecordingProgress()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def engine(slicer, downloader, tmp_path) -> SegmentExtractionEngine:
    return SegmentExtractionEngine(slicer, downloader, str(tmp_path / "work"), max_workers=3, download_retries=1,
                                   retry_wait=wait_none())


@pytest.fixture
def persistence(storage, conversations) -> ArtifactPersistence:
    return ArtifactPersistence(storage, conversations, max_workers=2)


@pytest.fixture
def use_case(provider, correlations, conversations, engine, persistence, progress, sleeps):
    return ReconstructConversationAudioUseCase(
        conversations=conversations,
        correlator=SessionCorrelator(correlations, provider, conversations),
        jobs=ReconstructionJobClient(provider, sleep=sleeps.append, clock_ms=lambda: 1_000),
        extractor=engine,
        persistence=persistence,
        progress=progress,
    )
