"""ArtifactPersistence — uploads extracted turn clips and records the artifact index.

Each artifact is persisted independently. An uploaded clip's local file is
deleted; a clip whose upload or index write failed stays on disk so that
retry_pending() can re-upload it without re-extracting.
"""

import logging
import os
import re
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

from domain.cancellation import CancelToken
from domain.errors import StorageError
from domain.naming import safe_path_component
from domain.models import (
    ArtifactIndexEntry, ArtifactStatus, ExtractionResult, UploadResult,
)
from ports.conversation_store import ConversationStorePort
from ports.object_storage import ObjectStoragePort

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    "mp3": "audio/mpeg",
    "m4a": "audio/mp4",
    "mp4": "audio/mp4",
    "ogg": "audio/ogg",
    "wav": "audio/wav",
    "flac": "audio/flac",
}

_ARTIFACT_NAME = re.compile(r"^turn-(\d+)-(.+)\.(\w+)$")


def turn_storage_path(session_id: str, turn_number: int, speaker: str, ext: str = "mp3") -> str:
    sid = safe_path_component(session_id)
    return f"conversations/{sid}/turns/turn-{turn_number}-{safe_path_component(speaker)}.{ext}"


def full_audio_storage_path(session_id: str, external_job_id: str) -> str:
    sid, job = safe_path_component(session_id), safe_path_component(external_job_id)
    return f"conversations/{sid}/complete-audio-{job}.mp4"


class ArtifactPersistence:
    def __init__(
        self,
        storage: ObjectStoragePort,
        conversations: ConversationStorePort,
        max_workers: int = 4,
    ):
        self._storage = storage
        self._conversations = conversations
        self._max_workers = max(1, max_workers)

    def store_full_audio(self, session_id: str, external_job_id: str, path: str) -> Optional[str]:
        """Archive the full conversation audio and write its reference back. None on failure."""
        try:
            data = Path(path).read_bytes()
            # Served as audio/mpeg even though the provider delivers an mp4 container.
            reference = self._storage.put(
                full_audio_storage_path(session_id, external_job_id), data, "audio/mpeg",
            )
            self._conversations.set_full_audio_ref(session_id, reference)
        except (OSError, StorageError) as e:
            logger.error(f"Error storing full audio for {session_id}: {e}")
            return None
        logger.info(f"Full audio stored for {session_id}: {reference}")
        return reference

    def upload_one(
        self,
        session_id: str,
        turn_number: int,
        speaker: str,
        file_path: str,
        duration_ms: Optional[int] = None,
    ) -> UploadResult:
        ext = Path(file_path).suffix.lstrip(".") or "mp3"
        try:
            data = Path(file_path).read_bytes()
            reference = self._storage.put(
                turn_storage_path(session_id, turn_number, speaker, ext),
                data,
                CONTENT_TYPES.get(ext, "application/octet-stream"),
            )
            self._conversations.upsert_turn_artifact(session_id, ArtifactIndexEntry(
                turn_number=turn_number,
                speaker=speaker,
                reference=reference,
                status=ArtifactStatus.COMPLETE,
                audio_format=ext,
                duration_ms=duration_ms,
            ))
        except (OSError, StorageError) as e:
            logger.error(f"Failed to upload turn {turn_number}: {e}")
            return UploadResult(
                turn_number, speaker, ArtifactStatus.FAILED,
                error=str(e), local_path=file_path,
            )

        try:
            os.unlink(file_path)
        except OSError as e:
            logger.warning(f"Could not delete temp file {file_path}: {e}")

        logger.info(f"Uploaded turn {turn_number} ({speaker}) to: {reference}")
        return UploadResult(turn_number, speaker, ArtifactStatus.COMPLETE, reference=reference)

    def upload_all(
        self,
        session_id: str,
        results: list[ExtractionResult],
        cancel: Optional[CancelToken] = None,
    ) -> list[UploadResult]:
        """Persist every successfully extracted artifact. Output is ordered by turn_number."""

        def _upload(result: ExtractionResult) -> UploadResult:
            if not result.ok:
                return UploadResult(
                    result.turn_number, result.speaker, ArtifactStatus.FAILED,
                    error=result.error or "No file path provided",
                )
            if cancel is not None and cancel.cancelled:
                return UploadResult(
                    result.turn_number, result.speaker, ArtifactStatus.FAILED,
                    error="Cancelled", local_path=result.file_path,
                )
            return self.upload_one(
                session_id, result.turn_number, result.speaker, result.file_path, result.duration_ms,
            )

        if not results:
            return []

        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(results))) as pool:
            uploads = list(pool.map(_upload, results))

        uploaded = sum(1 for u in uploads if u.ok)
        logger.info(f"Upload complete for {session_id}: {uploaded} succeeded, {len(uploads) - uploaded} failed")
        return sorted(uploads, key=lambda u: u.turn_number)

    def pending_artifacts(self, artifact_dir: Path) -> list[ExtractionResult]:
        """Artifacts retained on disk by earlier failed uploads."""
        if not artifact_dir.is_dir():
            return []
        pending: list[ExtractionResult] = []
        for path in sorted(artifact_dir.iterdir()):
            match = _ARTIFACT_NAME.match(path.name)
            if not match or not path.is_file():
                continue
            pending.append(ExtractionResult(
                turn_number=int(match.group(1)),
                speaker=match.group(2),
                file_path=str(path),
            ))
        return pending

    def retry_pending(self, session_id: str, artifact_dir: Path) -> list[UploadResult]:
        """Re-upload retained artifacts without re-running extraction."""
        pending = self.pending_artifacts(artifact_dir)
        logger.info(f"Retrying {len(pending)} retained artifacts for {session_id}")
        return self.upload_all(session_id, pending)
