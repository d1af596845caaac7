"""SegmentExtractionEngine — downloads the full conversation audio and slices one clip per turn.

The downloaded source lives in a TemporaryDirectory that is removed on every
exit path. Clips are written to a per-session artifact directory instead, so
that a clip whose upload fails can be retried later without re-slicing.
Each segment is sliced independently: one failure never aborts the others.
"""

import logging
import os
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, stop_any, wait_exponential

from domain.cancellation import CancelToken
from domain.errors import DownloadError, ExtractionError
from domain.models import ExtractionResult, ExtractionSummary, Segment
from domain.naming import safe_path_component
from ports.audio import AudioSlicingPort
from ports.download import AudioDownloadPort

logger = logging.getLogger(__name__)

SOURCE_FILENAME = "complete-audio.mp4"
DEFAULT_CODEC = "libmp3lame"
DEFAULT_WORKERS = 4
DEFAULT_SLICE_TIMEOUT = 120.0
DEFAULT_RETRY_WAIT = wait_exponential(multiplier=1, min=1, max=10)

CODEC_EXTENSIONS = {
    "libmp3lame": "mp3",
    "aac": "m4a",
    "libopus": "ogg",
    "pcm_s16le": "wav",
    "flac": "flac",
}


def artifact_filename(turn_number: int, speaker: str, codec: str = DEFAULT_CODEC) -> str:
    return f"turn-{turn_number}-{safe_path_component(speaker)}.{CODEC_EXTENSIONS.get(codec, 'mp3')}"


class SegmentExtractionEngine:
    def __init__(
        self,
        slicer: AudioSlicingPort,
        downloader: AudioDownloadPort,
        work_dir: str,
        codec: str = DEFAULT_CODEC,
        max_workers: int = DEFAULT_WORKERS,
        slice_timeout: float = DEFAULT_SLICE_TIMEOUT,
        download_retries: int = 2,
        retry_wait=DEFAULT_RETRY_WAIT,
    ):
        self._slicer = slicer
        self._downloader = downloader
        self._work_dir = Path(work_dir)
        self._codec = codec
        self._max_workers = max(1, max_workers)
        self._slice_timeout = slice_timeout
        self._download_retries = max(0, download_retries)
        self._retry_wait = retry_wait

    def artifact_dir(self, session_id: str) -> Path:
        return self._work_dir / safe_path_component(session_id) / "turns"

    def run(
        self,
        session_id: str,
        source_url: str,
        segments: list[Segment],
        cancel: Optional[CancelToken] = None,
        on_source: Optional[Callable[[str], Optional[str]]] = None,
    ) -> ExtractionSummary:
        """Download source_url and extract every segment from it.

        on_source is called with the downloaded file path before slicing;
        its return value is recorded as the summary's source_ref.
        A run cancelled before the source is on disk returns a summary with
        cancelled set and no download_error.
        """
        logger.info(f"Starting turn extraction for session {session_id}: {len(segments)} segments")
        if cancel is not None and cancel.cancelled:
            logger.info(f"Extraction for {session_id} cancelled before download")
            return self._cancelled(segments)

        self._work_dir.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix=f"{safe_path_component(session_id)}-", dir=self._work_dir) as tmp:
            source_path = os.path.join(tmp, SOURCE_FILENAME)
            try:
                self._download(source_url, source_path, cancel)
            except DownloadError as e:
                if cancel is not None and cancel.cancelled:
                    logger.info(f"Extraction for {session_id} cancelled during download: {e}")
                    return self._cancelled(segments)
                logger.error(f"Failed to download audio for {session_id}: {e}")
                return ExtractionSummary(
                    results=[
                        ExtractionResult(s.turn_number, s.speaker, error=f"Failed to download audio: {e}")
                        for s in segments
                    ],
                    download_error=str(e),
                )

            source_ref = None
            if on_source is not None:
                try:
                    source_ref = on_source(source_path)
                except Exception as e:
                    logger.warning(f"Could not archive full audio for {session_id}: {e}")

            results = self.extract(session_id, source_path, segments, cancel)

        summary = ExtractionSummary(results=results, source_ref=source_ref)
        logger.info(
            f"Extraction complete for {session_id}: "
            f"{summary.extracted_count} succeeded, {summary.failed_count} failed"
        )
        return summary

    @staticmethod
    def _cancelled(segments: list[Segment]) -> ExtractionSummary:
        return ExtractionSummary(
            results=[ExtractionResult(s.turn_number, s.speaker, error="Cancelled") for s in segments],
            cancelled=True,
        )

    def _download(self, url: str, destination: str, cancel: Optional[CancelToken]) -> None:
        attempts = self._download_retries + 1

        def _is_cancelled(retry_state) -> bool:
            return cancel is not None and cancel.cancelled

        def _log_retry(retry_state) -> None:
            logger.warning(
                f"Download attempt {retry_state.attempt_number}/{attempts} failed: "
                f"{retry_state.outcome.exception()}"
            )

        retrying = Retrying(
            stop=stop_any(stop_after_attempt(attempts), _is_cancelled),
            wait=self._retry_wait,
            retry=retry_if_exception_type(DownloadError),
            before_sleep=_log_retry,
            sleep=cancel.wait if cancel is not None else time.sleep,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                timeout = cancel.remaining() if cancel is not None else None
                self._downloader.download(url, destination, timeout=timeout)

    def _clear_stale(self, out_dir: Path, segment: Segment) -> None:
        """Remove clips a previous run left for this turn, whatever their codec."""
        prefix = f"turn-{segment.turn_number}-{safe_path_component(segment.speaker)}."
        for stale in out_dir.glob(f"{prefix}*"):
            try:
                stale.unlink()
            except FileNotFoundError:
                pass

    def extract(
        self,
        session_id: str,
        source_path: str,
        segments: list[Segment],
        cancel: Optional[CancelToken] = None,
    ) -> list[ExtractionResult]:
        """Slice each segment out of source_path. Results are ordered by turn_number."""
        out_dir = self.artifact_dir(session_id)
        out_dir.mkdir(parents=True, exist_ok=True)

        def _extract_one(segment: Segment) -> ExtractionResult:
            if cancel is not None and cancel.cancelled:
                return ExtractionResult(segment.turn_number, segment.speaker, error="Cancelled")

            self._clear_stale(out_dir, segment)
            output_path = str(out_dir / artifact_filename(segment.turn_number, segment.speaker, self._codec))
            timeout = cancel.cap_timeout(self._slice_timeout) if cancel is not None else self._slice_timeout
            try:
                self._slicer.extract_segment(
                    source_path,
                    segment.start_ms / 1000,
                    segment.duration_ms / 1000,
                    output_path,
                    codec=self._codec,
                    timeout=timeout,
                )
            except ExtractionError as e:
                logger.error(f"Failed to extract turn {segment.turn_number}: {e}")
                return ExtractionResult(segment.turn_number, segment.speaker, error=str(e))
            except Exception as e:
                logger.error(f"Unexpected error extracting turn {segment.turn_number}: {e}", exc_info=True)
                return ExtractionResult(segment.turn_number, segment.speaker, error=str(e))

            logger.debug(f"Extracted turn {segment.turn_number} to {output_path}")
            return ExtractionResult(
                segment.turn_number, segment.speaker,
                file_path=output_path, duration_ms=segment.duration_ms,
            )

        if not segments:
            return []

        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(segments))) as pool:
            results = list(pool.map(_extract_one, segments))

        return sorted(results, key=lambda r: r.turn_number)
