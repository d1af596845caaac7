"""ReconstructionJobClient — observes the provider's reconstruction job state machine.

QUEUED -> PROCESSING -> COMPLETE | FAILED. The provider owns the lifecycle;
this client only reads it, with fixed-interval polling and a hard attempt
ceiling. Running out of attempts yields PENDING, never FAILED.
"""

import logging
import time
from typing import Callable, Optional

from domain.cancellation import CancelToken
from domain.errors import ProviderError
from domain.models import JobStatus, PollResult, PollState, ReconstructionJob
from ports.voice_provider import VoiceProviderPort

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 12
DEFAULT_INTERVAL_MS = 10_000


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class ReconstructionJobClient:
    def __init__(
        self,
        provider: VoiceProviderPort,
        sleep: Callable[[float], None] = time.sleep,
        clock_ms: Callable[[], int] = _epoch_ms,
    ):
        self._provider = provider
        self._sleep = sleep
        self._clock_ms = clock_ms

    def _fetch(self, external_job_id: str) -> Optional[ReconstructionJob]:
        try:
            return self._provider.get_reconstruction_status(external_job_id)
        except ProviderError as e:
            logger.warning(f"Status check for {external_job_id} failed: {e}")
            return None

    def initiate(self, external_job_id: str) -> Optional[ReconstructionJob]:
        """Request reconstruction. The job may already be COMPLETE if the provider cached it."""
        logger.info(f"Initiating audio reconstruction for chat: {external_job_id}")
        job = self._fetch(external_job_id)
        if job is not None:
            logger.info(f"Audio reconstruction status: {job.status.value}")
        return job

    def poll_until_terminal(
        self,
        external_job_id: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        cancel: Optional[CancelToken] = None,
    ) -> PollResult:
        logger.info(f"Polling reconstruction of {external_job_id} (max {max_attempts} attempts)")
        last: Optional[ReconstructionJob] = None

        for attempt in range(1, max_attempts + 1):
            if cancel is not None and cancel.cancelled:
                logger.info(f"Polling of {external_job_id} cancelled after {attempt - 1} attempts")
                return PollResult(PollState.PENDING, last, attempt - 1)

            job = self._fetch(external_job_id)
            if job is not None:
                last = job
                logger.info(f"Attempt {attempt}: status = {job.status.value}")
                # COMPLETE without a URL is treated as still compiling.
                if job.status == JobStatus.COMPLETE and job.result_url:
                    return PollResult(PollState.COMPLETE, job, attempt)
                if job.status == JobStatus.FAILED:
                    logger.error(f"Audio reconstruction failed for {external_job_id}")
                    return PollResult(PollState.FAILED, job, attempt)

            if attempt < max_attempts:
                if cancel is not None:
                    if cancel.wait(interval_ms / 1000):
                        return PollResult(PollState.PENDING, last, attempt)
                else:
                    self._sleep(interval_ms / 1000)

        logger.info(f"Polling timeout for {external_job_id}, reconstruction still pending")
        return PollResult(PollState.PENDING, last, max_attempts)

    def fresh_result_url(self, job: ReconstructionJob) -> Optional[str]:
        """Return the signed URL if still valid, otherwise re-fetch the status once."""
        if job.url_valid_at(self._clock_ms()):
            return job.result_url

        logger.info(f"Signed URL for {job.external_job_id} expired, refreshing")
        refreshed = self._fetch(job.external_job_id)
        if refreshed is not None and refreshed.status == JobStatus.COMPLETE \
                and refreshed.url_valid_at(self._clock_ms()):
            return refreshed.result_url
        return None
