"""SessionCorrelator — resolves a local session id to the provider's chat id.

A mapping captured at session start is authoritative. Without one, the
provider's recent sessions are matched against the local start time and the
nearest one inside the tolerance wins.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from domain.errors import ProviderError, StorageError
from domain.models import CorrelationRecord
from domain.timing import to_epoch_ms
from ports.conversation_store import ConversationStorePort
from ports.correlation_store import CorrelationStorePort
from ports.voice_provider import VoiceProviderPort

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_MS = 30 * 60 * 1000
DEFAULT_CANDIDATE_LIMIT = 50


class SessionCorrelator:
    def __init__(
        self,
        store: CorrelationStorePort,
        provider: VoiceProviderPort,
        conversations: Optional[ConversationStorePort] = None,
        tolerance_ms: int = DEFAULT_TOLERANCE_MS,
        candidate_limit: int = DEFAULT_CANDIDATE_LIMIT,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self._provider = provider
        self._conversations = conversations
        self._tolerance_ms = tolerance_ms
        self._candidate_limit = candidate_limit
        self._now = now

    def lookup(self, session_id: str, started_at: Optional[datetime] = None) -> Optional[str]:
        """Return the provider job id for a session, or None when no match exists yet."""
        try:
            record = self._store.get(session_id)
        except StorageError as e:
            logger.error(f"Error reading correlation store for {session_id}: {e}")
            record = None

        if record is not None:
            logger.info(f"Found stored chat id for {session_id}: {record.external_job_id}")
            return record.external_job_id

        if started_at is None and self._conversations is not None:
            try:
                conversation = self._conversations.get_conversation(session_id)
            except StorageError as e:
                logger.error(f"Error reading conversation {session_id}: {e}")
                conversation = None
            started_at = conversation.started_at if conversation else None
        if started_at is None:
            logger.info(f"No conversation start time for {session_id}, cannot match by time")
            return None

        logger.info(f"No stored chat id for {session_id}, falling back to time-based matching")
        return self._match_by_start_time(session_id, started_at)

    def _match_by_start_time(self, session_id: str, started_at: datetime) -> Optional[str]:
        anchor_ms = to_epoch_ms(started_at)
        try:
            candidates = self._provider.list_recent_sessions(limit=self._candidate_limit)
        except ProviderError as e:
            logger.error(f"Could not list provider sessions: {e}")
            return None

        best_id: Optional[str] = None
        best_diff: Optional[int] = None
        for candidate in candidates[:self._candidate_limit]:
            diff = abs(anchor_ms - candidate.start_timestamp_ms)
            logger.debug(f"  Chat {candidate.id}: diff {diff / 60000:.1f} min")
            if diff < self._tolerance_ms and (best_diff is None or diff < best_diff):
                best_id, best_diff = candidate.id, diff

        if best_id is None:
            logger.info(f"No provider session within {self._tolerance_ms}ms of {session_id}")
            return None

        logger.info(f"Matched {session_id} to chat {best_id} (time diff: {best_diff}ms)")
        return best_id

    def record(self, session_id: str, external_job_id: str) -> CorrelationRecord:
        """Persist the mapping captured when the provider session was opened."""
        record = CorrelationRecord(
            session_id=session_id,
            external_job_id=external_job_id,
            captured_at=self._now(),
        )
        self._store.upsert(record)
        logger.info(f"Stored chat id {external_job_id} for {session_id}")
        return record
