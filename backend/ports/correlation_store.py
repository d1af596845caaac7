"""CorrelationStorePort — persisted mapping from local session to provider job id."""

from abc import ABC, abstractmethod
from typing import Optional

from domain.models import CorrelationRecord


class CorrelationStorePort(ABC):
    @abstractmethod
    def get(self, session_id: str) -> Optional[CorrelationRecord]:
        """Return the stored record for a session, or None."""

    @abstractmethod
    def upsert(self, record: CorrelationRecord) -> None:
        """Insert or replace the record for record.session_id."""
