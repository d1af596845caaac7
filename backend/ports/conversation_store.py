"""ConversationStorePort — read conversations, write back audio references."""

from abc import ABC, abstractmethod
from typing import Optional

from domain.models import ArtifactIndexEntry, ConversationRecord


class ConversationStorePort(ABC):
    @abstractmethod
    def get_conversation(self, session_id: str) -> Optional[ConversationRecord]:
        """Return the turns and start time of a session, or None if unknown."""

    @abstractmethod
    def set_full_audio_ref(self, session_id: str, reference: str) -> None:
        """Record where the full conversation audio was stored."""

    @abstractmethod
    def upsert_turn_artifact(self, session_id: str, entry: ArtifactIndexEntry) -> None:
        """Insert or replace the index entry for (turn_number, speaker)."""

    @abstractmethod
    def list_turn_artifacts(self, session_id: str) -> list[ArtifactIndexEntry]:
        """Return the persisted artifact index for a session."""
