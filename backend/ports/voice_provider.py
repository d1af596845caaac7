"""VoiceProviderPort — abstract interface for the voice-capture provider API."""

from abc import ABC, abstractmethod

from domain.models import CandidateSession, ReconstructionJob


class VoiceProviderPort(ABC):
    @abstractmethod
    def list_recent_sessions(self, limit: int = 50) -> list[CandidateSession]:
        """Return up to `limit` recent provider sessions. Raises ProviderError."""

    @abstractmethod
    def get_reconstruction_status(self, external_job_id: str) -> ReconstructionJob:
        """Request (or re-check) audio reconstruction for a session. Raises ProviderError."""
