"""ProgressPort — abstract interface for reporting pipeline progress."""

from abc import ABC, abstractmethod
from typing import Optional


class ProgressPort(ABC):
    @abstractmethod
    def report(
        self,
        session_id: str,
        stage: str,
        progress: float = 0.0,
        detail: Optional[str] = None,
    ) -> None:
        """Report entry into a pipeline stage for a session.

        Stages arrive in order: correlating, reconstructing, extracting,
        uploading. A run that stops early skips the remaining ones. "done" is
        reported exactly once at the end of every run, with the outcome as detail.
        """
