"""AudioDownloadPort — abstract interface for fetching the full conversation audio."""

from abc import ABC, abstractmethod
from typing import Optional


class AudioDownloadPort(ABC):
    @abstractmethod
    def download(self, url: str, destination: str, timeout: Optional[float] = None) -> int:
        """Stream url into destination. Returns bytes written; raises DownloadError.

        timeout, when given, overrides the adapter's default for this request.
        """
