"""AudioSlicingPort — abstract interface for cutting one segment out of a recording."""

from abc import ABC, abstractmethod
from typing import Optional


class AudioSlicingPort(ABC):
    @abstractmethod
    def extract_segment(
        self,
        input_path: str,
        start_seconds: float,
        duration_seconds: float,
        output_path: str,
        codec: str = "libmp3lame",
        timeout: Optional[float] = None,
    ) -> str:
        """Write [start, start + duration) of input to output. Returns output path.

        Raises ExtractionError on failure or timeout.
        """
