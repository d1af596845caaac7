"""FFmpegAudioAdapter — segment slicing via an ffmpeg subprocess."""

import os
import logging
import subprocess
from typing import Optional

from domain.errors import ExtractionError
from ports.audio import AudioSlicingPort

logger = logging.getLogger(__name__)

DEFAULT_BITRATE = "128k"
DEFAULT_TIMEOUT = 120.0


class FFmpegAudioAdapter(AudioSlicingPort):
    def __init__(self, ffmpeg_bin: str = "ffmpeg", bitrate: str = DEFAULT_BITRATE,
                 default_timeout: float = DEFAULT_TIMEOUT):
        self._ffmpeg = ffmpeg_bin
        self._bitrate = bitrate
        self._default_timeout = default_timeout

    def extract_segment(
        self,
        input_path: str,
        start_seconds: float,
        duration_seconds: float,
        output_path: str,
        codec: str = "libmp3lame",
        timeout: Optional[float] = None,
    ) -> str:
        if duration_seconds <= 0:
            raise ExtractionError(f"Empty segment at {start_seconds:.3f}s")

        cmd = [
            self._ffmpeg, "-y",
            "-ss", f"{start_seconds:.3f}",
            "-i", input_path,
            "-t", f"{duration_seconds:.3f}",
            "-vn",
            "-c:a", codec,
            "-b:a", self._bitrate,
            output_path,
        ]
        logger.debug(f"FFmpeg command: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True,
                timeout=timeout if timeout is not None else self._default_timeout,
            )
        except subprocess.TimeoutExpired:
            self._discard(output_path)
            raise ExtractionError(f"ffmpeg timed out slicing {start_seconds:.3f}s+{duration_seconds:.3f}s")
        except OSError as e:
            self._discard(output_path)
            raise ExtractionError(f"Could not run ffmpeg: {e}")

        if result.returncode != 0:
            logger.error(f"Error extracting segment: {result.stderr}")
            self._discard(output_path)
            raise ExtractionError(f"Failed to extract segment: {result.stderr.strip()[-500:]}")

        return output_path

    @staticmethod
    def _discard(path: str) -> None:
        if os.path.exists(path):
            os.unlink(path)
